from __future__ import annotations

import logging

from .audit import CapabilityAuditLog
from .exceptions import CaplogError
from .operations import ActiveOperation, OperationContext, bind_operation
from .roles import actor_from_user
from .settings import get_caplog_settings

logger = logging.getLogger(__name__)


class CapabilityChangeLogMiddleware:
    """
    Runs each request as one capability-log operation.

    Any number of group permission changes made while the request is handled
    end up as a single record, written once the response is ready. Must sit
    after AuthenticationMiddleware.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        config = get_caplog_settings()
        if request.path.startswith(config.skip_prefixes):
            return self.get_response(request)

        audit_log = CapabilityAuditLog(config)
        active = ActiveOperation(
            context=OperationContext(
                actor=actor_from_user(getattr(request, "user", None)),
                referer=str(request.META.get("HTTP_REFERER", "") or ""),
            ),
            coalescer=audit_log.coalescer(),
        )
        with bind_operation(active):
            try:
                response = self.get_response(request)
            finally:
                try:
                    active.finish()
                except CaplogError:
                    # The request itself is done; only the audit write failed.
                    logger.exception(
                        "Capability change log write failed for %s %s", request.method, request.path
                    )
        return response
