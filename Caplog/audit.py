from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone

from django.utils import timezone

from .capabilities import ADDED, REMOVED, CapabilityDiff
from .exceptions import MalformedRecord
from .operations import (
    ActiveOperation,
    Actor,
    ChangeCoalescer,
    OperationContext,
    bind_operation,
    get_current_operation,
)
from .records import TIMESTAMP_LABEL, RecordContext, RecordMetadata, decode_body, decode_filename, encode
from .roles import current_role_model, resolve_display_names
from .settings import CaplogSettings, get_caplog_settings
from .store import RecordStore, sweep

logger = logging.getLogger(__name__)

DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True, slots=True)
class RecordSummary:
    timestamp: str
    actor_display_name: str
    roles_affected: str
    added: bool
    removed: bool
    filename: str


@dataclass(frozen=True, slots=True)
class RenderedRecord:
    header_fields: list[tuple[str, str]]
    rows: list[tuple[str, str, str]]


def format_timestamp(value: int | float) -> str:
    moment = datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    return timezone.localtime(moment).strftime(DISPLAY_FORMAT)


class CapabilityAuditLog:
    """Writes, prunes and lists capability change records."""

    def __init__(
        self,
        config: CaplogSettings | None = None,
        *,
        store: RecordStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or get_caplog_settings()
        self.store = store or RecordStore(self.config.log_dir)
        self.clock = clock

    def coalescer(self) -> ChangeCoalescer:
        return ChangeCoalescer(
            self.record,
            snapshot_loader=current_role_model,
            excluded_roles=self.config.excluded_roles,
        )

    def record(self, diff: CapabilityDiff, context: OperationContext) -> str:
        now = self.clock()
        actor = context.actor
        extra = {"m": f"{now:.6f}"} if self.config.include_microtime else {}
        encoded = encode(
            diff,
            RecordContext(
                actor_id=actor.id if actor else None,
                actor_label=actor.display_name if actor else "anonymous",
                created_at=now,
                referer=context.referer,
                is_cli=context.is_cli,
                extra=extra,
            ),
            self.config.header_fields,
        )
        self.store.write(encoded.filename, encoded.body)
        logger.info(
            "Capability change recorded file=%s roles=%s actions=%s",
            encoded.filename,
            ",".join(encoded.metadata.roles),
            ",".join(encoded.metadata.actions),
        )
        self.prune()
        return encoded.filename

    def prune(self, max_age_days: int | None = None) -> list[str]:
        days = self.config.max_age_days if max_age_days is None else max_age_days
        return sweep(self.store, days, now=self.clock())

    @staticmethod
    def _roles_affected(meta: RecordMetadata) -> str:
        text = ", ".join(meta.roles)
        total = meta.extra.get("rn")
        if isinstance(total, int) and total > len(meta.roles):
            text = f"{text} (+{total - len(meta.roles)} more)"
        return text

    def list_summaries(self) -> list[RecordSummary]:
        self.prune()
        entries = []
        for filename in self.store.list():
            try:
                entries.append((filename, decode_filename(filename)))
            except MalformedRecord as exc:
                logger.warning("Skipping unreadable capability log record: %s", exc)

        names = resolve_display_names(meta.actor_id for _, meta in entries)
        summaries = []
        for filename, meta in entries:
            actor_key = str(meta.actor_id)
            summaries.append(
                RecordSummary(
                    timestamp=format_timestamp(meta.created_at),
                    actor_display_name=names.get(actor_key, "unknown" if meta.actor_id is None else actor_key),
                    roles_affected=self._roles_affected(meta),
                    added=ADDED in meta.actions,
                    removed=REMOVED in meta.actions,
                    filename=filename,
                )
            )
        return summaries

    def renderable_single_record(self, filename: str) -> RenderedRecord:
        headers, rows = decode_body(self.store.read(filename))
        header_fields = []
        for label, value in headers:
            if label == TIMESTAMP_LABEL and value.isdigit():
                value = format_timestamp(int(value))
            header_fields.append((label, value))
        return RenderedRecord(header_fields=header_fields, rows=rows)


@contextmanager
def operation(
    *,
    actor: Actor | None = None,
    referer: str = "",
    is_cli: bool = False,
    audit_log: CapabilityAuditLog | None = None,
) -> Iterator[ActiveOperation]:
    """
    Track capability changes made inside the block as one operation.

    Leaving the block is the operation's terminal signal. Nested use joins
    the operation that is already running instead of starting a new one.
    """
    current = get_current_operation()
    if current is not None:
        yield current
        return

    audit_log = audit_log or CapabilityAuditLog()
    active = ActiveOperation(
        context=OperationContext(actor=actor, referer=referer, is_cli=is_cli),
        coalescer=audit_log.coalescer(),
    )
    with bind_operation(active):
        try:
            yield active
        finally:
            active.finish()
