from __future__ import annotations

import os
from dataclasses import dataclass

from django.conf import settings

DEFAULT_HEADER_FIELDS = ("user", "referer", "is_cli", "timestamp")


@dataclass(frozen=True, slots=True)
class CaplogSettings:
    log_dir: str
    max_age_days: int
    excluded_roles: frozenset[str]
    header_fields: tuple[str, ...]
    include_microtime: bool
    skip_prefixes: tuple[str, ...]


def _default_log_dir() -> str:
    media_root = str(getattr(settings, "MEDIA_ROOT", "") or "")
    if not media_root:
        return ""
    return os.path.join(media_root, "caplog")


def get_caplog_settings() -> CaplogSettings:
    return CaplogSettings(
        log_dir=str(getattr(settings, "CAPLOG_LOG_DIR", "") or _default_log_dir()),
        max_age_days=int(getattr(settings, "CAPLOG_MAX_AGE_DAYS", 365)),
        excluded_roles=frozenset(getattr(settings, "CAPLOG_EXCLUDED_ROLES", ()) or ()),
        header_fields=tuple(getattr(settings, "CAPLOG_HEADER_FIELDS", DEFAULT_HEADER_FIELDS)),
        include_microtime=bool(getattr(settings, "CAPLOG_INCLUDE_MICROTIME", True)),
        skip_prefixes=tuple(getattr(settings, "CAPLOG_SKIP_PREFIXES", ("/static/", "/media/"))),
    )
