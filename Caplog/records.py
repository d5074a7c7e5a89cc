"""
Record codec.

A record file is named ``{created_at}.{base64(json(meta))}.log``; the name is
a denormalized index that lets listings show the actor, affected roles and
actions without opening any file. The body stays the source of truth:

    User\tadmin (id=1)
    Referer\thttps://example.test/admin/auth/group/3/change/
    Is CLI\tNo
    Timestamp\t1760880000
    --
    added\teditors\tblog.publish_post
    removed\teditors\tblog.delete_post
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field, replace
from typing import Any

from .capabilities import CapabilityDiff
from .exceptions import EncodingError, MalformedRecord

RECORD_SUFFIX = ".log"
SEPARATOR = "--"
# NAME_MAX on common filesystems.
MAX_FILENAME_BYTES = 255

HEADER_LABELS = {
    "user": "User",
    "referer": "Referer",
    "is_cli": "Is CLI",
    "timestamp": "Timestamp",
    "microtime": "Microtime",
}
TIMESTAMP_LABEL = HEADER_LABELS["timestamp"]


@dataclass(frozen=True, slots=True)
class RecordContext:
    """Who/where/when of one write."""

    actor_id: int | str | None
    actor_label: str
    created_at: float
    referer: str = ""
    is_cli: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RecordMetadata:
    """What the filename carries."""

    created_at: int
    actor_id: int | str | None
    roles: list[str]
    actions: list[str]
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update({"u": self.actor_id, "t": self.created_at, "r": self.roles, "a": self.actions})
        return payload


@dataclass(frozen=True, slots=True)
class EncodedRecord:
    filename: str
    body: str
    metadata: RecordMetadata


def encode_filename(metadata: RecordMetadata) -> str:
    try:
        raw = json.dumps(metadata.to_payload(), separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Record metadata is not serializable: {exc}") from exc
    encoded = base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")
    filename = f"{metadata.created_at}.{encoded}{RECORD_SUFFIX}"
    if len(filename) > MAX_FILENAME_BYTES:
        raise EncodingError(f"Record name is {len(filename)} bytes, over {MAX_FILENAME_BYTES}.")
    return filename


def fit_metadata(metadata: RecordMetadata) -> RecordMetadata:
    """
    Drop trailing roles until the encoded name fits ``MAX_FILENAME_BYTES``.

    The full role count goes to ``extra["rn"]``; the body still lists every row.
    """
    roles = list(metadata.roles)
    while True:
        candidate = metadata
        if len(roles) < len(metadata.roles):
            candidate = replace(metadata, roles=list(roles), extra={**metadata.extra, "rn": len(metadata.roles)})
        try:
            encode_filename(candidate)
        except EncodingError:
            if not roles:
                raise
            roles.pop()
            continue
        return candidate


def filename_timestamp(filename: str) -> int:
    head = filename.split(".", 1)[0]
    try:
        return int(head)
    except ValueError as exc:
        raise MalformedRecord(f"Record name has no leading timestamp: {filename!r}") from exc


def decode_filename(filename: str) -> RecordMetadata:
    parts = filename.split(".")
    if len(parts) != 3 or f".{parts[2]}" != RECORD_SUFFIX:
        raise MalformedRecord(f"Unexpected record name: {filename!r}")
    timestamp = filename_timestamp(filename)
    try:
        payload = json.loads(base64.urlsafe_b64decode(parts[1].encode("ascii")))
    except (ValueError, binascii.Error, UnicodeError) as exc:
        raise MalformedRecord(f"Record name does not decode: {filename!r}") from exc
    if not isinstance(payload, dict):
        raise MalformedRecord(f"Record name does not carry metadata: {filename!r}")

    extra = {key: value for key, value in payload.items() if key not in {"u", "t", "r", "a"}}
    return RecordMetadata(
        created_at=int(payload.get("t", timestamp)),
        actor_id=payload.get("u"),
        roles=list(payload.get("r") or []),
        actions=list(payload.get("a") or []),
        extra=extra,
    )


def _header_value(name: str, context: RecordContext) -> str:
    if name == "user":
        return f"{context.actor_label} (id={context.actor_id})"
    if name == "referer":
        return context.referer or ""
    if name == "is_cli":
        return "Yes" if context.is_cli else "No"
    if name == "timestamp":
        return str(int(context.created_at))
    if name == "microtime":
        return f"{context.created_at:.6f}"
    raise EncodingError(f"Unknown header field: {name!r}")


def _clean(value: str) -> str:
    # Tabs and newlines would break the line layout.
    return str(value).replace("\r", " ").replace("\n", " ").replace("\t", " ")


def encode(
    diff: CapabilityDiff,
    context: RecordContext,
    header_fields: tuple[str, ...] = ("user", "referer", "is_cli", "timestamp"),
) -> EncodedRecord:
    metadata = fit_metadata(
        RecordMetadata(
            created_at=int(context.created_at),
            actor_id=context.actor_id,
            roles=diff.roles(),
            actions=diff.actions(),
            extra=dict(context.extra),
        )
    )
    filename = encode_filename(metadata)

    lines = [f"{HEADER_LABELS[name]}\t{_clean(_header_value(name, context))}" for name in header_fields]
    lines.append(SEPARATOR)
    lines.extend("\t".join(_clean(part) for part in row) for row in diff.rows())
    return EncodedRecord(filename=filename, body="\n".join(lines) + "\n", metadata=metadata)


def decode_body(text: str) -> tuple[list[tuple[str, str]], list[tuple[str, str, str]]]:
    lines = text.splitlines()
    try:
        split_at = [line.rstrip("\r\n") for line in lines].index(SEPARATOR)
    except ValueError as exc:
        raise MalformedRecord("Record body has no separator line.") from exc

    headers: list[tuple[str, str]] = []
    for line in lines[:split_at]:
        if not line.strip():
            continue
        parts = line.rstrip("\r\n").split("\t")
        if len(parts) != 2:
            raise MalformedRecord(f"Header line is not label<TAB>value: {line!r}")
        headers.append((parts[0], parts[1]))

    rows: list[tuple[str, str, str]] = []
    for line in lines[split_at + 1:]:
        if not line.strip():
            continue
        parts = line.rstrip("\r\n").split("\t")
        if len(parts) != 3:
            raise MalformedRecord(f"Row is not action<TAB>role<TAB>capability: {line!r}")
        rows.append((parts[0], parts[1], parts[2]))
    return headers, rows
