from __future__ import annotations

import logging
import time
from pathlib import Path

from .exceptions import MalformedRecord, NotFound, StoreUnavailable
from .records import RECORD_SUFFIX, filename_timestamp

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class RecordStore:
    """Directory of append-only record files. Records are never rewritten."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory) if directory else None

    def _root(self) -> Path:
        if self.directory is None:
            raise StoreUnavailable("No record directory is configured (set CAPLOG_LOG_DIR or MEDIA_ROOT).")
        return self.directory

    def _path(self, filename: str) -> Path:
        if not filename or "/" in filename or "\\" in filename or filename in {".", ".."}:
            raise NotFound(f"No such record: {filename!r}")
        return self._root() / filename

    def write(self, filename: str, body: str) -> Path:
        root = self._root()
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot create record directory {root}: {exc}") from exc
        path = self._path(filename)
        try:
            with open(path, "x", encoding="utf-8") as handle:
                handle.write(body)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot write record {path}: {exc}") from exc
        return path

    def list(self) -> list[str]:
        """Record names, newest first by the timestamp in the name."""
        if self.directory is None or not self.directory.is_dir():
            return []
        keyed: list[tuple[int, str]] = []
        for path in self.directory.glob(f"*{RECORD_SUFFIX}"):
            try:
                keyed.append((filename_timestamp(path.name), path.name))
            except MalformedRecord as exc:
                logger.warning("Skipping foreign file in record directory: %s", exc)
        keyed.sort(reverse=True)
        return [name for _, name in keyed]

    def read(self, filename: str) -> str:
        path = self._path(filename)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFound(f"No such record: {filename!r}") from exc

    def delete(self, filename: str) -> None:
        path = self._path(filename)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFound(f"No such record: {filename!r}") from exc


def sweep(store: RecordStore, max_age_days: int, now: float | None = None) -> list[str]:
    """Delete records strictly older than ``max_age_days``. Best effort."""
    now = time.time() if now is None else now
    cutoff = now - max_age_days * SECONDS_PER_DAY
    deleted = []
    for filename in store.list():
        if filename_timestamp(filename) >= cutoff:
            continue
        try:
            store.delete(filename)
        except (NotFound, OSError) as exc:
            logger.warning("Could not delete expired record %s: %s", filename, exc)
            continue
        deleted.append(filename)
    if deleted:
        logger.info("Deleted %s expired capability log record(s)", len(deleted))
    return deleted
