"""
Per-operation change coalescing.

One operation (an HTTP request, a management command, a script block) may
see many change notifications. Only the state before the first one and the
state at the commit point matter; the coalescer writes at most one record
per operation.

Commit order contract: when a bulk rewrite is in progress, its own
``commit_bulk_rewrite`` call is the commit point and it comes before the
generic ``finish`` call, which then does nothing. A bulk commit that finds
no net change writes nothing and leaves the operation open for ``finish``.
If the bulk rewrite never commits, ``finish`` commits instead.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Union

from .capabilities import CapabilityDiff, compare

logger = logging.getLogger(__name__)

Snapshot = Mapping[str, Any]
SnapshotSource = Union[Snapshot, Callable[[], Snapshot]]
Recorder = Callable[[CapabilityDiff, "OperationContext"], Any]


class OperationState(enum.Enum):
    IDLE = "idle"
    AWAITING_FINAL = "awaiting_final"
    COMMITTED = "committed"


@dataclass(frozen=True, slots=True)
class Actor:
    id: int | str | None
    display_name: str


@dataclass(slots=True)
class OperationContext:
    actor: Actor | None = None
    referer: str = ""
    is_cli: bool = False
    state: OperationState = OperationState.IDLE
    before: Snapshot | None = None
    latest: Snapshot | None = None
    bulk_rewrite_raised: bool = False
    bulk_rewrite_snapshot: Snapshot | None = None
    result: Any = None

    @property
    def has_before(self) -> bool:
        return self.before is not None

    @property
    def is_bulk_rewrite_raised(self) -> bool:
        return self.bulk_rewrite_raised

    def clear_bulk_rewrite(self) -> None:
        self.bulk_rewrite_raised = False


def _resolve(source: SnapshotSource | None) -> Snapshot | None:
    if callable(source):
        return source()
    return source


class ChangeCoalescer:
    """Turns any number of notifications into at most one recorded diff."""

    def __init__(
        self,
        recorder: Recorder,
        *,
        snapshot_loader: Callable[[], Snapshot] | None = None,
        excluded_roles: Iterable[str] = (),
    ) -> None:
        self.recorder = recorder
        self.snapshot_loader = snapshot_loader
        self.excluded_roles = frozenset(excluded_roles)

    def notify(self, context: OperationContext, before: SnapshotSource, after: SnapshotSource | None = None) -> None:
        if context.state is OperationState.COMMITTED:
            logger.warning("Capability change after this operation was already recorded; not logged")
            return
        if context.state is OperationState.IDLE:
            if context.bulk_rewrite_snapshot is not None:
                context.before = context.bulk_rewrite_snapshot
            else:
                context.before = _resolve(before)
            context.state = OperationState.AWAITING_FINAL
        if after is not None:
            context.latest = _resolve(after)

    def raise_bulk_rewrite(self, context: OperationContext, snapshot: SnapshotSource) -> None:
        context.bulk_rewrite_raised = True
        if context.bulk_rewrite_snapshot is None and context.state is OperationState.IDLE:
            context.bulk_rewrite_snapshot = _resolve(snapshot)

    def commit_bulk_rewrite(self, context: OperationContext) -> Any:
        if not context.bulk_rewrite_raised:
            logger.debug("Bulk rewrite commit without a raised flag; leaving it to finish()")
            return None
        context.clear_bulk_rewrite()
        if context.state is OperationState.COMMITTED:
            return context.result
        result = self._commit(context)
        if context.result is None:
            # No net change yet; later changes in this operation go to finish().
            context.state = OperationState.AWAITING_FINAL if context.has_before else OperationState.IDLE
        return result

    def finish(self, context: OperationContext) -> Any:
        if context.state is OperationState.COMMITTED:
            return context.result
        return self._commit(context)

    def _final_snapshot(self, context: OperationContext) -> Snapshot | None:
        if self.snapshot_loader is not None:
            return self.snapshot_loader()
        return context.latest

    def _commit(self, context: OperationContext) -> Any:
        before = context.before if context.has_before else context.bulk_rewrite_snapshot
        # Mark first so a failing recorder cannot lead to a second write.
        context.state = OperationState.COMMITTED
        if before is None:
            return None
        after = self._final_snapshot(context)
        if after is None:
            after = before
        diff = compare(before, after, self.excluded_roles)
        if diff.is_empty():
            logger.debug("Capability notifications produced no net change")
            return None
        context.result = self.recorder(diff, context)
        return context.result


@dataclass(frozen=True, slots=True)
class ActiveOperation:
    """An operation's context paired with the coalescer that owns it."""

    context: OperationContext
    coalescer: ChangeCoalescer

    def notify(self, before: SnapshotSource, after: SnapshotSource | None = None) -> None:
        self.coalescer.notify(self.context, before, after)

    def raise_bulk_rewrite(self, snapshot: SnapshotSource) -> None:
        self.coalescer.raise_bulk_rewrite(self.context, snapshot)

    def commit_bulk_rewrite(self) -> Any:
        return self.coalescer.commit_bulk_rewrite(self.context)

    def finish(self) -> Any:
        return self.coalescer.finish(self.context)


_current_operation: ContextVar[ActiveOperation | None] = ContextVar("caplog_operation", default=None)


def get_current_operation() -> ActiveOperation | None:
    return _current_operation.get()


@contextmanager
def bind_operation(active: ActiveOperation) -> Iterator[ActiveOperation]:
    """Make ``active`` the current operation for this thread/task only."""
    token = _current_operation.set(active)
    try:
        yield active
    finally:
        _current_operation.reset(token)
