from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

ADDED = "added"
REMOVED = "removed"


@dataclass(slots=True)
class CapabilityDiff:
    """Capabilities gained and lost per role between two snapshots."""

    added: dict[str, list[str]] = field(default_factory=dict)
    removed: dict[str, list[str]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.added and not self.removed

    def actions(self) -> list[str]:
        actions = []
        if self.added:
            actions.append(ADDED)
        if self.removed:
            actions.append(REMOVED)
        return actions

    def roles(self) -> list[str]:
        """Affected roles, added-side roles first, without duplicates."""
        seen: dict[str, None] = {}
        for role in [*self.added, *self.removed]:
            seen.setdefault(role, None)
        return list(seen)

    def rows(self) -> list[tuple[str, str, str]]:
        rows = []
        for action, per_role in ((ADDED, self.added), (REMOVED, self.removed)):
            for role, capabilities in per_role.items():
                for capability in capabilities:
                    rows.append((action, role, capability))
        return rows


def _capabilities_of(definition: Any) -> Mapping[str, Any]:
    if not isinstance(definition, Mapping):
        return {}
    capabilities = definition.get("capabilities")
    if not isinstance(capabilities, Mapping):
        return {}
    return capabilities


def normalize(model: Any, excluded_roles: Iterable[str] = ()) -> dict[str, dict[str, Any]]:
    """
    Reduce a role model to comparable form.

    Falsy capabilities are dropped (they mean the same as absent ones). Roles
    without any held capability stay in the mapping with an empty set, and
    roles named in ``excluded_roles`` are left out entirely.
    """
    if not isinstance(model, Mapping):
        return {}
    excluded = set(excluded_roles)
    normalized: dict[str, dict[str, Any]] = {}
    for role, definition in model.items():
        if role in excluded:
            continue
        held = {name: flag for name, flag in _capabilities_of(definition).items() if flag}
        normalized[role] = {"capabilities": held}
    return normalized


def _missing(source: Mapping[str, Any], other: Mapping[str, Any]) -> dict[str, list[str]]:
    result: dict[str, list[str]] = {}
    for role, definition in source.items():
        other_caps = _capabilities_of(other.get(role))
        missing = [name for name in _capabilities_of(definition) if name not in other_caps]
        if missing:
            result[role] = missing
    return result


def diff(before: Mapping[str, Any], after: Mapping[str, Any]) -> CapabilityDiff:
    """Both sides are expected to be normalized already."""
    return CapabilityDiff(added=_missing(after, before), removed=_missing(before, after))


def compare(before: Any, after: Any, excluded_roles: Iterable[str] = ()) -> CapabilityDiff:
    excluded = frozenset(excluded_roles)
    return diff(normalize(before, excluded), normalize(after, excluded))
