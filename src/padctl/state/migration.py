"""Schema migrations applied to raw records before the version gate.

Only explicitly registered steps are ever applied: a record whose version has
no path to a supported version is rejected by the parser, never parsed on a
best-effort basis. No migrations ship today because ``"1"`` is the first
persisted schema version.
"""
from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

MigrationFn = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class Migration:
    """A single step rewriting a record from one schema version to the next."""

    from_version: str
    to_version: str
    apply: MigrationFn
    description: str = ""


class MigrationRegistry:
    """Migration steps keyed by their source version."""

    def __init__(self) -> None:
        """Create an empty registry."""
        self._by_source: dict[str, Migration] = {}

    def register(self, migration: Migration) -> None:
        """Register *migration*; a source version may only have one step."""
        if migration.from_version == migration.to_version:
            raise ValueError("A migration must change the schema version.")
        if migration.from_version in self._by_source:
            raise ValueError(
                f"A migration from version '{migration.from_version}' is already registered."
            )
        self._by_source[migration.from_version] = migration

    def path(self, from_version: str, targets: tuple[str, ...]) -> list[Migration]:
        """Return the steps leading from *from_version* to one of *targets*."""
        steps: list[Migration] = []
        seen = {from_version}
        current = from_version
        while current not in targets:
            step = self._by_source.get(current)
            if step is None or step.to_version in seen:
                return []
            steps.append(step)
            seen.add(step.to_version)
            current = step.to_version
        return steps

    def can_migrate(self, from_version: str, targets: tuple[str, ...]) -> bool:
        """Return ``True`` when *from_version* can reach one of *targets*."""
        return bool(self.path(from_version, targets))

    def migrate(self, raw: Mapping[str, Any], targets: tuple[str, ...]) -> dict[str, Any]:
        """Return a migrated copy of *raw*; the input mapping is left untouched."""
        document: dict[str, Any] = copy.deepcopy(dict(raw))
        for step in self.path(str(document.get("version")), targets):
            document = step.apply(document)
            document["version"] = step.to_version
        return document


__all__ = ["Migration", "MigrationFn", "MigrationRegistry"]
