"""Upgrades of stored records between local schema versions.

A migration produces one schema version from the one before it. The store
runs the pending ones when it connects, all inside one transaction, after
exporting the pre-migration data as a backup.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from ..errors import MigrationError

logger = logging.getLogger(__name__)

# (entity type value, flattened record) -> upgraded record
RecordUpgrade = Callable[[str, dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class Migration:
    """Upgrade of every stored record to ``version``."""

    version: int
    description: str
    upgrade: RecordUpgrade


class MigrationRegistry:
    """Migrations keyed by the schema version they produce."""

    def __init__(self, migrations: Iterable[Migration] = ()):
        self._migrations: dict[int, Migration] = {}
        for migration in migrations:
            self.register(migration)

    def register(self, migration: Migration) -> None:
        """Add a migration.

        Raises:
            ValueError: If the version is below 2 or already registered.
        """
        if migration.version < 2:
            raise ValueError("Migrations start at schema version 2")
        if migration.version in self._migrations:
            raise ValueError(f"Duplicate migration for schema version {migration.version}")
        self._migrations[migration.version] = migration

    def migration(self, version: int, description: str):
        """Decorator registering a record upgrade function."""

        def decorator(func: RecordUpgrade) -> RecordUpgrade:
            self.register(Migration(version, description, func))
            return func

        return decorator

    @property
    def latest_version(self) -> int:
        return max(self._migrations, default=1)

    def plan(self, current: int, target: int) -> list[Migration]:
        """Migrations taking data from ``current`` to ``target``, in order.

        Raises:
            MigrationError: If a version in between has no migration.
        """
        steps = []
        for version in range(current + 1, target + 1):
            migration = self._migrations.get(version)
            if migration is None:
                raise MigrationError(f"No migration to schema version {version}")
            steps.append(migration)
        if steps:
            logger.debug(f"Planned migrations {current} -> {target}: {len(steps)} step(s)")
        return steps

    def __len__(self) -> int:
        return len(self._migrations)
