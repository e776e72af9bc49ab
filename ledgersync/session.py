"""Per-user session wiring the store, queue, detector, driver and scheduler.

A session is the only user-facing mutation path: each create, update or
delete writes the local replica and enqueues the matching operation in one
call. Nothing here is a module-level singleton; a session is built on login
and closed on logout.
"""

import logging
from typing import Any, Iterable

from .config import Config
from .events import EventEmitter, EventListener
from .queue.operation_queue import OperationQueue
from .store.local_store import LocalStore
from .store.migrations import MigrationRegistry
from .store.models import (
    DataFilters,
    EntityType,
    LocalEntity,
    OperationStatus,
    OperationType,
    coerce_entity_type,
)
from .sync.cloud_sync import CloudSyncDriver, NetworkQuality, SyncResult
from .sync.conflict_detector import ConflictDetector
from .sync.scheduler import SyncScheduler
from .sync.transport import Credentials, HttpTransport, RemoteTransport

logger = logging.getLogger(__name__)


class LedgerSession:
    """Composition root for one authenticated user on one device."""

    def __init__(
        self,
        config: Config,
        credentials: Credentials | None = None,
        transport: RemoteTransport | None = None,
        migrations: MigrationRegistry | None = None,
    ):
        """Build every component for the session.

        Args:
            config: Loaded configuration.
            credentials: User credential; built from ``remote.token`` and
                ``device.user_id`` when not given.
            transport: Remote transport; an HttpTransport for
                ``remote.base_url`` by default.
            migrations: Schema upgrades for the local replica, run when the
                store opens.
        """
        self.config = config
        self.credentials = credentials or Credentials(
            token=config.remote.token or "", user_id=config.device.user_id
        )
        self.events = EventEmitter()
        self.store = LocalStore(
            db_path=config.storage.db_path,
            device_id=config.device.device_id,
            user_id=self.credentials.user_id,
            schema_version=config.storage.schema_version,
            quota_bytes=config.storage.quota_bytes,
            migrations=migrations,
        )
        self.queue = OperationQueue(
            self.store,
            events=self.events,
            max_queue_size=config.queue.max_queue_size,
            batch_size=config.queue.batch_size,
            concurrency=config.queue.concurrency,
            max_retries=config.queue.max_retries,
            processing_timeout=config.queue.processing_timeout_seconds,
        )
        self.detector = ConflictDetector(self.store)
        self.transport = transport or HttpTransport(
            config.remote.base_url, timeout=config.remote.timeout_seconds
        )
        self.driver = CloudSyncDriver(
            self.store,
            self.queue,
            self.transport,
            detector=self.detector,
            events=self.events,
            auto_merge=config.sync.auto_merge,
            coalesce=config.sync.coalesce,
        )
        self.scheduler = SyncScheduler(
            self.driver,
            self.credentials,
            interval=config.sync.interval_seconds,
            max_backoff=config.sync.max_backoff_seconds,
        )
        self._opened = False

    def open(self) -> None:
        """Connect the local store and recover operations left mid-sync."""
        if self._opened:
            return
        self.store.connect()
        self.queue.recover_stale_operations()
        self._opened = True
        logger.info(
            f"Session opened for device {self.store.device_id} "
            f"({self.queue.size} queued operation(s))"
        )

    def start(self) -> None:
        """Open the session and start background sync if enabled."""
        self.open()
        if self.config.sync.enabled:
            self.scheduler.start()

    async def close(self) -> None:
        """Stop syncing, let dispatched operations finish and close resources."""
        await self.scheduler.stop()
        await self.driver.close()
        self.store.close()
        self.events.clear()
        self._opened = False
        logger.info("Session closed")

    async def __aenter__(self) -> "LedgerSession":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, entity_type: EntityType | str, data: dict[str, Any]) -> LocalEntity:
        """Save a new entity locally and queue its upload."""
        entity = self.store.save(entity_type, data)
        self.queue.add_operation(
            OperationType.CREATE, entity.entity_type, entity.id, entity.data
        )
        return entity

    def update(
        self, entity_type: EntityType | str, entity_id: str, patch: dict[str, Any]
    ) -> LocalEntity:
        """Edit an entity locally and queue the update.

        If the entity is syncing, the edit is held until that sync settles;
        the returned entity is then the current, unchanged one.
        """
        entity = self.store.update(entity_type, entity_id, patch)
        self.queue.add_operation(
            OperationType.UPDATE,
            entity.entity_type,
            entity.id,
            {**entity.data, **patch},
            cloud_id=entity.cloud_id,
        )
        return entity

    def delete(self, entity_type: EntityType | str, entity_id: str) -> LocalEntity:
        """Delete an entity locally and queue the remote delete.

        An entity that was never uploaded has nothing to delete remotely;
        its queued operations are dropped instead, unless its create is
        already in flight.
        """
        entity_type = coerce_entity_type(entity_type)
        entity = self.store.delete(entity_type, entity_id)

        in_flight = any(
            op.status == OperationStatus.SYNCING
            for op in self.store.list_operations(
                entity_type=entity_type, entity_id=entity_id
            )
        )
        if entity.cloud_id is None and not in_flight:
            removed = self.queue.remove_operations_for_entity(entity_type, entity_id)
            logger.debug(f"Dropped {removed} queued operation(s) for unsent {entity_id}")
            return entity

        self.queue.add_operation(
            OperationType.DELETE,
            entity_type,
            entity_id,
            entity.data,
            cloud_id=entity.cloud_id,
        )
        return entity

    def batch_create(
        self, entity_type: EntityType | str, items: Iterable[dict[str, Any]]
    ) -> list[LocalEntity]:
        """Create several entities and queue their uploads.

        Records and queued operations are written in one transaction, so a
        malformed record leaves neither behind.
        """
        with self.store.atomic():
            entities = [self.create(entity_type, data) for data in items]
        logger.info(f"Created {len(entities)} record(s) in one batch")
        return entities

    def batch_update(
        self, entity_type: EntityType | str, patches: dict[str, dict[str, Any]]
    ) -> list[LocalEntity]:
        """Apply one patch per entity id and queue the updates atomically."""
        with self.store.atomic():
            return [
                self.update(entity_type, entity_id, patch)
                for entity_id, patch in patches.items()
            ]

    def batch_delete(
        self, entity_type: EntityType | str, entity_ids: Iterable[str]
    ) -> list[LocalEntity]:
        """Delete several entities and queue the remote deletes atomically."""
        with self.store.atomic():
            return [self.delete(entity_type, entity_id) for entity_id in entity_ids]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_type: EntityType | str, entity_id: str) -> LocalEntity | None:
        return self.store.get(entity_type, entity_id)

    def list_entities(
        self, entity_type: EntityType | str, filters: DataFilters | None = None
    ) -> list[LocalEntity]:
        return self.store.list_entities(entity_type, filters)

    def search(
        self,
        entity_type: EntityType | str,
        term: str,
        fields: Iterable[str] | None = None,
    ) -> list[LocalEntity]:
        return self.store.search(entity_type, term, fields)

    # ------------------------------------------------------------------
    # Sync surface
    # ------------------------------------------------------------------

    def subscribe(self, listener: EventListener):
        """Register an event listener. Returns a callable that unsubscribes it."""
        return self.events.subscribe(listener)

    async def force_sync(self) -> SyncResult:
        return await self.driver.force_sync(self.credentials)

    def set_online(self, online: bool) -> None:
        self.scheduler.notify_online(online)

    def notify_focus(self) -> None:
        self.scheduler.notify_focus()

    def set_network_quality(self, quality: NetworkQuality | None) -> None:
        self.scheduler.set_network_quality(quality)

    def get_sync_status(self) -> dict[str, Any]:
        return self.driver.get_sync_status()
