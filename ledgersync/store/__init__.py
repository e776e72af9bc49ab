"""Local replica store: entity persistence, validation and sync bookkeeping."""

from .local_store import LocalStore
from .migrations import Migration, MigrationRegistry
from .models import (
    ConflictResolution,
    DataExport,
    DataFilters,
    EntityType,
    LocalEntity,
    LocalMetadata,
    OperationStatus,
    OperationType,
    PendingOperation,
    Priority,
    ResolutionStrategy,
    SyncState,
    SyncStatus,
    compute_data_hash,
)
from .payloads import (
    CardPayload,
    CategoryPayload,
    ExpensePayload,
    ForValuePayload,
    IncomePayload,
    payload_from_dict,
)
from .validation import ValidationResult, attempt_repair, validate_entity

__all__ = [
    "LocalStore",
    "Migration",
    "MigrationRegistry",
    "ConflictResolution",
    "DataExport",
    "DataFilters",
    "EntityType",
    "LocalEntity",
    "LocalMetadata",
    "OperationStatus",
    "OperationType",
    "PendingOperation",
    "Priority",
    "ResolutionStrategy",
    "SyncState",
    "SyncStatus",
    "compute_data_hash",
    "CardPayload",
    "CategoryPayload",
    "ExpensePayload",
    "ForValuePayload",
    "IncomePayload",
    "payload_from_dict",
    "ValidationResult",
    "attempt_repair",
    "validate_entity",
]
