"""Structural validation and minimal repair of entity records.

Records are validated as flat dicts in the export/wire shape (see
``LocalEntity.to_dict``) so that the same checks apply to stored rows,
import bundles and health scans.
"""

import math
from dataclasses import dataclass, field
from typing import Any

from ..clock import new_id, now_ms
from .models import (
    ID_PREFIXES,
    EntityType,
    LocalEntity,
    SyncStatus,
    coerce_entity_type,
)


@dataclass(frozen=True)
class FieldRule:
    """Expected shape of one domain field."""

    name: str
    kind: str  # "amount", "text", "list", "date", "choice", "optional_text"
    choices: tuple[str, ...] = ()
    placeholder: Any = None


def _category_rules(default_type: str) -> tuple[FieldRule, ...]:
    return (
        FieldRule("name", "text", placeholder="Recovered Category"),
        FieldRule(
            "type", "choice", choices=("expense", "income"), placeholder=default_type
        ),
    )


ENTITY_RULES: dict[EntityType, tuple[FieldRule, ...]] = {
    EntityType.EXPENSES: (
        FieldRule("amount", "amount"),
        FieldRule("title", "text", placeholder="Recovered Expense"),
        FieldRule("category", "list"),
        FieldRule("for", "list"),
        FieldRule("date", "date"),
        FieldRule("cardId", "optional_text"),
    ),
    EntityType.INCOME: (
        FieldRule("amount", "amount"),
        FieldRule("cardId", "text", placeholder="unknown"),
        FieldRule("date", "date"),
        FieldRule("source", "text", placeholder="Recovered Income"),
        FieldRule("category", "text", placeholder="other"),
        FieldRule("notes", "optional_text"),
    ),
    EntityType.CATEGORIES: _category_rules("expense"),
    EntityType.INCOME_CATEGORIES: _category_rules("income"),
    EntityType.CARDS: (FieldRule("name", "text", placeholder="Recovered Card"),),
    EntityType.FOR_VALUES: (
        FieldRule("value", "text", placeholder="Recovered Value"),
    ),
}

_STATUS_VALUES = {s.value for s in SyncStatus}


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _check_field(rule: FieldRule, record: dict[str, Any]) -> str | None:
    """Return an error message if the field breaks its rule."""
    value = record.get(rule.name)

    if rule.kind == "amount":
        if not _is_number(value) or value < 0:
            return f"Invalid {rule.name}"
    elif rule.kind == "text":
        if not _is_text(value):
            return f"Missing {rule.name}"
    elif rule.kind == "list":
        if not isinstance(value, list):
            return f"Invalid {rule.name} format"
    elif rule.kind == "date":
        if not _is_number(value) or value <= 0:
            return f"Invalid {rule.name}"
    elif rule.kind == "choice":
        if value not in rule.choices:
            return f"Invalid {rule.name}"
    elif rule.kind == "optional_text":
        if value is not None and not isinstance(value, str):
            return f"Invalid {rule.name}"
    return None


def _check_meta(record: dict[str, Any]) -> list[str]:
    errors = []
    if not _is_text(record.get("id")):
        errors.append("Missing id")
    if not _is_text(record.get("localId")):
        errors.append("Missing localId")

    status = record.get("syncStatus")
    if status not in _STATUS_VALUES:
        errors.append("Invalid syncStatus")
    elif status == SyncStatus.SYNCED.value and not record.get("cloudId"):
        errors.append("Synced record has no cloudId")
    elif status == SyncStatus.CONFLICT.value and not record.get("cloudId"):
        errors.append("Conflict record has no cloudId")

    version = record.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        errors.append("Invalid version")

    for key in ("createdAt", "updatedAt"):
        if not _is_number(record.get(key)) or record[key] <= 0:
            errors.append(f"Invalid {key}")
    return errors


def validate_entity(
    entity: "LocalEntity | dict[str, Any]", entity_type: "EntityType | str"
) -> ValidationResult:
    """Check a record's structure against its entity type.

    Args:
        entity: A LocalEntity or a flat record dict.
        entity_type: Entity type the record belongs to.

    Returns:
        ValidationResult listing every problem found.
    """
    entity_type = coerce_entity_type(entity_type)
    record = entity.to_dict() if isinstance(entity, LocalEntity) else entity

    if not isinstance(record, dict):
        return ValidationResult(is_valid=False, errors=["Record is not an object"])

    errors = _check_meta(record)
    for rule in ENTITY_RULES[entity_type]:
        error = _check_field(rule, record)
        if error:
            errors.append(error)

    return ValidationResult(is_valid=not errors, errors=errors)


def validate_domain_data(
    data: dict[str, Any], entity_type: "EntityType | str"
) -> ValidationResult:
    """Check only the domain fields of a record, as supplied by a caller."""
    entity_type = coerce_entity_type(entity_type)
    errors = [
        error
        for error in (_check_field(rule, data) for rule in ENTITY_RULES[entity_type])
        if error
    ]
    return ValidationResult(is_valid=not errors, errors=errors)


def _repair_field(rule: FieldRule, value: Any, timestamp: int) -> Any:
    if rule.kind == "amount":
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                return 0
        if not _is_number(value):
            return 0
        return max(value, 0)
    if rule.kind == "list":
        if isinstance(value, str) and value:
            return [value]
        return []
    if rule.kind == "date":
        return timestamp
    if rule.kind == "optional_text":
        return None
    return rule.placeholder


def attempt_repair(
    entity: dict[str, Any], entity_type: "EntityType | str"
) -> dict[str, Any]:
    """Fill in missing or invalid fields with safe defaults.

    Valid fields are never touched. A record flagged as synced without a
    cloud id is put back to pending so it will be pushed again.

    Returns:
        A new record dict; the input is not modified.
    """
    entity_type = coerce_entity_type(entity_type)
    record = dict(entity) if isinstance(entity, dict) else {}
    timestamp = now_ms()

    if not _is_text(record.get("id")):
        record["id"] = new_id(ID_PREFIXES[entity_type])
    if not _is_text(record.get("localId")):
        record["localId"] = new_id("local")

    version = record.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        record["version"] = 1
    if not _is_number(record.get("createdAt")) or record["createdAt"] <= 0:
        record["createdAt"] = timestamp
    if not _is_number(record.get("updatedAt")) or record["updatedAt"] <= 0:
        record["updatedAt"] = timestamp

    status = record.get("syncStatus")
    if status not in _STATUS_VALUES:
        record["syncStatus"] = SyncStatus.PENDING.value
    elif status == SyncStatus.SYNCED.value and not record.get("cloudId"):
        record["syncStatus"] = SyncStatus.PENDING.value
    elif status == SyncStatus.CONFLICT.value and not record.get("cloudId"):
        record["syncStatus"] = SyncStatus.FAILED.value

    for rule in ENTITY_RULES[entity_type]:
        if _check_field(rule, record):
            repaired = _repair_field(rule, record.get(rule.name), timestamp)
            if repaired is None:
                record.pop(rule.name, None)
            else:
                record[rule.name] = repaired

    return record
