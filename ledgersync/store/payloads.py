"""Typed operation payloads, one per entity type.

Queued operations carry a snapshot of the entity's domain fields. Each
entity type maps to a payload class so that a payload never has to be
interpreted as an untyped bag of fields.
"""

from dataclasses import dataclass, field
from typing import Any, Union


def _as_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return list(value)
    if value in (None, ""):
        return []
    return [value]


@dataclass
class ExpensePayload:
    amount: float = 0
    title: str = ""
    category: list[str] = field(default_factory=list)
    for_values: list[str] = field(default_factory=list)
    date: int = 0
    card_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "amount": self.amount,
            "title": self.title,
            "category": list(self.category),
            "for": list(self.for_values),
            "date": self.date,
        }
        if self.card_id is not None:
            data["cardId"] = self.card_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExpensePayload":
        return cls(
            amount=data.get("amount", 0),
            title=data.get("title", ""),
            category=_as_list(data.get("category")),
            for_values=_as_list(data.get("for")),
            date=data.get("date", 0),
            card_id=data.get("cardId"),
        )


@dataclass
class IncomePayload:
    amount: float = 0
    card_id: str = ""
    date: int = 0
    source: str = ""
    category: str = ""
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "amount": self.amount,
            "cardId": self.card_id,
            "date": self.date,
            "source": self.source,
            "category": self.category,
        }
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IncomePayload":
        return cls(
            amount=data.get("amount", 0),
            card_id=data.get("cardId", ""),
            date=data.get("date", 0),
            source=data.get("source", ""),
            category=data.get("category", ""),
            notes=data.get("notes"),
        )


@dataclass
class CategoryPayload:
    """Used for both expense categories and income categories."""

    name: str = ""
    type: str = "expense"

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CategoryPayload":
        return cls(name=data.get("name", ""), type=data.get("type", "expense"))


@dataclass
class CardPayload:
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CardPayload":
        return cls(name=data.get("name", ""))


@dataclass
class ForValuePayload:
    value: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ForValuePayload":
        return cls(value=data.get("value", ""))


Payload = Union[
    ExpensePayload, IncomePayload, CategoryPayload, CardPayload, ForValuePayload
]

# Keyed by EntityType value to avoid a circular import with models
PAYLOAD_TYPES: dict[str, type] = {
    "expenses": ExpensePayload,
    "income": IncomePayload,
    "categories": CategoryPayload,
    "cards": CardPayload,
    "forValues": ForValuePayload,
    "incomeCategories": CategoryPayload,
}


def payload_from_dict(entity_type: str, data: dict[str, Any]) -> Payload:
    """Build the payload class registered for ``entity_type``.

    Raises:
        ValueError: If the entity type has no payload class.
    """
    payload_cls = PAYLOAD_TYPES.get(entity_type)
    if payload_cls is None:
        raise ValueError(f"No payload type for entity type: {entity_type}")
    return payload_cls.from_dict(data)
