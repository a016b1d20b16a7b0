"""
Catalog data model shared by sync, allocation and reporting.

Documents in the store are plain dicts with camelCase fields; these frozen
dataclasses are the in-process view of them. ``CatalogSnapshot`` is the
derived, advisory view Catalog Sync publishes: availability shown there may
lag the store and is never used to decide a claim.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


# Column widths of the backing tables
ID_MAX_LENGTH = 64
NAME_MAX_LENGTH = 200
EMAIL_MAX_LENGTH = 320
PHONE_MAX_LENGTH = 50
ITEM_NAME_MAX_LENGTH = 500


def _isoformat(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass(frozen=True)
class Claimant:
    """Contact details of the participant submitting a claim."""
    name: str
    email: str
    phone: str


@dataclass(frozen=True)
class ItemRef:
    """An item as named by whoever references it: id plus display name."""
    id: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class CatalogItem:
    id: str
    name: str
    category_id: str

    def ref(self) -> ItemRef:
        return ItemRef(self.id, self.name)


@dataclass(frozen=True)
class CatalogCategory:
    id: str
    name: str
    items: Tuple[CatalogItem, ...] = ()


@dataclass(frozen=True)
class ClaimRecord:
    """The "taken" document for one item."""
    by_name: str
    by_email: str
    by_phone: str
    item_name: str
    at: Optional[datetime]

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> "ClaimRecord":
        return cls(
            by_name=data.get("byName", ""),
            by_email=data.get("byEmail", ""),
            by_phone=data.get("byPhone", ""),
            item_name=data.get("itemName", ""),
            at=data.get("at"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "byName": self.by_name,
            "byEmail": self.by_email,
            "byPhone": self.by_phone,
            "itemName": self.item_name,
            "at": self.at,
        }

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form of the document."""
        doc = self.to_document()
        doc["at"] = _isoformat(doc["at"])
        return doc


@dataclass(frozen=True)
class Pledge:
    """Audit record of one successful submission."""
    id: str
    name: str
    email: str
    phone: str
    items: Tuple[ItemRef, ...]
    created_at: Optional[datetime]

    @classmethod
    def from_document(cls, pledge_id: str, data: Mapping[str, Any]) -> "Pledge":
        return cls(
            id=pledge_id,
            name=data.get("name", ""),
            email=data.get("email", ""),
            phone=data.get("phone", ""),
            items=tuple(ItemRef(i.get("id", ""), i.get("name", "")) for i in data.get("items") or []),
            created_at=data.get("createdAt"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "items": [item.to_dict() for item in self.items],
            "createdAt": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        doc = self.to_document()
        doc["id"] = self.id
        doc["createdAt"] = _isoformat(doc["createdAt"])
        return doc


@dataclass(frozen=True)
class CatalogSnapshot:
    """
    Immutable merged view: categories with their items, joined with claims.

    ``taken`` may contain claims for items not (or no longer) listed in any
    category; they still count as claims but are excluded from the stats.
    """
    categories: Tuple[CatalogCategory, ...] = ()
    taken: Mapping[str, ClaimRecord] = field(default_factory=lambda: MappingProxyType({}))

    def find_item(self, item_id: str) -> Optional[CatalogItem]:
        for category in self.categories:
            for item in category.items:
                if item.id == item_id:
                    return item
        return None

    def is_taken(self, item_id: str) -> bool:
        return item_id in self.taken

    def stats(self) -> Dict[str, int]:
        """Listed, taken and remaining item counts."""
        listed = {item.id for category in self.categories for item in category.items}
        taken_count = sum(1 for item_id in self.taken if item_id in listed)
        return {
            "totalItems": len(listed),
            "takenCount": taken_count,
            "remaining": max(0, len(listed) - taken_count),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "categories": [
                {
                    "id": c.id,
                    "name": c.name,
                    "items": [{"id": i.id, "name": i.name} for i in c.items],
                }
                for c in self.categories
            ],
            "takenMap": {item_id: claim.to_dict() for item_id, claim in self.taken.items()},
            "stats": self.stats(),
        }
