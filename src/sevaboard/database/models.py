"""
SQLAlchemy models for the SevaBoard database.

Each table backs one document collection of the catalog store:

- categories              -> Category
- categories/{id}/items   -> Item (scoped by category_id)
- taken                   -> Taken (one claim record per item)
- pledges                 -> Pledge (append-only submission audit)

Columns are snake_case; ``to_document()`` returns the camelCase field names
that clients and the reporting view depend on.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.dialects.postgresql import JSONB


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Category(Base):
    """A named list of claimable items (e.g. "Sweets")."""
    __tablename__ = "categories"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(200), nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    items = relationship("Item", back_populates="category", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_categories_name', 'name'),
    )

    def to_document(self) -> Dict[str, Any]:
        return {"name": self.name}


class Item(Base):
    """
    A single claimable item inside a category.

    Names are unique per category (case-insensitive) only by way of the
    admin import path; the table does not enforce it.
    """
    __tablename__ = "items"

    id = Column(String(64), primary_key=True, default=_new_id)
    category_id = Column(String(64), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(500), nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    category = relationship("Category", back_populates="items")

    __table_args__ = (
        Index('ix_items_category_id', 'category_id'),
    )

    def to_document(self) -> Dict[str, Any]:
        return {"name": self.name, "categoryId": self.category_id}


class Taken(Base):
    """
    Claim record: its existence is what makes an item unavailable.

    Keyed by item id, so at most one row per item can exist. There is no
    foreign key to items: a claim outlives the item being removed from the
    catalog, which keeps the pledge audit trail consistent.
    """
    __tablename__ = "taken"

    item_id = Column(String(64), primary_key=True)
    by_name = Column(String(200), nullable=False)
    by_email = Column(String(320), nullable=False)
    by_phone = Column(String(50), nullable=False)
    item_name = Column(String(500), nullable=False)
    at = Column(DateTime(timezone=True), nullable=False)

    def to_document(self) -> Dict[str, Any]:
        return {
            "byName": self.by_name,
            "byEmail": self.by_email,
            "byPhone": self.by_phone,
            "itemName": self.item_name,
            "at": self.at,
        }


class Pledge(Base):
    """Immutable audit record of one successful submission."""
    __tablename__ = "pledges"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False)
    phone = Column(String(50), nullable=False)
    items = Column(JSONB, nullable=False)  # [{"id": ..., "name": ...}]
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('ix_pledges_created_at', 'created_at'),
        Index('ix_pledges_email', 'email'),
    )

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "items": list(self.items or []),
            "createdAt": self.created_at,
        }
