"""
Repository pattern for database operations.

Provides a thin abstraction over SQLAlchemy for the four catalog tables.
Writes are upserts so they carry document "set" semantics: the row ends up
holding exactly the given fields whether or not it existed before.
"""

from typing import Any, Dict, List, Sequence
from sqlalchemy import select, delete, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from sevaboard.database.models import Category, Item, Taken, Pledge


class CategoryRepository:
    """Repository for Category operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_all(self) -> List[Category]:
        """Get all categories ordered by name."""
        result = await self.session.execute(select(Category).order_by(Category.name, Category.id))
        return list(result.scalars().all())

    async def get_by_ids(self, category_ids: Sequence[str]) -> Dict[str, Category]:
        """Get categories keyed by id; missing ids are absent from the result."""
        result = await self.session.execute(select(Category).where(Category.id.in_(list(category_ids))))
        return {c.id: c for c in result.scalars().all()}

    async def upsert(self, category_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a category document."""
        stmt = pg_insert(Category).values(id=category_id, name=data["name"])
        stmt = stmt.on_conflict_do_update(
            index_elements=[Category.id],
            set_={"name": stmt.excluded.name},
        )
        await self.session.execute(stmt)

    async def delete(self, category_id: str) -> None:
        """Delete a category together with its items."""
        await self.session.execute(delete(Item).where(Item.category_id == category_id))
        await self.session.execute(delete(Category).where(Category.id == category_id))


class ItemRepository:
    """Repository for Item operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_category(self, category_id: str) -> List[Item]:
        """Get the items of one category ordered by name (case-insensitive)."""
        result = await self.session.execute(
            select(Item)
            .where(Item.category_id == category_id)
            .order_by(func.lower(Item.name), Item.id)
        )
        return list(result.scalars().all())

    async def get_by_ids(self, category_id: str, item_ids: Sequence[str]) -> Dict[str, Item]:
        """Get items of one category keyed by id."""
        result = await self.session.execute(
            select(Item).where(Item.category_id == category_id, Item.id.in_(list(item_ids)))
        )
        return {i.id: i for i in result.scalars().all()}

    async def upsert(self, category_id: str, item_id: str, data: Dict[str, Any]) -> None:
        """Create or replace an item document under ``category_id``."""
        stmt = pg_insert(Item).values(id=item_id, category_id=category_id, name=data["name"])
        stmt = stmt.on_conflict_do_update(
            index_elements=[Item.id],
            set_={"name": stmt.excluded.name, "category_id": stmt.excluded.category_id},
        )
        await self.session.execute(stmt)

    async def delete(self, category_id: str, item_id: str) -> None:
        """Delete one item."""
        await self.session.execute(
            delete(Item).where(Item.category_id == category_id, Item.id == item_id)
        )


class TakenRepository:
    """Repository for claim records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_all(self) -> List[Taken]:
        """Get every claim record."""
        result = await self.session.execute(select(Taken).order_by(Taken.item_id))
        return list(result.scalars().all())

    async def get_by_item_ids(self, item_ids: Sequence[str]) -> Dict[str, Taken]:
        """Get claim records keyed by item id; unclaimed ids are absent."""
        result = await self.session.execute(select(Taken).where(Taken.item_id.in_(list(item_ids))))
        return {t.item_id: t for t in result.scalars().all()}

    async def upsert(self, item_id: str, data: Dict[str, Any]) -> None:
        """Write a claim record from its document fields."""
        values = {
            "item_id": item_id,
            "by_name": data["byName"],
            "by_email": data["byEmail"],
            "by_phone": data["byPhone"],
            "item_name": data["itemName"],
            "at": data["at"],
        }
        stmt = pg_insert(Taken).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Taken.item_id],
            set_={k: getattr(stmt.excluded, k) for k in values if k != "item_id"},
        )
        await self.session.execute(stmt)

    async def delete(self, item_id: str) -> None:
        """Remove the claim record for one item, freeing it."""
        await self.session.execute(delete(Taken).where(Taken.item_id == item_id))


class PledgeRepository:
    """Repository for Pledge operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_all(self, newest_first: bool = True) -> List[Pledge]:
        """Get all pledges ordered by creation time."""
        order = Pledge.created_at.desc() if newest_first else Pledge.created_at.asc()
        result = await self.session.execute(select(Pledge).order_by(order, Pledge.id))
        return list(result.scalars().all())

    async def get_by_ids(self, pledge_ids: Sequence[str]) -> Dict[str, Pledge]:
        """Get pledges keyed by id."""
        result = await self.session.execute(select(Pledge).where(Pledge.id.in_(list(pledge_ids))))
        return {p.id: p for p in result.scalars().all()}

    async def create(self, pledge_id: str, data: Dict[str, Any]) -> None:
        """
        Insert a pledge.

        Pledges are append-only, so a second write under the same id is a
        unique violation rather than an overwrite.
        """
        await self.session.execute(
            pg_insert(Pledge).values(
                id=pledge_id,
                name=data["name"],
                email=data["email"],
                phone=data["phone"],
                items=list(data["items"]),
                created_at=data["createdAt"],
            )
        )
