"""
Catalog administration.

Admin-only writes to the catalog: adding a category with its items,
removing a category, and releasing a claimed item. All of them go through a
store transaction, so connected Catalog Sync sessions see the change through
their subscriptions like any other write.
"""

import uuid
from types import MappingProxyType
from typing import Any, Dict, List

from sevaboard.services.catalog_models import (
    ITEM_NAME_MAX_LENGTH,
    NAME_MAX_LENGTH,
    CatalogCategory,
    CatalogItem,
    CatalogSnapshot,
    ClaimRecord,
)
from sevaboard.services.store import (
    CatalogStore,
    Transaction,
    categories_query,
    category_ref,
    item_ref,
    items_query,
    taken_query,
    taken_ref,
)


class CatalogAdminError(Exception):
    """Raised when an admin catalog operation is rejected."""
    pass


def parse_item_names(items_csv: str) -> List[str]:
    """
    Split a comma-separated item list.

    Names are trimmed, empty entries dropped, and later duplicates under
    case-insensitive comparison discarded.
    """
    names: List[str] = []
    seen = set()
    for raw in (items_csv or "").split(","):
        name = raw.strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        names.append(name)
    return names


class CatalogAdminService:
    """Service for administrative catalog changes."""

    def __init__(self, store: CatalogStore):
        self.store = store

    async def add_category(self, name: str, items_csv: str = "") -> Dict[str, Any]:
        """
        Create a category and its items in one transaction.

        Args:
            name: Category name (required)
            items_csv: Comma-separated item names

        Returns:
            Dict with the new category id, name and created items

        Raises:
            CatalogAdminError: If the category name is blank or a name is too
                long for the catalog columns
        """
        category_name = (name or "").strip()
        if not category_name:
            raise CatalogAdminError("Category name is required")
        if len(category_name) > NAME_MAX_LENGTH:
            raise CatalogAdminError(f"Category name is longer than {NAME_MAX_LENGTH} characters")

        category_id = uuid.uuid4().hex
        names = parse_item_names(items_csv)
        too_long = [n for n in names if len(n) > ITEM_NAME_MAX_LENGTH]
        if too_long:
            raise CatalogAdminError(
                f"Item name is longer than {ITEM_NAME_MAX_LENGTH} characters: {too_long[0][:40]}..."
            )
        items = [{"id": uuid.uuid4().hex, "name": n} for n in names]

        async def write(trx: Transaction) -> None:
            trx.set(category_ref(category_id), {"name": category_name})
            for item in items:
                trx.set(item_ref(category_id, item["id"]), {"name": item["name"]})

        await self.store.run_transaction(write)
        return {"id": category_id, "name": category_name, "items": items}

    async def remove_category(self, category_id: str) -> int:
        """
        Delete a category and all of its items.

        Claims on those items are left in place.

        Returns:
            Number of items removed

        Raises:
            CatalogAdminError: If the category does not exist
        """
        async def write(trx: Transaction) -> int:
            if await trx.get(category_ref(category_id)) is None:
                raise CatalogAdminError(f"Category not found: {category_id}")
            items = await trx.list_documents(items_query(category_id))
            for item in items:
                trx.delete(item_ref(category_id, item.id))
            trx.delete(category_ref(category_id))
            return len(items)

        return await self.store.run_transaction(write)

    async def release_item(self, item_id: str) -> Dict[str, Any]:
        """
        Delete the claim on one item so it becomes available again.

        Pledges are audit records and are not touched.

        Returns:
            The removed claim document

        Raises:
            CatalogAdminError: If the item is not claimed
        """
        async def write(trx: Transaction) -> Dict[str, Any]:
            claim = await trx.get(taken_ref(item_id))
            if claim is None:
                raise CatalogAdminError(f"Item is not taken: {item_id}")
            trx.delete(taken_ref(item_id))
            return claim

        return await self.store.run_transaction(write)

    async def load_snapshot(self) -> CatalogSnapshot:
        """One-shot read of the catalog in the same shape Catalog Sync publishes."""
        categories = []
        for category in await self.store.list_documents(categories_query()):
            items = [
                CatalogItem(d.id, d.data.get("name", ""), category.id)
                for d in await self.store.list_documents(items_query(category.id))
            ]
            items.sort(key=lambda item: item.name.lower())
            categories.append(
                CatalogCategory(category.id, category.data.get("name", ""), tuple(items))
            )
        taken = {
            d.id: ClaimRecord.from_document(d.data)
            for d in await self.store.list_documents(taken_query())
        }
        return CatalogSnapshot(categories=tuple(categories), taken=MappingProxyType(taken))
