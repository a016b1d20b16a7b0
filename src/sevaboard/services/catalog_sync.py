"""
Catalog Sync: live, normalized view of categories, items and claims.

A CatalogSync session holds 1 + N + 1 store subscriptions: the category
list, one item list per current category, and the claim collection. Each
delivery updates the normalized state and republishes an immutable
``CatalogSnapshot`` to observers.

Subscription handles live in ``self._subscriptions`` (key -> release). The
category listener reconciles that mapping against the current category ids
so per-category subscriptions are opened and released as categories come
and go, never duplicated for one that is still present.

Usage:
    async with CatalogSync(store) as sync:
        sync.add_observer(queue.put_nowait)
        ...
"""

import logging
from types import MappingProxyType
from typing import Callable, Dict, List

from sevaboard.services.catalog_models import (
    CatalogCategory,
    CatalogItem,
    CatalogSnapshot,
    ClaimRecord,
)
from sevaboard.services.store import (
    CatalogStore,
    DocumentSnapshot,
    Release,
    categories_query,
    items_query,
    taken_query,
)


logger = logging.getLogger(__name__)

SnapshotObserver = Callable[[CatalogSnapshot], None]

CATEGORIES_KEY = "categories"
TAKEN_KEY = "taken"
ITEMS_KEY_PREFIX = "items:"


class CatalogSyncError(Exception):
    """Raised when a sync session is used out of lifecycle order."""
    pass


def items_key(category_id: str) -> str:
    return f"{ITEMS_KEY_PREFIX}{category_id}"


class CatalogSync:
    """One client's live subscription session over the catalog store."""

    def __init__(self, store: CatalogStore):
        self.store = store
        self._subscriptions: Dict[str, Release] = {}
        self._observers: List[SnapshotObserver] = []
        self._active = False

        self._categories: List[Dict[str, str]] = []
        self._items_by_category: Dict[str, List[CatalogItem]] = {}
        self._taken: Dict[str, ClaimRecord] = {}
        self._snapshot = CatalogSnapshot()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._active

    @property
    def snapshot(self) -> CatalogSnapshot:
        """Latest published snapshot (empty until the first delivery)."""
        return self._snapshot

    @property
    def subscription_keys(self) -> List[str]:
        return sorted(self._subscriptions)

    def activate(self) -> None:
        """Open the category and claim subscriptions."""
        if self._active:
            raise CatalogSyncError("CatalogSync is already active")
        self._active = True
        try:
            self._subscriptions[CATEGORIES_KEY] = self.store.subscribe(
                categories_query(),
                self._on_categories,
                self._error_handler(CATEGORIES_KEY),
            )
            self._subscriptions[TAKEN_KEY] = self.store.subscribe(
                taken_query(),
                self._on_taken,
                self._error_handler(TAKEN_KEY),
            )
        except Exception:
            self.deactivate()
            raise

    def deactivate(self) -> None:
        """
        Release every subscription this session acquired.

        Safe to call more than once. No snapshot is published after this
        returns.
        """
        self._active = False
        subscriptions, self._subscriptions = self._subscriptions, {}
        for key, release in subscriptions.items():
            try:
                release()
            except Exception:
                logger.exception("Failed to release subscription %s", key)

    async def __aenter__(self) -> "CatalogSync":
        self.activate()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.deactivate()

    def add_observer(self, observer: SnapshotObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: SnapshotObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    # ------------------------------------------------------------------
    # Subscription callbacks
    # ------------------------------------------------------------------

    def _error_handler(self, key: str) -> Callable[[Exception], None]:
        def handle(error: Exception) -> None:
            logger.error("Catalog subscription %s failed: %s", key, error)
        return handle

    def _on_categories(self, docs: List[DocumentSnapshot]) -> None:
        if not self._active:
            return
        self._categories = [{"id": d.id, "name": d.data.get("name", "")} for d in docs]
        self._reconcile_item_subscriptions()
        self._publish()

    def _on_items(self, category_id: str, docs: List[DocumentSnapshot]) -> None:
        if not self._active or items_key(category_id) not in self._subscriptions:
            return
        items = [CatalogItem(d.id, d.data.get("name", ""), category_id) for d in docs]
        items.sort(key=lambda item: (item.name or "").lower())
        self._items_by_category[category_id] = items
        self._publish()

    def _on_taken(self, docs: List[DocumentSnapshot]) -> None:
        if not self._active:
            return
        self._taken = {d.id: ClaimRecord.from_document(d.data) for d in docs}
        self._publish()

    def _reconcile_item_subscriptions(self) -> None:
        wanted = {c["id"] for c in self._categories}
        live = {
            key[len(ITEMS_KEY_PREFIX):]
            for key in self._subscriptions
            if key.startswith(ITEMS_KEY_PREFIX)
        }

        for category_id in live - wanted:
            release = self._subscriptions.pop(items_key(category_id))
            release()
            self._items_by_category.pop(category_id, None)
            logger.debug("Released item subscription for removed category %s", category_id)

        # Keep category order so subscriptions open in display order
        for category in self._categories:
            category_id = category["id"]
            if items_key(category_id) in self._subscriptions:
                continue
            self._subscriptions[items_key(category_id)] = self.store.subscribe(
                items_query(category_id),
                lambda docs, cid=category_id: self._on_items(cid, docs),
                self._error_handler(items_key(category_id)),
            )

    # ------------------------------------------------------------------
    # Snapshot publication
    # ------------------------------------------------------------------

    def _build_snapshot(self) -> CatalogSnapshot:
        categories = tuple(
            CatalogCategory(
                id=c["id"],
                name=c["name"],
                items=tuple(self._items_by_category.get(c["id"], ())),
            )
            for c in self._categories
        )
        return CatalogSnapshot(categories=categories, taken=MappingProxyType(dict(self._taken)))

    def _publish(self) -> None:
        self._snapshot = self._build_snapshot()
        for observer in list(self._observers):
            try:
                observer(self._snapshot)
            except Exception:
                logger.exception("Catalog snapshot observer failed")

