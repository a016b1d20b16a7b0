"""
Catalog store contract.

The catalog lives in an external transactional document store. This module
defines the narrow interface the rest of the service consumes:

- collection-scoped subscriptions delivering full-collection snapshots
- read-then-write transactions (document and whole-collection reads),
  re-run by the store on contention
- one-shot collection reads for admin and reporting views

Collections are addressed by path, Firestore style:

    categories                     category documents
    categories/{categoryId}/items  items of one category
    taken                          claim records, keyed by item id
    pledges                        submission audit records
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar


CATEGORIES = "categories"
ITEMS = "items"
TAKEN = "taken"
PLEDGES = "pledges"

T = TypeVar("T")


class StoreError(Exception):
    """Base exception for catalog store failures."""
    pass


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached."""
    pass


class StorePermissionError(StoreError):
    """Raised when the store rejects an operation for lack of privileges."""
    pass


class TransactionContentionError(StoreError):
    """Raised when a transaction keeps losing to concurrent writers and the retry budget is spent."""
    pass


class TransactionStateError(StoreError):
    """Raised when a transaction is used out of order (a read after a write)."""
    pass


@dataclass(frozen=True)
class DocumentRef:
    """Address of a single document: collection path plus document id."""
    collection: Tuple[str, ...]
    id: str

    @property
    def collection_key(self) -> str:
        return "/".join(self.collection)


@dataclass(frozen=True)
class CollectionQuery:
    """A whole-collection read, optionally ordered by one field."""
    path: Tuple[str, ...]
    order_by: Optional[str] = None
    descending: bool = False

    @property
    def key(self) -> str:
        return "/".join(self.path)


@dataclass(frozen=True)
class DocumentSnapshot:
    """One document as delivered by a read or a subscription."""
    id: str
    data: Mapping[str, Any] = field(default_factory=dict)


SnapshotListener = Callable[[List[DocumentSnapshot]], None]
ErrorListener = Callable[[Exception], None]
Release = Callable[[], None]


def categories_query() -> CollectionQuery:
    return CollectionQuery((CATEGORIES,), order_by="name")


def items_query(category_id: str) -> CollectionQuery:
    return CollectionQuery((CATEGORIES, category_id, ITEMS), order_by="name")


def taken_query() -> CollectionQuery:
    return CollectionQuery((TAKEN,))


def pledges_query() -> CollectionQuery:
    return CollectionQuery((PLEDGES,), order_by="createdAt", descending=True)


def category_ref(category_id: str) -> DocumentRef:
    return DocumentRef((CATEGORIES,), category_id)


def item_ref(category_id: str, item_id: str) -> DocumentRef:
    return DocumentRef((CATEGORIES, category_id, ITEMS), item_id)


def taken_ref(item_id: str) -> DocumentRef:
    return DocumentRef((TAKEN,), item_id)


def pledge_ref(pledge_id: str) -> DocumentRef:
    return DocumentRef((PLEDGES,), pledge_id)


class Transaction(ABC):
    """
    Read-then-write unit of work handed to a transaction body.

    All reads must happen before the first write. Writes are buffered and
    only applied when the store commits, so an aborted or retried body leaves
    nothing behind.
    """

    def __init__(self):
        self.writes: List[Tuple[str, DocumentRef, Optional[Dict[str, Any]]]] = []

    @abstractmethod
    async def _read(self, refs: Sequence[DocumentRef]) -> List[Optional[Dict[str, Any]]]:
        """Fetch documents in ``refs`` order; None for missing ones."""

    @abstractmethod
    async def _list(self, query: CollectionQuery) -> List[DocumentSnapshot]:
        """Fetch a whole collection as part of the read set."""

    async def get(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        """Read one document inside the transaction."""
        return (await self.get_all([ref]))[0]

    async def get_all(self, refs: Sequence[DocumentRef]) -> List[Optional[Dict[str, Any]]]:
        """Read several documents inside the transaction, preserving order."""
        if self.writes:
            raise TransactionStateError("Transaction reads must happen before writes")
        if not refs:
            return []
        return await self._read(refs)

    async def list_documents(self, query: CollectionQuery) -> List[DocumentSnapshot]:
        """Read a whole collection inside the transaction."""
        if self.writes:
            raise TransactionStateError("Transaction reads must happen before writes")
        return await self._list(query)

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        """Create or overwrite a document on commit."""
        self.writes.append(("set", ref, dict(data)))

    def delete(self, ref: DocumentRef) -> None:
        """Delete a document on commit (no-op if it does not exist)."""
        self.writes.append(("delete", ref, None))

    @property
    def touched_collections(self) -> List[str]:
        """Collection keys written by this transaction, in first-write order."""
        seen: List[str] = []
        for _, ref, _ in self.writes:
            if ref.collection_key not in seen:
                seen.append(ref.collection_key)
        return seen


class CatalogStore(ABC):
    """Interface of the external catalog store."""

    @abstractmethod
    def subscribe(
        self,
        query: CollectionQuery,
        on_snapshot: SnapshotListener,
        on_error: Optional[ErrorListener] = None,
    ) -> Release:
        """
        Start a live subscription over one collection.

        The listener receives the full collection once initially and again
        after every committed change to it. The returned release callable is
        synchronous: once it returns, the listener is never invoked again.
        """

    @abstractmethod
    async def run_transaction(self, body: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        Run ``body`` atomically and return its result.

        The body may be executed several times if concurrent writers
        invalidate its reads, so it must not have side effects outside the
        transaction. Exceptions raised by the body abort the transaction
        without retry and propagate unchanged.
        """

    @abstractmethod
    async def list_documents(self, query: CollectionQuery) -> List[DocumentSnapshot]:
        """One-shot read of a whole collection."""

    async def close(self) -> None:
        """Release store-held resources (connections, listeners)."""
        return None
