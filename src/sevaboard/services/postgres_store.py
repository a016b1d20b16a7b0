"""
PostgreSQL-backed catalog store.

Transactions run at SERIALIZABLE isolation so PostgreSQL's optimistic
conflict detection plays the role of the document store's read-set
validation: when two transactions read and write the same claim row, one of
them fails with a serialization failure (or a unique violation) and the
whole body is re-executed against fresh data.

Change propagation uses LISTEN/NOTIFY. Every writing transaction issues
``pg_notify('catalog_changes', <collection path>)`` before commit; PostgreSQL
delivers notifications only once the transaction commits, so subscribers
never reload state that was rolled back. A single asyncpg connection listens
on the channel and fans each notification out to the in-process
subscriptions for that collection, which reload the collection and deliver a
full snapshot.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

import asyncpg
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sevaboard.config import settings
from sevaboard.database.repositories import (
    CategoryRepository,
    ItemRepository,
    TakenRepository,
    PledgeRepository,
)
from sevaboard.services.store import (
    CATEGORIES,
    ITEMS,
    PLEDGES,
    TAKEN,
    CatalogStore,
    CollectionQuery,
    DocumentRef,
    DocumentSnapshot,
    ErrorListener,
    Release,
    SnapshotListener,
    StoreError,
    StorePermissionError,
    StoreUnavailableError,
    Transaction,
    TransactionContentionError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

CHANGE_CHANNEL = "catalog_changes"

# SQLSTATEs that mean "another transaction got there first, run again"
RETRYABLE_SQLSTATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "23505",  # unique_violation
}
PERMISSION_SQLSTATES = {"42501"}  # insufficient_privilege


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code
    return None


def translate_error(error: Exception) -> StoreError:
    """Map a database driver error onto the store error taxonomy."""
    if isinstance(error, DBAPIError):
        code = _sqlstate(error)
        if code in RETRYABLE_SQLSTATES:
            return TransactionContentionError(f"Transaction aborted by concurrent update ({code})")
        if code in PERMISSION_SQLSTATES:
            return StorePermissionError(f"Permission denied: {error.orig}")
        if isinstance(error, (OperationalError, InterfaceError)) or error.connection_invalidated:
            return StoreUnavailableError(f"Database unavailable: {error.orig}")
        return StoreError(f"Database error: {error.orig}")
    if isinstance(error, (OSError, asyncio.TimeoutError)):
        return StoreUnavailableError(f"Database unreachable: {error}")
    return StoreError(str(error))


def _parse_path(path: Sequence[str]):
    """Return (kind, category_id) for a collection path."""
    if tuple(path) == (CATEGORIES,):
        return CATEGORIES, None
    if len(path) == 3 and path[0] == CATEGORIES and path[2] == ITEMS:
        return ITEMS, path[1]
    if tuple(path) == (TAKEN,):
        return TAKEN, None
    if tuple(path) == (PLEDGES,):
        return PLEDGES, None
    raise StoreError(f"Unknown collection: {'/'.join(path)}")


async def load_collection(session: AsyncSession, query: CollectionQuery) -> List[DocumentSnapshot]:
    """Read a whole collection as document snapshots."""
    kind, category_id = _parse_path(query.path)
    if kind == CATEGORIES:
        rows = await CategoryRepository(session).get_all()
        return [DocumentSnapshot(r.id, r.to_document()) for r in rows]
    if kind == ITEMS:
        rows = await ItemRepository(session).get_by_category(category_id)
        return [DocumentSnapshot(r.id, r.to_document()) for r in rows]
    if kind == TAKEN:
        rows = await TakenRepository(session).get_all()
        return [DocumentSnapshot(r.item_id, r.to_document()) for r in rows]
    rows = await PledgeRepository(session).get_all(newest_first=query.descending)
    return [DocumentSnapshot(r.id, r.to_document()) for r in rows]


class PostgresTransaction(Transaction):
    """Transaction bound to one SQLAlchemy session."""

    def __init__(self, session: AsyncSession):
        super().__init__()
        self.session = session

    async def _read(self, refs: Sequence[DocumentRef]) -> List[Optional[Dict[str, Any]]]:
        found: Dict[DocumentRef, Dict[str, Any]] = {}

        # One query per collection
        by_collection: Dict[tuple, List[DocumentRef]] = {}
        for ref in refs:
            by_collection.setdefault(ref.collection, []).append(ref)

        for collection, group in by_collection.items():
            kind, category_id = _parse_path(collection)
            ids = [ref.id for ref in group]
            if kind == CATEGORIES:
                rows = await CategoryRepository(self.session).get_by_ids(ids)
            elif kind == ITEMS:
                rows = await ItemRepository(self.session).get_by_ids(category_id, ids)
            elif kind == TAKEN:
                rows = await TakenRepository(self.session).get_by_item_ids(ids)
            else:
                rows = await PledgeRepository(self.session).get_by_ids(ids)
            for ref in group:
                if ref.id in rows:
                    found[ref] = rows[ref.id].to_document()

        return [found.get(ref) for ref in refs]

    async def _list(self, query: CollectionQuery) -> List[DocumentSnapshot]:
        # SERIALIZABLE predicate locks cover rows inserted into the range later
        return await load_collection(self.session, query)

    async def apply_writes(self) -> None:
        """Flush buffered writes and queue change notifications."""
        for op, ref, data in self.writes:
            kind, category_id = _parse_path(ref.collection)
            if kind == CATEGORIES:
                repo = CategoryRepository(self.session)
                if op == "set":
                    await repo.upsert(ref.id, data)
                else:
                    await repo.delete(ref.id)
            elif kind == ITEMS:
                repo = ItemRepository(self.session)
                if op == "set":
                    await repo.upsert(category_id, ref.id, data)
                else:
                    await repo.delete(category_id, ref.id)
            elif kind == TAKEN:
                repo = TakenRepository(self.session)
                if op == "set":
                    await repo.upsert(ref.id, data)
                else:
                    await repo.delete(ref.id)
            else:
                if op != "set":
                    raise StoreError("Pledges are append-only")
                await PledgeRepository(self.session).create(ref.id, data)

        for key in self.touched_collections:
            await self.session.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": CHANGE_CHANNEL, "payload": key},
            )


class _Subscription:
    """One live listener over one collection."""

    def __init__(self, query: CollectionQuery, on_snapshot: SnapshotListener, on_error: Optional[ErrorListener]):
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True
        self.dirty = False
        self.task: Optional[asyncio.Task] = None


class PostgresCatalogStore(CatalogStore):
    """
    Catalog store over PostgreSQL.

    Call ``start()`` once the event loop is running to open the LISTEN
    connection; without it, changes are only fanned out to subscriptions in
    this process.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        listen_dsn: Optional[str] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.listen_dsn = listen_dsn
        self.max_attempts = max_attempts or settings.TRANSACTION_MAX_ATTEMPTS
        self.retry_delay = settings.TRANSACTION_RETRY_DELAY if retry_delay is None else retry_delay
        self._subscriptions: Dict[str, Set[_Subscription]] = {}
        self._listener: Optional[asyncpg.Connection] = None

    async def start(self) -> None:
        """Open the LISTEN connection for cross-process change propagation."""
        if self._listener is not None or not self.listen_dsn:
            return
        try:
            self._listener = await asyncpg.connect(self.listen_dsn)
            await self._listener.add_listener(CHANGE_CHANNEL, self._on_notification)
        except (OSError, asyncpg.PostgresError) as e:
            raise translate_error(e) from e
        logger.info("Listening for catalog changes on channel %s", CHANGE_CHANNEL)

    async def close(self) -> None:
        """Stop listening and cancel in-flight snapshot reloads."""
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                self._release(sub)
        if self._listener is not None:
            listener, self._listener = self._listener, None
            await listener.remove_listener(CHANGE_CHANNEL, self._on_notification)
            await listener.close()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        query: CollectionQuery,
        on_snapshot: SnapshotListener,
        on_error: Optional[ErrorListener] = None,
    ) -> Release:
        sub = _Subscription(query, on_snapshot, on_error)
        self._subscriptions.setdefault(query.key, set()).add(sub)
        self._schedule(sub)
        return lambda: self._release(sub)

    def _release(self, sub: _Subscription) -> None:
        sub.active = False
        subs = self._subscriptions.get(sub.query.key)
        if subs is not None:
            subs.discard(sub)
            if not subs:
                del self._subscriptions[sub.query.key]
        if sub.task is not None and not sub.task.done():
            sub.task.cancel()

    def _on_notification(self, connection, pid, channel, payload) -> None:
        self._publish(payload)

    def _publish(self, collection_key: str) -> None:
        for sub in list(self._subscriptions.get(collection_key, ())):
            self._schedule(sub)

    def _schedule(self, sub: _Subscription) -> None:
        # Coalesce: a reload already running picks the change up on its next pass
        if sub.task is not None and not sub.task.done():
            sub.dirty = True
            return
        sub.task = asyncio.get_running_loop().create_task(self._deliver(sub))

    async def _deliver(self, sub: _Subscription) -> None:
        while sub.active:
            sub.dirty = False
            try:
                docs = await self.list_documents(sub.query)
            except StoreError as e:
                if sub.active and sub.on_error is not None:
                    sub.on_error(e)
                return
            if not sub.active:
                return
            sub.on_snapshot(docs)
            if not sub.dirty:
                return

    # ------------------------------------------------------------------
    # Reads and transactions
    # ------------------------------------------------------------------

    async def list_documents(self, query: CollectionQuery) -> List[DocumentSnapshot]:
        try:
            async with self.session_factory() as session:
                return await load_collection(session, query)
        except (DBAPIError, OSError, asyncio.TimeoutError) as e:
            raise translate_error(e) from e

    async def run_transaction(self, body: Callable[[Transaction], Awaitable[T]]) -> T:
        last_error: Optional[StoreError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.session_factory() as session:
                    await session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
                    trx = PostgresTransaction(session)
                    result = await body(trx)
                    await trx.apply_writes()
                    await session.commit()
            except (DBAPIError, OSError, asyncio.TimeoutError) as e:
                error = translate_error(e)
                if not isinstance(error, TransactionContentionError):
                    raise error from e
                last_error = error
                if attempt < self.max_attempts:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.info(
                        "Transaction contention (attempt %d/%d), retrying in %.3fs",
                        attempt, self.max_attempts, delay,
                    )
                    await asyncio.sleep(delay)
                continue

            if self._listener is None:
                for key in trx.touched_collections:
                    self._publish(key)
            return result

        raise TransactionContentionError(
            f"Transaction failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error
