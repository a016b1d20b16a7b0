"""
Unit tests for the PostgreSQL catalog store.

The database is mocked: sessions are AsyncMocks and repositories are
patched, so these tests cover error translation, the retry loop and the
subscription fan-out without a running PostgreSQL.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from sevaboard.services.postgres_store import (
    CHANGE_CHANNEL,
    PostgresCatalogStore,
    PostgresTransaction,
    _parse_path,
    translate_error,
)
from sevaboard.services.store import (
    DocumentSnapshot,
    StoreError,
    StorePermissionError,
    StoreUnavailableError,
    TransactionContentionError,
    TransactionStateError,
    category_ref,
    items_query,
    pledge_ref,
    taken_query,
    taken_ref,
)


class DriverError(Exception):
    """Stand-in for a driver exception carrying a SQLSTATE."""

    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


def db_error(sqlstate, cls=DBAPIError):
    return cls("COMMIT", {}, DriverError("driver says no", sqlstate))


def session_factory(*sessions):
    """async_sessionmaker stand-in yielding the given sessions in order."""
    contexts = []
    for session in sessions:
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=session)
        context.__aexit__ = AsyncMock(return_value=False)
        contexts.append(context)
    return MagicMock(side_effect=contexts)


def mock_session():
    return AsyncMock(spec=AsyncSession)


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestTranslateError:
    """Test mapping of driver errors to store errors."""

    @pytest.mark.parametrize("sqlstate", ["40001", "40P01", "23505"])
    def test_retryable(self, sqlstate):
        assert isinstance(translate_error(db_error(sqlstate)), TransactionContentionError)

    def test_permission(self):
        assert isinstance(translate_error(db_error("42501")), StorePermissionError)

    def test_operational_is_unavailable(self):
        error = translate_error(db_error(None, cls=OperationalError))
        assert isinstance(error, StoreUnavailableError)

    def test_connection_refused(self):
        assert isinstance(translate_error(ConnectionRefusedError()), StoreUnavailableError)

    def test_other_database_error(self):
        error = translate_error(db_error("22001"))
        assert type(error) is StoreError

    def test_sqlstate_from_wrapped_cause(self):
        """The asyncpg adapter keeps the real exception as __cause__."""
        orig = Exception("wrapped")
        orig.__cause__ = DriverError("serialization failure", "40001")
        error = DBAPIError("COMMIT", {}, orig)

        assert isinstance(translate_error(error), TransactionContentionError)


class TestParsePath:
    def test_known_collections(self):
        assert _parse_path(("categories",)) == ("categories", None)
        assert _parse_path(("categories", "sweets", "items")) == ("items", "sweets")
        assert _parse_path(("taken",)) == ("taken", None)
        assert _parse_path(("pledges",)) == ("pledges", None)

    def test_unknown_collection(self):
        with pytest.raises(StoreError):
            _parse_path(("users",))


class TestPostgresTransaction:
    """Test reads and buffered writes of one transaction."""

    @pytest.mark.asyncio
    async def test_get_all_preserves_order_and_missing(self):
        row = MagicMock()
        row.to_document.return_value = {"byName": "Ravi"}
        with patch('sevaboard.services.postgres_store.TakenRepository') as repo_class:
            repo = AsyncMock()
            repo.get_by_item_ids.return_value = {"barfi": row}
            repo_class.return_value = repo

            trx = PostgresTransaction(mock_session())
            result = await trx.get_all([taken_ref("ladoo"), taken_ref("barfi")])

        assert result == [None, {"byName": "Ravi"}]
        repo.get_by_item_ids.assert_called_once_with(["ladoo", "barfi"])

    @pytest.mark.asyncio
    async def test_read_after_write_rejected(self):
        trx = PostgresTransaction(mock_session())
        trx.set(taken_ref("ladoo"), {"byName": "Asha"})

        with pytest.raises(TransactionStateError):
            await trx.get(taken_ref("barfi"))

    @pytest.mark.asyncio
    async def test_list_documents_reads_collection_in_session(self):
        row = MagicMock()
        row.id = "ladoo"
        row.to_document.return_value = {"name": "Ladoo"}
        session = mock_session()
        with patch('sevaboard.services.postgres_store.ItemRepository') as repo_class:
            repo = AsyncMock()
            repo.get_by_category.return_value = [row]
            repo_class.return_value = repo

            trx = PostgresTransaction(session)
            result = await trx.list_documents(items_query("sweets"))

        assert result == [DocumentSnapshot("ladoo", {"name": "Ladoo"})]
        repo_class.assert_called_once_with(session)
        repo.get_by_category.assert_called_once_with("sweets")

    @pytest.mark.asyncio
    async def test_list_after_write_rejected(self):
        trx = PostgresTransaction(mock_session())
        trx.delete(category_ref("sweets"))

        with pytest.raises(TransactionStateError):
            await trx.list_documents(items_query("sweets"))

    @pytest.mark.asyncio
    async def test_apply_writes_routes_to_repositories_and_notifies(self):
        session = mock_session()
        with patch('sevaboard.services.postgres_store.TakenRepository') as taken_class, \
             patch('sevaboard.services.postgres_store.PledgeRepository') as pledge_class:
            taken_repo = AsyncMock()
            pledge_repo = AsyncMock()
            taken_class.return_value = taken_repo
            pledge_class.return_value = pledge_repo

            trx = PostgresTransaction(session)
            trx.set(taken_ref("ladoo"), {"byName": "Asha"})
            trx.set(taken_ref("barfi"), {"byName": "Asha"})
            trx.set(pledge_ref("p1"), {"name": "Asha"})
            await trx.apply_writes()

        assert taken_repo.upsert.await_count == 2
        taken_repo.upsert.assert_any_call("ladoo", {"byName": "Asha"})
        pledge_repo.create.assert_called_once_with("p1", {"name": "Asha"})

        # One notification per touched collection
        payloads = [c.args[1]["payload"] for c in session.execute.call_args_list]
        assert payloads == ["taken", "pledges"]
        assert all(c.args[1]["channel"] == CHANGE_CHANNEL for c in session.execute.call_args_list)

    @pytest.mark.asyncio
    async def test_apply_writes_deletes(self):
        with patch('sevaboard.services.postgres_store.CategoryRepository') as repo_class:
            repo = AsyncMock()
            repo_class.return_value = repo

            trx = PostgresTransaction(mock_session())
            trx.delete(category_ref("sweets"))
            await trx.apply_writes()

        repo.delete.assert_called_once_with("sweets")

    @pytest.mark.asyncio
    async def test_pledges_are_append_only(self):
        trx = PostgresTransaction(mock_session())
        trx.delete(pledge_ref("p1"))

        with pytest.raises(StoreError):
            await trx.apply_writes()


class TestRunTransaction:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_commits_and_returns_result(self):
        session = mock_session()
        store = PostgresCatalogStore(session_factory(session), max_attempts=3, retry_delay=0)

        async def body(trx):
            return "done"

        assert await store.run_transaction(body) == "done"
        session.connection.assert_called_once_with(
            execution_options={"isolation_level": "SERIALIZABLE"}
        )
        session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_serialization_failure_reruns_body(self):
        first, second = mock_session(), mock_session()
        first.commit.side_effect = db_error("40001")
        store = PostgresCatalogStore(session_factory(first, second), max_attempts=3, retry_delay=0)
        calls = []

        async def body(trx):
            calls.append(trx.session)
            return len(calls)

        assert await store.run_transaction(body) == 2
        assert calls == [first, second]
        second.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_contention_budget_exhausted(self):
        sessions = [mock_session() for _ in range(3)]
        for session in sessions:
            session.commit.side_effect = db_error("40001")
        store = PostgresCatalogStore(session_factory(*sessions), max_attempts=3, retry_delay=0)

        async def body(trx):
            return None

        with pytest.raises(TransactionContentionError):
            await store.run_transaction(body)

        assert all(s.commit.await_count == 1 for s in sessions)

    @pytest.mark.asyncio
    async def test_body_exception_aborts_without_retry(self):
        session = mock_session()
        factory = session_factory(session, mock_session())
        store = PostgresCatalogStore(factory, max_attempts=3, retry_delay=0)

        async def body(trx):
            raise ValueError("conflict")

        with pytest.raises(ValueError):
            await store.run_transaction(body)

        assert factory.call_count == 1
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_unavailable_is_not_retried(self):
        session = mock_session()
        session.connection.side_effect = db_error(None, cls=OperationalError)
        factory = session_factory(session, mock_session())
        store = PostgresCatalogStore(factory, max_attempts=3, retry_delay=0)

        async def body(trx):
            return None

        with pytest.raises(StoreUnavailableError):
            await store.run_transaction(body)

        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_local_fan_out_without_listener(self):
        """Without a LISTEN connection, committed changes are published in-process."""
        store = PostgresCatalogStore(session_factory(mock_session()), max_attempts=1, retry_delay=0)
        store._publish = MagicMock()

        async def body(trx):
            trx.set(taken_ref("ladoo"), {"byName": "Asha"})

        with patch('sevaboard.services.postgres_store.TakenRepository') as repo_class:
            repo_class.return_value = AsyncMock()
            await store.run_transaction(body)

        store._publish.assert_called_once_with("taken")


class TestSubscriptions:
    """Test subscription delivery and release."""

    @pytest.mark.asyncio
    async def test_initial_snapshot_and_reload_on_notification(self):
        store = PostgresCatalogStore(MagicMock(), max_attempts=1)
        docs = [DocumentSnapshot("ladoo", {"byName": "Asha"})]
        store.list_documents = AsyncMock(return_value=docs)
        received = []

        release = store.subscribe(taken_query(), received.append)
        await settle()
        store._on_notification(None, 0, CHANGE_CHANNEL, "taken")
        await settle()
        release()

        assert received == [docs, docs]

    @pytest.mark.asyncio
    async def test_notifications_for_other_collections_ignored(self):
        store = PostgresCatalogStore(MagicMock(), max_attempts=1)
        store.list_documents = AsyncMock(return_value=[])
        received = []

        release = store.subscribe(taken_query(), received.append)
        await settle()
        store._on_notification(None, 0, CHANGE_CHANNEL, "pledges")
        await settle()
        release()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_release_stops_delivery(self):
        store = PostgresCatalogStore(MagicMock(), max_attempts=1)
        store.list_documents = AsyncMock(return_value=[])
        received = []

        release = store.subscribe(taken_query(), received.append)
        release()
        await settle()
        store._on_notification(None, 0, CHANGE_CHANNEL, "taken")
        await settle()

        assert received == []
        assert store._subscriptions == {}

    @pytest.mark.asyncio
    async def test_load_failure_reported_to_error_listener(self):
        store = PostgresCatalogStore(MagicMock(), max_attempts=1)
        store.list_documents = AsyncMock(side_effect=StoreUnavailableError("down"))
        errors = []

        release = store.subscribe(taken_query(), MagicMock(), errors.append)
        await settle()
        release()

        assert len(errors) == 1
        assert isinstance(errors[0], StoreUnavailableError)

    @pytest.mark.asyncio
    async def test_close_releases_subscriptions(self):
        store = PostgresCatalogStore(MagicMock(), max_attempts=1)
        store.list_documents = AsyncMock(return_value=[])
        store.subscribe(taken_query(), MagicMock())

        await store.close()

        assert store._subscriptions == {}
