"""Tests for forkpoint.storage.postgres

The asyncpg connection is mocked; these tests check how session results
are mapped, that idempotent writes use ON CONFLICT, and how driver
errors surface as StoreError.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from forkpoint.errors import StoreError
from forkpoint.models import ChannelBlob, CheckpointRecord, WriteRecord
from forkpoint.storage.postgres import PostgresGraphSession, PostgresGraphStore


def _make_conn() -> AsyncMock:
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)
    return conn


def _checkpoint_row(checkpoint_id="c1", parent=None):
    return {
        "thread_id": "t1",
        "checkpoint_ns": "",
        "checkpoint_id": checkpoint_id,
        "parent_checkpoint_id": parent,
        "type": "json",
        "checkpoint": "{}",
        "metadata_type": "json",
        "metadata": "{}",
        "created_at": datetime(2025, 1, 15, tzinfo=timezone.utc),
    }


def _make_db(conn) -> MagicMock:
    db = MagicMock()
    db.initialized = True

    @asynccontextmanager
    async def transaction(readonly=False):
        db.last_readonly = readonly
        yield conn

    db.transaction = transaction
    db.close = AsyncMock()
    return db


@pytest.fixture
def conn():
    return _make_conn()


@pytest.fixture
def session(conn):
    return PostgresGraphSession(conn)


class TestSessionWrites:
    async def test_insert_checkpoint_reports_creation(self, session, conn):
        record = CheckpointRecord("t1", "", "c1", "json", "{}", "json", "{}")
        conn.fetchval.return_value = "c1"
        assert await session.insert_checkpoint(record) is True

        conn.fetchval.return_value = None
        assert await session.insert_checkpoint(record) is False

        sql = conn.fetchval.call_args[0][0]
        assert "ON CONFLICT (checkpoint_id) DO NOTHING" in sql

    async def test_channel_state_upsert_keeps_first_blob(self, session, conn):
        await session.upsert_channel_state("c1", ChannelBlob("messages", "1", "json", "[]"))
        sql, *args = conn.execute.call_args[0]
        assert "DO UPDATE SET channel = channel_states.channel" in sql
        assert "blob = " not in sql.split("ON CONFLICT (channel, version)")[1].split("RETURNING")[0]
        assert args == ["c1", "messages", "1", "json", "[]"]

    async def test_insert_write_requires_checkpoint(self, session, conn):
        conn.fetchval.return_value = False
        assert await session.insert_write("c1", WriteRecord("t", "", 0, "ch", "json", "1")) is False
        conn.execute.assert_not_called()

    async def test_insert_write(self, session, conn):
        conn.fetchval.return_value = True
        assert await session.insert_write("c1", WriteRecord("t", "p", 2, "ch", "json", "1")) is True
        sql, *args = conn.execute.call_args[0]
        assert "ON CONFLICT (checkpoint_id, task_id, idx) DO NOTHING" in sql
        assert args == ["c1", "t", "p", 2, "ch", "json", "1"]

    async def test_create_main_branch_activates_it(self, session, conn):
        conn.fetchval.return_value = "b1"
        assert await session.create_main_branch("t1", "", "b1") is True
        sql = conn.execute.call_args[0][0]
        assert "SET active_branch_id" in sql

    async def test_create_main_branch_when_branches_exist(self, session, conn):
        conn.fetchval.return_value = None
        assert await session.create_main_branch("t1", "", "b1") is False
        conn.execute.assert_not_called()

    async def test_advance_head_marks_branch(self, session, conn):
        conn.fetchval.return_value = "b1"
        assert await session.advance_head("t1", "", "c2") == "b1"
        assert conn.execute.call_args[0][1:] == ("c2", "b1")

    async def test_advance_head_without_branch(self, session, conn):
        conn.fetchval.return_value = None
        assert await session.advance_head("t1", "", "c2") is None
        conn.execute.assert_not_called()

    async def test_delete_thread_clears_pointers_first(self, session, conn):
        conn.execute.side_effect = ["UPDATE 1", "DELETE 2", "DELETE 5", "DELETE 1"]
        assert await session.delete_thread("t1") == 5
        statements = [c[0][0] for c in conn.execute.call_args_list]
        assert statements[0].startswith("UPDATE threads SET active_branch_id = NULL")
        assert "DELETE FROM branches" in statements[1]
        assert "DELETE FROM checkpoints" in statements[2]
        assert "DELETE FROM threads" in statements[3]

    async def test_delete_orphans(self, session, conn):
        conn.execute.return_value = "DELETE 4"
        assert await session.delete_orphan_channel_states() == 4


class TestSessionReads:
    async def test_get_checkpoint_maps_row(self, session, conn):
        conn.fetchrow.return_value = _checkpoint_row("c2", parent="c1")
        record = await session.get_checkpoint("t1", "", "c2")
        assert record.checkpoint_id == "c2"
        assert record.parent_checkpoint_id == "c1"

    async def test_get_checkpoint_absent(self, session, conn):
        assert await session.get_checkpoint("t1", "", "nope") is None

    async def test_get_branch_head_passes_branch(self, session, conn):
        conn.fetchrow.return_value = _checkpoint_row()
        await session.get_branch_head("t1", "", "b1")
        assert conn.fetchrow.call_args[0][1:] == ("t1", "", "b1")

    async def test_get_channel_states_exact_pairs(self, session, conn):
        conn.fetch.return_value = [
            {"channel": "a", "version": "1", "type": "json", "blob": "1"},
        ]
        blobs = await session.get_channel_states("c1", {"a": "1", "b": "2"})
        assert blobs == [ChannelBlob("a", "1", "json", "1")]
        _, checkpoint_id, channels, versions = conn.fetch.call_args[0]
        assert checkpoint_id == "c1"
        assert dict(zip(channels, versions)) == {"a": "1", "b": "2"}

    async def test_get_channel_states_empty(self, session, conn):
        assert await session.get_channel_states("c1", {}) == []
        conn.fetch.assert_not_called()

    async def test_get_writes_order(self, session, conn):
        await session.get_writes("c1")
        assert "ORDER BY idx, seq" in conn.fetch.call_args[0][0]

    async def test_list_checkpoints_cursor(self, session, conn):
        conn.fetch.return_value = [_checkpoint_row("c2"), _checkpoint_row("c1")]
        records = await session.list_checkpoints("t1", "", before_id="c3", limit=2)
        assert [r.checkpoint_id for r in records] == ["c2", "c1"]
        assert conn.fetch.call_args[0][1:] == ("t1", "", "c3", 2)

    async def test_list_branches(self, session, conn):
        created = datetime(2025, 1, 15, tzinfo=timezone.utc)
        conn.fetch.return_value = [{
            "branch_id": "b1",
            "name": "main",
            "created_at": created,
            "fork_point_id": None,
            "head_checkpoint_id": "c1",
            "is_active": True,
        }]
        branches = await session.list_branches("t1", "")
        assert branches[0].branch_id == "b1"
        assert branches[0].is_active is True

    async def test_tree_rows(self, session, conn):
        conn.fetch.return_value = [
            {"checkpoint_id": "c1", "parent_checkpoint_id": None, "branch_id": "b1"},
        ]
        assert await session.get_tree_rows("t1", "") == [("c1", None, "b1")]


class TestPostgresGraphStore:
    def test_requires_db_or_dsn(self):
        with pytest.raises(ValueError):
            PostgresGraphStore()

    async def test_transaction_before_setup(self):
        store = PostgresGraphStore(db=_make_db(_make_conn()))
        with pytest.raises(RuntimeError, match="setup"):
            async with store.transaction():
                pass

    async def test_setup_runs_migrations(self):
        db = _make_db(_make_conn())
        store = PostgresGraphStore(db=db)
        with patch("forkpoint.storage.postgres.ensure_schema", new=AsyncMock(return_value=3)) as ensure:
            await store.setup()
            await store.setup()
        ensure.assert_awaited_once_with(db)

    async def test_setup_without_migrations(self):
        store = PostgresGraphStore(db=_make_db(_make_conn()), run_migrations=False)
        with patch("forkpoint.storage.postgres.ensure_schema", new=AsyncMock()) as ensure:
            await store.setup()
        ensure.assert_not_called()

    async def test_setup_wraps_connection_failure(self):
        db = _make_db(_make_conn())
        db.initialized = False
        db.initialize = AsyncMock(side_effect=OSError("connection refused"))
        store = PostgresGraphStore(db=db)
        with pytest.raises(StoreError, match="connection refused"):
            await store.setup()

    async def test_transaction_yields_session(self):
        conn = _make_conn()
        db = _make_db(conn)
        store = PostgresGraphStore(db=db, run_migrations=False)
        await store.setup()
        async with store.transaction(readonly=True) as session:
            assert isinstance(session, PostgresGraphSession)
        assert db.last_readonly is True

    async def test_driver_errors_become_store_errors(self):
        conn = _make_conn()
        conn.fetchrow.side_effect = asyncpg.PostgresError("relation does not exist")
        store = PostgresGraphStore(db=_make_db(conn), run_migrations=False)
        await store.setup()
        with pytest.raises(StoreError) as exc_info:
            async with store.transaction() as session:
                await session.get_checkpoint("t1", "", "c1")
        assert isinstance(exc_info.value.__cause__, asyncpg.PostgresError)

    async def test_other_errors_pass_through(self):
        store = PostgresGraphStore(db=_make_db(_make_conn()), run_migrations=False)
        await store.setup()
        with pytest.raises(KeyError):
            async with store.transaction():
                raise KeyError("not a driver error")

    async def test_close_leaves_shared_db_open(self):
        db = _make_db(_make_conn())
        store = PostgresGraphStore(db=db, run_migrations=False)
        await store.setup()
        await store.close()
        db.close.assert_not_called()

    async def test_close_owned_db(self):
        store = PostgresGraphStore(dsn="postgresql://localhost/test", run_migrations=False)
        with patch("forkpoint.storage.postgres.Database") as database_cls:
            db = database_cls.return_value
            db.initialized = False
            db.initialize = AsyncMock()
            db.close = AsyncMock()
            await store.setup()
            await store.close()
        database_cls.assert_called_once_with(
            dsn="postgresql://localhost/test", min_size=2, max_size=10
        )
        db.close.assert_awaited_once()
