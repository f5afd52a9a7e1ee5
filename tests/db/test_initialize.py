"""Tests for forkpoint.db.initialize.ensure_schema (asyncpg connection mocked)"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from forkpoint.db.initialize import MIGRATIONS, ensure_schema


def _make_db(current_version: int):
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="OK")
    conn.fetchrow = AsyncMock(return_value={"v": current_version})

    @asynccontextmanager
    async def transaction():
        yield

    conn.transaction = transaction

    @asynccontextmanager
    async def acquire():
        yield conn

    db = MagicMock()
    db.acquire = acquire
    return db, conn


def _executed(conn):
    return [c[0][0] for c in conn.execute.call_args_list]


class TestMigrationRegistry:
    def test_versions_are_sequential(self):
        assert [v for v, _, _ in MIGRATIONS] == list(range(1, len(MIGRATIONS) + 1))

    def test_every_table_is_created(self):
        sql = "\n".join(s for _, _, s in MIGRATIONS)
        for table in (
            "threads", "checkpoints", "channel_states", "checkpoint_channels",
            "pending_writes", "branches", "checkpoint_branches",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table} (" in sql

    def test_single_main_branch_index(self):
        sql = "\n".join(s for _, _, s in MIGRATIONS)
        assert "WHERE fork_point_id IS NULL" in sql


class TestEnsureSchema:
    async def test_fresh_database_applies_all(self):
        db, conn = _make_db(current_version=0)
        version = await ensure_schema(db)
        assert version == MIGRATIONS[-1][0]

        executed = _executed(conn)
        assert executed[0] == "SELECT pg_advisory_lock($1)"
        assert executed[-1] == "SELECT pg_advisory_unlock($1)"
        recorded = [c[0][1] for c in conn.execute.call_args_list if "INSERT INTO forkpoint_schema_version" in c[0][0]]
        assert recorded == [v for v, _, _ in MIGRATIONS]

    async def test_up_to_date_database(self):
        latest = MIGRATIONS[-1][0]
        db, conn = _make_db(current_version=latest)
        assert await ensure_schema(db) == latest
        assert not any("INSERT INTO forkpoint_schema_version" in sql for sql in _executed(conn))
        assert _executed(conn)[-1] == "SELECT pg_advisory_unlock($1)"

    async def test_partial_upgrade(self):
        db, conn = _make_db(current_version=1)
        await ensure_schema(db)
        recorded = [c[0][1] for c in conn.execute.call_args_list if "INSERT INTO forkpoint_schema_version" in c[0][0]]
        assert recorded == [v for v, _, _ in MIGRATIONS if v > 1]

    async def test_lock_released_on_failure(self):
        db, conn = _make_db(current_version=0)

        async def execute(sql, *args):
            if "CREATE TABLE IF NOT EXISTS threads" in sql:
                raise RuntimeError("syntax error")
            return "OK"

        conn.execute = AsyncMock(side_effect=execute)
        with pytest.raises(RuntimeError):
            await ensure_schema(db)
        assert _executed(conn)[-1] == "SELECT pg_advisory_unlock($1)"
