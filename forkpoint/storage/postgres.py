"""
PostgreSQL graph storage backend.

Uses asyncpg via the shared Database pool. The checkpoint graph is stored
relationally (see forkpoint.db.initialize for the table layout); every
write uses ON CONFLICT so that a retried operation is a no-op, and each
pointer edge (ACTIVE_BRANCH, HEAD, PREVIOUS) is a single column, so
swapping it is one atomic UPDATE.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import asyncpg

from ..db.database import Database
from ..db.initialize import ensure_schema
from ..errors import StoreError
from ..models import BranchInfo, ChannelBlob, CheckpointRecord, WriteRecord
from .base import GraphSession, GraphStore, TreeRow

logger = logging.getLogger(__name__)

_CHECKPOINT_COLUMNS = """
    c.thread_id, c.checkpoint_ns, c.checkpoint_id, c.parent_checkpoint_id,
    c.type, c.checkpoint, c.metadata_type, c.metadata, c.created_at
"""

_BRANCH_COLUMNS = """
    b.branch_id, b.name, b.created_at, b.fork_point_id, b.head_checkpoint_id,
    COALESCE(t.active_branch_id = b.branch_id, FALSE) AS is_active
"""

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _checkpoint_record(row) -> CheckpointRecord:
    return CheckpointRecord(
        thread_id=row["thread_id"],
        checkpoint_ns=row["checkpoint_ns"],
        checkpoint_id=row["checkpoint_id"],
        parent_checkpoint_id=row["parent_checkpoint_id"],
        type=row["type"],
        checkpoint=row["checkpoint"],
        metadata_type=row["metadata_type"],
        metadata=row["metadata"],
        created_at=row["created_at"],
    )


def _branch_info(row) -> BranchInfo:
    return BranchInfo(
        branch_id=row["branch_id"],
        name=row["name"],
        created_at=row["created_at"],
        fork_point_id=row["fork_point_id"],
        is_active=row["is_active"],
        head_checkpoint_id=row["head_checkpoint_id"],
    )


def _parse_row_count(status: str) -> int:
    """Extract row count from an asyncpg status string such as 'DELETE 3'."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError, AttributeError):
        return 0


class PostgresGraphSession(GraphSession):
    """Session bound to one asyncpg connection inside an open transaction"""

    def __init__(self, conn):
        self._conn = conn

    # -- Threads and checkpoints ---------------------------------------------

    async def ensure_thread(self, thread_id: str, checkpoint_ns: str) -> None:
        await self._conn.execute(
            """
            INSERT INTO threads (thread_id, checkpoint_ns)
            VALUES ($1, $2)
            ON CONFLICT (thread_id, checkpoint_ns) DO NOTHING
            """,
            thread_id,
            checkpoint_ns,
        )

    async def insert_checkpoint(self, record: CheckpointRecord) -> bool:
        created = await self._conn.fetchval(
            """
            INSERT INTO checkpoints
                (checkpoint_id, thread_id, checkpoint_ns, type, checkpoint, metadata_type, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (checkpoint_id) DO NOTHING
            RETURNING checkpoint_id
            """,
            record.checkpoint_id,
            record.thread_id,
            record.checkpoint_ns,
            record.type,
            record.checkpoint,
            record.metadata_type,
            record.metadata,
        )
        return created is not None

    async def link_parent(self, checkpoint_id: str, parent_checkpoint_id: str) -> bool:
        linked = await self._conn.fetchval(
            """
            UPDATE checkpoints c
            SET parent_checkpoint_id = COALESCE(c.parent_checkpoint_id, $2)
            WHERE c.checkpoint_id = $1
              AND EXISTS (SELECT 1 FROM checkpoints p WHERE p.checkpoint_id = $2)
            RETURNING c.checkpoint_id
            """,
            checkpoint_id,
            parent_checkpoint_id,
        )
        return linked is not None

    async def upsert_channel_state(self, checkpoint_id: str, blob: ChannelBlob) -> None:
        # DO UPDATE without changing the blob still locks an existing row,
        # so orphan collection cannot remove it before the link is made.
        await self._conn.execute(
            """
            WITH cs AS (
                INSERT INTO channel_states (channel, version, type, blob)
                VALUES ($2, $3, $4, $5)
                ON CONFLICT (channel, version) DO UPDATE SET channel = channel_states.channel
                RETURNING channel, version
            )
            INSERT INTO checkpoint_channels (checkpoint_id, channel, version)
            SELECT $1::text, cs.channel, cs.version FROM cs
            ON CONFLICT (checkpoint_id, channel) DO NOTHING
            """,
            checkpoint_id,
            blob.channel,
            blob.version,
            blob.type,
            blob.blob,
        )

    async def insert_write(self, checkpoint_id: str, record: WriteRecord) -> bool:
        exists = await self._conn.fetchval(
            "SELECT EXISTS (SELECT 1 FROM checkpoints WHERE checkpoint_id = $1)",
            checkpoint_id,
        )
        if not exists:
            return False
        await self._conn.execute(
            """
            INSERT INTO pending_writes
                (checkpoint_id, task_id, task_path, idx, channel, type, blob)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (checkpoint_id, task_id, idx) DO NOTHING
            """,
            checkpoint_id,
            record.task_id,
            record.task_path,
            record.idx,
            record.channel,
            record.type,
            record.blob,
        )
        return True

    # -- Reads ---------------------------------------------------------------

    async def get_checkpoint(
        self,
        thread_id: str,
        checkpoint_ns: str,
        checkpoint_id: str,
    ) -> Optional[CheckpointRecord]:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_CHECKPOINT_COLUMNS}
            FROM checkpoints c
            WHERE c.thread_id = $1 AND c.checkpoint_ns = $2 AND c.checkpoint_id = $3
            """,
            thread_id,
            checkpoint_ns,
            checkpoint_id,
        )
        return _checkpoint_record(row) if row else None

    async def get_branch_head(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: Optional[str] = None,
    ) -> Optional[CheckpointRecord]:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_CHECKPOINT_COLUMNS}
            FROM branches b
            JOIN checkpoints c ON c.checkpoint_id = b.head_checkpoint_id
            WHERE b.thread_id = $1 AND b.checkpoint_ns = $2
              AND b.branch_id = COALESCE(
                  $3::text,
                  (SELECT t.active_branch_id FROM threads t
                   WHERE t.thread_id = $1 AND t.checkpoint_ns = $2)
              )
            """,
            thread_id,
            checkpoint_ns,
            branch_id,
        )
        return _checkpoint_record(row) if row else None

    async def get_latest_checkpoint(
        self,
        thread_id: str,
        checkpoint_ns: str,
    ) -> Optional[CheckpointRecord]:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_CHECKPOINT_COLUMNS}
            FROM checkpoints c
            WHERE c.thread_id = $1 AND c.checkpoint_ns = $2
            ORDER BY c.checkpoint_id DESC
            LIMIT 1
            """,
            thread_id,
            checkpoint_ns,
        )
        return _checkpoint_record(row) if row else None

    async def get_channel_states(
        self,
        checkpoint_id: str,
        versions: Dict[str, str],
    ) -> List[ChannelBlob]:
        if not versions:
            return []
        channels = list(versions)
        rows = await self._conn.fetch(
            """
            SELECT cs.channel, cs.version, cs.type, cs.blob
            FROM unnest($2::text[], $3::text[]) AS wanted (channel, version)
            JOIN checkpoint_channels cc
              ON cc.channel = wanted.channel AND cc.version = wanted.version
            JOIN channel_states cs
              ON cs.channel = cc.channel AND cs.version = cc.version
            WHERE cc.checkpoint_id = $1
            """,
            checkpoint_id,
            channels,
            [versions[channel] for channel in channels],
        )
        return [
            ChannelBlob(channel=r["channel"], version=r["version"], type=r["type"], blob=r["blob"])
            for r in rows
        ]

    async def get_writes(self, checkpoint_id: str) -> List[WriteRecord]:
        rows = await self._conn.fetch(
            """
            SELECT task_id, task_path, idx, channel, type, blob
            FROM pending_writes
            WHERE checkpoint_id = $1
            ORDER BY idx, seq
            """,
            checkpoint_id,
        )
        return [
            WriteRecord(
                task_id=r["task_id"],
                task_path=r["task_path"],
                idx=r["idx"],
                channel=r["channel"],
                type=r["type"],
                blob=r["blob"],
            )
            for r in rows
        ]

    async def list_checkpoints(
        self,
        thread_id: str,
        checkpoint_ns: str,
        before_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[CheckpointRecord]:
        rows = await self._conn.fetch(
            f"""
            SELECT {_CHECKPOINT_COLUMNS}
            FROM checkpoints c
            WHERE c.thread_id = $1 AND c.checkpoint_ns = $2
              AND ($3::text IS NULL OR c.checkpoint_id < $3::text)
            ORDER BY c.checkpoint_id DESC
            LIMIT $4
            """,
            thread_id,
            checkpoint_ns,
            before_id,
            limit,
        )
        return [_checkpoint_record(r) for r in rows]

    async def get_tree_rows(self, thread_id: str, checkpoint_ns: str) -> List[TreeRow]:
        rows = await self._conn.fetch(
            """
            SELECT c.checkpoint_id, c.parent_checkpoint_id, cb.branch_id
            FROM checkpoints c
            LEFT JOIN checkpoint_branches cb ON cb.checkpoint_id = c.checkpoint_id
            WHERE c.thread_id = $1 AND c.checkpoint_ns = $2
            ORDER BY c.checkpoint_id, cb.branch_id
            """,
            thread_id,
            checkpoint_ns,
        )
        return [(r["checkpoint_id"], r["parent_checkpoint_id"], r["branch_id"]) for r in rows]

    # -- Branches ------------------------------------------------------------

    async def count_branches(self, thread_id: str, checkpoint_ns: str) -> int:
        return await self._conn.fetchval(
            "SELECT count(*) FROM branches WHERE thread_id = $1 AND checkpoint_ns = $2",
            thread_id,
            checkpoint_ns,
        )

    async def create_main_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
    ) -> bool:
        created = await self._conn.fetchval(
            """
            INSERT INTO branches (branch_id, thread_id, checkpoint_ns, name)
            SELECT $3::text, $1::text, $2::text, 'main'
            WHERE NOT EXISTS (
                SELECT 1 FROM branches WHERE thread_id = $1 AND checkpoint_ns = $2
            )
            ON CONFLICT (thread_id, checkpoint_ns) WHERE fork_point_id IS NULL DO NOTHING
            RETURNING branch_id
            """,
            thread_id,
            checkpoint_ns,
            branch_id,
        )
        if created is None:
            return False
        await self._conn.execute(
            """
            UPDATE threads SET active_branch_id = $3
            WHERE thread_id = $1 AND checkpoint_ns = $2
            """,
            thread_id,
            checkpoint_ns,
            branch_id,
        )
        return True

    async def create_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
        name: str,
        fork_point_id: str,
    ) -> None:
        await self._conn.execute(
            """
            INSERT INTO branches
                (branch_id, thread_id, checkpoint_ns, name, fork_point_id, head_checkpoint_id)
            VALUES ($1, $2, $3, $4, $5, $5)
            ON CONFLICT (branch_id) DO NOTHING
            """,
            branch_id,
            thread_id,
            checkpoint_ns,
            name,
            fork_point_id,
        )
        await self._conn.execute(
            """
            INSERT INTO checkpoint_branches (checkpoint_id, branch_id)
            VALUES ($1, $2)
            ON CONFLICT DO NOTHING
            """,
            fork_point_id,
            branch_id,
        )

    async def set_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
    ) -> bool:
        updated = await self._conn.fetchval(
            """
            UPDATE threads t SET active_branch_id = $3
            WHERE t.thread_id = $1 AND t.checkpoint_ns = $2
              AND EXISTS (
                  SELECT 1 FROM branches b
                  WHERE b.branch_id = $3 AND b.thread_id = $1 AND b.checkpoint_ns = $2
              )
            RETURNING t.active_branch_id
            """,
            thread_id,
            checkpoint_ns,
            branch_id,
        )
        return updated is not None

    async def advance_head(
        self,
        thread_id: str,
        checkpoint_ns: str,
        checkpoint_id: str,
        branch_id: Optional[str] = None,
    ) -> Optional[str]:
        advanced = await self._conn.fetchval(
            """
            UPDATE branches b SET head_checkpoint_id = $3
            WHERE b.thread_id = $1 AND b.checkpoint_ns = $2
              AND b.branch_id = COALESCE(
                  $4::text,
                  (SELECT t.active_branch_id FROM threads t
                   WHERE t.thread_id = $1 AND t.checkpoint_ns = $2)
              )
              AND EXISTS (SELECT 1 FROM checkpoints c WHERE c.checkpoint_id = $3)
            RETURNING b.branch_id
            """,
            thread_id,
            checkpoint_ns,
            checkpoint_id,
            branch_id,
        )
        if advanced is None:
            return None
        await self._conn.execute(
            """
            INSERT INTO checkpoint_branches (checkpoint_id, branch_id)
            VALUES ($1, $2)
            ON CONFLICT DO NOTHING
            """,
            checkpoint_id,
            advanced,
        )
        return advanced

    async def get_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
    ) -> Optional[BranchInfo]:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_BRANCH_COLUMNS}
            FROM threads t
            JOIN branches b ON b.branch_id = t.active_branch_id
            WHERE t.thread_id = $1 AND t.checkpoint_ns = $2
            """,
            thread_id,
            checkpoint_ns,
        )
        return _branch_info(row) if row else None

    async def list_branches(self, thread_id: str, checkpoint_ns: str) -> List[BranchInfo]:
        rows = await self._conn.fetch(
            f"""
            SELECT {_BRANCH_COLUMNS}
            FROM branches b
            JOIN threads t ON t.thread_id = b.thread_id AND t.checkpoint_ns = b.checkpoint_ns
            WHERE b.thread_id = $1 AND b.checkpoint_ns = $2
            ORDER BY b.created_at, b.seq
            """,
            thread_id,
            checkpoint_ns,
        )
        return [_branch_info(r) for r in rows]

    async def delete_branch(self, branch_id: str) -> bool:
        deleted = await self._conn.fetchval(
            "DELETE FROM branches WHERE branch_id = $1 RETURNING branch_id",
            branch_id,
        )
        return deleted is not None

    # -- Deletion ------------------------------------------------------------

    async def delete_thread(self, thread_id: str) -> int:
        # Pointer edges first, so the cascades below never update a row
        # that is itself being deleted.
        await self._conn.execute(
            "UPDATE threads SET active_branch_id = NULL WHERE thread_id = $1",
            thread_id,
        )
        await self._conn.execute("DELETE FROM branches WHERE thread_id = $1", thread_id)
        status = await self._conn.execute("DELETE FROM checkpoints WHERE thread_id = $1", thread_id)
        await self._conn.execute("DELETE FROM threads WHERE thread_id = $1", thread_id)
        return _parse_row_count(status)

    async def delete_orphan_channel_states(self) -> int:
        status = await self._conn.execute(
            """
            DELETE FROM channel_states cs
            WHERE NOT EXISTS (
                SELECT 1 FROM checkpoint_channels cc
                WHERE cc.channel = cs.channel AND cc.version = cs.version
            )
            """
        )
        return _parse_row_count(status)


class PostgresGraphStore(GraphStore):
    """
    PostgreSQL graph store for production.

    Usage with shared Database pool (recommended):
        db = Database(dsn="postgresql://...")
        await db.initialize()
        store = PostgresGraphStore(db=db)
        await store.setup()

    Usage standalone:
        store = PostgresGraphStore(dsn="postgresql://...")
        await store.setup()
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        dsn: Optional[str] = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        run_migrations: bool = True,
    ):
        if db is None and dsn is None:
            raise ValueError("Either db or dsn must be provided")
        self._db = db
        self._dsn = dsn
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._run_migrations = run_migrations
        self._owns_db = db is None
        self._initialized = False

    async def setup(self) -> None:
        """Open the pool if owned and apply pending migrations."""
        if self._initialized:
            return

        try:
            if self._db is None:
                self._db = Database(
                    dsn=self._dsn,
                    min_size=self._min_pool_size,
                    max_size=self._max_pool_size,
                )
            if not self._db.initialized:
                await self._db.initialize()
            if self._run_migrations:
                await ensure_schema(self._db)
        except _DRIVER_ERRORS as err:
            raise StoreError(f"PostgreSQL graph store setup failed: {err}") from err

        self._initialized = True
        logger.info("PostgreSQL graph store initialized")

    async def close(self) -> None:
        """Close database connection if we own it."""
        if self._owns_db and self._db is not None:
            await self._db.close()
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "PostgresGraphStore not initialized. Call await store.setup() first."
            )

    @asynccontextmanager
    async def transaction(self, readonly: bool = False) -> AsyncIterator[GraphSession]:
        self._ensure_initialized()
        try:
            async with self._db.transaction(readonly=readonly) as conn:
                yield PostgresGraphSession(conn)
        except _DRIVER_ERRORS as err:
            raise StoreError(f"PostgreSQL operation failed: {err}") from err
