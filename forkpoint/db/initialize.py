"""
Forkpoint Database Schema Management.

Lightweight migration system:
- Tracks current schema version in a `forkpoint_schema_version` table
- Only runs migrations that haven't been applied yet
- Each migration is a (version, description, SQL) tuple
- Safe for concurrent startup (uses advisory lock)

Relationships of the checkpoint graph map onto columns and join tables:

    PREVIOUS       checkpoints.parent_checkpoint_id
    HAS_CHANNEL    checkpoint_channels
    HAS_WRITE      pending_writes.checkpoint_id
    HAS_BRANCH     branches.(thread_id, checkpoint_ns)
    ACTIVE_BRANCH  threads.active_branch_id
    HEAD           branches.head_checkpoint_id
    ON_BRANCH      checkpoint_branches

Usage:
    db = Database(dsn="postgresql://...")
    await db.initialize()
    await ensure_schema(db)
"""

import logging
from typing import List, Tuple

from .database import Database

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────
# Migration registry
#
# Append-only. Never modify or delete existing entries.
# Each entry: (version, description, sql)
# ──────────────────────────────────────────────────────────────
MIGRATIONS: List[Tuple[int, str, str]] = [
    (
        1,
        "Create thread, checkpoint, channel state and pending write tables",
        """
        CREATE TABLE IF NOT EXISTS threads (
            thread_id        TEXT NOT NULL,
            checkpoint_ns    TEXT NOT NULL DEFAULT '',
            active_branch_id TEXT,
            created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (thread_id, checkpoint_ns)
        );

        CREATE TABLE IF NOT EXISTS checkpoints (
            checkpoint_id        TEXT PRIMARY KEY,
            thread_id            TEXT NOT NULL,
            checkpoint_ns        TEXT NOT NULL DEFAULT '',
            parent_checkpoint_id TEXT REFERENCES checkpoints (checkpoint_id) ON DELETE SET NULL,
            type                 TEXT NOT NULL,
            checkpoint           TEXT NOT NULL,
            metadata_type        TEXT NOT NULL,
            metadata             TEXT NOT NULL,
            created_at           TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
            FOREIGN KEY (thread_id, checkpoint_ns)
                REFERENCES threads (thread_id, checkpoint_ns) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS channel_states (
            channel TEXT NOT NULL,
            version TEXT NOT NULL,
            type    TEXT NOT NULL,
            blob    TEXT NOT NULL,
            PRIMARY KEY (channel, version)
        );

        CREATE TABLE IF NOT EXISTS checkpoint_channels (
            checkpoint_id TEXT NOT NULL REFERENCES checkpoints (checkpoint_id) ON DELETE CASCADE,
            channel       TEXT NOT NULL,
            version       TEXT NOT NULL,
            PRIMARY KEY (checkpoint_id, channel),
            FOREIGN KEY (channel, version) REFERENCES channel_states (channel, version)
        );

        CREATE TABLE IF NOT EXISTS pending_writes (
            seq           BIGSERIAL,
            checkpoint_id TEXT NOT NULL REFERENCES checkpoints (checkpoint_id) ON DELETE CASCADE,
            task_id       TEXT NOT NULL,
            task_path     TEXT NOT NULL DEFAULT '',
            idx           INTEGER NOT NULL,
            channel       TEXT NOT NULL,
            type          TEXT NOT NULL,
            blob          TEXT NOT NULL,
            PRIMARY KEY (checkpoint_id, task_id, idx)
        );
        """,
    ),
    (
        2,
        "Create branch tables",
        """
        CREATE TABLE IF NOT EXISTS branches (
            branch_id          TEXT PRIMARY KEY,
            thread_id          TEXT NOT NULL,
            checkpoint_ns      TEXT NOT NULL DEFAULT '',
            name               TEXT NOT NULL,
            fork_point_id      TEXT,
            head_checkpoint_id TEXT REFERENCES checkpoints (checkpoint_id) ON DELETE SET NULL,
            created_at         TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
            seq                BIGSERIAL,
            FOREIGN KEY (thread_id, checkpoint_ns)
                REFERENCES threads (thread_id, checkpoint_ns) ON DELETE CASCADE
        );

        -- one implicit main branch per thread
        CREATE UNIQUE INDEX IF NOT EXISTS uq_branches_main
            ON branches (thread_id, checkpoint_ns) WHERE fork_point_id IS NULL;

        CREATE TABLE IF NOT EXISTS checkpoint_branches (
            checkpoint_id TEXT NOT NULL REFERENCES checkpoints (checkpoint_id) ON DELETE CASCADE,
            branch_id     TEXT NOT NULL REFERENCES branches (branch_id) ON DELETE CASCADE,
            PRIMARY KEY (checkpoint_id, branch_id)
        );

        ALTER TABLE threads
            ADD CONSTRAINT fk_threads_active_branch
            FOREIGN KEY (active_branch_id) REFERENCES branches (branch_id) ON DELETE SET NULL;
        """,
    ),
    (
        3,
        "Add checkpoint and branch indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_checkpoints_thread
            ON checkpoints (thread_id, checkpoint_ns, checkpoint_id DESC);
        CREATE INDEX IF NOT EXISTS idx_checkpoints_created ON checkpoints (created_at);
        CREATE INDEX IF NOT EXISTS idx_branches_thread
            ON branches (thread_id, checkpoint_ns, created_at);
        CREATE INDEX IF NOT EXISTS idx_branches_name ON branches (name);
        CREATE INDEX IF NOT EXISTS idx_checkpoint_channels_state
            ON checkpoint_channels (channel, version);
        """,
    ),
    # ── Future migrations go here ──
]


# ──────────────────────────────────────────────────────────────
# Schema management
# ──────────────────────────────────────────────────────────────

_BOOTSTRAP_SQL = """
CREATE TABLE IF NOT EXISTS forkpoint_schema_version (
    version INTEGER PRIMARY KEY,
    description TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# PostgreSQL advisory lock ID (arbitrary constant, unique to this library)
_LOCK_ID = 4_1772_2025


async def ensure_schema(db: Database) -> int:
    """Apply any pending migrations.

    - Creates the ``forkpoint_schema_version`` tracking table if needed
    - Uses a PostgreSQL advisory lock to prevent concurrent migration runs
    - Skips migrations that have already been applied
    - Each migration runs in its own transaction

    Args:
        db: Initialized Database instance.

    Returns:
        Schema version after migrating.
    """
    async with db.acquire() as conn:
        # Only one process migrates at a time
        await conn.execute("SELECT pg_advisory_lock($1)", _LOCK_ID)
        try:
            await conn.execute(_BOOTSTRAP_SQL)

            row = await conn.fetchrow(
                "SELECT COALESCE(MAX(version), 0) AS v FROM forkpoint_schema_version"
            )
            current = row["v"]

            pending = [(v, d, s) for v, d, s in MIGRATIONS if v > current]
            if not pending:
                logger.debug(f"Schema up to date (version {current})")
                return current

            for version, description, sql in pending:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        "INSERT INTO forkpoint_schema_version (version, description) VALUES ($1, $2)",
                        version,
                        description,
                    )
                logger.info(f"Migration {version}: {description}")

            logger.info(
                f"Schema migrated {current} -> {pending[-1][0]} "
                f"({len(pending)} migration(s))"
            )
            return pending[-1][0]
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", _LOCK_ID)
