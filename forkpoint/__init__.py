"""
Forkpoint - Branching checkpoint store for graph execution state

Persists point-in-time checkpoints for many independent threads, where any
checkpoint can be forked into a branch that shares history up to the fork
point and diverges afterwards.

Key Features:
- Atomic writes: a checkpoint, its channel values and its branch head
  update commit together
- Content-addressed channel values shared across checkpoints by (channel, version)
- Branches: fork at any checkpoint, switch the active branch, read any branch head
- Pending writes kept per task for recovery and replay
- Backends: in-memory (tests) and PostgreSQL via asyncpg (production)

Example usage:
    from forkpoint import CheckpointSaver, empty_checkpoint

    async with CheckpointSaver.from_conn_string("postgresql://...") as saver:
        checkpoint = empty_checkpoint()
        checkpoint["channel_values"] = {"messages": ["hi"]}
        checkpoint["channel_versions"] = {"messages": 1}

        config = await saver.put({"thread_id": "t1"}, checkpoint, {"step": 0})
        latest = await saver.get_tuple({"thread_id": "t1"})
"""

from .branches import BranchManager
from .checkpoint import empty_checkpoint, generate_checkpoint_id, next_version
from .config import StoreConfig, load_config
from .errors import (
    BranchNotFoundError,
    CheckpointNotFoundError,
    ConfigurationError,
    ForkpointError,
    MissingCheckpointIdError,
    ParentNotFoundError,
    SerializationError,
    StoreError,
)
from .models import (
    BranchInfo,
    CheckpointConfig,
    CheckpointTree,
    CheckpointTuple,
    TreeNode,
)
from .saver import CheckpointSaver
from .serde import PickleSerializer, Serializer, ValueCodec
from .storage import GraphSession, GraphStore, MemoryGraphStore, PostgresGraphStore

__version__ = "0.1.0"

__all__ = [
    # Saver
    "CheckpointSaver",
    "BranchManager",
    # Models
    "CheckpointConfig",
    "CheckpointTuple",
    "BranchInfo",
    "CheckpointTree",
    "TreeNode",
    # Checkpoint helpers
    "empty_checkpoint",
    "generate_checkpoint_id",
    "next_version",
    # Serialization
    "Serializer",
    "PickleSerializer",
    "ValueCodec",
    # Storage
    "GraphStore",
    "GraphSession",
    "MemoryGraphStore",
    "PostgresGraphStore",
    # Config
    "StoreConfig",
    "load_config",
    # Errors
    "ForkpointError",
    "ConfigurationError",
    "MissingCheckpointIdError",
    "CheckpointNotFoundError",
    "ParentNotFoundError",
    "BranchNotFoundError",
    "SerializationError",
    "StoreError",
]
