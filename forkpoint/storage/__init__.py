"""
Forkpoint Graph Storage

Backends:
- MemoryGraphStore: in-process, for tests and development
- PostgresGraphStore: asyncpg, for production
"""

from .base import GraphSession, GraphStore, TreeRow
from .memory import MemoryGraphSession, MemoryGraphStore
from .postgres import PostgresGraphSession, PostgresGraphStore

__all__ = [
    "GraphSession",
    "GraphStore",
    "TreeRow",
    "MemoryGraphSession",
    "MemoryGraphStore",
    "PostgresGraphSession",
    "PostgresGraphStore",
]
