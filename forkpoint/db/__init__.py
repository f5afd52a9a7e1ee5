"""
Forkpoint Database - asyncpg-based persistence for the Postgres graph store.

- Database: shared connection pool manager (one per app)
- ensure_schema: create all tables on first run
"""

from .database import Database
from .initialize import MIGRATIONS, ensure_schema

__all__ = ["Database", "MIGRATIONS", "ensure_schema"]
