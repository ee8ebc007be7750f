"""
Persistence package for the layout service.

The resolver talks to a ``LayoutStore``; two adapters ship with the
service:

- postgres: asyncpg-backed store with JSONB payload columns.
- memory: dict-backed store for local runs and tests.
"""

from .base import LayoutStore
from .memory import InMemoryLayoutStore
from .postgres import PostgreSQLLayoutStore

__all__ = ["LayoutStore", "InMemoryLayoutStore", "PostgreSQLLayoutStore"]
