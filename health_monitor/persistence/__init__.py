"""Durable storage for health checks and incidents."""

from .base import Store
from .sqlite_store import SqliteStore

__all__ = ["SqliteStore", "Store"]
