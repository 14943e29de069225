"""
Record storage for Compono.
"""

from .base import Query, Row, Store
from .locking import RecordLock
from .memory import MemoryStore, matches

__all__ = ["MemoryStore", "Query", "RecordLock", "Row", "Store", "matches"]
