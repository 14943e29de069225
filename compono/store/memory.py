"""
In-memory document store.

Suitable for development, tests and single-process deployments. All
operations complete without awaiting anything else, so each call is
atomic with respect to other coroutines on the same event loop.
"""

from __future__ import annotations

import copy
import logging
import time
from collections import defaultdict
from typing import Any

from ..errors import LockError, StoreError
from .base import Query, Row

logger = logging.getLogger(__name__)

_MISSING = object()


def _as_list(value: Any) -> list[Any]:
    if value is None or value is _MISSING:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _compare(op: str, value: Any, operand: Any) -> bool:
    if op == "$eq":
        return value == operand
    if op == "$ne":
        return value != operand
    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand
    if op == "$any":
        return any(item in _as_list(operand) for item in _as_list(value))
    if op == "$all":
        values = _as_list(value)
        return all(item in values for item in _as_list(operand))

    if value is None or value is _MISSING:
        return False
    try:
        if op == "$gt":
            return value > operand
        if op == "$gte":
            return value >= operand
        if op == "$lt":
            return value < operand
        if op == "$lte":
            return value <= operand
    except TypeError:
        return False

    raise StoreError(f"Unsupported query operator {op}")


def matches(row: Row, query: Query | None) -> bool:
    """Check whether row satisfies every clause of query."""
    for field, condition in (query or {}).items():
        value = row.get(field, _MISSING)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(op, value, operand) for op, operand in condition.items()):
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


class MemoryStore:
    """
    Dict-backed implementation of the Store protocol.

    Rows are deep-copied on the way in and out so callers never share
    mutable state with the store.

    Usage:
        store = MemoryStore(lock_timeout=1.0)
        await store.insert("instances", {"id": "i1", "state": "init"})
        rows = await store.search("instances", {"state": {"$in": ["init", "ready"]}})
    """

    def __init__(self, lock_timeout: float = 1.0):
        self._tables: dict[str, dict[str, Row]] = defaultdict(dict)
        self._locks: dict[tuple[str, str], tuple[str, float]] = {}
        self._lock_timeout = lock_timeout

    # ==================== Locking ====================

    def _held_by_other(self, table: str, row_id: str, token: str) -> bool:
        held = self._locks.get((table, row_id))
        if held is None:
            return False
        owner, acquired = held
        if owner == token:
            return False
        return time.monotonic() - acquired < self._lock_timeout

    def _acquire(self, table: str, rows: list[Row], token: str) -> None:
        for row in rows:
            if self._held_by_other(table, row["id"], token):
                raise LockError(f"{table}/{row['id']} is locked")
        stamp = time.monotonic()
        for row in rows:
            self._locks[(table, row["id"])] = (token, stamp)

    # ==================== Operations ====================

    def _select(self, table: str, query: Query | None) -> list[Row]:
        return [row for row in self._tables[table].values() if matches(row, query)]

    async def search(
        self,
        table: str,
        query: Query | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
        lock: str | None = None,
    ) -> list[Row]:
        rows = self._select(table, query)

        if order_by:
            descending = order_by.startswith("-")
            field = order_by.lstrip("+-")
            rows.sort(key=lambda row: (row.get(field) is None, row.get(field)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if lock is not None:
            self._acquire(table, rows, lock)

        return copy.deepcopy(rows)

    async def insert(self, table: str, row: Row) -> Row:
        if "id" not in row:
            raise StoreError(f"Row for {table} has no id")
        if row["id"] in self._tables[table]:
            raise StoreError(f"Duplicate id {row['id']} in {table}")
        self._tables[table][row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def update(
        self,
        table: str,
        query: Query,
        patch: Row,
        *,
        lock: str | None = None,
        unlock: str | None = None,
    ) -> int:
        rows = self._select(table, query)

        if unlock is not None:
            for row in rows:
                held = self._locks.get((table, row["id"]))
                if held is not None and held[0] != unlock:
                    raise LockError(f"{table}/{row['id']} is locked by another token")
        if lock is not None:
            self._acquire(table, rows, lock)

        for row in rows:
            row.update(copy.deepcopy(patch))
            if unlock is not None:
                self._locks.pop((table, row["id"]), None)

        return len(rows)

    async def delete(self, table: str, query: Query) -> int:
        rows = self._select(table, query)
        for row in rows:
            del self._tables[table][row["id"]]
            self._locks.pop((table, row["id"]), None)
        return len(rows)
