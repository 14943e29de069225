"""
Store protocol.

The engine persists every record through this interface. Queries are
mappings of field -> value (equality) or field -> {operator: operand}:

    {"state": "ready", "last": {"$gte": cutoff}, "id": {"$in": ids}}

Supported operators: $eq $ne $gt $gte $lt $lte $in $nin $any $all.
$any / $all test list-valued fields for intersection / containment.

Locking:
    search(..., lock=token) atomically acquires the lock of every matched
    row or raises LockError if one is held by another live token.
    update(..., unlock=token) applies the patch and releases the lock
    only when the token matches.
"""

from __future__ import annotations

from typing import Any, Protocol

Query = dict[str, Any]
Row = dict[str, Any]


class Store(Protocol):
    """Protocol for the engine's document store."""

    async def search(
        self,
        table: str,
        query: Query | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
        lock: str | None = None,
    ) -> list[Row]:
        """Return copies of the rows matching query."""
        ...

    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row keyed by row["id"]."""
        ...

    async def update(
        self,
        table: str,
        query: Query,
        patch: Row,
        *,
        lock: str | None = None,
        unlock: str | None = None,
    ) -> int:
        """Apply patch to matching rows, returning the number updated."""
        ...

    async def delete(self, table: str, query: Query) -> int:
        """Delete matching rows, returning the number deleted."""
        ...
