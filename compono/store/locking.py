"""
Record locks built on the store's conditional lock/unlock primitive.

Usage:
    async with RecordLock(store, "collections", collection_id, interval=0.5, timeout=300) as lock:
        members = lock.row["members"] + [instance_id]
        lock.set(members=members)
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from ..errors import LockError, LockTimeoutError, NotFoundError
from ..retry import poll_until

if TYPE_CHECKING:
    from .base import Row, Store

logger = logging.getLogger(__name__)


class RecordLock:
    """
    Async context manager holding the lock of one record.

    Fields passed to set() are written when the block exits normally; on
    error the lock is released without writing anything.

    Raises:
        LockTimeoutError: If the lock is not acquired within `timeout`.
        NotFoundError: If the record does not exist.
    """

    def __init__(
        self,
        store: Store,
        table: str,
        record_id: str,
        *,
        interval: float,
        timeout: float | None = None,
    ):
        self._store = store
        self._table = table
        self._record_id = record_id
        self._interval = interval
        self._timeout = timeout
        self._token = str(uuid.uuid4())
        self._patch: dict[str, Any] = {}
        self.row: Row = {}

    def set(self, **fields: Any) -> None:
        self._patch.update(fields)

    async def _acquire(self) -> Row:
        rows = await self._store.search(self._table, {"id": self._record_id}, lock=self._token)
        if not rows:
            raise NotFoundError(self._table, self._record_id)
        return rows[0]

    async def __aenter__(self) -> RecordLock:
        self.row = await poll_until(
            self._acquire,
            interval=self._interval,
            timeout=self._timeout,
            retry_on=(LockError,),
            operation_name=f"lock {self._table}/{self._record_id}",
            error_class=LockTimeoutError,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        patch = self._patch if exc_type is None else {}
        await self._store.update(
            self._table, {"id": self._record_id}, patch, unlock=self._token
        )
        return False
