"""
Transaction service.

Long-running operations (adding an instance, projecting a collection onto
a domain) return immediately with a transaction id. The operation runs in
the background and settles its transaction as completed or aborted:

    started ──► completed
        └─────► aborted

Terminal states are final; settling a transaction twice raises
InvalidStateError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .errors import ComponoError, InvalidStateError, NotFoundError
from .schemas import TRANSACTIONS, Transaction, TransactionState, now

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from .store import Query, Store

logger = logging.getLogger(__name__)


class TransactionService:
    """Records and settles transactions, and runs their background work."""

    def __init__(self, store: Store):
        self._store = store
        self._tasks: set[asyncio.Task] = set()

    async def start(
        self,
        type: str,
        *,
        parent: str = "",
        target: str = "",
        data: dict[str, Any] | None = None,
    ) -> Transaction:
        tx = Transaction(type=type, parent=parent, target=target, data=data or {})
        await self._store.insert(TRANSACTIONS, tx.model_dump(mode="json"))
        logger.debug(f"[tx] started {tx.type} {tx.id}")
        return tx

    async def _settle(self, tx_id: str, patch: dict[str, Any]) -> Transaction:
        rows = await self._store.search(TRANSACTIONS, {"id": tx_id})
        if not rows:
            raise NotFoundError("Transaction", tx_id)
        tx = Transaction.model_validate(rows[0])
        if tx.state != TransactionState.STARTED:
            raise InvalidStateError(f"Transaction {tx_id} already {tx.state.value}")

        patch = {**patch, "last": now()}
        await self._store.update(TRANSACTIONS, {"id": tx_id}, patch)
        return tx.model_copy(update=patch)

    async def complete(self, tx_id: str, data: dict[str, Any] | None = None) -> Transaction:
        patch: dict[str, Any] = {"state": TransactionState.COMPLETED.value}
        if data:
            patch.update(data)
        tx = await self._settle(tx_id, patch)
        logger.debug(f"[tx] completed {tx.type} {tx_id}")
        return tx

    async def abort(self, tx_id: str, error: BaseException) -> Transaction:
        if isinstance(error, ComponoError):
            err = error.to_dict()
        else:
            err = {"type": type(error).__name__, "message": str(error)}
        tx = await self._settle(tx_id, {"state": TransactionState.ABORTED.value, "err": err})
        logger.warning(f"[tx] aborted {tx.type} {tx_id}: {err['message']}")
        return tx

    async def list_transactions(self, query: Query | None = None) -> list[Transaction]:
        rows = await self._store.search(TRANSACTIONS, query, order_by="+ini")
        return [Transaction.model_validate(row) for row in rows]

    # ==================== Background execution ====================

    def run(self, tx: Transaction, work: Awaitable[str | None]) -> None:
        """
        Run work in the background and settle tx with its outcome.

        The value returned by work, if any, becomes the transaction target.
        """

        async def _runner() -> None:
            try:
                target = await work
            except Exception as e:
                logger.error(f"[tx] {tx.type} {tx.id} failed: {e}", exc_info=True)
                await self.abort(tx.id, e)
                return
            await self.complete(tx.id, {"target": target} if target else None)

        task = asyncio.create_task(_runner(), name=f"tx-{tx.type}-{tx.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def join(self) -> None:
        """Wait until every background operation has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
