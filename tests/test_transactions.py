"""
Tests for TransactionService.
"""
import asyncio

import pytest

from compono.errors import DriverError, InvalidStateError, NotFoundError
from compono.schemas import TransactionState
from compono.store import MemoryStore
from compono.transactions import TransactionService


@pytest.fixture
def transactions():
    return TransactionService(MemoryStore())


class TestTransactionLifecycle:
    """Tests for start/complete/abort."""

    @pytest.mark.asyncio
    async def test_start(self, transactions):
        tx = await transactions.start("InstanceAdd", parent="p1", data={"k": "v"})

        assert tx.state == TransactionState.STARTED
        [stored] = await transactions.list_transactions({"id": tx.id})
        assert stored.parent == "p1"
        assert stored.data == {"k": "v"}

    @pytest.mark.asyncio
    async def test_complete_with_target(self, transactions):
        tx = await transactions.start("InstanceAdd")
        await transactions.complete(tx.id, {"target": "i1"})

        [stored] = await transactions.list_transactions({"id": tx.id})
        assert stored.state == TransactionState.COMPLETED
        assert stored.target == "i1"
        assert stored.last >= stored.ini

    @pytest.mark.asyncio
    async def test_abort_serializes_error(self, transactions):
        tx = await transactions.start("AddInstance")
        await transactions.abort(tx.id, DriverError("backend down", driver="local"))

        [stored] = await transactions.list_transactions({"id": tx.id})
        assert stored.state == TransactionState.ABORTED
        assert stored.err == {"type": "DriverError", "message": "backend down"}

    @pytest.mark.asyncio
    async def test_abort_foreign_exception(self, transactions):
        tx = await transactions.start("AddInstance")
        await transactions.abort(tx.id, KeyError("k"))

        [stored] = await transactions.list_transactions({"id": tx.id})
        assert stored.err["type"] == "KeyError"

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, transactions):
        tx = await transactions.start("InstanceAdd")
        await transactions.complete(tx.id)

        with pytest.raises(InvalidStateError):
            await transactions.complete(tx.id)
        with pytest.raises(InvalidStateError):
            await transactions.abort(tx.id, RuntimeError("late"))

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, transactions):
        with pytest.raises(NotFoundError):
            await transactions.complete("nope")

    @pytest.mark.asyncio
    async def test_listing_ordered_by_start(self, transactions):
        first = await transactions.start("A")
        await asyncio.sleep(0.001)
        second = await transactions.start("B")

        listed = await transactions.list_transactions()
        assert [tx.id for tx in listed] == [first.id, second.id]


class TestBackgroundRun:
    """Tests for run/join."""

    @pytest.mark.asyncio
    async def test_run_completes_with_result_as_target(self, transactions):
        tx = await transactions.start("InstanceAdd")

        async def work():
            await asyncio.sleep(0.01)
            return "instance-1"

        transactions.run(tx, work())
        [pending] = await transactions.list_transactions({"id": tx.id})
        assert pending.state == TransactionState.STARTED

        await transactions.join()
        [done] = await transactions.list_transactions({"id": tx.id})
        assert done.state == TransactionState.COMPLETED
        assert done.target == "instance-1"

    @pytest.mark.asyncio
    async def test_run_aborts_on_error(self, transactions):
        tx = await transactions.start("InstanceAdd")

        async def work():
            raise DriverError("no capacity")

        transactions.run(tx, work())
        await transactions.join()

        [done] = await transactions.list_transactions({"id": tx.id})
        assert done.state == TransactionState.ABORTED
        assert done.err["message"] == "no capacity"

    @pytest.mark.asyncio
    async def test_join_without_tasks(self, transactions):
        await transactions.join()
