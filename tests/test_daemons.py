"""
Tests for the schedule and projection daemons.
"""
import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from compono.daemons import PeriodicDaemon, ScheduleDaemon
from compono.engine import EventType, SchedulingEvent
from compono.errors import DriverError, InvariantError, NotFoundError
from compono.model import CompositeModel
from compono.schemas import (
    COLLECTIONS,
    CollectionState,
    DomainState,
    Instance,
    InstanceState,
    TransactionState,
    label_value,
)


async def _domain(engine):
    tx_id = await engine.domains.add_domain({"type": "local", "runtimes": ["docker"]})
    await engine.transactions.join()
    [tx] = await engine.transactions.list_transactions({"id": tx_id})
    return tx.target


async def _add(engine, model):
    tx_id = await engine.components.add_instance({"model": model})
    await engine.transactions.join()
    [tx] = await engine.transactions.list_transactions({"id": tx_id})
    assert tx.state == TransactionState.COMPLETED, tx.err
    return await engine.components.get_instance(tx.target)


async def _collection(engine, root, name):
    [collection] = await engine.components.list_collections({"parent": root.id, "name": name})
    return collection


async def _basics(engine, collection=None):
    query = {"type": "basic"}
    if collection is not None:
        query["collection"] = collection.id
    return await engine.components.list_instances(query)


# =============================================================================
# ProjectionDaemon
# =============================================================================


class TestProjection:
    """Tests for projecting core records onto domains."""

    @pytest.mark.asyncio
    async def test_single_domain(self, engine, app_model):
        domain_id = await _domain(engine)
        root = await _add(engine, app_model)

        await engine.projection_daemon.run()

        p = await _collection(engine, root, "P")
        c = await _collection(engine, root, "C")
        assert p.state == CollectionState.READY
        assert c.state == CollectionState.READY

        dcs = {label_value(dc.labels, "id"): dc for dc in await engine.domains.list_collections()}
        assert set(dcs) == {p.id, c.id}
        assert dcs[p.id].outputs == {"e": "tcp:80"}
        assert not dcs[p.id].proxy

        for instance in await _basics(engine):
            assert instance.state == InstanceState.READY
            assert instance.domain == domain_id
            assert instance.addr.startswith("10.1.")
            assert instance.proxy_addr.startswith("10.1.")

        deployed = await engine.domains.list_instances()
        assert len(deployed) == 4
        assert not any(di.proxy for di in deployed)

        [link] = await engine.domains.list_links()
        assert link.src.collection == dcs[p.id].id
        assert link.dst.collection == dcs[c.id].id
        assert (link.src.name, link.dst.name) == ("e", "f")

    @pytest.mark.asyncio
    async def test_converged_pass_writes_nothing(self, engine, store, app_model):
        await _domain(engine)
        await _add(engine, app_model)
        await engine.projection_daemon.run()

        with patch.object(store, "insert", wraps=store.insert) as insert, patch.object(
            store, "update", wraps=store.update
        ) as update, patch.object(store, "delete", wraps=store.delete) as delete:
            await engine.projection_daemon.run()

        insert.assert_not_called()
        update.assert_not_called()
        delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_domain_assigned_during_projection(self, engine, app_model):
        await _add(engine, app_model)
        assert all(not b.domain for b in await _basics(engine))

        domain_id = await _domain(engine)
        await engine.projection_daemon.run()

        basics = await _basics(engine)
        assert all(b.domain == domain_id for b in basics)
        assert all(b.state == InstanceState.READY for b in basics)

    @pytest.mark.asyncio
    async def test_no_domain_leaves_collections_pending(self, engine, app_model, caplog):
        root = await _add(engine, app_model)

        with caplog.at_level(logging.WARNING, logger="compono.daemons.projection"):
            await engine.projection_daemon.run()

        assert (await _collection(engine, root, "P")).state == CollectionState.INIT
        assert "No ready domain" in caplog.text

    @pytest.mark.asyncio
    async def test_two_domains_get_proxies(self, engine, app_model):
        d1 = await _domain(engine)
        d2 = await _domain(engine)
        await _add(engine, app_model)

        await engine.projection_daemon.run()

        basics = {b.id: b for b in await _basics(engine)}
        assert sorted(b.domain for b in basics.values()) == sorted([d1, d1, d2, d2])

        proxies = await engine.domains.list_instances({"proxy": True})
        assert len(proxies) == 4
        for proxy in proxies:
            target = basics[label_value(proxy.labels, "id")]
            assert target.domain != proxy.domain
            assert proxy.proxy_target == target.proxy_addr

        assert len(await engine.domains.list_links()) == 2

    @pytest.mark.asyncio
    async def test_deploy_failure_then_recovery(self, engine, driver, app_model):
        await _domain(engine)
        root = await _add(engine, app_model)
        driver.fail_on.add("add_instance")

        await engine.projection_daemon.run()

        basics = await _basics(engine)
        assert len(basics) == 4
        assert all(b.state == InstanceState.FAILED for b in basics)

        driver.fail_on.clear()
        await engine.projection_daemon.run()

        assert await _basics(engine) == []
        assert (await _collection(engine, root, "P")).members == []
        assert await engine.domains.list_instances() == []

    @pytest.mark.asyncio
    async def test_collection_failure_then_recovery(self, engine, driver, app_model):
        await _domain(engine)
        root = await _add(engine, app_model)
        driver.fail_on.add("add_collection")

        await engine.projection_daemon.run()

        assert (await _collection(engine, root, "P")).state == CollectionState.INIT
        failed = await engine.domains.list_collections()
        assert [dc.state for dc in failed] == [DomainState.FAILED, DomainState.FAILED]

        driver.fail_on.clear()
        await engine.projection_daemon.run()

        assert (await _collection(engine, root, "P")).state == CollectionState.READY
        dcs = await engine.domains.list_collections()
        assert len(dcs) == 2
        assert all(dc.state == DomainState.READY for dc in dcs)
        assert not {dc.id for dc in failed} & {dc.id for dc in dcs}
        assert len(driver.resources["collections"]) == 2
        assert all(b.state == InstanceState.READY for b in await _basics(engine))
        assert len(driver.resources["links"]) == 1

    @pytest.mark.asyncio
    async def test_link_failure_then_recovery(self, engine, driver, app_model):
        await _domain(engine)
        await _add(engine, app_model)
        driver.fail_on.add("add_link")

        await engine.projection_daemon.run()

        [failed] = await engine.domains.list_links()
        assert failed.state == DomainState.FAILED
        assert driver.resources["links"] == {}

        driver.fail_on.clear()
        await engine.projection_daemon.run()

        [link] = await engine.domains.list_links()
        assert link.id != failed.id
        assert link.state == DomainState.READY
        assert len(driver.resources["links"]) == 1

    @pytest.mark.asyncio
    async def test_failed_proxy_replaced(self, engine, app_model):
        await _domain(engine)
        await _domain(engine)
        await _add(engine, app_model)
        await engine.projection_daemon.run()

        [broken, *_] = await engine.domains.list_instances({"proxy": True})
        await engine.domains.update_instance_state(broken.id, DomainState.FAILED)
        await engine.projection_daemon.run()

        proxies = await engine.domains.list_instances({"proxy": True})
        assert len(proxies) == 4
        assert broken.id not in {p.id for p in proxies}
        assert all(p.state == DomainState.READY for p in proxies)

    @pytest.mark.asyncio
    async def test_failed_instance_reported_by_domain(self, engine, app_model):
        await _domain(engine)
        await _domain(engine)
        root = await _add(engine, app_model)
        await engine.projection_daemon.run()
        p = await _collection(engine, root, "P")

        [crashed, *_] = await engine.domains.list_instances(
            {"proxy": False, "labels": {"$any": [f"collection={p.id}"]}}
        )
        core_id = label_value(crashed.labels, "id")
        await engine.domains.update_instance_state(crashed.id, "failed")
        await engine.projection_daemon.run()

        survivors = await _basics(engine, p)
        assert len(survivors) == 1
        assert survivors[0].id != core_id
        assert (await _collection(engine, root, "P")).members == [survivors[0].id]
        assert await engine.domains.list_instances({"labels": {"$any": [f"id={core_id}"]}}) == []
        assert len(await engine.domains.list_instances({"proxy": True})) == 3

    @pytest.mark.asyncio
    async def test_orphaned_domain_instance_removed(self, engine):
        domain_id = await _domain(engine)
        dc_tx = await engine.domains.add_collection(domain_id, {"name": "stray"})
        dc = await engine.projection_daemon.exec_transaction(dc_tx)
        di_tx = await engine.domains.add_instance(dc.target, {"labels": ["id=ghost"]})
        di = await engine.projection_daemon.exec_transaction(di_tx)
        await engine.domains.update_instance_state(di.target, "failed")

        await engine.projection_daemon.sync_instances()

        assert await engine.domains.list_instances() == []

    @pytest.mark.asyncio
    async def test_removed_composite_cleaned_up(self, engine, driver, app_model):
        await _domain(engine)
        root = await _add(engine, app_model)
        await engine.projection_daemon.run()

        await engine.components.remove_instance(root.id)
        await engine.transactions.join()
        await engine.projection_daemon.run()

        assert await engine.components.list_instances() == []
        assert await engine.components.list_collections() == []
        assert await engine.components.list_links() == []
        assert await engine.domains.list_collections() == []
        assert await engine.domains.list_instances() == []
        assert await engine.domains.list_links() == []
        assert driver.resources["collections"] == {}

    @pytest.mark.asyncio
    async def test_exec_transaction_aborted(self, engine, driver):
        driver.fail_on.add("add_domain")
        tx_id = await engine.domains.add_domain({"type": "local"})

        with pytest.raises(DriverError, match="AddDomain failed"):
            await engine.projection_daemon.exec_transaction(tx_id)

    @pytest.mark.asyncio
    async def test_exec_transaction_unknown(self, engine):
        with pytest.raises(NotFoundError):
            await engine.projection_daemon.exec_transaction("ghost")


# =============================================================================
# ScheduleDaemon
# =============================================================================


class TestScheduleDaemon:
    """Tests for applying scheduling decisions."""

    def test_sort_events_children_first(self):
        a = Instance(type="composite", model=CompositeModel())
        b = Instance(type="composite", model=CompositeModel(), parent=a.id)
        c = Instance(type="composite", model=CompositeModel(), parent=b.id)
        d = Instance(type="composite", model=CompositeModel(), parent="outside")
        events = {
            i.id: [SchedulingEvent(type=EventType.INSTANCE_ADD, parent=i.id, subcomponent="s")]
            for i in (a, b, c, d)
        }

        ordered = ScheduleDaemon._sort_events([a, b, c, d], events)

        assert [e.parent for e in ordered] == [c.id, b.id, a.id, d.id]

    @pytest.mark.asyncio
    async def test_scale_up_on_cpu(self, engine, store, app_model):
        domain_id = await _domain(engine)
        root = await _add(engine, app_model)
        await engine.projection_daemon.run()
        c = await _collection(engine, root, "C")
        await store.update(COLLECTIONS, {"id": c.id}, {"metrics": {"cpu": 0.9}})

        [event] = await engine.schedule_daemon.run()

        assert event.type == EventType.INSTANCE_ADD
        assert event.subcomponent == "C"
        assert event.domain == domain_id
        assert len(await _basics(engine, c)) == 3

        await engine.projection_daemon.run()
        assert all(b.state == InstanceState.READY for b in await _basics(engine, c))

    @pytest.mark.asyncio
    async def test_scale_down_on_cpu(self, engine, store, app_model):
        await _domain(engine)
        root = await _add(engine, app_model)
        await engine.projection_daemon.run()
        c = await _collection(engine, root, "C")
        await store.update(COLLECTIONS, {"id": c.id}, {"metrics": {"cpu": 0.1}})

        [event] = await engine.schedule_daemon.run()

        assert event.type == EventType.INSTANCE_REMOVE
        victim = await engine.components.get_instance(event.instance)
        assert victim.state == InstanceState.DESTROY

        await engine.projection_daemon.run()
        assert len((await _collection(engine, root, "C")).members) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_do_bumps_last(self, engine, app_model):
        root = await _add(engine, app_model)
        await asyncio.sleep(0.01)

        assert await engine.schedule_daemon.run([root.id]) == []

        assert (await engine.components.get_instance(root.id)).last > root.last

    @pytest.mark.asyncio
    async def test_time_frame_excludes_idle_composites(self, engine, store, app_model):
        root = await _add(engine, app_model)
        c = await _collection(engine, root, "C")
        await store.update(COLLECTIONS, {"id": c.id}, {"metrics": {"cpu": 0.9}})
        await asyncio.sleep(0.05)

        assert await engine.schedule_daemon.run(time_frame=0.01) == []
        assert (await engine.components.get_instance(root.id)).last == root.last

    @pytest.mark.asyncio
    async def test_failed_event_is_skipped(self, engine, store, app_model):
        root = await _add(engine, app_model)
        schedulers = MagicMock()
        schedulers.schedule = AsyncMock(
            return_value=[
                SchedulingEvent(
                    type=EventType.INSTANCE_REMOVE,
                    parent=root.id,
                    subcomponent="C",
                    instance="ghost",
                )
            ]
        )
        daemon = ScheduleDaemon(store, schedulers, engine.components)

        assert await daemon.run() == []

    @pytest.mark.asyncio
    async def test_scheduler_errors_skip_the_composite(self, engine, store, app_model):
        await _add(engine, app_model)
        schedulers = MagicMock()
        schedulers.schedule = AsyncMock(side_effect=NotFoundError("Collection", "x"))
        daemon = ScheduleDaemon(store, schedulers, engine.components)

        assert await daemon.run() == []

    @pytest.mark.asyncio
    async def test_invariant_errors_propagate(self, engine, store, app_model):
        await _add(engine, app_model)
        schedulers = MagicMock()
        schedulers.schedule = AsyncMock(side_effect=InvariantError("broken tree"))
        daemon = ScheduleDaemon(store, schedulers, engine.components)

        with pytest.raises(InvariantError):
            await daemon.run()
        assert await daemon.run_once() is False


# =============================================================================
# PeriodicDaemon
# =============================================================================


class _Counter(PeriodicDaemon):
    name = "counter"

    def __init__(self, error=None):
        super().__init__(interval=0.01)
        self.passes = 0
        self.error = error

    async def run(self):
        self.passes += 1
        if self.error is not None:
            raise self.error


class TestPeriodicDaemon:
    """Tests for the periodic loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        daemon = _Counter()
        daemon.start()
        daemon.start()
        await asyncio.sleep(0.05)

        assert daemon.running
        daemon.stop()
        await daemon.join()

        assert not daemon.running
        assert daemon.passes >= 1

    @pytest.mark.asyncio
    async def test_failed_pass_keeps_looping(self, caplog):
        daemon = _Counter(error=RuntimeError("boom"))

        with caplog.at_level(logging.ERROR, logger="compono.daemons.base"):
            daemon.start()
            await asyncio.sleep(0.06)
            daemon.stop()
            await daemon.join()

        assert daemon.passes >= 2
        assert "[counter] Pass failed: boom" in caplog.text

    @pytest.mark.asyncio
    async def test_invariant_logged_critical(self, caplog):
        daemon = _Counter(error=InvariantError("cycle"))

        with caplog.at_level(logging.CRITICAL, logger="compono.daemons.base"):
            assert await daemon.run_once() is False

        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    @pytest.mark.asyncio
    async def test_run_once_success(self):
        daemon = _Counter()
        assert await daemon.run_once() is True
        assert daemon.passes == 1

    @pytest.mark.asyncio
    async def test_join_before_start(self):
        await _Counter().join()
