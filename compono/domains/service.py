"""
Domain Service for Compono.

Front door to every execution domain. Keeps the domain-side records
(domains, domain_collections, domain_instances, domain_links) and
dispatches side effects to the driver registered for each domain type.

Every mutating call validates its arguments synchronously, starts a
transaction, runs the driver operation in the background and returns the
transaction id. Callers wait on the transaction (see
ProjectionDaemon.exec_transaction) when they need the outcome.

Usage:
    domains = DomainService(store, transactions)
    domains.register_driver(LocalDriver())
    tx_id = await domains.add_domain({"type": "local", "runtimes": ["docker"]})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import DriverError, NotFoundError
from ..schemas import (
    DOMAIN_COLLECTIONS,
    DOMAIN_INSTANCES,
    DOMAIN_LINKS,
    DOMAINS,
    Domain,
    DomainCollection,
    DomainInstance,
    DomainLink,
    DomainState,
    LinkEnd,
    Transaction,
    now,
)
from ..store import RecordLock

if TYPE_CHECKING:
    from ..store import Query, Store
    from ..transactions import TransactionService
    from .base import DomainDriver

logger = logging.getLogger(__name__)


class DomainService:
    """Driver registry plus transactional domain operations."""

    def __init__(
        self,
        store: Store,
        transactions: TransactionService,
        *,
        loop_retry: float = 5.0,
        lock_timeout: float | None = 300.0,
    ):
        self._store = store
        self._transactions = transactions
        self._loop_retry = loop_retry
        self._lock_timeout = lock_timeout
        self._drivers: dict[str, DomainDriver] = {}

    # ==================== Drivers ====================

    def register_driver(self, driver: DomainDriver) -> None:
        if not hasattr(driver, "add_instance") or not callable(driver.add_instance):
            raise ValueError("Domain driver must have 'add_instance' method")
        self._drivers[driver.name] = driver
        logger.info(f"[domains] Registered driver: {driver.name}")

    def get_driver(self, name: str) -> DomainDriver:
        driver = self._drivers.get(name)
        if driver is None:
            raise DriverError(f"No driver registered for domain type {name!r}")
        return driver

    def list_drivers(self) -> list[str]:
        return list(self._drivers.keys())

    # ==================== Lookups ====================

    async def _get(self, table: str, record_id: str, kind: str) -> dict[str, Any]:
        rows = await self._store.search(table, {"id": record_id})
        if not rows:
            raise NotFoundError(kind, record_id)
        return rows[0]

    async def _domain(self, domain_id: str) -> Domain:
        return Domain.model_validate(await self._get(DOMAINS, domain_id, "Domain"))

    async def _collection(self, collection_id: str) -> DomainCollection:
        return DomainCollection.model_validate(
            await self._get(DOMAIN_COLLECTIONS, collection_id, "Domain collection")
        )

    async def _instance(self, instance_id: str) -> DomainInstance:
        return DomainInstance.model_validate(
            await self._get(DOMAIN_INSTANCES, instance_id, "Domain instance")
        )

    async def _start(self, type: str, work, *, target: str = "", data=None) -> str:
        tx = await self._transactions.start(type, target=target, data=data)
        self._transactions.run(tx, work)
        return tx.id

    # ==================== Domains ====================

    async def add_domain(self, spec: dict[str, Any]) -> str:
        domain = Domain.model_validate(spec)
        driver = self.get_driver(domain.type)
        await self._store.insert(DOMAINS, domain.model_dump(mode="json"))

        async def _work() -> str:
            patch = await driver.add_domain(domain) or {}
            await self._store.update(
                DOMAINS,
                {"id": domain.id},
                {**patch, "state": DomainState.READY.value, "last": now()},
            )
            return domain.id

        return await self._start("AddDomain", _work(), target=domain.id)

    async def update_domain(self, domain_id: str, data: dict[str, Any]) -> str:
        await self._domain(domain_id)
        patch = {key: data[key] for key in ("title", "labels", "runtimes", "data") if key in data}

        async def _work() -> str:
            await self._store.update(DOMAINS, {"id": domain_id}, {**patch, "last": now()})
            return domain_id

        return await self._start("UpdateDomain", _work(), target=domain_id)

    async def remove_domain(self, domain_id: str) -> str:
        domain = await self._domain(domain_id)
        driver = self.get_driver(domain.type)

        async def _work() -> str:
            await driver.remove_domain(domain)
            await self._store.delete(DOMAIN_LINKS, {"domain": domain_id})
            await self._store.delete(DOMAIN_INSTANCES, {"domain": domain_id})
            await self._store.delete(DOMAIN_COLLECTIONS, {"domain": domain_id})
            await self._store.delete(DOMAINS, {"id": domain_id})
            return domain_id

        return await self._start("RemoveDomain", _work(), target=domain_id)

    async def discover_domains(self, driver_name: str, query: Query | None = None) -> list[str]:
        """Register the domains a driver reports that are not yet known."""
        driver = self.get_driver(driver_name)
        known = {row["id"] for row in await self._store.search(DOMAINS)}

        tx_ids = []
        for spec in await driver.list_domains(query):
            if spec.get("id") in known:
                continue
            tx_ids.append(await self.add_domain({**spec, "type": driver_name}))
        return tx_ids

    # ==================== Collections ====================

    async def add_collection(self, domain_id: str, spec: dict[str, Any]) -> str:
        domain = await self._domain(domain_id)
        driver = self.get_driver(domain.type)
        collection = DomainCollection.model_validate({**spec, "domain": domain_id})
        await self._store.insert(DOMAIN_COLLECTIONS, collection.model_dump(mode="json"))

        async def _work() -> str:
            try:
                patch = await driver.add_collection(domain, collection) or {}
            except Exception:
                await self._mark_failed(DOMAIN_COLLECTIONS, collection.id)
                raise
            await self._store.update(
                DOMAIN_COLLECTIONS,
                {"id": collection.id},
                {**patch, "state": DomainState.READY.value, "last": now()},
            )
            return collection.id

        return await self._start("AddCollection", _work(), target=collection.id)

    async def remove_collection(self, collection_id: str) -> str:
        collection = await self._collection(collection_id)
        domain = await self._domain(collection.domain)
        driver = self.get_driver(domain.type)

        async def _work() -> str:
            await driver.remove_collection(domain, collection)
            await self._store.delete(DOMAIN_INSTANCES, {"collection": collection_id})
            for link in await self._store.search(DOMAIN_LINKS, {"domain": domain.id}):
                if collection_id in (link["src"]["collection"], link["dst"]["collection"]):
                    await self._store.delete(DOMAIN_LINKS, {"id": link["id"]})
            await self._store.delete(DOMAIN_COLLECTIONS, {"id": collection_id})
            return collection_id

        return await self._start("RemoveCollection", _work(), target=collection_id)

    async def event_collection(self, collection_id: str, event: str) -> str:
        collection = await self._collection(collection_id)
        domain = await self._domain(collection.domain)
        driver = self.get_driver(domain.type)

        async def _work() -> str:
            await driver.event_collection(domain, collection, event)
            return collection_id

        return await self._start("EventCollection", _work(), target=collection_id)

    # ==================== Instances ====================

    async def add_instance(self, collection_id: str, spec: dict[str, Any]) -> str:
        collection = await self._collection(collection_id)
        domain = await self._domain(collection.domain)
        driver = self.get_driver(domain.type)
        instance = DomainInstance.model_validate(
            {**spec, "domain": domain.id, "collection": collection_id}
        )
        await self._store.insert(DOMAIN_INSTANCES, instance.model_dump(mode="json"))

        async def _work() -> str:
            try:
                patch = await driver.add_instance(domain, collection, instance) or {}
            except Exception:
                await self._mark_failed(DOMAIN_INSTANCES, instance.id)
                raise
            await self._store.update(
                DOMAIN_INSTANCES,
                {"id": instance.id},
                {**patch, "state": DomainState.READY.value, "last": now()},
            )
            async with self._lock(collection_id) as lock:
                lock.set(members=lock.row["members"] + [instance.id], last=now())
            return instance.id

        return await self._start("AddInstance", _work(), target=instance.id)

    async def remove_instance(self, instance_id: str) -> str:
        instance = await self._instance(instance_id)
        collection = await self._collection(instance.collection)
        domain = await self._domain(instance.domain)
        driver = self.get_driver(domain.type)

        async def _work() -> str:
            await driver.remove_instance(domain, collection, instance)
            async with self._lock(collection.id) as lock:
                members = [m for m in lock.row["members"] if m != instance_id]
                lock.set(members=members, last=now())
            await self._store.delete(DOMAIN_INSTANCES, {"id": instance_id})
            return instance_id

        return await self._start("RemoveInstance", _work(), target=instance_id)

    async def event_instance(self, instance_id: str, event: str) -> str:
        instance = await self._instance(instance_id)
        domain = await self._domain(instance.domain)
        driver = self.get_driver(domain.type)

        async def _work() -> str:
            await driver.event_instance(domain, instance, event)
            return instance_id

        return await self._start("EventInstance", _work(), target=instance_id)

    async def update_instance_state(self, instance_id: str, state: DomainState | str) -> None:
        """Record a state change reported by a driver (e.g. a crashed instance)."""
        await self._instance(instance_id)
        await self._store.update(
            DOMAIN_INSTANCES,
            {"id": instance_id},
            {"state": DomainState(state).value, "last": now()},
        )

    async def _mark_failed(self, table: str, row_id: str) -> None:
        await self._store.update(
            table, {"id": row_id}, {"state": DomainState.FAILED.value, "last": now()}
        )

    def _lock(self, collection_id: str) -> RecordLock:
        return RecordLock(
            self._store,
            DOMAIN_COLLECTIONS,
            collection_id,
            interval=self._loop_retry,
            timeout=self._lock_timeout,
        )

    # ==================== Links ====================

    async def add_link(self, spec: dict[str, Any]) -> str:
        src_end = LinkEnd.model_validate(spec["src"])
        dst_end = LinkEnd.model_validate(spec["dst"])
        src = await self._collection(src_end.collection)
        dst = await self._collection(dst_end.collection)
        if src.domain != dst.domain:
            raise DriverError(
                f"Link endpoints live in different domains: {src.domain}, {dst.domain}"
            )
        domain = await self._domain(src.domain)
        driver = self.get_driver(domain.type)

        link = DomainLink(
            domain=domain.id, labels=spec.get("labels", []), src=src_end, dst=dst_end
        )
        await self._store.insert(DOMAIN_LINKS, link.model_dump(mode="json"))

        async def _work() -> str:
            try:
                patch = await driver.add_link(domain, link, src, dst) or {}
            except Exception:
                await self._mark_failed(DOMAIN_LINKS, link.id)
                raise
            await self._store.update(
                DOMAIN_LINKS,
                {"id": link.id},
                {**patch, "state": DomainState.READY.value, "last": now()},
            )
            return link.id

        return await self._start("AddLink", _work(), target=link.id)

    async def remove_link(self, link_id: str) -> str:
        link = DomainLink.model_validate(await self._get(DOMAIN_LINKS, link_id, "Domain link"))
        domain = await self._domain(link.domain)
        driver = self.get_driver(domain.type)

        async def _work() -> str:
            await driver.remove_link(domain, link)
            await self._store.delete(DOMAIN_LINKS, {"id": link_id})
            return link_id

        return await self._start("RemoveLink", _work(), target=link_id)

    # ==================== Queries ====================

    async def list_domains(self, query: Query | None = None) -> list[Domain]:
        query = dict(query or {})
        query.setdefault("state", DomainState.READY.value)
        rows = await self._store.search(DOMAINS, query)
        return [Domain.model_validate(row) for row in rows]

    async def list_collections(self, query: Query | None = None) -> list[DomainCollection]:
        rows = await self._store.search(DOMAIN_COLLECTIONS, query)
        return [DomainCollection.model_validate(row) for row in rows]

    async def list_instances(self, query: Query | None = None) -> list[DomainInstance]:
        rows = await self._store.search(DOMAIN_INSTANCES, query)
        return [DomainInstance.model_validate(row) for row in rows]

    async def list_links(self, query: Query | None = None) -> list[DomainLink]:
        rows = await self._store.search(DOMAIN_LINKS, query)
        return [DomainLink.model_validate(row) for row in rows]

    async def list_transactions(self, query: Query | None = None) -> list[Transaction]:
        return await self._transactions.list_transactions(query)
