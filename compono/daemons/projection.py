"""
Projection Daemon.

Projects the desired state kept in the core tables (collections, links,
instances) onto the execution domains through the DomainService, and
feeds domain-reported failures back into the core tables.

One pass:
1. sync_collections
   - destroy collections are removed from every domain, then deleted
     together with their links and instances
   - init collections are created on their target domains and marked ready;
     domain collections left failed by an earlier pass are recreated
   - links of ready collections: source side first, then destination
     side; missing or failed domain links are (re)created
   - update_collection on every ready (or just added) collection
2. sync_instances
   - failed proxies are removed, failed real instances mark their core
     instance failed; affected collections are updated again

update_collection converges one collection:
   - init members get a domain (least loaded) and are deployed
   - failed/destroy members are undeployed and dropped
   - every domain collection gets proxies for the ready members living
     in other domains, stale or failed proxies are replaced

Domain records point back at core records with `id=<core id>` and
`collection=<core collection id>` labels. Every step reads the current
state before writing, so a pass over converged state writes nothing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..concurrency import gather_all
from ..engine.scheduler import candidate_domains, pick_domain
from ..errors import DriverError, LoopTimeoutError, NotFoundError
from ..retry import poll_until
from ..schemas import (
    COLLECTIONS,
    INSTANCES,
    LINKS,
    Collection,
    CollectionState,
    DomainState,
    Instance,
    InstanceState,
    Link,
    Transaction,
    TransactionState,
    label_value,
    now,
)
from ..store import RecordLock
from .base import PeriodicDaemon

if TYPE_CHECKING:
    from ..domains import DomainService
    from ..schemas import DomainCollection, DomainInstance
    from ..store import Store

logger = logging.getLogger(__name__)

# Failures that leave the item for the next pass
_RECOVERABLE = (DriverError, NotFoundError, LoopTimeoutError)


def _ref(key: str, value: str) -> dict[str, Any]:
    return {"labels": {"$any": [f"{key}={value}"]}}


class ProjectionDaemon(PeriodicDaemon):
    """Reconciles core records with the domains."""

    name = "projection"

    def __init__(
        self,
        store: Store,
        domains: DomainService,
        *,
        interval: float = 5.0,
        loop_retry: float = 5.0,
        loop_timeout: float | None = 900.0,
    ):
        super().__init__(interval)
        self._store = store
        self._domains = domains
        self._loop_retry = loop_retry
        self._loop_timeout = loop_timeout

    async def run(self) -> None:
        await self.sync_collections()
        await self.sync_instances()

    # =========================================================================
    # Transactions
    # =========================================================================

    async def exec_transaction(self, tx_id: str) -> Transaction:
        """
        Wait for a domain transaction to settle.

        Raises:
            DriverError: If the transaction aborted
            LoopTimeoutError: If it did not settle within loop_timeout
        """

        async def probe() -> Transaction | None:
            txs = await self._domains.list_transactions({"id": tx_id})
            if not txs:
                raise NotFoundError("Transaction", tx_id)
            tx = txs[0]
            if tx.state == TransactionState.ABORTED:
                message = (tx.err or {}).get("message", "aborted")
                raise DriverError(f"{tx.type} failed: {message}")
            if tx.state == TransactionState.COMPLETED:
                return tx
            return None

        return await poll_until(
            probe,
            interval=self._loop_retry,
            timeout=self._loop_timeout,
            operation_name=f"transaction {tx_id}",
        )

    # =========================================================================
    # Collections
    # =========================================================================

    async def sync_collections(self) -> None:
        rows = await self._store.search(
            COLLECTIONS,
            {
                "state": {
                    "$in": [
                        CollectionState.INIT.value,
                        CollectionState.READY.value,
                        CollectionState.DESTROY.value,
                    ]
                }
            },
        )
        collections = [Collection.model_validate(row) for row in rows]
        destroy = [c for c in collections if c.state == CollectionState.DESTROY]
        init = [c for c in collections if c.state == CollectionState.INIT]
        ready = [c for c in collections if c.state == CollectionState.READY]

        await gather_all(self._remove_collection(c) for c in destroy)

        outcomes = await gather_all(self._add_collection(c) for c in init)
        added = [c for c, ok in zip(init, outcomes) if ok]

        await gather_all(self._add_links(c, "src") for c in ready + added)
        await gather_all(self._add_links(c, "dst") for c in ready + added)

        await gather_all(self.update_collection(c.id) for c in ready + added)

        if destroy or added:
            logger.info(f"[projection] Collections: {len(added)} added, {len(destroy)} removed")

    async def _domain_collections(self, collection_id: str) -> list[DomainCollection]:
        return await self._domains.list_collections(_ref("id", collection_id))

    async def _ready_domain_collections(self, collection_id: str) -> list[DomainCollection]:
        return [
            dc
            for dc in await self._domain_collections(collection_id)
            if dc.state == DomainState.READY
        ]

    async def _remove_collection(self, collection: Collection) -> None:
        dcs = await self._domain_collections(collection.id)
        try:
            await gather_all(self._exec(self._domains.remove_collection(dc.id)) for dc in dcs)
        except _RECOVERABLE as e:
            logger.warning(f"[projection] Removing collection {collection.id} failed: {e}")
            return

        await self._store.delete(LINKS, {"src": collection.id})
        await self._store.delete(LINKS, {"dst": collection.id})
        await self._store.delete(INSTANCES, {"collection": collection.id})
        await self._store.delete(COLLECTIONS, {"id": collection.id})
        logger.info(f"[projection] Removed collection {collection.id} ({collection.name})")

    async def _target_domains(self, collection: Collection) -> list[str]:
        query: dict[str, Any] = {"state": DomainState.READY.value}
        if collection.domains:
            query["id"] = {"$in": collection.domains}
        return [domain.id for domain in await self._domains.list_domains(query)]

    async def _add_collection(self, collection: Collection) -> bool:
        targets = await self._target_domains(collection)
        if not targets:
            logger.warning(f"[projection] No ready domain for collection {collection.id}")
            return False

        dcs = await self._domain_collections(collection.id)
        present = {dc.domain for dc in dcs if dc.state == DomainState.READY}
        stale = [dc for dc in dcs if dc.state != DomainState.READY]
        spec = {
            "labels": [f"id={collection.id}"],
            "name": collection.name,
            "proxy": bool(collection.addr),
            "proxy_addr": collection.addr,
            "publish": collection.publish,
            "inputs": collection.inputs,
            "outputs": collection.outputs,
            "data": {
                "publish_inputs": collection.publish_inputs,
                "publish_paths": collection.publish_paths,
            },
        }
        try:
            await gather_all(self._exec(self._domains.remove_collection(dc.id)) for dc in stale)
            await gather_all(
                self._exec(self._domains.add_collection(domain_id, spec))
                for domain_id in targets
                if domain_id not in present
            )
        except _RECOVERABLE as e:
            logger.warning(f"[projection] Adding collection {collection.id} failed: {e}")
            return False

        await self._store.update(
            COLLECTIONS,
            {"id": collection.id},
            {"state": CollectionState.READY.value, "last": now()},
        )
        return True

    async def _add_links(self, collection: Collection, side: str) -> None:
        rows = await self._store.search(LINKS, {side: collection.id})
        for link in (Link.model_validate(row) for row in rows):
            try:
                await self._add_link(link)
            except _RECOVERABLE as e:
                logger.warning(f"[projection] Adding link {link.id} failed: {e}")

    async def _add_link(self, link: Link) -> None:
        srcs = {dc.domain: dc for dc in await self._ready_domain_collections(link.src)}
        dsts = {dc.domain: dc for dc in await self._ready_domain_collections(link.dst)}
        dls = await self._domains.list_links(_ref("id", link.id))
        present = {dl.domain for dl in dls if dl.state == DomainState.READY}
        stale = [dl for dl in dls if dl.state != DomainState.READY]

        await gather_all(self._exec(self._domains.remove_link(dl.id)) for dl in stale)
        await gather_all(
            self._exec(
                self._domains.add_link(
                    {
                        "labels": [f"id={link.id}"],
                        "src": {"collection": srcs[domain_id].id, "name": link.src_name},
                        "dst": {"collection": dsts[domain_id].id, "name": link.dst_name},
                    }
                )
            )
            for domain_id in srcs
            if domain_id in dsts and domain_id not in present
        )

    # =========================================================================
    # Collection convergence
    # =========================================================================

    async def update_collection(self, collection_id: str) -> None:
        rows = await self._store.search(COLLECTIONS, {"id": collection_id})
        if not rows:
            logger.warning(f"[projection] Collection {collection_id} vanished before update")
            return
        collection = Collection.model_validate(rows[0])
        members = await self._members(collection)

        await self._assign_domains(collection, members)
        for member in members:
            if member.state == InstanceState.INIT and member.domain:
                await self._deploy(collection, member)

        for member in members:
            if member.state in (InstanceState.FAILED, InstanceState.DESTROY):
                await self._undeploy(collection, member)

        await self._sync_proxies(collection)

    async def _members(self, collection: Collection) -> list[Instance]:
        rows = await self._store.search(INSTANCES, {"id": {"$in": collection.members}})
        return [Instance.model_validate(row) for row in rows]

    async def _assign_domains(self, collection: Collection, members: list[Instance]) -> None:
        load: dict[str, int] = {}
        for member in members:
            if member.domain:
                load[member.domain] = load.get(member.domain, 0) + 1

        for member in members:
            if member.state != InstanceState.INIT or member.domain:
                continue
            candidates = await candidate_domains(
                self._domains, member.model.runtime, collection.domains
            )
            chosen = pick_domain(candidates, load)
            if chosen is None:
                logger.warning(f"[projection] No domain can host {member.id}")
                continue
            member.domain = chosen.id
            await self._store.update(INSTANCES, {"id": member.id}, {"domain": chosen.id})

    async def _deploy(self, collection: Collection, member: Instance) -> None:
        dcs = [
            dc
            for dc in await self._ready_domain_collections(collection.id)
            if dc.domain == member.domain
        ]
        if not dcs:
            logger.warning(
                f"[projection] Collection {collection.id} not present in domain {member.domain}"
            )
            return

        try:
            deployed = await self._deployed(member.id)
            if deployed is None:
                model = member.model
                tx = await self._exec(
                    self._domains.add_instance(
                        dcs[0].id,
                        {
                            "labels": [f"id={member.id}", f"collection={collection.id}"],
                            "proxy": False,
                            "runtime": model.runtime or "",
                            "source": model.source or "",
                            "durability": model.durability or "",
                            "variables": {k: str(v) for k, v in model.variables.items()},
                            "events": model.events,
                        },
                    )
                )
                deployed = (await self._domains.list_instances({"id": tx.target}))[0]
        except _RECOVERABLE as e:
            logger.warning(f"[projection] Deploying {member.id} failed: {e}")
            await self._store.update(
                INSTANCES,
                {"id": member.id},
                {"state": InstanceState.FAILED.value, "last": now()},
            )
            return

        await self._store.update(
            INSTANCES,
            {"id": member.id},
            {
                "addr": deployed.addr,
                "proxy_addr": deployed.proxy_addr,
                "state": InstanceState.READY.value,
                "last": now(),
            },
        )
        logger.info(f"[projection] Deployed {member.id} on {member.domain} at {deployed.addr}")

    async def _deployed(self, instance_id: str) -> DomainInstance | None:
        for di in await self._domains.list_instances(_ref("id", instance_id)):
            if not di.proxy and di.state == DomainState.READY:
                return di
        return None

    async def _undeploy(self, collection: Collection, member: Instance) -> None:
        deployed = await self._domains.list_instances(_ref("id", member.id))
        try:
            await gather_all(
                self._exec(self._domains.remove_instance(di.id)) for di in deployed if not di.proxy
            )
        except _RECOVERABLE as e:
            logger.warning(f"[projection] Undeploying {member.id} failed: {e}")
            return

        async with RecordLock(
            self._store,
            COLLECTIONS,
            collection.id,
            interval=self._loop_retry,
            timeout=self._loop_timeout,
        ) as lock:
            lock.set(
                members=[m for m in lock.row["members"] if m != member.id],
                last=now(),
            )
        await self._store.delete(INSTANCES, {"id": member.id})
        logger.info(f"[projection] Dropped {member.state.value} member {member.id}")

    async def _sync_proxies(self, collection: Collection) -> None:
        collection = Collection.model_validate(
            (await self._store.search(COLLECTIONS, {"id": collection.id}))[0]
        )
        ready = [
            m
            for m in await self._members(collection)
            if m.state == InstanceState.READY and m.domain and m.proxy_addr
        ]

        for dc in await self._ready_domain_collections(collection.id):
            wanted = {m.id: m for m in ready if m.domain != dc.domain}
            proxies = await self._domains.list_instances({"collection": dc.id, "proxy": True})

            stale = []
            current = set()
            for proxy in proxies:
                target = wanted.get(label_value(proxy.labels, "id") or "")
                if (
                    target is None
                    or proxy.state == DomainState.FAILED
                    or proxy.proxy_target != target.proxy_addr
                ):
                    stale.append(proxy)
                else:
                    current.add(target.id)

            try:
                await gather_all(
                    self._exec(self._domains.remove_instance(proxy.id)) for proxy in stale
                )
                await gather_all(
                    self._exec(
                        self._domains.add_instance(
                            dc.id,
                            {
                                "labels": [f"id={m.id}", f"collection={collection.id}"],
                                "proxy": True,
                                "proxy_target": m.proxy_addr,
                                "addr": m.addr,
                            },
                        )
                    )
                    for m in wanted.values()
                    if m.id not in current
                )
            except _RECOVERABLE as e:
                logger.warning(f"[projection] Proxy sync of {dc.id} failed: {e}")

    # =========================================================================
    # Instances
    # =========================================================================

    async def sync_instances(self) -> None:
        failed = await self._domains.list_instances({"state": DomainState.FAILED.value})
        touched: set[str] = set()

        for di in failed:
            collection_id = label_value(di.labels, "collection")
            try:
                if di.proxy:
                    await self._exec(self._domains.remove_instance(di.id))
                    if collection_id:
                        touched.add(collection_id)
                    continue

                core_id = label_value(di.labels, "id") or ""
                rows = await self._store.search(INSTANCES, {"id": core_id})
                if not rows:
                    logger.info(f"[projection] Removing orphaned domain instance {di.id}")
                    await self._exec(self._domains.remove_instance(di.id))
                    continue
                if rows[0]["state"] in (InstanceState.INIT.value, InstanceState.READY.value):
                    await self._store.update(
                        INSTANCES,
                        {"id": core_id},
                        {"state": InstanceState.FAILED.value, "last": now()},
                    )
                    logger.warning(f"[projection] Instance {core_id} failed in {di.domain}")
                    if collection_id:
                        touched.add(collection_id)
            except _RECOVERABLE as e:
                logger.warning(f"[projection] Handling failed instance {di.id} failed: {e}")

        await gather_all(self.update_collection(cid) for cid in sorted(touched))

    async def _exec(self, pending) -> Transaction:
        return await self.exec_transaction(await pending)
