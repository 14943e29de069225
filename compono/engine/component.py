"""
Component Service for Compono.

Entry point for managing component instances. Mutations record desired
state only; the daemons reconcile it with the domains afterwards.

Operations:
    add_instance     resolve a model and materialize it (transactional)
    update_instance  change title, append labels down the graph
    remove_instance  mark for destruction (transactional, daemons drain it)
    list_*           queries over instances, collections, links, graphs

Usage:
    service = ComponentService(store, resolver, schedulers, builder, connector, transactions)
    tx_id = await service.add_instance({"model": yaml_text, "deployment": {"name": "shop"}})
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from ..errors import InvalidStateError, ModelError, NotFoundError
from ..model.types import BasicModel, CompositeModel, Deployment, ResolvedModel
from ..schemas import (
    COLLECTIONS,
    INSTANCES,
    LINKS,
    Collection,
    CollectionState,
    Instance,
    InstanceState,
    Link,
    now,
)
from ..store import RecordLock
from .adjacency import CONNECTOR, SUBCOMPONENT
from .scheduler import EventType
from .tree import Tree, sort_collections

if TYPE_CHECKING:
    from ..model.resolver import ModelResolver
    from ..store import Query, Store
    from ..transactions import TransactionService
    from .scheduler import SchedulerRegistry
    from .tree import TreeBuilder, TreeConnector

logger = logging.getLogger(__name__)

TX_INSTANCE_ADD = "InstanceAdd"
TX_INSTANCE_UPDATE = "InstanceUpdate"
TX_INSTANCE_REMOVE = "InstanceRemove"


class InstanceSpec(BaseModel):
    """Request to add an instance."""

    parent: str | None = None
    subcomponent: str | None = None
    connector: str | None = None
    title: str | None = None
    model: dict[str, Any] | str | None = None
    deployment: Deployment = Field(default_factory=Deployment)


@dataclass
class Graph:
    """An instance and everything below it."""

    root: Instance
    instances: list[Instance] = field(default_factory=list)
    collections: list[Collection] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)


class ComponentService:
    """Instance lifecycle management."""

    def __init__(
        self,
        store: Store,
        resolver: ModelResolver,
        schedulers: SchedulerRegistry,
        builder: TreeBuilder,
        connector: TreeConnector,
        transactions: TransactionService,
        *,
        loop_retry: float = 5.0,
        loop_timeout: float | None = 300.0,
    ):
        self._store = store
        self._resolver = resolver
        self._schedulers = schedulers
        self._builder = builder
        self._connector = connector
        self._transactions = transactions
        self._loop_retry = loop_retry
        self._loop_timeout = loop_timeout

    # =========================================================================
    # Public operations
    # =========================================================================

    async def add_instance(self, spec: InstanceSpec | dict[str, Any]) -> str:
        """
        Add a basic or composite instance.

        The model is resolved before anything is written, so a ModelError
        is raised here and never leaves records behind. The rest runs in
        the background; the returned transaction completes with the new
        instance id as target, or aborts with the failure.

        Returns:
            Transaction id
        """
        if not isinstance(spec, InstanceSpec):
            spec = InstanceSpec.model_validate(spec)
        if not spec.parent and not spec.model:
            raise ModelError("Either a parent or a model is required")

        parent = await self.get_instance(spec.parent) if spec.parent else None
        deployment = spec.deployment
        raw_model = spec.model

        if parent is not None:
            if not isinstance(parent.model, CompositeModel):
                raise ModelError(f"Parent {parent.id} is not a composite instance")
            slot = parent.model.slot(subcomponent=spec.subcomponent, connector=spec.connector)
            if slot is None:
                raise NotFoundError("Slot", spec.subcomponent or spec.connector)
            slot_type = parent.model.slot_type(slot)
            if slot_type is None:
                raise ModelError(f"Slot {slot.name} cannot hold instances")
            if raw_model is None:
                raw_model = slot_type.raw
                deployment = _merge_deployment(slot.as_deployment(), deployment)

        model = await self._resolver.resolve(deployment, raw_model)
        if isinstance(model, BasicModel) and parent is None:
            raise ModelError("Basic instances must be added to a parent composite")

        tx = await self._transactions.start(TX_INSTANCE_ADD, parent=parent.id if parent else "")

        async def _work() -> str:
            if isinstance(model, BasicModel):
                instance = await self.add_basic(
                    parent,
                    model,
                    subcomponent=spec.subcomponent,
                    connector=spec.connector,
                    title=spec.title,
                )
            else:
                instance = await self.add_composite(
                    parent,
                    model,
                    subcomponent=spec.subcomponent,
                    connector=spec.connector,
                    title=spec.title,
                )
            return instance.id

        self._transactions.run(tx, _work())
        return tx.id

    async def update_instance(self, instance_id: str, data: dict[str, Any]) -> str:
        """
        Update the title and/or append labels.

        Labels propagate to every instance below this one.

        Returns:
            Transaction id
        """
        instance = await self.get_instance(instance_id)
        if instance.state == InstanceState.DESTROY:
            raise InvalidStateError(f"Instance {instance_id} is being removed")

        title = data.get("title")
        labels = list(data.get("labels") or [])
        tx = await self._transactions.start(TX_INSTANCE_UPDATE, target=instance_id, data=data)

        async def _work() -> str:
            if title:
                await self._store.update(INSTANCES, {"id": instance_id}, {"title": title})
            if labels:
                graph = await self._to_graph(instance)
                for member in graph.instances:
                    model = member.model.model_copy(update={"labels": member.model.labels + labels})
                    await self._store.update(
                        INSTANCES,
                        {"id": member.id},
                        {
                            "labels": member.labels + labels,
                            "model": model.model_dump(mode="json"),
                            "last": now(),
                        },
                    )
            return instance_id

        self._transactions.run(tx, _work())
        return tx.id

    async def remove_instance(self, instance_id: str) -> str:
        """
        Mark an instance (and, for composites, its graph) for destruction.

        Returns:
            Transaction id
        """
        instance = await self.get_instance(instance_id)
        tx = await self._transactions.start(TX_INSTANCE_REMOVE, target=instance_id)

        async def _work() -> str:
            if instance.type == "basic":
                await self.remove_basic(instance)
            else:
                await self.remove_composite(instance)
            return instance_id

        self._transactions.run(tx, _work())
        return tx.id

    async def get_instance(self, instance_id: str) -> Instance:
        rows = await self._store.search(INSTANCES, {"id": instance_id})
        if not rows:
            raise NotFoundError("Instance", instance_id)
        return Instance.model_validate(rows[0])

    async def list_instances(self, query: Query | None = None) -> list[Instance]:
        return [Instance.model_validate(r) for r in await self._store.search(INSTANCES, query)]

    async def list_collections(self, query: Query | None = None) -> list[Collection]:
        return [Collection.model_validate(r) for r in await self._store.search(COLLECTIONS, query)]

    async def list_links(self, query: Query | None = None) -> list[Link]:
        return [Link.model_validate(r) for r in await self._store.search(LINKS, query)]

    async def list_graphs(self, query: Query | None = None) -> list[Graph]:
        return [await self._to_graph(instance) for instance in await self.list_instances(query)]

    # =========================================================================
    # Engine primitives (also applied by the schedule daemon)
    # =========================================================================

    async def add_basic(
        self,
        parent: Instance,
        model: BasicModel,
        *,
        subcomponent: str | None = None,
        connector: str | None = None,
        domain: str | None = None,
        title: str | None = None,
    ) -> Instance:
        name = subcomponent or connector
        rows = await self._store.search(COLLECTIONS, {"parent": parent.id, "name": name})
        if not rows:
            raise NotFoundError("Collection", f"{parent.id}/{name}")
        collection = Collection.model_validate(rows[0])

        instance = Instance(
            type="basic",
            title=title or model.title or "",
            parent=parent.id,
            subcomponent=subcomponent or "",
            connector=connector or "",
            labels=list(model.labels),
            model=model,
            collection=collection.id,
            domain=domain or "",
        )
        await self._store.insert(INSTANCES, instance.model_dump(mode="json"))

        async with RecordLock(
            self._store,
            COLLECTIONS,
            collection.id,
            interval=self._loop_retry,
            timeout=self._loop_timeout,
        ) as lock:
            lock.set(members=lock.row["members"] + [instance.id], last=now())

        logger.info(f"[component] Added basic {instance.id} to {parent.id}/{name}")
        return instance

    async def add_composite(
        self,
        parent: Instance | None,
        model: CompositeModel,
        *,
        subcomponent: str | None = None,
        connector: str | None = None,
        title: str | None = None,
    ) -> Instance:
        tree = await self._builder.build_tree(
            parent, model, subcomponent=subcomponent, connector=connector, title=title
        )
        await self._connector.connect_tree(tree)
        await self._populate_tree(tree)

        stamp = now()
        for collection in tree.collections:
            await self._store.update(
                COLLECTIONS,
                {"id": collection.id},
                {"state": CollectionState.INIT.value, "last": stamp},
            )
        for instance in tree.instances:
            await self._store.update(
                INSTANCES,
                {"id": instance.id},
                {"state": InstanceState.READY.value, "last": stamp},
            )

        logger.info(
            f"[component] Added composite {tree.root.id}: {len(tree.instances)} composites, "
            f"{len(tree.collections)} collections, {len(tree.links)} links"
        )
        return tree.root

    async def _populate_tree(self, tree: Tree) -> None:
        for collection in sort_collections(tree.collections, tree.links):
            parent = tree.instance(collection.parent)
            kind = CONNECTOR if collection.kind == CONNECTOR else SUBCOMPONENT
            slot = parent.model.slot(**{kind: collection.name})
            slot_type = parent.model.slot_type(slot)

            events = await self._schedulers.schedule(parent, **{kind: collection.name})
            for event in events:
                if event.type != EventType.INSTANCE_ADD:
                    continue
                model = await self.resolve_slot(parent, slot, slot_type)
                await self.add_basic(
                    parent, model, domain=event.domain, **{kind: collection.name}
                )

    async def resolve_slot(self, parent: Instance, slot, slot_type: ResolvedModel) -> ResolvedModel:
        """Resolve a slot's type with the slot's own overrides."""
        return await self._resolver.resolve(slot.as_deployment(), slot_type.raw)

    async def remove_basic(self, instance: Instance) -> None:
        await self._store.update(
            INSTANCES,
            {"id": instance.id},
            {"state": InstanceState.DESTROY.value, "last": now()},
        )
        logger.info(f"[component] Marked basic {instance.id} for removal")

    async def remove_composite(self, instance: Instance) -> None:
        graph = await self._to_graph(instance)
        stamp = now()

        for collection in graph.collections:
            await self._store.update(
                COLLECTIONS,
                {"id": collection.id},
                {"state": CollectionState.DESTROY.value, "last": stamp},
            )
        for member in graph.instances:
            if member.type == "composite":
                await self._store.delete(INSTANCES, {"id": member.id})
            else:
                await self._store.update(
                    INSTANCES,
                    {"id": member.id},
                    {"state": InstanceState.DESTROY.value, "last": stamp},
                )
        logger.info(
            f"[component] Marked composite {instance.id} for removal "
            f"({len(graph.collections)} collections)"
        )

    async def _to_graph(self, root: Instance) -> Graph:
        graph = Graph(root=root, instances=[root])
        links: dict[str, Link] = {}

        queue = deque([root])
        while queue:
            current = queue.popleft()
            for row in await self._store.search(INSTANCES, {"parent": current.id}):
                child = Instance.model_validate(row)
                graph.instances.append(child)
                if child.type == "composite":
                    queue.append(child)

            for row in await self._store.search(COLLECTIONS, {"parent": current.id}):
                collection = Collection.model_validate(row)
                graph.collections.append(collection)
                for link_row in await self._store.search(LINKS, {"src": collection.id}):
                    links.setdefault(link_row["id"], Link.model_validate(link_row))
                for link_row in await self._store.search(LINKS, {"dst": collection.id}):
                    links.setdefault(link_row["id"], Link.model_validate(link_row))

        graph.links = list(links.values())
        return graph


def _merge_deployment(base: Deployment, override: Deployment) -> Deployment:
    """Deployment fields explicitly set in override win over base."""
    merged = base.model_dump()
    for key, value in override.model_dump(exclude_unset=True).items():
        if key == "variables":
            merged[key] = {**merged.get(key, {}), **value}
        else:
            merged[key] = value
    return Deployment.model_validate(merged)
