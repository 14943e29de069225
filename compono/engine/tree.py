"""
Instance trees: building, connecting and ordering.

Adding a composite instance materializes a tree:

1. build_tree: insert the composite instance, one collection per basic
   slot, and recurse into composite slots as many times as the scheduler
   asks for
2. connect_tree: derive the links between the tree's collections (and
   collections outside the tree they connect to) from adjacency
3. sort_collections: order collections so consumers come before their
   producers, which is the order they are populated in
"""

from __future__ import annotations

import ipaddress
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import InvariantError
from ..model.types import BasicModel, CompositeModel, LinkConnector, NativeConnector
from ..schemas import COLLECTIONS, INSTANCES, LINKS, Collection, Instance, Link
from .adjacency import CONNECTOR, SUBCOMPONENT, endpoint_protocol
from .scheduler import EventType

if TYPE_CHECKING:
    from ..model.resolver import ModelResolver
    from ..store import Store
    from .adjacency import AdjacencyResolver
    from .scheduler import SchedulerRegistry

logger = logging.getLogger(__name__)


def random_address(cidr: str, rng: random.Random | None = None) -> str:
    """Random host address inside cidr."""
    network = ipaddress.ip_network(cidr)
    rng = rng or random.Random()
    if network.num_addresses <= 2:
        return str(network.network_address)
    return str(network.network_address + rng.randrange(1, network.num_addresses - 1))


@dataclass
class Tree:
    """Records created while materializing one composite instance."""

    root: Instance
    instances: list[Instance] = field(default_factory=list)
    collections: list[Collection] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)

    def instance(self, instance_id: str) -> Instance | None:
        for instance in self.instances:
            if instance.id == instance_id:
                return instance
        return None


class TreeBuilder:
    """
    Materializes composite instances into instance/collection trees.

    Usage:
        builder = TreeBuilder(store, resolver, schedulers)
        tree = await builder.build_tree(None, model, title="shop")
    """

    def __init__(
        self,
        store: Store,
        resolver: ModelResolver,
        schedulers: SchedulerRegistry,
        *,
        connector_cidr: str = "172.16.0.0/12",
        rng: random.Random | None = None,
    ):
        self._store = store
        self._resolver = resolver
        self._schedulers = schedulers
        self._connector_cidr = connector_cidr
        self._random = rng or random.Random()

    async def build_tree(
        self,
        parent: Instance | None,
        model: CompositeModel,
        *,
        subcomponent: str | None = None,
        connector: str | None = None,
        title: str | None = None,
        labels: list[str] | None = None,
        tree: Tree | None = None,
    ) -> Tree:
        root = Instance(
            type="composite",
            title=title or model.title or "",
            parent=parent.id if parent else "",
            subcomponent=subcomponent or "",
            connector=connector or "",
            labels=list(model.labels) + list(labels or []),
            model=model,
        )
        await self._store.insert(INSTANCES, root.model_dump(mode="json"))
        logger.info(f"[tree] Created composite {root.id} ({model.name or 'unnamed'})")

        if tree is None:
            tree = Tree(root=root)
        tree.instances.append(root)

        for name, sub in model.subcomponents.items():
            await self._build_slot(tree, root, SUBCOMPONENT, name, sub)

        for name, con in model.connectors.items():
            if isinstance(con, LinkConnector):
                continue
            await self._build_slot(tree, root, CONNECTOR, name, con)

        return tree

    async def _build_slot(self, tree: Tree, root: Instance, kind: str, name: str, slot) -> None:
        model: CompositeModel = root.model
        slot_type = model.imports[slot.type]

        if isinstance(slot_type, BasicModel):
            collection = Collection(
                parent=root.id,
                name=name,
                kind=kind,
                labels=list(slot.labels),
                domains=list(slot.domains or slot_type.domains),
                inputs={
                    ep.name: ep.protocol
                    for ep in slot_type.endpoints.values()
                    if ep.direction == "in"
                },
                outputs={
                    ep.name: ep.protocol
                    for ep in slot_type.endpoints.values()
                    if ep.direction == "out"
                },
            )
            if isinstance(slot, NativeConnector):
                collection.addr = random_address(self._connector_cidr, self._random)
                for entrypoint in slot.entrypoints.values():
                    collection.publish = True
                    collection.publish_inputs[entrypoint.mapping or ""] = {
                        "protocol": entrypoint.protocol,
                        "path": entrypoint.path or "",
                    }
                    collection.publish_paths.append(f"{entrypoint.protocol}{entrypoint.path or ''}")

            await self._store.insert(COLLECTIONS, collection.model_dump(mode="json"))
            tree.collections.append(collection)
            return

        events = await self._schedulers.schedule(root, **{kind: name})
        for event in events:
            if event.type != EventType.INSTANCE_ADD:
                continue
            child_model = await self._resolver.resolve(slot.as_deployment(), slot_type.raw)
            await self.build_tree(root, child_model, tree=tree, **{kind: name})


class TreeConnector:
    """
    Derives the links of a tree.

    Every endpoint of every collection in the tree is resolved to its
    adjacent collections. Links are deduplicated against both this batch
    and the links already stored, so connecting a tree twice adds nothing.
    """

    def __init__(self, store: Store, adjacency: AdjacencyResolver):
        self._store = store
        self._adjacency = adjacency

    async def connect_tree(self, tree: Tree) -> list[Link]:
        batch: dict[tuple[str, str, str, str], Link] = {}

        for collection in tree.collections:
            parent = tree.instance(collection.parent)
            if parent is None:
                raise InvariantError(f"Collection {collection.id} has no parent in tree")
            model: CompositeModel = parent.model

            if collection.kind == SUBCOMPONENT:
                sub = model.subcomponents[collection.name]
                for ep in model.imports[sub.type].endpoints.values():
                    adjacents = await self._adjacency.find_adjacents(
                        parent, subcomponent=collection.name, endpoint=ep.name
                    )
                    for adj in adjacents:
                        if ep.direction == "in":
                            src, dst = adj.collection, collection
                        else:
                            src, dst = collection, adj.collection
                        await self._insert_unrepeated(
                            batch, tree, ep.protocol, src, adj.src_name, dst, adj.dst_name
                        )
                continue

            con = model.connectors[collection.name]
            protocol = endpoint_protocol(model, con.outputs[0])
            for adj in await self._adjacency.find_adjacents(
                parent, connector=collection.name, direction="in"
            ):
                await self._insert_unrepeated(
                    batch, tree, protocol, adj.collection, adj.src_name, collection, adj.dst_name
                )
            for adj in await self._adjacency.find_adjacents(
                parent, connector=collection.name, direction="out"
            ):
                await self._insert_unrepeated(
                    batch, tree, protocol, collection, adj.src_name, adj.collection, adj.dst_name
                )

        links = list(batch.values())
        logger.info(f"[tree] Connected {tree.root.id}: {len(links)} new links")
        return links

    async def _insert_unrepeated(
        self,
        batch: dict[tuple[str, str, str, str], Link],
        tree: Tree,
        protocol: str | None,
        src: Collection,
        src_name: str | None,
        dst: Collection,
        dst_name: str | None,
    ) -> None:
        if not (src and src_name and dst and dst_name and protocol):
            raise InvariantError(
                f"Incomplete link {src and src.id}.{src_name} -> {dst and dst.id}.{dst_name}"
            )

        key = (src.id, src_name, dst.id, dst_name)
        if key in batch:
            return
        existing = await self._store.search(
            LINKS, {"src": src.id, "src_name": src_name, "dst": dst.id, "dst_name": dst_name}
        )
        if existing:
            return

        link = Link(
            labels=list(tree.root.labels),
            protocol=protocol,
            src=src.id,
            src_name=src_name,
            dst=dst.id,
            dst_name=dst_name,
        )
        await self._store.insert(LINKS, link.model_dump(mode="json"))
        batch[key] = link
        tree.links.append(link)


def sort_collections(collections: list[Collection], links: list[Link]) -> list[Collection]:
    """
    Depth-first post-order over links: every collection comes after the
    collections it feeds.
    """
    by_id = {collection.id: collection for collection in collections}
    downstream: dict[str, list[str]] = {collection.id: [] for collection in collections}
    for link in links:
        if link.src in downstream and link.dst in by_id:
            downstream[link.src].append(link.dst)

    ordered: list[Collection] = []
    visited: set[str] = set()

    def visit(collection_id: str) -> None:
        if collection_id in visited:
            return
        visited.add(collection_id)
        for dst in downstream[collection_id]:
            visit(dst)
        ordered.append(by_id[collection_id])

    for collection in collections:
        visit(collection.id)
    return ordered
