"""
Adjacency resolution across composite boundaries.

Given a slot endpoint inside a composite instance, find the basic
collections directly connected to it. A connection may:

- stay at the same level (a Link or native connector between siblings)
- descend into a composite sibling through its published endpoints
- ascend to the enclosing composite through the parent's published
  endpoints and continue from there

Both directions are resolved with explicit work queues:

    out: who receives what this endpoint emits (results are destinations)
    in:  who feeds this endpoint (results are sources)

Each result names the peer collection plus the endpoint names to use on
the source and destination side of the link.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..errors import InvariantError, NotFoundError
from ..model.types import (
    BasicModel,
    CompositeModel,
    EndpointRef,
    InEndpoint,
    LinkConnector,
    OutEndpoint,
)
from ..schemas import COLLECTIONS, INSTANCES, Collection, Instance, InstanceState

if TYPE_CHECKING:
    from ..store import Store

logger = logging.getLogger(__name__)

SUBCOMPONENT = "subcomponent"
CONNECTOR = "connector"


@dataclass
class Adjacent:
    """A collection connected to the queried endpoint."""

    collection: Collection
    src_name: str
    dst_name: str


@dataclass(frozen=True)
class _SlotEndpoint:
    kind: str
    name: str
    endpoint: str | None


def slot_type_of(model: CompositeModel, kind: str, name: str):
    """Imported type of a slot, or None for Link connectors."""
    if kind == SUBCOMPONENT:
        slot = model.subcomponents.get(name)
    else:
        slot = model.connectors.get(name)
    if slot is None:
        raise NotFoundError(kind.capitalize(), name)
    return model.slot_type(slot)


def endpoint_protocol(model: CompositeModel, ref: EndpointRef) -> str | None:
    """Protocol of a subcomponent endpoint as declared by its type."""
    slot_type = slot_type_of(model, SUBCOMPONENT, ref.subcomponent)
    endpoint = slot_type.endpoint(ref.endpoint) if slot_type else None
    return endpoint.protocol if endpoint else None


class AdjacencyResolver:
    """
    Resolves the collections adjacent to a slot endpoint.

    Usage:
        adjacency = AdjacencyResolver(store)
        peers = await adjacency.find_adjacents(root, subcomponent="web", endpoint="out")
    """

    def __init__(self, store: Store):
        self._store = store

    async def find_adjacents(
        self,
        parent: Instance,
        *,
        subcomponent: str | None = None,
        connector: str | None = None,
        endpoint: str | None = None,
        direction: str | None = None,
    ) -> list[Adjacent]:
        """
        Find collections adjacent to a subcomponent endpoint or a connector.

        Args:
            parent: Composite instance declaring the slot
            subcomponent: Subcomponent name (requires endpoint)
            connector: Native connector name
            endpoint: Endpoint of the subcomponent
            direction: "in" or "out"; derived from the endpoint for
                subcomponents, defaults to "out" for connectors
        """
        model = parent.model
        if not isinstance(model, CompositeModel):
            raise InvariantError(f"Instance {parent.id} is not composite")

        if subcomponent:
            if not endpoint:
                raise ValueError("endpoint is required for subcomponents")
            slot_type = slot_type_of(model, SUBCOMPONENT, subcomponent)
            declared = slot_type.endpoint(endpoint)
            if declared is None:
                raise NotFoundError("Endpoint", f"{subcomponent}.{endpoint}")
            direction = declared.direction
            start = _SlotEndpoint(SUBCOMPONENT, subcomponent, endpoint)
        elif connector:
            direction = direction or "out"
            start = _SlotEndpoint(CONNECTOR, connector, None)
        else:
            raise ValueError("subcomponent or connector is required")

        if direction == "out":
            return await self._outbound(parent, start)
        return await self._inbound(parent, start)

    # =========================================================================
    # Lookups
    # =========================================================================

    async def _instance(self, instance_id: str) -> Instance:
        rows = await self._store.search(INSTANCES, {"id": instance_id})
        if not rows:
            raise NotFoundError("Instance", instance_id)
        return Instance.model_validate(rows[0])

    async def _collection(self, parent_id: str, name: str) -> Collection:
        rows = await self._store.search(COLLECTIONS, {"parent": parent_id, "name": name})
        if not rows:
            raise NotFoundError("Collection", f"{parent_id}/{name}")
        return Collection.model_validate(rows[0])

    async def _composites(self, parent_id: str, slot: _SlotEndpoint) -> list[Instance]:
        rows = await self._store.search(
            INSTANCES,
            {
                "parent": parent_id,
                slot.kind: slot.name,
                "type": "composite",
                "state": {"$ne": InstanceState.DESTROY.value},
            },
        )
        return [Instance.model_validate(row) for row in rows]

    @staticmethod
    def _connector_endpoint(model: CompositeModel, name: str, direction: str) -> str | None:
        slot_type = slot_type_of(model, CONNECTOR, name)
        return slot_type.first_endpoint(direction) if slot_type else None

    @staticmethod
    def _outer_kind(scope: Instance) -> str:
        return SUBCOMPONENT if scope.subcomponent else CONNECTOR

    # =========================================================================
    # Outbound: this endpoint is the source
    # =========================================================================

    def _out_seeds(self, model: CompositeModel, start: _SlotEndpoint) -> list[_SlotEndpoint]:
        seeds = []
        if start.kind == SUBCOMPONENT:
            for con in model.connectors.values():
                if not any(
                    ref.subcomponent == start.name and ref.endpoint == start.endpoint
                    for ref in con.inputs
                ):
                    continue
                if isinstance(con, LinkConnector):
                    out = con.outputs[0]
                    seeds.append(_SlotEndpoint(SUBCOMPONENT, out.subcomponent, out.endpoint))
                else:
                    seeds.append(
                        _SlotEndpoint(
                            CONNECTOR, con.name, self._connector_endpoint(model, con.name, "in")
                        )
                    )
        else:
            for out in model.connectors[start.name].outputs:
                seeds.append(_SlotEndpoint(SUBCOMPONENT, out.subcomponent, out.endpoint))
        return seeds

    async def _outbound(self, parent: Instance, start: _SlotEndpoint) -> list[Adjacent]:
        if start.kind == SUBCOMPONENT:
            src_name = start.endpoint
        else:
            src_name = self._connector_endpoint(parent.model, start.name, "out")

        results: list[Adjacent] = []
        levels = deque([(parent, start)])
        while levels:
            scope, slot = levels.popleft()
            for seed in self._out_seeds(scope.model, slot):
                results.extend(await self._descend_out(scope, seed, src_name))

            # Published out endpoints carry the flow up one level
            if scope.parent and slot.kind == SUBCOMPONENT:
                for published in scope.model.endpoints.values():
                    if isinstance(published, OutEndpoint) and any(
                        ref.subcomponent == slot.name and ref.endpoint == slot.endpoint
                        for ref in published.mapping
                    ):
                        outer = await self._instance(scope.parent)
                        kind = self._outer_kind(scope)
                        levels.append((outer, _SlotEndpoint(kind, scope.slot, published.name)))
        return results

    async def _descend_out(
        self, scope: Instance, seed: _SlotEndpoint, src_name: str | None
    ) -> list[Adjacent]:
        results = []
        queue = deque([(scope, seed)])
        while queue:
            owner, target = queue.popleft()
            target_type = slot_type_of(owner.model, target.kind, target.name)

            if isinstance(target_type, BasicModel):
                collection = await self._collection(owner.id, target.name)
                results.append(Adjacent(collection, src_name, target.endpoint))
                continue

            for child in await self._composites(owner.id, target):
                published = child.model.endpoints.get(target.endpoint)
                if not isinstance(published, InEndpoint):
                    raise InvariantError(
                        f"{child.id} has no published in endpoint {target.endpoint}"
                    )
                entry = _SlotEndpoint(
                    CONNECTOR,
                    published.mapping,
                    self._connector_endpoint(child.model, published.mapping, "in"),
                )
                queue.append((child, entry))
        return results

    # =========================================================================
    # Inbound: this endpoint is the destination
    # =========================================================================

    def _in_seeds(self, model: CompositeModel, start: _SlotEndpoint) -> list[_SlotEndpoint]:
        seeds = []
        if start.kind == SUBCOMPONENT:
            for con in model.connectors.values():
                if not any(
                    ref.subcomponent == start.name and ref.endpoint == start.endpoint
                    for ref in con.outputs
                ):
                    continue
                if isinstance(con, LinkConnector):
                    source = con.inputs[0]
                    seeds.append(_SlotEndpoint(SUBCOMPONENT, source.subcomponent, source.endpoint))
                else:
                    seeds.append(
                        _SlotEndpoint(
                            CONNECTOR, con.name, self._connector_endpoint(model, con.name, "out")
                        )
                    )
        else:
            for source in model.connectors[start.name].inputs:
                seeds.append(_SlotEndpoint(SUBCOMPONENT, source.subcomponent, source.endpoint))
        return seeds

    async def _inbound(self, parent: Instance, start: _SlotEndpoint) -> list[Adjacent]:
        if start.kind == SUBCOMPONENT:
            dst_name = start.endpoint
        else:
            dst_name = self._connector_endpoint(parent.model, start.name, "in")

        results: list[Adjacent] = []
        levels = deque([(parent, start)])
        while levels:
            scope, slot = levels.popleft()
            for seed in self._in_seeds(scope.model, slot):
                results.extend(await self._descend_in(scope, seed, dst_name))

            # Entry connectors are fed from outside through a published in endpoint
            if scope.parent and slot.kind == CONNECTOR:
                for published in scope.model.endpoints.values():
                    if isinstance(published, InEndpoint) and published.mapping == slot.name:
                        outer = await self._instance(scope.parent)
                        kind = self._outer_kind(scope)
                        levels.append((outer, _SlotEndpoint(kind, scope.slot, published.name)))
        return results

    async def _descend_in(
        self, scope: Instance, seed: _SlotEndpoint, dst_name: str | None
    ) -> list[Adjacent]:
        results = []
        queue = deque([(scope, seed)])
        while queue:
            owner, source = queue.popleft()
            source_type = slot_type_of(owner.model, source.kind, source.name)

            if isinstance(source_type, BasicModel):
                collection = await self._collection(owner.id, source.name)
                results.append(Adjacent(collection, source.endpoint, dst_name))
                continue

            for child in await self._composites(owner.id, source):
                published = child.model.endpoints.get(source.endpoint)
                if not isinstance(published, OutEndpoint):
                    raise InvariantError(
                        f"{child.id} has no published out endpoint {source.endpoint}"
                    )
                for ref in published.mapping:
                    queue.append(
                        (child, _SlotEndpoint(SUBCOMPONENT, ref.subcomponent, ref.endpoint))
                    )
        return results
