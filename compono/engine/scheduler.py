"""
Scheduling for Compono.

A scheduler looks at one slot (subcomponent or native connector) of a
composite instance and decides whether replicas must be added or removed.
It never mutates anything: it returns SchedulingEvents which the caller
applies.

BasicScheduler decision rules, first match wins:
1. count < min                          -> add (min - count)
2. basic slot, count < min_instances,
   count < max                          -> add up to min(min_instances, max)
3. composite slot, min == 0, count == 0 -> add exactly one
4. count > max                          -> remove one random replica
5. basic slot with a non-zero cpu metric:
   cpu >= cpu_high and count < max      -> add one
   cpu <= cpu_low and count > min       -> remove one (random)

Domains for basic additions are picked least-loaded first among ready
domains supporting the slot's runtime (ties keep listing order).

A cardinality passed to schedule() replaces the declared one of the slot.
"""

from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import NotFoundError
from ..model.cardinality import Cardinality
from ..model.types import BasicModel, CompositeModel, LinkConnector
from ..schemas import COLLECTIONS, INSTANCES, Collection, DomainState, Instance, InstanceState

if TYPE_CHECKING:
    from ..domains import DomainService
    from ..schemas import Domain
    from ..store import Store

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULER = "basic"


class EventType(str, Enum):
    INSTANCE_ADD = "InstanceAdd"
    INSTANCE_REMOVE = "InstanceRemove"


@dataclass
class SchedulingEvent:
    """A replica to add to, or remove from, a slot of a composite instance."""

    type: EventType
    parent: str
    subcomponent: str | None = None
    connector: str | None = None
    instance: str | None = None
    domain: str | None = None

    @property
    def slot(self) -> str:
        return self.subcomponent or self.connector or ""


def pick_domain(domains: list[Domain], load: dict[str, int]) -> Domain | None:
    """
    Least-loaded domain, ties broken by listing order.

    Increments the chosen domain's entry in `load`.
    """
    if not domains:
        return None
    chosen = min(domains, key=lambda domain: load.get(domain.id, 0))
    load[chosen.id] = load.get(chosen.id, 0) + 1
    return chosen


async def candidate_domains(
    domains: DomainService,
    runtime: str | None,
    allowed: list[str],
) -> list[Domain]:
    """Ready domains supporting runtime, restricted to `allowed` when given."""
    query: dict = {"state": DomainState.READY.value}
    if runtime:
        query["runtimes"] = {"$any": [runtime]}
    if allowed:
        query["id"] = {"$in": allowed}
    return await domains.list_domains(query)


class Scheduler(ABC):
    """Abstract base for schedulers."""

    @abstractmethod
    async def schedule(
        self,
        parent: Instance,
        *,
        subcomponent: str | None = None,
        connector: str | None = None,
        cardinality: str | None = None,
    ) -> list[SchedulingEvent]:
        """
        Compute events for one slot of parent, or for every slot when
        neither subcomponent nor connector is given.
        A cardinality given here overrides the declared one of that slot.
        """
        ...


class BasicScheduler(Scheduler):
    """
    Cardinality and CPU driven scheduler.

    Usage:
        scheduler = BasicScheduler(store, domains, min_instances=2)
        events = await scheduler.schedule(root, subcomponent="db")
    """

    def __init__(
        self,
        store: Store,
        domains: DomainService,
        *,
        min_instances: int = 2,
        cpu_low: float = 0.3,
        cpu_high: float = 0.8,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._domains = domains
        self._min_instances = min_instances
        self._cpu_low = cpu_low
        self._cpu_high = cpu_high
        self._random = rng or random.Random()

    async def schedule(
        self,
        parent: Instance,
        *,
        subcomponent: str | None = None,
        connector: str | None = None,
        cardinality: str | None = None,
    ) -> list[SchedulingEvent]:
        model = parent.model
        if not isinstance(model, CompositeModel):
            return []

        if subcomponent or connector:
            return await self._schedule_slot(parent, subcomponent, connector, cardinality)

        events: list[SchedulingEvent] = []
        for name in model.subcomponents:
            events.extend(await self._schedule_slot(parent, name, None))
        for name, con in model.connectors.items():
            if not isinstance(con, LinkConnector):
                events.extend(await self._schedule_slot(parent, None, name))
        return events

    async def _schedule_slot(
        self,
        parent: Instance,
        subcomponent: str | None,
        connector: str | None,
        cardinality: str | None = None,
    ) -> list[SchedulingEvent]:
        model: CompositeModel = parent.model
        slot = model.slot(subcomponent=subcomponent, connector=connector)
        if slot is None:
            raise NotFoundError("Slot", f"{parent.id}/{subcomponent or connector}")
        slot_type = model.slot_type(slot)
        if slot_type is None:
            return []

        bounds = Cardinality.parse(cardinality or slot.cardinality or slot_type.cardinality)
        is_basic = isinstance(slot_type, BasicModel)

        query = {
            "parent": parent.id,
            "state": {"$in": [InstanceState.READY.value, InstanceState.INIT.value]},
        }
        if subcomponent:
            query["subcomponent"] = subcomponent
        else:
            query["connector"] = connector
        live = [Instance.model_validate(row) for row in await self._store.search(INSTANCES, query)]
        count = len(live)

        def add(n: int) -> list[SchedulingEvent]:
            return [
                SchedulingEvent(
                    type=EventType.INSTANCE_ADD,
                    parent=parent.id,
                    subcomponent=subcomponent,
                    connector=connector,
                )
                for _ in range(n)
            ]

        def remove(n: int) -> list[SchedulingEvent]:
            victims = self._random.sample(live, n)
            return [
                SchedulingEvent(
                    type=EventType.INSTANCE_REMOVE,
                    parent=parent.id,
                    subcomponent=subcomponent,
                    connector=connector,
                    instance=victim.id,
                )
                for victim in victims
            ]

        events: list[SchedulingEvent] = []
        if count < bounds.min:
            events = add(bounds.min - count)
        elif is_basic and count < self._min_instances and count < bounds.max:
            target = int(min(self._min_instances, bounds.max))
            events = add(target - count)
        elif not is_basic and bounds.min == 0 and count == 0 and bounds.max > 0:
            events = add(1)
        elif count > bounds.max:
            events = remove(1)
        elif is_basic:
            events = await self._by_metrics(parent, slot.name, count, bounds, add, remove)

        if is_basic:
            allowed = slot.domains or slot_type.domains or model.domains
            await self._assign_domains(events, allowed, slot_type, live)

        if events:
            logger.info(
                f"[scheduler] {parent.id}/{slot.name}: count={count} bounds={bounds} "
                f"-> {len(events)} x {events[0].type.value}"
            )
        return events

    async def _by_metrics(self, parent, name, count, bounds, add, remove) -> list[SchedulingEvent]:
        rows = await self._store.search(COLLECTIONS, {"parent": parent.id, "name": name})
        if not rows:
            raise NotFoundError("Collection", f"{parent.id}/{name}")
        cpu = Collection.model_validate(rows[0]).metrics.get("cpu")
        # 0.0 means no sample yet
        if not cpu:
            return []
        if cpu >= self._cpu_high and count < bounds.max:
            return add(1)
        if cpu <= self._cpu_low and count > bounds.min:
            return remove(1)
        return []

    async def _assign_domains(
        self,
        events: list[SchedulingEvent],
        allowed: list[str],
        slot_type: BasicModel,
        live: list[Instance],
    ) -> None:
        additions = [event for event in events if event.type == EventType.INSTANCE_ADD]
        if not additions:
            return

        candidates = await candidate_domains(self._domains, slot_type.runtime, allowed)
        load: dict[str, int] = {}
        for instance in live:
            if instance.domain:
                load[instance.domain] = load.get(instance.domain, 0) + 1

        for event in additions:
            chosen = pick_domain(candidates, load)
            event.domain = chosen.id if chosen else None


class SchedulerRegistry:
    """
    Schedulers by name.

    Usage:
        registry = SchedulerRegistry()
        registry.register("basic", BasicScheduler(store, domains))
        scheduler = registry.get(slot.schedule)  # falls back to the default
    """

    def __init__(self, default: str = DEFAULT_SCHEDULER):
        self._schedulers: dict[str, Scheduler] = {}
        self._default = default

    def register(self, name: str, scheduler: Scheduler) -> None:
        if not callable(getattr(scheduler, "schedule", None)):
            raise ValueError("Scheduler must have 'schedule' method")
        self._schedulers[name] = scheduler
        logger.info(f"[scheduler] Registered scheduler: {name}")

    def get(self, name: str | None = None) -> Scheduler:
        scheduler = self._schedulers.get(name or self._default)
        if scheduler is None:
            raise NotFoundError("Scheduler", name or self._default)
        return scheduler

    def list_schedulers(self) -> list[str]:
        return list(self._schedulers.keys())

    async def schedule(
        self,
        parent: Instance,
        *,
        subcomponent: str | None = None,
        connector: str | None = None,
        cardinality: str | None = None,
    ) -> list[SchedulingEvent]:
        """Schedule slots of parent, each with the scheduler its declaration names."""
        model = parent.model
        if not isinstance(model, CompositeModel):
            return []

        if subcomponent or connector:
            slot = model.slot(subcomponent=subcomponent, connector=connector)
            if slot is None:
                raise NotFoundError("Slot", f"{parent.id}/{subcomponent or connector}")
            return await self.get(slot.schedule).schedule(
                parent, subcomponent=subcomponent, connector=connector, cardinality=cardinality
            )

        events: list[SchedulingEvent] = []
        for name, sub in model.subcomponents.items():
            events.extend(await self.get(sub.schedule).schedule(parent, subcomponent=name))
        for name, con in model.connectors.items():
            if not isinstance(con, LinkConnector):
                events.extend(await self.get(con.schedule).schedule(parent, connector=name))
        return events
