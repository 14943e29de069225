"""
Schedule Daemon.

Periodically re-evaluates every ready composite instance: each of its
slots is handed to its scheduler and the resulting events are applied.

Events are applied children first (depth-first post-order over the
instance tree), so replicas inside nested composites are settled before
their enclosing composites change shape. Processed composites get their
`last` timestamp bumped so time-window selection rotates through them.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from ..errors import ComponoError, InvariantError
from ..engine.scheduler import EventType, SchedulingEvent
from ..model.types import BasicModel
from ..schemas import INSTANCES, Instance, InstanceState, now
from .base import PeriodicDaemon

if TYPE_CHECKING:
    from ..engine.component import ComponentService
    from ..engine.scheduler import SchedulerRegistry
    from ..store import Store

logger = logging.getLogger(__name__)


class ScheduleDaemon(PeriodicDaemon):
    """Applies scheduler decisions to running composites."""

    name = "schedule"

    def __init__(
        self,
        store: Store,
        schedulers: SchedulerRegistry,
        components: ComponentService,
        *,
        interval: float = 5.0,
        time_frame: float | None = None,
        limit: int | None = None,
    ):
        super().__init__(interval)
        self._store = store
        self._schedulers = schedulers
        self._components = components
        self._time_frame = time_frame
        self._limit = limit

    async def run(
        self,
        instances: list[str] | None = None,
        *,
        time_frame: float | None = None,
        limit: int | None = None,
    ) -> list[SchedulingEvent]:
        """
        Run one scheduling pass.

        Args:
            instances: Explicit composite ids (skips time-window selection)
            time_frame: Only composites touched in the last N seconds
            limit: Max composites in this pass

        Returns:
            The events that were applied
        """
        selected = await self._select(
            instances,
            time_frame if time_frame is not None else self._time_frame,
            limit if limit is not None else self._limit,
        )
        if not selected:
            return []

        events_by_parent: dict[str, list[SchedulingEvent]] = {}
        for instance in selected:
            try:
                events_by_parent[instance.id] = await self._schedulers.schedule(instance)
            except InvariantError:
                raise
            except ComponoError as e:
                logger.warning(f"[schedule] Skipping {instance.id}: {e}")

        by_id = {instance.id: instance for instance in selected}
        applied = []
        for event in self._sort_events(selected, events_by_parent):
            try:
                await self._apply(by_id[event.parent], event)
            except InvariantError:
                raise
            except ComponoError as e:
                logger.warning(
                    f"[schedule] {event.type.value} on {event.parent}/{event.slot} failed: {e}"
                )
                continue
            applied.append(event)

        stamp = now()
        for instance in selected:
            await self._store.update(INSTANCES, {"id": instance.id}, {"last": stamp})

        if applied:
            logger.info(f"[schedule] Applied {len(applied)} events over {len(selected)} composites")
        return applied

    async def _select(
        self,
        instances: list[str] | None,
        time_frame: float | None,
        limit: int | None,
    ) -> list[Instance]:
        if instances is not None:
            query = {"id": {"$in": instances}, "type": "composite"}
            rows = await self._store.search(INSTANCES, query)
        else:
            query = {"state": InstanceState.READY.value, "type": "composite"}
            if time_frame is not None:
                query["last"] = {"$gte": now() - time_frame}
            rows = await self._store.search(INSTANCES, query, order_by="+last", limit=limit)
        return [Instance.model_validate(row) for row in rows]

    @staticmethod
    def _sort_events(
        instances: list[Instance],
        events_by_parent: dict[str, list[SchedulingEvent]],
    ) -> list[SchedulingEvent]:
        """Depth-first post-order: a composite's events follow its children's."""
        ids = {instance.id for instance in instances}
        children: dict[str, list[Instance]] = defaultdict(list)
        roots = []
        for instance in instances:
            if instance.parent in ids:
                children[instance.parent].append(instance)
            else:
                roots.append(instance)

        ordered: list[SchedulingEvent] = []

        def visit(instance: Instance) -> None:
            for child in children[instance.id]:
                visit(child)
            ordered.extend(events_by_parent.get(instance.id, []))

        for root in roots:
            visit(root)
        return ordered

    async def _apply(self, parent: Instance, event: SchedulingEvent) -> None:
        slot_args = {"subcomponent": event.subcomponent, "connector": event.connector}

        if event.type == EventType.INSTANCE_ADD:
            slot = parent.model.slot(**slot_args)
            slot_type = parent.model.slot_type(slot)
            model = await self._components.resolve_slot(parent, slot, slot_type)
            if isinstance(model, BasicModel):
                await self._components.add_basic(parent, model, domain=event.domain, **slot_args)
            else:
                await self._components.add_composite(parent, model, **slot_args)
            return

        victim = await self._components.get_instance(event.instance)
        if victim.type == "basic":
            await self._components.remove_basic(victim)
        else:
            await self._components.remove_composite(victim)
