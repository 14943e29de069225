"""
Engine assembly for Compono.

Wires every service explicitly at construction time: nothing is patched
in afterwards, and each service only receives what it calls.

Usage:
    engine = create_engine(drivers=[LocalDriver()])
    await engine.domains.add_domain({"type": "local", "runtimes": ["docker"]})
    tx_id = await engine.components.add_instance({"model": text})
    await engine.start()
    ...
    await engine.stop()
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .config import EngineSettings, get_settings
from .daemons import ProjectionDaemon, ScheduleDaemon
from .domains import DomainService
from .engine import (
    AdjacencyResolver,
    BasicScheduler,
    ComponentService,
    SchedulerRegistry,
    TreeBuilder,
    TreeConnector,
)
from .engine.scheduler import DEFAULT_SCHEDULER
from .model import ImportFetcher, ModelResolver
from .store import MemoryStore
from .transactions import TransactionService

if TYPE_CHECKING:
    from .domains import DomainDriver
    from .store import Store

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for embedding processes."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@dataclass
class Engine:
    """Every service of a running engine."""

    settings: EngineSettings
    store: Store
    transactions: TransactionService
    domains: DomainService
    resolver: ModelResolver
    schedulers: SchedulerRegistry
    components: ComponentService
    schedule_daemon: ScheduleDaemon
    projection_daemon: ProjectionDaemon

    async def start(self) -> None:
        logger.info("[engine] Starting daemons...")
        self.schedule_daemon.start()
        self.projection_daemon.start()

    async def stop(self) -> None:
        """Stop the daemons, then wait for in-flight passes and transactions."""
        logger.info("[engine] Stopping daemons...")
        self.schedule_daemon.stop()
        self.projection_daemon.stop()
        await self.schedule_daemon.join()
        await self.projection_daemon.join()
        await self.transactions.join()
        logger.info("[engine] Stopped")


def create_engine(
    settings: EngineSettings | None = None,
    *,
    store: Store | None = None,
    drivers: list[DomainDriver] | None = None,
    fetcher: ImportFetcher | None = None,
    rng: random.Random | None = None,
) -> Engine:
    """
    Build an Engine.

    Args:
        settings: Engine settings (environment settings if None)
        store: Record store (in-memory if None)
        drivers: Domain drivers to register
        fetcher: Import fetcher (HTTP/file fetcher if None)
        rng: Random source for victim selection and connector addresses

    Returns:
        Engine with daemons created but not started
    """
    settings = settings or get_settings()
    store = store or MemoryStore(lock_timeout=settings.lock_timeout)
    rng = rng or random.Random()

    transactions = TransactionService(store)

    domains = DomainService(
        store,
        transactions,
        loop_retry=settings.loop_retry,
        lock_timeout=settings.projection_loop_timeout,
    )
    for driver in drivers or []:
        domains.register_driver(driver)

    resolver = ModelResolver(fetcher or ImportFetcher(timeout=settings.fetch_timeout))

    schedulers = SchedulerRegistry()
    schedulers.register(
        DEFAULT_SCHEDULER,
        BasicScheduler(
            store,
            domains,
            min_instances=settings.min_instances,
            cpu_low=settings.cpu_low,
            cpu_high=settings.cpu_high,
            rng=rng,
        ),
    )

    adjacency = AdjacencyResolver(store)
    builder = TreeBuilder(
        store, resolver, schedulers, connector_cidr=settings.connector_cidr, rng=rng
    )
    connector = TreeConnector(store, adjacency)

    components = ComponentService(
        store,
        resolver,
        schedulers,
        builder,
        connector,
        transactions,
        loop_retry=settings.loop_retry,
        loop_timeout=settings.component_loop_timeout,
    )

    schedule_daemon = ScheduleDaemon(
        store,
        schedulers,
        components,
        interval=settings.daemon_interval,
        time_frame=settings.daemon_time_frame,
        limit=settings.daemon_range,
    )
    projection_daemon = ProjectionDaemon(
        store,
        domains,
        interval=settings.daemon_interval,
        loop_retry=settings.loop_retry,
        loop_timeout=settings.projection_loop_timeout,
    )

    logger.info(f"[engine] Created with drivers: {domains.list_drivers()}")
    return Engine(
        settings=settings,
        store=store,
        transactions=transactions,
        domains=domains,
        resolver=resolver,
        schedulers=schedulers,
        components=components,
        schedule_daemon=schedule_daemon,
        projection_daemon=projection_daemon,
    )
