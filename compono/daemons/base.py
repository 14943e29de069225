"""
Periodic daemon base.

A daemon runs one reconciliation pass every `interval` seconds. A failed
pass is logged and the next one is still scheduled; stop() prevents new
passes without interrupting the one in flight.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from ..errors import InvariantError

logger = logging.getLogger(__name__)


class PeriodicDaemon(ABC):
    """
    Abstract base for periodic reconciliation loops.

    Usage:
        daemon = ScheduleDaemon(...)
        daemon.start()
        ...
        daemon.stop()
        await daemon.join()
    """

    name: str = "daemon"

    def __init__(self, interval: float = 5.0):
        self.interval = interval
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @abstractmethod
    async def run(self) -> object:
        """Execute one reconciliation pass."""
        ...

    async def run_once(self) -> bool:
        """Run a pass, logging instead of raising. Returns True on success."""
        try:
            await self.run()
        except InvariantError as e:
            logger.critical(f"[{self.name}] Invariant violated, pass aborted: {e}", exc_info=True)
            return False
        except Exception as e:
            logger.error(f"[{self.name}] Pass failed: {e}", exc_info=True)
            return False
        return True

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-daemon")
        logger.info(f"[{self.name}] Started (interval={self.interval}s)")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
            logger.info(f"[{self.name}] Stopping")

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.run_once()
