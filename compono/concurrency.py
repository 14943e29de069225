"""
Structured join for concurrent engine operations.

gather_all waits for every awaitable to settle, then raises the first
failure in submission order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable

logger = logging.getLogger(__name__)


async def gather_all(aws: Iterable[Awaitable[Any]]) -> list[Any]:
    """
    Run awaitables concurrently, wait for all of them, raise the first error.

    Returns:
        Results in submission order when every awaitable succeeded.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)

    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        for extra in failures[1:]:
            logger.warning(f"[gather] additional failure suppressed by first: {extra!r}")
        raise failures[0]

    return list(results)
