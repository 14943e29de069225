"""
Fetching of remote model imports.

Supported schemes: file://, http:// and https://. HTTP fetches use httpx
and are retried on transport errors; everything else fails fast with a
ModelError.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from ..errors import ModelError
from ..retry import RETRY_WITH_BACKOFF, RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class ImportFetcher:
    """
    Load import documents by URL.

    Usage:
        fetcher = ImportFetcher(timeout=10.0)
        text = await fetcher.fetch("https://models.example.com/db.yml")
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._timeout = timeout
        self._client = client
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=RETRY_WITH_BACKOFF.max_attempts,
            backoff=RETRY_WITH_BACKOFF.backoff,
            retry_on=(httpx.TransportError,),
        )

    async def fetch(self, url: str) -> str:
        parsed = urlparse(url)

        if parsed.scheme == "file":
            return await self._fetch_file(parsed.netloc + unquote(parsed.path))
        if parsed.scheme in ("http", "https"):
            return await self._fetch_http(url)

        raise ModelError(f"Unsupported import URL {url!r}", attribute="imports")

    async def _fetch_file(self, path: str) -> str:
        logger.debug(f"[fetch] reading {path}")
        try:
            return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        except OSError as e:
            raise ModelError(f"Unable to read import {path}: {e}", cause=e) from e

    async def _fetch_http(self, url: str) -> str:
        logger.debug(f"[fetch] GET {url}")

        async def _get() -> str:
            if self._client is not None:
                response = await self._client.get(url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
            return response.text

        result = await with_retry(_get, self._retry_policy, operation_name=f"fetch {url}")
        if not result.success:
            error = result.final_error
            raise ModelError(f"Unable to fetch import {url}: {error}", cause=error)
        return result.result
