from __future__ import annotations

"""
Async XYZ tile source.

The engine only assumes a tile server answers GET with either image bytes or
a non-success status; decoding happens in the caller.
"""

import asyncio
import logging
from typing import Optional, Protocol

import httpx

from common.errors import TileFetchError, TileTimeoutError
from common.types import TileIndex


log = logging.getLogger(__name__)

DEFAULT_TILE_TIMEOUT_S = 10.0


class TileSource(Protocol):
    async def fetch(self, url: str) -> bytes:
        """Return the tile body or raise TileFetchError / TileTimeoutError."""
        ...


def fill_template(template: str, tile: TileIndex) -> str:
    return tile.fill(template)


class HttpTileSource:
    """
    httpx-backed tile fetcher. Every request is individually time-boxed;
    a timeout surfaces as TileTimeoutError, any other failure as TileFetchError.

    Usage:
        async with HttpTileSource(timeout=10.0) as src:
            blob = await src.fetch("https://tiles.example/12/654/1583.png")
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = DEFAULT_TILE_TIMEOUT_S):
        self.timeout = float(timeout)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True, timeout=self.timeout)

    async def __aenter__(self) -> "HttpTileSource":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def fetch(self, url: str) -> bytes:
        try:
            r = await asyncio.wait_for(self.client.get(url, timeout=self.timeout), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TileTimeoutError(f"Tile request timed out after {self.timeout:g}s for {url}", url=url) from e
        except httpx.HTTPError as e:
            raise TileFetchError(f"Tile request error for {url}: {e}", url=url) from e

        if r.status_code < 200 or r.status_code >= 300 or not r.content:
            log.debug("tile fetch failed", extra={"extra": {"url": url, "status": r.status_code}})
            raise TileFetchError(f"Tile fetch failed ({r.status_code}) for {url}", status=r.status_code, url=url)
        return r.content
