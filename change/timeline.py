from __future__ import annotations

"""
Snapshot deduplicator.

A historical basemap exposes many dated versions, most of them byte-identical
re-publications at any given spot. Probe one tile per version (newest first),
hash the bytes and keep only versions whose hash has not been seen yet.

Usage:
    dedup = SnapshotDeduplicator(HttpTileSource(), cache=ProbeCache())
    timeline = await dedup.options_for_bbox(WaybackCatalog(), bbox, zoom=16, limit=60)
"""

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from common.concurrency import BoundedScheduler, CancelToken, check
from common.errors import NoCoverageError, TileFetchError
from common.geo import clamp_zoom, lon_lat_to_tile
from common.types import GeoBBox, SnapshotVersion, TileIndex, Timeline
from common.utils import clamp
from imagery.probe_cache import ProbeCache
from imagery.tiles import TileSource
from imagery.wayback import WaybackCatalog


log = logging.getLogger(__name__)

MAX_PROBE_ZOOM = 23


def timeline_cache_key(zoom: int, tile: TileIndex, bbox: GeoBBox, limit: int) -> str:
    return f"{zoom}:{tile.x}:{tile.y}:{bbox.cache_token()}:{limit}"


def sha256_hex(blob: bytes) -> str:
    return hashlib.sha256(blob).hexdigest()


class SnapshotDeduplicator:
    """
    Params:
        source: TileSource used for probe fetches
        cache: optional ProbeCache memoizing built timelines per query key
        batch_size: versions probed concurrently per batch (batches run in order)
        retries: extra attempts per probe after the first failure
        backoff: seconds; sleep backoff * (attempt + 1) between attempts
        probe_timeout: seconds per probe request
    """

    def __init__(
        self,
        source: TileSource,
        *,
        cache: Optional[ProbeCache] = None,
        batch_size: int = 10,
        retries: int = 2,
        backoff: float = 0.2,
        probe_timeout: float = 6.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.cache = cache
        self.batch_size = max(1, int(batch_size))
        self.retries = max(0, int(retries))
        self.backoff = float(backoff)
        self.probe_timeout = float(probe_timeout)
        self._clock = clock
        self._sleep = sleep
        self.scheduler = BoundedScheduler(self.batch_size)

    async def probe_hash(self, version: SnapshotVersion, tile: TileIndex) -> Optional[str]:
        """sha256 of the probe tile for `version`, or None once every attempt failed."""
        url = tile.fill(version.tile_url_template)
        for attempt in range(self.retries + 1):
            try:
                blob = await asyncio.wait_for(self.source.fetch(url), timeout=self.probe_timeout)
                return sha256_hex(blob)
            except (TileFetchError, asyncio.TimeoutError) as e:
                log.debug("probe failed", extra={"extra": {"version": version.id, "attempt": attempt, "error": str(e)}})
            if attempt < self.retries:
                await self._sleep(self.backoff * (attempt + 1))
        return None

    async def build_timeline(
        self,
        versions: Sequence[SnapshotVersion],
        probe_tile: TileIndex,
        limit: int,
        time_budget: float = 30.0,
        probe_budget: int = 180,
        *,
        bbox: Optional[GeoBBox] = None,
        token: Optional[CancelToken] = None,
    ) -> Timeline:
        """
        `versions` must be newest first. Stops taking batches once `limit`
        unique versions are kept, `probe_budget` probes were counted, or
        `time_budget` seconds elapsed.

        Raises:
            NoCoverageError: no version produced a unique probe.
        """
        key = timeline_cache_key(probe_tile.z, probe_tile, bbox, limit) if bbox is not None else None
        if key is not None and self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                return hit
        return await self._build(versions, probe_tile, limit, time_budget, probe_budget, key, token)

    async def _build(
        self,
        versions: Sequence[SnapshotVersion],
        probe_tile: TileIndex,
        limit: int,
        time_budget: float,
        probe_budget: int,
        key: Optional[str],
        token: Optional[CancelToken],
    ) -> Timeline:
        """Probe and dedup without consulting the cache; stores under `key` when given."""
        kept: List[SnapshotVersion] = []
        seen = set()
        probed = deduped = failed = 0
        started = self._clock()

        def out_of_budget() -> bool:
            return probed >= probe_budget or self._clock() - started > time_budget

        for i in range(0, len(versions), self.batch_size):
            if len(kept) >= limit or out_of_budget():
                break
            check(token)
            batch = list(versions[i : i + self.batch_size])
            hashes = await self.scheduler.map(lambda v: self.probe_hash(v, probe_tile), batch, token)

            for v, h in zip(batch, hashes):
                if len(kept) >= limit:
                    break
                probed += 1
                if h is None:
                    failed += 1
                elif h in seen:
                    deduped += 1
                else:
                    seen.add(h)
                    kept.append(v)
                if out_of_budget():
                    break

        check(token)
        log.info(
            "timeline probed",
            extra={"extra": {
                "tile": [probe_tile.z, probe_tile.x, probe_tile.y], "versions": len(versions),
                "probed": probed, "kept": len(kept), "deduped": deduped, "failed": failed,
            }},
        )
        if not kept:
            raise NoCoverageError("No snapshot versions seem to have imagery at this location/zoom.")

        kept.sort(key=lambda v: (v.date, v.id))
        timeline = Timeline(
            versions=tuple(kept),
            suggested_before_id=kept[0].id,
            suggested_after_id=kept[-1].id,
            probe_tile=probe_tile,
            probed=probed,
            deduped=deduped,
            failed=failed,
        )
        if key is not None and self.cache is not None:
            self.cache.put(key, timeline)
        return timeline

    async def options_for_bbox(
        self,
        catalog: WaybackCatalog,
        bbox: GeoBBox,
        zoom: float = 16,
        limit: int = 60,
        *,
        time_budget: float = 30.0,
        probe_budget: int = 180,
        token: Optional[CancelToken] = None,
    ) -> Timeline:
        """Probe the tile under the bbox center; zoom clamped to [0, 23], limit to [5, 120]."""
        z = clamp_zoom(zoom, 0, MAX_PROBE_ZOOM)
        lim = int(clamp(round(limit), 5, 120))
        tile = lon_lat_to_tile(*bbox.center, z)

        key = timeline_cache_key(z, tile, bbox, lim)
        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                log.info("timeline cache hit", extra={"extra": {"zoom": z, "x": tile.x, "y": tile.y}})
                return hit

        versions = await asyncio.to_thread(catalog.versions)
        check(token)
        return await self._build(versions, tile, lim, time_budget, probe_budget, key, token)
