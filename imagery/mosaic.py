from __future__ import annotations

"""
Tile Mosaic Loader.

Turns (tile URL template, bbox, zoom) into an RGBA buffer cropped to the
bbox. Tiles inside one mosaic are fetched strictly one after another; on a
retryable failure the whole mosaic is rebuilt one zoom level lower.

Retry state machine:
    state      = (attempt, zoom)
    on failure : zoom > 0  -> (attempt + 1, zoom - 1)
                 zoom == 0 -> terminal failure (last error)
    terminal   : MosaicResult, or the last error once attempts/zoom run out
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from common.concurrency import BoundedScheduler, CancelToken, check
from common.errors import (
    RETRYABLE_MOSAIC_ERRORS,
    CoverageError,
    RenderTargetUnavailableError,
    TileFetchError,
)
from common.geo import bbox_to_tile_range, clamp_zoom
from common.types import TILE_SIZE, GeoBBox, MosaicResult, PixelBuffer, TileIndex, TileRange
from imagery.tiles import TileSource


log = logging.getLogger(__name__)

ProgressFn = Callable[[int, int, int], None]   # (done, total, zoom)


@dataclass(frozen=True)
class _AttemptState:
    attempt: int
    zoom: int

    def on_failure(self) -> Optional["_AttemptState"]:
        if self.zoom > 0:
            return _AttemptState(self.attempt + 1, self.zoom - 1)
        return None


class MosaicLoader:
    """
    Params:
        source: TileSource used for every tile request
        max_tile_budget: upper bound on tile fetches per attempt
        max_attempts: total attempts across zoom downgrades
        max_output_width: output is downscaled (uniformly) to at most this width
        missing_ratio_limit: tolerant mode gives up when missing/total >= this
        concurrency: tile requests in flight inside one mosaic (1 = sequential)
    """

    def __init__(
        self,
        source: TileSource,
        *,
        max_tile_budget: int = 36,
        max_attempts: int = 6,
        max_output_width: int = 1024,
        missing_ratio_limit: float = 0.7,
        concurrency: int = 1,
    ):
        if max_tile_budget < 1:
            raise ValueError("max_tile_budget must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.source = source
        self.max_tile_budget = int(max_tile_budget)
        self.max_attempts = int(max_attempts)
        self.max_output_width = int(max_output_width)
        self.missing_ratio_limit = float(missing_ratio_limit)
        self.scheduler = BoundedScheduler(concurrency)

    # ----------------------------
    # Public API
    # ----------------------------
    async def load(
        self,
        template: str,
        bbox: GeoBBox,
        requested_zoom: float,
        allow_missing_tiles: bool = False,
        *,
        token: Optional[CancelToken] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> MosaicResult:
        state: Optional[_AttemptState] = _AttemptState(0, clamp_zoom(requested_zoom))
        last_err: Optional[Exception] = None

        while state is not None and state.attempt < self.max_attempts:
            check(token)
            zoom, rng = self.fit_budget(bbox, state.zoom)
            state = _AttemptState(state.attempt, zoom)
            try:
                result = await self._attempt(template, rng, allow_missing_tiles, token, on_progress)
                log.info(
                    "mosaic ready",
                    extra={"extra": {
                        "zoom": zoom, "attempt": state.attempt, "tiles": rng.count,
                        "missing": result.missing_tiles,
                        "width": result.buffer.width, "height": result.buffer.height,
                    }},
                )
                return result
            except RETRYABLE_MOSAIC_ERRORS as e:
                last_err = e
                state = state.on_failure()
                log.warning(
                    "mosaic attempt failed",
                    extra={"extra": {"zoom": zoom, "error": str(e), "next_zoom": state.zoom if state else None}},
                )

        if last_err is None:  # pragma: no cover - max_attempts >= 1
            raise TileFetchError("Tile fetch failed")
        raise last_err

    def fit_budget(self, bbox: GeoBBox, zoom: int) -> Tuple[int, TileRange]:
        """Lower zoom until the covering tile count fits max_tile_budget (or zoom hits 0)."""
        rng = bbox_to_tile_range(bbox, zoom)
        while zoom > 0 and rng.count > self.max_tile_budget:
            zoom -= 1
            rng = bbox_to_tile_range(bbox, zoom)
        return zoom, rng

    # ----------------------------
    # One attempt at a fixed zoom
    # ----------------------------
    async def _attempt(
        self,
        template: str,
        rng: TileRange,
        allow_missing: bool,
        token: Optional[CancelToken],
        on_progress: Optional[ProgressFn],
    ) -> MosaicResult:
        total = rng.count
        try:
            mosaic = np.zeros((rng.tiles_y * TILE_SIZE, rng.tiles_x * TILE_SIZE, 4), dtype=np.uint8)
        except MemoryError as e:
            raise RenderTargetUnavailableError(
                f"Cannot allocate {rng.tiles_x * TILE_SIZE}x{rng.tiles_y * TILE_SIZE} mosaic"
            ) from e

        counters = {"done": 0, "missing": 0}
        if on_progress:
            on_progress(0, total, rng.zoom)

        async def place(tile: TileIndex) -> None:
            url = tile.fill(template)
            try:
                blob = await self.source.fetch(url)
                img = PixelBuffer.from_encoded(blob).data
            except TileFetchError:
                if not allow_missing:
                    raise
                # Sparse providers legitimately miss tiles; leave it transparent.
                counters["missing"] += 1
            except ValueError as e:
                if not allow_missing:
                    raise TileFetchError(f"Tile decode failed for {url}", url=url) from e
                counters["missing"] += 1
            else:
                if img.shape[0] != TILE_SIZE or img.shape[1] != TILE_SIZE:
                    img = cv2.resize(img, (TILE_SIZE, TILE_SIZE), interpolation=cv2.INTER_AREA)
                oy = (tile.y - rng.y0) * TILE_SIZE
                ox = (tile.x - rng.x0) * TILE_SIZE
                mosaic[oy : oy + TILE_SIZE, ox : ox + TILE_SIZE] = img
            counters["done"] += 1
            if on_progress:
                on_progress(counters["done"], total, rng.zoom)

        await self.scheduler.map(place, list(rng.tiles()), token)
        check(token)

        missing = counters["missing"]
        if allow_missing:
            ratio = missing / total if total > 0 else 1.0
            if ratio >= self.missing_ratio_limit:
                raise CoverageError(f"Too many missing tiles ({missing}/{total}) at z={rng.zoom}")

        out = self._crop_and_scale(mosaic, rng)
        out.flags.writeable = False
        buf = PixelBuffer(out)
        return MosaicResult(
            buffer=buf,
            used_zoom=rng.zoom,
            encoded_preview=buf.to_png(),
            missing_tiles=missing,
            total_tiles=total,
        )

    def _crop_and_scale(self, mosaic: np.ndarray, rng: TileRange) -> np.ndarray:
        (px0, py0), (px1, py1) = rng.top_left, rng.bottom_right
        sx = px0 - rng.x0 * TILE_SIZE
        sy = py0 - rng.y0 * TILE_SIZE
        sw = px1 - px0
        sh = py1 - py0

        if sw > self.max_output_width:
            scale = self.max_output_width / sw
            out_w = self.max_output_width
        else:
            scale = 1.0
            out_w = max(1, int(math.floor(sw)))
        out_h = max(1, int(math.floor(sh * scale)))
        return crop_resize(mosaic, (sx, sy, sw, sh), (out_w, out_h))


def crop_resize(
    img: np.ndarray,
    rect: Tuple[float, float, float, float],
    out_size: Tuple[int, int],
) -> np.ndarray:
    """
    Crop the pixel rectangle (sx, sy, sw, sh), snapped outwards to whole
    pixels and clamped to the image, then resize to out_size (w, h).
    """
    sx, sy, sw, sh = rect
    out_w, out_h = out_size
    H, W = img.shape[:2]
    c0 = min(max(int(math.floor(sx)), 0), W - 1)
    r0 = min(max(int(math.floor(sy)), 0), H - 1)
    c1 = min(max(int(math.ceil(sx + sw)), c0 + 1), W)
    r1 = min(max(int(math.ceil(sy + sh)), r0 + 1), H)
    crop = img[r0:r1, c0:c1]

    if crop.shape[1] == out_w and crop.shape[0] == out_h:
        return crop.copy()
    return cv2.resize(crop, (out_w, out_h), interpolation=cv2.INTER_AREA)


async def load_mosaic(
    source: TileSource,
    template: str,
    bbox: GeoBBox,
    requested_zoom: float,
    allow_missing_tiles: bool = False,
    max_tile_budget: int = 36,
    *,
    token: Optional[CancelToken] = None,
) -> MosaicResult:
    """One-shot convenience around MosaicLoader with default limits."""
    loader = MosaicLoader(source, max_tile_budget=max_tile_budget)
    return await loader.load(template, bbox, requested_zoom, allow_missing_tiles, token=token)
