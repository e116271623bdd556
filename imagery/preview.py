from __future__ import annotations

"""
Whole-image preview path.

Cruder than the tile mosaic: fetch each item's rendered preview, crop the
selection out of it with a linear bbox -> pixel mapping, and bring both
crops to a common size.
"""

import asyncio
import logging
import math
from typing import Optional, Tuple

import httpx

from common.concurrency import BoundedScheduler, CancelToken, check
from common.errors import TileFetchError, TileTimeoutError
from common.geo import crop_rect_for_bboxes
from common.types import GeoBBox, PixelBuffer
from imagery.mosaic import crop_resize


log = logging.getLogger(__name__)


class PreviewLoader:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
        max_output_width: int = 640,
    ):
        self.timeout = float(timeout)
        self.max_output_width = int(max_output_width)
        self._owns_client = client is None
        self.scheduler = BoundedScheduler(2)
        self.client = client or httpx.AsyncClient(follow_redirects=True, timeout=self.timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def fetch_image(self, url: str) -> PixelBuffer:
        try:
            r = await asyncio.wait_for(self.client.get(url, timeout=self.timeout), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TileTimeoutError(f"Preview request timed out for {url}", url=url) from e
        except httpx.HTTPError as e:
            raise TileFetchError(f"Failed to load image: {url} ({e})", url=url) from e
        if not r.is_success:
            raise TileFetchError(f"Failed to load image: {url} ({r.status_code})", status=r.status_code, url=url)
        try:
            return PixelBuffer.from_encoded(r.content)
        except ValueError as e:
            raise TileFetchError(f"Failed to decode image: {url}", url=url) from e

    async def load_pair(
        self,
        before_url: str,
        after_url: str,
        before_item_bbox: Optional[GeoBBox],
        after_item_bbox: Optional[GeoBBox],
        selection_bbox: Optional[GeoBBox],
        *,
        token: Optional[CancelToken] = None,
    ) -> Tuple[PixelBuffer, PixelBuffer]:
        """
        Returns (before, after) buffers with identical dimensions: the smaller
        of the two crops, downscaled so the width is at most max_output_width.
        """
        before, after = await self.scheduler.map(self.fetch_image, [before_url, after_url], token)
        check(token)

        rect_a = crop_rect_for_bboxes(before.width, before.height, before_item_bbox, selection_bbox)
        rect_b = crop_rect_for_bboxes(after.width, after.height, after_item_bbox, selection_bbox)

        base_w = min(rect_a[2], rect_b[2])
        base_h = min(rect_a[3], rect_b[3])
        scale = min(1.0, self.max_output_width / max(base_w, 1.0))
        w = max(1, int(math.floor(base_w * scale)))
        h = max(1, int(math.floor(base_h * scale)))

        log.info("preview crops", extra={"extra": {"before": rect_a, "after": rect_b, "out": [w, h]}})
        return (
            PixelBuffer(crop_resize(before.data, rect_a, (w, h))),
            PixelBuffer(crop_resize(after.data, rect_b, (w, h))),
        )
