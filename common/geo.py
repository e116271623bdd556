from __future__ import annotations

from typing import Optional, Tuple
import math

from common.errors import InvalidBboxError
from common.types import TILE_SIZE, GeoBBox, TileIndex, TileRange


# --- Web Mercator constants ---
MAX_LAT = 85.05112878   # atan(sinh(pi)) in degrees; no finite Mercator y beyond this
MIN_ZOOM = 0
MAX_ZOOM = 24


# -------------------------
# Scalar helpers
# -------------------------
def clamp_lat(lat: float) -> float:
    return max(-MAX_LAT, min(MAX_LAT, lat))


def clamp_zoom(zoom: float, lo: int = MIN_ZOOM, hi: int = MAX_ZOOM) -> int:
    """Round to the nearest integer zoom and clamp into [lo, hi]."""
    if not math.isfinite(zoom):
        raise ValueError(f"zoom must be finite, got {zoom!r}")
    return int(max(lo, min(hi, round(zoom))))


def world_size(zoom: int) -> float:
    """World width/height in pixels at `zoom` (256px tiles)."""
    return float(TILE_SIZE * (2 ** int(zoom)))


def _require_finite(*vals: float) -> None:
    for v in vals:
        if not math.isfinite(v):
            raise InvalidBboxError(f"Non-finite coordinate: {v!r}")


# -------------------------
# Projection
# -------------------------
def lon_lat_to_world_pixel(lon: float, lat: float, zoom: int) -> Tuple[float, float]:
    """
    Spherical Web Mercator: lon/lat (deg) -> world pixel (x, y) at `zoom`.

    Latitude is clamped to +/-MAX_LAT first. y grows southwards, so the
    northern edge of a bbox maps to the smaller y.
    """
    _require_finite(lon, lat)
    world = world_size(zoom)
    x = (lon + 180.0) / 360.0 * world
    lat_rad = math.radians(clamp_lat(lat))
    y = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * world
    return x, y


def world_pixel_to_lon_lat(x: float, y: float, zoom: int) -> Tuple[float, float]:
    """Inverse of lon_lat_to_world_pixel (returns lon, lat)."""
    world = world_size(zoom)
    lon = x / world * 360.0 - 180.0
    n = math.pi - 2.0 * math.pi * (y / world)
    lat = math.degrees(math.atan(math.sinh(n)))
    return lon, lat


def world_pixel_to_tile_index(x: float, y: float) -> Tuple[int, int]:
    return int(math.floor(x / TILE_SIZE)), int(math.floor(y / TILE_SIZE))


def lon_lat_to_tile(lon: float, lat: float, zoom: int) -> TileIndex:
    x, y = lon_lat_to_world_pixel(lon, lat, zoom)
    tx, ty = world_pixel_to_tile_index(x, y)
    last = 2 ** int(zoom) - 1
    return TileIndex(min(max(tx, 0), last), min(max(ty, 0), last), int(zoom))


def bbox_to_tile_range(bbox: GeoBBox, zoom: int) -> TileRange:
    """
    Inclusive tile range covering `bbox` at `zoom`.

    Top-left corner is (min_lon, max_lat), bottom-right is (max_lon, min_lat).
    Indices are clamped to the valid [0, 2^zoom - 1] grid, so a box touching
    lon=180 does not address a tile that does not exist.
    """
    zoom = int(zoom)
    top_left = lon_lat_to_world_pixel(bbox.min_lon, bbox.max_lat, zoom)
    bottom_right = lon_lat_to_world_pixel(bbox.max_lon, bbox.min_lat, zoom)

    last = 2 ** zoom - 1
    x0, y0 = world_pixel_to_tile_index(*top_left)
    x1, y1 = world_pixel_to_tile_index(*bottom_right)
    x0, x1 = min(max(x0, 0), last), min(max(x1, 0), last)
    y0, y1 = min(max(y0, 0), last), min(max(y1, 0), last)
    x1 = max(x1, x0)
    y1 = max(y1, y0)
    return TileRange(
        x0=x0,
        y0=y0,
        x1=x1,
        y1=y1,
        tiles_x=x1 - x0 + 1,
        tiles_y=y1 - y0 + 1,
        zoom=zoom,
        top_left=top_left,
        bottom_right=bottom_right,
    )


def project_bbox(bbox: GeoBBox, zoom: int) -> TileRange:
    """Public entry point: bbox -> tile range at an integer zoom in [0, 24]."""
    return bbox_to_tile_range(bbox, clamp_zoom(zoom))


# -------------------------
# Whole-image crop (preview path)
# -------------------------
def crop_rect_for_bboxes(
    width: int,
    height: int,
    item_bbox: Optional[GeoBBox],
    selection_bbox: Optional[GeoBBox],
) -> Tuple[float, float, float, float]:
    """
    Pixel rectangle (sx, sy, sw, sh) of `selection_bbox` inside an image that
    spans `item_bbox`, using a linear lon/lat -> pixel mapping (y inverted).

    The whole image is returned when either bbox is unknown. Edges are clipped
    to the image and the size is never below 1x1; a selection that misses the
    item entirely keeps its out-of-image origin (crop_resize clamps it).
    """
    if item_bbox is None or selection_bbox is None:
        return 0.0, 0.0, float(width), float(height)

    denom_lon = item_bbox.max_lon - item_bbox.min_lon
    denom_lat = item_bbox.max_lat - item_bbox.min_lat
    if not (denom_lon > 0 and denom_lat > 0):
        return 0.0, 0.0, float(width), float(height)

    x0 = (selection_bbox.min_lon - item_bbox.min_lon) / denom_lon * width
    x1 = (selection_bbox.max_lon - item_bbox.min_lon) / denom_lon * width
    y0 = (item_bbox.max_lat - selection_bbox.max_lat) / denom_lat * height
    y1 = (item_bbox.max_lat - selection_bbox.min_lat) / denom_lat * height

    sx = max(0.0, min(x0, x1))
    ex = min(float(width), max(x0, x1))
    sy = max(0.0, min(y0, y1))
    ey = min(float(height), max(y0, y1))

    sw = max(1.0, ex - sx)
    sh = max(1.0, ey - sy)
    return sx, sy, sw, sh
