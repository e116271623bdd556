from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple, Any, Dict, Iterator, Sequence
from datetime import date, datetime, timezone
import math

import cv2
import numpy as np

from common.errors import InvalidBboxError, RenderTargetUnavailableError


IsoTime = str

TILE_SIZE = 256


def now_iso() -> IsoTime:
    """UTC timestamp in RFC3339/ISO-8601 with 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class GeoBBox:
    """
    Axis-aligned lon/lat rectangle in degrees.

    Construction validates the box; use `normalized()` when the corners may
    arrive in any order (e.g. from a drag selection).
    """
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def __post_init__(self) -> None:
        vals = (self.min_lon, self.min_lat, self.max_lon, self.max_lat)
        try:
            finite = all(math.isfinite(float(v)) for v in vals)
        except (TypeError, ValueError):
            finite = False
        if not finite:
            raise InvalidBboxError(f"Bounding box must be finite numbers, got {list(vals)}")
        if not (self.min_lon < self.max_lon and self.min_lat < self.max_lat):
            raise InvalidBboxError(
                f"Degenerate bounding box {list(vals)}: expected minLon < maxLon and minLat < maxLat"
            )

    @classmethod
    def normalized(cls, lon_a: float, lat_a: float, lon_b: float, lat_b: float) -> "GeoBBox":
        return cls(min(lon_a, lon_b), min(lat_a, lat_b), max(lon_a, lon_b), max(lat_a, lat_b))

    @classmethod
    def from_sequence(cls, seq: Optional[Sequence[float]]) -> "GeoBBox":
        if seq is None or len(seq) != 4:
            raise InvalidBboxError("Expected bbox as [minLon, minLat, maxLon, maxLat]")
        return cls(*(float(v) for v in seq))

    @property
    def center(self) -> Tuple[float, float]:
        """(lon, lat) of the box midpoint."""
        return (0.5 * (self.min_lon + self.max_lon), 0.5 * (self.min_lat + self.max_lat))

    def as_list(self) -> list:
        return [self.min_lon, self.min_lat, self.max_lon, self.max_lat]

    def cache_token(self) -> str:
        return ",".join(f"{v:.5f}" for v in self.as_list())


@dataclass(frozen=True, slots=True)
class TileIndex:
    """XYZ slippy-map tile address."""
    x: int
    y: int
    z: int

    def fill(self, template: str) -> str:
        return template.replace("{z}", str(self.z)).replace("{x}", str(self.x)).replace("{y}", str(self.y))


@dataclass(frozen=True, slots=True)
class TileRange:
    """
    Inclusive tile range covering a bbox at one zoom level.

    Attributes:
        x0, y0, x1, y1: inclusive tile index bounds.
        tiles_x, tiles_y: number of tile columns/rows.
        zoom: zoom level the range was computed at.
        top_left, bottom_right: bbox corners in world pixels at `zoom`.
    """
    x0: int
    y0: int
    x1: int
    y1: int
    tiles_x: int
    tiles_y: int
    zoom: int
    top_left: Tuple[float, float]
    bottom_right: Tuple[float, float]

    @property
    def count(self) -> int:
        return self.tiles_x * self.tiles_y

    def tiles(self) -> Iterator[TileIndex]:
        """Row-major: top row first, left to right."""
        for ty in range(self.y0, self.y1 + 1):
            for tx in range(self.x0, self.x1 + 1):
                yield TileIndex(tx, ty, self.zoom)


@dataclass(slots=True)
class PixelBuffer:
    """
    RGBA image, 8 bits per channel, row-major (H, W, 4).

    The component that creates a buffer owns it; hand out `view()` (read-only)
    or `copy()` to consumers.
    """
    data: np.ndarray

    def __post_init__(self) -> None:
        if not isinstance(self.data, np.ndarray):
            raise TypeError("data must be a numpy ndarray")
        if self.data.ndim != 3 or self.data.shape[2] != 4:
            raise ValueError(f"PixelBuffer expects shape (H, W, 4), got {self.data.shape}")
        if self.data.dtype != np.uint8:
            self.data = self.data.astype(np.uint8)

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    def view(self) -> np.ndarray:
        v = self.data.view()
        v.flags.writeable = False
        return v

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.data.copy())

    def crop(self, width: int, height: int) -> "PixelBuffer":
        """Top-left aligned crop (copy) to at most width x height."""
        return PixelBuffer(self.data[: max(0, height), : max(0, width)].copy())

    @classmethod
    def solid(cls, width: int, height: int, rgb: Tuple[int, int, int], alpha: int = 255) -> "PixelBuffer":
        arr = np.empty((height, width, 4), dtype=np.uint8)
        arr[...] = (rgb[0], rgb[1], rgb[2], alpha)
        return cls(arr)

    @classmethod
    def from_encoded(cls, blob: bytes) -> "PixelBuffer":
        """Decode PNG/JPEG/WebP bytes into RGBA. Raises ValueError if undecodable."""
        arr = np.frombuffer(blob, dtype=np.uint8)
        img = cv2.imdecode(arr, cv2.IMREAD_UNCHANGED) if arr.size else None
        if img is None:
            raise ValueError("Failed to decode image bytes")
        if img.dtype != np.uint8:
            # 16-bit PNGs
            img = (img.astype(np.float32) / 257.0).round().astype(np.uint8)
        if img.ndim == 2:
            rgba = cv2.cvtColor(img, cv2.COLOR_GRAY2RGBA)
        elif img.shape[2] == 3:
            rgba = cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)
        else:
            rgba = cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)
        return cls(rgba)

    def to_png(self) -> bytes:
        ok, buf = cv2.imencode(".png", cv2.cvtColor(self.data, cv2.COLOR_RGBA2BGRA))
        if not ok:
            raise RenderTargetUnavailableError("PNG encoder not available")
        return buf.tobytes()


@dataclass(frozen=True, slots=True)
class MosaicResult:
    """Result of one mosaic load. `buffer.data` is read-only; take `buffer.copy()` to edit."""
    buffer: PixelBuffer
    used_zoom: int
    encoded_preview: bytes
    missing_tiles: int = 0
    total_tiles: int = 0


@dataclass(frozen=True, slots=True)
class DiffStats:
    """
    Aggregate diff statistics.

    mean_diff is in 0..255, changed_percent in 0..100; both computed over
    unmasked pixels only. considered + masked == width * height.
    """
    width: int
    height: int
    mean_diff: float
    changed_percent: float
    considered: int = 0
    masked: int = 0
    changed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "meanDiff": self.mean_diff,
            "changedPercent": self.changed_percent,
            "considered": self.considered,
            "masked": self.masked,
            "changed": self.changed,
        }


@dataclass(frozen=True, slots=True)
class ImageryCandidate:
    """One catalog item (e.g. a STAC feature). Read-only to the engine."""
    id: str
    datetime: Optional[datetime] = None
    cloud_cover_percent: Optional[float] = None
    preview_url: Optional[str] = None
    bbox: Optional[GeoBBox] = None
    tile_url_template: Optional[str] = None
    tile_bounds: Optional[GeoBBox] = None
    tile_min_zoom: Optional[int] = None
    tile_max_zoom: Optional[int] = None
    tilejson_url: Optional[str] = None

    def with_tiles(self, **kwargs: Any) -> "ImageryCandidate":
        return replace(self, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        dt = self.datetime.isoformat().replace("+00:00", "Z") if self.datetime else None
        return {
            "id": self.id,
            "datetime": dt,
            "cloudCover": self.cloud_cover_percent,
            "previewUrl": self.preview_url,
            "bbox": self.bbox.as_list() if self.bbox else None,
            "tileUrlTemplate": self.tile_url_template,
            "tileBounds": self.tile_bounds.as_list() if self.tile_bounds else None,
            "tileMinZoom": self.tile_min_zoom,
            "tileMaxZoom": self.tile_max_zoom,
        }


@dataclass(frozen=True, slots=True)
class SnapshotVersion:
    """A dated publication of a historical basemap layer."""
    id: int
    date: date
    tile_url_template: str
    title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "title": self.title,
            "tileUrlTemplate": self.tile_url_template,
        }


@dataclass(frozen=True, slots=True)
class Timeline:
    """
    Deduplicated snapshot versions, oldest first.

    probed/deduped/failed are diagnostics from the probing run.
    """
    versions: Tuple[SnapshotVersion, ...]
    suggested_before_id: int
    suggested_after_id: int
    probe_tile: Optional[TileIndex] = None
    probed: int = 0
    deduped: int = 0
    failed: int = 0
