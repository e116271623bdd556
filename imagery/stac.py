from __future__ import annotations

"""
STAC image catalog adapter (Microsoft Planetary Computer by default).

Usage:
    cat = StacCatalog()
    items = cat.search(bbox, "2024-01-01", "2024-06-30", collection="sentinel-2-l2a")
    item = cat.tile_info(items[0], "sentinel-2-l2a")
    # item.tile_url_template -> ".../tiles/WebMercatorQuad/{z}/{x}/{y}@1x?..."
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from common.errors import CatalogError, InvalidBboxError
from common.types import GeoBBox, ImageryCandidate
from common.utils import clamp, finite_or_none, parse_utc_date, try_parse_iso8601


log = logging.getLogger(__name__)

SENTINEL2 = "sentinel-2-l2a"
LANDSAT = "landsat-c2-l2"
SUPPORTED_COLLECTIONS = (SENTINEL2, LANDSAT)

DEFAULT_SEARCH_URL = "https://planetarycomputer.microsoft.com/api/stac/v1/search"
DEFAULT_TILEJSON_URL = "https://planetarycomputer.microsoft.com/api/data/v1/item/tilejson.json"

_PREVIEW_ASSETS = ("rendered_preview", "preview", "thumbnail")


def normalize_collection(collection: Optional[str]) -> str:
    return collection if collection in SUPPORTED_COLLECTIONS else SENTINEL2


def _normalize_bbox(raw: Any) -> Optional[GeoBBox]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 4:
        return None
    vals = [finite_or_none(v) for v in raw]
    if any(v is None for v in vals):
        return None
    try:
        return GeoBBox(*vals)  # type: ignore[arg-type]
    except InvalidBboxError:
        return None


def _asset_href(assets: Dict[str, Any], key: str) -> Optional[str]:
    a = assets.get(key)
    if isinstance(a, dict) and isinstance(a.get("href"), str) and a["href"]:
        return a["href"]
    return None


def candidate_from_feature(feature: Dict[str, Any]) -> Optional[ImageryCandidate]:
    """
    STAC feature -> ImageryCandidate. Returns None when the feature has no id.
    Unparseable datetime / cloud cover become None rather than errors.
    """
    fid = feature.get("id")
    if not isinstance(fid, str) or not fid:
        return None
    props = feature.get("properties") or {}
    assets = feature.get("assets") or {}

    preview = None
    for key in _PREVIEW_ASSETS:
        preview = _asset_href(assets, key)
        if preview:
            break

    return ImageryCandidate(
        id=fid,
        datetime=try_parse_iso8601(props.get("datetime")),
        cloud_cover_percent=finite_or_none(props.get("eo:cloud_cover")),
        preview_url=preview,
        bbox=_normalize_bbox(feature.get("bbox")),
        tilejson_url=_asset_href(assets, "tilejson"),
    )


class StacCatalog:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        search_url: str = DEFAULT_SEARCH_URL,
        tilejson_url: str = DEFAULT_TILEJSON_URL,
        timeout: float = 20.0,
    ):
        """
        Params:
            session: optional requests.Session for connection reuse
            search_url: STAC API /search endpoint
            tilejson_url: item TileJSON endpoint used when an item has no tilejson asset
        """
        self.session = session or requests.Session()
        self.search_url = search_url
        self.tilejson_url = tilejson_url
        self.timeout = float(timeout)

    # ----------------------------
    # Public API
    # ----------------------------
    def build_search_body(
        self,
        bbox: GeoBBox,
        start_date: str,
        end_date: str,
        collection: str = SENTINEL2,
        limit: int = 100,
    ) -> Dict[str, Any]:
        """
        Validate inputs and build the POST body (no request performed).
        Raises ValueError for an unparseable or inverted date range.
        """
        try:
            start = parse_utc_date(start_date)
            end = parse_utc_date(end_date)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid date range: {start_date!r}..{end_date!r}") from e
        if start > end:
            raise ValueError(f"Invalid date range: {start_date} is after {end_date}")
        return {
            "collections": [normalize_collection(collection)],
            "bbox": bbox.as_list(),
            "datetime": f"{start_date}T00:00:00Z/{end_date}T23:59:59Z",
            "limit": int(clamp(limit, 1, 200)),
        }

    def search(
        self,
        bbox: GeoBBox,
        start_date: str,
        end_date: str,
        collection: str = SENTINEL2,
        limit: int = 100,
    ) -> List[ImageryCandidate]:
        body = self.build_search_body(bbox, start_date, end_date, collection, limit)
        try:
            r = self.session.post(self.search_url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise CatalogError(f"STAC request error: {e}") from e
        if r.status_code != 200:
            log.warning("STAC search failed: %s %s", r.status_code, r.text[:200])
            raise CatalogError(f"STAC search failed: {r.status_code} {r.reason}")
        try:
            payload = r.json()
        except ValueError as e:
            raise CatalogError("STAC search returned invalid JSON") from e

        features = payload.get("features") if isinstance(payload, dict) else None
        if not isinstance(features, list):
            return []
        out = [c for c in (candidate_from_feature(f) for f in features if isinstance(f, dict)) if c]
        log.info(
            "STAC search",
            extra={"extra": {"collection": body["collections"][0], "features": len(features), "usable": len(out)}},
        )
        return out

    def tilejson_request(self, candidate: ImageryCandidate, collection: str) -> Tuple[str, Sequence[Tuple[str, str]]]:
        """URL + query params for the candidate's TileJSON."""
        if candidate.tilejson_url:
            return candidate.tilejson_url, []
        params: List[Tuple[str, str]] = [("collection", normalize_collection(collection)), ("item", candidate.id)]
        if normalize_collection(collection) == SENTINEL2:
            params.append(("assets", "visual"))
        else:
            params.extend([("assets", "red"), ("assets", "green"), ("assets", "blue")])
        params.append(("format", "png"))
        return self.tilejson_url, params

    def tile_info(self, candidate: ImageryCandidate, collection: str = SENTINEL2) -> ImageryCandidate:
        """
        Return `candidate` with tile template / bounds / zoom range filled in
        from its TileJSON. Failures leave those fields None (tile mode is an
        upgrade over previews, not a requirement).
        """
        url, params = self.tilejson_request(candidate, collection)
        try:
            r = self.session.get(url, params=params, timeout=self.timeout)
            if r.status_code != 200:
                log.warning("TileJSON request failed: %s %s", r.status_code, candidate.id)
                return candidate
            tj = r.json()
        except (requests.RequestException, ValueError) as e:
            log.warning("TileJSON error for %s: %s", candidate.id, e)
            return candidate
        if not isinstance(tj, dict):
            return candidate

        tiles = tj.get("tiles")
        template = tiles[0] if isinstance(tiles, list) and tiles and isinstance(tiles[0], str) else None
        minzoom = tj.get("minzoom")
        maxzoom = tj.get("maxzoom")
        return candidate.with_tiles(
            tile_url_template=template,
            tile_bounds=_normalize_bbox(tj.get("bounds")),
            tile_min_zoom=int(minzoom) if finite_or_none(minzoom) is not None else None,
            tile_max_zoom=int(maxzoom) if finite_or_none(maxzoom) is not None else None,
        )
