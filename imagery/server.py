from __future__ import annotations

import asyncio
import base64
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from common.config import load_config
from common.errors import (
    AllPixelsMaskedError,
    CatalogError,
    CoverageError,
    InvalidBboxError,
    NoCoverageError,
    RenderTargetUnavailableError,
    TileFetchError,
)
from common.logging_setup import get_logger, setup_logging
from common.types import GeoBBox, ImageryCandidate
from change.pipeline import ChangeRequest, build_engine
from change.selector import default_cloud_offset_days, select_pair
from imagery.stac import normalize_collection


P = load_config()
setup_logging(P["logging"]["level"])
log = get_logger("imagery.server")

# Instances
engine = build_engine(P)

app = FastAPI(title="GeoProof Change API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=P["server"]["cors_origins"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------- request bodies --------
class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StacSearchBody(_Body):
    bbox: List[float]
    start_date: str = Field(alias="startDate")
    end_date: str = Field(alias="endDate")
    collection: Optional[str] = None
    limit: Optional[int] = None
    max_cloud_offset_days: Optional[float] = Field(default=None, alias="maxCloudOffsetDays")


class WaybackOptionsBody(_Body):
    bbox: List[float]
    zoom: Optional[float] = None
    limit: Optional[int] = None


class ChangeBody(_Body):
    bbox: Optional[List[float]] = None
    before_tile_url: Optional[str] = Field(default=None, alias="beforeTileUrl")
    after_tile_url: Optional[str] = Field(default=None, alias="afterTileUrl")
    before_preview_url: Optional[str] = Field(default=None, alias="beforePreviewUrl")
    after_preview_url: Optional[str] = Field(default=None, alias="afterPreviewUrl")
    before_item_bbox: Optional[List[float]] = Field(default=None, alias="beforeItemBbox")
    after_item_bbox: Optional[List[float]] = Field(default=None, alias="afterItemBbox")
    allow_missing_tiles: bool = Field(default=False, alias="allowMissingTiles")
    tile_zoom: Optional[float] = Field(default=None, alias="tileZoom")
    threshold: Optional[float] = None
    ignore_clouds: Optional[bool] = Field(default=None, alias="ignoreClouds")
    ignore_dark: Optional[bool] = Field(default=None, alias="ignoreDark")


def _bbox_or_400(raw: Optional[List[float]]) -> GeoBBox:
    try:
        return GeoBBox.from_sequence(raw)
    except InvalidBboxError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _optional_bbox(raw: Optional[List[float]]) -> Optional[GeoBBox]:
    return None if raw is None else _bbox_or_400(raw)


def _b64(blob: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(blob).decode("ascii")


@app.get("/health")
def health():
    return {
        "status": "ok",
        "probe_cache": engine.dedup.cache.stats() if engine.dedup.cache is not None else None,
        "mosaic": {
            "max_tile_budget": P["mosaic"]["max_tile_budget"],
            "max_attempts": P["mosaic"]["max_attempts"],
        },
        "stac": {"search_url": P["stac"]["search_url"]},
        "wayback": {"capabilities_url": P["wayback"]["capabilities_url"]},
    }


@app.post("/stac/search")
async def stac_search(body: StacSearchBody):
    """
    Search the catalog and pick closest / clearest items for both dates,
    each resolved to a tile template where the item has one.
    """
    bbox = _bbox_or_400(body.bbox)
    collection = normalize_collection(body.collection)
    offset_days = default_cloud_offset_days(collection, body.max_cloud_offset_days)
    limit = body.limit if body.limit is not None else int(P["stac"]["limit"])

    try:
        items = await asyncio.to_thread(
            engine.stac.search, bbox, body.start_date, body.end_date, collection, limit
        )
    except CatalogError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date range")

    if not items:
        raise HTTPException(
            status_code=404,
            detail="No imagery found for that bbox/time window. Try a larger bbox or longer date range.",
        )

    sel = select_pair(items, body.start_date, body.end_date, offset_days)
    if sel.before is None or sel.after is None:
        raise HTTPException(status_code=502, detail="Could not pick before/after imagery from results.")

    async def resolve(c: Optional[ImageryCandidate]) -> Optional[dict]:
        if c is None:
            return None
        return (await asyncio.to_thread(engine.stac.tile_info, c, collection)).to_dict()

    before, after, before_clear, after_clear = await asyncio.gather(
        resolve(sel.before), resolve(sel.after), resolve(sel.before_clear), resolve(sel.after_clear)
    )
    return {
        "query": {
            "bbox": bbox.as_list(),
            "startDate": body.start_date,
            "endDate": body.end_date,
            "collection": collection,
            "maxCloudOffsetDays": offset_days,
            "totalCandidates": len(items),
        },
        "before": before,
        "after": after,
        "beforeClear": before_clear,
        "afterClear": after_clear,
    }


@app.post("/wayback/options")
async def wayback_options(body: WaybackOptionsBody):
    """Visually distinct Wayback releases at the bbox center, oldest first."""
    bbox = _bbox_or_400(body.bbox)
    pr = P["probe"]
    try:
        tl = await engine.dedup.options_for_bbox(
            engine.wayback,
            bbox,
            zoom=body.zoom if body.zoom is not None else pr["default_zoom"],
            limit=body.limit if body.limit is not None else pr["default_limit"],
            time_budget=pr["time_budget_s"],
            probe_budget=pr["probe_budget"],
        )
    except NoCoverageError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CatalogError as e:
        raise HTTPException(status_code=502, detail=str(e))

    tile = tl.probe_tile
    return {
        "query": {
            "bbox": bbox.as_list(),
            "zoom": tile.z if tile else None,
            "tile": {"x": tile.x, "y": tile.y, "z": tile.z} if tile else None,
            "probed": tl.probed,
            "deduped": tl.deduped,
            "failed": tl.failed,
        },
        "options": [v.to_dict() for v in tl.versions],
        "suggested": {"beforeId": tl.suggested_before_id, "afterId": tl.suggested_after_id},
    }


@app.post("/change")
async def change(body: ChangeBody):
    """
    Diff before/after imagery. Returns stats plus base64 PNG data URLs for
    the heatmap and both inputs.
    """
    d = P["diff"]
    req = ChangeRequest(
        bbox=_optional_bbox(body.bbox),
        before_tile_url=body.before_tile_url,
        after_tile_url=body.after_tile_url,
        before_preview_url=body.before_preview_url,
        after_preview_url=body.after_preview_url,
        before_item_bbox=_optional_bbox(body.before_item_bbox),
        after_item_bbox=_optional_bbox(body.after_item_bbox),
        allow_missing_tiles=body.allow_missing_tiles,
        tile_zoom=body.tile_zoom if body.tile_zoom is not None else P["mosaic"]["default_zoom"],
        threshold=body.threshold if body.threshold is not None else d["threshold"],
        ignore_clouds=body.ignore_clouds if body.ignore_clouds is not None else d["ignore_clouds"],
        ignore_dark=body.ignore_dark if body.ignore_dark is not None else d["ignore_dark"],
    )
    try:
        report = await engine.detector.detect(req)
    except AllPixelsMaskedError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (TileFetchError, CoverageError) as e:
        raise HTTPException(status_code=502, detail=str(e))
    except RenderTargetUnavailableError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    out = report.to_dict()
    out["heatmap"] = _b64(report.heatmap_png)
    out["before"] = _b64(report.before_png)
    out["after"] = _b64(report.after_png)
    return out


# -------- local dev entrypoint --------
if __name__ == "__main__":
    uvicorn.run(app, host=P["server"]["host"], port=int(P["server"]["port"]))
