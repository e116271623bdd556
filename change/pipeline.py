from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import httpx

from common.concurrency import BoundedScheduler, CancelToken, Generation, check
from common.config import load_config
from common.errors import GeoProofError, OperationCancelled
from common.logging_setup import get_logger, setup_logging
from common.types import DiffStats, GeoBBox, MosaicResult, PixelBuffer, now_iso
from change.diff import compute_diff
from change.selector import default_cloud_offset_days, select_pair
from change.timeline import SnapshotDeduplicator
from imagery.mosaic import MosaicLoader
from imagery.preview import PreviewLoader
from imagery.probe_cache import ProbeCache
from imagery.stac import StacCatalog, normalize_collection
from imagery.tiles import HttpTileSource
from imagery.wayback import WaybackCatalog


log = get_logger("change")


@dataclass
class ChangeRequest:
    """
    Inputs for one before/after comparison.

    The tile path needs `bbox` plus both tile templates; the preview path
    needs both preview URLs (item bboxes make the crop tighter).
    """
    bbox: Optional[GeoBBox]
    before_tile_url: Optional[str] = None
    after_tile_url: Optional[str] = None
    before_preview_url: Optional[str] = None
    after_preview_url: Optional[str] = None
    before_item_bbox: Optional[GeoBBox] = None
    after_item_bbox: Optional[GeoBBox] = None
    allow_missing_tiles: bool = False
    tile_zoom: float = 16
    threshold: float = 40
    ignore_clouds: bool = True
    ignore_dark: bool = False

    @property
    def can_use_tiles(self) -> bool:
        return bool(self.bbox and self.before_tile_url and self.after_tile_url)

    @property
    def can_use_previews(self) -> bool:
        return bool(self.before_preview_url and self.after_preview_url)


@dataclass(frozen=True)
class ChangeReport:
    stats: DiffStats
    heatmap_png: bytes
    before_png: bytes
    after_png: bytes
    source: str                           # "tiles" | "preview"
    before_zoom: Optional[int] = None
    after_zoom: Optional[int] = None
    fallback_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats.to_dict(),
            "source": self.source,
            "beforeZoom": self.before_zoom,
            "afterZoom": self.after_zoom,
            "fallbackReason": self.fallback_reason,
        }


class ChangeDetector:
    """
    before/after imagery -> heatmap + stats.

    Tile mosaics are tried first (both sides concurrently); if they fail and
    both previews exist, the cruder whole-image crop path is used instead.
    """

    def __init__(self, mosaic_loader: MosaicLoader, preview_loader: PreviewLoader, pair_concurrency: int = 2):
        self.mosaic_loader = mosaic_loader
        self.preview_loader = preview_loader
        self.scheduler = BoundedScheduler(pair_concurrency)

    async def detect(self, req: ChangeRequest, token: Optional[CancelToken] = None) -> ChangeReport:
        check(token)
        if not req.can_use_tiles and not req.can_use_previews:
            raise ValueError("Need a bbox with both tile templates, or both preview URLs")

        fallback_reason: Optional[str] = None
        if req.can_use_tiles:
            try:
                ra, rb = await self._load_mosaics(req, token)
            except OperationCancelled:
                raise
            except GeoProofError as e:
                if not req.can_use_previews:
                    raise
                fallback_reason = str(e)
                log.warning("tile mosaics failed; using previews", extra={"extra": {"error": fallback_reason}})
            else:
                w = min(ra.buffer.width, rb.buffer.width)
                h = min(ra.buffer.height, rb.buffer.height)
                heat, stats = await self._diff(ra.buffer.crop(w, h), rb.buffer.crop(w, h), req, token)
                return ChangeReport(
                    stats=stats,
                    heatmap_png=heat.to_png(),
                    before_png=ra.encoded_preview,
                    after_png=rb.encoded_preview,
                    source="tiles",
                    before_zoom=ra.used_zoom,
                    after_zoom=rb.used_zoom,
                )

        before, after = await self.preview_loader.load_pair(
            req.before_preview_url,
            req.after_preview_url,
            req.before_item_bbox,
            req.after_item_bbox,
            req.bbox,
            token=token,
        )
        check(token)
        heat, stats = await self._diff(before, after, req, token)
        return ChangeReport(
            stats=stats,
            heatmap_png=heat.to_png(),
            before_png=before.to_png(),
            after_png=after.to_png(),
            source="preview",
            fallback_reason=fallback_reason,
        )

    async def _load_mosaics(self, req: ChangeRequest, token: Optional[CancelToken]) -> Tuple[MosaicResult, MosaicResult]:
        async def load(template: str) -> MosaicResult:
            return await self.mosaic_loader.load(
                template, req.bbox, req.tile_zoom, req.allow_missing_tiles, token=token
            )

        ra, rb = await self.scheduler.map(load, [req.before_tile_url, req.after_tile_url], token)
        check(token)
        return ra, rb

    async def _diff(
        self, before: PixelBuffer, after: PixelBuffer, req: ChangeRequest, token: Optional[CancelToken]
    ) -> Tuple[PixelBuffer, DiffStats]:
        out = await asyncio.to_thread(
            compute_diff, before, after, req.threshold, req.ignore_clouds, req.ignore_dark
        )
        check(token)
        log.info("diff computed", extra={"extra": out[1].to_dict()})
        return out


class ChangeSession:
    """
    Holds the latest committed report. Each submit() supersedes the previous
    one; a superseded run returns None and never touches `latest`.
    """

    def __init__(self, detector: ChangeDetector):
        self.detector = detector
        self.generation = Generation()
        self.latest: Optional[ChangeReport] = None

    async def submit(self, req: ChangeRequest) -> Optional[ChangeReport]:
        token = self.generation.advance()
        try:
            report = await self.detector.detect(req, token)
        except OperationCancelled:
            log.info("change run superseded", extra={"extra": {"generation": token.generation}})
            return None
        except GeoProofError:
            if not self.generation.is_current(token):
                return None
            raise
        if not self.generation.is_current(token):
            return None
        self.latest = report
        return report


# ----------------------------
# Wiring from config
# ----------------------------
@dataclass
class Engine:
    tiles: HttpTileSource
    previews: PreviewLoader
    detector: ChangeDetector
    stac: StacCatalog
    wayback: WaybackCatalog
    dedup: SnapshotDeduplicator

    async def aclose(self) -> None:
        await self.tiles.aclose()
        await self.previews.aclose()


def build_engine(P: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> Engine:
    m, pv, pr = P["mosaic"], P["preview"], P["probe"]
    tiles = HttpTileSource(client, timeout=m["tile_timeout_s"])
    previews = PreviewLoader(client, timeout=pv["timeout_s"], max_output_width=pv["max_output_width"])
    loader = MosaicLoader(
        tiles,
        max_tile_budget=m["max_tile_budget"],
        max_attempts=m["max_attempts"],
        max_output_width=m["max_output_width"],
        missing_ratio_limit=m["missing_ratio_limit"],
        concurrency=P["concurrency"]["tiles"],
    )
    dedup = SnapshotDeduplicator(
        tiles,
        cache=ProbeCache(ttl=pr["cache_ttl_s"], max_entries=pr["cache_max_entries"]),
        batch_size=pr["batch_size"],
        retries=pr["retries"],
        backoff=pr["backoff_s"],
        probe_timeout=pr["timeout_s"],
    )
    return Engine(
        tiles=tiles,
        previews=previews,
        detector=ChangeDetector(loader, previews, pair_concurrency=P["concurrency"]["pairs"]),
        stac=StacCatalog(
            search_url=P["stac"]["search_url"],
            tilejson_url=P["stac"]["tilejson_url"],
            timeout=P["stac"]["timeout_s"],
        ),
        wayback=WaybackCatalog(capabilities_url=P["wayback"]["capabilities_url"], timeout=P["wayback"]["timeout_s"]),
        dedup=dedup,
    )


async def pick_stac_request(
    engine: Engine,
    bbox: GeoBBox,
    start: str,
    end: str,
    collection: str,
    variant: str = "closest",
    max_offset_days: Optional[float] = None,
    limit: int = 100,
) -> ChangeRequest:
    """Search the catalog, pick a before/after pair and resolve its tile templates."""
    collection = normalize_collection(collection)
    items = await asyncio.to_thread(engine.stac.search, bbox, start, end, collection, limit)
    if not items:
        raise GeoProofError("No imagery found for that bbox/time window. Try a larger bbox or longer date range.")
    sel = select_pair(items, start, end, default_cloud_offset_days(collection, max_offset_days))
    before, after = sel.pick(variant)
    if before is None or after is None:
        raise GeoProofError("Could not pick before/after imagery from results.")

    before, after = await asyncio.gather(
        asyncio.to_thread(engine.stac.tile_info, before, collection),
        asyncio.to_thread(engine.stac.tile_info, after, collection),
    )
    log.info("stac pair", extra={"extra": {"variant": variant, "before": before.id, "after": after.id}})
    return ChangeRequest(
        bbox=bbox,
        before_tile_url=before.tile_url_template,
        after_tile_url=after.tile_url_template,
        before_preview_url=before.preview_url,
        after_preview_url=after.preview_url,
        before_item_bbox=before.bbox,
        after_item_bbox=after.bbox,
    )


async def pick_wayback_request(engine: Engine, bbox: GeoBBox, zoom: float, limit: int) -> ChangeRequest:
    """Oldest vs newest visually distinct Wayback release at the bbox center."""
    timeline = await engine.dedup.options_for_bbox(engine.wayback, bbox, zoom=zoom, limit=limit)
    by_id = {v.id: v for v in timeline.versions}
    return ChangeRequest(
        bbox=bbox,
        before_tile_url=by_id[timeline.suggested_before_id].tile_url_template,
        after_tile_url=by_id[timeline.suggested_after_id].tile_url_template,
        tile_zoom=zoom,
    )


def _parse_bbox(s: str) -> GeoBBox:
    vals = [float(x) for x in s.split(",")]
    return GeoBBox.normalized(*vals) if len(vals) == 4 else GeoBBox.from_sequence(vals)


def _write_outputs(out_dir: Path, report: ChangeReport, request: ChangeRequest) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / "before.png").write_bytes(report.before_png)
    (out_dir / "after.png").write_bytes(report.after_png)
    (out_dir / "heatmap.png").write_bytes(report.heatmap_png)
    row = report.to_dict()
    row["generatedAt"] = now_iso()
    row["request"] = {
        "bbox": request.bbox.as_list() if request.bbox else None,
        "beforeTileUrl": request.before_tile_url,
        "afterTileUrl": request.after_tile_url,
        "beforePreviewUrl": request.before_preview_url,
        "afterPreviewUrl": request.after_preview_url,
        "threshold": request.threshold,
    }
    (out_dir / "report.json").write_text(json.dumps(row, indent=2))


async def _run(args: argparse.Namespace, P: Dict[str, Any]) -> ChangeReport:
    bbox = _parse_bbox(args.bbox)
    zoom = float(args.zoom if args.zoom is not None else P["mosaic"]["default_zoom"])
    engine = build_engine(P)
    try:
        if args.wayback:
            req = await pick_wayback_request(engine, bbox, zoom, int(P["probe"]["default_limit"]))
        else:
            req = await pick_stac_request(
                engine, bbox, args.start, args.end,
                collection=args.collection or P["stac"]["collection"],
                variant=args.variant,
                max_offset_days=args.max_offset_days,
                limit=int(P["stac"]["limit"]),
            )
        req.tile_zoom = zoom
        req.allow_missing_tiles = bool(args.allow_missing)
        req.threshold = float(args.threshold if args.threshold is not None else P["diff"]["threshold"])
        req.ignore_clouds = not args.keep_clouds and bool(P["diff"]["ignore_clouds"])
        req.ignore_dark = bool(args.ignore_dark or P["diff"]["ignore_dark"])

        report = await engine.detector.detect(req)
        _write_outputs(Path(args.out), report, req)
        return report
    finally:
        await engine.aclose()


def main() -> None:
    ap = argparse.ArgumentParser(description="Change detection between two dates over a bbox")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--bbox", required=True, help="minLon,minLat,maxLon,maxLat")
    ap.add_argument("--start", help="Before date YYYY-MM-DD (STAC mode)")
    ap.add_argument("--end", help="After date YYYY-MM-DD (STAC mode)")
    ap.add_argument("--collection", default=None, help="sentinel-2-l2a | landsat-c2-l2")
    ap.add_argument("--variant", choices=["closest", "clearest"], default="closest")
    ap.add_argument("--max-offset-days", type=float, default=None, help="Clearest search window (days)")
    ap.add_argument("--wayback", action="store_true", help="Compare oldest/newest distinct Wayback releases")
    ap.add_argument("--zoom", type=float, default=None, help="Requested tile zoom")
    ap.add_argument("--threshold", type=float, default=None, help="Changed-pixel threshold 0..255")
    ap.add_argument("--allow-missing", action="store_true", help="Tolerate missing tiles")
    ap.add_argument("--keep-clouds", action="store_true", help="Do not mask cloud-like pixels")
    ap.add_argument("--ignore-dark", action="store_true", help="Mask very dark pixels")
    ap.add_argument("--out", default="outputs/change", help="Output directory")
    args = ap.parse_args()

    if not args.wayback and not (args.start and args.end):
        ap.error("--start and --end are required unless --wayback is given")

    P = load_config(args.config)
    setup_logging(P["logging"]["level"])

    report = asyncio.run(_run(args, P))
    log.info("Change report written", extra={"extra": {"out": args.out, **report.to_dict()}})


if __name__ == "__main__":
    main()
