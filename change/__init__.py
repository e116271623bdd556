"""
Change — before/after comparison over a bbox

This package provides:
- A pixel diff engine with cloud / dark masking and a red change heatmap
- Closest / clearest candidate selection over catalog items
- Content-hash deduplication of historical basemap snapshots
- An end-to-end pipeline: pick sources, build tile mosaics (falling back to
  whole-image previews), diff, and write PNGs + report.json

Entry point:
    python -m change.pipeline --config config/params.yaml --bbox ... --start ... --end ...
"""
from .diff import compute_diff
from .selector import select_clearest, select_closest

__all__ = ["compute_diff", "select_clearest", "select_closest"]
