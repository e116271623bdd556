from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"
CONFIG_ENV = "GEOPROOF_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "logging": {"level": "INFO"},
    "mosaic": {
        "max_tile_budget": 36,
        "max_attempts": 6,
        "tile_timeout_s": 10.0,
        "max_output_width": 1024,
        "missing_ratio_limit": 0.7,
        "default_zoom": 16,
    },
    "preview": {"timeout_s": 20.0, "max_output_width": 640},
    "diff": {"threshold": 40, "ignore_clouds": True, "ignore_dark": False},
    "probe": {
        "batch_size": 10,
        "retries": 2,
        "backoff_s": 0.2,
        "timeout_s": 6.0,
        "time_budget_s": 30.0,
        "probe_budget": 180,
        "cache_ttl_s": 300.0,
        "cache_max_entries": 128,
        "default_zoom": 16,
        "default_limit": 60,
    },
    "concurrency": {"tiles": 1, "pairs": 2},
    "stac": {
        "search_url": "https://planetarycomputer.microsoft.com/api/stac/v1/search",
        "tilejson_url": "https://planetarycomputer.microsoft.com/api/data/v1/item/tilejson.json",
        "collection": "sentinel-2-l2a",
        "limit": 100,
        "timeout_s": 20.0,
    },
    "wayback": {
        "capabilities_url": (
            "https://wayback.maptiles.arcgis.com/arcgis/rest/services/World_Imagery/"
            "MapServer/WMTS/1.0.0/WMTSCapabilities.xml"
        ),
        "timeout_s": 20.0,
    },
    "server": {"host": "0.0.0.0", "port": 8000, "cors_origins": ["*"]},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML config merged over DEFAULTS.

    Path precedence: explicit `path`, env GEOPROOF_CONFIG, config/params.yaml.
    A missing file yields the defaults; a malformed file raises yaml.YAMLError.
    """
    p = Path(path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH)
    if not p.exists():
        return copy.deepcopy(DEFAULTS)
    with p.open("r") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config root must be a mapping: {p}")
    return _deep_merge(DEFAULTS, loaded)
