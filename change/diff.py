from __future__ import annotations

"""
Pixel diff engine: per-pixel RGB difference between two co-registered
buffers, with optional cloud / dark masking, rendered as a red heatmap.
"""

from typing import Tuple

import numpy as np

from common.errors import AllPixelsMaskedError
from common.types import DiffStats, PixelBuffer


# --- masking thresholds ---
CLOUD_MIN_LUMA = 210.0
CLOUD_MAX_SATURATION = 0.18
DARK_MAX_LUMA = 18.0

# --- heatmap ramp ---
HEAT_RGB = (255, 0, 0)
HEAT_ALPHA_BASE = 40.0
HEAT_ALPHA_MAX = 220.0

_LUMA_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float64)


def luma(rgb: np.ndarray) -> np.ndarray:
    """Rec. 709 luma of an (..., 3) array, same scale as the input (0..255)."""
    return rgb.astype(np.float64) @ _LUMA_WEIGHTS


def saturation(rgb: np.ndarray) -> np.ndarray:
    """(max - min) / max per pixel, 0 where max == 0."""
    rgb = rgb.astype(np.float64)
    mx = rgb.max(axis=-1)
    mn = rgb.min(axis=-1)
    out = np.zeros_like(mx)
    np.divide(mx - mn, mx, out=out, where=mx > 0)
    return out


def cloud_like_mask(rgb: np.ndarray) -> np.ndarray:
    return (luma(rgb) >= CLOUD_MIN_LUMA) & (saturation(rgb) <= CLOUD_MAX_SATURATION)


def very_dark_mask(rgb: np.ndarray) -> np.ndarray:
    return luma(rgb) <= DARK_MAX_LUMA


def compute_diff(
    before: PixelBuffer,
    after: PixelBuffer,
    threshold: float,
    ignore_clouds: bool = True,
    ignore_dark: bool = False,
) -> Tuple[PixelBuffer, DiffStats]:
    """
    Compare `before` and `after` over their common top-left region.

    Per unmasked pixel d = (|dr| + |dg| + |db|) / 3; the pixel is "changed"
    when d >= threshold. The heatmap is red everywhere, with alpha
    min(220, 40 + d) on changed pixels and 0 elsewhere (masked included).

    Raises:
        AllPixelsMaskedError: masking excluded every pixel.
    """
    thr = float(min(255.0, max(0.0, float(threshold))))
    w = min(before.width, after.width)
    h = min(before.height, after.height)

    a = before.view()[:h, :w, :3].astype(np.float64)
    b = after.view()[:h, :w, :3].astype(np.float64)

    masked = np.zeros((h, w), dtype=bool)
    if ignore_clouds:
        masked |= cloud_like_mask(a) | cloud_like_mask(b)
    if ignore_dark:
        masked |= very_dark_mask(a) | very_dark_mask(b)
    keep = ~masked

    d = np.abs(a - b).sum(axis=-1) / 3.0
    considered = int(keep.sum())
    n_masked = int(masked.sum())
    if considered == 0:
        raise AllPixelsMaskedError(
            "All pixels were masked (cloud/dark). Try disabling masking or changing dates."
        )

    hot = keep & (d >= thr)
    changed = int(hot.sum())

    heat = np.empty((h, w, 4), dtype=np.uint8)
    heat[..., 0], heat[..., 1], heat[..., 2] = HEAT_RGB
    alpha = np.where(hot, np.minimum(HEAT_ALPHA_MAX, HEAT_ALPHA_BASE + d), 0.0)
    heat[..., 3] = np.rint(alpha).astype(np.uint8)  # half-to-even, like a clamped byte store

    stats = DiffStats(
        width=w,
        height=h,
        mean_diff=float(d[keep].sum() / considered),
        changed_percent=100.0 * changed / considered,
        considered=considered,
        masked=n_masked,
        changed=changed,
    )
    return PixelBuffer(heat), stats
