from __future__ import annotations

"""
Candidate selection over catalog items.

Two strategies:
  - closest:  minimum |datetime - target|; first item wins ties (strict <)
  - clearest: lowest cloud cover within +/- max_offset_days of the target,
              falling back to every dated + cloud-scored item when the
              window is empty; ties broken by temporal distance
A missing pick is None, never an exception.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Union

from common.types import ImageryCandidate
from common.utils import clamp, days_between, finite_or_none, parse_iso8601, parse_utc_date

Target = Union[datetime, str]

VARIANTS = ("closest", "clearest")

_DEFAULT_OFFSET_DAYS = {"sentinel-2-l2a": 14.0, "landsat-c2-l2": 30.0}


def _as_datetime(target: Target) -> datetime:
    if isinstance(target, datetime):
        return target
    if len(target) == 10:
        return parse_utc_date(target)
    return parse_iso8601(target)


def default_cloud_offset_days(collection: Optional[str], requested: Optional[float] = None) -> float:
    """Explicit values are clamped to [0, 90]; otherwise 30 for Landsat, 14 for Sentinel-2."""
    v = finite_or_none(requested)
    if v is not None:
        return clamp(v, 0.0, 90.0)
    return _DEFAULT_OFFSET_DAYS.get(collection or "", 14.0)


def select_closest(candidates: Sequence[ImageryCandidate], target: Target) -> Optional[ImageryCandidate]:
    t = _as_datetime(target)
    best: Optional[ImageryCandidate] = None
    best_dist = math.inf
    for c in candidates:
        if c.datetime is None:
            continue
        dist = abs((c.datetime - t).total_seconds())
        if dist < best_dist:
            best = c
            best_dist = dist
    return best


def select_clearest(
    candidates: Sequence[ImageryCandidate],
    target: Target,
    max_offset_days: float,
) -> Optional[ImageryCandidate]:
    t = _as_datetime(target)
    scored = [
        (c, c.cloud_cover_percent, days_between(c.datetime, t))
        for c in candidates
        if c.datetime is not None and c.cloud_cover_percent is not None
    ]
    near = [s for s in scored if s[2] <= max_offset_days]
    pool = near or scored
    if not pool:
        return None
    pool.sort(key=lambda s: (s[1], s[2]))  # stable
    return pool[0][0]


@dataclass(frozen=True)
class CandidateSelection:
    before: Optional[ImageryCandidate]
    after: Optional[ImageryCandidate]
    before_clear: Optional[ImageryCandidate] = None
    after_clear: Optional[ImageryCandidate] = None

    def pick(self, variant: str = "closest") -> tuple:
        """(before, after) for `variant`; clearest falls back to closest per side."""
        if variant not in VARIANTS:
            raise ValueError(f"Unknown variant {variant!r}; expected one of {VARIANTS}")
        if variant == "clearest":
            return (self.before_clear or self.before, self.after_clear or self.after)
        return (self.before, self.after)


def select_pair(
    candidates: Sequence[ImageryCandidate],
    start: Target,
    end: Target,
    max_offset_days: float,
) -> CandidateSelection:
    return CandidateSelection(
        before=select_closest(candidates, start),
        after=select_closest(candidates, end),
        before_clear=select_clearest(candidates, start, max_offset_days),
        after_clear=select_clearest(candidates, end, max_offset_days),
    )
