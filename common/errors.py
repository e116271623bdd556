from __future__ import annotations

from typing import Optional


class GeoProofError(Exception):
    """Base class for every error raised by the imagery/change engine."""


class InvalidBboxError(GeoProofError, ValueError):
    """Degenerate or non-finite bounding box. Fatal to the call, never retried."""


class TileFetchError(GeoProofError):
    """A required tile could not be fetched (non-success status or transport error)."""

    def __init__(self, message: str, *, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class TileTimeoutError(TileFetchError):
    """Tile request exceeded its time box; retried exactly like TileFetchError."""


class CoverageError(GeoProofError):
    """Too many tiles missing even though individual failures were tolerated."""


class RenderTargetUnavailableError(GeoProofError):
    """No image compositing surface could be created (allocation/encoder failure)."""


class AllPixelsMaskedError(GeoProofError):
    """Every pixel was excluded by cloud/dark masking; no statistics can be produced."""


class NoCoverageError(GeoProofError):
    """Snapshot probing found no usable version at the probe location/zoom."""


class CatalogError(GeoProofError):
    """An upstream catalog (STAC search, WMTS capabilities) failed or returned garbage."""


class OperationCancelled(GeoProofError):
    """Raised when a cancellation token fires; results must be discarded."""


# Errors the mosaic loader answers by dropping one zoom level and trying again.
RETRYABLE_MOSAIC_ERRORS = (TileFetchError, CoverageError)
