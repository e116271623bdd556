"""
GeoProof Change Test Suite

This package contains tests for the imagery change-detection engine
(tile mosaics, pixel diff, candidate selection, snapshot timelines).

Structure:
- unit/: Unit tests for individual components; network access is faked
  with httpx.MockTransport, Mock sessions or in-memory tile sources
"""
