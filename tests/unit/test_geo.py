"""
Unit tests for Web Mercator projection helpers
"""

import math
import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import InvalidBboxError
from common.geo import (
    MAX_LAT,
    bbox_to_tile_range,
    clamp_lat,
    clamp_zoom,
    crop_rect_for_bboxes,
    lon_lat_to_tile,
    lon_lat_to_world_pixel,
    project_bbox,
    world_pixel_to_lon_lat,
    world_pixel_to_tile_index,
)
from common.types import GeoBBox


class TestProjection:
    """Test cases for lon/lat <-> world pixel conversion"""

    def test_origin_maps_to_world_center(self):
        """Test (0, 0) lands in the middle of the world at any zoom"""
        assert lon_lat_to_world_pixel(0.0, 0.0, 0) == pytest.approx((128.0, 128.0))
        assert lon_lat_to_world_pixel(0.0, 0.0, 3) == pytest.approx((1024.0, 1024.0))

    def test_antimeridian_edges(self):
        """Test lon=-180 maps to x=0 and lon=180 to the world width"""
        x0, _ = lon_lat_to_world_pixel(-180.0, 0.0, 2)
        x1, _ = lon_lat_to_world_pixel(180.0, 0.0, 2)
        assert x0 == pytest.approx(0.0)
        assert x1 == pytest.approx(1024.0)

    def test_latitude_is_clamped(self):
        """Test latitudes past the Mercator limit project like the limit itself"""
        assert clamp_lat(89.9) == MAX_LAT
        assert clamp_lat(-90.0) == -MAX_LAT
        _, y_pole = lon_lat_to_world_pixel(0.0, 90.0, 1)
        _, y_lim = lon_lat_to_world_pixel(0.0, MAX_LAT, 1)
        assert math.isfinite(y_pole)
        assert y_pole == pytest.approx(y_lim)
        assert y_pole == pytest.approx(0.0, abs=1e-6)

    def test_north_is_smaller_y(self):
        """Test y grows southwards"""
        _, y_north = lon_lat_to_world_pixel(0.0, 45.0, 4)
        _, y_south = lon_lat_to_world_pixel(0.0, -45.0, 4)
        assert y_north < y_south

    def test_inverse_roundtrip(self):
        """Test world pixel -> lon/lat inverts the forward projection"""
        x, y = lon_lat_to_world_pixel(-77.0352, 38.8895, 15)
        lon, lat = world_pixel_to_lon_lat(x, y, 15)
        assert lon == pytest.approx(-77.0352, abs=1e-9)
        assert lat == pytest.approx(38.8895, abs=1e-9)

    def test_non_finite_input_rejected(self):
        """Test NaN / inf coordinates raise InvalidBboxError"""
        with pytest.raises(InvalidBboxError):
            lon_lat_to_world_pixel(float("nan"), 0.0, 3)
        with pytest.raises(InvalidBboxError):
            lon_lat_to_world_pixel(0.0, float("inf"), 3)


class TestTiles:
    """Test cases for tile indexing and tile ranges"""

    def test_world_pixel_to_tile_index_floors(self):
        """Test tile index is floor division by 256"""
        assert world_pixel_to_tile_index(0.0, 0.0) == (0, 0)
        assert world_pixel_to_tile_index(255.9, 256.0) == (0, 1)
        assert world_pixel_to_tile_index(512.5, 767.99) == (2, 2)

    def test_lon_lat_to_tile(self):
        """Test tile under a point, clamped to the grid"""
        t = lon_lat_to_tile(0.0, 0.0, 1)
        assert (t.x, t.y, t.z) == (1, 1, 1)
        edge = lon_lat_to_tile(180.0, -90.0, 2)
        assert (edge.x, edge.y) == (3, 3)

    def test_range_covers_bbox(self):
        """Test a box straddling the origin at z=1 needs all four tiles"""
        rng = bbox_to_tile_range(GeoBBox(-10.0, -10.0, 10.0, 10.0), 1)
        assert (rng.x0, rng.y0, rng.x1, rng.y1) == (0, 0, 1, 1)
        assert (rng.tiles_x, rng.tiles_y) == (2, 2)
        assert rng.count == 4
        assert [(t.x, t.y) for t in rng.tiles()] == [(0, 0), (1, 0), (0, 1), (1, 1)]

    def test_top_left_uses_max_latitude(self):
        """Test the northern edge maps to the minimum tile row"""
        rng = bbox_to_tile_range(GeoBBox(10.0, 40.0, 11.0, 41.0), 8)
        assert rng.top_left[1] < rng.bottom_right[1]
        assert rng.y0 <= rng.y1

    def test_range_never_empty(self):
        """Test tiles_x >= 1 and tiles_y >= 1 for every zoom and box"""
        boxes = [
            GeoBBox(-180.0, -90.0, 180.0, 90.0),
            GeoBBox(-77.04, 38.88, -77.03, 38.89),
            GeoBBox(179.9999, 85.0, 180.0, 89.0),
            GeoBBox(-0.000001, -0.000001, 0.000001, 0.000001),
            GeoBBox(139.69, 35.68, 139.70, 35.69),
        ]
        for bbox in boxes:
            for z in range(0, 25):
                rng = bbox_to_tile_range(bbox, z)
                assert rng.tiles_x >= 1 and rng.tiles_y >= 1
                last = 2 ** z - 1
                assert 0 <= rng.x0 <= rng.x1 <= last
                assert 0 <= rng.y0 <= rng.y1 <= last

    def test_project_bbox_clamps_zoom(self):
        """Test project_bbox rounds and clamps the zoom into [0, 24]"""
        bbox = GeoBBox(-1.0, -1.0, 1.0, 1.0)
        assert project_bbox(bbox, 30).zoom == 24
        assert project_bbox(bbox, -3).zoom == 0
        assert project_bbox(bbox, 11.6).zoom == 12

    def test_clamp_zoom_rejects_nan(self):
        """Test a non-finite zoom is an error rather than a silent zero"""
        with pytest.raises(ValueError):
            clamp_zoom(float("nan"))


class TestCropRect:
    """Test cases for the whole-image preview crop rectangle"""

    def test_missing_bbox_returns_full_image(self):
        """Test unknown item bbox keeps the whole image"""
        sel = GeoBBox(0.0, 0.0, 1.0, 1.0)
        assert crop_rect_for_bboxes(400, 300, None, sel) == (0.0, 0.0, 400.0, 300.0)
        assert crop_rect_for_bboxes(400, 300, sel, None) == (0.0, 0.0, 400.0, 300.0)

    def test_linear_mapping_with_inverted_y(self):
        """Test the selection's north edge maps to the smaller pixel row"""
        item = GeoBBox(0.0, 0.0, 10.0, 10.0)
        sel = GeoBBox(2.0, 6.0, 4.0, 8.0)
        sx, sy, sw, sh = crop_rect_for_bboxes(1000, 1000, item, sel)
        assert (sx, sy) == pytest.approx((200.0, 200.0))
        assert (sw, sh) == pytest.approx((200.0, 200.0))

    def test_rect_clipped_to_image(self):
        """Test a selection larger than the item is clipped to the image bounds"""
        item = GeoBBox(0.0, 0.0, 10.0, 10.0)
        wide = GeoBBox(-5.0, -5.0, 5.0, 15.0)
        assert crop_rect_for_bboxes(100, 100, item, wide) == pytest.approx((0.0, 0.0, 50.0, 100.0))

    def test_rect_at_least_one_pixel(self):
        """Test a selection that misses the item still yields a 1x1 rect"""
        item = GeoBBox(0.0, 0.0, 10.0, 10.0)
        outside = GeoBBox(20.0, 20.0, 30.0, 30.0)
        _, _, sw, sh = crop_rect_for_bboxes(100, 100, item, outside)
        assert (sw, sh) == (1.0, 1.0)
