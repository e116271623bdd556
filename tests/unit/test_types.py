"""
Unit tests for core data types
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import InvalidBboxError
from common.types import DiffStats, GeoBBox, ImageryCandidate, PixelBuffer, TileIndex
from common.utils import parse_iso8601


class TestGeoBBox:
    """Test cases for GeoBBox validation"""

    def test_valid_bbox(self):
        """Test a normal box exposes center and list form"""
        b = GeoBBox(-77.1, 38.8, -77.0, 38.9)
        assert b.as_list() == [-77.1, 38.8, -77.0, 38.9]
        assert b.center == pytest.approx((-77.05, 38.85))

    @pytest.mark.parametrize("vals", [
        (0.0, 0.0, 0.0, 1.0),
        (0.0, 1.0, 1.0, 1.0),
        (2.0, 0.0, 1.0, 1.0),
        (float("nan"), 0.0, 1.0, 1.0),
        (0.0, 0.0, float("inf"), 1.0),
    ])
    def test_degenerate_or_non_finite_rejected(self, vals):
        """Test zero-area, inverted and non-finite boxes raise InvalidBboxError"""
        with pytest.raises(InvalidBboxError):
            GeoBBox(*vals)

    def test_invalid_bbox_is_value_error(self):
        """Test InvalidBboxError can be handled as a ValueError"""
        with pytest.raises(ValueError):
            GeoBBox(1.0, 1.0, 0.0, 0.0)

    def test_normalized_sorts_corners(self):
        """Test normalized() accepts corners in any order"""
        b = GeoBBox.normalized(10.0, 5.0, -10.0, -5.0)
        assert b.as_list() == [-10.0, -5.0, 10.0, 5.0]

    def test_from_sequence_requires_four_values(self):
        """Test from_sequence rejects short input"""
        with pytest.raises(InvalidBboxError):
            GeoBBox.from_sequence([1.0, 2.0, 3.0])

    def test_cache_token_uses_five_decimals(self):
        """Test the cache token rounds every edge to 5 decimals"""
        b = GeoBBox(1.0, 2.123456, 3.5, 4.0)
        assert b.cache_token() == "1.00000,2.12346,3.50000,4.00000"


class TestTileIndex:
    """Test cases for URL template filling"""

    def test_fill_template(self):
        """Test {z}/{x}/{y} placeholders are substituted"""
        t = TileIndex(x=3, y=5, z=7)
        assert t.fill("https://t.example/{z}/{x}/{y}.png") == "https://t.example/7/3/5.png"
        assert t.fill("https://t.example/tile/{z}/{y}/{x}") == "https://t.example/tile/7/5/3"


class TestPixelBuffer:
    """Test cases for PixelBuffer"""

    def test_shape_validation(self):
        """Test non-RGBA arrays are rejected"""
        with pytest.raises(ValueError):
            PixelBuffer(np.zeros((4, 4, 3), dtype=np.uint8))

    def test_view_is_read_only(self):
        """Test view() cannot be used to mutate the owner's pixels"""
        buf = PixelBuffer.solid(2, 2, (1, 2, 3))
        v = buf.view()
        with pytest.raises(ValueError):
            v[0, 0, 0] = 9
        assert buf.data[0, 0, 0] == 1

    def test_crop_is_top_left_copy(self):
        """Test crop keeps the top-left region and copies"""
        arr = np.arange(5 * 4 * 4, dtype=np.uint8).reshape(5, 4, 4)
        buf = PixelBuffer(arr)
        c = buf.crop(2, 3)
        assert (c.width, c.height) == (2, 3)
        assert np.array_equal(c.data, arr[:3, :2])
        c.data[0, 0, 0] = 255
        assert buf.data[0, 0, 0] == 0

    def test_png_roundtrip(self):
        """Test to_png / from_encoded preserve RGBA pixels"""
        buf = PixelBuffer.solid(8, 6, (10, 200, 30), alpha=128)
        decoded = PixelBuffer.from_encoded(buf.to_png())
        assert (decoded.width, decoded.height) == (8, 6)
        assert np.array_equal(decoded.data, buf.data)

    def test_from_encoded_rejects_garbage(self):
        """Test undecodable bytes raise ValueError"""
        with pytest.raises(ValueError):
            PixelBuffer.from_encoded(b"not an image")
        with pytest.raises(ValueError):
            PixelBuffer.from_encoded(b"")


class TestRecords:
    """Test cases for serializable records"""

    def test_diff_stats_to_dict_uses_camel_case(self):
        """Test DiffStats serializes meanDiff / changedPercent"""
        s = DiffStats(width=4, height=4, mean_diff=1.5, changed_percent=25.0, considered=16, masked=0, changed=4)
        d = s.to_dict()
        assert d["meanDiff"] == 1.5
        assert d["changedPercent"] == 25.0
        assert d["considered"] + d["masked"] == 16

    def test_candidate_with_tiles_returns_new_record(self):
        """Test with_tiles leaves the original candidate untouched"""
        c = ImageryCandidate(id="S2A_1", datetime=parse_iso8601("2024-01-05T10:00:00Z"), cloud_cover_percent=5.0)
        c2 = c.with_tiles(tile_url_template="https://t/{z}/{x}/{y}", tile_min_zoom=8)
        assert c.tile_url_template is None
        assert c2.tile_url_template == "https://t/{z}/{x}/{y}"
        assert c2.to_dict()["datetime"] == "2024-01-05T10:00:00Z"
