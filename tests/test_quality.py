"""Tests for blur-based quality scoring."""

from __future__ import annotations

import numpy as np
import pytest

from facecrop.imaging import quality
from facecrop.imaging.raster import RasterBuffer
from facecrop.models import FaceBox, QualityLevel

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _checkerboard(size: int, cell: int = 1) -> RasterBuffer:
    ys, xs = np.mgrid[0:size, 0:size]
    board = (((ys // cell) + (xs // cell)) % 2 * 255).astype(np.uint8)
    return RasterBuffer.from_array(board)


def _solid(width: int, height: int, value: int = 128) -> RasterBuffer:
    return RasterBuffer.blank(width, height, fill=(value, value, value, 255))


# ---------------------------------------------------------------------------
# Kernel tests
# ---------------------------------------------------------------------------


class TestLaplacianVariance:
    def test_flat_region_scores_zero(self) -> None:
        gray = np.full((10, 10), 77.0)
        assert quality.laplacian_variance(gray) == 0.0

    def test_region_without_interior_scores_zero(self) -> None:
        assert quality.laplacian_variance(np.arange(10, dtype=np.float64).reshape(2, 5)) == 0.0

    def test_single_bright_pixel(self) -> None:
        gray = np.zeros((5, 5))
        gray[2, 2] = 1.0
        # interior responses: 8 at the pixel, -1 at its four neighbours, 0 at the corners
        assert quality.laplacian_variance(gray) == pytest.approx(596 / 81)

    def test_luminance_weights(self) -> None:
        pixels = np.array([[[100, 0, 0, 255], [0, 100, 0, 255], [0, 0, 100, 255]]], dtype=np.uint8)
        np.testing.assert_allclose(quality.luminance(pixels), [[29.9, 58.7, 11.4]])


class TestClassify:
    def test_thresholds_are_exclusive(self) -> None:
        assert quality.classify(1000.0) is QualityLevel.MEDIUM
        assert quality.classify(1000.1) is QualityLevel.HIGH
        assert quality.classify(300.0) is QualityLevel.LOW
        assert quality.classify(300.1) is QualityLevel.MEDIUM


# ---------------------------------------------------------------------------
# Scoring tests
# ---------------------------------------------------------------------------


class TestScore:
    def test_solid_region_is_low(self) -> None:
        result = quality.score(_solid(64, 64))
        assert result.score == pytest.approx(0.0, abs=1e-9)
        assert result.level is QualityLevel.LOW

    def test_checkerboard_is_high(self) -> None:
        result = quality.score(_checkerboard(64))
        assert result.level is QualityLevel.HIGH
        assert result.score > quality.HIGH_THRESHOLD

    def test_empty_region_is_unknown(self) -> None:
        empty = RasterBuffer.blank(10, 10).region(50, 50, 5, 5)
        result = quality.score(empty)
        assert result.level is QualityLevel.UNKNOWN
        assert result.score == 0.0

    def test_large_region_is_downscaled_before_scoring(self) -> None:
        result = quality.score(_solid(300, 40), max_edge=100)
        assert result.level is QualityLevel.LOW

    def test_score_is_pure(self) -> None:
        raster = _checkerboard(32, cell=2)
        before = raster.tobytes()
        assert quality.score(raster) == quality.score(raster)
        assert raster.tobytes() == before


class TestScoreFace:
    def test_scores_only_the_face_region(self) -> None:
        pixels = np.full((64, 64), 128, dtype=np.uint8)
        ys, xs = np.mgrid[0:16, 0:16]
        pixels[8:24, 8:24] = ((ys + xs) % 2 * 255).astype(np.uint8)
        raster = RasterBuffer.from_array(pixels)

        sharp = quality.score_face(raster, FaceBox(x=8, y=8, width=16, height=16))
        flat = quality.score_face(raster, FaceBox(x=40, y=40, width=16, height=16))

        assert sharp.level is QualityLevel.HIGH
        assert flat.level is QualityLevel.LOW

    def test_box_outside_raster_is_unknown(self) -> None:
        result = quality.score_face(_solid(10, 10), FaceBox(x=20, y=20, width=5, height=5))
        assert result.level is QualityLevel.UNKNOWN
