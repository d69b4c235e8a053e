"""Tests for the enhancement kernels and pipeline."""

from __future__ import annotations

import numpy as np
import pytest

from facecrop.imaging import enhance
from facecrop.imaging.enhance import EnhancementPipeline
from facecrop.imaging.raster import RasterBuffer
from facecrop.models import EnhancementParams

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _noise(width: int = 24, height: int = 16, seed: int = 7) -> RasterBuffer:
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    pixels[:, :, 3] = rng.integers(1, 256, size=(height, width), dtype=np.uint8)
    return RasterBuffer(pixels)


def _pixels(*rgb: int, alpha: int = 255) -> np.ndarray:
    return np.array([[[*rgb, alpha]]], dtype=np.uint8)


# ---------------------------------------------------------------------------
# Pipeline tests
# ---------------------------------------------------------------------------


class TestPipeline:
    def test_identity_params_are_byte_identical(self) -> None:
        raster = _noise()
        output = EnhancementPipeline(EnhancementParams()).apply(raster)
        assert output.tobytes() == raster.tobytes()
        assert output is not raster

    def test_input_is_never_mutated(self) -> None:
        raster = _noise()
        before = raster.tobytes()
        params = EnhancementParams(
            auto_color_correction=True,
            exposure=1.0,
            contrast=1.5,
            sharpness=1.0,
            skin_smoothing=2,
            red_eye_removal=True,
            background_blur=3,
        )
        EnhancementPipeline(params).apply(raster)
        assert raster.tobytes() == before

    def test_alpha_is_preserved(self) -> None:
        raster = _noise()
        params = EnhancementParams(exposure=-1.0, contrast=2.0, sharpness=2.0, background_blur=2)
        output = enhance.apply(raster, params)
        np.testing.assert_array_equal(output.pixels[:, :, 3], raster.pixels[:, :, 3])

    def test_pipeline_is_deterministic(self) -> None:
        params = EnhancementParams(auto_color_correction=True, sharpness=0.7, skin_smoothing=3, background_blur=4)
        first = enhance.apply(_noise(), params)
        second = enhance.apply(_noise(), params)
        assert first.tobytes() == second.tobytes()

    def test_steps_follow_fixed_order(self) -> None:
        params = EnhancementParams(background_blur=1, red_eye_removal=True, exposure=0.5, auto_color_correction=True)
        assert EnhancementPipeline(params).steps == [
            "auto_color_correction",
            "exposure",
            "red_eye_removal",
            "background_blur",
        ]

    def test_params_validation(self) -> None:
        with pytest.raises(ValueError):
            EnhancementParams(exposure=3.0)
        with pytest.raises(ValueError):
            EnhancementParams(contrast=0.1)


# ---------------------------------------------------------------------------
# Point kernels
# ---------------------------------------------------------------------------


class TestPointKernels:
    def test_exposure_doubles_and_clamps(self) -> None:
        pixels = np.concatenate([_pixels(50, 100, 200), _pixels(1, 2, 3)], axis=1)
        enhance.adjust_exposure(pixels, 1.0)
        assert pixels[0, 0, :3].tolist() == [100, 200, 255]
        assert pixels[0, 1, :3].tolist() == [2, 4, 6]

    def test_contrast_pivots_on_128(self) -> None:
        pixels = _pixels(128, 138, 100)
        enhance.adjust_contrast(pixels, 2.0)
        assert pixels[0, 0, :3].tolist() == [128, 148, 72]

    def test_red_eye_formula(self) -> None:
        pixels = _pixels(200, 50, 40)
        enhance.remove_red_eye(pixels)
        # r' = min(0.7 * 200, 1.2 * 50) = 60, b' = max(40, 0.8 * 50) = 40
        assert pixels[0, 0, :3].tolist() == [60, 50, 40]

    def test_red_eye_leaves_other_pixels(self) -> None:
        pixels = _pixels(140, 50, 40)
        enhance.remove_red_eye(pixels)
        assert pixels[0, 0, :3].tolist() == [140, 50, 40]

    def test_auto_color_stretches_channel_range(self) -> None:
        values = np.linspace(50, 150, 100).astype(np.uint8)
        pixels = np.stack([values, values, values, np.full(100, 255, np.uint8)], axis=-1)[None, :, :]
        enhance.auto_color_correction(pixels)
        assert pixels[0, :, 0].min() == 0
        assert pixels[0, :, 0].max() == 255

    def test_auto_color_leaves_flat_channel(self) -> None:
        pixels = np.full((4, 4, 4), 90, dtype=np.uint8)
        enhance.auto_color_correction(pixels)
        assert (pixels == 90).all()


# ---------------------------------------------------------------------------
# Neighbourhood kernels
# ---------------------------------------------------------------------------


class TestNeighbourhoodKernels:
    def test_sharpen_keeps_flat_image_and_border(self) -> None:
        pixels = np.full((5, 5, 4), 100, dtype=np.uint8)
        pixels[2, 2, :3] = 150
        original = pixels.copy()
        enhance.sharpen(pixels, 1.0)
        # center: 5 * 150 - 4 * 100 = 350 -> 255; neighbours: 5 * 100 - 3 * 100 - 150 = 50
        assert pixels[2, 2, 0] == 255
        assert pixels[1, 2, 0] == 50
        np.testing.assert_array_equal(pixels[0], original[0])
        np.testing.assert_array_equal(pixels[:, 0], original[:, 0])

    def test_box_blur_averages_in_bounds_neighbours(self) -> None:
        pixels = np.zeros((3, 3, 4), dtype=np.uint8)
        pixels[0, 0, :3] = 90
        mask = np.zeros((3, 3), dtype=bool)
        mask[0, 0] = True
        enhance.selective_box_blur(pixels, mask, 1)
        # corner neighbourhood has 4 in-bounds pixels: (90 + 0 + 0 + 0) / 4
        assert pixels[0, 0, 0] == 22
        assert pixels[1, 1, 0] == 0

    def test_skin_smoothing_only_touches_skin(self) -> None:
        pixels = np.zeros((6, 6, 4), dtype=np.uint8)
        pixels[:, :3, :3] = (200, 150, 120)
        pixels[:, 3:, :3] = (20, 200, 20)
        pixels[:, :, 3] = 255
        original = pixels.copy()
        enhance.smooth_skin(pixels, 1)
        np.testing.assert_array_equal(pixels[:, 3:], original[:, 3:])
        assert not np.array_equal(pixels[:, 2], original[:, 2])

    def test_skin_mask_rules(self) -> None:
        assert enhance.skin_mask(_pixels(200, 150, 120))[0, 0]
        assert not enhance.skin_mask(_pixels(120, 150, 200))[0, 0]
        assert not enhance.skin_mask(_pixels(100, 95, 30))[0, 0]


class TestBackgroundMask:
    def test_radial_mask_keeps_center(self) -> None:
        mask = enhance.background_mask(100, 100)
        assert not mask[50, 50]
        assert mask[0, 0]
        assert mask[99, 99]

    def test_landmark_hull_defines_foreground(self) -> None:
        points = [(10.0, 10.0), (30.0, 10.0), (30.0, 30.0), (10.0, 30.0)]
        mask = enhance.background_mask(100, 100, points)
        assert not mask[20, 20]
        assert mask[50, 50]

    def test_collinear_landmarks_fall_back_to_radial(self) -> None:
        points = [(0.0, 0.0), (5.0, 5.0), (10.0, 10.0)]
        np.testing.assert_array_equal(enhance.background_mask(40, 40, points), enhance.background_mask(40, 40))

    def test_background_blur_leaves_center(self) -> None:
        raster = _noise(40, 40)
        output = enhance.apply(raster, EnhancementParams(background_blur=2))
        np.testing.assert_array_equal(output.pixels[20, 20], raster.pixels[20, 20])
        assert not np.array_equal(output.pixels[0], raster.pixels[0])
