"""Pixel enhancement kernels and the fixed-order pipeline that runs them.

Every kernel works in place on an ``(H, W, 4)`` uint8 array and never
touches the alpha channel. Intermediate values are computed in float64 and
rounded to nearest, so identical inputs always give identical bytes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from facecrop.models import EnhancementParams

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from facecrop.imaging.raster import RasterBuffer

logger = logging.getLogger(__name__)

Point = tuple[float, float]

BACKGROUND_RADIUS_RATIO = 0.4


def _to_uint8(values: NDArray[np.float64]) -> NDArray[np.uint8]:
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


def _rgb(pixels: NDArray[np.uint8]) -> NDArray[np.float64]:
    return pixels[:, :, :3].astype(np.float64)


# ---------------------------------------------------------------------------
# Point kernels
# ---------------------------------------------------------------------------


def _percentile_bin(hist: NDArray[np.int64], fraction: float) -> int:
    cumulative = np.cumsum(hist) / hist.sum()
    hits = np.flatnonzero(cumulative >= fraction)
    return int(hits[0]) if hits.size else 255


def auto_color_correction(pixels: NDArray[np.uint8], low: float = 0.01, high: float = 0.99) -> None:
    """Stretch each RGB channel so its 1st..99th percentile spans 0..255."""
    if pixels.size == 0:
        return
    for channel in range(3):
        values = pixels[:, :, channel]
        hist = np.bincount(values.ravel(), minlength=256).astype(np.int64)
        lo = _percentile_bin(hist, low)
        hi = _percentile_bin(hist, high)
        if hi <= lo:
            continue
        stretched = (values.astype(np.float64) - lo) / (hi - lo) * 255.0
        pixels[:, :, channel] = _to_uint8(stretched)


def adjust_exposure(pixels: NDArray[np.uint8], stops: float) -> None:
    pixels[:, :, :3] = _to_uint8(_rgb(pixels) * (2.0**stops))


def adjust_contrast(pixels: NDArray[np.uint8], factor: float) -> None:
    pixels[:, :, :3] = _to_uint8((_rgb(pixels) - 128.0) * factor + 128.0)


def remove_red_eye(pixels: NDArray[np.uint8]) -> None:
    rgb = _rgb(pixels)
    r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]
    red_eye = (r > 150) & (r > 2 * g) & (r > 2 * b)
    if not red_eye.any():
        return
    pixels[:, :, 0][red_eye] = _to_uint8(np.minimum(r * 0.7, g * 1.2)[red_eye])
    pixels[:, :, 2][red_eye] = _to_uint8(np.maximum(b, g * 0.8)[red_eye])


# ---------------------------------------------------------------------------
# Neighbourhood kernels
# ---------------------------------------------------------------------------


def sharpen(pixels: NDArray[np.uint8], amount: float) -> None:
    """Unsharp-mask style 3x3 convolution over interior pixels."""
    height, width = pixels.shape[:2]
    if height < 3 or width < 3:
        return
    rgb = _rgb(pixels)
    center = rgb[1:-1, 1:-1]
    neighbours = rgb[:-2, 1:-1] + rgb[2:, 1:-1] + rgb[1:-1, :-2] + rgb[1:-1, 2:]
    pixels[1:-1, 1:-1, :3] = _to_uint8((1 + 4 * amount) * center - amount * neighbours)


def selective_box_blur(pixels: NDArray[np.uint8], mask: NDArray[np.bool_], radius: int) -> None:
    """Replace masked pixels with the mean of their in-bounds neighbourhood.

    The neighbourhood is read from the unmodified input regardless of the
    neighbours' own mask values.
    """
    if radius <= 0 or not mask.any():
        return
    height, width = mask.shape
    integral = np.zeros((height + 1, width + 1, 3), dtype=np.int64)
    integral[1:, 1:] = pixels[:, :, :3].astype(np.int64).cumsum(axis=0).cumsum(axis=1)

    rows = np.arange(height)
    cols = np.arange(width)
    y0 = np.clip(rows - radius, 0, height)
    y1 = np.clip(rows + radius + 1, 0, height)
    x0 = np.clip(cols - radius, 0, width)
    x1 = np.clip(cols + radius + 1, 0, width)

    sums = integral[y1][:, x1] - integral[y0][:, x1] - integral[y1][:, x0] + integral[y0][:, x0]
    counts = ((y1 - y0)[:, None] * (x1 - x0)[None, :])[:, :, None]
    blurred = sums / counts
    pixels[:, :, :3][mask] = _to_uint8(blurred[mask])


def skin_mask(pixels: NDArray[np.uint8]) -> NDArray[np.bool_]:
    rgb = _rgb(pixels)
    r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]
    return (r > 60) & (g > 40) & (b > 20) & (r > b) & (r > 0.8 * g) & ((r - g) > 15)


def smooth_skin(pixels: NDArray[np.uint8], amount: float) -> None:
    selective_box_blur(pixels, skin_mask(pixels), round(amount))


def _convex_hull(points: Sequence[Point]) -> list[Point]:
    unique = sorted(set(points))
    if len(unique) < 3:
        return unique

    def cross(o: Point, a: Point, b: Point) -> float:
        return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])

    lower: list[Point] = []
    for p in unique:
        while len(lower) >= 2 and cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)
    upper: list[Point] = []
    for p in reversed(unique):
        while len(upper) >= 2 and cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)
    return lower[:-1] + upper[:-1]


def background_mask(width: int, height: int, foreground: Sequence[Point] | None = None) -> NDArray[np.bool_]:
    """Classify background pixels.

    With at least three non-collinear ``foreground`` points (output pixel
    coordinates, e.g. a face mesh) everything outside their convex hull is
    background. Otherwise pixels farther than 40% of the corner distance
    from the image center are background.
    """
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    hull = _convex_hull(foreground) if foreground else []
    if len(hull) >= 3:
        inside = np.ones((height, width), dtype=bool)
        for (ax, ay), (bx, by) in zip(hull, hull[1:] + hull[:1], strict=True):
            inside &= (bx - ax) * (ys - ay) - (by - ay) * (xs - ax) >= 0
        return ~inside

    cx, cy = width / 2, height / 2
    max_distance = np.hypot(cx, cy)
    return np.hypot(xs - cx, ys - cy) > max_distance * BACKGROUND_RADIUS_RATIO


def blur_background(pixels: NDArray[np.uint8], amount: float, foreground: Sequence[Point] | None = None) -> None:
    height, width = pixels.shape[:2]
    selective_box_blur(pixels, background_mask(width, height, foreground), round(amount))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class EnhancementPipeline:
    """Runs the enabled kernels in their fixed order on a working copy."""

    def __init__(self, params: EnhancementParams | None = None) -> None:
        self.params = params or EnhancementParams()

    @property
    def steps(self) -> list[str]:
        """Names of the kernels that will run, in order."""
        p = self.params
        enabled = [
            ("auto_color_correction", p.auto_color_correction),
            ("exposure", p.exposure != 0),
            ("contrast", p.contrast != 1),
            ("sharpness", p.sharpness > 0),
            ("skin_smoothing", p.skin_smoothing > 0),
            ("red_eye_removal", p.red_eye_removal),
            ("background_blur", p.background_blur > 0),
        ]
        return [name for name, on in enabled if on]

    def apply(self, raster: RasterBuffer, foreground: Sequence[Point] | None = None) -> RasterBuffer:
        """Return an enhanced copy of ``raster``; the input is left untouched."""
        working = raster.copy()
        pixels = working.pixels
        p = self.params
        steps = self.steps
        if not steps:
            return working

        logger.debug("Enhancing %dx%d raster: %s", raster.width, raster.height, ", ".join(steps))
        if p.auto_color_correction:
            auto_color_correction(pixels)
        if p.exposure != 0:
            adjust_exposure(pixels, p.exposure)
        if p.contrast != 1:
            adjust_contrast(pixels, p.contrast)
        if p.sharpness > 0:
            sharpen(pixels, p.sharpness)
        if p.skin_smoothing > 0:
            smooth_skin(pixels, p.skin_smoothing)
        if p.red_eye_removal:
            remove_red_eye(pixels)
        if p.background_blur > 0:
            blur_background(pixels, p.background_blur, foreground)
        return working


def apply(raster: RasterBuffer, params: EnhancementParams, foreground: Sequence[Point] | None = None) -> RasterBuffer:
    """Functional form of :meth:`EnhancementPipeline.apply`."""
    return EnhancementPipeline(params).apply(raster, foreground)
