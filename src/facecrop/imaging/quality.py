"""Blur-based face quality scoring.

The score is the variance of a discrete Laplacian response over the
luminance of a region. Sharp regions produce strong, varied edge responses;
blurry or flat regions produce a near-constant response.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import numpy as np

from facecrop.imaging.codec import resize_raster
from facecrop.models import Quality, QualityLevel

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facecrop.imaging.raster import RasterBuffer
    from facecrop.models import FaceBox

MAX_ANALYSIS_EDGE = 1024
HIGH_THRESHOLD = 1000.0
MEDIUM_THRESHOLD = 300.0


def luminance(pixels: NDArray[np.uint8]) -> NDArray[np.float64]:
    """Rec. 601 luma of an RGBA array."""
    rgb = pixels[:, :, :3].astype(np.float64)
    return 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]


def laplacian_variance(gray: NDArray[np.float64]) -> float:
    """Variance of the 4-neighbour Laplacian over interior pixels."""
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0
    center = gray[1:-1, 1:-1]
    response = 8.0 * center - gray[:-2, 1:-1] - gray[2:, 1:-1] - gray[1:-1, :-2] - gray[1:-1, 2:]
    return float(response.var())


def classify(score: float) -> QualityLevel:
    if score > HIGH_THRESHOLD:
        return QualityLevel.HIGH
    if score > MEDIUM_THRESHOLD:
        return QualityLevel.MEDIUM
    return QualityLevel.LOW


def score(region: RasterBuffer, max_edge: int = MAX_ANALYSIS_EDGE) -> Quality:
    """Score the sharpness of a whole raster region."""
    if region.width <= 0 or region.height <= 0:
        return Quality.unknown()

    long_edge = max(region.width, region.height)
    if long_edge > max_edge:
        factor = max_edge / long_edge
        region = resize_raster(
            region,
            max(1, math.floor(region.width * factor)),
            max(1, math.floor(region.height * factor)),
        )

    variance = laplacian_variance(luminance(region.pixels))
    return Quality(score=variance, level=classify(variance))


def score_face(raster: RasterBuffer, box: FaceBox, max_edge: int = MAX_ANALYSIS_EDGE) -> Quality:
    """Score the part of ``raster`` covered by a face box."""
    x = max(0, min(raster.width, math.floor(box.x)))
    y = max(0, min(raster.height, math.floor(box.y)))
    width = min(math.floor(box.width), raster.width - x)
    height = min(math.floor(box.height), raster.height - y)
    if width <= 0 or height <= 0:
        return Quality.unknown()
    return score(raster.region(x, y, width, height), max_edge=max_edge)
