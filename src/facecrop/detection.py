"""Face detector capability and normalization of its raw output.

Detection itself is provided by the host (MediaPipe, RetinaFace, ...). Any
object with a ``detect`` method returning :class:`RawDetection` values can
be plugged into the scheduler and the workspace.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Protocol

from facecrop.imaging import quality
from facecrop.models import FaceBox, FaceRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

    from facecrop.imaging.raster import RasterBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawDetection:
    """Detector output before coordinate normalization.

    Coordinates are either pixels of the analysed raster or fractions of its
    size; :func:`normalize_detections` tells the two apart.
    """

    x: float
    y: float
    width: float
    height: float
    score: float | None = None
    landmarks: tuple[tuple[float, float], ...] = ()


class FaceDetector(Protocol):
    """Protocol for face detection backends."""

    def detect(self, raster: RasterBuffer) -> list[RawDetection]:
        """Detect faces in a raster.

        Args:
            raster: RGBA source raster.

        Returns:
            Raw detections in detection order.
        """
        ...


def _is_normalized(det: RawDetection) -> bool:
    return 0 <= det.x <= 1 and 0 <= det.y <= 1 and 0 < det.width <= 1 and 0 < det.height <= 1


def clamp_box(box: FaceBox, image_w: int, image_h: int) -> FaceBox | None:
    """Clamp a pixel box to the image, keeping at least one pixel per side."""
    x = min(max(box.x, 0.0), float(image_w))
    y = min(max(box.y, 0.0), float(image_h))
    width = min(max(box.width, 1.0), image_w - x)
    height = min(max(box.height, 1.0), image_h - y)
    if width <= 0 or height <= 0:
        return None
    return replace(box, x=x, y=y, width=width, height=height)


def to_face_box(det: RawDetection, image_w: int, image_h: int) -> FaceBox | None:
    """Convert one detection to a clamped pixel box, or ``None`` if unusable."""
    values = (det.x, det.y, det.width, det.height)
    if not all(math.isfinite(v) for v in values):
        return None

    if _is_normalized(det):
        x, y = det.x * image_w, det.y * image_h
        width, height = det.width * image_w, det.height * image_h
    else:
        x, y, width, height = values

    confidence = None if det.score is None else min(max(det.score, 0.0), 1.0)
    raw = FaceBox(x=x, y=y, width=width, height=height, confidence=confidence, landmarks=tuple(det.landmarks))
    return clamp_box(raw, image_w, image_h)


def normalize_detections(detections: Iterable[RawDetection], image_w: int, image_h: int) -> list[FaceBox]:
    boxes: list[FaceBox] = []
    for det in detections:
        box = to_face_box(det, image_w, image_h)
        if box is None:
            logger.debug("Dropping unusable detection %s", det)
            continue
        boxes.append(box)
    return boxes


def build_face_records(
    boxes: Iterable[FaceBox],
    raster: RasterBuffer | None = None,
    max_edge: int = quality.MAX_ANALYSIS_EDGE,
) -> list[FaceRecord]:
    """Wrap boxes as selected face records, scoring quality when a raster is given."""
    records = []
    for i, box in enumerate(boxes):
        face_quality = quality.score_face(raster, box, max_edge=max_edge) if raster is not None else None
        records.append(FaceRecord(id=f"face_{i}", box=box, index=i + 1, quality=face_quality))
    return records


def detect_faces(
    detector: FaceDetector,
    raster: RasterBuffer,
    with_quality: bool = True,
    max_edge: int = quality.MAX_ANALYSIS_EDGE,
) -> list[FaceRecord]:
    """Run the detector and turn its output into face records."""
    boxes = normalize_detections(detector.detect(raster), raster.width, raster.height)
    return build_face_records(boxes, raster if with_quality else None, max_edge=max_edge)
