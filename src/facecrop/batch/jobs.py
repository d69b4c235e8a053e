"""Units of batch work and the runner that executes them.

A :class:`Job` covers one source image: detect faces when none are given,
then crop and enhance every selected face. A :class:`JobRequest` is one
attempt at a job as sent to an execution context.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from facecrop.cropper import crop_faces
from facecrop.detection import build_face_records, clamp_box, normalize_detections
from facecrop.errors import DetectionUnavailable
from facecrop.imaging.codec import resize_raster
from facecrop.imaging.quality import MAX_ANALYSIS_EDGE

if TYPE_CHECKING:
    from facecrop.detection import FaceDetector
    from facecrop.imaging.raster import RasterBuffer
    from facecrop.models import CropResult, CropSettings, FaceBox, FaceRecord

logger = logging.getLogger(__name__)


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    """Work item for one image. ``faces=None`` asks the runner to detect them."""

    job_id: str
    source_name: str
    raster: RasterBuffer
    faces: list[FaceRecord] | None = None


@dataclass
class JobRequest:
    """One attempt at a job, tagged with a unique correlation id."""

    request_id: str
    job_id: str
    source_name: str
    raster: RasterBuffer
    settings: CropSettings
    faces: list[FaceRecord] | None = None
    attempt: int = 1
    reduced_resolution: bool = False


@dataclass
class JobResult:
    job_id: str
    faces: list[FaceRecord] = field(default_factory=list)
    results: list[CropResult] = field(default_factory=list)
    duration: float = 0.0


class JobRunner:
    """Executes job requests: detect (optionally at half resolution), crop, enhance, encode."""

    def __init__(self, detector: FaceDetector | None, quality_max_edge: int = MAX_ANALYSIS_EDGE) -> None:
        self.detector = detector
        self.quality_max_edge = quality_max_edge

    def __call__(self, request: JobRequest) -> JobResult:
        started = time.perf_counter()
        faces = request.faces
        if faces is None:
            faces = self.detect(request.raster, request.reduced_resolution)
            logger.debug("Detected %d face(s) in %s", len(faces), request.source_name)

        results = crop_faces(request.raster, faces, request.settings, request.source_name)
        return JobResult(
            job_id=request.job_id,
            faces=faces,
            results=results,
            duration=time.perf_counter() - started,
        )

    def detect(self, raster: RasterBuffer, reduced_resolution: bool = False) -> list[FaceRecord]:
        """Detect faces, optionally on a half-size copy with coordinates mapped back.

        Raises:
            DetectionUnavailable: If no detector is configured.
        """
        if self.detector is None:
            raise DetectionUnavailable("No face detector is configured")

        if not reduced_resolution:
            boxes = normalize_detections(self.detector.detect(raster), raster.width, raster.height)
        else:
            half = resize_raster(raster, max(1, raster.width // 2), max(1, raster.height // 2))
            fx, fy = raster.width / half.width, raster.height / half.height
            logger.info(
                "Detecting on reduced %dx%d copy of %dx%d", half.width, half.height, raster.width, raster.height
            )
            reduced = normalize_detections(self.detector.detect(half), half.width, half.height)
            boxes = self._rescale(reduced, fx, fy, raster)

        return build_face_records(boxes, raster, max_edge=self.quality_max_edge)

    @staticmethod
    def _rescale(boxes: list[FaceBox], fx: float, fy: float, raster: RasterBuffer) -> list[FaceBox]:
        rescaled = []
        for box in boxes:
            clamped = clamp_box(box.scaled(fx, fy), raster.width, raster.height)
            if clamped is not None:
                rescaled.append(clamped)
        return rescaled
