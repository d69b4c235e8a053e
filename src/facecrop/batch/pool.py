"""Async front door to CPU-bound crop work.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> decode -> JobRunner

The pool owns the detector and turns uploaded bytes into face records and
encoded crops. Requests beyond the semaphore limit queue for up to 5s and
then fail with ``ServerBusy``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from facecrop.batch.jobs import JobRequest, JobResult, JobRunner
from facecrop.detection import build_face_records, normalize_detections
from facecrop.errors import ServerBusy
from facecrop.imaging import codec, quality

if TYPE_CHECKING:
    from collections.abc import Callable

    from facecrop.config import Settings
    from facecrop.detection import FaceDetector, RawDetection
    from facecrop.imaging.raster import RasterBuffer
    from facecrop.models import CropSettings, FaceRecord, Quality

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class ProcessingPool:
    """Runs crop and quality requests on a bounded set of request threads."""

    def __init__(self, settings: Settings, detector: FaceDetector | None = None) -> None:
        self._settings = settings
        self._runner = JobRunner(detector, settings.quality_max_edge)
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="facecrop-request",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    @property
    def detector_available(self) -> bool:
        return self._runner.detector is not None

    # -- Request operations -------------------------------------------------

    async def crop(
        self,
        data: bytes,
        source_name: str,
        detections: list[RawDetection] | None,
        crop_settings: CropSettings,
    ) -> JobResult:
        """Decode an upload and crop every supplied or detected face.

        Raises:
            ServerBusy: If no request slot frees up in time.
            DetectionUnavailable: If no faces were given and there is no detector.
            ValueError: If the upload is not a decodable image.
        """
        return await self._run(self._crop_sync, data, source_name, detections, crop_settings)

    async def score(self, data: bytes, detections: list[RawDetection] | None) -> tuple[Quality, list[FaceRecord]]:
        """Score the sharpness of an upload and of each supplied face."""
        return await self._run(self._score_sync, data, detections)

    # -- Stats --------------------------------------------------------------

    @property
    def active_count(self) -> int:
        """Number of requests currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        logger.debug("Shutting down processing pool")
        self._executor.shutdown(wait=True)

    # -- Internal -----------------------------------------------------------

    async def _run(self, func: Callable[..., T], *args: object) -> T:
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=SEMAPHORE_TIMEOUT_SECONDS)
        except TimeoutError as exc:
            logger.warning("No request slot freed up within %.1fs", SEMAPHORE_TIMEOUT_SECONDS)
            raise ServerBusy("Server busy") from exc
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    def _decode(
        self,
        data: bytes,
        detections: list[RawDetection] | None,
    ) -> tuple[RasterBuffer, list[FaceRecord] | None]:
        raster = codec.decode_image(data, self._settings.max_image_pixels)
        if detections is None:
            return raster, None
        boxes = normalize_detections(detections, raster.width, raster.height)
        return raster, build_face_records(boxes, raster, max_edge=self._settings.quality_max_edge)

    def _crop_sync(
        self,
        data: bytes,
        source_name: str,
        detections: list[RawDetection] | None,
        crop_settings: CropSettings,
    ) -> JobResult:
        raster, faces = self._decode(data, detections)
        return self._runner(
            JobRequest(
                request_id=uuid.uuid4().hex,
                job_id=source_name,
                source_name=source_name,
                raster=raster,
                settings=crop_settings,
                faces=faces,
            )
        )

    def _score_sync(self, data: bytes, detections: list[RawDetection] | None) -> tuple[Quality, list[FaceRecord]]:
        raster, faces = self._decode(data, detections)
        return quality.score(raster, max_edge=self._settings.quality_max_edge), faces or []
