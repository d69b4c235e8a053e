"""The working set: images, their faces, crop settings, history and statistics.

:class:`Workspace` is the only writer of its image entries. Every mutating
operation records a history snapshot first, so it can be undone. Batch work
is delegated to :class:`~facecrop.batch.scheduler.TaskScheduler`, and results
are committed only for jobs that fully completed.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from facecrop.batch.history import DEFAULT_HISTORY_LIMIT, HistoryManager
from facecrop.batch.jobs import Job, JobRunner, JobStatus
from facecrop.batch.memory import MemoryReclaimer
from facecrop.batch.scheduler import ConcurrencyPolicy, TaskScheduler
from facecrop.detection import build_face_records
from facecrop.imaging.quality import MAX_ANALYSIS_EDGE
from facecrop.models import CropSettings, ImageEntry, ImageStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from facecrop.batch.scheduler import BatchReport, CancelToken, ProgressCallback
    from facecrop.config import Settings
    from facecrop.detection import FaceDetector
    from facecrop.imaging.raster import RasterBuffer
    from facecrop.models import CropResult, FaceBox, FaceRecord

logger = logging.getLogger(__name__)

STATISTICS_WINDOW: int = 50


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@dataclass
class ProcessingStatistics:
    """Running totals over every processed image; timings keep the last 50."""

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    total_faces: int = 0
    processing_times: deque[float] = field(default_factory=lambda: deque(maxlen=STATISTICS_WINDOW))

    def record(self, success: bool, faces: int, duration: float) -> None:
        self.total_processed += 1
        if success:
            self.successful += 1
            self.total_faces += faces
        else:
            self.failed += 1
        self.processing_times.append(duration)

    @property
    def average_time(self) -> float:
        if not self.processing_times:
            return 0.0
        return sum(self.processing_times) / len(self.processing_times)

    @property
    def success_rate(self) -> float:
        if not self.total_processed:
            return 0.0
        return self.successful / self.total_processed * 100


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageState:
    """Restorable state of one image. The entry (and its raster) is shared, never copied."""

    entry: ImageEntry
    faces: tuple[FaceRecord, ...]
    results: tuple[CropResult, ...]
    selected: bool
    processed: bool
    status: ImageStatus
    processed_at: float | None


@dataclass(frozen=True)
class WorkspaceSnapshot:
    images: tuple[ImageState, ...]
    settings: CropSettings


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class Workspace:
    """Owns the images of a session and orchestrates their processing."""

    def __init__(
        self,
        settings: CropSettings | None = None,
        detector: FaceDetector | None = None,
        policy: ConcurrencyPolicy | None = None,
        reclaimer: MemoryReclaimer | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        quality_max_edge: int = MAX_ANALYSIS_EDGE,
        continue_on_error: bool = True,
        max_retries: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or CropSettings()
        self.continue_on_error = continue_on_error
        self.max_retries = max_retries
        self.reclaimer = reclaimer or MemoryReclaimer(clock=clock)
        self.statistics = ProcessingStatistics()
        self.history: HistoryManager[WorkspaceSnapshot] = HistoryManager(self._capture, self._restore, history_limit)

        self._images: dict[str, ImageEntry] = {}
        self._clock = clock
        self._quality_max_edge = quality_max_edge
        self._runner = JobRunner(detector, quality_max_edge)
        self.scheduler = TaskScheduler(policy=policy or ConcurrencyPolicy(), runner=self._runner)

    @classmethod
    def from_settings(cls, app_settings: Settings, detector: FaceDetector | None = None) -> Workspace:
        """Build a workspace configured from environment settings."""
        return cls(
            detector=detector,
            policy=ConcurrencyPolicy.from_settings(app_settings),
            reclaimer=MemoryReclaimer(app_settings.memory_policy, app_settings.memory_release_age),
            history_limit=app_settings.history_limit,
            quality_max_edge=app_settings.quality_max_edge,
            continue_on_error=app_settings.continue_on_error,
            max_retries=app_settings.max_retries,
        )

    # -- Queries ------------------------------------------------------------

    @property
    def detector(self) -> FaceDetector | None:
        return self._runner.detector

    @detector.setter
    def detector(self, detector: FaceDetector | None) -> None:
        self._runner.detector = detector

    @property
    def images(self) -> list[ImageEntry]:
        return list(self._images.values())

    def get(self, image_id: str) -> ImageEntry:
        try:
            return self._images[image_id]
        except KeyError:
            raise KeyError(f"Unknown image: {image_id}") from None

    def _face(self, image_id: str, face_id: str) -> FaceRecord:
        for face in self.get(image_id).faces:
            if face.id == face_id:
                return face
        raise KeyError(f"Unknown face {face_id} in image {image_id}")

    def __len__(self) -> int:
        return len(self._images)

    # -- Mutations (all undoable) -------------------------------------------

    def add_image(
        self,
        source_name: str,
        raster: RasterBuffer,
        faces: Iterable[FaceBox] | None = None,
        image_id: str | None = None,
    ) -> ImageEntry:
        """Add a source image, optionally with caller-supplied face boxes."""
        image_id = image_id or f"img_{uuid.uuid4().hex[:12]}"
        if image_id in self._images:
            raise ValueError(f"Duplicate image id: {image_id}")

        self.history.snapshot()
        entry = ImageEntry(id=image_id, source_name=source_name, buffer=raster)
        if faces is not None:
            entry.faces = build_face_records(faces, raster, max_edge=self._quality_max_edge)
        self._images[image_id] = entry
        logger.info("Added %s (%dx%d) as %s", source_name, raster.width, raster.height, image_id)
        return entry

    def set_faces(self, image_id: str, boxes: Iterable[FaceBox]) -> list[FaceRecord]:
        """Replace an image's faces with caller-supplied boxes."""
        entry = self.get(image_id)
        records = build_face_records(boxes, entry.raster, max_edge=self._quality_max_edge)
        self.history.snapshot()
        self._reset_faces(entry, records)
        return records

    def detect(self, image_id: str, reduced_resolution: bool = False) -> list[FaceRecord]:
        """Run the configured detector on one image and replace its faces.

        Raises:
            DetectionUnavailable: If no detector is configured.
            RasterReleasedError: If the image's raster was already released.
        """
        entry = self.get(image_id)
        records = self._runner.detect(entry.raster, reduced_resolution)
        self.history.snapshot()
        self._reset_faces(entry, records)
        logger.info("Detected %d face(s) in %s", len(records), entry.source_name)
        return records

    def toggle_face(self, image_id: str, face_id: str) -> bool:
        """Flip a face's selection and return its new state."""
        face = self._face(image_id, face_id)
        self.history.snapshot()
        face.selected = not face.selected
        self._prune_results(self.get(image_id))
        return face.selected

    def select_all_faces(self, image_id: str | None = None) -> None:
        self._set_selection(image_id, True)

    def clear_face_selection(self, image_id: str | None = None) -> None:
        self._set_selection(image_id, False)

    def set_image_selected(self, image_id: str, selected: bool) -> None:
        entry = self.get(image_id)
        self.history.snapshot()
        entry.selected = selected

    def update_settings(self, **changes: Any) -> CropSettings:
        """Apply validated changes to the crop settings.

        Raises:
            pydantic.ValidationError: If a changed value is out of range.
        """
        updated = self.settings.updated(**changes)
        self.history.snapshot()
        self.settings = updated
        return updated

    def remove_image(self, image_id: str) -> ImageEntry:
        entry = self.get(image_id)
        self.history.snapshot()
        del self._images[image_id]
        return entry

    def clear(self) -> None:
        if not self._images:
            return
        self.history.snapshot()
        self._images.clear()

    def undo(self) -> bool:
        return self.history.undo()

    def redo(self) -> bool:
        return self.history.redo()

    def _set_selection(self, image_id: str | None, selected: bool) -> None:
        entries = [self.get(image_id)] if image_id is not None else self.images
        self.history.snapshot()
        for entry in entries:
            for face in entry.faces:
                face.selected = selected
            self._prune_results(entry)

    @staticmethod
    def _prune_results(entry: ImageEntry) -> None:
        """Drop crops whose face is no longer selected."""
        selected = {face.id for face in entry.faces if face.selected}
        entry.results = [r for r in entry.results if r.face_id in selected]

    @staticmethod
    def _reset_faces(entry: ImageEntry, records: list[FaceRecord]) -> None:
        entry.faces = records
        entry.results = []
        entry.processed = False
        entry.status = ImageStatus.LOADED
        entry.processed_at = None

    # -- Memory -------------------------------------------------------------

    def release_memory(self, image_id: str | None = None) -> int:
        """Release one image's raster, or every processed image's raster."""
        if image_id is not None:
            return int(self.reclaimer.release(self.get(image_id)))
        return sum(self.reclaimer.release(e) for e in self.images if e.processed)

    # -- Processing ---------------------------------------------------------

    def process(
        self,
        image_ids: Iterable[str] | None = None,
        progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> BatchReport:
        """Crop every selected face of the given (default: all selected) images.

        Images without faces are sent through detection first. Images whose
        raster was already released are skipped.
        """
        if image_ids is None:
            targets = [e for e in self.images if e.selected]
        else:
            targets = [self.get(image_id) for image_id in image_ids]

        runnable = []
        for entry in targets:
            if entry.has_raster:
                runnable.append(entry)
            else:
                logger.warning("Skipping %s: its source raster was released", entry.source_name)

        self.history.snapshot()
        previous = {entry.id: entry.status for entry in runnable}
        jobs = []
        for entry in runnable:
            entry.status = ImageStatus.PROCESSING
            faces = [replace(face) for face in entry.faces] if entry.faces else None
            jobs.append(Job(job_id=entry.id, source_name=entry.source_name, raster=entry.raster, faces=faces))

        report = self.scheduler.run(
            jobs,
            self.settings,
            continue_on_error=self.continue_on_error,
            max_retries=self.max_retries,
            progress=progress,
            cancel_token=cancel_token,
        )

        for entry in runnable:
            outcome = report.outcomes[entry.id]
            if outcome.status is JobStatus.COMPLETED:
                entry.faces = outcome.faces or []
                entry.results = outcome.results
                entry.processed = True
                entry.status = ImageStatus.COMPLETED
                entry.processed_at = self._clock()
                self.statistics.record(True, len(outcome.results), outcome.duration)
            elif outcome.status is JobStatus.FAILED:
                entry.status = ImageStatus.ERROR
                self.statistics.record(False, 0, outcome.duration)
            else:
                entry.status = previous[entry.id]
            self.reclaimer.after_image(entry, self._images.values())

        return report

    # -- History hooks ------------------------------------------------------

    def _capture(self) -> WorkspaceSnapshot:
        return WorkspaceSnapshot(
            images=tuple(
                ImageState(
                    entry=entry,
                    faces=tuple(replace(face) for face in entry.faces),
                    results=tuple(entry.results),
                    selected=entry.selected,
                    processed=entry.processed,
                    status=entry.status,
                    processed_at=entry.processed_at,
                )
                for entry in self._images.values()
            ),
            settings=self.settings,
        )

    def _restore(self, snapshot: WorkspaceSnapshot) -> None:
        self._images = {}
        for state in snapshot.images:
            entry = state.entry
            entry.faces = [replace(face) for face in state.faces]
            entry.results = list(state.results)
            entry.selected = state.selected
            entry.processed = state.processed
            entry.status = state.status
            entry.processed_at = state.processed_at
            self._images[entry.id] = entry
        self.settings = snapshot.settings
