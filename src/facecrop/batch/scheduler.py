"""Batch orchestration: bounded concurrency, retries and graceful degradation.

Per job:  pending -> running -> {completed | retrying -> running | failed}
Jobs that are never dispatched because the batch was cancelled or aborted
end up ``cancelled``.

The scheduler is the single writer of every :class:`JobOutcome`. Execution
contexts only ever see a :class:`JobRequest`; results are matched back to
their job through the future they resolve, never through arrival order.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from facecrop.batch.jobs import JobRequest, JobRunner, JobStatus
from facecrop.batch.workers import LocalExecutor, WorkerPool
from facecrop.errors import DetectionUnavailable, FaceCropError, WorkerCrash
from facecrop.imaging.quality import MAX_ANALYSIS_EDGE

if TYPE_CHECKING:
    from collections.abc import Iterable

    from facecrop.batch.jobs import Job, JobResult
    from facecrop.batch.workers import ExecutionContext
    from facecrop.config import Settings
    from facecrop.detection import FaceDetector
    from facecrop.models import CropResult, CropSettings, FaceRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

POLL_INTERVAL_SECONDS: float = 0.05


class ExecutionMode(StrEnum):
    LOCAL = "local"
    WORKERS = "workers"


@dataclass(frozen=True)
class ConcurrencyPolicy:
    """How a batch is executed and how it degrades under failure."""

    mode: ExecutionMode = ExecutionMode.WORKERS
    max_workers: int = 2
    job_timeout: float = 30.0
    retry_delay: float = 1.0
    reduced_resolution: bool = False
    fallback_to_local: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> ConcurrencyPolicy:
        return cls(
            mode=ExecutionMode.WORKERS if settings.worker_count > 1 else ExecutionMode.LOCAL,
            max_workers=settings.worker_count,
            job_timeout=settings.job_timeout,
            retry_delay=settings.retry_delay,
            reduced_resolution=settings.reduced_resolution,
            fallback_to_local=settings.fallback_to_local,
        )


class CancelToken:
    """Cooperative cancellation flag checked between job boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation."""
        return self._event.wait(timeout)


@dataclass
class JobOutcome:
    job_id: str
    source_name: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    duration: float = 0.0
    error: str | None = None
    error_kind: str | None = None
    faces: list[FaceRecord] | None = None
    results: list[CropResult] = field(default_factory=list)


@dataclass
class BatchReport:
    """Aggregated result of one scheduler run, keyed by job id in submission order."""

    outcomes: dict[str, JobOutcome] = field(default_factory=dict)
    elapsed: float = 0.0
    aborted: bool = False
    cancelled: bool = False
    fell_back_to_local: bool = False

    def _count(self, status: JobStatus) -> int:
        return sum(1 for o in self.outcomes.values() if o.status is status)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(JobStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(JobStatus.FAILED)

    @property
    def cancelled_count(self) -> int:
        return self._count(JobStatus.CANCELLED)

    @property
    def faces_produced(self) -> int:
        return sum(len(o.results) for o in self.outcomes.values() if o.status is JobStatus.COMPLETED)

    @property
    def timings(self) -> dict[str, float]:
        return {job_id: o.duration for job_id, o in self.outcomes.items() if o.attempts}

    @property
    def percent_complete(self) -> float:
        if not self.outcomes:
            return 100.0
        return (self.succeeded + self.failed) / self.total * 100


@dataclass
class _Attempt:
    job: Job
    number: int
    started: float


class _ProgressCursor:
    """Reports finished jobs strictly in submission order."""

    def __init__(self, jobs: list[Job], report: BatchReport, callback: ProgressCallback | None) -> None:
        self._jobs = jobs
        self._report = report
        self._callback = callback
        self._position = 0

    def advance(self) -> None:
        while self._position < len(self._jobs):
            job = self._jobs[self._position]
            outcome = self._report.outcomes[job.job_id]
            if not outcome.status.terminal:
                return
            self._position += 1
            if self._callback is not None:
                percent = self._position / len(self._jobs) * 100
                self._callback(percent, f"{outcome.status} {job.source_name}")


class TaskScheduler:
    """Runs batches of crop jobs on a local or worker-pool execution context."""

    def __init__(
        self,
        detector: FaceDetector | None = None,
        policy: ConcurrencyPolicy | None = None,
        quality_max_edge: int = MAX_ANALYSIS_EDGE,
        runner: Callable[[JobRequest], JobResult] | None = None,
    ) -> None:
        self.policy = policy or ConcurrencyPolicy()
        self.runner = runner or JobRunner(detector, quality_max_edge)

    def run(
        self,
        jobs: Iterable[Job],
        settings: CropSettings,
        policy: ConcurrencyPolicy | None = None,
        continue_on_error: bool = True,
        max_retries: int = 0,
        progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> BatchReport:
        """Process ``jobs`` and aggregate their outcomes.

        Args:
            jobs: Work items; job ids must be unique.
            settings: Crop settings shared read-only by every job.
            policy: Overrides the scheduler's default policy for this run.
            continue_on_error: When False, the first unrecoverable failure
                cancels every job not yet dispatched.
            max_retries: Extra attempts granted to a job after a retryable failure.
            progress: Called with ``(percent_done, message)`` after each job,
                in submission order.
            cancel_token: Checked between job boundaries; in-flight jobs finish.

        Returns:
            The batch report. Failures are recorded in it, not raised.
        """
        policy = policy or self.policy
        jobs = list(jobs)
        report = BatchReport()
        for job in jobs:
            if job.job_id in report.outcomes:
                raise ValueError(f"Duplicate job id: {job.job_id}")
            report.outcomes[job.job_id] = JobOutcome(job.job_id, job.source_name)
        if not jobs:
            return report

        started = time.perf_counter()
        cursor = _ProgressCursor(jobs, report, progress)
        run = _Run(self, policy, settings, report, max_retries, continue_on_error, cancel_token)
        try:
            run.drive(jobs, cursor)
        finally:
            run.close()
            report.elapsed = time.perf_counter() - started

        logger.info(
            "Batch finished: %d completed, %d failed, %d cancelled, %d crops in %.2fs",
            report.succeeded,
            report.failed,
            report.cancelled_count,
            report.faces_produced,
            report.elapsed,
        )
        return report


class _Run:
    """State of a single :meth:`TaskScheduler.run` call."""

    def __init__(
        self,
        scheduler: TaskScheduler,
        policy: ConcurrencyPolicy,
        settings: CropSettings,
        report: BatchReport,
        max_retries: int,
        continue_on_error: bool,
        cancel_token: CancelToken | None,
    ) -> None:
        self.scheduler = scheduler
        self.policy = policy
        self.settings = settings
        self.report = report
        self.max_retries = max_retries
        self.continue_on_error = continue_on_error
        self.cancel_token = cancel_token

        self.context: ExecutionContext = self._open_context()
        self.in_flight: dict[Future[JobResult], _Attempt] = {}
        self.delayed: list[tuple[float, int, Job, int]] = []
        self._tiebreak = itertools.count()
        self.stopping = False
        self.detection_unavailable: DetectionUnavailable | None = None

    # -- Context management -------------------------------------------------

    def _open_context(self) -> ExecutionContext:
        if self.policy.mode is ExecutionMode.WORKERS:
            return WorkerPool(self.scheduler.runner, size=self.policy.max_workers, timeout=self.policy.job_timeout)
        return LocalExecutor(self.scheduler.runner)

    @property
    def local(self) -> bool:
        return isinstance(self.context, LocalExecutor)

    @property
    def capacity(self) -> int:
        return 1 if self.local else self.policy.max_workers

    def fall_back(self) -> None:
        if self.local:
            return
        logger.warning("Worker pool crashed; continuing batch on the local executor")
        self.context.shutdown(wait=False)
        self.context = LocalExecutor(self.scheduler.runner)
        self.report.fell_back_to_local = True

    def close(self) -> None:
        self.context.shutdown(wait=True)

    # -- Main loop ----------------------------------------------------------

    def drive(self, jobs: list[Job], cursor: _ProgressCursor) -> None:
        pending: deque[tuple[Job, int]] = deque((job, 1) for job in jobs)
        while pending or self.delayed or self.in_flight:
            if not self.stopping and self.cancel_token is not None and self.cancel_token.cancelled:
                logger.info("Batch cancelled; letting %d in-flight job(s) finish", len(self.in_flight))
                self.report.cancelled = True
                self.stopping = True

            if self.stopping:
                self._cancel_remaining(pending)
                cursor.advance()

            now = time.monotonic()
            while self.delayed and self.delayed[0][0] <= now:
                _, _, job, number = heapq.heappop(self.delayed)
                pending.appendleft((job, number))

            while not self.stopping and pending and len(self.in_flight) < self.capacity:
                job, number = pending.popleft()
                if self.detection_unavailable is not None and job.faces is None:
                    self._fail(self.report.outcomes[job.job_id], self.detection_unavailable)
                    cursor.advance()
                    continue
                self.report.outcomes[job.job_id].status = JobStatus.RUNNING
                self.in_flight[self._dispatch(job, number)] = _Attempt(job, number, time.perf_counter())

            if self.in_flight:
                done, _ = wait(list(self.in_flight), timeout=self._wait_timeout(), return_when=FIRST_COMPLETED)
                for future in done:
                    self._settle(future, self.in_flight.pop(future))
                    cursor.advance()
            elif self.delayed and not self.stopping:
                self._sleep(self.delayed[0][0] - time.monotonic())

        cursor.advance()

    def _wait_timeout(self) -> float:
        if not self.delayed:
            return POLL_INTERVAL_SECONDS
        return max(0.0, min(POLL_INTERVAL_SECONDS, self.delayed[0][0] - time.monotonic()))

    def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.cancel_token is not None:
            self.cancel_token.wait(seconds)
        else:
            time.sleep(seconds)

    def _cancel_remaining(self, pending: deque[tuple[Job, int]]) -> None:
        leftovers = [job for job, _ in pending] + [job for _, _, job, _ in self.delayed]
        pending.clear()
        self.delayed.clear()
        for job in leftovers:
            outcome = self.report.outcomes[job.job_id]
            if not outcome.status.terminal:
                outcome.status = JobStatus.CANCELLED

    # -- Dispatch and settlement --------------------------------------------

    def _dispatch(self, job: Job, number: int) -> Future[JobResult]:
        try:
            request = JobRequest(
                request_id=uuid.uuid4().hex,
                job_id=job.job_id,
                source_name=job.source_name,
                raster=job.raster if self.local else job.raster.copy(),
                settings=self.settings,
                faces=list(job.faces) if job.faces is not None else None,
                attempt=number,
                reduced_resolution=self.policy.reduced_resolution and number > 1,
            )
            try:
                return self.context.submit(request)
            except WorkerCrash:
                if not self.policy.fallback_to_local:
                    raise
                self.fall_back()
                return self.context.submit(request)
        except Exception as exc:
            failed: Future[JobResult] = Future()
            failed.set_exception(exc)
            return failed

    def _settle(self, future: Future[JobResult], attempt: _Attempt) -> None:
        outcome = self.report.outcomes[attempt.job.job_id]
        outcome.attempts = attempt.number
        outcome.duration += time.perf_counter() - attempt.started

        exc = future.exception()
        if exc is None:
            result = future.result()
            outcome.status = JobStatus.COMPLETED
            outcome.faces = result.faces
            outcome.results = result.results
            outcome.error = outcome.error_kind = None
            logger.debug("Job %s completed with %d crop(s)", outcome.job_id, len(result.results))
            return

        if isinstance(exc, WorkerCrash) and self.policy.fallback_to_local:
            self.fall_back()
        if isinstance(exc, DetectionUnavailable):
            self.detection_unavailable = exc

        if self._retryable(exc) and attempt.number <= self.max_retries:
            delay = attempt.number * self.policy.retry_delay
            outcome.status = JobStatus.RETRYING
            outcome.error, outcome.error_kind = str(exc), type(exc).__name__
            logger.warning(
                "Job %s attempt %d failed (%s); retrying in %.1fs",
                outcome.job_id,
                attempt.number,
                exc,
                delay,
            )
            heapq.heappush(
                self.delayed,
                (time.monotonic() + delay, next(self._tiebreak), attempt.job, attempt.number + 1),
            )
            return

        self._fail(outcome, exc)

    def _fail(self, outcome: JobOutcome, exc: BaseException) -> None:
        outcome.status = JobStatus.FAILED
        outcome.error, outcome.error_kind = str(exc), type(exc).__name__
        outcome.faces = None
        outcome.results = []
        logger.error("Job %s (%s) failed: %s", outcome.job_id, outcome.source_name, exc)
        if not self.continue_on_error and not self.stopping:
            logger.warning("Aborting batch after failure of %s", outcome.job_id)
            self.report.aborted = True
            self.stopping = True

    @staticmethod
    def _retryable(exc: BaseException) -> bool:
        if isinstance(exc, FaceCropError):
            return exc.retryable
        return isinstance(exc, Exception)
