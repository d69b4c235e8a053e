"""Execution contexts for batch jobs.

Architecture:
    TaskScheduler -> WorkerPool.submit -> worker inbox queue -> worker thread
                  <- Future <- pending-request table <- shared outbox queue

Each request carries a raster whose ownership moves into the pool and a
correlation id. The collector thread resolves every pending request exactly
once: with the worker's response, with ``WorkerTimeout`` when the watchdog
fires first, or with ``WorkerCrash`` when the worker thread dies.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from facecrop.errors import WorkerCrash, WorkerTimeout

if TYPE_CHECKING:
    from collections.abc import Callable

    from facecrop.batch.jobs import JobRequest, JobResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS: float = 30.0
POLL_INTERVAL_SECONDS: float = 0.05


class ExecutionContext(Protocol):
    """Something that can run job requests and hand back futures."""

    def submit(self, request: JobRequest) -> Future[JobResult]: ...

    def shutdown(self, wait: bool = True) -> None: ...


class LocalExecutor:
    """Runs requests synchronously on the calling thread."""

    def __init__(self, handler: Callable[[JobRequest], JobResult]) -> None:
        self._handler = handler

    def submit(self, request: JobRequest) -> Future[JobResult]:
        future: Future[JobResult] = Future()
        try:
            future.set_result(self._handler(request))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


@dataclass
class _Response:
    request_id: str
    result: JobResult | None = None
    error: Exception | None = None


@dataclass
class _Pending:
    future: Future[JobResult]
    worker: _Worker
    timer: threading.Timer


@dataclass(eq=False)
class _Worker:
    name: str
    inbox: queue.Queue[JobRequest | None] = field(default_factory=queue.Queue)
    thread: threading.Thread | None = None
    retired: bool = False
    crashed: bool = False
    stalled: bool = False
    busy_with: str | None = None
    in_flight: int = 0

    @property
    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    @property
    def responsive(self) -> bool:
        """Alive and not stuck in a request that already timed out."""
        return self.alive and not self.crashed and not self.stalled


class WorkerPool:
    """Bounded pool of background worker threads with message passing."""

    def __init__(
        self,
        handler: Callable[[JobRequest], JobResult],
        size: int = 2,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if size < 1:
            raise ValueError("WorkerPool needs at least one worker")
        self._handler = handler
        self._timeout = timeout
        self._outbox: queue.Queue[_Response] = queue.Queue()
        self._pending: dict[str, _Pending] = {}
        self._lock = threading.Lock()
        self._closed = threading.Event()

        self._workers = [self._spawn(f"facecrop-worker-{i}") for i in range(size)]
        self._collector = threading.Thread(target=self._collect, name="facecrop-collector", daemon=True)
        self._collector.start()

    # -- Public API ---------------------------------------------------------

    @property
    def size(self) -> int:
        """Number of workers still alive."""
        with self._lock:
            return sum(1 for w in self._workers if w.alive)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, request: JobRequest) -> Future[JobResult]:
        """Dispatch a request to the least busy responsive worker.

        Workers still stuck in a timed-out request are skipped until they
        answer. The request's raster is transferred into the pool; the
        caller's handle can no longer read it.

        Raises:
            WorkerCrash: If no live worker remains, or every live one is stalled.
            RuntimeError: If the pool was shut down.
        """
        if self._closed.is_set():
            raise RuntimeError("WorkerPool is shut down")

        request.raster = request.raster.transfer()
        future: Future[JobResult] = Future()
        with self._lock:
            candidates = [w for w in self._workers if w.responsive]
            if not candidates:
                if any(w.alive and not w.crashed for w in self._workers):
                    raise WorkerCrash("Every live worker is stalled on a timed-out request")
                raise WorkerCrash("No live worker left in the pool")
            worker = min(candidates, key=lambda w: w.in_flight)
            timer = threading.Timer(self._timeout, self._on_timeout, args=(request.request_id,))
            timer.daemon = True
            self._pending[request.request_id] = _Pending(future=future, worker=worker, timer=timer)
            worker.in_flight += 1
        timer.start()
        worker.inbox.put(request)
        return future

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting requests and let the workers drain their inboxes.

        With ``wait=True`` this blocks until the responsive workers exit;
        stalled workers are abandoned and their requests fail with
        ``WorkerCrash``, as does anything still unresolved afterwards. With
        ``wait=False`` queued requests keep resolving their futures in the
        background.
        """
        if self._closed.is_set():
            return
        self._closed.set()
        for worker in self._workers:
            worker.inbox.put(None)
        if not wait:
            return

        with self._lock:
            stalled = [w for w in self._workers if w.stalled]
            joinable = [w for w in self._workers if not w.stalled]
            abandoned = [rid for rid, p in self._pending.items() if p.worker in stalled]
        for worker in stalled:
            logger.warning("Not waiting for stalled worker %s", worker.name)
        for request_id in abandoned:
            self._resolve(request_id, error=WorkerCrash(f"Worker stalled before handling {request_id}"))
        for worker in joinable:
            if worker.thread is not None:
                worker.thread.join(timeout=self._timeout)
        self._collector.join(timeout=self._timeout)

        with self._lock:
            leftovers = list(self._pending)
        for request_id in leftovers:
            self._resolve(request_id, error=WorkerCrash("Worker pool shut down before responding"))

    # -- Internal -----------------------------------------------------------

    def _spawn(self, name: str) -> _Worker:
        worker = _Worker(name=name)
        worker.thread = threading.Thread(target=self._work, args=(worker,), name=name, daemon=True)
        worker.thread.start()
        return worker

    def _work(self, worker: _Worker) -> None:
        while True:
            request = worker.inbox.get()
            if request is None:
                worker.retired = True
                return
            with self._lock:
                worker.busy_with = request.request_id
            try:
                response = _Response(request.request_id, result=self._handler(request))
            except Exception as exc:
                response = _Response(request.request_id, error=exc)
            # Drop the transferred raster before reporting back.
            request = None
            with self._lock:
                worker.busy_with = None
                if worker.stalled:
                    logger.info("Worker %s is responding again", worker.name)
                    worker.stalled = False
            self._outbox.put(response)

    def _collect(self) -> None:
        while not self._closed.is_set() or self.pending_count or not self._outbox.empty():
            try:
                response = self._outbox.get(timeout=POLL_INTERVAL_SECONDS)
            except queue.Empty:
                self._check_workers()
                continue
            self._resolve(response.request_id, result=response.result, error=response.error)
            self._check_workers()

    def _check_workers(self) -> None:
        with self._lock:
            crashed = [w for w in self._workers if not w.alive and not w.retired and not w.crashed]
            for worker in crashed:
                worker.crashed = True
            doomed = [rid for rid, p in self._pending.items() if p.worker in crashed]
        for worker in crashed:
            logger.error("Worker %s terminated unexpectedly; failing its in-flight requests", worker.name)
        for request_id in doomed:
            self._resolve(request_id, error=WorkerCrash(f"Worker died while handling {request_id}"))

    def _on_timeout(self, request_id: str) -> None:
        with self._lock:
            pending = self._pending.get(request_id)
            if pending is not None and pending.worker.busy_with == request_id:
                pending.worker.stalled = True
        logger.warning("Request %s timed out after %.1fs", request_id, self._timeout)
        self._resolve(request_id, error=WorkerTimeout(f"No response for {request_id} within {self._timeout}s"))

    def _resolve(
        self,
        request_id: str,
        result: JobResult | None = None,
        error: Exception | None = None,
    ) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
            if pending is not None:
                pending.worker.in_flight -= 1
        if pending is None:
            logger.debug("Ignoring late response for %s", request_id)
            return

        pending.timer.cancel()
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)  # type: ignore[arg-type]
