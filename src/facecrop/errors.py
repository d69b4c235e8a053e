"""Typed error kinds raised by the crop pipeline and the batch scheduler."""

from __future__ import annotations


class FaceCropError(Exception):
    """Base class for all pipeline errors.

    ``retryable`` tells the scheduler whether another attempt may succeed.
    """

    retryable: bool = False


class DetectionUnavailable(FaceCropError):
    """No face detector is ready and the caller supplied no faces."""


class DegenerateGeometry(FaceCropError):
    """A face box or crop window has zero or negative size."""


class BufferAcquisitionFailure(FaceCropError):
    """A working raster could not be allocated."""

    retryable = True


class WorkerTimeout(FaceCropError, TimeoutError):
    """A dispatched request got no response before its watchdog fired."""

    retryable = True


class WorkerCrash(FaceCropError):
    """A background execution context terminated with requests in flight."""

    retryable = True


class RasterReleasedError(FaceCropError):
    """A raster was read after its pixels were released."""


class ServerBusy(FaceCropError):
    """Every request slot stayed taken for the whole queueing window."""

    retryable = True
