"""RGBA raster buffer shared by every stage of the crop pipeline.

A ``RasterBuffer`` owns an ``(height, width, 4)`` uint8 array. Ownership can be
moved to another execution context with :meth:`RasterBuffer.transfer`, after
which the original handle refuses reads, and the pixels can be dropped with
:meth:`RasterBuffer.release` once an image is no longer needed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from facecrop.errors import BufferAcquisitionFailure, RasterReleasedError

if TYPE_CHECKING:
    from numpy.typing import NDArray


def _allocate(shape: tuple[int, ...], fill: int = 0) -> NDArray[np.uint8]:
    try:
        return np.full(shape, fill, dtype=np.uint8)
    except (MemoryError, ValueError) as exc:
        raise BufferAcquisitionFailure(f"Cannot allocate raster of shape {shape}") from exc


class RasterBuffer:
    """A width x height grid of RGBA samples."""

    __slots__ = ("_pixels", "_width", "_height", "_released_reason")

    def __init__(self, pixels: NDArray[np.uint8]) -> None:
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"Expected an HxWx4 array, got shape {pixels.shape}")
        if pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 samples, got {pixels.dtype}")
        self._pixels: NDArray[np.uint8] | None = pixels
        self._height, self._width = int(pixels.shape[0]), int(pixels.shape[1])
        self._released_reason: str | None = None

    # -- Construction -------------------------------------------------------

    @classmethod
    def blank(cls, width: int, height: int, fill: tuple[int, int, int, int] = (0, 0, 0, 255)) -> RasterBuffer:
        """Allocate a raster filled with a single RGBA value."""
        if width <= 0 or height <= 0:
            raise BufferAcquisitionFailure(f"Invalid raster size {width}x{height}")
        pixels = _allocate((height, width, 4))
        pixels[...] = np.asarray(fill, dtype=np.uint8)
        return cls(pixels)

    @classmethod
    def from_array(cls, array: NDArray[np.generic]) -> RasterBuffer:
        """Copy a grayscale, RGB or RGBA array into a new raster."""
        data = np.asarray(array)
        if data.ndim == 2:
            data = np.repeat(data[:, :, None], 3, axis=2)
        if data.ndim != 3 or data.shape[2] not in (3, 4):
            raise ValueError(f"Unsupported array shape {data.shape}")
        pixels = _allocate((data.shape[0], data.shape[1], 4), fill=255)
        pixels[:, :, : data.shape[2]] = np.clip(data, 0, 255).astype(np.uint8)
        return cls(pixels)

    # -- Accessors ----------------------------------------------------------

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def size(self) -> tuple[int, int]:
        """Return ``(width, height)``."""
        return self._width, self._height

    @property
    def released(self) -> bool:
        return self._pixels is None

    @property
    def pixels(self) -> NDArray[np.uint8]:
        """The underlying array. Raises once the buffer was released or transferred."""
        if self._pixels is None:
            raise RasterReleasedError(f"Raster {self._width}x{self._height} was {self._released_reason}")
        return self._pixels

    def tobytes(self) -> bytes:
        return self.pixels.tobytes()

    # -- Ownership ----------------------------------------------------------

    def copy(self) -> RasterBuffer:
        """Deep copy of the pixels."""
        try:
            return RasterBuffer(self.pixels.copy())
        except MemoryError as exc:
            raise BufferAcquisitionFailure("Cannot allocate raster copy") from exc

    def region(self, x: int, y: int, width: int, height: int) -> RasterBuffer:
        """Copy a sub-rectangle, clamped to the raster bounds.

        The result may be empty (zero width or height) when the rectangle
        falls outside the raster.
        """
        x0 = max(0, min(int(x), self._width))
        y0 = max(0, min(int(y), self._height))
        x1 = max(x0, min(int(x) + int(width), self._width))
        y1 = max(y0, min(int(y) + int(height), self._height))
        return RasterBuffer(self.pixels[y0:y1, x0:x1].copy())

    def transfer(self) -> RasterBuffer:
        """Move ownership of the pixels to a new handle without copying."""
        moved = RasterBuffer(self.pixels)
        self._pixels = None
        self._released_reason = "transferred"
        return moved

    def release(self) -> None:
        """Drop the pixels. Later reads raise :class:`RasterReleasedError`."""
        self._pixels = None
        self._released_reason = "released"

    def __repr__(self) -> str:
        state = self._released_reason or "live"
        return f"RasterBuffer({self._width}x{self._height}, {state})"
