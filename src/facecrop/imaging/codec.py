"""Pillow-backed decode, encode and resampling of rasters."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from facecrop.errors import BufferAcquisitionFailure
from facecrop.imaging.raster import RasterBuffer
from facecrop.models import OutputFormat

if TYPE_CHECKING:
    from facecrop.imaging.geometry import CropRect

_PIL_FORMATS: dict[OutputFormat, str] = {
    OutputFormat.PNG: "PNG",
    OutputFormat.JPEG: "JPEG",
    OutputFormat.WEBP: "WEBP",
}


def to_image(raster: RasterBuffer) -> Image.Image:
    return Image.fromarray(raster.pixels)


def from_image(image: Image.Image) -> RasterBuffer:
    try:
        pixels = np.array(image.convert("RGBA"), dtype=np.uint8)
    except MemoryError as exc:
        raise BufferAcquisitionFailure("Cannot allocate decoded raster") from exc
    return RasterBuffer(pixels)


def decode_image(data: bytes, max_pixels: int | None = None) -> RasterBuffer:
    """Decode image bytes into an RGBA raster, honouring EXIF orientation.

    Raises:
        ValueError: If the bytes are not a supported image or exceed ``max_pixels``.
    """
    try:
        image = Image.open(io.BytesIO(data))
    except UnidentifiedImageError as exc:
        raise ValueError("Unable to decode image") from exc

    width, height = image.size
    if max_pixels is not None and width * height > max_pixels:
        raise ValueError(f"Image of {width}x{height} exceeds the {max_pixels} pixel limit")

    image = ImageOps.exif_transpose(image)
    return from_image(image)


def encode_raster(raster: RasterBuffer, output_format: OutputFormat, quality: int = 92) -> bytes:
    """Encode a raster; JPEG output drops the alpha channel."""
    image = to_image(raster)
    buffer = io.BytesIO()
    if output_format is OutputFormat.JPEG:
        image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    elif output_format is OutputFormat.WEBP:
        image.save(buffer, format="WEBP", quality=quality)
    else:
        image.save(buffer, format=_PIL_FORMATS[output_format])
    return buffer.getvalue()


def resize_raster(raster: RasterBuffer, width: int, height: int) -> RasterBuffer:
    image = to_image(raster).resize((width, height), Image.Resampling.BILINEAR)
    return from_image(image)


def resample_window(raster: RasterBuffer, rect: CropRect, width: int, height: int) -> RasterBuffer:
    """Resample a source-space window to exactly ``width`` x ``height`` pixels.

    The window is trimmed to the raster first, so an oversized crop never
    reads outside the source; the part of the output that maps outside the
    source stays transparent.
    """
    window = rect.clipped(raster.width, raster.height)
    box = (window.x, window.y, window.x + window.width, window.y + window.height)
    if window == rect:
        return from_image(to_image(raster).resize((width, height), Image.Resampling.BICUBIC, box=box))

    sx, sy = width / rect.width, height / rect.height
    left = min(width - 1, round((window.x - rect.x) * sx))
    top = min(height - 1, round((window.y - rect.y) * sy))
    right = min(width, max(left + 1, round((window.x + window.width - rect.x) * sx)))
    bottom = min(height, max(top + 1, round((window.y + window.height - rect.y) * sy)))
    part = to_image(raster).resize((right - left, bottom - top), Image.Resampling.BICUBIC, box=box)
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    canvas.paste(part, (left, top))
    return from_image(canvas)
