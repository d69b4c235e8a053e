"""Turn face records into encoded, named, enhanced crops."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING

from facecrop.errors import DegenerateGeometry
from facecrop.imaging import codec
from facecrop.imaging.enhance import EnhancementPipeline
from facecrop.imaging.geometry import CropRect, compute_crop
from facecrop.models import CropResult, OutputFormat

if TYPE_CHECKING:
    from collections.abc import Iterable

    from facecrop.imaging.raster import RasterBuffer
    from facecrop.models import CropSettings, FaceBox, FaceRecord

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "face_{original}_{index}"
_EXTENSION_RE = re.compile(r"\.[^/.]+$")


def render_filename(
    template: str,
    original: str,
    index: int,
    width: int,
    height: int,
    output_format: OutputFormat,
    now: datetime | None = None,
) -> str:
    """Expand a naming template.

    Supported placeholders: ``{original}`` (source name without extension),
    ``{index}``, ``{timestamp}``, ``{width}`` and ``{height}``. The format's
    file extension is appended.
    """
    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    name = (
        (template or DEFAULT_TEMPLATE)
        .replace("{original}", _EXTENSION_RE.sub("", original))
        .replace("{index}", str(index))
        .replace("{timestamp}", stamp)
        .replace("{width}", str(width))
        .replace("{height}", str(height))
    )
    return f"{name}.{output_format.extension}"


def _foreground_points(
    box: FaceBox,
    rect: CropRect,
    raster: RasterBuffer,
    settings: CropSettings,
) -> list[tuple[float, float]]:
    """Map normalized landmarks into output pixel coordinates."""
    if not box.landmarks:
        return []
    sx = settings.output_width / rect.width
    sy = settings.output_height / rect.height
    return [((lx * raster.width - rect.x) * sx, (ly * raster.height - rect.y) * sy) for lx, ly in box.landmarks]


def render_crop(raster: RasterBuffer, box: FaceBox, settings: CropSettings) -> RasterBuffer:
    """Crop, resample and enhance one face without encoding it.

    Raises:
        DegenerateGeometry: If the face or the resulting window has no area.
    """
    if box.height <= 0 or box.width <= 0:
        raise DegenerateGeometry(f"Face box has no area: {box.width}x{box.height}")

    rect = compute_crop(box, settings, raster.width, raster.height)
    window = rect.clipped(raster.width, raster.height)
    if window.width <= 0 or window.height <= 0:
        raise DegenerateGeometry(f"Crop window has no area: {window}")

    cropped = codec.resample_window(raster, rect, settings.output_width, settings.output_height)
    pipeline = EnhancementPipeline(settings.enhancement)
    return pipeline.apply(cropped, _foreground_points(box, rect, raster, settings) or None)


def crop_face(
    raster: RasterBuffer,
    face: FaceRecord,
    settings: CropSettings,
    source_name: str,
    now: datetime | None = None,
) -> CropResult:
    """Produce the encoded crop of a single face."""
    output = render_crop(raster, face.box, settings)
    fmt = settings.output_format
    quality = settings.jpeg_quality if fmt is not OutputFormat.PNG else 100
    return CropResult(
        data=codec.encode_raster(output, fmt, quality),
        format=fmt,
        face_id=face.id,
        face_index=face.index,
        source_name=source_name,
        filename=render_filename(
            settings.naming_template,
            source_name,
            face.index,
            settings.output_width,
            settings.output_height,
            fmt,
            now,
        ),
        width=output.width,
        height=output.height,
    )


def crop_faces(
    raster: RasterBuffer,
    faces: Iterable[FaceRecord],
    settings: CropSettings,
    source_name: str,
    now: datetime | None = None,
) -> list[CropResult]:
    """Crop every selected face; degenerate faces are skipped."""
    results = []
    for face in faces:
        if not face.selected:
            continue
        try:
            results.append(crop_face(raster, face, settings, source_name, now))
        except DegenerateGeometry as exc:
            logger.warning("Skipping %s of %s: %s", face.id, source_name, exc)
    return results
