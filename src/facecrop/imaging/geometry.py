"""Crop geometry: map a face box and crop settings to a source-space window.

The window has the output aspect ratio and is sized so that the face box
height becomes ``face_height_pct`` percent of the output height once the
window is resampled to the output size.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from facecrop.models import PositioningMode

if TYPE_CHECKING:
    from facecrop.models import CropSettings, FaceBox

# Eye line sits at roughly 35% of the face box height from its top.
EYE_LINE_RATIO = 0.35


@dataclass(frozen=True)
class CropRect:
    """Crop window in source pixel space, plus the source-to-output scale."""

    x: float
    y: float
    width: float
    height: float
    scale: float = 1.0

    def clipped(self, source_w: int, source_h: int) -> CropRect:
        """Trim the window so it lies inside a ``source_w`` x ``source_h`` raster."""
        x0 = min(max(self.x, 0.0), float(source_w))
        y0 = min(max(self.y, 0.0), float(source_h))
        x1 = min(max(self.x + self.width, x0), float(source_w))
        y1 = min(max(self.y + self.height, y0), float(source_h))
        return CropRect(x=x0, y=y0, width=x1 - x0, height=y1 - y0, scale=self.scale)


def _clamp_origin(origin: float, crop_dim: float, source_dim: float) -> float:
    if crop_dim > source_dim:
        return 0.0
    return max(0.0, min(origin, source_dim - crop_dim))


def anchor_point(face: FaceBox, settings: CropSettings, crop_w: float, crop_h: float) -> tuple[float, float]:
    """Return the point of the source the crop window is centred on."""
    center_x, center_y = face.center
    h_offset = settings.horizontal_offset / 100
    v_offset = settings.vertical_offset / 100

    if settings.positioning_mode is PositioningMode.RULE_OF_THIRDS:
        eyes_y = face.y + face.height * EYE_LINE_RATIO
        return center_x + h_offset * crop_w / 2, eyes_y - crop_h / 3
    if settings.positioning_mode is PositioningMode.CUSTOM:
        return center_x + h_offset * crop_w / 2, center_y + v_offset * crop_h / 2
    return center_x, center_y


def compute_crop(face: FaceBox, settings: CropSettings, source_w: int, source_h: int) -> CropRect:
    """Compute the source crop window for one face.

    Callers must reject faces with ``height <= 0`` first.
    """
    scale = (settings.output_height * settings.face_height_pct / 100) / face.height
    crop_w = settings.output_width / scale
    crop_h = settings.output_height / scale

    anchor_x, anchor_y = anchor_point(face, settings, crop_w, crop_h)

    return CropRect(
        x=_clamp_origin(anchor_x - crop_w / 2, crop_w, source_w),
        y=_clamp_origin(anchor_y - crop_h / 2, crop_h, source_h),
        width=crop_w,
        height=crop_h,
        scale=scale,
    )
