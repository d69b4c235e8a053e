"""Domain types for face crops: boxes, records, settings, images and results."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from facecrop.errors import RasterReleasedError

if TYPE_CHECKING:
    from facecrop.imaging.raster import RasterBuffer


# ---------------------------------------------------------------------------
# Faces
# ---------------------------------------------------------------------------


class QualityLevel(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Quality:
    """Blur score of a face region (Laplacian variance)."""

    score: float
    level: QualityLevel

    @classmethod
    def unknown(cls) -> Quality:
        return cls(score=0.0, level=QualityLevel.UNKNOWN)


@dataclass(frozen=True)
class FaceBox:
    """Face bounding box in source pixel space.

    ``landmarks`` are ``(x, y)`` pairs normalized to ``[0, 1]`` of the source
    image, as delivered by the detector.
    """

    x: float
    y: float
    width: float
    height: float
    confidence: float | None = None
    landmarks: tuple[tuple[float, float], ...] = ()

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def scaled(self, fx: float, fy: float | None = None) -> FaceBox:
        """Return the box with x and width multiplied by ``fx``, y and height by ``fy``.

        ``fy`` defaults to ``fx``.
        """
        fy = fx if fy is None else fy
        return replace(
            self,
            x=self.x * fx,
            y=self.y * fy,
            width=self.width * fx,
            height=self.height * fy,
        )


@dataclass
class FaceRecord:
    """A detected face as tracked by the working set."""

    id: str
    box: FaceBox
    index: int
    selected: bool = True
    quality: Quality | None = None


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class PositioningMode(StrEnum):
    CENTER = "center"
    RULE_OF_THIRDS = "rule-of-thirds"
    CUSTOM = "custom"


class OutputFormat(StrEnum):
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return "jpg" if self is OutputFormat.JPEG else self.value


class EnhancementParams(BaseModel):
    """Per-kernel switches for the enhancement pipeline. Defaults disable every kernel."""

    model_config = ConfigDict(frozen=True)

    auto_color_correction: bool = False
    exposure: float = Field(default=0.0, ge=-2.0, le=2.0, description="Stops; 0 disables")
    contrast: float = Field(default=1.0, ge=0.5, le=2.0, description="Factor; 1 disables")
    sharpness: float = Field(default=0.0, ge=0.0, le=2.0)
    skin_smoothing: float = Field(default=0.0, ge=0.0, le=10.0)
    red_eye_removal: bool = False
    background_blur: float = Field(default=0.0, ge=0.0, le=10.0)


SIZE_PRESETS: dict[str, tuple[int, int]] = {
    "custom": (256, 256),
    "linkedin": (400, 400),
    "passport": (413, 531),
    "instagram": (1080, 1080),
    "idcard": (332, 498),
    "avatar": (512, 512),
    "headshot": (600, 800),
}


class CropSettings(BaseModel):
    """User-facing crop and output settings."""

    model_config = ConfigDict(frozen=True)

    output_width: int = Field(default=256, ge=64, le=2048)
    output_height: int = Field(default=256, ge=64, le=2048)
    face_height_pct: float = Field(default=70.0, gt=0.0, le=100.0)
    positioning_mode: PositioningMode = PositioningMode.CENTER
    vertical_offset: float = Field(default=0.0, ge=-100.0, le=100.0)
    horizontal_offset: float = Field(default=0.0, ge=-100.0, le=100.0)
    output_format: OutputFormat = OutputFormat.PNG
    jpeg_quality: int = Field(default=92, ge=1, le=100)
    naming_template: str = Field(default="face_{original}_{index}", min_length=1)
    enhancement: EnhancementParams = Field(default_factory=EnhancementParams)

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> CropSettings:
        """Build settings sized to one of :data:`SIZE_PRESETS`."""
        try:
            width, height = SIZE_PRESETS[name]
        except KeyError:
            raise KeyError(f"Unknown size preset: {name}") from None
        return cls(output_width=width, output_height=height, **overrides)

    def updated(self, **changes: Any) -> CropSettings:
        """Return a validated copy with ``changes`` applied."""
        return CropSettings.model_validate({**self.model_dump(), **changes})


# ---------------------------------------------------------------------------
# Images and results
# ---------------------------------------------------------------------------


class ImageStatus(StrEnum):
    LOADED = "loaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class CropResult:
    """One encoded face crop ready for download."""

    data: bytes
    format: OutputFormat
    face_id: str
    face_index: int
    source_name: str
    filename: str
    width: int
    height: int

    @property
    def mime_type(self) -> str:
        return self.format.mime_type


@dataclass
class ImageEntry:
    """A source image in the working set together with its faces and crops."""

    id: str
    source_name: str
    buffer: RasterBuffer | None
    faces: list[FaceRecord] = field(default_factory=list)
    results: list[CropResult] = field(default_factory=list)
    selected: bool = True
    processed: bool = False
    status: ImageStatus = ImageStatus.LOADED
    processed_at: float | None = None
    memory_cleaned_up: bool = False
    created_at: float = field(default_factory=time.monotonic)

    @property
    def raster(self) -> RasterBuffer:
        """The source pixels. Raises if the memory reclaimer already released them."""
        if self.buffer is None or self.buffer.released:
            raise RasterReleasedError(f"Source raster of {self.source_name!r} was released")
        return self.buffer

    @property
    def has_raster(self) -> bool:
        return self.buffer is not None and not self.buffer.released

    def release_raster(self) -> None:
        if self.buffer is not None:
            self.buffer.release()
        self.buffer = None
        self.memory_cleaned_up = True
