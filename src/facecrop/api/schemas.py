"""Pydantic request/response schemas for the FaceCrop API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class FaceBoxIn(BaseModel):
    """A face supplied by the caller, in pixels or as fractions of the image size."""

    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    landmarks: list[tuple[float, float]] = Field(
        default_factory=list,
        description="Landmark points normalized to the image size (0.0-1.0)",
    )


class FaceOut(BaseModel):
    """A face as used for cropping, in source pixel space."""

    id: str
    index: int = Field(description="1-based position in detection order")
    x: float
    y: float
    width: float
    height: float
    confidence: float | None = None
    quality_score: float | None = None
    quality_level: str | None = Field(default=None, description="'high', 'medium', 'low' or 'unknown'")


class CropOut(BaseModel):
    """One encoded crop."""

    face_id: str
    face_index: int
    filename: str
    mime_type: str
    width: int
    height: int
    data: str = Field(description="Base64-encoded image bytes")


class CropResponse(BaseModel):
    """Response for the crop endpoint."""

    faces: list[FaceOut]
    crops: list[CropOut]


class QualityResponse(BaseModel):
    """Blur scores for the supplied faces, or for the whole image when none are given."""

    image_score: float
    image_level: str
    faces: list[FaceOut]


class PresetInfo(BaseModel):
    name: str
    width: int
    height: int


class PresetsResponse(BaseModel):
    """Response for the presets listing endpoint."""

    presets: list[PresetInfo]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    detector_available: bool
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
