"""API route definitions."""

from __future__ import annotations

import base64
import json
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status
from pydantic import TypeAdapter, ValidationError

from facecrop.api.middleware import verify_api_key
from facecrop.api.schemas import (
    CropOut,
    CropResponse,
    ErrorResponse,
    FaceBoxIn,
    FaceOut,
    HealthResponse,
    PresetInfo,
    PresetsResponse,
    QualityResponse,
)
from facecrop.detection import RawDetection
from facecrop.errors import DetectionUnavailable, ServerBusy
from facecrop.models import SIZE_PRESETS, CropSettings

if TYPE_CHECKING:
    from facecrop.batch.pool import ProcessingPool
    from facecrop.config import Settings
    from facecrop.models import CropResult, FaceRecord, Quality

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_faces_adapter = TypeAdapter(list[FaceBoxIn])

# Spelled as numbers: starlette renamed both constants.
_PAYLOAD_TOO_LARGE = 413
_UNPROCESSABLE = 422


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_pool(request: Request) -> ProcessingPool:
    pool: ProcessingPool = request.app.state.processing_pool
    return pool


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=_PAYLOAD_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
    return data


def _parse_faces(raw: str | None) -> list[RawDetection] | None:
    if not raw:
        return None
    try:
        boxes = _faces_adapter.validate_json(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=_UNPROCESSABLE, detail=f"Invalid faces: {exc}") from exc
    return [
        RawDetection(
            x=box.x,
            y=box.y,
            width=box.width,
            height=box.height,
            score=box.confidence,
            landmarks=tuple(box.landmarks),
        )
        for box in boxes
    ]


def _parse_crop_settings(raw: str | None, preset: str | None) -> CropSettings:
    try:
        overrides = json.loads(raw) if raw else {}
        if not isinstance(overrides, dict):
            raise ValueError("settings must be a JSON object")
        if preset is None:
            return CropSettings.model_validate(overrides)
        return CropSettings.from_preset(preset).updated(**overrides)
    except KeyError as exc:
        raise HTTPException(status_code=_UNPROCESSABLE, detail=str(exc.args[0])) from exc
    except ValueError as exc:
        # pydantic.ValidationError and json.JSONDecodeError are both ValueErrors
        raise HTTPException(status_code=_UNPROCESSABLE, detail=f"Invalid settings: {exc}") from exc


def _face_out(face: FaceRecord) -> FaceOut:
    face_quality: Quality | None = face.quality
    return FaceOut(
        id=face.id,
        index=face.index,
        x=face.box.x,
        y=face.box.y,
        width=face.box.width,
        height=face.box.height,
        confidence=face.box.confidence,
        quality_score=face_quality.score if face_quality else None,
        quality_level=str(face_quality.level) if face_quality else None,
    )


def _crop_out(crop: CropResult) -> CropOut:
    return CropOut(
        face_id=crop.face_id,
        face_index=crop.face_index,
        filename=crop.filename,
        mime_type=crop.mime_type,
        width=crop.width,
        height=crop.height,
        data=base64.b64encode(crop.data).decode("ascii"),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    _PAYLOAD_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


@router.post(
    "/crop",
    response_model=CropResponse,
    responses=_ERROR_RESPONSES,
    summary="Crop faces from an image",
)
async def crop(
    request: Request,
    file: UploadFile,
    faces: Annotated[str | None, Form(description="JSON list of face boxes")] = None,
    settings: Annotated[str | None, Form(description="JSON crop settings")] = None,
    preset: Annotated[str | None, Form(description="Size preset name")] = None,
) -> CropResponse:
    """Crop every supplied (or detected) face of an uploaded image.

    Faces may be given in pixels or as fractions of the image size. Without
    faces the configured detector is used; if there is none the request fails
    with 503.
    """
    app_settings = _get_settings(request)
    detections = _parse_faces(faces)
    crop_settings = _parse_crop_settings(settings, preset)
    data = await _read_upload(file, app_settings)
    source_name = file.filename or "image"

    pool = _get_pool(request)
    try:
        result = await pool.crop(data, source_name, detections, crop_settings)
    except (DetectionUnavailable, ServerBusy) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.info("Cropped %d face(s) from %s", len(result.results), source_name)
    return CropResponse(
        faces=[_face_out(face) for face in result.faces],
        crops=[_crop_out(crop) for crop in result.results],
    )


@router.post(
    "/quality",
    response_model=QualityResponse,
    responses=_ERROR_RESPONSES,
    summary="Score image and face sharpness",
)
async def image_quality(
    request: Request,
    file: UploadFile,
    faces: Annotated[str | None, Form(description="JSON list of face boxes")] = None,
) -> QualityResponse:
    """Return the blur score of the whole image and of each supplied face."""
    app_settings = _get_settings(request)
    detections = _parse_faces(faces)
    data = await _read_upload(file, app_settings)

    pool = _get_pool(request)
    try:
        overall, face_records = await pool.score(data, detections)
    except ServerBusy as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return QualityResponse(
        image_score=overall.score,
        image_level=str(overall.level),
        faces=[_face_out(face) for face in face_records],
    )


@router.get(
    "/presets",
    response_model=PresetsResponse,
    summary="List output size presets",
)
async def list_presets() -> PresetsResponse:
    return PresetsResponse(
        presets=[PresetInfo(name=name, width=width, height=height) for name, (width, height) in SIZE_PRESETS.items()]
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_pool(request)
    return HealthResponse(
        status="ok",
        detector_available=pool.detector_available,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
