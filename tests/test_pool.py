"""Tests for the request processing pool."""

from __future__ import annotations

import asyncio
import io
import threading
from unittest.mock import patch

import pytest
from PIL import Image

from facecrop.batch import pool as pool_module
from facecrop.batch.pool import ProcessingPool
from facecrop.config import Settings
from facecrop.detection import RawDetection
from facecrop.errors import DetectionUnavailable, ServerBusy
from facecrop.imaging.raster import RasterBuffer
from facecrop.models import CropSettings


class BlockingDetector:
    """Finds one face, but only once ``release`` is set."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.threads: list[str] = []

    def detect(self, raster: RasterBuffer) -> list[RawDetection]:
        self.threads.append(threading.current_thread().name)
        self.release.wait(5)
        return [RawDetection(x=0.25, y=0.25, width=0.25, height=0.3, score=0.9)]


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {"max_concurrent": 1}
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _png(width: int = 120, height: int = 100) -> bytes:
    image = Image.new("RGB", (width, height), (170, 130, 110))
    for x in range(0, width, 3):
        image.putpixel((x, height // 2), (10, 10, 10))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


_FACE = [RawDetection(x=30, y=20, width=40, height=50)]


class TestCrop:
    async def test_crops_supplied_faces(self) -> None:
        pool = ProcessingPool(_make_settings())
        try:
            result = await pool.crop(_png(), "me.png", _FACE, CropSettings(output_width=64, output_height=80))
        finally:
            pool.shutdown()
        assert [face.index for face in result.faces] == [1]
        assert result.faces[0].box.x == pytest.approx(30)
        assert [(r.width, r.height) for r in result.results] == [(64, 80)]
        assert result.results[0].filename.startswith("face_me_1.")

    async def test_needs_faces_or_a_detector(self) -> None:
        pool = ProcessingPool(_make_settings())
        try:
            assert pool.detector_available is False
            with pytest.raises(DetectionUnavailable):
                await pool.crop(_png(), "me.png", None, CropSettings())
        finally:
            pool.shutdown()

    async def test_detects_on_a_request_thread(self) -> None:
        detector = BlockingDetector()
        detector.release.set()
        pool = ProcessingPool(_make_settings(), detector=detector)
        try:
            assert pool.detector_available is True
            result = await pool.crop(_png(), "me.png", None, CropSettings())
        finally:
            pool.shutdown()
        assert len(result.results) == 1
        assert detector.threads[0].startswith("facecrop-request")

    async def test_undecodable_upload_raises_value_error(self) -> None:
        pool = ProcessingPool(_make_settings())
        try:
            with pytest.raises(ValueError):
                await pool.crop(b"not an image", "me.png", _FACE, CropSettings())
            assert pool.active_count == 0
        finally:
            pool.shutdown()


class TestScore:
    async def test_scores_image_and_supplied_faces(self) -> None:
        pool = ProcessingPool(_make_settings())
        try:
            overall, faces = await pool.score(_png(), _FACE)
            bare, no_faces = await pool.score(_png(), None)
        finally:
            pool.shutdown()
        assert overall.score > 0
        assert bare.score == pytest.approx(overall.score)
        assert len(faces) == 1
        assert faces[0].quality is not None
        assert no_faces == []


class TestBusy:
    async def test_full_pool_raises_server_busy(self) -> None:
        detector = BlockingDetector()
        pool = ProcessingPool(_make_settings(), detector=detector)
        try:
            busy = asyncio.create_task(pool.crop(_png(), "slow.png", None, CropSettings()))
            await asyncio.sleep(0.05)
            assert pool.active_count == 1

            with patch.object(pool_module, "SEMAPHORE_TIMEOUT_SECONDS", 0.05), pytest.raises(ServerBusy):
                await pool.score(_png(), None)
            assert pool.queue_depth == 0

            detector.release.set()
            assert len((await busy).results) == 1
        finally:
            detector.release.set()
            pool.shutdown()
        assert pool.active_count == 0
