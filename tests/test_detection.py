"""Tests for detector output normalization."""

from __future__ import annotations

import math
from unittest.mock import MagicMock

import numpy as np
import pytest

from facecrop.detection import (
    RawDetection,
    build_face_records,
    clamp_box,
    detect_faces,
    normalize_detections,
    to_face_box,
)
from facecrop.imaging.raster import RasterBuffer
from facecrop.models import FaceBox, QualityLevel


class TestToFaceBox:
    def test_pixel_coordinates_pass_through(self) -> None:
        box = to_face_box(RawDetection(x=10, y=20, width=30, height=40, score=0.9), 200, 100)
        assert box == FaceBox(x=10, y=20, width=30, height=40, confidence=0.9)

    def test_normalized_coordinates_are_scaled(self) -> None:
        box = to_face_box(RawDetection(x=0.25, y=0.5, width=0.5, height=0.25), 200, 100)
        assert box is not None
        assert (box.x, box.y, box.width, box.height) == (50, 50, 100, 25)

    def test_box_is_clamped_to_raster(self) -> None:
        box = to_face_box(RawDetection(x=-20, y=90, width=100, height=50), 200, 100)
        assert box is not None
        assert (box.x, box.y, box.width, box.height) == (0, 90, 100, 10)

    def test_non_finite_detection_is_dropped(self) -> None:
        assert to_face_box(RawDetection(x=math.nan, y=0, width=10, height=10), 100, 100) is None

    def test_confidence_is_clamped(self) -> None:
        box = to_face_box(RawDetection(x=10, y=10, width=20, height=20, score=1.7), 100, 100)
        assert box is not None
        assert box.confidence == 1.0

    def test_landmarks_are_kept(self) -> None:
        det = RawDetection(x=10, y=10, width=20, height=20, landmarks=((0.1, 0.2), (0.3, 0.4)))
        box = to_face_box(det, 100, 100)
        assert box is not None
        assert box.landmarks == ((0.1, 0.2), (0.3, 0.4))


class TestClampBox:
    def test_minimum_size_is_one_pixel(self) -> None:
        box = clamp_box(FaceBox(x=5, y=5, width=0.2, height=0.1), 100, 100)
        assert box is not None
        assert (box.width, box.height) == (1, 1)

    def test_box_at_far_edge_has_no_room(self) -> None:
        assert clamp_box(FaceBox(x=100, y=10, width=5, height=5), 100, 100) is None


class TestRecords:
    def test_ids_and_indices_follow_detection_order(self) -> None:
        boxes = normalize_detections(
            [RawDetection(x=1, y=1, width=10, height=10), RawDetection(x=50, y=50, width=10, height=10)],
            100,
            100,
        )
        records = build_face_records(boxes)
        assert [(r.id, r.index, r.selected) for r in records] == [("face_0", 1, True), ("face_1", 2, True)]
        assert all(r.quality is None for r in records)

    def test_quality_is_scored_when_raster_given(self) -> None:
        raster = RasterBuffer.blank(64, 64)
        records = build_face_records([FaceBox(x=0, y=0, width=32, height=32)], raster)
        assert records[0].quality is not None
        assert records[0].quality.level is QualityLevel.LOW

    def test_invalid_detections_are_dropped(self) -> None:
        boxes = normalize_detections(
            [RawDetection(x=math.inf, y=0, width=1, height=1), RawDetection(x=5, y=5, width=5, height=5)],
            100,
            100,
        )
        assert len(boxes) == 1


class TestDetectFaces:
    def test_calls_detector_and_normalizes(self) -> None:
        detector = MagicMock()
        detector.detect.return_value = [RawDetection(x=0.1, y=0.1, width=0.5, height=0.5, score=0.8)]
        raster = RasterBuffer.from_array(np.zeros((40, 80, 3), dtype=np.uint8))

        records = detect_faces(detector, raster)

        detector.detect.assert_called_once_with(raster)
        assert records[0].box.width == pytest.approx(40)
        assert records[0].box.height == pytest.approx(20)
        assert records[0].quality is not None
