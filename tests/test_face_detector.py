"""
Tests for the MediaPipe face detector helpers

The real landmarker needs the face_landmarker.task model file; these tests
cover construction without it, detection against a scripted landmarker and
the pure geometry helpers.
"""
import math
import threading
import time
from types import SimpleNamespace

import numpy as np
import pytest

from liveverify.models.data_models import BoundingBox
from liveverify.services.face_detector import (
    FACE_OVAL,
    LEFT_EYE,
    MediaPipeFaceDetector,
    bounding_box_from_points,
    landmarks_from_mesh,
    rotation_to_euler,
    sharpness_quality,
)


class TestMediaPipeFaceDetector:
    """Detector behaviour without a model file"""

    def test_initialization_without_model(self):
        detector = MediaPipeFaceDetector()

        assert detector.model_path is None
        assert detector.face_landmarker is None

    def test_missing_model_file(self, tmp_path):
        detector = MediaPipeFaceDetector(model_path=str(tmp_path / "missing.task"))

        assert detector.face_landmarker is None
        assert detector.detect(np.zeros((64, 64, 3), dtype=np.uint8)) is None

    def test_detect_empty_image(self):
        detector = MediaPipeFaceDetector()

        assert detector.detect(np.zeros((0, 0, 3), dtype=np.uint8)) is None
        assert detector.detect(None) is None

    def test_preprocess_frame_bgr(self):
        detector = MediaPipeFaceDetector()
        frame = np.zeros((4, 4, 3), dtype=np.uint8)
        frame[..., 0] = 255  # blue in BGR

        rgb = detector.preprocess_frame(frame)

        assert rgb.shape == (4, 4, 3)
        assert rgb[0, 0, 2] == 255
        assert rgb[0, 0, 0] == 0

    def test_preprocess_frame_grayscale_and_bgra(self):
        detector = MediaPipeFaceDetector()

        assert detector.preprocess_frame(np.zeros((4, 4), dtype=np.uint8)).shape == (4, 4, 3)
        assert detector.preprocess_frame(np.zeros((4, 4, 4), dtype=np.uint8)).shape == (4, 4, 3)

    def test_close_without_landmarker(self):
        detector = MediaPipeFaceDetector()
        detector.close()
        assert detector.face_landmarker is None


def _mesh(center_x, center_y, radius, count=478):
    """Landmarks on a circle, in MediaPipe's top-left-origin image coordinates"""
    angles = np.linspace(0.0, 2.0 * math.pi, count, endpoint=False)
    return [
        SimpleNamespace(x=center_x + radius * math.cos(a), y=center_y + radius * math.sin(a))
        for a in angles
    ]


def _yaw_matrix(theta):
    matrix = np.eye(4)
    matrix[0, 0] = math.cos(theta)
    matrix[0, 2] = math.sin(theta)
    matrix[2, 0] = -math.sin(theta)
    matrix[2, 2] = math.cos(theta)
    return matrix


class ScriptedLandmarker:
    """Returns a fixed FaceLandmarker result and records the images it saw"""

    def __init__(self, face_landmarks, matrixes):
        self.result = SimpleNamespace(
            face_landmarks=face_landmarks,
            facial_transformation_matrixes=matrixes,
        )
        self.images = []

    def detect(self, mp_image):
        self.images.append(mp_image)
        return self.result


class TestDetectWithLandmarker:
    """detect() against a scripted landmarker result"""

    def setup_method(self):
        self.detector = MediaPipeFaceDetector()
        self.image = np.zeros((64, 64, 3), dtype=np.uint8)

    def test_largest_face_selected(self):
        small = _mesh(0.2, 0.2, 0.05)
        large = _mesh(0.5, 0.3, 0.2)
        self.detector._face_landmarker = ScriptedLandmarker(
            [small, large], [np.eye(4), _yaw_matrix(0.3)]
        )

        observation = self.detector.detect(self.image)

        box = observation.bounding_box
        assert box.width == pytest.approx(0.4, abs=1e-3)
        assert box.height == pytest.approx(0.4, abs=1e-3)
        assert box.mid_x == pytest.approx(0.5, abs=1e-3)
        # y is flipped to a bottom-left origin
        assert box.mid_y == pytest.approx(0.7, abs=1e-3)
        assert observation.yaw == pytest.approx(0.3)
        assert observation.pitch == pytest.approx(0.0)
        assert observation.roll == pytest.approx(0.0)
        assert observation.quality == 0.0
        assert len(observation.landmarks.left_eye) == 6
        assert len(self.detector._face_landmarker.images) == 1

    def test_missing_transformation_matrix(self):
        self.detector._face_landmarker = ScriptedLandmarker([_mesh(0.5, 0.5, 0.2)], [])

        observation = self.detector.detect(self.image)

        assert observation.yaw == 0.0
        assert observation.pitch == 0.0
        assert observation.roll == 0.0

    def test_no_faces(self):
        self.detector._face_landmarker = ScriptedLandmarker([], [])

        assert self.detector.detect(self.image) is None

    def test_landmarker_created_once_across_threads(self, monkeypatch):
        created = []

        def slow_create():
            time.sleep(0.05)
            landmarker = ScriptedLandmarker([], [])
            created.append(landmarker)
            return landmarker

        monkeypatch.setattr(self.detector, "_create_landmarker", slow_create)
        seen = []
        threads = [
            threading.Thread(target=lambda: seen.append(self.detector.face_landmarker))
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(created) == 1
        assert all(landmarker is created[0] for landmarker in seen)


class TestRotationToEuler:

    def test_identity(self):
        yaw, pitch, roll = rotation_to_euler(np.eye(3))

        assert yaw == pytest.approx(0.0)
        assert pitch == pytest.approx(0.0)
        assert roll == pytest.approx(0.0)

    def test_pure_yaw(self):
        theta = 0.4
        rotation = np.array([
            [math.cos(theta), 0.0, math.sin(theta)],
            [0.0, 1.0, 0.0],
            [-math.sin(theta), 0.0, math.cos(theta)],
        ])

        yaw, pitch, roll = rotation_to_euler(rotation)

        assert yaw == pytest.approx(theta)
        assert pitch == pytest.approx(0.0)
        assert roll == pytest.approx(0.0)

    def test_pure_roll(self):
        theta = -0.2
        rotation = np.array([
            [math.cos(theta), -math.sin(theta), 0.0],
            [math.sin(theta), math.cos(theta), 0.0],
            [0.0, 0.0, 1.0],
        ])

        yaw, pitch, roll = rotation_to_euler(rotation)

        assert roll == pytest.approx(theta)
        assert yaw == pytest.approx(0.0)


class TestGeometryHelpers:

    def test_bounding_box_from_points(self):
        points = np.array([[0.2, 0.3], [0.6, 0.9], [0.4, 0.5]])

        box = bounding_box_from_points(points)

        assert box.x == pytest.approx(0.2)
        assert box.y == pytest.approx(0.3)
        assert box.width == pytest.approx(0.4)
        assert box.height == pytest.approx(0.6)

    def test_bounding_box_clipped_to_frame(self):
        box = bounding_box_from_points(np.array([[-0.1, 0.5], [1.2, 0.7]]))

        assert box.x == 0.0
        assert box.width == pytest.approx(1.0)

    def test_landmarks_from_mesh(self):
        points = np.random.default_rng(0).random((478, 2))

        landmarks = landmarks_from_mesh(points)

        assert len(landmarks.left_eye) == 6
        assert landmarks.left_eye[0] == (points[LEFT_EYE[0], 0], points[LEFT_EYE[0], 1])
        assert len(landmarks.face_contour) == len(FACE_OVAL)

    def test_sharpness_quality_range(self):
        box = BoundingBox(0.25, 0.25, 0.5, 0.5)
        flat = np.full((64, 64, 3), 128, dtype=np.uint8)
        noisy = np.random.default_rng(1).integers(0, 255, (64, 64, 3), dtype=np.uint8)

        assert sharpness_quality(flat, box) == 0.0
        assert sharpness_quality(noisy, box) == pytest.approx(1.0)

    def test_sharpness_quality_empty_crop(self):
        image = np.zeros((64, 64, 3), dtype=np.uint8)
        assert sharpness_quality(image, BoundingBox(0.5, 0.5, 0.0, 0.0)) == 0.0
