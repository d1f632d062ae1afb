"""
Face detection and landmark extraction

Turns a BGR image (live frame or downloaded profile photo) into a
FaceObservation for the single largest face, using the MediaPipe
FaceLandmarker. Landmark coordinates are normalized with the origin at the
bottom-left of the image (y grows upwards).
"""
import logging
import math
import os
import threading
from typing import List, Optional, Sequence

import cv2
import mediapipe as mp
import numpy as np

from ..models.data_models import BoundingBox, FaceLandmarks, FaceObservation, Point

logger = logging.getLogger(__name__)

# MediaPipe FaceMesh topology.
# Eye groups follow the 6-point EAR order: corner, upper lid x2, corner, lower lid x2
LEFT_EYE = [33, 160, 158, 133, 153, 144]
RIGHT_EYE = [362, 385, 387, 263, 373, 380]
LEFT_EYEBROW = [70, 63, 105, 66, 107, 55, 65, 52, 53, 46]
RIGHT_EYEBROW = [300, 293, 334, 296, 336, 285, 295, 282, 283, 276]
NOSE = [168, 6, 197, 195, 5, 4, 1, 19, 94, 2, 98, 327, 129, 358]
OUTER_LIPS = [61, 185, 40, 39, 37, 0, 267, 269, 270, 409,
              291, 375, 321, 405, 314, 17, 84, 181, 91, 146]
INNER_LIPS = [78, 191, 80, 81, 82, 13, 312, 311, 310, 415,
              308, 324, 318, 402, 317, 14, 87, 178, 88, 95]
FACE_OVAL = [10, 338, 297, 332, 284, 251, 389, 356, 454, 323, 361, 288,
             397, 365, 379, 378, 400, 377, 152, 148, 176, 149, 150, 136,
             172, 58, 132, 93, 234, 127, 162, 21, 54, 103, 67, 109]


class FaceDetector:
    """Detects the largest face in an image"""

    def detect(self, image: np.ndarray) -> Optional[FaceObservation]:
        raise NotImplementedError


def rotation_to_euler(rotation: np.ndarray) -> tuple:
    """
    Convert a 3x3 head rotation matrix to (yaw, pitch, roll) in radians.

    Yaw is rotation about the vertical axis, pitch about the lateral axis and
    roll about the forward axis.
    """
    r = np.asarray(rotation, dtype=np.float64)
    pitch = math.atan2(r[2, 1], r[2, 2])
    yaw = math.atan2(-r[2, 0], math.sqrt(r[0, 0] ** 2 + r[1, 0] ** 2))
    roll = math.atan2(r[1, 0], r[0, 0])
    return yaw, pitch, roll


def sharpness_quality(image: np.ndarray, box: BoundingBox, normalizer: float = 100.0) -> float:
    """
    Capture quality in [0, 1] from the Laplacian variance of the face crop.

    Args:
        image: BGR image
        box: Face box in normalized bottom-left-origin coordinates
        normalizer: Variance that maps to a quality of 1.0
    """
    h, w = image.shape[:2]
    x1 = int(max(box.x, 0.0) * w)
    x2 = int(min(box.x + box.width, 1.0) * w)
    # Flip back to top-left origin for array indexing
    y1 = int(max(1.0 - (box.y + box.height), 0.0) * h)
    y2 = int(min(1.0 - box.y, 1.0) * h)

    crop = image[y1:y2, x1:x2]
    if crop.size == 0:
        return 0.0

    gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY) if crop.ndim == 3 else crop
    variance = cv2.Laplacian(gray, cv2.CV_64F).var()
    return float(np.clip(variance / normalizer, 0.0, 1.0))


def _group(points: np.ndarray, indices: Sequence[int]) -> List[Point]:
    return [(float(points[i, 0]), float(points[i, 1])) for i in indices if i < len(points)]


def landmarks_from_mesh(points: np.ndarray) -> FaceLandmarks:
    """
    Build landmark groups from FaceMesh points.

    Args:
        points: (N, 2) normalized points, bottom-left origin
    """
    return FaceLandmarks(
        left_eye=_group(points, LEFT_EYE),
        right_eye=_group(points, RIGHT_EYE),
        left_eyebrow=_group(points, LEFT_EYEBROW),
        right_eyebrow=_group(points, RIGHT_EYEBROW),
        nose=_group(points, NOSE),
        outer_lips=_group(points, OUTER_LIPS),
        inner_lips=_group(points, INNER_LIPS),
        face_contour=_group(points, FACE_OVAL),
    )


def bounding_box_from_points(points: np.ndarray) -> BoundingBox:
    xs = np.clip(points[:, 0], 0.0, 1.0)
    ys = np.clip(points[:, 1], 0.0, 1.0)
    return BoundingBox(
        x=float(xs.min()),
        y=float(ys.min()),
        width=float(xs.max() - xs.min()),
        height=float(ys.max() - ys.min()),
    )


class MediaPipeFaceDetector(FaceDetector):
    """
    FaceDetector backed by the MediaPipe FaceLandmarker task.

    The landmarker is created lazily on first use so the detector can be
    constructed (and its helpers tested) without the model file.
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        max_faces: int = 4,
        min_detection_confidence: float = 0.5,
        sharpness_normalizer: float = 100.0,
    ):
        """
        Args:
            model_path: Path to the face_landmarker.task model file
            max_faces: Faces to detect per image; the largest one is returned
            min_detection_confidence: Detection / presence threshold
            sharpness_normalizer: Laplacian variance mapped to quality 1.0
        """
        self.model_path = model_path
        self.max_faces = max_faces
        self.min_detection_confidence = min_detection_confidence
        self.sharpness_normalizer = sharpness_normalizer
        self._face_landmarker = None
        # FaceLandmarker instances are not safe to share across threads
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()

    @property
    def face_landmarker(self):
        """
        Lazily initialized MediaPipe FaceLandmarker, or None if the model
        cannot be loaded.
        """
        with self._init_lock:
            if self._face_landmarker is None:
                self._face_landmarker = self._create_landmarker()
        return self._face_landmarker

    def _create_landmarker(self):
        if self.model_path is None:
            logger.warning("Model path not provided. Face landmarker will not be available.")
            return None

        if not os.path.exists(self.model_path):
            logger.warning(f"MediaPipe model not found at {self.model_path}")
            return None

        try:
            base_options = mp.tasks.BaseOptions(model_asset_path=self.model_path)
            options = mp.tasks.vision.FaceLandmarkerOptions(
                base_options=base_options,
                running_mode=mp.tasks.vision.RunningMode.IMAGE,
                num_faces=self.max_faces,
                min_face_detection_confidence=self.min_detection_confidence,
                min_face_presence_confidence=self.min_detection_confidence,
                output_face_blendshapes=False,
                output_facial_transformation_matrixes=True,
            )
            return mp.tasks.vision.FaceLandmarker.create_from_options(options)
        except Exception as e:
            logger.error(f"Failed to initialize MediaPipe FaceLandmarker: {e}")
            return None

    def preprocess_frame(self, frame: np.ndarray) -> np.ndarray:
        """Convert a BGR (OpenCV) or grayscale frame to RGB for MediaPipe"""
        if frame.ndim == 2:
            return cv2.cvtColor(frame, cv2.COLOR_GRAY2RGB)
        if frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_BGRA2RGB)
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def detect(self, image: np.ndarray) -> Optional[FaceObservation]:
        """
        Detect the largest face in a BGR image.

        Returns:
            FaceObservation, or None if no face was found or the model is
            unavailable
        """
        if image is None or image.size == 0:
            return None

        landmarker = self.face_landmarker
        if landmarker is None:
            return None

        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=self.preprocess_frame(image))
        with self._lock:
            result = landmarker.detect(mp_image)

        if not result.face_landmarks:
            return None

        faces = []
        for i, face_landmarks in enumerate(result.face_landmarks):
            points = np.array([[lm.x, 1.0 - lm.y] for lm in face_landmarks], dtype=np.float64)
            faces.append((i, points, bounding_box_from_points(points)))

        # Largest face by bounding box area
        index, points, box = max(faces, key=lambda f: f[2].area)

        yaw = pitch = roll = 0.0
        matrixes = result.facial_transformation_matrixes
        if matrixes and index < len(matrixes):
            yaw, pitch, roll = rotation_to_euler(np.asarray(matrixes[index])[:3, :3])

        return FaceObservation(
            bounding_box=box,
            yaw=yaw,
            pitch=pitch,
            roll=roll,
            quality=sharpness_quality(image, box, self.sharpness_normalizer),
            landmarks=landmarks_from_mesh(points),
        )

    def close(self) -> None:
        with self._init_lock:
            if self._face_landmarker is not None:
                try:
                    self._face_landmarker.close()
                except Exception as e:
                    logger.warning(f"Error closing FaceLandmarker: {e}")
                self._face_landmarker = None
