"""
Identity signature extraction from facial landmarks

Maps the landmark groups of one face to a fixed-length geometric feature
vector. Every distance is expressed relative to the inter-pupillary distance
(IPD) or the face width, so the signature is approximately invariant to
camera distance and head size while still describing individual facial
proportions.

The order and count of features must not change between enrollment-time and
verification-time extraction, otherwise cosine similarity is meaningless.
"""
import math
import logging
from typing import Optional, Sequence

import numpy as np

from ..models.data_models import FaceObservation, Point

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 31
MIN_IPD = 0.01
MIN_EXTENT = 0.001
MIN_JAW_CONTOUR_POINTS = 10


def _centroid(points: Sequence[Point]) -> np.ndarray:
    return np.asarray(points, dtype=np.float64).mean(axis=0)


def _distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(b - a))


def _angle(a: np.ndarray, b: np.ndarray) -> float:
    return math.atan2(b[1] - a[1], b[0] - a[0])


def _extent(points: Sequence[Point], axis: int) -> float:
    """max - min of one coordinate, floored so it can be used as a divisor"""
    if len(points) == 0:
        return MIN_EXTENT
    values = np.asarray(points, dtype=np.float64)[:, axis]
    return max(float(values.max() - values.min()), MIN_EXTENT)


def extract_signature(observation: FaceObservation) -> Optional[np.ndarray]:
    """
    Compute the identity signature of a face observation.

    Args:
        observation: Face observation with landmarks

    Returns:
        Unit-length float64 vector of SIGNATURE_LENGTH values, or None if a
        required landmark group is missing or the eyes are degenerate
        (IPD < 0.01)
    """
    landmarks = observation.landmarks
    if landmarks is None:
        return None

    required = (
        landmarks.left_eye,
        landmarks.right_eye,
        landmarks.nose,
        landmarks.outer_lips,
        landmarks.face_contour,
    )
    if any(len(group) == 0 for group in required):
        return None

    left_eye = _centroid(landmarks.left_eye)
    right_eye = _centroid(landmarks.right_eye)
    nose = _centroid(landmarks.nose)
    mouth = _centroid(landmarks.outer_lips)

    ipd = _distance(left_eye, right_eye)
    if ipd < MIN_IPD:
        return None

    contour = landmarks.face_contour
    face_width = _extent(contour, 0)
    face_height = _extent(contour, 1)
    eye_mid = (left_eye + right_eye) / 2.0

    features = []

    # Geometric ratios
    features.append(ipd / face_width)
    features.append(_distance(eye_mid, nose) / ipd)
    features.append(_distance(nose, mouth) / ipd)
    features.append(_distance(eye_mid, mouth) / ipd)
    features.append(face_height / face_width)
    features.append(_distance(left_eye, nose) / ipd)
    features.append(_distance(right_eye, nose) / ipd)
    features.append(_extent(landmarks.outer_lips, 0) / ipd)
    features.append(_extent(landmarks.nose, 0) / ipd)
    features.append(abs(left_eye[1] - right_eye[1]) / ipd)

    # Angles
    features.append(_angle(left_eye, right_eye))
    features.append(_angle(eye_mid, nose))
    features.append(_angle(nose, mouth))

    # Shape
    features.append(_extent(landmarks.left_eye, 1) / _extent(landmarks.left_eye, 0))
    features.append(_extent(landmarks.right_eye, 1) / _extent(landmarks.right_eye, 0))
    features.append(_extent(landmarks.nose, 1) / ipd)
    features.append(_extent(landmarks.outer_lips, 1) / ipd)

    # Eyebrows
    if landmarks.left_eyebrow and landmarks.right_eyebrow:
        left_brow = _centroid(landmarks.left_eyebrow)
        right_brow = _centroid(landmarks.right_eyebrow)
        features.append(_distance(left_brow, left_eye) / ipd)
        features.append(_distance(right_brow, right_eye) / ipd)
        features.append(_angle(left_brow, right_brow))
    else:
        features.extend([0.0, 0.0, 0.0])

    # Jaw shape: lowest third of contour points vs the middle third (by y)
    if len(contour) >= MIN_JAW_CONTOUR_POINTS:
        third = len(contour) // 3
        by_y = sorted(contour, key=lambda p: p[1])
        lower_jaw_width = _extent(by_y[:third], 0)
        mid_jaw_width = _extent(by_y[third:2 * third], 0)
        features.append(lower_jaw_width / face_width)
        features.append(mid_jaw_width / face_width)
        features.append(lower_jaw_width / max(mid_jaw_width, MIN_EXTENT))
    else:
        features.extend([0.0, 0.0, 0.0])

    # Feature positions relative to the face centroid
    face_center = _centroid(contour)
    for center in (left_eye, right_eye, nose, mouth):
        offset = (center - face_center) / ipd
        features.append(float(offset[0]))
        features.append(float(offset[1]))

    signature = np.asarray(features, dtype=np.float64)

    magnitude = float(np.linalg.norm(signature))
    if magnitude > 0:
        signature = signature / magnitude

    return signature


def cosine_similarity(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """
    Raw cosine similarity in [-1, 1].

    Returns 0.0 for empty vectors, vectors of different length, or zero
    vectors.
    """
    a = np.asarray(vector_a, dtype=np.float64)
    b = np.asarray(vector_b, dtype=np.float64)
    if a.size == 0 or a.shape != b.shape:
        return 0.0

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    return float(np.clip(similarity, -1.0, 1.0))


def similarity_score(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """
    Cosine similarity remapped from [-1, 1] to [0, 1] via (cos + 1) / 2.

    Invalid inputs (see cosine_similarity) score 0.0 rather than 0.5.
    """
    a = np.asarray(vector_a, dtype=np.float64)
    b = np.asarray(vector_b, dtype=np.float64)
    if a.size == 0 or a.shape != b.shape or not np.any(a) or not np.any(b):
        return 0.0
    return (cosine_similarity(a, b) + 1.0) / 2.0
