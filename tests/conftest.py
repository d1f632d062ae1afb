"""
Shared fixtures: synthetic landmarks and fakes for the matcher collaborators
"""
import asyncio
import math
from typing import Dict, List, Optional

import pytest

from liveverify.models.data_models import (
    BoundingBox,
    FaceLandmarks,
    FaceObservation,
    MatchResult,
    VerificationRecord,
)
from liveverify.services.photo_source import ProfilePhotoSource, VerificationSink
from liveverify.services.face_detector import FaceDetector


# Area 0.2, centered at (0.5, 0.5)
CENTERED_BOX = BoundingBox(x=0.3, y=0.25, width=0.4, height=0.5)
# Area 0.01, too small to be in position
SMALL_BOX = BoundingBox(x=0.45, y=0.45, width=0.1, height=0.1)

OPEN_EYE_HEIGHT = 0.015   # EAR 0.30
CLOSED_EYE_HEIGHT = 0.002  # EAR 0.04


def make_eye(cx: float, cy: float, half_height: float, width: float = 0.1):
    """6-point eye: outer corner, upper lid x2, inner corner, lower lid x2"""
    left = cx - width / 2
    right = cx + width / 2
    return [
        (left, cy),
        (cx - width / 5, cy + half_height),
        (cx + width / 5, cy + half_height),
        (right, cy),
        (cx + width / 5, cy - half_height),
        (cx - width / 5, cy - half_height),
    ]


def make_lips(cx: float, cy: float, width: float, height: float):
    return [
        (cx - width / 2, cy),
        (cx - width / 4, cy + height / 2),
        (cx, cy + height / 2),
        (cx + width / 4, cy + height / 2),
        (cx + width / 2, cy),
        (cx + width / 4, cy - height / 2),
        (cx, cy - height / 2),
        (cx - width / 4, cy - height / 2),
    ]


def make_contour(cx: float = 0.5, cy: float = 0.5, rx: float = 0.2, ry: float = 0.28, n: int = 36):
    return [
        (cx + rx * math.cos(2 * math.pi * i / n), cy + ry * math.sin(2 * math.pi * i / n))
        for i in range(n)
    ]


def make_landmarks(eyes_open: bool = True, smiling: bool = False, eye_spacing: float = 0.2) -> FaceLandmarks:
    """
    Synthetic frontal face in bottom-left-origin coordinates.

    Args:
        eyes_open: EAR 0.30 when open, 0.04 when closed
        smiling: mouth width/height 4.0 when smiling, 2.0 otherwise
        eye_spacing: Distance between eye centers (the IPD)
    """
    half_height = OPEN_EYE_HEIGHT if eyes_open else CLOSED_EYE_HEIGHT
    left_x = 0.5 - eye_spacing / 2
    right_x = 0.5 + eye_spacing / 2

    if smiling:
        outer_lips = make_lips(0.5, 0.36, 0.16, 0.04)
        inner_lips = make_lips(0.5, 0.36, 0.12, 0.02)
    else:
        outer_lips = make_lips(0.5, 0.36, 0.12, 0.06)
        inner_lips = make_lips(0.5, 0.36, 0.08, 0.03)

    return FaceLandmarks(
        left_eye=make_eye(left_x, 0.6, half_height),
        right_eye=make_eye(right_x, 0.6, half_height),
        left_eyebrow=[(left_x - 0.05, 0.66), (left_x, 0.68), (left_x + 0.05, 0.67)],
        right_eyebrow=[(right_x - 0.05, 0.67), (right_x, 0.68), (right_x + 0.05, 0.66)],
        nose=[(0.5, 0.56), (0.5, 0.52), (0.5, 0.48), (0.47, 0.46), (0.5, 0.45), (0.53, 0.46)],
        outer_lips=outer_lips,
        inner_lips=inner_lips,
        face_contour=make_contour(),
    )


def make_observation(
    yaw: float = 0.0,
    pitch: float = 0.0,
    roll: float = 0.0,
    quality: Optional[float] = 0.9,
    eyes_open: bool = True,
    smiling: bool = False,
    box: BoundingBox = CENTERED_BOX,
) -> FaceObservation:
    return FaceObservation(
        bounding_box=box,
        yaw=yaw,
        pitch=pitch,
        roll=roll,
        quality=quality,
        landmarks=make_landmarks(eyes_open=eyes_open, smiling=smiling),
    )


class FakePhotoSource(ProfilePhotoSource):
    def __init__(self, photos: Optional[Dict[str, List[str]]] = None):
        self.photos = photos or {}
        self.calls = []

    def fetch_profile_photos(self, user_id: str) -> List[str]:
        self.calls.append(user_id)
        return list(self.photos.get(user_id, []))


class FakeDownloader:
    """Maps URL -> image; unknown URLs fail to download"""

    def __init__(self, images: Optional[Dict[str, object]] = None):
        self.images = images or {}
        self.requested = []

    async def download_image(self, url: str):
        self.requested.append(url)
        return self.images.get(url)


class FakeDetector(FaceDetector):
    """Maps image -> observation; unknown images have no face"""

    def __init__(self, observations: Optional[Dict[object, FaceObservation]] = None):
        self.observations = observations or {}

    def detect(self, image):
        return self.observations.get(image)


class FakeSink(VerificationSink):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.records = []

    def record_verification(self, user_id: str, confidence: float) -> VerificationRecord:
        if self.error is not None:
            raise self.error
        self.records.append((user_id, confidence))
        return VerificationRecord(user_id=user_id, verified=True, confidence=confidence)


class FakeMatcher:
    """
    Stand-in for FaceMatcher.

    If `gate` is set, match() blocks until the event is set, which lets tests
    reset a session while matching is in flight.
    """

    def __init__(self, result: Optional[MatchResult] = None, error: Optional[Exception] = None):
        self.result = result or MatchResult(True, "Face verified successfully!", 0.9)
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls = []

    async def match(self, captured_faces, user_id: str) -> MatchResult:
        self.calls.append((list(captured_faces), user_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def observation():
    return make_observation()


@pytest.fixture
def landmarks():
    return make_landmarks()
