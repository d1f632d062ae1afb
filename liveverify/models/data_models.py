"""
Data models for the live face verification flow

Frame-level observations, capture records, session state and the results
passed between the verification session, the matcher and the persistence
sink.
"""
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]


class FacePoseDirection(Enum):
    """Head orientation the user is asked to hold during capture"""
    CENTER = "center"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"

    @property
    def instruction(self) -> str:
        return {
            FacePoseDirection.CENTER: "Look straight ahead",
            FacePoseDirection.LEFT: "Turn your head left",
            FacePoseDirection.RIGHT: "Turn your head right",
            FacePoseDirection.UP: "Tilt your head up slightly",
            FacePoseDirection.DOWN: "Tilt your head down slightly",
        }[self]

    @property
    def yaw_range(self) -> Tuple[float, float]:
        if self is FacePoseDirection.CENTER:
            return (-0.15, 0.15)
        if self is FacePoseDirection.LEFT:
            return (-0.6, -0.25)
        if self is FacePoseDirection.RIGHT:
            return (0.25, 0.6)
        return (-0.25, 0.25)

    @property
    def pitch_range(self) -> Tuple[float, float]:
        if self is FacePoseDirection.CENTER:
            return (-0.15, 0.15)
        if self is FacePoseDirection.UP:
            return (0.2, 0.5)
        if self is FacePoseDirection.DOWN:
            return (-0.5, -0.2)
        return (-0.25, 0.25)


class LivenessChallenge(Enum):
    """Action the user performs to prove a live subject"""
    BLINK = "blink"
    SMILE = "smile"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"

    @property
    def instruction(self) -> str:
        return {
            LivenessChallenge.BLINK: "Blink your eyes",
            LivenessChallenge.SMILE: "Smile naturally",
            LivenessChallenge.TURN_LEFT: "Turn head slowly left",
            LivenessChallenge.TURN_RIGHT: "Turn head slowly right",
        }[self]


class VerificationStateKind(Enum):
    """Tag of the verification state machine"""
    INITIALIZING = "initializing"
    POSITIONING = "positioning"
    CAPTURING_POSES = "capturing_poses"
    LIVENESS_CHECK = "liveness_check"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class VerificationState:
    """Current state of a session; failures carry a user-presentable reason"""
    kind: VerificationStateKind
    reason: Optional[str] = None

    @classmethod
    def failure(cls, reason: str) -> "VerificationState":
        return cls(VerificationStateKind.FAILURE, reason)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (VerificationStateKind.SUCCESS, VerificationStateKind.FAILURE)

    def __str__(self) -> str:
        if self.reason is not None:
            return f"{self.kind.value}({self.reason})"
        return self.kind.value


INITIALIZING = VerificationState(VerificationStateKind.INITIALIZING)
POSITIONING = VerificationState(VerificationStateKind.POSITIONING)
CAPTURING_POSES = VerificationState(VerificationStateKind.CAPTURING_POSES)
LIVENESS_CHECK = VerificationState(VerificationStateKind.LIVENESS_CHECK)
PROCESSING = VerificationState(VerificationStateKind.PROCESSING)
SUCCESS = VerificationState(VerificationStateKind.SUCCESS)


@dataclass(frozen=True)
class BoundingBox:
    """Face rectangle in normalized (0-1) frame coordinates"""
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def mid_x(self) -> float:
        return self.x + self.width / 2.0

    @property
    def mid_y(self) -> float:
        return self.y + self.height / 2.0


ZERO_BOX = BoundingBox(0.0, 0.0, 0.0, 0.0)


@dataclass
class FaceLandmarks:
    """
    Normalized 2D landmark groups of one face.

    Eye groups are ordered for the 6-point eye aspect ratio:
    outer corner, two upper lid points, inner corner, two lower lid points.
    """
    left_eye: List[Point] = field(default_factory=list)
    right_eye: List[Point] = field(default_factory=list)
    left_eyebrow: List[Point] = field(default_factory=list)
    right_eyebrow: List[Point] = field(default_factory=list)
    nose: List[Point] = field(default_factory=list)
    outer_lips: List[Point] = field(default_factory=list)
    inner_lips: List[Point] = field(default_factory=list)
    face_contour: List[Point] = field(default_factory=list)


@dataclass
class FaceObservation:
    """Single detected face in one frame"""
    bounding_box: BoundingBox
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    quality: Optional[float] = None
    landmarks: Optional[FaceLandmarks] = None


@dataclass
class FaceCapture:
    """Frame accepted for a pose during the capture phase"""
    image: Any
    pose: FacePoseDirection
    observation: FaceObservation
    signature: np.ndarray
    timestamp: float = field(default_factory=time.time)


@dataclass
class MatchResult:
    """Outcome of comparing the captured selfie against profile photos"""
    success: bool
    message: str
    confidence: float = 0.0


@dataclass
class VerificationRecord:
    """Verification outcome written to the user's record"""
    user_id: str
    verified: bool
    confidence: float
    method: str = "live_face_recognition"
    verified_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    )
    version: int = 2


class FeedbackType(Enum):
    """Notifications sent to the haptic/feedback channel"""
    FACE_POSITIONED = "face_positioned"
    POSE_COMPLETED = "pose_completed"
    CHALLENGE_COMPLETED = "challenge_completed"
    RETRY = "retry"
    VERIFICATION_SUCCEEDED = "verification_succeeded"
    VERIFICATION_FAILED = "verification_failed"


@dataclass
class VerificationFeedback:
    """Fire-and-forget feedback notification"""
    type: FeedbackType
    message: str
    data: Optional[Dict[str, Any]] = None


@dataclass
class SessionSnapshot:
    """Read-only view of a session for rendering"""
    state: str
    failure_reason: Optional[str]
    instruction: str
    progress: float
    face_detected: bool
    face_in_position: bool
    current_pose: str
    completed_poses: List[str]
    current_challenge: Optional[str]
    completed_challenges: List[str]
    bounding_box: Dict[str, float]
    yaw: float
    pitch: float
    roll: float
    quality_score: float
    left_eye_open: bool
    right_eye_open: bool
    smile_detected: bool
    debug_info: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
