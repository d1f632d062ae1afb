# Data models
from .data_models import (
    BoundingBox,
    FaceCapture,
    FaceLandmarks,
    FaceObservation,
    FacePoseDirection,
    FeedbackType,
    LivenessChallenge,
    MatchResult,
    SessionSnapshot,
    VerificationFeedback,
    VerificationRecord,
    VerificationState,
    VerificationStateKind,
)

__all__ = [
    'BoundingBox', 'FaceCapture', 'FaceLandmarks', 'FaceObservation', 'FacePoseDirection',
    'FeedbackType', 'LivenessChallenge', 'MatchResult', 'SessionSnapshot', 'VerificationFeedback',
    'VerificationRecord', 'VerificationState', 'VerificationStateKind',
]
