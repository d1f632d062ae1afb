"""
Tunable parameters for live face verification

Thresholds and frame counts are empirical; every value can be overridden
through LIVEVERIFY_* environment variables (see VerificationConfig.from_env).
"""
import os
import logging
from dataclasses import dataclass, fields
from typing import Tuple

from .models.data_models import FacePoseDirection, LivenessChallenge

logger = logging.getLogger(__name__)

ENV_PREFIX = "LIVEVERIFY_"


@dataclass(frozen=True)
class VerificationConfig:
    """Thresholds and frame budgets used by the verification session"""

    # Pose capture
    required_poses: Tuple[FacePoseDirection, ...] = (
        FacePoseDirection.CENTER,
        FacePoseDirection.LEFT,
        FacePoseDirection.RIGHT,
    )
    min_captures_per_pose: int = 3
    pose_timeout_frames: int = 300
    min_pose_quality: float = 0.3
    max_pose_roll: float = 0.3

    # Positioning
    min_face_area: float = 0.15
    max_face_area: float = 0.5
    max_front_yaw: float = 0.2
    max_front_roll: float = 0.2

    # Liveness
    required_challenges: Tuple[LivenessChallenge, ...] = (
        LivenessChallenge.BLINK,
        LivenessChallenge.SMILE,
    )
    required_blinks: int = 2
    required_smile_frames: int = 10
    challenge_timeout_frames: int = 150
    feedback_pause_frames: int = 10
    ear_open_threshold: float = 0.18
    blink_min_frames: int = 2
    blink_max_frames: int = 15
    smile_ratio_threshold: float = 3.0
    turn_target_yaw: float = 0.35
    turn_tolerance: float = 0.15

    # Matching
    match_threshold: float = 0.70

    @classmethod
    def from_env(cls) -> "VerificationConfig":
        """
        Build a config from LIVEVERIFY_<FIELD_NAME> environment variables.

        Pose and challenge lists are comma-separated enum values, e.g.
        LIVEVERIFY_REQUIRED_CHALLENGES="blink,smile".
        """
        overrides = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            try:
                if f.name == "required_poses":
                    overrides[f.name] = tuple(FacePoseDirection(v.strip()) for v in raw.split(","))
                elif f.name == "required_challenges":
                    overrides[f.name] = tuple(LivenessChallenge(v.strip()) for v in raw.split(","))
                elif isinstance(f.default, int):
                    overrides[f.name] = int(raw)
                else:
                    overrides[f.name] = float(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from e

        if overrides:
            logger.info(f"Verification config overrides from environment: {sorted(overrides)}")
        return cls(**overrides)
