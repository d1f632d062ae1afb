"""
Liveness and pose analysis from facial landmarks

Eye-open and smile detection from landmark geometry, blink counting across
frames, and the head-pose / face-position tests used to gate captures.
"""
import logging
from typing import Optional, Sequence

from ..models.data_models import FaceLandmarks, FaceObservation, FacePoseDirection, Point

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = "Position your face in the circle"


def eye_aspect_ratio(eye_points: Sequence[Point]) -> Optional[float]:
    """
    Compute the eye aspect ratio (EAR) of a 6-point eye.

    EAR = (|p1.y - p5.y| + |p2.y - p4.y|) / (2 * |p3.x - p0.x|)

    Args:
        eye_points: Eye landmarks ordered outer corner, upper lid (2),
                    inner corner, lower lid (2)

    Returns:
        EAR, or None with fewer than 6 points or a zero-width eye
    """
    if len(eye_points) < 6:
        return None

    eye_height = abs(eye_points[1][1] - eye_points[5][1]) + abs(eye_points[2][1] - eye_points[4][1])
    eye_width = abs(eye_points[3][0] - eye_points[0][0])
    if eye_width <= 0:
        return None

    return eye_height / (2.0 * eye_width)


def is_eye_open(eye_points: Sequence[Point], threshold: float = 0.18) -> bool:
    """An eye is open iff EAR > threshold; undefined EAR counts as open"""
    ear = eye_aspect_ratio(eye_points)
    if ear is None:
        return True
    return ear > threshold


def mouth_aspect_ratio(outer_lips: Sequence[Point]) -> Optional[float]:
    """Mouth width / height from the outer-lip extents"""
    if len(outer_lips) < 6:
        return None

    xs = [p[0] for p in outer_lips]
    ys = [p[1] for p in outer_lips]
    mouth_width = max(xs) - min(xs)
    mouth_height = max(ys) - min(ys)
    if mouth_height <= 0:
        return None

    return mouth_width / mouth_height


def is_smiling(outer_lips: Sequence[Point], threshold: float = 3.0) -> bool:
    ratio = mouth_aspect_ratio(outer_lips)
    return ratio is not None and ratio > threshold


def _in_range(value: float, bounds) -> bool:
    low, high = bounds
    return low <= value <= high


def pose_matches(
    observation: FaceObservation,
    pose: FacePoseDirection,
    min_quality: float = 0.3,
    max_roll: float = 0.3,
) -> bool:
    """
    Check whether an observation holds the target head pose.

    Yaw and pitch ranges are inclusive at both ends. Quality is only checked
    when the detector reports one.
    """
    if not _in_range(observation.yaw, pose.yaw_range):
        return False
    if not _in_range(observation.pitch, pose.pitch_range):
        return False
    if abs(observation.roll) >= max_roll:
        return False
    if observation.quality is not None and observation.quality < min_quality:
        return False
    return True


def is_face_in_position(
    observation: FaceObservation,
    min_area: float = 0.15,
    max_yaw: float = 0.2,
    max_roll: float = 0.2,
) -> bool:
    """
    Face is large enough, centered, and front-facing.

    - bounding box area >= min_area of the frame
    - box center strictly inside [0.2, 0.8] on both axes
    - |yaw| < max_yaw and |roll| < max_roll
    """
    box = observation.bounding_box
    big_enough = box.area >= min_area
    centered = 0.2 < box.mid_x < 0.8 and 0.2 < box.mid_y < 0.8
    front_facing = abs(observation.yaw) < max_yaw and abs(observation.roll) < max_roll
    return big_enough and centered and front_facing


def positioning_instruction(
    observation: FaceObservation,
    min_area: float = 0.15,
    max_area: float = 0.5,
    max_yaw: float = 0.2,
) -> str:
    """User-facing hint for the first reason a face is out of position"""
    box = observation.bounding_box

    if box.area < min_area:
        return "Move closer to the camera"
    if box.area > max_area:
        return "Move back from the camera"
    if box.mid_x < 0.3:
        return "Move your face to the right"
    if box.mid_x > 0.7:
        return "Move your face to the left"
    if abs(observation.yaw) > max_yaw:
        return "Face the camera directly"
    return DEFAULT_INSTRUCTION


def pose_guidance(observation: FaceObservation, pose: FacePoseDirection) -> str:
    """Corrective hint while the target pose is not yet held"""
    yaw = observation.yaw
    pitch = observation.pitch

    if pose is FacePoseDirection.CENTER:
        if abs(yaw) > 0.2:
            return "Look straight at the camera"
        if abs(pitch) > 0.2:
            return "Keep your head level"
    elif pose is FacePoseDirection.LEFT:
        if yaw > -0.15:
            return "Turn your head more to the left"
        if yaw < -0.6:
            return "Not so far - turn slightly left"
    elif pose is FacePoseDirection.RIGHT:
        if yaw < 0.15:
            return "Turn your head more to the right"
        if yaw > 0.6:
            return "Not so far - turn slightly right"
    elif pose is FacePoseDirection.UP:
        if pitch < 0.15:
            return "Tilt your chin up slightly"
    elif pose is FacePoseDirection.DOWN:
        if pitch > -0.15:
            return "Tilt your chin down slightly"

    return pose.instruction


def turn_matches(yaw: float, target_yaw: float, tolerance: float = 0.15) -> bool:
    return abs(yaw - target_yaw) < tolerance


class LivenessAnalyzer:
    """
    Frame-by-frame eye and smile tracker.

    A blink is registered when a streak of consecutive closed-eye frames
    (both eyes closed) of length blink_min_frames <= n < blink_max_frames is
    followed by an open frame. Shorter streaks are jitter; longer ones are
    treated as eyes held shut.
    """

    def __init__(
        self,
        ear_threshold: float = 0.18,
        smile_threshold: float = 3.0,
        blink_min_frames: int = 2,
        blink_max_frames: int = 15,
    ):
        self.ear_threshold = ear_threshold
        self.smile_threshold = smile_threshold
        self.blink_min_frames = blink_min_frames
        self.blink_max_frames = blink_max_frames
        self.reset()

    def reset(self) -> None:
        self.left_eye_open = True
        self.right_eye_open = True
        self.smile_detected = False
        self.reset_blinks()
        self.reset_smiles()

    def reset_blinks(self) -> None:
        self.blink_count = 0
        self.eye_closed_frames = 0

    def reset_smiles(self) -> None:
        self.smile_frame_count = 0

    def update(self, landmarks: Optional[FaceLandmarks]) -> None:
        """Consume one frame of landmarks"""
        if landmarks is None:
            return

        if landmarks.left_eye and landmarks.right_eye:
            self._update_eyes(landmarks.left_eye, landmarks.right_eye)

        if landmarks.outer_lips and landmarks.inner_lips:
            self.smile_detected = is_smiling(landmarks.outer_lips, self.smile_threshold)
            if self.smile_detected:
                self.smile_frame_count += 1

    def _update_eyes(self, left_eye: Sequence[Point], right_eye: Sequence[Point]) -> None:
        self.left_eye_open = is_eye_open(left_eye, self.ear_threshold)
        self.right_eye_open = is_eye_open(right_eye, self.ear_threshold)

        eyes_closed = not self.left_eye_open and not self.right_eye_open
        if eyes_closed:
            self.eye_closed_frames += 1
            return

        if self.blink_min_frames <= self.eye_closed_frames < self.blink_max_frames:
            self.blink_count += 1
            logger.debug(f"Blink detected after {self.eye_closed_frames} closed frames, count={self.blink_count}")
        self.eye_closed_frames = 0
