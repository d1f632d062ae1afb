"""
Live face verification session

Drives one verification attempt through its states:

    initializing -> positioning -> capturing_poses -> liveness_check
                 -> processing -> success | failure(reason)

Frames are fed one at a time through process_observation() and handled to
completion before the next one. Face matching runs once, as an asyncio task
owned by the session; a reset cancels it and any late result from a previous
attempt is discarded.
"""
import asyncio
import logging
import time
from typing import Any, Callable, FrozenSet, List, Optional, Tuple

import numpy as np

from ..config import VerificationConfig
from ..models.data_models import (
    BoundingBox,
    FaceCapture,
    FaceObservation,
    FacePoseDirection,
    FeedbackType,
    LivenessChallenge,
    MatchResult,
    SessionSnapshot,
    VerificationFeedback,
    VerificationState,
    VerificationStateKind,
    ZERO_BOX,
    CAPTURING_POSES,
    INITIALIZING,
    LIVENESS_CHECK,
    POSITIONING,
    PROCESSING,
    SUCCESS,
)
from .liveness_analyzer import (
    DEFAULT_INSTRUCTION,
    LivenessAnalyzer,
    is_face_in_position,
    pose_guidance,
    pose_matches,
    positioning_instruction,
    turn_matches,
)
from .matcher import FaceMatcher
from .signature_extractor import extract_signature

logger = logging.getLogger(__name__)

FeedbackListener = Callable[[VerificationFeedback], None]

# States in which frames are consumed
_ACTIVE_STATES = (
    VerificationStateKind.POSITIONING,
    VerificationStateKind.CAPTURING_POSES,
    VerificationStateKind.LIVENESS_CHECK,
)

_RETRY_INSTRUCTIONS = {
    LivenessChallenge.BLINK: "Please blink your eyes twice",
    LivenessChallenge.SMILE: "Give us a natural smile",
}


class VerificationSession:
    """
    State machine for a single live face verification attempt.

    One session is created per attempt and owned by the frame source that
    feeds it; nothing else mutates it.
    """

    def __init__(
        self,
        matcher: FaceMatcher,
        config: Optional[VerificationConfig] = None,
        on_feedback: Optional[FeedbackListener] = None,
        signature_extractor: Callable[[FaceObservation], Optional[np.ndarray]] = extract_signature,
    ):
        """
        Args:
            matcher: Compares the captured face with the user's profile photos
            config: Thresholds and frame budgets (defaults if None)
            on_feedback: Optional haptic/feedback listener; failures in it are
                         logged and ignored
            signature_extractor: Landmark -> identity signature function
        """
        self.matcher = matcher
        self.config = config or VerificationConfig()
        self.on_feedback = on_feedback
        self.signature_extractor = signature_extractor
        self.analyzer = LivenessAnalyzer(
            ear_threshold=self.config.ear_open_threshold,
            smile_threshold=self.config.smile_ratio_threshold,
            blink_min_frames=self.config.blink_min_frames,
            blink_max_frames=self.config.blink_max_frames,
        )

        self._user_id = ""
        self._start_time: Optional[float] = None
        self._generation = 0
        self._match_task: Optional[asyncio.Task] = None
        self._reset_state()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_verification(self, user_id: str) -> None:
        """Begin a new attempt for user_id, discarding any previous state"""
        self.reset()
        self._user_id = user_id
        self._start_time = time.time()
        self._state = POSITIONING
        self._instruction = DEFAULT_INSTRUCTION
        logger.info(f"Starting live face verification for user: {user_id}")

    def reset(self) -> None:
        """
        Return to the initial state without changing the target user.

        Cancels an in-flight face match; its result will not be applied.
        """
        if self._match_task is not None and not self._match_task.done():
            self._match_task.cancel()
            logger.info("Cancelled in-flight face matching")
        self._match_task = None
        self._generation += 1
        self._reset_state()

    def cancel(self) -> None:
        """Abandon the attempt (e.g. the user backed out)"""
        logger.info(f"Verification abandoned for user: {self._user_id}")
        self.reset()

    def retry(self) -> bool:
        """
        Restart after a failure.

        Returns:
            True if the session was restarted, False if it was not in the
            failure state
        """
        if self._state.kind is not VerificationStateKind.FAILURE:
            logger.warning(f"Retry ignored in state {self._state}")
            return False

        self.start_verification(self._user_id)
        return True

    def process_observation(self, observation: Optional[FaceObservation], frame: Any = None) -> None:
        """
        Consume one camera frame.

        Args:
            observation: Detected face, or None if no face is in the frame
            frame: The frame image, stored with captures

        Errors are logged and absorbed; the session simply does not advance.
        """
        if not self.accepts_frames:
            return

        try:
            if observation is None:
                self._handle_no_face()
                return

            self._track(observation)

            if self._state.kind is VerificationStateKind.POSITIONING:
                self._handle_positioning(observation)
            elif self._state.kind is VerificationStateKind.CAPTURING_POSES:
                self._handle_capturing(observation, frame)
            elif self._state.kind is VerificationStateKind.LIVENESS_CHECK:
                self._handle_liveness(observation)
        except Exception as e:
            logger.error(f"Error processing frame in state {self._state}: {e}", exc_info=True)

    async def wait_for_result(self) -> Optional[MatchResult]:
        """
        Wait for the in-flight face match.

        Returns:
            The MatchResult applied to this session, or None if no match is
            running, it was cancelled, or it failed with an error
        """
        task = self._match_task
        if task is None:
            return None

        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    def snapshot(self) -> SessionSnapshot:
        """Read-only view for rendering"""
        box = self._bounding_box
        return SessionSnapshot(
            state=self._state.kind.value,
            failure_reason=self._state.reason,
            instruction=self._instruction,
            progress=self._progress,
            face_detected=self._face_detected,
            face_in_position=self._face_in_position,
            current_pose=self._current_pose.value,
            completed_poses=[p.value for p in self.config.required_poses if p in self._completed_poses],
            current_challenge=self._current_challenge.value if self._current_challenge else None,
            completed_challenges=[
                c.value for c in self.config.required_challenges if c in self._completed_challenges
            ],
            bounding_box={"x": box.x, "y": box.y, "width": box.width, "height": box.height},
            yaw=self._yaw,
            pitch=self._pitch,
            roll=self._roll,
            quality_score=self._quality_score,
            left_eye_open=self.analyzer.left_eye_open,
            right_eye_open=self.analyzer.right_eye_open,
            smile_detected=self.analyzer.smile_detected,
            debug_info=self._debug_info,
        )

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> VerificationState:
        return self._state

    @property
    def accepts_frames(self) -> bool:
        """True while process_observation would consume a frame"""
        return self._state.kind in _ACTIVE_STATES

    @property
    def instruction(self) -> str:
        return self._instruction

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def face_detected(self) -> bool:
        return self._face_detected

    @property
    def face_in_position(self) -> bool:
        return self._face_in_position

    @property
    def current_pose(self) -> FacePoseDirection:
        return self._current_pose

    @property
    def completed_poses(self) -> FrozenSet[FacePoseDirection]:
        return frozenset(self._completed_poses)

    @property
    def current_challenge(self) -> Optional[LivenessChallenge]:
        return self._current_challenge

    @property
    def completed_challenges(self) -> FrozenSet[LivenessChallenge]:
        return frozenset(self._completed_challenges)

    @property
    def captured_faces(self) -> Tuple[FaceCapture, ...]:
        return tuple(self._captured_faces)

    @property
    def bounding_box(self) -> BoundingBox:
        return self._bounding_box

    @property
    def yaw(self) -> float:
        return self._yaw

    @property
    def pitch(self) -> float:
        return self._pitch

    @property
    def roll(self) -> float:
        return self._roll

    @property
    def quality_score(self) -> float:
        return self._quality_score

    @property
    def left_eye_open(self) -> bool:
        return self.analyzer.left_eye_open

    @property
    def right_eye_open(self) -> bool:
        return self.analyzer.right_eye_open

    @property
    def smile_detected(self) -> bool:
        return self.analyzer.smile_detected

    @property
    def debug_info(self) -> str:
        return self._debug_info

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    def _reset_state(self) -> None:
        self._state = INITIALIZING
        self._instruction = DEFAULT_INSTRUCTION
        self._progress = 0.0
        self._face_detected = False
        self._face_in_position = False
        self._current_pose = self.config.required_poses[0]
        self._completed_poses = set()
        self._current_challenge: Optional[LivenessChallenge] = None
        self._completed_challenges = set()
        self._captured_faces: List[FaceCapture] = []
        self._bounding_box = ZERO_BOX
        self._yaw = 0.0
        self._pitch = 0.0
        self._roll = 0.0
        self._quality_score = 0.0
        self._debug_info = ""
        self._pose_frame_count = 0
        self._liveness_frame_count = 0
        self._pause_frames_remaining = 0
        self.analyzer.reset()

    def _track(self, observation: FaceObservation) -> None:
        self._face_detected = True
        self._bounding_box = observation.bounding_box
        self._yaw = observation.yaw
        self._pitch = observation.pitch
        self._roll = observation.roll
        self._quality_score = observation.quality or 0.0
        self.analyzer.update(observation.landmarks)
        self._debug_info = f"Yaw: {self._yaw:.2f}, Pitch: {self._pitch:.2f}, Roll: {self._roll:.2f}"

    def _handle_no_face(self) -> None:
        self._face_detected = False
        self._face_in_position = False
        if self._state.kind in (VerificationStateKind.POSITIONING, VerificationStateKind.CAPTURING_POSES):
            self._instruction = DEFAULT_INSTRUCTION

    def _handle_positioning(self, observation: FaceObservation) -> None:
        cfg = self.config
        in_position = is_face_in_position(
            observation,
            min_area=cfg.min_face_area,
            max_yaw=cfg.max_front_yaw,
            max_roll=cfg.max_front_roll,
        )
        self._face_in_position = in_position

        if not in_position:
            self._instruction = positioning_instruction(
                observation,
                min_area=cfg.min_face_area,
                max_area=cfg.max_face_area,
                max_yaw=cfg.max_front_yaw,
            )
            return

        self._state = CAPTURING_POSES
        self._current_pose = cfg.required_poses[0]
        self._pose_frame_count = 0
        self._instruction = f"Hold still - {self._current_pose.instruction}"
        self._set_progress(0.1)
        self._notify(FeedbackType.FACE_POSITIONED, "Face positioned")
        logger.debug("Face positioned, starting capture")

    def _handle_capturing(self, observation: FaceObservation, frame: Any) -> None:
        cfg = self.config
        pose = self._current_pose
        self._pose_frame_count += 1

        if not pose_matches(observation, pose, min_quality=cfg.min_pose_quality, max_roll=cfg.max_pose_roll):
            self._instruction = pose_guidance(observation, pose)
            if self._pose_frame_count >= cfg.pose_timeout_frames:
                self._pose_frame_count = 0
                self._instruction = f"Let's try again - {pose.instruction}"
                self._notify(FeedbackType.RETRY, self._instruction, {"pose": pose.value})
                logger.debug(f"Pose capture retry for {pose.value}")
            return

        self._pose_frame_count = 0

        signature = self.signature_extractor(observation)
        if signature is None:
            return

        self._captured_faces.append(
            FaceCapture(image=frame, pose=pose, observation=observation, signature=signature)
        )

        captures_for_pose = sum(1 for c in self._captured_faces if c.pose is pose)
        if captures_for_pose < cfg.min_captures_per_pose:
            self._instruction = f"Hold still... {captures_for_pose}/{cfg.min_captures_per_pose}"
            return

        self._completed_poses.add(pose)
        self._notify(FeedbackType.POSE_COMPLETED, f"Captured {pose.value} pose", {"pose": pose.value})

        next_pose = self._next_pose()
        if next_pose is None:
            self._start_liveness_check()
            return

        self._current_pose = next_pose
        self._instruction = next_pose.instruction
        self._set_progress(len(self._completed_poses) / len(cfg.required_poses) * 0.5)
        logger.debug(f"Moving to next pose: {next_pose.value}")

    def _next_pose(self) -> Optional[FacePoseDirection]:
        for pose in self.config.required_poses:
            if pose not in self._completed_poses:
                return pose
        return None

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def _start_liveness_check(self) -> None:
        self._state = LIVENESS_CHECK
        self._liveness_frame_count = 0
        self._set_progress(0.5)
        logger.debug("Starting liveness check")
        self._advance_to_next_challenge()

    def _next_challenge(self) -> Optional[LivenessChallenge]:
        for challenge in self.config.required_challenges:
            if challenge not in self._completed_challenges:
                return challenge
        return None

    def _advance_to_next_challenge(self) -> None:
        next_challenge = self._next_challenge()
        if next_challenge is None:
            self._complete_verification()
            return
        self._current_challenge = next_challenge
        self._begin_challenge()

    def _begin_challenge(self) -> None:
        challenge = self._current_challenge
        self._instruction = challenge.instruction
        self._liveness_frame_count = 0
        self._pause_frames_remaining = 0
        if challenge is LivenessChallenge.BLINK:
            self.analyzer.reset_blinks()
        elif challenge is LivenessChallenge.SMILE:
            self.analyzer.reset_smiles()

    def _handle_liveness(self, observation: FaceObservation) -> None:
        if self._current_challenge is None:
            self._advance_to_next_challenge()
            return

        # Short pause showing the completion message before the next prompt
        if self._pause_frames_remaining > 0:
            self._pause_frames_remaining -= 1
            if self._pause_frames_remaining == 0:
                self._begin_challenge()
            return

        cfg = self.config
        challenge = self._current_challenge
        self._liveness_frame_count += 1

        if challenge is LivenessChallenge.BLINK:
            completed = self.analyzer.blink_count >= cfg.required_blinks
        elif challenge is LivenessChallenge.SMILE:
            completed = self.analyzer.smile_frame_count >= cfg.required_smile_frames
        elif challenge is LivenessChallenge.TURN_LEFT:
            completed = turn_matches(observation.yaw, -cfg.turn_target_yaw, cfg.turn_tolerance)
        else:
            completed = turn_matches(observation.yaw, cfg.turn_target_yaw, cfg.turn_tolerance)

        if completed:
            self._complete_challenge(challenge)
        elif self._liveness_frame_count > cfg.challenge_timeout_frames:
            self._retry_challenge(challenge)

    def _complete_challenge(self, challenge: LivenessChallenge) -> None:
        cfg = self.config
        self._completed_challenges.add(challenge)
        self._instruction = "Perfect!" if challenge is LivenessChallenge.SMILE else "Great!"
        self._set_progress(0.5 + len(self._completed_challenges) / len(cfg.required_challenges) * 0.3)
        self._notify(
            FeedbackType.CHALLENGE_COMPLETED,
            f"Completed {challenge.value} challenge",
            {"challenge": challenge.value},
        )
        logger.debug(f"Liveness challenge completed: {challenge.value}")

        next_challenge = self._next_challenge()
        if next_challenge is None:
            self._complete_verification()
            return

        self._current_challenge = next_challenge
        if cfg.feedback_pause_frames > 0:
            self._pause_frames_remaining = cfg.feedback_pause_frames
        else:
            self._begin_challenge()

    def _retry_challenge(self, challenge: LivenessChallenge) -> None:
        """Soft timeout: restart the frame budget and prompt again.

        Blinks already counted stay counted; a smile must be held again from zero.
        """
        self._liveness_frame_count = 0
        if challenge is LivenessChallenge.SMILE:
            self.analyzer.reset_smiles()

        self._instruction = _RETRY_INSTRUCTIONS.get(challenge, challenge.instruction)
        self._notify(FeedbackType.RETRY, self._instruction, {"challenge": challenge.value})
        logger.info(f"Liveness challenge {challenge.value} timed out, prompting again")

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _complete_verification(self) -> None:
        self._state = PROCESSING
        self._instruction = "Verifying your identity..."
        self._set_progress(0.85)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("No running event loop; cannot start face matching")
            self._fail("Verification could not be started. Please try again.")
            return

        self._match_task = loop.create_task(
            self._run_matching(self._generation, list(self._captured_faces), self._user_id)
        )

    async def _run_matching(
        self,
        generation: int,
        captured_faces: List[FaceCapture],
        user_id: str,
    ) -> Optional[MatchResult]:
        try:
            result = await self.matcher.match(captured_faces, user_id)
        except asyncio.CancelledError:
            logger.info("Face matching cancelled")
            raise
        except Exception as e:
            if generation != self._generation:
                return None
            logger.error(f"Face verification failed: {e}", exc_info=True)
            self._fail(str(e) or e.__class__.__name__, instruction="Verification failed. Please try again.")
            return None

        if generation != self._generation:
            logger.info("Discarding face matching result from a previous attempt")
            return None

        if result.success:
            self._state = SUCCESS
            self._instruction = "Verification complete!"
            self._set_progress(1.0)
            self._notify(
                FeedbackType.VERIFICATION_SUCCEEDED,
                result.message,
                {"confidence": result.confidence},
            )
            logger.info(f"Face verification completed successfully with confidence: {result.confidence:.3f}")
        else:
            self._fail(result.message)
        return result

    def _fail(self, reason: str, instruction: Optional[str] = None) -> None:
        self._state = VerificationState.failure(reason)
        self._instruction = instruction or reason
        self._notify(FeedbackType.VERIFICATION_FAILED, reason)
        logger.warning(f"Face verification failed for user {self._user_id}: {reason}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_progress(self, value: float) -> None:
        # Progress never moves backwards within an attempt
        self._progress = max(self._progress, value)

    def _notify(self, feedback_type: FeedbackType, message: str, data: Optional[dict] = None) -> None:
        if self.on_feedback is None:
            return
        try:
            self.on_feedback(VerificationFeedback(type=feedback_type, message=message, data=data))
        except Exception as e:
            logger.warning(f"Feedback listener failed: {e}")
