"""
Matches a verified live selfie against the user's profile photos

The best center-pose capture is compared with every reference photo; the
session is accepted if the best similarity reaches the match threshold. A
single good reference is enough, so similarities are reduced with max rather
than averaged.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from ..models.data_models import FaceCapture, FaceObservation, FacePoseDirection, MatchResult
from .face_detector import FaceDetector
from .photo_source import ImageDownloader, ProfilePhotoSource, VerificationSink
from .signature_extractor import extract_signature, similarity_score

logger = logging.getLogger(__name__)

# Per-reference outcomes
_DOWNLOAD_FAILED = "download_failed"
_NO_FACE = "no_face"
_COMPARED = "compared"

NO_CAPTURES_MESSAGE = "No face captures available"
NO_CENTER_CAPTURE_MESSAGE = "Center face capture required"
NO_PROFILE_PHOTOS_MESSAGE = "No profile photos found. Please add photos first."
DOWNLOADS_FAILED_MESSAGE = "Could not load profile photos. Please check your internet connection."
NO_FACE_IN_PHOTOS_MESSAGE = (
    "Could not detect face in your profile photos. Please use photos with clear face visibility."
)
VERIFIED_MESSAGE = "Face verified successfully!"
NO_MATCH_MESSAGE = "Face doesn't match your profile photos. Please ensure your profile has recent photos."
WEAK_MATCH_MESSAGE = (
    "Face doesn't match your profile photos closely enough. Please try again with better lighting."
)


def best_center_capture(captured_faces: Sequence[FaceCapture]) -> Optional[FaceCapture]:
    """Center-pose capture with the highest quality score (missing quality counts as 0)"""
    center_captures = [c for c in captured_faces if c.pose is FacePoseDirection.CENTER]
    if not center_captures:
        return None
    return max(center_captures, key=lambda c: c.observation.quality or 0.0)


class FaceMatcher:
    """
    Compares captured signatures with signatures extracted from profile photos.

    Collaborators:
        photo_source: reference photo lookup
        downloader: async image fetch
        detector: largest-face detector, run in a worker thread
        sink: persistence of successful verifications
    """

    WEAK_MATCH_FLOOR = 0.5

    def __init__(
        self,
        photo_source: ProfilePhotoSource,
        downloader: ImageDownloader,
        detector: FaceDetector,
        sink: VerificationSink,
        match_threshold: float = 0.70,
        signature_extractor: Callable[[FaceObservation], Optional[np.ndarray]] = extract_signature,
    ):
        self.photo_source = photo_source
        self.downloader = downloader
        self.detector = detector
        self.sink = sink
        self.match_threshold = match_threshold
        self.signature_extractor = signature_extractor

    async def match(self, captured_faces: Sequence[FaceCapture], user_id: str) -> MatchResult:
        """
        Decide whether the captured face belongs to the profile owner.

        Args:
            captured_faces: Captures accumulated by the verification session
            user_id: Owner of the reference photos

        Returns:
            MatchResult; rejections carry a user-presentable message

        Raises:
            Exception: detector or persistence failures propagate to the caller
        """
        if not captured_faces:
            return MatchResult(False, NO_CAPTURES_MESSAGE, 0.0)

        best_capture = best_center_capture(captured_faces)
        if best_capture is None:
            return MatchResult(False, NO_CENTER_CAPTURE_MESSAGE, 0.0)

        profile_photos = await asyncio.to_thread(self.photo_source.fetch_profile_photos, user_id)
        if not profile_photos:
            logger.info(f"No profile photos for user {user_id}")
            return MatchResult(False, NO_PROFILE_PHOTOS_MESSAGE, 0.0)

        selfie_signature = best_capture.signature

        outcomes = await asyncio.gather(
            *(self._compare_reference(url, selfie_signature) for url in profile_photos)
        )

        compared = [similarity for status, similarity in outcomes if status == _COMPARED]
        download_failures = sum(1 for status, _ in outcomes if status == _DOWNLOAD_FAILED)

        if not compared:
            if download_failures == len(profile_photos):
                return MatchResult(False, DOWNLOADS_FAILED_MESSAGE, 0.0)
            return MatchResult(False, NO_FACE_IN_PHOTOS_MESSAGE, 0.0)

        best_match = max(compared)
        logger.info(
            f"Face matching for user {user_id}: best={best_match:.3f} over "
            f"{len(compared)}/{len(profile_photos)} photos, threshold={self.match_threshold}"
        )

        if best_match >= self.match_threshold:
            await asyncio.to_thread(self.sink.record_verification, user_id, best_match)
            return MatchResult(True, VERIFIED_MESSAGE, best_match)

        if best_match < self.WEAK_MATCH_FLOOR:
            return MatchResult(False, NO_MATCH_MESSAGE, best_match)
        return MatchResult(False, WEAK_MATCH_MESSAGE, best_match)

    async def _compare_reference(self, url: str, selfie_signature: np.ndarray) -> Tuple[str, float]:
        image = await self.downloader.download_image(url)
        if image is None:
            return _DOWNLOAD_FAILED, 0.0

        observation = await asyncio.to_thread(self.detector.detect, image)
        if observation is None:
            logger.warning("Could not extract face from profile photo")
            return _NO_FACE, 0.0

        reference_signature = self.signature_extractor(observation)
        if reference_signature is None:
            logger.warning("Could not compute signature for profile photo face")
            return _NO_FACE, 0.0

        similarity = similarity_score(selfie_signature, reference_signature)
        logger.debug(f"Profile photo similarity: {similarity:.3f}")
        return _COMPARED, similarity
