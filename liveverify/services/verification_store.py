"""
File-backed user store

Holds the per-user fields the verification flow reads and writes:

  profileImageURL, photos          -- reference photos for matching
  isVerified, photoVerified, ...   -- written on successful verification

Persists to a JSON file under storage_dir so results survive restarts.
"""
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

from ..models.data_models import VerificationRecord
from .photo_source import ProfilePhotoSource, VerificationSink

logger = logging.getLogger(__name__)


class VerificationStore(ProfilePhotoSource, VerificationSink):
    """JSON-file user store implementing both the photo source and the sink"""

    USERS_FILE = "users.json"

    def __init__(self, storage_dir: Optional[str] = None):
        self._lock = threading.Lock()
        self.users: Dict[str, Dict[str, Any]] = {}
        self.storage_dir = storage_dir or os.path.join(
            os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "data"
        )
        self._load_users()
        logger.info(f"VerificationStore initialized with {len(self.users)} users")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def upsert_user(
        self,
        user_id: str,
        profile_image_url: str = "",
        photos: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create a user or replace their reference photos"""
        with self._lock:
            user = self.users.setdefault(user_id, {})
            user["profileImageURL"] = profile_image_url
            user["photos"] = list(photos or [])
            self._save_users()
            return dict(user)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            user = self.users.get(user_id)
            return dict(user) if user is not None else None

    def fetch_profile_photos(self, user_id: str) -> List[str]:
        """
        Reference photo URLs for a user.

        Returns:
            Profile image URL (if set) followed by gallery photos, with empty
            entries removed. Unknown users have no photos.
        """
        with self._lock:
            user = self.users.get(user_id)
            if not user:
                return []

            photos = []
            profile_image_url = user.get("profileImageURL")
            if isinstance(profile_image_url, str) and profile_image_url:
                photos.append(profile_image_url)

            additional = user.get("photos") or []
            photos.extend(p for p in additional if isinstance(p, str) and p)
            return photos

    # ------------------------------------------------------------------
    # Verification results
    # ------------------------------------------------------------------

    def record_verification(self, user_id: str, confidence: float) -> VerificationRecord:
        """
        Mark a user as verified by live face recognition.

        Raises:
            KeyError: if the user does not exist
            OSError: if the store cannot be written
        """
        record = VerificationRecord(user_id=user_id, verified=True, confidence=float(confidence))

        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                raise KeyError(f"User {user_id} not found")

            user.update({
                "isVerified": True,
                "photoVerified": True,
                "photoVerifiedAt": record.verified_at,
                "verifiedAt": record.verified_at,
                "verificationConfidence": record.confidence,
                "verificationMethod": record.method,
                "verificationVersion": record.version,
            })
            self._save_users()

        logger.info(f"Recorded verification for user {user_id}: confidence={record.confidence:.3f}")
        return record

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save_users(self):
        """Write the store atomically; caller holds the lock"""
        os.makedirs(self.storage_dir, exist_ok=True)
        filepath = os.path.join(self.storage_dir, self.USERS_FILE)
        tmp_path = filepath + ".tmp"
        with open(tmp_path, "w") as f:
            json.dump(self.users, f, indent=2, default=str)
        os.replace(tmp_path, filepath)

    def _load_users(self) -> bool:
        """Load the store from disk. Returns True if loaded successfully."""
        filepath = os.path.join(self.storage_dir, self.USERS_FILE)
        if not os.path.exists(filepath):
            return False
        try:
            with open(filepath, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load user store: {e}")
            return False

        if not isinstance(data, dict):
            logger.warning("User store file is not a JSON object, starting empty")
            return False

        self.users = data
        logger.info(f"Loaded {len(self.users)} users from store file")
        return True
