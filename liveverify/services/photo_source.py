"""
Reference photo collaborators used by the matcher

- ProfilePhotoSource: lists the profile photo URLs of a user
- VerificationSink: records a successful verification
- ImageDownloader: fetches and decodes a photo over HTTP
"""
import logging
from typing import List, Optional

import cv2
import httpx
import numpy as np

logger = logging.getLogger(__name__)


class ProfilePhotoSource:
    """Looks up reference photos for a user"""

    def fetch_profile_photos(self, user_id: str) -> List[str]:
        """Profile image URL followed by gallery URLs, empty strings removed"""
        raise NotImplementedError


class VerificationSink:
    """Persists verification outcomes"""

    def record_verification(self, user_id: str, confidence: float):
        raise NotImplementedError


class ImageDownloader:
    """
    Downloads images with httpx and decodes them with OpenCV.

    Network errors, non-2xx responses and undecodable payloads are logged and
    reported as None.
    """

    def __init__(
        self,
        request_timeout: float = 15.0,
        total_timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.request_timeout = request_timeout
        self.total_timeout = total_timeout
        self._client = client

    def _make_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.total_timeout, connect=self.request_timeout, read=self.request_timeout)
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def download_image(self, url: str) -> Optional[np.ndarray]:
        """
        Fetch an image.

        Args:
            url: Absolute http(s) URL

        Returns:
            BGR image array, or None if the download or decode failed
        """
        if not url or not url.startswith(("http://", "https://")):
            logger.warning(f"Invalid URL for image download: {url}")
            return None

        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with self._make_client() as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Image download error for {url}: {e}")
            return None

        if not response.is_success:
            logger.warning(f"Image download failed with status: {response.status_code}")
            return None

        return decode_image(response.content)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes (JPEG/PNG/...) to a BGR array"""
    if not data:
        return None

    image = cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        logger.warning("Failed to decode downloaded image data")
    return image
