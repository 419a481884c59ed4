"""
Object storage integration service.

Talks to the hosted storage REST API that holds uploaded videos:
upload, remove and signed-URL generation. Every call returns a result
instead of raising, so a storage outage degrades the widget (no video URL)
rather than failing the request.
"""
import logging
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from bonsai.config import settings

logger = logging.getLogger(__name__)


class StorageService:
    """Service for the storage REST API."""

    def __init__(
        self,
        base_url: Optional[str],
        service_key: Optional[str],
        bucket: str = "videos",
        timeout: int = 30
    ):
        """
        Initialize storage service.

        Args:
            base_url: Storage API base URL, e.g. https://<ref>.supabase.co/storage/v1
            service_key: Service credential with read/write access to the bucket
            bucket: Bucket holding video assets
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip('/') if base_url else None
        self.service_key = service_key
        self.bucket = bucket
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.service_key)

    def _headers(self, content_type: str = "application/json") -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": content_type,
        }

    def _object_url(self, path: str, prefix: str = "object") -> str:
        return f"{self.base_url}/{prefix}/{self.bucket}/{quote(path.lstrip('/'))}"

    def upload(self, path: str, data: bytes, content_type: str = "video/mp4") -> Dict:
        """
        Upload an object.

        Args:
            path: Object path inside the bucket, e.g. "<org>/<project>/<uuid>.mp4"
            data: Raw bytes
            content_type: MIME type stored with the object

        Returns:
            Dictionary containing:
                - success: bool
                - path: str
                - error: Optional error message
        """
        if not self.is_configured:
            return {"success": False, "path": path, "error": "Storage is not configured"}

        try:
            response = requests.post(
                self._object_url(path),
                data=data,
                headers={**self._headers(content_type), "x-upsert": "false"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error("Storage upload failed for %s: %s", path, e)
            return {"success": False, "path": path, "error": str(e)}

        if response.status_code in (200, 201):
            logger.info("Uploaded %s (%d bytes)", path, len(data))
            return {"success": True, "path": path, "error": None}

        error_msg = f"HTTP {response.status_code}: {response.text}"
        logger.error("Storage upload failed for %s: %s", path, error_msg)
        return {"success": False, "path": path, "error": error_msg}

    def remove(self, paths: List[str]) -> Dict:
        """
        Remove objects from the bucket.

        Returns:
            Dictionary containing success, removed (count) and error
        """
        paths = [p for p in paths if p]
        if not paths:
            return {"success": True, "removed": 0, "error": None}
        if not self.is_configured:
            return {"success": False, "removed": 0, "error": "Storage is not configured"}

        try:
            response = requests.delete(
                f"{self.base_url}/object/{self.bucket}",
                json={"prefixes": paths},
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error("Storage remove failed for %s: %s", paths, e)
            return {"success": False, "removed": 0, "error": str(e)}

        if response.status_code == 200:
            return {"success": True, "removed": len(paths), "error": None}

        error_msg = f"HTTP {response.status_code}: {response.text}"
        logger.error("Storage remove failed for %s: %s", paths, error_msg)
        return {"success": False, "removed": 0, "error": error_msg}

    def create_signed_url(self, path: Optional[str], expires_in: Optional[int] = None) -> Optional[str]:
        """
        Create a time-limited URL for an object.

        Args:
            path: Object path, may be None for videos without an upload
            expires_in: Lifetime in seconds (defaults to settings.signed_url_ttl)

        Returns:
            Absolute signed URL, or None if there is no object or signing failed
        """
        if not path or not self.is_configured:
            return None

        ttl = expires_in or settings.signed_url_ttl
        try:
            response = requests.post(
                self._object_url(path, prefix="object/sign"),
                json={"expiresIn": ttl},
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error("Signing %s failed: %s", path, e)
            return None

        if response.status_code != 200:
            logger.error("Signing %s failed: HTTP %s", path, response.status_code)
            return None

        signed = response.json().get("signedURL") or response.json().get("signedUrl")
        if not signed:
            return None
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/{signed.lstrip('/')}"


# Global storage service instance
storage_service = StorageService(
    base_url=settings.storage_url,
    service_key=settings.storage_service_key,
    bucket=settings.video_bucket,
)
