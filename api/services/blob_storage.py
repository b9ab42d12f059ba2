"""Blob storage for generated images: store bytes, get a public URL."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import quote

import httpx

from api.services.story_generator import GenerationError

logger = logging.getLogger(__name__)


class BlobStorage(ABC):
    @abstractmethod
    async def store(self, data: bytes, path: str, content_type: str) -> str:
        """Upload data to path and return its download URL."""
        pass


class FirebaseBlobStorage(BlobStorage):
    """Firebase Storage over its REST upload endpoint."""

    API_BASE = "https://firebasestorage.googleapis.com/v0/b"

    def __init__(
        self,
        bucket: Optional[str],
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ):
        self.bucket = bucket
        self.access_token = access_token
        self._transport = transport
        self.timeout = timeout

    def download_url(self, path: str, token: Optional[str]) -> str:
        url = f"{self.API_BASE}/{self.bucket}/o/{quote(path, safe='')}?alt=media"
        return f"{url}&token={token}" if token else url

    async def store(self, data: bytes, path: str, content_type: str) -> str:
        from api.services.metrics import track_api_request

        if not self.bucket:
            raise GenerationError("Storage bucket not configured", 500, "CONFIGURATION_ERROR")
        if not data:
            raise GenerationError("Invalid image data for upload", 400, "INVALID_UPLOAD_DATA")

        headers = {"Content-Type": content_type}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.API_BASE}/{self.bucket}/o",
                    params={"uploadType": "media", "name": path},
                    content=data,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise GenerationError(f"Upload timed out: {e}", 408, "TIMEOUT_ERROR", retryable=True)
        except httpx.RequestError as e:
            raise GenerationError(f"Upload failed: {e}", 500, "FIREBASE_UPLOAD_FAILED", retryable=True)
        finally:
            track_api_request("firebase", "upload", time.time() - start_time)

        if response.status_code >= 400:
            # 4xx covers permission and quota failures; only server errors are retried
            raise GenerationError(
                f"Upload failed: HTTP {response.status_code}",
                response.status_code,
                "FIREBASE_UPLOAD_FAILED",
                {"body": response.text[:200]},
                retryable=response.status_code >= 500,
            )

        try:
            meta = response.json()
        except ValueError:
            raise GenerationError("Invalid upload response", 502, "INVALID_DOWNLOAD_URL", retryable=True)

        token = (meta.get("downloadTokens") or "").split(",")[0] or None
        url = self.download_url(meta.get("name") or path, token)
        logger.info(f"Uploaded {len(data)} bytes to {path}")
        return url
