"""Binary asset upload collaborator

Uploads a blob to an unsigned-upload endpoint with progress reporting and
retries. When every attempt fails the blob is returned embedded as a base64
data URL so the host can still store it with the record.
"""

import asyncio
import base64
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp

from ..utils.config import UploadConfig
from ..utils.errors import ErrorRecovery, RemoteError, ValidationError
from ..utils.logging import get_logger

logger = get_logger("replisync.remote.upload")

ProgressCallback = Callable[[int], Any]


@dataclass
class UploadResult:
    """Either a hosted URL or the embedded fallback."""
    url: Optional[str] = None
    embedded_fallback: Optional[str] = None
    attempts: int = 0
    response: Optional[Dict[str, Any]] = None

    @property
    def is_fallback(self) -> bool:
        return self.embedded_fallback is not None


def to_data_url(blob: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(blob).decode('ascii')}"


class AssetUploader:
    """Uploads binary assets with bounded retries and an embedded fallback"""

    def __init__(
        self,
        config: Optional[UploadConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config or UploadConfig()
        self._session = session
        self.sleep = sleep

    def validate(self, blob: bytes, content_type: str) -> None:
        """Reject empty, oversized or disallowed blobs before any I/O."""
        if not blob:
            raise ValidationError("file", None, "a non-empty file is required")
        limit = int(self.config.max_file_size_mb * 1024 * 1024)
        if len(blob) > limit:
            raise ValidationError("file", len(blob), f"must be at most {self.config.max_file_size_mb} MB")
        if content_type not in self.config.allowed_types:
            raise ValidationError(
                "content_type", content_type,
                f"must be one of {', '.join(self.config.allowed_types)}",
            )

    async def upload(
        self,
        blob: bytes,
        content_type: str,
        filename: str = "upload",
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """
        Upload a blob.

        Args:
            blob: File contents
            content_type: MIME type, checked against the allowed types
            filename: Name sent with the multipart form
            on_progress: Called with a percentage (0-100)

        Returns:
            UploadResult with ``url`` on success, ``embedded_fallback`` otherwise

        Raises:
            ValidationError: the blob was rejected before uploading
        """
        self.validate(blob, content_type)

        if not self.config.upload_url:
            logger.warning("upload_not_configured", fallback="base64")
            return UploadResult(embedded_fallback=to_data_url(blob, content_type))

        attempts = 0

        async def attempt() -> Dict[str, Any]:
            nonlocal attempts
            attempts += 1
            return await self._upload_once(blob, content_type, filename, on_progress)

        try:
            response = await ErrorRecovery.exponential_backoff(
                attempt,
                max_retries=self.config.max_attempts,
                base_delay=2 * self.config.backoff_base_ms / 1000,
                max_delay=60.0,
                exceptions=(RemoteError,),
                sleep=self.sleep,
            )
        except RemoteError as e:
            logger.warning("upload_failed_using_fallback", attempts=attempts, error=str(e))
            return UploadResult(
                embedded_fallback=to_data_url(blob, content_type),
                attempts=attempts,
            )

        url = response.get("secure_url") or response.get("url")
        return UploadResult(url=url, attempts=attempts, response=response)

    async def _upload_once(
        self,
        blob: bytes,
        content_type: str,
        filename: str,
        on_progress: Optional[ProgressCallback],
    ) -> Dict[str, Any]:
        await self._report(on_progress, 0)

        form = aiohttp.FormData()
        form.add_field("file", blob, filename=filename, content_type=content_type)
        if self.config.upload_preset:
            form.add_field("upload_preset", self.config.upload_preset)

        timeout = aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)
        try:
            if self._session is not None:
                data = await self._post(self._session, form, timeout)
            else:
                async with aiohttp.ClientSession() as session:
                    data = await self._post(session, form, timeout)
        except asyncio.TimeoutError as e:
            raise RemoteError("Upload timeout", cause=e) from e
        except aiohttp.ClientError as e:
            raise RemoteError(f"Network error: {e}", cause=e) from e

        await self._report(on_progress, 100)
        return data

    async def _post(self, session: aiohttp.ClientSession, form: aiohttp.FormData,
                    timeout: aiohttp.ClientTimeout) -> Dict[str, Any]:
        async with session.post(self.config.upload_url, data=form, timeout=timeout) as response:
            if not 200 <= response.status < 300:
                raise RemoteError(f"Upload failed: {response.status}", status=response.status)
            try:
                return await response.json(content_type=None)
            except ValueError as e:
                raise RemoteError("Invalid server response", cause=e) from e

    async def _report(self, callback: Optional[ProgressCallback], percent: int) -> None:
        if callback is None:
            return
        result = callback(percent)
        if inspect.isawaitable(result):
            await result
