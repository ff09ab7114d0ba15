"""
Uploader Service - streams one archive to an HTTP upload endpoint.

The multipart body is generated chunk by chunk from disk so large
archives never sit in memory, and so progress and cancellation can be
checked between chunks.
"""
from pathlib import Path
from typing import AsyncIterator, Optional
import logging
import mimetypes
import time
import uuid

import httpx

from ..errors import OperationCancelled, PermanentItemError, TransientItemError
from ..protocols import UploadProgressCallback
from ..utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
URL_FIELDS = ("url", "download_url", "downloadUrl", "link")


class HTTPUploader:
    """
    Uploads a file as multipart/form-data and returns its download URL.

    Usage:
        uploader = HTTPUploader("https://host.example/upload")
        url = await uploader.upload(path, progress_callback, token)
    """

    def __init__(
        self,
        endpoint: str,
        field_name: str = "file",
        timeout: float = 7200.0,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._endpoint = endpoint
        self._field_name = field_name
        self._timeout = timeout
        self._headers = headers or {}
        self._transport = transport

    async def _body(
        self,
        path: Path,
        boundary: str,
        progress_callback: Optional[UploadProgressCallback],
        cancel_token: Optional[CancellationToken],
    ) -> AsyncIterator[bytes]:
        head, tail = self._envelope(path, boundary)
        total = path.stat().st_size
        sent = 0

        yield head
        with open(path, "rb") as f:
            while True:
                if cancel_token is not None and cancel_token.is_cancelled:
                    raise OperationCancelled(cancel_token.reason)
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                sent += len(chunk)
                yield chunk
                if progress_callback:
                    progress_callback(sent / total if total else 1.0, sent, total)
        yield tail

    def _envelope(self, path: Path, boundary: str):
        """Multipart header and trailer around the file bytes."""
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        head = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{self._field_name}"; filename="{path.name}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode()
        tail = f"\r\n--{boundary}--\r\n".encode()
        return head, tail

    @staticmethod
    def extract_url(data) -> Optional[str]:
        """Find a download URL in a JSON response."""
        if isinstance(data, dict):
            for key in URL_FIELDS:
                if isinstance(data.get(key), str) and data[key]:
                    return data[key]
            for value in data.values():
                found = HTTPUploader.extract_url(value)
                if found:
                    return found
        elif isinstance(data, list):
            for value in data:
                found = HTTPUploader.extract_url(value)
                if found:
                    return found
        return None

    async def upload(
        self,
        path: Path,
        progress_callback: Optional[UploadProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> Optional[str]:
        path = Path(path)
        if not path.is_file():
            raise PermanentItemError(f"Archive not found: {path}")

        boundary = uuid.uuid4().hex
        head, tail = self._envelope(path, boundary)
        headers = dict(self._headers)
        headers["Content-Type"] = f"multipart/form-data; boundary={boundary}"
        headers["Content-Length"] = str(len(head) + path.stat().st_size + len(tail))

        started = time.monotonic()
        logger.info(f"Uploading {path.name} ({path.stat().st_size / (1024 * 1024):.1f} MB)")
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._endpoint,
                    content=self._body(path, boundary, progress_callback, cancel_token),
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise TransientItemError(f"Upload timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientItemError(f"Network error: {e}") from e

        if response.status_code >= 400:
            message = f"HTTP {response.status_code}: {response.text[:200]}"
            if response.status_code < 500 and response.status_code not in (408, 429):
                raise PermanentItemError(message)
            raise TransientItemError(message)

        try:
            url = self.extract_url(response.json())
        except ValueError:
            text = response.text.strip()
            url = text if text.startswith("http") else None

        logger.info(f"Upload of {path.name} finished in {time.monotonic() - started:.1f}s")
        return url
