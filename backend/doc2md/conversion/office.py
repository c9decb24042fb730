"""Office documents -> PDF through an external document renderer (Google Drive export)."""
import json
import logging
import uuid
from typing import Optional, Protocol

import httpx

from doc2md import config
from doc2md.conversion.formats import classify
from doc2md.conversion.models import Route
from doc2md.errors import ConfigurationMissing, UnsupportedFormat, UpstreamCallFailed

logger = logging.getLogger("doc2md.office")


class OfficeConverter(Protocol):
    def is_configured(self) -> bool: ...

    async def to_pdf(self, data: bytes, media_type: str) -> bytes: ...


class DriveOfficeConverter:
    """Uploads the document as a Google-native file, exports it as PDF, then deletes the upload.

    The remote temporary file is deleted on every exit path. Failures are not
    retried: a retry would create another remote file.
    """

    backend_name = "Google Drive"

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_url: str = config.DRIVE_API_URL,
        upload_url: str = config.DRIVE_UPLOAD_URL,
        timeout: float = config.DRIVE_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = config.DRIVE_ACCESS_TOKEN if access_token is None else access_token
        self.api_url = api_url
        self.upload_url = upload_url
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.access_token)

    async def to_pdf(self, data: bytes, media_type: str) -> bytes:
        classification = classify(media_type)
        if classification.route is not Route.CONVERT or classification.info is None:
            raise UnsupportedFormat(f"Not an office document: {media_type}")
        if not self.is_configured():
            raise ConfigurationMissing(
                f"{classification.info.name} files need the office converter (set DRIVE_ACCESS_TOKEN)"
            )

        headers = {"Authorization": f"Bearer {self.access_token}"}
        async with httpx.AsyncClient(timeout=self.timeout, headers=headers, transport=self._transport) as client:
            file_id = await self._upload(client, data, media_type, classification.info.import_as)
            try:
                return await self._export(client, file_id)
            finally:
                await self._delete(client, file_id)

    async def _upload(self, client: httpx.AsyncClient, data: bytes, media_type: str, import_as: str) -> str:
        metadata = {"name": f"doc2md-temp-{uuid.uuid4().hex[:12]}", "mimeType": import_as}
        boundary = f"doc2md-{uuid.uuid4().hex}"
        body = b"".join([
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
            json.dumps(metadata).encode("utf-8"),
            f"\r\n--{boundary}\r\nContent-Type: {media_type}\r\n\r\n".encode(),
            data,
            f"\r\n--{boundary}--\r\n".encode(),
        ])
        try:
            response = await client.post(
                f"{self.upload_url}/files",
                params={"uploadType": "multipart", "fields": "id"},
                content=body,
                headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamCallFailed(self.backend_name, f"upload failed: {_describe(e)}") from e
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamCallFailed(self.backend_name, "upload returned an unreadable response") from e
        file_id = payload.get("id") if isinstance(payload, dict) else None
        if not file_id:
            raise UpstreamCallFailed(self.backend_name, "upload returned no file id")
        logger.info("Uploaded temporary document %s for PDF export", file_id)
        return file_id

    async def _export(self, client: httpx.AsyncClient, file_id: str) -> bytes:
        try:
            response = await client.get(
                f"{self.api_url}/files/{file_id}/export",
                params={"mimeType": "application/pdf"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamCallFailed(self.backend_name, f"PDF export failed: {_describe(e)}") from e
        return response.content

    async def _delete(self, client: httpx.AsyncClient, file_id: str) -> None:
        try:
            response = await client.delete(f"{self.api_url}/files/{file_id}")
            response.raise_for_status()
            logger.info("Deleted temporary document %s", file_id)
        except httpx.HTTPError as e:
            logger.warning("Could not delete temporary document %s: %s", file_id, _describe(e))


def _describe(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    return str(exc) or exc.__class__.__name__
