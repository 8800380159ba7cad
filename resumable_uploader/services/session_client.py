# services/session_client.py
import logging
from typing import Optional, Protocol

import httpx

from resumable_uploader.exceptions import (
    ChunkUploadError,
    OffsetMismatchError,
    SessionInitError,
    StatusQueryError,
)
from resumable_uploader.models.upload_models import ChunkAck, RemoteStatus, SourceDescriptor

logger = logging.getLogger(__name__)

# upload_status values the API reports once every byte is stored
FINISHED_UPLOAD_STATUSES = ("uploaded", "processing", "completed")


class UploadSessionClient(Protocol):
    """Remote operations the transfer engine depends on"""

    async def init(self, descriptor: SourceDescriptor) -> str:
        """Open a session for one transfer attempt and return its id.

        Raises:
            SessionInitError: the remote store rejected the file
        """
        ...

    async def upload_chunk(
        self,
        session_id: str,
        chunk_bytes: bytes,
        chunk_index: int,
        total_chunks: int,
        expected_start_offset: int,
    ) -> ChunkAck:
        """Send one chunk. The ack carries the store's own byte count.

        Raises:
            OffsetMismatchError: the store is not at ``expected_start_offset``
            ChunkUploadError: any other transfer failure
        """
        ...

    async def get_status(self, session_id: str) -> RemoteStatus:
        """Read back how many bytes the store holds for the session, and whether
        the store considers the upload finished.

        Raises:
            StatusQueryError: the status could not be read
        """
        ...


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail")
        if message:
            return str(message)
    return f"API Error: {response.status_code}"


class HttpUploadSessionClient:
    """Talks to the video upload endpoints of the API server"""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        if self.auth_token:
            return {"Authorization": f"Bearer {self.auth_token}"}
        return {}

    async def init(self, descriptor: SourceDescriptor) -> str:
        url = f"{self.base_url}/videos/upload/init"
        data = {
            "file_name": descriptor.file_name,
            "file_size": str(descriptor.file_size),
            "file_type": descriptor.content_type,
        }
        try:
            response = await self._client.post(url, data=data, headers=self._headers())
        except httpx.HTTPError as e:
            raise SessionInitError(f"Upload init failed: {e}") from e

        if response.is_error:
            raise SessionInitError(_error_message(response))

        upload_id = response.json().get("upload_id")
        if not upload_id:
            raise SessionInitError("Upload init response carried no upload_id")
        logger.info(f"Opened upload session {upload_id} for {descriptor.file_name}")
        return upload_id

    async def upload_chunk(
        self,
        session_id: str,
        chunk_bytes: bytes,
        chunk_index: int,
        total_chunks: int,
        expected_start_offset: int,
    ) -> ChunkAck:
        url = f"{self.base_url}/videos/upload/{session_id}/chunk"
        data = {
            # The API numbers chunks from 1
            "chunk_number": str(chunk_index + 1),
            "total_chunks": str(total_chunks),
            "uploaded_bytes": str(expected_start_offset),
        }
        files = {"chunk": ("chunk", chunk_bytes, "application/octet-stream")}
        try:
            response = await self._client.post(
                url, data=data, files=files, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise ChunkUploadError(
                f"Chunk {chunk_index} transfer failed: {e}",
                session_id=session_id,
                chunk_index=chunk_index,
            ) from e

        if response.status_code == httpx.codes.CONFLICT:
            server_offset = None
            try:
                server_offset = response.json().get("uploaded_bytes")
            except ValueError:
                pass
            raise OffsetMismatchError(
                _error_message(response),
                session_id=session_id,
                chunk_index=chunk_index,
                expected_offset=expected_start_offset,
                server_offset=server_offset,
            )
        if response.is_error:
            raise ChunkUploadError(
                _error_message(response),
                session_id=session_id,
                chunk_index=chunk_index,
            )

        body = response.json()
        return ChunkAck(
            uploaded_bytes=body["uploaded_bytes"],
            is_complete=body.get("is_complete", False),
            progress_percentage=body.get("upload_progress"),
        )

    async def get_status(self, session_id: str) -> RemoteStatus:
        url = f"{self.base_url}/videos/upload/{session_id}/status"
        try:
            response = await self._client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise StatusQueryError(
                f"Status query failed: {e}", session_id=session_id
            ) from e

        if response.is_error:
            raise StatusQueryError(_error_message(response), session_id=session_id)

        body = response.json()
        return RemoteStatus(
            uploaded_bytes=body["uploaded_bytes"],
            progress_percentage=body.get("upload_progress"),
            is_complete=body.get("upload_status") in FINISHED_UPLOAD_STATUSES,
        )

    async def aclose(self):
        await self._client.aclose()
