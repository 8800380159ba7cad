# exceptions.py
from typing import Optional


class UploadError(Exception):
    """Base class for every error raised by the upload engine and its clients"""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class ValidationError(UploadError):
    """Source or configuration failed a local policy check before any network call"""


class SessionInitError(UploadError):
    """Remote store refused to open an upload session"""


class ChunkUploadError(UploadError):
    """A single chunk transfer failed"""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
    ):
        super().__init__(message, session_id)
        self.chunk_index = chunk_index


class OffsetMismatchError(ChunkUploadError):
    """Remote store holds a different byte offset than the client expected"""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        expected_offset: Optional[int] = None,
        server_offset: Optional[int] = None,
    ):
        super().__init__(message, session_id, chunk_index)
        self.expected_offset = expected_offset
        self.server_offset = server_offset


class StatusQueryError(UploadError):
    """Session status could not be read back from the remote store"""


class InvalidStateError(UploadError):
    """Control call is not allowed in the engine's current state"""
