import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from resumable_uploader.exceptions import OffsetMismatchError
from resumable_uploader.models.upload_models import (
    ChunkAck,
    ProgressSnapshot,
    RemoteStatus,
    SourceDescriptor,
    UploadStatus,
)
from resumable_uploader.services.chunk_splitter import UploadSource

MiB = 1024 * 1024


class FakeRemoteStore:
    """In-memory remote store that honours the upload session contract"""

    def __init__(self):
        self.sessions: Dict[str, dict] = {}
        self.init_calls: List[SourceDescriptor] = []
        self.dispatches: List[dict] = []
        self.status_calls: List[str] = []
        self.init_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.status_override: Optional[int] = None
        # chunk index -> exception raised once for that chunk
        self.chunk_errors: Dict[int, Exception] = {}
        # called with the chunk index before the ack is returned
        self.on_chunk: Optional[Callable] = None
        # chunk index -> event the upload waits on before it is accepted
        self.chunk_gates: Dict[int, asyncio.Event] = {}
        self.complete_after: Optional[int] = None
        self.never_complete = False

    async def init(self, descriptor: SourceDescriptor) -> str:
        self.init_calls.append(descriptor)
        if self.init_error is not None:
            raise self.init_error
        session_id = f"session-{len(self.init_calls)}"
        self.sessions[session_id] = {
            "total": descriptor.file_size,
            "received": 0,
            "data": bytearray(),
        }
        return session_id

    async def upload_chunk(
        self, session_id, chunk_bytes, chunk_index, total_chunks, expected_start_offset
    ) -> ChunkAck:
        self.dispatches.append(
            {
                "session_id": session_id,
                "index": chunk_index,
                "total_chunks": total_chunks,
                "offset": expected_start_offset,
                "length": len(chunk_bytes),
            }
        )
        gate = self.chunk_gates.get(chunk_index)
        if gate is not None:
            await gate.wait()
        error = self.chunk_errors.pop(chunk_index, None)
        if error is not None:
            raise error

        session = self.sessions[session_id]
        if expected_start_offset != session["received"]:
            raise OffsetMismatchError(
                "offset mismatch",
                session_id=session_id,
                chunk_index=chunk_index,
                expected_offset=expected_start_offset,
                server_offset=session["received"],
            )
        session["received"] += len(chunk_bytes)
        session["data"].extend(chunk_bytes)

        if self.on_chunk is not None:
            self.on_chunk(chunk_index)

        if self.never_complete:
            is_complete = False
        elif self.complete_after is not None:
            is_complete = chunk_index >= self.complete_after
        else:
            is_complete = session["received"] == session["total"]
        return ChunkAck(uploaded_bytes=session["received"], is_complete=is_complete)

    async def get_status(self, session_id: str) -> RemoteStatus:
        self.status_calls.append(session_id)
        if self.status_error is not None:
            raise self.status_error
        received = self.sessions[session_id]["received"]
        if self.status_override is not None:
            received = self.status_override
            self.sessions[session_id]["received"] = received
            del self.sessions[session_id]["data"][received:]
        is_complete = not self.never_complete and received == self.sessions[session_id]["total"]
        return RemoteStatus(uploaded_bytes=received, is_complete=is_complete)


class ProgressLog:
    def __init__(self):
        self.snapshots: List[ProgressSnapshot] = []
        self._waiters: Dict[UploadStatus, asyncio.Event] = {}

    def __call__(self, snapshot: ProgressSnapshot):
        self.snapshots.append(snapshot)
        event = self._waiters.get(snapshot.status)
        if event is not None:
            event.set()

    async def wait_for(self, status: UploadStatus, timeout: float = 2.0):
        event = self._waiters.setdefault(status, asyncio.Event())
        if status in self.statuses:
            return
        await asyncio.wait_for(event.wait(), timeout)

    @property
    def statuses(self) -> List[UploadStatus]:
        return [s.status for s in self.snapshots]


def make_source(size: int, name: str = "clip.mp4", content_type: str = "video/mp4"):
    data = (bytes(range(251)) * (size // 251 + 1))[:size]
    return UploadSource.from_bytes(name, data, content_type), data


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def progress_log():
    return ProgressLog()


@pytest.fixture
def video_12mib():
    return make_source(12 * MiB)
