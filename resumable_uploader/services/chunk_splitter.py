# services/chunk_splitter.py
import io
import math
import mimetypes
import os
from typing import Callable, BinaryIO, Iterator, Optional

from resumable_uploader.models.upload_models import CHUNK_SIZE, Chunk, SourceDescriptor


class UploadSource:
    """Byte-addressable file to upload, opened afresh for every read"""

    def __init__(
        self,
        name: str,
        size: int,
        content_type: str,
        opener: Callable[[], BinaryIO],
        path: Optional[str] = None,
    ):
        self.name = name
        self.size = size
        self.content_type = content_type
        self.path = path
        self._opener = opener

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "UploadSource":
        path = os.fspath(path)
        if content_type is None:
            content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        return cls(
            name=os.path.basename(path),
            size=os.path.getsize(path),
            content_type=content_type,
            opener=lambda: open(path, "rb"),
            path=path,
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes, content_type: str) -> "UploadSource":
        return cls(
            name=name,
            size=len(data),
            content_type=content_type,
            opener=lambda: io.BytesIO(data),
        )

    def describe(self) -> SourceDescriptor:
        return SourceDescriptor(
            file_name=self.name,
            file_size=self.size,
            content_type=self.content_type,
        )

    def read_range(self, chunk: Chunk) -> bytes:
        with self._opener() as fh:
            fh.seek(chunk.start)
            data = fh.read(chunk.length)
        if len(data) != chunk.length:
            raise IOError(
                f"Short read for chunk {chunk.index}: "
                f"expected {chunk.length} bytes, got {len(data)}"
            )
        return data


class ChunkSequence:
    """Restartable view over the chunks of a source; every iteration starts at index 0"""

    def __init__(self, splitter: "ChunkSplitter", total_size: int):
        self._splitter = splitter
        self.total_size = total_size

    def __iter__(self) -> Iterator[Chunk]:
        return self._splitter.iter_chunks(self.total_size)

    def __len__(self) -> int:
        return self._splitter.count(self.total_size)


class ChunkSplitter:
    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def split(self, total_size: int) -> ChunkSequence:
        if total_size < 0:
            raise ValueError("total_size cannot be negative")
        return ChunkSequence(self, total_size)

    def iter_chunks(self, total_size: int, first_index: int = 0) -> Iterator[Chunk]:
        for index in range(first_index, self.count(total_size)):
            yield self.chunk_at(total_size, index)

    def count(self, total_size: int) -> int:
        return math.ceil(total_size / self.chunk_size)

    def chunk_at(self, total_size: int, index: int) -> Chunk:
        if index < 0 or index >= self.count(total_size):
            raise IndexError(f"Chunk index {index} out of range")
        start = index * self.chunk_size
        end = min(start + self.chunk_size, total_size)
        return Chunk(index=index, start=start, end=end)

    def index_for_offset(self, offset: int) -> int:
        return offset // self.chunk_size

    def is_boundary(self, offset: int) -> bool:
        return offset % self.chunk_size == 0
