# models/upload_models.py
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional
from datetime import datetime
from enum import Enum

CHUNK_SIZE = 5 * 1024 * 1024  # 5MB chunks
MAX_SOURCE_SIZE = 500 * 1024 * 1024


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    UPLOADED = "uploaded"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    UPLOADED = "uploaded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UploadConfig(BaseModel):
    """Tunable transfer policy, checked before a session is opened"""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = Field(default=CHUNK_SIZE, gt=0)
    max_source_size: int = Field(default=MAX_SOURCE_SIZE, gt=0)
    # None disables the type check
    content_type_prefix: Optional[str] = "video/"

    @model_validator(mode="after")
    def _chunk_fits_policy(self):
        if self.chunk_size > self.max_source_size:
            raise ValueError("chunk_size cannot exceed max_source_size")
        return self


class SourceDescriptor(BaseModel):
    file_name: str
    file_size: int = Field(ge=0)
    content_type: str


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    start: int = Field(ge=0)
    end: int = Field(ge=0)

    @property
    def length(self) -> int:
        return self.end - self.start


class ChunkAck(BaseModel):
    uploaded_bytes: int = Field(ge=0)
    is_complete: bool = False
    progress_percentage: Optional[int] = None


class RemoteStatus(BaseModel):
    uploaded_bytes: int = Field(ge=0)
    progress_percentage: Optional[int] = None
    # The store has every byte and has closed the session
    is_complete: bool = False


class UploadSession(BaseModel):
    session_id: str
    file_name: str
    content_type: str
    total_size: int = Field(ge=0)
    chunk_size: int = Field(gt=0)
    uploaded_bytes: int = 0
    status: UploadStatus = UploadStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.now)


class ProgressSnapshot(BaseModel):
    status: UploadStatus
    uploaded_bytes: int
    total_size: int
    percentage: int


class UploadOutcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: OutcomeStatus
    session_id: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.UPLOADED


class TransferCheckpoint(BaseModel):
    session_id: str
    file_name: str
    source_path: Optional[str] = None
    content_type: str
    total_size: int
    chunk_size: int
    uploaded_bytes: int = 0
    status: UploadStatus
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
