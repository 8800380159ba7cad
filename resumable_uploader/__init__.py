from resumable_uploader.exceptions import (
    ChunkUploadError,
    InvalidStateError,
    OffsetMismatchError,
    SessionInitError,
    StatusQueryError,
    UploadError,
    ValidationError,
)
from resumable_uploader.models.upload_models import (
    Chunk,
    ProgressSnapshot,
    UploadConfig,
    UploadOutcome,
    UploadSession,
    UploadStatus,
)
from resumable_uploader.services.chunk_splitter import ChunkSplitter, UploadSource
from resumable_uploader.services.progress_reporter import ProgressReporter
from resumable_uploader.services.session_client import (
    HttpUploadSessionClient,
    UploadSessionClient,
)
from resumable_uploader.services.transfer_engine import TransferEngine

__version__ = "0.1.0"
