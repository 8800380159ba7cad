# services/transfer_engine.py
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from resumable_uploader.exceptions import (
    ChunkUploadError,
    InvalidStateError,
    OffsetMismatchError,
    UploadError,
    ValidationError,
)
from resumable_uploader.models.upload_models import (
    Chunk,
    OutcomeStatus,
    ProgressSnapshot,
    TransferCheckpoint,
    UploadConfig,
    UploadOutcome,
    UploadSession,
    UploadStatus,
)
from resumable_uploader.services.checkpoint_store import CheckpointStore
from resumable_uploader.services.chunk_splitter import ChunkSplitter, UploadSource
from resumable_uploader.services.progress_reporter import ProgressReporter
from resumable_uploader.services.session_client import UploadSessionClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]
OutcomeCallback = Callable[[UploadOutcome], None]


class _TransferRun:
    """Control signals of one pass of the chunk loop.

    A fresh run is created by every start() and by every resume() that has
    to drive the loop itself, so a cancelled run still waiting on its last
    chunk can never touch the state of the run that replaced it.
    """

    def __init__(self):
        # Set while the loop may dispatch the next chunk
        self.gate = asyncio.Event()
        self.gate.set()
        self.cancelled = False
        self.active = False
        self.parked = False
        self.abort_error: Optional[UploadError] = None
        # Remote store reported the session complete during resume
        self.confirmed = False
        self.outcome: asyncio.Future = asyncio.get_running_loop().create_future()


class TransferEngine:
    """Drives one file through a remote upload session, one chunk at a time.

    States follow ``pending -> uploading <-> paused`` and end in ``uploaded``
    or ``failed``. ``cancel()`` discards the session and returns the engine
    to ``pending`` so a new ``start()`` can begin from scratch.
    """

    def __init__(
        self,
        client: UploadSessionClient,
        config: Optional[UploadConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
    ):
        self.client = client
        self.config = config or UploadConfig()
        self.splitter = ChunkSplitter(self.config.chunk_size)
        self.reporter = ProgressReporter()
        self.on_progress = on_progress
        self.on_outcome = on_outcome
        self.checkpoint_store = checkpoint_store

        self.session: Optional[UploadSession] = None
        self._source: Optional[UploadSource] = None
        self._status = UploadStatus.PENDING
        self._run: Optional[_TransferRun] = None
        self._resuming = False

    @classmethod
    def restore(
        cls,
        client: UploadSessionClient,
        checkpoint: TransferCheckpoint,
        source: Optional[UploadSource] = None,
        config: Optional[UploadConfig] = None,
        **kwargs,
    ) -> "TransferEngine":
        """Rebuild an engine for a transfer interrupted by a process restart.

        The engine comes back ``paused`` (or ``failed`` if the run had failed);
        ``resume()`` then re-synchronizes with the remote store.
        """
        if source is None:
            if not checkpoint.source_path:
                raise ValidationError(
                    "Checkpoint has no source path; pass the source explicitly",
                    session_id=checkpoint.session_id,
                )
            source = UploadSource.from_path(checkpoint.source_path, checkpoint.content_type)
        if source.size != checkpoint.total_size:
            raise ValidationError(
                f"Source is {source.size} bytes but the session expects {checkpoint.total_size}",
                session_id=checkpoint.session_id,
            )

        config = config or UploadConfig()
        if config.chunk_size != checkpoint.chunk_size:
            config = UploadConfig(
                chunk_size=checkpoint.chunk_size,
                max_source_size=max(config.max_source_size, checkpoint.chunk_size),
                content_type_prefix=config.content_type_prefix,
            )

        engine = cls(client, config, **kwargs)
        status = (
            UploadStatus.FAILED
            if checkpoint.status == UploadStatus.FAILED
            else UploadStatus.PAUSED
        )
        engine._source = source
        engine.session = UploadSession(
            session_id=checkpoint.session_id,
            file_name=checkpoint.file_name,
            content_type=checkpoint.content_type,
            total_size=checkpoint.total_size,
            chunk_size=checkpoint.chunk_size,
            uploaded_bytes=checkpoint.uploaded_bytes,
            status=status,
            created_at=checkpoint.created_at,
        )
        engine._status = status
        return engine

    @property
    def status(self) -> UploadStatus:
        return self._status

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None

    @property
    def uploaded_bytes(self) -> int:
        return self.session.uploaded_bytes if self.session else 0

    @property
    def total_size(self) -> int:
        if self.session:
            return self.session.total_size
        if self._source:
            return self._source.size
        return 0

    @property
    def pause_requested(self) -> bool:
        return self._run is not None and not self._run.gate.is_set()

    @property
    def progress(self) -> ProgressSnapshot:
        return self.reporter.snapshot(self._status, self.uploaded_bytes, self.total_size)

    def validate(self, source: UploadSource):
        """Check the source against local policy; never touches the network"""
        if source.size > self.config.max_source_size:
            limit = ProgressReporter.format_bytes(self.config.max_source_size)
            raise ValidationError(f"File size exceeds maximum of {limit}")
        prefix = self.config.content_type_prefix
        if prefix and not source.content_type.startswith(prefix):
            raise ValidationError(
                f"Unsupported file type {source.content_type!r}, expected {prefix}*"
            )

    async def start(self, source: UploadSource) -> UploadOutcome:
        """Open a new session for ``source`` and upload it from the first chunk.

        Returns the outcome once the file is uploaded or the run is cancelled.
        Raises the error that failed the run.
        """
        if self._status not in (UploadStatus.PENDING, UploadStatus.FAILED):
            raise InvalidStateError(f"Cannot start an upload in {self._status.value} state")

        run = self._new_run()
        try:
            self.validate(source)
        except ValidationError as e:
            self._resolve(run, UploadOutcome(status=OutcomeStatus.FAILED, error=e))
            self._run = None
            raise

        abandoned = self.session
        self.session = None
        self._source = source
        self._set_status(UploadStatus.UPLOADING)
        if abandoned and self.checkpoint_store:
            # A failed earlier attempt gives way to a fresh session
            await self.checkpoint_store.delete(abandoned.session_id)
        logger.info(
            f"Starting upload of {source.name} ({ProgressReporter.format_bytes(source.size)})"
        )
        return await self._drive(run, open_session=True)

    def pause(self):
        """Hold the transfer before its next chunk; a chunk in flight still finishes"""
        if self._status == UploadStatus.PAUSED:
            return
        if self._status != UploadStatus.UPLOADING or self._run is None:
            raise InvalidStateError(f"Cannot pause an upload in {self._status.value} state")
        self._run.gate.clear()
        logger.info(f"Pause requested for session {self.session_id}")

    async def resume(self) -> UploadOutcome:
        """Re-synchronize with the remote store and continue the transfer.

        Works from ``paused`` and from ``failed``. The remote byte count always
        replaces the local one before the next chunk is sent.
        """
        run = self._run
        if self._status == UploadStatus.UPLOADING and run is not None and not run.gate.is_set():
            # Pause never took effect; just withdraw it
            run.gate.set()
            return await self._await_outcome(run)

        if self._status not in (UploadStatus.PAUSED, UploadStatus.FAILED):
            raise InvalidStateError(f"Cannot resume an upload in {self._status.value} state")
        if self.session is None:
            raise InvalidStateError("No upload session to resume; start a new upload")
        if self._resuming:
            raise InvalidStateError("Resume already in progress")

        session = self.session
        self._resuming = True
        try:
            remote = await self.client.get_status(session.session_id)
        finally:
            self._resuming = False

        if self.session is not session:
            raise InvalidStateError("Upload was cancelled while resuming")

        parked = run is not None and run.parked and self._status == UploadStatus.PAUSED
        try:
            self._reconcile(remote.uploaded_bytes)
        except OffsetMismatchError as e:
            if parked:
                run.abort_error = e
                run.gate.set()
                return await self._await_outcome(run)
            self._set_status(UploadStatus.FAILED)
            await self._save_checkpoint()
            raise

        self._set_status(UploadStatus.UPLOADING)
        if parked:
            run.confirmed = remote.is_complete
            run.gate.set()
            return await self._await_outcome(run)

        run = self._new_run()
        run.confirmed = remote.is_complete
        return await self._drive(run, open_session=False)

    async def cancel(self):
        """Abandon the transfer and return to ``pending`` with all progress discarded"""
        if self._status == UploadStatus.UPLOADED:
            raise InvalidStateError("Cannot cancel a completed upload")

        session_id = self._discard()
        logger.info(f"Cancelled upload session {session_id}")

        if session_id and self.checkpoint_store:
            await self.checkpoint_store.delete(session_id)

    def _discard(self) -> Optional[str]:
        run = self._run
        if run is not None:
            run.cancelled = True
            run.gate.set()

        session_id = self.session_id
        self._run = None
        self.session = None
        self._source = None
        self._set_status(UploadStatus.PENDING)
        return session_id

    def _new_run(self) -> _TransferRun:
        self._run = _TransferRun()
        return self._run

    def _reconcile(self, server_bytes: int):
        session = self.session
        aligned = server_bytes == session.total_size or self.splitter.is_boundary(server_bytes)
        if server_bytes > session.total_size or not aligned:
            raise OffsetMismatchError(
                f"Remote store holds {server_bytes} bytes, which is not a chunk "
                f"boundary of a {session.total_size} byte upload",
                session_id=session.session_id,
                expected_offset=session.uploaded_bytes,
                server_offset=server_bytes,
            )
        if server_bytes != session.uploaded_bytes:
            logger.warning(
                f"Session {session.session_id}: local offset {session.uploaded_bytes} "
                f"replaced by remote offset {server_bytes}"
            )
        session.uploaded_bytes = server_bytes
        self._notify()

    async def _drive(self, run: _TransferRun, open_session: bool) -> UploadOutcome:
        run.active = True
        try:
            if open_session:
                await self._open_session(run)
            outcome = await self._transfer(run)
        except asyncio.CancelledError:
            # The task driving the loop was cancelled from outside
            if (
                not run.cancelled
                and run is self._run
                and self._status != UploadStatus.UPLOADED
            ):
                self._discard()
            self._resolve(run, self._cancelled_outcome())
            raise
        except Exception as e:
            if run.cancelled:
                outcome = self._cancelled_outcome()
            else:
                logger.error(f"Upload session {self.session_id} failed: {e}")
                self._set_status(UploadStatus.FAILED)
                try:
                    await self._save_checkpoint()
                except Exception as save_error:
                    logger.error(
                        f"Could not checkpoint failed session {self.session_id}: {save_error}"
                    )
                outcome = UploadOutcome(
                    status=OutcomeStatus.FAILED, session_id=self.session_id, error=e
                )
        finally:
            run.active = False

        self._resolve(run, outcome)
        if outcome.error is not None:
            raise outcome.error
        return outcome

    async def _open_session(self, run: _TransferRun):
        source = self._source
        session_id = await self.client.init(source.describe())
        if run.cancelled:
            return
        self.session = UploadSession(
            session_id=session_id,
            file_name=source.name,
            content_type=source.content_type,
            total_size=source.size,
            chunk_size=self.config.chunk_size,
            status=self._status,
        )
        await self._save_checkpoint()

    async def _transfer(self, run: _TransferRun) -> UploadOutcome:
        if run.cancelled:
            return self._cancelled_outcome()

        session = self.session
        total_chunks = self.splitter.count(session.total_size)
        if total_chunks == 0:
            return await self._complete(session)

        while True:
            if not run.gate.is_set():
                await self._park(run)
            if run.cancelled:
                return self._cancelled_outcome()
            if run.abort_error is not None:
                raise run.abort_error

            if run.confirmed:
                return await self._complete(session)
            if session.uploaded_bytes >= session.total_size:
                raise ChunkUploadError(
                    "Every chunk was sent but the remote store has not confirmed completion",
                    session_id=session.session_id,
                )
            index = self.splitter.index_for_offset(session.uploaded_bytes)
            chunk = self.splitter.chunk_at(session.total_size, index)

            data = await self._read(chunk)
            if run.cancelled:
                return self._cancelled_outcome()

            logger.debug(
                f"Session {session.session_id}: sending chunk {chunk.index + 1}/{total_chunks} "
                f"at offset {session.uploaded_bytes}"
            )
            ack = await self.client.upload_chunk(
                session.session_id,
                data,
                chunk.index,
                total_chunks,
                session.uploaded_bytes,
            )
            if run.cancelled:
                return self._cancelled_outcome()

            if ack.is_complete:
                session.uploaded_bytes = ack.uploaded_bytes
                return await self._complete(session)

            if ack.uploaded_bytes != chunk.end:
                raise OffsetMismatchError(
                    f"Remote store acknowledged {ack.uploaded_bytes} bytes, "
                    f"expected {chunk.end}",
                    session_id=session.session_id,
                    chunk_index=chunk.index,
                    expected_offset=chunk.end,
                    server_offset=ack.uploaded_bytes,
                )
            session.uploaded_bytes = chunk.end
            self._notify()
            await self._save_checkpoint()

    async def _park(self, run: _TransferRun):
        run.parked = True
        self._set_status(UploadStatus.PAUSED)
        await self._save_checkpoint()
        logger.info(
            f"Session {self.session_id} paused at {self.uploaded_bytes}/{self.total_size} bytes"
        )
        try:
            await run.gate.wait()
        finally:
            run.parked = False

    async def _read(self, chunk: Chunk) -> bytes:
        try:
            return await asyncio.to_thread(self._source.read_range, chunk)
        except OSError as e:
            raise ChunkUploadError(
                f"Could not read chunk {chunk.index}: {e}",
                session_id=self.session_id,
                chunk_index=chunk.index,
            ) from e

    async def _complete(self, session: UploadSession) -> UploadOutcome:
        self._set_status(UploadStatus.UPLOADED)
        if self.checkpoint_store:
            await self.checkpoint_store.delete(session.session_id)
        logger.info(
            f"Upload session {session.session_id} completed "
            f"({ProgressReporter.format_bytes(session.uploaded_bytes)})"
        )
        return UploadOutcome(status=OutcomeStatus.UPLOADED, session_id=session.session_id)

    def _cancelled_outcome(self) -> UploadOutcome:
        return UploadOutcome(status=OutcomeStatus.CANCELLED)

    async def _await_outcome(self, run: _TransferRun) -> UploadOutcome:
        outcome = await asyncio.shield(run.outcome)
        if outcome.error is not None:
            raise outcome.error
        return outcome

    def _resolve(self, run: _TransferRun, outcome: UploadOutcome):
        if run.outcome.done():
            return
        run.outcome.set_result(outcome)
        if self.on_outcome:
            self.on_outcome(outcome)

    def _set_status(self, status: UploadStatus):
        self._status = status
        if self.session:
            self.session.status = status
        self._notify()

    def _notify(self):
        if self.on_progress:
            self.on_progress(self.progress)

    async def _save_checkpoint(self):
        if not self.checkpoint_store or not self.session:
            return
        session = self.session
        checkpoint = TransferCheckpoint(
            session_id=session.session_id,
            file_name=session.file_name,
            source_path=self._source.path if self._source else None,
            content_type=session.content_type,
            total_size=session.total_size,
            chunk_size=session.chunk_size,
            uploaded_bytes=session.uploaded_bytes,
            status=self._status,
            created_at=session.created_at,
            updated_at=datetime.now(),
        )
        await self.checkpoint_store.save(checkpoint)
