# services/transfer_manager.py
import asyncio
import logging
from typing import Coroutine, Dict, List, Optional, Set
from uuid import uuid4

from resumable_uploader.exceptions import InvalidStateError, UploadError
from resumable_uploader.models.upload_models import (
    UploadConfig,
    UploadOutcome,
    UploadStatus,
)
from resumable_uploader.services.checkpoint_store import CheckpointStore
from resumable_uploader.services.chunk_splitter import UploadSource
from resumable_uploader.services.session_client import UploadSessionClient
from resumable_uploader.services.transfer_engine import TransferEngine

logger = logging.getLogger(__name__)


class Transfer:
    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        self.engine: Optional[TransferEngine] = None
        self.task: Optional[asyncio.Task] = None
        self.outcome: Optional[UploadOutcome] = None
        self.last_error: Optional[str] = None

    @property
    def finished(self) -> bool:
        """Uploaded or cancelled, with nothing left running"""
        if self.task is not None and not self.task.done():
            return False
        return self.engine.status in (UploadStatus.UPLOADED, UploadStatus.PENDING)

    def record_outcome(self, outcome: UploadOutcome):
        self.outcome = outcome
        if outcome.error is not None:
            self.last_error = str(outcome.error)

    def describe(self) -> dict:
        progress = self.engine.progress
        return {
            "transfer_id": self.transfer_id,
            "session_id": self.engine.session_id,
            "status": progress.status.value,
            "uploaded_bytes": progress.uploaded_bytes,
            "total_size": progress.total_size,
            "percentage": progress.percentage,
            "pause_requested": self.engine.pause_requested,
            "outcome": self.outcome.status.value if self.outcome else None,
            "error": self.last_error,
        }


class TransferManager:
    """Runs engines in the background on behalf of the control API"""

    def __init__(
        self,
        client: UploadSessionClient,
        config: Optional[UploadConfig] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        max_finished: int = 100,
    ):
        self.client = client
        self.config = config or UploadConfig()
        self.checkpoint_store = checkpoint_store
        self.max_finished = max_finished
        self._transfers: Dict[str, Transfer] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _register(self, transfer: Transfer):
        self._transfers[transfer.transfer_id] = transfer
        self._prune()

    def _prune(self):
        # Oldest finished transfers go first; dicts keep insertion order
        finished = [tid for tid, t in self._transfers.items() if t.finished]
        excess = len(finished) - self.max_finished
        for transfer_id in finished[:max(excess, 0)]:
            del self._transfers[transfer_id]
            logger.debug(f"Dropped finished transfer {transfer_id}")

    def _engine_for(self, transfer: Transfer) -> TransferEngine:
        return TransferEngine(
            self.client,
            self.config,
            on_outcome=transfer.record_outcome,
            checkpoint_store=self.checkpoint_store,
        )

    def _spawn(self, transfer: Transfer, coro: Coroutine):
        task = asyncio.create_task(self._run(transfer, coro))
        transfer.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, transfer: Transfer, coro: Coroutine):
        try:
            await coro
        except UploadError as e:
            transfer.last_error = str(e)
            logger.error(f"Transfer {transfer.transfer_id} stopped: {e}")
        except Exception as e:
            transfer.last_error = str(e)
            logger.error(f"Unexpected error in transfer {transfer.transfer_id}: {e}")

    def get(self, transfer_id: str) -> Transfer:
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            raise KeyError(transfer_id)
        return transfer

    def list_active(self) -> List[Transfer]:
        return [
            t
            for t in self._transfers.values()
            if t.engine.status != UploadStatus.UPLOADED
        ]

    def submit(self, source: UploadSource) -> Transfer:
        """Validate ``source`` and start uploading it in the background"""
        transfer = Transfer(str(uuid4()))
        transfer.engine = self._engine_for(transfer)
        transfer.engine.validate(source)
        self._spawn(transfer, transfer.engine.start(source))
        self._register(transfer)
        logger.info(f"Transfer {transfer.transfer_id} submitted for {source.name}")
        return transfer

    async def restore(self, session_id: str) -> Transfer:
        """Rebuild a transfer from its checkpoint and resume it"""
        if self.checkpoint_store is None:
            raise InvalidStateError("Checkpoints are not enabled")
        checkpoint = await self.checkpoint_store.load(session_id)
        if checkpoint is None:
            raise KeyError(session_id)

        transfer = Transfer(str(uuid4()))
        transfer.engine = TransferEngine.restore(
            self.client,
            checkpoint,
            config=self.config,
            on_outcome=transfer.record_outcome,
            checkpoint_store=self.checkpoint_store,
        )
        self._spawn(transfer, transfer.engine.resume())
        self._register(transfer)
        return transfer

    def pause(self, transfer_id: str) -> Transfer:
        transfer = self.get(transfer_id)
        transfer.engine.pause()
        return transfer

    def resume(self, transfer_id: str) -> Transfer:
        transfer = self.get(transfer_id)
        engine = transfer.engine
        resumable = engine.status in (UploadStatus.PAUSED, UploadStatus.FAILED)
        if not resumable and not engine.pause_requested:
            raise InvalidStateError(f"Cannot resume an upload in {engine.status.value} state")
        transfer.last_error = None
        self._spawn(transfer, engine.resume())
        return transfer

    async def cancel(self, transfer_id: str) -> Transfer:
        transfer = self.get(transfer_id)
        await transfer.engine.cancel()
        return transfer

    async def shutdown(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
