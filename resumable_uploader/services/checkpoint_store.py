# services/checkpoint_store.py
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from pydantic import ValidationError

from resumable_uploader.models.upload_models import TransferCheckpoint, UploadStatus

logger = logging.getLogger(__name__)

KEY_PREFIX = "upload_checkpoint"


class CheckpointStore:
    """Keeps engine checkpoints in redis so a restarted process can resume"""

    def __init__(self, redis_client, ttl_days: int = 7):
        self.redis_client = redis_client
        self.ttl = timedelta(days=ttl_days)

    @staticmethod
    def key_for(session_id: str) -> str:
        return f"{KEY_PREFIX}:{session_id}"

    async def save(self, checkpoint: TransferCheckpoint):
        await asyncio.to_thread(
            self.redis_client.setex,
            self.key_for(checkpoint.session_id),
            int(self.ttl.total_seconds()),
            checkpoint.model_dump_json(),
        )

    async def load(self, session_id: str) -> Optional[TransferCheckpoint]:
        data = await asyncio.to_thread(self.redis_client.get, self.key_for(session_id))
        if not data:
            return None
        return TransferCheckpoint.model_validate_json(data)

    async def delete(self, session_id: str):
        await asyncio.to_thread(self.redis_client.delete, self.key_for(session_id))

    async def list_all(self) -> List[Tuple[str, Optional[TransferCheckpoint]]]:
        """Every stored checkpoint keyed by session id; unreadable entries come back as None"""
        keys = await asyncio.to_thread(self.redis_client.keys, f"{KEY_PREFIX}:*")

        entries = []
        for key in keys:
            if isinstance(key, bytes):
                key = key.decode()
            session_id = key.split(":", 1)[1]
            data = await asyncio.to_thread(self.redis_client.get, key)
            if not data:
                continue
            try:
                checkpoint = TransferCheckpoint.model_validate_json(data)
            except ValidationError:
                logger.warning(f"Unreadable checkpoint stored under {key}")
                checkpoint = None
            entries.append((session_id, checkpoint))
        return entries

    async def list_active(self) -> List[TransferCheckpoint]:
        """Checkpoints of transfers that can still be resumed"""
        return [
            checkpoint
            for _, checkpoint in await self.list_all()
            if checkpoint is not None
            and checkpoint.status not in (UploadStatus.UPLOADED, UploadStatus.PENDING)
        ]
