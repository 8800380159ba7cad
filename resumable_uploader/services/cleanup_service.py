# services/cleanup_service.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from resumable_uploader.models.upload_models import UploadStatus
from resumable_uploader.services.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)


class CleanupService:
    """Periodically drops stale checkpoints and abandoned S3 multipart uploads"""

    def __init__(
        self,
        checkpoint_store: CheckpointStore,
        s3_client=None,
        bucket_name: Optional[str] = None,
        interval: timedelta = timedelta(hours=6),
        max_age: timedelta = timedelta(days=7),
        failed_max_age: timedelta = timedelta(days=2),
    ):
        self.checkpoint_store = checkpoint_store
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.interval = interval
        self.max_age = max_age
        self.failed_max_age = failed_max_age

    async def start_cleanup_scheduler(self):
        """Start the cleanup scheduler"""
        while True:
            try:
                await self.cleanup_stale_checkpoints()
                await self.cleanup_incomplete_uploads()

                await asyncio.sleep(self.interval.total_seconds())

            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                break
            except Exception as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(60)  # Wait 1 minute before retrying

    async def cleanup_stale_checkpoints(self) -> int:
        """Remove checkpoints nobody is going to resume any more"""
        now = datetime.now()
        cleaned_count = 0

        for session_id, checkpoint in await self.checkpoint_store.list_all():
            if checkpoint is None:
                should_cleanup = True
                logger.info(f"Cleaning up unreadable checkpoint {session_id}")
            else:
                age = now - checkpoint.updated_at.replace(tzinfo=None)
                should_cleanup = False
                if age > self.max_age:
                    # Always cleanup very old checkpoints regardless of status
                    should_cleanup = True
                    logger.info(
                        f"Cleaning up very old checkpoint {session_id} (age: {age.days} days)"
                    )
                elif age > self.failed_max_age and checkpoint.status == UploadStatus.FAILED:
                    should_cleanup = True
                    logger.info(f"Cleaning up failed checkpoint {session_id}")

            if should_cleanup:
                await self.checkpoint_store.delete(session_id)
                cleaned_count += 1

        logger.info(f"Checkpoint cleanup completed. Cleaned {cleaned_count} checkpoints")
        return cleaned_count

    async def cleanup_incomplete_uploads(self) -> int:
        """Abort incomplete S3 multipart uploads left behind by cancelled transfers"""
        if self.s3_client is None:
            return 0

        logger.info("Starting S3 incomplete uploads cleanup")
        cutoff_date = datetime.now() - self.max_age

        response = await asyncio.to_thread(
            self.s3_client.list_multipart_uploads,
            Bucket=self.bucket_name,
            Prefix="uploads/",
        )

        cleanup_count = 0
        for upload in response.get("Uploads", []):
            initiated_date = upload["Initiated"]
            if initiated_date.tzinfo is not None:
                initiated_date = initiated_date.replace(tzinfo=None)

            if initiated_date < cutoff_date:
                await asyncio.to_thread(
                    self.s3_client.abort_multipart_upload,
                    Bucket=self.bucket_name,
                    Key=upload["Key"],
                    UploadId=upload["UploadId"],
                )
                cleanup_count += 1
                logger.info(f"Aborted stale upload: {upload['Key']}")

        logger.info(f"Cleaned up {cleanup_count} incomplete S3 uploads")
        return cleanup_count
