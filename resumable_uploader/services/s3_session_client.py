# services/s3_session_client.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from resumable_uploader.exceptions import (
    ChunkUploadError,
    OffsetMismatchError,
    SessionInitError,
    StatusQueryError,
)
from resumable_uploader.models.upload_models import ChunkAck, RemoteStatus, SourceDescriptor
from resumable_uploader.services.progress_reporter import ProgressReporter

logger = logging.getLogger(__name__)

RECORD_PREFIX = "s3_upload"


class S3UploadRecord(BaseModel):
    session_id: str
    s3_key: str
    upload_id: Optional[str] = None
    file_size: int
    content_type: str
    completed: bool = False
    created_at: datetime


class S3MultipartSessionClient:
    """Uses an S3 multipart upload as the remote session.

    Every chunk becomes one part (part number = chunk index + 1). The bytes
    S3 reports through ``list_parts`` are the authoritative offset, so the
    chunk size must respect S3's 5MB minimum part size for every part but the
    last.
    """

    def __init__(self, s3_client, bucket_name: str, redis_client, record_ttl_days: int = 7):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.redis_client = redis_client
        self.record_ttl = timedelta(days=record_ttl_days)

    async def init(self, descriptor: SourceDescriptor) -> str:
        session_id = str(uuid4())
        s3_key = f"uploads/{session_id}_{descriptor.file_name}"
        record = S3UploadRecord(
            session_id=session_id,
            s3_key=s3_key,
            file_size=descriptor.file_size,
            content_type=descriptor.content_type,
            created_at=datetime.now(),
        )

        try:
            if descriptor.file_size == 0:
                # S3 will not complete a multipart upload with no parts
                await asyncio.to_thread(
                    self.s3_client.put_object,
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    Body=b"",
                    ContentType=descriptor.content_type,
                )
                record.completed = True
            else:
                response = await asyncio.to_thread(
                    self.s3_client.create_multipart_upload,
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    ContentType=descriptor.content_type,
                    Metadata={
                        "session-id": session_id,
                        "original-filename": descriptor.file_name,
                        "file-size": str(descriptor.file_size),
                    },
                )
                record.upload_id = response["UploadId"]
        except (BotoCoreError, ClientError) as e:
            raise SessionInitError(f"S3 rejected upload init: {e}") from e

        await self._store_record(record)
        logger.info(f"Created S3 upload {record.upload_id} at {s3_key}")
        return session_id

    async def upload_chunk(
        self,
        session_id: str,
        chunk_bytes: bytes,
        chunk_index: int,
        total_chunks: int,
        expected_start_offset: int,
    ) -> ChunkAck:
        record = await self._get_record(session_id)
        if record is None:
            raise ChunkUploadError(
                "Session not found", session_id=session_id, chunk_index=chunk_index
            )
        if record.completed:
            raise ChunkUploadError(
                "Session already completed", session_id=session_id, chunk_index=chunk_index
            )

        try:
            parts = await self._list_parts(record)
            stored_bytes = sum(p["Size"] for p in parts)
            if stored_bytes != expected_start_offset:
                raise OffsetMismatchError(
                    f"S3 holds {stored_bytes} bytes, client expected {expected_start_offset}",
                    session_id=session_id,
                    chunk_index=chunk_index,
                    expected_offset=expected_start_offset,
                    server_offset=stored_bytes,
                )

            part_number = chunk_index + 1
            response = await asyncio.to_thread(
                self.s3_client.upload_part,
                Bucket=self.bucket_name,
                Key=record.s3_key,
                UploadId=record.upload_id,
                PartNumber=part_number,
                Body=chunk_bytes,
            )
            parts.append(
                {"PartNumber": part_number, "ETag": response["ETag"], "Size": len(chunk_bytes)}
            )
            uploaded_bytes = stored_bytes + len(chunk_bytes)

            is_complete = uploaded_bytes >= record.file_size
            if is_complete:
                await self._complete(record, parts)
        except (BotoCoreError, ClientError) as e:
            raise ChunkUploadError(
                f"S3 part upload failed: {e}",
                session_id=session_id,
                chunk_index=chunk_index,
            ) from e

        return ChunkAck(
            uploaded_bytes=uploaded_bytes,
            is_complete=is_complete,
            progress_percentage=ProgressReporter.percentage(uploaded_bytes, record.file_size),
        )

    async def get_status(self, session_id: str) -> RemoteStatus:
        record = await self._get_record(session_id)
        if record is None:
            raise StatusQueryError("Session not found", session_id=session_id)

        if record.completed:
            uploaded_bytes = record.file_size
        else:
            try:
                parts = await self._list_parts(record)
                uploaded_bytes = sum(p["Size"] for p in parts)
                if uploaded_bytes >= record.file_size:
                    # Every part is stored but completion never went through
                    await self._complete(record, parts)
            except (BotoCoreError, ClientError) as e:
                raise StatusQueryError(
                    f"S3 status query failed: {e}", session_id=session_id
                ) from e

        return RemoteStatus(
            uploaded_bytes=uploaded_bytes,
            progress_percentage=ProgressReporter.percentage(uploaded_bytes, record.file_size),
            is_complete=record.completed,
        )

    async def _list_parts(self, record: S3UploadRecord) -> List[dict]:
        parts = []
        kwargs = {
            "Bucket": self.bucket_name,
            "Key": record.s3_key,
            "UploadId": record.upload_id,
        }
        while True:
            response = await asyncio.to_thread(self.s3_client.list_parts, **kwargs)
            parts.extend(
                {"PartNumber": p["PartNumber"], "ETag": p["ETag"], "Size": p["Size"]}
                for p in response.get("Parts", [])
            )
            if not response.get("IsTruncated"):
                break
            kwargs["PartNumberMarker"] = response["NextPartNumberMarker"]
        return parts

    async def _complete(self, record: S3UploadRecord, parts: List[dict]):
        sorted_parts = sorted(
            ({"PartNumber": p["PartNumber"], "ETag": p["ETag"]} for p in parts),
            key=lambda x: x["PartNumber"],
        )
        await asyncio.to_thread(
            self.s3_client.complete_multipart_upload,
            Bucket=self.bucket_name,
            Key=record.s3_key,
            UploadId=record.upload_id,
            MultipartUpload={"Parts": sorted_parts},
        )
        record.completed = True
        await self._store_record(record)
        logger.info(f"Completed S3 upload {record.upload_id} at {record.s3_key}")

    async def _get_record(self, session_id: str) -> Optional[S3UploadRecord]:
        data = await asyncio.to_thread(self.redis_client.get, f"{RECORD_PREFIX}:{session_id}")
        if not data:
            return None
        return S3UploadRecord.model_validate_json(data)

    async def _store_record(self, record: S3UploadRecord):
        await asyncio.to_thread(
            self.redis_client.setex,
            f"{RECORD_PREFIX}:{record.session_id}",
            int(self.record_ttl.total_seconds()),
            record.model_dump_json(),
        )
