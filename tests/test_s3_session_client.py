from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from resumable_uploader.exceptions import (
    ChunkUploadError,
    OffsetMismatchError,
    SessionInitError,
    StatusQueryError,
)
from resumable_uploader.models.upload_models import SourceDescriptor
from resumable_uploader.services.s3_session_client import S3MultipartSessionClient


def client_error(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, operation)


@pytest.fixture
def mock_redis():
    """Dict-backed stand-in for the handful of redis calls in use"""
    data = {}
    client = MagicMock()
    client.data = data
    client.get.side_effect = lambda key: data.get(key)
    client.setex.side_effect = lambda key, ttl, value: data.__setitem__(key, value)
    client.delete.side_effect = lambda key: data.pop(key, None)
    return client


@pytest.fixture
def mock_s3_client():
    client = MagicMock()
    client.parts = []

    client.create_multipart_upload.return_value = {"UploadId": "mock-upload-id-12345"}

    def upload_part(**kwargs):
        etag = f'"etag-{kwargs["PartNumber"]}"'
        client.parts.append(
            {"PartNumber": kwargs["PartNumber"], "ETag": etag, "Size": len(kwargs["Body"])}
        )
        return {"ETag": etag}

    client.upload_part.side_effect = upload_part
    client.list_parts.side_effect = lambda **kwargs: {"Parts": list(client.parts)}
    client.complete_multipart_upload.return_value = {
        "ETag": '"final-etag-hash"',
        "Location": "https://bucket.s3.amazonaws.com/path/to/file",
    }
    return client


@pytest.fixture
def s3_session_client(mock_s3_client, mock_redis):
    return S3MultipartSessionClient(mock_s3_client, "test-bucket", mock_redis)


@pytest.fixture
def descriptor():
    return SourceDescriptor(file_name="lesson.mp4", file_size=12, content_type="video/mp4")


class TestInit:
    async def test_creates_multipart_upload(self, s3_session_client, mock_s3_client, mock_redis, descriptor):
        session_id = await s3_session_client.init(descriptor)

        kwargs = mock_s3_client.create_multipart_upload.call_args.kwargs
        assert kwargs["Bucket"] == "test-bucket"
        assert kwargs["Key"] == f"uploads/{session_id}_lesson.mp4"
        assert kwargs["ContentType"] == "video/mp4"
        assert kwargs["Metadata"]["file-size"] == "12"
        assert f"s3_upload:{session_id}" in mock_redis.data
        ttl = mock_redis.setex.call_args.args[1]
        assert ttl == int(timedelta(days=7).total_seconds())

    async def test_empty_file_is_stored_directly(self, s3_session_client, mock_s3_client):
        descriptor = SourceDescriptor(file_name="empty.mp4", file_size=0, content_type="video/mp4")

        session_id = await s3_session_client.init(descriptor)
        status = await s3_session_client.get_status(session_id)

        mock_s3_client.put_object.assert_called_once()
        mock_s3_client.create_multipart_upload.assert_not_called()
        assert status.uploaded_bytes == 0

    async def test_rejection(self, s3_session_client, mock_s3_client, descriptor):
        mock_s3_client.create_multipart_upload.side_effect = client_error("CreateMultipartUpload")

        with pytest.raises(SessionInitError):
            await s3_session_client.init(descriptor)


class TestUploadChunk:
    async def test_parts_follow_chunk_indexes_and_complete(self, s3_session_client, mock_s3_client, descriptor):
        session_id = await s3_session_client.init(descriptor)

        first = await s3_session_client.upload_chunk(session_id, b"01234", 0, 3, 0)
        second = await s3_session_client.upload_chunk(session_id, b"56789", 1, 3, 5)
        last = await s3_session_client.upload_chunk(session_id, b"ab", 2, 3, 10)

        part_numbers = [c.kwargs["PartNumber"] for c in mock_s3_client.upload_part.call_args_list]
        assert part_numbers == [1, 2, 3]
        assert (first.uploaded_bytes, first.is_complete) == (5, False)
        assert (second.uploaded_bytes, second.is_complete) == (10, False)
        assert (last.uploaded_bytes, last.is_complete) == (12, True)
        assert last.progress_percentage == 100

        parts = mock_s3_client.complete_multipart_upload.call_args.kwargs["MultipartUpload"]["Parts"]
        assert parts == [
            {"PartNumber": 1, "ETag": '"etag-1"'},
            {"PartNumber": 2, "ETag": '"etag-2"'},
            {"PartNumber": 3, "ETag": '"etag-3"'},
        ]

    async def test_offset_mismatch_is_detected_before_upload(self, s3_session_client, mock_s3_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        await s3_session_client.upload_chunk(session_id, b"01234", 0, 3, 0)

        with pytest.raises(OffsetMismatchError) as exc_info:
            await s3_session_client.upload_chunk(session_id, b"56789", 1, 3, 0)

        assert exc_info.value.server_offset == 5
        assert exc_info.value.expected_offset == 0
        assert mock_s3_client.upload_part.call_count == 1

    async def test_unknown_session(self, s3_session_client):
        with pytest.raises(ChunkUploadError, match="Session not found"):
            await s3_session_client.upload_chunk("missing", b"x", 0, 1, 0)

    async def test_part_failure(self, s3_session_client, mock_s3_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        mock_s3_client.upload_part.side_effect = client_error("UploadPart")

        with pytest.raises(ChunkUploadError) as exc_info:
            await s3_session_client.upload_chunk(session_id, b"01234", 0, 3, 0)

        assert exc_info.value.chunk_index == 0

    async def test_completed_session_rejects_more_chunks(self, s3_session_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        await s3_session_client.upload_chunk(session_id, b"0123456789ab", 0, 1, 0)

        with pytest.raises(ChunkUploadError, match="already completed"):
            await s3_session_client.upload_chunk(session_id, b"x", 1, 1, 12)


class TestGetStatus:
    async def test_sums_stored_parts(self, s3_session_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        await s3_session_client.upload_chunk(session_id, b"01234", 0, 3, 0)

        status = await s3_session_client.get_status(session_id)

        assert status.uploaded_bytes == 5
        assert status.progress_percentage == 42

    async def test_follows_truncated_part_listing(self, s3_session_client, mock_s3_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        pages = [
            {"Parts": [{"PartNumber": 1, "ETag": "a", "Size": 5}], "IsTruncated": True, "NextPartNumberMarker": 1},
            {"Parts": [{"PartNumber": 2, "ETag": "b", "Size": 5}], "IsTruncated": False},
        ]
        mock_s3_client.list_parts.side_effect = lambda **kwargs: pages.pop(0)

        status = await s3_session_client.get_status(session_id)

        assert status.uploaded_bytes == 10
        assert mock_s3_client.list_parts.call_args.kwargs["PartNumberMarker"] == 1

    async def test_unknown_session(self, s3_session_client):
        with pytest.raises(StatusQueryError):
            await s3_session_client.get_status("missing")

    async def test_listing_failure(self, s3_session_client, mock_s3_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        mock_s3_client.list_parts.side_effect = client_error("ListParts")

        with pytest.raises(StatusQueryError):
            await s3_session_client.get_status(session_id)

    async def test_finishes_upload_whose_completion_failed(self, s3_session_client, mock_s3_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        await s3_session_client.upload_chunk(session_id, b"01234", 0, 3, 0)
        await s3_session_client.upload_chunk(session_id, b"56789", 1, 3, 5)
        mock_s3_client.complete_multipart_upload.side_effect = client_error("CompleteMultipartUpload")
        with pytest.raises(ChunkUploadError):
            await s3_session_client.upload_chunk(session_id, b"ab", 2, 3, 10)

        mock_s3_client.complete_multipart_upload.side_effect = None
        status = await s3_session_client.get_status(session_id)

        assert status.uploaded_bytes == 12
        assert status.is_complete
        assert mock_s3_client.complete_multipart_upload.call_count == 2
        parts = mock_s3_client.complete_multipart_upload.call_args.kwargs["MultipartUpload"]["Parts"]
        assert [p["PartNumber"] for p in parts] == [1, 2, 3]

        # Later queries read the stored record instead of completing again
        assert (await s3_session_client.get_status(session_id)).is_complete
        assert mock_s3_client.complete_multipart_upload.call_count == 2

    async def test_partial_upload_is_not_complete(self, s3_session_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        await s3_session_client.upload_chunk(session_id, b"01234", 0, 3, 0)

        status = await s3_session_client.get_status(session_id)

        assert not status.is_complete

    async def test_completed_session_reports_full_size(self, s3_session_client, mock_s3_client, descriptor):
        session_id = await s3_session_client.init(descriptor)
        await s3_session_client.upload_chunk(session_id, b"0123456789ab", 0, 1, 0)
        mock_s3_client.list_parts.side_effect = client_error("ListParts")

        status = await s3_session_client.get_status(session_id)

        assert status.uploaded_bytes == 12
