# services/progress_reporter.py
import math

from resumable_uploader.models.upload_models import ProgressSnapshot, UploadStatus

_SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


class ProgressReporter:
    """Projects engine state into what a person watching the upload sees"""

    @staticmethod
    def percentage(uploaded_bytes: int, total_size: int) -> int:
        # An empty file has nothing left to send
        if total_size <= 0:
            return 100
        # Round half up, not to even
        value = math.floor(uploaded_bytes * 100 / total_size + 0.5)
        return max(0, min(100, value))

    def snapshot(
        self, status: UploadStatus, uploaded_bytes: int, total_size: int
    ) -> ProgressSnapshot:
        return ProgressSnapshot(
            status=status,
            uploaded_bytes=uploaded_bytes,
            total_size=total_size,
            percentage=self.percentage(uploaded_bytes, total_size),
        )

    @staticmethod
    def format_bytes(size: int) -> str:
        if size <= 0:
            return "0 Bytes"
        i = 0
        while size >= 1024 ** (i + 1) and i < len(_SIZE_UNITS) - 1:
            i += 1
        value = round(size / 1024 ** i, 2)
        if value == int(value):
            value = int(value)
        return f"{value} {_SIZE_UNITS[i]}"
