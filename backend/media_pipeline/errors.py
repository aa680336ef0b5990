from __future__ import annotations

from datetime import datetime
from typing import Iterable


class UploadError(Exception):
    """Base class for every failure ``submit_upload`` can report."""

    status_code = 400
    code = "upload_error"


class InvalidMimeType(UploadError):
    status_code = 415
    code = "invalid_mime_type"

    def __init__(self, mime_type: str, allowed: Iterable[str]) -> None:
        self.mime_type = mime_type
        self.allowed = sorted(allowed)
        super().__init__(f"Unsupported content type '{mime_type}'. Allowed: {', '.join(self.allowed)}")


class FileTooLarge(UploadError):
    status_code = 413
    code = "file_too_large"

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        super().__init__(f"File is {size_bytes} bytes; max is {max_bytes} bytes")


class RateLimitExceeded(UploadError):
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, reset_at: datetime) -> None:
        self.reset_at = reset_at
        super().__init__(f"Upload limit reached; try again after {reset_at.isoformat()}")


class ProcessingFailure(UploadError):
    status_code = 422
    code = "processing_failure"

    def __init__(self, variant: str, cause: BaseException | str) -> None:
        self.variant = variant
        self.cause = cause
        super().__init__(f"Failed to render variant '{variant}': {cause}")


class StorageFailure(UploadError):
    status_code = 503
    code = "storage_failure"

    def __init__(self, key: str, cause: BaseException | str) -> None:
        self.key = key
        self.cause = cause
        super().__init__(f"Failed to store '{key}': {cause}")


class ProcessingTimeout(UploadError):
    status_code = 504
    code = "processing_timeout"

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Upload processing exceeded {timeout_seconds:g}s")
