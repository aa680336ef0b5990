from __future__ import annotations

import logging
import os
import threading
from typing import Literal, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

StorageDriver = Literal["memory", "local", "s3"]

CACHE_CONTROL = "public, max-age=31536000, immutable"


class BlobStoreError(Exception):
    pass


class BlobNotFound(KeyError):
    pass


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str | None = None) -> None: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...


class Storage:
    """
    Opaque key/value blob store backed by memory, a local directory or S3.

    delete() is idempotent on every driver. Low-level errors surface as
    BlobStoreError; missing keys on get() as BlobNotFound.
    """

    def __init__(
        self,
        *,
        driver: StorageDriver,
        local_upload_dir: str | None = None,
        s3_bucket: str | None = None,
        aws_region: str | None = None,
        public_base_url: str | None = None,
        s3_client=None,
    ) -> None:
        if driver not in ("memory", "local", "s3"):
            raise ValueError(f"Unknown STORAGE_DRIVER '{driver}'")
        self.driver = driver
        self.local_upload_dir = os.path.abspath(local_upload_dir) if local_upload_dir else None
        self.s3_bucket = s3_bucket
        self.aws_region = aws_region
        self.public_base_url = public_base_url.rstrip("/") + "/" if public_base_url else None

        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

        self._s3 = None
        if self.driver == "local" and not self.local_upload_dir:
            raise ValueError("LOCAL_UPLOAD_DIR is required when STORAGE_DRIVER=local")
        if self.driver == "s3":
            if not self.s3_bucket:
                raise ValueError("S3_BUCKET is required when STORAGE_DRIVER=s3")
            self._s3 = s3_client or boto3.client("s3", region_name=self.aws_region)

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        if self.driver == "memory":
            with self._lock:
                self._blobs[key] = bytes(data)
            return

        if self.driver == "local":
            path = self._local_path_from_key(key)
            try:
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, "wb") as f:
                    f.write(data)
            except OSError as e:
                raise BlobStoreError(f"local write failed for {key}: {e}") from e
            return

        extra = {"CacheControl": CACHE_CONTROL}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._s3.put_object(Bucket=self.s3_bucket, Key=key, Body=data, **extra)
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"s3 put failed for {key}: {e}") from e

    def get(self, key: str) -> bytes:
        if self.driver == "memory":
            with self._lock:
                if key not in self._blobs:
                    raise BlobNotFound(key)
                return self._blobs[key]

        if self.driver == "local":
            path = self._local_path_from_key(key)
            try:
                with open(path, "rb") as f:
                    return f.read()
            except FileNotFoundError as e:
                raise BlobNotFound(key) from e
            except OSError as e:
                raise BlobStoreError(f"local read failed for {key}: {e}") from e

        try:
            obj = self._s3.get_object(Bucket=self.s3_bucket, Key=key)
        except ClientError as e:
            if _s3_error_code(e) in ("NoSuchKey", "404"):
                raise BlobNotFound(key) from e
            raise BlobStoreError(f"s3 get failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"s3 get failed for {key}: {e}") from e
        return obj["Body"].read()

    def delete(self, key: str) -> None:
        if self.driver == "memory":
            with self._lock:
                self._blobs.pop(key, None)
            return

        if self.driver == "local":
            try:
                os.remove(self._local_path_from_key(key))
            except FileNotFoundError:
                pass
            except OSError as e:
                raise BlobStoreError(f"local delete failed for {key}: {e}") from e
            return

        # S3 DeleteObject already succeeds for missing keys.
        try:
            self._s3.delete_object(Bucket=self.s3_bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"s3 delete failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        if self.driver == "memory":
            with self._lock:
                return key in self._blobs

        if self.driver == "local":
            return os.path.isfile(self._local_path_from_key(key))

        try:
            self._s3.head_object(Bucket=self.s3_bucket, Key=key)
            return True
        except ClientError as e:
            if _s3_error_code(e) in ("404", "NoSuchKey", "NotFound"):
                return False
            raise BlobStoreError(f"s3 head failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"s3 head failed for {key}: {e}") from e

    def keys(self) -> list[str]:
        """Keys held by the memory driver."""
        if self.driver != "memory":
            raise RuntimeError("keys() is only available for STORAGE_DRIVER=memory")
        with self._lock:
            return sorted(self._blobs)

    def public_url(self, key: str) -> str | None:
        return f"{self.public_base_url}{key}" if self.public_base_url else None

    def _local_path_from_key(self, key: str) -> str:
        root = self.local_upload_dir
        path = os.path.abspath(os.path.join(root, key))
        if os.path.commonpath([root, path]) != root or path == root:
            raise BlobStoreError(f"Key escapes the upload directory: {key}")
        return path


def _s3_error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))
