from __future__ import annotations

import io
import threading
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

from media_pipeline.config import Settings
from media_pipeline.derivatives import DerivativeGenerator
from media_pipeline.orchestrator import UploadOrchestrator
from media_pipeline.ratelimit import RateLimiter
from media_pipeline.storage import BlobStoreError, Storage


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FlakyStore(Storage):
    """Memory store that fails the Nth put() and records every delete()."""

    def __init__(self, fail_on_put: int | None = None) -> None:
        super().__init__(driver="memory")
        self.fail_on_put = fail_on_put
        self.put_calls = 0
        self.deleted: list[str] = []
        self._count_lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        with self._count_lock:
            self.put_calls += 1
            n = self.put_calls
        if self.fail_on_put is not None and n == self.fail_on_put:
            raise BlobStoreError(f"simulated outage on put #{n}")
        super().put(key, data, content_type)

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        super().delete(key)


def make_image_bytes(size: tuple[int, int] = (800, 600), fmt: str = "PNG", mode: str = "RGB") -> bytes:
    # Alpha below 255: WebP drops a fully opaque alpha channel.
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    im = Image.new(mode, size, color)
    buf = io.BytesIO()
    im.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def app_settings() -> Settings:
    return Settings(storage_driver="memory", s3_prefix="media/")


@pytest.fixture()
def make_orchestrator(clock, app_settings):
    def factory(
        *,
        store: Storage | None = None,
        resizer=None,
        max_uploads: int = 5,
        window_seconds: int = 3600,
        timeout: float = 10.0,
        store_original: bool = False,
        check_key_collisions: bool = False,
    ) -> UploadOrchestrator:
        return UploadOrchestrator(
            store=store if store is not None else Storage(driver="memory"),
            rate_limiter=RateLimiter(max_uploads=max_uploads, window_seconds=window_seconds),
            generator=DerivativeGenerator(max_concurrency=2, resizer=resizer),
            policies=app_settings.policies,
            key_prefix=app_settings.s3_prefix,
            processing_timeout_seconds=timeout,
            store_original=store_original,
            check_key_collisions=check_key_collisions,
            clock=clock,
        )

    return factory
