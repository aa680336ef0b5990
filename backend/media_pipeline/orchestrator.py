from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping

from .config import AssetPolicy, AssetType, Settings
from .derivatives import DerivativeGenerator
from .errors import ProcessingTimeout, StorageFailure, UploadError
from .keys import new_storage_key, owns_key, safe_segment
from .ratelimit import Admission, RateLimiter
from .storage import BlobStore, Storage
from .validation import validate_upload

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadState(str, Enum):
    VALIDATING = "validating"
    ADMITTING = "admitting"
    GENERATING = "generating"
    PERSISTING = "persisting"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadRequest:
    user_id: str
    asset_type: AssetType
    raw_bytes: bytes
    declared_mime_type: str

    @property
    def size_bytes(self) -> int:
        return len(self.raw_bytes)


@dataclass(frozen=True)
class MediaAsset:
    owner_id: str
    asset_type: AssetType
    variants: Mapping[str, str]
    created_at: datetime
    original_key: str | None = None
    admission: Admission | None = field(default=None, compare=False, repr=False)

    @property
    def primary_key(self) -> str:
        # Last configured variant is the largest rendition.
        return list(self.variants.values())[-1]

    def all_keys(self) -> list[str]:
        keys = list(self.variants.values())
        if self.original_key:
            keys.append(self.original_key)
        return keys


@dataclass
class _Run:
    """Mutable bookkeeping for one submit_upload call."""

    request: UploadRequest
    state: UploadState = UploadState.VALIDATING
    admission: Admission | None = None
    # Keys handed to the blob store, in order, whether or not put() returned.
    issued_keys: list[str] = field(default_factory=list)
    # put() calls still running in worker threads.
    inflight: list[asyncio.Future] = field(default_factory=list)

    def enter(self, state: UploadState) -> None:
        self.state = state
        logger.debug(
            "upload user=%s type=%s state=%s", self.request.user_id, self.request.asset_type.value, state.value
        )


class UploadOrchestrator:
    """
    validate -> admit -> generate -> persist -> commit, all or nothing.

    Callers see either a complete MediaAsset or an UploadError. On any failure
    after admission the persisted keys are deleted and the rate-limit slot is
    given back before the error propagates.
    """

    def __init__(
        self,
        *,
        store: BlobStore,
        rate_limiter: RateLimiter,
        generator: DerivativeGenerator,
        policies: Mapping[AssetType, AssetPolicy],
        key_prefix: str = "",
        processing_timeout_seconds: float = 30.0,
        store_original: bool = False,
        check_key_collisions: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.generator = generator
        self.policies = policies
        self.key_prefix = key_prefix
        self.processing_timeout_seconds = processing_timeout_seconds
        self.store_original = store_original
        self.check_key_collisions = check_key_collisions
        self.clock = clock

    @classmethod
    def from_settings(cls, s: Settings, *, store: BlobStore | None = None) -> UploadOrchestrator:
        if store is None:
            store = Storage(
                driver=s.storage_driver,  # type: ignore[arg-type]
                local_upload_dir=s.local_upload_dir,
                s3_bucket=s.s3_bucket,
                aws_region=s.aws_region,
                public_base_url=s.public_base_url,
            )
        return cls(
            store=store,
            rate_limiter=RateLimiter(max_uploads=s.rate_limit_max_uploads, window_seconds=s.rate_limit_window_seconds),
            generator=DerivativeGenerator(
                target_format=s.target_image_format,
                max_concurrency=s.variant_max_concurrency,
                quality=s.webp_quality,
                max_image_pixels=s.max_image_pixels,
                original_max_side=s.original_max_side,
            ),
            policies=s.policies,
            key_prefix=s.s3_prefix,
            processing_timeout_seconds=s.processing_timeout_seconds,
            store_original=s.store_original,
            check_key_collisions=s.check_key_collisions,
        )

    async def submit_upload(
        self,
        user_id: str,
        asset_type: AssetType,
        raw_bytes: bytes,
        declared_mime_type: str,
    ) -> MediaAsset:
        # Refuse ids that cannot be a storage namespace before any quota is spent.
        safe_segment(user_id)
        run = _Run(
            request=UploadRequest(
                user_id=user_id,
                asset_type=AssetType(asset_type),
                raw_bytes=bytes(raw_bytes),
                declared_mime_type=declared_mime_type,
            )
        )
        req = run.request

        try:
            validate_upload(req.declared_mime_type, req.size_bytes, req.asset_type, self.policies)
            run.enter(UploadState.ADMITTING)
            run.admission = self.rate_limiter.try_admit(req.user_id, req.asset_type, self.clock())
        except UploadError as e:
            run.enter(UploadState.FAILED)
            logger.info("upload rejected user=%s type=%s reason=%s", req.user_id, req.asset_type.value, e.code)
            raise

        try:
            asset = await asyncio.wait_for(self._process(run), timeout=self.processing_timeout_seconds)
        except asyncio.TimeoutError:
            await self._rollback(run, "timeout")
            raise ProcessingTimeout(self.processing_timeout_seconds) from None
        except asyncio.CancelledError:
            # Caller went away; undo before propagating the cancellation.
            await asyncio.shield(self._rollback(run, "cancelled"))
            raise
        except UploadError as e:
            await self._rollback(run, e.code)
            raise
        except Exception:
            await self._rollback(run, "error")
            raise

        run.enter(UploadState.COMMITTED)
        logger.info(
            "upload committed user=%s type=%s variants=%d remaining=%d",
            req.user_id,
            req.asset_type.value,
            len(asset.variants),
            run.admission.remaining,
        )
        return asset

    async def _process(self, run: _Run) -> MediaAsset:
        req = run.request
        policy = self.policies[req.asset_type]

        run.enter(UploadState.GENERATING)
        rendered = await self.generator.generate(req.raw_bytes, policy.variants)
        original = await self.generator.render_original(req.raw_bytes) if self.store_original else None

        run.enter(UploadState.PERSISTING)
        variants: dict[str, str] = {}
        for spec in policy.variants:
            variants[spec.name] = await self._persist(run, spec.name, rendered[spec.name])
        original_key = await self._persist(run, None, original) if original is not None else None

        return MediaAsset(
            owner_id=req.user_id,
            asset_type=req.asset_type,
            variants=MappingProxyType(variants),
            created_at=self.clock(),
            original_key=original_key,
            admission=run.admission,
        )

    async def _persist(self, run: _Run, variant_name: str | None, data: bytes) -> str:
        req = run.request
        key = new_storage_key(
            req.asset_type,
            req.user_id,
            variant_name,
            now=self.clock(),
            ext=self.generator.extension,
            prefix=self.key_prefix,
        )
        try:
            if self.check_key_collisions and await asyncio.to_thread(self.store.exists, key):
                raise StorageFailure(key, "key already exists")
            run.issued_keys.append(key)
            put = asyncio.ensure_future(
                asyncio.to_thread(self.store.put, key, data, f"image/{self.generator.target_format}")
            )
            run.inflight.append(put)
            # Rollback waits for in-flight writes before deleting.
            await asyncio.shield(put)
        except StorageFailure:
            raise
        except Exception as e:
            # Any store error, typed or not, surfaces as StorageFailure.
            raise StorageFailure(key, e) from e
        return key

    async def _rollback(self, run: _Run, reason: str) -> None:
        req = run.request
        run.enter(UploadState.FAILED)
        if run.inflight:
            await asyncio.gather(*run.inflight, return_exceptions=True)
        for key in run.issued_keys:
            try:
                await asyncio.to_thread(self.store.delete, key)
            except Exception as e:
                logger.warning("rollback delete failed key=%s: %s", key, e)
        if run.admission is not None:
            self.rate_limiter.release(req.user_id, req.asset_type, run.admission)
        logger.info(
            "upload failed user=%s type=%s reason=%s removed=%d",
            req.user_id,
            req.asset_type.value,
            reason,
            len(run.issued_keys),
        )

    async def discard_asset(self, asset: MediaAsset) -> list[str]:
        """Delete a previous asset's blobs, e.g. after its replacement committed."""
        return await self.discard_keys(asset.owner_id, asset.asset_type, asset.all_keys())

    async def discard_keys(self, user_id: str, asset_type: AssetType, keys: list[str]) -> list[str]:
        """
        Best-effort delete of keys owned by user_id for asset_type.

        Raises ValueError, deleting nothing, if any key is not normalized or
        lives outside the owner's namespace. Returns the keys whose delete failed.
        """
        foreign = [k for k in keys if not owns_key(k, asset_type, user_id, self.key_prefix)]
        if foreign:
            raise ValueError(f"Keys not owned by {user_id}/{AssetType(asset_type).value}: {foreign}")

        failed: list[str] = []
        for key in keys:
            try:
                await asyncio.to_thread(self.store.delete, key)
            except Exception as e:
                logger.warning("discard failed key=%s: %s", key, e)
                failed.append(key)
        return failed
