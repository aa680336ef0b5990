from __future__ import annotations

import asyncio
import logging
import mimetypes

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.responses import JSONResponse

from .config import AssetType, settings
from .errors import RateLimitExceeded, UploadError
from .keys import owns_key, safe_segment
from .models import ErrorResponse, MediaAssetResponse, VariantResponse
from .orchestrator import MediaAsset, UploadOrchestrator
from .storage import BlobNotFound, BlobStoreError, Storage

logger = logging.getLogger(__name__)


def _build_storage() -> Storage:
    return Storage(
        driver=settings.storage_driver,  # type: ignore[arg-type]
        local_upload_dir=settings.local_upload_dir,
        s3_bucket=settings.s3_bucket,
        aws_region=settings.aws_region,
        public_base_url=settings.public_base_url,
    )


mimetypes.add_type("image/webp", ".webp")
logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(title=settings.api_title)
storage = _build_storage()
orchestrator = UploadOrchestrator.from_settings(settings, store=storage)


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    body = ErrorResponse(error=exc.code, detail=str(exc))
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceeded):
        body.resetAt = exc.reset_at
        retry_after = (exc.reset_at - orchestrator.clock()).total_seconds()
        headers["Retry-After"] = str(max(0, int(retry_after + 0.999)))
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


@app.get("/health")
def health() -> dict:
    return {"ok": True}


def _media_url(request: Request, key: str) -> str:
    return storage.public_url(key) or str(request.url_for("get_media", key=key))


def _asset_response(request: Request, asset: MediaAsset, discard_failed: list[str]) -> MediaAssetResponse:
    policy = orchestrator.policies[asset.asset_type]
    variants = [
        VariantResponse(
            name=spec.name,
            key=asset.variants[spec.name],
            url=_media_url(request, asset.variants[spec.name]),
            width=spec.width,
            height=spec.height,
        )
        for spec in policy.variants
    ]
    return MediaAssetResponse(
        ownerId=asset.owner_id,
        assetType=asset.asset_type.value,
        primaryUrl=_media_url(request, asset.primary_key),
        variants=variants,
        originalKey=asset.original_key,
        originalUrl=_media_url(request, asset.original_key) if asset.original_key else None,
        createdAt=asset.created_at,
        discardFailed=discard_failed,
    )


async def _handle_upload(
    request: Request,
    response: Response,
    *,
    user_id: str | None,
    asset_type: AssetType,
    file: UploadFile,
    replaces: list[str],
) -> MediaAssetResponse:
    # Authentication lives upstream; it hands us the user id in a header.
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")

    try:
        safe_segment(user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid user id") from e
    if any(not owns_key(k, asset_type, user_id, orchestrator.key_prefix) for k in replaces):
        raise HTTPException(status_code=400, detail="replaces contains keys not owned by this user")

    # Read one byte past the limit so oversize uploads are rejected without buffering them whole.
    limit = orchestrator.policies[asset_type].max_bytes
    data = await file.read(limit + 1)

    asset = await orchestrator.submit_upload(user_id, asset_type, data, file.content_type or "")

    discard_failed: list[str] = []
    if replaces:
        discard_failed = await orchestrator.discard_keys(user_id, asset_type, replaces)

    if asset.admission is not None:
        response.headers["X-RateLimit-Limit"] = str(orchestrator.rate_limiter.max_uploads)
        response.headers["X-RateLimit-Remaining"] = str(asset.admission.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(asset.admission.reset_at.timestamp()))
    return _asset_response(request, asset, discard_failed)


@app.post("/v1/users/me/avatar", response_model=MediaAssetResponse)
async def upload_avatar(
    request: Request,
    response: Response,
    avatar: UploadFile = File(...),
    replaces: list[str] = Form(default=[]),
    x_user_id: str | None = Header(default=None),
) -> MediaAssetResponse:
    return await _handle_upload(
        request, response, user_id=x_user_id, asset_type=AssetType.AVATAR, file=avatar, replaces=replaces
    )


@app.post("/v1/users/me/cover", response_model=MediaAssetResponse)
async def upload_cover(
    request: Request,
    response: Response,
    cover: UploadFile = File(...),
    replaces: list[str] = Form(default=[]),
    x_user_id: str | None = Header(default=None),
) -> MediaAssetResponse:
    return await _handle_upload(
        request, response, user_id=x_user_id, asset_type=AssetType.COVER, file=cover, replaces=replaces
    )


@app.get("/v1/media/{key:path}", name="get_media")
async def get_media(key: str) -> Response:
    try:
        data = await asyncio.to_thread(storage.get, key)
    except BlobNotFound as e:
        raise HTTPException(status_code=404, detail="Media not found") from e
    except BlobStoreError as e:
        raise HTTPException(status_code=502, detail="Storage unavailable") from e
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "public, max-age=31536000"})
