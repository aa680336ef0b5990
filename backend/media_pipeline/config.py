from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class AssetType(str, Enum):
    AVATAR = "avatar"
    COVER = "cover"


@dataclass(frozen=True)
class VariantSpec:
    name: str
    width: int
    height: int


@dataclass(frozen=True)
class AssetPolicy:
    max_bytes: int
    allowed_mime_types: frozenset[str]
    variants: tuple[VariantSpec, ...]


MIB = 1024 * 1024

IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})

AVATAR_VARIANTS = (
    VariantSpec("thumbnail", 64, 64),
    VariantSpec("small", 128, 128),
    VariantSpec("medium", 256, 256),
    VariantSpec("large", 512, 512),
)

COVER_VARIANTS = (
    VariantSpec("small", 640, 160),
    VariantSpec("medium", 1280, 320),
    VariantSpec("large", 1920, 480),
)


@dataclass(frozen=True)
class Settings:
    api_title: str = "media upload pipeline"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Storage
    storage_driver: str = os.getenv("STORAGE_DRIVER", "local")  # memory | local | s3
    local_upload_dir: str = os.getenv("LOCAL_UPLOAD_DIR", os.path.abspath("./data/media"))

    s3_bucket: str | None = os.getenv("S3_BUCKET") or None
    aws_region: str | None = os.getenv("AWS_REGION") or None
    # Namespace prefix prepended to every storage key.
    s3_prefix: str = os.getenv("S3_PREFIX", "media/")
    public_base_url: str | None = os.getenv("PUBLIC_BASE_URL") or None

    # Validation
    avatar_max_bytes: int = int(os.getenv("AVATAR_MAX_BYTES", str(5 * MIB)))
    cover_max_bytes: int = int(os.getenv("COVER_MAX_BYTES", str(10 * MIB)))

    # Rate limiting (fixed window per user and asset type)
    rate_limit_max_uploads: int = int(os.getenv("UPLOAD_RATE_LIMIT_MAX", "5"))
    rate_limit_window_seconds: int = int(os.getenv("UPLOAD_RATE_LIMIT_WINDOW_SECONDS", "3600"))

    # Processing
    processing_timeout_seconds: float = float(os.getenv("PROCESSING_TIMEOUT_SECONDS", "30"))
    variant_max_concurrency: int = int(os.getenv("VARIANT_MAX_CONCURRENCY", str(os.cpu_count() or 2)))
    target_image_format: str = os.getenv("TARGET_IMAGE_FORMAT", "webp")
    webp_quality: int = int(os.getenv("WEBP_QUALITY", "85"))
    # Pillow's decompression-bomb guard; ~50 megapixels.
    max_image_pixels: int = int(os.getenv("MAX_IMAGE_PIXELS", "50000000"))

    store_original: bool = _env_flag("STORE_ORIGINAL")
    original_max_side: int = int(os.getenv("ORIGINAL_MAX_SIDE", "2048"))
    check_key_collisions: bool = _env_flag("CHECK_KEY_COLLISIONS")

    policies: dict[AssetType, AssetPolicy] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.policies:
            object.__setattr__(self, "policies", default_policies(self))

    def policy_for(self, asset_type: AssetType) -> AssetPolicy:
        return self.policies[AssetType(asset_type)]


def default_policies(s: Settings) -> dict[AssetType, AssetPolicy]:
    return {
        AssetType.AVATAR: AssetPolicy(
            max_bytes=s.avatar_max_bytes,
            allowed_mime_types=IMAGE_MIME_TYPES,
            variants=AVATAR_VARIANTS,
        ),
        AssetType.COVER: AssetPolicy(
            max_bytes=s.cover_max_bytes,
            allowed_mime_types=IMAGE_MIME_TYPES,
            variants=COVER_VARIANTS,
        ),
    }


settings = Settings()
