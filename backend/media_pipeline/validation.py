from __future__ import annotations

from typing import Mapping

from .config import AssetPolicy, AssetType
from .errors import FileTooLarge, InvalidMimeType


def normalize_mime_type(mime_type: str | None) -> str:
    # "image/PNG; charset=binary" -> "image/png"
    return (mime_type or "").split(";", 1)[0].strip().lower()


def validate_upload(
    declared_mime_type: str | None,
    size_bytes: int,
    asset_type: AssetType,
    policies: Mapping[AssetType, AssetPolicy],
) -> None:
    """
    Check the declared content type and size against the asset type's policy.

    The declared type is trusted here; the decoder downstream rejects bytes that
    are not actually an image. Raises InvalidMimeType or FileTooLarge.
    """
    policy = policies[AssetType(asset_type)]

    mime = normalize_mime_type(declared_mime_type)
    if mime not in policy.allowed_mime_types:
        raise InvalidMimeType(declared_mime_type or "", policy.allowed_mime_types)

    if size_bytes > policy.max_bytes:
        raise FileTooLarge(size_bytes, policy.max_bytes)
