from __future__ import annotations

import posixpath
import re
import secrets
from datetime import datetime

from .config import AssetType

# 12 random bytes = 96 bits; never go below 80.
DEFAULT_TOKEN_BYTES = 12
MIN_TOKEN_BYTES = 10

# Dot-separated runs of [A-Za-z0-9_-]: no empty, leading or trailing dot parts.
_SAFE_SEGMENT = re.compile(r"[A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*")


def safe_segment(value: str) -> str:
    """
    Return value unchanged if it can be used as one path segment, else raise.

    Values are never rewritten, so two distinct ids can never share a namespace.
    """
    value = str(value)
    if not _SAFE_SEGMENT.fullmatch(value):
        raise ValueError(f"{value!r} is not a valid storage path segment")
    return value


def is_normalized_key(key: str) -> bool:
    """True for a relative, slash-separated key with no '.', '..' or empty parts."""
    if not key or "\\" in key or key.startswith("/"):
        return False
    if posixpath.normpath(key) != key:
        return False
    return all(part not in ("", ".", "..") for part in key.split("/"))


def new_storage_key(
    asset_type: AssetType,
    user_id: str,
    variant_name: str | None,
    *,
    now: datetime,
    ext: str = "webp",
    prefix: str = "",
    token_bytes: int = DEFAULT_TOKEN_BYTES,
) -> str:
    """
    {prefix}{asset_type}/{user_id}/{variant-}{timestamp_ms}-{token}.{ext}

    A fresh key per call, even for identical uploads. Uniqueness relies on the
    random token only; nothing is looked up.
    """
    if token_bytes < MIN_TOKEN_BYTES:
        raise ValueError(f"token_bytes must be >= {MIN_TOKEN_BYTES}")
    variant = f"{safe_segment(variant_name)}-" if variant_name else ""
    ts_ms = int(now.timestamp() * 1000)
    token = secrets.token_hex(token_bytes)
    return f"{owner_prefix(asset_type, user_id, prefix)}{variant}{ts_ms}-{token}.{ext.lstrip('.').lower()}"


def owner_prefix(asset_type: AssetType, user_id: str, prefix: str = "") -> str:
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    return f"{prefix}{AssetType(asset_type).value}/{safe_segment(user_id)}/"


def owns_key(key: str, asset_type: AssetType, user_id: str, prefix: str = "") -> bool:
    """True if key is normalized and sits under the owner's namespace."""
    return is_normalized_key(key) and key.startswith(owner_prefix(asset_type, user_id, prefix))
