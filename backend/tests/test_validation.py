from __future__ import annotations

import pytest

from media_pipeline.config import MIB, AssetType, Settings
from media_pipeline.errors import FileTooLarge, InvalidMimeType
from media_pipeline.validation import normalize_mime_type, validate_upload

POLICIES = Settings(storage_driver="memory").policies


def test_accepts_allowed_types_within_limit():
    validate_upload("image/png", 1024, AssetType.AVATAR, POLICIES)
    validate_upload("image/webp", 10 * MIB, AssetType.COVER, POLICIES)


def test_mime_type_is_exact_match_ignoring_case_and_params():
    assert normalize_mime_type("Image/JPEG; charset=binary") == "image/jpeg"
    validate_upload("Image/JPEG; charset=binary", 10, AssetType.AVATAR, POLICIES)

    with pytest.raises(InvalidMimeType) as exc:
        validate_upload("image/svg+xml", 10, AssetType.AVATAR, POLICIES)
    assert exc.value.mime_type == "image/svg+xml"
    assert "image/png" in exc.value.allowed


@pytest.mark.parametrize("mime", ["", None, "application/pdf", "image/", "text/plain"])
def test_rejects_unknown_types(mime):
    with pytest.raises(InvalidMimeType):
        validate_upload(mime, 10, AssetType.COVER, POLICIES)


def test_avatar_limit_is_5mib_and_cover_limit_is_10mib():
    validate_upload("image/png", 5 * MIB, AssetType.AVATAR, POLICIES)
    with pytest.raises(FileTooLarge) as exc:
        validate_upload("image/png", 5 * MIB + 1, AssetType.AVATAR, POLICIES)
    assert exc.value.max_bytes == 5 * MIB
    assert exc.value.status_code == 413

    validate_upload("image/png", 6 * MIB, AssetType.COVER, POLICIES)
    with pytest.raises(FileTooLarge):
        validate_upload("image/png", 10 * MIB + 1, AssetType.COVER, POLICIES)


def test_mime_checked_before_size():
    with pytest.raises(InvalidMimeType):
        validate_upload("application/zip", 50 * MIB, AssetType.AVATAR, POLICIES)
