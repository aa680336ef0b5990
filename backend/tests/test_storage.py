from __future__ import annotations

import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from media_pipeline.storage import CACHE_CONTROL, BlobNotFound, BlobStoreError, Storage


def test_memory_roundtrip_and_idempotent_delete():
    s = Storage(driver="memory")
    s.put("avatar/u/a.webp", b"abc", "image/webp")
    assert s.exists("avatar/u/a.webp")
    assert s.get("avatar/u/a.webp") == b"abc"
    s.delete("avatar/u/a.webp")
    s.delete("avatar/u/a.webp")
    assert not s.exists("avatar/u/a.webp")
    with pytest.raises(BlobNotFound):
        s.get("avatar/u/a.webp")
    assert s.keys() == []


def test_local_driver_writes_under_upload_dir(tmp_path):
    s = Storage(driver="local", local_upload_dir=str(tmp_path))
    s.put("media/cover/u1/large-1-abc.webp", b"data")
    assert (tmp_path / "media/cover/u1/large-1-abc.webp").read_bytes() == b"data"
    assert s.get("media/cover/u1/large-1-abc.webp") == b"data"
    s.delete("media/cover/u1/large-1-abc.webp")
    s.delete("media/cover/u1/large-1-abc.webp")
    assert not s.exists("media/cover/u1/large-1-abc.webp")
    with pytest.raises(BlobNotFound):
        s.get("media/cover/u1/large-1-abc.webp")


def test_local_driver_refuses_path_traversal(tmp_path):
    s = Storage(driver="local", local_upload_dir=str(tmp_path / "uploads"))
    with pytest.raises(BlobStoreError):
        s.put("../escape.webp", b"x")


def test_configuration_errors():
    with pytest.raises(ValueError):
        Storage(driver="ftp")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        Storage(driver="s3")
    with pytest.raises(ValueError):
        Storage(driver="local")


def test_public_url():
    s = Storage(driver="memory", public_base_url="https://cdn.example.com")
    assert s.public_url("avatar/u/a.webp") == "https://cdn.example.com/avatar/u/a.webp"
    assert Storage(driver="memory").public_url("k") is None


@pytest.fixture()
def s3_stub():
    client = boto3.client(
        "s3", region_name="us-east-1", aws_access_key_id="test", aws_secret_access_key="test"
    )
    with Stubber(client) as stubber:
        yield Storage(driver="s3", s3_bucket="media-bucket", s3_client=client), stubber
        stubber.assert_no_pending_responses()


def test_s3_put_sets_content_type_and_cache_control(s3_stub):
    s, stubber = s3_stub
    stubber.add_response(
        "put_object",
        {},
        {
            "Bucket": "media-bucket",
            "Key": "avatar/u/a.webp",
            "Body": b"img",
            "ContentType": "image/webp",
            "CacheControl": CACHE_CONTROL,
        },
    )
    s.put("avatar/u/a.webp", b"img", "image/webp")


def test_s3_put_failure_is_wrapped(s3_stub):
    s, stubber = s3_stub
    stubber.add_client_error("put_object", service_error_code="SlowDown", http_status_code=503)
    with pytest.raises(BlobStoreError):
        s.put("avatar/u/a.webp", b"img", "image/webp")


def test_s3_get_and_missing_key(s3_stub):
    s, stubber = s3_stub
    stubber.add_response(
        "get_object",
        {"Body": StreamingBody(io.BytesIO(b"img"), 3)},
        {"Bucket": "media-bucket", "Key": "avatar/u/a.webp"},
    )
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
    assert s.get("avatar/u/a.webp") == b"img"
    with pytest.raises(BlobNotFound):
        s.get("avatar/u/missing.webp")


def test_s3_exists_and_delete(s3_stub):
    s, stubber = s3_stub
    stubber.add_response("head_object", {}, {"Bucket": "media-bucket", "Key": "a"})
    stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
    stubber.add_response("delete_object", {}, {"Bucket": "media-bucket", "Key": "a"})
    assert s.exists("a") is True
    assert s.exists("b") is False
    s.delete("a")
