import time
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from storage_api.adapters.storage import (
    LocalStorage,
    S3Storage,
    StorageFactory,
    parse_access_ref,
    sign_key,
)
from storage_api.errors import (
    BackendMismatch,
    InvalidSignature,
    ObjectExists,
    ObjectNotFound,
)
from tests.consts import TEST_BASE_URL, TEST_BUCKET_NAME, TEST_SIGNING_SECRET

KEY = "1718000000000-9f2c4a1b-a.png"
CONTENT = b"\x89PNG fake image bytes"


def test_parse_access_ref():
    remote = parse_access_ref(f"s3://{TEST_BUCKET_NAME}/{KEY}")
    assert remote.is_remote
    assert (remote.bucket, remote.key) == (TEST_BUCKET_NAME, KEY)

    local = parse_access_ref(f"/srv/objects/{KEY}")
    assert not local.is_remote
    assert local.path == Path(f"/srv/objects/{KEY}")

    with pytest.raises(ValueError):
        parse_access_ref("s3://bucket-only")


#########################
# --- Local storage --- #
#########################

def test_local_put_and_get(local_storage):
    ref = local_storage.put(CONTENT, KEY, content_type="image/png")

    assert Path(ref).is_absolute()
    assert Path(ref).read_bytes() == CONTENT
    assert local_storage.get(KEY) == CONTENT
    assert local_storage.exists(KEY)


def test_local_put_refuses_to_overwrite(local_storage):
    local_storage.put(b"first", KEY)

    with pytest.raises(ObjectExists):
        local_storage.put(b"second", KEY)

    assert local_storage.get(KEY) == b"first"
    # The staging file is gone whichever way the write went
    assert [p.name for p in local_storage.root.iterdir()] == [KEY]


def test_local_get_missing(local_storage):
    with pytest.raises(ObjectNotFound):
        local_storage.get(KEY)


def test_local_delete_reports_existence(local_storage):
    local_storage.put(CONTENT, KEY)

    assert local_storage.delete(KEY) is True
    assert local_storage.delete(KEY) is False
    assert not local_storage.exists(KEY)


def test_local_rejects_keys_outside_root(local_storage):
    with pytest.raises(ObjectNotFound):
        local_storage.get("../escape.txt")


def test_local_download(local_storage, tmp_path):
    local_storage.put(CONTENT, KEY)
    target = tmp_path / "copy.png"

    local_storage.download(KEY, str(target))
    assert target.read_bytes() == CONTENT


def test_local_signed_url_verifies(local_storage):
    url = local_storage.signed_url(KEY, ttl_seconds=60)

    parsed = urlparse(url)
    assert url.startswith(f"{TEST_BASE_URL}/v1/files/{KEY}/content")
    query = parse_qs(parsed.query)
    expires = int(query["expires"][0])
    assert 0 < expires - time.time() <= 60

    local_storage.verify_signature(KEY, expires, query["signature"][0])


def test_local_signed_url_rejects_tampering(local_storage):
    expires = int(time.time()) + 60
    signature = sign_key(TEST_SIGNING_SECRET, KEY, expires)

    with pytest.raises(InvalidSignature):
        local_storage.verify_signature("other-key.png", expires, signature)
    with pytest.raises(InvalidSignature):
        local_storage.verify_signature(KEY, expires + 1, signature)


def test_local_signed_url_expires(local_storage):
    expired = int(time.time()) - 1
    with pytest.raises(InvalidSignature):
        local_storage.verify_signature(KEY, expired, sign_key(TEST_SIGNING_SECRET, KEY, expired))


def test_local_key_for_ref(local_storage):
    ref = local_storage.put(CONTENT, KEY)
    assert local_storage.key_for_ref(ref) == KEY

    with pytest.raises(BackendMismatch):
        local_storage.key_for_ref(f"s3://{TEST_BUCKET_NAME}/{KEY}")
    with pytest.raises(BackendMismatch):
        local_storage.key_for_ref(f"/somewhere/else/{KEY}")


def test_local_public_ref(local_storage):
    assert local_storage.public_ref(KEY) == f"{TEST_BASE_URL}/v1/files/{KEY}"


######################
# --- S3 storage --- #
######################

def test_s3_put_stores_object_with_metadata(s3_storage, mocked_aws, aws_settings):
    ref = s3_storage.put(CONTENT, KEY, content_type="image/png")

    assert ref == f"s3://{TEST_BUCKET_NAME}/{KEY}"
    head = mocked_aws.s3.head_object(Bucket=TEST_BUCKET_NAME, Key=KEY)
    assert head["ContentType"] == "image/png"
    assert head["CacheControl"] == aws_settings.s3_cache_control
    assert head["ContentLength"] == len(CONTENT)


def test_s3_put_refuses_to_overwrite(s3_storage):
    s3_storage.put(b"first", KEY)

    with pytest.raises(ObjectExists):
        s3_storage.put(b"second", KEY)

    assert s3_storage.get(KEY) == b"first"


def test_s3_get_and_download(s3_storage, tmp_path):
    s3_storage.put(CONTENT, KEY)
    assert s3_storage.get(KEY) == CONTENT

    target = tmp_path / "copy.png"
    s3_storage.download(KEY, str(target))
    assert target.read_bytes() == CONTENT


def test_s3_missing_object(s3_storage, tmp_path):
    with pytest.raises(ObjectNotFound):
        s3_storage.get(KEY)
    with pytest.raises(ObjectNotFound):
        s3_storage.download(KEY, str(tmp_path / "missing.png"))
    assert not s3_storage.exists(KEY)


def test_s3_delete_reports_existence(s3_storage):
    s3_storage.put(CONTENT, KEY)

    assert s3_storage.delete(KEY) is True
    assert s3_storage.delete(KEY) is False


def test_s3_signed_url(s3_storage):
    s3_storage.put(CONTENT, KEY)
    url = s3_storage.signed_url(KEY, ttl_seconds=120)

    assert TEST_BUCKET_NAME in url
    assert KEY in url
    assert "Signature" in url


def test_s3_public_ref(s3_storage):
    assert s3_storage.public_ref(KEY) == f"https://{TEST_BUCKET_NAME}.s3.amazonaws.com/{KEY}"


def test_s3_key_for_ref(s3_storage):
    assert s3_storage.key_for_ref(f"s3://{TEST_BUCKET_NAME}/{KEY}") == KEY

    with pytest.raises(BackendMismatch):
        s3_storage.key_for_ref(f"s3://another-bucket/{KEY}")
    with pytest.raises(BackendMismatch):
        s3_storage.key_for_ref(f"/tmp/storage/objects/{KEY}")


def test_s3_ping(s3_storage):
    s3_storage.ping()


def test_factory_picks_backend_from_mode(local_settings, aws_settings):
    assert isinstance(StorageFactory.get_storage(local_settings), LocalStorage)
    assert isinstance(StorageFactory.get_storage(aws_settings), S3Storage)
