"""
Object store adapter.

One contract, two backends: the local filesystem (used in local-dev) and S3
(aws-mock / aws-prod). The backend is picked once by `StorageFactory` from the
deployment mode; nothing else in the application branches on it.
"""

import hashlib
import hmac
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import NamedTuple, Optional
from urllib.parse import quote, urlencode

from botocore.exceptions import BotoCoreError, ClientError

from storage_api.adapters.aws_clients import TRANSIENT_AWS_ERRORS, get_s3_client
from storage_api.errors import (
    BackendMismatch,
    InvalidSignature,
    ObjectExists,
    ObjectNotFound,
    StorageDeleteFailed,
    StorageReadFailed,
    StorageWriteFailed,
)
from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

S3_REF_PREFIX = "s3://"
_MISSING_OBJECT_CODES = {"404", "NoSuchKey", "NotFound"}
# Conditional put lost to an existing object, or to a concurrent conditional put
_KEY_TAKEN_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict"}


class AccessRef(NamedTuple):
    """Parsed form of the reference returned by `put`."""
    is_remote: bool
    bucket: Optional[str]
    key: Optional[str]
    path: Optional[Path]


def parse_access_ref(ref: str) -> AccessRef:
    """Split an access reference into a remote locator or a local path."""
    if ref.startswith(S3_REF_PREFIX):
        bucket, _, key = ref[len(S3_REF_PREFIX):].partition("/")
        if not bucket or not key:
            raise ValueError(f"Malformed remote locator: {ref}")
        return AccessRef(is_remote=True, bucket=bucket, key=key, path=None)
    return AccessRef(is_remote=False, bucket=None, key=None, path=Path(ref))


def sign_key(secret: str, key: str, expires: int) -> str:
    message = f"{key}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class BaseStorage(ABC):
    """Contract shared by every object store backend."""

    @abstractmethod
    def put(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        """Store bytes under a new key. Raises ObjectExists if the key is taken. Returns the access reference."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the object's bytes; raises ObjectNotFound when absent."""

    @abstractmethod
    def download(self, key: str, local_path: str) -> str:
        """Copy the object to local_path."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove the object. Returns whether it existed."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: int) -> str:
        """URL granting read access for exactly ttl_seconds from now."""

    @abstractmethod
    def public_ref(self, key: str) -> str:
        """Stable reference to the object, distinct from any signed URL."""

    @abstractmethod
    def key_for_ref(self, ref: str) -> str:
        """Map an access reference back to a key; raises BackendMismatch for foreign refs."""

    def local_path(self, key: str) -> Optional[Path]:
        """Filesystem path of the object when the backend keeps one."""
        return None

    def ping(self) -> None:
        """Raise if the backend is unreachable."""


class LocalStorage(BaseStorage):
    """Objects are plain files under a managed directory."""

    def __init__(self, root_dir: str, signing_secret: str, base_url: str):
        self.root = Path(root_dir).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.signing_secret = signing_secret
        self.base_url = base_url.rstrip("/")
        logger.info("LocalStorage initialized at: %s", self.root)

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path.parent != self.root:
            raise ObjectNotFound(f"Invalid storage key: {key}", storage_key=key)
        return path

    def put(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        dest_path = self._path_for(key)
        tmp_name = None
        try:
            # Write to a sibling temp file first so a reader never sees half an object.
            # Linking fails if the key is taken, where a rename would replace it.
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".upload-")
            with os.fdopen(fd, "wb") as tmp_file:
                tmp_file.write(data)
            os.link(tmp_name, dest_path)
        except FileExistsError as e:
            logger.warning("Refusing to overwrite existing object %s", key)
            raise ObjectExists(f"Object already exists: {key}", storage_key=key) from e
        except OSError as e:
            logger.error("Error writing %s to local storage: %s", key, e)
            raise StorageWriteFailed(f"Could not write object {key}: {e}", storage_key=key) from e
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
        logger.info("Stored %d bytes at %s", len(data), dest_path)
        return str(dest_path)

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFound(f"Object not found: {key}", storage_key=key) from e
        except OSError as e:
            raise StorageReadFailed(f"Could not read object {key}: {e}", storage_key=key) from e

    def download(self, key: str, local_path: str) -> str:
        Path(local_path).write_bytes(self.get(key))
        return local_path

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Delete requested for missing object: %s", key)
            return False
        except OSError as e:
            logger.error("Error deleting %s from local storage: %s", key, e)
            raise StorageDeleteFailed(f"Could not delete object {key}: {e}", storage_key=key) from e
        logger.info("Deleted object: %s", key)
        return True

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "signature": sign_key(self.signing_secret, key, expires)})
        return f"{self.base_url}/v1/files/{quote(key)}/content?{query}"

    def verify_signature(self, key: str, expires: int, signature: str) -> None:
        """Check a URL produced by `signed_url`; raises InvalidSignature."""
        expected = sign_key(self.signing_secret, key, expires)
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignature("Signature does not match", storage_key=key)
        if time.time() > expires:
            raise InvalidSignature("Signed URL has expired", storage_key=key)

    def public_ref(self, key: str) -> str:
        return f"{self.base_url}/v1/files/{quote(key)}"

    def key_for_ref(self, ref: str) -> str:
        parsed = parse_access_ref(ref)
        if parsed.is_remote or parsed.path.resolve().parent != self.root:
            raise BackendMismatch(f"Reference {ref} does not belong to local storage at {self.root}")
        return parsed.path.name

    def local_path(self, key: str) -> Optional[Path]:
        return self._path_for(key)

    def ping(self) -> None:
        if not os.access(self.root, os.W_OK):
            raise StorageWriteFailed(f"Storage directory is not writable: {self.root}")


class S3Storage(BaseStorage):
    """Objects live in a single S3 bucket."""

    def __init__(self, bucket_name: str, s3_client=None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.bucket_name = bucket_name
        self.s3_client = s3_client or get_s3_client(self.settings)
        logger.info("S3Storage using bucket: %s", bucket_name)

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        return error.response.get("Error", {}).get("Code") in _MISSING_OBJECT_CODES

    def put(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type or "application/octet-stream",
                CacheControl=self.settings.s3_cache_control,
                IfNoneMatch="*",
            )
        except TRANSIENT_AWS_ERRORS as e:
            raise StorageWriteFailed(f"Timed out writing {key} to S3: {e}", storage_key=key, retryable=True) from e
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _KEY_TAKEN_CODES:
                logger.warning("Refusing to overwrite existing object s3://%s/%s", self.bucket_name, key)
                raise ObjectExists(f"Object already exists: {key}", storage_key=key) from e
            logger.error("Error uploading %s to S3: %s", key, e)
            raise StorageWriteFailed(f"Could not write {key} to S3: {e}", storage_key=key) from e
        except BotoCoreError as e:
            logger.error("Error uploading %s to S3: %s", key, e)
            raise StorageWriteFailed(f"Could not write {key} to S3: {e}", storage_key=key) from e
        logger.info("Uploaded %d bytes to s3://%s/%s", len(data), self.bucket_name, key)
        return f"{S3_REF_PREFIX}{self.bucket_name}/{key}"

    def get(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if self._is_missing(e):
                raise ObjectNotFound(f"Object not found: {key}", storage_key=key) from e
            raise StorageReadFailed(f"Could not read {key} from S3: {e}", storage_key=key) from e
        except TRANSIENT_AWS_ERRORS as e:
            raise StorageReadFailed(f"Timed out reading {key} from S3: {e}", storage_key=key, retryable=True) from e
        except BotoCoreError as e:
            raise StorageReadFailed(f"Could not read {key} from S3: {e}", storage_key=key) from e

    def download(self, key: str, local_path: str) -> str:
        logger.info("Downloading '%s' from bucket '%s' to '%s'", key, self.bucket_name, local_path)
        try:
            self.s3_client.download_file(Bucket=self.bucket_name, Key=key, Filename=local_path)
        except ClientError as e:
            if self._is_missing(e):
                raise ObjectNotFound(f"Object not found: {key}", storage_key=key) from e
            raise StorageReadFailed(f"Could not download {key}: {e}", storage_key=key) from e
        except TRANSIENT_AWS_ERRORS as e:
            raise StorageReadFailed(f"Timed out downloading {key}: {e}", storage_key=key, retryable=True) from e
        except BotoCoreError as e:
            raise StorageReadFailed(f"Could not download {key}: {e}", storage_key=key) from e
        return local_path

    def delete(self, key: str) -> bool:
        # S3 deletes are silent on missing keys, so look first
        try:
            existed = self.exists(key)
            if existed:
                self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
                logger.info("Deleted s3://%s/%s", self.bucket_name, key)
            else:
                logger.warning("Delete requested for missing object: s3://%s/%s", self.bucket_name, key)
            return existed
        except TRANSIENT_AWS_ERRORS as e:
            raise StorageDeleteFailed(f"Timed out deleting {key}: {e}", storage_key=key, retryable=True) from e
        except (ClientError, BotoCoreError, StorageReadFailed) as e:
            logger.error("Error deleting %s from S3: %s", key, e)
            raise StorageDeleteFailed(f"Could not delete {key} from S3: {e}", storage_key=key) from e

    def exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if self._is_missing(e):
                return False
            raise StorageReadFailed(f"Could not stat {key}: {e}", storage_key=key) from e

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageReadFailed(f"Could not sign URL for {key}: {e}", storage_key=key) from e

    def public_ref(self, key: str) -> str:
        if self.settings.aws_endpoint_url:
            return f"{self.settings.aws_endpoint_url.rstrip('/')}/{self.bucket_name}/{quote(key)}"
        return f"https://{self.bucket_name}.s3.amazonaws.com/{quote(key)}"

    def key_for_ref(self, ref: str) -> str:
        try:
            parsed = parse_access_ref(ref)
        except ValueError as e:
            raise BackendMismatch(str(e)) from e
        if not parsed.is_remote or parsed.bucket != self.bucket_name:
            raise BackendMismatch(f"Reference {ref} does not belong to bucket {self.bucket_name}")
        return parsed.key

    def ping(self) -> None:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as e:
            raise StorageReadFailed(f"Bucket {self.bucket_name} is not reachable: {e}") from e


class StorageFactory:
    """Factory to initialize the correct storage backend based on deployment mode"""

    @staticmethod
    def get_storage(settings: Optional[Settings] = None) -> BaseStorage:
        settings = settings or get_settings()
        if settings.uses_aws:
            return S3Storage(settings.s3_bucket_name, settings=settings)
        return LocalStorage(
            root_dir=str(Path(settings.storage_dir) / "objects"),
            signing_secret=settings.url_signing_secret,
            base_url=settings.public_base_url,
        )
