"""Object storage backends.

The pipeline depends on a minimal blob-store contract (put, presign, list_keys)
so any S3-compatible provider or the local filesystem can back it:

    put(key, data, content_type)   -> StoredObject
    presign(key, expires_in)       -> time-bound GET URL
    list_keys(prefix)              -> keys under prefix

Backends raise ``StorageTransportError`` for every failure that comes from
talking to the store; callers decide whether to retry.
"""

import hashlib
import hmac
import logging
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from media_pipeline.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Errors S3 reports for conditions that will not go away on retry
_NON_RETRYABLE_S3_CODES = frozenset({
    "AccessDenied",
    "InvalidAccessKeyId",
    "NoSuchBucket",
    "NoSuchKey",
    "SignatureDoesNotMatch",
    "InvalidBucketName",
    "404",
    "403",
})

_KEY_ALLOWED_RE = re.compile(r"[A-Za-z0-9._\-/+=@() ]+")

# Looked up by health checks; never written
HEALTH_CHECK_KEY = ".health-check"


class StorageTransportError(Exception):
    """Raised when a storage backend cannot complete an operation."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class InvalidStorageKeyError(ValueError):
    """Raised for empty keys, traversal attempts or forbidden characters."""


def normalize_key(key: str) -> str:
    """Normalize and validate an object key.

    Strips whitespace and leading slashes, collapses repeated slashes and
    rejects path traversal or characters outside the allowed set.
    """
    k = str(key or "").strip().lstrip("/")
    k = re.sub(r"/{2,}", "/", k)
    if not k:
        raise InvalidStorageKeyError("Invalid storage key: empty")
    if ".." in k.split("/"):
        raise InvalidStorageKeyError("Invalid storage key: path traversal detected")
    if not _KEY_ALLOWED_RE.fullmatch(k):
        raise InvalidStorageKeyError("Invalid storage key: contains forbidden characters")
    return k


@dataclass
class StoredObject:
    """Result of a successful put."""
    key: str
    size: int
    etag: Optional[str] = None


class ObjectStore(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StoredObject:
        """Write an object. Either the whole object is stored or nothing is."""

    @abstractmethod
    def presign(self, key: str, expires_in: int) -> str:
        """Return a GET URL valid for ``expires_in`` seconds."""

    @abstractmethod
    def list_keys(self, prefix: str = "") -> list[str]:
        """List keys starting with prefix."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object; deleting a missing key is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether an object exists."""

    @abstractmethod
    def public_base_url(self) -> str:
        """Direct (non-CDN) URL prefix objects are addressable under."""

    def object_url(self, key: str) -> str:
        """Unsigned direct URL of an object."""
        return f"{self.public_base_url()}/{quote(normalize_key(key))}"

    def health_check(self) -> bool:
        """One existence check, whatever the store holds."""
        try:
            self.exists(HEALTH_CHECK_KEY)
            return True
        except StorageTransportError as e:
            logger.warning("Storage health check failed: %s", e)
            return False


class LocalObjectStore(ObjectStore):
    """Local filesystem storage backend.

    Signed URLs are HMAC-SHA256 tokens over ``path|exp`` appended to a base
    URL, verifiable with :meth:`verify`.
    """

    def __init__(self, base_path: str, base_url: str, signing_secret: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")

    def path_for(self, key: str) -> Path:
        """Filesystem path of an object."""
        return self.base_path / normalize_key(key)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StoredObject:
        dest_path = self.path_for(key)
        tmp_name = None
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a sibling temp file and rename so readers never see a partial object
            with tempfile.NamedTemporaryFile(dir=dest_path.parent, delete=False) as tmp:
                tmp_name = tmp.name
                tmp.write(data)
            os.replace(tmp_name, dest_path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageTransportError(f"Local write failed for {key}: {e}") from e

        return StoredObject(key=normalize_key(key), size=len(data), etag=hashlib.md5(data).hexdigest())

    def _sign(self, path: str, exp: int) -> str:
        return hmac.new(self._secret, f"{path}|{exp}".encode("utf-8"), hashlib.sha256).hexdigest()

    def presign(self, key: str, expires_in: int) -> str:
        path = normalize_key(key)
        exp = int(time.time()) + int(expires_in)
        return f"{self.base_url}/{quote(path)}?exp={exp}&sig={self._sign(path, exp)}"

    def verify(self, key: str, exp: int, sig: str, now: Optional[int] = None) -> bool:
        """Check a signature produced by :meth:`presign`."""
        now = int(time.time()) if now is None else now
        if now >= exp:
            return False
        return hmac.compare_digest(self._sign(normalize_key(key), exp), sig)

    def list_keys(self, prefix: str = "") -> list[str]:
        search_path = self.base_path / prefix if prefix else self.base_path
        root = search_path if search_path.is_dir() else search_path.parent
        if not root.exists():
            return []

        keys = []
        for path in root.rglob("*"):
            if path.is_file():
                rel = path.relative_to(self.base_path).as_posix()
                if rel.startswith(prefix):
                    keys.append(rel)
        return sorted(keys)

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageTransportError(f"Local delete failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def health_check(self) -> bool:
        """The storage root exists and is writable."""
        ok = self.base_path.is_dir() and os.access(self.base_path, os.W_OK)
        if not ok:
            logger.warning("Storage health check failed: %s is not a writable directory", self.base_path)
        return ok

    def public_base_url(self) -> str:
        return self.base_url


class S3ObjectStore(ObjectStore):
    """S3/MinIO compatible storage backend.

    Timeouts are short and botocore's own retries are disabled; bounded
    retries happen one level up so every attempt is visible in the logs.
    """

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        connect_timeout: float = 3.0,
        read_timeout: float = 10.0,
        client=None,
    ):
        if not bucket:
            raise ValueError("STORAGE_BUCKET not configured")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url

        if client is None:
            client_kwargs = {
                "region_name": region,
                "config": BotoConfig(
                    signature_version="s3v4",
                    retries={"max_attempts": 1, "mode": "standard"},
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    s3={"addressing_style": "path" if endpoint_url else "virtual"},
                ),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            if access_key and secret_key:
                client_kwargs["aws_access_key_id"] = access_key
                client_kwargs["aws_secret_access_key"] = secret_key
            client = boto3.client("s3", **client_kwargs)

        self.client = client

    @staticmethod
    def _wrap(exc: Exception, action: str, key: str) -> StorageTransportError:
        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            return StorageTransportError(
                f"S3 {action} failed for {key}: {code}",
                retryable=code not in _NON_RETRYABLE_S3_CODES,
            )
        return StorageTransportError(f"S3 {action} failed for {key}: {exc}")

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StoredObject:
        key = normalize_key(key)
        try:
            response = self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="max-age=31536000",
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "put", key) from e

        etag = response.get("ETag", "").strip('"') or None
        return StoredObject(key=key, size=len(data), etag=etag)

    def presign(self, key: str, expires_in: int) -> str:
        key = normalize_key(key)
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(expires_in),
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "presign", key) from e

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "list", prefix) from e
        return keys

    def delete(self, key: str) -> None:
        key = normalize_key(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "delete", key) from e

    def exists(self, key: str) -> bool:
        key = normalize_key(key)
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise self._wrap(e, "head", key) from e
        except BotoCoreError as e:
            raise self._wrap(e, "head", key) from e

    def health_check(self) -> bool:
        """One HeadBucket request, independent of how much the bucket holds."""
        try:
            self.client.head_bucket(Bucket=self.bucket)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning("Storage health check failed: %s", self._wrap(e, "head_bucket", self.bucket))
            return False

    def public_base_url(self) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"


def build_object_store(config: Optional[Settings] = None) -> ObjectStore:
    """Create the configured storage backend."""
    config = config or default_settings
    backend_type = config.STORAGE_BACKEND.lower()

    if backend_type == "local":
        return LocalObjectStore(
            base_path=config.LOCAL_STORAGE_PATH,
            base_url=config.LOCAL_STORAGE_BASE_URL,
            signing_secret=config.LOCAL_SIGNING_SECRET,
        )
    elif backend_type in ("s3", "minio", "aws"):
        return S3ObjectStore(
            config.STORAGE_BUCKET,
            region=config.STORAGE_REGION,
            endpoint_url=config.STORAGE_ENDPOINT_URL,
            access_key=config.STORAGE_ACCESS_KEY,
            secret_key=config.STORAGE_SECRET_KEY,
            connect_timeout=config.STORAGE_CONNECT_TIMEOUT_SECONDS,
            read_timeout=config.STORAGE_READ_TIMEOUT_SECONDS,
        )
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")
