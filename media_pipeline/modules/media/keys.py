"""Storage key management, signed URLs and CDN URLs.

Key layout (single private bucket):

    {prefix}/{timestamp_ms}-{token}-{filename.ext}            uploaded sources
    {prefix}/{timestamp_ms}-{token}-{filename}/{quality}/...   renditions
    {prefix}/{timestamp_ms}-{token}-{filename}/subtitles/...   subtitle tracks

The manager holds no per-call state: signed URLs are never cached and each
call returns an independently expiring URL.
"""

import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Callable, Optional

from botocore.signers import CloudFrontSigner
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from media_pipeline.core.config import Settings, settings as default_settings
from media_pipeline.core.database import utc_now
from media_pipeline.core.metrics import STORAGE_OPERATIONS_TOTAL
from media_pipeline.core.retry import RetryConfig, get_retry_config
from media_pipeline.core.storage import (
    ObjectStore,
    StorageTransportError,
    StoredObject,
    build_object_store,
    normalize_key,
)

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._\-]+")


class StorageKeyError(Exception):
    """Base exception for storage key manager errors."""
    pass


class StorageUnavailable(StorageKeyError):
    """Raised when the object store cannot be reached after retries."""
    pass


class SigningError(StorageKeyError):
    """Raised when a TTL exceeds policy or the URL cannot be signed."""
    pass


@dataclass(frozen=True)
class SignedUrl:
    """A time-bound URL and the moment it stops working."""
    url: str
    expires_at: datetime


class CdnUrlSigner:
    """CloudFront-style canned-policy signer for CDN URLs."""

    def __init__(self, key_pair_id: str, private_key_pem: str):
        try:
            self._private_key = serialization.load_pem_private_key(
                private_key_pem.encode("utf-8"),
                password=None,
            )
        except (ValueError, TypeError) as e:
            raise SigningError(f"Invalid CDN private key: {e}") from e
        self._signer = CloudFrontSigner(key_pair_id, self._rsa_sign)

    def _rsa_sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message, padding.PKCS1v15(), hashes.SHA1())

    def sign(self, url: str, expires_at: datetime) -> str:
        return self._signer.generate_presigned_url(url, date_less_than=expires_at)


def sanitize_filename(filename: str) -> str:
    """Reduce an uploaded filename to a key-safe basename."""
    name = PurePosixPath(str(filename or "").replace("\\", "/")).name
    name = _UNSAFE_FILENAME_CHARS.sub("-", name).strip("-.")
    return name or "upload"


class StorageKeyManager:
    """Derives object keys and issues URLs for stored assets.

    Args:
        store: Object storage backend
        cdn_base_url: CDN origin; when absent URLs point at storage directly
        max_ttl_seconds: Upper bound for any signed URL lifetime
        key_prefix: Prefix for uploaded source keys
        retry_config: Bounded retry policy for transport failures
        url_signer: Signs CDN URLs; when absent the store presigns
        clock: Returns naive UTC now
        sleep: Called between retries
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        cdn_base_url: Optional[str] = None,
        max_ttl_seconds: int = 3600,
        key_prefix: str = "videos",
        retry_config: Optional[RetryConfig] = None,
        url_signer: Optional[CdnUrlSigner] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cdn_base_url = cdn_base_url.rstrip("/") if cdn_base_url else None
        self.max_ttl_seconds = max_ttl_seconds
        self.key_prefix = key_prefix.strip("/")
        self.retry_config = retry_config or get_retry_config("storage")
        self.url_signer = url_signer
        self._clock = clock
        self._sleep = sleep

    def allocate_key(self, filename: str) -> str:
        """Allocate a fresh key for an upload.

        The timestamp keeps keys chronologically sortable, the random token
        keeps two uploads of the same file in the same millisecond apart.
        """
        timestamp_ms = int(self._clock().replace(tzinfo=timezone.utc).timestamp() * 1000)
        token = secrets.token_hex(4)
        key = f"{self.key_prefix}/{timestamp_ms}-{token}-{sanitize_filename(filename)}"
        logger.debug("Allocated storage key %s", key)
        return normalize_key(key)

    def put_object(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StoredObject:
        """Write an object, retrying transport failures.

        Raises:
            StorageUnavailable: if every attempt failed; nothing is left behind
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                stored = self.store.put(key, data, content_type)
                STORAGE_OPERATIONS_TOTAL.labels(operation="put", outcome="success").inc()
                logger.info(
                    "Stored object",
                    extra={"storage_key": key, "size": stored.size, "attempt": attempt},
                )
                return stored
            except StorageTransportError as e:
                STORAGE_OPERATIONS_TOTAL.labels(operation="put", outcome="error").inc()
                if e.retryable and self.retry_config.should_retry(attempt):
                    delay = self.retry_config.calculate_delay(attempt)
                    logger.warning(
                        "Storage put failed, retrying",
                        extra={"storage_key": key, "attempt": attempt, "delay": delay, "error": str(e)},
                    )
                    self._sleep(delay)
                    continue

                self._discard(key)
                raise StorageUnavailable(f"Could not store {key} after {attempt} attempt(s): {e}") from e

    def _discard(self, key: str) -> None:
        try:
            self.store.delete(key)
        except StorageTransportError as e:
            logger.warning("Could not clean up %s after failed put: %s", key, e)

    def delete_object(self, key: str) -> None:
        try:
            self.store.delete(key)
            STORAGE_OPERATIONS_TOTAL.labels(operation="delete", outcome="success").inc()
        except StorageTransportError as e:
            STORAGE_OPERATIONS_TOTAL.labels(operation="delete", outcome="error").inc()
            raise StorageUnavailable(f"Could not delete {key}: {e}") from e

    def list_keys(self, prefix: str) -> list[str]:
        try:
            return self.store.list_keys(prefix)
        except StorageTransportError as e:
            raise StorageUnavailable(f"Could not list {prefix}: {e}") from e

    def signed_url(self, key: str, ttl_seconds: int) -> SignedUrl:
        """Issue a time-bound URL for an object.

        Raises:
            SigningError: if the TTL is not positive, exceeds the configured
                maximum, or signing fails
        """
        if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
            raise SigningError(f"TTL must be a positive number of seconds, got {ttl_seconds!r}")
        if ttl_seconds > self.max_ttl_seconds:
            raise SigningError(
                f"TTL {ttl_seconds}s exceeds the maximum of {self.max_ttl_seconds}s"
            )

        key = normalize_key(key)
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)

        if self.url_signer is not None:
            try:
                url = self.url_signer.sign(self.cdn_url(key), expires_at)
            except (ValueError, TypeError) as e:
                raise SigningError(f"Could not sign CDN URL for {key}: {e}") from e
            return SignedUrl(url=url, expires_at=expires_at)

        attempt = 0
        while True:
            attempt += 1
            try:
                url = self.store.presign(key, ttl_seconds)
                return SignedUrl(url=url, expires_at=expires_at)
            except StorageTransportError as e:
                if e.retryable and self.retry_config.should_retry(attempt):
                    self._sleep(self.retry_config.calculate_delay(attempt))
                    continue
                raise SigningError(f"Could not presign {key}: {e}") from e

    def base_url(self) -> str:
        """The CDN base when configured, else the direct storage base."""
        if self.cdn_base_url:
            return self.cdn_base_url
        return self.store.public_base_url()

    def cdn_url(self, key: str) -> str:
        """Public URL for a key, preferring the CDN."""
        return f"{self.base_url()}/{normalize_key(key)}"


def build_key_manager(config: Optional[Settings] = None, store: Optional[ObjectStore] = None) -> StorageKeyManager:
    """Construct the key manager from settings."""
    config = config or default_settings
    signer = None
    if config.CDN_KEY_PAIR_ID and config.CDN_PRIVATE_KEY and config.CDN_BASE_URL:
        signer = CdnUrlSigner(config.CDN_KEY_PAIR_ID, config.CDN_PRIVATE_KEY)

    return StorageKeyManager(
        store or build_object_store(config),
        cdn_base_url=config.CDN_BASE_URL,
        max_ttl_seconds=config.SIGNED_URL_MAX_TTL_SECONDS,
        key_prefix=config.UPLOAD_KEY_PREFIX,
        retry_config=get_retry_config("storage", config),
        url_signer=signer,
    )
