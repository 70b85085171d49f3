"""Tests for the storage key manager."""

import re
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from hypothesis import given, settings, strategies as st

from media_pipeline.core.retry import RetryConfig
from media_pipeline.core.storage import InvalidStorageKeyError
from media_pipeline.modules.media.keys import (
    CdnUrlSigner,
    SigningError,
    StorageKeyManager,
    StorageUnavailable,
    sanitize_filename,
)

from conftest import CDN_BASE, FakeClock, InMemoryObjectStore


def _private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


class TestAllocateKey:
    def test_key_layout(self, key_manager) -> None:
        key = key_manager.allocate_key("My Movie.mp4")
        assert re.fullmatch(r"videos/\d{13}-[0-9a-f]{8}-My-Movie\.mp4", key)

    def test_timestamp_is_utc_milliseconds(self, key_manager) -> None:
        key = key_manager.allocate_key("a.mp4")
        # 2024-01-01T12:00:00Z
        assert key.startswith("videos/1704110400000-")

    def test_same_filename_same_instant_never_collides(self, key_manager) -> None:
        keys = {key_manager.allocate_key("movie.mp4") for _ in range(200)}
        assert len(keys) == 200

    def test_path_components_are_dropped(self, key_manager) -> None:
        key = key_manager.allocate_key("../../etc/passwd")
        assert key.endswith("-passwd")
        assert ".." not in key

    @given(filename=st.text(max_size=80))
    @settings(max_examples=100)
    def test_any_filename_yields_a_valid_key(self, filename) -> None:
        manager = StorageKeyManager(InMemoryObjectStore(), clock=FakeClock())
        key = manager.allocate_key(filename)
        assert key.startswith("videos/")
        assert "/" not in key[len("videos/"):]

    def test_sanitize_filename(self) -> None:
        assert sanitize_filename("C:\\Users\\me\\clip 01.mov") == "clip-01.mov"
        assert sanitize_filename("") == "upload"
        assert sanitize_filename("...") == "upload"


class TestPutObject:
    def test_put_stores_object(self, key_manager, object_store) -> None:
        stored = key_manager.put_object("videos/a.mp4", b"data", "video/mp4")
        assert stored.size == 4
        assert object_store.objects["videos/a.mp4"] == (b"data", "video/mp4")

    def test_transient_failures_are_retried(self, key_manager, object_store) -> None:
        object_store.put_failures = 2
        key_manager.put_object("videos/a.mp4", b"data")
        assert object_store.put_calls == 3
        assert object_store.exists("videos/a.mp4")

    def test_exhausted_retries_raise_and_leave_nothing(self, key_manager, object_store) -> None:
        object_store.put_failures = 10
        with pytest.raises(StorageUnavailable):
            key_manager.put_object("videos/a.mp4", b"data")
        assert object_store.put_calls == 3
        assert not object_store.exists("videos/a.mp4")
        assert "videos/a.mp4" in object_store.deleted

    def test_non_retryable_failure_is_not_retried(self, key_manager, object_store) -> None:
        object_store.put_failures = 1
        object_store.retryable = False
        with pytest.raises(StorageUnavailable):
            key_manager.put_object("videos/a.mp4", b"data")
        assert object_store.put_calls == 1

    def test_backoff_delays_are_used(self, object_store) -> None:
        delays = []
        manager = StorageKeyManager(
            object_store,
            retry_config=RetryConfig(max_attempts=3, initial_delay=0.5, max_delay=5.0),
            sleep=delays.append,
        )
        object_store.put_failures = 2
        manager.put_object("videos/a.mp4", b"x")
        assert delays == [0.5, 1.0]

    def test_invalid_key_is_rejected(self, key_manager) -> None:
        with pytest.raises(InvalidStorageKeyError):
            key_manager.put_object("videos/../secret", b"x")


class TestSignedUrl:
    def test_expiry_is_now_plus_ttl(self, key_manager, clock) -> None:
        signed = key_manager.signed_url("videos/a/hd720/playlist.m3u8", 300)
        assert signed.expires_at == clock() + timedelta(seconds=300)

    def test_ttl_at_maximum_is_allowed(self, key_manager, clock) -> None:
        signed = key_manager.signed_url("videos/a.mp4", 3600)
        assert signed.expires_at == clock() + timedelta(seconds=3600)

    def test_ttl_above_maximum_raises(self, key_manager) -> None:
        with pytest.raises(SigningError):
            key_manager.signed_url("videos/a.mp4", 3601)

    @pytest.mark.parametrize("ttl", [0, -5, 1.5, True, "60"])
    def test_invalid_ttl_raises(self, key_manager, ttl) -> None:
        with pytest.raises(SigningError):
            key_manager.signed_url("videos/a.mp4", ttl)

    @given(ttl=st.integers(min_value=1, max_value=3600))
    @settings(max_examples=100)
    def test_expiry_never_exceeds_maximum(self, ttl) -> None:
        clock = FakeClock()
        manager = StorageKeyManager(InMemoryObjectStore(), max_ttl_seconds=3600, clock=clock)
        signed = manager.signed_url("videos/a.mp4", ttl)
        assert signed.expires_at <= clock() + timedelta(seconds=3600)

    def test_urls_are_not_cached(self, key_manager) -> None:
        first = key_manager.signed_url("videos/a.mp4", 60)
        second = key_manager.signed_url("videos/a.mp4", 60)
        assert first.url != second.url

    def test_presign_transport_failure_is_retried(self, key_manager, object_store) -> None:
        object_store.presign_failures = 2
        assert key_manager.signed_url("videos/a.mp4", 60).url

    def test_presign_exhaustion_raises_signing_error(self, key_manager, object_store) -> None:
        object_store.presign_failures = 5
        with pytest.raises(SigningError):
            key_manager.signed_url("videos/a.mp4", 60)

    def test_cdn_signer_produces_canned_policy_url(self, object_store, clock) -> None:
        signer = CdnUrlSigner("K2JCJMDEHXQW5F", _private_key_pem())
        manager = StorageKeyManager(object_store, cdn_base_url=CDN_BASE, url_signer=signer, clock=clock)
        signed = manager.signed_url("videos/a/hd720/playlist.m3u8", 300)
        assert signed.url.startswith(f"{CDN_BASE}/videos/a/hd720/playlist.m3u8?")
        assert "Key-Pair-Id=K2JCJMDEHXQW5F" in signed.url
        assert "Signature=" in signed.url
        assert "Expires=" in signed.url

    def test_invalid_private_key_raises(self) -> None:
        with pytest.raises(SigningError):
            CdnUrlSigner("KEY", "not a pem")


class TestCdnUrl:
    def test_prefers_cdn_base(self, key_manager) -> None:
        assert key_manager.cdn_url("videos/a.mp4") == f"{CDN_BASE}/videos/a.mp4"

    def test_falls_back_to_storage(self, object_store) -> None:
        manager = StorageKeyManager(object_store)
        assert manager.cdn_url("/videos/a.mp4") == "https://storage.example.com/bucket/videos/a.mp4"

    def test_trailing_slash_on_cdn_base(self, object_store) -> None:
        manager = StorageKeyManager(object_store, cdn_base_url=CDN_BASE + "/")
        assert manager.cdn_url("videos/a.mp4") == f"{CDN_BASE}/videos/a.mp4"
