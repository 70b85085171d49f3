"""Tests for the filesystem and key-normalization parts of storage."""

from urllib.parse import parse_qs, urlparse

import pytest

from media_pipeline.core.storage import InvalidStorageKeyError, LocalObjectStore, normalize_key


@pytest.fixture
def local_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "media"), "http://localhost:8000/media/", "test-secret")


class TestNormalizeKey:
    def test_strips_leading_slashes_and_collapses_repeats(self) -> None:
        assert normalize_key("//videos//a.mp4 ") == "videos/a.mp4"

    @pytest.mark.parametrize("key", ["", "   ", "/", "videos/../etc/passwd", "videos/a?.mp4", "videos/\x00"])
    def test_rejects_bad_keys(self, key) -> None:
        with pytest.raises(InvalidStorageKeyError):
            normalize_key(key)

    def test_invalid_key_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            normalize_key("..")


class TestLocalObjectStore:
    def test_put_then_exists(self, local_store) -> None:
        stored = local_store.put("videos/a/hd720/playlist.m3u8", b"#EXTM3U\n")
        assert stored.key == "videos/a/hd720/playlist.m3u8"
        assert stored.size == 8
        assert stored.etag
        assert local_store.exists("videos/a/hd720/playlist.m3u8")
        assert local_store.path_for("videos/a/hd720/playlist.m3u8").read_bytes() == b"#EXTM3U\n"

    def test_put_overwrites_atomically(self, local_store) -> None:
        local_store.put("videos/a.mp4", b"one")
        local_store.put("videos/a.mp4", b"two")
        assert local_store.path_for("videos/a.mp4").read_bytes() == b"two"
        leftovers = [p for p in local_store.path_for("videos/a.mp4").parent.iterdir() if p.name != "a.mp4"]
        assert leftovers == []

    def test_list_keys_by_prefix(self, local_store) -> None:
        local_store.put("videos/a/hd720/playlist.m3u8", b"x")
        local_store.put("videos/a/sd480/playlist.m3u8", b"x")
        local_store.put("videos/b.mp4", b"x")
        assert local_store.list_keys("videos/a/") == [
            "videos/a/hd720/playlist.m3u8",
            "videos/a/sd480/playlist.m3u8",
        ]
        assert len(local_store.list_keys()) == 3

    def test_list_keys_missing_prefix(self, local_store) -> None:
        assert local_store.list_keys("nothing/here/") == []

    def test_delete_is_idempotent(self, local_store) -> None:
        local_store.put("videos/a.mp4", b"x")
        local_store.delete("videos/a.mp4")
        local_store.delete("videos/a.mp4")
        assert not local_store.exists("videos/a.mp4")

    def test_traversal_is_rejected(self, local_store) -> None:
        with pytest.raises(InvalidStorageKeyError):
            local_store.put("../outside.txt", b"x")

    def test_public_base_url_has_no_trailing_slash(self, local_store) -> None:
        assert local_store.public_base_url() == "http://localhost:8000/media"
        assert local_store.object_url("videos/a b.mp4") == "http://localhost:8000/media/videos/a%20b.mp4"

    def test_health_check(self, local_store) -> None:
        assert local_store.health_check() is True

    def test_health_check_does_not_walk_the_tree(self, local_store, monkeypatch) -> None:
        local_store.put("videos/a.mp4", b"a")

        def fail_listing(*args, **kwargs):
            raise AssertionError("health check listed the store")

        monkeypatch.setattr(local_store, "list_keys", fail_listing)
        assert local_store.health_check() is True

    def test_missing_root_is_unhealthy(self, local_store) -> None:
        local_store.base_path.rmdir()
        assert local_store.health_check() is False


class TestLocalSignedUrls:
    def _parts(self, url):
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        return parsed.path, int(query["exp"][0]), query["sig"][0]

    def test_presigned_url_verifies(self, local_store) -> None:
        path, exp, sig = self._parts(local_store.presign("videos/a.mp4", 60))
        assert path == "/media/videos/a.mp4"
        assert local_store.verify("videos/a.mp4", exp, sig)

    def test_expired_url_fails(self, local_store) -> None:
        _, exp, sig = self._parts(local_store.presign("videos/a.mp4", 60))
        assert not local_store.verify("videos/a.mp4", exp, sig, now=exp)
        assert local_store.verify("videos/a.mp4", exp, sig, now=exp - 1)

    def test_signature_is_bound_to_key(self, local_store) -> None:
        _, exp, sig = self._parts(local_store.presign("videos/a.mp4", 60))
        assert not local_store.verify("videos/b.mp4", exp, sig)

    def test_signature_is_bound_to_expiry(self, local_store) -> None:
        _, exp, sig = self._parts(local_store.presign("videos/a.mp4", 60))
        assert not local_store.verify("videos/a.mp4", exp + 3600, sig)

    def test_other_secret_does_not_verify(self, local_store, tmp_path) -> None:
        other = LocalObjectStore(str(tmp_path / "other"), "http://localhost:8000/media", "another-secret")
        _, exp, sig = self._parts(local_store.presign("videos/a.mp4", 60))
        assert not other.verify("videos/a.mp4", exp, sig)
