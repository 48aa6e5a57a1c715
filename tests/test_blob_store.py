"""Tests for LocalBlobStore and storage key helpers."""

import pytest

from api.blob_store import BlobStoreError, LocalBlobStore, asset_storage_key, validate_key
from api.enums import AssetType


class TestKeys:
    """Tests for key naming and validation."""

    @pytest.mark.parametrize(
        "asset_type,expected",
        [
            (AssetType.TRANSCODE_720, "jobs/7/transcode_720.mp4"),
            (AssetType.TRANSCODE_4K, "jobs/7/transcode_4k.mp4"),
            (AssetType.THUMBNAIL, "jobs/7/thumbnail.jpg"),
            (AssetType.GIF, "jobs/7/gif.gif"),
            (AssetType.METADATA_JSON, "jobs/7/metadata_json.json"),
        ],
    )
    def test_asset_storage_key(self, asset_type, expected):
        assert asset_storage_key(7, asset_type) == expected

    @pytest.mark.parametrize("key", ["", "/etc/passwd", "a/../b", "a//b", "./a", "a\\b", "a\x00b", "a/"])
    def test_invalid_keys(self, key):
        with pytest.raises(BlobStoreError):
            validate_key(key)

    def test_valid_key(self):
        assert validate_key("jobs/1/thumbnail.jpg") == "jobs/1/thumbnail.jpg"


class TestLocalBlobStore:
    """Tests for filesystem storage."""

    async def test_put_get_delete(self, blob_store, tmp_path):
        source = tmp_path / "in.mp4"
        source.write_bytes(b"0123456789")

        size = await blob_store.put(source, "jobs/1/transcode_720.mp4", "video/mp4")

        assert size == 10
        assert await blob_store.exists("jobs/1/transcode_720.mp4")

        copy = await blob_store.get_local("jobs/1/transcode_720.mp4", tmp_path / "out" / "copy.mp4")
        assert copy.read_bytes() == b"0123456789"

        await blob_store.delete("jobs/1/transcode_720.mp4")
        assert not await blob_store.exists("jobs/1/transcode_720.mp4")

    async def test_put_overwrites(self, blob_store, tmp_path):
        source = tmp_path / "in"
        source.write_bytes(b"first")
        await blob_store.put(source, "jobs/1/gif.gif", "image/gif")
        source.write_bytes(b"second!")

        assert await blob_store.put(source, "jobs/1/gif.gif", "image/gif") == 7

    async def test_get_missing(self, blob_store, tmp_path):
        with pytest.raises(FileNotFoundError):
            await blob_store.get_local("jobs/9/gif.gif", tmp_path / "x")

    async def test_delete_missing_is_noop(self, blob_store):
        await blob_store.delete("jobs/9/gif.gif")

    def test_path_stays_under_root(self, blob_store):
        assert blob_store.path_for("jobs/1/a.mp4").is_relative_to(blob_store.root.resolve())

    def test_missing_secret_generates_one(self, tmp_path):
        store = LocalBlobStore(tmp_path, secret="", base_url="")
        url = store.presign("jobs/1/gif.gif", 60, now=1000)
        assert "signature=" in url


class TestSignedUrls:
    """Tests for presign / verify_signature."""

    def test_presign_format(self, blob_store):
        url = blob_store.presign("jobs/3/thumbnail.jpg", expires_in=600, now=1_700_000_000)
        assert url.startswith("/blobs/jobs/3/thumbnail.jpg?expires=1700000600&signature=")

    def test_base_url_prefix(self, tmp_path):
        store = LocalBlobStore(tmp_path, secret="s", base_url="https://media.example.com")
        assert store.presign("jobs/1/gif.gif", now=0).startswith("https://media.example.com/blobs/jobs/1/gif.gif?")

    def test_valid_signature(self, blob_store):
        url = blob_store.presign("jobs/3/thumbnail.jpg", expires_in=600, now=1000)
        signature = url.split("signature=")[1]
        assert blob_store.verify_signature("jobs/3/thumbnail.jpg", 1600, signature, now=1500)

    def test_expired(self, blob_store):
        url = blob_store.presign("jobs/3/thumbnail.jpg", expires_in=600, now=1000)
        signature = url.split("signature=")[1]
        assert not blob_store.verify_signature("jobs/3/thumbnail.jpg", 1600, signature, now=1601)

    def test_signature_bound_to_key_and_expiry(self, blob_store):
        url = blob_store.presign("jobs/3/thumbnail.jpg", expires_in=600, now=1000)
        signature = url.split("signature=")[1]
        assert not blob_store.verify_signature("jobs/4/thumbnail.jpg", 1600, signature, now=1500)
        assert not blob_store.verify_signature("jobs/3/thumbnail.jpg", 1700, signature, now=1500)
        assert not blob_store.verify_signature("jobs/3/thumbnail.jpg", 1600, "", now=1500)

    def test_different_secret_rejected(self, blob_store, tmp_path):
        other = LocalBlobStore(tmp_path, secret="another-secret", base_url="")
        signature = other.presign("jobs/3/gif.gif", now=1000).split("signature=")[1]
        assert not blob_store.verify_signature("jobs/3/gif.gif", 1000 + 3600, signature, now=1500)
