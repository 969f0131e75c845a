"""Tests for caverna.core.storage - local asset storage."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from caverna.core.errors import AssetStorageError
from caverna.core.storage import LocalAssetStorage, sniff_image_format


def _encode(image_format: str) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (4, 4), (10, 20, 30)).save(buffer, format=image_format)
    return buffer.getvalue()


class TestSniffImageFormat:
    @pytest.mark.parametrize(
        "image_format, extension",
        [("PNG", "png"), ("JPEG", "jpg"), ("GIF", "gif")],
    )
    def test_supported_formats(self, image_format, extension):
        assert sniff_image_format(_encode(image_format)) == extension

    def test_empty_bytes(self):
        with pytest.raises(AssetStorageError, match="empty"):
            sniff_image_format(b"")

    def test_not_an_image(self):
        with pytest.raises(AssetStorageError, match="not a readable image"):
            sniff_image_format(b"definitely not a png")

    def test_unsupported_format(self):
        with pytest.raises(AssetStorageError, match="unsupported image format"):
            sniff_image_format(_encode("BMP"))


class TestLocalAssetStorage:
    """Test storing and deleting artifacts."""

    def test_store_writes_file(self, asset_storage: LocalAssetStorage, png_bytes: bytes):
        url = asset_storage.store(png_bytes, "job-1")
        assert url == "/static/gallery/job-1.png"
        assert (asset_storage.base_dir / "job-1.png").read_bytes() == png_bytes

    def test_store_leaves_no_temp_file(self, asset_storage: LocalAssetStorage, png_bytes: bytes):
        asset_storage.store(png_bytes, "job-1")
        assert [p.name for p in asset_storage.base_dir.iterdir()] == ["job-1.png"]

    def test_store_uses_sniffed_extension(self, asset_storage: LocalAssetStorage):
        url = asset_storage.store(_encode("JPEG"), "job-2")
        assert url.endswith("/job-2.jpg")

    def test_store_rejects_garbage(self, asset_storage: LocalAssetStorage):
        with pytest.raises(AssetStorageError):
            asset_storage.store(b"garbage", "job-3")

    def test_store_rejects_traversal_key(self, asset_storage: LocalAssetStorage, png_bytes: bytes):
        with pytest.raises(AssetStorageError):
            asset_storage.store(png_bytes, "../escape")

    def test_trailing_slash_in_prefix(self, temp_dir: Path, png_bytes: bytes):
        storage = LocalAssetStorage(temp_dir / "assets", "https://cdn.example.com/images/")
        assert storage.store(png_bytes, "j") == "https://cdn.example.com/images/j.png"

    def test_delete(self, asset_storage: LocalAssetStorage, png_bytes: bytes):
        url = asset_storage.store(png_bytes, "job-1")
        assert asset_storage.delete(url) is True
        assert not (asset_storage.base_dir / "job-1.png").exists()
        assert asset_storage.delete(url) is False

    def test_delete_outside_prefix(self, asset_storage: LocalAssetStorage):
        assert asset_storage.delete("/elsewhere/job-1.png") is False

    def test_delete_traversal(self, asset_storage: LocalAssetStorage, temp_dir: Path):
        victim = temp_dir / "victim.png"
        victim.write_bytes(b"x")
        assert asset_storage.delete("/static/gallery/../victim.png") is False
        assert victim.exists()
