"""Tests for photoforge.core.uploads — image intake and output storage."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from photoforge.core.errors import InvalidFile
from photoforge.core.uploads import UploadIntake


class TestReceiveUpload:
    """Validation and normalisation of uploaded images."""

    def test_stores_progressive_jpeg(self, intake: UploadIntake, make_image, test_config):
        stored = intake.receive_upload(make_image(fmt="PNG"), "image/png", "cat.png")

        assert stored.path.exists()
        assert stored.path.parent == test_config.uploads_dir
        assert stored.filename.endswith(".jpg")
        assert stored.url == f"/uploads/{stored.filename}"
        assert stored.original_format == "PNG"
        assert (stored.width, stored.height) == (320, 240)
        assert stored.path.read_bytes() == stored.data
        with Image.open(io.BytesIO(stored.data)) as image:
            assert image.format == "JPEG"
            assert image.info.get("progressive") or image.info.get("progression")

    def test_unique_filenames(self, intake: UploadIntake, image_bytes: bytes):
        first = intake.receive_upload(image_bytes, "image/jpeg")
        second = intake.receive_upload(image_bytes, "image/jpeg")
        assert first.filename != second.filename

    @pytest.mark.parametrize("mime", ["image/gif", "text/plain", None])
    def test_rejects_mime_type(self, intake: UploadIntake, image_bytes: bytes, mime):
        with pytest.raises(InvalidFile, match="Invalid file type"):
            intake.receive_upload(image_bytes, mime)

    def test_accepts_jpg_alias_and_webp(self, intake: UploadIntake, make_image):
        intake.receive_upload(make_image(), "image/jpg")
        intake.receive_upload(make_image(fmt="WEBP"), "image/webp")

    def test_rejects_empty(self, intake: UploadIntake):
        with pytest.raises(InvalidFile, match="empty"):
            intake.receive_upload(b"", "image/jpeg")

    def test_rejects_oversized(self, intake: UploadIntake, test_config, image_bytes: bytes):
        test_config.max_upload_bytes = len(image_bytes) - 1
        with pytest.raises(InvalidFile, match="less than"):
            intake.receive_upload(image_bytes, "image/jpeg")

    def test_rejects_corrupt_image(self, intake: UploadIntake):
        with pytest.raises(InvalidFile, match="Image processing failed"):
            intake.receive_upload(b"\xff\xd8 definitely not a jpeg", "image/jpeg")

    def test_rejects_too_small(self, intake: UploadIntake, make_image):
        with pytest.raises(InvalidFile, match="at least 100x100"):
            intake.receive_upload(make_image((99, 300)), "image/jpeg")

    def test_shrinks_large_image(self, intake: UploadIntake, make_image, test_config):
        test_config.max_image_dimension = 256
        stored = intake.receive_upload(make_image((1024, 512)), "image/jpeg")
        assert (stored.width, stored.height) == (256, 128)
        assert (stored.original_width, stored.original_height) == (1024, 512)

    def test_rejection_writes_nothing(self, intake: UploadIntake, make_image, test_config):
        with pytest.raises(InvalidFile):
            intake.receive_upload(make_image((50, 50)), "image/jpeg")
        assert list(test_config.uploads_dir.iterdir()) == []

    def test_metadata(self, intake: UploadIntake, image_bytes: bytes):
        meta = intake.receive_upload(image_bytes, "image/jpeg").metadata()
        assert meta["width"] == 320
        assert meta["original_format"] == "JPEG"
        assert meta["file_size"] > 0


class TestOutputs:
    def test_store_output(self, intake: UploadIntake, make_image, test_config):
        output = intake.store_output(make_image((64, 48), fmt="PNG"), "image/png")
        assert output.path.parent == test_config.outputs_dir
        assert output.filename.startswith("gen-")
        assert output.filename.endswith(".png")
        assert output.url == f"/outputs/{output.filename}"
        assert (output.width, output.height) == (64, 48)

    def test_store_output_prefix_and_extension(self, intake: UploadIntake, make_image):
        output = intake.store_output(make_image(), "image/jpeg", prefix="placeholder")
        assert output.filename.startswith("placeholder-")
        assert output.filename.endswith(".jpg")

    def test_store_undecodable_output(self, intake: UploadIntake):
        output = intake.store_output(b"opaque", "image/png")
        assert output.width is None
        assert output.size == 6

    def test_read_upload_and_discard(self, intake: UploadIntake, image_bytes: bytes):
        stored = intake.receive_upload(image_bytes, "image/jpeg")
        assert intake.read_upload(stored.path) == stored.data

        intake.discard(stored.path)
        intake.discard(stored.path)
        with pytest.raises(FileNotFoundError):
            intake.read_upload(stored.path)
