"""File intake: validation and normalisation of uploaded images.

Every accepted upload is decoded with Pillow, checked against the dimension
limits, shrunk to fit ``max_image_dimension`` when needed, re-encoded as a
progressive JPEG and stored under a fresh uuid filename.  The caller receives
a :class:`StoredUpload` describing the stored copy; the original bytes are
never written to disk.

Generated images (provider output or local placeholders) are stored in the
outputs directory by :meth:`UploadIntake.store_output`.
"""

from __future__ import annotations

import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from photoforge.core.config import PhotoforgeConfig
from photoforge.core.errors import InvalidFile

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})

_OUTPUT_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class StoredUpload:
    """A validated, normalised upload on disk."""

    filename: str
    path: Path
    url: str
    data: bytes
    width: int
    height: int
    size: int
    original_width: int
    original_height: int
    original_format: str | None
    mime_type: str = "image/jpeg"

    def metadata(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "file_size": self.size,
            "original_width": self.original_width,
            "original_height": self.original_height,
            "original_format": self.original_format,
        }


@dataclass(frozen=True)
class StoredOutput:
    """A generated image written to the outputs directory."""

    filename: str
    path: Path
    url: str
    width: int | None
    height: int | None
    size: int

    def metadata(self) -> dict:
        return {"width": self.width, "height": self.height, "file_size": self.size}


class UploadIntake:
    """Receive uploaded images and store generated ones."""

    def __init__(self, config: PhotoforgeConfig):
        self.config = config
        self.uploads_dir = Path(config.uploads_dir)
        self.outputs_dir = Path(config.outputs_dir)

    def receive_upload(
        self,
        data: bytes,
        declared_mime_type: str | None,
        filename: str | None = None,
    ) -> StoredUpload:
        """Validate and store an uploaded image.

        Args:
            data: Raw uploaded bytes
            declared_mime_type: Content type sent by the client
            filename: Original filename, for logging only

        Returns:
            The stored, normalised upload

        Raises:
            InvalidFile: Wrong type, too large, undecodable or too small
        """
        mime_type = (declared_mime_type or "").lower()
        if mime_type not in ALLOWED_MIME_TYPES:
            raise InvalidFile(
                "Invalid file type. Only JPEG, PNG, and WebP are allowed. "
                f"Got: {declared_mime_type or 'unknown'}"
            )
        if not data:
            raise InvalidFile("Uploaded file is empty")
        if len(data) > self.config.max_upload_bytes:
            limit_mb = self.config.max_upload_bytes // (1024 * 1024)
            raise InvalidFile(f"Image must be less than {limit_mb}MB")

        try:
            with Image.open(io.BytesIO(data)) as probe:
                probe.verify()
            with Image.open(io.BytesIO(data)) as source:
                original_format = source.format
                image = ImageOps.exif_transpose(source).convert("RGB")
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
            logger.warning(f"Rejected upload {filename or ''}: {e}")
            raise InvalidFile(f"Image processing failed: {e}") from e

        original_width, original_height = image.size
        minimum = self.config.min_image_dimension
        if original_width < minimum or original_height < minimum:
            raise InvalidFile(f"Image must be at least {minimum}x{minimum} pixels")

        maximum = self.config.max_image_dimension
        if original_width > maximum or original_height > maximum:
            # thumbnail keeps the aspect ratio and never enlarges.
            image.thumbnail((maximum, maximum), Image.Resampling.LANCZOS)
            logger.info(
                f"Resized upload from {original_width}x{original_height} to "
                f"{image.width}x{image.height}"
            )

        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=self.config.jpeg_quality, progressive=True)
        processed = buffer.getvalue()

        stored_name = f"{uuid.uuid4().hex}.jpg"
        path = self.uploads_dir / stored_name
        path.write_bytes(processed)

        logger.info(
            f"Stored upload {filename or '<unnamed>'} as {stored_name} "
            f"({image.width}x{image.height}, {len(processed)} bytes)"
        )
        return StoredUpload(
            filename=stored_name,
            path=path,
            url=self.config.public_url("uploads", stored_name),
            data=processed,
            width=image.width,
            height=image.height,
            size=len(processed),
            original_width=original_width,
            original_height=original_height,
            original_format=original_format,
        )

    def read_upload(self, path: str | Path) -> bytes:
        """Read a previously stored upload back (used by retries).

        Raises:
            FileNotFoundError: If the stored file no longer exists
        """
        return Path(path).read_bytes()

    def store_output(self, image_bytes: bytes, mime_type: str, prefix: str = "gen") -> StoredOutput:
        """Write a generated image to the outputs directory."""
        extension = _OUTPUT_EXTENSIONS.get(mime_type.lower(), "png")
        stored_name = f"{prefix}-{uuid.uuid4().hex}.{extension}"
        path = self.outputs_dir / stored_name
        path.write_bytes(image_bytes)

        width = height = None
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                width, height = image.size
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Could not read dimensions of {stored_name}: {e}")

        return StoredOutput(
            filename=stored_name,
            path=path,
            url=self.config.public_url("outputs", stored_name),
            width=width,
            height=height,
            size=len(image_bytes),
        )

    def discard(self, path: str | Path) -> None:
        """Remove a stored file, ignoring files that are already gone."""
        Path(path).unlink(missing_ok=True)
