"""Local placeholder synthesis used when the provider cannot be reached.

The placeholder is derived from the uploaded image (grayscale, fitted to the
requested size, a "PREVIEW" banner across the bottom) so the caller gets a
recognisable stand-in that can never be byte-identical to the input.
"""

import io
import logging

from PIL import Image, ImageDraw, ImageOps

logger = logging.getLogger(__name__)

PLACEHOLDER_LABEL = "PREVIEW"
_BANNER_FILL = (20, 20, 20)
_BANNER_TEXT = (235, 235, 235)


def synthesize_placeholder(
    image_bytes: bytes | None,
    width: int,
    height: int,
    label: str = PLACEHOLDER_LABEL,
) -> bytes:
    """Build a PNG placeholder result.

    Args:
        image_bytes: Uploaded image, or ``None`` for a plain grey canvas
        width: Target width in pixels
        height: Target height in pixels
        label: Banner text

    Returns:
        PNG-encoded image bytes
    """
    if image_bytes:
        with Image.open(io.BytesIO(image_bytes)) as source:
            base = ImageOps.exif_transpose(source).convert("L")
            canvas = ImageOps.fit(base, (width, height)).convert("RGB")
    else:
        canvas = Image.new("RGB", (width, height), color=(128, 128, 128))

    draw = ImageDraw.Draw(canvas)
    banner_height = max(16, height // 10)
    draw.rectangle([(0, height - banner_height), (width, height)], fill=_BANNER_FILL)

    text_box = draw.textbbox((0, 0), label)
    text_width = text_box[2] - text_box[0]
    text_height = text_box[3] - text_box[1]
    draw.text(
        ((width - text_width) // 2, height - banner_height + (banner_height - text_height) // 2),
        label,
        fill=_BANNER_TEXT,
    )

    buffer = io.BytesIO()
    canvas.save(buffer, format="PNG")
    logger.debug(f"Synthesized {width}x{height} placeholder")
    return buffer.getvalue()
