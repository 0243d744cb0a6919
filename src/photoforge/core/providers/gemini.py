"""Google Gemini image-to-image provider.

Uses the ``google-genai`` SDK.  The uploaded image and the resolved prompt are
sent together to an image-capable Gemini model; the first ``inline_data`` part
of the first candidate is taken as the output image.

Failure classification
----------------------
=====================================================  ===========
Condition                                              Kind
=====================================================  ===========
HTTP 401/403, "API key" in message                     auth
HTTP 429, "quota" / "RESOURCE_EXHAUSTED" in message    quota
"safety" / "blocked", SAFETY finish or block reason    safety
HTTP 5xx, transport errors, TLS errors, timeouts       transient
Other 4xx, no image part in the response               malformed
=====================================================  ===========

Anything else is left unclassified and propagates to the caller.
"""

from __future__ import annotations

import io
import logging
import ssl

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from PIL import Image

from photoforge.core.config import PhotoforgeConfig
from photoforge.core.errors import ProviderError, ProviderErrorKind
from photoforge.core.providers.base import ImageProvider, ProviderResult, provider_registry

logger = logging.getLogger(__name__)

_SAFETY_MARKERS = ("safety", "blocked", "prohibited")


def _message_kind(message: str) -> ProviderErrorKind | None:
    lowered = message.lower()
    if "api key" in lowered or "permission denied" in lowered:
        return ProviderErrorKind.AUTH
    if "quota" in lowered or "resource_exhausted" in lowered:
        return ProviderErrorKind.QUOTA
    if any(marker in lowered for marker in _SAFETY_MARKERS):
        return ProviderErrorKind.SAFETY
    return None


def classify_exception(exc: BaseException) -> ProviderError | None:
    """Map an SDK or transport exception onto a :class:`ProviderError`.

    Returns:
        The classified error, or ``None`` if the exception is not a
        recognised provider failure
    """
    if isinstance(exc, ProviderError):
        return exc

    if isinstance(exc, genai_errors.ServerError):
        return ProviderError(ProviderErrorKind.TRANSIENT, detail=str(exc))

    if isinstance(exc, genai_errors.ClientError):
        code = getattr(exc, "code", None)
        if code in (401, 403):
            kind = ProviderErrorKind.AUTH
        elif code == 429:
            kind = ProviderErrorKind.QUOTA
        else:
            kind = _message_kind(str(exc)) or ProviderErrorKind.MALFORMED
        return ProviderError(kind, detail=str(exc))

    if isinstance(exc, (httpx.TransportError, ssl.SSLError, TimeoutError, ConnectionError)):
        return ProviderError(ProviderErrorKind.TRANSIENT, detail=str(exc))

    kind = _message_kind(str(exc))
    if kind is not None:
        return ProviderError(kind, detail=str(exc))
    return None


def _is_safety_reason(reason: object) -> bool:
    if reason is None:
        return False
    label = str(getattr(reason, "name", reason)).lower()
    return any(marker in label for marker in _SAFETY_MARKERS)


@provider_registry.register
class GeminiProvider(ImageProvider):
    """Image-to-image generation through the Gemini API."""

    name = "Gemini"
    description = "Google Gemini image generation (image + prompt to image)"
    version = "0.2.0"

    def __init__(self, config: PhotoforgeConfig) -> None:
        super().__init__(config)
        self.model = config.gemini_model
        self._client: genai.Client | None = None
        if config.gemini_api_key:
            self._client = genai.Client(
                api_key=config.gemini_api_key,
                http_options=types.HttpOptions(
                    timeout=int(config.provider_timeout_seconds * 1000)
                ),
            )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def generate(
        self,
        prompt: str,
        image_bytes: bytes | None,
        *,
        width: int,
        height: int,
        mime_type: str = "image/jpeg",
    ) -> ProviderResult:
        if self._client is None:
            raise ProviderError(ProviderErrorKind.AUTH, detail="Gemini API key is not configured")

        contents: list = [prompt]
        if image_bytes is not None:
            contents.insert(0, Image.open(io.BytesIO(image_bytes)))

        logger.debug(
            f"Gemini request: model={self.model} prompt_length={len(prompt)} "
            f"image_bytes={len(image_bytes) if image_bytes else 0} size={width}x{height}"
        )

        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
            )
        except Exception as e:
            classified = classify_exception(e)
            if classified is None:
                raise
            logger.warning(f"Gemini call failed ({classified.kind.value}): {e}")
            raise classified from e

        return self._parse_response(response)

    def _parse_response(self, response) -> ProviderResult:
        """Extract the first inline image from a ``generate_content`` response.

        Raises:
            ProviderError: ``safety`` if the response was blocked, otherwise
                ``malformed`` when no image is present
        """
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise ProviderError(
                ProviderErrorKind.SAFETY, detail=f"Prompt blocked: {feedback.block_reason}"
            )

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            raise ProviderError(ProviderErrorKind.MALFORMED, detail="No candidates in response")

        candidate = candidates[0]
        content = getattr(candidate, "content", None)
        parts = getattr(content, "parts", None) or []

        text_chunks: list[str] = []
        for part in parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                return ProviderResult(
                    image_bytes=inline.data,
                    mime_type=inline.mime_type or "image/png",
                    text="".join(text_chunks) or None,
                )
            if getattr(part, "text", None):
                text_chunks.append(part.text)

        if _is_safety_reason(getattr(candidate, "finish_reason", None)):
            raise ProviderError(
                ProviderErrorKind.SAFETY, detail=f"Finish reason: {candidate.finish_reason}"
            )
        raise ProviderError(
            ProviderErrorKind.MALFORMED,
            detail="No image data received from Gemini API" + (
                f": {''.join(text_chunks)[:200]}" if text_chunks else ""
            ),
        )
