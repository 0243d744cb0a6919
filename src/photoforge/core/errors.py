"""Error taxonomy for the generation lifecycle.

Every error raised by the core services derives from :class:`PhotoforgeError`
and carries an HTTP status code and a short machine-readable ``code``.  The
API layer installs a single exception handler that turns these into JSON
responses, so route handlers never build error payloads themselves.

Hierarchy
---------
::

    PhotoforgeError
    ├── ValidationError          400  bad input, no side effects
    │   └── InvalidFile          400  upload rejected by file intake
    ├── InvalidTransition        400  e.g. retrying a generation that did not fail
    ├── Unauthorized             401  no caller identity on the request
    ├── Forbidden                403  caller lacks the admin role
    ├── NotFound                 404  user or generation missing for this caller
    ├── QuotaExceeded            429  no generations left today
    ├── ProviderError            4xx/5xx by kind (auth, quota, safety, transient, malformed)
    ├── EchoedOutput             502  provider returned the input unchanged
    ├── ServiceUnavailable       503  no provider configured
    └── PersistenceError         500  storage failure
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from photoforge.core.quota import Quota


class PhotoforgeError(Exception):
    """Base class for all user-facing Photoforge errors.

    The message is intended to be displayed directly to the caller.
    """

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialise the error for an API response body."""
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(PhotoforgeError):
    """Malformed request input (empty prompt, oversized prompt, missing file)."""

    status_code = 400
    code = "validation_error"


class InvalidFile(ValidationError):
    """Uploaded file is not an acceptable image."""

    code = "invalid_file"


class InvalidTransition(PhotoforgeError):
    """Requested status change is not allowed from the record's current state."""

    status_code = 400
    code = "invalid_transition"


class Unauthorized(PhotoforgeError):
    """Request carries no caller identity."""

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class Forbidden(PhotoforgeError):
    """Caller is identified but not allowed to perform the action."""

    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Admin access required") -> None:
        super().__init__(message)


class NotFound(PhotoforgeError):
    status_code = 404
    code = "not_found"


class QuotaExceeded(PhotoforgeError):
    """Caller has no remaining generations for today.

    Attributes:
        quota: Snapshot of the quota that was exhausted, when known
    """

    status_code = 429
    code = "quota_exceeded"

    def __init__(
        self,
        message: str = "Daily generation limit exceeded. Please upgrade to Pro for more generations.",
        quota: Quota | None = None,
    ) -> None:
        super().__init__(message)
        self.quota = quota

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.quota is not None:
            payload["quota"] = {
                "used": self.quota.generations_used,
                "limit": self.quota.generations_limit,
                "reset_at": self.quota.reset_at.isoformat(),
            }
        return payload


class ProviderErrorKind(str, Enum):
    """Classification of an external provider failure."""

    AUTH = "auth"
    QUOTA = "quota"
    SAFETY = "safety"
    TRANSIENT = "transient"
    MALFORMED = "malformed"


# Safety rejections are the caller's problem (422); everything else is an
# upstream fault.
_PROVIDER_STATUS = {
    ProviderErrorKind.AUTH: 502,
    ProviderErrorKind.QUOTA: 503,
    ProviderErrorKind.SAFETY: 422,
    ProviderErrorKind.TRANSIENT: 503,
    ProviderErrorKind.MALFORMED: 502,
}

_PROVIDER_MESSAGES = {
    ProviderErrorKind.AUTH: "Invalid or missing image provider API key",
    ProviderErrorKind.QUOTA: "Image provider quota exceeded. Please try again later.",
    ProviderErrorKind.SAFETY: "Content blocked by safety filters",
    ProviderErrorKind.TRANSIENT: "Image provider is temporarily unreachable",
    ProviderErrorKind.MALFORMED: "Invalid response from AI service",
}


class ProviderError(PhotoforgeError):
    """Failure reported by the external image-generation provider.

    Attributes:
        kind: Failure classification; only ``transient`` failures are
            eligible for the local placeholder fallback
        detail: Raw provider message, kept for logs and the stored record
    """

    def __init__(
        self,
        kind: ProviderErrorKind | str,
        message: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.kind = ProviderErrorKind(kind)
        super().__init__(message or _PROVIDER_MESSAGES[self.kind])
        self.detail = detail
        self.status_code = _PROVIDER_STATUS[self.kind]
        self.code = f"provider_{self.kind.value}"

    @property
    def is_transient(self) -> bool:
        return self.kind is ProviderErrorKind.TRANSIENT


class EchoedOutput(PhotoforgeError):
    """Provider returned the uploaded image unchanged instead of a transformation."""

    status_code = 502
    code = "echoed_output"

    def __init__(
        self,
        message: str = "The AI service returned your image unchanged. Try a different prompt.",
    ) -> None:
        super().__init__(message)


class ServiceUnavailable(PhotoforgeError):
    """No image provider is configured for this deployment."""

    status_code = 503
    code = "provider_unavailable"

    def __init__(self, message: str = "Image generation service is not available") -> None:
        super().__init__(message)


class PersistenceError(PhotoforgeError):
    """Storage layer failed to read or write a record."""

    status_code = 500
    code = "persistence_error"
