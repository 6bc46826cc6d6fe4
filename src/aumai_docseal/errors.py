"""Error taxonomy for aumai-docseal.

Every error raised by the service layer carries a stable ``kind`` string so
that an outer boundary (HTTP handler, CLI, queue consumer) can map it to a
response without inspecting the message text.
"""

from __future__ import annotations

from typing import Any


class DocSealError(Exception):
    """Base class for all structured aumai-docseal errors."""

    kind: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation of the error."""
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DocSealError):
    """Malformed or missing input."""

    kind = "BAD_REQUEST"


class NotFoundError(DocSealError):
    """A document, certificate, key pair or organization does not exist."""

    kind = "NOT_FOUND"


class ForbiddenError(DocSealError):
    """The principal is not allowed to perform the operation."""

    kind = "FORBIDDEN"


class InvalidCertificateError(DocSealError):
    """Certificate is expired, not yet valid, or revoked."""

    kind = "INVALID_CERTIFICATE"


class CryptoError(DocSealError):
    """A hashing, signing or key-loading primitive failed."""

    kind = "CRYPTO_ERROR"


class ContentReadError(DocSealError, OSError):
    """The file addressed by a document reference could not be read."""

    kind = "IO_ERROR"


class ConflictError(DocSealError):
    """A uniqueness or optimistic-lock constraint was violated."""

    kind = "CONFLICT"


__all__ = [
    "ConflictError",
    "ContentReadError",
    "CryptoError",
    "DocSealError",
    "ForbiddenError",
    "InvalidCertificateError",
    "NotFoundError",
    "ValidationError",
]
