"""aumai-docseal: Issue, sign, verify and revoke digital documents."""

from aumai_docseal.config import Settings
from aumai_docseal.core import (
    ContentHasher,
    DocumentSigner,
    DocumentVerifier,
    KeyManager,
)
from aumai_docseal.errors import (
    ConflictError,
    ContentReadError,
    CryptoError,
    DocSealError,
    ForbiddenError,
    InvalidCertificateError,
    NotFoundError,
    ValidationError,
)
from aumai_docseal.models import (
    BatchResult,
    DocumentInfo,
    DocumentStatusReport,
    Principal,
    RequestContext,
    Role,
    ShareLinkInfo,
    VerificationResult,
    VerificationStatus,
)
from aumai_docseal.service import DocumentService
from aumai_docseal.storage import Database

__version__ = "0.1.0"

__all__ = [
    "BatchResult",
    "ConflictError",
    "ContentHasher",
    "ContentReadError",
    "CryptoError",
    "Database",
    "DocSealError",
    "DocumentInfo",
    "DocumentService",
    "DocumentSigner",
    "DocumentStatusReport",
    "DocumentVerifier",
    "ForbiddenError",
    "InvalidCertificateError",
    "KeyManager",
    "NotFoundError",
    "Principal",
    "RequestContext",
    "Role",
    "Settings",
    "ShareLinkInfo",
    "ValidationError",
    "VerificationResult",
    "VerificationStatus",
]
