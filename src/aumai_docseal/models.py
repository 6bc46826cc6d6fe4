"""Pydantic models for aumai-docseal."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class Role(str, Enum):
    """Roles a principal may hold."""

    system_admin = "SYSTEM_ADMIN"
    organization_admin = "ORGANIZATION_ADMIN"
    issuer = "ISSUER"
    verifier = "VERIFIER"
    document_owner = "DOCUMENT_OWNER"


class Principal(BaseModel):
    """The authenticated caller of a core operation."""

    user_id: str
    roles: frozenset[Role] = Field(default_factory=frozenset)
    organization_id: str | None = None

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    @property
    def is_system_admin(self) -> bool:
        return Role.system_admin in self.roles

    def administers(self, organization_id: str | None) -> bool:
        """True for system admins and for admins of *organization_id*."""
        if self.is_system_admin:
            return True
        return (
            organization_id is not None
            and Role.organization_admin in self.roles
            and self.organization_id == organization_id
        )


class RequestContext(BaseModel):
    """Network metadata of the caller, stored with audit and verification rows."""

    ip_address: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    method: str | None = None

    def verifier_info(self) -> dict[str, Any]:
        return {
            "userAgent": self.user_agent,
            "referer": self.referer,
            "method": self.method,
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }


class VerificationStatus(str, Enum):
    """Terminal verdict of the verification decision chain."""

    valid = "VALID"
    revoked = "REVOKED"
    expired = "EXPIRED"
    signature_invalid = "SIGNATURE_INVALID"
    unsigned = "UNSIGNED"
    not_found = "NOT_FOUND"


class LookupMethod(str, Enum):
    """How a verification request located its document."""

    id = "id"
    qr = "qr"
    hash = "hash"


class DocumentSnapshot(BaseModel):
    """The document fields the verification decision chain reads."""

    id: str
    title: str
    description: str | None = None
    file_hash: str
    signature: str | None = None
    certificate_id: str | None = None
    certificate_public_key: str | None = None
    signed_at: datetime | None = None
    is_revoked: bool = False
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    issuer_id: str | None = None
    organization_id: str | None = None


class DocumentInfo(BaseModel):
    """Full stored view of a document, as returned to its issuer."""

    id: str
    title: str
    description: str | None = None
    file_url: str
    file_type: str | None = None
    file_size: int = Field(ge=0)
    file_hash: str = Field(min_length=64, max_length=64)
    issuer_id: str
    owner_id: str | None = None
    organization_id: str | None = None
    metadata: dict[str, Any] | None = None
    qr_code: str | None = None
    signature: str | None = None
    certificate_id: str | None = None
    signed_at: datetime | None = None
    is_revoked: bool = False
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    expires_at: datetime | None = None
    created_at: datetime

    @property
    def is_signed(self) -> bool:
        return self.signature is not None


class DocumentSummary(BaseModel):
    """Public document fields returned with a verification verdict."""

    id: str
    title: str
    description: str | None = None
    issued_at: datetime | None = None
    signed_at: datetime | None = None
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    issuer_id: str | None = None
    organization_id: str | None = None


class VerificationResult(BaseModel):
    """Outcome of a document verification attempt."""

    status: VerificationStatus
    verified: bool
    message: str
    document: DocumentSummary | None = None
    signature_valid: bool | None = None
    revoked_reason: str | None = None

    @property
    def fail_reason(self) -> str | None:
        return None if self.verified else self.message


class DocumentStatusReport(BaseModel):
    """Read-only status of a document, without logging a verification."""

    id: str
    title: str
    status: VerificationStatus
    status_message: str
    is_signed: bool
    is_revoked: bool
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    signed_at: datetime | None = None


class BatchItemResult(BaseModel):
    """Per-document outcome inside a batch operation."""

    document_id: str
    success: bool
    signature: str | None = None
    error_kind: str | None = None
    error: str | None = None


class BatchResult(BaseModel):
    """Best-effort result list of a batch operation; never a transaction."""

    operation: str
    items: list[BatchItemResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[BatchItemResult]:
        return [item for item in self.items if item.success]

    @property
    def failed(self) -> list[BatchItemResult]:
        return [item for item in self.items if not item.success]


class KeyPairInfo(BaseModel):
    """Public metadata of an organization key pair; never carries the private key."""

    id: str
    organization_id: str
    name: str
    algorithm: str
    key_size: int
    public_key: str
    is_active: bool
    created_at: datetime


class CertificateInfo(BaseModel):
    id: str
    organization_id: str
    key_pair_id: str | None = None
    subject: str
    public_key: str
    valid_from: datetime
    valid_until: datetime
    is_revoked: bool
    revoked_at: datetime | None = None


class AuditEntry(BaseModel):
    id: str
    action: str
    user_id: str | None = None
    document_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime


class VerificationEntry(BaseModel):
    id: str
    document_id: str | None = None
    lookup_method: str
    lookup_value: str | None = None
    status: str | None = None
    is_successful: bool
    fail_reason: str | None = None
    verifier_ip: str | None = None
    created_at: datetime


class ShareLinkInfo(BaseModel):
    """A bearer link to one document; ``share_url`` embeds the access token."""

    id: str
    document_id: str
    user_id: str
    access_token: str = Field(min_length=64, max_length=64)
    share_url: str
    expires_at: datetime | None = None
    is_one_time: bool = False
    created_at: datetime


class Page(BaseModel, Generic[T]):
    """One page of a paginated listing."""

    items: list[T] = Field(default_factory=list)
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit)


__all__ = [
    "AuditEntry",
    "BatchItemResult",
    "BatchResult",
    "CertificateInfo",
    "DocumentInfo",
    "DocumentSnapshot",
    "DocumentStatusReport",
    "DocumentSummary",
    "KeyPairInfo",
    "LookupMethod",
    "Page",
    "Principal",
    "RequestContext",
    "Role",
    "ShareLinkInfo",
    "VerificationEntry",
    "VerificationResult",
    "VerificationStatus",
]
