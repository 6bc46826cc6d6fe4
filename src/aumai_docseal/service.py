"""Document lifecycle service: keys, certificates, issuing, signing, verification.

:class:`DocumentService` is the single entry point an outer boundary (HTTP
handler, CLI, worker) calls.  Every mutating operation takes an explicit
:class:`~aumai_docseal.models.Principal`; side effects (audit trail, owner
notifications, verification log) go through :class:`BackgroundTasks` and can
never fail the primary operation.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import secrets
from collections.abc import Callable, Iterable
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from aumai_docseal.config import Settings
from aumai_docseal.core import (
    KEY_ALGORITHM,
    ContentHasher,
    DocumentSigner,
    DocumentVerifier,
    KeyManager,
    generate_rsa_keypair,
)
from aumai_docseal.errors import (
    ConflictError,
    DocSealError,
    ForbiddenError,
    InvalidCertificateError,
    NotFoundError,
    ValidationError,
)
from aumai_docseal.models import (
    AuditEntry,
    BatchItemResult,
    BatchResult,
    CertificateInfo,
    DocumentInfo,
    DocumentSnapshot,
    DocumentStatusReport,
    KeyPairInfo,
    LookupMethod,
    Page,
    Principal,
    RequestContext,
    Role,
    ShareLinkInfo,
    VerificationEntry,
    VerificationResult,
    VerificationStatus,
)
from aumai_docseal.qr import (
    build_share_url,
    build_verification_url,
    document_id_from_qr,
    render_qr_data_url,
)
from aumai_docseal.recorder import (
    AuditTrail,
    DatabaseNotifier,
    Notifier,
    VerificationRecorder,
)
from aumai_docseal.storage import (
    CertificateRecord,
    Database,
    DocumentRecord,
    DocumentShareRecord,
    KeyPairRecord,
    Organization,
    active_key_pairs,
    find_document_by_hash,
    generate_uuid,
    utcnow,
)
from aumai_docseal.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAME = "Default"
ISSUING_ROLES = frozenset({Role.issuer, Role.organization_admin, Role.system_admin})


class DocumentService:
    """Orchestrates the integrity core against storage and its collaborators."""

    def __init__(
        self,
        database: Database,
        *,
        settings: Settings | None = None,
        background: BackgroundTasks | None = None,
        notifier: Notifier | None = None,
        keygen_executor: Executor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._settings = settings or Settings(database_url=database.url)
        self._keys = KeyManager(self._settings.key_size)
        self._hasher = ContentHasher(self._settings.storage_root)
        self._signer = DocumentSigner(self._keys)
        self._verifier = DocumentVerifier(self._keys)
        self._background = background or BackgroundTasks()
        self._notifier: Notifier = notifier or DatabaseNotifier(database)
        self.audit = AuditTrail(database)
        self.verifications = VerificationRecorder(database)
        self._owns_keygen_executor = keygen_executor is None
        self._keygen_executor = keygen_executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="docseal-keygen"
        )
        self._clock = clock

    def close(self) -> None:
        """Wait for pending side effects and release owned executors."""
        self._background.join()
        if self._owns_keygen_executor:
            self._keygen_executor.shutdown(wait=True)

    def __enter__(self) -> DocumentService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, name: str, email: str) -> str:
        """Register an organization and return its identifier."""
        if not name.strip() or not email.strip():
            raise ValidationError("Organization name and email are required")
        try:
            with self._db.session() as session:
                org = Organization(id=generate_uuid(), name=name, email=email)
                session.add(org)
                session.flush()
                return org.id
        except IntegrityError as exc:
            raise ConflictError(f"Organization already exists: {email}") from exc

    # ------------------------------------------------------------------
    # Key pairs
    # ------------------------------------------------------------------

    def generate_key_pair(
        self,
        principal: Principal,
        organization_id: str,
        context: RequestContext | None = None,
    ) -> KeyPairInfo:
        """Generate and store a new active "Default" RSA key pair.

        Exactly one key pair per organization is active: creating a new one
        deactivates every previously active pair in the same transaction,
        which holds a row lock on the organization so concurrent generators
        queue behind each other.  The CPU-bound generation runs on the
        key-generation executor.
        """
        with self._db.session() as session:
            if session.get(Organization, organization_id) is None:
                raise NotFoundError(f"Organization not found: {organization_id}")
        if not principal.administers(organization_id):
            raise ForbiddenError(
                "You do not have permission to generate keys for this organization"
            )

        future = self._keygen_executor.submit(generate_rsa_keypair, self._keys.key_size)
        private_pem, public_pem = future.result()

        try:
            with self._db.session() as session:
                locked = session.scalars(
                    select(Organization)
                    .where(Organization.id == organization_id)
                    .with_for_update()
                ).one_or_none()
                if locked is None:
                    raise NotFoundError(f"Organization not found: {organization_id}")
                previous = active_key_pairs(session, organization_id)
                for key_pair in previous:
                    key_pair.is_active = False
                session.flush()
                record = KeyPairRecord(
                    id=generate_uuid(),
                    organization_id=organization_id,
                    name=DEFAULT_KEY_NAME,
                    algorithm=KEY_ALGORITHM,
                    key_size=self._keys.key_size,
                    public_key=public_pem,
                    private_key=private_pem,
                    is_active=True,
                )
                session.add(record)
                session.flush()
                info = _key_pair_info(record)
        except IntegrityError as exc:
            raise ConflictError(
                "Another key pair was activated concurrently",
                details={"organizationId": organization_id},
            ) from exc

        logger.info(
            "Generated %s-%d key pair %s for organization %s (deactivated %d)",
            KEY_ALGORITHM,
            info.key_size,
            info.id,
            organization_id,
            len(previous),
        )
        self._background.submit(
            self.audit.record,
            "KEY_PAIR_GENERATED",
            user_id=principal.user_id,
            details={
                "organizationId": organization_id,
                "keyPairId": info.id,
                "keySize": info.key_size,
                "deactivated": [key_pair.id for key_pair in previous],
            },
            context=context,
        )
        return info

    async def generate_key_pair_async(
        self,
        principal: Principal,
        organization_id: str,
        context: RequestContext | None = None,
    ) -> KeyPairInfo:
        """Event-loop friendly :meth:`generate_key_pair`; never blocks the loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            functools.partial(self.generate_key_pair, principal, organization_id, context),
        )

    def active_key_pair(self, organization_id: str) -> KeyPairInfo | None:
        """Return the organization's current signing key pair, if any."""
        with self._db.session() as session:
            active = active_key_pairs(session, organization_id)
            return _key_pair_info(active[0]) if active else None

    def list_key_pairs(self, organization_id: str) -> list[KeyPairInfo]:
        with self._db.session() as session:
            rows = session.scalars(
                select(KeyPairRecord)
                .where(KeyPairRecord.organization_id == organization_id)
                .order_by(KeyPairRecord.created_at.asc())
            )
            return [_key_pair_info(row) for row in rows]

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def issue_certificate(
        self,
        principal: Principal,
        organization_id: str,
        *,
        subject: str | None = None,
        valid_days: int = 365,
        valid_from: datetime | None = None,
        context: RequestContext | None = None,
    ) -> CertificateInfo:
        """Bind the organization's active key pair into a signing certificate."""
        if valid_days <= 0:
            raise ValidationError("valid_days must be positive")
        if not principal.administers(organization_id):
            raise ForbiddenError(
                "You do not have permission to issue certificates for this organization"
            )
        start = valid_from or self._clock()
        with self._db.session() as session:
            org = session.get(Organization, organization_id)
            if org is None:
                raise NotFoundError(f"Organization not found: {organization_id}")
            active = active_key_pairs(session, organization_id)
            if not active:
                raise NotFoundError(
                    f"Organization {organization_id} has no active key pair"
                )
            key_pair = active[0]
            record = CertificateRecord(
                id=generate_uuid(),
                organization_id=organization_id,
                key_pair_id=key_pair.id,
                subject=subject or org.name,
                public_key=key_pair.public_key,
                private_key=key_pair.private_key,
                valid_from=start,
                valid_until=start + timedelta(days=valid_days),
                is_revoked=False,
            )
            session.add(record)
            session.flush()
            info = _certificate_info(record)

        self._background.submit(
            self.audit.record,
            "CERTIFICATE_ISSUED",
            user_id=principal.user_id,
            details={
                "certificateId": info.id,
                "organizationId": organization_id,
                "keyPairId": info.key_pair_id,
                "validUntil": info.valid_until.isoformat(),
            },
            context=context,
        )
        return info

    def revoke_certificate(
        self,
        principal: Principal,
        certificate_id: str,
        context: RequestContext | None = None,
    ) -> CertificateInfo:
        with self._db.session() as session:
            record = session.get(CertificateRecord, certificate_id)
            if record is None:
                raise NotFoundError("Certificate not found")
            if not principal.administers(record.organization_id):
                raise ForbiddenError("You do not have permission to revoke this certificate")
            if not record.is_revoked:
                record.is_revoked = True
                record.revoked_at = self._clock()
            session.flush()
            info = _certificate_info(record)

        self._background.submit(
            self.audit.record,
            "CERTIFICATE_REVOKED",
            user_id=principal.user_id,
            details={"certificateId": certificate_id},
            context=context,
        )
        return info

    def get_certificate(self, certificate_id: str) -> CertificateInfo:
        with self._db.session() as session:
            record = session.get(CertificateRecord, certificate_id)
            if record is None:
                raise NotFoundError("Certificate not found")
            return _certificate_info(record)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        principal: Principal,
        *,
        title: str,
        file_url: str,
        description: str | None = None,
        file_type: str | None = None,
        owner_id: str | None = None,
        organization_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
        context: RequestContext | None = None,
    ) -> DocumentInfo:
        """Hash the referenced file and store a new, unsigned document.

        The digest computed here is the one every later signature covers; it
        is never recomputed.
        """
        if not title or not title.strip():
            raise ValidationError("Document title is required")
        if not file_url or not file_url.strip():
            raise ValidationError("Document file reference is required")
        if not principal.roles & ISSUING_ROLES:
            raise ForbiddenError("You do not have permission to issue documents")
        org_id = organization_id or principal.organization_id

        file_hash, file_size = self._hasher.hash_reference(file_url)
        document_id = generate_uuid()
        qr_code = render_qr_data_url(
            build_verification_url(self._settings.verification_base_url, document_id)
        )

        try:
            with self._db.session() as session:
                if find_document_by_hash(session, file_hash) is not None:
                    raise ConflictError(
                        "A document with identical content already exists",
                        details={"fileHash": file_hash},
                    )
                record = DocumentRecord(
                    id=document_id,
                    title=title,
                    description=description,
                    file_url=file_url,
                    file_type=file_type,
                    file_size=file_size,
                    file_hash=file_hash,
                    issuer_id=principal.user_id,
                    owner_id=owner_id,
                    organization_id=org_id,
                    extra_metadata=metadata,
                    qr_code=qr_code,
                    expires_at=expires_at,
                )
                session.add(record)
                session.flush()
                info = _document_info(record)
        except IntegrityError as exc:
            raise ConflictError(
                "A document with identical content already exists",
                details={"fileHash": file_hash},
            ) from exc

        logger.info("Created document %s (sha256=%s)", document_id, file_hash)
        self._background.submit(
            self.audit.record,
            "DOCUMENT_CREATED",
            user_id=principal.user_id,
            document_id=document_id,
            details={"documentId": document_id, "title": title},
            context=context,
        )
        if owner_id:
            self._background.submit(
                self._notifier.notify,
                owner_id,
                "New Document Created",
                f'A new document "{title}" has been created for you.',
                "DOCUMENT_CREATED",
            )
        return info

    def get_document(
        self,
        principal: Principal,
        document_id: str,
        context: RequestContext | None = None,
    ) -> DocumentInfo:
        with self._db.session() as session:
            record = session.get(DocumentRecord, document_id)
            if record is None:
                raise NotFoundError("Document not found")
            info = _document_info(record)
        self._background.submit(
            self.audit.record,
            "DOCUMENT_VIEWED",
            user_id=principal.user_id,
            document_id=document_id,
            details={"documentId": document_id},
            context=context,
        )
        return info

    def list_documents(
        self,
        principal: Principal,
        *,
        owner_id: str | None = None,
        issuer_id: str | None = None,
        organization_id: str | None = None,
        is_revoked: bool | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[DocumentInfo]:
        """Return one page of documents matching the filters, newest first.

        ``search`` matches title or description, ignoring case.  System
        administrators see every document; anyone else only sees documents
        they issued or own and documents of their own organization.
        """
        page = max(page, 1)
        limit = max(limit, 1)
        conditions: list[Any] = []
        if owner_id is not None:
            conditions.append(DocumentRecord.owner_id == owner_id)
        if issuer_id is not None:
            conditions.append(DocumentRecord.issuer_id == issuer_id)
        if organization_id is not None:
            conditions.append(DocumentRecord.organization_id == organization_id)
        if is_revoked is not None:
            conditions.append(DocumentRecord.is_revoked.is_(is_revoked))
        if search and search.strip():
            pattern = f"%{_escape_like(search.strip())}%"
            conditions.append(
                or_(
                    DocumentRecord.title.ilike(pattern, escape="\\"),
                    DocumentRecord.description.ilike(pattern, escape="\\"),
                )
            )
        if not principal.is_system_admin:
            visible = [
                DocumentRecord.issuer_id == principal.user_id,
                DocumentRecord.owner_id == principal.user_id,
            ]
            if principal.organization_id is not None:
                visible.append(DocumentRecord.organization_id == principal.organization_id)
            conditions.append(or_(*visible))

        with self._db.session() as session:
            total = session.scalar(
                select(func.count()).select_from(DocumentRecord).where(*conditions)
            ) or 0
            rows = session.scalars(
                select(DocumentRecord)
                .where(*conditions)
                .order_by(DocumentRecord.created_at.desc(), DocumentRecord.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = [_document_info(row) for row in rows]
        return Page[DocumentInfo](items=items, total=total, page=page, limit=limit)

    def update_document(
        self,
        principal: Principal,
        document_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
        clear_expiry: bool = False,
        context: RequestContext | None = None,
    ) -> DocumentInfo:
        """Update descriptive fields.  The digest and signature are never touched.

        ``None`` leaves a field unchanged; pass ``clear_expiry=True`` to remove
        an expiry date.
        """
        if clear_expiry and expires_at is not None:
            raise ValidationError("Pass either expires_at or clear_expiry, not both")
        updates: dict[str, Any] = {}
        try:
            with self._db.session() as session:
                record = self._load_document(session, document_id)
                _require_issuer_or_admin(principal, record, "update")
                if title is not None:
                    if not title.strip():
                        raise ValidationError("Document title cannot be empty")
                    record.title = title
                    updates["title"] = title
                if description is not None:
                    record.description = description
                    updates["description"] = description
                if metadata is not None:
                    record.extra_metadata = metadata
                    updates["metadata"] = metadata
                if expires_at is not None:
                    record.expires_at = expires_at
                    updates["expiresAt"] = expires_at.isoformat()
                elif clear_expiry:
                    record.expires_at = None
                    updates["expiresAt"] = None
                session.flush()
                info = _document_info(record)
        except StaleDataError as exc:
            raise ConflictError("Document was modified concurrently") from exc

        self._background.submit(
            self.audit.record,
            "DOCUMENT_UPDATED",
            user_id=principal.user_id,
            document_id=document_id,
            details={"documentId": document_id, "updates": updates},
            context=context,
        )
        return info

    def delete_document(
        self,
        principal: Principal,
        document_id: str,
        context: RequestContext | None = None,
        *,
        action: str = "DOCUMENT_DELETED",
    ) -> None:
        """Hard-delete a document and its share links.

        Its audit and verification rows remain.
        """
        try:
            with self._db.session() as session:
                record = self._load_document(session, document_id)
                _require_issuer_or_admin(principal, record, "delete")
                session.execute(
                    delete(DocumentShareRecord).where(
                        DocumentShareRecord.document_id == document_id
                    )
                )
                session.delete(record)
        except StaleDataError as exc:
            raise ConflictError("Document was modified concurrently") from exc

        logger.info("Deleted document %s", document_id)
        self._background.submit(
            self.audit.record,
            action,
            user_id=principal.user_id,
            details={"documentId": document_id},
            context=context,
        )

    def document_history(
        self,
        principal: Principal,
        document_id: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> Page[AuditEntry]:
        """Paginated audit trail of one document (owner, issuer or admin)."""
        with self._db.session() as session:
            record = self._load_document(session, document_id)
            allowed = (
                principal.user_id in (record.owner_id, record.issuer_id)
                or principal.administers(record.organization_id)
            )
        if not allowed:
            raise ForbiddenError(
                "You do not have permission to view this document history"
            )
        return self.audit.search(document_id=document_id, page=page, limit=limit)

    # ------------------------------------------------------------------
    # Share links
    # ------------------------------------------------------------------

    def create_share_link(
        self,
        principal: Principal,
        document_id: str,
        *,
        expires_at: datetime | None = None,
        is_one_time: bool = False,
        context: RequestContext | None = None,
    ) -> ShareLinkInfo:
        """Create a bearer link to a document (owner, issuer or system admin)."""
        with self._db.session() as session:
            record = self._load_document(session, document_id)
            if not (
                principal.user_id in (record.owner_id, record.issuer_id)
                or principal.is_system_admin
            ):
                raise ForbiddenError("You do not have permission to share this document")
            share = DocumentShareRecord(
                id=generate_uuid(),
                document_id=document_id,
                user_id=principal.user_id,
                access_token=secrets.token_hex(32),
                expires_at=expires_at,
                is_one_time=is_one_time,
            )
            session.add(share)
            session.flush()
            info = self._share_link_info(share)

        self._background.submit(
            self.audit.record,
            "DOCUMENT_SHARE_CREATED",
            user_id=principal.user_id,
            document_id=document_id,
            details={"documentId": document_id, "shareId": info.id},
            context=context,
        )
        return info

    def delete_share_link(
        self,
        principal: Principal,
        document_id: str,
        share_id: str,
        context: RequestContext | None = None,
    ) -> None:
        """Delete a share link; its creator may also delete it."""
        with self._db.session() as session:
            share = session.get(DocumentShareRecord, share_id)
            if share is None or share.document_id != document_id:
                raise NotFoundError(
                    "Share link not found",
                    details={"documentId": document_id, "shareId": share_id},
                )
            record = self._load_document(session, document_id)
            if not (
                principal.user_id in (share.user_id, record.owner_id, record.issuer_id)
                or principal.is_system_admin
            ):
                raise ForbiddenError(
                    "You do not have permission to delete this share link"
                )
            session.delete(share)

        self._background.submit(
            self.audit.record,
            "DOCUMENT_SHARE_DELETED",
            user_id=principal.user_id,
            document_id=document_id,
            details={"documentId": document_id, "shareId": share_id},
            context=context,
        )

    def list_share_links(self, principal: Principal, document_id: str) -> list[ShareLinkInfo]:
        with self._db.session() as session:
            record = self._load_document(session, document_id)
            if not (
                principal.user_id in (record.owner_id, record.issuer_id)
                or principal.is_system_admin
            ):
                raise ForbiddenError("You do not have permission to view share links")
            rows = session.scalars(
                select(DocumentShareRecord)
                .where(DocumentShareRecord.document_id == document_id)
                .order_by(DocumentShareRecord.created_at.asc())
            )
            return [self._share_link_info(row) for row in rows]

    def _share_link_info(self, share: DocumentShareRecord) -> ShareLinkInfo:
        return ShareLinkInfo(
            id=share.id,
            document_id=share.document_id,
            user_id=share.user_id,
            access_token=share.access_token,
            share_url=build_share_url(
                self._settings.verification_base_url, share.access_token
            ),
            expires_at=share.expires_at,
            is_one_time=share.is_one_time,
            created_at=share.created_at,
        )

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign_document(
        self,
        principal: Principal,
        document_id: str,
        certificate_id: str,
        context: RequestContext | None = None,
    ) -> DocumentInfo:
        """Sign the document's stored digest with the certificate's private key.

        Checks, in order: document exists, principal is its issuer or an
        administrator, certificate exists, certificate is currently valid.
        ``signature``, ``certificate_id`` and ``signed_at`` are written in one
        versioned UPDATE.  An already signed document, or a concurrent writer
        that got there first, raises :class:`ConflictError`.
        """
        if not certificate_id:
            raise ValidationError("Certificate ID is required for signing")
        try:
            with self._db.session() as session:
                record = self._load_document(session, document_id)
                _require_issuer_or_admin(principal, record, "sign")
                certificate = self._load_valid_certificate(session, certificate_id)
                self._apply_signature(record, certificate.id, certificate.private_key)
                session.flush()
                info = _document_info(record)
        except StaleDataError as exc:
            raise ConflictError("Document was signed or modified concurrently") from exc

        self._after_sign(principal, info, "DOCUMENT_SIGNED", context, notify=True)
        return info

    def batch_sign(
        self,
        principal: Principal,
        document_ids: Iterable[str],
        certificate_id: str,
        context: RequestContext | None = None,
    ) -> BatchResult:
        """Sign many documents with one certificate, each independently.

        A missing or invalid certificate fails the whole call up front.  After
        that every document is signed in its own transaction; one failure is
        reported in its :class:`BatchItemResult` and rolls back nothing else.
        """
        ids = _unique_ids(document_ids)
        if not certificate_id:
            raise ValidationError("Certificate ID is required for signing")
        with self._db.session() as session:
            certificate = self._load_valid_certificate(session, certificate_id)
            private_key = certificate.private_key

        def sign_one(document_id: str) -> BatchItemResult:
            try:
                with self._db.session() as session:
                    record = self._load_document(session, document_id)
                    _require_issuer_or_admin(principal, record, "sign")
                    self._apply_signature(record, certificate_id, private_key)
                    session.flush()
                    info = _document_info(record)
            except StaleDataError as exc:
                raise ConflictError("Document was signed or modified concurrently") from exc
            self._after_sign(principal, info, "DOCUMENT_SIGNED_BATCH", context, notify=False)
            return BatchItemResult(
                document_id=document_id, success=True, signature=info.signature
            )

        return self._run_batch("sign", ids, sign_one)

    def _apply_signature(
        self, record: DocumentRecord, certificate_id: str, private_key_pem: str
    ) -> None:
        if record.signature is not None:
            raise ConflictError(
                "Document is already signed",
                details={"documentId": record.id, "certificateId": record.certificate_id},
            )
        signature = self._signer.sign_digest(record.file_hash, private_key_pem)
        record.signature = signature
        record.certificate_id = certificate_id
        record.signed_at = self._clock()

    def _after_sign(
        self,
        principal: Principal,
        info: DocumentInfo,
        action: str,
        context: RequestContext | None,
        *,
        notify: bool,
    ) -> None:
        logger.info("Signed document %s with certificate %s", info.id, info.certificate_id)
        self._background.submit(
            self.audit.record,
            action,
            user_id=principal.user_id,
            document_id=info.id,
            details={"documentId": info.id, "certificateId": info.certificate_id},
            context=context,
        )
        if notify and info.owner_id:
            self._background.submit(
                self._notifier.notify,
                info.owner_id,
                "Document Signed",
                f'Your document "{info.title}" has been digitally signed.',
                "DOCUMENT_SIGNED",
            )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_document(
        self,
        principal: Principal,
        document_id: str,
        reason: str | None = None,
        context: RequestContext | None = None,
        *,
        action: str = "DOCUMENT_REVOKED",
        notify: bool = True,
    ) -> DocumentInfo:
        """Mark a document revoked.  Revocation is terminal and cannot be repeated."""
        try:
            with self._db.session() as session:
                record = self._load_document(session, document_id)
                _require_issuer_or_admin(principal, record, "revoke")
                if record.is_revoked:
                    raise ConflictError("Document is already revoked")
                record.is_revoked = True
                record.revoked_at = self._clock()
                record.revoked_reason = reason
                session.flush()
                info = _document_info(record)
        except StaleDataError as exc:
            raise ConflictError("Document was modified concurrently") from exc

        logger.info("Revoked document %s (reason=%s)", document_id, reason)
        self._background.submit(
            self.audit.record,
            action,
            user_id=principal.user_id,
            document_id=document_id,
            details={"documentId": document_id, "reason": reason},
            context=context,
        )
        if notify and info.owner_id:
            self._background.submit(
                self._notifier.notify,
                info.owner_id,
                "Document Revoked",
                f'Your document "{info.title}" has been revoked. Reason: {reason}',
                "DOCUMENT_REVOKED",
            )
        return info

    def batch_revoke(
        self,
        principal: Principal,
        document_ids: Iterable[str],
        reason: str | None = None,
        context: RequestContext | None = None,
    ) -> BatchResult:
        ids = _unique_ids(document_ids)
        batch_reason = reason or "Batch revocation"

        def revoke_one(document_id: str) -> BatchItemResult:
            self.revoke_document(
                principal,
                document_id,
                batch_reason,
                context,
                action="DOCUMENT_REVOKED_BATCH",
                notify=False,
            )
            return BatchItemResult(document_id=document_id, success=True)

        return self._run_batch("revoke", ids, revoke_one)

    def batch_delete(
        self,
        principal: Principal,
        document_ids: Iterable[str],
        context: RequestContext | None = None,
    ) -> BatchResult:
        ids = _unique_ids(document_ids)

        def delete_one(document_id: str) -> BatchItemResult:
            self.delete_document(
                principal, document_id, context, action="DOCUMENT_DELETED_BATCH"
            )
            return BatchItemResult(document_id=document_id, success=True)

        return self._run_batch("delete", ids, delete_one)

    def _run_batch(
        self,
        operation: str,
        ids: list[str],
        work: Callable[[str], BatchItemResult],
    ) -> BatchResult:
        def guarded(document_id: str) -> BatchItemResult:
            try:
                return work(document_id)
            except DocSealError as exc:
                logger.warning(
                    "Batch %s failed for document %s: %s", operation, document_id, exc
                )
                return BatchItemResult(
                    document_id=document_id,
                    success=False,
                    error_kind=exc.kind,
                    error=exc.message,
                )
            except Exception as exc:
                logger.exception("Batch %s crashed for document %s", operation, document_id)
                return BatchItemResult(
                    document_id=document_id,
                    success=False,
                    error_kind="INTERNAL_ERROR",
                    error=str(exc),
                )

        workers = min(self._settings.batch_workers, len(ids))
        if self._db.single_connection:
            workers = 1
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"docseal-batch-{operation}"
        ) as pool:
            items = list(pool.map(guarded, ids))
        result = BatchResult(operation=operation, items=items)
        logger.info(
            "Batch %s: %d succeeded, %d failed",
            operation,
            len(result.succeeded),
            len(result.failed),
        )
        return result

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_by_id(
        self, document_id: str, context: RequestContext | None = None
    ) -> VerificationResult:
        """Verify the document with identifier *document_id*."""
        if not document_id:
            self._record_rejected(LookupMethod.id, document_id, "Document ID is required", context)
            raise ValidationError("Document ID is required")
        return self._verify(
            LookupMethod.id,
            document_id,
            lambda session: session.get(DocumentRecord, document_id),
            context,
        )

    def verify_by_qr(
        self, qr_data: str, context: RequestContext | None = None
    ) -> VerificationResult:
        """Verify the document named by the last path segment of a QR URL."""
        try:
            document_id = document_id_from_qr(qr_data)
        except ValidationError as exc:
            self._record_rejected(LookupMethod.qr, qr_data, exc.message, context)
            raise
        return self._verify(
            LookupMethod.qr,
            qr_data,
            lambda session: session.get(DocumentRecord, document_id),
            context,
        )

    def verify_by_hash(
        self, file_hash: str, context: RequestContext | None = None
    ) -> VerificationResult:
        """Verify the document whose stored content digest is *file_hash*."""
        if not file_hash:
            self._record_rejected(LookupMethod.hash, file_hash, "Document hash is required", context)
            raise ValidationError("Document hash is required")
        normalized = file_hash.strip().lower()
        return self._verify(
            LookupMethod.hash,
            normalized,
            lambda session: find_document_by_hash(session, normalized),
            context,
        )

    def check_status(self, document_id: str) -> DocumentStatusReport:
        """Report the verdict for *document_id* without logging a verification."""
        if not document_id:
            raise ValidationError("Document ID is required")
        with self._db.session() as session:
            record = self._load_document(session, document_id)
            snapshot = self._snapshot(session, record)
        result = self._verifier.evaluate(snapshot, self._clock())
        message = result.message
        if result.status == VerificationStatus.revoked:
            message = "Document was revoked"
            if snapshot.revoked_reason:
                message += f" (Reason: {snapshot.revoked_reason})"
        elif result.status == VerificationStatus.valid:
            message = "Document is valid"
        return DocumentStatusReport(
            id=snapshot.id,
            title=snapshot.title,
            status=result.status,
            status_message=message,
            is_signed=snapshot.signature is not None,
            is_revoked=snapshot.is_revoked,
            revoked_at=snapshot.revoked_at,
            revoked_reason=snapshot.revoked_reason,
            expires_at=snapshot.expires_at,
            created_at=snapshot.created_at,
            signed_at=snapshot.signed_at,
        )

    def verification_history(self, document_id: str) -> list[VerificationEntry]:
        return self.verifications.history(document_id)

    def _verify(
        self,
        method: LookupMethod,
        lookup_value: str,
        locate: Callable[[Session], DocumentRecord | None],
        context: RequestContext | None,
    ) -> VerificationResult:
        with self._db.session() as session:
            record = locate(session)
            snapshot = self._snapshot(session, record) if record is not None else None
        result = self._verifier.evaluate(snapshot, self._clock())
        logger.info(
            "Verification by %s=%s: %s", method.value, lookup_value, result.status.value
        )

        self._background.submit(
            self.verifications.record,
            lookup_method=method,
            lookup_value=lookup_value,
            result=result,
            context=context,
        )
        if snapshot is not None:
            self._background.submit(
                self.audit.record,
                "DOCUMENT_VERIFIED_SUCCESS" if result.verified else "DOCUMENT_VERIFIED_FAILURE",
                document_id=snapshot.id,
                details={
                    "documentId": snapshot.id,
                    "isSuccessful": result.verified,
                    "status": result.status.value,
                    "failReason": result.fail_reason,
                },
                context=context,
            )
        return result

    def _record_rejected(
        self,
        method: LookupMethod,
        lookup_value: str | None,
        reason: str,
        context: RequestContext | None,
    ) -> None:
        self._background.submit(
            self.verifications.record,
            lookup_method=method,
            lookup_value=lookup_value or None,
            result=None,
            context=context,
            fail_reason=reason,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_document(session: Session, document_id: str) -> DocumentRecord:
        record = session.get(DocumentRecord, document_id)
        if record is None:
            raise NotFoundError("Document not found", details={"documentId": document_id})
        return record

    def _load_valid_certificate(
        self, session: Session, certificate_id: str
    ) -> CertificateRecord:
        certificate = session.get(CertificateRecord, certificate_id)
        if certificate is None:
            raise NotFoundError(
                "Certificate not found", details={"certificateId": certificate_id}
            )
        if not certificate.is_valid_at(self._clock()):
            raise InvalidCertificateError(
                "Certificate is not valid for signing",
                details={
                    "certificateId": certificate_id,
                    "isRevoked": certificate.is_revoked,
                    "validFrom": certificate.valid_from.isoformat(),
                    "validUntil": certificate.valid_until.isoformat(),
                },
            )
        return certificate

    @staticmethod
    def _snapshot(session: Session, record: DocumentRecord) -> DocumentSnapshot:
        public_key = None
        if record.certificate_id:
            certificate = session.get(CertificateRecord, record.certificate_id)
            public_key = certificate.public_key if certificate else None
        return DocumentSnapshot(
            id=record.id,
            title=record.title,
            description=record.description,
            file_hash=record.file_hash,
            signature=record.signature,
            certificate_id=record.certificate_id,
            certificate_public_key=public_key,
            signed_at=record.signed_at,
            is_revoked=record.is_revoked,
            revoked_at=record.revoked_at,
            revoked_reason=record.revoked_reason,
            expires_at=record.expires_at,
            created_at=record.created_at,
            issuer_id=record.issuer_id,
            organization_id=record.organization_id,
        )


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def _require_issuer_or_admin(
    principal: Principal, record: DocumentRecord, verb: str
) -> None:
    if record.issuer_id == principal.user_id or principal.administers(record.organization_id):
        return
    raise ForbiddenError(f"You do not have permission to {verb} this document")


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _unique_ids(document_ids: Iterable[str]) -> list[str]:
    ids = list(dict.fromkeys(document_ids))
    if not ids:
        raise ValidationError("At least one document ID is required")
    if any(not document_id for document_id in ids):
        raise ValidationError("Document IDs must be non-empty")
    return ids


def _key_pair_info(record: KeyPairRecord) -> KeyPairInfo:
    return KeyPairInfo(
        id=record.id,
        organization_id=record.organization_id,
        name=record.name,
        algorithm=record.algorithm,
        key_size=record.key_size,
        public_key=record.public_key,
        is_active=record.is_active,
        created_at=record.created_at,
    )


def _certificate_info(record: CertificateRecord) -> CertificateInfo:
    return CertificateInfo(
        id=record.id,
        organization_id=record.organization_id,
        key_pair_id=record.key_pair_id,
        subject=record.subject,
        public_key=record.public_key,
        valid_from=record.valid_from,
        valid_until=record.valid_until,
        is_revoked=record.is_revoked,
        revoked_at=record.revoked_at,
    )


def _document_info(record: DocumentRecord) -> DocumentInfo:
    return DocumentInfo(
        id=record.id,
        title=record.title,
        description=record.description,
        file_url=record.file_url,
        file_type=record.file_type,
        file_size=record.file_size,
        file_hash=record.file_hash,
        issuer_id=record.issuer_id,
        owner_id=record.owner_id,
        organization_id=record.organization_id,
        metadata=record.extra_metadata,
        qr_code=record.qr_code,
        signature=record.signature,
        certificate_id=record.certificate_id,
        signed_at=record.signed_at,
        is_revoked=record.is_revoked,
        revoked_at=record.revoked_at,
        revoked_reason=record.revoked_reason,
        expires_at=record.expires_at,
        created_at=record.created_at,
    )


__all__ = ["DEFAULT_KEY_NAME", "DocumentService"]
