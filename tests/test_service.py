"""Tests for aumai_docseal.service.DocumentService."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from aumai_docseal.config import Settings
from aumai_docseal.core import sha256_bytes
from aumai_docseal.errors import (
    ConflictError,
    ContentReadError,
    ForbiddenError,
    InvalidCertificateError,
    NotFoundError,
    ValidationError,
)
from aumai_docseal.models import (
    CertificateInfo,
    DocumentInfo,
    LookupMethod,
    Principal,
    RequestContext,
    Role,
    ShareLinkInfo,
    VerificationResult,
    VerificationStatus,
)
from aumai_docseal.qr import build_verification_url
from aumai_docseal.recorder import DatabaseNotifier
from aumai_docseal.service import DocumentService
from aumai_docseal.storage import (
    Database,
    DocumentRecord,
    KeyPairRecord,
    active_key_pairs,
    utcnow,
)
from aumai_docseal.tasks import BackgroundTasks


def _lookup(
    service: DocumentService, method: str, document_id: str, file_hash: str
) -> VerificationResult:
    if method == "id":
        return service.verify_by_id(document_id)
    if method == "hash":
        return service.verify_by_hash(file_hash)
    return service.verify_by_qr(
        build_verification_url("https://docs.example.org", document_id)
    )


# ===========================================================================
# Organizations and key pairs
# ===========================================================================


class TestOrganizations:
    def test_duplicate_email_is_conflict(self, service: DocumentService) -> None:
        service.create_organization("A", "a@example.org")
        with pytest.raises(ConflictError):
            service.create_organization("B", "a@example.org")

    def test_blank_name_rejected(self, service: DocumentService) -> None:
        with pytest.raises(ValidationError):
            service.create_organization(" ", "x@example.org")


class TestKeyPairs:
    def test_generated_pair_is_active_default(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        info = service.generate_key_pair(admin, organization)
        assert info.name == "Default"
        assert info.algorithm == "RSA"
        assert info.is_active
        assert info.public_key.startswith("-----BEGIN PUBLIC KEY-----")

    def test_new_pair_deactivates_previous(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        first = service.generate_key_pair(admin, organization)
        second = service.generate_key_pair(admin, organization)

        pairs = service.list_key_pairs(organization)
        assert len(pairs) == 2
        assert [pair.id for pair in pairs if pair.is_active] == [second.id]
        assert first.id != second.id
        active = service.active_key_pair(organization)
        assert active is not None
        assert active.id == second.id

    def test_no_active_pair_for_new_org(
        self, service: DocumentService, organization: str
    ) -> None:
        assert service.active_key_pair(organization) is None

    def test_unknown_org_is_not_found(
        self, service: DocumentService, admin: Principal
    ) -> None:
        with pytest.raises(NotFoundError):
            service.generate_key_pair(admin, "no-such-org")

    def test_issuer_cannot_generate_keys(
        self, service: DocumentService, issuer: Principal, organization: str
    ) -> None:
        with pytest.raises(ForbiddenError):
            service.generate_key_pair(issuer, organization)

    def test_org_admin_can_generate_for_own_org(
        self, service: DocumentService, organization: str
    ) -> None:
        org_admin = Principal(
            user_id="oa",
            roles=frozenset({Role.organization_admin}),
            organization_id=organization,
        )
        assert service.generate_key_pair(org_admin, organization).is_active

    def test_generation_is_audited(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        service.generate_key_pair(admin, organization)
        page = service.audit.search(action="KEY_PAIR_GENERATED")
        assert page.total == 1
        assert page.items[0].details["organizationId"] == organization

    def test_async_generation(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        info = asyncio.run(service.generate_key_pair_async(admin, organization))
        assert info.is_active
        assert service.active_key_pair(organization) is not None

    def test_concurrent_generation_leaves_one_active(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        with ThreadPoolExecutor(max_workers=3) as pool:
            generated = list(
                pool.map(lambda _: service.generate_key_pair(admin, organization), range(3))
            )

        pairs = service.list_key_pairs(organization)
        assert len(pairs) == 3
        active = [pair for pair in pairs if pair.is_active]
        assert len(active) == 1
        assert active[0].id in {info.id for info in generated}

    def test_second_active_row_violates_unique_index(
        self, database: Database, organization: str
    ) -> None:
        with pytest.raises(IntegrityError):
            with database.session() as session:
                for _ in range(2):
                    session.add(
                        KeyPairRecord(
                            organization_id=organization,
                            key_size=2048,
                            public_key="public",
                            private_key="private",
                            is_active=True,
                        )
                    )
                session.flush()

    def test_inactive_rows_are_not_constrained(
        self, database: Database, organization: str
    ) -> None:
        with database.session() as session:
            for active in (False, False, True):
                session.add(
                    KeyPairRecord(
                        organization_id=organization,
                        key_size=2048,
                        public_key="public",
                        private_key="private",
                        is_active=active,
                    )
                )
        with database.session() as session:
            assert len(active_key_pairs(session, organization)) == 1


# ===========================================================================
# Certificates
# ===========================================================================


class TestCertificates:
    def test_certificate_carries_active_public_key(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        pair = service.generate_key_pair(admin, organization)
        cert = service.issue_certificate(admin, organization, valid_days=10)
        assert cert.key_pair_id == pair.id
        assert cert.public_key == pair.public_key
        assert cert.subject == "Acme University"
        assert cert.valid_until - cert.valid_from == timedelta(days=10)

    def test_requires_active_key_pair(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        with pytest.raises(NotFoundError):
            service.issue_certificate(admin, organization)

    def test_non_positive_validity_rejected(
        self, service: DocumentService, admin: Principal, organization: str
    ) -> None:
        with pytest.raises(ValidationError):
            service.issue_certificate(admin, organization, valid_days=0)

    def test_revoke_certificate(
        self, service: DocumentService, admin: Principal, certificate: CertificateInfo
    ) -> None:
        revoked = service.revoke_certificate(admin, certificate.id)
        assert revoked.is_revoked
        assert revoked.revoked_at is not None
        assert service.get_certificate(certificate.id).is_revoked


# ===========================================================================
# Document creation and updates
# ===========================================================================


class TestCreateDocument:
    def test_hash_is_computed_from_content(
        self, make_document: Callable[..., DocumentInfo]
    ) -> None:
        document = make_document(b"hello")
        assert document.file_hash == sha256_bytes(b"hello")
        assert document.file_size == 5
        assert not document.is_signed

    def test_qr_code_is_png_data_url(
        self, make_document: Callable[..., DocumentInfo]
    ) -> None:
        document = make_document()
        assert document.qr_code is not None
        assert document.qr_code.startswith("data:image/png;base64,")

    def test_duplicate_content_is_conflict(
        self, make_document: Callable[..., DocumentInfo]
    ) -> None:
        make_document(b"same bytes")
        with pytest.raises(ConflictError):
            make_document(b"same bytes")

    def test_missing_file_is_content_read_error(
        self, service: DocumentService, issuer: Principal
    ) -> None:
        with pytest.raises(ContentReadError):
            service.create_document(issuer, title="Ghost", file_url="nowhere.pdf")

    def test_blank_title_rejected(
        self,
        service: DocumentService,
        issuer: Principal,
        write_file: Callable[[str, bytes], str],
    ) -> None:
        ref = write_file("x.pdf", b"x")
        with pytest.raises(ValidationError):
            service.create_document(issuer, title="  ", file_url=ref)

    def test_verifier_role_cannot_create(
        self, service: DocumentService, write_file: Callable[[str, bytes], str]
    ) -> None:
        verifier = Principal(user_id="v", roles=frozenset({Role.verifier}))
        ref = write_file("x.pdf", b"x")
        with pytest.raises(ForbiddenError):
            service.create_document(verifier, title="X", file_url=ref)

    def test_creation_audits_and_notifies_owner(
        self,
        service: DocumentService,
        database: Database,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document(owner_id="owner-7")
        assert service.audit.search(document_id=document.id, action="DOCUMENT_CREATED").total == 1
        titles = [n.title for n in DatabaseNotifier(database).unread("owner-7")]
        assert titles == ["New Document Created"]


class TestUpdateDocument:
    def test_update_never_touches_hash(
        self,
        service: DocumentService,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document(b"hello")
        updated = service.update_document(
            issuer, document.id, title="Renamed", metadata={"grade": "A"}
        )
        assert updated.title == "Renamed"
        assert updated.metadata == {"grade": "A"}
        assert updated.file_hash == document.file_hash

    def test_outsider_cannot_update(
        self,
        service: DocumentService,
        outsider: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document()
        with pytest.raises(ForbiddenError):
            service.update_document(outsider, document.id, title="Mine now")

    def test_none_expiry_leaves_it_unchanged(
        self,
        service: DocumentService,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        expiry = utcnow() + timedelta(days=30)
        document = make_document(expires_at=expiry)
        updated = service.update_document(issuer, document.id, title="Renamed")
        assert updated.expires_at == document.expires_at

    def test_clear_expiry_removes_it(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document(expires_at=utcnow() - timedelta(seconds=1))
        service.sign_document(issuer, document.id, certificate.id)
        assert service.verify_by_id(document.id).status == VerificationStatus.expired

        updated = service.update_document(issuer, document.id, clear_expiry=True)
        assert updated.expires_at is None
        assert service.verify_by_id(document.id).status == VerificationStatus.valid
        page = service.audit.search(document_id=document.id, action="DOCUMENT_UPDATED")
        assert page.items[0].details["updates"] == {"expiresAt": None}

    def test_clear_expiry_with_new_expiry_rejected(
        self,
        service: DocumentService,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document()
        with pytest.raises(ValidationError):
            service.update_document(
                issuer, document.id, expires_at=utcnow(), clear_expiry=True
            )


# ===========================================================================
# Signing
# ===========================================================================


class TestSignDocument:
    def test_sign_sets_signature_and_timestamp_together(
        self, signed_document: DocumentInfo, certificate: CertificateInfo
    ) -> None:
        assert signed_document.signature
        assert signed_document.signed_at is not None
        assert signed_document.certificate_id == certificate.id

    def test_missing_document_is_not_found(
        self, service: DocumentService, issuer: Principal, certificate: CertificateInfo
    ) -> None:
        with pytest.raises(NotFoundError):
            service.sign_document(issuer, "missing", certificate.id)

    def test_permission_checked_before_certificate(
        self,
        service: DocumentService,
        outsider: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document()
        with pytest.raises(ForbiddenError):
            service.sign_document(outsider, document.id, "no-such-cert")

    def test_missing_certificate_is_not_found(
        self,
        service: DocumentService,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document()
        with pytest.raises(NotFoundError):
            service.sign_document(issuer, document.id, "no-such-cert")

    def test_revoked_certificate_is_invalid(
        self,
        service: DocumentService,
        admin: Principal,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        service.revoke_certificate(admin, certificate.id)
        document = make_document()
        with pytest.raises(InvalidCertificateError):
            service.sign_document(issuer, document.id, certificate.id)

    def test_not_yet_valid_certificate_is_invalid(
        self,
        service: DocumentService,
        admin: Principal,
        issuer: Principal,
        organization: str,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        service.generate_key_pair(admin, organization)
        future_cert = service.issue_certificate(
            admin, organization, valid_from=utcnow() + timedelta(days=1)
        )
        document = make_document()
        with pytest.raises(InvalidCertificateError):
            service.sign_document(issuer, document.id, future_cert.id)

    def test_failed_sign_leaves_document_unsigned(
        self,
        service: DocumentService,
        admin: Principal,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        service.revoke_certificate(admin, certificate.id)
        document = make_document()
        with pytest.raises(InvalidCertificateError):
            service.sign_document(issuer, document.id, certificate.id)
        stored = service.get_document(issuer, document.id)
        assert stored.signature is None
        assert stored.signed_at is None

    def test_signing_twice_is_conflict(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        signed_document: DocumentInfo,
    ) -> None:
        with pytest.raises(ConflictError):
            service.sign_document(issuer, signed_document.id, certificate.id)

    def test_concurrent_signers_only_one_wins(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document()

        def attempt() -> str:
            try:
                service.sign_document(issuer, document.id, certificate.id)
            except ConflictError:
                return "conflict"
            return "signed"

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(4)))
        assert outcomes.count("signed") == 1
        assert outcomes.count("conflict") == 3

    def test_signing_audits_and_notifies_owner(
        self,
        service: DocumentService,
        database: Database,
        signed_document: DocumentInfo,
    ) -> None:
        page = service.audit.search(document_id=signed_document.id, action="DOCUMENT_SIGNED")
        assert page.total == 1
        titles = {n.title for n in DatabaseNotifier(database).unread("owner-1")}
        assert "Document Signed" in titles


class TestBatchSign:
    def test_three_documents_get_distinct_signatures(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        ids = [make_document().id for _ in range(3)]
        result = service.batch_sign(issuer, ids, certificate.id)

        assert len(result.succeeded) == 3
        signatures = {item.signature for item in result.items}
        assert len(signatures) == 3
        for document_id in ids:
            assert service.verify_by_id(document_id).status == VerificationStatus.valid

    def test_one_failure_does_not_roll_back_others(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        good = make_document().id
        result = service.batch_sign(issuer, [good, "missing"], certificate.id)

        by_id = {item.document_id: item for item in result.items}
        assert by_id[good].success
        assert not by_id["missing"].success
        assert by_id["missing"].error_kind == "NOT_FOUND"
        assert service.get_document(issuer, good).is_signed

    def test_duplicate_ids_are_signed_once(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document_id = make_document().id
        result = service.batch_sign(issuer, [document_id, document_id], certificate.id)
        assert len(result.items) == 1
        assert result.items[0].success

    def test_empty_list_rejected(
        self, service: DocumentService, issuer: Principal, certificate: CertificateInfo
    ) -> None:
        with pytest.raises(ValidationError):
            service.batch_sign(issuer, [], certificate.id)

    def test_invalid_certificate_fails_whole_batch(
        self,
        service: DocumentService,
        admin: Principal,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        service.revoke_certificate(admin, certificate.id)
        document_id = make_document().id
        with pytest.raises(InvalidCertificateError):
            service.batch_sign(issuer, [document_id], certificate.id)

    def test_each_item_is_audited(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        ids = [make_document().id for _ in range(2)]
        service.batch_sign(issuer, ids, certificate.id)
        assert service.audit.search(action="DOCUMENT_SIGNED_BATCH").total == 2

    def test_in_memory_database_signs_every_item(
        self,
        settings: Settings,
        admin: Principal,
        write_file: Callable[[str, bytes], str],
    ) -> None:
        memory = Database("sqlite://")
        memory.create_all()
        assert memory.single_connection
        memory_settings = settings.model_copy(
            update={"database_url": "sqlite://", "batch_workers": 4}
        )
        try:
            with DocumentService(memory, settings=memory_settings) as svc:
                org = svc.create_organization("Memory U", "memory@example.org")
                svc.generate_key_pair(admin, org)
                cert = svc.issue_certificate(admin, org)
                ids = [
                    svc.create_document(
                        admin,
                        title=f"Doc {n}",
                        file_url=write_file(f"mem-{n}.pdf", f"memory #{n}".encode()),
                        organization_id=org,
                    ).id
                    for n in range(6)
                ]

                result = svc.batch_sign(admin, ids, cert.id)

                assert len(result.succeeded) == 6, [item.error for item in result.failed]
                assert result.failed == []
                for document_id in ids:
                    assert svc.verify_by_id(document_id).verified
        finally:
            memory.dispose()

    def test_file_database_is_not_single_connection(self, database: Database) -> None:
        assert not database.single_connection


# ===========================================================================
# Revocation and deletion
# ===========================================================================


class TestRevokeAndDelete:
    def test_revoke_sets_fields(
        self, service: DocumentService, issuer: Principal, signed_document: DocumentInfo
    ) -> None:
        revoked = service.revoke_document(issuer, signed_document.id, "superseded")
        assert revoked.is_revoked
        assert revoked.revoked_at is not None
        assert revoked.revoked_reason == "superseded"

    def test_revoke_twice_is_conflict(
        self, service: DocumentService, issuer: Principal, signed_document: DocumentInfo
    ) -> None:
        service.revoke_document(issuer, signed_document.id, "superseded")
        with pytest.raises(ConflictError):
            service.revoke_document(issuer, signed_document.id, "again")

    def test_revoke_notifies_owner_with_reason(
        self,
        service: DocumentService,
        database: Database,
        issuer: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        service.revoke_document(issuer, signed_document.id, "superseded")
        messages = [
            n.message
            for n in DatabaseNotifier(database).unread("owner-1")
            if n.title == "Document Revoked"
        ]
        assert len(messages) == 1
        assert messages[0].endswith("Reason: superseded")

    def test_batch_revoke_uses_default_reason(
        self,
        service: DocumentService,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        ids = [make_document().id for _ in range(2)]
        result = service.batch_revoke(issuer, ids)
        assert len(result.succeeded) == 2
        for document_id in ids:
            report = service.check_status(document_id)
            assert report.revoked_reason == "Batch revocation"

    def test_batch_delete_reports_missing(
        self,
        service: DocumentService,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        existing = make_document().id
        result = service.batch_delete(issuer, [existing, "missing"])
        assert [item.document_id for item in result.succeeded] == [existing]
        assert result.failed[0].error_kind == "NOT_FOUND"
        with pytest.raises(NotFoundError):
            service.get_document(issuer, existing)

    def test_delete_keeps_verification_history(
        self, service: DocumentService, issuer: Principal, signed_document: DocumentInfo
    ) -> None:
        service.verify_by_id(signed_document.id)
        service.delete_document(issuer, signed_document.id)

        after = service.verify_by_id(signed_document.id)
        assert after.status == VerificationStatus.not_found
        history = service.verification_history(signed_document.id)
        assert [entry.status for entry in history] == ["NOT_FOUND", "VALID"]

    def test_outsider_cannot_revoke(
        self, service: DocumentService, outsider: Principal, signed_document: DocumentInfo
    ) -> None:
        with pytest.raises(ForbiddenError):
            service.revoke_document(outsider, signed_document.id, "mine")


# ===========================================================================
# Verification
# ===========================================================================


class TestVerification:
    def test_signed_document_is_valid(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        result = service.verify_by_id(signed_document.id)
        assert result.status == VerificationStatus.valid
        assert result.verified
        assert result.signature_valid is True

    def test_unsigned_document_is_unsigned_everywhere(
        self, service: DocumentService, make_document: Callable[..., DocumentInfo]
    ) -> None:
        document = make_document()
        by_id = service.verify_by_id(document.id)
        by_hash = service.verify_by_hash(document.file_hash)
        assert by_id.status == by_hash.status == VerificationStatus.unsigned
        assert not by_id.verified
        assert not by_hash.verified

    def test_revoked_with_reason(
        self, service: DocumentService, issuer: Principal, signed_document: DocumentInfo
    ) -> None:
        service.revoke_document(issuer, signed_document.id, "superseded")
        result = service.verify_by_id(signed_document.id)
        assert result.status == VerificationStatus.revoked
        assert result.revoked_reason == "superseded"
        assert not result.verified

    def test_expired_one_second_ago(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document(expires_at=utcnow() - timedelta(seconds=1))
        service.sign_document(issuer, document.id, certificate.id)
        result = service.verify_by_id(document.id)
        assert result.status == VerificationStatus.expired
        assert result.verified is False

    def test_tampered_hash_is_signature_invalid(
        self,
        service: DocumentService,
        database: Database,
        signed_document: DocumentInfo,
    ) -> None:
        with database.session() as session:
            session.execute(
                update(DocumentRecord)
                .where(DocumentRecord.id == signed_document.id)
                .values(file_hash=sha256_bytes(b"hello!"))
            )
        result = service.verify_by_id(signed_document.id)
        assert result.status == VerificationStatus.signature_invalid
        assert result.signature_valid is False

    def test_verify_by_hash_accepts_uppercase(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        result = service.verify_by_hash(signed_document.file_hash.upper())
        assert result.status == VerificationStatus.valid

    def test_verify_by_qr_uses_last_path_segment(
        self,
        service: DocumentService,
        signed_document: DocumentInfo,
    ) -> None:
        url = build_verification_url("https://docs.example.org", signed_document.id)
        result = service.verify_by_qr(url)
        assert result.status == VerificationStatus.valid
        assert result.document is not None
        assert result.document.id == signed_document.id

    def test_tampered_hello_content_is_signature_invalid(
        self,
        service: DocumentService,
        database: Database,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        document = make_document(b"hello")
        assert document.file_hash == sha256_bytes(b"hello")
        service.sign_document(issuer, document.id, certificate.id)

        with database.session() as session:
            session.execute(
                update(DocumentRecord)
                .where(DocumentRecord.id == document.id)
                .values(file_hash=sha256_bytes(b"hello!"))
            )
        result = service.verify_by_id(document.id)
        assert result.status == VerificationStatus.signature_invalid
        assert not result.verified

    def test_unknown_id_is_not_found(self, service: DocumentService) -> None:
        before = service.verifications.count()
        result = service.verify_by_id("does-not-exist")
        assert result.status == VerificationStatus.not_found
        assert not result.verified
        assert service.verifications.count() == before + 1

    @pytest.mark.parametrize("method", ["id", "hash", "qr"])
    def test_not_found_by_every_lookup(
        self, service: DocumentService, method: str
    ) -> None:
        before = service.verifications.count()
        result = _lookup(service, method, "does-not-exist", sha256_bytes(b"never stored"))
        assert result.status == VerificationStatus.not_found
        assert not result.verified
        assert result.document is None
        assert service.verifications.count() == before + 1

    @pytest.mark.parametrize("method", ["id", "hash", "qr"])
    def test_revoked_by_every_lookup(
        self,
        service: DocumentService,
        issuer: Principal,
        signed_document: DocumentInfo,
        method: str,
    ) -> None:
        service.revoke_document(issuer, signed_document.id, "superseded")
        before = service.verifications.count()
        result = _lookup(service, method, signed_document.id, signed_document.file_hash)
        assert result.status == VerificationStatus.revoked
        assert result.revoked_reason == "superseded"
        assert not result.verified
        assert service.verifications.count() == before + 1

    @pytest.mark.parametrize("method", ["id", "hash", "qr"])
    def test_expired_by_every_lookup(
        self,
        service: DocumentService,
        issuer: Principal,
        certificate: CertificateInfo,
        make_document: Callable[..., DocumentInfo],
        method: str,
    ) -> None:
        document = make_document(expires_at=utcnow() - timedelta(seconds=1))
        service.sign_document(issuer, document.id, certificate.id)
        before = service.verifications.count()
        result = _lookup(service, method, document.id, document.file_hash)
        assert result.status == VerificationStatus.expired
        assert not result.verified
        assert service.verifications.count() == before + 1

    def test_each_call_appends_one_record(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        first = service.verify_by_id(signed_document.id)
        second = service.verify_by_id(signed_document.id)
        assert first.status == second.status == VerificationStatus.valid
        assert service.verifications.count(signed_document.id) == 2

    def test_record_captures_lookup_and_context(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        ctx = RequestContext(ip_address="203.0.113.9", user_agent="scanner")
        service.verify_by_hash(signed_document.file_hash, ctx)
        [entry] = service.verification_history(signed_document.id)
        assert entry.lookup_method == LookupMethod.hash.value
        assert entry.lookup_value == signed_document.file_hash
        assert entry.verifier_ip == "203.0.113.9"
        assert entry.is_successful

    def test_malformed_qr_is_rejected_and_recorded(
        self, service: DocumentService
    ) -> None:
        before = service.verifications.count()
        with pytest.raises(ValidationError):
            service.verify_by_qr("not a url")
        assert service.verifications.count() == before + 1

    def test_empty_hash_is_rejected(self, service: DocumentService) -> None:
        with pytest.raises(ValidationError):
            service.verify_by_hash("")

    def test_verification_is_audited(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        service.verify_by_id(signed_document.id)
        service.verify_by_id(signed_document.id)
        page = service.audit.search(
            document_id=signed_document.id, action="DOCUMENT_VERIFIED_SUCCESS"
        )
        assert page.total == 2


class TestCheckStatus:
    def test_status_does_not_record_verification(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        report = service.check_status(signed_document.id)
        assert report.status == VerificationStatus.valid
        assert report.is_signed
        assert service.verifications.count(signed_document.id) == 0

    def test_revoked_message_includes_reason(
        self, service: DocumentService, issuer: Principal, signed_document: DocumentInfo
    ) -> None:
        service.revoke_document(issuer, signed_document.id, "superseded")
        report = service.check_status(signed_document.id)
        assert report.status == VerificationStatus.revoked
        assert report.status_message == "Document was revoked (Reason: superseded)"

    def test_missing_document_raises(self, service: DocumentService) -> None:
        with pytest.raises(NotFoundError):
            service.check_status("missing")


# ===========================================================================
# History
# ===========================================================================


class TestDocumentHistory:
    def test_owner_sees_history(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        owner = Principal(user_id="owner-1", roles=frozenset({Role.document_owner}))
        page = service.document_history(owner, signed_document.id)
        actions = {entry.action for entry in page.items}
        assert {"DOCUMENT_CREATED", "DOCUMENT_SIGNED"} <= actions

    def test_outsider_is_forbidden(
        self, service: DocumentService, outsider: Principal, signed_document: DocumentInfo
    ) -> None:
        with pytest.raises(ForbiddenError):
            service.document_history(outsider, signed_document.id)

    def test_pagination(
        self, service: DocumentService, issuer: Principal, signed_document: DocumentInfo
    ) -> None:
        for _ in range(3):
            service.get_document(issuer, signed_document.id)
        page = service.document_history(issuer, signed_document.id, page=2, limit=2)
        assert page.page == 2
        assert len(page.items) == 2
        assert page.total == 5
        assert page.total_pages == 3


# ===========================================================================
# Listing and sharing
# ===========================================================================


class TestListDocuments:
    def test_newest_first_with_pagination(
        self,
        service: DocumentService,
        database: Database,
        admin: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        ids = [make_document().id for _ in range(3)]
        base = utcnow()
        with database.session() as session:
            for offset, document_id in enumerate(ids):
                session.execute(
                    update(DocumentRecord)
                    .where(DocumentRecord.id == document_id)
                    .values(created_at=base + timedelta(minutes=offset))
                )

        first = service.list_documents(admin, limit=2)
        second = service.list_documents(admin, page=2, limit=2)
        assert [doc.id for doc in first.items] == [ids[2], ids[1]]
        assert [doc.id for doc in second.items] == [ids[0]]
        assert first.total == 3
        assert first.total_pages == 2

    def test_default_page_size_is_ten(
        self, service: DocumentService, admin: Principal
    ) -> None:
        page = service.list_documents(admin)
        assert page.page == 1
        assert page.limit == 10
        assert page.total == 0

    def test_search_is_case_insensitive_over_title_and_description(
        self,
        service: DocumentService,
        admin: Principal,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        by_title = make_document(title="BSc Physics Diploma")
        by_description = make_document(title="Transcript")
        service.update_document(
            issuer, by_description.id, description="Grades in PHYSICS and maths"
        )
        make_document(title="Chemistry Diploma")

        page = service.list_documents(admin, search="physics")
        assert {doc.id for doc in page.items} == {by_title.id, by_description.id}
        assert page.total == 2

    def test_like_wildcards_are_literal(
        self,
        service: DocumentService,
        admin: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        make_document(title="Diploma")
        assert service.list_documents(admin, search="%").total == 0
        assert service.list_documents(admin, search="_").total == 0

    def test_filters_combine(
        self,
        service: DocumentService,
        admin: Principal,
        issuer: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        revoked = make_document(owner_id="owner-2")
        make_document(owner_id="owner-2")
        make_document(owner_id="owner-3")
        service.revoke_document(issuer, revoked.id, "superseded")

        page = service.list_documents(admin, owner_id="owner-2", is_revoked=True)
        assert [doc.id for doc in page.items] == [revoked.id]
        assert service.list_documents(admin, owner_id="owner-2").total == 2
        assert service.list_documents(admin, is_revoked=False).total == 2
        assert service.list_documents(admin, issuer_id="issuer-1").total == 3

    def test_owner_sees_only_own_documents(
        self,
        service: DocumentService,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        mine = make_document(owner_id="owner-1")
        make_document(owner_id="owner-2")
        owner = Principal(user_id="owner-1", roles=frozenset({Role.document_owner}))

        page = service.list_documents(owner)
        assert [doc.id for doc in page.items] == [mine.id]

    def test_outsider_sees_nothing(
        self,
        service: DocumentService,
        outsider: Principal,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        make_document()
        assert service.list_documents(outsider).total == 0

    def test_organization_members_see_organization_documents(
        self,
        service: DocumentService,
        organization: str,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        make_document()
        colleague = Principal(
            user_id="colleague",
            roles=frozenset({Role.verifier}),
            organization_id=organization,
        )
        assert service.list_documents(colleague).total == 1


class TestShareLinks:
    def test_issuer_creates_link(
        self,
        service: DocumentService,
        issuer: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        share = service.create_share_link(issuer, signed_document.id)

        assert isinstance(share, ShareLinkInfo)
        assert len(share.access_token) == 64
        int(share.access_token, 16)
        assert share.share_url == f"https://docs.example.org/shared/{share.access_token}"
        assert share.user_id == issuer.user_id
        assert share.expires_at is None
        assert not share.is_one_time

    def test_tokens_are_unique(
        self,
        service: DocumentService,
        issuer: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        first = service.create_share_link(issuer, signed_document.id)
        second = service.create_share_link(issuer, signed_document.id)
        assert first.access_token != second.access_token
        links = service.list_share_links(issuer, signed_document.id)
        assert [link.id for link in links] == [first.id, second.id]

    def test_expiry_and_one_time_are_stored(
        self,
        service: DocumentService,
        admin: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        expiry = utcnow() + timedelta(days=7)
        share = service.create_share_link(
            admin, signed_document.id, expires_at=expiry, is_one_time=True
        )
        [stored] = service.list_share_links(admin, signed_document.id)
        assert stored.id == share.id
        assert stored.expires_at == expiry
        assert stored.is_one_time

    def test_creation_is_audited(
        self,
        service: DocumentService,
        issuer: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        share = service.create_share_link(issuer, signed_document.id)
        page = service.audit.search(
            document_id=signed_document.id, action="DOCUMENT_SHARE_CREATED"
        )
        assert page.total == 1
        assert page.items[0].details == {
            "documentId": signed_document.id,
            "shareId": share.id,
        }

    def test_owner_may_share(
        self, service: DocumentService, signed_document: DocumentInfo
    ) -> None:
        owner = Principal(user_id="owner-1", roles=frozenset({Role.document_owner}))
        assert service.create_share_link(owner, signed_document.id).user_id == "owner-1"

    def test_organization_admin_may_not_share(
        self,
        service: DocumentService,
        organization: str,
        signed_document: DocumentInfo,
    ) -> None:
        org_admin = Principal(
            user_id="oa",
            roles=frozenset({Role.organization_admin}),
            organization_id=organization,
        )
        with pytest.raises(ForbiddenError):
            service.create_share_link(org_admin, signed_document.id)

    def test_outsider_cannot_share(
        self,
        service: DocumentService,
        outsider: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        with pytest.raises(ForbiddenError):
            service.create_share_link(outsider, signed_document.id)

    def test_missing_document_is_not_found(
        self, service: DocumentService, admin: Principal
    ) -> None:
        with pytest.raises(NotFoundError):
            service.create_share_link(admin, "missing")

    def test_creator_deletes_link(
        self,
        service: DocumentService,
        admin: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        creator = Principal(user_id="owner-1", roles=frozenset({Role.document_owner}))
        share = service.create_share_link(creator, signed_document.id)

        service.delete_share_link(creator, signed_document.id, share.id)

        assert service.list_share_links(admin, signed_document.id) == []
        page = service.audit.search(
            document_id=signed_document.id, action="DOCUMENT_SHARE_DELETED"
        )
        assert page.items[0].details == {
            "documentId": signed_document.id,
            "shareId": share.id,
        }

    def test_wrong_document_is_not_found(
        self,
        service: DocumentService,
        issuer: Principal,
        signed_document: DocumentInfo,
        make_document: Callable[..., DocumentInfo],
    ) -> None:
        share = service.create_share_link(issuer, signed_document.id)
        other = make_document()
        with pytest.raises(NotFoundError) as exc_info:
            service.delete_share_link(issuer, other.id, share.id)
        assert exc_info.value.message == "Share link not found"

    def test_unknown_share_is_not_found(
        self,
        service: DocumentService,
        issuer: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        with pytest.raises(NotFoundError):
            service.delete_share_link(issuer, signed_document.id, "missing")

    def test_outsider_cannot_delete(
        self,
        service: DocumentService,
        issuer: Principal,
        outsider: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        share = service.create_share_link(issuer, signed_document.id)
        with pytest.raises(ForbiddenError):
            service.delete_share_link(outsider, signed_document.id, share.id)

    def test_deleting_document_removes_its_links(
        self,
        service: DocumentService,
        admin: Principal,
        issuer: Principal,
        signed_document: DocumentInfo,
    ) -> None:
        service.create_share_link(issuer, signed_document.id)
        service.delete_document(issuer, signed_document.id)
        with pytest.raises(NotFoundError):
            service.list_share_links(admin, signed_document.id)


class TestBackgroundSideEffects:
    def test_executor_backed_side_effects_complete_on_close(
        self, database: Database, settings: Settings, admin: Principal
    ) -> None:
        with ThreadPoolExecutor(max_workers=2) as pool:
            svc = DocumentService(
                database, settings=settings, background=BackgroundTasks(pool)
            )
            org = svc.create_organization("Beta", "beta@example.org")
            svc.generate_key_pair(admin, org)
            svc.close()
        assert svc.audit.search(action="KEY_PAIR_GENERATED").total == 1
