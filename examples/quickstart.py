"""aumai-docseal quickstart: the document lifecycle end to end.

Run this file directly to see issuing, signing, verification and revocation:

    python examples/quickstart.py

Each demo works in its own temporary directory (SQLite database plus stored
files) and cleans up after itself.
"""

from __future__ import annotations

import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from aumai_docseal import (
    Database,
    DocumentService,
    Principal,
    Role,
    Settings,
    VerificationStatus,
)
from aumai_docseal.storage import DocumentRecord, utcnow

ADMIN = Principal(user_id="admin", roles=frozenset({Role.system_admin}))


@contextmanager
def _workspace() -> Iterator[tuple[DocumentService, Database, Path]]:
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        settings = Settings(
            database_url=f"sqlite:///{tmp / 'docseal.db'}",
            storage_root=tmp,
            key_size=2048,
        )
        database = Database(settings.database_url)
        database.create_all()
        try:
            with DocumentService(database, settings=settings) as service:
                yield service, database, tmp
        finally:
            database.dispose()


def _certificate(service: DocumentService) -> str:
    org_id = service.create_organization("Acme University", "registrar@acme.example")
    service.generate_key_pair(ADMIN, org_id)
    return service.issue_certificate(ADMIN, org_id, valid_days=365).id


# ---------------------------------------------------------------------------
# Demo 1: issue, sign and verify
# ---------------------------------------------------------------------------


def demo_sign_and_verify() -> None:
    print("\n=== Demo 1: Issue, Sign & Verify ===")

    with _workspace() as (service, _, tmp):
        (tmp / "diploma.pdf").write_bytes(b"%PDF-1.7 Jane Doe, BSc Physics")
        cert_id = _certificate(service)

        document = service.create_document(
            ADMIN, title="BSc Diploma", file_url="diploma.pdf", owner_id="jane"
        )
        print(f"  Created {document.id}  sha256:{document.file_hash[:16]}...")

        unsigned = service.verify_by_id(document.id)
        print(f"  Before signing: {unsigned.status.value}")
        assert unsigned.status == VerificationStatus.unsigned

        service.sign_document(ADMIN, document.id, cert_id)
        for label, result in (
            ("id", service.verify_by_id(document.id)),
            ("hash", service.verify_by_hash(document.file_hash)),
            ("qr", service.verify_by_qr(f"https://verify.example/verify/{document.id}")),
        ):
            print(f"  Verified by {label:<4}: {result.status.value}")
            assert result.verified

        print(f"  Verification records: {service.verifications.count(document.id)}")
        print("  Demo 1 passed.")


# ---------------------------------------------------------------------------
# Demo 2: tamper detection
# ---------------------------------------------------------------------------


def demo_tamper_detection() -> None:
    print("\n=== Demo 2: Tamper Detection ===")

    with _workspace() as (service, database, tmp):
        (tmp / "transcript.pdf").write_bytes(b"hello")
        cert_id = _certificate(service)
        document = service.create_document(
            ADMIN, title="Transcript", file_url="transcript.pdf"
        )
        service.sign_document(ADMIN, document.id, cert_id)

        # Simulate a row edited behind the service's back.
        with database.session() as session:
            record = session.get(DocumentRecord, document.id)
            assert record is not None
            record.file_hash = "0" * 64

        result = service.verify_by_id(document.id)
        print(f"  After tampering: {result.status.value}")
        assert result.status == VerificationStatus.signature_invalid
        print("  Demo 2 passed.")


# ---------------------------------------------------------------------------
# Demo 3: expiry and revocation
# ---------------------------------------------------------------------------


def demo_expiry_and_revocation() -> None:
    print("\n=== Demo 3: Expiry & Revocation ===")

    with _workspace() as (service, _, tmp):
        (tmp / "permit.pdf").write_bytes(b"parking permit")
        (tmp / "licence.pdf").write_bytes(b"operating licence")
        cert_id = _certificate(service)

        permit = service.create_document(
            ADMIN,
            title="Permit",
            file_url="permit.pdf",
            expires_at=utcnow() - timedelta(seconds=1),
        )
        licence = service.create_document(ADMIN, title="Licence", file_url="licence.pdf")
        batch = service.batch_sign(ADMIN, [permit.id, licence.id], cert_id)
        print(f"  Batch signed: {len(batch.succeeded)} ok, {len(batch.failed)} failed")

        print(f"  Permit : {service.verify_by_id(permit.id).status.value}")

        service.revoke_document(ADMIN, licence.id, "superseded")
        report = service.check_status(licence.id)
        print(f"  Licence: {report.status.value} ({report.status_message})")
        assert report.status == VerificationStatus.revoked
        print("  Demo 3 passed.")


def main() -> None:
    """Run all quickstart demos."""
    print("aumai-docseal quickstart demos")
    print("=" * 45)

    demo_sign_and_verify()
    demo_tamper_detection()
    demo_expiry_and_revocation()

    print("\n" + "=" * 45)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
