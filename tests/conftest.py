"""Shared test fixtures for aumai-docseal."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path

import pytest

from aumai_docseal.config import Settings
from aumai_docseal.core import KeyManager
from aumai_docseal.models import CertificateInfo, DocumentInfo, Principal, Role
from aumai_docseal.service import DocumentService
from aumai_docseal.storage import Database

TEST_KEY_SIZE = 2048

# ---------------------------------------------------------------------------
# Key-pair fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def key_manager() -> KeyManager:
    """A shared KeyManager with a small key size to keep the suite fast."""
    return KeyManager(TEST_KEY_SIZE)


@pytest.fixture(scope="session")
def rsa_keypair(key_manager: KeyManager) -> tuple[str, str]:
    """(private_pem, public_pem) used for signing."""
    return key_manager.generate_keypair()


@pytest.fixture(scope="session")
def other_rsa_keypair(key_manager: KeyManager) -> tuple[str, str]:
    """A second, unrelated key pair."""
    return key_manager.generate_keypair()


# ---------------------------------------------------------------------------
# Storage and service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    storage_root = tmp_path / "files"
    storage_root.mkdir()
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'docseal.db'}",
        storage_root=storage_root,
        verification_base_url="https://docs.example.org",
        key_size=TEST_KEY_SIZE,
        batch_workers=4,
    )


@pytest.fixture()
def database(settings: Settings) -> Iterator[Database]:
    """A file-backed SQLite database with every table created."""
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture()
def service(database: Database, settings: Settings) -> Iterator[DocumentService]:
    """A DocumentService whose side effects run inline."""
    svc = DocumentService(database, settings=settings)
    yield svc
    svc.close()


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


@pytest.fixture()
def admin() -> Principal:
    return Principal(user_id="admin-1", roles=frozenset({Role.system_admin}))


@pytest.fixture()
def issuer(organization: str) -> Principal:
    return Principal(
        user_id="issuer-1", roles=frozenset({Role.issuer}), organization_id=organization
    )


@pytest.fixture()
def outsider() -> Principal:
    return Principal(user_id="intruder", roles=frozenset({Role.issuer}))


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def organization(service: DocumentService) -> str:
    """Identifier of a freshly registered organization."""
    return service.create_organization("Acme University", "registrar@acme.example")


@pytest.fixture()
def certificate(
    service: DocumentService, admin: Principal, organization: str
) -> CertificateInfo:
    """A currently valid certificate bound to the organization's active key."""
    service.generate_key_pair(admin, organization)
    return service.issue_certificate(admin, organization, valid_days=30)


@pytest.fixture()
def write_file(settings: Settings) -> Callable[[str, bytes], str]:
    """Write *content* under the storage root and return its relative reference."""

    def _write(name: str, content: bytes) -> str:
        path = settings.storage_root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return name

    return _write


@pytest.fixture()
def make_document(
    service: DocumentService,
    issuer: Principal,
    organization: str,
    write_file: Callable[[str, bytes], str],
) -> Callable[..., DocumentInfo]:
    """Factory creating an unsigned document with unique content."""
    counter = {"n": 0}

    def _make(
        content: bytes | None = None,
        *,
        title: str | None = None,
        owner_id: str | None = "owner-1",
        expires_at: datetime | None = None,
    ) -> DocumentInfo:
        counter["n"] += 1
        n = counter["n"]
        data = content if content is not None else f"diploma #{n}".encode()
        ref = write_file(f"doc-{n}.pdf", data)
        return service.create_document(
            issuer,
            title=title or f"Diploma {n}",
            file_url=ref,
            file_type="application/pdf",
            owner_id=owner_id,
            organization_id=organization,
            expires_at=expires_at,
        )

    return _make


@pytest.fixture()
def signed_document(
    service: DocumentService,
    issuer: Principal,
    certificate: CertificateInfo,
    make_document: Callable[..., DocumentInfo],
) -> DocumentInfo:
    document = make_document()
    return service.sign_document(issuer, document.id, certificate.id)
