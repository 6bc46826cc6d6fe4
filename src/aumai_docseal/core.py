"""Hashing, signing and verification logic for issued documents."""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from datetime import UTC, datetime
from pathlib import Path

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from aumai_docseal.errors import ContentReadError, CryptoError
from aumai_docseal.models import (
    DocumentSnapshot,
    DocumentSummary,
    VerificationResult,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

KEY_ALGORITHM = "RSA"
DEFAULT_KEY_SIZE = 4096
PUBLIC_EXPONENT = 65537

# ---------------------------------------------------------------------------
# Content hashing
# ---------------------------------------------------------------------------


def sha256_bytes(data: bytes) -> str:
    """Return the hex-encoded SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(file_path: Path) -> str:
    """Return the hex-encoded SHA-256 digest of *file_path*."""
    hasher = hashlib.sha256()
    with file_path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class ContentHasher:
    """Compute the integrity digest of the content behind a file reference."""

    def __init__(self, storage_root: Path | str | None = None) -> None:
        self._root = Path(storage_root) if storage_root is not None else Path.cwd()

    def resolve(self, file_url: str) -> Path:
        """Resolve *file_url* against the storage root unless it is absolute."""
        path = Path(file_url)
        return path if path.is_absolute() else self._root / path

    def hash_reference(self, file_url: str) -> tuple[str, int]:
        """Return ``(hex_digest, size_bytes)`` for the file behind *file_url*.

        Raises:
            ContentReadError: if the file is missing or unreadable.
        """
        path = self.resolve(file_url)
        try:
            digest = sha256_file(path)
            size = path.stat().st_size
        except OSError as exc:
            raise ContentReadError(
                f"Cannot read document content at {file_url!r}: {exc.strerror or exc}"
            ) from exc
        return digest, size


# ---------------------------------------------------------------------------
# KeyManager
# ---------------------------------------------------------------------------


def generate_rsa_keypair(key_size: int = DEFAULT_KEY_SIZE) -> tuple[str, str]:
    """Generate an RSA key pair and return ``(private_pem, public_pem)`` strings.

    Module-level so that it can be shipped to a process pool.
    """
    private_key = rsa.generate_private_key(
        public_exponent=PUBLIC_EXPONENT, key_size=key_size
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode("ascii"), public_pem.decode("ascii")


class KeyManager:
    """Generate and load the RSA key material organizations sign with."""

    def __init__(self, key_size: int = DEFAULT_KEY_SIZE) -> None:
        if key_size < 2048:
            raise ValueError(f"RSA key size must be at least 2048 bits, got {key_size}")
        self.key_size = key_size

    def generate_keypair(self) -> tuple[str, str]:
        """Generate a fresh key pair.

        Returns:
            A tuple of ``(private_key_pem, public_key_pem)``.  The private key
            is PKCS8 and unencrypted; the public key is SubjectPublicKeyInfo.
        """
        return generate_rsa_keypair(self.key_size)

    def load_private_key(self, pem: str) -> rsa.RSAPrivateKey:
        """Deserialise a PEM private key, raising :class:`CryptoError` on failure."""
        try:
            key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm, UnicodeEncodeError) as exc:
            raise CryptoError(f"Failed to load private key: {exc}") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise CryptoError(
                f"Unsupported key type: {type(key).__name__}. Only RSA is supported."
            )
        return key

    def load_public_key(self, pem: str) -> rsa.RSAPublicKey:
        """Deserialise a PEM public key, raising :class:`CryptoError` on failure."""
        try:
            key = serialization.load_pem_public_key(pem.encode("ascii"))
        except (ValueError, TypeError, UnsupportedAlgorithm, UnicodeEncodeError) as exc:
            raise CryptoError(f"Failed to load public key: {exc}") from exc
        if not isinstance(key, rsa.RSAPublicKey):
            raise CryptoError(
                f"Unsupported key type: {type(key).__name__}. Only RSA is supported."
            )
        return key


# ---------------------------------------------------------------------------
# DocumentSigner
# ---------------------------------------------------------------------------


class DocumentSigner:
    """Sign stored document digests with a certificate's private key.

    The signature covers the hex digest string (``file_hash``), not the raw
    file bytes, so the digest recorded at creation is what gets attested.
    """

    def __init__(self, key_manager: KeyManager | None = None) -> None:
        self._keys = key_manager or KeyManager()

    def sign_digest(self, file_hash: str, private_key_pem: str) -> str:
        """Return the base64 RSA PKCS#1 v1.5 / SHA-256 signature over *file_hash*."""
        private_key = self._keys.load_private_key(private_key_pem)
        try:
            raw_sig = private_key.sign(
                file_hash.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
            )
        except ValueError as exc:
            raise CryptoError(f"Signing failed: {exc}") from exc
        return base64.b64encode(raw_sig).decode("ascii")


# ---------------------------------------------------------------------------
# DocumentVerifier
# ---------------------------------------------------------------------------


def _summary(document: DocumentSnapshot, *, full: bool) -> DocumentSummary:
    summary = DocumentSummary(
        id=document.id,
        title=document.title,
        issued_at=document.created_at,
    )
    if full:
        summary = summary.model_copy(
            update={
                "description": document.description,
                "signed_at": document.signed_at,
                "expires_at": document.expires_at,
                "issuer_id": document.issuer_id,
                "organization_id": document.organization_id,
            }
        )
    return summary


class DocumentVerifier:
    """Cryptographic signature checks plus the verification decision chain."""

    def __init__(self, key_manager: KeyManager | None = None) -> None:
        self._keys = key_manager or KeyManager()

    def verify_signature(
        self, file_hash: str, signature_b64: str, public_key_pem: str
    ) -> bool:
        """Return True iff *signature_b64* is a valid signature of *file_hash*.

        Malformed base64, unloadable keys and mismatching signatures all
        produce False; this method does not raise.
        """
        try:
            raw_sig = base64.b64decode(signature_b64, validate=True)
            public_key = self._keys.load_public_key(public_key_pem)
            public_key.verify(
                raw_sig, file_hash.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
            )
        except (binascii.Error, CryptoError, InvalidSignature, ValueError) as exc:
            logger.debug("Signature check failed: %s", exc)
            return False
        return True

    def evaluate(
        self,
        document: DocumentSnapshot | None,
        now: datetime | None = None,
    ) -> VerificationResult:
        """Run the ordered decision chain; the first matching condition wins.

        NOT_FOUND, REVOKED, EXPIRED, SIGNATURE_INVALID, UNSIGNED, VALID.
        """
        if document is None:
            return VerificationResult(
                status=VerificationStatus.not_found,
                verified=False,
                message="Document not found",
            )

        current = _aware(now) if now is not None else datetime.now(tz=UTC)

        if document.is_revoked:
            summary = _summary(document, full=False).model_copy(
                update={
                    "revoked_at": document.revoked_at,
                    "revoked_reason": document.revoked_reason,
                }
            )
            return VerificationResult(
                status=VerificationStatus.revoked,
                verified=False,
                message="Document has been revoked",
                document=summary,
                revoked_reason=document.revoked_reason,
            )

        if document.expires_at is not None and current > _aware(document.expires_at):
            summary = _summary(document, full=False).model_copy(
                update={"expires_at": document.expires_at}
            )
            return VerificationResult(
                status=VerificationStatus.expired,
                verified=False,
                message="Document has expired",
                document=summary,
            )

        if document.signature:
            signature_valid = (
                document.certificate_public_key is not None
                and self.verify_signature(
                    document.file_hash,
                    document.signature,
                    document.certificate_public_key,
                )
            )
            if not signature_valid:
                return VerificationResult(
                    status=VerificationStatus.signature_invalid,
                    verified=False,
                    message="Document signature is invalid",
                    document=_summary(document, full=False),
                    signature_valid=False,
                )
            return VerificationResult(
                status=VerificationStatus.valid,
                verified=True,
                message="Document verified successfully",
                document=_summary(document, full=True),
                signature_valid=True,
            )

        return VerificationResult(
            status=VerificationStatus.unsigned,
            verified=False,
            message="Document has not been signed",
            document=_summary(document, full=True),
            signature_valid=None,
        )


def _aware(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


__all__ = [
    "ContentHasher",
    "DEFAULT_KEY_SIZE",
    "DocumentSigner",
    "DocumentVerifier",
    "KEY_ALGORITHM",
    "KeyManager",
    "generate_rsa_keypair",
    "sha256_bytes",
    "sha256_file",
]
