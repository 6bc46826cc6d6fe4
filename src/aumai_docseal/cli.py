"""CLI entry point for aumai-docseal."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import IO, NoReturn

import click

from aumai_docseal.config import Settings
from aumai_docseal.errors import DocSealError
from aumai_docseal.models import Principal, RequestContext, Role, VerificationResult
from aumai_docseal.service import DocumentService
from aumai_docseal.storage import Database

CLI_CONTEXT = RequestContext(user_agent="docseal-cli", method="CLI")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(exc: DocSealError) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


def _principal(user_id: str) -> Principal:
    return Principal(user_id=user_id, roles=frozenset({Role.system_admin}))


@contextmanager
def _service(settings: Settings) -> Iterator[DocumentService]:
    database = Database(settings.database_url)
    try:
        with DocumentService(database, settings=settings) as service:
            yield service
    finally:
        database.dispose()


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _echo_verification(result: VerificationResult) -> None:
    label = "VERIFIED" if result.verified else "NOT VERIFIED"
    click.echo(f"Status   : {result.status.value} ({label})")
    click.echo(f"Message  : {result.message}")
    if result.document is not None:
        click.echo(f"Document : {result.document.id}")
        click.echo(f"Title    : {result.document.title}")
        if result.document.signed_at is not None:
            click.echo(f"Signed At: {result.document.signed_at.isoformat()}")
    if result.revoked_reason:
        click.echo(f"Reason   : {result.revoked_reason}")


as_user_option = click.option(
    "--as-user",
    "as_user",
    default="cli-admin",
    show_default=True,
    metavar="ID",
    help="User id recorded as the acting system administrator.",
)

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option()
@click.option(
    "--database-url",
    default=None,
    metavar="URL",
    help="SQLAlchemy database URL (overrides DOCSEAL_DATABASE_URL).",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides DOCSEAL_LOG_LEVEL).",
)
@click.pass_context
def main(ctx: click.Context, database_url: str | None, log_level: str | None) -> None:
    """AumAI DocSeal: issue, sign, verify and revoke digital documents."""
    settings = Settings.from_env()
    updates: dict[str, str] = {}
    if database_url:
        updates["database_url"] = database_url
    if log_level:
        updates["log_level"] = log_level.upper()
    settings = settings.model_copy(update=updates)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


@main.command("init-db")
@click.pass_obj
def init_db_command(settings: Settings) -> None:
    """Create every table that does not exist yet."""
    database = Database(settings.database_url)
    try:
        database.create_all()
    finally:
        database.dispose()
    click.echo(f"Database initialised: {settings.database_url}")


# ---------------------------------------------------------------------------
# Organizations, keys and certificates
# ---------------------------------------------------------------------------


@main.group("org")
def org_group() -> None:
    """Manage organizations."""


@org_group.command("create")
@click.option("--name", required=True, help="Organization display name.")
@click.option("--email", required=True, help="Unique contact email.")
@click.pass_obj
def org_create_command(settings: Settings, name: str, email: str) -> None:
    """Register a new organization."""
    try:
        with _service(settings) as service:
            org_id = service.create_organization(name, email)
    except DocSealError as exc:
        _fail(exc)
    click.echo(org_id)


@main.command("keygen")
@click.option("--org", "organization_id", required=True, metavar="ID")
@as_user_option
@click.pass_obj
def keygen_command(settings: Settings, organization_id: str, as_user: str) -> None:
    """Generate the organization's active RSA signing key pair."""
    try:
        with _service(settings) as service:
            info = service.generate_key_pair(
                _principal(as_user), organization_id, CLI_CONTEXT
            )
    except DocSealError as exc:
        _fail(exc)
    click.echo(f"Key pair {info.id} ({info.algorithm}-{info.key_size}) is now active")


@main.group("cert")
def cert_group() -> None:
    """Issue and revoke signing certificates."""


@cert_group.command("issue")
@click.option("--org", "organization_id", required=True, metavar="ID")
@click.option("--subject", default=None, help="Defaults to the organization name.")
@click.option("--valid-days", default=365, show_default=True, type=click.IntRange(min=1))
@as_user_option
@click.pass_obj
def cert_issue_command(
    settings: Settings,
    organization_id: str,
    subject: str | None,
    valid_days: int,
    as_user: str,
) -> None:
    """Issue a certificate bound to the organization's active key pair."""
    try:
        with _service(settings) as service:
            info = service.issue_certificate(
                _principal(as_user),
                organization_id,
                subject=subject,
                valid_days=valid_days,
                context=CLI_CONTEXT,
            )
    except DocSealError as exc:
        _fail(exc)
    click.echo(info.id)
    click.echo(f"  Subject    : {info.subject}")
    click.echo(f"  Valid until: {info.valid_until.isoformat()}")


@cert_group.command("revoke")
@click.argument("certificate_id")
@as_user_option
@click.pass_obj
def cert_revoke_command(settings: Settings, certificate_id: str, as_user: str) -> None:
    """Revoke a certificate so it can no longer sign."""
    try:
        with _service(settings) as service:
            service.revoke_certificate(_principal(as_user), certificate_id, CLI_CONTEXT)
    except DocSealError as exc:
        _fail(exc)
    click.echo(f"Certificate {certificate_id} revoked")


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@main.command("create")
@click.option("--title", required=True)
@click.option("--file", "file_url", required=True, metavar="PATH", help="Stored file reference.")
@click.option("--description", default=None)
@click.option("--file-type", default=None, help="MIME type of the file.")
@click.option("--owner", "owner_id", default=None, metavar="ID")
@click.option("--org", "organization_id", default=None, metavar="ID")
@click.option("--expires-at", type=click.DateTime(), default=None, help="UTC expiry.")
@as_user_option
@click.pass_obj
def create_command(
    settings: Settings,
    title: str,
    file_url: str,
    description: str | None,
    file_type: str | None,
    owner_id: str | None,
    organization_id: str | None,
    expires_at: datetime | None,
    as_user: str,
) -> None:
    """Hash a stored file and register it as a new unsigned document."""
    try:
        with _service(settings) as service:
            info = service.create_document(
                _principal(as_user),
                title=title,
                file_url=file_url,
                description=description,
                file_type=file_type,
                owner_id=owner_id,
                organization_id=organization_id,
                expires_at=_aware(expires_at),
                context=CLI_CONTEXT,
            )
    except DocSealError as exc:
        _fail(exc)
    click.echo(info.id)
    click.echo(f"  SHA-256: {info.file_hash}")
    click.echo(f"  Size   : {info.file_size:,} bytes")


@main.command("sign")
@click.argument("document_id")
@click.option("--certificate", "certificate_id", required=True, metavar="ID")
@as_user_option
@click.pass_obj
def sign_command(
    settings: Settings, document_id: str, certificate_id: str, as_user: str
) -> None:
    """Sign a document's stored digest with a certificate."""
    try:
        with _service(settings) as service:
            info = service.sign_document(
                _principal(as_user), document_id, certificate_id, CLI_CONTEXT
            )
    except DocSealError as exc:
        _fail(exc)
    click.echo(f"Signed {info.id}")
    click.echo(f"  Certificate: {info.certificate_id}")
    click.echo(f"  Signature  : {info.signature}")


@main.command("batch-sign")
@click.argument("document_ids", nargs=-1, required=True)
@click.option("--certificate", "certificate_id", required=True, metavar="ID")
@as_user_option
@click.pass_obj
def batch_sign_command(
    settings: Settings,
    document_ids: tuple[str, ...],
    certificate_id: str,
    as_user: str,
) -> None:
    """Sign several documents with one certificate, each independently."""
    try:
        with _service(settings) as service:
            result = service.batch_sign(
                _principal(as_user), document_ids, certificate_id, CLI_CONTEXT
            )
    except DocSealError as exc:
        _fail(exc)
    for item in result.items:
        if item.success:
            click.echo(f"  [OK]   {item.document_id}")
        else:
            click.echo(f"  [FAIL] {item.document_id}: {item.error_kind} {item.error}")
    click.echo(f"{len(result.succeeded)} signed, {len(result.failed)} failed")
    if result.failed:
        sys.exit(1)


@main.command("revoke")
@click.argument("document_id")
@click.option("--reason", default=None)
@as_user_option
@click.pass_obj
def revoke_command(
    settings: Settings, document_id: str, reason: str | None, as_user: str
) -> None:
    """Revoke a document permanently."""
    try:
        with _service(settings) as service:
            service.revoke_document(_principal(as_user), document_id, reason, CLI_CONTEXT)
    except DocSealError as exc:
        _fail(exc)
    click.echo(f"Document {document_id} revoked")


@main.command("delete")
@click.argument("document_id")
@as_user_option
@click.pass_obj
def delete_command(settings: Settings, document_id: str, as_user: str) -> None:
    """Delete a document.  Its audit and verification history is kept."""
    try:
        with _service(settings) as service:
            service.delete_document(_principal(as_user), document_id, CLI_CONTEXT)
    except DocSealError as exc:
        _fail(exc)
    click.echo(f"Document {document_id} deleted")


@main.command("list")
@click.option("--search", default=None, help="Case-insensitive title/description match.")
@click.option("--owner", "owner_id", default=None, metavar="ID")
@click.option("--issuer", "issuer_id", default=None, metavar="ID")
@click.option("--org", "organization_id", default=None, metavar="ID")
@click.option("--revoked/--active", "is_revoked", default=None)
@click.option("--page", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--limit", default=10, show_default=True, type=click.IntRange(min=1))
@as_user_option
@click.pass_obj
def list_command(
    settings: Settings,
    search: str | None,
    owner_id: str | None,
    issuer_id: str | None,
    organization_id: str | None,
    is_revoked: bool | None,
    page: int,
    limit: int,
    as_user: str,
) -> None:
    """List documents, newest first."""
    with _service(settings) as service:
        result = service.list_documents(
            _principal(as_user),
            owner_id=owner_id,
            issuer_id=issuer_id,
            organization_id=organization_id,
            is_revoked=is_revoked,
            search=search,
            page=page,
            limit=limit,
        )
    for doc in result.items:
        state = "revoked" if doc.is_revoked else ("signed" if doc.is_signed else "unsigned")
        click.echo(f"{doc.id}  {state:<8}  {doc.title}")
    click.echo(
        f"Page {result.page}/{max(result.total_pages, 1)} ({result.total} documents)",
        err=True,
    )


@main.group("share")
def share_group() -> None:
    """Create and delete document share links."""


@share_group.command("create")
@click.argument("document_id")
@click.option("--expires-at", type=click.DateTime(), default=None, help="UTC expiry.")
@click.option("--one-time", is_flag=True, help="Link is meant for a single use.")
@as_user_option
@click.pass_obj
def share_create_command(
    settings: Settings,
    document_id: str,
    expires_at: datetime | None,
    one_time: bool,
    as_user: str,
) -> None:
    """Create a share link and print its URL."""
    try:
        with _service(settings) as service:
            share = service.create_share_link(
                _principal(as_user),
                document_id,
                expires_at=_aware(expires_at),
                is_one_time=one_time,
                context=CLI_CONTEXT,
            )
    except DocSealError as exc:
        _fail(exc)
    click.echo(share.id)
    click.echo(f"  URL: {share.share_url}")


@share_group.command("delete")
@click.argument("document_id")
@click.argument("share_id")
@as_user_option
@click.pass_obj
def share_delete_command(
    settings: Settings, document_id: str, share_id: str, as_user: str
) -> None:
    """Delete a share link."""
    try:
        with _service(settings) as service:
            service.delete_share_link(
                _principal(as_user), document_id, share_id, CLI_CONTEXT
            )
    except DocSealError as exc:
        _fail(exc)
    click.echo(f"Share link {share_id} deleted")


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@main.command("verify")
@click.option("--id", "document_id", default=None, metavar="ID")
@click.option("--hash", "file_hash", default=None, metavar="SHA256")
@click.option("--qr", "qr_data", default=None, metavar="URL")
@click.option("--json-output", is_flag=True, help="Emit raw JSON.")
@click.pass_obj
def verify_command(
    settings: Settings,
    document_id: str | None,
    file_hash: str | None,
    qr_data: str | None,
    json_output: bool,
) -> None:
    """Verify a document by id, content hash or scanned QR payload."""
    given = [value for value in (document_id, file_hash, qr_data) if value is not None]
    if len(given) != 1:
        raise click.UsageError("Pass exactly one of --id, --hash or --qr.")

    try:
        with _service(settings) as service:
            if document_id is not None:
                result = service.verify_by_id(document_id, CLI_CONTEXT)
            elif file_hash is not None:
                result = service.verify_by_hash(file_hash, CLI_CONTEXT)
            else:
                result = service.verify_by_qr(qr_data or "", CLI_CONTEXT)
    except DocSealError as exc:
        _fail(exc)

    if json_output:
        click.echo(result.model_dump_json(indent=2))
    else:
        _echo_verification(result)
    if not result.verified:
        sys.exit(2)


@main.command("status")
@click.argument("document_id")
@click.pass_obj
def status_command(settings: Settings, document_id: str) -> None:
    """Show a document's current status without logging a verification."""
    try:
        with _service(settings) as service:
            report = service.check_status(document_id)
    except DocSealError as exc:
        _fail(exc)
    click.echo(f"Title     : {report.title}")
    click.echo(f"Status    : {report.status.value}")
    click.echo(f"Message   : {report.status_message}")
    click.echo(f"Signed    : {'yes' if report.is_signed else 'no'}")
    if report.expires_at is not None:
        click.echo(f"Expires At: {report.expires_at.isoformat()}")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@main.group("audit")
def audit_group() -> None:
    """Inspect the audit trail."""


@audit_group.command("export")
@click.option(
    "--output",
    type=click.File("w", encoding="utf-8"),
    default="-",
    show_default=True,
    help="CSV destination ('-' for stdout).",
)
@click.option("--user", "user_id", default=None, metavar="ID")
@click.option("--document", "document_id", default=None, metavar="ID")
@click.option("--action", default=None, help="e.g. DOCUMENT_SIGNED")
@click.pass_obj
def audit_export_command(
    settings: Settings,
    output: IO[str],
    user_id: str | None,
    document_id: str | None,
    action: str | None,
) -> None:
    """Export matching audit entries as CSV."""
    with _service(settings) as service:
        count = service.audit.export_csv(
            output, user_id=user_id, document_id=document_id, action=action
        )
    click.echo(f"Exported {count} audit entries", err=True)


if __name__ == "__main__":
    main()
