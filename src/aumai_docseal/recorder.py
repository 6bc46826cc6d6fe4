"""Append-only verification log, audit trail and owner notifications.

All writers in this module are best effort: a failed insert is logged and
dropped so that the primary operation's response never depends on it.
"""

from __future__ import annotations

import csv
import logging
from typing import IO, Any, Protocol

from sqlalchemy import func, select

from aumai_docseal.models import (
    AuditEntry,
    LookupMethod,
    Page,
    RequestContext,
    VerificationEntry,
    VerificationResult,
)
from aumai_docseal.storage import (
    AuditLogRecord,
    Database,
    NotificationRecord,
    VerificationRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

AUDIT_CSV_FIELDS = [
    "id",
    "created_at",
    "action",
    "user_id",
    "document_id",
    "ip_address",
    "user_agent",
    "details",
]


# ---------------------------------------------------------------------------
# VerificationRecorder
# ---------------------------------------------------------------------------


class VerificationRecorder:
    """Append one immutable row per verification attempt."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def record(
        self,
        *,
        lookup_method: LookupMethod,
        lookup_value: str | None,
        result: VerificationResult | None,
        context: RequestContext | None = None,
        fail_reason: str | None = None,
    ) -> None:
        """Persist the attempt.  Never raises.

        *result* is None when the request was rejected before the decision
        chain ran (malformed QR payload); *fail_reason* then explains why.
        """
        ctx = context or RequestContext()
        document_id = result.document.id if result and result.document else None
        if document_id is None and lookup_method == LookupMethod.id:
            document_id = lookup_value
        try:
            with self._db.session() as session:
                session.add(
                    VerificationRecord(
                        document_id=document_id,
                        lookup_method=lookup_method.value,
                        lookup_value=lookup_value,
                        status=result.status.value if result else None,
                        is_successful=bool(result and result.verified),
                        fail_reason=result.fail_reason if result else fail_reason,
                        verifier_ip=ctx.ip_address,
                        verifier_info=ctx.verifier_info(),
                    )
                )
        except Exception:
            logger.exception(
                "Error creating verification record for %s=%s",
                lookup_method.value,
                lookup_value,
            )

    def history(self, document_id: str) -> list[VerificationEntry]:
        """Return every verification attempt for *document_id*, newest first."""
        with self._db.session() as session:
            rows = session.scalars(
                select(VerificationRecord)
                .where(VerificationRecord.document_id == document_id)
                .order_by(VerificationRecord.created_at.desc())
            ).all()
            return [_verification_entry(row) for row in rows]

    def count(self, document_id: str | None = None) -> int:
        with self._db.session() as session:
            stmt = select(func.count()).select_from(VerificationRecord)
            if document_id is not None:
                stmt = stmt.where(VerificationRecord.document_id == document_id)
            return session.scalar(stmt) or 0


def _verification_entry(row: VerificationRecord) -> VerificationEntry:
    return VerificationEntry(
        id=row.id,
        document_id=row.document_id,
        lookup_method=row.lookup_method,
        lookup_value=row.lookup_value,
        status=row.status,
        is_successful=row.is_successful,
        fail_reason=row.fail_reason,
        verifier_ip=row.verifier_ip,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# AuditTrail
# ---------------------------------------------------------------------------


class AuditTrail:
    """Structured audit log of state-changing operations."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def record(
        self,
        action: str,
        *,
        user_id: str | None = None,
        document_id: str | None = None,
        details: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> None:
        """Append an audit entry.  Never raises."""
        ctx = context or RequestContext()
        try:
            with self._db.session() as session:
                session.add(
                    AuditLogRecord(
                        user_id=user_id,
                        document_id=document_id,
                        action=action,
                        details=details or {},
                        ip_address=ctx.ip_address,
                        user_agent=ctx.user_agent,
                    )
                )
        except Exception:
            logger.exception("Error creating audit log: %s", action)
            return
        logger.info(
            "Audit log created: %s (user=%s document=%s)", action, user_id, document_id
        )

    def search(
        self,
        *,
        user_id: str | None = None,
        document_id: str | None = None,
        action: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[AuditEntry]:
        """Return one page of audit entries matching the filters, newest first."""
        page = max(page, 1)
        limit = max(limit, 1)
        conditions = _audit_conditions(user_id, document_id, action)

        with self._db.session() as session:
            total = session.scalar(
                select(func.count()).select_from(AuditLogRecord).where(*conditions)
            ) or 0
            rows = session.scalars(
                select(AuditLogRecord)
                .where(*conditions)
                .order_by(AuditLogRecord.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = [_audit_entry(row) for row in rows]
        return Page[AuditEntry](items=items, total=total, page=page, limit=limit)

    def export_csv(
        self,
        out: IO[str],
        *,
        user_id: str | None = None,
        document_id: str | None = None,
        action: str | None = None,
    ) -> int:
        """Write matching audit entries to *out* as CSV; return the row count."""
        conditions = _audit_conditions(user_id, document_id, action)

        writer = csv.DictWriter(out, fieldnames=AUDIT_CSV_FIELDS)
        writer.writeheader()
        count = 0
        with self._db.session() as session:
            rows = session.scalars(
                select(AuditLogRecord)
                .where(*conditions)
                .order_by(AuditLogRecord.created_at.asc())
            )
            for row in rows:
                entry = _audit_entry(row)
                writer.writerow(
                    {
                        "id": entry.id,
                        "created_at": entry.created_at.isoformat(),
                        "action": entry.action,
                        "user_id": entry.user_id or "",
                        "document_id": entry.document_id or "",
                        "ip_address": entry.ip_address or "",
                        "user_agent": entry.user_agent or "",
                        "details": _flatten(entry.details),
                    }
                )
                count += 1
        return count


def _audit_conditions(
    user_id: str | None, document_id: str | None, action: str | None
) -> list[Any]:
    conditions: list[Any] = []
    if user_id is not None:
        conditions.append(AuditLogRecord.user_id == user_id)
    if document_id is not None:
        conditions.append(AuditLogRecord.document_id == document_id)
    if action is not None:
        conditions.append(AuditLogRecord.action == action)
    return conditions


def _flatten(details: dict[str, Any]) -> str:
    return "; ".join(f"{key}={value}" for key, value in sorted(details.items()))


def _audit_entry(row: AuditLogRecord) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        action=row.action,
        user_id=row.user_id,
        document_id=row.document_id,
        details=row.details or {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notifier(Protocol):
    """Informs a document owner about changes to their document."""

    def notify(self, user_id: str, title: str, message: str, type: str) -> None: ...


class DatabaseNotifier:
    """Store notifications in the ``notifications`` table for later delivery."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def notify(self, user_id: str, title: str, message: str, type: str) -> None:
        try:
            with self._db.session() as session:
                session.add(
                    NotificationRecord(
                        user_id=user_id, title=title, message=message, type=type
                    )
                )
        except Exception:
            logger.exception("Error sending notification %s to %s", type, user_id)
            return
        logger.info("Notification sent: %s (user=%s type=%s)", title, user_id, type)

    def unread(self, user_id: str) -> list[NotificationRecord]:
        with self._db.session() as session:
            return list(
                session.scalars(
                    select(NotificationRecord)
                    .where(
                        NotificationRecord.user_id == user_id,
                        NotificationRecord.is_read.is_(False),
                    )
                    .order_by(NotificationRecord.created_at.desc())
                )
            )

    def mark_read(self, notification_id: str) -> bool:
        with self._db.session() as session:
            row = session.get(NotificationRecord, notification_id)
            if row is None:
                return False
            row.is_read = True
            row.read_at = utcnow()
            return True


__all__ = [
    "AUDIT_CSV_FIELDS",
    "AuditTrail",
    "DatabaseNotifier",
    "Notifier",
    "VerificationRecorder",
]
