"""
Audit Recorder — append-only invoice trail.

``append`` adds one entry to the current unit of work (flush, no commit);
the caller commits it together with the invoice change.  ``history``
returns the trail oldest first.

Denied workflow attempts never touch the invoice trail.  They go to the
generic ``AuditLog`` via ``record_denied`` after the caller rolled back.
"""

import logging

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.audit import AuditLog, InvoiceAuditEntry, write_audit
from app.models.invoice import Invoice

logger = logging.getLogger(__name__)


def append(invoice_id: str, entry: InvoiceAuditEntry) -> InvoiceAuditEntry:
    """Add *entry* to the invoice's trail inside the caller's transaction."""
    if entry.id is not None:
        raise ValueError(f"Audit entry {entry.id} is already recorded")
    if entry.invoice_id not in (None, invoice_id):
        raise ValueError(f"Audit entry belongs to invoice {entry.invoice_id}, not {invoice_id}")
    entry.invoice_id = invoice_id
    db.session.add(entry)
    db.session.flush()
    return entry


def history(invoice_id: str) -> list[InvoiceAuditEntry]:
    """Every recorded entry for the invoice, oldest first."""
    if db.session.get(Invoice, invoice_id) is None:
        raise NotFoundError(resource="Invoice", resource_id=invoice_id)
    return (
        InvoiceAuditEntry.query
        .filter_by(invoice_id=invoice_id)
        .order_by(InvoiceAuditEntry.id.asc())
        .all()
    )


def record_denied(
    *,
    invoice_id: str,
    action: str,
    actor_id: int | None,
    actor_name: str,
    reason: str,
    error_code: str,
    current_status: str | None = None,
    role: str | None = None,
) -> AuditLog | None:
    """Log a rejected attempt in its own transaction.

    Failure to write is logged, never raised: the caller is already
    reporting the original rejection.
    """
    try:
        log = write_audit(
            entity_type="invoice",
            entity_id=invoice_id,
            action="invoice.transition_denied",
            actor=actor_name,
            actor_user_id=actor_id,
            diff={
                "action": action,
                "role": role,
                "current_status": current_status,
                "code": error_code,
                "reason": reason,
            },
        )
        db.session.commit()
        return log
    except Exception:
        db.session.rollback()
        logger.exception("Failed to record denied transition on invoice %s", invoice_id)
        return None
