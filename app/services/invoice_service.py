"""
Invoice Service — intake, role queues and Finance-User backfill.

Status changes are not made here; they belong to ``invoice_workflow``.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from app.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from app.core.roles import Role
from app.models import db
from app.models.audit import SUBMITTED_ACTION, InvoiceAuditEntry, write_audit
from app.models.auth import User
from app.models.invoice import INITIAL_STATUSES, Invoice, InvoiceStatus
from app.services import audit_recorder
from app.services.hierarchy_resolver import HierarchySnapshot, resolve_finance_user
from app.services.notification import NotificationInstruction, NotificationService

logger = logging.getLogger(__name__)


def _parse_amount(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number", details={"amount": str(value)})
    if amount < 0:
        raise ValidationError("amount cannot be negative", details={"amount": str(value)})
    return amount


def get_invoice(invoice_id: str) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError(resource="Invoice", resource_id=invoice_id)
    return invoice


def create_invoice(
    data: dict,
    submitter: User,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Invoice:
    """Record a new invoice in SUBMITTED (or PENDING_PM_APPROVAL).

    A Vendor submission without an explicit PM is routed to the Vendor's
    own manager.  Appends the initial audit entry.
    """
    if submitter.role not in (Role.VENDOR, Role.ADMIN, Role.FINANCE_USER):
        raise UnauthorizedError(f"{submitter.role.value} may not submit invoices", role=submitter.role.value)
    if not submitter.is_active:
        raise UnauthorizedError(f"User {submitter.id} is inactive", role=submitter.role.value)

    vendor_name = (data.get("vendor_name") or "").strip()
    if not vendor_name and submitter.role == Role.VENDOR:
        vendor_name = submitter.display_name
    if not vendor_name:
        raise ValidationError("vendor_name is required", details={"vendor_name": "required"})

    status = data.get("status") or InvoiceStatus.SUBMITTED.value
    try:
        status = InvoiceStatus(str(status).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown status '{status}'", details={"status": "not a workflow status"})
    if status not in INITIAL_STATUSES:
        raise ValidationError(
            "New invoices start in SUBMITTED or PENDING_PM_APPROVAL",
            details={"status": status.value},
        )

    pm_id = data.get("assigned_pm")
    if pm_id in (None, "") and submitter.role == Role.VENDOR:
        pm_id = submitter.managed_by_id
    if pm_id not in (None, ""):
        pm = db.session.get(User, pm_id)
        if pm is None or pm.role != Role.PROJECT_MANAGER:
            raise ValidationError("assigned_pm must reference a ProjectManager",
                                  details={"assigned_pm": pm_id})
        pm_id = pm.id
    else:
        pm_id = None

    try:
        invoice = Invoice.new(
            status=status,
            invoice_number=(data.get("invoice_number") or None),
            vendor_name=vendor_name,
            project=(data.get("project") or None),
            amount=_parse_amount(data.get("amount")),
            currency=(data.get("currency") or "INR").upper()[:3],
            submitted_by_id=submitter.id,
            assigned_pm_id=pm_id,
        )
        db.session.add(invoice)
        db.session.flush()
        audit_recorder.append(invoice.id, InvoiceAuditEntry.for_transition(
            invoice_id=invoice.id,
            action=SUBMITTED_ACTION,
            previous_status=None,
            new_status=status,
            actor=submitter.display_name,
            actor_id=submitter.id,
            actor_role=submitter.role,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"message": f"Invoice submitted by {submitter.display_name}"
                                + (" and routed to PM" if pm_id else "")},
        ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Invoice %s submitted by user %s", invoice.id, submitter.id,
                extra={"invoice_id": invoice.id, "actor_id": submitter.id, "assigned_pm": pm_id})

    if pm_id and pm_id != submitter.id:
        label = invoice.invoice_number or invoice.id
        NotificationService.dispatch([NotificationInstruction(
            recipient_id=pm_id,
            subject=f"New invoice {label} awaiting review",
            body=f"{vendor_name} submitted invoice {label}.",
            category="status_update",
            invoice_id=invoice.id,
        )])
    return invoice


def list_for_actor(actor: User, status: str | None = None, limit: int = 100, offset: int = 0):
    """The actor's queue: Admins see everything, others see what is theirs."""
    q = Invoice.query
    if actor.role == Role.FINANCE_USER:
        q = q.filter(Invoice.assigned_finance_user_id == actor.id)
    elif actor.role == Role.PROJECT_MANAGER:
        projects = list(actor.assigned_projects or [])
        cond = Invoice.assigned_pm_id == actor.id
        if projects:
            cond = cond | Invoice.project.in_(projects)
        q = q.filter(cond)
    elif actor.role == Role.VENDOR:
        q = q.filter(Invoice.submitted_by_id == actor.id)

    if status:
        try:
            q = q.filter(Invoice.status == InvoiceStatus(str(status).strip().upper()))
        except ValueError:
            raise ValidationError(f"Unknown status '{status}'", details={"status": "not a workflow status"})

    total = q.count()
    items = q.order_by(Invoice.created_at.desc()).offset(offset).limit(limit).all()
    return items, total


def backfill_finance_users(*, dry_run: bool = False, actor: User | None = None) -> dict:
    """Resolve a Finance User for every invoice with a PM but none assigned.

    Returns:
        {"patched": n, "skipped": n, "items": [{id, finance_user_id, strategy} | {id, reason}]}
    """
    snapshot = HierarchySnapshot.load()
    candidates = (
        Invoice.query
        .filter(Invoice.assigned_pm_id.isnot(None))
        .filter(Invoice.assigned_finance_user_id.is_(None))
        .order_by(Invoice.created_at)
        .all()
    )

    patched, skipped = [], []
    try:
        for invoice in candidates:
            resolution = resolve_finance_user(snapshot, invoice.assigned_pm_id, invoice.submitted_by_id)
            if not resolution.resolved:
                skipped.append({"id": invoice.id, "assigned_pm": invoice.assigned_pm_id,
                                "reason": "no finance user resolvable"})
                continue
            patched.append({"id": invoice.id, **resolution.to_dict()})
            if dry_run:
                continue
            invoice.assigned_finance_user_id = resolution.finance_user_id
            invoice.finance_routing_unresolved = False
            write_audit(
                entity_type="invoice",
                entity_id=invoice.id,
                action="invoice.finance_user_backfilled",
                actor=actor.display_name if actor else "system",
                actor_user_id=actor.id if actor else None,
                diff={"assigned_finance_user": {"old": None, "new": resolution.finance_user_id},
                      "strategy": resolution.strategy.value},
            )
        if not dry_run:
            db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Finance user backfill: %d patched, %d skipped%s",
                len(patched), len(skipped), " (dry run)" if dry_run else "")
    return {
        "dry_run": dry_run,
        "total": len(candidates),
        "patched": len(patched),
        "skipped": len(skipped),
        "items": patched + skipped,
    }
