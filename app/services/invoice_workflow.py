"""
Invoice Workflow Engine

Validates a requested action against the invoice's current state, the
actor's role and the transition table, then applies it:

  - Role gate (UnauthorizedError) → fresh status read and expected-status
    check → role window (InvalidTransitionError) → PM assignment
    (ForbiddenError) → PM-first precondition for Finance-stage decisions →
    table lookup (InvalidTransitionError)
  - Status and both approval sub-objects set together via
    ``Invoice.apply_transition``
  - Finance User resolved on entry into PENDING_FINANCE_REVIEW
  - Exactly one audit entry appended, then one commit
  - Notification instructions dispatched after the commit

A rejected attempt leaves the invoice and its trail untouched; it is logged
to the generic audit log as ``invoice.transition_denied``.

Usage:
    from app.services.invoice_workflow import apply_invoice_action

    result = apply_invoice_action(
        invoice_id="inv-1",
        action="APPROVE",
        actor_id=7,
        notes="Rates match the contract",
    )
    result.new_status   # InvoiceStatus.PENDING_FINANCE_REVIEW
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    UnresolvedRoutingError,
    ValidationError,
    WorkflowError,
)
from app.core.roles import Role, normalize_role
from app.models import db
from app.models.audit import InvoiceAuditEntry, write_audit
from app.models.auth import User
from app.models.invoice import (
    Approval,
    ApprovalStatus,
    Invoice,
    InvoiceStatus,
    WorkflowAction,
)
from app.services import audit_recorder
from app.services.hierarchy_resolver import Resolution, resolve_finance_user_for_pm
from app.services.notification import NotificationInstruction, NotificationService
from app.services.transition_table import DEFAULT_TRANSITIONS, TransitionTable

logger = logging.getLogger(__name__)

S = InvoiceStatus
A = WorkflowAction

PM_STAGE = frozenset({S.SUBMITTED, S.PENDING_PM_APPROVAL, S.MORE_INFO_NEEDED})

_DECISION = {
    A.APPROVE: ApprovalStatus.APPROVED,
    A.REJECT: ApprovalStatus.REJECTED,
    A.REQUEST_INFO: ApprovalStatus.INFO_REQUESTED,
}

_STAGE_LABEL = {
    Role.ADMIN: "Admin",
    Role.FINANCE_USER: "Finance",
    Role.PROJECT_MANAGER: "PM",
    Role.VENDOR: "Vendor",
}


def parse_action(value) -> WorkflowAction:
    """Map a request string to a ``WorkflowAction``."""
    if isinstance(value, WorkflowAction):
        return value
    key = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return WorkflowAction(key)
    except ValueError:
        raise ValidationError(
            f"Unknown action '{value}'",
            details={"action": f"must be one of: {', '.join(a.value for a in WorkflowAction)}"},
        )


def audit_message(action: WorkflowAction, role: Role, invoice: Invoice,
                  old: InvoiceStatus, new: InvoiceStatus, notes: str | None = None) -> str:
    action_text = action.value.lower().replace("_", " ")
    label = invoice.invoice_number or invoice.id
    msg = f"{_STAGE_LABEL[role]} {action_text} invoice #{label}. Status changed from {old.value} to {new.value}"
    return f"{msg}. Notes: {notes}" if notes else msg


# ═════════════════════════════════════════════════════════════════════════════
# Result type
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class TransitionResult:
    """Outcome of a successful transition."""
    invoice_id: str
    previous_status: InvoiceStatus
    new_status: InvoiceStatus
    audit_entry: InvoiceAuditEntry
    notifications: list[NotificationInstruction] = field(default_factory=list)
    warnings: list[UnresolvedRoutingError] = field(default_factory=list)
    routing: Resolution | None = None

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "audit_entry": self.audit_entry.to_dict(),
            "notifications": [n.to_dict() for n in self.notifications],
            "warnings": [w.to_dict() for w in self.warnings],
            "routing": self.routing.to_dict() if self.routing else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowEngine:
    """Applies workflow actions to invoices.

    Args:
        table: Transition table to consult.
        resolver: ``(pm_id, submitter_id) -> Resolution``.
        notifier: Sink with a ``dispatch(instructions)`` method.
    """

    def __init__(self, table: TransitionTable = DEFAULT_TRANSITIONS,
                 resolver=resolve_finance_user_for_pm, notifier=NotificationService):
        self.table = table
        self.resolver = resolver
        self.notifier = notifier

    # ── Public API ───────────────────────────────────────────────────────

    def apply(
        self,
        invoice_id: str,
        action,
        actor_id: int,
        actor_role=None,
        notes: str | None = None,
        *,
        expected_status=None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TransitionResult:
        """Apply *action* on behalf of *actor_id*.

        Raises:
            ValidationError: unknown action, role or expected status.
            NotFoundError: invoice or actor unknown.
            UnauthorizedError / ForbiddenError: actor may not do this.
            InvalidTransitionError: current state forbids the move.
        """
        action = parse_action(action)
        invoice = db.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(resource="Invoice", resource_id=invoice_id)
        actor = db.session.get(User, actor_id) if actor_id is not None else None
        if actor is None:
            raise NotFoundError(resource="User", resource_id=actor_id)
        if expected_status is not None and not isinstance(expected_status, InvoiceStatus):
            try:
                expected_status = InvoiceStatus(str(expected_status).strip().upper())
            except ValueError:
                raise ValidationError(f"Unknown status '{expected_status}'",
                                      details={"expected_status": "not a workflow status"})

        try:
            result = self._execute(
                invoice, action, actor, actor_role, notes,
                expected_status=expected_status, ip_address=ip_address, user_agent=user_agent,
            )
        except WorkflowError as exc:
            db.session.rollback()
            logger.warning(
                "Denied %s on invoice %s by user %s: %s",
                action.value, invoice_id, actor.id, exc,
                extra={"invoice_id": invoice_id, "action": action.value,
                       "actor_id": actor.id, "code": exc.code},
            )
            audit_recorder.record_denied(
                invoice_id=invoice_id,
                action=action.value,
                actor_id=actor.id,
                actor_name=actor.display_name,
                reason=str(exc),
                error_code=exc.code,
                current_status=exc.current_status,
                role=exc.role,
            )
            raise

        self._dispatch(result)
        return result

    def available_actions(self, invoice: Invoice, actor: User) -> list[WorkflowAction]:
        """Actions *actor* could successfully invoke on *invoice* right now."""
        if not actor.is_active:
            return []
        role = actor.role
        status = invoice.status
        if role == Role.PROJECT_MANAGER and not self._pm_may_act(invoice, actor):
            return []
        if role == Role.VENDOR and not self._is_own_invoice(invoice, actor):
            return []
        if (status in PM_STAGE and invoice.assigned_pm_id is None
                and role not in (Role.VENDOR, Role.PROJECT_MANAGER)):
            return []
        if (role in (Role.FINANCE_USER, Role.ADMIN) and status == S.PENDING_FINANCE_REVIEW
                and invoice.pm_approval.status != ApprovalStatus.APPROVED):
            return []
        return self.table.available_actions(role, status, invoice.finance_approval.status)

    # ── Validation + application ─────────────────────────────────────────

    @staticmethod
    def _pm_may_act(invoice: Invoice, actor: User) -> bool:
        return invoice.assigned_pm_id == actor.id or actor.manages_project(invoice.project)

    @staticmethod
    def _is_own_invoice(invoice: Invoice, actor: User) -> bool:
        return invoice.submitted_by_id == actor.id

    def _execute(self, invoice, action, actor, claimed_role, notes, *,
                 expected_status, ip_address, user_agent) -> TransitionResult:
        role = actor.role
        if claimed_role is not None and normalize_role(claimed_role) != role:
            raise UnauthorizedError(
                f"Claimed role '{claimed_role}' does not match user {actor.id}",
                action=action.value, role=role.value,
            )
        if not actor.is_active:
            raise UnauthorizedError(f"User {actor.id} is inactive", action=action.value, role=role.value)

        # 1. Role may use this action at all
        if not self.table.may_invoke(role, action):
            raise UnauthorizedError(
                f"{role.value} may not {action.value} invoices",
                action=action.value, role=role.value,
            )

        # 2. Fresh read of the status
        db.session.refresh(invoice)
        current = invoice.status
        ctx = {"action": action.value, "current_status": current.value, "role": role.value}
        if expected_status is not None and expected_status != current:
            raise InvalidTransitionError(
                f"Invoice moved from {expected_status.value} to {current.value} before {action.value}",
                **ctx,
            )

        # 3. Role window
        if not self.table.may_act_in(role, current):
            raise InvalidTransitionError(
                f"{role.value} cannot {action.value} an invoice in {current.value}", **ctx,
            )

        # 4. PM must be assigned to the invoice or its project
        if role == Role.PROJECT_MANAGER and not self._pm_may_act(invoice, actor):
            raise ForbiddenError(
                f"User {actor.id} is not the PM for invoice {invoice.id}", **ctx,
            )
        if role == Role.VENDOR and not self._is_own_invoice(invoice, actor):
            raise ForbiddenError(
                f"User {actor.id} did not submit invoice {invoice.id}", **ctx,
            )

        # 5. Finance never acts before the PM
        if current == S.PENDING_FINANCE_REVIEW and invoice.pm_approval.status != ApprovalStatus.APPROVED:
            raise InvalidTransitionError(
                f"PM approval is {invoice.pm_approval.status.value}; Finance cannot act yet", **ctx,
            )

        # 6. Table
        target = self.table.target(role, current, action, invoice.finance_approval.status)
        if target is None:
            raise InvalidTransitionError(f"Cannot {action.value} from {current.value}", **ctx)

        if current in PM_STAGE and role != Role.VENDOR and invoice.assigned_pm_id is None:
            if role == Role.PROJECT_MANAGER:
                invoice.assigned_pm_id = actor.id
            else:
                raise InvalidTransitionError(
                    f"Invoice {invoice.id} has no assigned PM", **ctx,
                )

        try:
            return self._write(invoice, action, actor, role, current, target, notes,
                               ip_address=ip_address, user_agent=user_agent)
        except StaleDataError:
            db.session.rollback()
            raise InvalidTransitionError(
                f"Invoice {invoice.id} was changed concurrently; reload and retry", **ctx,
            )
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Transition %s on invoice %s rolled back: write failed after status change",
                action.value, invoice.id,
                extra={"invoice_id": invoice.id, "action": action.value, "actor_id": actor.id},
            )
            raise

    def _write(self, invoice, action, actor, role, current, target, notes, *,
               ip_address, user_agent) -> TransitionResult:
        """Apply a validated move: approvals, routing, audit entry, commit."""
        # 7. Approvals
        now = datetime.now(UTC)
        pm_approval, finance_approval = self._next_approvals(
            invoice, role, action, current, target, actor, notes, now,
        )
        invoice.apply_transition(target, pm_approval=pm_approval, finance_approval=finance_approval)

        # 8. Routing
        warnings: list[UnresolvedRoutingError] = []
        routing = None
        if target == S.PENDING_FINANCE_REVIEW and invoice.assigned_finance_user_id is None:
            routing = self.resolver(invoice.assigned_pm_id, invoice.submitted_by_id)
            if routing.resolved:
                invoice.assigned_finance_user_id = routing.finance_user_id
                invoice.finance_routing_unresolved = False
            else:
                invoice.finance_routing_unresolved = True
                warnings.append(UnresolvedRoutingError(invoice.id, invoice.assigned_pm_id))

        # 9. Audit
        details = {
            "message": audit_message(action, role, invoice, current, target, notes),
            "pm_approval": pm_approval.status.value,
            "finance_approval": finance_approval.status.value,
        }
        if routing is not None:
            details["routing"] = routing.to_dict()
        if warnings:
            details["warnings"] = [w.to_dict() for w in warnings]
        entry = audit_recorder.append(invoice.id, InvoiceAuditEntry.for_transition(
            invoice_id=invoice.id,
            action=action,
            previous_status=current,
            new_status=target,
            actor=actor.display_name,
            actor_id=actor.id,
            actor_role=role,
            notes=notes,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        ))

        if warnings:
            write_audit(
                entity_type="invoice",
                entity_id=invoice.id,
                action="invoice.routing_unresolved",
                actor=actor.display_name,
                actor_user_id=actor.id,
                diff={"pm_id": invoice.assigned_pm_id, "submitter_id": invoice.submitted_by_id},
            )

        # 10. Commit
        db.session.commit()

        logger.info(
            "Invoice %s: %s → %s (%s by user %s)",
            invoice.id, current.value, target.value, action.value, actor.id,
            extra={"invoice_id": invoice.id, "action": action.value, "actor_id": actor.id,
                   "from_status": current.value, "to_status": target.value,
                   "strategy": routing.strategy.value if routing and routing.strategy else None},
        )
        for w in warnings:
            logger.warning(str(w), extra={"invoice_id": invoice.id, "pm_id": w.pm_id})

        return TransitionResult(
            invoice_id=invoice.id,
            previous_status=current,
            new_status=target,
            audit_entry=entry,
            notifications=self._instructions(invoice, action, role, actor, current, target, notes, warnings),
            warnings=warnings,
            routing=routing,
        )

    @staticmethod
    def _next_approvals(invoice, role, action, current, target, actor, notes, now):
        """Compute (pm_approval, finance_approval) for the move."""
        pm = invoice.pm_approval
        fin = invoice.finance_approval

        def stamp(status: ApprovalStatus) -> Approval:
            return Approval(status=status, approved_by=actor.id, approved_by_role=role,
                            approved_at=now, notes=notes)

        if action == A.SEND_BACK:
            return Approval(), Approval(notes=notes)
        if action in (A.RESUBMIT, A.RESTORE):
            return Approval(), Approval()

        if current == S.PENDING_FINANCE_REVIEW:
            return pm, stamp(_DECISION[action])

        if current == S.MORE_INFO_NEEDED and role == Role.ADMIN:
            finance_asked = fin.status == ApprovalStatus.INFO_REQUESTED
            if action == A.REQUEST_INFO:
                return (pm, stamp(ApprovalStatus.INFO_REQUESTED)) if finance_asked \
                    else (stamp(ApprovalStatus.INFO_REQUESTED), Approval())
            if action == A.APPROVE and target == S.PENDING_FINANCE_REVIEW:
                return pm, Approval(notes=notes)

        if action == A.APPROVE and target == S.PENDING_PM_APPROVAL:
            # Admin accept; the PM decision is still outstanding
            return Approval(notes=notes), Approval()

        return stamp(_DECISION[action]), Approval()

    @staticmethod
    def _instructions(invoice, action, role, actor, current, target, notes, warnings):
        """Notification instructions for a committed transition."""
        label = invoice.invoice_number or invoice.id
        suffix = f" Notes: {notes}" if notes else ""
        out: list[NotificationInstruction] = []

        def add(recipient_id, subject, body, category, severity="info"):
            if recipient_id is None or recipient_id == actor.id:
                return
            out.append(NotificationInstruction(
                recipient_id=recipient_id, subject=subject, body=body + suffix,
                category=category, invoice_id=invoice.id, severity=severity,
            ))

        vendor_id = invoice.submitted_by_id
        if action == A.REJECT:
            add(vendor_id, f"Invoice {label} rejected",
                f"Your invoice {label} was rejected by {_STAGE_LABEL[role]}.", "rejection", "error")
        elif action == A.REQUEST_INFO:
            add(vendor_id, f"More information needed for invoice {label}",
                f"{_STAGE_LABEL[role]} requested more information on invoice {label}.", "info_request", "warning")
        elif target == S.FINANCE_APPROVED:
            add(vendor_id, f"Invoice {label} approved",
                f"Your invoice {label} was approved by Finance.", "status_update", "success")
        elif target == S.PENDING_FINANCE_REVIEW:
            add(invoice.assigned_finance_user_id, f"Invoice {label} awaiting Finance review",
                f"Invoice {label} was approved by the PM and is ready for your review.", "status_update")
        elif target == S.PENDING_PM_APPROVAL:
            subjects = {
                A.SEND_BACK: f"Invoice {label} sent back by Finance",
                A.RESUBMIT: f"Invoice {label} resubmitted",
                A.RESTORE: f"Invoice {label} restored",
                A.APPROVE: f"Invoice {label} awaiting your approval",
            }
            add(invoice.assigned_pm_id, subjects[action],
                f"Invoice {label} moved from {current.value} to {target.value}.", "status_update")

        if warnings:
            for admin_id in NotificationService.admin_recipients():
                add(admin_id, f"Invoice {label} could not be routed to Finance",
                    str(warnings[0]) + ". Fix the PM's manager link, then run the Finance User backfill.",
                    "routing", "warning")
        return out

    def _dispatch(self, result: TransitionResult) -> None:
        if not result.notifications:
            return
        try:
            self.notifier.dispatch(result.notifications)
        except Exception:
            logger.exception("Notification sink failed for invoice %s", result.invoice_id)


# ── Module-level convenience ─────────────────────────────────────────────────

_engine = WorkflowEngine()


def apply_invoice_action(
    invoice_id: str,
    action,
    actor_id: int,
    actor_role=None,
    notes: str | None = None,
    *,
    expected_status=None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TransitionResult:
    """Apply a workflow action with the default engine."""
    return _engine.apply(
        invoice_id, action, actor_id, actor_role, notes,
        expected_status=expected_status, ip_address=ip_address, user_agent=user_agent,
    )


def get_available_actions(invoice: Invoice, actor: User) -> list[str]:
    """Action names the actor may invoke on the invoice now."""
    return [a.value for a in _engine.available_actions(invoice, actor)]
