"""
Invoice domain model.

Models:
    - Invoice: one vendor invoice moving through the approval pipeline
      SUBMITTED → PENDING_PM_APPROVAL → PENDING_FINANCE_REVIEW → FINANCE_APPROVED
      with MORE_INFO_NEEDED / rejection side branches.

``status`` is a read-only hybrid property.  The only writer is
``Invoice.apply_transition`` which sets the status and both approval
sub-objects in one call and refuses combinations that appear nowhere in
``VALID_APPROVAL_STATES``.  The approval sub-objects are the *cause* of a
status, never parallel state.

``version`` is the optimistic-concurrency counter: SQLAlchemy adds
``WHERE version = :old`` to every UPDATE and raises ``StaleDataError`` when
another unit of work committed first.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy.ext.hybrid import hybrid_property

from app.core.roles import Role
from app.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(UTC)


# ── Enums ────────────────────────────────────────────────────────────────────

class InvoiceStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    PENDING_PM_APPROVAL = "PENDING_PM_APPROVAL"
    PENDING_FINANCE_REVIEW = "PENDING_FINANCE_REVIEW"
    MORE_INFO_NEEDED = "MORE_INFO_NEEDED"
    PM_REJECTED = "PM_REJECTED"
    FINANCE_REJECTED = "FINANCE_REJECTED"
    FINANCE_APPROVED = "FINANCE_APPROVED"


class WorkflowAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_INFO = "REQUEST_INFO"
    RESUBMIT = "RESUBMIT"
    SEND_BACK = "SEND_BACK"
    RESTORE = "RESTORE"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    INFO_REQUESTED = "INFO_REQUESTED"


TERMINAL_STATUSES = frozenset({
    InvoiceStatus.PM_REJECTED,
    InvoiceStatus.FINANCE_REJECTED,
    InvoiceStatus.FINANCE_APPROVED,
})

RESTORABLE_STATUSES = frozenset({
    InvoiceStatus.PM_REJECTED,
    InvoiceStatus.FINANCE_REJECTED,
})

INITIAL_STATUSES = frozenset({
    InvoiceStatus.SUBMITTED,
    InvoiceStatus.PENDING_PM_APPROVAL,
})

_P = ApprovalStatus.PENDING
_A = ApprovalStatus.APPROVED
_R = ApprovalStatus.REJECTED
_I = ApprovalStatus.INFO_REQUESTED

# status -> allowed (pm_approval.status, finance_approval.status) pairs
VALID_APPROVAL_STATES: dict[InvoiceStatus, frozenset[tuple[ApprovalStatus, ApprovalStatus]]] = {
    InvoiceStatus.SUBMITTED: frozenset({(_P, _P)}),
    InvoiceStatus.PENDING_PM_APPROVAL: frozenset({(_P, _P)}),
    InvoiceStatus.PENDING_FINANCE_REVIEW: frozenset({(_A, _P)}),
    InvoiceStatus.MORE_INFO_NEEDED: frozenset({(_I, _P), (_A, _I)}),
    InvoiceStatus.PM_REJECTED: frozenset({(_R, _P)}),
    InvoiceStatus.FINANCE_REJECTED: frozenset({(_A, _R)}),
    InvoiceStatus.FINANCE_APPROVED: frozenset({(_A, _A)}),
}


def is_consistent(status: InvoiceStatus, pm_status: ApprovalStatus, finance_status: ApprovalStatus) -> bool:
    """True when the approval pair is one the workflow can produce for *status*."""
    return (pm_status, finance_status) in VALID_APPROVAL_STATES[status]


# ── Approval sub-object ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Approval:
    """One approval stage (PM or Finance) as stored on the invoice."""
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: int | None = None
    approved_by_role: Role | None = None
    approved_at: datetime | None = None
    notes: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approved_by_role": self.approved_by_role.value if self.approved_by_role else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "notes": self.notes,
        }


def _approval_columns(stage: str):
    enum_type = db.Enum(ApprovalStatus, native_enum=False, length=20,
                        values_callable=lambda e: [m.value for m in e])
    role_type = db.Enum(Role, native_enum=False, length=30,
                        values_callable=lambda e: [m.value for m in e])
    return (
        db.Column(f"{stage}_approval_status", enum_type, nullable=False, default=ApprovalStatus.PENDING),
        db.Column(f"{stage}_approved_by", db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        db.Column(f"{stage}_approved_by_role", role_type, nullable=True),
        db.Column(f"{stage}_approved_at", db.DateTime(timezone=True), nullable=True),
        db.Column(f"{stage}_approval_notes", db.Text, nullable=True),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Invoice
# ═════════════════════════════════════════════════════════════════════════════

class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    invoice_number = db.Column(db.String(100), nullable=True)
    vendor_name = db.Column(db.String(200), nullable=False)
    project = db.Column(db.String(100), nullable=True, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=True)
    currency = db.Column(db.String(3), default="INR")

    submitted_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="Original submitter (normally a Vendor); feeds the submitter-chain fallback",
    )
    assigned_pm_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assigned_finance_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="Resolved from the hierarchy, never entered by a human",
    )
    finance_routing_unresolved = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Set when no Finance User could be resolved; needs manual hierarchy fix",
    )

    _status = db.Column(
        "status",
        db.Enum(InvoiceStatus, native_enum=False, length=30, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )

    (pm_approval_status, pm_approved_by, pm_approved_by_role,
     pm_approved_at, pm_approval_notes) = _approval_columns("pm")
    (finance_approval_status, finance_approved_by, finance_approved_by_role,
     finance_approved_at, finance_approval_notes) = _approval_columns("finance")

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    audit_trail = db.relationship(
        "InvoiceAuditEntry",
        back_populates="invoice",
        order_by="InvoiceAuditEntry.id",
        lazy="dynamic",
    )

    __mapper_args__ = {"version_id_col": version}

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def new(cls, *, status: InvoiceStatus = InvoiceStatus.SUBMITTED, **fields) -> "Invoice":
        """Build a new invoice in one of the two entry states."""
        status = InvoiceStatus(status)
        if status not in INITIAL_STATUSES:
            raise ValueError(f"Invoices start in SUBMITTED or PENDING_PM_APPROVAL, not {status.value}")
        invoice = cls(**fields)
        invoice._status = status
        invoice._store_approval("pm", Approval())
        invoice._store_approval("finance", Approval())
        return invoice

    # ── Status (read-only) ───────────────────────────────────────────────

    @hybrid_property
    def status(self) -> InvoiceStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    # ── Approval sub-objects ─────────────────────────────────────────────

    def _load_approval(self, stage: str) -> Approval:
        return Approval(
            status=getattr(self, f"{stage}_approval_status") or ApprovalStatus.PENDING,
            approved_by=getattr(self, f"{stage}_approved_by"),
            approved_by_role=getattr(self, f"{stage}_approved_by_role"),
            approved_at=getattr(self, f"{stage}_approved_at"),
            notes=getattr(self, f"{stage}_approval_notes"),
        )

    def _store_approval(self, stage: str, approval: Approval) -> None:
        setattr(self, f"{stage}_approval_status", approval.status)
        setattr(self, f"{stage}_approved_by", approval.approved_by)
        setattr(self, f"{stage}_approved_by_role", approval.approved_by_role)
        setattr(self, f"{stage}_approved_at", approval.approved_at)
        setattr(self, f"{stage}_approval_notes", approval.notes)

    @property
    def pm_approval(self) -> Approval:
        return self._load_approval("pm")

    @property
    def finance_approval(self) -> Approval:
        return self._load_approval("finance")

    def apply_transition(self, new_status: InvoiceStatus, *, pm_approval: Approval, finance_approval: Approval) -> None:
        """Set status and both approvals together.

        Raises:
            ValueError: if the combination is not one the workflow produces,
                or Finance would leave PENDING outside Finance review.
        """
        new_status = InvoiceStatus(new_status)
        if not is_consistent(new_status, pm_approval.status, finance_approval.status):
            raise ValueError(
                f"Inconsistent approval state for {new_status.value}: "
                f"pm={pm_approval.status.value}, finance={finance_approval.status.value}"
            )
        current_finance = self.finance_approval.status
        if (
            current_finance == ApprovalStatus.PENDING
            and finance_approval.status != ApprovalStatus.PENDING
            and self._status != InvoiceStatus.PENDING_FINANCE_REVIEW
        ):
            raise ValueError(
                f"Finance approval cannot leave PENDING while invoice is {self._status.value}"
            )
        self._status = new_status
        self._store_approval("pm", pm_approval)
        self._store_approval("finance", finance_approval)

    # ── Serialisation ────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "vendor_name": self.vendor_name,
            "project": self.project,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "status": self._status.value if self._status else None,
            "submitted_by": self.submitted_by_id,
            "assigned_pm": self.assigned_pm_id,
            "assigned_finance_user": self.assigned_finance_user_id,
            "finance_routing_unresolved": bool(self.finance_routing_unresolved),
            "pm_approval": self.pm_approval.to_dict(),
            "finance_approval": self.finance_approval.to_dict(),
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Invoice {self.id}: {self._status.value if self._status else '?'}>"
