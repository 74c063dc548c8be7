"""
Audit domain model.

Models:
    - InvoiceAuditEntry: the per-invoice decision trail.  One row per
      successful workflow transition (plus the initial submission).
    - AuditLog: platform-wide log for everything else: hierarchy edits,
      user administration, denied workflow attempts, backfills.

Both tables are append-only: ORM-level UPDATE and DELETE of an existing row
raise ``AppendOnlyViolation``.
"""

import json
from datetime import UTC, datetime

from sqlalchemy import event

from app.core.roles import Role
from app.models import db
from app.models.invoice import InvoiceStatus, WorkflowAction

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"invoice", "user", "hierarchy"}

AUDIT_ACTIONS = {
    # Invoice workflow
    "invoice.transition_denied",
    "invoice.routing_unresolved",
    "invoice.finance_user_backfilled",
    # Hierarchy
    "hierarchy.assign_manager",
    "hierarchy.replace_reports",
    # Users
    "user.created",
    "user.deactivated",
}

# Trail entry for invoice creation; not a workflow action.
SUBMITTED_ACTION = "SUBMITTED"


class AppendOnlyViolation(RuntimeError):
    """An audit row was about to be updated or deleted."""


def _utcnow():
    return datetime.now(UTC)


# ═════════════════════════════════════════════════════════════════════════════
# InvoiceAuditEntry
# ═════════════════════════════════════════════════════════════════════════════

class InvoiceAuditEntry(db.Model):
    """
    Immutable record of one invoice decision.

    ``action`` is a WorkflowAction value, or ``SUBMITTED`` for the
    creation entry (where ``previous_status`` is NULL).
    """

    __tablename__ = "invoice_audit_entries"
    __table_args__ = (
        db.Index("idx_invoice_audit_invoice", "invoice_id", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.String(36), db.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False,
    )
    action = db.Column(db.String(30), nullable=False)
    previous_status = db.Column(db.String(30), nullable=True)
    new_status = db.Column(db.String(30), nullable=False)
    actor = db.Column(db.String(200), nullable=False, default="system", comment="Display name at the time of the action")
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_role = db.Column(db.String(30), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(300), nullable=True)
    details = db.Column(db.JSON, default=dict, comment="Routing strategy, warnings, stage context")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    invoice = db.relationship("Invoice", back_populates="audit_trail")

    @classmethod
    def for_transition(
        cls,
        *,
        invoice_id: str,
        action: WorkflowAction | str,
        previous_status: InvoiceStatus | None,
        new_status: InvoiceStatus,
        actor: str,
        actor_id: int | None,
        actor_role: Role,
        notes: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
    ) -> "InvoiceAuditEntry":
        return cls(
            invoice_id=invoice_id,
            action=action.value if isinstance(action, WorkflowAction) else str(action),
            previous_status=previous_status.value if previous_status else None,
            new_status=new_status.value,
            actor=actor,
            actor_id=actor_id,
            actor_role=actor_role.value,
            notes=notes,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:300] or None,
            details=details or {},
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "actor": self.actor,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "notes": self.notes,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "details": self.details or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<InvoiceAuditEntry {self.id}: {self.invoice_id} {self.previous_status}->{self.new_status}>"


# ═════════════════════════════════════════════════════════════════════════════
# AuditLog
# ═════════════════════════════════════════════════════════════════════════════

class AuditLog(db.Model):
    """
    Generic audit trail for non-transition events.

    ``diff_json`` carries old→new snapshots for hierarchy edits and the
    denial reason for rejected workflow attempts.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(db.String(30), nullable=False, comment="invoice | user | hierarchy")
    entity_id = db.Column(db.String(36), nullable=False, comment="PK of the referenced entity as string")

    action = db.Column(db.String(60), nullable=False, comment="invoice.transition_denied | hierarchy.assign_manager | …")
    actor = db.Column(db.String(150), nullable=False, default="system", comment="Display name or 'system'")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system entries",
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Append-only guards ───────────────────────────────────────────────────────

def _refuse_update(mapper, connection, target):
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only (update of id={target.id})")


def _refuse_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only (delete of id={target.id})")


for _model in (InvoiceAuditEntry, AuditLog):
    event.listen(_model, "before_update", _refuse_update)
    event.listen(_model, "before_delete", _refuse_delete)


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str | int,
    action: str,
    actor: str = "system",
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
