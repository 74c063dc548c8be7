"""
Hierarchy Store — users and manager claims.

Models:
    - User: one person in the four-level hierarchy
      (Admin → FinanceUser → ProjectManager → Vendor).  ``managed_by_id``
      points at the direct superior.
    - ManagerReport: the set of direct reports a manager *claims*.  This is
      the reverse index read by strategy (2) of the Finance-User resolver and
      is kept in step with ``managed_by_id`` by hierarchy_service.

Users are never deleted while invoices reference them; they are
soft-deactivated via ``is_active``.
"""

from datetime import UTC, datetime

from sqlalchemy.orm import validates

from app.core.roles import Role, normalize_role
from app.models import db


def _utcnow():
    return datetime.now(UTC)


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(
        db.Enum(Role, native_enum=False, length=30, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    managed_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Direct superior; NULL = unassigned",
    )
    assigned_projects = db.Column(db.JSON, default=list, comment="Project codes; used for ProjectManager only")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    manager = db.relationship("User", remote_side=[id], foreign_keys=[managed_by_id])

    @validates("role")
    def _normalize_role(self, key, value):
        return normalize_role(value)

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    def manages_project(self, project: str | None) -> bool:
        return bool(project) and project in (self.assigned_projects or [])

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role.value if self.role else None,
            "managed_by": self.managed_by_id,
            "assigned_projects": list(self.assigned_projects or []),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role.value if self.role else '?'})>"


# ═══════════════════════════════════════════════════════════════
# 2. MANAGER_REPORTS (reverse index: manager -> claimed reports)
# ═══════════════════════════════════════════════════════════════
class ManagerReport(db.Model):
    __tablename__ = "manager_reports"

    id = db.Column(db.Integer, primary_key=True)
    manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    report_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("manager_id", "report_id", name="uq_manager_report"),
    )

    def to_dict(self):
        return {"manager_id": self.manager_id, "report_id": self.report_id}

    def __repr__(self):
        return f"<ManagerReport {self.manager_id} -> {self.report_id}>"
