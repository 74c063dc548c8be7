"""
Hierarchy Service — user provisioning and manager assignment.

Every change to ``User.managed_by_id`` goes through this module so the
parent-role table (FinanceUser⇐Admin, ProjectManager⇐FinanceUser,
Vendor⇐ProjectManager) holds after each successful call, and the
``ManagerReport`` claims never disagree with the pointers.

Mutations run as one transaction: they commit on success and roll back
entirely on any error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email

from app.core.exceptions import (
    ConflictError,
    InvalidAssignmentError,
    NotFoundError,
    ValidationError,
)
from app.core.roles import HIERARCHY_CHAIN, MANAGER_ROLE, Role, normalize_role
from app.models import db
from app.models.audit import write_audit
from app.models.auth import ManagerReport, User
from app.models.invoice import Invoice, InvoiceStatus
from app.services.hierarchy_resolver import HierarchySnapshot, resolve_finance_user

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# Assignment validation
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class AssignmentCheck:
    allowed: bool
    reason: str | None = None

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason}


def validate_assignment(child_role, proposed_manager_role) -> AssignmentCheck:
    """Check one (child, manager) role pairing against the parent-role table.

    ``proposed_manager_role=None`` means "unassign" and is always allowed.
    """
    child = normalize_role(child_role)
    if proposed_manager_role is None:
        return AssignmentCheck(True)
    manager = normalize_role(proposed_manager_role)

    expected = MANAGER_ROLE.get(child)
    if expected is None:
        return AssignmentCheck(False, f"{child.value} cannot have a manager")
    if manager != expected:
        return AssignmentCheck(
            False,
            f"{child.value} must be managed by {expected.value}, not {manager.value}",
        )
    return AssignmentCheck(True)


def _ensure_assignable(user: User, manager: User | None) -> None:
    if manager is None:
        return
    if manager.id == user.id:
        raise InvalidAssignmentError("A user cannot manage themselves",
                                     child_role=user.role.value, manager_role=manager.role.value)
    check = validate_assignment(user.role, manager.role)
    if not check.allowed:
        raise InvalidAssignmentError(check.reason, child_role=user.role.value, manager_role=manager.role.value)
    if not manager.is_active:
        raise InvalidAssignmentError(f"Manager id={manager.id} is inactive",
                                     child_role=user.role.value, manager_role=manager.role.value)


# ═══════════════════════════════════════════════════════════════
# Lookups
# ═══════════════════════════════════════════════════════════════
def get_user(user_id) -> User:
    user = db.session.get(User, user_id) if user_id is not None else None
    if not user:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _actor_name(actor: User | None) -> str:
    return actor.display_name if actor else "system"


# ═══════════════════════════════════════════════════════════════
# Claims (reverse index) maintenance
# ═══════════════════════════════════════════════════════════════
def _set_pointer(user: User, manager: User | None) -> None:
    """Point *user* at *manager* and move the claim with it. No commit."""
    ManagerReport.query.filter_by(report_id=user.id).delete(synchronize_session=False)
    user.managed_by_id = manager.id if manager else None
    if manager is not None:
        db.session.add(ManagerReport(manager_id=manager.id, report_id=user.id))


# ═══════════════════════════════════════════════════════════════
# Mutations
# ═══════════════════════════════════════════════════════════════
def _assign_manager(user: User, manager: User | None, actor: User | None) -> None:
    """Validated pointer + claim move with its audit row. No commit."""
    _ensure_assignable(user, manager)
    old_manager_id = user.managed_by_id
    _set_pointer(user, manager)
    write_audit(
        entity_type="hierarchy",
        entity_id=user.id,
        action="hierarchy.assign_manager",
        actor=_actor_name(actor),
        actor_user_id=actor.id if actor else None,
        diff={"managed_by": {"old": old_manager_id, "new": user.managed_by_id}},
    )


def _load_reports(manager: User, new_report_ids) -> list[User]:
    report_ids = list(dict.fromkeys(int(r) for r in (new_report_ids or [])))
    reports = [get_user(rid) for rid in report_ids]
    for report in reports:
        _ensure_assignable(report, manager)
    return reports


def _replace_reports(manager: User, reports: list[User], actor: User | None) -> dict:
    """Swap the manager's report set. Reports must already be validated. No commit."""
    report_ids = [r.id for r in reports]
    current = User.query.filter_by(managed_by_id=manager.id).all()
    claimed = {c.report_id for c in ManagerReport.query.filter_by(manager_id=manager.id).all()}
    dropped_ids = sorted(({u.id for u in current} | claimed) - set(report_ids))
    for uid in dropped_ids:
        dropped = db.session.get(User, uid)
        if dropped is not None and dropped.managed_by_id == manager.id:
            _set_pointer(dropped, None)
        else:
            ManagerReport.query.filter_by(manager_id=manager.id, report_id=uid).delete(
                synchronize_session=False
            )

    for report in reports:
        _set_pointer(report, manager)

    write_audit(
        entity_type="hierarchy",
        entity_id=manager.id,
        action="hierarchy.replace_reports",
        actor=_actor_name(actor),
        actor_user_id=actor.id if actor else None,
        diff={"reports": {"old": sorted({u.id for u in current} | claimed), "new": report_ids}},
    )
    return {"manager_id": manager.id, "assigned": report_ids, "unassigned": dropped_ids}


def assign_manager(user_id: int, manager_id: int | None, *, actor: User | None = None) -> User:
    """Set or clear a user's direct superior.

    Raises:
        NotFoundError: unknown user or manager id.
        InvalidAssignmentError: the pairing breaks the parent-role table.
    """
    try:
        user = get_user(user_id)
        manager = get_user(manager_id) if manager_id is not None else None
        _assign_manager(user, manager, actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Manager of user %s set to %s", user.id, user.managed_by_id,
        extra={"user_id": user.id, "manager_id": user.managed_by_id},
    )
    return user


def replace_direct_reports(manager_id: int, new_report_ids: list[int], *, actor: User | None = None) -> dict:
    """Make *new_report_ids* the complete set of the manager's direct reports.

    Every listed report is validated before anything changes.  Reports no
    longer listed are unassigned, then every listed report is assigned.

    Returns:
        {"manager_id", "assigned": [...], "unassigned": [...]}
    """
    try:
        manager = get_user(manager_id)
        result = _replace_reports(manager, _load_reports(manager, new_report_ids), actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Direct reports of %s replaced: %d assigned, %d unassigned",
        manager.id, len(result["assigned"]), len(result["unassigned"]),
        extra={"manager_id": manager.id, "assigned": result["assigned"],
               "unassigned": result["unassigned"]},
    )
    return result


def update_hierarchy(
    *,
    user_id: int | None = None,
    managed_by_id: int | None = None,
    manager_id: int | None = None,
    report_ids: list[int] | None = None,
    actor: User | None = None,
) -> dict:
    """Re-point one user and/or replace a manager's reports in one transaction.

    The pointer part runs when *user_id* is given, the reports part when
    *manager_id* is given.  Both parts are validated before either is
    applied; a failure in either leaves the hierarchy as it was.

    Returns:
        {"user": User | None, "reports": dict | None}
    """
    try:
        user = get_user(user_id) if user_id is not None else None
        new_manager = get_user(managed_by_id) if user is not None and managed_by_id is not None else None
        if user is not None:
            _ensure_assignable(user, new_manager)

        manager = get_user(manager_id) if manager_id is not None else None
        reports = _load_reports(manager, report_ids) if manager is not None else None

        if user is not None:
            _assign_manager(user, new_manager, actor)
        result = _replace_reports(manager, reports, actor) if manager is not None else None
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Hierarchy updated: user %s, manager %s", user_id, manager_id,
        extra={"user_id": user_id, "manager_id": manager_id},
    )
    return {"user": user, "reports": result}


def create_user(
    email: str,
    role,
    full_name: str | None = None,
    *,
    managed_by_id: int | None = None,
    assigned_projects: list[str] | None = None,
    actor: User | None = None,
) -> User:
    """Provision a user, optionally placing them in the hierarchy."""
    try:
        valid = validate_email(email or "", check_deliverability=False)
        email = valid.normalized
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}", details={"email": str(e)})

    role = normalize_role(role)
    if User.query.filter_by(email=email).first():
        raise ConflictError("User", "email", email)
    if assigned_projects is not None and not isinstance(assigned_projects, list):
        raise ValidationError("assigned_projects must be a list", details={"assigned_projects": "not a list"})

    try:
        user = User(
            email=email,
            full_name=full_name,
            role=role,
            assigned_projects=[str(p) for p in (assigned_projects or [])],
        )
        db.session.add(user)
        db.session.flush()

        if managed_by_id is not None:
            manager = get_user(managed_by_id)
            _ensure_assignable(user, manager)
            _set_pointer(user, manager)

        write_audit(
            entity_type="user",
            entity_id=user.id,
            action="user.created",
            actor=_actor_name(actor),
            actor_user_id=actor.id if actor else None,
            diff={"role": role.value, "managed_by": user.managed_by_id},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("User %s provisioned as %s", user.id, role.value,
                extra={"user_id": user.id, "role": role.value})
    return user


def deactivate_user(user_id: int, *, actor: User | None = None) -> User:
    """Soft-deactivate. The user keeps their place in the hierarchy."""
    user = get_user(user_id)
    if not user.is_active:
        return user
    try:
        user.is_active = False
        write_audit(
            entity_type="user",
            entity_id=user.id,
            action="user.deactivated",
            actor=_actor_name(actor),
            actor_user_id=actor.id if actor else None,
            diff={"is_active": {"old": True, "new": False}},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("User %s deactivated", user.id, extra={"user_id": user.id})
    return user


# ═══════════════════════════════════════════════════════════════
# Read models
# ═══════════════════════════════════════════════════════════════
def get_hierarchy_tree() -> dict:
    """Nested tree rooted at Admins, plus users with no manager."""
    users = User.query.order_by(User.id).all()
    children: dict[int, list[User]] = {}
    for u in users:
        if u.managed_by_id is not None:
            children.setdefault(u.managed_by_id, []).append(u)

    def _node(user: User) -> dict:
        data = user.to_dict()
        data["children"] = [_node(c) for c in children.get(user.id, [])]
        return data

    roots = [_node(u) for u in users if u.role == Role.ADMIN]
    unassigned = [u.to_dict() for u in users if u.role != Role.ADMIN and u.managed_by_id is None]
    counts = {r.value: sum(1 for u in users if u.role == r) for r in HIERARCHY_CHAIN}
    return {"roots": roots, "unassigned": unassigned, "counts": counts}


def hierarchy_health_report() -> dict:
    """Diagnose PM→Finance links and invoices that cannot reach Finance."""
    snapshot = HierarchySnapshot.load()
    users = {u.id: u for u in User.query.all()}

    pm_links = []
    for u in sorted(users.values(), key=lambda x: x.id):
        if u.role != Role.PROJECT_MANAGER:
            continue
        manager = users.get(u.managed_by_id) if u.managed_by_id else None
        if manager is None:
            state = "unassigned"
        elif manager.role != Role.FINANCE_USER:
            state = "invalid_manager_role"
        elif not manager.is_active:
            state = "inactive_manager"
        else:
            state = "ok"
        resolution = resolve_finance_user(snapshot, u.id)
        pm_links.append({
            "pm_id": u.id,
            "pm": u.display_name,
            "managed_by": u.managed_by_id,
            "state": state,
            "resolution": resolution.to_dict(),
        })

    claim_mismatches = [
        {"manager_id": c.manager_id, "report_id": c.report_id,
         "report_managed_by": users[c.report_id].managed_by_id if c.report_id in users else None}
        for c in ManagerReport.query.order_by(ManagerReport.id).all()
        if c.report_id not in users or users[c.report_id].managed_by_id != c.manager_id
    ]

    unrouted = (
        Invoice.query
        .filter(Invoice.assigned_finance_user_id.is_(None))
        .filter(
            (Invoice.finance_routing_unresolved.is_(True))
            | (Invoice.status == InvoiceStatus.PENDING_FINANCE_REVIEW)
        )
        .order_by(Invoice.created_at)
        .all()
    )

    return {
        "project_managers": pm_links,
        "claim_mismatches": claim_mismatches,
        "unrouted_invoices": [
            {"id": i.id, "status": i.status.value, "assigned_pm": i.assigned_pm_id,
             "finance_routing_unresolved": bool(i.finance_routing_unresolved)}
            for i in unrouted
        ],
        "healthy": all(p["state"] == "ok" for p in pm_links) and not claim_mismatches and not unrouted,
    }
