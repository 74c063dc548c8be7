"""
Hierarchy Admin Blueprint — reporting lines, provisioning, routing repair.

Routes (all Admin-only):
  GET    /admin/hierarchy                              – tree + unassigned users
  PUT    /admin/hierarchy                              – re-point a user and/or
                                                         replace a manager's reports
  GET    /admin/hierarchy/check                        – PM→Finance link diagnostics
  POST   /admin/hierarchy/backfill-finance-users       – resolve missing Finance Users
  POST   /admin/users                                  – provision a user
  POST   /admin/users/<id>/deactivate                  – soft-deactivate
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.core.exceptions import UnauthorizedError, ValidationError
from app.core.roles import Role
from app.services import hierarchy_service, invoice_service
from app.utils.errors import register_error_handlers
from app.utils.helpers import get_actor

logger = logging.getLogger(__name__)

hierarchy_bp = Blueprint("hierarchy", __name__, url_prefix="/api/v1/admin")
register_error_handlers(hierarchy_bp)


def _require_admin(data: dict | None = None):
    actor = get_actor(data)
    if actor.role != Role.ADMIN or not actor.is_active:
        raise UnauthorizedError("Admin role required", role=actor.role.value)
    return actor


def _int_or_none(value, field: str, *, required: bool = False) -> int | None:
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", details={field: "required"})
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: str(value)})


# ═════════════════════════════════════════════════════════════════════════════
# Hierarchy
# ═════════════════════════════════════════════════════════════════════════════

@hierarchy_bp.route("/hierarchy", methods=["GET"])
def get_hierarchy():
    _require_admin()
    return jsonify(hierarchy_service.get_hierarchy_tree())


@hierarchy_bp.route("/hierarchy", methods=["PUT"])
def update_hierarchy():
    """Edit reporting lines.

    Body (either or both):
        { user_id, managed_by }              – re-point one user (null = unassign)
        { manager_id, children: [ids] }      – replace a manager's direct reports
    """
    data = request.get_json(silent=True) or {}
    actor = _require_admin(data)

    has_pointer = "user_id" in data
    has_children = "manager_id" in data
    if not has_pointer and not has_children:
        raise ValidationError("Provide user_id/managed_by or manager_id/children",
                              details={"body": "nothing to update"})

    result = {}
    user_id = managed_by = manager_id = report_ids = None
    if has_pointer:
        user_id = _int_or_none(data.get("user_id"), "user_id", required=True)
        managed_by = _int_or_none(data.get("managed_by"), "managed_by")
    if has_children:
        manager_id = _int_or_none(data.get("manager_id"), "manager_id", required=True)
        children = data.get("children")
        if not isinstance(children, list):
            raise ValidationError("children must be a list of user ids", details={"children": "not a list"})
        report_ids = [_int_or_none(c, "children", required=True) for c in children]

    update = hierarchy_service.update_hierarchy(
        user_id=user_id,
        managed_by_id=managed_by,
        manager_id=manager_id,
        report_ids=report_ids,
        actor=actor,
    )
    if update["user"] is not None:
        result["user"] = update["user"].to_dict()
    if update["reports"] is not None:
        result["reports"] = update["reports"]
    return jsonify(result)


@hierarchy_bp.route("/hierarchy/check", methods=["GET"])
def check_hierarchy():
    _require_admin()
    return jsonify(hierarchy_service.hierarchy_health_report())


@hierarchy_bp.route("/hierarchy/backfill-finance-users", methods=["POST"])
def backfill_finance_users():
    """Body: { dry_run?: bool }"""
    data = request.get_json(silent=True) or {}
    actor = _require_admin(data)
    dry_run = bool(data.get("dry_run", False))
    return jsonify(invoice_service.backfill_finance_users(dry_run=dry_run, actor=actor))


# ═════════════════════════════════════════════════════════════════════════════
# Users
# ═════════════════════════════════════════════════════════════════════════════

@hierarchy_bp.route("/users", methods=["POST"])
def create_user():
    """Body: { email, role, full_name?, managed_by?, assigned_projects? }"""
    data = request.get_json(silent=True) or {}
    actor = _require_admin(data)
    user = hierarchy_service.create_user(
        data.get("email"),
        data.get("role"),
        data.get("full_name"),
        managed_by_id=_int_or_none(data.get("managed_by"), "managed_by"),
        assigned_projects=data.get("assigned_projects"),
        actor=actor,
    )
    return jsonify(user.to_dict()), 201


@hierarchy_bp.route("/users/<int:user_id>/deactivate", methods=["POST"])
def deactivate_user(user_id):
    data = request.get_json(silent=True) or {}
    actor = _require_admin(data)
    user = hierarchy_service.deactivate_user(user_id, actor=actor)
    return jsonify(user.to_dict())
