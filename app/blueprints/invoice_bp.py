"""
Invoice Blueprint — submission, role queues and workflow actions.

Routes:
  POST   /invoices                    – submit an invoice
  GET    /invoices                    – the caller's queue (?status=, limit, offset)
  GET    /invoices/<id>               – detail + actions available to the caller
  POST   /invoices/<id>/workflow      – apply a workflow action
  GET    /invoices/<id>/audit         – full audit trail, oldest first

The caller is identified by ``actor_id`` in the body or ``X-User-Id``.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.core.exceptions import ForbiddenError
from app.core.roles import Role
from app.services import audit_recorder, invoice_service
from app.services.invoice_workflow import apply_invoice_action, get_available_actions
from app.utils.errors import register_error_handlers
from app.utils.helpers import get_actor, get_client_ip, get_user_agent, paginate_params

logger = logging.getLogger(__name__)

invoice_bp = Blueprint("invoice", __name__, url_prefix="/api/v1")
register_error_handlers(invoice_bp)


def _ensure_visible(invoice, actor):
    """Vendors only ever see their own submissions."""
    if actor.role == Role.VENDOR and invoice.submitted_by_id != actor.id:
        raise ForbiddenError(
            f"Invoice {invoice.id} was not submitted by user {actor.id}",
            current_status=invoice.status.value,
            role=actor.role.value,
        )


# ═════════════════════════════════════════════════════════════════════════════
# Submission + queues
# ═════════════════════════════════════════════════════════════════════════════

@invoice_bp.route("/invoices", methods=["POST"])
def create_invoice():
    """Submit an invoice.

    Body: { actor_id?, invoice_number?, vendor_name?, project?, amount?,
            currency?, assigned_pm?, status? }
    """
    data = request.get_json(silent=True) or {}
    actor = get_actor(data)
    invoice = invoice_service.create_invoice(
        data, actor, ip_address=get_client_ip(), user_agent=get_user_agent(),
    )
    return jsonify(invoice.to_dict()), 201


@invoice_bp.route("/invoices", methods=["GET"])
def list_invoices():
    actor = get_actor()
    limit, offset = paginate_params()
    items, total = invoice_service.list_for_actor(
        actor, status=request.args.get("status"), limit=limit, offset=offset,
    )
    return jsonify({
        "items": [i.to_dict() for i in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@invoice_bp.route("/invoices/<invoice_id>", methods=["GET"])
def get_invoice(invoice_id):
    actor = get_actor()
    invoice = invoice_service.get_invoice(invoice_id)
    _ensure_visible(invoice, actor)
    payload = invoice.to_dict()
    payload["available_actions"] = get_available_actions(invoice, actor)
    return jsonify(payload)


# ═════════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════════

@invoice_bp.route("/invoices/<invoice_id>/workflow", methods=["POST"])
def apply_action(invoice_id):
    """Apply a workflow action.

    Body: { action, actor_id?, actor_role?, notes?, expected_status? }

    ``expected_status`` guards against acting on a stale view: the request
    fails with 409 when the invoice has moved on since it was read.
    Routing warnings come back on the 200 response under ``warnings``.
    """
    data = request.get_json(silent=True) or {}
    actor = get_actor(data)
    result = apply_invoice_action(
        invoice_id,
        data.get("action"),
        actor.id,
        data.get("actor_role"),
        data.get("notes"),
        expected_status=data.get("expected_status"),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    invoice = invoice_service.get_invoice(invoice_id)
    payload = result.to_dict()
    payload["invoice"] = invoice.to_dict()
    payload["available_actions"] = get_available_actions(invoice, actor)
    return jsonify(payload)


@invoice_bp.route("/invoices/<invoice_id>/audit", methods=["GET"])
def get_audit_trail(invoice_id):
    actor = get_actor()
    invoice = invoice_service.get_invoice(invoice_id)
    _ensure_visible(invoice, actor)
    entries = audit_recorder.history(invoice_id)
    return jsonify({
        "invoice_id": invoice_id,
        "items": [e.to_dict() for e in entries],
        "total": len(entries),
    })
