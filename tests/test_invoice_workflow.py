"""
Invoice workflow engine tests.

Tests cover:
  - Happy path Vendor → PM → Finance with routing and notifications
  - Role gates, PM assignment and Vendor ownership
  - Every invalid (state, action) pair: no mutation, no trail entry
  - Terminal states and Admin RESTORE
  - Send-back, info requests and the info-return rule
  - Unresolved routing warning and Admin alert
  - expected_status guard and concurrent-writer detection
"""

import pytest
from sqlalchemy import text

from app.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from app.core.roles import Role
from app.models import db
from app.models.audit import AuditLog, InvoiceAuditEntry
from app.models.invoice import ApprovalStatus, Invoice, InvoiceStatus, WorkflowAction
from app.models.notification import Notification
from app.services import audit_recorder
from app.services.hierarchy_resolver import Resolution, Strategy
from app.services.invoice_workflow import WorkflowEngine, apply_invoice_action, get_available_actions
from app.services.transition_table import DEFAULT_TRANSITIONS

S = InvoiceStatus
A = WorkflowAction


def _apply(invoice, action, actor, **kwargs):
    return apply_invoice_action(invoice.id, action, actor.id, **kwargs)


def _trail(invoice):
    return InvoiceAuditEntry.query.filter_by(invoice_id=invoice.id).count()


def _reload(invoice):
    db.session.expire_all()
    return db.session.get(Invoice, invoice.id)


# ═════════════════════════════════════════════════════════════════════════
# Happy path
# ═════════════════════════════════════════════════════════════════════════

class TestHappyPath:
    def test_pm_approval_by_project_match(self, org, make_invoice):
        """PM on the invoice's project approves an unassigned submission."""
        invoice = make_invoice(org.vendor, project="PRJ-ALPHA")
        result = _apply(invoice, "APPROVE", org.pm, notes="Hours match the SOW")

        invoice = _reload(invoice)
        assert result.previous_status == S.SUBMITTED
        assert result.new_status == S.PENDING_FINANCE_REVIEW
        assert invoice.status == S.PENDING_FINANCE_REVIEW
        assert invoice.pm_approval.status == ApprovalStatus.APPROVED
        assert invoice.pm_approval.approved_by == org.pm.id
        assert invoice.pm_approval.notes == "Hours match the SOW"
        assert invoice.finance_approval.status == ApprovalStatus.PENDING
        assert invoice.assigned_pm_id == org.pm.id
        assert invoice.assigned_finance_user_id == org.fu.id
        assert result.routing.strategy == Strategy.DIRECT_CHAIN

        entries = audit_recorder.history(invoice.id)
        assert len(entries) == 1
        assert entries[0].previous_status == "SUBMITTED"
        assert entries[0].new_status == "PENDING_FINANCE_REVIEW"
        assert entries[0].actor == "Priya PM"
        assert entries[0].actor_role == "ProjectManager"

    def test_finance_approval_completes(self, org, submitted_invoice):
        _apply(submitted_invoice, A.APPROVE, org.pm)
        result = _apply(submitted_invoice, A.APPROVE, org.fu, notes="Paid in next run")

        invoice = _reload(submitted_invoice)
        assert result.new_status == S.FINANCE_APPROVED
        assert invoice.finance_approval.status == ApprovalStatus.APPROVED
        assert invoice.finance_approval.approved_by_role == Role.FINANCE_USER
        assert invoice.is_terminal
        assert [e.new_status for e in audit_recorder.history(invoice.id)] == [
            "PENDING_FINANCE_REVIEW", "FINANCE_APPROVED",
        ]

    def test_notifications_follow_the_invoice(self, org, submitted_invoice):
        pm_result = _apply(submitted_invoice, A.APPROVE, org.pm)
        assert [(n.recipient_id, n.category) for n in pm_result.notifications] == [
            (org.fu.id, "status_update"),
        ]
        fu_result = _apply(submitted_invoice, A.APPROVE, org.fu)
        assert [(n.recipient_id, n.category) for n in fu_result.notifications] == [
            (org.vendor.id, "status_update"),
        ]
        assert Notification.query.filter_by(recipient_id=org.vendor.id).count() == 1
        assert Notification.query.filter_by(recipient_id=org.fu.id).count() == 1

    def test_admin_accepts_submission(self, org, submitted_invoice):
        result = _apply(submitted_invoice, A.APPROVE, org.admin)
        invoice = _reload(submitted_invoice)
        assert result.new_status == S.PENDING_PM_APPROVAL
        assert invoice.pm_approval.status == ApprovalStatus.PENDING
        assert [n.recipient_id for n in result.notifications] == [org.pm.id]

    def test_admin_approves_in_place_of_pm(self, org, make_invoice):
        invoice = make_invoice(org.vendor, pm=org.pm, status=S.PENDING_PM_APPROVAL)
        result = _apply(invoice, A.APPROVE, org.admin)
        invoice = _reload(invoice)
        assert result.new_status == S.PENDING_FINANCE_REVIEW
        assert invoice.pm_approval.approved_by_role == Role.ADMIN
        assert invoice.assigned_finance_user_id == org.fu.id

    def test_history_is_stable(self, org, submitted_invoice):
        _apply(submitted_invoice, A.APPROVE, org.pm)
        first = [e.to_dict() for e in audit_recorder.history(submitted_invoice.id)]
        second = [e.to_dict() for e in audit_recorder.history(submitted_invoice.id)]
        assert first == second

    def test_audit_entry_carries_request_context(self, org, submitted_invoice):
        result = _apply(submitted_invoice, A.APPROVE, org.pm,
                        ip_address="10.0.0.7", user_agent="pytest-agent")
        assert result.audit_entry.ip_address == "10.0.0.7"
        assert result.audit_entry.user_agent == "pytest-agent"


# ═════════════════════════════════════════════════════════════════════════
# Scenarios B, E, F and other rejections
# ═════════════════════════════════════════════════════════════════════════

class TestRejections:
    def test_finance_cannot_act_before_pm(self, org, make_invoice):
        invoice = make_invoice(org.vendor, pm=org.pm, status=S.PENDING_FINANCE_REVIEW)
        invoice.pm_approval_status = ApprovalStatus.PENDING  # corrupted row
        db.session.commit()

        with pytest.raises(InvalidTransitionError):
            _apply(invoice, A.APPROVE, org.fu)
        invoice = _reload(invoice)
        assert invoice.status == S.PENDING_FINANCE_REVIEW
        assert invoice.finance_approval.status == ApprovalStatus.PENDING
        assert _trail(invoice) == 0

    def test_vendor_resubmit_in_wrong_state(self, org, make_invoice):
        invoice = make_invoice(org.vendor, pm=org.pm, status=S.PENDING_PM_APPROVAL)
        version = invoice.version
        with pytest.raises(InvalidTransitionError):
            _apply(invoice, A.RESUBMIT, org.vendor)
        invoice = _reload(invoice)
        assert invoice.status == S.PENDING_PM_APPROVAL
        assert invoice.version == version
        assert _trail(invoice) == 0

    def test_restore_only_from_rejected(self, org, make_invoice):
        invoice = make_invoice(org.vendor, pm=org.pm, status=S.FINANCE_APPROVED)
        with pytest.raises(InvalidTransitionError):
            _apply(invoice, A.RESTORE, org.admin)
        assert _reload(invoice).status == S.FINANCE_APPROVED

    def test_vendor_cannot_approve(self, org, submitted_invoice):
        with pytest.raises(UnauthorizedError) as exc:
            _apply(submitted_invoice, A.APPROVE, org.vendor)
        assert type(exc.value) is UnauthorizedError
        assert exc.value.code == "ERR_UNAUTHORIZED"

    def test_pm_cannot_send_back(self, org, submitted_invoice):
        with pytest.raises(UnauthorizedError):
            _apply(submitted_invoice, A.SEND_BACK, org.pm)

    def test_finance_cannot_act_in_pm_stage(self, org, submitted_invoice):
        with pytest.raises(InvalidTransitionError):
            _apply(submitted_invoice, A.APPROVE, org.fu)

    def test_unassigned_pm_is_forbidden(self, org, make_user, submitted_invoice):
        other_pm = make_user(Role.PROJECT_MANAGER, managed_by=org.fu, projects=["PRJ-BETA"])
        with pytest.raises(ForbiddenError) as exc:
            _apply(submitted_invoice, A.APPROVE, other_pm)
        assert exc.value.code == "ERR_FORBIDDEN"
        assert _reload(submitted_invoice).status == S.SUBMITTED

    def test_vendor_cannot_resubmit_someone_elses_invoice(self, org, make_user, make_invoice):
        other_vendor = make_user(Role.VENDOR, managed_by=org.pm)
        invoice = make_invoice(org.vendor, pm=org.pm, status=S.MORE_INFO_NEEDED)
        with pytest.raises(ForbiddenError):
            _apply(invoice, A.RESUBMIT, other_vendor)

    def test_claimed_role_must_match(self, org, submitted_invoice):
        with pytest.raises(UnauthorizedError):
            _apply(submitted_invoice, A.APPROVE, org.pm, actor_role="Admin")

    def test_claimed_role_spelling_is_normalized(self, org, submitted_invoice):
        result = _apply(submitted_invoice, A.APPROVE, org.pm, actor_role="Project Manager")
        assert result.new_status == S.PENDING_FINANCE_REVIEW

    def test_inactive_actor(self, org, make_user, submitted_invoice):
        org.pm.is_active = False
        db.session.commit()
        with pytest.raises(UnauthorizedError):
            _apply(submitted_invoice, A.APPROVE, org.pm)

    def test_unknown_action(self, org, submitted_invoice):
        with pytest.raises(ValidationError):
            _apply(submitted_invoice, "PAY", org.pm)

    def test_unknown_invoice_and_actor(self, org):
        with pytest.raises(NotFoundError):
            apply_invoice_action("missing-invoice", "APPROVE", org.pm.id)

    def test_admin_needs_an_assigned_pm(self, org, make_invoice):
        invoice = make_invoice(org.vendor, project="PRJ-ALPHA")
        assert get_available_actions(invoice, org.admin) == []
        assert get_available_actions(invoice, org.pm) == ["APPROVE", "REJECT", "REQUEST_INFO"]
        with pytest.raises(InvalidTransitionError):
            _apply(invoice, A.APPROVE, org.admin)

    def test_denied_attempt_is_logged_outside_the_trail(self, org, submitted_invoice):
        with pytest.raises(UnauthorizedError):
            _apply(submitted_invoice, A.APPROVE, org.vendor)
        log = AuditLog.query.filter_by(action="invoice.transition_denied").one()
        assert log.entity_id == submitted_invoice.id
        assert log.diff["code"] == "ERR_UNAUTHORIZED"
        assert log.actor_user_id == org.vendor.id
        assert _trail(submitted_invoice) == 0


def _invalid_admin_pairs():
    table = DEFAULT_TRANSITIONS
    pairs = []
    for status in S:
        for action in A:
            if action == A.RESUBMIT:
                continue
            if not table.may_act_in(Role.ADMIN, status) or table.target(Role.ADMIN, status, action) is None:
                pairs.append((status, action))
    return pairs


@pytest.mark.parametrize("status,action", _invalid_admin_pairs())
def test_pairs_outside_table_do_not_mutate(org, make_invoice, status, action):
    invoice = make_invoice(org.vendor, pm=org.pm, status=status)
    before = (invoice.status, invoice.version, invoice.pm_approval, invoice.finance_approval)

    with pytest.raises(InvalidTransitionError):
        _apply(invoice, action, org.admin)

    invoice = _reload(invoice)
    assert (invoice.status, invoice.version, invoice.pm_approval, invoice.finance_approval) == before
    assert _trail(invoice) == 0


@pytest.mark.parametrize("status", [S.PM_REJECTED, S.FINANCE_REJECTED, S.FINANCE_APPROVED])
@pytest.mark.parametrize("role", ["pm", "fu", "vendor"])
def test_terminal_states_are_frozen_for_non_admins(org, make_invoice, status, role):
    invoice = make_invoice(org.vendor, pm=org.pm, status=status)
    actor = getattr(org, role)
    for action in A:
        with pytest.raises((InvalidTransitionError, UnauthorizedError)):
            _apply(invoice, action, actor)
    assert _reload(invoice).status == status


# ═════════════════════════════════════════════════════════════════════════
# Loops back into the pipeline
# ═════════════════════════════════════════════════════════════════════════

class TestLoops:
    def test_finance_send_back(self, org, submitted_invoice):
        _apply(submitted_invoice, A.APPROVE, org.pm)
        result = _apply(submitted_invoice, A.SEND_BACK, org.fu, notes="Wrong cost centre")

        invoice = _reload(submitted_invoice)
        assert result.new_status == S.PENDING_PM_APPROVAL
        assert invoice.pm_approval.status == ApprovalStatus.PENDING
        assert invoice.finance_approval.status == ApprovalStatus.PENDING
        assert invoice.finance_approval.notes == "Wrong cost centre"
        assert invoice.assigned_finance_user_id == org.fu.id
        assert [n.recipient_id for n in result.notifications] == [org.pm.id]

    def test_pm_info_request_and_vendor_resubmit(self, org, submitted_invoice):
        result = _apply(submitted_invoice, A.REQUEST_INFO, org.pm, notes="Attach timesheets")
        assert result.new_status == S.MORE_INFO_NEEDED
        assert [(n.recipient_id, n.category) for n in result.notifications] == [
            (org.vendor.id, "info_request"),
        ]
        assert _reload(submitted_invoice).pm_approval.status == ApprovalStatus.INFO_REQUESTED
        assert get_available_actions(submitted_invoice, org.vendor) == ["RESUBMIT"]

        result = _apply(submitted_invoice, A.RESUBMIT, org.vendor)
        invoice = _reload(submitted_invoice)
        assert result.new_status == S.PENDING_PM_APPROVAL
        assert invoice.pm_approval.status == ApprovalStatus.PENDING
        assert [n.recipient_id for n in result.notifications] == [org.pm.id]

    def test_finance_info_request_returns_to_finance(self, org, submitted_invoice):
        _apply(submitted_invoice, A.APPROVE, org.pm)
        _apply(submitted_invoice, A.REQUEST_INFO, org.fu, notes="Need PO number")
        invoice = _reload(submitted_invoice)
        assert invoice.status == S.MORE_INFO_NEEDED
        assert invoice.pm_approval.status == ApprovalStatus.APPROVED
        assert invoice.finance_approval.status == ApprovalStatus.INFO_REQUESTED

        result = _apply(submitted_invoice, A.APPROVE, org.admin)
        invoice = _reload(submitted_invoice)
        assert result.new_status == S.PENDING_FINANCE_REVIEW
        assert invoice.pm_approval.status == ApprovalStatus.APPROVED
        assert invoice.finance_approval.status == ApprovalStatus.PENDING

    def test_pm_info_request_returns_to_pm_on_admin_approve(self, org, submitted_invoice):
        _apply(submitted_invoice, A.REQUEST_INFO, org.pm)
        result = _apply(submitted_invoice, A.APPROVE, org.admin)
        assert result.new_status == S.PENDING_PM_APPROVAL

    def test_pm_rejects_then_admin_restores(self, org, submitted_invoice):
        result = _apply(submitted_invoice, A.REJECT, org.pm, notes="Duplicate")
        assert result.new_status == S.PM_REJECTED
        assert [(n.recipient_id, n.category) for n in result.notifications] == [
            (org.vendor.id, "rejection"),
        ]
        assert get_available_actions(submitted_invoice, org.pm) == []
        assert get_available_actions(submitted_invoice, org.admin) == ["RESTORE"]

        result = _apply(submitted_invoice, A.RESTORE, org.admin)
        invoice = _reload(submitted_invoice)
        assert result.new_status == S.PENDING_PM_APPROVAL
        assert invoice.pm_approval.status == ApprovalStatus.PENDING
        assert invoice.finance_approval.status == ApprovalStatus.PENDING
        assert len(audit_recorder.history(invoice.id)) == 2

    def test_finance_reject_and_restore(self, org, submitted_invoice):
        _apply(submitted_invoice, A.APPROVE, org.pm)
        _apply(submitted_invoice, A.REJECT, org.fu)
        assert _reload(submitted_invoice).status == S.FINANCE_REJECTED
        _apply(submitted_invoice, A.RESTORE, org.admin)
        assert _reload(submitted_invoice).status == S.PENDING_PM_APPROVAL


# ═════════════════════════════════════════════════════════════════════════
# Routing
# ═════════════════════════════════════════════════════════════════════════

class TestRouting:
    def test_unresolved_routing_is_a_warning(self, make_user, make_invoice):
        admin = make_user(Role.ADMIN)
        orphan_pm = make_user(Role.PROJECT_MANAGER)
        vendor = make_user(Role.VENDOR, managed_by=orphan_pm)
        invoice = make_invoice(vendor, pm=orphan_pm)

        result = _apply(invoice, A.APPROVE, orphan_pm)

        invoice = _reload(invoice)
        assert result.new_status == S.PENDING_FINANCE_REVIEW
        assert invoice.assigned_finance_user_id is None
        assert invoice.finance_routing_unresolved is True
        assert [w.code for w in result.warnings] == ["WARN_UNRESOLVED_ROUTING"]
        assert [(n.recipient_id, n.category) for n in result.notifications] == [(admin.id, "routing")]
        assert _trail(invoice) == 1
        log = AuditLog.query.filter_by(action="invoice.routing_unresolved").one()
        assert log.entity_id == invoice.id
        assert log.diff == {"pm_id": orphan_pm.id, "submitter_id": vendor.id}

    def test_reverse_index_routing(self, org, make_invoice):
        org.pm.managed_by_id = None
        db.session.commit()
        invoice = make_invoice(org.vendor, pm=org.pm)
        result = _apply(invoice, A.APPROVE, org.pm)
        assert result.routing.strategy == Strategy.REVERSE_INDEX
        assert _reload(invoice).assigned_finance_user_id == org.fu.id

    def test_existing_finance_user_is_kept(self, org, make_user, make_invoice):
        fu2 = make_user(Role.FINANCE_USER, managed_by=org.admin)
        invoice = make_invoice(org.vendor, pm=org.pm, finance_user=fu2)
        result = _apply(invoice, A.APPROVE, org.pm)
        assert result.routing is None
        assert _reload(invoice).assigned_finance_user_id == fu2.id


# ═════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════

class TestConcurrency:
    def test_expected_status_mismatch(self, org, submitted_invoice):
        with pytest.raises(InvalidTransitionError):
            _apply(submitted_invoice, A.APPROVE, org.pm, expected_status="PENDING_PM_APPROVAL")
        assert _reload(submitted_invoice).status == S.SUBMITTED

    def test_expected_status_match(self, org, submitted_invoice):
        result = _apply(submitted_invoice, A.APPROVE, org.pm, expected_status="submitted")
        assert result.new_status == S.PENDING_FINANCE_REVIEW

    def test_expected_status_unknown(self, org, submitted_invoice):
        with pytest.raises(ValidationError):
            _apply(submitted_invoice, A.APPROVE, org.pm, expected_status="PAID")

    def test_concurrent_writer_loses_cleanly(self, org, submitted_invoice):
        """Another unit of work bumps the row version mid-transition."""
        invoice_id = submitted_invoice.id

        def racing_resolver(pm_id, submitter_id=None):
            db.session.flush()
            db.session.execute(
                text("UPDATE invoices SET version = version + 1 WHERE id = :id"), {"id": invoice_id},
            )
            return Resolution(org.fu.id, Strategy.DIRECT_CHAIN)

        engine = WorkflowEngine(resolver=racing_resolver)
        with pytest.raises(InvalidTransitionError):
            engine.apply(invoice_id, A.APPROVE, org.pm.id)

        invoice = _reload(submitted_invoice)
        assert invoice.status == S.SUBMITTED
        assert _trail(invoice) == 0

    def test_notifier_failure_does_not_undo_transition(self, org, submitted_invoice):
        class BrokenSink:
            @staticmethod
            def dispatch(instructions):
                raise RuntimeError("sink down")

        engine = WorkflowEngine(notifier=BrokenSink)
        result = engine.apply(submitted_invoice.id, A.APPROVE, org.pm.id)
        assert result.new_status == S.PENDING_FINANCE_REVIEW
        assert _reload(submitted_invoice).status == S.PENDING_FINANCE_REVIEW
