"""
Shared pytest fixtures for the Invoice Approval Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_invoice: ORM factories that bypass the services so
      tests can build hierarchies and invoices in arbitrary shapes
    - org: a complete, valid Admin → Finance → PM → Vendor chain
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from app import create_app
from app.core.roles import Role
from app.models import db as _db
from app.models.auth import ManagerReport, User
from app.models.invoice import Approval, ApprovalStatus, Invoice, InvoiceStatus

S = InvoiceStatus
_P = ApprovalStatus.PENDING
_A = ApprovalStatus.APPROVED
_R = ApprovalStatus.REJECTED
_I = ApprovalStatus.INFO_REQUESTED

# Canonical approval pair for each status when forcing a starting state
_FORCED_PAIRS = {
    S.SUBMITTED: (_P, _P),
    S.PENDING_PM_APPROVAL: (_P, _P),
    S.PENDING_FINANCE_REVIEW: (_A, _P),
    S.MORE_INFO_NEEDED: (_I, _P),
    S.PM_REJECTED: (_R, _P),
    S.FINANCE_REJECTED: (_A, _R),
    S.FINANCE_APPROVED: (_A, _A),
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM factories ────────────────────────────────────────────────────────


def _make_user(role, *, name=None, managed_by=None, projects=None, active=True, claim=True):
    """Create a user directly, optionally with a matching manager claim.

    ``claim=False`` leaves the reverse index empty so tests can model a
    pointer without a claim.
    """
    role = Role(role) if not isinstance(role, Role) else role
    seq = User.query.count() + 1
    name = name or f"{role.value} {seq}"
    user = User(
        email=f"{role.value.lower()}{seq}@acme-corp.com",
        full_name=name,
        role=role,
        managed_by_id=managed_by.id if managed_by is not None else None,
        assigned_projects=list(projects or []),
        is_active=active,
    )
    _db.session.add(user)
    _db.session.flush()
    if managed_by is not None and claim:
        _db.session.add(ManagerReport(manager_id=managed_by.id, report_id=user.id))
    _db.session.commit()
    return user


def _force_status(invoice, status):
    """Put an invoice into *status* with the canonical approval pair."""
    pm_status, fin_status = _FORCED_PAIRS[status]
    if fin_status != _P and invoice.status != S.PENDING_FINANCE_REVIEW:
        invoice.apply_transition(S.PENDING_FINANCE_REVIEW,
                                 pm_approval=Approval(status=_A), finance_approval=Approval())
    invoice.apply_transition(status,
                             pm_approval=Approval(status=pm_status),
                             finance_approval=Approval(status=fin_status))


def _make_invoice(submitter, *, pm=None, finance_user=None, status=S.SUBMITTED, project=None,
                  number=None, amount=Decimal("1250.00")):
    invoice = Invoice.new(
        invoice_number=number or f"INV-{Invoice.query.count() + 1:04d}",
        vendor_name=submitter.display_name if submitter else "Walk-in Vendor",
        project=project,
        amount=amount,
        submitted_by_id=submitter.id if submitter else None,
        assigned_pm_id=pm.id if pm is not None else None,
        assigned_finance_user_id=finance_user.id if finance_user is not None else None,
    )
    if status not in (S.SUBMITTED, S.PENDING_PM_APPROVAL):
        _force_status(invoice, status)
    elif status == S.PENDING_PM_APPROVAL:
        invoice.apply_transition(status, pm_approval=Approval(), finance_approval=Approval())
    _db.session.add(invoice)
    _db.session.commit()
    return invoice


@pytest.fixture()
def make_user():
    return _make_user


@pytest.fixture()
def make_invoice():
    return _make_invoice


@pytest.fixture()
def org():
    """Admin → FinanceUser → ProjectManager → Vendor, pointers and claims in step."""
    admin = _make_user(Role.ADMIN, name="Asha Admin")
    fu = _make_user(Role.FINANCE_USER, name="Farah Finance", managed_by=admin)
    pm = _make_user(Role.PROJECT_MANAGER, name="Priya PM", managed_by=fu, projects=["PRJ-ALPHA"])
    vendor = _make_user(Role.VENDOR, name="Vikram Vendor", managed_by=pm)
    return SimpleNamespace(admin=admin, fu=fu, pm=pm, vendor=vendor)


@pytest.fixture()
def submitted_invoice(org):
    """A fresh SUBMITTED invoice from the org vendor, assigned to the org PM."""
    return _make_invoice(org.vendor, pm=org.pm, project="PRJ-ALPHA")
