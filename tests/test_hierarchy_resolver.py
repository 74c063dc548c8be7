"""
Finance User resolution tests.

Pure snapshot tests exercise the strategy order directly; the DB-backed
tests confirm ``HierarchySnapshot.load`` reads pointers and claims.
"""

import pytest

from app.core.roles import Role
from app.services.hierarchy_resolver import (
    UNRESOLVED,
    HierarchySnapshot,
    Strategy,
    UserNode,
    resolve_finance_user,
    resolve_finance_user_for_pm,
)

ADMIN, FU1, FU2, PM, VENDOR, PM2 = 1, 2, 3, 4, 5, 6


def _node(uid, role, managed_by=None, active=True):
    return UserNode(id=uid, role=role, managed_by=managed_by, is_active=active)


@pytest.fixture()
def base_nodes():
    return [
        _node(ADMIN, Role.ADMIN),
        _node(FU1, Role.FINANCE_USER, ADMIN),
        _node(FU2, Role.FINANCE_USER, ADMIN),
    ]


class TestStrategyOrder:
    def test_direct_chain_wins(self, base_nodes):
        snap = HierarchySnapshot.build(
            base_nodes + [_node(PM, Role.PROJECT_MANAGER, FU1)],
            [(FU2, PM)],
        )
        res = resolve_finance_user(snap, PM)
        assert res.finance_user_id == FU1
        assert res.strategy == Strategy.DIRECT_CHAIN

    def test_reverse_index_when_pointer_missing(self, base_nodes):
        """PM has no managed_by but FU1 claims them."""
        snap = HierarchySnapshot.build(
            base_nodes + [_node(PM, Role.PROJECT_MANAGER, None)],
            [(FU1, PM)],
        )
        res = resolve_finance_user(snap, PM)
        assert res.finance_user_id == FU1
        assert res.strategy == Strategy.REVERSE_INDEX

    def test_reverse_index_when_pointer_is_wrong_role(self, base_nodes):
        snap = HierarchySnapshot.build(
            base_nodes + [_node(PM, Role.PROJECT_MANAGER, ADMIN)],
            [(FU2, PM)],
        )
        res = resolve_finance_user(snap, PM)
        assert (res.finance_user_id, res.strategy) == (FU2, Strategy.REVERSE_INDEX)

    def test_ambiguous_claims_do_not_resolve(self, base_nodes):
        snap = HierarchySnapshot.build(
            base_nodes + [_node(PM, Role.PROJECT_MANAGER, None)],
            [(FU1, PM), (FU2, PM)],
        )
        assert resolve_finance_user(snap, PM) == UNRESOLVED

    def test_submitter_chain_fallback(self, base_nodes):
        """Assigned PM is orphaned; the vendor's own PM leads to FU2."""
        snap = HierarchySnapshot.build(
            base_nodes + [
                _node(PM, Role.PROJECT_MANAGER, None),
                _node(PM2, Role.PROJECT_MANAGER, FU2),
                _node(VENDOR, Role.VENDOR, PM2),
            ],
        )
        res = resolve_finance_user(snap, PM, submitter_id=VENDOR)
        assert (res.finance_user_id, res.strategy) == (FU2, Strategy.SUBMITTER_CHAIN)

    def test_submitter_chain_without_pm(self, base_nodes):
        snap = HierarchySnapshot.build(
            base_nodes + [
                _node(PM, Role.PROJECT_MANAGER, FU1),
                _node(VENDOR, Role.VENDOR, PM),
            ],
        )
        res = resolve_finance_user(snap, None, submitter_id=VENDOR)
        assert (res.finance_user_id, res.strategy) == (FU1, Strategy.SUBMITTER_CHAIN)

    def test_submitter_must_be_vendor(self, base_nodes):
        snap = HierarchySnapshot.build(base_nodes + [_node(PM, Role.PROJECT_MANAGER, FU1)])
        assert resolve_finance_user(snap, None, submitter_id=PM) == UNRESOLVED


class TestUnresolved:
    def test_orphan_pm(self, base_nodes):
        snap = HierarchySnapshot.build(base_nodes + [_node(PM, Role.PROJECT_MANAGER, None)])
        res = resolve_finance_user(snap, PM)
        assert not res.resolved
        assert res.to_dict() == {"finance_user_id": None, "strategy": None}

    def test_inactive_finance_user_is_skipped(self):
        snap = HierarchySnapshot.build([
            _node(ADMIN, Role.ADMIN),
            _node(FU1, Role.FINANCE_USER, ADMIN, active=False),
            _node(PM, Role.PROJECT_MANAGER, FU1),
        ], [(FU1, PM)])
        assert resolve_finance_user(snap, PM) == UNRESOLVED

    def test_unknown_pm(self, base_nodes):
        assert resolve_finance_user(HierarchySnapshot.build(base_nodes), 999) == UNRESOLVED

    def test_pm_id_that_is_not_a_pm(self, base_nodes):
        snap = HierarchySnapshot.build(base_nodes + [_node(VENDOR, Role.VENDOR, FU1)])
        assert resolve_finance_user(snap, VENDOR) == UNRESOLVED


class TestLiveHierarchy:
    def test_direct_chain_from_database(self, org):
        res = resolve_finance_user_for_pm(org.pm.id)
        assert res.finance_user_id == org.fu.id
        assert res.strategy == Strategy.DIRECT_CHAIN

    def test_claim_only_from_database(self, org, make_user):
        """Pointer cleared out-of-band, claim still present."""
        from app.models import db
        org.pm.managed_by_id = None
        db.session.commit()
        res = resolve_finance_user_for_pm(org.pm.id)
        assert (res.finance_user_id, res.strategy) == (org.fu.id, Strategy.REVERSE_INDEX)

    def test_unclaimed_orphan_pm(self, make_user):
        pm = make_user(Role.PROJECT_MANAGER)
        assert not resolve_finance_user_for_pm(pm.id).resolved
