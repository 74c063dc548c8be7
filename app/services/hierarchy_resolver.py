"""Finance User resolution over the management hierarchy.

Given a Project Manager, find the Finance User who governs them.  The
strategies are tried in a fixed order and the first success wins:

    1. direct_chain     PM.managed_by is an active FinanceUser
    2. reverse_index    exactly one active FinanceUser claims the PM
    3. submitter_chain  submitter (Vendor) → PM → active FinanceUser

No strategy succeeding is a legitimate outcome.  Callers record it as
unresolved and never substitute a default Finance User.

``resolve_finance_user`` is a pure function over a ``HierarchySnapshot``;
``resolve_finance_user_for_pm`` loads the snapshot from the database.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from app.core.roles import Role
from app.models.auth import ManagerReport, User

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    DIRECT_CHAIN = "direct_chain"
    REVERSE_INDEX = "reverse_index"
    SUBMITTER_CHAIN = "submitter_chain"


@dataclass(frozen=True)
class UserNode:
    """The slice of a User the resolver needs."""

    id: int
    role: Role
    managed_by: int | None
    is_active: bool


@dataclass(frozen=True)
class Resolution:
    """Outcome of a resolution attempt."""

    finance_user_id: int | None
    strategy: Strategy | None

    @property
    def resolved(self) -> bool:
        return self.finance_user_id is not None

    def to_dict(self) -> dict:
        return {
            "finance_user_id": self.finance_user_id,
            "strategy": self.strategy.value if self.strategy else None,
        }


UNRESOLVED = Resolution(finance_user_id=None, strategy=None)


@dataclass(frozen=True)
class HierarchySnapshot:
    """Read-only view of users and manager claims."""

    users: Mapping[int, UserNode]
    claims: Mapping[int, frozenset[int]]

    @classmethod
    def build(cls, nodes, claim_pairs=()) -> "HierarchySnapshot":
        """Build from ``UserNode`` objects and ``(manager_id, report_id)`` pairs."""
        claims: dict[int, set[int]] = {}
        for manager_id, report_id in claim_pairs:
            claims.setdefault(manager_id, set()).add(report_id)
        return cls(
            users=MappingProxyType({n.id: n for n in nodes}),
            claims=MappingProxyType({m: frozenset(r) for m, r in claims.items()}),
        )

    @classmethod
    def load(cls) -> "HierarchySnapshot":
        """Read the current hierarchy from the database."""
        nodes = [
            UserNode(id=u.id, role=u.role, managed_by=u.managed_by_id, is_active=bool(u.is_active))
            for u in User.query.all()
        ]
        pairs = [(c.manager_id, c.report_id) for c in ManagerReport.query.all()]
        return cls.build(nodes, pairs)

    def get(self, user_id: int | None) -> UserNode | None:
        if user_id is None:
            return None
        return self.users.get(user_id)

    def active_finance_user(self, user_id: int | None) -> UserNode | None:
        node = self.get(user_id)
        if node and node.role == Role.FINANCE_USER and node.is_active:
            return node
        return None


# ── Strategies ───────────────────────────────────────────────────────────────

def _direct_chain(snapshot: HierarchySnapshot, pm_id: int) -> int | None:
    pm = snapshot.get(pm_id)
    if pm is None or pm.role != Role.PROJECT_MANAGER:
        return None
    fu = snapshot.active_finance_user(pm.managed_by)
    return fu.id if fu else None


def _reverse_index(snapshot: HierarchySnapshot, pm_id: int) -> int | None:
    claimants = [
        manager_id
        for manager_id, reports in snapshot.claims.items()
        if pm_id in reports and snapshot.active_finance_user(manager_id)
    ]
    if len(claimants) == 1:
        return claimants[0]
    if len(claimants) > 1:
        logger.warning(
            "Ambiguous reverse-index claim for PM %s: %s",
            pm_id, sorted(claimants),
            extra={"pm_id": pm_id, "claimants": sorted(claimants)},
        )
    return None


def _submitter_chain(snapshot: HierarchySnapshot, submitter_id: int | None) -> int | None:
    submitter = snapshot.get(submitter_id)
    if submitter is None or submitter.role != Role.VENDOR:
        return None
    pm = snapshot.get(submitter.managed_by)
    if pm is None or pm.role != Role.PROJECT_MANAGER:
        return None
    fu = snapshot.active_finance_user(pm.managed_by)
    return fu.id if fu else None


def resolve_finance_user(
    snapshot: HierarchySnapshot,
    pm_id: int | None,
    submitter_id: int | None = None,
) -> Resolution:
    """Run the strategies in order against *snapshot*.

    Args:
        snapshot: Hierarchy view to resolve against.
        pm_id: The invoice's assigned Project Manager (may be None).
        submitter_id: The invoice's original submitter, for strategy 3.

    Returns:
        Resolution with the Finance User id and the winning strategy, or
        ``UNRESOLVED``.
    """
    if pm_id is not None:
        fu_id = _direct_chain(snapshot, pm_id)
        if fu_id is not None:
            return Resolution(fu_id, Strategy.DIRECT_CHAIN)

        fu_id = _reverse_index(snapshot, pm_id)
        if fu_id is not None:
            return Resolution(fu_id, Strategy.REVERSE_INDEX)

    fu_id = _submitter_chain(snapshot, submitter_id)
    if fu_id is not None:
        return Resolution(fu_id, Strategy.SUBMITTER_CHAIN)

    return UNRESOLVED


def resolve_finance_user_for_pm(pm_id: int | None, submitter_id: int | None = None) -> Resolution:
    """Resolve against the live hierarchy."""
    result = resolve_finance_user(HierarchySnapshot.load(), pm_id, submitter_id)
    if result.resolved:
        logger.info(
            "Finance user %s resolved for PM %s via %s",
            result.finance_user_id, pm_id, result.strategy.value,
            extra={"pm_id": pm_id, "finance_user_id": result.finance_user_id,
                   "strategy": result.strategy.value},
        )
    else:
        logger.warning(
            "No finance user resolvable for PM %s (submitter %s)",
            pm_id, submitter_id,
            extra={"pm_id": pm_id, "submitter_id": submitter_id},
        )
    return result
