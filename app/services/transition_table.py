"""
Invoice Transition Table

Declarative ``(status, action) → target`` map plus the role gates that are
evaluated before it.  The table is immutable and built once at import time;
``WorkflowEngine`` receives it as a constructor argument.

Edges shared by every role that may use an action:

    SUBMITTED               APPROVE → PENDING_PM_APPROVAL     (Admin accept)
                            REJECT → PM_REJECTED
                            REQUEST_INFO → MORE_INFO_NEEDED
    PENDING_PM_APPROVAL     APPROVE → PENDING_FINANCE_REVIEW
                            REJECT → PM_REJECTED
                            REQUEST_INFO → MORE_INFO_NEEDED
    PENDING_FINANCE_REVIEW  APPROVE → FINANCE_APPROVED
                            REJECT → FINANCE_REJECTED
                            REQUEST_INFO → MORE_INFO_NEEDED
                            SEND_BACK → PENDING_PM_APPROVAL
    MORE_INFO_NEEDED        APPROVE → info-return destination
                            REJECT → PM_REJECTED
                            REQUEST_INFO → MORE_INFO_NEEDED
                            RESUBMIT → PENDING_PM_APPROVAL
    PM_REJECTED             RESTORE → PENDING_PM_APPROVAL
    FINANCE_REJECTED        RESTORE → PENDING_PM_APPROVAL

A ProjectManager APPROVE is always the PM sign-off, so it overrides the
shared edge and goes straight to PENDING_FINANCE_REVIEW from SUBMITTED and
MORE_INFO_NEEDED as well.

Usage:
    from app.services.transition_table import DEFAULT_TRANSITIONS

    DEFAULT_TRANSITIONS.target(Role.PROJECT_MANAGER, InvoiceStatus.SUBMITTED,
                               WorkflowAction.APPROVE, ApprovalStatus.PENDING)
    # -> InvoiceStatus.PENDING_FINANCE_REVIEW
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from app.core.roles import Role
from app.models.invoice import (
    RESTORABLE_STATUSES,
    TERMINAL_STATUSES,
    ApprovalStatus,
    InvoiceStatus,
    WorkflowAction,
)

S = InvoiceStatus
A = WorkflowAction

# Marker target for MORE_INFO_NEEDED + APPROVE
INFO_RETURN = "INFO_RETURN"


def info_return_destination(finance_status: ApprovalStatus) -> InvoiceStatus:
    """Where an info request returns to once it is answered.

    Finance asked → back to Finance review.  PM asked, or nobody can tell →
    back to the PM.
    """
    if finance_status == ApprovalStatus.INFO_REQUESTED:
        return S.PENDING_FINANCE_REVIEW
    return S.PENDING_PM_APPROVAL


@dataclass(frozen=True)
class TransitionTable:
    """Immutable transition map with role gates.

    Attributes:
        edges: ``(status, action) → target`` shared by all permitted roles.
            A target of ``INFO_RETURN`` is resolved from the approvals.
        role_edges: ``(role, status, action) → target`` overrides.
        action_roles: ``action → roles`` that may ever invoke it.
        role_states: ``role → statuses`` in which the role may act at all.
    """

    edges: Mapping[tuple[InvoiceStatus, WorkflowAction], InvoiceStatus | str]
    role_edges: Mapping[tuple[Role, InvoiceStatus, WorkflowAction], InvoiceStatus]
    action_roles: Mapping[WorkflowAction, frozenset[Role]]
    role_states: Mapping[Role, frozenset[InvoiceStatus]]

    # ── Role gates ───────────────────────────────────────────────────────

    def roles_for(self, action: WorkflowAction) -> frozenset[Role]:
        return self.action_roles.get(action, frozenset())

    def may_invoke(self, role: Role, action: WorkflowAction) -> bool:
        return role in self.roles_for(action)

    def may_act_in(self, role: Role, status: InvoiceStatus) -> bool:
        return status in self.role_states.get(role, frozenset())

    # ── Lookup ───────────────────────────────────────────────────────────

    def target(
        self,
        role: Role,
        status: InvoiceStatus,
        action: WorkflowAction,
        finance_status: ApprovalStatus = ApprovalStatus.PENDING,
    ) -> InvoiceStatus | None:
        """Resolve the destination, or None when the move is not in the table."""
        override = self.role_edges.get((role, status, action))
        if override is not None:
            return override
        target = self.edges.get((status, action))
        if target == INFO_RETURN:
            return info_return_destination(finance_status)
        return target

    def available_actions(
        self,
        role: Role,
        status: InvoiceStatus,
        finance_status: ApprovalStatus = ApprovalStatus.PENDING,
    ) -> list[WorkflowAction]:
        """Actions *role* could invoke from *status*, in declaration order."""
        if not self.may_act_in(role, status):
            return []
        return [
            action for action in WorkflowAction
            if self.may_invoke(role, action)
            and self.target(role, status, action, finance_status) is not None
        ]

    def to_dict(self) -> dict:
        return {
            "edges": [
                {"from": status.value, "action": action.value,
                 "to": INFO_RETURN if target == INFO_RETURN else target.value}
                for (status, action), target in self.edges.items()
            ],
            "role_edges": [
                {"role": role.value, "from": status.value, "action": action.value, "to": target.value}
                for (role, status, action), target in self.role_edges.items()
            ],
            "action_roles": {
                action.value: sorted(r.value for r in roles) for action, roles in self.action_roles.items()
            },
        }


def build_transition_table() -> TransitionTable:
    """Assemble the invoice workflow table."""
    edges = {
        (S.SUBMITTED, A.APPROVE): S.PENDING_PM_APPROVAL,
        (S.SUBMITTED, A.REJECT): S.PM_REJECTED,
        (S.SUBMITTED, A.REQUEST_INFO): S.MORE_INFO_NEEDED,

        (S.PENDING_PM_APPROVAL, A.APPROVE): S.PENDING_FINANCE_REVIEW,
        (S.PENDING_PM_APPROVAL, A.REJECT): S.PM_REJECTED,
        (S.PENDING_PM_APPROVAL, A.REQUEST_INFO): S.MORE_INFO_NEEDED,

        (S.PENDING_FINANCE_REVIEW, A.APPROVE): S.FINANCE_APPROVED,
        (S.PENDING_FINANCE_REVIEW, A.REJECT): S.FINANCE_REJECTED,
        (S.PENDING_FINANCE_REVIEW, A.REQUEST_INFO): S.MORE_INFO_NEEDED,
        (S.PENDING_FINANCE_REVIEW, A.SEND_BACK): S.PENDING_PM_APPROVAL,

        (S.MORE_INFO_NEEDED, A.APPROVE): INFO_RETURN,
        (S.MORE_INFO_NEEDED, A.REJECT): S.PM_REJECTED,
        (S.MORE_INFO_NEEDED, A.REQUEST_INFO): S.MORE_INFO_NEEDED,
        (S.MORE_INFO_NEEDED, A.RESUBMIT): S.PENDING_PM_APPROVAL,
    }
    edges.update({(status, A.RESTORE): S.PENDING_PM_APPROVAL for status in RESTORABLE_STATUSES})

    role_edges = {
        (Role.PROJECT_MANAGER, S.SUBMITTED, A.APPROVE): S.PENDING_FINANCE_REVIEW,
        (Role.PROJECT_MANAGER, S.MORE_INFO_NEEDED, A.APPROVE): S.PENDING_FINANCE_REVIEW,
    }

    reviewers = frozenset({Role.PROJECT_MANAGER, Role.FINANCE_USER, Role.ADMIN})
    action_roles = {
        A.APPROVE: reviewers,
        A.REJECT: reviewers,
        A.REQUEST_INFO: reviewers,
        A.RESUBMIT: frozenset({Role.VENDOR}),
        A.SEND_BACK: frozenset({Role.FINANCE_USER, Role.ADMIN}),
        A.RESTORE: frozenset({Role.ADMIN}),
    }

    non_terminal = frozenset(s for s in S if s not in TERMINAL_STATUSES)
    role_states = {
        Role.PROJECT_MANAGER: frozenset({S.SUBMITTED, S.PENDING_PM_APPROVAL, S.MORE_INFO_NEEDED}),
        Role.FINANCE_USER: frozenset({S.PENDING_FINANCE_REVIEW}),
        Role.VENDOR: frozenset({S.MORE_INFO_NEEDED}),
        Role.ADMIN: non_terminal | RESTORABLE_STATUSES,
    }

    return TransitionTable(
        edges=MappingProxyType(edges),
        role_edges=MappingProxyType(role_edges),
        action_roles=MappingProxyType(action_roles),
        role_states=MappingProxyType(role_states),
    )


DEFAULT_TRANSITIONS = build_transition_table()
