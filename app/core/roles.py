"""
Role vocabulary for the management hierarchy.

Role strings arrive in many spellings ("PM", "Project Manager",
"finance user", "Finance_User", ...).  They are normalized into the closed
``Role`` enum at the boundary; services and models only ever see ``Role``.

Usage:
    from app.core.roles import Role, normalize_role

    role = normalize_role("Project Manager")   # -> Role.PROJECT_MANAGER
"""

from __future__ import annotations

from enum import Enum

from app.core.exceptions import ValidationError


class Role(str, Enum):
    """The four hierarchy levels, top to bottom."""
    ADMIN = "Admin"
    FINANCE_USER = "FinanceUser"
    PROJECT_MANAGER = "ProjectManager"
    VENDOR = "Vendor"


# Fixed chain: index 0 is the root.
HIERARCHY_CHAIN: tuple[Role, ...] = (
    Role.ADMIN,
    Role.FINANCE_USER,
    Role.PROJECT_MANAGER,
    Role.VENDOR,
)

# child role -> the only role allowed to manage it
MANAGER_ROLE: dict[Role, Role] = {
    Role.FINANCE_USER: Role.ADMIN,
    Role.PROJECT_MANAGER: Role.FINANCE_USER,
    Role.VENDOR: Role.PROJECT_MANAGER,
}

_ALIASES: dict[str, Role] = {
    "admin": Role.ADMIN,
    "administrator": Role.ADMIN,
    "financeuser": Role.FINANCE_USER,
    "finance": Role.FINANCE_USER,
    "fu": Role.FINANCE_USER,
    "projectmanager": Role.PROJECT_MANAGER,
    "pm": Role.PROJECT_MANAGER,
    "vendor": Role.VENDOR,
}


def _squash(value: str) -> str:
    return "".join(ch for ch in value.lower() if ch.isalnum())


def normalize_role(value: str | Role | None) -> Role:
    """Map any accepted spelling to a ``Role``.

    Raises:
        ValidationError: for empty or unknown role strings.
    """
    if isinstance(value, Role):
        return value
    if not value or not str(value).strip():
        raise ValidationError("Role is required", details={"role": "missing"})
    role = _ALIASES.get(_squash(str(value)))
    if role is None:
        raise ValidationError(
            f"Unknown role '{value}'",
            details={"role": f"must be one of: {', '.join(r.value for r in Role)}"},
        )
    return role


def hierarchy_level(role: Role) -> int:
    """0 for Admin, 3 for Vendor."""
    return HIERARCHY_CHAIN.index(role)
