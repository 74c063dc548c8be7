"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes and error codes everywhere.  Every
exception carries a machine-readable ``code`` (see ``app.utils.errors.E``)
so callers can tell the kinds apart without parsing messages.

Kinds:
    NotFoundError           invoice or user id unknown               (404)
    UnauthorizedError       role may not use this action at all      (403)
      ForbiddenError        role fits, but actor not assigned        (403)
    InvalidTransitionError  current state forbids the move           (409)
    InvalidAssignmentError  hierarchy edit breaks the parent table   (422)
    UnresolvedRoutingError  Finance User could not be determined     (soft)
    ValidationError         malformed or unknown input               (400/422)
    ConflictError           duplicate unique value                   (409)

Usage:
    from app.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="Invoice", resource_id="inv-1")
    raise InvalidTransitionError("Cannot RESUBMIT from PENDING_PM_APPROVAL",
                                 current_status="PENDING_PM_APPROVAL",
                                 action="RESUBMIT")
"""

from app.utils.errors import E


class NotFoundError(Exception):
    """Raised when a requested invoice or user does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Invoice", "User").
        resource_id: The key that was looked up.
    """

    code = E.NOT_FOUND

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed JSON but not acceptable.

    Unknown action names and unknown role spellings end up here, as do
    missing required fields detected in the service layer.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = E.VALIDATION_INVALID

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = E.CONFLICT_DUPLICATE

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class WorkflowError(Exception):
    """Base for invoice workflow rejections.

    All subclasses are semantic rejections, never transient failures, so
    nothing in the platform retries them.
    """

    code = E.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        action: str | None = None,
        current_status: str | None = None,
        role: str | None = None,
    ) -> None:
        super().__init__(message)
        self.action = action
        self.current_status = current_status
        self.role = role

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "current_status": self.current_status,
            "role": self.role,
        }


class UnauthorizedError(WorkflowError):
    """The actor's role is never allowed to invoke this action."""

    code = E.UNAUTHORIZED


class ForbiddenError(UnauthorizedError):
    """The role may act, but this actor is not assigned to the invoice."""

    code = E.FORBIDDEN


class InvalidTransitionError(WorkflowError):
    """The role may use the action, but not from the current status.

    Also raised when the status moved between the caller's read and the
    engine's check (stale-state race).
    """

    code = E.INVALID_TRANSITION


class InvalidAssignmentError(Exception):
    """A hierarchy edit would violate the parent-role table.

    Args:
        message: Reason naming the allowed manager roles.
        child_role: Role of the user being assigned.
        manager_role: Role of the proposed manager.
    """

    code = E.INVALID_ASSIGNMENT

    def __init__(self, message: str, child_role: str | None = None, manager_role: str | None = None) -> None:
        super().__init__(message)
        self.child_role = child_role
        self.manager_role = manager_role


class UnresolvedRoutingError(Exception):
    """No Finance User could be derived for an invoice.

    Soft condition: the engine never raises this out of a transition.  It is
    attached to the successful ``TransitionResult`` as a warning so operators
    can find and fix the broken hierarchy link.
    """

    code = E.UNRESOLVED_ROUTING

    def __init__(self, invoice_id: str, pm_id: int | None = None) -> None:
        self.invoice_id = invoice_id
        self.pm_id = pm_id
        super().__init__(
            f"Invoice {invoice_id} could not be routed to a Finance User"
            + (f" (assigned PM id={pm_id})" if pm_id is not None else " (no PM assigned)")
        )

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), "invoice_id": self.invoice_id, "pm_id": self.pm_id}
