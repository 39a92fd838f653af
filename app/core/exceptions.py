"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ItemRequest", resource_id=42)
    raise ValidationError("Invalid step order", details={"steps": "..."})
    raise NoApproverError()

Workflow errors all derive from ``WorkflowError``:

    WorkflowError
    ├── AuthorizationError          403
    ├── NoApproverError             400
    ├── InvalidStateError           400
    ├── ConcurrentUpdateError       409
    └── WorkflowConfigurationError  logged, 500 if it escapes the engine
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ItemRequest").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a business rule (gap in step orders,
    missing strategy parameter, request without items).

    Maps to HTTP 422 in blueprint error handlers.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Approval workflow errors ─────────────────────────────────────────────────

class WorkflowError(Exception):
    """Base class for approval engine errors."""

    default_message = "Workflow error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class AuthorizationError(WorkflowError):
    """Acting user may not perform the operation. Maps to HTTP 403."""

    default_message = "Access denied"


class NoApproverError(WorkflowError):
    """A step resolved to zero approvers. Maps to HTTP 400."""

    default_message = "No approver found for this request"


class InvalidStateError(WorkflowError):
    """Operation is not allowed in the request's current status. Maps to HTTP 400."""

    default_message = "Request is not in a valid state for this action"


class WorkflowConfigurationError(WorkflowError):
    """The stored workflow cannot be used (no steps, bad pointer, unknown status).

    On submit the engine logs it and drives the legacy pipeline instead.
    """

    default_message = "Workflow configuration is invalid"


class ConcurrentUpdateError(WorkflowError):
    """Optimistic version check kept failing after all retries. Maps to HTTP 409."""

    default_message = "Request was modified concurrently, please retry"
