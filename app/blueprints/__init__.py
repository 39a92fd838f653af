"""
Item Request Approval Platform
Blueprint registry and shared blueprint helpers.
"""

import logging

from flask import current_app, request

from app.core.exceptions import (
    AuthorizationError,
    ConcurrentUpdateError,
    ConflictError,
    InvalidStateError,
    NoApproverError,
    NotFoundError,
    ValidationError,
    WorkflowConfigurationError,
)
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=None, max_limit=None):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default DEFAULT_PAGE_SIZE, capped at MAX_PAGE_SIZE)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    default_limit = default_limit or current_app.config.get("DEFAULT_PAGE_SIZE", 50)
    max_limit = max_limit or current_app.config.get("MAX_PAGE_SIZE", 200)
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def json_body():
    """Request JSON as a dict ({} for an empty or non-object body)."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp):
    """Map service-layer exceptions to the standard JSON error shape."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(AuthorizationError)
    def _handle_forbidden(error: AuthorizationError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(NoApproverError)
    def _handle_no_approver(error: NoApproverError):
        return api_error(E.NO_APPROVER, str(error))

    @bp.errorhandler(InvalidStateError)
    def _handle_invalid_state(error: InvalidStateError):
        return api_error(E.INVALID_STATE, str(error))

    @bp.errorhandler(ConcurrentUpdateError)
    def _handle_concurrent(error: ConcurrentUpdateError):
        return api_error(E.CONFLICT_STATE, str(error))

    @bp.errorhandler(WorkflowConfigurationError)
    def _handle_configuration(error: WorkflowConfigurationError):
        logger.error("Workflow configuration error at %s: %s", request.endpoint, error)
        return api_error(E.INTERNAL, "Workflow configuration error")

    return bp
