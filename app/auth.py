"""
Item Request Approval Platform
Acting-user resolution & role guard.

Token issuance lives in the upstream gateway; by the time a request reaches
this service the gateway has authenticated it and forwards the directory
user id in the ``X-User-Id`` header.

Provides:
    - init_auth(app): before_request hook that loads ``g.current_user``
    - require_user: decorator, 401 when no active user is attached
    - require_role(*roles): decorator, 403 unless the user has one of *roles*
      (super_administrator always passes)
"""

import functools
import logging

from flask import g, request

from app.models import db
from app.models.directory import ADMIN_ROLE, User
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


def _load_user_from_header():
    raw = request.headers.get(USER_HEADER, "").strip()
    if not raw:
        return None
    try:
        user_id = int(raw)
    except ValueError:
        logger.warning("Malformed %s header: %r", USER_HEADER, raw[:20])
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        logger.warning("Unknown or inactive user id=%s in %s header", user_id, USER_HEADER)
        return None
    return user


def current_user():
    """The acting ``User`` for this request, or None."""
    return getattr(g, "current_user", None)


# ── Decorators ───────────────────────────────────────────────────────────────

def require_user(f):
    """Decorator: require an authenticated, active directory user."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if current_user() is None:
            return api_error(E.UNAUTHORIZED, "Authentication required")
        return f(*args, **kwargs)

    return decorated


def require_role(*roles: str):
    """
    Decorator: require one of *roles*.

    Usage:
        @require_user
        @require_role("super_administrator")
        def delete_workflow(wid): ...
    """
    allowed = set(roles) | {ADMIN_ROLE}

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = current_user()
            if user is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")
            if user.role not in allowed:
                logger.warning(
                    "Access denied: role '%s' tried to access %s (requires %s)",
                    user.role, request.path, sorted(allowed),
                )
                return api_error(E.FORBIDDEN, "Insufficient permissions")
            return f(*args, **kwargs)
        return decorated
    return decorator


def init_auth(app):
    """Attach ``g.current_user`` for every API request."""

    @app.before_request
    def _before_request_auth():
        g.current_user = None
        if not request.path.startswith("/api/v1/"):
            return None
        if request.method == "OPTIONS":
            return None
        g.current_user = _load_user_from_header()
        return None
