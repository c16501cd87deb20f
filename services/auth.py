"""Actor identification and authorization.

Authentication happens upstream; the gateway in front of this service
forwards the authenticated actor in ``X-Actor`` and the actor's role in
``X-Actor-Role``.  Both are copied onto ``flask.g`` per request.
"""

from __future__ import annotations

import logging
from functools import wraps

from flask import g, has_request_context

from errors import PermissionDeniedError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

ROLE_PERMISSIONS = {
    "admin": {"manage_catalog", "manage_billing", "manage_partners", "view_billing"},
    "billing": {"manage_billing", "view_billing"},
    "tenant": {"view_billing"},
}


def get_current_actor() -> str:
    """Return the acting user for audit purposes, ``system`` for jobs."""
    if not has_request_context():
        return SYSTEM_ACTOR
    return getattr(g, "actor", None) or SYSTEM_ACTOR


def get_current_role() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "actor_role", None) or ""


def role_required(permission: str):
    """Decorator that checks the actor's role grants *permission*."""

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            role = get_current_role()
            if permission not in ROLE_PERMISSIONS.get(role, set()):
                logger.warning(
                    "Actor %s (role %r) denied %s", get_current_actor(), role, permission
                )
                raise PermissionDeniedError(f"Permission '{permission}' required.")
            return f(*args, **kwargs)

        return decorated

    return decorator
