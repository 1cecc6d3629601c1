"""
Caller identity resolution.

Authentication lives in front of this service; by the time a request reaches
a blueprint the gateway has put the caller's university id (or numeric user
id) in ``X-User-Id``.  ``current_user()`` turns that into an active ``User``
and memoises it on ``flask.g`` for the rest of the request.
"""

import logging

from flask import Flask, g, request

from campusflow.core.exceptions import IdentityRequiredError, UnauthorizedError
from campusflow.services.scope_resolver import ScopeResolver

logger = logging.getLogger(__name__)

IDENTITY_HEADER = "X-User-Id"


def init_identity(app: Flask):
    """Record the raw identity header on ``g`` and drop any earlier caller."""

    @app.before_request
    def _capture_identity():
        # ``g`` outlives the request when an app context is already pushed.
        g.pop("current_user", None)
        g.pop("current_scope", None)
        g.pop("current_user_key", None)
        g.identity = (request.headers.get(IDENTITY_HEADER) or "").strip() or None
        g.actor_id = None


def current_user():
    """Return the active ``User`` behind ``X-User-Id``.

    Raises:
        IdentityRequiredError: header missing.
        NotFoundError: no such user.
        UnauthorizedError: the account is deactivated.
    """
    identity = (request.headers.get(IDENTITY_HEADER) or "").strip() or None
    if not identity:
        raise IdentityRequiredError()

    cached = getattr(g, "current_user", None)
    if cached is not None and g.get("current_user_key") == identity:
        return cached

    user = ScopeResolver.lookup_user(identity)
    if not user.is_active:
        logger.info("Inactive user %s rejected", user.university_id,
                    extra={"actor_id": user.id, "event_type": "identity.inactive"})
        raise UnauthorizedError("User account is inactive")

    g.current_user = user
    g.current_user_key = identity
    g.actor_id = user.id
    return user


def current_scope():
    """Scope of the current user (see ``ScopeResolver.resolve``)."""
    user = current_user()
    cached = getattr(g, "current_scope", None)
    if cached is not None and cached.user_id == user.id:
        return cached
    scope = ScopeResolver.for_user(user)
    g.current_scope = scope
    return scope
