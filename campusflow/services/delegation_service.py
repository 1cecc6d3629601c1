"""Delegation registry: time-bounded grantor → grantee records.

Records are deactivated, never deleted.  ``active_grantors`` is the read
used by the inbox and, when ``DELEGATION_AUTHORITY_ENABLED`` is set, by the
step authorization check in ``request_lifecycle``.
"""

import logging

from sqlalchemy import or_, select

from campusflow.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from campusflow.models import db
from campusflow.models.delegation import Delegation
from campusflow.models.org import User
from campusflow.services.audit_service import record_audit
from campusflow.utils.helpers import ensure_aware, utcnow

logger = logging.getLogger(__name__)


def _validate_window(starts_at, ends_at):
    if starts_at is None or ends_at is None:
        raise ValidationError(
            "starts_at and ends_at are required",
            details={k: "required" for k, v in (("starts_at", starts_at), ("ends_at", ends_at)) if v is None},
        )
    if ensure_aware(ends_at) <= ensure_aware(starts_at):
        raise ValidationError(
            "Delegation must end after it starts",
            details={"ends_at": "must be after starts_at"},
        )


def _can_manage(delegation, actor, scope):
    return scope.unrestricted or delegation.grantor_id == actor.id


def create_delegation(actor, scope, *, grantee_id, starts_at, ends_at, reason=None, grantor_id=None):
    """Create an active delegation from ``grantor_id`` (default: actor) to ``grantee_id``."""
    grantor_id = grantor_id or actor.id
    if grantor_id != actor.id and not scope.unrestricted:
        raise UnauthorizedError("Only administrators may delegate on behalf of another user")

    grantor = db.session.get(User, grantor_id)
    if grantor is None:
        raise NotFoundError("User", grantor_id)
    grantee = db.session.get(User, grantee_id)
    if grantee is None:
        raise NotFoundError("User", grantee_id)
    if grantor.id == grantee.id:
        raise ValidationError("Cannot delegate to yourself", details={"grantee_id": "must differ from grantor"})
    if not grantee.is_active:
        raise ValidationError("Grantee is inactive", details={"grantee_id": "inactive user"})
    _validate_window(starts_at, ends_at)
    starts_at, ends_at = ensure_aware(starts_at), ensure_aware(ends_at)

    delegation = Delegation(
        grantor_id=grantor.id,
        grantee_id=grantee.id,
        starts_at=starts_at,
        ends_at=ends_at,
        reason=reason,
        is_active=True,
    )
    db.session.add(delegation)
    db.session.flush()
    record_audit(actor.id, "delegation.create", "delegation", delegation.id, {
        "grantor_id": grantor.id, "grantee_id": grantee.id,
        "starts_at": starts_at, "ends_at": ends_at,
    })
    db.session.commit()
    logger.info("Delegation %s created: %s -> %s", delegation.id, grantor.id, grantee.id,
                extra={"actor_id": actor.id, "event_type": "delegation.create"})
    return delegation


def get_delegation(delegation_id):
    delegation = db.session.get(Delegation, delegation_id)
    if delegation is None:
        raise NotFoundError("Delegation", delegation_id)
    return delegation


def update_delegation(actor, scope, delegation_id, *, starts_at=None, ends_at=None,
                      is_active=None, reason=None):
    """Update window / active flag; the window rule is checked on merged values."""
    delegation = get_delegation(delegation_id)
    if not _can_manage(delegation, actor, scope):
        raise UnauthorizedError("Only the grantor may change this delegation")

    new_start = starts_at if starts_at is not None else delegation.starts_at
    new_end = ends_at if ends_at is not None else delegation.ends_at
    _validate_window(new_start, new_end)
    starts_at, ends_at = ensure_aware(starts_at), ensure_aware(ends_at)

    changes = {}
    if starts_at is not None:
        delegation.starts_at = starts_at
        changes["starts_at"] = starts_at
    if ends_at is not None:
        delegation.ends_at = ends_at
        changes["ends_at"] = ends_at
    if is_active is not None:
        delegation.is_active = bool(is_active)
        changes["is_active"] = bool(is_active)
    if reason is not None:
        delegation.reason = reason
        changes["reason"] = reason

    db.session.flush()
    record_audit(actor.id, "delegation.update", "delegation", delegation.id, changes)
    db.session.commit()
    return delegation


def deactivate_delegation(actor, scope, delegation_id):
    delegation = get_delegation(delegation_id)
    if not _can_manage(delegation, actor, scope):
        raise UnauthorizedError("Only the grantor may deactivate this delegation")
    delegation.is_active = False
    db.session.flush()
    record_audit(actor.id, "delegation.deactivate", "delegation", delegation.id)
    db.session.commit()
    return delegation


def list_delegations(user_id, include_inactive=False):
    """Delegations where ``user_id`` is grantor or grantee."""
    stmt = select(Delegation).where(
        or_(Delegation.grantor_id == user_id, Delegation.grantee_id == user_id)
    )
    if not include_inactive:
        stmt = stmt.where(Delegation.is_active.is_(True))
    return db.session.execute(stmt.order_by(Delegation.starts_at.desc())).scalars().all()


def active_grantors(user_id, at=None) -> list[User]:
    """Users who have an active delegation to ``user_id`` covering ``at``."""
    at = ensure_aware(at) if at is not None else utcnow()
    return list(db.session.execute(
        select(User)
        .join(Delegation, Delegation.grantor_id == User.id)
        .where(
            Delegation.grantee_id == user_id,
            Delegation.is_active.is_(True),
            Delegation.starts_at <= at,
            Delegation.ends_at >= at,
            User.is_active.is_(True),
        )
        .order_by(User.id)
    ).scalars().unique())
