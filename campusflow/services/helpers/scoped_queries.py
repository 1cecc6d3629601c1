"""
Organisation-scoped query helpers.

Every list-style read composes ``AND(scope predicate, caller filters)``.
The scope predicate comes from the caller's resolved ``Scope``:

    admin                        → true()
    dean with a college          → college-level predicate
    head/manager with department → department-level predicate
    anything else / unresolved   → false()  (zero rows, never unrestricted)

Caller filters are appended with ``.where`` and can therefore only narrow.

Usage:
    stmt = apply_scope(
        select(User), scope,
        department_col=User.department_id,
    ).where(User.is_active.is_(True))

    req = get_in_scope(Request, rid, scope, requester_col=Request.requester_id)
"""

import logging

from sqlalchemy import false, select, true

from campusflow.core.exceptions import NotFoundError
from campusflow.models import db
from campusflow.models.org import Department, User

logger = logging.getLogger(__name__)


def scope_predicate(scope, *, department_col, college_col=None):
    """Return the boolean SQL expression bounding ``scope``.

    Args:
        scope: ``Scope`` from ``ScopeResolver``; None fails closed.
        department_col: Column holding the row's department id.
        college_col: Column holding the row's college id.  When omitted the
            college level is expressed as "department belongs to the college".
    """
    if scope is None:
        return false()

    level = scope.level
    if level == "all":
        return true()
    if level == "college":
        if college_col is not None:
            return college_col == scope.college_id
        return department_col.in_(
            select(Department.id).where(Department.college_id == scope.college_id)
        )
    if level == "department":
        return department_col == scope.department_id
    return false()


def requester_scope_predicate(scope, requester_col):
    """Scope rows owned by a user (requests, actions) via the owner's department."""
    if scope is not None and scope.unrestricted:
        return true()
    users_in_scope = select(User.id).where(
        scope_predicate(scope, department_col=User.department_id)
    )
    return requester_col.in_(users_in_scope)


def apply_scope(stmt, scope, *, department_col=None, college_col=None, requester_col=None):
    """Compose ``stmt`` with the scope predicate for the given columns."""
    if requester_col is not None:
        return stmt.where(requester_scope_predicate(scope, requester_col))
    if department_col is None:
        raise ValueError("apply_scope requires department_col or requester_col")
    return stmt.where(scope_predicate(scope, department_col=department_col, college_col=college_col))


def get_in_scope(model, pk, scope, **columns):
    """Fetch one row by PK inside ``scope``.

    Out-of-scope rows are indistinguishable from missing ones: both raise
    NotFoundError.
    """
    stmt = apply_scope(select(model).where(model.id == pk), scope, **columns)
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        logger.debug("Scoped lookup miss %s id=%s level=%s",
                     model.__name__, pk, getattr(scope, "level", None))
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return obj
