"""
Request read models: approver inbox, approver history, requester dashboard,
search and per-request detail.

Visibility of a single request:
    - the requester;
    - whoever may act on its current step (directly or, with delegated
      authority on, through an active grantor);
    - anyone who already recorded an action on it;
    - staff whose list scope covers the requester.

Anything else is reported as not found.
"""

import logging

from sqlalchemy import func, or_, select

from campusflow.core.exceptions import NotFoundError
from campusflow.models import db
from campusflow.models.request import (
    ACTIONABLE_STATUSES,
    DECISION_ACTIONS,
    REQUEST_STATUSES,
    STATUS_APPROVED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_RETURNED,
    Request,
    RequestAction,
)
from campusflow.models.workflow import FormTemplate, WorkflowStep
from campusflow.services import delegation_service
from campusflow.services.helpers.scoped_queries import requester_scope_predicate
from campusflow.services.request_lifecycle import (
    available_actions,
    binding_matches,
    can_resubmit,
    eligible_via,
)

logger = logging.getLogger(__name__)


def _step_predicate(users):
    """Steps bound to any of ``users`` directly or through their role."""
    clauses = []
    for user in users:
        clauses.append(WorkflowStep.approver_user_id == user.id)
        clauses.append(WorkflowStep.approver_role_id == user.role_id)
    return or_(*clauses)


def _summary(req, user, delegated_from=None):
    d = req.to_dict()
    d["available_actions"] = available_actions(req, user)
    d["can_resubmit"] = can_resubmit(req, user)
    if delegated_from is not None:
        d["delegated_from"] = {"id": delegated_from.id, "full_name": delegated_from.full_name}
    return d


# ── Inbox / history ──────────────────────────────────────────────────────────


def inbox(user, limit=50, offset=0):
    """Requests waiting on a step ``user`` may act on.

    Items sitting on a step of an active grantor are listed with
    ``delegated_from``; whether they are actionable follows
    ``DELEGATION_AUTHORITY_ENABLED``.
    """
    grantors = delegation_service.active_grantors(user.id)
    stmt = (
        select(Request)
        .join(WorkflowStep, WorkflowStep.id == Request.current_step_id)
        .where(
            Request.status.in_(ACTIONABLE_STATUSES),
            _step_predicate([user, *grantors]),
        )
    )
    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    rows = db.session.execute(
        stmt.order_by(Request.submitted_at.asc(), Request.id.asc()).limit(limit).offset(offset)
    ).scalars().all()

    items = []
    for req in rows:
        delegated_from = None
        step = req.current_step
        if not binding_matches(step.binding, user):
            delegated_from = next((g for g in grantors if binding_matches(step.binding, g)), None)
        items.append(_summary(req, user, delegated_from))
    return items, total


def history(user, limit=50, offset=0):
    """Decisions ``user`` has recorded, newest first."""
    stmt = (
        select(RequestAction)
        .where(RequestAction.actor_id == user.id, RequestAction.action.in_(DECISION_ACTIONS))
    )
    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    rows = db.session.execute(
        stmt.order_by(RequestAction.created_at.desc(), RequestAction.id.desc())
        .limit(limit).offset(offset)
    ).scalars().all()

    items = []
    for action in rows:
        d = action.to_dict()
        d["reference_no"] = action.request.reference_no
        d["form_name"] = action.request.form.name if action.request.form else None
        d["request_status"] = action.request.status
        items.append(d)
    return items, total


# ── Requester side ───────────────────────────────────────────────────────────


def my_requests(user, status=None, page=1, per_page=20):
    stmt = select(Request).where(Request.requester_id == user.id)
    if status:
        stmt = stmt.where(Request.status == status)
    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    rows = db.session.execute(
        stmt.order_by(Request.submitted_at.desc(), Request.id.desc())
        .limit(per_page).offset((page - 1) * per_page)
    ).scalars().all()
    return [_summary(r, user) for r in rows], total


def request_stats(user) -> dict:
    """Per-status counts of the user's own requests."""
    rows = db.session.execute(
        select(Request.status, func.count(Request.id))
        .where(Request.requester_id == user.id)
        .group_by(Request.status)
    ).all()
    counts = {status: 0 for status in REQUEST_STATUSES}
    counts.update({status: n for status, n in rows})
    return {
        "total": sum(counts.values()),
        "open": counts[STATUS_PENDING] + counts[STATUS_IN_PROGRESS],
        "approved": counts[STATUS_APPROVED],
        "rejected": counts[STATUS_REJECTED],
        "returned": counts[STATUS_RETURNED],
        "by_status": counts,
    }


def search_requests(user, scope, *, q=None, status=None, form_id=None,
                    since=None, until=None, page=1, per_page=20):
    """
    Search requests.

    Staff with a list scope search every requester in that scope; everyone
    else searches only their own requests.
    """
    if scope.is_resolved:
        base = requester_scope_predicate(scope, Request.requester_id)
    else:
        base = Request.requester_id == user.id

    stmt = select(Request).join(FormTemplate, FormTemplate.id == Request.form_id).where(base)
    if q:
        like = f"%{q.strip()}%"
        stmt = stmt.where(or_(Request.reference_no.ilike(like), FormTemplate.name.ilike(like)))
    if status:
        stmt = stmt.where(Request.status == status)
    if form_id is not None:
        stmt = stmt.where(Request.form_id == form_id)
    if since is not None:
        stmt = stmt.where(Request.submitted_at >= since)
    if until is not None:
        stmt = stmt.where(Request.submitted_at <= until)

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    rows = db.session.execute(
        stmt.order_by(Request.submitted_at.desc(), Request.id.desc())
        .limit(per_page).offset((page - 1) * per_page)
    ).scalars().all()
    return [_summary(r, user) for r in rows], total


# ── Single request ───────────────────────────────────────────────────────────


def _can_view(req, user, scope) -> bool:
    if req.requester_id == user.id:
        return True
    if req.current_step is not None and eligible_via(req.current_step, user) is not None:
        return True
    if req.current_step is not None:
        # Delegates see what lands in their inbox even without authority.
        for grantor in delegation_service.active_grantors(user.id):
            if binding_matches(req.current_step.binding, grantor):
                return True
    acted = db.session.execute(
        select(RequestAction.id)
        .where(RequestAction.request_id == req.id, RequestAction.actor_id == user.id)
        .limit(1)
    ).first()
    if acted is not None:
        return True
    if scope.is_resolved:
        in_scope = db.session.execute(
            select(Request.id).where(
                Request.id == req.id, requester_scope_predicate(scope, Request.requester_id),
            )
        ).first()
        return in_scope is not None
    return False


def get_visible_request(request_id, user, scope) -> Request:
    req = db.session.get(Request, request_id)
    if req is None or not _can_view(req, user, scope):
        logger.debug("Request %s hidden from user %s", request_id, user.id)
        raise NotFoundError("Request", request_id)
    return req


def request_detail(request_id, user, scope) -> dict:
    req = get_visible_request(request_id, user, scope)
    d = _summary(req, user)
    d["actions"] = [a.to_dict() for a in req.actions]
    d["attachments"] = [a.to_dict() for a in req.attachments]
    d["form_schema"] = list(req.form.schema or []) if req.form else []
    return d


def request_actions(request_id, user, scope) -> list[dict]:
    req = get_visible_request(request_id, user, scope)
    return [a.to_dict() for a in req.actions]
