"""
Scoped reporting.

Every report is bounded by the caller's ``Scope`` on the requester's
department / college, so a dean's numbers cover their college and a head's
cover their department.  Unresolved scopes produce empty reports.

Response time of a decision is measured from the moment the request reached
the decided step (the previous action on the request: submit, resubmit or
the previous decision) to the decision itself.  SLA hours on a step are
reported against, never enforced.
"""

import logging
from collections import defaultdict

from sqlalchemy import func, select

from campusflow.core.exceptions import UnauthorizedError
from campusflow.models import db
from campusflow.models.org import User
from campusflow.models.request import (
    ACTION_APPROVE,
    ACTION_APPROVE_WITH_CHANGES,
    ACTION_REJECT,
    ACTION_REJECT_WITH_CHANGES,
    ACTIONABLE_STATUSES,
    DECISION_ACTIONS,
    REQUEST_STATUSES,
    TERMINAL_STATUSES,
    Request,
    RequestAction,
)
from campusflow.models.workflow import FormTemplate, Workflow, WorkflowStep
from campusflow.services.helpers.scoped_queries import requester_scope_predicate
from campusflow.utils.helpers import ensure_aware

logger = logging.getLogger(__name__)

APPROVING_ACTIONS = frozenset({ACTION_APPROVE, ACTION_APPROVE_WITH_CHANGES})
REJECTING_ACTIONS = frozenset({ACTION_REJECT, ACTION_REJECT_WITH_CHANGES})


def _hours(start, end):
    return (ensure_aware(end) - ensure_aware(start)).total_seconds() / 3600.0


def _rate(part, whole):
    return round(part / whole * 100, 1) if whole else 0.0


def _mean(values):
    return round(sum(values) / len(values), 2) if values else None


def _scoped_requests(scope, since=None, until=None):
    stmt = select(Request).where(requester_scope_predicate(scope, Request.requester_id))
    if since is not None:
        stmt = stmt.where(Request.submitted_at >= since)
    if until is not None:
        stmt = stmt.where(Request.submitted_at <= until)
    return stmt


def _decision_timeline(scope, since=None, until=None):
    """Yield ``(action, arrived_at, step)`` for each decision in scope."""
    request_ids = _scoped_requests(scope, since, until).with_only_columns(Request.id)
    actions = db.session.execute(
        select(RequestAction)
        .where(RequestAction.request_id.in_(request_ids))
        .order_by(RequestAction.request_id, RequestAction.created_at, RequestAction.id)
    ).scalars().all()

    previous = {}
    for action in actions:
        arrived_at = previous.get(action.request_id)
        previous[action.request_id] = action.created_at
        if action.action in DECISION_ACTIONS and arrived_at is not None:
            yield action, arrived_at, action.step


# ── Status breakdown ─────────────────────────────────────────────────────────


def status_breakdown(scope, since=None, until=None) -> dict:
    """Request counts by status, overall and per form."""
    base = _scoped_requests(scope, since, until).subquery()
    rows = db.session.execute(
        select(base.c.form_id, FormTemplate.name, base.c.status, func.count())
        .join(FormTemplate, FormTemplate.id == base.c.form_id)
        .group_by(base.c.form_id, FormTemplate.name, base.c.status)
    ).all()

    overall = {status: 0 for status in REQUEST_STATUSES}
    forms = {}
    for form_id, form_name, status, count in rows:
        overall[status] = overall.get(status, 0) + count
        entry = forms.setdefault(form_id, {
            "form_id": form_id,
            "form_name": form_name,
            "total": 0,
            "by_status": {s: 0 for s in REQUEST_STATUSES},
        })
        entry["total"] += count
        entry["by_status"][status] = entry["by_status"].get(status, 0) + count

    return {
        "total": sum(overall.values()),
        "by_status": overall,
        "by_form": sorted(forms.values(), key=lambda f: (-f["total"], f["form_name"])),
    }


# ── SLA compliance ───────────────────────────────────────────────────────────


def sla_compliance(scope, since=None, until=None) -> dict:
    """Decisions on steps with ``sla_hours``, split into within / breached."""
    per_step = {}
    within = breached = 0
    for action, arrived_at, step in _decision_timeline(scope, since, until):
        if step is None or not step.sla_hours:
            continue
        elapsed = _hours(arrived_at, action.created_at)
        ok = elapsed <= step.sla_hours
        within += ok
        breached += not ok
        entry = per_step.setdefault(step.id, {
            "step_id": step.id,
            "step_name": step.name,
            "workflow_id": step.workflow_id,
            "sla_hours": step.sla_hours,
            "within_sla": 0,
            "breached": 0,
            "_hours": [],
        })
        entry["within_sla" if ok else "breached"] += 1
        entry["_hours"].append(elapsed)

    steps = []
    for entry in per_step.values():
        durations = entry.pop("_hours")
        entry["mean_response_hours"] = _mean(durations)
        entry["compliance_rate"] = _rate(entry["within_sla"], entry["within_sla"] + entry["breached"])
        steps.append(entry)

    evaluated = within + breached
    return {
        "evaluated": evaluated,
        "within_sla": within,
        "breached": breached,
        "compliance_rate": _rate(within, evaluated),
        "by_step": sorted(steps, key=lambda s: (s["workflow_id"], s["step_id"])),
    }


# ── Approver performance ─────────────────────────────────────────────────────


def approver_performance(scope, since=None, until=None) -> list[dict]:
    stats = defaultdict(lambda: {"actions": 0, "approvals": 0, "rejections": 0, "returns": 0, "_hours": []})
    for action, arrived_at, _step in _decision_timeline(scope, since, until):
        entry = stats[action.actor_id]
        entry["actions"] += 1
        if action.action in APPROVING_ACTIONS:
            entry["approvals"] += 1
        if action.action in REJECTING_ACTIONS:
            entry["rejections"] += 1
        if action.action in (ACTION_APPROVE_WITH_CHANGES, ACTION_REJECT_WITH_CHANGES):
            entry["returns"] += 1
        entry["_hours"].append(_hours(arrived_at, action.created_at))

    if not stats:
        return []
    users = {
        u.id: u for u in db.session.execute(select(User).where(User.id.in_(stats.keys()))).scalars()
    }

    result = []
    for actor_id, entry in stats.items():
        user = users.get(actor_id)
        durations = entry.pop("_hours")
        result.append({
            "actor_id": actor_id,
            "actor_name": user.full_name if user else None,
            "role": user.role_name if user else None,
            **entry,
            "approval_rate": _rate(entry["approvals"], entry["actions"]),
            "mean_response_hours": _mean(durations),
        })
    return sorted(result, key=lambda r: (-r["actions"], r["actor_name"] or ""))


# ── Processing time ──────────────────────────────────────────────────────────


def processing_time(scope, since=None, until=None) -> list[dict]:
    """Mean submit-to-terminal hours per form."""
    terminal = db.session.execute(
        _scoped_requests(scope, since, until).where(Request.status.in_(TERMINAL_STATUSES))
    ).scalars().all()
    if not terminal:
        return []

    finished_at = dict(db.session.execute(
        select(RequestAction.request_id, func.max(RequestAction.created_at))
        .where(
            RequestAction.request_id.in_([r.id for r in terminal]),
            RequestAction.action.in_(DECISION_ACTIONS),
        )
        .group_by(RequestAction.request_id)
    ).all())

    per_form = defaultdict(list)
    names = {}
    for req in terminal:
        done = finished_at.get(req.id)
        if done is None:
            continue
        per_form[req.form_id].append(_hours(req.submitted_at, done))
        names[req.form_id] = req.form.name if req.form else None

    return sorted(
        (
            {
                "form_id": form_id,
                "form_name": names[form_id],
                "completed": len(durations),
                "mean_hours": _mean(durations),
                "max_hours": round(max(durations), 2),
            }
            for form_id, durations in per_form.items()
        ),
        key=lambda r: r["form_id"],
    )


# ── Admin dashboard ──────────────────────────────────────────────────────────


def admin_stats(scope) -> dict:
    if not scope.unrestricted:
        raise UnauthorizedError("Only administrators can view system statistics")

    def count(stmt):
        return db.session.execute(stmt).scalar() or 0

    return {
        "users": count(select(func.count(User.id))),
        "active_users": count(select(func.count(User.id)).where(User.is_active.is_(True))),
        "forms": count(select(func.count(FormTemplate.id))),
        "active_forms": count(select(func.count(FormTemplate.id)).where(FormTemplate.is_active.is_(True))),
        "workflows": count(select(func.count(Workflow.id))),
        "workflow_steps": count(select(func.count(WorkflowStep.id))),
        "requests": count(select(func.count(Request.id))),
        "open_requests": count(select(func.count(Request.id)).where(Request.status.in_(ACTIONABLE_STATUSES))),
        "decisions": count(
            select(func.count(RequestAction.id)).where(RequestAction.action.in_(DECISION_ACTIONS))
        ),
    }
