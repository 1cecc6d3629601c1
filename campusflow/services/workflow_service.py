"""Workflow definition store.

Read path (used by the lifecycle engine):
    ordered_steps / first_step / next_step

Admin path:
    create_workflow / update_workflow / delete_workflow / assign_workflow

Step order is always stored dense (1..n) in the order given by the caller.
Steps keep their ids across updates when the caller echoes ``id`` back, so
requests sitting on a step are not orphaned by an edit.
"""

import logging

from sqlalchemy import func, select

from campusflow.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from campusflow.models import db
from campusflow.models.org import Role, User
from campusflow.models.request import ACTIONABLE_STATUSES, STATUS_RETURNED, Request
from campusflow.models.workflow import FormTemplate, RequestType, RoleBinding, UserBinding, Workflow, WorkflowStep
from campusflow.services.audit_service import record_audit

logger = logging.getLogger(__name__)

_OPEN_STATUSES = tuple(ACTIONABLE_STATUSES | {STATUS_RETURNED})


# ═════════════════════════════════════════════════════════════════════════════
# Read path
# ═════════════════════════════════════════════════════════════════════════════


def ordered_steps(workflow_id) -> list[WorkflowStep]:
    return list(db.session.execute(
        select(WorkflowStep)
        .where(WorkflowStep.workflow_id == workflow_id)
        .order_by(WorkflowStep.order, WorkflowStep.id)
    ).scalars())


def first_step(workflow) -> WorkflowStep | None:
    if workflow is None:
        return None
    return db.session.execute(
        select(WorkflowStep)
        .where(WorkflowStep.workflow_id == workflow.id)
        .order_by(WorkflowStep.order, WorkflowStep.id)
        .limit(1)
    ).scalar_one_or_none()


def next_step(step: WorkflowStep) -> WorkflowStep | None:
    """Sibling after ``step`` in its workflow, by position rather than index."""
    return db.session.execute(
        select(WorkflowStep)
        .where(WorkflowStep.workflow_id == step.workflow_id, WorkflowStep.order > step.order)
        .order_by(WorkflowStep.order, WorkflowStep.id)
        .limit(1)
    ).scalar_one_or_none()


def get_workflow(workflow_id) -> Workflow:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        raise NotFoundError("Workflow", workflow_id)
    return workflow


def list_workflows(active_only=False):
    stmt = select(Workflow).order_by(Workflow.name, Workflow.id)
    if active_only:
        stmt = stmt.where(Workflow.is_active.is_(True))
    return db.session.execute(stmt).scalars().all()


def list_request_types():
    return db.session.execute(select(RequestType).order_by(RequestType.label)).scalars().all()


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def _require_manager(scope):
    if not scope.is_resolved:
        raise UnauthorizedError("Only administrators, deans and department heads manage workflows")


def _as_positive_int(value, field, errors):
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        errors[field] = "must be an integer"
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors[field] = "must be an integer"
        return None
    if number <= 0:
        errors[field] = "must be positive"
        return None
    return number


def _check_user_in_scope(approver: User, scope, errors, field):
    """Deans pick users from their college, heads from their department."""
    if scope.unrestricted:
        return
    if scope.is_dean and approver.college_id != scope.college_id:
        errors[field] = f"{approver.full_name} is outside your college"
    elif scope.is_department_head and approver.department_id != scope.department_id:
        errors[field] = f"{approver.full_name} is outside your department"


def validate_steps(steps_data, scope) -> list[dict]:
    """Validate a step list and return normalised dicts with dense ``order``.

    Raises:
        ValidationError: empty list, missing names, bad or double bindings,
            unknown roles / users, users outside the caller's scope.
    """
    if not isinstance(steps_data, list) or not steps_data:
        raise ValidationError("A workflow needs at least one step", details={"steps": "required"})

    errors: dict = {}
    indexed = []
    for idx, raw in enumerate(steps_data):
        prefix = f"steps[{idx}]"
        if not isinstance(raw, dict):
            errors[prefix] = "must be an object"
            continue

        name = (raw.get("name") or "").strip()
        if not name:
            errors[f"{prefix}.name"] = "required"

        role_id = _as_positive_int(raw.get("approver_role_id"), f"{prefix}.approver_role_id", errors)
        user_id = _as_positive_int(raw.get("approver_user_id"), f"{prefix}.approver_user_id", errors)
        if (role_id is None) == (user_id is None):
            errors[f"{prefix}.approver"] = "exactly one of approver_role_id / approver_user_id is required"

        if role_id is not None and db.session.get(Role, role_id) is None:
            errors[f"{prefix}.approver_role_id"] = "unknown role"
        if user_id is not None:
            approver = db.session.get(User, user_id)
            if approver is None:
                errors[f"{prefix}.approver_user_id"] = "unknown user"
            elif not approver.is_active:
                errors[f"{prefix}.approver_user_id"] = "user is inactive"
            else:
                _check_user_in_scope(approver, scope, errors, f"{prefix}.approver_user_id")

        escalation_role_id = _as_positive_int(
            raw.get("escalation_role_id"), f"{prefix}.escalation_role_id", errors,
        )
        if escalation_role_id is not None and db.session.get(Role, escalation_role_id) is None:
            errors[f"{prefix}.escalation_role_id"] = "unknown role"
        sla_hours = _as_positive_int(raw.get("sla_hours"), f"{prefix}.sla_hours", errors)

        try:
            sort_key = float(raw.get("order", idx + 1))
        except (TypeError, ValueError):
            errors[f"{prefix}.order"] = "must be a number"
            sort_key = float(idx + 1)

        indexed.append((sort_key, idx, {
            "id": raw.get("id"),
            "name": name,
            "binding": UserBinding(user_id) if user_id is not None else RoleBinding(role_id),
            "sla_hours": sla_hours,
            "escalation_role_id": escalation_role_id,
            "is_final": bool(raw.get("is_final", False)),
        }))

    if errors:
        raise ValidationError("Invalid workflow steps", details=errors)

    indexed.sort(key=lambda item: (item[0], item[1]))
    normalized = []
    for position, (_, _, step) in enumerate(indexed, start=1):
        step["order"] = position
        normalized.append(step)
    # Only the last step is final.
    for step in normalized:
        step["is_final"] = step["order"] == len(normalized)
    return normalized


# ═════════════════════════════════════════════════════════════════════════════
# Admin path
# ═════════════════════════════════════════════════════════════════════════════


def create_workflow(actor, scope, data) -> Workflow:
    _require_manager(scope)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Workflow name is required", details={"name": "required"})
    steps = validate_steps(data.get("steps"), scope)

    workflow = Workflow(name=name, is_active=bool(data.get("is_active", True)))
    db.session.add(workflow)
    db.session.flush()
    for step in steps:
        db.session.add(build_step(workflow.id, step))
    db.session.flush()

    record_audit(actor.id, "create", "workflow", workflow.id, {
        "name": name, "steps": len(steps),
    })
    db.session.commit()
    logger.info("Workflow %s created with %d steps", workflow.id, len(steps),
                extra={"actor_id": actor.id, "event_type": "workflow.create"})
    return workflow


def build_step(workflow_id, step) -> WorkflowStep:
    row = WorkflowStep(
        workflow_id=workflow_id,
        name=step["name"],
        order=step["order"],
        sla_hours=step["sla_hours"],
        escalation_role_id=step["escalation_role_id"],
        is_final=step["is_final"],
    )
    row.binding = step["binding"]
    return row


def _open_requests_on(step_ids) -> int:
    if not step_ids:
        return 0
    return db.session.execute(
        select(func.count(Request.id)).where(
            Request.current_step_id.in_(step_ids),
            Request.status.in_(_OPEN_STATUSES),
        )
    ).scalar_one()


def ensure_rebind_allowed(new_workflow_id, *, request_type_id=None, form_id=None):
    """Refuse to rebind while open requests sit on steps of another workflow.

    Give ``request_type_id`` to cover every form of that type, or ``form_id``
    for a single form.

    Raises:
        ConflictError: open requests would be left on a foreign step chain.
    """
    stmt = (
        select(func.count(Request.id))
        .join(WorkflowStep, WorkflowStep.id == Request.current_step_id)
        .where(Request.status.in_(_OPEN_STATUSES))
    )
    if new_workflow_id is not None:
        stmt = stmt.where(WorkflowStep.workflow_id != new_workflow_id)
    if form_id is not None:
        stmt = stmt.where(Request.form_id == form_id)
    else:
        stmt = stmt.join(FormTemplate, FormTemplate.id == Request.form_id).where(
            FormTemplate.request_type_id == request_type_id
        )
    blocked = db.session.execute(stmt).scalar_one()
    if blocked:
        raise ConflictError(
            "Request", "status", blocked,
            message=f"Cannot change the workflow while {blocked} open request(s) are on its steps",
        )


def update_workflow(actor, scope, workflow_id, data) -> Workflow:
    """Update name / active flag and, when ``steps`` is given, replace the chain.

    Steps whose ``id`` is echoed back are updated in place; others are created.
    Removing a step that an open request currently sits on is refused.
    """
    _require_manager(scope)
    workflow = get_workflow(workflow_id)
    changed = []

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Workflow name is required", details={"name": "required"})
        workflow.name = name
        changed.append("name")
    if "is_active" in data:
        workflow.is_active = bool(data["is_active"])
        changed.append("is_active")

    if data.get("steps") is not None:
        steps = validate_steps(data["steps"], scope)
        existing = {s.id: s for s in workflow.steps}
        kept_ids = set()
        for step in steps:
            try:
                sid = int(step["id"]) if step["id"] is not None else None
            except (TypeError, ValueError):
                sid = None
            if sid in existing:
                kept_ids.add(sid)
            else:
                step["id"] = None

        removed = [sid for sid in existing if sid not in kept_ids]
        if _open_requests_on(removed):
            raise ConflictError(
                "Workflow", "steps", workflow_id,
                message="Cannot remove a step while open requests are waiting on it",
            )

        for sid in removed:
            db.session.delete(existing[sid])
        # Park kept steps on negative orders so the dense renumbering below
        # never collides with uq_workflow_step_order mid-flush.
        for offset, sid in enumerate(sorted(kept_ids), start=1):
            existing[sid].order = -offset
        db.session.flush()

        for step in steps:
            if step["id"] is not None:
                row = existing[int(step["id"])]
                row.name = step["name"]
                row.order = step["order"]
                row.binding = step["binding"]
                row.sla_hours = step["sla_hours"]
                row.escalation_role_id = step["escalation_role_id"]
                row.is_final = step["is_final"]
            else:
                db.session.add(build_step(workflow.id, step))
        db.session.flush()
        db.session.expire(workflow, ["steps"])
        changed.append("steps")

    record_audit(actor.id, "update", "workflow", workflow.id, {"updated_fields": changed})
    db.session.commit()
    return workflow


def delete_workflow(actor, scope, workflow_id):
    _require_manager(scope)
    workflow = get_workflow(workflow_id)
    in_use = db.session.execute(
        select(func.count(RequestType.id)).where(RequestType.workflow_id == workflow.id)
    ).scalar_one()
    if in_use:
        raise ConflictError(
            "Workflow", "request_types", in_use,
            message="Workflow is bound to request types and cannot be deleted",
        )
    name = workflow.name
    db.session.delete(workflow)
    db.session.flush()
    record_audit(actor.id, "delete", "workflow", workflow_id, {"name": name})
    db.session.commit()


def assign_workflow(actor, scope, request_type_id, workflow_id) -> RequestType:
    """Bind (or with ``workflow_id=None`` unbind) a request type's workflow."""
    _require_manager(scope)
    request_type = db.session.get(RequestType, request_type_id)
    if request_type is None:
        raise NotFoundError("RequestType", request_type_id)
    if workflow_id is not None:
        get_workflow(workflow_id)
    previous = request_type.workflow_id
    if workflow_id != previous:
        ensure_rebind_allowed(workflow_id, request_type_id=request_type.id)
    request_type.workflow_id = workflow_id
    db.session.flush()
    record_audit(actor.id, "update", "request_type", request_type.id, {
        "workflow_id": [previous, workflow_id],
    })
    db.session.commit()
    return request_type
