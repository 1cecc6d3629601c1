"""
Request Lifecycle Engine.

Owns every Request state change: submission, approver decisions and
requester resubmission.

States:
    pending → in_progress → approved | rejected        (terminal)
    pending | in_progress → returned → pending         (requester resubmits)

Decision table for the request's current step S:

    reject                     rejected, pointer frozen on S
    reject_with_changes        returned, pointer stays on S
    approve, next exists       in_progress, pointer → next
    approve, S last            approved, pointer → None
    approve_with_changes, next returned, pointer → next
    approve_with_changes, last returned, pointer stays on S

Each decision is one atomic unit: Attachment row, RequestAction row and a
version compare-and-set on the Request row commit together.  Attachment
bytes are written before the unit opens; notifications, audit and the
official document run after commit and can only add ``warnings``.

Usage:
    from campusflow.services.request_lifecycle import process_request

    outcome = process_request(request_id=12, action="approve", actor=user)
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select, update

from campusflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from campusflow.models import db
from campusflow.models.request import (
    ACTION_APPROVE,
    ACTION_APPROVE_WITH_CHANGES,
    ACTION_REJECT,
    ACTION_REJECT_WITH_CHANGES,
    ACTION_RESUBMIT,
    ACTION_SUBMIT,
    DECISION_ACTIONS,
    STATUS_APPROVED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_RETURNED,
    Attachment,
    Request,
    RequestAction,
)
from campusflow.models.workflow import RoleBinding, UserBinding
from campusflow.services import delegation_service, workflow_service
from campusflow.services.attachment_storage import (
    check_attachment,
    file_extension,
    remove_attachment,
    save_attachment,
)
from campusflow.services.audience import is_form_visible
from campusflow.services.audit_service import record_audit
from campusflow.services.document_service import document_variables, render_document
from campusflow.services.form_service import get_form, validate_submission
from campusflow.services.notification import (
    NotificationService,
    UserSelector,
    selector_for_binding,
)
from campusflow.services.scope_resolver import ScopeResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttachmentUpload:
    """Raw attachment handed in by the HTTP layer."""

    content: bytes
    file_name: str


# ── Transition planning ──────────────────────────────────────────────────────


def plan_transition(action, step, following):
    """Return ``(new_status, new_step_id)`` for ``action`` taken on ``step``.

    ``following`` is the sibling after ``step`` in its workflow, or None.
    """
    if action == ACTION_REJECT:
        return STATUS_REJECTED, step.id
    if action == ACTION_REJECT_WITH_CHANGES:
        return STATUS_RETURNED, step.id
    if action == ACTION_APPROVE:
        if following is not None:
            return STATUS_IN_PROGRESS, following.id
        return STATUS_APPROVED, None
    if action == ACTION_APPROVE_WITH_CHANGES:
        if following is not None:
            return STATUS_RETURNED, following.id
        return STATUS_RETURNED, step.id
    raise ValidationError(f"Unknown action: {action}", details={"action": sorted(DECISION_ACTIONS)})


def binding_matches(binding, user) -> bool:
    if isinstance(binding, UserBinding):
        return binding.user_id == user.id
    if isinstance(binding, RoleBinding):
        return binding.role_id == user.role_id
    return False


def eligible_via(step, actor):
    """Who the actor acts as on ``step``: the actor, a grantor, or None.

    Delegated authority is only honoured with DELEGATION_AUTHORITY_ENABLED.
    """
    if step is None or not actor.is_active:
        return None
    binding = step.binding
    if binding_matches(binding, actor):
        return actor
    if current_app.config.get("DELEGATION_AUTHORITY_ENABLED"):
        for grantor in delegation_service.active_grantors(actor.id):
            if binding_matches(binding, grantor):
                return grantor
    return None


def _requires_comment(action) -> bool:
    return action in current_app.config.get("REQUIRE_COMMENT_ACTIONS", ())


def _check_decision(req, action, actor, comment, expected_version):
    """Precondition checks shared by the pre-check and the locked unit.

    Returns the user the actor acts as (themselves or a delegating grantor).
    """
    if action not in DECISION_ACTIONS:
        raise ValidationError(f"Unknown action: {action}", details={"action": sorted(DECISION_ACTIONS)})
    if req.is_terminal:
        raise ConflictError(
            "Request", "status", req.status,
            message=f"Request {req.reference_no} is already {req.status}",
        )
    if req.current_step_id is None or req.current_step is None:
        raise NotFoundError("WorkflowStep", f"active step of request {req.id}")
    if req.status == STATUS_RETURNED:
        raise ConflictError(
            "Request", "status", req.status,
            message=f"Request {req.reference_no} is waiting for the requester to resubmit",
        )

    acting_as = eligible_via(req.current_step, actor)
    if acting_as is None:
        raise UnauthorizedError("You are not an approver for the current step of this request")

    if _requires_comment(action) and not (comment or "").strip():
        raise ValidationError("A comment is required for this action", details={"comment": "required"})
    if expected_version is not None and int(expected_version) != req.version:
        raise ConflictError(
            "Request", "version", req.version,
            message="Request was modified by someone else; reload and retry",
        )
    return acting_as


def _load_request(request_id, lock=False) -> Request:
    stmt = select(Request).where(Request.id == request_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    req = db.session.execute(stmt).scalar_one_or_none()
    if req is None:
        raise NotFoundError("Request", request_id)
    return req


def _compare_and_set(req, expected_version, **values) -> None:
    """Update the request row only if nobody else bumped its version."""
    values["version"] = expected_version + 1
    values["updated_at"] = datetime.now(timezone.utc)
    result = db.session.execute(
        update(Request)
        .where(Request.id == req.id, Request.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            "Request", "version", expected_version,
            message="Request was modified concurrently; reload and retry",
        )


def _outcome(req, action, previous_status, previous_step_id, warnings):
    return {
        "request_id": req.id,
        "reference_no": req.reference_no,
        "action": action,
        "previous_status": previous_status,
        "new_status": req.status,
        "previous_step_id": previous_step_id,
        "current_step_id": req.current_step_id,
        "version": req.version,
        "warnings": warnings,
    }


# ── Post-commit helpers ──────────────────────────────────────────────────────


def _best_effort(warnings, label, fn, *args, **kwargs):
    """Run ``fn`` in a savepoint; failures become warnings, never errors."""
    try:
        with db.session.begin_nested():
            return fn(*args, **kwargs)
    except Exception as exc:
        logger.warning("Post-commit %s failed: %s", label, exc, exc_info=True,
                       extra={"event_type": f"postcommit.{label}"})
        warnings.append(f"{label} failed: {exc}")
        return None


def _finish_post_commit(warnings):
    try:
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.exception("Post-commit flush failed")
        warnings.append(f"post-commit persistence failed: {exc}")


def _notify_step(step, req, template_key, actor_name, warnings):
    if step is None:
        return
    _best_effort(
        warnings, "notify_approvers",
        NotificationService.notify,
        selector_for_binding(step.binding), req.id, template_key, actor_name,
    )


def _issue_document(req):
    """Render the form's official document and attach it to the request."""
    content = render_document(req.form.document_template, document_variables(req))
    location = save_attachment(content, f"{req.reference_no}-official.pdf", req.id)
    try:
        db.session.add(Attachment(
            request_id=req.id,
            uploader_id=None,
            file_name=f"{req.reference_no}-official.pdf",
            storage_location=location,
            file_type="pdf",
        ))
        db.session.flush()
    except Exception:
        remove_attachment(location)
        raise
    NotificationService.notify(UserSelector(req.requester_id), req.id, "document_ready")
    record_audit(None, "request.document_generated", "request", req.id, {"location": location})
    logger.info("Official document issued for %s", req.reference_no,
                extra={"request_ref": req.reference_no, "event_type": "document.issued"})
    return location


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════


def generate_reference_no() -> str:
    prefix = current_app.config.get("REFERENCE_PREFIX", "REQ")
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    for _ in range(10):
        candidate = f"{prefix}-{stamp}-{secrets.randbelow(10_000):04d}"
        taken = db.session.execute(
            select(Request.id).where(Request.reference_no == candidate)
        ).first()
        if taken is None:
            return candidate
    raise ConflictError("Request", "reference_no", stamp, message="Could not allocate a reference number")


def submit_request(requester, form_id, data) -> dict:
    """Create a pending request on the first step of the form's workflow.

    Raises:
        UnauthorizedError: inactive requester.
        NotFoundError: unknown form, or a form hidden from the requester.
        ValidationError: payload does not match the form schema.
    """
    if not requester.is_active:
        raise UnauthorizedError("User account is inactive")

    form = get_form(form_id)
    scope = ScopeResolver.for_user(requester)
    if not is_form_visible(form, scope):
        # Invisible forms look the same as missing ones.
        raise NotFoundError("FormTemplate", form_id)

    cleaned = validate_submission(form, data)
    step = workflow_service.first_step(form.workflow)

    req = Request(
        reference_no=generate_reference_no(),
        requester_id=requester.id,
        form_id=form.id,
        status=STATUS_PENDING,
        current_step_id=step.id if step else None,
        submission_data=cleaned,
        version=1,
    )
    db.session.add(req)
    db.session.flush()
    db.session.add(RequestAction(
        request_id=req.id,
        actor_id=requester.id,
        action=ACTION_SUBMIT,
        comment=None,
        step_id=req.current_step_id,
    ))
    db.session.commit()

    logger.info("Request %s submitted (form=%s step=%s)", req.reference_no, form.id, req.current_step_id,
                extra={"request_ref": req.reference_no, "actor_id": requester.id,
                       "event_type": "request.submit"})

    warnings: list[str] = []
    if step is None:
        warnings.append("form has no workflow; request will stay pending")
    _notify_step(step, req, "new_request", requester.full_name, warnings)
    _best_effort(warnings, "audit", record_audit, requester.id, "request.submit", "request", req.id, {
        "reference_no": req.reference_no, "form_id": form.id, "step_id": req.current_step_id,
    })
    _finish_post_commit(warnings)
    return _outcome(req, ACTION_SUBMIT, None, None, warnings)


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


def process_request(
    request_id,
    action,
    actor,
    comment=None,
    attachment: AttachmentUpload | None = None,
    expected_version=None,
) -> dict:
    """
    Apply an approver decision to the request's current step.

    Returns:
        {"request_id", "reference_no", "action", "previous_status",
         "new_status", "previous_step_id", "current_step_id", "version",
         "warnings"}

    Raises:
        NotFoundError, UnauthorizedError, ValidationError, ConflictError,
        DependencyError (attachment could not be stored; nothing committed)
    """
    # 1. Lock-free pre-check so rejected callers never touch storage.
    req = _load_request(request_id)
    _check_decision(req, action, actor, comment, expected_version)
    if attachment is not None:
        check_attachment(attachment.content, attachment.file_name)
    db.session.rollback()

    # 2. Blocking I/O before the unit.
    stored_location = None
    if attachment is not None:
        stored_location = save_attachment(attachment.content, attachment.file_name, request_id)

    # 3. Atomic unit.
    try:
        req = _load_request(request_id, lock=True)
        acting_as = _check_decision(req, action, actor, comment, expected_version)
        previous_status, previous_step_id, read_version = req.status, req.current_step_id, req.version

        step = req.current_step
        following = workflow_service.next_step(step)
        new_status, new_step_id = plan_transition(action, step, following)

        final_comment = (comment or "").strip() or None
        if stored_location is not None:
            note = f"[Attachment: {attachment.file_name}]"
            final_comment = f"{final_comment}\n\n{note}" if final_comment else note
            db.session.add(Attachment(
                request_id=req.id,
                uploader_id=actor.id,
                file_name=attachment.file_name,
                storage_location=stored_location,
                file_type=file_extension(attachment.file_name) or "file",
            ))
        db.session.add(RequestAction(
            request_id=req.id,
            actor_id=actor.id,
            action=action,
            comment=final_comment,
            step_id=previous_step_id,
        ))
        db.session.flush()
        _compare_and_set(req, read_version, status=new_status, current_step_id=new_step_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        if stored_location is not None:
            remove_attachment(stored_location)
        raise

    db.session.refresh(req)
    log_extra = {"request_ref": req.reference_no, "actor_id": actor.id, "event_type": f"request.{action}"}
    logger.info("Request %s: %s by %s (%s → %s, step %s → %s)",
                req.reference_no, action, actor.university_id,
                previous_status, new_status, previous_step_id, new_step_id, extra=log_extra)

    # 4. Post-commit, best effort.
    warnings: list[str] = []
    _best_effort(
        warnings, "notify_requester",
        NotificationService.notify,
        UserSelector(req.requester_id), req.id, f"status.{new_status}", actor.full_name,
    )
    if new_status == STATUS_IN_PROGRESS and following is not None:
        _notify_step(following, req, "new_request", actor.full_name, warnings)

    details = {
        "comment": final_comment,
        "from_status": previous_status,
        "to_status": new_status,
        "from_step_id": previous_step_id,
        "to_step_id": new_step_id,
    }
    if acting_as.id != actor.id:
        details["on_behalf_of"] = acting_as.id
    _best_effort(warnings, "audit", record_audit, actor.id, f"request.{action}", "request", req.id, details)

    if (
        new_status == STATUS_APPROVED
        and current_app.config.get("DOCUMENTS_ENABLED", True)
        and req.form is not None
        and req.form.document_template
    ):
        _best_effort(warnings, "document", _issue_document, req)

    _finish_post_commit(warnings)
    return _outcome(req, action, previous_status, previous_step_id, warnings)


# ═════════════════════════════════════════════════════════════════════════════
# Resubmission
# ═════════════════════════════════════════════════════════════════════════════


def resubmit_request(request_id, editor, data) -> dict:
    """Requester edits a returned request; it goes back to the same step.

    Raises:
        NotFoundError: unknown request.
        UnauthorizedError: editor is not the original requester.
        ConflictError: request is not in ``returned`` status.
        ValidationError: payload does not match the form schema.
    """
    req = _load_request(request_id, lock=True)
    try:
        if req.requester_id != editor.id:
            raise UnauthorizedError("Only the requester may edit this request")
        if req.status != STATUS_RETURNED:
            raise ConflictError(
                "Request", "status", req.status,
                message=f"Only returned requests can be edited (status is {req.status})",
            )
        cleaned = validate_submission(req.form, data)

        previous_status, previous_step_id, read_version = req.status, req.current_step_id, req.version
        db.session.add(RequestAction(
            request_id=req.id,
            actor_id=editor.id,
            action=ACTION_RESUBMIT,
            comment=None,
            step_id=req.current_step_id,
        ))
        db.session.flush()
        _compare_and_set(req, read_version, status=STATUS_PENDING, submission_data=cleaned)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(req)
    logger.info("Request %s resubmitted to step %s", req.reference_no, req.current_step_id,
                extra={"request_ref": req.reference_no, "actor_id": editor.id,
                       "event_type": "request.resubmit"})

    warnings: list[str] = []
    _notify_step(req.current_step, req, "request_updated", editor.full_name, warnings)
    _best_effort(warnings, "audit", record_audit, editor.id, "request.resubmit", "request", req.id, {
        "step_id": req.current_step_id,
    })
    _finish_post_commit(warnings)
    return _outcome(req, ACTION_RESUBMIT, previous_status, previous_step_id, warnings)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def available_actions(req, actor) -> list[str]:
    """Decision kinds ``actor`` may take on ``req`` right now."""
    if req.is_terminal or req.status == STATUS_RETURNED or req.current_step is None:
        return []
    if eligible_via(req.current_step, actor) is None:
        return []
    return [ACTION_APPROVE, ACTION_APPROVE_WITH_CHANGES, ACTION_REJECT_WITH_CHANGES, ACTION_REJECT]


def can_resubmit(req, user) -> bool:
    return req.status == STATUS_RETURNED and req.requester_id == user.id
