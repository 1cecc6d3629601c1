"""
Request lifecycle engine tests.

Tests cover:
  - Submission (first step, unbound forms, payload validation, audience)
  - Decision table for every action kind
  - Step authorization and terminal-state handling
  - Version compare-and-set and attachment cleanup on a failed unit
  - Resubmission after a return
  - Post-commit effects: notifications, audit, official document, warnings
  - Delegated authority behind DELEGATION_AUTHORITY_ENABLED
"""

import os
import re
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from campusflow.core.exceptions import (
    ConflictError,
    DependencyError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from campusflow.models import db
from campusflow.models.audit import AuditLog
from campusflow.models.delegation import Delegation
from campusflow.models.notification import Notification
from campusflow.models.request import Attachment, Request, RequestAction
from campusflow.models.workflow import RoleBinding, UserBinding
from campusflow.services import request_lifecycle, workflow_service
from campusflow.services.request_lifecycle import (
    AttachmentUpload,
    available_actions,
    process_request,
    resubmit_request,
    submit_request,
)
from campusflow.utils.helpers import utcnow


# ── Helpers ─────────────────────────────────────────────────────────────

def _steps(form):
    return workflow_service.ordered_steps(form.workflow.id)


def _actions(request_id):
    return db.session.execute(
        select(RequestAction).where(RequestAction.request_id == request_id).order_by(RequestAction.id)
    ).scalars().all()


def _notified(user, template_key):
    return db.session.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user.id, Notification.template_key == template_key,
        )
    ).scalar()


def _submit(org, form, requester=None, data=None):
    return submit_request(requester or org.student, form.id, data or {"reason": "Family event", "days": "3"})


def _racing_next_step(monkeypatch, request_id):
    """Make the unit observe a concurrent writer bumping the version."""
    original = workflow_service.next_step

    def _next_step(step):
        db.session.execute(
            update(Request)
            .where(Request.id == request_id)
            .values(version=Request.version + 1)
            .execution_options(synchronize_session=False)
        )
        return original(step)

    monkeypatch.setattr(workflow_service, "next_step", _next_step)


# ═════════════════════════════════════════════════════════════════════════
# SUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_submit_starts_pending_on_first_step(self, org, leave_form):
        outcome = _submit(org, leave_form)

        first = _steps(leave_form)[0]
        assert outcome["new_status"] == "pending"
        assert outcome["current_step_id"] == first.id
        assert re.match(r"^REQ-\d{14}-\d{4}$", outcome["reference_no"])

        actions = _actions(outcome["request_id"])
        assert [a.action for a in actions] == ["submit"]
        assert actions[0].step_id == first.id

        req = db.session.get(Request, outcome["request_id"])
        assert req.submission_data == {"reason": "Family event", "days": 3}
        assert req.version == 1

    def test_submit_notifies_first_step_cohort_and_audits(self, org, leave_form):
        outcome = _submit(org, leave_form)
        assert _notified(org.head_cs, "new_request") == 1
        assert _notified(org.dean, "new_request") == 0
        audit = db.session.execute(
            select(AuditLog).where(AuditLog.action == "request.submit")
        ).scalar_one()
        assert audit.entity_id == str(outcome["request_id"])

    def test_unbound_form_gives_request_without_step(self, org, make_form):
        form = make_form([], name="Unbound form")
        outcome = _submit(org, form)
        assert outcome["current_step_id"] is None
        assert outcome["new_status"] == "pending"
        assert outcome["warnings"]

    def test_request_without_step_cannot_be_acted_on(self, org, make_form):
        form = make_form([], name="Unbound form")
        outcome = _submit(org, form)
        with pytest.raises(NotFoundError):
            process_request(outcome["request_id"], "approve", org.head_cs)

    def test_missing_required_field_rejected(self, org, leave_form):
        with pytest.raises(ValidationError) as exc:
            _submit(org, leave_form, data={"days": 2})
        assert exc.value.details == {"reason": "required"}
        assert db.session.execute(select(func.count(Request.id))).scalar() == 0

    def test_unknown_field_and_bad_option_rejected(self, org, leave_form):
        with pytest.raises(ValidationError) as exc:
            _submit(org, leave_form, data={"reason": "x", "kind": "holiday", "extra": 1})
        assert set(exc.value.details) == {"kind", "extra"}

    def test_invisible_form_reported_as_not_found(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Arts only",
                         audience={"colleges": [org.arts.id]})
        with pytest.raises(NotFoundError):
            _submit(org, form, requester=org.student)
        assert _submit(org, form, requester=org.student_arts)["new_status"] == "pending"

    def test_inactive_form_reported_as_not_found(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Draft form", active=False)
        with pytest.raises(NotFoundError):
            _submit(org, form)


# ═════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═════════════════════════════════════════════════════════════════════════

class TestDecisions:
    def test_n_approvals_reach_approved(self, org, make_form):
        form = make_form([
            RoleBinding(org.roles.head_of_department.id),
            UserBinding(org.supervisor.id),
            UserBinding(org.dean.id),
        ], name="Three step")
        steps = _steps(form)
        rid = _submit(org, form)["request_id"]

        out = process_request(rid, "approve", org.head_cs)
        assert (out["new_status"], out["current_step_id"]) == ("in_progress", steps[1].id)
        out = process_request(rid, "approve", org.supervisor)
        assert (out["new_status"], out["current_step_id"]) == ("in_progress", steps[2].id)
        out = process_request(rid, "approve", org.dean)
        assert (out["new_status"], out["current_step_id"]) == ("approved", None)

        decisions = [a for a in _actions(rid) if a.action == "approve"]
        assert [a.step_id for a in decisions] == [s.id for s in steps]
        assert db.session.get(Request, rid).version == 4

    def test_next_step_cohort_notified_on_approve(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        process_request(rid, "approve", org.head_cs)
        assert _notified(org.dean, "new_request") == 1
        assert _notified(org.student, "status.in_progress") == 1

    def test_reject_is_terminal(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        first = _steps(leave_form)[0]

        out = process_request(rid, "reject", org.head_cs, comment="Not eligible")
        assert out["new_status"] == "rejected"
        assert out["current_step_id"] == first.id

        with pytest.raises(ConflictError):
            process_request(rid, "approve", org.head_cs)
        with pytest.raises(ConflictError):
            process_request(rid, "reject", org.head_cs, comment="again")
        assert len(_actions(rid)) == 2
        assert db.session.get(Request, rid).status == "rejected"

    @pytest.mark.parametrize("action", ["reject", "reject_with_changes", "approve_with_changes"])
    def test_comment_required(self, org, leave_form, action):
        rid = _submit(org, leave_form)["request_id"]
        with pytest.raises(ValidationError):
            process_request(rid, action, org.head_cs, comment="   ")
        assert len(_actions(rid)) == 1

    def test_unknown_action_rejected(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        with pytest.raises(ValidationError):
            process_request(rid, "escalate", org.head_cs)

    @pytest.mark.parametrize("who", ["student", "supervisor", "admin", "dean", "manager_ee"])
    def test_non_matching_actor_unauthorized(self, org, leave_form, who):
        rid = _submit(org, leave_form)["request_id"]
        with pytest.raises(UnauthorizedError):
            process_request(rid, "approve", getattr(org, who))
        req = db.session.get(Request, rid)
        assert (req.status, req.version) == ("pending", 1)
        assert len(_actions(rid)) == 1

    def test_user_binding_ignores_role_peers(self, org, make_form):
        form = make_form([UserBinding(org.supervisor.id)], name="Personal approval")
        rid = _submit(org, form)["request_id"]
        with pytest.raises(UnauthorizedError):
            process_request(rid, "approve", org.colleague)
        assert process_request(rid, "approve", org.supervisor)["new_status"] == "approved"

    def test_reject_with_changes_keeps_step(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        first = _steps(leave_form)[0]
        out = process_request(rid, "reject_with_changes", org.head_cs, comment="Add dates")
        assert (out["new_status"], out["current_step_id"]) == ("returned", first.id)
        assert _notified(org.student, "status.returned") == 1

    def test_approve_with_changes_moves_to_next_and_returns(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        second = _steps(leave_form)[1]
        out = process_request(rid, "approve_with_changes", org.head_cs, comment="Fix the dates")
        assert (out["new_status"], out["current_step_id"]) == ("returned", second.id)
        # Nobody reviews until the requester resubmits.
        assert _notified(org.dean, "new_request") == 0

    def test_approve_with_changes_on_last_step_returns(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        last = _steps(leave_form)[-1]
        process_request(rid, "approve", org.head_cs)
        out = process_request(rid, "approve_with_changes", org.dean, comment="Sign page 2")
        assert (out["new_status"], out["current_step_id"]) == ("returned", last.id)

    def test_returned_request_waits_for_requester(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        process_request(rid, "reject_with_changes", org.head_cs, comment="Add dates")
        with pytest.raises(ConflictError):
            process_request(rid, "approve", org.head_cs)

    def test_available_actions(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        req = db.session.get(Request, rid)
        assert set(available_actions(req, org.head_cs)) == {
            "approve", "approve_with_changes", "reject", "reject_with_changes",
        }
        assert available_actions(req, org.student) == []
        process_request(rid, "reject", org.head_cs, comment="No")
        assert available_actions(db.session.get(Request, rid), org.head_cs) == []


# ═════════════════════════════════════════════════════════════════════════
# CONCURRENCY & ATTACHMENTS
# ═════════════════════════════════════════════════════════════════════════

class TestConcurrency:
    def test_stale_expected_version_conflicts(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        process_request(rid, "approve", org.head_cs, expected_version=1)
        with pytest.raises(ConflictError):
            process_request(rid, "approve", org.dean, expected_version=1)
        assert len(_actions(rid)) == 2
        assert db.session.get(Request, rid).status == "in_progress"

    def test_second_approver_on_same_step_loses(self, org, make_form):
        form = make_form([RoleBinding(org.roles.employee.id), UserBinding(org.dean.id)], name="Race")
        rid = _submit(org, form)["request_id"]
        seen_version = db.session.get(Request, rid).version

        process_request(rid, "approve", org.supervisor, expected_version=seen_version)
        with pytest.raises((ConflictError, UnauthorizedError)):
            process_request(rid, "approve", org.colleague, expected_version=seen_version)
        decisions = [a for a in _actions(rid) if a.action == "approve"]
        assert len(decisions) == 1

    def test_concurrent_write_inside_unit_rolls_back(self, org, leave_form, monkeypatch):
        rid = _submit(org, leave_form)["request_id"]
        _racing_next_step(monkeypatch, rid)

        with pytest.raises(ConflictError):
            process_request(rid, "approve", org.head_cs)

        req = db.session.get(Request, rid)
        assert (req.status, req.version) == ("pending", 1)
        assert len(_actions(rid)) == 1

    def test_attachment_stored_with_decision(self, org, leave_form, app):
        rid = _submit(org, leave_form)["request_id"]
        process_request(
            rid, "approve", org.head_cs, comment="See memo",
            attachment=AttachmentUpload(content=b"%PDF-1.4 memo", file_name="memo.pdf"),
        )
        attachment = db.session.execute(
            select(Attachment).where(Attachment.request_id == rid)
        ).scalar_one()
        assert attachment.file_type == "pdf"
        assert attachment.uploader_id == org.head_cs.id
        assert os.path.isfile(attachment.storage_location)
        assert attachment.storage_location.startswith(app.config["UPLOAD_FOLDER"])

        decision = _actions(rid)[-1]
        assert decision.comment == "See memo\n\n[Attachment: memo.pdf]"

    def test_failed_unit_removes_stored_file(self, org, leave_form, app, monkeypatch):
        rid = _submit(org, leave_form)["request_id"]
        _racing_next_step(monkeypatch, rid)

        with pytest.raises(ConflictError):
            process_request(
                rid, "approve", org.head_cs,
                attachment=AttachmentUpload(content=b"data", file_name="orphan.pdf"),
            )
        folder = app.config["UPLOAD_FOLDER"]
        assert not [n for n in os.listdir(folder) if n.startswith(f"req-{rid}-") and "orphan" in n]
        assert db.session.execute(select(func.count(Attachment.id))).scalar() == 0

    def test_disallowed_attachment_type(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        with pytest.raises(ValidationError):
            process_request(
                rid, "approve", org.head_cs,
                attachment=AttachmentUpload(content=b"MZ", file_name="tool.exe"),
            )
        assert len(_actions(rid)) == 1

    def test_unauthorized_actor_never_writes_file(self, org, leave_form, app):
        rid = _submit(org, leave_form)["request_id"]
        with pytest.raises(UnauthorizedError):
            process_request(
                rid, "approve", org.student,
                attachment=AttachmentUpload(content=b"data", file_name="sneaky.pdf"),
            )
        assert not [n for n in os.listdir(app.config["UPLOAD_FOLDER"]) if "sneaky" in n]


# ═════════════════════════════════════════════════════════════════════════
# RESUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestResubmit:
    def test_resubmit_returns_to_same_step(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        process_request(rid, "reject_with_changes", org.head_cs, comment="Add the dates")

        out = resubmit_request(rid, org.student, {"reason": "Family event 12-14 May", "days": 3})
        first = _steps(leave_form)[0]
        assert (out["new_status"], out["current_step_id"]) == ("pending", first.id)
        assert [a.action for a in _actions(rid)] == ["submit", "reject_with_changes", "resubmit"]
        assert db.session.get(Request, rid).submission_data["reason"] == "Family event 12-14 May"
        assert _notified(org.head_cs, "request_updated") == 1

    def test_only_requester_may_resubmit(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        process_request(rid, "reject_with_changes", org.head_cs, comment="Add the dates")
        with pytest.raises(UnauthorizedError):
            resubmit_request(rid, org.head_cs, {"reason": "edited by someone else"})
        assert db.session.get(Request, rid).status == "returned"

    @pytest.mark.parametrize("setup", ["pending", "approved", "rejected"])
    def test_resubmit_requires_returned(self, org, leave_form, setup):
        rid = _submit(org, leave_form)["request_id"]
        if setup == "approved":
            process_request(rid, "approve", org.head_cs)
            process_request(rid, "approve", org.dean)
        elif setup == "rejected":
            process_request(rid, "reject", org.head_cs, comment="No")
        with pytest.raises(ConflictError):
            resubmit_request(rid, org.student, {"reason": "again"})

    def test_resubmit_validates_payload(self, org, leave_form):
        rid = _submit(org, leave_form)["request_id"]
        process_request(rid, "reject_with_changes", org.head_cs, comment="Add the dates")
        with pytest.raises(ValidationError):
            resubmit_request(rid, org.student, {"days": 2})
        assert db.session.get(Request, rid).status == "returned"


# ═════════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═════════════════════════════════════════════════════════════════════════

class TestScenarios:
    def test_leave_request_happy_path(self, org, leave_form):
        s1, s2 = _steps(leave_form)
        rid = _submit(org, leave_form)["request_id"]
        assert db.session.get(Request, rid).current_step_id == s1.id

        out = process_request(rid, "approve", org.head_cs)
        assert (out["new_status"], out["current_step_id"]) == ("in_progress", s2.id)
        assert _notified(org.dean, "new_request") == 1

        out = process_request(rid, "approve", org.dean)
        assert (out["new_status"], out["current_step_id"]) == ("approved", None)

        with pytest.raises((ConflictError, UnauthorizedError, NotFoundError)):
            process_request(rid, "approve", org.head_cs)

    def test_dean_returns_then_approves_after_resubmit(self, org, leave_form):
        _, s2 = _steps(leave_form)
        rid = _submit(org, leave_form)["request_id"]
        process_request(rid, "approve", org.head_cs)

        out = process_request(rid, "reject_with_changes", org.dean, comment="attach transcript")
        assert (out["new_status"], out["current_step_id"]) == ("returned", s2.id)

        out = resubmit_request(rid, org.student, {"reason": "Family event, transcript attached"})
        assert (out["new_status"], out["current_step_id"]) == ("pending", s2.id)

        out = process_request(rid, "approve", org.dean)
        assert out["new_status"] == "approved"


# ═════════════════════════════════════════════════════════════════════════
# POST-COMMIT EFFECTS
# ═════════════════════════════════════════════════════════════════════════

class TestPostCommit:
    def test_audit_failure_does_not_fail_transition(self, org, leave_form, monkeypatch):
        rid = _submit(org, leave_form)["request_id"]

        def _broken(**kwargs):
            raise RuntimeError("audit store down")

        monkeypatch.setattr("campusflow.services.audit_service.write_audit", _broken)
        out = process_request(rid, "approve", org.head_cs)
        assert out["new_status"] == "in_progress"
        assert db.session.get(Request, rid).status == "in_progress"
        assert db.session.execute(
            select(func.count(AuditLog.id)).where(AuditLog.action == "request.approve")
        ).scalar() == 0

    def test_notification_failure_becomes_warning(self, org, leave_form, monkeypatch):
        rid = _submit(org, leave_form)["request_id"]

        def _broken(*args, **kwargs):
            raise RuntimeError("mail relay down")

        monkeypatch.setattr(request_lifecycle.NotificationService, "notify", staticmethod(_broken))
        out = process_request(rid, "approve", org.head_cs)
        assert out["new_status"] == "in_progress"
        assert any("notify" in w for w in out["warnings"])
        assert db.session.execute(
            select(func.count(AuditLog.id)).where(AuditLog.action == "request.approve")
        ).scalar() == 1

    def test_official_document_issued_on_final_approval(self, org, make_form):
        form = make_form(
            [RoleBinding(org.roles.head_of_department.id)],
            name="Enrollment letter",
            document_template="This certifies that {{ requester_name }} ({{ university_id }}) "
                              "is enrolled in {{ department }}.\n\nReference {{ reference_no }}.",
        )
        rid = _submit(org, form)["request_id"]
        out = process_request(rid, "approve", org.head_cs)

        assert out["new_status"] == "approved"
        assert out["warnings"] == []
        document = db.session.execute(
            select(Attachment).where(Attachment.request_id == rid, Attachment.file_type == "pdf")
        ).scalar_one()
        with open(document.storage_location, "rb") as fh:
            assert fh.read(4) == b"%PDF"
        assert _notified(org.student, "document_ready") == 1

    def test_document_failure_leaves_request_approved(self, org, make_form, monkeypatch):
        form = make_form(
            [RoleBinding(org.roles.head_of_department.id)],
            name="Enrollment letter",
            document_template="Letter for {{ requester_name }}",
        )
        rid = _submit(org, form)["request_id"]

        def _broken(template, variables):
            raise DependencyError("document_renderer", "renderer offline")

        monkeypatch.setattr(request_lifecycle, "render_document", _broken)
        out = process_request(rid, "approve", org.head_cs)
        assert out["new_status"] == "approved"
        assert any("document" in w for w in out["warnings"])
        assert db.session.get(Request, rid).status == "approved"
        assert db.session.execute(select(func.count(Attachment.id))).scalar() == 0

    def test_documents_can_be_switched_off(self, org, make_form, monkeypatch, app):
        monkeypatch.setitem(app.config, "DOCUMENTS_ENABLED", False)
        form = make_form(
            [RoleBinding(org.roles.head_of_department.id)],
            name="Enrollment letter",
            document_template="Letter for {{ requester_name }}",
        )
        rid = _submit(org, form)["request_id"]
        process_request(rid, "approve", org.head_cs)
        assert db.session.execute(select(func.count(Attachment.id))).scalar() == 0


# ═════════════════════════════════════════════════════════════════════════
# DELEGATED AUTHORITY
# ═════════════════════════════════════════════════════════════════════════

class TestDelegatedAuthority:
    @pytest.fixture()
    def delegation(self, org):
        now = utcnow()
        d = Delegation(
            grantor_id=org.head_cs.id, grantee_id=org.colleague.id,
            starts_at=now - timedelta(hours=1), ends_at=now + timedelta(days=1), is_active=True,
        )
        db.session.add(d)
        db.session.commit()
        return d

    def test_delegate_cannot_act_by_default(self, org, leave_form, delegation):
        rid = _submit(org, leave_form)["request_id"]
        with pytest.raises(UnauthorizedError):
            process_request(rid, "approve", org.colleague)

    def test_delegate_acts_when_enabled(self, org, leave_form, delegation, app, monkeypatch):
        monkeypatch.setitem(app.config, "DELEGATION_AUTHORITY_ENABLED", True)
        rid = _submit(org, leave_form)["request_id"]
        out = process_request(rid, "approve", org.colleague)
        assert out["new_status"] == "in_progress"

        audit = db.session.execute(
            select(AuditLog).where(AuditLog.action == "request.approve")
        ).scalar_one()
        assert audit.actor_id == org.colleague.id
        assert audit.details["on_behalf_of"] == org.head_cs.id

    def test_expired_delegation_grants_nothing(self, org, leave_form, delegation, app, monkeypatch):
        monkeypatch.setitem(app.config, "DELEGATION_AUTHORITY_ENABLED", True)
        delegation.ends_at = utcnow() - timedelta(minutes=1)
        delegation.starts_at = utcnow() - timedelta(hours=2)
        db.session.commit()
        rid = _submit(org, leave_form)["request_id"]
        with pytest.raises(UnauthorizedError):
            process_request(rid, "approve", org.colleague)
