"""
Request domain models.

Models:
    - Request:        a submitted form travelling through its workflow
    - RequestAction:  append-only decision / submission log
    - Attachment:     files stored against a request

Lifecycle:
    pending → in_progress → approved | rejected     (terminal)
    pending | in_progress → returned → pending      (requester resubmits)

``version`` is bumped on every lifecycle write and used as a compare-and-set
guard so two approvers racing on the same step cannot both advance it.
"""

from datetime import datetime, timezone

from campusflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_RETURNED = "returned"

REQUEST_STATUSES = frozenset({
    STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_APPROVED, STATUS_REJECTED, STATUS_RETURNED,
})
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})

# Statuses in which the current step's approver may act.
ACTIONABLE_STATUSES = frozenset({STATUS_PENDING, STATUS_IN_PROGRESS})

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
ACTION_APPROVE_WITH_CHANGES = "approve_with_changes"
ACTION_REJECT_WITH_CHANGES = "reject_with_changes"

DECISION_ACTIONS = frozenset({
    ACTION_APPROVE, ACTION_REJECT, ACTION_APPROVE_WITH_CHANGES, ACTION_REJECT_WITH_CHANGES,
})

# Non-decision entries written to the same log.
ACTION_SUBMIT = "submit"
ACTION_RESUBMIT = "resubmit"

REQUEST_ACTION_KINDS = DECISION_ACTIONS | {ACTION_SUBMIT, ACTION_RESUBMIT}


class Request(db.Model):
    __tablename__ = "requests"
    __table_args__ = (
        db.Index("ix_requests_status_step", "status", "current_step_id"),
        db.Index("ix_requests_requester_submitted", "requester_id", "submitted_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_no = db.Column(db.String(40), nullable=False, unique=True)
    requester_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    form_id = db.Column(db.Integer, db.ForeignKey("form_templates.id"), nullable=False, index=True)
    status = db.Column(
        db.String(20), nullable=False, default=STATUS_PENDING,
        comment="pending | in_progress | approved | rejected | returned",
    )
    current_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True,
    )
    submission_data = db.Column(db.JSON, default=dict)
    version = db.Column(db.Integer, nullable=False, default=1)
    submitted_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    requester = db.relationship("User", foreign_keys=[requester_id])
    form = db.relationship("FormTemplate")
    current_step = db.relationship("WorkflowStep", foreign_keys=[current_step_id])
    actions = db.relationship(
        "RequestAction",
        back_populates="request",
        order_by="RequestAction.id",
        lazy="dynamic",
    )
    attachments = db.relationship("Attachment", back_populates="request", lazy="dynamic")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_actions=False):
        d = {
            "id": self.id,
            "reference_no": self.reference_no,
            "requester_id": self.requester_id,
            "requester_name": self.requester.full_name if self.requester else None,
            "form_id": self.form_id,
            "form_name": self.form.name if self.form else None,
            "status": self.status,
            "current_step_id": self.current_step_id,
            "current_step_name": self.current_step.name if self.current_step else None,
            "submission_data": self.submission_data or {},
            "version": self.version,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_actions:
            d["actions"] = [a.to_dict() for a in self.actions]
            d["attachments"] = [a.to_dict() for a in self.attachments]
        return d

    def __repr__(self):
        return f"<Request {self.id}: {self.reference_no} {self.status}>"


class RequestAction(db.Model):
    """
    Immutable request history row.

    ``step_id`` is the step pointer at the time of the action, so the log
    still reads correctly after the request has moved on.
    """

    __tablename__ = "request_actions"
    __table_args__ = (
        db.Index("ix_request_actions_request", "request_id", "created_at"),
        db.Index("ix_request_actions_actor", "actor_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False,
    )
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    action = db.Column(db.String(30), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    request = db.relationship("Request", back_populates="actions")
    actor = db.relationship("User")
    step = db.relationship("WorkflowStep")

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "actor_name": self.actor.full_name if self.actor else None,
            "actor_role": self.actor.role_name if self.actor else None,
            "action": self.action,
            "comment": self.comment,
            "step_id": self.step_id,
            "step_name": self.step.name if self.step else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<RequestAction {self.id}: {self.action} on request {self.request_id}>"


class Attachment(db.Model):
    __tablename__ = "attachments"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    uploader_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    file_name = db.Column(db.String(255), nullable=False)
    storage_location = db.Column(db.String(500), nullable=False)
    file_type = db.Column(db.String(30))
    uploaded_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    request = db.relationship("Request", back_populates="attachments")

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "uploader_id": self.uploader_id,
            "file_name": self.file_name,
            "storage_location": self.storage_location,
            "file_type": self.file_type,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }
