"""
Workflow definition models.

Models:
    - Workflow:      named, ordered chain of approval steps
    - WorkflowStep:  one step; approver bound to a role XOR a specific user
    - RequestType:   binds a form template to a workflow
    - FormTemplate:  declared field schema + audience targeting config

Approver binding is exposed as a tagged value (``RoleBinding`` | ``UserBinding``)
via ``WorkflowStep.binding``.  The two nullable columns are an implementation
detail guarded by a CHECK constraint so "both" and "neither" cannot be stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from campusflow.models import db


# ── Approver binding ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RoleBinding:
    """Any active user holding ``role_id`` may act on the step."""

    role_id: int

    kind = "role"


@dataclass(frozen=True)
class UserBinding:
    """Only ``user_id`` may act on the step."""

    user_id: int

    kind = "user"


ApproverBinding = RoleBinding | UserBinding


# ── Form schema constants ────────────────────────────────────────────────────

FIELD_TYPES = frozenset({"text", "textarea", "number", "date", "select", "checkbox", "file"})
AUDIENCE_FLAGS = ("student", "employee")
AUDIENCE_LISTS = ("colleges", "departments")


class Workflow(db.Model):
    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    steps = db.relationship(
        "WorkflowStep",
        back_populates="workflow",
        order_by="WorkflowStep.order",
        cascade="all, delete-orphan",
    )
    request_types = db.relationship("RequestType", back_populates="workflow", lazy="dynamic")

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name}>"


class WorkflowStep(db.Model):
    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "order", name="uq_workflow_step_order"),
        db.CheckConstraint(
            "(approver_role_id IS NULL) <> (approver_user_id IS NULL)",
            name="ck_workflow_step_single_binding",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    order = db.Column(db.Integer, nullable=False, comment="Dense 1..n within the workflow")
    approver_role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=True)
    approver_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True,
    )
    sla_hours = db.Column(db.Integer, nullable=True, comment="Escalation metadata, not enforced")
    escalation_role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=True)
    is_final = db.Column(db.Boolean, default=False, nullable=False)

    workflow = db.relationship("Workflow", back_populates="steps")
    approver_role = db.relationship("Role", foreign_keys=[approver_role_id])
    approver_user = db.relationship("User", foreign_keys=[approver_user_id])
    escalation_role = db.relationship("Role", foreign_keys=[escalation_role_id])

    @property
    def binding(self) -> ApproverBinding:
        if self.approver_user_id is not None:
            return UserBinding(self.approver_user_id)
        return RoleBinding(self.approver_role_id)

    @binding.setter
    def binding(self, value: ApproverBinding) -> None:
        if isinstance(value, UserBinding):
            self.approver_user_id, self.approver_role_id = value.user_id, None
        elif isinstance(value, RoleBinding):
            self.approver_role_id, self.approver_user_id = value.role_id, None
        else:
            raise TypeError(f"Unsupported approver binding: {value!r}")

    def to_dict(self):
        binding = self.binding
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "order": self.order,
            "approver": {
                "kind": binding.kind,
                "role_id": self.approver_role_id,
                "role_name": self.approver_role.name if self.approver_role else None,
                "user_id": self.approver_user_id,
                "user_name": self.approver_user.full_name if self.approver_user else None,
            },
            "sla_hours": self.sla_hours,
            "escalation_role_id": self.escalation_role_id,
            "is_final": self.is_final,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.id}: wf={self.workflow_id} #{self.order}>"


class RequestType(db.Model):
    __tablename__ = "request_types"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), nullable=False, unique=True)
    label = db.Column(db.String(200), nullable=False)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    workflow = db.relationship("Workflow", back_populates="request_types")
    form_templates = db.relationship("FormTemplate", back_populates="request_type", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "label": self.label,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow.name if self.workflow else None,
        }


class FormTemplate(db.Model):
    __tablename__ = "form_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    schema = db.Column(db.JSON, default=list, comment="Declared field list [{name, label, type, required, options}]")
    audience_config = db.Column(db.JSON, nullable=True, comment="{student, employee, colleges[], departments[]}")
    request_type_id = db.Column(
        db.Integer, db.ForeignKey("request_types.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    document_template = db.Column(db.Text, nullable=True, comment="Jinja2 text for the official document")
    is_active = db.Column(db.Boolean, default=False, nullable=False, comment="False = draft")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    request_type = db.relationship("RequestType", back_populates="form_templates")

    @property
    def workflow(self):
        """Workflow bound through the request type, or None."""
        if self.request_type is None:
            return None
        return self.request_type.workflow

    def to_dict(self, include_schema=True):
        d = {
            "id": self.id,
            "name": self.name,
            "audience_config": self.audience_config or {},
            "request_type_id": self.request_type_id,
            "workflow_id": self.workflow.id if self.workflow else None,
            "has_document_template": bool(self.document_template),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_schema:
            d["schema"] = list(self.schema or [])
        return d

    def __repr__(self):
        return f"<FormTemplate {self.id}: {self.name}>"
