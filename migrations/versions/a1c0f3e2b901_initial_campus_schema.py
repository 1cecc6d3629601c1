"""initial_campus_schema

Organisation directory, workflow definitions, form catalog, requests,
delegations, notifications and audit log.

Revision ID: a1c0f3e2b901
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c0f3e2b901"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("permissions", sa.JSON(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    # users ↔ departments ↔ colleges form a cycle; the dean / manager FKs are
    # added after all three tables exist.
    if "colleges" not in existing_tables:
        op.create_table(
            "colleges",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("dean_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_colleges_dean_id", "colleges", ["dean_id"])

    if "departments" not in existing_tables:
        op.create_table(
            "departments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("college_id", sa.Integer(), nullable=True),
            sa.Column("manager_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["college_id"], ["colleges.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_departments_college_id", "departments", ["college_id"])

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("university_id", sa.String(length=50), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("phone", sa.String(length=40), nullable=True),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("department_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_university_id", "users", ["university_id"], unique=True)
        op.create_index("ix_users_role_id", "users", ["role_id"])
        op.create_index("ix_users_department_id", "users", ["department_id"])

        if bind.dialect.name != "sqlite":
            op.create_foreign_key(
                "fk_colleges_dean_id", "colleges", "users", ["dean_id"], ["id"], ondelete="SET NULL",
            )
            op.create_foreign_key(
                "fk_departments_manager_id", "departments", "users", ["manager_id"], ["id"],
                ondelete="SET NULL",
            )

    if "workflows" not in existing_tables:
        op.create_table(
            "workflows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "workflow_steps" not in existing_tables:
        op.create_table(
            "workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False),
            sa.Column("approver_role_id", sa.Integer(), nullable=True),
            sa.Column("approver_user_id", sa.Integer(), nullable=True),
            sa.Column("sla_hours", sa.Integer(), nullable=True),
            sa.Column("escalation_role_id", sa.Integer(), nullable=True),
            sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_role_id"], ["roles.id"]),
            sa.ForeignKeyConstraint(["approver_user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["escalation_role_id"], ["roles.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "order", name="uq_workflow_step_order"),
            sa.CheckConstraint(
                "(approver_role_id IS NULL) <> (approver_user_id IS NULL)",
                name="ck_workflow_step_single_binding",
            ),
        )
        op.create_index("ix_workflow_steps_workflow_id", "workflow_steps", ["workflow_id"])

    if "request_types" not in existing_tables:
        op.create_table(
            "request_types",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=100), nullable=False),
            sa.Column("label", sa.String(length=200), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("key"),
        )
        op.create_index("ix_request_types_workflow_id", "request_types", ["workflow_id"])

    if "form_templates" not in existing_tables:
        op.create_table(
            "form_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("schema", sa.JSON(), nullable=True),
            sa.Column("audience_config", sa.JSON(), nullable=True),
            sa.Column("request_type_id", sa.Integer(), nullable=True),
            sa.Column("document_template", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["request_type_id"], ["request_types.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_form_templates_request_type_id", "form_templates", ["request_type_id"])

    if "requests" not in existing_tables:
        op.create_table(
            "requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("reference_no", sa.String(length=40), nullable=False),
            sa.Column("requester_id", sa.Integer(), nullable=False),
            sa.Column("form_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("current_step_id", sa.Integer(), nullable=True),
            sa.Column("submission_data", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            _ts("submitted_at", nullable=False),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["requester_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["form_id"], ["form_templates.id"]),
            sa.ForeignKeyConstraint(["current_step_id"], ["workflow_steps.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("reference_no"),
        )
        op.create_index("ix_requests_requester_id", "requests", ["requester_id"])
        op.create_index("ix_requests_form_id", "requests", ["form_id"])
        op.create_index("ix_requests_status_step", "requests", ["status", "current_step_id"])
        op.create_index("ix_requests_requester_submitted", "requests", ["requester_id", "submitted_at"])

    if "request_actions" not in existing_tables:
        op.create_table(
            "request_actions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("step_id", sa.Integer(), nullable=True),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["step_id"], ["workflow_steps.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_request_actions_request", "request_actions", ["request_id", "created_at"])
        op.create_index("ix_request_actions_actor", "request_actions", ["actor_id"])

    if "attachments" not in existing_tables:
        op.create_table(
            "attachments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("uploader_id", sa.Integer(), nullable=True),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("storage_location", sa.String(length=500), nullable=False),
            sa.Column("file_type", sa.String(length=30), nullable=True),
            _ts("uploaded_at", nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["uploader_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_attachments_request_id", "attachments", ["request_id"])

    if "delegations" not in existing_tables:
        op.create_table(
            "delegations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("grantor_id", sa.Integer(), nullable=False),
            sa.Column("grantee_id", sa.Integer(), nullable=False),
            _ts("starts_at", nullable=False),
            _ts("ends_at", nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("reason", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["grantor_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["grantee_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("ends_at > starts_at", name="ck_delegation_window"),
        )
        op.create_index("ix_delegations_grantor_id", "delegations", ["grantor_id"])
        op.create_index("ix_delegations_grantee_active", "delegations", ["grantee_id", "is_active"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=True),
            sa.Column("template_key", sa.String(length=40), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("link", sa.String(length=300), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True, server_default=sa.false()),
            _ts("read_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
        op.create_index("ix_notifications_request_id", "notifications", ["request_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=True),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.Column("ip_address", sa.String(length=45), nullable=True),
            _ts("timestamp", nullable=False),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if bind.dialect.name != "sqlite" and "users" in existing_tables:
        op.drop_constraint("fk_departments_manager_id", "departments", type_="foreignkey")
        op.drop_constraint("fk_colleges_dean_id", "colleges", type_="foreignkey")

    for table in (
        "audit_logs", "notifications", "delegations", "attachments", "request_actions",
        "requests", "form_templates", "request_types", "workflow_steps", "workflows",
        "users", "departments", "colleges", "roles",
    ):
        if table in existing_tables:
            op.drop_table(table)
