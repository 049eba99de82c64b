"""create browser automation tables

Revision ID: 4b1e7c2a9d30
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4b1e7c2a9d30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TASK_STATUS = sa.Enum(
    "pending",
    "queued",
    "executing",
    "completed",
    "failed",
    "cancelled",
    name="browser_task_status",
)


def upgrade() -> None:
    op.create_table(
        "browser_automation_tasks",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.String(100), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("task_name", sa.String(200), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column(
            "depends_on_task_id",
            sa.Uuid(),
            sa.ForeignKey("browser_automation_tasks.id"),
            nullable=True,
        ),
        sa.Column("status", TASK_STATUS, nullable=False, server_default="pending"),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("instructions", sa.Text(), nullable=True),
        sa.Column("target_url", sa.String(2048), nullable=True),
        sa.Column("timeout_seconds", sa.Integer(), nullable=True),
        sa.Column("complexity", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("requires_vision", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_high_risk", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_browser_automation_tasks_session_id", "browser_automation_tasks", ["session_id"])
    op.create_index("ix_browser_automation_tasks_user_id", "browser_automation_tasks", ["user_id"])
    op.create_index("ix_browser_automation_tasks_status", "browser_automation_tasks", ["status"])
    op.create_index(
        "ix_browser_tasks_queue",
        "browser_automation_tasks",
        ["session_id", "status", "priority", "created_at"],
    )

    op.create_table(
        "browser_automation_audit",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.String(100), nullable=False),
        sa.Column("task_id", sa.String(64), nullable=True),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("action_type", sa.String(100), nullable=False),
        sa.Column("action_description", sa.Text(), nullable=True),
        sa.Column("url", sa.String(2048), nullable=True),
        sa.Column("element_selector", sa.String(1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("response_data", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("screenshot_ref", sa.String(2048), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("compliance_flags", sa.JSON(), nullable=False),
        sa.Column("pii_detected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pii_fields", sa.JSON(), nullable=False),
        sa.Column("tos_violation_risk", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rate_limit_warning", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("anti_bot_detected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_browser_automation_audit_session_id", "browser_automation_audit", ["session_id"])
    op.create_index("ix_browser_automation_audit_task_id", "browser_automation_audit", ["task_id"])
    op.create_index("ix_browser_automation_audit_user_id", "browser_automation_audit", ["user_id"])

    op.create_table(
        "provider_executions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("task_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_provider_executions_recent", "provider_executions", ["provider", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_provider_executions_recent", table_name="provider_executions")
    op.drop_table("provider_executions")

    op.drop_index("ix_browser_automation_audit_user_id", table_name="browser_automation_audit")
    op.drop_index("ix_browser_automation_audit_task_id", table_name="browser_automation_audit")
    op.drop_index("ix_browser_automation_audit_session_id", table_name="browser_automation_audit")
    op.drop_table("browser_automation_audit")

    op.drop_index("ix_browser_tasks_queue", table_name="browser_automation_tasks")
    op.drop_index("ix_browser_automation_tasks_status", table_name="browser_automation_tasks")
    op.drop_index("ix_browser_automation_tasks_user_id", table_name="browser_automation_tasks")
    op.drop_index("ix_browser_automation_tasks_session_id", table_name="browser_automation_tasks")
    op.drop_table("browser_automation_tasks")

    TASK_STATUS.drop(op.get_bind(), checkfirst=True)
