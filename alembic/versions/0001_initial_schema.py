"""Initial schema - agents, plans, reviews, patch attempts and audit log.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Agents table
    op.create_table(
        "agents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("repo", sa.String(), nullable=False),
        sa.Column("issue_number", sa.Integer(), nullable=False),
        sa.Column("issue_title", sa.String(), server_default=""),
        sa.Column("issue_body", sa.Text(), server_default=""),
        sa.Column("installation_id", sa.Integer(), nullable=True),
        sa.Column("state", sa.String(), server_default="planning"),
        sa.Column("plan_version", sa.Integer(), server_default="0"),
        sa.Column("confidence", sa.Float(), server_default="0"),
        sa.Column("iterations", sa.Integer(), server_default="0"),
        sa.Column("idle_iterations", sa.Integer(), server_default="0"),
        sa.Column("completed", sa.Boolean(), server_default="false"),
        sa.Column("failed", sa.Boolean(), server_default="false"),
        sa.Column("paused", sa.Boolean(), server_default="false"),
        sa.Column("stop_reason", sa.String(), nullable=True),
        sa.Column("last_iter_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_eval_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_agents_owner", "agents", ["owner"])
    op.create_index("ix_agents_repo", "agents", ["repo"])
    op.create_index("idx_agents_state", "agents", ["state"])

    # Plan tasks table (live rows have retired = false)
    op.create_table(
        "plan_tasks",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("plan_version", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), server_default="0"),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("type", sa.String(), server_default="code"),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("labels", postgresql.JSONB(), server_default="[]"),
        sa.Column("paths", postgresql.JSONB(), server_default="[]"),
        sa.Column("depends_on", postgresql.JSONB(), server_default="[]"),
        sa.Column("dependency_pins", postgresql.JSONB(), server_default="{}"),
        sa.Column("origin", sa.String(), server_default="initial"),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column("priority", sa.Float(), server_default="0"),
        sa.Column("risk_level", sa.String(), server_default="low"),
        sa.Column("impact_score", sa.Float(), server_default="0"),
        sa.Column("urgency_score", sa.Float(), server_default="0"),
        sa.Column("complexity_score", sa.Float(), server_default="0"),
        sa.Column("dependency_level", sa.Float(), server_default="0"),
        sa.Column("business_value", sa.Float(), server_default="0"),
        sa.Column("technical_debt", sa.Float(), server_default="0"),
        sa.Column("estimated_effort", sa.Float(), server_default="0"),
        sa.Column("retired", sa.Boolean(), server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_plan_tasks_agent_id", "plan_tasks", ["agent_id"])
    op.create_index("idx_plan_tasks_live", "plan_tasks", ["agent_id", "retired", "position"])

    # Plan version snapshots
    op.create_table(
        "plan_versions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("tasks", postgresql.JSONB(), server_default="[]"),
        sa.Column("conflicts", postgresql.JSONB(), server_default="[]"),
        sa.Column("risk", postgresql.JSONB(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("agent_id", "version"),
    )
    op.create_index("ix_plan_versions_agent_id", "plan_versions", ["agent_id"])

    # Plan update log
    op.create_table(
        "plan_update_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("from_version", sa.Integer(), nullable=False),
        sa.Column("to_version", sa.Integer(), nullable=False),
        sa.Column("update_type", sa.String(), nullable=False),
        sa.Column("changes", postgresql.JSONB(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_plan_update_logs_agent_id", "plan_update_logs", ["agent_id"])

    # Stakeholder reviews
    op.create_table(
        "stakeholder_reviews",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("plan_version", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), server_default="plan"),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column("required_approvers", postgresql.JSONB(), server_default="[]"),
        sa.Column("approved_by", postgresql.JSONB(), server_default="[]"),
        sa.Column("reasons", postgresql.JSONB(), server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_stakeholder_reviews_agent_id", "stakeholder_reviews", ["agent_id"])

    # Patch attempts (append-only)
    op.create_table(
        "patch_attempts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("iteration", sa.Integer(), nullable=False),
        sa.Column("task_keys", postgresql.JSONB(), server_default="[]"),
        sa.Column("diff_hash", sa.String(), nullable=False),
        sa.Column("diff_bytes", sa.Integer(), server_default="0"),
        sa.Column("file_stats", postgresql.JSONB(), server_default="[]"),
        sa.Column("validation_ok", sa.Boolean(), nullable=False),
        sa.Column("reasons", postgresql.JSONB(), server_default="[]"),
        sa.Column("requires_secondary_review", sa.Boolean(), server_default="false"),
        sa.Column("applied", sa.Boolean(), server_default="false"),
        sa.Column("commit_ref", sa.String(), nullable=True),
        sa.Column("rolled_back", sa.Boolean(), server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_patch_attempts_agent_id", "patch_attempts", ["agent_id"])

    # Rollbacks
    op.create_table(
        "rollbacks",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column(
            "patch_attempt_id",
            sa.String(),
            sa.ForeignKey("patch_attempts.id", ondelete="CASCADE"),
        ),
        sa.Column("commit_ref", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("success", sa.Boolean(), server_default="false"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_rollbacks_agent_id", "rollbacks", ["agent_id"])

    # Execution logs
    op.create_table(
        "execution_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_execution_logs_agent_id", "execution_logs", ["agent_id"])


def downgrade() -> None:
    op.drop_table("execution_logs")
    op.drop_table("rollbacks")
    op.drop_table("patch_attempts")
    op.drop_table("stakeholder_reviews")
    op.drop_table("plan_update_logs")
    op.drop_table("plan_versions")
    op.drop_table("plan_tasks")
    op.drop_table("agents")
