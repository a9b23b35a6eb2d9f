"""SQLAlchemy models for the iteration loop database."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .tasks import TaskOrigin, TaskSpec, TaskStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[str]: JSONType,
        list[dict[str, Any]]: JSONType,
    }


def _uuid() -> str:
    return str(uuid4())


# =============================================================================
# AGENTS
# =============================================================================


class Agent(Base):
    """One autonomous loop working a single issue."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String, primary_key=True)  # owner_repo_issue
    owner: Mapped[str] = mapped_column(String, nullable=False, index=True)
    repo: Mapped[str] = mapped_column(String, nullable=False, index=True)
    issue_number: Mapped[int] = mapped_column(Integer, nullable=False)
    issue_title: Mapped[str] = mapped_column(String, default="")
    issue_body: Mapped[str] = mapped_column(Text, default="")
    installation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    state: Mapped[str] = mapped_column(String, default="planning")
    plan_version: Mapped[int] = mapped_column(Integer, default=0)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    iterations: Mapped[int] = mapped_column(Integer, default=0)
    idle_iterations: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    failed: Mapped[bool] = mapped_column(Boolean, default=False)
    paused: Mapped[bool] = mapped_column(Boolean, default=False)
    stop_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    last_iter_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_eval_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    tasks: Mapped[list[PlanTask]] = relationship(
        back_populates="agent", cascade="all, delete-orphan"
    )
    plan_versions: Mapped[list[PlanVersion]] = relationship(
        back_populates="agent", cascade="all, delete-orphan"
    )
    patch_attempts: Mapped[list[PatchAttempt]] = relationship(
        back_populates="agent", cascade="all, delete-orphan"
    )
    execution_logs: Mapped[list[ExecutionLog]] = relationship(
        back_populates="agent", cascade="all, delete-orphan"
    )

    @property
    def active(self) -> bool:
        return not self.completed and not self.failed and self.state != "stopped"


# =============================================================================
# PLANS
# =============================================================================


class PlanTask(Base):
    """A task row belonging to one plan version. Superseded rows are retired, never deleted."""

    __tablename__ = "plan_tasks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(
        String, ForeignKey("agents.id", ondelete="CASCADE"), index=True
    )
    plan_version: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    key: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, default="code")
    description: Mapped[str] = mapped_column(Text, default="")
    labels: Mapped[list[str]] = mapped_column(default=list)
    paths: Mapped[list[str]] = mapped_column(default=list)
    depends_on: Mapped[list[str]] = mapped_column(default=list)
    dependency_pins: Mapped[dict[str, Any]] = mapped_column(default=dict)
    origin: Mapped[str] = mapped_column(String, default=TaskOrigin.INITIAL.value)
    status: Mapped[str] = mapped_column(String, default=TaskStatus.PENDING.value)

    # Prioritizer scores
    priority: Mapped[float] = mapped_column(Float, default=0.0)
    risk_level: Mapped[str] = mapped_column(String, default="low")
    impact_score: Mapped[float] = mapped_column(Float, default=0.0)
    urgency_score: Mapped[float] = mapped_column(Float, default=0.0)
    complexity_score: Mapped[float] = mapped_column(Float, default=0.0)
    dependency_level: Mapped[float] = mapped_column(Float, default=0.0)
    business_value: Mapped[float] = mapped_column(Float, default=0.0)
    technical_debt: Mapped[float] = mapped_column(Float, default=0.0)
    estimated_effort: Mapped[float] = mapped_column(Float, default=0.0)

    retired: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    agent: Mapped[Agent] = relationship(back_populates="tasks")

    def to_spec(self) -> TaskSpec:
        return TaskSpec(
            id=self.key,
            title=self.title,
            type=self.type,
            description=self.description or "",
            labels=list(self.labels or []),
            paths=list(self.paths or []),
            depends_on=list(self.depends_on or []),
            dependency_pins={str(k): str(v) for k, v in (self.dependency_pins or {}).items()},
            status=TaskStatus(self.status),
            origin=TaskOrigin(self.origin),
        )


class PlanVersion(Base):
    """Immutable snapshot of a plan, written once per version."""

    __tablename__ = "plan_versions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(
        String, ForeignKey("agents.id", ondelete="CASCADE"), index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    tasks: Mapped[list[dict[str, Any]]] = mapped_column(default=list)
    conflicts: Mapped[list[dict[str, Any]]] = mapped_column(default=list)
    risk: Mapped[dict[str, Any]] = mapped_column(default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("agent_id", "version"),)

    agent: Mapped[Agent] = relationship(back_populates="plan_versions")


class PlanUpdateLog(Base):
    """Diff of one successful plan mutation."""

    __tablename__ = "plan_update_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(
        String, ForeignKey("agents.id", ondelete="CASCADE"), index=True
    )
    from_version: Mapped[int] = mapped_column(Integer, nullable=False)
    to_version: Mapped[int] = mapped_column(Integer, nullable=False)
    update_type: Mapped[str] = mapped_column(String, nullable=False)
    changes: Mapped[dict[str, Any]] = mapped_column(default=dict)  # added/modified/removed/split
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StakeholderReview(Base):
    """Human sign-off gate for risky plans and escalations."""

    __tablename__ = "stakeholder_reviews"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(
        String, ForeignKey("agents.id", ondelete="CASCADE"), index=True
    )
    plan_version: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String, default="plan")  # plan, escalation
    status: Mapped[str] = mapped_column(String, default="pending")  # pending, approved, rejected
    required_approvers: Mapped[list[str]] = mapped_column(default=list)
    approved_by: Mapped[list[str]] = mapped_column(default=list)
    reasons: Mapped[list[str]] = mapped_column(default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# =============================================================================
# PATCHES
# =============================================================================


class PatchAttempt(Base):
    """Append-only record of every validation gate decision."""

    __tablename__ = "patch_attempts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(
        String, ForeignKey("agents.id", ondelete="CASCADE"), index=True
    )
    iteration: Mapped[int] = mapped_column(Integer, nullable=False)
    task_keys: Mapped[list[str]] = mapped_column(default=list)
    diff_hash: Mapped[str] = mapped_column(String, nullable=False)
    diff_bytes: Mapped[int] = mapped_column(Integer, default=0)
    file_stats: Mapped[list[dict[str, Any]]] = mapped_column(default=list)
    validation_ok: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reasons: Mapped[list[str]] = mapped_column(default=list)
    requires_secondary_review: Mapped[bool] = mapped_column(Boolean, default=False)
    applied: Mapped[bool] = mapped_column(Boolean, default=False)
    commit_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    rolled_back: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    agent: Mapped[Agent] = relationship(back_populates="patch_attempts")


class Rollback(Base):
    """Revert of an applied patch after a late security finding."""

    __tablename__ = "rollbacks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(
        String, ForeignKey("agents.id", ondelete="CASCADE"), index=True
    )
    patch_attempt_id: Mapped[str] = mapped_column(
        String, ForeignKey("patch_attempts.id", ondelete="CASCADE")
    )
    commit_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# AUDIT
# =============================================================================


class ExecutionLog(Base):
    """Audit trail of loop events."""

    __tablename__ = "execution_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(
        String, ForeignKey("agents.id", ondelete="CASCADE"), index=True
    )
    phase: Mapped[str] = mapped_column(String, nullable=False)
    event: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    agent: Mapped[Agent] = relationship(back_populates="execution_logs")
