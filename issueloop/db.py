"""Async database connection and operations for the iteration loop."""

from __future__ import annotations

import hashlib
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import settings
from .errors import (
    AgentNotFoundError,
    PlanVersionMismatchError,
    SchemaNotInitializedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    Agent,
    Base,
    ExecutionLog,
    PatchAttempt,
    PlanTask,
    PlanUpdateLog,
    PlanVersion,
    Rollback,
    StakeholderReview,
)
from .risk import Conflict, RiskAssessment
from .tasks import TaskSpec, TaskStatus

if TYPE_CHECKING:
    from .prioritizer import PrioritizedTask

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def configure_engine(url: str | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """(Re)create the async engine and session factory.

    Defaults to the PostgreSQL URL from settings; tests pass an aiosqlite URL.
    """
    global _engine, _session_factory
    engine_kwargs.setdefault("echo", False)
    if url is None:
        url = settings.async_database_url
        engine_kwargs.setdefault("pool_pre_ping", True)
    _engine = create_async_engine(url, **engine_kwargs)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return configure_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(
                    schema_not_initialized_message(exc)
                ) from exc
            raise


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def agent_id_for(owner: str, repo: str, issue_number: int) -> str:
    return f"{owner}_{repo}_{issue_number}".lower()


def diff_hash(diff: str | None) -> str:
    return hashlib.sha256((diff or "").encode()).hexdigest()


# =============================================================================
# Agent Operations
# =============================================================================


async def get_agent(session: AsyncSession, agent_id: str) -> Agent | None:
    """Get an agent by its ID."""
    result = await session.execute(select(Agent).where(Agent.id == agent_id))
    return result.scalar_one_or_none()


async def require_agent(session: AsyncSession, agent_id: str) -> Agent:
    agent = await get_agent(session, agent_id)
    if agent is None:
        raise AgentNotFoundError(agent_id)
    return agent


async def get_or_create_agent(
    session: AsyncSession,
    owner: str,
    repo: str,
    issue_number: int,
    *,
    issue_title: str = "",
    issue_body: str = "",
    installation_id: int | None = None,
) -> Agent:
    """Get the agent for an issue, creating it in the planning state."""
    agent_id = agent_id_for(owner, repo, issue_number)
    agent = await get_agent(session, agent_id)
    if agent is not None:
        return agent

    agent = Agent(
        id=agent_id,
        owner=owner,
        repo=repo,
        issue_number=issue_number,
        issue_title=issue_title,
        issue_body=issue_body,
        installation_id=installation_id,
        state="planning",
        plan_version=0,
        confidence=0.0,
        iterations=0,
        idle_iterations=0,
        completed=False,
        failed=False,
        paused=False,
    )
    session.add(agent)
    await session.flush()
    return agent


async def list_agents(
    session: AsyncSession,
    *,
    state: str | None = None,
    owner: str | None = None,
    repo: str | None = None,
    limit: int | None = None,
) -> list[Agent]:
    query = select(Agent).order_by(Agent.created_at.desc(), Agent.id)
    if state:
        query = query.where(Agent.state == state)
    if owner:
        query = query.where(Agent.owner == owner)
    if repo:
        query = query.where(Agent.repo == repo)
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_runnable_agents(session: AsyncSession) -> list[Agent]:
    """Agents the sweep may tick: not finished, not stopped, not paused."""
    result = await session.execute(
        select(Agent)
        .where(
            Agent.completed.is_(False),
            Agent.failed.is_(False),
            Agent.paused.is_(False),
            Agent.state != "stopped",
        )
        .order_by(Agent.id)
    )
    return list(result.scalars().all())


async def list_active_agents_for_repo(
    session: AsyncSession,
    owner: str,
    repo: str,
    *,
    exclude_id: str | None = None,
) -> list[Agent]:
    """Other non-completed, non-stopped agents working the same repository."""
    query = select(Agent).where(
        Agent.owner == owner,
        Agent.repo == repo,
        Agent.completed.is_(False),
        Agent.failed.is_(False),
        Agent.state != "stopped",
    )
    if exclude_id:
        query = query.where(Agent.id != exclude_id)
    result = await session.execute(query.order_by(Agent.id))
    return list(result.scalars().all())


async def update_agent_state(
    session: AsyncSession,
    agent: Agent,
    new_state: str,
    *,
    stop_reason: str | None = None,
) -> Agent:
    """Update agent state with logging."""
    old_state = agent.state
    agent.state = new_state
    agent.updated_at = utcnow()
    if new_state == "stopped" and stop_reason:
        agent.stop_reason = stop_reason
        if stop_reason == "completed":
            agent.completed = True

    session.add(
        ExecutionLog(
            agent_id=agent.id,
            phase="state_change",
            event="state_updated",
            message=f"State changed from {old_state} to {new_state}",
            details={"old_state": old_state, "new_state": new_state, "stop_reason": stop_reason},
        )
    )
    return agent


# =============================================================================
# Plan Operations
# =============================================================================


async def bump_plan_version(session: AsyncSession, agent_id: str, expected: int) -> int:
    """Compare-and-swap the agent's plan version from ``expected`` to ``expected + 1``."""
    result = await session.execute(
        update(Agent)
        .where(Agent.id == agent_id, Agent.plan_version == expected)
        .values(plan_version=expected + 1, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        current = await session.scalar(select(Agent.plan_version).where(Agent.id == agent_id))
        if current is None:
            raise AgentNotFoundError(agent_id)
        raise PlanVersionMismatchError(agent_id, expected, current)
    return expected + 1


async def get_live_tasks(session: AsyncSession, agent_id: str) -> list[PlanTask]:
    """Task rows of the agent's current plan version, in plan order."""
    result = await session.execute(
        select(PlanTask)
        .where(PlanTask.agent_id == agent_id, PlanTask.retired.is_(False))
        .order_by(PlanTask.position)
    )
    return list(result.scalars().all())


async def write_plan(
    session: AsyncSession,
    agent: Agent,
    version: int,
    tasks: list[TaskSpec],
    *,
    scores: dict[str, PrioritizedTask] | None = None,
    conflicts: list[Conflict] | None = None,
    risk: RiskAssessment | None = None,
) -> PlanVersion:
    """Retire the previous task rows and write ``tasks`` as plan ``version``."""
    await session.execute(
        update(PlanTask)
        .where(PlanTask.agent_id == agent.id, PlanTask.retired.is_(False))
        .values(retired=True)
        .execution_options(synchronize_session="fetch")
    )

    scores = scores or {}
    snapshot: list[dict[str, Any]] = []
    for position, spec in enumerate(tasks):
        row = PlanTask(
            agent_id=agent.id,
            plan_version=version,
            position=position,
            key=spec.id,
            title=spec.title,
            type=spec.type,
            description=spec.description,
            labels=list(spec.labels),
            paths=list(spec.paths),
            depends_on=list(spec.depends_on),
            dependency_pins=dict(spec.dependency_pins),
            origin=spec.origin.value,
            status=spec.status.value,
            retired=False,
        )
        entry = spec.to_dict()
        scored = scores.get(spec.id)
        if scored is not None:
            fields = scored.score_fields()
            for name, value in fields.items():
                setattr(row, name, value)
            entry.update(fields)
        session.add(row)
        snapshot.append(entry)

    plan = PlanVersion(
        agent_id=agent.id,
        version=version,
        tasks=snapshot,
        conflicts=[c.to_dict() for c in conflicts or []],
        risk=risk.to_dict() if risk else {},
    )
    session.add(plan)
    await session.flush()
    return plan


async def get_plan_version(
    session: AsyncSession, agent_id: str, version: int | None = None
) -> PlanVersion | None:
    """Get a plan snapshot; the latest one when ``version`` is omitted."""
    query = select(PlanVersion).where(PlanVersion.agent_id == agent_id)
    if version is not None:
        query = query.where(PlanVersion.version == version)
    result = await session.execute(query.order_by(PlanVersion.version.desc()).limit(1))
    return result.scalar_one_or_none()


async def list_plan_versions(session: AsyncSession, agent_id: str) -> list[PlanVersion]:
    result = await session.execute(
        select(PlanVersion).where(PlanVersion.agent_id == agent_id).order_by(PlanVersion.version)
    )
    return list(result.scalars().all())


async def add_plan_update_log(
    session: AsyncSession,
    agent_id: str,
    *,
    from_version: int,
    to_version: int,
    update_type: str,
    changes: dict[str, Any],
) -> PlanUpdateLog:
    log = PlanUpdateLog(
        agent_id=agent_id,
        from_version=from_version,
        to_version=to_version,
        update_type=update_type,
        changes=changes,
    )
    session.add(log)
    await session.flush()
    return log


async def list_plan_update_logs(session: AsyncSession, agent_id: str) -> list[PlanUpdateLog]:
    result = await session.execute(
        select(PlanUpdateLog)
        .where(PlanUpdateLog.agent_id == agent_id)
        .order_by(PlanUpdateLog.to_version)
    )
    return list(result.scalars().all())


async def set_task_status(
    session: AsyncSession,
    agent_id: str,
    task_keys: Iterable[str],
    status: TaskStatus,
) -> None:
    keys = list(task_keys)
    if not keys:
        return
    await session.execute(
        update(PlanTask)
        .where(
            PlanTask.agent_id == agent_id,
            PlanTask.retired.is_(False),
            PlanTask.key.in_(keys),
        )
        .values(status=status.value)
        .execution_options(synchronize_session="fetch")
    )


# =============================================================================
# Review Operations
# =============================================================================


async def create_review(
    session: AsyncSession,
    agent_id: str,
    plan_version: int,
    *,
    kind: str = "plan",
    required_approvers: list[str] | None = None,
    reasons: list[str] | None = None,
) -> StakeholderReview:
    review = StakeholderReview(
        agent_id=agent_id,
        plan_version=plan_version,
        kind=kind,
        status="pending",
        required_approvers=list(required_approvers or []),
        approved_by=[],
        reasons=list(reasons or []),
    )
    session.add(review)
    await session.flush()
    return review


async def get_pending_review(session: AsyncSession, agent_id: str) -> StakeholderReview | None:
    result = await session.execute(
        select(StakeholderReview)
        .where(StakeholderReview.agent_id == agent_id, StakeholderReview.status == "pending")
        .order_by(StakeholderReview.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_reviews(session: AsyncSession, agent_id: str) -> list[StakeholderReview]:
    result = await session.execute(
        select(StakeholderReview)
        .where(StakeholderReview.agent_id == agent_id)
        .order_by(StakeholderReview.created_at)
    )
    return list(result.scalars().all())


# =============================================================================
# Patch Operations
# =============================================================================


async def record_patch_attempt(
    session: AsyncSession,
    agent_id: str,
    iteration: int,
    *,
    task_keys: list[str],
    diff: str | None,
    validation_ok: bool,
    reasons: list[str],
    file_stats: list[dict[str, Any]] | None = None,
    requires_secondary_review: bool = False,
) -> PatchAttempt:
    """Append one gate decision. Attempts are never updated except to mark apply/rollback."""
    attempt = PatchAttempt(
        agent_id=agent_id,
        iteration=iteration,
        task_keys=list(task_keys),
        diff_hash=diff_hash(diff),
        diff_bytes=len((diff or "").encode()),
        file_stats=list(file_stats or []),
        validation_ok=validation_ok,
        reasons=list(reasons),
        requires_secondary_review=requires_secondary_review,
        applied=False,
        rolled_back=False,
    )
    session.add(attempt)
    await session.flush()
    return attempt


async def mark_patch_applied(
    session: AsyncSession, attempt: PatchAttempt, commit_ref: str | None
) -> PatchAttempt:
    if not attempt.validation_ok:
        raise ValueError(f"Patch attempt {attempt.id} failed validation and cannot be applied")
    attempt.applied = True
    attempt.commit_ref = commit_ref
    await session.flush()
    return attempt


async def get_patch_attempt(session: AsyncSession, attempt_id: str) -> PatchAttempt | None:
    result = await session.execute(select(PatchAttempt).where(PatchAttempt.id == attempt_id))
    return result.scalar_one_or_none()


async def list_patch_attempts(
    session: AsyncSession, agent_id: str, *, limit: int | None = None
) -> list[PatchAttempt]:
    query = (
        select(PatchAttempt)
        .where(PatchAttempt.agent_id == agent_id)
        .order_by(PatchAttempt.iteration, PatchAttempt.created_at)
    )
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def record_rollback(
    session: AsyncSession,
    attempt: PatchAttempt,
    *,
    reason: str,
    success: bool,
    error: str | None = None,
) -> Rollback:
    rollback = Rollback(
        agent_id=attempt.agent_id,
        patch_attempt_id=attempt.id,
        commit_ref=attempt.commit_ref,
        reason=reason,
        success=success,
        error=error,
    )
    if success:
        attempt.rolled_back = True
    session.add(rollback)
    await session.flush()
    return rollback


# =============================================================================
# Execution Log Operations
# =============================================================================


async def log_event(
    session: AsyncSession,
    agent: Agent | None = None,
    phase: str | None = None,
    event: str | None = None,
    *,
    agent_id: str | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> ExecutionLog:
    """Log an execution event."""
    resolved_agent_id = agent_id or (agent.id if agent else None)
    if not resolved_agent_id or not phase or not event:
        raise ValueError("log_event requires agent/agent_id, phase, and event.")

    log = ExecutionLog(
        agent_id=resolved_agent_id,
        phase=phase,
        event=event,
        message=message,
        details=details,
        duration_ms=duration_ms,
    )
    session.add(log)
    await session.flush()
    return log


async def list_execution_logs(
    session: AsyncSession, agent_id: str, *, limit: int | None = None
) -> list[ExecutionLog]:
    query = (
        select(ExecutionLog)
        .where(ExecutionLog.agent_id == agent_id)
        .order_by(ExecutionLog.created_at.desc())
    )
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())
