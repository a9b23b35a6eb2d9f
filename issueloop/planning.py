"""
Plan manager: versioned task plans with conflict checks and a stakeholder review gate.

Plan mutations are optimistic. A mutation reads the live plan, re-runs conflict
detection on the proposed task set, then commits by compare-and-swap on the
agent's plan version. Every successful mutation produces exactly one new
version, one immutable snapshot and one update log entry.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from . import db
from .config import Settings, settings as default_settings
from .conflicts import ConflictDetector, blocks_plan_update, normalize_path
from .context import ContextCache, ProjectContext, load_project_context
from .errors import (
    CollaboratorError,
    ConfigurationError,
    IssueLoopError,
    PlanVersionMismatchError,
)
from .ownership import OwnershipRules
from .prioritizer import Prioritization, TaskPrioritizer
from .risk import Conflict, ConflictType, RiskLevel, has_high_severity
from .tasks import TaskOrigin, TaskSpec, TaskStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .collaborators import PlanGenerator, RepositoryActivity, RepositoryInspector
    from .models import Agent, PlanVersion, StakeholderReview

logger = logging.getLogger(__name__)


@dataclass
class PlanMutation:
    add_tasks: list[TaskSpec] = field(default_factory=list)
    modify_tasks: list[TaskSpec] = field(default_factory=list)
    remove_task_ids: list[str] = field(default_factory=list)
    split_tasks: dict[str, list[TaskSpec]] = field(default_factory=dict)
    update_type: str = "update"

    @property
    def is_empty(self) -> bool:
        return not (self.add_tasks or self.modify_tasks or self.remove_task_ids or self.split_tasks)


@dataclass
class PlanUpdateResult:
    success: bool
    new_version: int | None = None
    conflicts: list[Conflict] = field(default_factory=list)
    reason: str | None = None
    review_required: bool = False


@dataclass
class PlanInputs:
    """Collaborator-sourced inputs, gathered before any session is opened."""

    tasks: list[TaskSpec] = field(default_factory=list)
    context: ProjectContext = field(default_factory=ProjectContext)
    activity: RepositoryActivity | None = None
    ownership: OwnershipRules | None = None


class PlanManager:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        plan_generator: PlanGenerator | None = None,
        inspector: RepositoryInspector | None = None,
        prioritizer: TaskPrioritizer | None = None,
        detector: ConflictDetector | None = None,
        context_cache: ContextCache | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.policy = self.settings.plan
        self.plan_generator = plan_generator
        self.inspector = inspector
        self.prioritizer = prioritizer or TaskPrioritizer(self.settings.prioritizer)
        self.detector = detector or ConflictDetector(self.policy)
        self.context_cache = context_cache or ContextCache(self.settings.context_cache_ttl_seconds)

    # ------------------------------------------------------------------
    # Collaborator inputs
    # ------------------------------------------------------------------

    async def prepare(self, agent: Agent, *, with_tasks: bool = True) -> PlanInputs:
        """Call the plan generator and repository inspector for ``agent``."""
        inputs = PlanInputs(
            context=await load_project_context(
                agent.owner, agent.repo, cache=self.context_cache, inspector=self.inspector
            ),
            ownership=await self.load_ownership(agent),
        )
        if with_tasks:
            inputs.tasks = await self._generate_tasks(agent)
        if self.inspector is not None:
            try:
                inputs.activity = await self._with_timeout(
                    self.inspector.activity(agent.owner, agent.repo)
                )
            except Exception as exc:
                logger.warning("Repository activity unavailable for %s: %s", agent.id, exc)
        return inputs

    async def _generate_tasks(self, agent: Agent) -> list[TaskSpec]:
        if self.plan_generator is None:
            raise ConfigurationError("No plan generator configured")
        try:
            tasks = await self._with_timeout(self.plan_generator.generate_plan(agent))
        except asyncio.TimeoutError as exc:
            raise CollaboratorError("plan_generator", "timed out") from exc
        except IssueLoopError:
            raise
        except Exception as exc:
            raise CollaboratorError("plan_generator", exc) from exc
        return [
            t if isinstance(t, TaskSpec) else TaskSpec.from_dict(t, index=i)
            for i, t in enumerate(tasks)
        ]

    async def load_ownership(self, agent: Agent) -> OwnershipRules:
        text: str | None = None
        if self.inspector is not None:
            try:
                text = await self._with_timeout(
                    self.inspector.read_file(agent.owner, agent.repo, self.policy.ownership_file)
                )
            except Exception as exc:
                logger.warning("Ownership file unavailable for %s: %s", agent.id, exc)
        return OwnershipRules.from_yaml(text, default_approvers=self.policy.default_approvers)

    async def _with_timeout(self, coro: Any) -> Any:
        return await asyncio.wait_for(coro, timeout=self.settings.collaborator_timeout_seconds)

    # ------------------------------------------------------------------
    # Plan creation
    # ------------------------------------------------------------------

    async def ensure_plan(self, session: AsyncSession, agent: Agent) -> PlanVersion:
        """Return the current plan, generating the first version if needed.

        The controller gathers inputs outside the session and calls
        ``create_plan`` directly; this is the one-shot form for callers that
        already hold a session.
        """
        if agent.plan_version > 0:
            plan = await db.get_plan_version(session, agent.id, agent.plan_version)
            if plan is not None:
                return plan
        inputs = await self.prepare(agent)
        return await self.create_plan(session, agent, inputs)

    async def create_plan(self, session: AsyncSession, agent: Agent, inputs: PlanInputs) -> PlanVersion:
        expected = agent.plan_version
        tasks = _dedupe_ids(inputs.tasks)

        conflicts = await self.detector.detect_for_agent(session, agent, tasks)
        tasks = self.adapt_for_conflicts(tasks, conflicts)
        if inputs.activity is not None:
            tasks = self.optimize_for_activity(tasks, inputs.activity)

        prioritization = self.prioritizer.prioritize(tasks, inputs.context)
        version = await db.bump_plan_version(session, agent.id, expected)
        plan = await db.write_plan(
            session,
            agent,
            version,
            tasks,
            scores=prioritization.by_id(),
            conflicts=conflicts,
            risk=prioritization.risk,
        )
        await db.add_plan_update_log(
            session,
            agent.id,
            from_version=expected,
            to_version=version,
            update_type="initial" if expected == 0 else "regenerate",
            changes={"added": [t.id for t in tasks], "modified": [], "removed": [], "split": {}},
        )

        review = await self._open_review_if_needed(
            session, agent, version, tasks, conflicts, prioritization, inputs.ownership
        )
        await db.update_agent_state(session, agent, "planning" if review else "executing")
        logger.info(
            "Created plan v%d for %s with %d tasks (%d conflicts)",
            version,
            agent.id,
            len(tasks),
            len(conflicts),
        )
        return plan

    def adapt_for_conflicts(self, tasks: list[TaskSpec], conflicts: list[Conflict]) -> list[TaskSpec]:
        """Split partially overlapping tasks and move wholly overlapping ones last.

        A split produces ``<id>.1`` with the non-overlapping paths and keeps the
        original id for the overlapping remainder, which depends on ``<id>.1``.
        """
        contested = {
            f for c in conflicts if c.type == ConflictType.FILE_OVERLAP for f in c.affected_files
        }
        if not contested:
            return list(tasks)

        ready: list[TaskSpec] = []
        deferred: list[TaskSpec] = []
        for task in tasks:
            paths = [p for p in task.paths if p.strip()]
            shared = [p for p in paths if normalize_path(p) in contested]
            if not shared or task.status != TaskStatus.PENDING:
                ready.append(task)
            elif len(shared) == len(paths):
                deferred.append(task)
            else:
                free = [p for p in paths if p not in shared]
                head = task.with_changes(
                    id=f"{task.id}.1",
                    title=f"{task.title} (uncontested files)",
                    paths=free,
                    dependency_pins={},
                    origin=TaskOrigin.SPLIT,
                )
                tail = task.with_changes(
                    title=f"{task.title} (shared files)",
                    paths=shared,
                    depends_on=[*task.depends_on, head.id],
                    origin=TaskOrigin.SPLIT,
                )
                ready.extend([head, tail])
        if deferred:
            logger.info("Deferring %d task(s) that only touch contested files", len(deferred))
        return ready + deferred

    def optimize_for_activity(self, tasks: list[TaskSpec], activity: RepositoryActivity) -> list[TaskSpec]:
        """On a busy repository, order tasks with small footprints first (stable)."""
        busy = (
            activity.open_prs >= self.policy.busy_open_prs
            or activity.recent_commits >= self.policy.busy_recent_commits
        )
        if not busy:
            return list(tasks)
        return sorted(tasks, key=lambda t: len(t.paths))

    # ------------------------------------------------------------------
    # Stakeholder review gate
    # ------------------------------------------------------------------

    def review_reasons(
        self,
        tasks: list[TaskSpec],
        conflicts: list[Conflict],
        prioritization: Prioritization,
    ) -> list[str]:
        reasons: list[str] = []
        if prioritization.risk.overall_risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL) or has_high_severity(
            conflicts
        ):
            reasons.append("Plan risk assessed as high")
        if len(tasks) > self.policy.review_task_threshold:
            reasons.append(
                f"Plan has {len(tasks)} tasks (review threshold {self.policy.review_task_threshold})"
            )
        manifests = set(self.policy.critical_manifests)
        touched = sorted(
            {p for t in tasks for p in t.paths if posixpath.basename(p.strip()) in manifests}
        )
        if touched:
            reasons.append("Plan modifies dependency manifests: " + ", ".join(touched))
        return reasons

    async def _open_review_if_needed(
        self,
        session: AsyncSession,
        agent: Agent,
        version: int,
        tasks: list[TaskSpec],
        conflicts: list[Conflict],
        prioritization: Prioritization,
        ownership: OwnershipRules | None,
    ) -> StakeholderReview | None:
        reasons = self.review_reasons(tasks, conflicts, prioritization)
        if not reasons:
            return None
        existing = await db.get_pending_review(session, agent.id)
        if existing is not None:
            return existing

        ownership = ownership or OwnershipRules(default_approvers=list(self.policy.default_approvers))
        approvers = ownership.approvers_for([p for t in tasks for p in t.paths])
        review = await db.create_review(
            session,
            agent.id,
            version,
            kind="plan",
            required_approvers=approvers,
            reasons=reasons,
        )
        logger.info("Plan v%d for %s requires stakeholder review: %s", version, agent.id, reasons)
        return review

    async def request_escalation_review(
        self,
        session: AsyncSession,
        agent: Agent,
        reasons: list[str],
        ownership: OwnershipRules | None = None,
    ) -> StakeholderReview:
        existing = await db.get_pending_review(session, agent.id)
        if existing is not None:
            return existing
        ownership = ownership or OwnershipRules(default_approvers=list(self.policy.default_approvers))
        paths = [p for t in await db.get_live_tasks(session, agent.id) for p in (t.paths or [])]
        return await db.create_review(
            session,
            agent.id,
            agent.plan_version,
            kind="escalation",
            required_approvers=ownership.approvers_for(paths),
            reasons=reasons,
        )

    async def approve_review(self, session: AsyncSession, agent_id: str, approver: str) -> StakeholderReview:
        """Record one approval. The review is approved once every required approver signed."""
        agent = await db.require_agent(session, agent_id)
        review = await db.get_pending_review(session, agent_id)
        if review is None:
            raise IssueLoopError(f"No pending review for {agent_id}")

        approved_by = list(review.approved_by or [])
        if approver not in approved_by:
            approved_by.append(approver)
        review.approved_by = approved_by

        required = set(review.required_approvers or [])
        if required <= set(approved_by):
            review.status = "approved"
            review.resolved_at = db.utcnow()
            reopen = review.kind == "escalation" or agent.state == "planning"
            if review.kind == "escalation":
                agent.stop_reason = None
                agent.completed = False
            if reopen and not agent.failed:
                await db.update_agent_state(session, agent, "executing")
            logger.info("Review for %s approved by %s", agent_id, ", ".join(approved_by))
        await session.flush()
        return review

    async def reject_review(
        self, session: AsyncSession, agent_id: str, approver: str, reason: str | None = None
    ) -> StakeholderReview:
        agent = await db.require_agent(session, agent_id)
        review = await db.get_pending_review(session, agent_id)
        if review is None:
            raise IssueLoopError(f"No pending review for {agent_id}")

        review.status = "rejected"
        review.resolved_at = db.utcnow()
        review.reasons = [*(review.reasons or []), f"Rejected by {approver}" + (f": {reason}" if reason else "")]
        agent.failed = True
        await db.update_agent_state(session, agent, "stopped")
        await session.flush()
        logger.info("Review for %s rejected by %s", agent_id, approver)
        return review

    # ------------------------------------------------------------------
    # Plan mutation
    # ------------------------------------------------------------------

    async def update_plan(
        self,
        session: AsyncSession,
        agent_id: str,
        mutation: PlanMutation,
        expected_version: int | None = None,
        *,
        inputs: PlanInputs | None = None,
    ) -> PlanUpdateResult:
        agent = await db.require_agent(session, agent_id)
        current = agent.plan_version
        if expected_version is not None and expected_version != current:
            raise PlanVersionMismatchError(agent_id, expected_version, current)
        if mutation.is_empty:
            return PlanUpdateResult(success=False, conflicts=[], reason="Empty mutation")

        live = [row.to_spec() for row in await db.get_live_tasks(session, agent_id)]
        proposed, changes = apply_mutation(live, mutation)

        conflicts = await self.detector.detect_for_agent(session, agent, proposed)
        blocking = blocks_plan_update(conflicts, self.policy)
        if blocking:
            reason = (
                "High severity conflicts detected"
                if has_high_severity(blocking)
                else "File overlap with another agent's plan"
            )
            logger.warning("Plan update blocked for %s: %s", agent_id, reason)
            return PlanUpdateResult(success=False, conflicts=blocking, reason=reason)

        inputs = inputs or PlanInputs()
        prioritization = self.prioritizer.prioritize(proposed, inputs.context)
        new_version = await db.bump_plan_version(session, agent_id, current)
        await db.write_plan(
            session,
            agent,
            new_version,
            proposed,
            scores=prioritization.by_id(),
            conflicts=conflicts,
            risk=prioritization.risk,
        )
        await db.add_plan_update_log(
            session,
            agent_id,
            from_version=current,
            to_version=new_version,
            update_type=mutation.update_type,
            changes=changes,
        )
        review = await self._open_review_if_needed(
            session, agent, new_version, proposed, conflicts, prioritization, inputs.ownership
        )
        if review is not None and agent.state == "executing":
            await db.update_agent_state(session, agent, "planning")

        logger.info("Plan for %s updated to v%d (%s)", agent_id, new_version, mutation.update_type)
        return PlanUpdateResult(
            success=True,
            new_version=new_version,
            conflicts=conflicts,
            review_required=review is not None,
        )


def _dedupe_ids(tasks: list[TaskSpec]) -> list[TaskSpec]:
    seen: set[str] = set()
    result: list[TaskSpec] = []
    for task in tasks:
        if task.id in seen:
            task = task.with_changes(id=_unique_id(task.id, seen))
        seen.add(task.id)
        result.append(task)
    return result


def _unique_id(base: str, taken: set[str]) -> str:
    n = 2
    while f"{base}.{n}" in taken:
        n += 1
    return f"{base}.{n}"


def apply_mutation(
    tasks: list[TaskSpec], mutation: PlanMutation
) -> tuple[list[TaskSpec], dict[str, Any]]:
    """Apply ``mutation`` to a task list; return the new list and its change record.

    Unknown ids in ``modify_tasks``, ``remove_task_ids`` and ``split_tasks`` are
    ignored. Completed tasks keep their status when modified.
    """
    by_id = {t.id: t for t in tasks}
    order = [t.id for t in tasks]
    changes: dict[str, Any] = {"added": [], "modified": [], "removed": [], "split": {}}

    for task_id in mutation.remove_task_ids:
        if task_id in by_id:
            del by_id[task_id]
            order.remove(task_id)
            changes["removed"].append(task_id)

    for task in mutation.modify_tasks:
        existing = by_id.get(task.id)
        if existing is None:
            continue
        by_id[task.id] = task.with_changes(status=existing.status, origin=existing.origin)
        changes["modified"].append(task.id)

    for task_id, subtasks in mutation.split_tasks.items():
        parent = by_id.get(task_id)
        if parent is None or not subtasks:
            continue
        index = order.index(task_id)
        del by_id[task_id]
        order.remove(task_id)
        new_ids: list[str] = []
        for offset, sub in enumerate(subtasks):
            if sub.id in by_id:
                sub = sub.with_changes(id=_unique_id(sub.id, set(by_id)))
            sub = sub.with_changes(origin=TaskOrigin.SPLIT, status=TaskStatus.PENDING)
            by_id[sub.id] = sub
            order.insert(index + offset, sub.id)
            new_ids.append(sub.id)
        # dependents of the split task now wait for every part
        for other_id, other in list(by_id.items()):
            if task_id in other.depends_on:
                deps = [d for d in other.depends_on if d != task_id] + new_ids
                by_id[other_id] = other.with_changes(depends_on=deps)
        changes["split"][task_id] = new_ids

    origin = TaskOrigin.EVALUATION if mutation.update_type == "evaluation" else TaskOrigin.UPDATE
    for task in mutation.add_tasks:
        if task.id in by_id:
            task = task.with_changes(id=_unique_id(task.id, set(by_id)))
        task = task.with_changes(origin=origin, status=TaskStatus.PENDING)
        by_id[task.id] = task
        order.append(task.id)
        changes["added"].append(task.id)

    return [by_id[i] for i in order], changes
