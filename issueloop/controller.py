"""Adaptive iteration controller.

One exec tick is a small LangGraph state machine::

    select -> generate -> validate -> apply -> record -> decide

Nodes that settle the outcome early (no eligible tasks, no changes, a
collaborator error, a rejected patch) route straight to ``record``. Every
executed tick appends exactly one patch attempt. Database sessions are opened
per node and are never held across a collaborator call.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import defaultdict
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict, TypeVar

from . import db
from .collaborators import (
    Evaluator,
    IterationSnapshot,
    NullScanner,
    PatchApplier,
    PatchGenerator,
    PatchProposal,
    PlanGenerator,
    RepositoryInspector,
    SecurityFinding,
    SecurityScanner,
)
from .config import AdaptivePolicy, RiskPolicy, Settings, TerminationPolicy, settings as default_settings
from .context import ContextCache, load_project_context
from .diffs import parse_unified_diff, post_change_line_counts
from .errors import CollaboratorError, ConfigurationError, IssueLoopError
from .events import AgentEvent, EventEmitter, EventType, event_bus, progress_event, stop_event
from .git_ops import GitWorkspace
from .models import Agent, Rollback, StakeholderReview
from .planning import PlanInputs, PlanManager, PlanMutation
from .prioritizer import TaskPrioritizer
from .risk import RiskLevel, clamp
from .tasks import TaskOrigin, TaskSpec, TaskStatus
from .validation import PatchValidationGate, ValidationResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

Outcome = Literal["applied", "rejected", "failed", "noop", "skipped", "awaiting_review"]
StopReason = Literal["completed", "stalled", "escalated"]


# =============================================================================
# Pure policy helpers
# =============================================================================


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def compute_batch_size(confidence: float, normalized_risk: float, policy: AdaptivePolicy) -> int:
    raw = confidence * policy.max_batch * (1 - policy.dynamic_risk_weight * normalized_risk)
    return int(clamp(round_half_up(raw), policy.min_batch, policy.max_batch))


def update_confidence(confidence: float, success: bool, policy: AdaptivePolicy) -> float:
    if success:
        confidence += policy.confidence_increase_per_success
    else:
        confidence -= policy.confidence_decrease_on_fail
    return round(clamp(confidence, 0.0, 1.0), 6)


def eligible_tasks(order: list[str], tasks: dict[str, TaskSpec]) -> list[str]:
    """Tasks in execution order that are not completed and whose in-plan deps are."""
    eligible: list[str] = []
    for task_id in order:
        task = tasks.get(task_id)
        if task is None or task.status == TaskStatus.COMPLETED:
            continue
        deps = [d for d in task.depends_on if d in tasks]
        if all(tasks[d].status == TaskStatus.COMPLETED for d in deps):
            eligible.append(task_id)
    return eligible


def select_batch(
    order: list[str],
    tasks: dict[str, TaskSpec],
    batch_size: int,
    exploitation_bias: float,
) -> list[str]:
    """Take the exploit share from the head of the eligible list and the rest from its tail."""
    eligible = eligible_tasks(order, tasks)
    size = min(batch_size, len(eligible))
    exploit = min(round_half_up(batch_size * exploitation_bias), size)
    explore = size - exploit
    head = eligible[:exploit]
    tail = eligible[len(eligible) - explore:] if explore else []
    return head + tail


def check_termination(
    confidence: float,
    idle_iterations: int,
    normalized_risk: float,
    termination: TerminationPolicy,
    risk: RiskPolicy,
) -> StopReason | None:
    if confidence >= termination.required_confidence:
        return "completed"
    if idle_iterations >= termination.max_idle_iterations:
        return "stalled"
    if normalized_risk > risk.escalate_threshold:
        return "escalated"
    return None


# =============================================================================
# Tick state and results
# =============================================================================


class IterationState(TypedDict, total=False):
    agent_id: str
    agent: Agent
    iteration: int
    confidence: float
    normalized_risk: float
    batch: list[TaskSpec]
    low_risk: bool
    diff: str
    findings: list[SecurityFinding]
    validation: ValidationResult
    attempt_id: str
    commit_ref: str
    outcome: Outcome
    reasons: list[str]
    request_eval: bool
    stop_reason: StopReason
    started_at: float


@dataclass
class IterationResult:
    agent_id: str
    outcome: Outcome
    iteration: int = 0
    confidence: float = 0.0
    batch: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    attempt_id: str | None = None
    commit_ref: str | None = None
    stop_reason: StopReason | None = None
    request_eval: bool = False


@dataclass
class EvaluationOutcome:
    agent_id: str
    coverage_score: float | None = None
    added_tasks: list[str] = field(default_factory=list)
    stopped: bool = False
    skipped: bool = False
    reason: str | None = None


def _require_langgraph() -> tuple[object, object]:
    try:
        from langgraph.graph import END, StateGraph  # type: ignore[import-not-found]
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "LangGraph is not installed. Install dependencies and retry (e.g. `uv sync`)."
        ) from exc
    return END, StateGraph


# =============================================================================
# Controller
# =============================================================================


class AdaptiveIterationController:
    """Drives agents through plan, execute and evaluate ticks."""

    def __init__(
        self,
        *,
        patch_generator: PatchGenerator | None = None,
        applier: PatchApplier | None = None,
        plan_generator: PlanGenerator | None = None,
        evaluator: Evaluator | None = None,
        scanner: SecurityScanner | None = None,
        inspector: RepositoryInspector | None = None,
        settings: Settings | None = None,
        emitter: EventEmitter | None = None,
        plan_manager: PlanManager | None = None,
        gate: PatchValidationGate | None = None,
        prioritizer: TaskPrioritizer | None = None,
        context_cache: ContextCache | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.patch_generator = patch_generator
        self.applier = applier or GitWorkspace(self.settings.workspace_root)
        self.evaluator = evaluator
        self.scanner = scanner or NullScanner()
        self.inspector = inspector
        self.emitter = emitter or event_bus
        self.prioritizer = prioritizer or TaskPrioritizer(self.settings.prioritizer)
        self.context_cache = context_cache or ContextCache(self.settings.context_cache_ttl_seconds)
        self.plan_manager = plan_manager or PlanManager(
            self.settings,
            plan_generator=plan_generator,
            inspector=inspector,
            prioritizer=self.prioritizer,
            context_cache=self.context_cache,
        )
        self.gate = gate or PatchValidationGate(self.settings.diff, self.settings.security)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._app: Any = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, name: str, awaitable: Awaitable[T]) -> T:
        timeout = self.settings.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except IssueLoopError:
            raise
        except asyncio.TimeoutError as exc:
            raise CollaboratorError(name, f"timed out after {timeout}s") from exc
        except Exception as exc:
            raise CollaboratorError(name, exc) from exc

    async def _emit(self, event: AgentEvent) -> None:
        await self.emitter.emit(event)

    def lock_for(self, agent_id: str) -> asyncio.Lock:
        return self._locks[agent_id]

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    async def node_select(self, state: IterationState) -> IterationState:
        agent_id = state["agent_id"]
        async with db.get_session() as session:
            agent = await db.require_agent(session, agent_id)
            if agent.paused or agent.state == "stopped" or agent.failed:
                return {"agent": agent, "outcome": "skipped", "reasons": ["Agent is paused or stopped"]}
            if await db.get_pending_review(session, agent_id):
                return {
                    "agent": agent,
                    "outcome": "awaiting_review",
                    "reasons": ["Waiting for stakeholder review"],
                }

        if agent.plan_version == 0:
            inputs = await self.plan_manager.prepare(agent)
            async with db.get_session() as session:
                agent = await db.require_agent(session, agent_id)
                await self.plan_manager.create_plan(session, agent, inputs)
                review = await db.get_pending_review(session, agent_id)
            await self._emit(_plan_created(agent))
            if review is not None:
                await self._emit(_review_requested(agent))
                return {
                    "agent": agent,
                    "outcome": "awaiting_review",
                    "reasons": ["Waiting for stakeholder review"],
                }

        context = await load_project_context(
            agent.owner, agent.repo, cache=self.context_cache, inspector=self.inspector
        )
        async with db.get_session() as session:
            agent = await db.require_agent(session, agent_id)
            if agent.state == "planning":
                await db.update_agent_state(session, agent, "executing")
            rows = await db.get_live_tasks(session, agent_id)

        specs = [row.to_spec() for row in rows]
        tasks = {t.id: t for t in specs}
        prioritization = self.prioritizer.prioritize(specs, context)
        normalized_risk = prioritization.risk.normalized_risk
        if normalized_risk >= self.settings.risk.high_threshold:
            logger.warning("Agent %s is running a high-risk plan (%.2f)", agent_id, normalized_risk)

        adaptive = self.settings.adaptive
        batch_size = compute_batch_size(agent.confidence, normalized_risk, adaptive)
        batch_ids = select_batch(
            prioritization.execution_order, tasks, batch_size, adaptive.exploitation_bias
        )
        scored = prioritization.by_id()
        batch = [tasks[i] for i in batch_ids]

        update: IterationState = {
            "agent": agent,
            "iteration": agent.iterations + 1,
            "confidence": agent.confidence,
            "normalized_risk": normalized_risk,
            "batch": batch,
            "low_risk": all(scored[i].risk_level == RiskLevel.LOW for i in batch_ids),
        }
        if not batch:
            update.update(outcome="noop", reasons=["No eligible tasks"], request_eval=True)
        return update

    async def node_generate(self, state: IterationState) -> IterationState:
        agent = state["agent"]
        async with db.get_session() as session:
            completed = [
                row.key
                for row in await db.get_live_tasks(session, agent.id)
                if row.status == TaskStatus.COMPLETED.value
            ]
        snapshot = IterationSnapshot(
            agent_id=agent.id,
            iteration=state["iteration"],
            confidence=state["confidence"],
            plan_version=agent.plan_version,
            completed_task_ids=completed,
        )
        try:
            proposal: PatchProposal = await self._call(
                "patch_generator", self.patch_generator.generate_patch(state["batch"], snapshot)
            )
        except CollaboratorError as exc:
            return {"outcome": "failed", "reasons": [str(exc.message)]}

        if proposal.no_changes or not (proposal.diff or "").strip():
            return {"outcome": "noop", "reasons": ["Generator proposed no changes"]}
        return {"diff": proposal.diff}

    async def _scan_staged(self, agent: Agent, diff: str, paths: list[str]) -> list[SecurityFinding]:
        async with self.applier.staged(agent, diff) as root:
            return await self.scanner.scan(paths, root)

    async def node_validate(self, state: IterationState) -> IterationState:
        agent = state["agent"]
        diff = state["diff"]
        parsed = parse_unified_diff(diff)
        affected = [p for t in state["batch"] for p in t.paths]
        scan_paths = [f.path for f in parsed.files if not f.is_deleted] if parsed.files else affected

        try:
            findings = await self._call("security_scanner", self._scan_staged(agent, diff, scan_paths))
        except CollaboratorError as exc:
            return {"outcome": "failed", "reasons": [str(exc.message)]}

        current: dict[str, int] = {}
        if self.inspector is not None:
            existing = [f.old_path or f.path for f in parsed.files if not f.is_new and not f.is_deleted]
            try:
                current = await self._call(
                    "repository_inspector",
                    self.inspector.line_counts(agent.owner, agent.repo, existing),
                )
            except CollaboratorError as exc:
                logger.debug("Line counts unavailable for %s: %s", agent.id, exc)
        line_counts = post_change_line_counts(parsed, current)

        async with db.get_session() as session:
            result, attempt = await self.gate.check(
                session,
                agent,
                state["iteration"],
                diff,
                task_keys=[t.id for t in state["batch"]],
                affected_files=affected,
                findings=findings,
                low_risk=state.get("low_risk", False),
                post_change_line_counts=line_counts,
            )

        update: IterationState = {
            "findings": findings,
            "validation": result,
            "attempt_id": attempt.id,
            "reasons": list(result.reasons),
        }
        if not result.ok:
            update["outcome"] = "rejected"
        return update

    async def node_apply(self, state: IterationState) -> IterationState:
        try:
            commit_ref = await self._call("patch_applier", self.applier.apply(state["agent"], state["diff"]))
        except CollaboratorError as exc:
            return {"outcome": "failed", "reasons": [*state.get("reasons", []), str(exc.message)]}
        return {"outcome": "applied", "commit_ref": commit_ref}

    async def node_record(self, state: IterationState) -> IterationState:
        outcome = state["outcome"]
        batch = state.get("batch", [])
        reasons = state.get("reasons", [])
        adaptive = self.settings.adaptive

        async with db.get_session() as session:
            agent = await db.require_agent(session, state["agent_id"])
            attempt_id = state.get("attempt_id")
            if attempt_id is None:
                attempt = await db.record_patch_attempt(
                    session,
                    agent.id,
                    state["iteration"],
                    task_keys=[t.id for t in batch],
                    diff=state.get("diff"),
                    validation_ok=False,
                    reasons=reasons,
                )
                attempt_id = attempt.id

            if outcome == "applied":
                attempt = await db.get_patch_attempt(session, attempt_id)
                if attempt is None:
                    raise IssueLoopError(f"Patch attempt {attempt_id} vanished before it was recorded")
                await db.mark_patch_applied(session, attempt, state.get("commit_ref"))
                await db.set_task_status(session, agent.id, [t.id for t in batch], TaskStatus.COMPLETED)
                agent.confidence = update_confidence(agent.confidence, True, adaptive)
                agent.idle_iterations = 0
            elif outcome in ("rejected", "failed"):
                agent.confidence = update_confidence(agent.confidence, False, adaptive)
                agent.idle_iterations += 1
            else:
                agent.idle_iterations += 1

            agent.iterations = state["iteration"]
            agent.last_iter_at = db.utcnow()
            counts = await _task_counts(session, agent.id)
            confidence = agent.confidence

        await self._emit(
            progress_event(
                state["agent_id"],
                state["iteration"],
                confidence,
                counts,
                message=f"Iteration {state['iteration']} {outcome}",
                data={
                    "outcome": outcome,
                    "batch": [t.id for t in batch],
                    "reasons": reasons,
                    "high_risk": state.get("normalized_risk", 0.0) >= self.settings.risk.high_threshold,
                },
                duration_ms=int((time.monotonic() - state.get("started_at", time.monotonic())) * 1000),
            )
        )
        if outcome == "applied":
            await self._emit(
                AgentEvent(
                    type=EventType.PATCH_APPLIED,
                    agent_id=state["agent_id"],
                    iteration=state["iteration"],
                    phase="apply",
                    message=f"Applied patch {state.get('commit_ref')}",
                    data={"commit_ref": state.get("commit_ref"), "tasks": [t.id for t in batch]},
                )
            )
        elif outcome == "rejected":
            await self._emit(
                AgentEvent(
                    type=EventType.PATCH_REJECTED,
                    agent_id=state["agent_id"],
                    iteration=state["iteration"],
                    phase="validate",
                    message="Patch rejected by validation gate",
                    data={"reasons": reasons},
                )
            )
        elif outcome == "failed":
            await self._emit(
                AgentEvent(
                    type=EventType.ITERATION_FAILED,
                    agent_id=state["agent_id"],
                    iteration=state["iteration"],
                    phase="execute",
                    message="; ".join(reasons) or "Iteration failed",
                    data={"reasons": reasons},
                )
            )
        return {"attempt_id": attempt_id, "confidence": confidence}

    async def node_decide(self, state: IterationState) -> IterationState:
        async with db.get_session() as session:
            agent = await db.require_agent(session, state["agent_id"])
            reason = check_termination(
                agent.confidence,
                agent.idle_iterations,
                state.get("normalized_risk", 0.0),
                self.settings.termination,
                self.settings.risk,
            )
            if reason is None:
                if agent.state != "executing":
                    await db.update_agent_state(session, agent, "executing")
                return {"confidence": agent.confidence}

            await db.update_agent_state(session, agent, "stopped", stop_reason=reason)
            if reason == "escalated":
                await self.plan_manager.request_escalation_review(
                    session,
                    agent,
                    [f"Normalized risk {state.get('normalized_risk', 0.0):.2f} exceeds escalation threshold"],
                )
            confidence = agent.confidence
            iteration = agent.iterations

        logger.info("Agent %s stopped: %s (confidence %.2f)", state["agent_id"], reason, confidence)
        await self._emit(stop_event(state["agent_id"], iteration, reason, confidence))
        if reason == "escalated":
            await self._emit(_review_requested(agent))
        return {"stop_reason": reason}

    # ------------------------------------------------------------------
    # Graph wiring
    # ------------------------------------------------------------------

    @staticmethod
    def _route_after_select(state: IterationState) -> str:
        outcome = state.get("outcome")
        if outcome in ("skipped", "awaiting_review"):
            return "end"
        if outcome == "noop":
            return "record"
        return "generate"

    @staticmethod
    def _route_after_generate(state: IterationState) -> str:
        return "record" if state.get("outcome") else "validate"

    @staticmethod
    def _route_after_validate(state: IterationState) -> str:
        return "record" if state.get("outcome") else "apply"

    def _graph(self) -> Any:
        if self._app is not None:
            return self._app
        END, StateGraph = _require_langgraph()
        graph = StateGraph(IterationState)  # type: ignore[operator]
        graph.add_node("select", self.node_select)
        graph.add_node("generate", self.node_generate)
        graph.add_node("validate", self.node_validate)
        graph.add_node("apply", self.node_apply)
        graph.add_node("record", self.node_record)
        graph.add_node("decide", self.node_decide)

        graph.set_entry_point("select")
        graph.add_conditional_edges(
            "select",
            self._route_after_select,
            {"end": END, "record": "record", "generate": "generate"},
        )
        graph.add_conditional_edges(
            "generate", self._route_after_generate, {"record": "record", "validate": "validate"}
        )
        graph.add_conditional_edges(
            "validate", self._route_after_validate, {"record": "record", "apply": "apply"}
        )
        graph.add_edge("apply", "record")
        graph.add_edge("record", "decide")
        graph.add_edge("decide", END)

        self._app = graph.compile()
        return self._app

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def run_iteration(self, agent_id: str) -> IterationResult:
        """Run one exec tick for ``agent_id``. Ticks for one agent never overlap."""
        if self.patch_generator is None:
            raise ConfigurationError("No patch generator configured")
        async with self.lock_for(agent_id):
            final = await self._graph().ainvoke(
                {"agent_id": agent_id, "started_at": time.monotonic()}
            )

        batch = final.get("batch") or []
        return IterationResult(
            agent_id=agent_id,
            outcome=final.get("outcome", "skipped"),
            iteration=final.get("iteration", 0),
            confidence=final.get("confidence", final["agent"].confidence if final.get("agent") else 0.0),
            batch=[t.id for t in batch],
            reasons=list(final.get("reasons") or []),
            attempt_id=final.get("attempt_id"),
            commit_ref=final.get("commit_ref"),
            stop_reason=final.get("stop_reason"),
            request_eval=bool(final.get("request_eval")),
        )

    async def plan(self, agent_id: str) -> int:
        """Create the first plan for an agent if it has none; return the plan version."""
        async with self.lock_for(agent_id):
            async with db.get_session() as session:
                agent = await db.require_agent(session, agent_id)
            if agent.plan_version > 0:
                return agent.plan_version
            inputs = await self.plan_manager.prepare(agent)
            async with db.get_session() as session:
                agent = await db.require_agent(session, agent_id)
                await self.plan_manager.create_plan(session, agent, inputs)
                review = await db.get_pending_review(session, agent_id)

        await self._emit(_plan_created(agent))
        if review is not None:
            await self._emit(_review_requested(agent))
        return agent.plan_version

    async def run_evaluation(self, agent_id: str) -> EvaluationOutcome:
        if self.evaluator is None:
            raise ConfigurationError("No evaluator configured")

        async with self.lock_for(agent_id):
            async with db.get_session() as session:
                agent = await db.require_agent(session, agent_id)
                if agent.paused or agent.state == "stopped" or agent.failed or agent.plan_version == 0:
                    return EvaluationOutcome(agent_id=agent_id, skipped=True, reason="Agent not evaluable")
                if await db.get_pending_review(session, agent_id):
                    return EvaluationOutcome(
                        agent_id=agent_id, skipped=True, reason="Waiting for stakeholder review"
                    )
                await db.update_agent_state(session, agent, "evaluating")
                completed = [
                    row.key
                    for row in await db.get_live_tasks(session, agent_id)
                    if row.status == TaskStatus.COMPLETED.value
                ]

            try:
                result = await self._call("evaluator", self.evaluator.evaluate(agent, completed))
            except CollaboratorError as exc:
                logger.warning("Evaluation failed for %s: %s", agent_id, exc.message)
                async with db.get_session() as session:
                    agent = await db.require_agent(session, agent_id)
                    agent.last_eval_at = db.utcnow()
                    agent.confidence = update_confidence(agent.confidence, False, self.settings.adaptive)
                    agent.idle_iterations += 1
                    await db.update_agent_state(session, agent, "executing")
                    iteration = agent.iterations
                await self._emit(
                    AgentEvent(
                        type=EventType.ITERATION_FAILED,
                        agent_id=agent_id,
                        iteration=iteration,
                        phase="evaluate",
                        message=str(exc.message),
                        data={"reasons": [str(exc.message)]},
                    )
                )
                return EvaluationOutcome(agent_id=agent_id, reason=str(exc.message))

            outcome = EvaluationOutcome(agent_id=agent_id, coverage_score=result.coverage_score)
            eval_policy = self.settings.eval
            events: list[AgentEvent] = []
            inputs = PlanInputs(
                context=await load_project_context(
                    agent.owner, agent.repo, cache=self.context_cache, inspector=self.inspector
                ),
                ownership=await self.plan_manager.load_ownership(agent),
            )

            async with db.get_session() as session:
                agent = await db.require_agent(session, agent_id)
                agent.last_eval_at = db.utcnow()

                if result.stop_recommended:
                    await db.update_agent_state(session, agent, "stopped", stop_reason="completed")
                    outcome.stopped = True
                    outcome.reason = "Evaluator recommended stopping"
                    events.append(stop_event(agent_id, agent.iterations, "completed", agent.confidence))
                else:
                    expand = (
                        result.coverage_score < eval_policy.coverage_target
                        and eval_policy.auto_expand
                        and agent.confidence >= eval_policy.confidence_gate
                        and result.new_tasks
                    )
                    if expand:
                        new_tasks = [
                            t.with_changes(origin=TaskOrigin.EVALUATION)
                            for t in result.new_tasks[: eval_policy.max_new_tasks_per_eval]
                        ]
                        update = await self.plan_manager.update_plan(
                            session,
                            agent_id,
                            PlanMutation(add_tasks=new_tasks, update_type="evaluation"),
                            agent.plan_version,
                            inputs=inputs,
                        )
                        if update.success:
                            logs = await db.list_plan_update_logs(session, agent_id)
                            outcome.added_tasks = list(logs[-1].changes.get("added", []))
                            events.append(
                                AgentEvent(
                                    type=EventType.PLAN_UPDATED,
                                    agent_id=agent_id,
                                    phase="evaluate",
                                    message=f"Plan v{update.new_version}: {len(new_tasks)} task(s) from evaluation",
                                    data={"plan_version": update.new_version, "added": outcome.added_tasks},
                                )
                            )
                        else:
                            outcome.reason = update.reason
                            events.append(
                                AgentEvent(
                                    type=EventType.PLAN_UPDATE_REJECTED,
                                    agent_id=agent_id,
                                    phase="evaluate",
                                    message=update.reason or "Plan update rejected",
                                    data={"conflicts": [c.to_dict() for c in update.conflicts]},
                                )
                            )
                    if agent.state == "evaluating":
                        await db.update_agent_state(session, agent, "executing")

                events.insert(
                    0,
                    AgentEvent(
                        type=EventType.EVALUATION_COMPLETED,
                        agent_id=agent_id,
                        phase="evaluate",
                        message=f"Coverage {result.coverage_score:.2f}",
                        data={
                            "coverage_score": result.coverage_score,
                            "rationale": result.rationale,
                            "stop_recommended": result.stop_recommended,
                        },
                    ),
                )

        for event in events:
            await self._emit(event)
        return outcome

    async def pause(self, agent_id: str) -> Agent:
        async with db.get_session() as session:
            agent = await db.require_agent(session, agent_id)
            agent.paused = True
        await self._emit(
            AgentEvent(type=EventType.AGENT_PAUSED, agent_id=agent_id, phase="control", message="Agent paused")
        )
        return agent

    async def resume(self, agent_id: str) -> Agent:
        async with db.get_session() as session:
            agent = await db.require_agent(session, agent_id)
            agent.paused = False
            if agent.state not in ("stopped", "planning"):
                await db.update_agent_state(session, agent, "executing")
        await self._emit(
            AgentEvent(type=EventType.AGENT_RESUMED, agent_id=agent_id, phase="control", message="Agent resumed")
        )
        return agent

    async def approve_review(self, agent_id: str, approver: str) -> StakeholderReview:
        async with db.get_session() as session:
            review = await self.plan_manager.approve_review(session, agent_id, approver)
        if review.status == "approved":
            await self._emit(
                AgentEvent(
                    type=EventType.REVIEW_APPROVED,
                    agent_id=agent_id,
                    phase="review",
                    message=f"{review.kind.capitalize()} review approved",
                    data={"approved_by": list(review.approved_by or []), "kind": review.kind},
                )
            )
        return review

    async def reject_review(self, agent_id: str, approver: str, reason: str | None = None) -> StakeholderReview:
        async with db.get_session() as session:
            review = await self.plan_manager.reject_review(session, agent_id, approver, reason)
        await self._emit(
            AgentEvent(
                type=EventType.REVIEW_REJECTED,
                agent_id=agent_id,
                phase="review",
                message=f"{review.kind.capitalize()} review rejected by {approver}",
                data={"reason": reason, "kind": review.kind},
            )
        )
        return review

    async def rollback_applied_patch(
        self, agent_id: str, attempt_id: str, findings: list[SecurityFinding]
    ) -> Rollback | None:
        """Revert an applied patch when a late scan reports a critical finding.

        Returns ``None`` when no finding is critical.
        """
        critical = [f for f in findings if f.severity == "critical"]
        if not critical:
            return None

        async with self.lock_for(agent_id):
            async with db.get_session() as session:
                agent = await db.require_agent(session, agent_id)
                attempt = await db.get_patch_attempt(session, attempt_id)
                if attempt is None or attempt.agent_id != agent_id:
                    raise IssueLoopError(f"Patch attempt {attempt_id} not found for {agent_id}")
                if not attempt.applied or attempt.rolled_back or not attempt.commit_ref:
                    raise IssueLoopError(f"Patch attempt {attempt_id} has no applied commit to revert")
                commit_ref = attempt.commit_ref
                task_keys = list(attempt.task_keys or [])

            error: str | None = None
            try:
                await self._call("patch_applier", self.applier.revert(agent, commit_ref))
            except CollaboratorError as exc:
                error = str(exc.message)

            reason = "Critical security finding(s): " + ", ".join(sorted({f.rule_id for f in critical}))
            async with db.get_session() as session:
                agent = await db.require_agent(session, agent_id)
                attempt = await db.get_patch_attempt(session, attempt_id)
                if attempt is None:
                    raise IssueLoopError(f"Patch attempt {attempt_id} not found for {agent_id}")
                rollback = await db.record_rollback(
                    session, attempt, reason=reason, success=error is None, error=error
                )
                if error is None:
                    await db.set_task_status(session, agent_id, task_keys, TaskStatus.PENDING)
                agent.confidence = update_confidence(agent.confidence, False, self.settings.adaptive)

        await self._emit(
            AgentEvent(
                type=EventType.PATCH_ROLLED_BACK,
                agent_id=agent_id,
                phase="rollback",
                message=reason if error is None else f"Rollback failed: {error}",
                data={"attempt_id": attempt_id, "commit_ref": commit_ref, "success": error is None},
            )
        )
        return rollback


def _plan_created(agent: Agent) -> AgentEvent:
    return AgentEvent(
        type=EventType.PLAN_CREATED,
        agent_id=agent.id,
        phase="plan",
        message=f"Plan v{agent.plan_version} created",
        data={"plan_version": agent.plan_version, "state": agent.state},
    )


def _review_requested(agent: Agent) -> AgentEvent:
    return AgentEvent(
        type=EventType.REVIEW_REQUESTED,
        agent_id=agent.id,
        phase="review",
        message=f"Stakeholder review requested for plan v{agent.plan_version}",
        data={"plan_version": agent.plan_version},
    )


async def _task_counts(session: Any, agent_id: str) -> dict[str, int]:
    counts = {status.value: 0 for status in TaskStatus}
    for row in await db.get_live_tasks(session, agent_id):
        counts[row.status] = counts.get(row.status, 0) + 1
    return counts
