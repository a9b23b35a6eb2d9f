"""Plan, exec and eval stage workers."""

from __future__ import annotations

import asyncio
import logging

from .. import db
from ..collaborators import load_factory
from ..config import Settings, settings as default_settings
from ..context import ContextCache
from ..controller import AdaptiveIterationController
from ..events import AgentEvent, EventType, event_bus, register_default_handlers
from ..git_ops import GitWorkspace
from ..models import Agent
from ..queue import JobPayload, QueueFullError, enqueue_job
from ..security_scan import SemgrepScanner
from .base import RedisWorker

logger = logging.getLogger(__name__)


class StageWorker(RedisWorker):
    """Resolves collaborators from settings and runs the controller per job."""

    def __init__(self, *, stage: str, settings: Settings | None = None, group: str | None = None) -> None:
        super().__init__(stage=stage, group=group)
        self.settings = settings or default_settings
        self.workspace = GitWorkspace(self.settings.workspace_root)
        self.context_cache = ContextCache(self.settings.context_cache_ttl_seconds)
        self._collaborators: dict[str, object] = {}

    def _collaborator(self, name: str, *, required: bool) -> object:
        if name not in self._collaborators:
            self._collaborators[name] = load_factory(getattr(self.settings, name), name=name, required=required)
        return self._collaborators[name]

    def controller_for(self, agent: Agent) -> AdaptiveIterationController:
        """Controller whose scanner runs in the agent's checkout."""
        return AdaptiveIterationController(
            patch_generator=self._collaborator("patch_generator", required=self.stage == "exec"),  # type: ignore[arg-type]
            plan_generator=self._collaborator("plan_generator", required=self.stage != "eval"),  # type: ignore[arg-type]
            evaluator=self._collaborator("evaluator", required=self.stage == "eval"),  # type: ignore[arg-type]
            inspector=self._collaborator("repository_inspector", required=False),  # type: ignore[arg-type]
            applier=self.workspace,
            scanner=SemgrepScanner(
                self.workspace.path_for(agent),
                self.settings.security,
                timeout=self.settings.collaborator_timeout_seconds,
            ),
            settings=self.settings,
            context_cache=self.context_cache,
        )

    async def _load_agent(self, job: JobPayload) -> Agent:
        async with db.get_session() as session:
            return await db.require_agent(session, job.agent_id)

    async def _enqueue_next(self, job: JobPayload, stage: str) -> None:
        try:
            await enqueue_job(
                JobPayload(owner=job.owner, repo=job.repo, issue_number=job.issue_number, stage=stage)
            )
        except QueueFullError as exc:
            logger.warning("Could not enqueue %s for %s: %s", stage, job.agent_id, exc)


class PlanWorker(StageWorker):
    def __init__(self, **kwargs: object) -> None:
        super().__init__(stage="plan", **kwargs)  # type: ignore[arg-type]

    async def process(self, job: JobPayload) -> None:
        async with db.get_session() as session:
            created = await db.get_agent(session, job.agent_id) is None
            agent = await db.get_or_create_agent(
                session,
                job.owner,
                job.repo,
                job.issue_number,
                issue_title=job.issue_title,
                installation_id=job.installation_id,
            )
        if created:
            await event_bus.emit(
                AgentEvent(
                    type=EventType.AGENT_CREATED,
                    agent_id=agent.id,
                    phase="plan",
                    message=f"Agent created for {job.owner}/{job.repo}#{job.issue_number}",
                )
            )

        version = await self.controller_for(agent).plan(agent.id)
        logger.info("Agent %s is on plan v%d", agent.id, version)
        await self._enqueue_next(job, "exec")


class ExecWorker(StageWorker):
    def __init__(self, **kwargs: object) -> None:
        super().__init__(stage="exec", **kwargs)  # type: ignore[arg-type]

    async def process(self, job: JobPayload) -> None:
        agent = await self._load_agent(job)
        result = await self.controller_for(agent).run_iteration(agent.id)
        logger.info(
            "Agent %s iteration %d: %s (confidence %.2f)",
            agent.id,
            result.iteration,
            result.outcome,
            result.confidence,
        )
        if result.request_eval:
            await self._enqueue_next(job, "eval")


class EvalWorker(StageWorker):
    def __init__(self, **kwargs: object) -> None:
        super().__init__(stage="eval", **kwargs)  # type: ignore[arg-type]

    async def process(self, job: JobPayload) -> None:
        agent = await self._load_agent(job)
        outcome = await self.controller_for(agent).run_evaluation(agent.id)
        if outcome.added_tasks:
            logger.info("Agent %s gained %d task(s) from evaluation", agent.id, len(outcome.added_tasks))


WORKERS: dict[str, type[StageWorker]] = {
    "plan": PlanWorker,
    "exec": ExecWorker,
    "eval": EvalWorker,
}


def run_worker(stage: str) -> None:
    register_default_handlers()
    worker = WORKERS[stage]()
    asyncio.run(worker.run_forever())
