"""Sweep that keeps runnable agents moving.

Each sweep enqueues an exec tick for every runnable agent that has not
iterated within ``min_seconds_between_iterations`` and an eval tick for agents
whose last evaluation is older than ``eval.interval_seconds``. Agents without a
plan get a plan job instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from . import db
from .config import Settings, settings as default_settings
from .models import Agent
from .queue import JobPayload, QueueFullError, enqueue_job

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    plan: list[str] = field(default_factory=list)
    exec: list[str] = field(default_factory=list)
    eval: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.plan) + len(self.exec) + len(self.eval)


def due_stages(agent: Agent, now: datetime, settings: Settings) -> list[str]:
    """Stages an agent should be ticked for at ``now``."""
    if agent.plan_version == 0:
        return ["plan"]
    if agent.state == "planning":
        # waiting on a stakeholder review
        return []

    stages: list[str] = []
    last_iter = db.as_utc(agent.last_iter_at)
    if last_iter is None or now - last_iter >= timedelta(seconds=settings.min_seconds_between_iterations):
        stages.append("exec")

    last_eval = db.as_utc(agent.last_eval_at) or db.as_utc(agent.created_at)
    if last_eval is None or now - last_eval >= timedelta(seconds=settings.eval.interval_seconds):
        stages.append("eval")
    return stages


async def sweep_once(settings: Settings | None = None, *, now: datetime | None = None) -> SweepResult:
    settings = settings or default_settings
    now = now or db.utcnow()
    result = SweepResult()

    async with db.get_session() as session:
        agents = await db.list_runnable_agents(session)

    for agent in agents:
        for stage in due_stages(agent, now, settings):
            payload = JobPayload(
                owner=agent.owner,
                repo=agent.repo,
                issue_number=agent.issue_number,
                stage=stage,
                issue_title=agent.issue_title or "",
                installation_id=agent.installation_id,
            )
            try:
                await enqueue_job(payload)
            except QueueFullError as exc:
                logger.warning("Sweep could not enqueue %s for %s: %s", stage, agent.id, exc)
                result.skipped.append(agent.id)
                continue
            getattr(result, stage).append(agent.id)

    if result.total:
        logger.info(
            "Sweep enqueued %d plan, %d exec, %d eval job(s)",
            len(result.plan),
            len(result.exec),
            len(result.eval),
        )
    return result


async def run_scheduler(settings: Settings | None = None, *, stop: asyncio.Event | None = None) -> None:
    """Sweep every ``sweep_interval_seconds`` until ``stop`` is set."""
    settings = settings or default_settings
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await sweep_once(settings)
        except Exception as exc:
            logger.error("Sweep failed: %s", exc)
        try:
            await asyncio.wait_for(stop.wait(), timeout=settings.sweep_interval_seconds)
        except asyncio.TimeoutError:
            pass
