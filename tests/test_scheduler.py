from datetime import timedelta

import pytest

from conftest import create_agent
from issueloop import db, scheduler
from issueloop.config import Settings
from issueloop.queue import JobPayload, QueueFullError


async def _set(agent_id: str, **values) -> None:
    async with db.get_session() as session:
        agent = await db.require_agent(session, agent_id)
        for key, value in values.items():
            setattr(agent, key, value)


@pytest.mark.asyncio
async def test_unplanned_agent_gets_plan_job(database) -> None:
    agent = await create_agent()
    assert scheduler.due_stages(agent, db.utcnow(), Settings()) == ["plan"]


@pytest.mark.asyncio
async def test_exec_and_eval_intervals(database) -> None:
    agent = await create_agent()
    now = db.utcnow()
    await _set(
        agent.id,
        plan_version=1,
        state="executing",
        last_iter_at=now - timedelta(seconds=30),
        last_eval_at=now - timedelta(seconds=700),
    )
    async with db.get_session() as session:
        agent = await db.require_agent(session, agent.id)

    settings = Settings(min_seconds_between_iterations=60)
    assert scheduler.due_stages(agent, now, settings) == ["eval"]
    assert scheduler.due_stages(agent, now + timedelta(seconds=30), settings) == ["exec", "eval"]


@pytest.mark.asyncio
async def test_agent_waiting_on_review_is_not_ticked(database) -> None:
    agent = await create_agent()
    await _set(agent.id, plan_version=1, state="planning")
    async with db.get_session() as session:
        agent = await db.require_agent(session, agent.id)
    assert scheduler.due_stages(agent, db.utcnow(), Settings()) == []


@pytest.mark.asyncio
async def test_sweep_enqueues_due_jobs_and_skips_paused(database, monkeypatch) -> None:
    enqueued: list[JobPayload] = []

    async def fake_enqueue(payload: JobPayload) -> str:
        enqueued.append(payload)
        return "1-0"

    monkeypatch.setattr(scheduler, "enqueue_job", fake_enqueue)
    runnable = await create_agent(issue_number=1)
    paused = await create_agent(issue_number=2)
    await _set(paused.id, paused=True)

    result = await scheduler.sweep_once(Settings())

    assert result.plan == [runnable.id]
    assert result.total == 1
    assert [(p.agent_id, p.stage) for p in enqueued] == [(runnable.id, "plan")]


@pytest.mark.asyncio
async def test_sweep_records_full_queue(database, monkeypatch) -> None:
    async def full(payload: JobPayload) -> str:
        raise QueueFullError("stream at capacity")

    monkeypatch.setattr(scheduler, "enqueue_job", full)
    agent = await create_agent()

    result = await scheduler.sweep_once(Settings())

    assert result.skipped == [agent.id]
    assert result.total == 0
