import pytest

from conftest import FakeInspector, FakePlanGenerator, create_agent, make_tasks
from issueloop import db
from issueloop.collaborators import RepositoryActivity
from issueloop.config import PlanPolicy, Settings
from issueloop.context import ProjectContext, TeamInfo
from issueloop.errors import ConfigurationError, PlanVersionMismatchError
from issueloop.planning import PlanManager, PlanMutation, apply_mutation
from issueloop.risk import ConflictType, RiskLevel
from issueloop.tasks import TaskOrigin, TaskSpec, TaskStatus


def _manager(tasks: list[TaskSpec], *, settings: Settings | None = None, inspector=None) -> PlanManager:
    return PlanManager(settings or Settings(), plan_generator=FakePlanGenerator(tasks), inspector=inspector)


async def _plan(manager: PlanManager, agent_id: str) -> None:
    async with db.get_session() as session:
        agent = await db.require_agent(session, agent_id)
    inputs = await manager.prepare(agent)
    async with db.get_session() as session:
        agent = await db.require_agent(session, agent_id)
        await manager.create_plan(session, agent, inputs)


@pytest.mark.asyncio
async def test_create_plan_writes_version_snapshot_and_log(database) -> None:
    agent = await create_agent()
    manager = _manager(make_tasks(3))
    await _plan(manager, agent.id)

    async with db.get_session() as session:
        agent = await db.require_agent(session, agent.id)
        tasks = await db.get_live_tasks(session, agent.id)
        versions = await db.list_plan_versions(session, agent.id)
        logs = await db.list_plan_update_logs(session, agent.id)

    assert agent.plan_version == 1
    assert agent.state == "executing"
    assert [t.key for t in tasks] == ["T1", "T2", "T3"]
    assert all(t.priority > 0 for t in tasks)
    assert [v.version for v in versions] == [1]
    assert len(versions[0].tasks) == 3
    assert logs[0].update_type == "initial"
    assert logs[0].changes["added"] == ["T1", "T2", "T3"]


@pytest.mark.asyncio
async def test_duplicate_task_ids_are_made_unique(database) -> None:
    agent = await create_agent()
    tasks = [TaskSpec(id="T1", title="a"), TaskSpec(id="T1", title="b")]
    await _plan(_manager(tasks), agent.id)

    async with db.get_session() as session:
        keys = [t.key for t in await db.get_live_tasks(session, agent.id)]
    assert keys == ["T1", "T1.2"]


@pytest.mark.asyncio
async def test_missing_plan_generator_is_a_configuration_error(database) -> None:
    agent = await create_agent()
    with pytest.raises(ConfigurationError):
        await PlanManager(Settings()).prepare(agent)


@pytest.mark.asyncio
async def test_update_plan_bumps_version_once(database) -> None:
    agent = await create_agent()
    manager = _manager(make_tasks(2))
    await _plan(manager, agent.id)

    mutation = PlanMutation(
        add_tasks=[TaskSpec(id="T9", title="Extra", paths=["docs/extra.md"])],
        modify_tasks=[TaskSpec(id="T1", title="Renamed", paths=["docs/page1.md"])],
        remove_task_ids=["T2"],
    )
    async with db.get_session() as session:
        result = await manager.update_plan(session, agent.id, mutation, expected_version=1)

    assert result.success
    assert result.new_version == 2
    async with db.get_session() as session:
        tasks = {t.key: t for t in await db.get_live_tasks(session, agent.id)}
        logs = await db.list_plan_update_logs(session, agent.id)
        versions = await db.list_plan_versions(session, agent.id)

    assert set(tasks) == {"T1", "T9"}
    assert tasks["T1"].title == "Renamed"
    assert tasks["T9"].origin == TaskOrigin.UPDATE.value
    assert [v.version for v in versions] == [1, 2]
    assert logs[-1].changes == {"added": ["T9"], "modified": ["T1"], "removed": ["T2"], "split": {}}


@pytest.mark.asyncio
async def test_stale_expected_version_is_rejected(database) -> None:
    agent = await create_agent()
    manager = _manager(make_tasks(1))
    await _plan(manager, agent.id)

    async with db.get_session() as session:
        with pytest.raises(PlanVersionMismatchError):
            await manager.update_plan(
                session, agent.id, PlanMutation(add_tasks=[TaskSpec(id="X", title="x")]), expected_version=0
            )


@pytest.mark.asyncio
async def test_compare_and_swap_allows_one_winner(database) -> None:
    agent = await create_agent()
    async with db.get_session() as session:
        assert await db.bump_plan_version(session, agent.id, 0) == 1
        with pytest.raises(PlanVersionMismatchError):
            await db.bump_plan_version(session, agent.id, 0)


@pytest.mark.asyncio
async def test_update_rejected_on_file_overlap_with_other_agent(database) -> None:
    first = await create_agent(issue_number=1)
    second = await create_agent(issue_number=2)
    await _plan(_manager([TaskSpec(id="A", title="a", paths=["src/app.py"])]), first.id)
    manager = _manager([TaskSpec(id="B", title="b", paths=["src/other.py"])])
    await _plan(manager, second.id)

    mutation = PlanMutation(add_tasks=[TaskSpec(id="C", title="c", paths=["src/app.py"])])
    async with db.get_session() as session:
        result = await manager.update_plan(session, second.id, mutation, expected_version=1)

    assert not result.success
    assert result.new_version is None
    assert [c.type for c in result.conflicts] == [ConflictType.FILE_OVERLAP]
    async with db.get_session() as session:
        agent = await db.require_agent(session, second.id)
    assert agent.plan_version == 1


@pytest.mark.asyncio
async def test_overlap_allowed_when_policy_permits(database) -> None:
    settings = Settings(plan=PlanPolicy(reject_on_file_overlap=False))
    first = await create_agent(issue_number=1)
    second = await create_agent(issue_number=2)
    await _plan(_manager([TaskSpec(id="A", title="a", paths=["src/app.py"])], settings=settings), first.id)
    manager = _manager([TaskSpec(id="B", title="b", paths=["src/other.py"])], settings=settings)
    await _plan(manager, second.id)

    mutation = PlanMutation(add_tasks=[TaskSpec(id="C", title="c", paths=["src/app.py"])])
    async with db.get_session() as session:
        result = await manager.update_plan(session, second.id, mutation)
    assert result.success
    assert result.conflicts


@pytest.mark.asyncio
async def test_initial_plan_splits_partially_contested_tasks(database) -> None:
    first = await create_agent(issue_number=1)
    second = await create_agent(issue_number=2)
    await _plan(_manager([TaskSpec(id="A", title="a", paths=["src/shared.py"])]), first.id)
    await _plan(
        _manager(
            [
                TaskSpec(id="B", title="Mixed", paths=["src/shared.py", "src/mine.py"]),
                TaskSpec(id="C", title="Contested", paths=["src/shared.py"]),
                TaskSpec(id="D", title="Free", paths=["lib/free.py"]),
            ]
        ),
        second.id,
    )

    async with db.get_session() as session:
        rows = await db.get_live_tasks(session, second.id)
        snapshot = await db.get_plan_version(session, second.id)

    by_key = {r.key: r for r in rows}
    assert [r.key for r in rows] == ["B.1", "B", "D", "C"]
    assert by_key["B.1"].paths == ["src/mine.py"]
    assert by_key["B"].paths == ["src/shared.py"]
    assert "B.1" in by_key["B"].depends_on
    assert by_key["B"].origin == TaskOrigin.SPLIT.value
    assert snapshot is not None and snapshot.conflicts


@pytest.mark.asyncio
async def test_busy_repository_orders_small_tasks_first(database) -> None:
    agent = await create_agent()
    inspector = FakeInspector(activity_info=RepositoryActivity(open_prs=25))
    tasks = [
        TaskSpec(id="big", title="Big", paths=["a.md", "b.md", "c.md"]),
        TaskSpec(id="small", title="Small", paths=["d.md"]),
    ]
    await _plan(_manager(tasks, inspector=inspector), agent.id)

    async with db.get_session() as session:
        keys = [r.key for r in await db.get_live_tasks(session, agent.id)]
    assert keys == ["small", "big"]


@pytest.mark.asyncio
async def test_large_plan_requires_review(database) -> None:
    agent = await create_agent()
    settings = Settings(plan=PlanPolicy(review_task_threshold=2, default_approvers=["lead"]))
    await _plan(_manager(make_tasks(3), settings=settings), agent.id)

    async with db.get_session() as session:
        agent = await db.require_agent(session, agent.id)
        review = await db.get_pending_review(session, agent.id)

    assert agent.state == "planning"
    assert review is not None
    assert review.kind == "plan"
    assert review.required_approvers == ["lead"]
    assert any("3 tasks" in r for r in review.reasons)


@pytest.mark.asyncio
async def test_manifest_change_requires_owner_approval(database) -> None:
    agent = await create_agent()
    inspector = FakeInspector(
        files={
            ".aiagent-ownership.yml": "ownership_rules:\n  - paths: [package.json]\n    approvers: [release]\n"
        }
    )
    manager = _manager([TaskSpec(id="T1", title="Bump", paths=["web/package.json"])], inspector=inspector)
    await _plan(manager, agent.id)

    async with db.get_session() as session:
        review = await db.get_pending_review(session, agent.id)
        assert review is not None
        assert review.required_approvers == ["release"]

        partial = await manager.approve_review(session, agent.id, "someone-else")
        assert partial.status == "pending"
        approved = await manager.approve_review(session, agent.id, "release")
        assert approved.status == "approved"
        agent = await db.require_agent(session, agent.id)
        assert agent.state == "executing"


@pytest.mark.asyncio
async def test_high_risk_plan_review_rejection_fails_agent(database) -> None:
    agent = await create_agent()
    inspector = FakeInspector(context=ProjectContext(team=TeamInfo(workload=95)))
    manager = _manager(make_tasks(1), inspector=inspector)
    await _plan(manager, agent.id)

    async with db.get_session() as session:
        review = await db.get_pending_review(session, agent.id)
        assert review is not None
        assert "Plan risk assessed as high" in review.reasons
        await manager.reject_review(session, agent.id, "lead", "too risky")

    async with db.get_session() as session:
        agent = await db.require_agent(session, agent.id)
        reviews = await db.list_reviews(session, agent.id)
    assert agent.failed
    assert agent.state == "stopped"
    assert reviews[0].status == "rejected"


def test_apply_mutation_split_rewires_dependents() -> None:
    tasks = [
        TaskSpec(id="A", title="a"),
        TaskSpec(id="B", title="b", depends_on=["A"]),
    ]
    mutation = PlanMutation(split_tasks={"A": [TaskSpec(id="A1", title="a1"), TaskSpec(id="A2", title="a2")]})
    result, changes = apply_mutation(tasks, mutation)

    assert [t.id for t in result] == ["A1", "A2", "B"]
    assert result[2].depends_on == ["A1", "A2"]
    assert all(t.origin == TaskOrigin.SPLIT for t in result[:2])
    assert changes["split"] == {"A": ["A1", "A2"]}


def test_apply_mutation_keeps_completed_status() -> None:
    tasks = [TaskSpec(id="A", title="a", status=TaskStatus.COMPLETED)]
    result, changes = apply_mutation(tasks, PlanMutation(modify_tasks=[TaskSpec(id="A", title="new")]))
    assert result[0].status == TaskStatus.COMPLETED
    assert result[0].title == "new"
    assert changes["modified"] == ["A"]


def test_review_reasons_for_quiet_plan_is_empty() -> None:
    manager = PlanManager(Settings())
    tasks = make_tasks(2)
    prioritization = manager.prioritizer.prioritize(tasks)
    assert prioritization.risk.overall_risk_level == RiskLevel.LOW
    assert manager.review_reasons(tasks, [], prioritization) == []
