from datetime import UTC, datetime, timedelta

from issueloop.config import PrioritizerPolicy
from issueloop.context import BusinessContext, ProjectContext, TeamInfo, TechnicalContext
from issueloop.prioritizer import TaskPrioritizer
from issueloop.risk import RiskLevel, RollbackComplexity
from issueloop.tasks import TaskSpec


def test_scores_stay_in_range() -> None:
    prioritizer = TaskPrioritizer()
    tasks = [
        TaskSpec(
            id="A",
            title="Refactor database migration architecture",
            labels=["security", "critical", "user-facing", "performance"],
            paths=["src/core/app.py", "src/auth/api.py", "package.json", "src/core/engine.ts"],
        ),
        TaskSpec(id="B", title="Fix typo", paths=["README.md"]),
    ]
    result = prioritizer.prioritize(tasks)

    for task in result.tasks:
        assert 0 <= task.priority <= 100
        assert 0 <= task.impact_score <= 100
        assert 0 <= task.urgency_score <= 100
        assert 0 <= task.complexity_score <= 100
        assert 0 <= task.dependency_level <= 100
        assert 0 <= task.business_value <= 100
        assert -50 <= task.technical_debt <= 100
        assert 0.3 <= task.confidence <= 1.0


def test_security_label_on_complex_task_is_high_risk() -> None:
    prioritizer = TaskPrioritizer()
    task = TaskSpec(
        id="sec",
        title="Harden token handling",
        labels=["security"],
        paths=["src/tokens.py"],
    )
    scored = prioritizer.score_task(task, ProjectContext())
    assert scored.risk_level == RiskLevel.HIGH


def test_plain_docs_task_is_low_risk() -> None:
    scored = TaskPrioritizer().score_task(
        TaskSpec(id="doc", title="Update guide", paths=["docs/guide.md"]), ProjectContext()
    )
    assert scored.risk_level == RiskLevel.LOW


def test_database_mention_is_at_least_medium_risk() -> None:
    scored = TaskPrioritizer().score_task(
        TaskSpec(id="db", title="Add index to database table"), ProjectContext()
    )
    assert scored.risk_level.rank >= RiskLevel.MEDIUM.rank


def test_execution_order_puts_dependencies_first() -> None:
    tasks = [
        TaskSpec(id="child", title="Use the new helper", labels=["critical"], depends_on=["parent"]),
        TaskSpec(id="parent", title="Add helper"),
        TaskSpec(id="other", title="Unrelated cleanup"),
    ]
    order = TaskPrioritizer().prioritize(tasks).execution_order

    assert sorted(order) == ["child", "other", "parent"]
    assert order.index("parent") < order.index("child")


def test_execution_order_ignores_unknown_dependencies_and_cycles() -> None:
    tasks = [
        TaskSpec(id="a", title="A", depends_on=["b", "missing"]),
        TaskSpec(id="b", title="B", depends_on=["a"]),
    ]
    order = TaskPrioritizer().prioritize(tasks).execution_order
    assert sorted(order) == ["a", "b"]


def test_blocking_tasks_gain_urgency() -> None:
    prioritizer = TaskPrioritizer()
    tasks = [
        TaskSpec(id="base", title="Base"),
        TaskSpec(id="x", title="X", depends_on=["base"]),
        TaskSpec(id="y", title="Y", depends_on=["base"]),
    ]
    by_id = prioritizer.prioritize(tasks).by_id()
    assert by_id["base"].blocking == ["x", "y"]
    assert by_id["base"].urgency_score > by_id["x"].urgency_score


def test_near_deadline_raises_urgency() -> None:
    prioritizer = TaskPrioritizer()
    task = TaskSpec(id="t", title="Ship it")
    soon = ProjectContext(business=BusinessContext(deadlines=[datetime.now(UTC) + timedelta(days=3)]))
    calm = ProjectContext()
    assert prioritizer.score_task(task, soon).urgency_score > prioritizer.score_task(task, calm).urgency_score


def test_naive_deadlines_are_treated_as_utc() -> None:
    task = TaskSpec(id="t", title="Ship it")
    context = ProjectContext(business=BusinessContext(deadlines=[datetime.now() + timedelta(days=10)]))
    assert TaskPrioritizer().score_task(task, context).urgency_score >= 65


def test_skill_gap_is_zero_without_team_expertise() -> None:
    prioritizer = TaskPrioritizer()
    task = TaskSpec(id="py", title="Python work", paths=["src/tool.py"])
    unknown = prioritizer.score_task(task, ProjectContext())
    weak = prioritizer.score_task(task, ProjectContext(team=TeamInfo(expertise={"python": 0.0})))
    assert unknown.complexity_score < weak.complexity_score
    assert unknown.estimated_effort < weak.estimated_effort


def test_overloaded_team_makes_portfolio_critical() -> None:
    context = ProjectContext(team=TeamInfo(workload=95))
    result = TaskPrioritizer().prioritize([TaskSpec(id="t", title="Anything")], context)

    assert result.risk.overall_risk_level == RiskLevel.CRITICAL
    assert result.risk.normalized_risk == 1.0
    assert result.recommendations[0].priority == "high"


def test_quiet_portfolio_is_low_risk_and_parallel_safe() -> None:
    tasks = [
        TaskSpec(id="a", title="Docs A", paths=["docs/a.md"]),
        TaskSpec(id="b", title="Docs B", paths=["docs/b.md"]),
    ]
    risk = TaskPrioritizer().prioritize(tasks).risk
    assert risk.overall_risk_level == RiskLevel.LOW
    assert risk.normalized_risk == 0.0
    assert risk.parallel_execution_safety is True
    assert risk.rollback_complexity == RollbackComplexity.SIMPLE


def test_shared_paths_are_not_parallel_safe() -> None:
    tasks = [
        TaskSpec(id="a", title="A", paths=["src/x.py"]),
        TaskSpec(id="b", title="B", paths=["src/x.py"]),
    ]
    assert TaskPrioritizer().prioritize(tasks).risk.parallel_execution_safety is False


def test_migration_makes_rollback_complex() -> None:
    risk = TaskPrioritizer().prioritize([TaskSpec(id="m", title="Run migration")]).risk
    assert risk.rollback_complexity == RollbackComplexity.COMPLEX


def test_high_debt_ratio_adds_risk_factor() -> None:
    context = ProjectContext(technical=TechnicalContext(technical_debt_ratio=75))
    risk = TaskPrioritizer().prioritize([TaskSpec(id="t", title="Anything")], context).risk
    assert any(f.description == "High technical debt ratio" for f in risk.risk_factors)
    assert risk.overall_risk_level == RiskLevel.HIGH


def test_policy_weights_change_priority() -> None:
    task = TaskSpec(id="t", title="Task", labels=["critical"])
    default = TaskPrioritizer().score_task(task, ProjectContext())
    urgent_heavy = TaskPrioritizer(PrioritizerPolicy(urgency_weight=0.6)).score_task(task, ProjectContext())
    assert urgent_heavy.priority > default.priority
