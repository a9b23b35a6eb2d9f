"""
Risk-aware task prioritization and dependency-respecting execution ordering.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import PrioritizerPolicy
from .context import ProjectContext
from .risk import (
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    RollbackComplexity,
    aggregate_risk_level,
    clamp,
)
from .tasks import TaskSpec

logger = logging.getLogger(__name__)


@dataclass
class PrioritizedTask:
    """A task with all scoring dimensions filled in."""

    spec: TaskSpec
    priority: float
    risk_level: RiskLevel
    impact_score: float
    urgency_score: float
    complexity_score: float
    dependency_level: float
    business_value: float
    technical_debt: float
    estimated_effort: float
    blocking: list[str]
    confidence: float
    reasoning: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.spec.id

    def score_fields(self) -> dict[str, float | str]:
        return {
            "priority": round(self.priority, 2),
            "risk_level": self.risk_level.value,
            "impact_score": round(self.impact_score, 2),
            "urgency_score": round(self.urgency_score, 2),
            "complexity_score": round(self.complexity_score, 2),
            "dependency_level": round(self.dependency_level, 2),
            "business_value": round(self.business_value, 2),
            "technical_debt": round(self.technical_debt, 2),
            "estimated_effort": self.estimated_effort,
        }


@dataclass
class Recommendation:
    type: str  # execution, sequencing, resource, risk
    title: str
    description: str
    priority: str  # low, medium, high
    action_items: list[str] = field(default_factory=list)


@dataclass
class Prioritization:
    tasks: list[PrioritizedTask]
    execution_order: list[str]
    risk: RiskAssessment
    recommendations: list[Recommendation]

    def by_id(self) -> dict[str, PrioritizedTask]:
        return {t.id: t for t in self.tasks}


class TaskPrioritizer:
    """Scores tasks on impact, urgency, complexity, value and debt, then orders them.

    Prioritization never fails: missing context degrades to neutral defaults.
    """

    CRITICAL_FILE_PATTERNS = [
        re.compile(r"(^|/)(index|main|app|server|__main__)\.[^/]+$"),
        re.compile(r"(^|/)(config|settings)\.[^/]+$"),
        re.compile(r"(^|/)(package\.json|pyproject\.toml|requirements\.txt|go\.mod|Cargo\.toml)$"),
        re.compile(r"(^|/)core/"),
        re.compile(r"(^|/)auth/"),
        re.compile(r"(^|/)security/"),
    ]

    COMPLEX_EXTENSIONS = (".tsx", ".ts", ".vue", ".py", ".java", ".cpp", ".go", ".rs")

    COMPLEXITY_KEYWORDS = ("refactor", "architecture", "migration", "integration", "algorithm")

    DATABASE_KEYWORDS = ("database", "schema", "migration")

    SKILL_KEYWORDS = {
        "javascript": ("javascript", "node", ".js"),
        "typescript": ("typescript", ".ts"),
        "react": ("react", ".jsx", ".tsx"),
        "python": ("python", ".py"),
        "security": ("security", "auth", "encryption"),
        "database": ("database", "sql", "migration"),
        "devops": ("docker", "kubernetes", "ci/cd", "deployment"),
    }

    def __init__(self, policy: PrioritizerPolicy | None = None) -> None:
        self._policy = policy or PrioritizerPolicy()

    def prioritize(self, tasks: list[TaskSpec], context: ProjectContext | None = None) -> Prioritization:
        context = context or ProjectContext()
        blocking = self._blocking_map(tasks)
        known_ids = {t.id for t in tasks}

        scored = [self.score_task(t, context, blocking.get(t.id, []), known_ids) for t in tasks]
        scored.sort(key=lambda t: t.priority, reverse=True)

        execution_order = self.execution_order(scored)
        risk = self.assess_global_risk(scored, context)
        recommendations = self.recommendations(scored, context, risk)

        logger.debug(
            "Prioritized %d tasks, overall risk %s", len(scored), risk.overall_risk_level.value
        )
        return Prioritization(
            tasks=scored,
            execution_order=execution_order,
            risk=risk,
            recommendations=recommendations,
        )

    def score_task(
        self,
        task: TaskSpec,
        context: ProjectContext,
        blocking: list[str] | None = None,
        known_ids: set[str] | None = None,
    ) -> PrioritizedTask:
        blocking = blocking or []
        known_ids = known_ids if known_ids is not None else {task.id}
        skill_gap = self._skill_gap(task, context)

        impact = self._impact_score(task)
        urgency = self._urgency_score(task, context, blocking)
        complexity = self._complexity_score(task, skill_gap)
        dependency_level = self._dependency_level(task, blocking, known_ids)
        business_value = self._business_value(task, context)
        technical_debt = self._technical_debt(task, context)
        risk_level = self._risk_level(task, impact, complexity)
        priority = self._priority(impact, urgency, business_value, complexity, technical_debt, risk_level)
        effort = self._effort(task, complexity, skill_gap)

        return PrioritizedTask(
            spec=task,
            priority=priority,
            risk_level=risk_level,
            impact_score=impact,
            urgency_score=urgency,
            complexity_score=complexity,
            dependency_level=dependency_level,
            business_value=business_value,
            technical_debt=technical_debt,
            estimated_effort=effort,
            blocking=list(blocking),
            confidence=self._ranking_confidence(task, skill_gap),
            reasoning=self._reasoning(impact, urgency, business_value, complexity, technical_debt, risk_level),
        )

    # ------------------------------------------------------------------
    # Scoring dimensions
    # ------------------------------------------------------------------

    def is_critical_file(self, path: str) -> bool:
        return any(p.search(path) for p in self.CRITICAL_FILE_PATTERNS)

    def _has_label(self, task: TaskSpec, needle: str) -> bool:
        return any(needle in label.lower() for label in task.labels)

    def _mentions_database(self, task: TaskSpec) -> bool:
        return any(kw in task.text for kw in self.DATABASE_KEYWORDS)

    def _impact_score(self, task: TaskSpec) -> float:
        score = 50.0
        score += 15 * sum(1 for p in task.paths if self.is_critical_file(p))
        if self._has_label(task, "user-facing"):
            score += 20
        if self._has_label(task, "security"):
            score += 25
        if self._has_label(task, "performance"):
            score += 15
        if any("api" in p.lower() or "interface" in p.lower() for p in task.paths):
            score += 20
        if self._mentions_database(task):
            score += 30
        return clamp(score, 0, 100)

    def _urgency_score(self, task: TaskSpec, context: ProjectContext, blocking: list[str]) -> float:
        score = 50.0

        now = datetime.now(UTC)
        upcoming = sorted(d for d in (_aware(d) for d in context.business.deadlines) if d > now)
        if upcoming:
            days = (upcoming[0] - now).total_seconds() / 86400
            if days < 7:
                score += 30
            elif days < 30:
                score += 15

        if self._has_label(task, "critical"):
            score += 40
        elif self._has_label(task, "high"):
            score += 25

        score += 10 * len(blocking)

        if self._has_label(task, "escalation"):
            score += 35

        score += clamp(context.business.market_pressure, 0, 100) * 0.2
        return clamp(score, 0, 100)

    def _complexity_score(self, task: TaskSpec, skill_gap: float) -> float:
        score = 50.0
        paths = [p.lower() for p in task.paths]

        score += min(len(paths) * 5, 30)
        score += 3 * sum(1 for p in paths if p.endswith(self.COMPLEX_EXTENSIONS))

        if any("core" in p or "engine" in p for p in paths):
            score += 20
        if any("auth" in p or "security" in p for p in paths):
            score += 15
        if any("api" in p for p in paths):
            score += 10

        score += 8 * sum(1 for kw in self.COMPLEXITY_KEYWORDS if kw in task.text)
        score += 5 * len(task.depends_on)
        score += 20 * skill_gap
        return clamp(score, 0, 100)

    def _dependency_level(self, task: TaskSpec, blocking: list[str], known_ids: set[str]) -> float:
        score = 10 * len(task.depends_on)
        score += 15 * len(blocking)
        score += 20 * sum(1 for dep in task.depends_on if dep not in known_ids)
        return clamp(score, 0, 100)

    def _business_value(self, task: TaskSpec, context: ProjectContext) -> float:
        score = 50.0
        if self._has_label(task, "revenue"):
            score += 30
        if self._has_label(task, "customer"):
            score += 20
        score += 25 * sum(
            1 for req in context.business.compliance_requirements if req.lower() in task.text
        )
        if self._has_label(task, "strategic"):
            score += 25
        if "debt" in task.text or "refactor" in task.text:
            score += 15
        return clamp(score, 0, 100)

    def _technical_debt(self, task: TaskSpec, context: ProjectContext) -> float:
        """Positive values add debt, negative values reduce it."""
        text = task.text
        score = 0.0
        if "quick fix" in text or "workaround" in text:
            score += 30
        if "refactor" in text or "cleanup" in text or "modernize" in text:
            score -= 25
        if "test" in text:
            score -= 15
        if "document" in text:
            score -= 10
        score += context.technical.technical_debt_ratio * 0.3
        return clamp(score, -50, 100)

    def _risk_level(self, task: TaskSpec, impact: float, complexity: float) -> RiskLevel:
        if impact > 80 and complexity > 80:
            return RiskLevel.CRITICAL
        if impact > 70 and complexity > 70:
            return RiskLevel.HIGH
        if self._has_label(task, "security") and complexity > 50:
            return RiskLevel.HIGH
        if complexity > 60 and any(self.is_critical_file(p) for p in task.paths):
            return RiskLevel.HIGH
        if impact > 60 or complexity > 60 or self._mentions_database(task):
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def _priority(
        self,
        impact: float,
        urgency: float,
        business_value: float,
        complexity: float,
        technical_debt: float,
        risk_level: RiskLevel,
    ) -> float:
        p = self._policy
        raw = (
            impact * p.impact_weight
            + urgency * p.urgency_weight
            + business_value * p.business_value_weight
            - complexity * p.complexity_weight
            - technical_debt * p.technical_debt_weight
            - p.risk_penalties.get(risk_level.value, 0.0)
        )
        return clamp(raw, 0, 100)

    def _effort(self, task: TaskSpec, complexity: float, skill_gap: float) -> float:
        hours = (complexity / 100) * 40 * (1 + skill_gap)
        hours += 2 * len(task.depends_on)
        hours += 0.5 * len(task.paths)
        return round(hours, 1)

    def _required_skills(self, task: TaskSpec) -> list[str]:
        haystack = task.text + " " + " ".join(p.lower() for p in task.paths)
        return [
            skill
            for skill, keywords in self.SKILL_KEYWORDS.items()
            if any(kw in haystack for kw in keywords)
        ]

    def _skill_gap(self, task: TaskSpec, context: ProjectContext) -> float:
        expertise = context.team.expertise
        skills = self._required_skills(task)
        if not skills or not expertise:
            return 0.0
        gaps = [1 - clamp(float(expertise.get(skill, 0.0)), 0, 1) for skill in skills]
        return sum(gaps) / len(gaps)

    def _ranking_confidence(self, task: TaskSpec, skill_gap: float) -> float:
        confidence = 0.7
        if len(task.description) > 100:
            confidence += 0.1
        if task.paths:
            confidence += 0.1
        confidence += (1 - skill_gap) * 0.2
        return clamp(confidence, 0.3, 1.0)

    def _reasoning(
        self,
        impact: float,
        urgency: float,
        business_value: float,
        complexity: float,
        technical_debt: float,
        risk_level: RiskLevel,
    ) -> list[str]:
        reasoning: list[str] = []
        if impact > 80:
            reasoning.append("High impact on system and users")
        if urgency > 80:
            reasoning.append("Time-sensitive with approaching deadlines")
        if business_value > 80:
            reasoning.append("Significant business value")
        if complexity > 80:
            reasoning.append("High complexity may need additional time")
        if risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            reasoning.append("Elevated risk level requires careful planning")
        if technical_debt < -10:
            reasoning.append("Opportunity to reduce technical debt")
        return reasoning

    # ------------------------------------------------------------------
    # Portfolio-level views
    # ------------------------------------------------------------------

    def _blocking_map(self, tasks: list[TaskSpec]) -> dict[str, list[str]]:
        """task id -> ids of tasks that depend on it."""
        blocking: dict[str, list[str]] = {}
        for task in tasks:
            for dep in task.depends_on:
                blocking.setdefault(dep, []).append(task.id)
        return blocking

    def execution_order(self, tasks: list[PrioritizedTask]) -> list[str]:
        """Topological order, highest priority first among ready tasks.

        Dependencies outside the task set are ignored. A cycle is broken by
        skipping the back-edge, so every task appears exactly once.
        """
        by_id = {t.id: t for t in tasks}
        ordered: list[str] = []
        visited: set[str] = set()
        visiting: set[str] = set()

        def visit(task_id: str) -> None:
            if task_id in visited:
                return
            if task_id in visiting:
                logger.warning("Dependency cycle through task %s; skipping back-edge", task_id)
                return
            task = by_id.get(task_id)
            if task is None:
                return
            visiting.add(task_id)
            deps = sorted(
                (d for d in task.spec.depends_on if d in by_id),
                key=lambda d: by_id[d].priority,
                reverse=True,
            )
            for dep in deps:
                visit(dep)
            visiting.discard(task_id)
            visited.add(task_id)
            ordered.append(task_id)

        for task in sorted(tasks, key=lambda t: t.priority, reverse=True):
            visit(task.id)
        return ordered

    def assess_global_risk(self, tasks: list[PrioritizedTask], context: ProjectContext) -> RiskAssessment:
        p = self._policy
        factors: list[RiskFactor] = []

        risky = sum(1 for t in tasks if t.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL))
        if tasks and risky > len(tasks) * p.high_risk_concentration:
            factors.append(
                RiskFactor(
                    type="technical",
                    description="High concentration of risky tasks",
                    severity=7,
                    likelihood=0.8,
                    impact="May cause delays and quality issues",
                    mitigation="Distribute high-risk tasks across iterations",
                )
            )

        if context.team.workload > p.team_overload_workload:
            factors.append(
                RiskFactor(
                    type="business",
                    description="Team at maximum capacity",
                    severity=8,
                    likelihood=0.9,
                    impact="Increased risk of errors in review",
                    mitigation="Reduce scope or add reviewers",
                )
            )

        if context.technical.technical_debt_ratio > p.high_debt_ratio:
            factors.append(
                RiskFactor(
                    type="technical",
                    description="High technical debt ratio",
                    severity=6,
                    likelihood=0.7,
                    impact="Slower development and increased bug rate",
                    mitigation="Prioritize debt reduction tasks",
                )
            )

        if any(t.dependency_level > p.complex_dependency_level for t in tasks):
            factors.append(
                RiskFactor(
                    type="technical",
                    description="Complex task dependencies",
                    severity=5,
                    likelihood=0.6,
                    impact="Potential for cascading delays",
                    mitigation="Plan dependency resolution carefully",
                )
            )

        return RiskAssessment(
            overall_risk_level=aggregate_risk_level(factors),
            risk_factors=factors,
            parallel_execution_safety=self._parallel_safe(tasks),
            rollback_complexity=self._rollback_complexity(tasks),
            mitigation_strategies=[f.mitigation or "No mitigation identified" for f in factors],
        )

    def _parallel_safe(self, tasks: list[PrioritizedTask]) -> bool:
        claimed: set[str] = set()
        for task in tasks:
            for path in set(task.spec.paths):
                if path in claimed:
                    return False
                claimed.add(path)
        return True

    def _rollback_complexity(self, tasks: list[PrioritizedTask]) -> RollbackComplexity:
        files = {p for t in tasks for p in t.spec.paths}
        if (
            any(t.risk_level == RiskLevel.CRITICAL for t in tasks)
            or any("migration" in t.spec.text for t in tasks)
            or len(files) > 20
        ):
            return RollbackComplexity.COMPLEX
        if any(t.risk_level == RiskLevel.HIGH for t in tasks) or len(files) > 5:
            return RollbackComplexity.MODERATE
        return RollbackComplexity.SIMPLE

    def recommendations(
        self,
        tasks: list[PrioritizedTask],
        context: ProjectContext,
        risk: RiskAssessment,
    ) -> list[Recommendation]:
        p = self._policy
        recs: list[Recommendation] = []

        if context.team.workload > p.team_warning_workload:
            recs.append(
                Recommendation(
                    type="resource",
                    title="Team overload warning",
                    description="Current team workload exceeds recommended capacity",
                    priority="high",
                    action_items=["Reduce iteration scope", "Defer lower priority tasks"],
                )
            )

        if risk.overall_risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            recs.append(
                Recommendation(
                    type="risk",
                    title="High risk level detected",
                    description="Current task portfolio has an elevated risk profile",
                    priority="high",
                    action_items=[
                        "Require additional code review",
                        "Plan rollback procedures",
                    ],
                )
            )

        dependent = [t for t in tasks if t.spec.depends_on]
        if dependent:
            recs.append(
                Recommendation(
                    type="sequencing",
                    title="Dependency optimization",
                    description=f"{len(dependent)} tasks wait on other tasks",
                    priority="medium",
                    action_items=["Prioritize unblocking tasks", "Break down large blocking tasks"],
                )
            )

        debt_reducing = [t for t in tasks if t.technical_debt < -10]
        if debt_reducing and context.technical.technical_debt_ratio > p.debt_recommendation_ratio:
            recs.append(
                Recommendation(
                    type="execution",
                    title="Technical debt reduction",
                    description="Opportunity to reduce technical debt",
                    priority="medium",
                    action_items=["Schedule debt reduction tasks early"],
                )
            )

        order = {"high": 3, "medium": 2, "low": 1}
        return sorted(recs, key=lambda r: order.get(r.priority, 0), reverse=True)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)
