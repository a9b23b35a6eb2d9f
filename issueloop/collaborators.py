"""
Interfaces to the external collaborators the loop drives.

Patch synthesis, plan synthesis, evaluation, scanning and applying are all
pluggable. Workers resolve concrete implementations from ``module:callable``
factory strings in settings.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .errors import ConfigurationError
from .tasks import TaskSpec

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager
    from pathlib import Path

    from .context import ProjectContext
    from .models import Agent


@dataclass
class PatchProposal:
    diff: str = ""
    no_changes: bool = False
    rationale: str = ""


@dataclass
class EvaluationResult:
    coverage_score: float
    rationale: str = ""
    new_tasks: list[TaskSpec] = field(default_factory=list)
    stop_recommended: bool = False


@dataclass
class SecurityFinding:
    rule_id: str
    severity: str  # low, medium, high, critical
    message: str = ""
    path: str = ""
    line: int | None = None
    category: str = "security"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity,
            "message": self.message,
            "path": self.path,
            "line": self.line,
            "category": self.category,
        }


@dataclass
class RepositoryActivity:
    open_prs: int = 0
    recent_commits: int = 0
    active_branches: int = 0


@dataclass
class IterationSnapshot:
    """What a patch generator sees for one tick."""

    agent_id: str
    iteration: int
    confidence: float
    plan_version: int
    completed_task_ids: list[str] = field(default_factory=list)


@runtime_checkable
class PatchGenerator(Protocol):
    async def generate_patch(
        self, batch: list[TaskSpec], snapshot: IterationSnapshot
    ) -> PatchProposal: ...


@runtime_checkable
class PlanGenerator(Protocol):
    async def generate_plan(self, agent: Agent) -> list[TaskSpec]: ...


@runtime_checkable
class Evaluator(Protocol):
    async def evaluate(self, agent: Agent, completed_task_ids: list[str]) -> EvaluationResult: ...


@runtime_checkable
class SecurityScanner(Protocol):
    async def scan(self, paths: list[str], root: Path | None = None) -> list[SecurityFinding]:
        """Scan ``paths`` relative to ``root`` (the scanner's own checkout when omitted)."""
        ...


@runtime_checkable
class PatchApplier(Protocol):
    async def apply(self, agent: Agent, diff: str) -> str:
        """Apply and commit ``diff``; return the commit ref."""
        ...

    async def revert(self, agent: Agent, commit_ref: str) -> str: ...

    def staged(self, agent: Agent, diff: str) -> AbstractAsyncContextManager[Path]:
        """Context manager yielding a tree with ``diff`` applied, without committing."""
        ...


@runtime_checkable
class RepositoryInspector(Protocol):
    async def project_context(self, owner: str, repo: str) -> ProjectContext: ...

    async def activity(self, owner: str, repo: str) -> RepositoryActivity: ...

    async def read_file(self, owner: str, repo: str, path: str) -> str | None: ...

    async def line_counts(self, owner: str, repo: str, paths: list[str]) -> dict[str, int]: ...


class NullScanner:
    """Scanner used when no scanner is configured."""

    async def scan(self, paths: list[str], root: Path | None = None) -> list[SecurityFinding]:
        return []


def load_factory(spec: str | None, *, name: str, required: bool = True) -> Any:
    """Instantiate a collaborator from a ``module:callable`` string."""
    if not spec:
        if required:
            raise ConfigurationError(
                f"No {name} configured. Set ISSUELOOP_{name.upper()}=module:callable"
            )
        return None

    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid {name} factory {spec!r}; expected module:callable")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load {name} factory {spec!r}: {exc}") from exc
    return factory()
