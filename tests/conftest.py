"""Shared test fixtures and configuration for pytest."""

from __future__ import annotations

import tempfile
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from issueloop import db
from issueloop.collaborators import (
    EvaluationResult,
    IterationSnapshot,
    PatchProposal,
    RepositoryActivity,
    SecurityFinding,
)
from issueloop.config import Settings
from issueloop.context import ProjectContext
from issueloop.diffs import parse_unified_diff
from issueloop.events import AgentEvent, EventEmitter
from issueloop.models import Agent
from issueloop.tasks import TaskSpec


def make_diff(paths: list[str], *, added: int = 1, deleted: int = 0) -> str:
    """A git-style diff that touches every path in ``paths``."""
    chunks: list[str] = []
    for path in paths:
        context = ["-old line"] * deleted + ["+new line"] * added
        chunks.append(
            "\n".join(
                [
                    f"diff --git a/{path} b/{path}",
                    f"--- a/{path}",
                    f"+++ b/{path}",
                    f"@@ -1,{deleted + 1} +1,{added + 1} @@",
                    " unchanged",
                    *context,
                ]
            )
        )
    return "\n".join(chunks) + "\n"


def make_tasks(count: int, *, prefix: str = "docs/page") -> list[TaskSpec]:
    return [
        TaskSpec(id=f"T{i + 1}", title=f"Update page {i + 1}", paths=[f"{prefix}{i + 1}.md"])
        for i in range(count)
    ]


class FakePlanGenerator:
    def __init__(self, tasks: list[TaskSpec]) -> None:
        self.tasks = tasks
        self.calls = 0

    async def generate_plan(self, agent: Agent) -> list[TaskSpec]:
        self.calls += 1
        return [t.with_changes() for t in self.tasks]


class FakePatchGenerator:
    """Proposes a one-line addition to every file of the batch."""

    def __init__(self, *, diff: str | None = None, no_changes: bool = False, error: Exception | None = None) -> None:
        self.diff = diff
        self.no_changes = no_changes
        self.error = error
        self.batches: list[list[str]] = []
        self.snapshots: list[IterationSnapshot] = []

    async def generate_patch(self, batch: list[TaskSpec], snapshot: IterationSnapshot) -> PatchProposal:
        self.batches.append([t.id for t in batch])
        self.snapshots.append(snapshot)
        if self.error is not None:
            raise self.error
        if self.no_changes:
            return PatchProposal(no_changes=True)
        if self.diff is not None:
            return PatchProposal(diff=self.diff)
        return PatchProposal(diff=make_diff([p for t in batch for p in t.paths]))


class FakeApplier:
    def __init__(self) -> None:
        self.applied: list[str] = []
        self.reverted: list[str] = []

    async def apply(self, agent: Agent, diff: str) -> str:
        ref = f"commit-{len(self.applied) + 1}"
        self.applied.append(ref)
        return ref

    async def revert(self, agent: Agent, commit_ref: str) -> str:
        self.reverted.append(commit_ref)
        return f"revert-{commit_ref}"

    @asynccontextmanager
    async def staged(self, agent: Agent, diff: str) -> AsyncIterator[Path]:
        """Write the post-change text of every touched file into a scratch dir."""
        with tempfile.TemporaryDirectory() as scratch:
            root = Path(scratch)
            for file_diff in parse_unified_diff(diff).files:
                if file_diff.is_deleted:
                    continue
                target = root / file_diff.path
                target.parent.mkdir(parents=True, exist_ok=True)
                lines = [
                    line[1:] for hunk in file_diff.hunks for line in hunk[1:] if line[:1] in (" ", "+")
                ]
                target.write_text("\n".join(lines) + "\n")
            yield root


class FakeScanner:
    def __init__(self, findings: list[SecurityFinding] | None = None) -> None:
        self.findings = findings or []
        self.scanned: list[list[str]] = []
        self.contents: list[dict[str, str | None]] = []

    async def scan(self, paths: list[str], root: Path | None = None) -> list[SecurityFinding]:
        self.scanned.append(list(paths))
        if root is not None:
            self.contents.append(
                {p: (root / p).read_text() if (root / p).exists() else None for p in paths}
            )
        return list(self.findings)


class FakeEvaluator:
    def __init__(self, result: EvaluationResult) -> None:
        self.result = result
        self.calls: list[list[str]] = []

    async def evaluate(self, agent: Agent, completed_task_ids: list[str]) -> EvaluationResult:
        self.calls.append(list(completed_task_ids))
        return self.result


@dataclass
class FakeInspector:
    context: ProjectContext = field(default_factory=ProjectContext)
    activity_info: RepositoryActivity = field(default_factory=RepositoryActivity)
    files: dict[str, str] = field(default_factory=dict)
    line_count_map: dict[str, int] = field(default_factory=dict)
    context_calls: int = 0

    async def project_context(self, owner: str, repo: str) -> ProjectContext:
        self.context_calls += 1
        return self.context

    async def activity(self, owner: str, repo: str) -> RepositoryActivity:
        return self.activity_info

    async def read_file(self, owner: str, repo: str, path: str) -> str | None:
        return self.files.get(path)

    async def line_counts(self, owner: str, repo: str, paths: list[str]) -> dict[str, int]:
        return {p: self.line_count_map[p] for p in paths if p in self.line_count_map}


class RecordingEmitter(EventEmitter):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[AgentEvent] = []
        self.on_event(self.events.append)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None]:
    """In-memory SQLite database shared across sessions."""
    db.configure_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await db.init_db()
    yield
    await db.dispose_engine()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


async def create_agent(owner: str = "acme", repo: str = "api", issue_number: int = 1) -> Agent:
    async with db.get_session() as session:
        return await db.get_or_create_agent(session, owner, repo, issue_number, issue_title="Test issue")
