"""
Basic Loop Example

Runs one agent through the adaptive loop against an in-memory SQLite
database, with toy collaborators standing in for the LLM and the git
workspace.

Usage:
    python examples/basic_loop.py
"""

import asyncio
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

from rich.console import Console
from rich.table import Table
from sqlalchemy.pool import StaticPool

from issueloop import db
from issueloop.collaborators import IterationSnapshot, PatchProposal
from issueloop.config import Settings, TerminationPolicy
from issueloop.controller import AdaptiveIterationController
from issueloop.events import AgentEvent, EventEmitter
from issueloop.tasks import TaskSpec

console = Console()


class DocsPlanGenerator:
    async def generate_plan(self, agent):
        return [
            TaskSpec(id=f"D{i}", title=f"Document module {i}", type="docs", paths=[f"docs/module{i}.md"])
            for i in range(1, 9)
        ]


class AppendLineGenerator:
    async def generate_patch(self, batch: list[TaskSpec], snapshot: IterationSnapshot) -> PatchProposal:
        chunks = []
        for task in batch:
            for path in task.paths:
                chunks.append(
                    f"diff --git a/{path} b/{path}\n--- a/{path}\n+++ b/{path}\n"
                    f"@@ -1 +1,2 @@\n # {task.title}\n+Iteration {snapshot.iteration}\n"
                )
        return PatchProposal(diff="".join(chunks))


class InMemoryApplier:
    def __init__(self) -> None:
        self.commits: list[str] = []

    async def apply(self, agent, diff: str) -> str:
        self.commits.append(f"c{len(self.commits) + 1:04d}")
        return self.commits[-1]

    async def revert(self, agent, commit_ref: str) -> str:
        return f"revert-{commit_ref}"

    @asynccontextmanager
    async def staged(self, agent, diff: str):
        # nothing scans the tree here, so an empty scratch dir will do
        with tempfile.TemporaryDirectory() as scratch:
            yield Path(scratch)


def print_event(event: AgentEvent) -> None:
    console.print(f"[dim]{event.type.value:<20}[/dim] {event.message}")


async def main():
    """Main execution function."""
    db.configure_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await db.init_db()

    emitter = EventEmitter()
    emitter.on_event(print_event)
    controller = AdaptiveIterationController(
        plan_generator=DocsPlanGenerator(),
        patch_generator=AppendLineGenerator(),
        applier=InMemoryApplier(),
        settings=Settings(termination=TerminationPolicy(required_confidence=0.35)),
        emitter=emitter,
    )

    async with db.get_session() as session:
        agent = await db.get_or_create_agent(session, "acme", "docs", 1, issue_title="Document all modules")

    table = Table(title="Iterations")
    table.add_column("#", style="cyan")
    table.add_column("Outcome")
    table.add_column("Batch", style="magenta")
    table.add_column("Confidence", justify="right")

    for _ in range(20):
        result = await controller.run_iteration(agent.id)
        if result.outcome == "skipped":
            break
        table.add_row(
            str(result.iteration), result.outcome, ", ".join(result.batch), f"{result.confidence:.2f}"
        )
        if result.stop_reason:
            console.print(f"\n[bold green]Stopped: {result.stop_reason}[/bold green]")
            break

    console.print(table)
    await db.dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
