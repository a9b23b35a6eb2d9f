"""Main CLI entry point for issueloop."""

import asyncio
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import db
from .collaborators import SecurityFinding
from .config import settings
from .controller import AdaptiveIterationController
from .events import register_default_handlers
from .queue import STAGES, JobPayload, enqueue_job

console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _controller() -> AdaptiveIterationController:
    register_default_handlers()
    return AdaptiveIterationController(settings=settings)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Override ISSUELOOP_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Adaptive iteration loop CLI.

    Plan, execute and evaluate autonomous agents that work repository issues.
    """
    _configure_logging(log_level or settings.log_level)


@main.command()
@click.argument("owner")
@click.argument("repo")
@click.argument("issue_number", type=int)
@click.option("--stage", type=click.Choice(STAGES), default="plan", help="Stage to enqueue")
@click.option("--title", default="", help="Issue title")
@click.option("--installation-id", type=int, default=None, help="App installation reference")
def enqueue(owner: str, repo: str, issue_number: int, stage: str, title: str, installation_id: int | None) -> None:
    """Enqueue a plan, exec or eval job for an issue.

    OWNER/REPO ISSUE_NUMBER: The issue to work on
    """
    payload = JobPayload(
        owner=owner,
        repo=repo,
        issue_number=issue_number,
        stage=stage,
        issue_title=title,
        installation_id=installation_id,
    )
    msg_id = asyncio.run(enqueue_job(payload))
    console.print(f"[green]Enqueued {stage} for {payload.agent_id}[/green] ({msg_id})")


@main.command()
@click.argument("agent_id")
def status(agent_id: str) -> None:
    """Show status, plan and recent patch attempts of an agent.

    AGENT_ID: owner_repo_issue (e.g., acme_api_42)
    """

    async def show_status() -> None:
        async with db.get_session() as session:
            agent = await db.require_agent(session, agent_id)
            tasks = await db.get_live_tasks(session, agent_id)
            attempts = await db.list_patch_attempts(session, agent_id)
            review = await db.get_pending_review(session, agent_id)

            flags = [name for name in ("paused", "completed", "failed") if getattr(agent, name)]
            console.print(
                Panel(
                    f"[bold]{agent.issue_title or '(untitled)'}[/bold]\n\n"
                    f"State: [cyan]{agent.state}[/cyan]"
                    + (f" ({agent.stop_reason})" if agent.stop_reason else "")
                    + "\n"
                    f"Plan version: {agent.plan_version}\n"
                    f"Confidence: {agent.confidence:.2f}\n"
                    f"Iterations: {agent.iterations} (idle {agent.idle_iterations})\n"
                    f"Flags: {', '.join(flags) or '-'}",
                    title=f"Agent: {agent.id}",
                )
            )

            if review is not None:
                console.print(
                    Panel(
                        "\n".join(review.reasons or [])
                        + f"\n\nApprovers: {', '.join(review.required_approvers or []) or '-'}"
                        + f"\nApproved by: {', '.join(review.approved_by or []) or '-'}",
                        title=f"Pending {review.kind} review",
                        border_style="yellow",
                    )
                )

            if tasks:
                table = Table(title=f"Plan v{agent.plan_version}")
                table.add_column("#", style="dim")
                table.add_column("Task", style="cyan")
                table.add_column("Title")
                table.add_column("Status")
                table.add_column("Priority", justify="right")
                table.add_column("Risk")
                for row in tasks:
                    table.add_row(
                        str(row.position),
                        row.key,
                        row.title,
                        row.status,
                        f"{row.priority:.1f}" if row.priority is not None else "-",
                        row.risk_level or "-",
                    )
                console.print(table)

            if attempts:
                table = Table(title="Patch Attempts")
                table.add_column("Iter", style="cyan")
                table.add_column("Id", style="dim")
                table.add_column("Tasks")
                table.add_column("OK")
                table.add_column("Applied")
                table.add_column("Reasons")
                for a in attempts[-10:]:
                    table.add_row(
                        str(a.iteration),
                        a.id[:8],
                        ", ".join(a.task_keys or []),
                        "[green]yes[/green]" if a.validation_ok else "[red]no[/red]",
                        "rolled back" if a.rolled_back else ("yes" if a.applied else "no"),
                        "; ".join(a.reasons or []) or "-",
                    )
                console.print(table)

    asyncio.run(show_status())


@main.command(name="list-agents")
@click.option("--limit", default=20, help="Number of agents to show")
@click.option("--state", "state_filter", default=None, help="Filter by state")
@click.option("--owner", default=None, help="Filter by owner")
@click.option("--repo", default=None, help="Filter by repository")
def list_agents(limit: int, state_filter: str | None, owner: str | None, repo: str | None) -> None:
    """List agents."""

    async def list_all() -> None:
        async with db.get_session() as session:
            agents = await db.list_agents(
                session, state=state_filter, owner=owner, repo=repo, limit=limit
            )

        if not agents:
            console.print("[yellow]No agents found[/yellow]")
            return

        table = Table(title="Agents")
        table.add_column("Agent", style="cyan")
        table.add_column("State")
        table.add_column("Plan", justify="right")
        table.add_column("Confidence", justify="right")
        table.add_column("Iterations", justify="right")
        table.add_column("Stop reason")
        for a in agents:
            table.add_row(
                a.id,
                a.state + (" (paused)" if a.paused else ""),
                f"v{a.plan_version}",
                f"{a.confidence:.2f}",
                str(a.iterations),
                a.stop_reason or "-",
            )
        console.print(table)

    asyncio.run(list_all())


@main.command(name="plan-history")
@click.argument("agent_id")
def plan_history(agent_id: str) -> None:
    """Show the plan versions and update log of an agent."""

    async def show_history() -> None:
        async with db.get_session() as session:
            await db.require_agent(session, agent_id)
            logs = await db.list_plan_update_logs(session, agent_id)

        if not logs:
            console.print("[yellow]No plan versions yet[/yellow]")
            return

        table = Table(title=f"Plan history: {agent_id}")
        table.add_column("Version", style="cyan")
        table.add_column("Type")
        table.add_column("Added")
        table.add_column("Modified")
        table.add_column("Removed")
        table.add_column("When")
        for log in logs:
            changes = log.changes or {}
            table.add_row(
                f"v{log.from_version} -> v{log.to_version}",
                log.update_type,
                ", ".join(changes.get("added", [])) or "-",
                ", ".join(changes.get("modified", [])) or "-",
                ", ".join(changes.get("removed", [])) or "-",
                log.created_at.strftime("%Y-%m-%d %H:%M") if log.created_at else "-",
            )
        console.print(table)

    asyncio.run(show_history())


@main.command()
@click.argument("agent_id")
def pause(agent_id: str) -> None:
    """Pause an agent between ticks."""
    asyncio.run(_controller().pause(agent_id))
    console.print(f"[yellow]Paused {agent_id}[/yellow]")


@main.command()
@click.argument("agent_id")
def resume(agent_id: str) -> None:
    """Resume a paused agent."""
    asyncio.run(_controller().resume(agent_id))
    console.print(f"[green]Resumed {agent_id}[/green]")


@main.command(name="approve-review")
@click.argument("agent_id")
@click.option("--approver", "-a", required=True, help="Who is approving")
def approve_review(agent_id: str, approver: str) -> None:
    """Record a stakeholder approval for the agent's pending review."""
    review = asyncio.run(_controller().approve_review(agent_id, approver))
    if review.status == "approved":
        console.print(f"[green]Review approved[/green] ({', '.join(review.approved_by or [])})")
    else:
        waiting = sorted(set(review.required_approvers or []) - set(review.approved_by or []))
        console.print(f"[yellow]Approval recorded; still waiting on: {', '.join(waiting)}[/yellow]")


@main.command(name="reject-review")
@click.argument("agent_id")
@click.option("--approver", "-a", required=True, help="Who is rejecting")
@click.option("--reason", "-r", default=None, help="Why the plan is rejected")
def reject_review(agent_id: str, approver: str, reason: str | None) -> None:
    """Reject the agent's pending review; the agent stops as failed."""
    asyncio.run(_controller().reject_review(agent_id, approver, reason))
    console.print(f"[red]Review rejected; {agent_id} stopped[/red]")


@main.command()
@click.argument("agent_id")
@click.argument("attempt_id")
@click.option("--rule", required=True, help="Rule id of the finding")
@click.option(
    "--severity",
    type=click.Choice(["low", "medium", "high", "critical"]),
    default="critical",
    help="Finding severity",
)
@click.option("--message", default="", help="Finding message")
def rollback(agent_id: str, attempt_id: str, rule: str, severity: str, message: str) -> None:
    """Roll back an applied patch after a late security finding."""
    finding = SecurityFinding(rule_id=rule, severity=severity, message=message)
    result = asyncio.run(_controller().rollback_applied_patch(agent_id, attempt_id, [finding]))
    if result is None:
        console.print("[yellow]No critical finding; nothing rolled back[/yellow]")
    elif result.success:
        console.print(f"[green]Rolled back {result.commit_ref}[/green]")
    else:
        console.print(f"[red]Rollback failed: {result.error}[/red]")
        raise SystemExit(1)


@main.command()
@click.argument("stage", type=click.Choice(STAGES))
def worker(stage: str) -> None:
    """Run a Redis Streams worker for one stage."""
    from .workers import run_worker

    run_worker(stage)


@main.command()
@click.option("--once", is_flag=True, help="Run a single sweep and exit")
def sweep(once: bool) -> None:
    """Enqueue due exec and eval ticks for runnable agents."""
    from .scheduler import run_scheduler, sweep_once

    if once:
        result = asyncio.run(sweep_once(settings))
        console.print(
            f"plan: {len(result.plan)}  exec: {len(result.exec)}  eval: {len(result.eval)}"
            + (f"  skipped: {len(result.skipped)}" if result.skipped else "")
        )
        return
    asyncio.run(run_scheduler(settings))


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (development; use alembic in production)."""
    asyncio.run(db.init_db())
    console.print("[green]Schema ready[/green]")


@main.command()
def db_info() -> None:
    """Show database connection info."""
    console.print(
        Panel(
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}",
            title="Database Configuration",
        )
    )


if __name__ == "__main__":
    main()
