"""Git workspace applier: apply, commit and revert patches in a local checkout."""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from .config import settings
from .errors import CollaboratorError

if TYPE_CHECKING:
    from .models import Agent

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Path | None = None,
    timeout: int = 120,
    input_text: str | None = None,
) -> tuple[int, str, str]:
    """Run a command and return exit code, stdout, stderr."""
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, "", "Command timed out"
    except FileNotFoundError:
        return -1, "", f"Command not found: {cmd[0]}"


class GitWorkspace:
    """Applies patches to ``<workspace_root>/<owner>/<repo>`` with plain git."""

    def __init__(self, root: Path | None = None, *, timeout: int = 120) -> None:
        self.root = root or settings.workspace_root
        self.timeout = timeout

    def path_for(self, agent: Agent) -> Path:
        return self.root / agent.owner / agent.repo

    async def _git(
        self,
        agent: Agent,
        *args: str,
        input_text: str | None = None,
        cwd: Path | None = None,
    ) -> str:
        cwd = cwd or self.path_for(agent)
        code, stdout, stderr = await asyncio.to_thread(
            run_command, ["git", *args], cwd, self.timeout, input_text
        )
        if code != 0:
            raise CollaboratorError("git", f"git {args[0]} failed: {stderr.strip() or stdout.strip()}")
        return stdout.strip()

    async def apply(self, agent: Agent, diff: str) -> str:
        await self._git(agent, "apply", "--index", "--whitespace=nowarn", "-", input_text=diff)
        await self._git(
            agent,
            "commit",
            "-m",
            f"issueloop: {agent.id} iteration {agent.iterations + 1}",
        )
        commit_ref = await self._git(agent, "rev-parse", "HEAD")
        logger.info("Applied patch for %s as %s", agent.id, commit_ref[:12])
        return commit_ref

    async def revert(self, agent: Agent, commit_ref: str) -> str:
        await self._git(agent, "revert", "--no-edit", commit_ref)
        revert_ref = await self._git(agent, "rev-parse", "HEAD")
        logger.info("Reverted %s for %s as %s", commit_ref[:12], agent.id, revert_ref[:12])
        return revert_ref

    @asynccontextmanager
    async def staged(self, agent: Agent, diff: str) -> AsyncIterator[Path]:
        """Yield a scratch worktree of HEAD with ``diff`` applied.

        The checkout itself is left untouched. The worktree is removed on exit.
        """
        scratch = Path(tempfile.mkdtemp(prefix=f"issueloop-{agent.id}-"))
        tree = scratch / "tree"
        try:
            await self._git(agent, "worktree", "add", "--detach", str(tree), "HEAD")
            try:
                await self._git(agent, "apply", "--whitespace=nowarn", "-", input_text=diff, cwd=tree)
                yield tree
            finally:
                try:
                    await self._git(agent, "worktree", "remove", "--force", str(tree))
                except CollaboratorError as exc:
                    logger.warning("Could not remove scratch worktree %s: %s", tree, exc)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
