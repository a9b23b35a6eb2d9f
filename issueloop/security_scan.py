"""Semgrep adapter for the security scanner interface."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from .collaborators import SecurityFinding
from .config import SecurityPolicy
from .errors import CollaboratorError
from .git_ops import run_command

logger = logging.getLogger(__name__)

_SEVERITY_MAP = {
    "CRITICAL": "critical",
    "ERROR": "high",
    "HIGH": "high",
    "WARNING": "medium",
    "MEDIUM": "medium",
    "INFO": "low",
    "LOW": "low",
}


def _category(rule_id: str) -> str:
    rule_id = rule_id.lower()
    for needle, category in (
        ("sql", "sql-injection"),
        ("xss", "xss"),
        ("csrf", "csrf"),
        ("auth", "authentication"),
        ("crypto", "cryptography"),
        ("secret", "secrets"),
    ):
        if needle in rule_id:
            return category
    return "security"


def parse_semgrep_output(output: str, *, workspace: Path | None = None) -> list[SecurityFinding]:
    """Convert ``semgrep --json`` output into findings."""
    if not output.strip():
        return []
    data: dict[str, Any] = json.loads(output)
    prefix = f"{workspace}/" if workspace else ""

    findings: list[SecurityFinding] = []
    for result in data.get("results") or []:
        extra = result.get("extra") or {}
        rule_id = result.get("check_id") or "unknown"
        path = result.get("path") or ""
        if prefix and path.startswith(prefix):
            path = path[len(prefix):]
        findings.append(
            SecurityFinding(
                rule_id=rule_id,
                severity=_SEVERITY_MAP.get(str(extra.get("severity", "INFO")).upper(), "medium"),
                message=extra.get("message") or rule_id,
                path=path,
                line=(result.get("start") or {}).get("line"),
                category=_category(rule_id),
            )
        )
    return findings


class SemgrepScanner:
    """Runs semgrep over the changed paths of a workspace."""

    def __init__(
        self,
        workspace: Path,
        policy: SecurityPolicy | None = None,
        *,
        timeout: int = 300,
    ) -> None:
        self.workspace = workspace
        self.policy = policy or SecurityPolicy()
        self.timeout = timeout

    async def scan(self, paths: list[str], root: Path | None = None) -> list[SecurityFinding]:
        if not self.policy.semgrep_enabled:
            return []
        cwd = root or self.workspace
        # semgrep exits with an error on a missing target
        paths = [p for p in paths if (cwd / p).exists()]
        if not paths:
            return []
        cmd = [
            self.policy.semgrep_cmd,
            f"--config={self.policy.semgrep_config}",
            "--json",
            "--quiet",
            *paths,
        ]
        code, stdout, stderr = await asyncio.to_thread(run_command, cmd, cwd, self.timeout)
        # semgrep exits 1 when findings are reported
        if code not in (0, 1):
            raise CollaboratorError("semgrep", stderr.strip() or f"exit code {code}")
        try:
            findings = parse_semgrep_output(stdout, workspace=cwd)
        except json.JSONDecodeError as exc:
            raise CollaboratorError("semgrep", f"unparseable output: {exc}") from exc
        logger.debug("Semgrep reported %d finding(s) over %d path(s)", len(findings), len(paths))
        return findings
