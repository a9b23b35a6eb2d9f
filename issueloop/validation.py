"""
Patch validation gate: size, deletion, file-count, large-file and security checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import DiffPolicy, SecurityPolicy
from .diffs import ParsedDiff, parse_unified_diff

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .collaborators import SecurityFinding
    from .models import Agent, PatchAttempt

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    ok: bool
    reasons: list[str] = field(default_factory=list)
    file_stats: list[dict[str, Any]] = field(default_factory=list)
    requires_secondary_review: bool = False
    security_warnings: list[str] = field(default_factory=list)


class PatchValidationGate:
    """Decides whether a proposed diff may be applied.

    ``ok`` is true only when every hard rule passes. Large files and a tolerated
    number of high-severity findings add reasons without failing the patch.
    """

    def __init__(
        self,
        diff_policy: DiffPolicy | None = None,
        security_policy: SecurityPolicy | None = None,
    ) -> None:
        self.diff_policy = diff_policy or DiffPolicy()
        self.security_policy = security_policy or SecurityPolicy()

    def validate(
        self,
        diff: str | ParsedDiff,
        affected_files: list[str] | None = None,
        findings: list[SecurityFinding] | None = None,
        *,
        low_risk: bool = False,
        post_change_line_counts: dict[str, int] | None = None,
    ) -> ValidationResult:
        parsed = diff if isinstance(diff, ParsedDiff) else parse_unified_diff(diff)
        policy = self.diff_policy
        failures: list[str] = []
        notes: list[str] = []

        size = parsed.size_bytes
        if size > policy.max_bytes:
            failures.append(f"Diff size {size} bytes exceeds limit of {policy.max_bytes} bytes")

        added, deleted = parsed.total_added, parsed.total_deleted
        if added + deleted > 0 and not low_risk:
            ratio = deleted / (added + deleted)
            if ratio > policy.max_deletes_ratio:
                failures.append(
                    f"Deletion ratio {ratio:.2f} exceeds limit of {policy.max_deletes_ratio:.2f}"
                )

        paths = list(dict.fromkeys(p for p in parsed.paths if p))
        if not paths and not parsed.is_empty:
            paths = list(dict.fromkeys(affected_files or []))
        if len(paths) > policy.max_total_files_per_iter:
            failures.append(
                f"Patch touches {len(paths)} files, limit is {policy.max_total_files_per_iter}"
            )

        requires_secondary_review = False
        line_counts = post_change_line_counts or {}
        for file_diff in parsed.files:
            lines = line_counts.get(file_diff.path)
            if lines is None:
                lines = file_diff.changed_lines
            if lines > policy.large_file_line_threshold:
                requires_secondary_review = True
                notes.append(
                    f"Large file {file_diff.path} ({lines} lines) requires secondary review"
                )

        security_warnings: list[str] = []
        findings = findings or []
        critical = [f for f in findings if f.severity == "critical"]
        high = [f for f in findings if f.severity == "high"]
        if critical:
            failures.append(
                f"{len(critical)} critical security finding(s): "
                + ", ".join(sorted({f.rule_id for f in critical}))
            )
        max_high = self.security_policy.max_high_severity_issues
        if len(high) > max_high:
            failures.append(
                f"{len(high)} high-severity security findings exceed limit of {max_high}"
            )
        elif high:
            security_warnings = [f"{f.rule_id} in {f.path or '<unknown>'}" for f in high]
            notes.append(f"{len(high)} high-severity security finding(s) within tolerance")

        ok = not failures
        if not ok:
            logger.info("Patch rejected: %s", "; ".join(failures))
        return ValidationResult(
            ok=ok,
            reasons=failures + notes,
            file_stats=[f.to_dict() for f in parsed.files],
            requires_secondary_review=requires_secondary_review,
            security_warnings=security_warnings,
        )

    async def check(
        self,
        session: AsyncSession,
        agent: Agent,
        iteration: int,
        diff: str,
        *,
        task_keys: list[str],
        affected_files: list[str] | None = None,
        findings: list[SecurityFinding] | None = None,
        low_risk: bool = False,
        post_change_line_counts: dict[str, int] | None = None,
    ) -> tuple[ValidationResult, PatchAttempt]:
        """Validate and append exactly one patch attempt."""
        from . import db

        result = self.validate(
            diff,
            affected_files,
            findings,
            low_risk=low_risk,
            post_change_line_counts=post_change_line_counts,
        )
        attempt = await db.record_patch_attempt(
            session,
            agent.id,
            iteration,
            task_keys=task_keys,
            diff=diff,
            validation_ok=result.ok,
            reasons=result.reasons,
            file_stats=result.file_stats,
            requires_secondary_review=result.requires_secondary_review,
        )
        return result, attempt
