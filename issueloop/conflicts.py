"""
Cross-agent conflict detection over planned file and dependency footprints.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .config import PlanPolicy
from .risk import Conflict, ConflictType, Severity
from .tasks import TaskSpec, TaskStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .models import Agent

logger = logging.getLogger(__name__)


FILE_OVERLAP_OPTIONS = [
    "Coordinate changes sequentially",
    "Split overlapping files into separate tasks",
    "Merge agents into single workflow",
]

DEPENDENCY_OPTIONS = [
    "Align on a single version before either agent proceeds",
    "Sequence the dependency upgrade ahead of dependent work",
]

RESOURCE_OPTIONS = [
    "Review sibling changes in the shared directory",
]


@dataclass
class Footprint:
    """The files and dependency pins an agent's pending work will touch."""

    agent_id: str
    paths: set[str] = field(default_factory=set)
    pins: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_tasks(cls, agent_id: str, tasks: Iterable[TaskSpec]) -> Footprint:
        footprint = cls(agent_id=agent_id)
        for task in tasks:
            if task.status != TaskStatus.PENDING:
                continue
            footprint.paths.update(normalize_path(p) for p in task.paths if p.strip())
            footprint.pins.update(task.dependency_pins)
        return footprint

    @property
    def directories(self) -> set[str]:
        return {posixpath.dirname(p) for p in self.paths}


def normalize_path(path: str) -> str:
    path = path.strip()
    if path.startswith("./"):
        path = path[2:]
    return posixpath.normpath(path.lstrip("/"))


class ConflictDetector:
    """Detects file, dependency and directory overlap between agents on one repository.

    ``detect`` is pure and symmetric: swapping the two footprints yields the same
    conflict types, severities and affected files.
    """

    def __init__(self, policy: PlanPolicy | None = None) -> None:
        self._policy = policy or PlanPolicy()

    def detect(self, footprint: Footprint, others: Iterable[Footprint]) -> list[Conflict]:
        conflicts: list[Conflict] = []
        for other in others:
            if other.agent_id == footprint.agent_id:
                continue
            conflicts.extend(self._between(footprint, other))
        return conflicts

    def _between(self, mine: Footprint, other: Footprint) -> list[Conflict]:
        conflicts: list[Conflict] = []

        shared = sorted(mine.paths & other.paths)
        if shared:
            severity = (
                Severity.HIGH
                if len(shared) > self._policy.high_overlap_file_count
                else Severity.MEDIUM
            )
            conflicts.append(
                Conflict(
                    type=ConflictType.FILE_OVERLAP,
                    severity=severity,
                    description=f"File overlap detected with agent {other.agent_id}",
                    affected_files=shared,
                    conflicting_agent_ids=[other.agent_id],
                    resolution_options=list(FILE_OVERLAP_OPTIONS),
                )
            )

        mismatched = sorted(
            name
            for name, version in mine.pins.items()
            if name in other.pins and other.pins[name] != version
        )
        if mismatched:
            conflicts.append(
                Conflict(
                    type=ConflictType.DEPENDENCY_CONFLICT,
                    severity=Severity.HIGH,
                    description=(
                        f"Dependency version conflicts with agent {other.agent_id}: "
                        + ", ".join(mismatched)
                    ),
                    affected_files=mismatched,
                    conflicting_agent_ids=[other.agent_id],
                    resolution_options=list(DEPENDENCY_OPTIONS),
                )
            )

        if not shared:
            directories = sorted(d for d in mine.directories & other.directories if d)
            if directories:
                conflicts.append(
                    Conflict(
                        type=ConflictType.RESOURCE_CONTENTION,
                        severity=Severity.LOW,
                        description=f"Agent {other.agent_id} is working in the same directories",
                        affected_files=directories,
                        conflicting_agent_ids=[other.agent_id],
                        resolution_options=list(RESOURCE_OPTIONS),
                    )
                )

        return conflicts

    async def detect_for_agent(
        self,
        session: AsyncSession,
        agent: Agent,
        proposed_tasks: list[TaskSpec] | None = None,
    ) -> list[Conflict]:
        """Compare an agent's plan (or a proposed replacement) to every other
        active agent on the same repository."""
        from . import db

        if proposed_tasks is None:
            proposed_tasks = [t.to_spec() for t in await db.get_live_tasks(session, agent.id)]
        footprint = Footprint.from_tasks(agent.id, proposed_tasks)

        others: list[Footprint] = []
        for other in await db.list_active_agents_for_repo(
            session, agent.owner, agent.repo, exclude_id=agent.id
        ):
            tasks = [t.to_spec() for t in await db.get_live_tasks(session, other.id)]
            others.append(Footprint.from_tasks(other.id, tasks))

        conflicts = self.detect(footprint, others)
        if conflicts:
            logger.info(
                "Agent %s has %d conflict(s) with %d other agent(s)",
                agent.id,
                len(conflicts),
                len({a for c in conflicts for a in c.conflicting_agent_ids}),
            )
        return conflicts


def blocks_plan_update(conflicts: list[Conflict], policy: PlanPolicy) -> list[Conflict]:
    """Return the conflicts that must reject a plan mutation."""
    return [
        c
        for c in conflicts
        if c.severity == Severity.HIGH
        or (policy.reject_on_file_overlap and c.type == ConflictType.FILE_OVERLAP)
    ]
