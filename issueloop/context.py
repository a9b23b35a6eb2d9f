"""Project/team context consumed by the prioritizer, with a time-bounded cache."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .collaborators import RepositoryInspector

logger = logging.getLogger(__name__)


@dataclass
class ProjectInfo:
    name: str = ""
    type: str = "general-application"
    stage: str = "development"
    criticality: str = "medium"


@dataclass
class TeamInfo:
    size: int = 0
    # skill -> expertise level in [0, 1]; empty means "unknown"
    expertise: dict[str, float] = field(default_factory=dict)
    workload: float = 0.0  # percent


@dataclass
class TechnicalContext:
    codebase_size: int = 0
    test_coverage: float = 0.0
    technical_debt_ratio: float = 0.0  # percent
    deployment_frequency: float = 0.0
    incident_rate: float = 0.0


@dataclass
class BusinessContext:
    deadlines: list[datetime] = field(default_factory=list)
    market_pressure: float = 0.0  # 0-100
    compliance_requirements: list[str] = field(default_factory=list)


@dataclass
class ProjectContext:
    """Everything the prioritizer knows about the project. All fields default to
    neutral values so a missing signal never blocks prioritization."""

    project: ProjectInfo = field(default_factory=ProjectInfo)
    team: TeamInfo = field(default_factory=TeamInfo)
    technical: TechnicalContext = field(default_factory=TechnicalContext)
    business: BusinessContext = field(default_factory=BusinessContext)

    def merged(self, overrides: dict[str, dict[str, Any]] | None) -> ProjectContext:
        """Return a copy with per-section field overrides applied."""
        if not overrides:
            return self
        updated: dict[str, Any] = {}
        for section in fields(self):
            values = overrides.get(section.name)
            if not values:
                continue
            current = getattr(self, section.name)
            known = {f.name for f in fields(current)}
            unknown = set(values) - known
            if unknown:
                logger.warning("Ignoring unknown %s context fields: %s", section.name, sorted(unknown))
            updated[section.name] = replace(
                current, **{k: v for k, v in values.items() if k in known}
            )
        return replace(self, **updated)


@dataclass
class _CacheEntry:
    context: ProjectContext
    expires_at: float


class ContextCache:
    """Per-repository context cache keyed by ``(owner, repo)``.

    Entries expire ``ttl_seconds`` after they were stored. Lookups that carry
    context overrides never read from or write to the cache.
    """

    def __init__(self, ttl_seconds: float, *, clock: Any = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], _CacheEntry] = {}

    def get(self, owner: str, repo: str) -> ProjectContext | None:
        key = (owner.lower(), repo.lower())
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.context

    def put(self, owner: str, repo: str, context: ProjectContext) -> None:
        key = (owner.lower(), repo.lower())
        self._entries[key] = _CacheEntry(context=context, expires_at=self._clock() + self._ttl)

    def invalidate(self, owner: str, repo: str) -> None:
        self._entries.pop((owner.lower(), repo.lower()), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def load_project_context(
    owner: str,
    repo: str,
    *,
    cache: ContextCache,
    inspector: RepositoryInspector | None = None,
    overrides: dict[str, dict[str, Any]] | None = None,
) -> ProjectContext:
    """Resolve the context for a repository.

    Inspector failures degrade to the neutral default context; a degraded
    ranking is preferable to blocking the loop.
    """
    if not overrides:
        cached = cache.get(owner, repo)
        if cached is not None:
            return cached

    context = ProjectContext()
    degraded = False
    if inspector is not None:
        try:
            context = await inspector.project_context(owner, repo)
        except Exception as exc:
            logger.warning("Project context unavailable for %s/%s: %s", owner, repo, exc)
            context = ProjectContext()
            degraded = True

    if overrides:
        return context.merged(overrides)

    # Failed lookups are retried on the next pass instead of being cached.
    if not degraded:
        cache.put(owner, repo, context)
    return context
