"""
Risk and conflict primitives shared by the prioritizer, planner and controller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}

NORMALIZED_RISK = {
    RiskLevel.LOW: 0.0,
    RiskLevel.MEDIUM: 1 / 3,
    RiskLevel.HIGH: 2 / 3,
    RiskLevel.CRITICAL: 1.0,
}


class ConflictType(str, Enum):
    FILE_OVERLAP = "file_overlap"
    DEPENDENCY_CONFLICT = "dependency_conflict"
    RESOURCE_CONTENTION = "resource_contention"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RollbackComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


@dataclass
class Conflict:
    """A detected overlap between two agents' planned work."""

    type: ConflictType
    severity: Severity
    description: str
    affected_files: list[str]
    conflicting_agent_ids: list[str]
    resolution_options: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "affected_files": list(self.affected_files),
            "conflicting_agent_ids": list(self.conflicting_agent_ids),
            "resolution_options": list(self.resolution_options),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conflict:
        return cls(
            type=ConflictType(data["type"]),
            severity=Severity(data["severity"]),
            description=data.get("description", ""),
            affected_files=list(data.get("affected_files") or []),
            conflicting_agent_ids=list(data.get("conflicting_agent_ids") or []),
            resolution_options=list(data.get("resolution_options") or []),
        )


@dataclass
class RiskFactor:
    type: str  # technical, business, security, performance, compliance
    description: str
    severity: float  # 0-10
    likelihood: float  # 0-1
    impact: str
    mitigation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "severity": self.severity,
            "likelihood": self.likelihood,
            "impact": self.impact,
            "mitigation": self.mitigation,
        }


@dataclass
class RiskAssessment:
    """Global risk of a task portfolio. Recomputed on every prioritization pass."""

    overall_risk_level: RiskLevel
    risk_factors: list[RiskFactor]
    parallel_execution_safety: bool
    rollback_complexity: RollbackComplexity
    mitigation_strategies: list[str] = field(default_factory=list)

    @property
    def normalized_risk(self) -> float:
        return NORMALIZED_RISK[self.overall_risk_level]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_risk_level": self.overall_risk_level.value,
            "risk_factors": [f.to_dict() for f in self.risk_factors],
            "parallel_execution_safety": self.parallel_execution_safety,
            "rollback_complexity": self.rollback_complexity.value,
            "mitigation_strategies": list(self.mitigation_strategies),
            "normalized_risk": round(self.normalized_risk, 4),
        }


def aggregate_risk_level(factors: list[RiskFactor]) -> RiskLevel:
    """Collapse risk factors into one level: any severity >= 8 is critical,
    otherwise the mean severity decides."""
    if not factors:
        return RiskLevel.LOW
    if any(f.severity >= 8 for f in factors):
        return RiskLevel.CRITICAL
    mean = sum(f.severity for f in factors) / len(factors)
    if mean >= 6:
        return RiskLevel.HIGH
    if mean >= 4:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def has_high_severity(conflicts: list[Conflict]) -> bool:
    return any(c.severity == Severity.HIGH for c in conflicts)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))
