"""Plain task descriptors passed between the planner, prioritizer and collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskOrigin(str, Enum):
    INITIAL = "initial"
    EVALUATION = "evaluation"
    UPDATE = "update"
    SPLIT = "split"


@dataclass
class TaskSpec:
    """One unit of planned work, before or after scoring."""

    id: str
    title: str
    type: str = "code"
    description: str = ""
    labels: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    # manifest package -> version this task will pin
    dependency_pins: dict[str, str] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    origin: TaskOrigin = TaskOrigin.INITIAL

    @property
    def text(self) -> str:
        return f"{self.title} {self.description}".lower()

    def with_changes(self, **changes: Any) -> TaskSpec:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "description": self.description,
            "labels": list(self.labels),
            "paths": list(self.paths),
            "depends_on": list(self.depends_on),
            "dependency_pins": dict(self.dependency_pins),
            "status": self.status.value,
            "origin": self.origin.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, index: int = 0) -> TaskSpec:
        """Build a spec from loosely-shaped generator output."""
        paths = data.get("paths") or data.get("affected_files") or []
        depends_on = data.get("depends_on") or data.get("dependsOn") or data.get("dependencies") or []
        pins = data.get("dependency_pins") or {}
        return cls(
            id=str(data.get("id") or f"T{index + 1}"),
            title=str(data.get("title") or "Untitled"),
            type=str(data.get("type") or "code"),
            description=str(data.get("description") or data.get("body") or ""),
            labels=[str(label) for label in data.get("labels") or []],
            paths=[str(p) for p in paths] if isinstance(paths, list) else [],
            depends_on=[str(d) for d in depends_on] if isinstance(depends_on, list) else [],
            dependency_pins={str(k): str(v) for k, v in pins.items()} if isinstance(pins, dict) else {},
            status=TaskStatus(data.get("status") or TaskStatus.PENDING.value),
            origin=TaskOrigin(data.get("origin") or TaskOrigin.INITIAL.value),
        )
