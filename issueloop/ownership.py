"""Repository ownership rules (``.aiagent-ownership.yml``) used to pick plan reviewers.

Example::

    default_approvers: [maintainers]
    ownership_rules:
      - paths: ["src/auth/**", "**/security/*.py"]
        approvers: [security-team]
      - paths: ["package.json"]
        approvers: [release-managers]
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a path glob into an anchored regex.

    ``**/`` matches zero or more directories, ``**`` anything, ``*`` anything but
    ``/`` and ``?`` one non-separator character. A pattern without a ``/`` matches
    the file name at any depth.
    """
    pattern = pattern.strip()
    if pattern.startswith("./"):
        pattern = pattern[2:]
    pattern = pattern.lstrip("/")
    if "/" not in pattern:
        pattern = "**/" + pattern

    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


@dataclass
class OwnershipRule:
    patterns: list[str]
    approvers: list[str]
    _compiled: list[re.Pattern[str]] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self._compiled = [glob_to_regex(p) for p in self.patterns]

    def matches(self, path: str) -> bool:
        path = path.lstrip("/")
        return any(regex.match(path) for regex in self._compiled)


@dataclass
class OwnershipRules:
    rules: list[OwnershipRule] = field(default_factory=list)
    default_approvers: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, *, default_approvers: list[str] | None = None) -> OwnershipRules:
        data = data or {}
        rules: list[OwnershipRule] = []
        for raw in data.get("ownership_rules") or []:
            if not isinstance(raw, dict):
                continue
            patterns = raw.get("paths") or ([raw["pattern"]] if raw.get("pattern") else [])
            approvers = raw.get("approvers") or raw.get("owners") or []
            if patterns:
                rules.append(OwnershipRule(patterns=[str(p) for p in patterns], approvers=[str(a) for a in approvers]))

        defaults = data.get("default_approvers")
        if defaults is None:
            defaults = default_approvers or []
        return cls(rules=rules, default_approvers=[str(a) for a in defaults])

    @classmethod
    def from_yaml(cls, text: str | None, *, default_approvers: list[str] | None = None) -> OwnershipRules:
        """Parse the ownership file. Invalid YAML falls back to the defaults."""
        if not text:
            return cls(default_approvers=list(default_approvers or []))
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            logger.warning("Invalid ownership file, using default approvers: %s", exc)
            return cls(default_approvers=list(default_approvers or []))
        if not isinstance(data, dict):
            return cls(default_approvers=list(default_approvers or []))
        return cls.from_dict(data, default_approvers=default_approvers)

    def approvers_for(self, paths: list[str]) -> list[str]:
        """Approvers owning any of ``paths``, falling back to the defaults."""
        approvers: list[str] = []
        for path in paths:
            for rule in self.rules:
                if rule.matches(path):
                    approvers.extend(a for a in rule.approvers if a not in approvers)
        if not approvers:
            return list(self.default_approvers)
        return approvers
