"""Unified diff parsing for patch validation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

_FILE_HEADER_RE = re.compile(r"^diff --git a/(\S+) b/(\S+)")
_OLD_PATH_RE = re.compile(r"^--- (?:a/)?(\S+)")
_NEW_PATH_RE = re.compile(r"^\+\+\+ (?:b/)?(\S+)")
_RENAME_FROM_RE = re.compile(r"^rename from (.+)")
_RENAME_TO_RE = re.compile(r"^rename to (.+)")
_HUNK_RE = re.compile(r"^@@ -\d+(?:,(\d+))? \+\d+(?:,(\d+))? @@")


@dataclass
class FileDiff:
    old_path: str | None = None
    new_path: str | None = None
    is_new: bool = False
    is_deleted: bool = False
    is_rename: bool = False
    added: int = 0
    deleted: int = 0
    hunks: list[list[str]] = field(default_factory=list)

    @property
    def path(self) -> str:
        """Path the change lands on (the old path for deletions)."""
        if self.is_deleted:
            return self.old_path or self.new_path or ""
        return self.new_path or self.old_path or ""

    @property
    def changed_lines(self) -> int:
        return self.added + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "old_path": self.old_path,
            "added": self.added,
            "deleted": self.deleted,
            "is_new": self.is_new,
            "is_deleted": self.is_deleted,
            "is_rename": self.is_rename,
        }


@dataclass
class ParsedDiff:
    files: list[FileDiff]
    raw: str

    @property
    def total_added(self) -> int:
        return sum(f.added for f in self.files)

    @property
    def total_deleted(self) -> int:
        return sum(f.deleted for f in self.files)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    @property
    def size_bytes(self) -> int:
        return len(self.raw.encode())

    @property
    def is_empty(self) -> bool:
        return not self.raw.strip()


def parse_unified_diff(diff: str | None) -> ParsedDiff:
    """Parse ``git diff`` style output.

    Plain ``---``/``+++`` diffs without a ``diff --git`` line are accepted too.
    Hunk bodies are consumed using the line counts in their ``@@`` header, so
    removed lines that happen to start with ``--`` are not mistaken for file
    headers.
    """
    raw = diff or ""
    files: list[FileDiff] = []
    current: FileDiff | None = None
    old_left = new_left = 0

    for line in raw.splitlines():
        if current is not None and (old_left > 0 or new_left > 0):
            current.hunks[-1].append(line)
            if line.startswith("+"):
                current.added += 1
                new_left -= 1
            elif line.startswith("-"):
                current.deleted += 1
                old_left -= 1
            elif line.startswith("\\"):
                pass  # "\ No newline at end of file"
            else:
                old_left -= 1
                new_left -= 1
            continue

        header = _FILE_HEADER_RE.match(line)
        if header:
            current = FileDiff(old_path=header.group(1), new_path=header.group(2))
            files.append(current)
            continue

        if line.startswith("--- "):
            if current is None or current.hunks:
                current = FileDiff()
                files.append(current)
            match = _OLD_PATH_RE.match(line)
            if match and match.group(1) == "/dev/null":
                current.is_new = True
            elif match:
                current.old_path = match.group(1)
            continue

        if current is None:
            continue

        if line.startswith("+++ "):
            match = _NEW_PATH_RE.match(line)
            if match and match.group(1) == "/dev/null":
                current.is_deleted = True
            elif match:
                current.new_path = match.group(1)
            continue

        hunk = _HUNK_RE.match(line)
        rename_from = _RENAME_FROM_RE.match(line)
        rename_to = _RENAME_TO_RE.match(line)
        if line.startswith("new file mode "):
            current.is_new = True
        elif line.startswith("deleted file mode "):
            current.is_deleted = True
        elif rename_from:
            current.is_rename = True
            current.old_path = rename_from.group(1)
        elif rename_to:
            current.is_rename = True
            current.new_path = rename_to.group(1)
        elif hunk:
            current.hunks.append([line])
            old_left = int(hunk.group(1)) if hunk.group(1) is not None else 1
            new_left = int(hunk.group(2)) if hunk.group(2) is not None else 1

    return ParsedDiff(files=files, raw=raw)


def post_change_line_counts(parsed: ParsedDiff, current: dict[str, int]) -> dict[str, int]:
    """Line counts each file will have once ``parsed`` is applied.

    ``current`` maps pre-change paths to their line counts. New files start
    from zero; files whose current size is unknown are left out.
    """
    counts: dict[str, int] = {}
    for file_diff in parsed.files:
        if file_diff.is_deleted:
            continue
        if file_diff.is_new:
            base = 0
        else:
            base = current.get(file_diff.old_path or file_diff.path)
            if base is None:
                continue
        counts[file_diff.path] = max(base + file_diff.added - file_diff.deleted, 0)
    return counts
