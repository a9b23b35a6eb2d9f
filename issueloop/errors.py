"""Error types and helpers for the iteration loop."""

from __future__ import annotations

import re

import click


class IssueLoopError(click.ClickException):
    """Base class for errors that abort a single operation."""


class SchemaNotInitializedError(IssueLoopError):
    """Raised when the database schema/migrations have not been applied."""


class AgentNotFoundError(IssueLoopError):
    """Raised when an operation targets an unknown agent id."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class PlanVersionMismatchError(IssueLoopError):
    """Raised when a plan mutation races with another writer."""

    def __init__(self, agent_id: str, expected: int, actual: int | None = None) -> None:
        detail = f" (current {actual})" if actual is not None else ""
        super().__init__(
            f"Plan version mismatch for {agent_id}: expected {expected}{detail}"
        )
        self.agent_id = agent_id
        self.expected = expected
        self.actual = actual


class CollaboratorError(IssueLoopError):
    """An external collaborator (generator, evaluator, scanner, applier) failed."""

    def __init__(self, collaborator: str, error: BaseException | str) -> None:
        super().__init__(f"{collaborator} failed: {error}")
        self.collaborator = collaborator


class ConfigurationError(IssueLoopError):
    """A required setting or collaborator factory is missing or invalid."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `uv run alembic upgrade head`",
        "Or for local development: `uv run issueloop init-db`",
    ]
    return "\n".join(lines)
