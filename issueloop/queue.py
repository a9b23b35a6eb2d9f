"""Redis Streams job queue helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

from .config import settings
from .redis_client import get_redis_client

STREAM_PLAN = "stream:jobs:plan"
STREAM_EXEC = "stream:jobs:exec"
STREAM_EVAL = "stream:jobs:eval"

STAGES = ("plan", "exec", "eval")


class QueueFullError(RuntimeError):
    """Raised when a Redis job stream reaches capacity."""


@dataclass(frozen=True)
class JobPayload:
    owner: str
    repo: str
    issue_number: int
    stage: str = "exec"
    issue_title: str = ""
    installation_id: int | None = None
    schema_version: str = "1.0"
    retry_count: int = 0

    def to_dict(self) -> dict[str, str]:
        payload: dict[str, str] = {
            "schema_version": str(self.schema_version),
            "stage": str(self.stage),
            "owner": str(self.owner),
            "repo": str(self.repo),
            "issue_number": str(self.issue_number),
            "retry_count": str(self.retry_count),
        }
        if self.issue_title:
            payload["issue_title"] = self.issue_title
        if self.installation_id is not None:
            payload["installation_id"] = str(self.installation_id)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobPayload:
        installation = data.get("installation_id")
        return cls(
            owner=str(data["owner"]),
            repo=str(data["repo"]),
            issue_number=int(data["issue_number"]),
            stage=str(data.get("stage", "exec")),
            issue_title=str(data.get("issue_title", "")),
            installation_id=int(installation) if installation not in (None, "") else None,
            schema_version=str(data.get("schema_version", "1.0")),
            retry_count=int(data.get("retry_count", 0)),
        )

    @property
    def agent_id(self) -> str:
        return f"{self.owner}_{self.repo}_{self.issue_number}".lower()


STREAM_MAP = {
    "plan": STREAM_PLAN,
    "exec": STREAM_EXEC,
    "eval": STREAM_EVAL,
}


def stream_for_stage(stage: str) -> str:
    try:
        return STREAM_MAP[stage]
    except KeyError:
        raise ValueError(f"Unknown stage {stage!r}; expected one of {', '.join(STAGES)}") from None


async def _ensure_capacity(stream: str) -> None:
    redis = get_redis_client()
    length = await redis.xlen(stream)
    if length >= settings.redis_queue_max_depth:
        raise QueueFullError(f"Stream {stream} at capacity ({length})")


async def enqueue_job(payload: JobPayload) -> str:
    """Enqueue a job to the stream for its stage."""
    stream = stream_for_stage(payload.stage)
    await _ensure_capacity(stream)

    redis = get_redis_client()
    msg_id = await redis.xadd(stream, cast(dict[Any, Any], payload.to_dict()))
    return msg_id
