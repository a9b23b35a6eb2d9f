"""
Standardized event system for the iteration loop.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    AGENT_CREATED = "agent.created"
    AGENT_PAUSED = "agent.paused"
    AGENT_RESUMED = "agent.resumed"
    AGENT_STOPPED = "agent.stopped"

    PLAN_CREATED = "plan.created"
    PLAN_UPDATED = "plan.updated"
    PLAN_UPDATE_REJECTED = "plan.update_rejected"

    ITERATION_PROGRESS = "iteration.progress"
    ITERATION_FAILED = "iteration.failed"

    PATCH_APPLIED = "patch.applied"
    PATCH_REJECTED = "patch.rejected"
    PATCH_ROLLED_BACK = "patch.rolled_back"

    EVALUATION_COMPLETED = "evaluation.completed"

    REVIEW_REQUESTED = "review.requested"
    REVIEW_APPROVED = "review.approved"
    REVIEW_REJECTED = "review.rejected"


@dataclass
class AgentEvent:
    """Standardized event for the iteration loop."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.ITERATION_PROGRESS
    agent_id: str | None = None
    iteration: int | None = None
    phase: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "agent_id": self.agent_id,
            "iteration": self.iteration,
            "phase": self.phase,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
        }


Handler = Callable[[AgentEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers. Handler failures are logged, never raised."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def on_event(self, handler: Handler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def clear(self) -> None:
        self._handlers.clear()

    async def emit(self, event: AgentEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error for %s: %s", event.type.value, exc)


event_bus = EventEmitter()


def progress_event(
    agent_id: str,
    iteration: int,
    confidence: float,
    task_counts: dict[str, int],
    *,
    message: str = "",
    data: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> AgentEvent:
    return AgentEvent(
        type=EventType.ITERATION_PROGRESS,
        agent_id=agent_id,
        iteration=iteration,
        phase="execute",
        message=message or f"Iteration {iteration} finished at confidence {confidence:.2f}",
        data={"confidence": confidence, "tasks": task_counts, **(data or {})},
        duration_ms=duration_ms,
    )


def stop_event(agent_id: str, iteration: int, reason: str, confidence: float) -> AgentEvent:
    return AgentEvent(
        type=EventType.AGENT_STOPPED,
        agent_id=agent_id,
        iteration=iteration,
        phase="decide",
        message=f"Agent stopped ({reason}) at confidence {confidence:.2f}",
        data={"reason": reason, "confidence": confidence},
    )


async def persist_event_handler(event: AgentEvent) -> None:
    """Handler that persists events to the database."""
    if not event.agent_id:
        return

    from .db import get_agent, get_session, log_event

    async with get_session() as session:
        agent = await get_agent(session, event.agent_id)
        if not agent:
            return

        await log_event(
            session,
            agent,
            phase=event.phase or "unknown",
            event=event.type.value,
            message=event.message,
            details=event.data,
            duration_ms=event.duration_ms,
        )


async def publish_event_handler(event: AgentEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not event.agent_id:
        return

    from .redis_client import get_redis_client

    redis = get_redis_client()
    channel = f"channel:agent:{event.agent_id}"
    await redis.publish(channel, json.dumps(event.to_dict(), default=str))


def register_default_handlers(emitter: EventEmitter | None = None) -> EventEmitter:
    """Attach the database and Redis handlers. Called by the CLI and workers."""
    emitter = emitter or event_bus
    emitter.on_event(persist_event_handler)
    emitter.on_event(publish_event_handler)
    return emitter
