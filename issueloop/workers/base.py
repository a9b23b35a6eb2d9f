"""Redis stream worker base class."""

from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from redis.exceptions import ResponseError

from ..queue import JobPayload, stream_for_stage
from ..redis_client import acquire_agent_lease, get_redis_client, release_agent_lease

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


@dataclass
class JobMessage:
    msg_id: str
    stream: str
    payload: dict[str, Any]


class RedisWorker:
    """Base worker consuming one stage's jobs from Redis Streams."""

    def __init__(self, *, stage: str, group: str | None = None) -> None:
        self.stage = stage
        self.stream = stream_for_stage(stage)
        self.group = group or f"{stage}-workers"
        self.consumer = f"{stage}-{int(time.time())}-{uuid4().hex[:6]}"
        self.shutdown_requested = False

    async def setup(self) -> None:
        redis = get_redis_client()
        try:
            await redis.xgroup_create(self.stream, self.group, id="$", mkstream=True)
        except ResponseError as exc:
            # BUSYGROUP: the group already exists
            if "BUSYGROUP" not in str(exc):
                raise

    def _install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def _next_job(self) -> JobMessage | None:
        redis = get_redis_client()
        result = await redis.xreadgroup(
            groupname=self.group,
            consumername=self.consumer,
            streams={self.stream: ">"},
            count=1,
            block=1000,
        )
        if not result:
            return None
        stream_name, messages = result[0]
        msg_id, payload = messages[0]
        return JobMessage(msg_id=msg_id, stream=stream_name, payload=payload)

    async def _ack(self, job: JobMessage) -> None:
        redis = get_redis_client()
        await redis.xack(job.stream, self.group, job.msg_id)

    async def _to_dlq(self, job: JobMessage, error: str) -> None:
        redis = get_redis_client()
        dlq = f"stream:dlq:{self.stage}"
        payload = dict(job.payload)
        payload["error"] = error
        await redis.xadd(dlq, payload)
        await self._ack(job)

    async def _requeue(self, job: JobMessage, retry_count: int) -> None:
        redis = get_redis_client()
        payload = dict(job.payload)
        payload["retry_count"] = str(retry_count)
        await redis.xadd(job.stream, payload)
        await self._ack(job)

    async def process(self, job: JobPayload) -> None:
        """Override in subclasses to execute a job."""
        raise NotImplementedError

    async def handle(self, job: JobMessage) -> None:
        """Run one job under the agent lease, with retry and dead-lettering."""
        try:
            payload = JobPayload.from_dict(job.payload)
        except (KeyError, ValueError) as exc:
            logger.warning("Dropping malformed %s job %s: %s", self.stage, job.msg_id, exc)
            await self._to_dlq(job, f"malformed payload: {exc}")
            return

        token = f"{self.consumer}:{job.msg_id}"
        if not await acquire_agent_lease(payload.agent_id, token):
            logger.info("Agent %s is busy; skipping %s job", payload.agent_id, self.stage)
            await self._ack(job)
            return

        try:
            await self.process(payload)
            await self._ack(job)
        except Exception as exc:
            retry_count = payload.retry_count + 1
            if retry_count >= MAX_RETRIES:
                logger.error("%s job for %s moved to DLQ: %s", self.stage, payload.agent_id, exc)
                await self._to_dlq(job, str(exc))
            else:
                logger.warning(
                    "%s job for %s failed (attempt %d): %s", self.stage, payload.agent_id, retry_count, exc
                )
                await self._requeue(job, retry_count)
        finally:
            await release_agent_lease(payload.agent_id, token)

    async def run_forever(self) -> None:
        await self.setup()
        self._install_signal_handlers()
        logger.info("%s worker %s listening on %s", self.stage, self.consumer, self.stream)

        while not self.shutdown_requested:
            job = await self._next_job()
            if not job:
                continue
            await self.handle(job)

        logger.info("%s worker %s stopped", self.stage, self.consumer)
