"""Redis Streams workers for the plan, exec and eval stages."""

from .base import JobMessage, RedisWorker
from .stages import EvalWorker, ExecWorker, PlanWorker, StageWorker, run_worker

__all__ = [
    "EvalWorker",
    "ExecWorker",
    "JobMessage",
    "PlanWorker",
    "RedisWorker",
    "StageWorker",
    "run_worker",
]
