"""
Adaptive Iteration Loop

This package drives autonomous agents that work repository issues in small,
validated iterations, with PostgreSQL-backed plans and Redis Streams workers.
"""

__version__ = "0.1.0"

# Configuration
from issueloop.config import Settings

# Conflicts
from issueloop.conflicts import ConflictDetector

# Controller
from issueloop.controller import (
    AdaptiveIterationController,
    IterationResult,
    compute_batch_size,
    update_confidence,
)

# Core models
from issueloop.models import (
    Agent,
    ExecutionLog,
    PatchAttempt,
    PlanTask,
    PlanUpdateLog,
    PlanVersion,
    Rollback,
    StakeholderReview,
)

# Plans
from issueloop.planning import PlanManager, PlanMutation, PlanUpdateResult

# Prioritization
from issueloop.prioritizer import Prioritization, PrioritizedTask, TaskPrioritizer
from issueloop.risk import Conflict, RiskAssessment, RiskLevel
from issueloop.tasks import TaskSpec, TaskStatus

# Validation
from issueloop.validation import PatchValidationGate, ValidationResult

__all__ = [
    # Version
    "__version__",
    # Models
    "Agent",
    "PlanTask",
    "PlanVersion",
    "PlanUpdateLog",
    "StakeholderReview",
    "PatchAttempt",
    "Rollback",
    "ExecutionLog",
    # Config
    "Settings",
    # Tasks
    "TaskSpec",
    "TaskStatus",
    # Prioritization
    "TaskPrioritizer",
    "Prioritization",
    "PrioritizedTask",
    "RiskAssessment",
    "RiskLevel",
    # Conflicts
    "ConflictDetector",
    "Conflict",
    # Plans
    "PlanManager",
    "PlanMutation",
    "PlanUpdateResult",
    # Validation
    "PatchValidationGate",
    "ValidationResult",
    # Controller
    "AdaptiveIterationController",
    "IterationResult",
    "compute_batch_size",
    "update_confidence",
]
