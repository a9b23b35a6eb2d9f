"""Configuration settings for the adaptive iteration loop."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class AdaptivePolicy(BaseModel):
    """Confidence adaptation and batch sizing."""

    confidence_increase_per_success: float = 0.07
    confidence_decrease_on_fail: float = 0.10
    min_batch: int = 1
    max_batch: int = 12
    dynamic_risk_weight: float = 0.35
    exploitation_bias: float = 0.55


class TerminationPolicy(BaseModel):
    required_confidence: float = 0.94
    max_idle_iterations: int = 4


class DiffPolicy(BaseModel):
    max_bytes: int = 64000
    max_deletes_ratio: float = 0.45
    large_file_line_threshold: int = 800
    max_total_files_per_iter: int = 24


class RiskPolicy(BaseModel):
    high_threshold: float = 0.7
    escalate_threshold: float = 0.85


class SecurityPolicy(BaseModel):
    max_high_severity_issues: int = 5
    semgrep_enabled: bool = True
    semgrep_cmd: str = "semgrep"
    semgrep_config: str = "auto"


class EvalPolicy(BaseModel):
    auto_expand: bool = True
    max_new_tasks_per_eval: int = 4
    confidence_gate: float = 0.55
    coverage_target: float = 0.82
    interval_seconds: int = 600  # 10 minutes of inactivity


class PlanPolicy(BaseModel):
    """Stakeholder review gate and conflict handling for plans."""

    review_task_threshold: int = 10
    critical_manifests: list[str] = Field(
        default_factory=lambda: [
            "package.json",
            "requirements.txt",
            "pyproject.toml",
            "setup.py",
            "Cargo.toml",
            "go.mod",
            "Gemfile",
            "pom.xml",
        ]
    )
    reject_on_file_overlap: bool = True
    high_overlap_file_count: int = 3
    busy_open_prs: int = 10
    busy_recent_commits: int = 50
    ownership_file: str = ".aiagent-ownership.yml"
    default_approvers: list[str] = Field(default_factory=list)


class PrioritizerPolicy(BaseModel):
    """Weights and thresholds used when ranking tasks."""

    impact_weight: float = 0.25
    urgency_weight: float = 0.25
    business_value_weight: float = 0.20
    complexity_weight: float = 0.15
    technical_debt_weight: float = 0.10
    risk_penalties: dict[str, float] = Field(
        default_factory=lambda: {"low": 0.0, "medium": 5.0, "high": 15.0, "critical": 30.0}
    )
    high_risk_concentration: float = 0.3
    team_overload_workload: float = 90.0
    team_warning_workload: float = 85.0
    high_debt_ratio: float = 60.0
    debt_recommendation_ratio: float = 50.0
    complex_dependency_level: float = 70.0


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "issueloop"
    db_user: str = "agent"
    db_password: str = "agent"

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_queue_max_depth: int = 500
    agent_lock_seconds: int = 900

    # Paths
    workspace_root: Path = Path("/tmp/issueloop-work")

    # Timeouts (seconds)
    collaborator_timeout_seconds: int = 300
    sweep_interval_seconds: int = 60
    min_seconds_between_iterations: int = 60
    context_cache_ttl_seconds: int = 300

    # Collaborator factories ("module:callable"), resolved by the workers
    patch_generator: str | None = None
    plan_generator: str | None = None
    evaluator: str | None = None
    repository_inspector: str | None = None

    log_level: str = "INFO"

    adaptive: AdaptivePolicy = Field(default_factory=AdaptivePolicy)
    termination: TerminationPolicy = Field(default_factory=TerminationPolicy)
    diff: DiffPolicy = Field(default_factory=DiffPolicy)
    risk: RiskPolicy = Field(default_factory=RiskPolicy)
    security: SecurityPolicy = Field(default_factory=SecurityPolicy)
    eval: EvalPolicy = Field(default_factory=EvalPolicy)
    plan: PlanPolicy = Field(default_factory=PlanPolicy)
    prioritizer: PrioritizerPolicy = Field(default_factory=PrioritizerPolicy)

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "ISSUELOOP_"
        env_file = ".env"
        env_nested_delimiter = "__"


# Global settings instance
settings = Settings()
