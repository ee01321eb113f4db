"""
Configuration management using Pydantic Settings.
Every knob is read from ``TASKWEAVE_*`` environment variables or a ``.env`` file.
"""
import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="taskweave", description="Application name")
    environment: str = Field(default="development", description="Environment: development, staging, production")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    # Repository / workspaces
    repository_path: str = Field(default=".", description="Local clone that workspaces are created from")
    workspace_root: str = Field(default=".worktrees", description="Parent directory of all task workspaces")
    mainline_branch: str = Field(default="main", description="Branch every change request merges into")
    remote_name: str = Field(default="origin", description="Remote used for fetch / push")

    # Timeouts
    executor_timeout_seconds: float = Field(default=1800.0, gt=0, description="Executor invocation timeout")
    vcs_timeout_seconds: float = Field(default=120.0, gt=0, description="Timeout for a single git / gh command")

    # Concurrency
    max_concurrent_per_executor: int = Field(default=1, ge=1, le=32, description="Tasks one executor may hold at once")

    # Retry / backoff
    max_attempts: int = Field(default=5, ge=1, description="Failed attempts before human escalation")
    backoff_base_seconds: float = Field(default=300.0, ge=0, description="Backoff after the first failure")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth per failure")
    backoff_max_seconds: float = Field(default=3600.0, ge=0, description="Backoff ceiling")
    backoff_jitter: bool = Field(default=False, description="Add 0-25% jitter to backoff")

    # Background loops
    dispatch_interval_seconds: float = Field(default=5.0, gt=0, description="Claim loop period")
    reconciliation_interval_seconds: float = Field(default=300.0, gt=0, description="Reconciliation sweep period")
    stuck_task_threshold_seconds: float = Field(default=7200.0, gt=0, description="IN_PROGRESS age treated as stuck")
    drift_warning_threshold: int = Field(default=2, ge=1, description="Drift repeats on one task before warning")

    # Analysis / priority
    min_score_change: float = Field(default=15.0, ge=0, le=100, description="Minimum score delta for a priority change")
    bottleneck_threshold: int = Field(default=3, ge=1, description="Dependents needed to count as a bottleneck")
    long_critical_path_threshold: float = Field(default=160.0, gt=0, description="Critical path length that triggers a warning")
    strict_dependencies: bool = Field(default=False, description="Raise on dangling dependency references")

    # Lifecycle policy
    count_cancelled_as_complete: bool = Field(default=False, description="CANCELLED children count toward epic completion")
    max_subtask_depth: int = Field(default=3, ge=1, description="Deepest allowed subtask level")
    max_subtasks_per_task: int = Field(default=10, ge=1, description="Children allowed per parent")

    # Conflict resolution
    max_conflict_rounds: int = Field(default=5, ge=1, description="Rebase-continue rounds per resolution attempt")

    # Brain provider (HTTP executor)
    brain_provider_url: str = Field(default="http://localhost:11434/v1", description="OpenAI-compatible base URL")
    brain_provider_model: str = Field(default="default", description="Model name sent to the provider")
    brain_provider_api_key: Optional[str] = Field(default=None, description="Bearer token for the provider")
    brain_provider_cost_per_1k_tokens: float = Field(default=0.0, ge=0, description="Cost accounting rate")

    # Command executor
    executor_command: str = Field(default="claude -p", description="CLI agent command, prompt goes to stdin")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("backoff_max_seconds")
    @classmethod
    def validate_backoff_ceiling(cls, v: float, info) -> float:
        """Ceiling may not sit below the first delay."""
        base = info.data.get("backoff_base_seconds", 0.0)
        if v < base:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)

    def workspace_root_path(self) -> Path:
        """Workspace root resolved against the repository path."""
        root = Path(self.workspace_root)
        if not root.is_absolute():
            root = Path(self.repository_path) / root
        return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Orchestrator settings
    """
    return Settings()
