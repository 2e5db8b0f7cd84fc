"""Runtime configuration for the pipeline, retry, cost, and engine layers."""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from bemadralphy.errors import ConfigurationError
from bemadralphy.pipeline.models import E, ExecutionProfile, PipelineMode, parse_enum

STATE_DIR_NAME = ".bemadralphy"
RUN_CONFIG_CANDIDATES: tuple[str, ...] = (
    ".bemadralphyrc",
    "bemad.config.json",
    "bemad.config.yaml",
    "bemad.config.yml",
)


@dataclass(slots=True)
class PipelineSettings:
    """Phase-runner defaults."""

    state_dir_name: str = STATE_DIR_NAME
    default_engine: str = "ralphy"
    default_mode: PipelineMode = PipelineMode.HYBRID
    default_profile: ExecutionProfile = ExecutionProfile.BALANCED
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class RetrySettings:
    """Backoff policy for task attempts."""

    max_retries: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 60_000


@dataclass(slots=True)
class CostSettings:
    """Heuristic pricing used by the budget guard."""

    base_usd: float = 0.08
    per_task_usd: float = 0.07
    concurrency_step_usd: float = 0.01
    budget_usd: float | None = None


@dataclass(slots=True)
class EngineSettings:
    """Engine adapter and completion provider settings."""

    task_timeout_seconds: int = 1_800
    ollama_model: str = "llama3.2"
    completion_command_template: str | None = None


@dataclass(slots=True)
class CollaboratorSettings:
    """Command lines for external phase collaborators; empty means skip."""

    planning_command: tuple[str, ...] = ()
    validate_command: tuple[str, ...] = ("openspec", "validate", "--all")
    pr_command: tuple[str, ...] = ("gh", "pr", "create", "--fill")
    command_timeout_seconds: int = 600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    cost: CostSettings = field(default_factory=CostSettings)
    engines: EngineSettings = field(default_factory=EngineSettings)
    collaborators: CollaboratorSettings = field(default_factory=CollaboratorSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            pipeline=PipelineSettings(
                state_dir_name=os.getenv("BEMADRALPHY_STATE_DIR", STATE_DIR_NAME),
                default_engine=os.getenv("BEMADRALPHY_ENGINE", "ralphy"),
                default_mode=_env_enum("BEMADRALPHY_MODE", PipelineMode, PipelineMode.HYBRID),
                default_profile=_env_enum(
                    "BEMADRALPHY_EXECUTION_PROFILE",
                    ExecutionProfile,
                    ExecutionProfile.BALANCED,
                ),
                sqlite_busy_timeout_ms=_env_int("BEMADRALPHY_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            retry=RetrySettings(
                max_retries=_env_int("BEMADRALPHY_RETRY_MAX_RETRIES", 3),
                base_delay_ms=_env_int("BEMADRALPHY_RETRY_BASE_DELAY_MS", 500),
                max_delay_ms=_env_int("BEMADRALPHY_RETRY_MAX_DELAY_MS", 60_000),
            ),
            cost=CostSettings(
                base_usd=_env_float("BEMADRALPHY_COST_BASE_USD", 0.08),
                per_task_usd=_env_float("BEMADRALPHY_COST_PER_TASK_USD", 0.07),
                concurrency_step_usd=_env_float("BEMADRALPHY_COST_CONCURRENCY_STEP_USD", 0.01),
                budget_usd=_env_optional_float("BEMADRALPHY_BUDGET_USD"),
            ),
            engines=EngineSettings(
                task_timeout_seconds=_env_int("BEMADRALPHY_TASK_TIMEOUT_SECONDS", 1_800),
                ollama_model=os.getenv("OLLAMA_MODEL", "llama3.2").strip() or "llama3.2",
                completion_command_template=os.getenv("BEMADRALPHY_COMPLETION_COMMAND") or None,
            ),
            collaborators=CollaboratorSettings(
                planning_command=_env_command("BEMADRALPHY_PLANNING_COMMAND", ()),
                validate_command=_env_command(
                    "BEMADRALPHY_VALIDATE_COMMAND",
                    ("openspec", "validate", "--all"),
                ),
                pr_command=_env_command(
                    "BEMADRALPHY_PR_COMMAND",
                    ("gh", "pr", "create", "--fill"),
                ),
                command_timeout_seconds=_env_int("BEMADRALPHY_COMMAND_TIMEOUT_SECONDS", 600),
            ),
        )

    def validate(self) -> None:
        """Raise ConfigurationError for out-of-range numeric settings."""

        if self.retry.max_retries < 0:
            raise ConfigurationError("BEMADRALPHY_RETRY_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_ms < 0 or self.retry.max_delay_ms < 0:
            raise ConfigurationError("Retry delays must be >= 0.")
        if self.cost.per_task_usd < 0 or self.cost.base_usd < 0:
            raise ConfigurationError("Cost settings must be >= 0.")
        if self.cost.budget_usd is not None and self.cost.budget_usd < 0:
            raise ConfigurationError("BEMADRALPHY_BUDGET_USD must be >= 0.")
        if self.engines.task_timeout_seconds <= 0:
            raise ConfigurationError("BEMADRALPHY_TASK_TIMEOUT_SECONDS must be > 0.")

    def state_dir(self, project_root: Path) -> Path:
        return project_root / self.pipeline.state_dir_name


def load_run_config(project_root: Path) -> dict[str, Any]:
    """Read the first project run-config file found; JSON or YAML."""

    for candidate in RUN_CONFIG_CANDIDATES:
        path = project_root / candidate
        if not path.is_file():
            continue
        raw = path.read_text("utf-8").strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw) if raw.startswith("{") else yaml.safe_load(raw)
        except (json.JSONDecodeError, yaml.YAMLError) as error:
            raise ConfigurationError(f"Invalid run config {path}: {error}") from error
        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError(f"Run config {path} must contain a mapping.")
        return parsed
    return {}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    parsed = _env_optional_float(name)
    return default if parsed is None else parsed


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number for {name}: {value!r}") from error


def _env_enum(name: str, enum_type: type[E], default: E) -> E:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return parse_enum(enum_type, value, option=name)


def _env_command(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(shlex.split(value))
