"""Normalized run options with CLI > project file > environment precedence."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from bemadralphy.config import Settings
from bemadralphy.errors import ConfigurationError
from bemadralphy.pipeline.models import (
    ExecutionProfile,
    OutputFormat,
    PhaseName,
    PipelineMode,
    SwarmMode,
    parse_enum,
)

# Project config files may use camelCase keys.
_FILE_KEY_ALIASES: dict[str, str] = {
    "maxParallel": "max_parallel",
    "executionProfile": "execution_profile",
    "budget": "budget_usd",
    "createPr": "create_pr",
    "dryRun": "dry_run",
    "fromPhase": "from_phase",
    "toPhase": "to_phase",
    "taskTimeoutSeconds": "task_timeout_seconds",
}
_FILE_KEYS = frozenset(
    {
        "mode",
        "engine",
        "model",
        "max_parallel",
        "execution_profile",
        "budget_usd",
        "swarm",
        "create_pr",
        "output",
        "plugins",
        "task_timeout_seconds",
    },
)


@dataclass(slots=True, frozen=True)
class RunOptions:
    """Fully resolved options for one run attempt."""

    mode: PipelineMode = PipelineMode.HYBRID
    engine: str = "ralphy"
    model: str | None = None
    max_parallel: float | None = None
    execution_profile: ExecutionProfile = ExecutionProfile.BALANCED
    budget_usd: float | None = None
    swarm: SwarmMode | None = None
    create_pr: bool = False
    dry_run: bool = False
    resume: bool = False
    from_phase: PhaseName | None = None
    to_phase: PhaseName | None = None
    output: OutputFormat = OutputFormat.TEXT
    plugins: tuple[str, ...] = field(default_factory=tuple)
    task_timeout_seconds: int = 1_800

    def with_overrides(self, **changes: Any) -> RunOptions:
        return replace(self, **changes)

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe snapshot stored in run history and used by replay."""

        return {
            "mode": self.mode.value,
            "engine": self.engine,
            "model": self.model,
            "max_parallel": self.max_parallel,
            "execution_profile": self.execution_profile.value,
            "budget_usd": self.budget_usd,
            "swarm": self.swarm.value if self.swarm else None,
            "create_pr": self.create_pr,
            "dry_run": self.dry_run,
            "resume": self.resume,
            "from_phase": self.from_phase.value if self.from_phase else None,
            "to_phase": self.to_phase.value if self.to_phase else None,
            "output": self.output.value,
            "plugins": list(self.plugins),
            "task_timeout_seconds": self.task_timeout_seconds,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any], settings: Settings) -> RunOptions:
        return normalize_options(snapshot, {}, settings)


def normalize_options(
    cli: Mapping[str, Any],
    file_config: Mapping[str, Any],
    settings: Settings,
) -> RunOptions:
    """Merge option sources; None in a higher source falls through to the next."""

    file_values = _normalize_file_keys(file_config)

    def pick(name: str, default: Any) -> Any:
        value = cli.get(name)
        if value is not None:
            return value
        value = file_values.get(name)
        if value is not None:
            return value
        return default

    mode = parse_enum(PipelineMode, pick("mode", settings.pipeline.default_mode), option="mode")
    profile = parse_enum(
        ExecutionProfile,
        pick("execution_profile", settings.pipeline.default_profile),
        option="execution_profile",
    )
    output = parse_enum(OutputFormat, pick("output", OutputFormat.TEXT), option="output")
    swarm_raw = pick("swarm", None)
    swarm = parse_enum(SwarmMode, swarm_raw, option="swarm") if swarm_raw is not None else None
    from_raw = cli.get("from_phase")
    to_raw = cli.get("to_phase")

    engine = str(pick("engine", settings.pipeline.default_engine)).strip().lower()
    if not engine:
        raise ConfigurationError("Engine name must not be empty.")

    return RunOptions(
        mode=mode,
        engine=engine,
        model=_optional_str(pick("model", None)),
        max_parallel=_optional_number(pick("max_parallel", None), option="max_parallel"),
        execution_profile=profile,
        budget_usd=_optional_budget(pick("budget_usd", settings.cost.budget_usd)),
        swarm=swarm,
        create_pr=bool(pick("create_pr", False)),
        dry_run=bool(cli.get("dry_run") or False),
        resume=bool(cli.get("resume") or False),
        from_phase=parse_enum(PhaseName, from_raw, option="from_phase") if from_raw else None,
        to_phase=parse_enum(PhaseName, to_raw, option="to_phase") if to_raw else None,
        output=output,
        plugins=tuple(str(entry) for entry in pick("plugins", ()) or ()),
        task_timeout_seconds=int(
            pick("task_timeout_seconds", settings.engines.task_timeout_seconds),
        ),
    )


def _normalize_file_keys(file_config: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in file_config.items():
        name = _FILE_KEY_ALIASES.get(key, key)
        if name in _FILE_KEYS:
            normalized[name] = value
    return normalized


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_number(value: Any, *, option: str) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"Invalid {option}: {value!r}") from error


def _optional_budget(value: Any) -> float | None:
    budget = _optional_number(value, option="budget")
    if budget is not None and budget < 0:
        raise ConfigurationError(f"Budget must be >= 0: {budget}")
    return budget
