"""Domain models for the phase state machine, checkpoints, and run history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from bemadralphy.errors import ConfigurationError


class PhaseName(str, Enum):
    """Pipeline phases in execution order."""

    INTAKE = "intake"
    PLANNING = "planning"
    STEERING = "steering"
    SCAFFOLD = "scaffold"
    SYNC = "sync"
    EXECUTE = "execute"
    VERIFY = "verify"
    POST = "post"


PHASE_ORDER: tuple[PhaseName, ...] = tuple(PhaseName)

E = TypeVar("E", bound=Enum)


class PipelineStatus(str, Enum):
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


class PipelineMode(str, Enum):
    """Autonomy level of the run."""

    AUTO = "auto"
    HYBRID = "hybrid"
    SUPERVISED = "supervised"


class ExecutionProfile(str, Enum):
    """Concurrency/risk posture that bounds max_parallel."""

    SAFE = "safe"
    BALANCED = "balanced"
    FAST = "fast"


class SwarmMode(str, Enum):
    NATIVE = "native"
    PROCESS = "process"
    OFF = "off"


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


def parse_enum(enum_type: type[E], value: object, *, option: str) -> E:
    """Coerce a raw config value to a closed enum or raise ConfigurationError."""

    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        for member in enum_type:
            if member.value == normalized:
                return member
    allowed = "|".join(str(member.value) for member in enum_type)
    raise ConfigurationError(f"Invalid {option}: {value!r}. Expected one of: {allowed}.")


def phase_index(phase: PhaseName) -> int:
    return PHASE_ORDER.index(phase)


def next_phase(phase: PhaseName) -> PhaseName | None:
    """Return the phase after ``phase``, or None after the final phase."""

    index = phase_index(phase) + 1
    if index >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[index]


def phase_window(start: PhaseName, end: PhaseName) -> tuple[PhaseName, ...]:
    """Inclusive slice of phases between ``start`` and ``end``."""

    return PHASE_ORDER[phase_index(start) : phase_index(end) + 1]


@dataclass(slots=True)
class PipelineState:
    """Single live checkpoint for a project; the only resume source of truth."""

    phase: PhaseName
    status: PipelineStatus
    run_id: str
    mode: PipelineMode
    started_at: datetime
    updated_at: datetime
    last_completed_phase: PhaseName | None = None
    failed_phase: PhaseName | None = None
    resume_from_phase: PhaseName | None = None
    engine: str | None = None
    execution_profile: ExecutionProfile | None = None
    swarm: SwarmMode | None = None
    max_parallel: int | None = None
    tasks_completed: int = 0
    cost_usd: float = 0.0
    error: str | None = None


@dataclass(slots=True, frozen=True)
class RunHistoryRecord:
    """Immutable ledger row for one run attempt or its terminal outcome."""

    run_id: str
    started_at: datetime
    status: PipelineStatus
    mode: PipelineMode
    options: dict[str, Any] = field(default_factory=dict)
    finished_at: datetime | None = None
    engine: str | None = None
    output: OutputFormat | None = None
    phase: PhaseName | None = None
    resume_from_phase: PhaseName | None = None
    error: str | None = None
