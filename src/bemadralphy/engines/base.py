"""Engine adapter interface for execute-phase task attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from bemadralphy.tasks.locks import FileLockManager


class TaskResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class EngineTask:
    """Inputs an engine needs to work on one task."""

    task_id: str
    title: str
    description: str = ""
    story_id: str = ""

    def prompt(self) -> str:
        body = self.description.strip()
        header = f"Task {self.task_id}: {self.title}"
        return f"{header}\n\n{body}" if body else header


@dataclass(slots=True)
class ExecuteOptions:
    """Per-attempt execution settings."""

    cwd: Path
    dry_run: bool = False
    model: str | None = None
    timeout_seconds: int = 1_800
    locks: FileLockManager = field(default_factory=FileLockManager)


@dataclass(slots=True)
class TaskResult:
    """Execution outcome returned by an engine adapter."""

    task_id: str
    status: TaskResultStatus
    output: str = ""
    error: str | None = None
    cost_usd: float | None = None


class EngineAdapter(Protocol):
    """Protocol implemented by engine adapters."""

    name: str
    has_native_swarm: bool

    def check_available(self) -> bool:
        """Return whether the engine can run on this machine."""

    def execute(self, task: EngineTask, options: ExecuteOptions) -> TaskResult:
        """Run one task attempt and report its outcome."""
