"""Context object threaded through phase bodies and hooks."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bemadralphy.config import Settings
from bemadralphy.engines.base import EngineAdapter
from bemadralphy.execution.budget import CostTracker
from bemadralphy.execution.policy import ExecutionPolicy
from bemadralphy.execution.pool import ExecutionSummary
from bemadralphy.execution.retry import RetryPolicy
from bemadralphy.pipeline.collaborators import Collaborators
from bemadralphy.pipeline.options import RunOptions
from bemadralphy.pipeline.stories import Story
from bemadralphy.tasks.locks import FileLockManager
from bemadralphy.tasks.repository import TaskStore


@dataclass(slots=True)
class PipelineServices:
    """Collaborators shared by every phase of one run."""

    settings: Settings
    task_store: TaskStore
    engines: Mapping[str, EngineAdapter]
    collaborators: Collaborators
    cost: CostTracker
    retry: RetryPolicy
    locks: FileLockManager = field(default_factory=FileLockManager)


@dataclass(slots=True)
class PipelineContext:
    """Mutable per-run context; hooks may read and update it."""

    run_id: str
    project_root: Path
    state_dir: Path
    options: RunOptions
    services: PipelineServices
    execution_policy: ExecutionPolicy
    intake: dict[str, Any] | None = None
    stories: list[Story] = field(default_factory=list)
    execution: ExecutionSummary | None = None
    data: dict[str, Any] = field(default_factory=dict)
