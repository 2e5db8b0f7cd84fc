"""Shared test fixtures."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from bemadralphy.config import RetrySettings, Settings
from bemadralphy.engines.base import EngineTask, ExecuteOptions, TaskResult, TaskResultStatus
from bemadralphy.engines.registry import EngineRegistry
from bemadralphy.execution.retry import RetryPolicy
from bemadralphy.pipeline.collaborators import Collaborators
from bemadralphy.pipeline.runner import PhaseRunner
from bemadralphy.reporting import LOGGER_NAME
from bemadralphy.tasks.repository import TaskStore

IDEA_MD = """\
---
audience: indie
team_size: 3
---

# Idea

A small todo service with login.
"""

AUTH_STORY = """\
# Auth

### Create schema
Priority: 1
Set up the users table.

### Login endpoint
Priority: 0
Depends on: Create schema
Accept email and password.

### Logout endpoint
Priority: 2
"""

PARALLEL_STORY = """\
# Parallel

### Task one
Priority: 1

### Task two
Priority: 1

### Task three
Priority: 1
"""


class FakeEngine:
    """Scripted engine: per-title outcome queues, defaulting to success."""

    def __init__(
        self,
        name: str = "fake",
        *,
        outcomes: dict[str, list[str]] | None = None,
        native: bool = False,
        available: bool = True,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.has_native_swarm = native
        self.available = available
        self.delay = delay
        self.outcomes = {title: list(queue) for title, queue in (outcomes or {}).items()}
        self.calls: list[str] = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def check_available(self) -> bool:
        return self.available

    def execute(self, task: EngineTask, options: ExecuteOptions) -> TaskResult:
        with self._lock:
            self.calls.append(task.title)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            queue = self.outcomes.get(task.title)
            outcome = queue.pop(0) if queue else "success"
        try:
            if self.delay:
                time.sleep(self.delay)
            if outcome == "fatal":
                return TaskResult(
                    task_id=task.task_id,
                    status=TaskResultStatus.FAILED,
                    error="invalid api key",
                )
            if outcome == "interrupt":
                raise KeyboardInterrupt
            if outcome == "retryable":
                raise ConnectionError("connection reset by peer")
            if outcome == "skip":
                return TaskResult(task_id=task.task_id, status=TaskResultStatus.SKIPPED)
            return TaskResult(
                task_id=task.task_id,
                status=TaskResultStatus.SUCCESS,
                output=f"done {task.title}",
            )
        finally:
            with self._lock:
                self._in_flight -= 1


class RecordingCollaborator:
    """Planning generator, spec validator, and VCS tool that only record calls."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def generate(self, ctx: Any) -> None:
        self.calls.append("generate")

    def validate(self, ctx: Any) -> None:
        self.calls.append("validate")

    def ensure_repository(self, root: Path) -> bool:
        self.calls.append("ensure_repository")
        return False

    def create_pull_request(self, ctx: Any) -> str | None:
        self.calls.append("create_pull_request")
        return "https://example.test/pull/1"


def write_project(root: Path, *, stories: dict[str, str] | None = None) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "idea.md").write_text(IDEA_MD, "utf-8")
    stories_dir = root / "_bmad-output" / "stories"
    stories_dir.mkdir(parents=True, exist_ok=True)
    for story_id, content in (stories or {"auth": AUTH_STORY}).items():
        (stories_dir / f"{story_id}.md").write_text(content, "utf-8")
    return root


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True


@pytest.fixture()
def settings() -> Settings:
    return Settings(retry=RetrySettings(max_retries=2, base_delay_ms=0, max_delay_ms=0))


@pytest.fixture()
def collaborator() -> RecordingCollaborator:
    return RecordingCollaborator()


@pytest.fixture()
def make_engine() -> Callable[..., FakeEngine]:
    return FakeEngine


@pytest.fixture()
def make_project(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str = "project", *, stories: dict[str, str] | None = None) -> Path:
        return write_project(tmp_path / name, stories=stories)

    return _make


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    return write_project(tmp_path / "project")


@pytest.fixture()
def parallel_project(tmp_path: Path) -> Path:
    return write_project(tmp_path / "parallel", stories={"parallel": PARALLEL_STORY})


@pytest.fixture()
def task_store(tmp_path: Path):
    store = TaskStore(tmp_path / "tasks.db")
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@pytest.fixture()
def no_sleep_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay_ms=0, max_delay_ms=0, sleep=lambda _: None)


@pytest.fixture()
def make_runner(
    settings: Settings,
    collaborator: RecordingCollaborator,
    no_sleep_retry: RetryPolicy,
) -> Callable[..., PhaseRunner]:
    counter = itertools.count(1)

    def _make(project_root: Path, engine: FakeEngine, **kwargs: Any) -> PhaseRunner:
        registry = EngineRegistry()
        registry.register(engine)
        return PhaseRunner(
            project_root,
            settings=settings,
            engines=registry,
            collaborators=Collaborators(
                planning=collaborator,
                validator=collaborator,
                vcs=collaborator,
            ),
            retry=no_sleep_retry,
            run_id_factory=lambda: f"run-{next(counter)}",
            **kwargs,
        )

    return _make
