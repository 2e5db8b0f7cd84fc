"""Controllers for pipeline CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bemadralphy.config import Settings, load_run_config
from bemadralphy.engines.registry import default_registry
from bemadralphy.pipeline.history import RunHistory, record_to_dict
from bemadralphy.pipeline.models import OutputFormat, PhaseName, parse_enum
from bemadralphy.pipeline.options import normalize_options
from bemadralphy.pipeline.runner import TASKS_DB_FILE, PhaseRunner, RunReport
from bemadralphy.pipeline.state import StateStore, state_to_dict
from bemadralphy.process import command_exists
from bemadralphy.reporting import configure_logging, render_json
from bemadralphy.tasks.models import TaskStatus
from bemadralphy.tasks.repository import TaskStore

RunnerFactory = Callable[[Path, Settings], PhaseRunner]

IDEA_TEMPLATE = """\
---
audience_profile: product-team
team_size: 2-10
delivery_velocity: 1-3 features/week
---

# Idea

Describe what you want to build.
"""

CONFIG_TEMPLATE = """\
mode: hybrid
engine: ralphy
execution_profile: balanced
max_parallel: 3
plugins: []
"""


@dataclass(slots=True)
class PipelineRunCommand:
    """CLI input for run/plan/execute/resume."""

    project_root: Path
    output: str = "text"
    mode: str | None = None
    engine: str | None = None
    model: str | None = None
    max_parallel: float | None = None
    execution_profile: str | None = None
    budget_usd: float | None = None
    swarm: str | None = None
    create_pr: bool | None = None
    dry_run: bool = False
    resume: bool = False
    from_phase: str | None = None
    to_phase: str | None = None
    plugins: tuple[str, ...] = field(default_factory=tuple)
    task_timeout_seconds: int | None = None


@dataclass(slots=True)
class ReplayCommand:
    project_root: Path
    run_id: str
    from_phase: str | None = None
    output: str = "text"


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for read-only project commands (status, doctor, init)."""

    project_root: Path
    output: str = "text"


@dataclass(slots=True)
class HistoryCommand:
    project_root: Path
    limit: int = 20
    output: str = "text"


@dataclass(slots=True)
class TaskListCommand:
    project_root: Path
    status: str | None = None
    output: str = "text"


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for task show/retry."""

    project_root: Path
    task_id: str
    output: str = "text"


@dataclass(slots=True)
class DoctorResult:
    """Doctor report to render in CLI."""

    lines: list[str]
    success: bool


class PipelineCliController:
    """Coordinates pipeline runs, history, and task inspection CLI operations."""

    def __init__(
        self,
        *,
        settings_factory: Callable[[], Settings] = Settings.from_env,
        runner_factory: RunnerFactory | None = None,
    ) -> None:
        self.settings_factory = settings_factory
        self.runner_factory = runner_factory or _default_runner

    def run(self, command: PipelineRunCommand) -> list[str]:
        output = _output(command.output)
        configure_logging(output)
        settings = self._settings()
        cli_values: dict[str, Any] = {
            "mode": command.mode,
            "engine": command.engine,
            "model": command.model,
            "max_parallel": command.max_parallel,
            "execution_profile": command.execution_profile,
            "budget_usd": command.budget_usd,
            "swarm": command.swarm,
            "create_pr": command.create_pr,
            "dry_run": command.dry_run,
            "resume": command.resume,
            "from_phase": command.from_phase,
            "to_phase": command.to_phase,
            "output": output,
            "plugins": command.plugins or None,
            "task_timeout_seconds": command.task_timeout_seconds,
        }
        options = normalize_options(cli_values, load_run_config(command.project_root), settings)
        report = self.runner_factory(command.project_root, settings).run(options)
        return _render_report(report, output)

    def replay(self, command: ReplayCommand) -> list[str]:
        output = _output(command.output)
        configure_logging(output)
        from_phase = (
            parse_enum(PhaseName, command.from_phase, option="from_phase")
            if command.from_phase
            else None
        )
        runner = self.runner_factory(command.project_root, self._settings())
        report = runner.replay(command.run_id, from_phase=from_phase)
        return _render_report(report, output)

    def status(self, command: ProjectCommand) -> list[str]:
        output = _output(command.output)
        settings = self._settings()
        state_dir = settings.state_dir(command.project_root)
        state = StateStore(state_dir).load()
        counts = _task_counts(state_dir / TASKS_DB_FILE, settings)
        if output is OutputFormat.JSON:
            return [
                render_json(
                    {"state": state_to_dict(state) if state else None, "tasks": counts},
                ),
            ]
        if state is None:
            return ["No pipeline state recorded yet."]
        return [
            f"Run: {state.run_id}",
            f"Status: {state.status.value}",
            f"Phase: {state.phase.value}",
            f"Last completed phase: {_value(state.last_completed_phase)}",
            f"Failed phase: {_value(state.failed_phase)}",
            f"Resume from: {_value(state.resume_from_phase)}",
            f"Engine: {state.engine or '-'} swarm={_value(state.swarm)} "
            f"max_parallel={state.max_parallel or '-'}",
            f"Tasks completed: {state.tasks_completed} cost_usd={state.cost_usd:.4f}",
            "Task counts: " + " ".join(f"{name}={count}" for name, count in counts.items()),
            f"Error: {state.error or '-'}",
        ]

    def history(self, command: HistoryCommand) -> list[str]:
        output = _output(command.output)
        records = RunHistory(self._settings().state_dir(command.project_root)).read()
        records = records[-command.limit :] if command.limit > 0 else records
        if output is OutputFormat.JSON:
            return [render_json([record_to_dict(record) for record in records])]
        lines = [f"Runs: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.started_at.isoformat()} run_id={record.run_id} "
                f"status={record.status.value} phase={_value(record.phase)} "
                f"resume_from={_value(record.resume_from_phase)} engine={record.engine or '-'}"
                + (f" error={record.error}" if record.error else ""),
            )
        return lines

    def doctor(self, command: ProjectCommand) -> DoctorResult:
        output = _output(command.output)
        settings = self._settings()
        registry = default_registry(settings)
        engines = {name: registry.get(name).check_available() for name in registry.names()}
        tools = {
            "git": command_exists("git"),
            "validator": bool(settings.collaborators.validate_command)
            and command_exists(settings.collaborators.validate_command[0]),
            "pr": bool(settings.collaborators.pr_command)
            and command_exists(settings.collaborators.pr_command[0]),
        }
        default_engine = settings.pipeline.default_engine
        success = engines.get(default_engine, False)
        if output is OutputFormat.JSON:
            payload = {
                "engines": engines,
                "tools": tools,
                "default_engine": default_engine,
                "ok": success,
            }
            return DoctorResult(lines=[render_json(payload)], success=success)
        lines = [f"Project: {command.project_root}", "Engines:"]
        lines.extend(
            f"  {name}: {'available' if available else 'missing'}"
            for name, available in engines.items()
        )
        lines.append("Tools:")
        lines.extend(
            f"  {name}: {'available' if available else 'missing'}"
            for name, available in tools.items()
        )
        lines.append(
            f"Default engine {default_engine}: {'OK' if success else 'NOT AVAILABLE'}",
        )
        return DoctorResult(lines=lines, success=success)

    def init(self, command: ProjectCommand) -> list[str]:
        settings = self._settings()
        root = command.project_root
        root.mkdir(parents=True, exist_ok=True)
        created: list[str] = []
        for name, template in (("idea.md", IDEA_TEMPLATE), ("bemad.config.yaml", CONFIG_TEMPLATE)):
            path = root / name
            if path.exists():
                continue
            path.write_text(template, "utf-8")
            created.append(name)
        with _project_store(root, settings):
            pass
        if _output(command.output) is OutputFormat.JSON:
            return [render_json({"project_root": str(root), "created": created})]
        lines = [f"Initialized {settings.state_dir(root)}"]
        lines.extend(f"  created {name}" for name in created)
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = self._settings()
        status = TaskStatus(command.status) if command.status else None
        with _project_store(command.project_root, settings) as store:
            tasks = store.get_by_status(status) if status else store.get_all()
        if _output(command.output) is OutputFormat.JSON:
            return [render_json([task.to_dict() for task in tasks])]
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} priority={task.priority} "
                f"story={task.story_id or '-'} title={task.title}",
            )
        return lines

    def show_task(self, command: TaskMutateCommand) -> list[str]:
        settings = self._settings()
        with _project_store(command.project_root, settings) as store:
            task = store.require(command.task_id)
        if _output(command.output) is OutputFormat.JSON:
            return [render_json(task.to_dict())]
        return [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Story: {task.story_id or '-'}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Depends on: {', '.join(task.dependencies) or '-'}",
            f"Assignee: {task.assignee or '-'}",
            f"Error: {task.error or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Closed: {task.closed_at.isoformat() if task.closed_at else '-'}",
        ]

    def retry_task(self, command: TaskMutateCommand) -> list[str]:
        settings = self._settings()
        with _project_store(command.project_root, settings) as store:
            task = store.require(command.task_id)
            if task.status not in {TaskStatus.FAILED, TaskStatus.BLOCKED}:
                return [f"Task {task.task_id} is {task.status.value}; nothing to retry."]
            task = store.retry(command.task_id)
        return [f"Task {task.task_id} reset to {task.status.value}."]

    def _settings(self) -> Settings:
        settings = self.settings_factory()
        settings.validate()
        return settings


def _default_runner(project_root: Path, settings: Settings) -> PhaseRunner:
    return PhaseRunner(project_root, settings=settings)


def _render_report(report: RunReport, output: OutputFormat) -> list[str]:
    if output is OutputFormat.JSON:
        return [render_json(report.to_dict())]
    if report.dry_run:
        lines = [
            "Dry run: " + " -> ".join(phase.value for phase in report.plan.phases),
            f"Execution: swarm={report.policy.swarm_mode.value} "
            f"max_parallel={report.policy.max_parallel} ({report.policy.capability.reason})",
        ]
        if report.estimate is not None:
            lines.append(
                f"Estimate: ready={report.estimate.ready_count} "
                f"cost=${report.estimate.min_usd:.2f}-${report.estimate.max_usd:.2f}",
            )
        return lines
    return [
        f"Run {report.run_id}: {report.status.value if report.status else '-'}",
        "Phases: " + ", ".join(phase.value for phase in report.phases_completed),
    ]


def _task_counts(db_path: Path, settings: Settings) -> dict[str, int]:
    if not db_path.exists():
        return {}
    with _task_store(db_path, settings) as store:
        return store.status_counts()


def _project_store(project_root: Path, settings: Settings) -> AbstractContextManager[TaskStore]:
    return _task_store(settings.state_dir(project_root) / TASKS_DB_FILE, settings)


@contextmanager
def _task_store(db_path: Path, settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(db_path, busy_timeout_ms=settings.pipeline.sqlite_busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


def _output(value: str | OutputFormat) -> OutputFormat:
    return parse_enum(OutputFormat, value, option="output")


def _value(value: Any) -> str:
    return value.value if value is not None else "-"

