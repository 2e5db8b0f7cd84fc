"""CLI entrypoint for bemadralphy."""

from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from bemadralphy import __version__
from bemadralphy.controllers import (
    HistoryCommand,
    PipelineCliController,
    PipelineRunCommand,
    ProjectCommand,
    ReplayCommand,
    TaskListCommand,
    TaskMutateCommand,
)
from bemadralphy.errors import BemadError
from bemadralphy.pipeline.models import (
    PHASE_ORDER,
    ExecutionProfile,
    OutputFormat,
    PhaseName,
    PipelineMode,
    SwarmMode,
)
from bemadralphy.tasks.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")

_PHASE_CHOICE = click.Choice([phase.value for phase in PHASE_ORDER])


def _project_options(func: F) -> F:
    func = click.option(
        "--output",
        type=click.Choice([item.value for item in OutputFormat]),
        default=OutputFormat.TEXT.value,
        show_default=True,
        help="Output format.",
    )(func)
    return click.option(
        "--project-root",
        type=click.Path(path_type=Path, file_okay=False),
        default=Path(),
        show_default=True,
        help="Project directory.",
    )(func)


def _pipeline_options(func: F) -> F:
    options = [
        click.option(
            "--mode",
            type=click.Choice([item.value for item in PipelineMode]),
            default=None,
            help="Autonomy level.",
        ),
        click.option("--engine", default=None, help="Engine adapter name, for example claude."),
        click.option("--model", default=None, help="Model passed to the engine."),
        click.option(
            "--max-parallel",
            type=float,
            default=None,
            help="Requested task concurrency; bounded by the execution profile.",
        ),
        click.option(
            "--execution-profile",
            type=click.Choice([item.value for item in ExecutionProfile]),
            default=None,
            help="Concurrency posture.",
        ),
        click.option("--budget", "budget_usd", type=float, default=None, help="Budget in USD."),
        click.option(
            "--swarm",
            type=click.Choice([item.value for item in SwarmMode]),
            default=None,
            help="Override swarm mode.",
        ),
        click.option("--create-pr/--no-create-pr", default=None, help="Open a PR in post."),
        click.option("--dry-run", is_flag=True, help="Preview phases and cost without running."),
        click.option(
            "--plugin",
            "plugins",
            multiple=True,
            help="Plugin name or module:attribute. Can be repeated.",
        ),
        click.option(
            "--timeout",
            "task_timeout_seconds",
            type=click.IntRange(min=1),
            default=None,
            help="Per-task engine timeout in seconds.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return _project_options(func)


@click.group()
@click.version_option(version=__version__, prog_name="bemadralphy")
def bemadralphy() -> None:
    """Resumable delivery pipeline for CLI coding agents."""


@bemadralphy.command("run")
@_pipeline_options
@click.option("--resume", is_flag=True, help="Resume from the last checkpoint.")
@click.option("--from", "from_phase", type=_PHASE_CHOICE, default=None, help="First phase.")
@click.option("--to", "to_phase", type=_PHASE_CHOICE, default=None, help="Last phase.")
def run(**kwargs: Any) -> None:
    """Run the pipeline from intake to post."""

    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.run(PipelineRunCommand(**kwargs))))


@bemadralphy.command("plan")
@_pipeline_options
def plan(**kwargs: Any) -> None:
    """Run intake, planning, and steering only."""

    command = PipelineRunCommand(
        **kwargs,
        from_phase=PhaseName.INTAKE.value,
        to_phase=PhaseName.STEERING.value,
    )
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.run(command)))


@bemadralphy.command("execute")
@_pipeline_options
def execute(**kwargs: Any) -> None:
    """Sync stories into tasks and execute ready tasks."""

    command = PipelineRunCommand(
        **kwargs,
        from_phase=PhaseName.SYNC.value,
        to_phase=PhaseName.EXECUTE.value,
    )
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.run(command)))


@bemadralphy.command("resume")
@_pipeline_options
@click.option("--to", "to_phase", type=_PHASE_CHOICE, default=None, help="Last phase.")
def resume(**kwargs: Any) -> None:
    """Resume from the failed phase or the next phase after the last checkpoint."""

    command = PipelineRunCommand(**kwargs, resume=True)
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.run(command)))


@bemadralphy.command("replay")
@click.argument("run_id")
@click.option("--from", "from_phase", type=_PHASE_CHOICE, default=None, help="First phase.")
@_project_options
def replay(run_id: str, from_phase: str | None, project_root: Path, output: str) -> None:
    """Start a new run with the options recorded for RUN_ID."""

    command = ReplayCommand(
        project_root=project_root,
        run_id=run_id,
        from_phase=from_phase,
        output=output,
    )
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.replay(command)))


@bemadralphy.command("status")
@_project_options
def status(project_root: Path, output: str) -> None:
    """Show the current checkpoint and task counts."""

    command = ProjectCommand(project_root=project_root, output=output)
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.status(command)))


@bemadralphy.command("history")
@_project_options
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=20,
    show_default=True,
    help="How many latest history rows to display; 0 shows all.",
)
def history(project_root: Path, output: str, limit: int) -> None:
    """Show the run history ledger."""

    command = HistoryCommand(project_root=project_root, limit=limit, output=output)
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.history(command)))


@bemadralphy.command("doctor")
@_project_options
def doctor(project_root: Path, output: str) -> None:
    """Check engine and tool availability."""

    command = ProjectCommand(project_root=project_root, output=output)
    result = _guard(lambda: PIPELINE_CONTROLLER.doctor(command))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Default engine is not available.")


@bemadralphy.command("init")
@_project_options
def init(project_root: Path, output: str) -> None:
    """Create idea.md, a project config, and the task database."""

    command = ProjectCommand(project_root=project_root, output=output)
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.init(command)))


@bemadralphy.group()
def tasks() -> None:
    """Task store commands."""


@tasks.command("list")
@_project_options
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Filter by status.",
)
def tasks_list(project_root: Path, output: str, status: str | None) -> None:
    """List tasks in scheduling order."""

    command = TaskListCommand(project_root=project_root, status=status, output=output)
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.list_tasks(command)))


@tasks.command("show")
@click.argument("task_id")
@_project_options
def tasks_show(task_id: str, project_root: Path, output: str) -> None:
    """Show one task."""

    command = TaskMutateCommand(project_root=project_root, task_id=task_id, output=output)
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.show_task(command)))


@tasks.command("retry")
@click.argument("task_id")
@_project_options
def tasks_retry(task_id: str, project_root: Path, output: str) -> None:
    """Reset a failed task to open."""

    command = TaskMutateCommand(project_root=project_root, task_id=task_id, output=output)
    _emit_lines(_guard(lambda: PIPELINE_CONTROLLER.retry_task(command)))


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except BemadError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    bemadralphy()
