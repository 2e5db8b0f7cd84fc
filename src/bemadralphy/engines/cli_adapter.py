"""Subprocess-based engine adapter for CLI coding agents."""

from __future__ import annotations

import logging
import shlex
from collections.abc import Sequence

from bemadralphy.engines.base import EngineTask, ExecuteOptions, TaskResult, TaskResultStatus
from bemadralphy.errors import CommandError, EngineError
from bemadralphy.process import command_exists, run_command

logger = logging.getLogger(__name__)


class CliEngineAdapter:
    """Execute a task by rendering an argv template and running it.

    Template tokens may contain ``{prompt}``, ``{model}``, and ``{task_id}``.
    Tokens that render to an empty string are dropped, which lets optional
    ``--model {model}`` pairs collapse when no model is configured.
    """

    def __init__(
        self,
        name: str,
        argv_template: Sequence[str],
        *,
        has_native_swarm: bool = False,
        model_flag: str | None = None,
    ) -> None:
        if not argv_template:
            raise EngineError(f"Engine {name} has an empty command template.")
        self.name = name
        self.argv_template = tuple(argv_template)
        self.has_native_swarm = has_native_swarm
        self.model_flag = model_flag

    @property
    def executable(self) -> str:
        return self.argv_template[0]

    def check_available(self) -> bool:
        return command_exists(self.executable)

    def build_argv(self, task: EngineTask, options: ExecuteOptions) -> list[str]:
        values = {"prompt": task.prompt(), "model": options.model or "", "task_id": task.task_id}
        try:
            argv = [token.format(**values) for token in self.argv_template]
        except KeyError as error:
            raise EngineError(
                f"Unsupported placeholder {error} in {self.name} command template.",
            ) from error
        if options.model and self.model_flag:
            argv[1:1] = [self.model_flag, options.model]
        return [token for token in argv if token]

    def execute(self, task: EngineTask, options: ExecuteOptions) -> TaskResult:
        argv = self.build_argv(task, options)
        if options.dry_run:
            logger.info("[dry-run] %s would run: %s", self.name, shlex.join(argv))
            return TaskResult(
                task_id=task.task_id,
                status=TaskResultStatus.SKIPPED,
                output=shlex.join(argv),
            )

        try:
            result = run_command(
                argv,
                cwd=options.cwd,
                timeout_seconds=options.timeout_seconds,
                check=False,
            )
        except CommandError as error:
            if error.transient:
                raise
            return TaskResult(
                task_id=task.task_id,
                status=TaskResultStatus.FAILED,
                error=str(error),
            )

        if result.ok:
            return TaskResult(
                task_id=task.task_id,
                status=TaskResultStatus.SUCCESS,
                output=result.stdout.strip(),
            )
        detail = (result.stderr or result.stdout).strip()
        return TaskResult(
            task_id=task.task_id,
            status=TaskResultStatus.FAILED,
            output=result.stdout.strip(),
            error=f"{self.name} exited with code {result.exit_code}"
            + (f": {detail}" if detail else ""),
        )
