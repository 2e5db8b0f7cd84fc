"""Execute-phase worker pool: claim ready tasks and run them with bounded concurrency."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from bemadralphy.engines.base import (
    EngineAdapter,
    EngineTask,
    ExecuteOptions,
    TaskResult,
    TaskResultStatus,
)
from bemadralphy.errors import BudgetExceededError, TaskExecutionError
from bemadralphy.execution.budget import BudgetGuard, CostTracker
from bemadralphy.execution.retry import RetryPolicy
from bemadralphy.tasks.models import TaskView
from bemadralphy.tasks.repository import TaskStore

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict[str, Any]], None]


@dataclass(slots=True)
class ExecutionSummary:
    """Outcome counts for one execute-phase loop."""

    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    budget_exceeded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": list(self.completed),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "budget_exceeded": self.budget_exceeded,
        }


class TaskExecutionPool:
    """Dispatch ready tasks to an engine with at most ``max_parallel`` in flight.

    Ready tasks are re-read whenever a slot frees, so dependents of a task
    that just finished are picked up in the same run. Each task is offered
    at most once per loop.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        engine: EngineAdapter,
        options: ExecuteOptions,
        retry: RetryPolicy,
        max_parallel: int,
        assignee: str,
        budget: BudgetGuard | None = None,
        cost: CostTracker | None = None,
        per_task_usd: float = 0.0,
        on_event: EventCallback | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.options = options
        self.retry = retry
        self.max_parallel = max(1, max_parallel)
        self.assignee = assignee
        self.budget = budget
        self.cost = cost
        self.per_task_usd = per_task_usd
        self.on_event = on_event

    def run(self) -> ExecutionSummary:
        summary = ExecutionSummary()
        offered: set[str] = set()
        in_flight: dict[Future[TaskResult], TaskView] = {}
        budget_error: BudgetExceededError | None = None

        try:
            with ThreadPoolExecutor(
                max_workers=self.max_parallel,
                thread_name_prefix="bemad-task",
            ) as executor:
                while True:
                    if budget_error is None:
                        self._dispatch(executor, in_flight, offered)
                    if not in_flight:
                        break
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        task = in_flight[future]
                        self._settle(task, future, summary)
                        del in_flight[future]
                        if budget_error is None and task.task_id in summary.completed:
                            budget_error = self._check_budget(summary)
        finally:
            self._release_unsettled(in_flight.values())

        if budget_error is not None:
            summary.budget_exceeded = True
            raise budget_error
        return summary

    def _dispatch(
        self,
        executor: ThreadPoolExecutor,
        in_flight: dict[Future[TaskResult], TaskView],
        offered: set[str],
    ) -> None:
        free_slots = self.max_parallel - len(in_flight)
        if free_slots <= 0:
            return
        for task in self.store.get_ready():
            if free_slots <= 0:
                break
            if task.task_id in offered:
                continue
            claimed = self.store.claim(task.task_id, assignee=self.assignee)
            if claimed is None:
                continue
            offered.add(claimed.task_id)
            self._emit("task.start", {"task_id": claimed.task_id, "title": claimed.title})
            in_flight[executor.submit(self._attempt, claimed)] = claimed
            free_slots -= 1

    def _attempt(self, task: TaskView) -> TaskResult:
        engine_task = EngineTask(
            task_id=task.task_id,
            title=task.title,
            description=task.description,
            story_id=task.story_id,
        )

        def run_once() -> TaskResult:
            result = self.engine.execute(engine_task, self.options)
            if result.status is TaskResultStatus.FAILED:
                raise TaskExecutionError(
                    task.task_id,
                    result.error or f"{self.engine.name} reported failure for {task.task_id}",
                )
            return result

        try:
            return self.retry.run(run_once, label=f"task {task.task_id}")
        finally:
            self.options.locks.release_all(task.task_id)

    def _settle(
        self,
        task: TaskView,
        future: Future[TaskResult],
        summary: ExecutionSummary,
    ) -> None:
        try:
            result = future.result()
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            self.store.fail(task.task_id, error=message)
            summary.failed[task.task_id] = message
            logger.warning("Task %s failed: %s", task.task_id, message)
            self._emit("task.failed", {"task_id": task.task_id, "error": message})
            return

        if result.status is TaskResultStatus.SKIPPED:
            self.store.release(task.task_id, output=result.output or None)
            summary.skipped.append(task.task_id)
            self._emit("task.skipped", {"task_id": task.task_id})
            return

        self.store.close_task(task.task_id, output=result.output or None)
        summary.completed.append(task.task_id)
        if self.cost is not None:
            amount = result.cost_usd if result.cost_usd is not None else self.per_task_usd
            self.cost.add(amount, task_id=task.task_id)
        self._emit("task.done", {"task_id": task.task_id})

    def _release_unsettled(self, tasks: Iterable[TaskView]) -> None:
        """Hand claimed tasks back to the open pool when the loop is interrupted."""

        for task in list(tasks):
            logger.warning("Releasing interrupted task %s", task.task_id)
            self.store.release(task.task_id)

    def _check_budget(self, summary: ExecutionSummary) -> BudgetExceededError | None:
        if self.budget is None:
            return None
        try:
            self.budget.check_runtime(len(summary.completed))
        except BudgetExceededError as error:
            logger.warning("Budget exceeded; no further tasks will be dispatched: %s", error)
            self._emit("budget.exceeded", {"spent_usd": error.spent_usd})
            return error
        return None

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.on_event is not None:
            self.on_event(event, data)
