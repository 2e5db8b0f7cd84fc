"""Error taxonomy shared by the pipeline, scheduler, and engine layers."""

from __future__ import annotations


class BemadError(RuntimeError):
    """Base class for all pipeline errors."""


class ConfigurationError(BemadError):
    """Invalid options, phase bounds, or enum values."""


class PlanningError(BemadError):
    """Intake or planning artifacts are missing or unusable."""


class VerificationError(BemadError):
    """Spec validation failed during the verify phase."""


class TaskStoreError(BemadError):
    """Task persistence failure."""


class TaskNotFoundError(TaskStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class DuplicateTaskError(TaskStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already exists: {task_id}")
        self.task_id = task_id


class DependencyCycleError(TaskStoreError):
    """Adding the edge would make a task transitively depend on itself."""

    def __init__(self, task_id: str, depends_on_id: str, path: list[str]) -> None:
        super().__init__(
            f"Dependency {task_id} -> {depends_on_id} would create a cycle: "
            + " -> ".join(path),
        )
        self.task_id = task_id
        self.depends_on_id = depends_on_id
        self.path = path


class EngineError(BemadError):
    """Engine adapter is unknown, unavailable, or failed."""


class TaskExecutionError(EngineError):
    """One task attempt reported a failed result."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class BudgetExceededError(BemadError):
    """Projected or accumulated spend is over the configured budget."""

    def __init__(self, message: str, *, spent_usd: float, budget_usd: float) -> None:
        super().__init__(message)
        self.spent_usd = spent_usd
        self.budget_usd = budget_usd


class CompletionError(BemadError):
    """Completion provider failed or returned an unusable response."""


class CommandError(BemadError):
    """External command failed with a retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.exit_code = exit_code
        self.stderr = stderr


class FileLockConflictError(BemadError):
    """Path is already held by a different task."""


class FileLockMismatchError(BemadError):
    """Release attempted by a task that does not hold the path."""


class PhaseFailedError(BemadError):
    """A phase body or hook failed; the run is aborted at this phase."""

    def __init__(self, phase: str, cause: BaseException) -> None:
        super().__init__(f"Phase {phase} failed: {cause}")
        self.phase = phase
        self.cause = cause
