"""Resumable phase runner: resolves the phase window, runs hooks and bodies, checkpoints."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from bemadralphy.config import Settings
from bemadralphy.engines.registry import EngineRegistry, default_registry
from bemadralphy.errors import ConfigurationError, PhaseFailedError
from bemadralphy.execution.budget import BudgetGuard, CostEstimate, CostTracker, estimate_run_cost
from bemadralphy.execution.policy import ExecutionPolicy, resolve_execution_policy
from bemadralphy.execution.retry import RetryPolicy
from bemadralphy.pipeline.collaborators import Collaborators, default_collaborators
from bemadralphy.pipeline.context import PipelineContext, PipelineServices
from bemadralphy.pipeline.execute import execute_phase
from bemadralphy.pipeline.history import RunHistory
from bemadralphy.pipeline.models import (
    PHASE_ORDER,
    PhaseName,
    PipelineState,
    PipelineStatus,
    RunHistoryRecord,
    next_phase,
    phase_index,
    phase_window,
)
from bemadralphy.pipeline.options import RunOptions
from bemadralphy.pipeline.state import StateStore
from bemadralphy.pipeline.steps import (
    intake_phase,
    planning_phase,
    post_phase,
    scaffold_phase,
    steering_phase,
    sync_phase,
    verify_phase,
)
from bemadralphy.plugins import PluginRuntime, load_plugins
from bemadralphy.storage.common import utc_now
from bemadralphy.tasks.models import TaskStatus
from bemadralphy.tasks.repository import TaskStore

logger = logging.getLogger(__name__)

PhaseBody = Callable[[PipelineContext], PipelineContext]
ProgressCallback = Callable[[str, dict[str, Any]], None]

TASKS_DB_FILE = "tasks.db"
COST_LOG_FILE = "cost.log"

DEFAULT_PHASE_BODIES: Mapping[PhaseName, PhaseBody] = MappingProxyType(
    {
        PhaseName.INTAKE: intake_phase,
        PhaseName.PLANNING: planning_phase,
        PhaseName.STEERING: steering_phase,
        PhaseName.SCAFFOLD: scaffold_phase,
        PhaseName.SYNC: sync_phase,
        PhaseName.EXECUTE: execute_phase,
        PhaseName.VERIFY: verify_phase,
        PhaseName.POST: post_phase,
    },
)


@dataclass(slots=True, frozen=True)
class PhasePlan:
    """Inclusive phase window chosen for one run attempt."""

    start: PhaseName
    end: PhaseName
    phases: tuple[PhaseName, ...]
    checkpoint: PipelineState | None = None


@dataclass(slots=True)
class RunReport:
    """What a run did, or for a dry run, what it would do."""

    run_id: str | None
    status: PipelineStatus | None
    plan: PhasePlan
    options: RunOptions
    policy: ExecutionPolicy
    estimate: CostEstimate | None = None
    phases_completed: list[PhaseName] = field(default_factory=list)
    dry_run: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value if self.status else None,
            "dry_run": self.dry_run,
            "start": self.plan.start.value,
            "end": self.plan.end.value,
            "phases": [phase.value for phase in self.plan.phases],
            "phases_completed": [phase.value for phase in self.phases_completed],
            "execution": self.policy.to_dict(),
            "estimate": self.estimate.to_dict() if self.estimate else None,
            "options": self.options.to_snapshot(),
            "data": self.data,
        }


class PhaseRunner:
    """Run the delivery phases in order with checkpoints, hooks, and history."""

    def __init__(  # noqa: PLR0913
        self,
        project_root: Path,
        *,
        settings: Settings | None = None,
        engines: EngineRegistry | None = None,
        collaborators: Collaborators | None = None,
        phase_bodies: Mapping[PhaseName, PhaseBody] | None = None,
        retry: RetryPolicy | None = None,
        on_progress: ProgressCallback | None = None,
        run_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.project_root = project_root
        self.settings = settings or Settings.from_env()
        self.state_dir = self.settings.state_dir(project_root)
        self.state_store = StateStore(self.state_dir)
        self.history = RunHistory(self.state_dir)
        self.engines = engines or default_registry(self.settings)
        self.collaborators = collaborators or default_collaborators(self.settings)
        self.phase_bodies = dict(DEFAULT_PHASE_BODIES)
        if phase_bodies:
            self.phase_bodies.update(phase_bodies)
        self.retry = retry or RetryPolicy.from_settings(self.settings.retry)
        self.on_progress = on_progress
        self.run_id_factory = run_id_factory or (lambda: uuid4().hex[:12])

    @property
    def tasks_db_path(self) -> Path:
        return self.state_dir / TASKS_DB_FILE

    def open_task_store(self) -> TaskStore:
        store = TaskStore(
            self.tasks_db_path,
            busy_timeout_ms=self.settings.pipeline.sqlite_busy_timeout_ms,
        )
        store.init_schema()
        return store

    def resolve(self, options: RunOptions) -> PhasePlan:
        """Pick the start and end phase; never writes anything."""

        checkpoint = self.state_store.load() if options.resume else None
        start = resolve_start_phase(options, checkpoint)
        end = options.to_phase or PHASE_ORDER[-1]
        if phase_index(end) < phase_index(start):
            raise ConfigurationError(
                f"to_phase {end.value} precedes the resolved start phase {start.value}.",
            )
        return PhasePlan(
            start=start,
            end=end,
            phases=phase_window(start, end),
            checkpoint=checkpoint,
        )

    def run(self, options: RunOptions) -> RunReport:
        plan = self.resolve(options)
        runtime = load_plugins(options.plugins, self.engines)
        policy = resolve_execution_policy(
            options.engine,
            options.execution_profile,
            capabilities=runtime.capabilities(),
            swarm_override=options.swarm,
            requested_parallel=options.max_parallel,
        )

        estimate: CostEstimate | None = None
        if options.dry_run or options.budget_usd is not None:
            estimate = estimate_run_cost(
                self._peek_ready_count(),
                policy.max_parallel,
                self.settings.cost,
            )
            BudgetGuard(options.budget_usd, self.settings.cost).preflight(estimate)

        if options.dry_run:
            self._emit("run.preview", None, phases=[phase.value for phase in plan.phases])
            return RunReport(
                run_id=None,
                status=None,
                plan=plan,
                options=options,
                policy=policy,
                estimate=estimate,
                dry_run=True,
            )

        store = self.open_task_store()
        try:
            return self._run_phases(
                options=options,
                plan=plan,
                runtime=runtime,
                policy=policy,
                store=store,
                estimate=estimate,
            )
        finally:
            store.close()

    def replay(self, run_id: str, *, from_phase: PhaseName | None = None) -> RunReport:
        """Start a fresh run from a recorded option snapshot, resuming at its phase."""

        record = self.history.find(run_id)
        if record is None:
            raise ConfigurationError(f"Run not found in history: {run_id}")
        options = RunOptions.from_snapshot(record.options, self.settings)
        options = options.with_overrides(
            resume=True,
            from_phase=from_phase or record.resume_from_phase or record.phase,
        )
        logger.info("Replaying run %s from phase %s", run_id, options.from_phase)
        return self.run(options)

    def _run_phases(  # noqa: PLR0913
        self,
        *,
        options: RunOptions,
        plan: PhasePlan,
        runtime: PluginRuntime,
        policy: ExecutionPolicy,
        store: TaskStore,
        estimate: CostEstimate | None,
    ) -> RunReport:
        run_id = self.run_id_factory()
        started_at = utc_now()
        services = PipelineServices(
            settings=self.settings,
            task_store=store,
            engines=runtime.engines,
            collaborators=self.collaborators,
            cost=CostTracker(self.state_dir / COST_LOG_FILE),
            retry=self.retry,
        )
        ctx = PipelineContext(
            run_id=run_id,
            project_root=self.project_root,
            state_dir=self.state_dir,
            options=options,
            services=services,
            execution_policy=policy,
        )
        state = PipelineState(
            phase=plan.start,
            status=PipelineStatus.RUNNING,
            run_id=run_id,
            mode=options.mode,
            started_at=started_at,
            updated_at=started_at,
            last_completed_phase=plan.checkpoint.last_completed_phase if plan.checkpoint else None,
            resume_from_phase=plan.start,
            engine=options.engine,
            execution_profile=policy.profile,
            swarm=policy.swarm_mode,
            max_parallel=policy.max_parallel,
        )
        self.history.append(
            self._record(
                state,
                options,
                status=PipelineStatus.RUNNING,
                phase=plan.start,
                resume_from_phase=plan.start,
            ),
        )
        self.state_store.save(state)
        self._emit(
            "run.start",
            run_id,
            start=plan.start.value,
            end=plan.end.value,
            swarm=policy.swarm_mode.value,
            max_parallel=policy.max_parallel,
        )

        completed: list[PhaseName] = []
        for phase in plan.phases:
            state.phase = phase
            self._emit("phase.start", run_id, phase=phase.value)
            try:
                ctx = runtime.hooks.run_before(phase, ctx)
                ctx = self.phase_bodies[phase](ctx)
                ctx = runtime.hooks.run_after(phase, ctx)
            except BaseException as error:
                self._record_failure(state, options, ctx, phase=phase, error=error)
                if not isinstance(error, Exception):
                    raise
                raise PhaseFailedError(phase.value, error) from error

            completed.append(phase)
            state.status = PipelineStatus.RUNNING
            state.last_completed_phase = phase
            state.resume_from_phase = next_phase(phase)
            state.failed_phase = None
            state.error = None
            self._refresh_counters(state, ctx)
            self.state_store.save(state)
            self._emit("phase.done", run_id, phase=phase.value)

        state.status = PipelineStatus.COMPLETED
        self._refresh_counters(state, ctx)
        self.state_store.save(state)
        self.history.append(
            self._record(
                state,
                options,
                status=PipelineStatus.COMPLETED,
                phase=plan.end,
                resume_from_phase=next_phase(plan.end),
                finished=True,
            ),
        )
        self._emit("run.done", run_id, phases=len(completed))
        return RunReport(
            run_id=run_id,
            status=PipelineStatus.COMPLETED,
            plan=plan,
            options=options,
            policy=policy,
            estimate=estimate,
            phases_completed=completed,
            data=ctx.data,
        )

    def _record_failure(  # noqa: PLR0913
        self,
        state: PipelineState,
        options: RunOptions,
        ctx: PipelineContext,
        *,
        phase: PhaseName,
        error: BaseException,
    ) -> None:
        message = str(error) or type(error).__name__
        state.status = PipelineStatus.FAILED
        state.failed_phase = phase
        state.resume_from_phase = phase
        state.error = message
        self._refresh_counters(state, ctx)
        self.state_store.save(state)
        self.state_store.record_failure(run_id=state.run_id, phase=phase, error=error)
        self.history.append(
            self._record(
                state,
                options,
                status=PipelineStatus.FAILED,
                phase=phase,
                resume_from_phase=phase,
                error=message,
                finished=True,
            ),
        )
        logger.error(
            "Phase %s failed: %s",
            phase.value,
            message,
            extra={"event": "phase.failed", "run_id": state.run_id, "data": {"phase": phase.value}},
        )
        if self.on_progress is not None:
            self.on_progress("phase.failed", {"phase": phase.value, "error": message})

    def _refresh_counters(self, state: PipelineState, ctx: PipelineContext) -> None:
        state.updated_at = utc_now()
        state.tasks_completed = len(ctx.services.task_store.get_by_status(TaskStatus.DONE))
        state.cost_usd = ctx.services.cost.total_usd()

    def _record(  # noqa: PLR0913
        self,
        state: PipelineState,
        options: RunOptions,
        *,
        status: PipelineStatus,
        phase: PhaseName,
        resume_from_phase: PhaseName | None,
        error: str | None = None,
        finished: bool = False,
    ) -> RunHistoryRecord:
        return RunHistoryRecord(
            run_id=state.run_id,
            started_at=state.started_at,
            finished_at=utc_now() if finished else None,
            status=status,
            mode=options.mode,
            engine=options.engine,
            output=options.output,
            phase=phase,
            resume_from_phase=resume_from_phase,
            options=options.to_snapshot(),
            error=error,
        )

    def _peek_ready_count(self) -> int:
        if not self.tasks_db_path.exists():
            return 0
        store = self.open_task_store()
        try:
            return len(store.get_ready())
        finally:
            store.close()

    def _emit(self, event: str, run_id: str | None, **data: Any) -> None:
        logger.info(
            "%s %s",
            event,
            " ".join(f"{key}={value}" for key, value in data.items()),
            extra={"event": event, "run_id": run_id, "data": data},
        )
        if self.on_progress is not None:
            self.on_progress(event, {"run_id": run_id, **data})


def resolve_start_phase(options: RunOptions, checkpoint: PipelineState | None) -> PhaseName:
    """Explicit from_phase, then the failed phase, then the recorded resume point."""

    if options.from_phase is not None:
        return options.from_phase
    if options.resume and checkpoint is not None:
        if checkpoint.failed_phase is not None:
            return checkpoint.failed_phase
        if checkpoint.resume_from_phase is not None:
            return checkpoint.resume_from_phase
        if checkpoint.last_completed_phase is not None:
            following = next_phase(checkpoint.last_completed_phase)
            if following is not None:
                return following
    return PHASE_ORDER[0]
