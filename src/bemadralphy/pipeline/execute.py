"""Execute phase: run ready tasks through the selected engine."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from bemadralphy.engines.base import EngineAdapter, ExecuteOptions
from bemadralphy.errors import EngineError
from bemadralphy.execution.budget import BudgetGuard, estimate_run_cost
from bemadralphy.execution.pool import TaskExecutionPool
from bemadralphy.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)


def resolve_engine(engines: Mapping[str, EngineAdapter], name: str) -> EngineAdapter:
    adapter = engines.get(name)
    if adapter is None:
        raise EngineError(f"Unknown engine: {name}. Available: {', '.join(sorted(engines))}")
    return adapter


def execute_phase(ctx: PipelineContext) -> PipelineContext:
    """Claim and run ready tasks; failed tasks fail the phase after the rest finish."""

    services = ctx.services
    options = ctx.options
    policy = ctx.execution_policy
    engine = resolve_engine(services.engines, options.engine)
    if not engine.check_available():
        raise EngineError(f"Engine {engine.name} is not available on this machine.")

    store = services.task_store
    assignee = f"{engine.name}:{ctx.run_id}"
    recovered = store.recover_stale(exclude_assignee=assignee)
    if recovered:
        ctx.data["recovered_tasks"] = recovered

    guard = BudgetGuard(options.budget_usd, services.settings.cost)
    estimate = estimate_run_cost(len(store.get_ready()), policy.max_parallel, services.settings.cost)
    guard.preflight(estimate)

    logger.info(
        "Executing with engine=%s swarm=%s max_parallel=%d (%s)",
        engine.name,
        policy.swarm_mode.value,
        policy.max_parallel,
        policy.capability.reason,
    )

    def on_event(event: str, data: dict[str, Any]) -> None:
        logger.info(
            "%s %s",
            event,
            data.get("task_id", ""),
            extra={"event": event, "run_id": ctx.run_id, "data": data},
        )

    pool = TaskExecutionPool(
        store=store,
        engine=engine,
        options=ExecuteOptions(
            cwd=ctx.project_root,
            model=options.model,
            timeout_seconds=options.task_timeout_seconds,
            locks=services.locks,
        ),
        retry=services.retry,
        max_parallel=policy.max_parallel,
        assignee=assignee,
        budget=guard,
        cost=services.cost,
        per_task_usd=services.settings.cost.per_task_usd,
        on_event=on_event,
    )
    summary = pool.run()
    ctx.execution = summary
    ctx.data["execution"] = summary.to_dict()
    ctx.data["estimate"] = estimate.to_dict()

    if summary.failed:
        failed_ids = ", ".join(sorted(summary.failed))
        raise EngineError(f"{len(summary.failed)} task(s) failed: {failed_ids}")
    return ctx
