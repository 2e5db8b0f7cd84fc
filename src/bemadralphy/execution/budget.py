"""Heuristic cost estimation, budget enforcement, and spend tracking."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from bemadralphy.config import CostSettings
from bemadralphy.errors import BudgetExceededError
from bemadralphy.storage.common import utc_now

logger = logging.getLogger(__name__)

MIN_FACTOR = 0.65
MAX_FACTOR = 1.45
MAX_CONCURRENCY_FACTOR = 8


@dataclass(slots=True, frozen=True)
class CostEstimate:
    ready_count: int
    max_parallel: int
    estimated_usd: float
    min_usd: float
    max_usd: float

    def to_dict(self) -> dict[str, object]:
        return {
            "ready_count": self.ready_count,
            "max_parallel": self.max_parallel,
            "estimated_usd": round(self.estimated_usd, 4),
            "min_usd": round(self.min_usd, 4),
            "max_usd": round(self.max_usd, 4),
        }


def estimate_run_cost(ready_count: int, max_parallel: int, pricing: CostSettings) -> CostEstimate:
    """Estimate spend for ``ready_count`` tasks at the given concurrency."""

    concurrency = min(max(max_parallel, 1), MAX_CONCURRENCY_FACTOR)
    per_task = pricing.per_task_usd + concurrency * pricing.concurrency_step_usd
    estimated = pricing.base_usd + ready_count * per_task
    return CostEstimate(
        ready_count=ready_count,
        max_parallel=max_parallel,
        estimated_usd=estimated,
        min_usd=estimated * MIN_FACTOR,
        max_usd=estimated * MAX_FACTOR,
    )


class BudgetGuard:
    """Reject runs whose projected or accumulated spend exceeds the budget."""

    def __init__(self, budget_usd: float | None, pricing: CostSettings) -> None:
        self.budget_usd = budget_usd
        self.pricing = pricing

    @property
    def enabled(self) -> bool:
        return self.budget_usd is not None

    def preflight(self, estimate: CostEstimate) -> None:
        if self.budget_usd is None:
            return
        if estimate.min_usd > self.budget_usd:
            raise BudgetExceededError(
                f"Estimated minimum cost ${estimate.min_usd:.2f} exceeds budget "
                f"${self.budget_usd:.2f} for {estimate.ready_count} ready task(s).",
                spent_usd=estimate.min_usd,
                budget_usd=self.budget_usd,
            )

    def check_runtime(self, completed: int) -> None:
        if self.budget_usd is None:
            return
        spent = completed * self.pricing.per_task_usd
        if spent > self.budget_usd:
            raise BudgetExceededError(
                f"Runtime cost ${spent:.2f} after {completed} task(s) exceeds budget "
                f"${self.budget_usd:.2f}.",
                spent_usd=spent,
                budget_usd=self.budget_usd,
            )


@dataclass(slots=True, frozen=True)
class CostEntry:
    amount_usd: float
    label: str
    task_id: str | None = None


class CostTracker:
    """Accumulate spend in memory and append snapshots to ``cost.log``."""

    def __init__(self, log_path: Path | None = None) -> None:
        self.log_path = log_path
        self._entries: list[CostEntry] = []
        self._lock = threading.Lock()

    def add(self, amount_usd: float, *, label: str = "task", task_id: str | None = None) -> float:
        if amount_usd < 0:
            raise ValueError(f"Cost must be >= 0: {amount_usd}")
        with self._lock:
            self._entries.append(CostEntry(amount_usd=amount_usd, label=label, task_id=task_id))
            return self._total_locked()

    def total_usd(self) -> float:
        with self._lock:
            return self._total_locked()

    def entries(self) -> list[CostEntry]:
        with self._lock:
            return list(self._entries)

    def persist(self, *, run_id: str) -> None:
        """Append one JSON line summarizing the tracked spend."""

        if self.log_path is None:
            return
        with self._lock:
            payload = {
                "ts": utc_now().isoformat(),
                "run_id": run_id,
                "total_usd": round(self._total_locked(), 6),
                "entries": len(self._entries),
            }
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n")
        logger.debug("Persisted cost snapshot for run %s: $%.4f", run_id, payload["total_usd"])

    def _total_locked(self) -> float:
        return sum(entry.amount_usd for entry in self._entries)
