"""Checkpoint persistence: the single live pipeline state and the failure log."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from bemadralphy.errors import ConfigurationError
from bemadralphy.pipeline.models import (
    ExecutionProfile,
    PhaseName,
    PipelineMode,
    PipelineState,
    PipelineStatus,
    SwarmMode,
)
from bemadralphy.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.yaml"
FAILURES_FILE_NAME = "failures.log"


class StateStore:
    """Own ``state.yaml``; every save fully replaces the previous checkpoint."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.path = state_dir / STATE_FILE_NAME
        self.failures_path = state_dir / FAILURES_FILE_NAME

    def load(self) -> PipelineState | None:
        if not self.path.exists():
            return None
        raw = self.path.read_text("utf-8")
        try:
            payload = yaml.safe_load(raw)
        except yaml.YAMLError as error:
            raise ConfigurationError(f"Corrupt checkpoint {self.path}: {error}") from error
        if not payload:
            return None
        if not isinstance(payload, dict):
            raise ConfigurationError(f"Checkpoint {self.path} must contain a mapping.")
        try:
            return state_from_dict(payload)
        except (KeyError, ValueError) as error:
            raise ConfigurationError(f"Invalid checkpoint {self.path}: {error}") from error

    def save(self, state: PipelineState) -> None:
        """Write atomically via a temp file and ``os.replace``."""

        self.state_dir.mkdir(parents=True, exist_ok=True)
        rendered = yaml.safe_dump(state_to_dict(state), sort_keys=False, allow_unicode=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".yaml", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def record_failure(self, *, run_id: str, phase: PhaseName, error: BaseException) -> None:
        payload: dict[str, Any] = {
            "ts": utc_now().isoformat(),
            "run_id": run_id,
            "phase": phase.value,
            "error_type": type(error).__name__,
            "error": str(error),
        }
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self.failures_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n")
        logger.debug("Recorded failure of phase %s for run %s", phase.value, run_id)


def state_to_dict(state: PipelineState) -> dict[str, Any]:
    return {
        "phase": state.phase.value,
        "status": state.status.value,
        "run_id": state.run_id,
        "mode": state.mode.value,
        "engine": state.engine,
        "last_completed_phase": _enum_value(state.last_completed_phase),
        "failed_phase": _enum_value(state.failed_phase),
        "resume_from_phase": _enum_value(state.resume_from_phase),
        "execution_profile": _enum_value(state.execution_profile),
        "swarm": _enum_value(state.swarm),
        "max_parallel": state.max_parallel,
        "tasks_completed": state.tasks_completed,
        "cost_usd": round(state.cost_usd, 6),
        "error": state.error,
        "started_at": state.started_at.isoformat(),
        "updated_at": state.updated_at.isoformat(),
    }


def state_from_dict(payload: dict[str, Any]) -> PipelineState:
    return PipelineState(
        phase=PhaseName(payload["phase"]),
        status=PipelineStatus(payload["status"]),
        run_id=str(payload["run_id"]),
        mode=PipelineMode(payload["mode"]),
        engine=payload.get("engine"),
        last_completed_phase=_optional(PhaseName, payload.get("last_completed_phase")),
        failed_phase=_optional(PhaseName, payload.get("failed_phase")),
        resume_from_phase=_optional(PhaseName, payload.get("resume_from_phase")),
        execution_profile=_optional(ExecutionProfile, payload.get("execution_profile")),
        swarm=_optional(SwarmMode, payload.get("swarm")),
        max_parallel=payload.get("max_parallel"),
        tasks_completed=int(payload.get("tasks_completed") or 0),
        cost_usd=float(payload.get("cost_usd") or 0.0),
        error=payload.get("error"),
        started_at=from_iso(str(payload["started_at"])),
        updated_at=from_iso(str(payload["updated_at"])),
    )


def _enum_value(value: Any) -> str | None:
    return value.value if value is not None else None


def _optional(enum_type: Any, value: Any) -> Any:
    return enum_type(value) if value else None
