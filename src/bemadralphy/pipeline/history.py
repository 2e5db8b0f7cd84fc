"""Append-only run history ledger stored as JSON lines."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from bemadralphy.pipeline.models import (
    OutputFormat,
    PhaseName,
    PipelineMode,
    PipelineStatus,
    RunHistoryRecord,
)
from bemadralphy.storage.common import from_iso

logger = logging.getLogger(__name__)

RUNS_FILE_NAME = "runs.jsonl"


class RunHistory:
    """One line per run attempt start and per terminal outcome; never pruned."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / RUNS_FILE_NAME
        self._lock = threading.Lock()

    def append(self, record: RunHistoryRecord) -> None:
        line = json.dumps(record_to_dict(record), ensure_ascii=False, sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read(self) -> list[RunHistoryRecord]:
        if not self.path.exists():
            return []
        records: list[RunHistoryRecord] = []
        for line_no, line in enumerate(self.path.read_text("utf-8").splitlines(), start=1):
            stripped = line.strip()
            if not stripped:
                continue
            try:
                records.append(record_from_dict(json.loads(stripped)))
            except (json.JSONDecodeError, KeyError, ValueError) as error:
                logger.warning("Skipping malformed history line %d in %s: %s", line_no, self.path, error)
        return records

    def find(self, run_id: str) -> RunHistoryRecord | None:
        """Latest record for ``run_id``, or None."""

        for record in reversed(self.read()):
            if record.run_id == run_id:
                return record
        return None


def record_to_dict(record: RunHistoryRecord) -> dict[str, Any]:
    return {
        "run_id": record.run_id,
        "started_at": record.started_at.isoformat(),
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "status": record.status.value,
        "mode": record.mode.value,
        "engine": record.engine,
        "output": record.output.value if record.output else None,
        "phase": record.phase.value if record.phase else None,
        "resume_from_phase": record.resume_from_phase.value if record.resume_from_phase else None,
        "options": dict(record.options),
        "error": record.error,
    }


def record_from_dict(payload: dict[str, Any]) -> RunHistoryRecord:
    return RunHistoryRecord(
        run_id=str(payload["run_id"]),
        started_at=from_iso(str(payload["started_at"])),
        finished_at=from_iso(payload["finished_at"]) if payload.get("finished_at") else None,
        status=PipelineStatus(payload["status"]),
        mode=PipelineMode(payload["mode"]),
        engine=payload.get("engine"),
        output=OutputFormat(payload["output"]) if payload.get("output") else None,
        phase=PhaseName(payload["phase"]) if payload.get("phase") else None,
        resume_from_phase=(
            PhaseName(payload["resume_from_phase"]) if payload.get("resume_from_phase") else None
        ),
        options=dict(payload.get("options") or {}),
        error=payload.get("error"),
    )
