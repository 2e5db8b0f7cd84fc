from __future__ import annotations

import json
import os
import stat
from collections.abc import Callable
from pathlib import Path
from typing import Any

import allure
import pytest
from click.testing import CliRunner

from bemadralphy import main
from bemadralphy.config import Settings
from bemadralphy.controllers import PipelineCliController
from bemadralphy.main import bemadralphy
from bemadralphy.tasks.models import generate_task_id

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("CLI"),
]


def _write_fake_binary(bin_dir: Path, name: str) -> None:
    bin_dir.mkdir(parents=True, exist_ok=True)
    if os.name == "nt":
        (bin_dir / f"{name}.cmd").write_text("@echo off\r\necho ok\r\n", "utf-8")
        return
    path = bin_dir / name
    path.write_text("#!/usr/bin/env sh\necho ok\n", "utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)


def _invoke(*args: str) -> Any:
    return CliRunner().invoke(bemadralphy, list(args))


@pytest.fixture()
def cli_engine(make_engine: Callable[..., Any]) -> Any:
    return make_engine()


@pytest.fixture()
def controller(
    monkeypatch: pytest.MonkeyPatch,
    settings: Settings,
    make_runner: Callable[..., Any],
    cli_engine: Any,
) -> PipelineCliController:
    controller = PipelineCliController(
        settings_factory=lambda: settings,
        runner_factory=lambda project_root, _settings: make_runner(project_root, cli_engine),
    )
    monkeypatch.setattr(main, "PIPELINE_CONTROLLER", controller)
    return controller


def test_init_creates_project_files_once(tmp_path: Path, controller: PipelineCliController) -> None:
    root = tmp_path / "fresh"

    first = _invoke("init", "--project-root", str(root))
    second = _invoke("init", "--project-root", str(root), "--output", "json")

    assert first.exit_code == 0, first.output
    assert "created idea.md" in first.output
    assert "created bemad.config.yaml" in first.output
    assert (root / ".bemadralphy" / "tasks.db").exists()
    assert json.loads(second.stdout)["created"] == []


def test_status_without_runs(tmp_path: Path, controller: PipelineCliController) -> None:
    result = _invoke("status", "--project-root", str(tmp_path))

    assert result.exit_code == 0, result.output
    assert "No pipeline state recorded yet." in result.output


def test_run_dry_run_prints_plan(project: Path, controller: PipelineCliController) -> None:
    result = _invoke("run", "--project-root", str(project), "--engine", "fake", "--dry-run")

    assert result.exit_code == 0, result.output
    assert (
        "Dry run: intake -> planning -> steering -> scaffold -> sync -> execute -> verify -> post"
        in result.output
    )
    assert "swarm=process max_parallel=2" in result.output
    assert not (project / ".bemadralphy").exists()


def test_plan_and_execute_commands_cover_their_phase_windows(
    project: Path,
    controller: PipelineCliController,
) -> None:
    planned = _invoke("plan", "--project-root", str(project), "--engine", "fake")
    executed = _invoke("execute", "--project-root", str(project), "--engine", "fake")

    assert planned.exit_code == 0, planned.output
    assert "Phases: intake, planning, steering" in planned.output
    assert executed.exit_code == 0, executed.output
    assert "Phases: sync, execute" in executed.output


def test_run_then_inspect_status_history_and_tasks(
    project: Path,
    controller: PipelineCliController,
) -> None:
    root = str(project)
    login_id = generate_task_id("auth", "Login endpoint")

    run = _invoke("run", "--project-root", root, "--engine", "fake")
    status = _invoke("status", "--project-root", root)
    history = _invoke("history", "--project-root", root, "--output", "json")
    tasks = _invoke("tasks", "list", "--project-root", root, "--output", "json")
    done = _invoke("tasks", "list", "--project-root", root, "--status", "done")
    show = _invoke("tasks", "show", login_id, "--project-root", root)
    retry = _invoke("tasks", "retry", login_id, "--project-root", root)

    assert run.exit_code == 0, run.output
    assert "Run run-1: completed" in run.output
    assert "Status: completed" in status.output
    assert "Task counts: open=0 in_progress=0 blocked=0 done=3 failed=0" in status.output
    assert [row["status"] for row in json.loads(history.stdout)] == ["running", "completed"]
    assert [row["title"] for row in json.loads(tasks.stdout)] == [
        "Login endpoint",
        "Create schema",
        "Logout endpoint",
    ]
    assert "Tasks: 3" in done.output
    assert "Title: Login endpoint" in show.output
    assert "Depends on: " + generate_task_id("auth", "Create schema") in show.output
    assert f"Task {login_id} is done; nothing to retry." in retry.output


def test_failed_run_exits_non_zero_and_resume_recovers(
    project: Path,
    controller: PipelineCliController,
    cli_engine: Any,
) -> None:
    root = str(project)
    logout_id = generate_task_id("auth", "Logout endpoint")
    cli_engine.outcomes["Logout endpoint"] = ["fatal"]

    failed = _invoke("run", "--project-root", root, "--engine", "fake")
    status = _invoke("status", "--project-root", root)
    retry = _invoke("tasks", "retry", logout_id, "--project-root", root)
    resumed = _invoke("resume", "--project-root", root, "--engine", "fake")
    history = _invoke("history", "--project-root", root, "--limit", "2")

    assert failed.exit_code == 1
    assert "Phase execute failed" in failed.output
    assert "Failed phase: execute" in status.output
    assert f"Task {logout_id} reset to open." in retry.output
    assert resumed.exit_code == 0, resumed.output
    assert "Phases: execute, verify, post" in resumed.output
    assert "Runs: 2" in history.output
    assert "run_id=run-2 status=completed" in history.output


def test_invalid_phase_window_is_reported(project: Path, controller: PipelineCliController) -> None:
    result = _invoke(
        "run",
        "--project-root",
        str(project),
        "--engine",
        "fake",
        "--from",
        "execute",
        "--to",
        "sync",
    )

    assert result.exit_code == 1
    assert "to_phase sync precedes the resolved start phase execute" in result.output
    assert not (project / ".bemadralphy").exists()


def test_unknown_task_and_run_are_errors(project: Path, controller: PipelineCliController) -> None:
    show = _invoke("tasks", "show", "missing", "--project-root", str(project))
    replay = _invoke("replay", "nope", "--project-root", str(project))

    assert show.exit_code == 1
    assert "Task not found: missing" in show.output
    assert replay.exit_code == 1
    assert "Run not found in history: nope" in replay.output


def test_doctor_reports_default_engine_availability(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    controller: PipelineCliController,
) -> None:
    bin_dir = tmp_path / "bin"
    _write_fake_binary(bin_dir, "claude")
    monkeypatch.setenv("PATH", str(bin_dir))

    ok = _invoke("doctor", "--project-root", str(tmp_path), "--output", "json")

    payload = json.loads(ok.stdout)
    assert ok.exit_code == 0, ok.output
    assert payload["ok"] is True
    assert payload["engines"]["claude"] is True
    assert payload["engines"]["codex"] is False
    assert payload["tools"]["git"] is False

    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    missing = _invoke("doctor", "--project-root", str(tmp_path))

    assert missing.exit_code == 1
    assert "Default engine ralphy: NOT AVAILABLE" in missing.output
    assert "Default engine is not available." in missing.output
