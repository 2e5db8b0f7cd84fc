from __future__ import annotations

from pathlib import Path

import allure
import pytest

from bemadralphy.config import CostSettings, RetrySettings, Settings, load_run_config
from bemadralphy.errors import ConfigurationError
from bemadralphy.pipeline.models import ExecutionProfile, OutputFormat, PhaseName, PipelineMode
from bemadralphy.pipeline.options import RunOptions, normalize_options

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Configuration"),
]


def test_settings_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BEMADRALPHY_ENGINE", "codex")
    monkeypatch.setenv("BEMADRALPHY_MODE", "AUTO")
    monkeypatch.setenv("BEMADRALPHY_RETRY_MAX_RETRIES", "5")
    monkeypatch.setenv("BEMADRALPHY_BUDGET_USD", "2.5")
    monkeypatch.setenv("BEMADRALPHY_VALIDATE_COMMAND", "")
    monkeypatch.setenv("BEMADRALPHY_PR_COMMAND", "gh pr create --draft")

    settings = Settings.from_env()

    assert settings.pipeline.default_engine == "codex"
    assert settings.pipeline.default_mode is PipelineMode.AUTO
    assert settings.retry.max_retries == 5
    assert settings.cost.budget_usd == 2.5
    assert settings.collaborators.validate_command == ()
    assert settings.collaborators.pr_command == ("gh", "pr", "create", "--draft")


def test_settings_from_env_rejects_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BEMADRALPHY_RETRY_MAX_RETRIES", "many")
    with pytest.raises(ConfigurationError, match="BEMADRALPHY_RETRY_MAX_RETRIES"):
        Settings.from_env()

    monkeypatch.delenv("BEMADRALPHY_RETRY_MAX_RETRIES")
    monkeypatch.setenv("BEMADRALPHY_EXECUTION_PROFILE", "reckless")
    with pytest.raises(ConfigurationError, match="safe|balanced|fast"):
        Settings.from_env()


def test_validate_rejects_negative_limits() -> None:
    with pytest.raises(ConfigurationError, match="MAX_RETRIES"):
        Settings(retry=RetrySettings(max_retries=-1)).validate()
    with pytest.raises(ConfigurationError, match="BUDGET"):
        Settings(cost=CostSettings(budget_usd=-1.0)).validate()
    Settings().validate()


def test_load_run_config_reads_yaml_and_json(tmp_path: Path) -> None:
    assert load_run_config(tmp_path) == {}

    (tmp_path / "bemad.config.yaml").write_text("engine: codex\nmaxParallel: 4\n", "utf-8")
    assert load_run_config(tmp_path) == {"engine": "codex", "maxParallel": 4}

    (tmp_path / "bemad.config.json").write_text('{"engine": "gemini"}', "utf-8")
    assert load_run_config(tmp_path) == {"engine": "gemini"}


def test_load_run_config_rejects_non_mapping(tmp_path: Path) -> None:
    (tmp_path / ".bemadralphyrc").write_text("- one\n- two\n", "utf-8")

    with pytest.raises(ConfigurationError, match="must contain a mapping"):
        load_run_config(tmp_path)


def test_normalize_options_prefers_cli_then_file_then_settings() -> None:
    settings = Settings()
    options = normalize_options(
        {"engine": "Codex", "max_parallel": None, "mode": None},
        {"engine": "gemini", "maxParallel": 4, "executionProfile": "fast", "mode": "auto"},
        settings,
    )

    assert options.engine == "codex"
    assert options.max_parallel == 4.0
    assert options.execution_profile is ExecutionProfile.FAST
    assert options.mode is PipelineMode.AUTO
    assert options.output is OutputFormat.TEXT
    assert options.task_timeout_seconds == settings.engines.task_timeout_seconds


def test_file_config_cannot_set_run_control_flags() -> None:
    options = normalize_options(
        {},
        {"resume": True, "dry_run": True, "from_phase": "execute", "toPhase": "sync"},
        Settings(),
    )

    assert not options.resume
    assert not options.dry_run
    assert options.from_phase is None
    assert options.to_phase is None


def test_normalize_options_rejects_invalid_enum_with_allowed_values() -> None:
    with pytest.raises(ConfigurationError, match="auto\\|hybrid\\|supervised"):
        normalize_options({"mode": "yolo"}, {}, Settings())
    with pytest.raises(ConfigurationError, match="Budget must be >= 0"):
        normalize_options({"budget_usd": -1}, {}, Settings())
    with pytest.raises(ConfigurationError, match="Invalid max_parallel"):
        normalize_options({}, {"max_parallel": "lots"}, Settings())


def test_options_snapshot_round_trips() -> None:
    settings = Settings()
    options = normalize_options(
        {
            "engine": "claude",
            "budget_usd": 1.5,
            "swarm": "off",
            "from_phase": "sync",
            "to_phase": "verify",
            "plugins": ("tasks-md",),
            "resume": True,
        },
        {},
        settings,
    )

    restored = RunOptions.from_snapshot(options.to_snapshot(), settings)

    assert restored == options
    assert restored.from_phase is PhaseName.SYNC
    assert restored.plugins == ("tasks-md",)
