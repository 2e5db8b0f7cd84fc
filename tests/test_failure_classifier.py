from __future__ import annotations

import allure

from bemadralphy.errors import BudgetExceededError, CommandError, ConfigurationError
from bemadralphy.execution.failure_classifier import ErrorKind, classify_error, is_retryable

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Retry & Failure Classification"),
]


def test_classifier_maps_rate_limit_to_retryable() -> None:
    classified = classify_error(RuntimeError("HTTP 429: rate limit reached"))

    assert classified.kind is ErrorKind.RETRYABLE
    assert classified.matched_rule == "retryable_pattern"
    assert classified.matched_pattern == "rate limit"


def test_classifier_prefers_fatal_over_retryable_pattern() -> None:
    classified = classify_error(RuntimeError("Unauthorized after network retry"))

    assert classified.kind is ErrorKind.FATAL
    assert classified.matched_pattern == "unauthorized"


def test_classifier_reads_stderr_of_command_errors() -> None:
    error = CommandError(
        "Command codex exited with code 1",
        transient=False,
        exit_code=1,
        stderr="upstream temporarily unavailable",
    )

    classified = classify_error(error)

    assert classified.retryable
    assert classified.matched_pattern == "temporarily unavailable"


def test_classifier_treats_timeout_and_connection_types_as_retryable() -> None:
    assert classify_error(TimeoutError()).matched_rule == "transient_type"
    assert is_retryable(ConnectionError())
    assert not is_retryable(TimeoutError("model not found"))


def test_classifier_honors_transient_command_flag() -> None:
    classified = classify_error(CommandError("spawn failed", transient=True))

    assert classified.to_details() == {
        "kind": "retryable",
        "matched_rule": "transient_command",
        "matched_pattern": None,
    }


def test_classifier_never_retries_policy_errors() -> None:
    budget = BudgetExceededError("rate limit budget", spent_usd=1.0, budget_usd=0.5)

    assert classify_error(budget).matched_rule == "policy_error"
    assert not is_retryable(ConfigurationError("timeout option invalid"))


def test_classifier_falls_back_to_fatal() -> None:
    classified = classify_error(ValueError("something odd happened"))

    assert classified.kind is ErrorKind.FATAL
    assert classified.matched_rule == "fallback_fatal"
