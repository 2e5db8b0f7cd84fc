from __future__ import annotations

import random

import allure
import pytest

from bemadralphy.config import RetrySettings
from bemadralphy.execution.retry import RetryPolicy, with_retry

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Retry & Failure Classification"),
]


def _flaky(failures: list[BaseException], result: str = "ok"):
    calls: list[int] = []

    def operation() -> str:
        calls.append(len(calls) + 1)
        if failures:
            raise failures.pop(0)
        return result

    return operation, calls


def test_retryable_failures_are_retried_until_success() -> None:
    sleeps: list[float] = []
    operation, calls = _flaky([ConnectionError("reset"), RuntimeError("rate limit")])
    policy = RetryPolicy(max_retries=3, base_delay_ms=10, sleep=sleeps.append)

    assert policy.run(operation, label="task A") == "ok"
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_fatal_failure_is_not_retried() -> None:
    sleeps: list[float] = []
    operation, calls = _flaky([RuntimeError("invalid api key")])
    policy = RetryPolicy(max_retries=3, sleep=sleeps.append)

    with pytest.raises(RuntimeError, match="invalid api key"):
        policy.run(operation)

    assert len(calls) == 1
    assert sleeps == []


def test_retries_stop_after_max_retries_and_reraise_last_error() -> None:
    sleeps: list[float] = []
    failures: list[BaseException] = [TimeoutError(f"attempt {index}") for index in range(1, 6)]
    operation, calls = _flaky(failures)

    with pytest.raises(TimeoutError, match="attempt 3"):
        with_retry(operation, max_retries=2, base_delay_ms=0, sleep=sleeps.append)

    assert len(calls) == 3
    assert sleeps == [0.0, 0.0]


def test_zero_retries_means_single_attempt() -> None:
    operation, calls = _flaky([ConnectionError("reset")])

    with pytest.raises(ConnectionError):
        RetryPolicy(max_retries=0, sleep=lambda _: None).run(operation)

    assert len(calls) == 1


def test_delay_grows_exponentially_with_bounded_jitter() -> None:
    policy = RetryPolicy(base_delay_ms=500, max_delay_ms=60_000, rng=random.Random(7))

    for _ in range(20):
        assert 0.5 <= policy.delay_seconds(1) <= 0.625
        assert 1.0 <= policy.delay_seconds(2) <= 1.25
        assert 2.0 <= policy.delay_seconds(3) <= 2.5


def test_delay_is_capped_by_max_delay() -> None:
    policy = RetryPolicy(base_delay_ms=500, max_delay_ms=1_000, rng=random.Random(1))

    assert 1.0 <= policy.delay_seconds(10) <= 1.25


def test_custom_classifier_overrides_default() -> None:
    operation, calls = _flaky([ValueError("anything")])
    policy = RetryPolicy(
        max_retries=1,
        classify_error=lambda error: isinstance(error, ValueError),
        sleep=lambda _: None,
    )

    assert policy.run(operation) == "ok"
    assert len(calls) == 2


def test_policy_from_settings_copies_limits() -> None:
    policy = RetryPolicy.from_settings(
        RetrySettings(max_retries=5, base_delay_ms=100, max_delay_ms=900),
        sleep=lambda _: None,
    )

    assert (policy.max_retries, policy.base_delay_ms, policy.max_delay_ms) == (5, 100, 900)
