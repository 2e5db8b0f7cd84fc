from __future__ import annotations

import math

import allure
import pytest

from bemadralphy.execution.policy import (
    detect_swarm_capability,
    resolve_execution_policy,
    sanitize_parallel,
)
from bemadralphy.pipeline.models import ExecutionProfile, SwarmMode

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Execution Policy"),
]

CAPABILITIES = {"codex": True, "claude": False}


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, 3),
        (math.nan, 3),
        (math.inf, 3),
        (-math.inf, 3),
        (2.9, 2),
        (0.5, 1),
        (-4, 1),
        (6, 6),
    ],
)
def test_sanitize_parallel(value: float | None, expected: int) -> None:
    assert sanitize_parallel(value) == expected


def test_safe_profile_forces_single_process_worker() -> None:
    policy = resolve_execution_policy(
        "codex",
        ExecutionProfile.SAFE,
        capabilities=CAPABILITIES,
        requested_parallel=8,
    )

    assert policy.swarm_mode is SwarmMode.PROCESS
    assert policy.max_parallel == 1
    assert policy.capability.supports_native


def test_balanced_profile_caps_parallelism_and_uses_native_swarm() -> None:
    policy = resolve_execution_policy(
        "codex",
        ExecutionProfile.BALANCED,
        capabilities=CAPABILITIES,
        requested_parallel=5,
    )

    assert policy.swarm_mode is SwarmMode.NATIVE
    assert policy.max_parallel == 2
    assert policy.capability.reason == "codex supports native swarm"


def test_fast_profile_uses_sanitized_request() -> None:
    default = resolve_execution_policy("claude", ExecutionProfile.FAST, capabilities=CAPABILITIES)
    requested = resolve_execution_policy(
        "claude",
        ExecutionProfile.FAST,
        capabilities=CAPABILITIES,
        requested_parallel=7.8,
    )

    assert default.swarm_mode is SwarmMode.PROCESS
    assert default.max_parallel == 3
    assert requested.max_parallel == 7


def test_swarm_off_override_forces_single_worker() -> None:
    policy = resolve_execution_policy(
        "codex",
        ExecutionProfile.FAST,
        capabilities=CAPABILITIES,
        swarm_override=SwarmMode.OFF,
        requested_parallel=6,
    )

    assert policy.swarm_mode is SwarmMode.OFF
    assert policy.max_parallel == 1


def test_unknown_engine_has_no_native_swarm() -> None:
    capability = detect_swarm_capability("mystery", CAPABILITIES)

    assert not capability.supports_native
    assert capability.reason == "unknown engine"
    assert detect_swarm_capability("claude", CAPABILITIES).reason == "claude has no native swarm"


def test_policy_to_dict_is_serializable() -> None:
    policy = resolve_execution_policy("codex", ExecutionProfile.BALANCED, capabilities=CAPABILITIES)

    assert policy.to_dict() == {
        "profile": "balanced",
        "swarm": "native",
        "max_parallel": 2,
        "supports_native": True,
        "reason": "codex supports native swarm",
    }
