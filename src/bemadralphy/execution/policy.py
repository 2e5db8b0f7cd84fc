"""Resolve swarm mode and parallelism from engine capability and profile."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass

from bemadralphy.pipeline.models import ExecutionProfile, SwarmMode

DEFAULT_PARALLEL = 3
BALANCED_PARALLEL_CAP = 2


@dataclass(slots=True, frozen=True)
class SwarmCapability:
    supports_native: bool
    reason: str


@dataclass(slots=True, frozen=True)
class ExecutionPolicy:
    """Resolved concurrency posture for the execute phase."""

    profile: ExecutionProfile
    swarm_mode: SwarmMode
    max_parallel: int
    capability: SwarmCapability

    def to_dict(self) -> dict[str, object]:
        return {
            "profile": self.profile.value,
            "swarm": self.swarm_mode.value,
            "max_parallel": self.max_parallel,
            "supports_native": self.capability.supports_native,
            "reason": self.capability.reason,
        }


def sanitize_parallel(value: float | None) -> int:
    """Map None/NaN/inf to the default; floor the rest with a floor of 1."""

    if value is None:
        return DEFAULT_PARALLEL
    numeric = float(value)
    if not math.isfinite(numeric):
        return DEFAULT_PARALLEL
    floored = math.floor(numeric)
    return 1 if floored <= 0 else floored


def detect_swarm_capability(engine_name: str, capabilities: Mapping[str, bool]) -> SwarmCapability:
    native = capabilities.get(engine_name)
    if native is None:
        return SwarmCapability(supports_native=False, reason="unknown engine")
    if native:
        return SwarmCapability(supports_native=True, reason=f"{engine_name} supports native swarm")
    return SwarmCapability(supports_native=False, reason=f"{engine_name} has no native swarm")


def resolve_execution_policy(
    engine_name: str,
    profile: ExecutionProfile,
    *,
    capabilities: Mapping[str, bool],
    swarm_override: SwarmMode | None = None,
    requested_parallel: float | None = None,
) -> ExecutionPolicy:
    capability = detect_swarm_capability(engine_name, capabilities)

    if swarm_override is not None:
        swarm_mode = swarm_override
    elif profile is ExecutionProfile.SAFE:
        swarm_mode = SwarmMode.PROCESS
    elif capability.supports_native:
        swarm_mode = SwarmMode.NATIVE
    else:
        swarm_mode = SwarmMode.PROCESS

    if swarm_mode is SwarmMode.OFF or profile is ExecutionProfile.SAFE:
        max_parallel = 1
    elif profile is ExecutionProfile.BALANCED:
        max_parallel = min(sanitize_parallel(requested_parallel), BALANCED_PARALLEL_CAP)
    else:
        max_parallel = sanitize_parallel(requested_parallel)

    return ExecutionPolicy(
        profile=profile,
        swarm_mode=swarm_mode,
        max_parallel=max_parallel,
        capability=capability,
    )
