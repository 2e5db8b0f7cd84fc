"""Ordered before/after phase hooks and their frozen per-run snapshot."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING

from bemadralphy.pipeline.models import PHASE_ORDER, PhaseName

if TYPE_CHECKING:
    from bemadralphy.pipeline.context import PipelineContext

PhaseHook = Callable[["PipelineContext"], "PipelineContext | None"]


class HookRegistry:
    """Mutable registry used while plugins load."""

    def __init__(self) -> None:
        self._before: dict[PhaseName, list[PhaseHook]] = {}
        self._after: dict[PhaseName, list[PhaseHook]] = {}

    def on_before(self, phase: PhaseName | str, hook: PhaseHook) -> None:
        self._before.setdefault(PhaseName(phase), []).append(hook)

    def on_after(self, phase: PhaseName | str, hook: PhaseHook) -> None:
        self._after.setdefault(PhaseName(phase), []).append(hook)

    def freeze(self) -> FrozenHooks:
        return FrozenHooks(
            before=MappingProxyType(
                {phase: tuple(self._before.get(phase, ())) for phase in PHASE_ORDER},
            ),
            after=MappingProxyType(
                {phase: tuple(self._after.get(phase, ())) for phase in PHASE_ORDER},
            ),
        )


@dataclass(slots=True, frozen=True)
class FrozenHooks:
    """Immutable hook tuples used for the whole run."""

    before: Mapping[PhaseName, tuple[PhaseHook, ...]]
    after: Mapping[PhaseName, tuple[PhaseHook, ...]]

    @classmethod
    def empty(cls) -> FrozenHooks:
        return HookRegistry().freeze()

    def run_before(self, phase: PhaseName, ctx: PipelineContext) -> PipelineContext:
        return _run_chain(self.before.get(phase, ()), ctx)

    def run_after(self, phase: PhaseName, ctx: PipelineContext) -> PipelineContext:
        return _run_chain(self.after.get(phase, ()), ctx)

    def count(self) -> int:
        return sum(len(hooks) for hooks in self.before.values()) + sum(
            len(hooks) for hooks in self.after.values()
        )


def _run_chain(hooks: tuple[PhaseHook, ...], ctx: PipelineContext) -> PipelineContext:
    """Run hooks sequentially; a hook may return a replacement context."""

    for hook in hooks:
        result = hook(ctx)
        if result is not None:
            ctx = result
    return ctx
