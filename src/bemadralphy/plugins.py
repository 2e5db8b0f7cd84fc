"""Plugin loading: explicit entries register engines and phase hooks once per run."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from bemadralphy.engines.base import EngineAdapter
from bemadralphy.engines.registry import EngineRegistry
from bemadralphy.errors import ConfigurationError
from bemadralphy.pipeline.context import PipelineContext
from bemadralphy.pipeline.hooks import FrozenHooks, HookRegistry, PhaseHook
from bemadralphy.pipeline.models import PhaseName

logger = logging.getLogger(__name__)

TASKS_MARKDOWN_FILE = "tasks.md"


class PluginApi:
    """Narrow surface plugins may use while registering."""

    def __init__(self, *, engines: EngineRegistry, hooks: HookRegistry) -> None:
        self._engines = engines
        self._hooks = hooks

    def register_engine(self, adapter: EngineAdapter) -> None:
        self._engines.register(adapter, replace=True)

    def on_before_phase(self, phase: PhaseName | str, hook: PhaseHook) -> None:
        self._hooks.on_before(phase, hook)

    def on_after_phase(self, phase: PhaseName | str, hook: PhaseHook) -> None:
        self._hooks.on_after(phase, hook)


class Plugin(Protocol):
    name: str

    def register(self, api: PluginApi) -> None:
        """Register engines and hooks."""


@dataclass(slots=True, frozen=True)
class PluginRuntime:
    """Immutable result of plugin loading, used for the whole run."""

    plugins: tuple[str, ...]
    hooks: FrozenHooks
    engines: Mapping[str, EngineAdapter]

    def capabilities(self) -> dict[str, bool]:
        return {name: adapter.has_native_swarm for name, adapter in self.engines.items()}


class TasksMarkdownPlugin:
    """Write ``tasks.md`` with a task status table after sync and execute."""

    name = "tasks-md"

    def register(self, api: PluginApi) -> None:
        api.on_after_phase(PhaseName.SYNC, self.write_table)
        api.on_after_phase(PhaseName.EXECUTE, self.write_table)

    def write_table(self, ctx: PipelineContext) -> None:
        lines = ["# Tasks", "", "| ID | Title | Status |", "| --- | --- | --- |"]
        for task in ctx.services.task_store.get_all():
            lines.append(f"| {task.task_id} | {task.title} | {task.status.value} |")
        ctx.state_dir.mkdir(parents=True, exist_ok=True)
        (ctx.state_dir / TASKS_MARKDOWN_FILE).write_text("\n".join(lines) + "\n", "utf-8")


BUILTIN_PLUGINS: dict[str, Callable[[], Plugin]] = {
    TasksMarkdownPlugin.name: TasksMarkdownPlugin,
}


def load_plugins(entries: Iterable[str], engines: EngineRegistry) -> PluginRuntime:
    """Resolve and register each plugin entry, then freeze the result.

    An entry is a built-in plugin name or a ``module:attribute`` import path.
    The attribute may be a plugin object, a plugin class, or a bare
    ``register(api)`` callable.
    """

    hooks = HookRegistry()
    api = PluginApi(engines=engines, hooks=hooks)
    loaded: list[str] = []
    for entry in entries:
        plugin = _resolve_plugin(entry)
        register = getattr(plugin, "register", None)
        if callable(register):
            register(api)
        elif callable(plugin):
            plugin(api)
        else:
            raise ConfigurationError(f"Plugin {entry} has no register(api) function.")
        loaded.append(entry)
        logger.info("Loaded plugin %s", entry)
    return PluginRuntime(plugins=tuple(loaded), hooks=hooks.freeze(), engines=engines.snapshot())


def _resolve_plugin(entry: str) -> Any:
    name = entry.strip()
    if name in BUILTIN_PLUGINS:
        return BUILTIN_PLUGINS[name]()
    module_name, separator, attribute = name.partition(":")
    if not separator or not module_name or not attribute:
        raise ConfigurationError(
            f"Unknown plugin {entry!r}. Use a built-in name "
            f"({', '.join(sorted(BUILTIN_PLUGINS))}) or module:attribute.",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ConfigurationError(f"Cannot import plugin module {module_name}: {error}") from error
    try:
        target = getattr(module, attribute)
    except AttributeError as error:
        raise ConfigurationError(f"Plugin {entry} not found: {error}") from error
    if isinstance(target, type):
        return target()
    return target
