"""Explicit engine registry and the built-in CLI adapter set."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from bemadralphy.config import Settings
from bemadralphy.engines.base import EngineAdapter
from bemadralphy.engines.cli_adapter import CliEngineAdapter
from bemadralphy.errors import EngineError


class EngineRegistry:
    """Name -> adapter mapping passed explicitly to the runner."""

    def __init__(self) -> None:
        self._engines: dict[str, EngineAdapter] = {}

    def register(self, adapter: EngineAdapter, *, replace: bool = False) -> None:
        key = adapter.name.strip().lower()
        if not key:
            raise EngineError("Engine adapter name must not be empty.")
        if key in self._engines and not replace:
            raise EngineError(f"Engine already registered: {key}")
        self._engines[key] = adapter

    def get(self, name: str) -> EngineAdapter:
        adapter = self._engines.get(name.strip().lower())
        if adapter is None:
            raise EngineError(
                f"Unknown engine: {name}. Available: {', '.join(self.names()) or 'none'}",
            )
        return adapter

    def names(self) -> list[str]:
        return sorted(self._engines)

    def snapshot(self) -> Mapping[str, EngineAdapter]:
        """Read-only view used for the lifetime of one run."""

        return MappingProxyType(dict(self._engines))

    def capabilities(self) -> dict[str, bool]:
        return {name: adapter.has_native_swarm for name, adapter in self._engines.items()}


def default_registry(settings: Settings) -> EngineRegistry:
    """Built-in CLI adapters; ``ralphy`` is an alias of ``claude``."""

    registry = EngineRegistry()
    registry.register(
        CliEngineAdapter(
            "claude",
            ("claude", "-p", "{prompt}", "--dangerously-skip-permissions"),
            model_flag="--model",
        ),
    )
    registry.register(
        CliEngineAdapter(
            "ralphy",
            ("claude", "-p", "{prompt}", "--dangerously-skip-permissions"),
            model_flag="--model",
        ),
    )
    registry.register(
        CliEngineAdapter(
            "codex",
            ("codex", "exec", "--full-auto", "{prompt}"),
            has_native_swarm=True,
            model_flag="--model",
        ),
    )
    registry.register(
        CliEngineAdapter("copilot", ("copilot", "-p", "{prompt}", "--allow-all-tools")),
    )
    registry.register(
        CliEngineAdapter("cursor", ("cursor-agent", "-p", "{prompt}"), model_flag="--model"),
    )
    registry.register(
        CliEngineAdapter("gemini", ("gemini", "-p", "{prompt}", "--yolo"), model_flag="--model"),
    )
    registry.register(
        CliEngineAdapter(
            "kimi",
            ("kimi", "--print", "-c", "{prompt}"),
            has_native_swarm=True,
            model_flag="--model",
        ),
    )
    registry.register(
        CliEngineAdapter("ollama", ("ollama", "run", settings.engines.ollama_model, "{prompt}")),
    )
    registry.register(
        CliEngineAdapter("opencode", ("opencode", "run", "{prompt}"), model_flag="--model"),
    )
    registry.register(
        CliEngineAdapter("qwen", ("qwen", "-p", "{prompt}", "--yolo"), model_flag="--model"),
    )
    return registry
