"""AI completion providers used by planning and steering collaborators."""

from __future__ import annotations

import json
import logging
import re
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from bemadralphy.errors import CommandError, CompletionError
from bemadralphy.process import run_command

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)


@dataclass(slots=True)
class CompletionOptions:
    model: str | None = None
    cwd: Path | None = None
    timeout_seconds: int = 600


class CompletionProvider(Protocol):
    """Protocol implemented by completion backends."""

    name: str

    def complete(self, prompt: str, options: CompletionOptions) -> str:
        """Return raw completion text."""

    def structured(self, prompt: str, options: CompletionOptions) -> Any:
        """Return the completion parsed as JSON."""


def parse_structured_json(text: str) -> Any:
    """Parse JSON, unwrapping at most one fenced code block."""

    stripped = text.strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    match = _FENCE_RE.match(stripped)
    if match is None:
        raise CompletionError("Completion did not return valid JSON.")
    try:
        return json.loads(match.group("body").strip())
    except json.JSONDecodeError as error:
        raise CompletionError(f"Completion returned invalid fenced JSON: {error}") from error


class CliCompletionProvider:
    """Run an agent CLI command template and return its stdout.

    Template format matches shell syntax with ``{prompt}`` and optional
    ``{model}`` placeholders, e.g. ``claude -p {prompt} --model {model}``.
    """

    def __init__(self, command_template: str, *, name: str = "cli") -> None:
        stripped = command_template.strip()
        if not stripped:
            raise CompletionError("Completion command template is empty.")
        if "{prompt}" not in stripped:
            raise CompletionError("Completion command template must include {prompt}.")
        self.command_template = stripped
        self.name = name

    def build_argv(self, prompt: str, options: CompletionOptions) -> list[str]:
        try:
            rendered = self.command_template.format(
                prompt=shlex.quote(prompt),
                model=shlex.quote(options.model or ""),
            )
        except KeyError as error:
            raise CompletionError(
                f"Unsupported command template placeholder: {error}",
            ) from error
        argv = shlex.split(rendered)
        if not argv:
            raise CompletionError("Completion command template rendered empty command.")
        return argv

    def complete(self, prompt: str, options: CompletionOptions) -> str:
        argv = self.build_argv(prompt, options)
        try:
            result = run_command(argv, cwd=options.cwd, timeout_seconds=options.timeout_seconds)
        except CommandError as error:
            raise CompletionError(f"Completion provider {self.name} failed: {error}") from error
        text = result.stdout.strip()
        if not text:
            raise CompletionError(f"Completion provider {self.name} returned empty output.")
        return text

    def structured(self, prompt: str, options: CompletionOptions) -> Any:
        return parse_structured_json(self.complete(prompt, options))


class FallbackCompletionProvider:
    """Try providers in order; the first successful answer wins."""

    def __init__(self, providers: Sequence[CompletionProvider]) -> None:
        if not providers:
            raise CompletionError("At least one completion provider is required.")
        self.providers = tuple(providers)
        self.name = "fallback(" + ",".join(provider.name for provider in self.providers) + ")"

    def complete(self, prompt: str, options: CompletionOptions) -> str:
        errors: list[str] = []
        for provider in self.providers:
            try:
                return provider.complete(prompt, options)
            except CompletionError as error:
                logger.warning("Completion provider %s failed: %s", provider.name, error)
                errors.append(f"{provider.name}: {error}")
        raise CompletionError("All completion providers failed: " + "; ".join(errors))

    def structured(self, prompt: str, options: CompletionOptions) -> Any:
        errors: list[str] = []
        for provider in self.providers:
            try:
                return provider.structured(prompt, options)
            except CompletionError as error:
                logger.warning("Completion provider %s failed: %s", provider.name, error)
                errors.append(f"{provider.name}: {error}")
        raise CompletionError("All completion providers failed: " + "; ".join(errors))
