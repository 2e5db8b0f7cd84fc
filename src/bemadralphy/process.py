"""Subprocess runner for external developer CLIs and agent engines."""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from bemadralphy.errors import CommandError

logger = logging.getLogger(__name__)

_STDERR_PREVIEW_CHARS = 2_000


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Captured outcome of one finished command."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def command_exists(executable: str) -> bool:
    return shutil.which(executable) is not None


def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout_seconds: float | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    input_text: str | None = None,
) -> CommandResult:
    """Run ``argv`` and capture output.

    A missing executable is a non-transient CommandError; start failures
    and timeouts are transient. With ``check`` a non-zero exit also raises,
    carrying exit code and stderr so the classifier can inspect them.
    """

    args = tuple(argv)
    if not args:
        raise CommandError("Command is empty.", transient=False)

    logger.debug("Running command: %s (cwd=%s)", subprocess.list2cmdline(args), cwd)
    try:
        completed = subprocess.run(  # noqa: S603
            args,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as error:
        raise CommandError(f"Command not found: {args[0]}", transient=False) from error
    except subprocess.TimeoutExpired as error:
        raise CommandError(
            f"Command timed out after {timeout_seconds}s: {args[0]}",
            transient=True,
        ) from error
    except OSError as error:
        raise CommandError(f"Command failed to start: {error}", transient=True) from error

    result = CommandResult(
        argv=args,
        exit_code=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if check and not result.ok:
        stderr_preview = result.stderr.strip()[-_STDERR_PREVIEW_CHARS:]
        raise CommandError(
            f"Command {args[0]} exited with code {result.exit_code}"
            + (f": {stderr_preview}" if stderr_preview else ""),
            transient=False,
            exit_code=result.exit_code,
            stderr=result.stderr,
        )
    return result
