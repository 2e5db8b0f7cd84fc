"""External phase collaborators: planning generator, spec validator, VCS tooling."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from bemadralphy.completion import CompletionOptions, CompletionProvider
from bemadralphy.config import Settings
from bemadralphy.errors import CommandError, PlanningError, VerificationError
from bemadralphy.pipeline.stories import StoryTask, render_story, stories_dir
from bemadralphy.process import command_exists, run_command
from bemadralphy.tasks.models import DEFAULT_PRIORITY

if TYPE_CHECKING:
    from bemadralphy.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)


class PlanningGenerator(Protocol):
    def generate(self, ctx: PipelineContext) -> None:
        """Produce story markdown under ``_bmad-output/stories``."""


class SpecValidator(Protocol):
    def validate(self, ctx: PipelineContext) -> None:
        """Raise VerificationError when the project specs are invalid."""


class VcsTool(Protocol):
    def ensure_repository(self, root: Path) -> bool:
        """Create a repository if missing; True when one was created."""

    def create_pull_request(self, ctx: PipelineContext) -> str | None:
        """Open a pull request and return its URL when known."""


class CommandPlanningGenerator:
    """Run a configured planning CLI in the project root."""

    def __init__(self, command: Sequence[str], *, timeout_seconds: int = 600) -> None:
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds

    def generate(self, ctx: PipelineContext) -> None:
        if not _command_ready(self.command, purpose="planning generator"):
            return
        try:
            run_command(self.command, cwd=ctx.project_root, timeout_seconds=self.timeout_seconds)
        except CommandError as error:
            raise PlanningError(f"Planning generator failed: {error}") from error


class CompletionPlanningGenerator:
    """Ask a completion provider for stories and write them as markdown.

    Existing story files are left alone, so reruns never overwrite edits.
    """

    def __init__(self, provider: CompletionProvider, *, timeout_seconds: int = 600) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    def generate(self, ctx: PipelineContext) -> None:
        directory = stories_dir(ctx.project_root)
        if directory.is_dir() and any(directory.glob("*.md")):
            logger.info("Stories already present in %s; skipping generation", directory)
            return
        idea = (ctx.intake or {}).get("idea", "")
        payload = self.provider.structured(
            _planning_prompt(idea),
            CompletionOptions(
                model=ctx.options.model,
                cwd=ctx.project_root,
                timeout_seconds=self.timeout_seconds,
            ),
        )
        stories = payload.get("stories") if isinstance(payload, dict) else None
        if not isinstance(stories, list) or not stories:
            raise PlanningError("Completion returned no stories.")

        directory.mkdir(parents=True, exist_ok=True)
        for index, raw_story in enumerate(stories, start=1):
            story_id = str(raw_story.get("id") or f"story-{index:02d}")
            title = str(raw_story.get("title") or story_id)
            tasks = [_story_task(raw_task) for raw_task in raw_story.get("tasks") or ()]
            (directory / f"{story_id}.md").write_text(render_story(title, tasks), "utf-8")
        logger.info("Wrote %d generated stor(y/ies) to %s", len(stories), directory)


class CommandSpecValidator:
    """Run a spec validation CLI; a non-zero exit fails verification."""

    def __init__(self, command: Sequence[str], *, timeout_seconds: int = 600) -> None:
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds

    def validate(self, ctx: PipelineContext) -> None:
        if not _command_ready(self.command, purpose="spec validator"):
            return
        try:
            run_command(self.command, cwd=ctx.project_root, timeout_seconds=self.timeout_seconds)
        except CommandError as error:
            raise VerificationError(f"Spec validation failed: {error}") from error


class GitVcs:
    """``git init`` for scaffold and a PR command (``gh``) for post."""

    def __init__(self, *, pr_command: Sequence[str], timeout_seconds: int = 600) -> None:
        self.pr_command = tuple(pr_command)
        self.timeout_seconds = timeout_seconds

    def ensure_repository(self, root: Path) -> bool:
        if (root / ".git").exists():
            return False
        if not command_exists("git"):
            logger.info("git not found on PATH; skipping repository init")
            return False
        run_command(("git", "init"), cwd=root, timeout_seconds=self.timeout_seconds)
        logger.info("Initialized git repository in %s", root)
        return True

    def create_pull_request(self, ctx: PipelineContext) -> str | None:
        if not _command_ready(self.pr_command, purpose="pull request"):
            return None
        result = run_command(
            self.pr_command,
            cwd=ctx.project_root,
            timeout_seconds=self.timeout_seconds,
        )
        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else None
        logger.info("Pull request created: %s", url or "(no url reported)")
        return url


@dataclass(slots=True)
class Collaborators:
    planning: PlanningGenerator
    validator: SpecValidator
    vcs: VcsTool


def default_collaborators(
    settings: Settings,
    *,
    completion: CompletionProvider | None = None,
) -> Collaborators:
    """Command-based collaborators; completion planning when no planning command is set."""

    config = settings.collaborators
    planning: PlanningGenerator
    if not config.planning_command and completion is not None:
        planning = CompletionPlanningGenerator(
            completion,
            timeout_seconds=config.command_timeout_seconds,
        )
    else:
        planning = CommandPlanningGenerator(
            config.planning_command,
            timeout_seconds=config.command_timeout_seconds,
        )
    return Collaborators(
        planning=planning,
        validator=CommandSpecValidator(
            config.validate_command,
            timeout_seconds=config.command_timeout_seconds,
        ),
        vcs=GitVcs(pr_command=config.pr_command, timeout_seconds=config.command_timeout_seconds),
    )


def _command_ready(command: tuple[str, ...], *, purpose: str) -> bool:
    if not command:
        logger.info("No %s command configured; skipping", purpose)
        return False
    if not command_exists(command[0]):
        logger.info("%s command %s not found on PATH; skipping", purpose.capitalize(), command[0])
        return False
    return True


def _story_task(raw: Any) -> StoryTask:
    if not isinstance(raw, dict) or not raw.get("title"):
        raise PlanningError(f"Generated task is missing a title: {raw!r}")
    try:
        priority = int(raw.get("priority", DEFAULT_PRIORITY))
    except (TypeError, ValueError):
        priority = DEFAULT_PRIORITY
    return StoryTask(
        title=str(raw["title"]).strip(),
        description=str(raw.get("description") or "").strip(),
        priority=min(max(priority, 0), 4),
        depends_on=[str(item) for item in raw.get("depends_on") or ()],
    )


def _planning_prompt(idea: str) -> str:
    return (
        "Break the following product idea into delivery stories.\n"
        "Respond with JSON only, shaped as "
        '{"stories": [{"id": "story-01", "title": "...", "tasks": '
        '[{"title": "...", "description": "...", "priority": 2, "depends_on": ["..."]}]}]}.\n'
        "Priorities range from 0 (most urgent) to 4. depends_on lists task titles "
        "from the same story.\n\n"
        f"Idea:\n{idea}\n"
    )
