"""Parse planning story markdown into task drafts for the sync phase."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from bemadralphy.tasks.models import DEFAULT_PRIORITY, MAX_PRIORITY, MIN_PRIORITY

STORIES_DIR = Path("_bmad-output") / "stories"

_TASK_HEADING_RE = re.compile(r"^###\s+(?P<title>.+?)\s*$")
_STORY_HEADING_RE = re.compile(r"^#\s+(?P<title>.+?)\s*$")
_PRIORITY_RE = re.compile(r"^priority\s*:\s*(?P<value>-?\d+)\s*$", re.IGNORECASE)
_DEPENDS_RE = re.compile(r"^depends\s+on\s*:\s*(?P<value>.*)$", re.IGNORECASE)


@dataclass(slots=True)
class StoryTask:
    title: str
    description: str = ""
    priority: int = DEFAULT_PRIORITY
    depends_on: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Story:
    """One story file: ``<story_id>.md`` with ``### Task`` sections."""

    story_id: str
    title: str
    path: Path
    tasks: list[StoryTask] = field(default_factory=list)


def stories_dir(project_root: Path) -> Path:
    return project_root / STORIES_DIR


def load_stories(project_root: Path) -> list[Story]:
    directory = stories_dir(project_root)
    if not directory.is_dir():
        return []
    return [parse_story(path) for path in sorted(directory.glob("*.md"))]


def parse_story(path: Path) -> Story:
    """Parse one story file.

    ``# Heading`` names the story, each ``### Heading`` starts a task, and
    ``Priority: N`` / ``Depends on: A, B`` lines inside a task section set
    its priority and same-story dependencies by title. Other lines become
    the task description.
    """

    story = Story(story_id=path.stem, title=path.stem, path=path)
    current: StoryTask | None = None
    body: list[str] = []

    def flush() -> None:
        if current is not None:
            current.description = "\n".join(body).strip()
            story.tasks.append(current)

    for raw_line in path.read_text("utf-8").splitlines():
        line = raw_line.strip()
        task_match = _TASK_HEADING_RE.match(line)
        if task_match is not None:
            flush()
            current = StoryTask(title=task_match.group("title"))
            body = []
            continue
        if current is None:
            story_match = _STORY_HEADING_RE.match(line)
            if story_match is not None:
                story.title = story_match.group("title")
            continue
        priority_match = _PRIORITY_RE.match(line)
        if priority_match is not None:
            value = int(priority_match.group("value"))
            current.priority = min(max(value, MIN_PRIORITY), MAX_PRIORITY)
            continue
        depends_match = _DEPENDS_RE.match(line)
        if depends_match is not None:
            current.depends_on.extend(
                item.strip()
                for item in depends_match.group("value").split(",")
                if item.strip()
            )
            continue
        body.append(raw_line)
    flush()
    return story


def render_story(title: str, tasks: list[StoryTask]) -> str:
    """Render tasks back into the story markdown format."""

    lines = [f"# {title}", ""]
    for task in tasks:
        lines.append(f"### {task.title}")
        lines.append(f"Priority: {task.priority}")
        if task.depends_on:
            lines.append("Depends on: " + ", ".join(task.depends_on))
        if task.description:
            lines.append("")
            lines.append(task.description)
        lines.append("")
    return "\n".join(lines)
