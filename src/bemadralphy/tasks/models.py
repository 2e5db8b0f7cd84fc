"""Domain models for project tasks and dependency edges."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

DEFAULT_PRIORITY = 2
MIN_PRIORITY = 0
MAX_PRIORITY = 4
BLOCKS = "blocks"

_SLUG_RE = re.compile(r"[^a-z0-9]+")


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"


UNRESOLVED_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED},
)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    story_id: str = ""
    description: str = ""
    task_id: str | None = None
    priority: int = DEFAULT_PRIORITY
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and scheduler logic."""

    task_id: str
    seq: int
    story_id: str
    title: str
    description: str
    status: TaskStatus
    priority: int
    dependencies: list[str]
    assignee: str | None
    output: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.task_id,
            "story_id": self.story_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "assignee": self.assignee,
            "output": self.output,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


def generate_task_id(story_id: str, title: str) -> str:
    """Stable id from story id and title: ``<slug>-<hash6>``.

    The same story/title pair always maps to the same id, so re-syncing
    a story never duplicates its tasks.
    """

    digest = hashlib.sha256(f"{story_id}\n{title.strip()}".encode()).hexdigest()[:6]
    slug = _SLUG_RE.sub("-", f"{story_id} {title}".lower()).strip("-")[:48].rstrip("-")
    return f"{slug or 'task'}-{digest}"


def validate_priority(priority: int) -> int:
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}: {priority}")
    return priority
