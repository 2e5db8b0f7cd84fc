"""Phase bodies other than execute; each takes and returns the pipeline context."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any

import yaml

from bemadralphy.errors import PlanningError
from bemadralphy.pipeline.context import PipelineContext
from bemadralphy.pipeline.stories import Story, load_stories
from bemadralphy.storage.common import utc_now
from bemadralphy.tasks.models import TaskCreate, generate_task_id

logger = logging.getLogger(__name__)

IDEA_FILES: tuple[str, ...] = ("idea.md", "plan.md")
INTAKE_FILE = "intake.yaml"
STEERING_FILE = "steering.yaml"
SUMMARY_FILE = "summary.json"

DEFAULT_AUDIENCE_PROFILE = "product-team"
DEFAULT_TEAM_SIZE = "2-10"
DEFAULT_DELIVERY_VELOCITY = "1-3 features/week"

_AUDIENCE_ALIASES: dict[str, tuple[str, ...]] = {
    "solo-dev": ("solo", "solo-dev", "indie", "freelancer"),
    "agency-team": ("agency", "agency-team", "consultancy"),
    "enterprise-team": ("enterprise", "enterprise-team", "large-team"),
    "product-team": ("product-team", "product", "startup", "team"),
}
_AUDIENCE_KEYS: tuple[str, ...] = ("audience_profile", "audience", "icp", "target_audience")


def intake_phase(ctx: PipelineContext) -> PipelineContext:
    """Read idea.md (or plan.md) and write normalized decisions to intake.yaml."""

    source = _find_idea_file(ctx.project_root)
    if source is None:
        raise PlanningError("No idea.md or plan.md found in project root.")

    front_matter, body = split_front_matter(source.read_text("utf-8"))
    decisions = normalize_decisions(front_matter)
    intake = {
        "source_file": source.name,
        "created_at": utc_now().isoformat(),
        "decisions": decisions,
        "idea": body.strip(),
    }
    _write_yaml(ctx.state_dir / INTAKE_FILE, intake)
    ctx.intake = intake
    logger.info("Intake written from %s", source.name)
    return ctx


def planning_phase(ctx: PipelineContext) -> PipelineContext:
    _require_intake(ctx)
    ctx.services.collaborators.planning.generate(ctx)
    stories = load_stories(ctx.project_root)
    task_count = sum(len(story.tasks) for story in stories)
    if task_count == 0:
        raise PlanningError("Planning produced no tasks in _bmad-output/stories.")
    ctx.stories = stories
    ctx.data["planning"] = {"stories": len(stories), "tasks": task_count}
    logger.info("Planning found %d task(s) in %d stor(y/ies)", task_count, len(stories))
    return ctx


def steering_phase(ctx: PipelineContext) -> PipelineContext:
    """Write steering.yaml with intake decisions and the execution posture."""

    intake = _require_intake(ctx)
    steering = {
        "run_id": ctx.run_id,
        "mode": ctx.options.mode.value,
        "engine": ctx.options.engine,
        "model": ctx.options.model,
        "decisions": intake.get("decisions", {}),
        "execution": ctx.execution_policy.to_dict(),
        "budget_usd": ctx.options.budget_usd,
    }
    _write_yaml(ctx.state_dir / STEERING_FILE, steering)
    return ctx


def scaffold_phase(ctx: PipelineContext) -> PipelineContext:
    created = ctx.services.collaborators.vcs.ensure_repository(ctx.project_root)
    ctx.data["scaffold"] = {"repository_created": created}
    return ctx


def sync_phase(ctx: PipelineContext) -> PipelineContext:
    """Create one task per story section; reruns only add what is missing."""

    stories = _require_stories(ctx)
    store = ctx.services.task_store
    created = 0
    existing = 0
    edges = 0

    for story in stories:
        ids_by_title = {
            task.title.casefold(): generate_task_id(story.story_id, task.title)
            for task in story.tasks
        }
        for task in story.tasks:
            task_id = ids_by_title[task.title.casefold()]
            if store.get(task_id) is not None:
                existing += 1
                continue
            store.create(
                TaskCreate(
                    task_id=task_id,
                    story_id=story.story_id,
                    title=task.title,
                    description=task.description,
                    priority=task.priority,
                ),
            )
            created += 1
        for task in story.tasks:
            task_id = ids_by_title[task.title.casefold()]
            for dependency_title in task.depends_on:
                depends_on_id = ids_by_title.get(dependency_title.casefold())
                if depends_on_id is None:
                    logger.warning(
                        "Task %r in story %s depends on unknown task %r; ignoring",
                        task.title,
                        story.story_id,
                        dependency_title,
                    )
                    continue
                if store.add_dependency(task_id, depends_on_id):
                    edges += 1

    ctx.data["sync"] = {"created": created, "existing": existing, "edges": edges}
    logger.info("Sync created %d task(s), %d already present", created, existing)
    return ctx


def verify_phase(ctx: PipelineContext) -> PipelineContext:
    ctx.services.collaborators.validator.validate(ctx)
    ctx.data["verify"] = ctx.services.task_store.status_counts()
    return ctx


def post_phase(ctx: PipelineContext) -> PipelineContext:
    """Write summary.json, persist the cost log, and open a PR when requested."""

    services = ctx.services
    pr_url = None
    if ctx.options.create_pr:
        pr_url = services.collaborators.vcs.create_pull_request(ctx)
    summary = {
        "run_id": ctx.run_id,
        "mode": ctx.options.mode.value,
        "engine": ctx.options.engine,
        "execution": ctx.execution_policy.to_dict(),
        "tasks": services.task_store.status_counts(),
        "cost_usd": round(services.cost.total_usd(), 6),
        "pull_request": pr_url,
        "finished_at": utc_now().isoformat(),
    }
    ctx.state_dir.mkdir(parents=True, exist_ok=True)
    (ctx.state_dir / SUMMARY_FILE).write_text(
        json.dumps(summary, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
        "utf-8",
    )
    services.cost.persist(run_id=ctx.run_id)
    ctx.data["post"] = {"pull_request": pr_url}
    return ctx


def split_front_matter(contents: str) -> tuple[dict[str, Any], str]:
    """Split ``---`` delimited YAML front matter from the markdown body."""

    lines = contents.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, contents
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            raw = "\n".join(lines[1:index])
            body = "\n".join(lines[index + 1 :])
            try:
                parsed = yaml.safe_load(raw) or {}
            except yaml.YAMLError as error:
                raise PlanningError(f"Invalid front matter: {error}") from error
            if not isinstance(parsed, dict):
                raise PlanningError("Front matter must be a mapping.")
            return parsed, body
    return {}, contents


def normalize_decisions(front_matter: dict[str, Any]) -> dict[str, Any]:
    decisions = dict(front_matter)
    decisions["audience_profile"] = _infer_audience(front_matter) or DEFAULT_AUDIENCE_PROFILE
    decisions["team_size"] = _normalize_team_size(front_matter.get("team_size"))
    velocity = front_matter.get("delivery_velocity")
    decisions["delivery_velocity"] = (
        velocity.strip()
        if isinstance(velocity, str) and velocity.strip()
        else DEFAULT_DELIVERY_VELOCITY
    )
    return decisions


def _infer_audience(front_matter: dict[str, Any]) -> str | None:
    for key in _AUDIENCE_KEYS:
        value = front_matter.get(key)
        if not isinstance(value, str):
            continue
        lowered = value.strip().lower()
        for profile, aliases in _AUDIENCE_ALIASES.items():
            if lowered in aliases:
                return profile
    return None


def _normalize_team_size(value: Any) -> str:
    if isinstance(value, bool):
        return DEFAULT_TEAM_SIZE
    if isinstance(value, int | float) and math.isfinite(value):
        return str(max(1, int(value)))
    if isinstance(value, str) and value.strip():
        return value.strip()
    return DEFAULT_TEAM_SIZE


def _find_idea_file(project_root: Path) -> Path | None:
    for name in IDEA_FILES:
        candidate = project_root / name
        if candidate.is_file():
            return candidate
    return None


def _require_intake(ctx: PipelineContext) -> dict[str, Any]:
    if ctx.intake is not None:
        return ctx.intake
    path = ctx.state_dir / INTAKE_FILE
    if not path.is_file():
        raise PlanningError("intake.yaml not found; run the intake phase first.")
    loaded = yaml.safe_load(path.read_text("utf-8")) or {}
    if not isinstance(loaded, dict):
        raise PlanningError(f"{path} must contain a mapping.")
    ctx.intake = loaded
    return loaded


def _require_stories(ctx: PipelineContext) -> list[Story]:
    if not ctx.stories:
        ctx.stories = load_stories(ctx.project_root)
    return ctx.stories


def _write_yaml(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), "utf-8")

