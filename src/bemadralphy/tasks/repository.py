"""Persistent task store and dependency-aware scheduler backed by SQLite."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from bemadralphy.errors import DependencyCycleError, DuplicateTaskError, TaskNotFoundError
from bemadralphy.storage.alembic_runner import upgrade_head
from bemadralphy.storage.common import as_utc, build_sqlite_engine, db_now
from bemadralphy.storage.sqlmodel_models import TaskDependencyRow, TaskRow
from bemadralphy.tasks.graph import blocked_closure, find_path
from bemadralphy.tasks.models import (
    BLOCKS,
    UNRESOLVED_STATUSES,
    TaskCreate,
    TaskStatus,
    TaskView,
    generate_task_id,
    validate_priority,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"story_id", "title", "description", "status", "priority", "assignee", "output", "error"},
)


class TaskStore:
    """Task persistence facade backed by SQLModel + SQLite.

    All mutations go through one store-level lock, so concurrent updates of
    the same task id from execute-phase workers never interleave.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._lock = threading.RLock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.engine)

    def create(self, payload: TaskCreate) -> TaskView:
        """Insert a task and its ``blocks`` edges; id is derived when not given."""

        task_id = payload.task_id or generate_task_id(payload.story_id, payload.title)
        priority = validate_priority(payload.priority)
        with self._lock, Session(self.engine) as session:
            if session.get(TaskRow, task_id) is not None:
                raise DuplicateTaskError(task_id)
            for depends_on_id in dict.fromkeys(payload.dependencies):
                self._ensure_acyclic(session, task_id=task_id, depends_on_id=depends_on_id)

            now = db_now()
            row = TaskRow(
                task_id=task_id,
                seq=self._next_seq(session),
                story_id=payload.story_id,
                title=payload.title,
                description=payload.description,
                status=TaskStatus.OPEN.value,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            for depends_on_id in dict.fromkeys(payload.dependencies):
                session.add(
                    TaskDependencyRow(task_id=task_id, depends_on_id=depends_on_id, dep_type=BLOCKS),
                )
            session.commit()
            session.refresh(row)
            logger.debug("Created task %s (%s)", task_id, payload.title)
            return self._to_view(session, row)

    def update(self, task_id: str, **changes: Any) -> TaskView:
        """Merge ``changes`` into the task; keeps ``closed_at`` set iff status is done."""

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {', '.join(sorted(unknown))}")
        if "status" in changes:
            changes["status"] = TaskStatus(changes["status"]).value
        if "priority" in changes:
            validate_priority(int(changes["priority"]))

        with self._lock, Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            now = db_now()
            was_done = row.status == TaskStatus.DONE.value
            for name, value in changes.items():
                setattr(row, name, value)
            if row.status != TaskStatus.DONE.value:
                row.closed_at = None
            elif not was_done or row.closed_at is None:
                row.closed_at = now
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_view(session, row)

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return None
            return self._to_view(session, row)

    def require(self, task_id: str) -> TaskView:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_all(self) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(_ordered(select(TaskRow))).all()
            return self._to_views(session, rows)

    def get_by_status(self, status: TaskStatus | str) -> list[TaskView]:
        status_value = TaskStatus(status).value
        with Session(self.engine) as session:
            rows = session.exec(
                _ordered(select(TaskRow).where(TaskRow.status == status_value)),
            ).all()
            return self._to_views(session, rows)

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow.status, func.count()).group_by(TaskRow.status),
            ).all()
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    def add_dependency(self, task_id: str, depends_on_id: str) -> bool:
        """Insert a ``blocks`` edge if absent. Returns False when it already existed."""

        with self._lock, Session(self.engine) as session:
            existing = session.get(TaskDependencyRow, (task_id, depends_on_id))
            if existing is not None:
                return False
            self._ensure_acyclic(session, task_id=task_id, depends_on_id=depends_on_id)
            session.add(
                TaskDependencyRow(task_id=task_id, depends_on_id=depends_on_id, dep_type=BLOCKS),
            )
            session.commit()
            return True

    def get_ready(self) -> list[TaskView]:
        """Open tasks with no open/in-progress/blocked transitive predecessor."""

        with Session(self.engine) as session:
            statuses = dict(session.exec(select(TaskRow.task_id, TaskRow.status)).all())
            edges = _edge_pairs(session)
            unresolved = {
                task_id
                for task_id, status in statuses.items()
                if TaskStatus(status) in UNRESOLVED_STATUSES
            }
            blocked = blocked_closure(edges=edges, unresolved=unresolved)
            rows = session.exec(
                _ordered(select(TaskRow).where(TaskRow.status == TaskStatus.OPEN.value)),
            ).all()
            return self._to_views(session, [row for row in rows if row.task_id not in blocked])

    def claim(self, task_id: str, *, assignee: str) -> TaskView | None:
        """Atomically move an open task to in_progress; None if someone else won."""

        with self._lock, Session(self.engine) as session:
            now = db_now()
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.OPEN.value,
                )
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    assignee=assignee,
                    error=None,
                    closed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(TaskRow, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            return self._to_view(session, row)

    def release(self, task_id: str, *, output: str | None = None) -> TaskView:
        """Return a claimed task to the open pool without recording an outcome."""

        return self.update(task_id, status=TaskStatus.OPEN, assignee=None, output=output)

    def recover_stale(self, *, exclude_assignee: str | None = None) -> list[str]:
        """Reopen ``in_progress`` tasks claimed by anyone but ``exclude_assignee``.

        A run that died mid-execute leaves its claims behind; they would never
        be offered again and would keep their dependents blocked.
        """

        with self._lock, Session(self.engine) as session:
            statement = select(TaskRow.task_id).where(
                TaskRow.status == TaskStatus.IN_PROGRESS.value,
            )
            if exclude_assignee is not None:
                statement = statement.where(
                    or_(
                        col(TaskRow.assignee).is_(None),
                        col(TaskRow.assignee) != exclude_assignee,
                    ),
                )
            stale_ids = [str(task_id) for task_id in session.exec(statement).all()]
            if not stale_ids:
                return []
            session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id).in_(stale_ids),
                    col(TaskRow.status) == TaskStatus.IN_PROGRESS.value,
                )
                .values(status=TaskStatus.OPEN.value, assignee=None, updated_at=db_now()),
            )
            session.commit()
        for task_id in stale_ids:
            logger.warning("Recovered stale in-progress task %s", task_id)
        return stale_ids

    def close_task(self, task_id: str, *, output: str | None = None) -> TaskView:
        return self.update(task_id, status=TaskStatus.DONE, output=output, error=None)

    def fail(self, task_id: str, *, error: str) -> TaskView:
        return self.update(task_id, status=TaskStatus.FAILED, error=error)

    def retry(self, task_id: str) -> TaskView:
        """Reset a task to open and clear its last error."""

        return self.update(task_id, status=TaskStatus.OPEN, error=None, assignee=None)

    def dependencies_of(self, task_id: str) -> list[str]:
        with Session(self.engine) as session:
            return _dependencies_by_task(session, [task_id]).get(task_id, [])

    def _ensure_acyclic(self, session: Session, *, task_id: str, depends_on_id: str) -> None:
        graph: dict[str, list[str]] = {}
        for source, target in _edge_pairs(session):
            graph.setdefault(source, []).append(target)
        path = find_path(graph, start=depends_on_id, goal=task_id)
        if path is not None:
            raise DependencyCycleError(task_id, depends_on_id, [task_id, *path])

    def _next_seq(self, session: Session) -> int:
        current = session.exec(select(func.max(TaskRow.seq))).one()
        return int(current or 0) + 1

    def _to_views(self, session: Session, rows: Iterable[TaskRow]) -> list[TaskView]:
        materialized = list(rows)
        dependencies = _dependencies_by_task(session, [row.task_id for row in materialized])
        return [_to_task_view(row, dependencies.get(row.task_id, [])) for row in materialized]

    def _to_view(self, session: Session, row: TaskRow) -> TaskView:
        return self._to_views(session, [row])[0]


def _ordered(statement: Any) -> Any:
    return statement.order_by(
        col(TaskRow.priority).asc(),
        col(TaskRow.created_at).asc(),
        col(TaskRow.seq).asc(),
    )


def _edge_pairs(session: Session) -> list[tuple[str, str]]:
    rows = session.exec(
        select(TaskDependencyRow.task_id, TaskDependencyRow.depends_on_id).where(
            TaskDependencyRow.dep_type == BLOCKS,
        ),
    ).all()
    return [(str(task_id), str(depends_on_id)) for task_id, depends_on_id in rows]


def _dependencies_by_task(session: Session, task_ids: list[str]) -> dict[str, list[str]]:
    if not task_ids:
        return {}
    rows = session.exec(
        select(TaskDependencyRow)
        .where(col(TaskDependencyRow.task_id).in_(task_ids))
        .order_by(col(TaskDependencyRow.depends_on_id).asc()),
    ).all()
    result: dict[str, list[str]] = {}
    for row in rows:
        result.setdefault(row.task_id, []).append(row.depends_on_id)
    return result


def _to_task_view(row: TaskRow, dependencies: list[str]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        seq=row.seq,
        story_id=row.story_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=row.priority,
        dependencies=dependencies,
        assignee=row.assignee,
        output=row.output,
        error=row.error,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        closed_at=as_utc(row.closed_at) if row.closed_at is not None else None,
    )
