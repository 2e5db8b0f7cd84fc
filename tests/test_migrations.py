from __future__ import annotations

from pathlib import Path

import allure
from sqlalchemy import text

from bemadralphy.tasks.repository import TaskStore

pytestmark = [
    allure.epic("Task Scheduling"),
    allure.feature("Task Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "nested" / "tasks.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name IN ('tasks', 'task_dependencies')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert version == "20261019_0001"
    assert tables == ["task_dependencies", "tasks"]
    assert str(journal_mode).lower() == "wal"
    store.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "tasks.db"
    first = TaskStore(db_path)
    first.init_schema()
    first.close()

    second = TaskStore(db_path)
    second.init_schema()
    assert second.get_all() == []
    second.close()
