"""SQLModel ORM tables for the project task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "status IN ('open','in_progress','blocked','done','failed')",
            name="ck_tasks_status",
        ),
        CheckConstraint("priority >= 0 AND priority <= 4", name="ck_tasks_priority"),
        Index("idx_tasks_ready_order", "status", "priority", "created_at", "seq"),
    )

    task_id: str = Field(primary_key=True)
    seq: int = Field(default=0)
    story_id: str = Field(default="", index=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    status: str = Field(default="open", index=True)
    priority: int = Field(default=2)
    assignee: str | None = None
    output: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskDependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_dependencies_blocker", "depends_on_id"),
    )

    task_id: str = Field(primary_key=True)
    depends_on_id: str = Field(primary_key=True)
    dep_type: str = Field(default="blocks")
