"""Create task and dependency-edge tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("story_id", sa.String(), nullable=False, server_default=""),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("assignee", sa.String(), nullable=True),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('open','in_progress','blocked','done','failed')",
            name="ck_tasks_status",
        ),
        sa.CheckConstraint("priority >= 0 AND priority <= 4", name="ck_tasks_priority"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index("ix_tasks_story_id", "tasks", ["story_id"], unique=False)
    op.create_index(
        "idx_tasks_ready_order",
        "tasks",
        ["status", "priority", "created_at", "seq"],
        unique=False,
    )

    op.create_table(
        "task_dependencies",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("depends_on_id", sa.String(), nullable=False),
        sa.Column("dep_type", sa.String(), nullable=False, server_default="blocks"),
        sa.PrimaryKeyConstraint("task_id", "depends_on_id"),
    )
    op.create_index(
        "idx_task_dependencies_blocker",
        "task_dependencies",
        ["depends_on_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_task_dependencies_blocker", table_name="task_dependencies")
    op.drop_table("task_dependencies")
    op.drop_index("idx_tasks_ready_order", table_name="tasks")
    op.drop_index("ix_tasks_story_id", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_table("tasks")
