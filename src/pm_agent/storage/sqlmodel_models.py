"""SQLModel ORM tables for pm-agent storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
)
from sqlmodel import Field, SQLModel

MANUAL_TASK_ID = "manual"


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    repo: str = Field(index=True)
    phase: str = Field(default="planning")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_project_status", "project_id", "status"),)

    id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    type: str = Field(default="development")
    priority: str = Field(default="medium", index=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    context: str = Field(default="", sa_column=Column(Text, nullable=False))
    suggested_actions_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status: str = Field(default="pending", index=True)
    kanban_status: str = Field(default="not_started", index=True)
    generated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    approved_by: str | None = None
    generated_by: str | None = None


class TaskDependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "depends_on_task_id", name="pk_task_dependencies"),
        Index("idx_task_dependencies_depends_on", "depends_on_task_id"),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    depends_on_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    type: str = Field(default="depends_on")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PendingActionRow(SQLModel, table=True):
    __tablename__ = "pending_actions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_pending_actions_status_expires", "status", "expires_at"),)

    id: str = Field(primary_key=True)
    task_id: str = Field(default=MANUAL_TASK_ID, index=True)
    action_type: str = Field(index=True)
    action_description: str = Field(default="", sa_column=Column(Text, nullable=False))
    action_payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str = Field(default="pending")
    telegram_message_id: int | None = None
    execution_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
