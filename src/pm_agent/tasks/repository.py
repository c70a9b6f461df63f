"""Task persistence and the task dependency graph."""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import case, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from pm_agent.approval.models import ActionPayloadError, SuggestedAction
from pm_agent.notifications import EventEnvelope, Notifier
from pm_agent.storage.alembic_runner import upgrade_head
from pm_agent.storage.common import (
    build_sqlite_engine,
    new_entity_id,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from pm_agent.storage.sqlmodel_models import TaskDependencyRow, TaskRow
from pm_agent.tasks.models import (
    PRIORITY_RANK,
    ApprovedBy,
    DependencyResult,
    DependencyType,
    GeneratedBy,
    KanbanStatus,
    Priority,
    TaskCreate,
    TaskDependencyView,
    TaskFilter,
    TaskStatus,
    TaskType,
    TaskView,
    TaskWithDependencies,
)

logger = logging.getLogger(__name__)

_PRIORITY_ORDER = case(
    {priority.value: rank for priority, rank in PRIORITY_RANK.items()},
    value=col(TaskRow.priority),
    else_=len(PRIORITY_RANK) + 1,
)
_UNSET: Any = object()


class TaskRepository:
    """Task CRUD and dependency graph backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        notifier: Notifier | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.notifier = notifier
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Insert a new task."""

        now = self.clock()
        task_id = payload.task_id or new_entity_id("task", now)
        with Session(self.engine) as session:
            row = TaskRow(
                id=task_id,
                project_id=payload.project_id,
                type=payload.type.value,
                priority=payload.priority.value,
                title=payload.title,
                description=payload.description,
                context=payload.context,
                suggested_actions_json=_dump_actions(payload.suggested_actions),
                status=payload.status.value,
                kanban_status=payload.kanban_status.value,
                generated_at=to_db_datetime(now),
                completed_at=None,
                approved_by=None,
                generated_by=payload.generated_by.value if payload.generated_by else None,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)
        logger.info("Created task %s in project %s", view.id, view.project_id)
        self._publish("task_upserted", view.to_dict())
        return view

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, task_filter: TaskFilter | None = None) -> list[TaskView]:
        """List tasks ordered by priority, newest first within a priority."""

        with Session(self.engine) as session:
            rows = session.exec(_apply_filter(select(TaskRow), task_filter)).all()
            return [_to_task_view(row) for row in rows]

    def update_status(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        kanban_status: KanbanStatus | None = None,
        completed_at: datetime | None = _UNSET,
        approved_by: ApprovedBy | None = _UNSET,
    ) -> TaskView | None:
        """Update lifecycle fields; returns None when the task does not exist."""

        values: dict[str, Any] = {}
        if status is not None:
            values["status"] = status.value
        if kanban_status is not None:
            values["kanban_status"] = kanban_status.value
        if completed_at is not _UNSET:
            values["completed_at"] = to_db_datetime(completed_at) if completed_at else None
        if approved_by is not _UNSET:
            values["approved_by"] = approved_by.value if approved_by else None

        with Session(self.engine) as session:
            if values:
                result = session.exec(
                    sa_update(TaskRow).where(col(TaskRow.id) == task_id).values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return None
                session.commit()
            row = session.get(TaskRow, task_id)
            if row is None:
                return None
            view = _to_task_view(row)
        if values:
            self._publish("task_upserted", view.to_dict())
        return view

    def delete_task(self, task_id: str) -> bool:
        """Delete a task; dependency edges go with it."""

        with Session(self.engine) as session:
            result = session.exec(sa_delete(TaskRow).where(col(TaskRow.id) == task_id))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        self._publish("task_deleted", {"id": task_id})
        return True

    def find_next_executable_task(self) -> TaskView | None:
        """Highest-priority approved task still waiting in backlog, oldest first."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.status == TaskStatus.APPROVED.value,
                    col(TaskRow.kanban_status).in_(
                        [KanbanStatus.BACKLOG.value, KanbanStatus.NOT_STARTED.value],
                    ),
                )
                .order_by(_PRIORITY_ORDER, col(TaskRow.generated_at).asc())
                .limit(1),
            ).first()
            return _to_task_view(row) if row is not None else None

    def add_dependency(
        self,
        task_id: str,
        depends_on_task_id: str,
        dependency_type: DependencyType = DependencyType.DEPENDS_ON,
    ) -> DependencyResult:
        """Add edge `task_id -> depends_on_task_id` unless it would close a cycle."""

        with Session(self.engine) as session:
            if session.get(TaskRow, task_id) is None:
                return DependencyResult(success=False, error="Task not found")
            if session.get(TaskRow, depends_on_task_id) is None:
                return DependencyResult(success=False, error="Dependency task not found")

        if self.would_create_circular_dependency(task_id, depends_on_task_id):
            return DependencyResult(
                success=False,
                error="Cannot add dependency: would create circular dependency",
            )

        with Session(self.engine) as session:
            session.add(
                TaskDependencyRow(
                    task_id=task_id,
                    depends_on_task_id=depends_on_task_id,
                    type=dependency_type.value,
                    created_at=to_db_datetime(self.clock()),
                ),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                if "UNIQUE" in str(error.orig).upper():
                    return DependencyResult(success=False, error="Dependency already exists")
                raise

        logger.info("Task %s now depends on %s", task_id, depends_on_task_id)
        self._publish(
            "task_dependency_added",
            {
                "taskId": task_id,
                "dependsOnTaskId": depends_on_task_id,
                "type": dependency_type.value,
            },
        )
        return DependencyResult(success=True)

    def remove_dependency(self, task_id: str, depends_on_task_id: str) -> bool:
        """Delete one edge; True iff a row was removed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskDependencyRow).where(
                    col(TaskDependencyRow.task_id) == task_id,
                    col(TaskDependencyRow.depends_on_task_id) == depends_on_task_id,
                ),
            )
            if result.rowcount < 1:
                session.rollback()
                return False
            session.commit()
        self._publish(
            "task_dependency_removed",
            {"taskId": task_id, "dependsOnTaskId": depends_on_task_id},
        )
        return True

    def would_create_circular_dependency(self, task_id: str, depends_on_task_id: str) -> bool:
        """Breadth-first walk from `depends_on_task_id` along existing edges.

        Reaching `task_id` means the new edge would close a cycle. The start
        node is checked before expansion, so a self-dependency is a cycle.
        """

        visited: set[str] = set()
        queue: deque[str] = deque([depends_on_task_id])
        with Session(self.engine) as session:
            while queue:
                current = queue.popleft()
                if current == task_id:
                    return True
                if current in visited:
                    continue
                visited.add(current)
                next_ids = session.exec(
                    select(TaskDependencyRow.depends_on_task_id).where(
                        TaskDependencyRow.task_id == current,
                    ),
                ).all()
                queue.extend(next_ids)
        return False

    def get_dependencies(self, task_id: str) -> list[TaskView]:
        """Tasks that `task_id` waits on."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .join(TaskDependencyRow, col(TaskDependencyRow.depends_on_task_id) == TaskRow.id)
                .where(TaskDependencyRow.task_id == task_id)
                .order_by(_PRIORITY_ORDER, col(TaskRow.generated_at).desc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def get_dependents(self, task_id: str) -> list[TaskView]:
        """Tasks that wait on `task_id`."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .join(TaskDependencyRow, col(TaskDependencyRow.task_id) == TaskRow.id)
                .where(TaskDependencyRow.depends_on_task_id == task_id)
                .order_by(_PRIORITY_ORDER, col(TaskRow.generated_at).desc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_dependency_edges(self, task_id: str | None = None) -> list[TaskDependencyView]:
        with Session(self.engine) as session:
            statement = select(TaskDependencyRow).order_by(col(TaskDependencyRow.created_at).asc())
            if task_id is not None:
                statement = statement.where(TaskDependencyRow.task_id == task_id)
            rows = session.exec(statement).all()
            return [
                TaskDependencyView(
                    task_id=row.task_id,
                    depends_on_task_id=row.depends_on_task_id,
                    type=DependencyType(row.type),
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    def are_dependencies_met(self, task_id: str) -> bool:
        """True when no prerequisite of `task_id` is left uncompleted."""

        with Session(self.engine) as session:
            open_count = session.exec(
                select(func.count())
                .select_from(TaskDependencyRow)
                .join(TaskRow, col(TaskRow.id) == TaskDependencyRow.depends_on_task_id)
                .where(
                    TaskDependencyRow.task_id == task_id,
                    TaskRow.status != TaskStatus.COMPLETED.value,
                ),
            ).one()
        return open_count == 0

    def get_task_with_dependencies(self, task_id: str) -> TaskWithDependencies | None:
        task = self.get_task(task_id)
        if task is None:
            return None
        return TaskWithDependencies(
            task=task,
            depends_on=self.get_dependencies(task_id),
            blocks=self.get_dependents(task_id),
        )

    def get_tasks_with_dependencies(
        self,
        task_filter: TaskFilter | None = None,
    ) -> list[TaskWithDependencies]:
        """Hydrate a task listing with two batch queries instead of two per task."""

        tasks = self.list_tasks(task_filter)
        if not tasks:
            return []
        task_ids = [task.id for task in tasks]

        depends_on: dict[str, list[TaskView]] = {}
        blocks: dict[str, list[TaskView]] = {}
        with Session(self.engine) as session:
            dependency_rows = session.exec(
                select(TaskDependencyRow.task_id, TaskRow)
                .join(TaskRow, col(TaskRow.id) == TaskDependencyRow.depends_on_task_id)
                .where(col(TaskDependencyRow.task_id).in_(task_ids)),
            ).all()
            for owner_id, row in dependency_rows:
                depends_on.setdefault(owner_id, []).append(_to_task_view(row))

            dependent_rows = session.exec(
                select(TaskDependencyRow.depends_on_task_id, TaskRow)
                .join(TaskRow, col(TaskRow.id) == TaskDependencyRow.task_id)
                .where(col(TaskDependencyRow.depends_on_task_id).in_(task_ids)),
            ).all()
            for owner_id, row in dependent_rows:
                blocks.setdefault(owner_id, []).append(_to_task_view(row))

        return [
            TaskWithDependencies(
                task=task,
                depends_on=depends_on.get(task.id, []),
                blocks=blocks.get(task.id, []),
            )
            for task in tasks
        ]

    def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(EventEnvelope.create(event_type, data, now=self.clock()))


def _apply_filter(statement: Any, task_filter: TaskFilter | None) -> Any:
    if task_filter is not None:
        if task_filter.project_id is not None:
            statement = statement.where(TaskRow.project_id == task_filter.project_id)
        if task_filter.status is not None:
            statement = statement.where(TaskRow.status == task_filter.status.value)
        if task_filter.kanban_status is not None:
            statement = statement.where(TaskRow.kanban_status == task_filter.kanban_status.value)
    return statement.order_by(_PRIORITY_ORDER, col(TaskRow.generated_at).desc())


def _dump_actions(actions: list[SuggestedAction]) -> str:
    return json.dumps([action.to_dict() for action in actions], ensure_ascii=False)


def _load_actions(raw_json: str, *, task_id: str) -> list[SuggestedAction]:
    parsed = json.loads(raw_json or "[]")
    if not isinstance(parsed, list):
        return []
    actions: list[SuggestedAction] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        try:
            actions.append(SuggestedAction.from_dict(item))
        except ActionPayloadError as error:
            logger.warning("Skipping stored action of task %s: %s", task_id, error)
    return actions


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        id=row.id,
        project_id=row.project_id,
        type=TaskType(row.type),
        priority=Priority(row.priority),
        title=row.title,
        description=row.description,
        context=row.context,
        suggested_actions=_load_actions(row.suggested_actions_json, task_id=row.id),
        status=TaskStatus(row.status),
        kanban_status=KanbanStatus(row.kanban_status),
        generated_at=to_utc_aware(row.generated_at),
        completed_at=to_utc_aware(row.completed_at) if row.completed_at is not None else None,
        approved_by=ApprovedBy(row.approved_by) if row.approved_by is not None else None,
        generated_by=GeneratedBy(row.generated_by) if row.generated_by is not None else None,
    )
