from __future__ import annotations

from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from pm_agent.approval.models import ActionType, CommentIssuePayload, SuggestedAction
from pm_agent.notifications import RecordingNotifier
from pm_agent.projects.models import ProjectView
from pm_agent.projects.repository import ProjectRepository
from pm_agent.tasks.models import (
    ApprovedBy,
    DependencyType,
    KanbanStatus,
    Priority,
    TaskCreate,
    TaskFilter,
    TaskStatus,
    TaskView,
)
from pm_agent.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Dependencies & Ordering"),
]


def _task(
    repository: TaskRepository,
    project: ProjectView,
    title: str,
    **overrides: object,
) -> TaskView:
    return repository.create_task(TaskCreate(project_id=project.id, title=title, **overrides))


def test_create_and_get_task_round_trips_fields(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    action = SuggestedAction(
        type=ActionType.COMMENT_ISSUE,
        description="Ping the reporter",
        payload=CommentIssuePayload(repo="acme/demo", issue_number=7, body="Any update?"),
    )
    created = _task(
        task_repository,
        project,
        "Triage issue",
        priority=Priority.HIGH,
        description="Look at #7",
        suggested_actions=[action],
    )

    loaded = task_repository.get_task(created.id)

    assert loaded is not None
    assert loaded.id.startswith("task-")
    assert loaded.title == "Triage issue"
    assert loaded.priority == Priority.HIGH
    assert loaded.status == TaskStatus.PENDING
    assert loaded.kanban_status == KanbanStatus.NOT_STARTED
    assert loaded.suggested_actions == [action]
    assert task_repository.get_task("task-missing") is None


def test_list_tasks_orders_by_priority_then_newest(
    task_repository: TaskRepository,
    project: ProjectView,
    clock,
) -> None:
    low = _task(task_repository, project, "low", priority=Priority.LOW)
    clock.advance(seconds=1)
    old_high = _task(task_repository, project, "old high", priority=Priority.HIGH)
    clock.advance(seconds=1)
    new_high = _task(task_repository, project, "new high", priority=Priority.HIGH)
    clock.advance(seconds=1)
    critical = _task(task_repository, project, "critical", priority=Priority.CRITICAL)

    ordered = [task.id for task in task_repository.list_tasks()]

    assert ordered == [critical.id, new_high.id, old_high.id, low.id]


def test_list_tasks_filters_by_status(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    first = _task(task_repository, project, "first")
    _task(task_repository, project, "second")
    task_repository.update_status(first.id, status=TaskStatus.APPROVED)

    approved = task_repository.list_tasks(TaskFilter(status=TaskStatus.APPROVED))

    assert [task.id for task in approved] == [first.id]
    assert task_repository.list_tasks(TaskFilter(project_id="other")) == []


def test_update_status_sets_completion_fields(
    task_repository: TaskRepository,
    project: ProjectView,
    clock,
) -> None:
    task = _task(task_repository, project, "finish me")

    updated = task_repository.update_status(
        task.id,
        status=TaskStatus.COMPLETED,
        kanban_status=KanbanStatus.DONE,
        completed_at=clock(),
        approved_by=ApprovedBy.WEB,
    )

    assert updated is not None
    assert updated.status == TaskStatus.COMPLETED
    assert updated.kanban_status == KanbanStatus.DONE
    assert updated.completed_at == clock()
    assert updated.approved_by == ApprovedBy.WEB
    assert task_repository.update_status("task-missing", status=TaskStatus.FAILED) is None


def test_cycle_is_refused_without_writing(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")

    assert task_repository.add_dependency(a.id, b.id).success

    result = task_repository.add_dependency(b.id, a.id)

    assert not result.success
    assert result.error == "Cannot add dependency: would create circular dependency"
    edges = task_repository.list_dependency_edges()
    assert [(edge.task_id, edge.depends_on_task_id) for edge in edges] == [(a.id, b.id)]


def test_transitive_cycle_is_refused(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")
    c = _task(task_repository, project, "C")
    assert task_repository.add_dependency(a.id, b.id).success
    assert task_repository.add_dependency(b.id, c.id).success

    assert task_repository.would_create_circular_dependency(c.id, a.id)
    assert not task_repository.add_dependency(c.id, a.id).success
    assert not task_repository.would_create_circular_dependency(a.id, c.id)


def test_self_dependency_is_a_cycle(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A")

    result = task_repository.add_dependency(a.id, a.id)

    assert not result.success
    assert result.error == "Cannot add dependency: would create circular dependency"


def test_missing_endpoints_are_reported(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A")

    assert task_repository.add_dependency("task-missing", a.id).error == "Task not found"
    missing_dependency = task_repository.add_dependency(a.id, "task-missing")
    assert missing_dependency.error == "Dependency task not found"


def test_duplicate_dependency_is_reported(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")
    assert task_repository.add_dependency(a.id, b.id).success

    result = task_repository.add_dependency(a.id, b.id, DependencyType.BLOCKS)

    assert not result.success
    assert result.error == "Dependency already exists"


def test_remove_dependency_reports_whether_a_row_was_deleted(
    task_repository: TaskRepository,
    project: ProjectView,
    notifier: RecordingNotifier,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")
    task_repository.add_dependency(a.id, b.id)

    assert task_repository.remove_dependency(a.id, b.id) is True
    assert task_repository.remove_dependency(a.id, b.id) is False
    assert notifier.types().count("task_dependency_removed") == 1
    # Removing the edge lifts the cycle restriction.
    assert task_repository.add_dependency(b.id, a.id).success


def test_dependencies_met_tracks_prerequisite_completion(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")
    c = _task(task_repository, project, "C")
    task_repository.add_dependency(a.id, b.id)
    task_repository.add_dependency(a.id, c.id)

    assert task_repository.are_dependencies_met(b.id)
    assert not task_repository.are_dependencies_met(a.id)

    task_repository.update_status(b.id, status=TaskStatus.COMPLETED)
    assert not task_repository.are_dependencies_met(a.id)

    task_repository.update_status(c.id, status=TaskStatus.COMPLETED)
    assert task_repository.are_dependencies_met(a.id)


def test_task_with_dependencies_lists_both_directions(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")
    c = _task(task_repository, project, "C")
    task_repository.add_dependency(a.id, b.id)
    task_repository.add_dependency(c.id, a.id)
    task_repository.update_status(b.id, status=TaskStatus.COMPLETED)

    details = task_repository.get_task_with_dependencies(a.id)

    assert details is not None
    assert [task.id for task in details.depends_on] == [b.id]
    assert [task.id for task in details.blocks] == [c.id]
    assert details.blocked_by == []
    assert task_repository.get_task_with_dependencies("task-missing") is None


def test_batch_hydration_matches_per_task_queries(
    task_repository: TaskRepository,
    project: ProjectView,
) -> None:
    a = _task(task_repository, project, "A", priority=Priority.CRITICAL)
    b = _task(task_repository, project, "B", priority=Priority.HIGH)
    c = _task(task_repository, project, "C", priority=Priority.LOW)
    task_repository.add_dependency(a.id, b.id)
    task_repository.add_dependency(a.id, c.id)
    task_repository.add_dependency(b.id, c.id)

    hydrated = {item.task.id: item for item in task_repository.get_tasks_with_dependencies()}

    assert list(hydrated) == [a.id, b.id, c.id]
    for task_id, item in hydrated.items():
        single = task_repository.get_task_with_dependencies(task_id)
        assert single is not None
        assert {task.id for task in item.depends_on} == {task.id for task in single.depends_on}
        assert {task.id for task in item.blocks} == {task.id for task in single.blocks}
    assert {task.id for task in hydrated[a.id].blocked_by} == {b.id, c.id}


def test_delete_task_cascades_edges(
    task_repository: TaskRepository,
    project: ProjectView,
    notifier: RecordingNotifier,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")
    task_repository.add_dependency(a.id, b.id)

    assert task_repository.delete_task(b.id) is True
    assert task_repository.delete_task(b.id) is False
    assert task_repository.list_dependency_edges() == []
    assert task_repository.are_dependencies_met(a.id)
    assert "task_deleted" in notifier.types()


def test_find_next_executable_task_prefers_priority_then_age(
    task_repository: TaskRepository,
    project: ProjectView,
    clock,
) -> None:
    assert task_repository.find_next_executable_task() is None

    older_high = _task(task_repository, project, "older high", priority=Priority.HIGH)
    clock.advance(seconds=1)
    newer_high = _task(task_repository, project, "newer high", priority=Priority.HIGH)
    clock.advance(seconds=1)
    pending_critical = _task(task_repository, project, "still pending", priority=Priority.CRITICAL)
    for task in (older_high, newer_high):
        task_repository.update_status(task.id, status=TaskStatus.APPROVED)

    next_task = task_repository.find_next_executable_task()

    assert next_task is not None
    assert next_task.id == older_high.id
    assert pending_critical.status == TaskStatus.PENDING


def test_dependency_events_are_published_after_commit(
    task_repository: TaskRepository,
    project: ProjectView,
    notifier: RecordingNotifier,
    clock,
) -> None:
    a = _task(task_repository, project, "A")
    b = _task(task_repository, project, "B")
    notifier.events.clear()

    task_repository.add_dependency(a.id, b.id)
    task_repository.add_dependency(b.id, a.id)

    assert notifier.types() == ["task_dependency_added"]
    envelope = notifier.events[0]
    assert envelope.data == {"taskId": a.id, "dependsOnTaskId": b.id, "type": "depends_on"}
    assert envelope.timestamp == int(clock().timestamp() * 1000)


def test_projects_repository_lists_by_name(db_path: Path, task_repository: TaskRepository) -> None:
    repository = ProjectRepository(db_path)
    try:
        repository.create_project(name="Zeta Service", repo="acme/zeta")
        repository.create_project(name="Alpha", repo="acme/alpha")
        projects = repository.list_projects()
    finally:
        repository.close()

    assert [project.id for project in projects] == ["alpha", "zeta-service"]


def test_task_requires_existing_project(task_repository: TaskRepository) -> None:
    with pytest.raises(IntegrityError, match="FOREIGN KEY"):
        task_repository.create_task(TaskCreate(project_id="ghost", title="orphan"))
