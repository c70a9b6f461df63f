"""Domain models for tasks and the task dependency graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pm_agent.approval.models import SuggestedAction
from pm_agent.storage.common import to_epoch_millis


class TaskStatus(str, Enum):
    """Task approval/execution lifecycle."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class KanbanStatus(str, Enum):
    """Board column for a task."""

    NOT_STARTED = "not_started"
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK: dict[Priority, int] = {
    Priority.CRITICAL: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}


class TaskType(str, Enum):
    DEVELOPMENT = "development"
    REVIEW = "review"
    PLANNING = "planning"
    MAINTENANCE = "maintenance"
    INVESTIGATION = "investigation"
    NOTIFICATION = "notification"
    DOCUMENTATION = "documentation"
    SECURITY = "security"
    IMPROVEMENT = "improvement"


class ApprovedBy(str, Enum):
    TELEGRAM = "telegram"
    WEB = "web"
    AUTO = "auto"


class GeneratedBy(str, Enum):
    HEALTH_CHECK = "health_check"
    DEEP_ANALYSIS = "deep_analysis"
    MANUAL = "manual"
    CHAT = "chat"
    PLAN_SYNC = "plan_sync"


class DependencyType(str, Enum):
    DEPENDS_ON = "depends_on"
    BLOCKS = "blocks"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    project_id: str
    title: str
    type: TaskType = TaskType.DEVELOPMENT
    priority: Priority = Priority.MEDIUM
    description: str = ""
    context: str = ""
    suggested_actions: list[SuggestedAction] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    kanban_status: KanbanStatus = KanbanStatus.NOT_STARTED
    generated_by: GeneratedBy | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for queue, CLI and dependency logic."""

    id: str
    project_id: str
    type: TaskType
    priority: Priority
    title: str
    description: str
    context: str
    suggested_actions: list[SuggestedAction]
    status: TaskStatus
    kanban_status: KanbanStatus
    generated_at: datetime
    completed_at: datetime | None = None
    approved_by: ApprovedBy | None = None
    generated_by: GeneratedBy | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "type": self.type.value,
            "priority": self.priority.value,
            "title": self.title,
            "description": self.description,
            "context": self.context,
            "suggestedActions": [action.to_dict() for action in self.suggested_actions],
            "status": self.status.value,
            "kanbanStatus": self.kanban_status.value,
            "generatedAt": to_epoch_millis(self.generated_at),
            "completedAt": (
                to_epoch_millis(self.completed_at) if self.completed_at is not None else None
            ),
            "approvedBy": self.approved_by.value if self.approved_by is not None else None,
            "generatedBy": self.generated_by.value if self.generated_by is not None else None,
        }


@dataclass(slots=True)
class TaskFilter:
    """Optional filters for task listings."""

    project_id: str | None = None
    status: TaskStatus | None = None
    kanban_status: KanbanStatus | None = None


@dataclass(slots=True)
class TaskDependencyView:
    task_id: str
    depends_on_task_id: str
    type: DependencyType
    created_at: datetime


@dataclass(slots=True)
class DependencyResult:
    """Outcome of a dependency mutation; `error` is a display-ready sentence."""

    success: bool
    error: str | None = None


@dataclass(slots=True)
class TaskWithDependencies:
    """Task with the tasks it waits on and the tasks waiting on it."""

    task: TaskView
    depends_on: list[TaskView] = field(default_factory=list)
    blocks: list[TaskView] = field(default_factory=list)

    @property
    def blocked_by(self) -> list[TaskView]:
        """Prerequisites that are not completed yet."""

        return [task for task in self.depends_on if task.status != TaskStatus.COMPLETED]
