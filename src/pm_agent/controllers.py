"""Controllers for pm-agent CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from pm_agent.approval.executor import GitHubActionExecutor
from pm_agent.approval.models import ActionPayloadError, PendingActionStatus, PendingActionView
from pm_agent.approval.queue import ApprovalQueue
from pm_agent.approval.repository import ActionRepository
from pm_agent.claude.runner import ClaudeCodeRunner
from pm_agent.claude.stream import AgentStep
from pm_agent.config import Settings
from pm_agent.notifications import EventBroadcaster, EventEnvelope
from pm_agent.plans.analyzer import analyze_project_codebase
from pm_agent.plans.parser import CodebaseAnalysisResult, parse_analysis_from_markdown
from pm_agent.projects.models import ProjectPhase
from pm_agent.projects.repository import ProjectRepository
from pm_agent.tasks.models import (
    DependencyType,
    GeneratedBy,
    KanbanStatus,
    Priority,
    TaskCreate,
    TaskFilter,
    TaskStatus,
    TaskType,
    TaskView,
)
from pm_agent.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CliResult:
    """Lines to print plus whether the command should exit non-zero."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class ProjectsAddCommand:
    db_path: Path | None
    name: str
    repo: str
    project_id: str | None
    phase: str


@dataclass(slots=True)
class TasksAddCommand:
    """CLI input for manual task creation."""

    db_path: Path | None
    project_id: str
    title: str
    task_type: str
    priority: str
    description: str


@dataclass(slots=True)
class TasksListCommand:
    db_path: Path | None
    project_id: str | None
    status: str | None
    kanban_status: str | None


@dataclass(slots=True)
class TaskRefCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TasksSetStatusCommand:
    db_path: Path | None
    task_id: str
    status: str
    kanban_status: str | None


@dataclass(slots=True)
class DependencyCommand:
    db_path: Path | None
    task_id: str
    depends_on_task_id: str
    dependency_type: str = DependencyType.DEPENDS_ON.value


@dataclass(slots=True)
class ActionsAddCommand:
    """CLI input for queueing an action; `action_json` is `{type, description, payload}`."""

    db_path: Path | None
    action_json: str
    task_id: str | None
    timeout_minutes: int | None


@dataclass(slots=True)
class ActionsListCommand:
    db_path: Path | None
    status: str | None
    task_id: str | None


@dataclass(slots=True)
class ActionDecisionCommand:
    db_path: Path | None
    action_id: str
    reason: str | None = None


@dataclass(slots=True)
class ClaudeRunCommand:
    prompt: str
    work_dir: Path
    stream: bool
    read_only: bool
    timeout_seconds: int | None


@dataclass(slots=True)
class PlanAnalyzeCommand:
    db_path: Path | None
    project_id: str
    repo_path: Path
    stream: bool
    output_path: Path | None


@dataclass(slots=True)
class PlanParseCommand:
    plan_path: Path
    output_format: str = "text"


class PmAgentCliController:
    """CLI controller for projects, tasks, approvals, Claude runs and plans."""

    def add_project(self, command: ProjectsAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            project = repos.projects.create_project(
                name=command.name,
                repo=command.repo,
                project_id=command.project_id,
                phase=ProjectPhase(command.phase),
            )
        return [f"Project created: {project.id} ({project.repo})"]

    def list_projects(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repositories(settings) as repos:
            projects = repos.projects.list_projects()
        if not projects:
            return ["No projects."]
        return [
            f"{project.id} repo={project.repo} phase={project.phase.value}" for project in projects
        ]

    def add_task(self, command: TasksAddCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            if repos.projects.get_project(command.project_id) is None:
                return CliResult([f"Project not found: {command.project_id}"], success=False)
            task = repos.tasks.create_task(
                TaskCreate(
                    project_id=command.project_id,
                    title=command.title,
                    type=TaskType(command.task_type),
                    priority=Priority(command.priority),
                    description=command.description,
                    generated_by=GeneratedBy.MANUAL,
                ),
            )
        return CliResult([f"Task created: {task.id}"])

    def list_tasks(self, command: TasksListCommand) -> list[str]:
        """List tasks by priority, marking the ones still blocked by prerequisites."""

        settings = Settings.from_env(db_path=command.db_path)
        task_filter = TaskFilter(
            project_id=command.project_id,
            status=TaskStatus(command.status) if command.status else None,
            kanban_status=KanbanStatus(command.kanban_status) if command.kanban_status else None,
        )
        with _repositories(settings) as repos:
            hydrated = repos.tasks.get_tasks_with_dependencies(task_filter)
        if not hydrated:
            return ["No tasks."]
        lines = [f"Tasks: {len(hydrated)}"]
        for item in hydrated:
            blocked = ",".join(task.id for task in item.blocked_by)
            lines.append(
                f"  {_task_line(item.task)}" + (f" blocked_by={blocked}" if blocked else ""),
            )
        return lines

    def show_task(self, command: TaskRefCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            details = repos.tasks.get_task_with_dependencies(command.task_id)
            if details is None:
                return CliResult([f"Task not found: {command.task_id}"], success=False)
            ready = repos.tasks.are_dependencies_met(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.id}",
            f"Title: {task.title}",
            f"Project: {task.project_id}",
            f"Type: {task.type.value}",
            f"Priority: {task.priority.value}",
            f"Status: {task.status.value} ({task.kanban_status.value})",
            f"Generated at: {task.generated_at.isoformat()}",
            f"Dependencies met: {'yes' if ready else 'no'}",
        ]
        if task.completed_at is not None:
            lines.append(f"Completed at: {task.completed_at.isoformat()}")
        if task.description:
            lines.append(f"Description: {task.description}")
        for dependency in details.depends_on:
            lines.append(f"  depends on {_task_line(dependency)}")
        for dependent in details.blocks:
            lines.append(f"  blocks {_task_line(dependent)}")
        for action in task.suggested_actions:
            lines.append(f"  suggested {action.type.value}: {action.description}")
        return CliResult(lines)

    def set_task_status(self, command: TasksSetStatusCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            task = repos.tasks.update_status(
                command.task_id,
                status=TaskStatus(command.status),
                kanban_status=(
                    KanbanStatus(command.kanban_status) if command.kanban_status else None
                ),
            )
        if task is None:
            return CliResult([f"Task not found: {command.task_id}"], success=False)
        return CliResult([f"Task {task.id}: {task.status.value} ({task.kanban_status.value})"])

    def delete_task(self, command: TaskRefCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            deleted = repos.tasks.delete_task(command.task_id)
        if not deleted:
            return CliResult([f"Task not found: {command.task_id}"], success=False)
        return CliResult([f"Task deleted: {command.task_id}"])

    def next_task(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repositories(settings) as repos:
            task = repos.tasks.find_next_executable_task()
        if task is None:
            return ["No executable task."]
        return [f"Next: {_task_line(task)}"]

    def add_dependency(self, command: DependencyCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            result = repos.tasks.add_dependency(
                command.task_id,
                command.depends_on_task_id,
                DependencyType(command.dependency_type),
            )
        if not result.success:
            return CliResult([result.error or "Dependency not added"], success=False)
        return CliResult([f"Dependency added: {command.task_id} -> {command.depends_on_task_id}"])

    def remove_dependency(self, command: DependencyCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            removed = repos.tasks.remove_dependency(command.task_id, command.depends_on_task_id)
        if not removed:
            return CliResult(["Dependency not found"], success=False)
        return CliResult(
            [f"Dependency removed: {command.task_id} -> {command.depends_on_task_id}"],
        )

    def add_action(self, command: ActionsAddCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            raw = json.loads(command.action_json)
        except json.JSONDecodeError as error:
            return CliResult([f"Invalid action JSON: {error}"], success=False)
        if not isinstance(raw, dict):
            return CliResult(["Action JSON must be an object."], success=False)

        with _queue(settings) as queue:
            try:
                action_id = queue.add_action(
                    raw,
                    task_id=command.task_id,
                    timeout_minutes=command.timeout_minutes,
                )
            except ActionPayloadError as error:
                return CliResult([f"Invalid action: {error}"], success=False)
            view = queue.get_action(action_id)
        lines = [f"Action queued: {action_id}"]
        if view is not None:
            lines.append(f"Expires at: {view.expires_at.isoformat()}")
        return CliResult(lines)

    def list_actions(self, command: ActionsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            actions = queue.list_actions(
                status=PendingActionStatus(command.status) if command.status else None,
                task_id=command.task_id,
            )
        if not actions:
            return ["No actions."]
        return [_action_line(view) for view in actions]

    def pending_actions(self, db_path: Path | None) -> list[str]:
        """Expire overdue actions, then list what still awaits a decision."""

        settings = Settings.from_env(db_path=db_path)
        with _queue(settings) as queue:
            actions = queue.get_pending()
        if not actions:
            return ["No pending actions."]
        return [f"Pending: {len(actions)}", *(f"  {_action_line(view)}" for view in actions)]

    def approve_action(self, command: ActionDecisionCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            result = queue.approve(command.action_id)
        if not result.success:
            return CliResult(
                [f"Approval failed for {command.action_id}: {result.error}"],
                success=False,
            )
        lines = [f"Action approved: {command.action_id}"]
        for key, value in sorted((result.result or {}).items()):
            lines.append(f"  {key}: {value}")
        return CliResult(lines)

    def reject_action(self, command: ActionDecisionCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            result = queue.reject(command.action_id, command.reason)
        if not result.success:
            return CliResult(
                [f"Rejection failed for {command.action_id}: {result.error}"],
                success=False,
            )
        return CliResult([f"Action rejected: {command.action_id}"])

    def claude_status(self) -> CliResult:
        settings = Settings.from_env()
        status = ClaudeCodeRunner(settings.claude).status()
        if not status.available:
            return CliResult([f"Claude Code CLI unavailable: {status.error}"], success=False)
        return CliResult([f"Claude Code CLI available: {status.version}"])

    def claude_run(self, command: ClaudeRunCommand) -> CliResult:
        settings = Settings.from_env()
        runner = ClaudeCodeRunner(settings.claude)
        step_lines: list[str] = []
        if command.stream:
            result = runner.run_streaming(
                command.work_dir,
                command.prompt,
                lambda step: step_lines.append(_step_line(step)),
                timeout_seconds=command.timeout_seconds,
                allow_edits=not command.read_only,
            )
        else:
            result = runner.run(
                command.work_dir,
                command.prompt,
                timeout_seconds=command.timeout_seconds,
                allow_edits=not command.read_only,
            )
        lines = [*step_lines, result.output]
        if not result.success:
            lines.append(f"Failed after {result.attempts_made} attempt(s): {result.error}")
        return CliResult(lines, success=result.success)

    def analyze_plan(self, command: PlanAnalyzeCommand) -> CliResult:
        """Run a read-only codebase analysis and summarize the mined plan."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as repos:
            project = repos.projects.get_project(command.project_id)
        if project is None:
            return CliResult([f"Project not found: {command.project_id}"], success=False)

        step_lines: list[str] = []
        analysis = analyze_project_codebase(
            ClaudeCodeRunner(settings.claude),
            command.repo_path,
            project,
            on_step=(lambda step: step_lines.append(_step_line(step))) if command.stream else None,
        )
        if not analysis.success or analysis.analysis is None:
            return CliResult(
                [*step_lines, f"Analysis failed: {analysis.error}"],
                success=False,
            )
        if command.output_path is not None and analysis.plan_markdown is not None:
            command.output_path.write_text(analysis.plan_markdown, encoding="utf-8")
            step_lines.append(f"Plan written: {command.output_path}")
        return CliResult([*step_lines, *_analysis_lines(analysis.analysis)])

    def parse_plan(self, command: PlanParseCommand) -> list[str]:
        analysis = parse_analysis_from_markdown(command.plan_path.read_text(encoding="utf-8"))
        if command.output_format == "json":
            return [json.dumps(analysis.to_dict(), ensure_ascii=False, indent=2)]
        return _analysis_lines(analysis)


@dataclass(slots=True)
class _Repositories:
    projects: ProjectRepository
    tasks: TaskRepository
    actions: ActionRepository


@contextmanager
def _repositories(
    settings: Settings,
    broadcaster: EventBroadcaster | None = None,
) -> Iterator[_Repositories]:
    settings.validate()
    repos = _Repositories(
        projects=ProjectRepository(
            db_path=settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ),
        tasks=TaskRepository(
            db_path=settings.db_path,
            notifier=broadcaster,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ),
        actions=ActionRepository(
            db_path=settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ),
    )
    # One migration run covers every table.
    repos.tasks.init_schema()
    try:
        yield repos
    finally:
        repos.actions.close()
        repos.tasks.close()
        repos.projects.close()


@contextmanager
def _queue(settings: Settings) -> Iterator[ApprovalQueue]:
    broadcaster = EventBroadcaster()
    broadcaster.subscribe(_log_event)
    with _repositories(settings, broadcaster) as repos:
        yield ApprovalQueue(
            actions=repos.actions,
            tasks=repos.tasks,
            executor=GitHubActionExecutor(
                gh_binary=settings.approval.gh_binary,
                timeout_seconds=settings.approval.gh_timeout_seconds,
            ),
            notifier=broadcaster,
            default_timeout_minutes=settings.approval.timeout_minutes,
            claim_stale_seconds=settings.approval.claim_stale_seconds,
        )


def _task_line(task: TaskView) -> str:
    return (
        f"{task.id} [{task.priority.value}] {task.status.value}/{task.kanban_status.value} "
        f"{task.type.value}: {task.title}"
    )


def _action_line(view: PendingActionView) -> str:
    return (
        f"{view.id} {view.status.value} {view.action.type.value} task={view.task_id} "
        f"expires_at={view.expires_at.isoformat()} {view.action.description}"
    )


def _step_line(step: AgentStep) -> str:
    label = step.type.value
    if step.tool_name:
        label = f"{label}:{step.tool_name}"
    return f"[{label}] {step.content}"


def _analysis_lines(analysis: CodebaseAnalysisResult) -> list[str]:
    lines = [
        f"Implemented: {len(analysis.implemented)}",
        f"Missing: {len(analysis.missing)}",
        f"Technical debt: {len(analysis.technical_debt)}",
        f"Risks: {len(analysis.risks)}",
        f"Suggested tasks: {len(analysis.suggested_tasks)}",
    ]
    for task in analysis.suggested_tasks:
        lines.append(
            f"  [{task.phase.value}] [{task.priority.value}] {task.type.value}: {task.title}",
        )
    if analysis.notes:
        lines.append(f"Notes: {analysis.notes}")
    return lines


def _log_event(envelope: EventEnvelope) -> None:
    logger.info("Event %s: %s", envelope.type, json.dumps(envelope.data, ensure_ascii=False))
