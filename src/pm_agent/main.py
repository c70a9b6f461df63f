"""CLI entrypoint for pm-agent."""

import logging
from pathlib import Path

import rich_click as click

from pm_agent import __version__
from pm_agent.approval.models import PendingActionStatus
from pm_agent.config import Settings
from pm_agent.controllers import (
    ActionDecisionCommand,
    ActionsAddCommand,
    ActionsListCommand,
    CliResult,
    ClaudeRunCommand,
    DependencyCommand,
    PlanAnalyzeCommand,
    PlanParseCommand,
    PmAgentCliController,
    ProjectsAddCommand,
    TaskRefCommand,
    TasksAddCommand,
    TasksListCommand,
    TasksSetStatusCommand,
)
from pm_agent.projects.models import ProjectPhase
from pm_agent.tasks.models import DependencyType, KanbanStatus, Priority, TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PmAgentCliController()


def _choices(enum_type: type) -> click.Choice:
    return click.Choice([member.value for member in enum_type])


@click.group()
@click.version_option(version=__version__, prog_name="pm-agent")
def pm_agent() -> None:
    """Project manager agent CLI.

    Logging verbosity follows `PM_AGENT_LOG_LEVEL` (default `WARNING`).
    """

    settings = Settings.from_env()
    try:
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@pm_agent.group()
def projects() -> None:
    """Project registry commands."""


@projects.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Project display name.")
@click.option("--repo", required=True, help="GitHub repository, owner/name.")
@click.option("--id", "project_id", default=None, help="Project id, defaults to a name slug.")
@click.option(
    "--phase",
    type=_choices(ProjectPhase),
    default=ProjectPhase.PLANNING.value,
    show_default=True,
    help="Current project phase.",
)
def projects_add(
    db_path: Path | None,
    name: str,
    repo: str,
    project_id: str | None,
    phase: str,
) -> None:
    """Register a project."""

    _emit_lines(
        CONTROLLER.add_project(
            ProjectsAddCommand(
                db_path=db_path,
                name=name,
                repo=repo,
                project_id=project_id,
                phase=phase,
            ),
        ),
    )


@projects.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def projects_list(db_path: Path | None) -> None:
    """List registered projects."""

    _emit_lines(CONTROLLER.list_projects(db_path))


@pm_agent.group()
def tasks() -> None:
    """Task and dependency commands."""


@tasks.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", required=True, help="Owning project id.")
@click.option("--title", required=True, help="Task title.")
@click.option(
    "--type",
    "task_type",
    type=_choices(TaskType),
    default=TaskType.DEVELOPMENT.value,
    show_default=True,
    help="Task type.",
)
@click.option(
    "--priority",
    type=_choices(Priority),
    default=Priority.MEDIUM.value,
    show_default=True,
    help="Task priority.",
)
@click.option("--description", default="", help="Task description.")
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    title: str,
    task_type: str,
    priority: str,
    description: str,
) -> None:
    """Create a task manually."""

    _emit_result(
        CONTROLLER.add_task(
            TasksAddCommand(
                db_path=db_path,
                project_id=project_id,
                title=title,
                task_type=task_type,
                priority=priority,
                description=description,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", default=None, help="Optional project filter.")
@click.option("--status", type=_choices(TaskStatus), default=None, help="Optional status filter.")
@click.option(
    "--kanban-status",
    type=_choices(KanbanStatus),
    default=None,
    help="Optional kanban column filter.",
)
def tasks_list(
    db_path: Path | None,
    project_id: str | None,
    status: str | None,
    kanban_status: str | None,
) -> None:
    """List tasks ordered by priority, with their blockers."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TasksListCommand(
                db_path=db_path,
                project_id=project_id,
                status=status,
                kanban_status=kanban_status,
            ),
        ),
    )


@tasks.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its dependencies and dependents."""

    _emit_result(CONTROLLER.show_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@tasks.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kanban-status", type=_choices(KanbanStatus), default=None, help="Kanban column.")
@click.argument("task_id")
@click.argument("status", type=_choices(TaskStatus))
def tasks_status(
    db_path: Path | None,
    kanban_status: str | None,
    task_id: str,
    status: str,
) -> None:
    """Set task status."""

    _emit_result(
        CONTROLLER.set_task_status(
            TasksSetStatusCommand(
                db_path=db_path,
                task_id=task_id,
                status=status,
                kanban_status=kanban_status,
            ),
        ),
    )


@tasks.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task and its dependency edges."""

    _emit_result(CONTROLLER.delete_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@tasks.command("next")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_next(db_path: Path | None) -> None:
    """Show the highest-priority approved task still waiting in the backlog."""

    _emit_lines(CONTROLLER.next_task(db_path))


@tasks.command("depend")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "dependency_type",
    type=_choices(DependencyType),
    default=DependencyType.DEPENDS_ON.value,
    show_default=True,
    help="Dependency edge type.",
)
@click.argument("task_id")
@click.argument("depends_on_task_id")
def tasks_depend(
    db_path: Path | None,
    dependency_type: str,
    task_id: str,
    depends_on_task_id: str,
) -> None:
    """Make TASK_ID wait for DEPENDS_ON_TASK_ID. Cycles are refused."""

    _emit_result(
        CONTROLLER.add_dependency(
            DependencyCommand(
                db_path=db_path,
                task_id=task_id,
                depends_on_task_id=depends_on_task_id,
                dependency_type=dependency_type,
            ),
        ),
    )


@tasks.command("undepend")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@click.argument("depends_on_task_id")
def tasks_undepend(db_path: Path | None, task_id: str, depends_on_task_id: str) -> None:
    """Remove a dependency edge."""

    _emit_result(
        CONTROLLER.remove_dependency(
            DependencyCommand(
                db_path=db_path,
                task_id=task_id,
                depends_on_task_id=depends_on_task_id,
            ),
        ),
    )


@pm_agent.group()
def actions() -> None:
    """Approval queue commands."""


@actions.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task", "task_id", default=None, help="Originating task id.")
@click.option(
    "--timeout-minutes",
    type=click.IntRange(min=0),
    default=None,
    help="Approval window; defaults to PM_AGENT_APPROVAL_TIMEOUT_MINUTES.",
)
@click.argument("action_json")
def actions_add(
    db_path: Path | None,
    task_id: str | None,
    timeout_minutes: int | None,
    action_json: str,
) -> None:
    """Queue an action for approval.

    `ACTION_JSON` is an object such as
    `{"type": "comment_issue", "description": "...", "payload": {...}}`.
    """

    _emit_result(
        CONTROLLER.add_action(
            ActionsAddCommand(
                db_path=db_path,
                action_json=action_json,
                task_id=task_id,
                timeout_minutes=timeout_minutes,
            ),
        ),
    )


@actions.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=_choices(PendingActionStatus),
    default=None,
    help="Optional status filter.",
)
@click.option("--task", "task_id", default=None, help="Optional task filter.")
def actions_list(db_path: Path | None, status: str | None, task_id: str | None) -> None:
    """List actions in any status, newest first."""

    _emit_lines(
        CONTROLLER.list_actions(
            ActionsListCommand(db_path=db_path, status=status, task_id=task_id),
        ),
    )


@actions.command("pending")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def actions_pending(db_path: Path | None) -> None:
    """Expire overdue actions and list the ones awaiting a decision."""

    _emit_lines(CONTROLLER.pending_actions(db_path))


@actions.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("action_id")
def actions_approve(db_path: Path | None, action_id: str) -> None:
    """Approve and execute a pending action."""

    _emit_result(
        CONTROLLER.approve_action(ActionDecisionCommand(db_path=db_path, action_id=action_id)),
    )


@actions.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default=None, help="Optional rejection reason.")
@click.argument("action_id")
def actions_reject(db_path: Path | None, reason: str | None, action_id: str) -> None:
    """Reject a pending action."""

    _emit_result(
        CONTROLLER.reject_action(
            ActionDecisionCommand(db_path=db_path, action_id=action_id, reason=reason),
        ),
    )


@pm_agent.group()
def claude() -> None:
    """Claude Code CLI commands."""


@claude.command("status")
def claude_status() -> None:
    """Check that the Claude Code CLI starts and report its version."""

    _emit_result(CONTROLLER.claude_status())


@claude.command("run")
@click.option(
    "--work-dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path(),
    help="Directory the CLI runs in.",
)
@click.option("--stream/--no-stream", default=False, help="Print agent steps as they arrive.")
@click.option("--read-only", is_flag=True, default=False, help="Do not allow file edits.")
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout; defaults to PM_AGENT_CLAUDE_*TIMEOUT_SECONDS.",
)
@click.argument("prompt")
def claude_run(
    work_dir: Path,
    stream: bool,
    read_only: bool,
    timeout_seconds: int | None,
    prompt: str,
) -> None:
    """Run one prompt through the Claude Code CLI with retry."""

    _emit_result(
        CONTROLLER.claude_run(
            ClaudeRunCommand(
                prompt=prompt,
                work_dir=work_dir,
                stream=stream,
                read_only=read_only,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@pm_agent.group()
def plan() -> None:
    """Development plan commands."""


@plan.command("analyze")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option(
    "--repo-path",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path(),
    help="Local checkout to analyze.",
)
@click.option("--stream/--no-stream", default=False, help="Print agent steps as they arrive.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the extracted plan markdown to this file.",
)
def plan_analyze(
    db_path: Path | None,
    project_id: str,
    repo_path: Path,
    stream: bool,
    output_path: Path | None,
) -> None:
    """Ask Claude Code for a development plan and summarize it."""

    _emit_result(
        CONTROLLER.analyze_plan(
            PlanAnalyzeCommand(
                db_path=db_path,
                project_id=project_id,
                repo_path=repo_path,
                stream=stream,
                output_path=output_path,
            ),
        ),
    )


@plan.command("parse")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.argument("plan_path", type=click.Path(path_type=Path, dir_okay=False, exists=True))
def plan_parse(output_format: str, plan_path: Path) -> None:
    """Parse a plan markdown file into implemented, missing and suggested tasks."""

    _emit_lines(
        CONTROLLER.parse_plan(PlanParseCommand(plan_path=plan_path, output_format=output_format)),
    )


def _emit_result(result: CliResult) -> None:
    if not result.success:
        raise click.ClickException("\n".join(result.lines))
    _emit_lines(result.lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pm_agent()
