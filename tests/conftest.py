"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from pm_agent.approval.models import ActionType, ExecutionResult
from pm_agent.approval.queue import ApprovalQueue
from pm_agent.approval.repository import ActionRepository
from pm_agent.config import ClaudeSettings, RetrySettings
from pm_agent.notifications import RecordingNotifier
from pm_agent.projects.models import ProjectView
from pm_agent.projects.repository import ProjectRepository
from pm_agent.tasks.repository import TaskRepository

ECHO_AGENT_BINARY = f"{shlex.quote(sys.executable)} -m pm_agent.claude.echo_agent"


class FakeClock:
    """Deterministic clock shared by repositories and the queue."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeExecutor:
    """Records executed actions and answers with a canned result."""

    def __init__(self, result: ExecutionResult | None = None) -> None:
        self.result = result or ExecutionResult(success=True, data={"message": "ok"})
        self.calls: list[tuple[ActionType, object]] = []

    def execute(self, action_type: ActionType, payload: object) -> ExecutionResult:
        self.calls.append((action_type, payload))
        return self.result


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 18, 12, 0, tzinfo=UTC))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pm-agent.db"


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def task_repository(
    db_path: Path,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path, notifier=notifier, clock=clock)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def action_repository(
    db_path: Path,
    task_repository: TaskRepository,
) -> Iterator[ActionRepository]:
    repository = ActionRepository(db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def project(db_path: Path, task_repository: TaskRepository, clock: FakeClock) -> ProjectView:
    repository = ProjectRepository(db_path, clock=clock)
    try:
        return repository.create_project(name="Demo", repo="acme/demo", project_id="demo")
    finally:
        repository.close()


@pytest.fixture()
def echo_claude_settings(monkeypatch: pytest.MonkeyPatch) -> ClaudeSettings:
    """Claude settings pointing at the local fake CLI with instant, short timeouts."""

    monkeypatch.delenv("PM_AGENT_ECHO_MODE", raising=False)
    src_dir = str(Path(__file__).resolve().parents[1] / "src")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(filter(None, [src_dir, os.getenv("PYTHONPATH")])),
    )
    return ClaudeSettings(
        binary=ECHO_AGENT_BINARY,
        timeout_seconds=30,
        streaming_timeout_seconds=30,
        agent_task_timeout_seconds=30,
        kill_grace_seconds=1.0,
        retry=RetrySettings(
            max_attempts=3,
            initial_delay_seconds=0.0,
            max_delay_seconds=0.0,
            backoff_multiplier=2.0,
        ),
    )


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def approval_queue(
    action_repository: ActionRepository,
    task_repository: TaskRepository,
    executor: FakeExecutor,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> ApprovalQueue:
    return ApprovalQueue(
        actions=action_repository,
        tasks=task_repository,
        executor=executor,
        notifier=notifier,
        default_timeout_minutes=60,
        claim_stale_seconds=600,
        clock=clock,
    )
