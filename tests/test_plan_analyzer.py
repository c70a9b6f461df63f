from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from pm_agent.claude.echo_agent import SAMPLE_PLAN
from pm_agent.claude.runner import ClaudeCodeRunner
from pm_agent.claude.stream import AgentStep, StepType
from pm_agent.config import ClaudeSettings
from pm_agent.plans.analyzer import PreviousPlan, analyze_project_codebase, build_analysis_prompt
from pm_agent.projects.models import ProjectPhase, ProjectView

pytestmark = [
    allure.epic("Plans"),
    allure.feature("Codebase Analysis"),
]

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
PROJECT = ProjectView(
    id="demo",
    name="Demo",
    repo="acme/demo",
    phase=ProjectPhase.MVP,
    created_at=NOW,
    updated_at=NOW,
)


def test_prompt_for_new_plan() -> None:
    prompt = build_analysis_prompt(PROJECT, now=NOW)

    assert prompt.startswith("Ты анализируешь кодовую базу для создания плана разработки.")
    assert "Репозиторий: acme/demo" in prompt
    assert "Текущая фаза: mvp" in prompt
    assert 'generated_at: "2026-10-18T12:00:00.000Z"' in prompt
    assert "ПРЕДЫДУЩИЙ ПЛАН" not in prompt


def test_prompt_for_plan_update_embeds_previous_plan() -> None:
    prompt = build_analysis_prompt(
        PROJECT,
        previous_plan=PreviousPlan(markdown="# old plan", version=2, analysis_summary="3 done"),
        now=NOW,
    )

    assert "для обновления плана" in prompt
    assert "ПРЕДЫДУЩИЙ ПЛАН (версия 2):\n# old plan" in prompt
    assert "Предыдущая сводка: 3 done" in prompt


@pytest.mark.parametrize("streaming", [False, True])
def test_analysis_parses_cli_plan(
    echo_claude_settings: ClaudeSettings,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    streaming: bool,
) -> None:
    monkeypatch.setenv("PM_AGENT_ECHO_MODE", "plan")
    steps: list[AgentStep] = []

    result = analyze_project_codebase(
        ClaudeCodeRunner(echo_claude_settings),
        tmp_path,
        PROJECT,
        on_step=steps.append if streaming else None,
    )

    assert result.success
    assert result.plan_markdown == SAMPLE_PLAN.strip()
    assert result.analysis is not None
    assert [task.title for task in result.analysis.suggested_tasks] == [
        "Add authentication layer",
        "Write integration tests",
    ]
    if streaming:
        assert steps[-1].type == StepType.COMPLETE
    else:
        assert steps == []


def test_analysis_failure_reports_cli_output(
    echo_claude_settings: ClaudeSettings,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PM_AGENT_ECHO_MODE", "fail")

    result = analyze_project_codebase(ClaudeCodeRunner(echo_claude_settings), tmp_path, PROJECT)

    assert not result.success
    assert result.analysis is None
    assert "authentication failed" in (result.error or "")
