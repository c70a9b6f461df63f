"""Heuristic extraction of structured facts from CLI-produced plan markdown.

The input is whatever the model happened to write, in English or Russian.
Everything here is keyword tables and regexes, not a grammar.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pm_agent.tasks.models import Priority, TaskType

_FRONTMATTER_START = re.compile(r"---\s*\nproject_id:")
_DUPLICATE_FRONTMATTER = "---\nproject_id:"
_PLAN_HEADER = re.compile(r"# (План разработки|Project Plan):")
_PLAN_HEADERS = ("# План разработки:", "# Project Plan:")
_END_MARKERS = ("Now I have", "Теперь у меня", "Let me generate", "Давай сгенерирую", "\n\n\n\n")
_MIN_PLAN_CHARS_BEFORE_MARKER = 100

_IMPLEMENTED_ITEM = re.compile(r"- \[x\] (.+)", re.IGNORECASE)
_TODO_ITEM = re.compile(r"- \[ \] (.+)")
_PRIORITY = re.compile(
    r"(?:priority|приоритет):\s*(critical|high|medium|low|критический|высокий|средний|низкий)",
    re.IGNORECASE,
)
_PRIORITY_SUFFIX = re.compile(r"\s*[-—]\s*(?:priority|приоритет):\s*\w+", re.IGNORECASE)
_TRAILING_DASH = re.compile(r"\s*[-—]\s*$")
_BULLET = re.compile(r"- (.+)")

_RUSSIAN_PRIORITIES: dict[str, Priority] = {
    "критический": Priority.CRITICAL,
    "высокий": Priority.HIGH,
    "средний": Priority.MEDIUM,
    "низкий": Priority.LOW,
}

# First matching row wins.
_TYPE_KEYWORDS: tuple[tuple[TaskType, tuple[str, ...]], ...] = (
    (TaskType.REVIEW, ("test", "review", "тест")),
    (TaskType.DOCUMENTATION, ("doc", "readme", "документ")),
    (TaskType.SECURITY, ("security", "auth", "безопасн", "аутентиф")),
    (TaskType.IMPROVEMENT, ("refactor", "improve", "рефакт", "улучш")),
    (TaskType.MAINTENANCE, ("fix", "bug", "исправ", "баг")),
)


class PlanPhase(str, Enum):
    MVP = "MVP"
    ENHANCEMENT = "Enhancement"
    POLISH = "Polish"


_PHASE_MARKERS: tuple[tuple[PlanPhase, tuple[str, ...]], ...] = (
    (PlanPhase.ENHANCEMENT, ("### Phase 2", "### Фаза 2", "### Улучшения")),
    (PlanPhase.POLISH, ("### Phase 3", "### Фаза 3", "### Полировка")),
)


@dataclass(slots=True)
class SuggestedTask:
    title: str
    description: str
    priority: Priority
    type: TaskType
    phase: PlanPhase

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "type": self.type.value,
            "phase": self.phase.value,
        }


@dataclass(slots=True)
class CodebaseAnalysisResult:
    """Facts mined from one plan document."""

    implemented: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    technical_debt: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    suggested_tasks: list[SuggestedTask] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "implemented": list(self.implemented),
            "missing": list(self.missing),
            "technicalDebt": list(self.technical_debt),
            "risks": list(self.risks),
            "suggestedTasks": [task.to_dict() for task in self.suggested_tasks],
            "notes": self.notes,
        }


def extract_plan_markdown(output: str, *, now: datetime | None = None) -> str:
    """Cut the plan document out of raw CLI output.

    Streaming output repeats the final text in the `result` event, so the
    plan often appears twice; only the first copy is kept, and chatter that
    follows it is dropped.
    """

    frontmatter = _FRONTMATTER_START.search(output)
    if frontmatter is not None:
        plan = output[frontmatter.start() :]
        duplicate = plan.find(_DUPLICATE_FRONTMATTER, 10)
        if duplicate > 0:
            plan = plan[:duplicate]
        for marker in _END_MARKERS:
            index = plan.find(marker)
            if index > _MIN_PLAN_CHARS_BEFORE_MARKER:
                plan = plan[:index]
                break
        return plan.strip()

    header = _PLAN_HEADER.search(output)
    if header is not None:
        plan = output[header.start() :]
        duplicates = [index for index in (plan.find(h, 10) for h in _PLAN_HEADERS) if index > 0]
        if duplicates:
            plan = plan[: min(duplicates)]
        return f"{_default_frontmatter(now or datetime.now(tz=UTC))}\n\n{plan.strip()}"

    return output.strip()


def parse_analysis_from_markdown(markdown: str) -> CodebaseAnalysisResult:
    """Mine checklists and named sections of a plan document."""

    result = CodebaseAnalysisResult()
    result.implemented = [match.group(1).strip() for match in _IMPLEMENTED_ITEM.finditer(markdown)]

    phase_starts = _phase_starts(markdown)
    for match in _TODO_ITEM.finditer(markdown):
        line = match.group(1).strip()
        result.missing.append(line)
        result.suggested_tasks.append(
            SuggestedTask(
                title=_TRAILING_DASH.sub("", _PRIORITY_SUFFIX.sub("", line)).strip(),
                description=line,
                priority=_infer_priority(line),
                type=_infer_type(line),
                phase=_infer_phase(match.start(), phase_starts),
            ),
        )

    result.technical_debt = _section_bullets(markdown, "Technical Debt", "Технический долг")
    result.risks = _section_bullets(markdown, "Risks & Blockers", "Риски и блокеры")
    notes = _section_body(markdown, "Notes", "Заметки")
    result.notes = notes.strip() if notes is not None else ""
    return result


def _default_frontmatter(now: datetime) -> str:
    stamp = now.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return (
        "---\n"
        'project_id: "unknown"\n'
        f'generated_at: "{stamp}"\n'
        f'updated_at: "{stamp}"\n'
        "version: 1\n"
        'status: "active"\n'
        "---"
    )


def _infer_priority(line: str) -> Priority:
    match = _PRIORITY.search(line)
    if match is None:
        return Priority.MEDIUM
    raw = match.group(1).lower()
    return _RUSSIAN_PRIORITIES.get(raw) or Priority(raw)


def _infer_type(line: str) -> TaskType:
    lowered = line.lower()
    for task_type, keywords in _TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return task_type
    return TaskType.DEVELOPMENT


def _phase_starts(markdown: str) -> list[tuple[PlanPhase, int]]:
    starts: list[tuple[PlanPhase, int]] = []
    for phase, markers in _PHASE_MARKERS:
        positions = [markdown.find(marker) for marker in markers if marker in markdown]
        if positions:
            starts.append((phase, min(positions)))
    return starts


def _infer_phase(position: int, phase_starts: list[tuple[PlanPhase, int]]) -> PlanPhase:
    # Later phases override earlier ones when both headers precede the item.
    phase = PlanPhase.MVP
    for candidate, start in phase_starts:
        if position > start:
            phase = candidate
    return phase


def _section_body(markdown: str, *titles: str) -> str | None:
    alternatives = "|".join(re.escape(title) for title in titles)
    match = re.search(
        rf"## (?:{alternatives})\n(.*?)(?=\n## |\Z)",
        markdown,
        re.IGNORECASE | re.DOTALL,
    )
    return match.group(1) if match else None


def _section_bullets(markdown: str, *titles: str) -> list[str]:
    body = _section_body(markdown, *titles)
    if body is None:
        return []
    return [match.group(1).strip() for match in _BULLET.finditer(body)]
