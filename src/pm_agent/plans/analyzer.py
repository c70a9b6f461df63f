"""Codebase analysis: ask the CLI for a development plan and mine it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pm_agent.claude.runner import ClaudeCodeRunner
from pm_agent.claude.stream import StepCallback
from pm_agent.plans.parser import (
    CodebaseAnalysisResult,
    extract_plan_markdown,
    parse_analysis_from_markdown,
)
from pm_agent.projects.models import ProjectView

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreviousPlan:
    markdown: str
    version: int
    analysis_summary: str | None = None


@dataclass(slots=True)
class CodebaseAnalysis:
    success: bool
    plan_markdown: str | None = None
    analysis: CodebaseAnalysisResult | None = None
    error: str | None = None


_PREVIOUS_PLAN_TEMPLATE = """
ПРЕДЫДУЩИЙ ПЛАН (версия {version}):
{markdown}

{summary}

ИНСТРУКЦИИ ПО ОБНОВЛЕНИЮ:
- Сохрани контекст и преемственность с предыдущим планом
- Отметь задачи как выполненные [x], если они завершены в коде
- Добавь новые задачи на основе изменений в кодовой базе
- Обнови статус задач "В работе" на основе текущего состояния
- Выдели ключевые изменения с прошлой версии
- Сохрани структуру и формат предыдущего плана

"""

_ANALYSIS_TEMPLATE = """\
Ты анализируешь кодовую базу для {goal} плана разработки.
{previous_plan}

Проект: {name}
Репозиторий: {repo}
Текущая фаза: {phase}

ВАЖНО: Ты находишься в директории проекта. Тщательно изучи код перед созданием плана.

Твои задачи:
1. Изучить структуру проекта (файлы, директории)
2. Определить технологический стек
3. Понять, какие фичи уже реализованы
4. Найти, что не доделано или можно улучшить
5. Выявить технический долг и проблемы с качеством кода
6. Определить риски и блокеры
7. Предложить следующие шаги разработки с приоритетами

После анализа выведи план разработки СТРОГО в следующем markdown формате:

---
project_id: "{name}"
generated_at: "{now}"
updated_at: "{now}"
version: 1
status: "active"
---

# План разработки: {name}

## Обзор
[Краткое описание проекта и его текущего состояния в 2-3 предложениях]

## Технологии
- [Список технологий, фреймворков и инструментов]

## Текущее состояние

### Реализовано
- [x] Фича 1 — краткое описание
- [x] Фича 2 — краткое описание

### В работе
- [ ] Фича — описание

## Дорожная карта

### Фаза 1: MVP (Критично)
- [ ] Задача 1 — описание — приоритет: критический
- [ ] Задача 2 — описание — приоритет: высокий

### Фаза 2: Улучшения (Важно)
- [ ] Задача 3 — описание — приоритет: средний

### Фаза 3: Полировка (Желательно)
- [ ] Задача 4 — описание — приоритет: низкий

## Технический долг
- Проблема 1: описание и рекомендация по исправлению
- Проблема 2: описание и рекомендация по исправлению

## Риски и блокеры
- Риск 1: описание и стратегия митигации

## Заметки
[Дополнительные наблюдения и рекомендации]

ПРАВИЛА:
1. Будь конкретным в описании задач
2. Каждая задача должна быть выполнимой AI-агентом
3. Приоритизируй задачи по влиянию на проект
4. План должен быть реалистичным
5. Выводи ТОЛЬКО markdown план, без лишнего текста до или после
6. Отвечай ТОЛЬКО на русском языке"""


def build_analysis_prompt(
    project: ProjectView,
    *,
    previous_plan: PreviousPlan | None = None,
    now: datetime | None = None,
) -> str:
    """Render the analysis prompt; with a previous plan it asks for an update."""

    previous_block = ""
    if previous_plan is not None:
        summary = (
            f"Предыдущая сводка: {previous_plan.analysis_summary}"
            if previous_plan.analysis_summary
            else ""
        )
        previous_block = _PREVIOUS_PLAN_TEMPLATE.format(
            version=previous_plan.version,
            markdown=previous_plan.markdown,
            summary=summary,
        )
    stamp = (now or datetime.now(tz=UTC)).isoformat(timespec="milliseconds")
    return _ANALYSIS_TEMPLATE.format(
        goal="обновления" if previous_plan is not None else "создания",
        previous_plan=previous_block,
        name=project.name,
        repo=project.repo,
        phase=project.phase.value,
        now=stamp.replace("+00:00", "Z"),
    )


def analyze_project_codebase(
    runner: ClaudeCodeRunner,
    repo_path: Path,
    project: ProjectView,
    *,
    on_step: StepCallback | None = None,
    previous_plan: PreviousPlan | None = None,
) -> CodebaseAnalysis:
    """Run a read-only CLI analysis in `repo_path` and parse the resulting plan.

    Streams steps to `on_step` when given, otherwise runs non-streaming.
    """

    prompt = build_analysis_prompt(project, previous_plan=previous_plan)
    if on_step is not None:
        result = runner.run_streaming(repo_path, prompt, on_step, allow_edits=False)
    else:
        result = runner.run(repo_path, prompt, allow_edits=False)
    if not result.success:
        logger.warning("Codebase analysis for %s failed: %s", project.id, result.error)
        return CodebaseAnalysis(success=False, error=result.output)

    plan_markdown = extract_plan_markdown(result.output)
    analysis = parse_analysis_from_markdown(plan_markdown)
    logger.info(
        "Analysed %s: %d implemented, %d suggested task(s)",
        project.id,
        len(analysis.implemented),
        len(analysis.suggested_tasks),
    )
    return CodebaseAnalysis(success=True, plan_markdown=plan_markdown, analysis=analysis)
