"""Project persistence."""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from sqlmodel import Session, col, select

from pm_agent.projects.models import ProjectPhase, ProjectView
from pm_agent.storage.alembic_runner import upgrade_head
from pm_agent.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from pm_agent.storage.sqlmodel_models import ProjectRow

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


class ProjectRepository:
    """Projects are the owners of tasks."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create_project(
        self,
        *,
        name: str,
        repo: str,
        project_id: str | None = None,
        phase: ProjectPhase = ProjectPhase.PLANNING,
    ) -> ProjectView:
        """Insert a project; the id defaults to a slug of the name."""

        now = to_db_datetime(self.clock())
        row = ProjectRow(
            id=project_id or _slugify(name),
            name=name,
            repo=repo,
            phase=phase.value,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(ProjectRow, project_id)
            return _to_project_view(row) if row is not None else None

    def list_projects(self) -> list[ProjectView]:
        with Session(self.engine) as session:
            rows = session.exec(select(ProjectRow).order_by(col(ProjectRow.name).asc())).all()
            return [_to_project_view(row) for row in rows]


def _slugify(name: str) -> str:
    slug = _SLUG_PATTERN.sub("-", name.strip().lower()).strip("-")
    if not slug:
        raise ValueError(f"Cannot derive project id from name {name!r}.")
    return slug


def _to_project_view(row: ProjectRow) -> ProjectView:
    return ProjectView(
        id=row.id,
        name=row.name,
        repo=row.repo,
        phase=ProjectPhase(row.phase),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
