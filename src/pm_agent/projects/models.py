"""Project models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pm_agent.storage.common import to_epoch_millis


class ProjectPhase(str, Enum):
    IDEA = "idea"
    PLANNING = "planning"
    MVP = "mvp"
    BETA = "beta"
    LAUNCH = "launch"
    GROWTH = "growth"
    MAINTENANCE = "maintenance"


@dataclass(slots=True)
class ProjectView:
    """Readable project row; `repo` is `owner/name`."""

    id: str
    name: str
    repo: str
    phase: ProjectPhase
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "repo": self.repo,
            "phase": self.phase.value,
            "createdAt": to_epoch_millis(self.created_at),
            "updatedAt": to_epoch_millis(self.updated_at),
        }
