"""Persistent pending-action store."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from pm_agent.approval.models import (
    PendingActionStatus,
    PendingActionView,
    SuggestedAction,
)
from pm_agent.storage.alembic_runner import upgrade_head
from pm_agent.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware
from pm_agent.storage.sqlmodel_models import PendingActionRow

logger = logging.getLogger(__name__)


class ActionRepository:
    """Pending actions backed by SQLModel + SQLite.

    Every status transition is one conditional UPDATE guarded by
    `status = 'pending'`; callers learn whether they won the transition from
    the boolean return value. Rows are never deleted.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create(self, view: PendingActionView) -> PendingActionView:
        with Session(self.engine) as session:
            row = PendingActionRow(
                id=view.id,
                task_id=view.task_id,
                action_type=view.action.type.value,
                action_description=view.action.description,
                action_payload_json=json.dumps(
                    view.action.payload.to_dict(),
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                created_at=to_db_datetime(view.created_at),
                expires_at=to_db_datetime(view.expires_at),
                status=view.status.value,
                telegram_message_id=view.telegram_message_id,
                execution_started_at=None,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_action_view(row)

    def get(self, action_id: str) -> PendingActionView | None:
        with Session(self.engine) as session:
            row = session.get(PendingActionRow, action_id)
            return _to_action_view(row) if row is not None else None

    def list(
        self,
        *,
        status: PendingActionStatus | None = None,
        task_id: str | None = None,
        limit: int | None = None,
    ) -> list[PendingActionView]:
        """List actions newest first."""

        with Session(self.engine) as session:
            statement = select(PendingActionRow).order_by(
                col(PendingActionRow.created_at).desc(),
                col(PendingActionRow.id).desc(),
            )
            if status is not None:
                statement = statement.where(PendingActionRow.status == status.value)
            if task_id is not None:
                statement = statement.where(PendingActionRow.task_id == task_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_action_view(row) for row in rows]

    def list_pending(self) -> list[PendingActionView]:
        return self.list(status=PendingActionStatus.PENDING)

    def expire_overdue(self, *, now: datetime, stale_before: datetime) -> int:
        """Flip every overdue, unclaimed pending action to expired in one statement."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingActionRow)
                .where(
                    col(PendingActionRow.status) == PendingActionStatus.PENDING.value,
                    col(PendingActionRow.expires_at) <= to_db_datetime(now),
                    _unclaimed(stale_before),
                )
                .values(status=PendingActionStatus.EXPIRED.value),
            )
            session.commit()
            expired = result.rowcount or 0
        if expired:
            logger.info("Expired %d overdue pending action(s)", expired)
        return expired

    def try_claim(self, action_id: str, *, now: datetime, stale_before: datetime) -> bool:
        """Mark an approval as in flight; False when someone else holds the claim."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingActionRow)
                .where(
                    col(PendingActionRow.id) == action_id,
                    col(PendingActionRow.status) == PendingActionStatus.PENDING.value,
                    _unclaimed(stale_before),
                )
                .values(execution_started_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_approved(self, action_id: str) -> bool:
        return self._transition(
            action_id,
            status=PendingActionStatus.APPROVED,
            stale_before=None,
        )

    def release_claim(self, action_id: str) -> bool:
        """Drop the in-flight marker and leave the action pending."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingActionRow)
                .where(
                    col(PendingActionRow.id) == action_id,
                    col(PendingActionRow.status) == PendingActionStatus.PENDING.value,
                )
                .values(execution_started_at=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_rejected(self, action_id: str, *, stale_before: datetime) -> bool:
        return self._transition(
            action_id,
            status=PendingActionStatus.REJECTED,
            stale_before=stale_before,
        )

    def mark_expired(self, action_id: str, *, stale_before: datetime) -> bool:
        return self._transition(
            action_id,
            status=PendingActionStatus.EXPIRED,
            stale_before=stale_before,
        )

    def set_telegram_message_id(self, action_id: str, message_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingActionRow)
                .where(col(PendingActionRow.id) == action_id)
                .values(telegram_message_id=message_id),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _transition(
        self,
        action_id: str,
        *,
        status: PendingActionStatus,
        stale_before: datetime | None,
    ) -> bool:
        """Move a pending action to a terminal status.

        With `stale_before` the transition also requires that no fresh approval
        claim is held; without it the caller is the claim holder.
        """

        conditions = [
            col(PendingActionRow.id) == action_id,
            col(PendingActionRow.status) == PendingActionStatus.PENDING.value,
        ]
        if stale_before is not None:
            conditions.append(_unclaimed(stale_before))
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingActionRow)
                .where(*conditions)
                .values(status=status.value, execution_started_at=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Action %s -> %s", action_id, status.value)
        return True


def _unclaimed(stale_before: datetime):  # noqa: ANN202
    return or_(
        col(PendingActionRow.execution_started_at).is_(None),
        col(PendingActionRow.execution_started_at) <= to_db_datetime(stale_before),
    )


def _to_action_view(row: PendingActionRow) -> PendingActionView:
    payload = json.loads(row.action_payload_json or "{}")
    return PendingActionView(
        id=row.id,
        task_id=row.task_id,
        action=SuggestedAction.from_dict(
            {
                "type": row.action_type,
                "description": row.action_description,
                "payload": payload if isinstance(payload, dict) else {},
            },
        ),
        created_at=to_utc_aware(row.created_at),
        expires_at=to_utc_aware(row.expires_at),
        status=PendingActionStatus(row.status),
        telegram_message_id=row.telegram_message_id,
    )
