"""Approval queue: propose, then a human approves or rejects, then execute."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from pm_agent.approval.executor import ActionExecutor
from pm_agent.approval.models import (
    ApprovalResult,
    ExecutionResult,
    PendingActionStatus,
    PendingActionView,
    SuggestedAction,
)
from pm_agent.approval.repository import ActionRepository
from pm_agent.notifications import EventEnvelope, Notifier
from pm_agent.storage.common import new_entity_id, to_epoch_millis, utc_now
from pm_agent.storage.sqlmodel_models import MANUAL_TASK_ID
from pm_agent.tasks.models import ApprovedBy, TaskStatus
from pm_agent.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MINUTES = 60


class ApprovalQueue:
    """Lifecycle of pending actions.

    Expiry is lazy: overdue actions flip to `expired` when the pending list is
    read or when someone tries to approve them. An approval first claims the
    row, so concurrent `approve` calls run the executor at most once.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        actions: ActionRepository,
        tasks: TaskRepository,
        executor: ActionExecutor,
        notifier: Notifier | None = None,
        default_timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
        claim_stale_seconds: int = 600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.actions = actions
        self.tasks = tasks
        self.executor = executor
        self.notifier = notifier
        self.default_timeout_minutes = default_timeout_minutes
        self.claim_stale_seconds = claim_stale_seconds
        self.clock = clock

    def add_action(
        self,
        action: SuggestedAction | Mapping[str, Any],
        task_id: str | None = None,
        timeout_minutes: int | None = None,
    ) -> str:
        """Persist a new pending action and announce it; returns the action id."""

        if not isinstance(action, SuggestedAction):
            action = SuggestedAction.from_dict(action)
        minutes = self.default_timeout_minutes if timeout_minutes is None else timeout_minutes
        if minutes < 0:
            raise ValueError("timeout_minutes must be >= 0.")

        now = self.clock()
        view = self.actions.create(
            PendingActionView(
                id=new_entity_id("action", now),
                task_id=task_id or MANUAL_TASK_ID,
                action=action,
                created_at=now,
                expires_at=now + timedelta(minutes=minutes),
                status=PendingActionStatus.PENDING,
            ),
        )
        logger.info("Queued %s action %s for task %s", action.type.value, view.id, view.task_id)
        self._publish(
            "action_pending",
            {
                "actionId": view.id,
                "action": view.action.to_dict(),
                "expiresAt": to_epoch_millis(view.expires_at),
            },
        )
        return view.id

    def get_pending(self) -> list[PendingActionView]:
        """Expire overdue actions, then return what is still pending."""

        now = self.clock()
        self.actions.expire_overdue(now=now, stale_before=self._stale_before(now))
        return self.actions.list_pending()

    def get_action(self, action_id: str) -> PendingActionView | None:
        return self.actions.get(action_id)

    def list_actions(
        self,
        *,
        status: PendingActionStatus | None = None,
        task_id: str | None = None,
    ) -> list[PendingActionView]:
        return self.actions.list(status=status, task_id=task_id)

    def approve(self, action_id: str) -> ApprovalResult:
        """Execute an approved action; a failed execution leaves it and its task pending."""

        view = self.actions.get(action_id)
        if view is None:
            return ApprovalResult(success=False, error="Action not found")
        if view.status != PendingActionStatus.PENDING:
            return ApprovalResult(success=False, error=f"Action already {view.status.value}")

        now = self.clock()
        stale_before = self._stale_before(now)
        if view.is_past_deadline(now):
            if self.actions.mark_expired(action_id, stale_before=stale_before):
                return ApprovalResult(success=False, error="Action expired")
            return self._conflict(action_id)

        if not self.actions.try_claim(action_id, now=now, stale_before=stale_before):
            return self._conflict(action_id)

        execution = self._execute(view)
        if execution.success:
            self.actions.mark_approved(action_id)
            if view.task_id != MANUAL_TASK_ID:
                self._complete_task(view.task_id)
        else:
            self.actions.release_claim(action_id)
            logger.warning("Action %s execution failed: %s", action_id, execution.error)
            if view.task_id != MANUAL_TASK_ID:
                self._reopen_task(view.task_id)

        self._publish("action_approved", {"actionId": action_id, "result": execution.to_dict()})
        return ApprovalResult(
            success=execution.success,
            error=execution.error,
            result=execution.data,
        )

    def reject(self, action_id: str, reason: str | None = None) -> ApprovalResult:
        """Reject a pending action regardless of its deadline."""

        view = self.actions.get(action_id)
        if view is None:
            return ApprovalResult(success=False, error="Action not found")
        if view.status != PendingActionStatus.PENDING:
            return ApprovalResult(success=False, error=f"Action already {view.status.value}")

        stale_before = self._stale_before(self.clock())
        if not self.actions.mark_rejected(action_id, stale_before=stale_before):
            return self._conflict(action_id)

        if view.task_id != MANUAL_TASK_ID:
            updated = self.tasks.update_status(view.task_id, status=TaskStatus.REJECTED)
            if updated is None:
                logger.warning(
                    "Rejected action %s refers to missing task %s",
                    action_id,
                    view.task_id,
                )

        self._publish("action_rejected", {"actionId": action_id, "reason": reason})
        return ApprovalResult(success=True)

    def set_telegram_message_id(self, action_id: str, message_id: int) -> bool:
        return self.actions.set_telegram_message_id(action_id, message_id)

    def _execute(self, view: PendingActionView) -> ExecutionResult:
        try:
            return self.executor.execute(view.action.type, view.action.payload)
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor raised for action %s", view.id)
            return ExecutionResult(success=False, error=str(error) or type(error).__name__)

    def _complete_task(self, task_id: str) -> None:
        updated = self.tasks.update_status(
            task_id,
            status=TaskStatus.COMPLETED,
            completed_at=self.clock(),
            approved_by=ApprovedBy.WEB,
        )
        if updated is None:
            logger.warning("Approved action refers to missing task %s", task_id)

    def _reopen_task(self, task_id: str) -> None:
        self.tasks.update_status(
            task_id,
            status=TaskStatus.PENDING,
            completed_at=None,
            approved_by=ApprovedBy.WEB,
        )

    def _conflict(self, action_id: str) -> ApprovalResult:
        current = self.actions.get(action_id)
        if current is None:
            return ApprovalResult(success=False, error="Action not found")
        if current.status != PendingActionStatus.PENDING:
            return ApprovalResult(success=False, error=f"Action already {current.status.value}")
        return ApprovalResult(success=False, error="Action approval already in progress")

    def _stale_before(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.claim_stale_seconds)

    def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(EventEnvelope.create(event_type, data, now=self.clock()))
