"""Domain models for approval-gated actions."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from pm_agent.storage.common import to_epoch_millis

_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class ActionType(str, Enum):
    """Side-effecting operations that require human approval."""

    CREATE_ISSUE = "create_issue"
    COMMENT_ISSUE = "comment_issue"
    CLOSE_ISSUE = "close_issue"
    CREATE_PR = "create_pr"
    MERGE_PR = "merge_pr"
    NOTIFY = "notify"
    CUSTOM = "custom"


class PendingActionStatus(str, Enum):
    """One-way lifecycle: pending -> approved | rejected | expired."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ActionPayloadError(ValueError):
    """Raised when an action payload does not match its type's schema."""


@dataclass(slots=True, frozen=True)
class CreateIssuePayload:
    action_type: ClassVar[ActionType] = ActionType.CREATE_ISSUE

    repo: str
    title: str
    body: str
    labels: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "title": self.title,
            "body": self.body,
            "labels": list(self.labels),
        }


@dataclass(slots=True, frozen=True)
class CommentIssuePayload:
    action_type: ClassVar[ActionType] = ActionType.COMMENT_ISSUE

    repo: str
    issue_number: int
    body: str

    def to_dict(self) -> dict[str, Any]:
        return {"repo": self.repo, "issue_number": self.issue_number, "body": self.body}


@dataclass(slots=True, frozen=True)
class CloseIssuePayload:
    action_type: ClassVar[ActionType] = ActionType.CLOSE_ISSUE

    repo: str
    issue_number: int
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"repo": self.repo, "issue_number": self.issue_number, "comment": self.comment}


@dataclass(slots=True, frozen=True)
class CreatePrPayload:
    action_type: ClassVar[ActionType] = ActionType.CREATE_PR

    repo: str
    title: str
    body: str
    head: str
    base: str = "main"

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "title": self.title,
            "body": self.body,
            "head": self.head,
            "base": self.base,
        }


@dataclass(slots=True, frozen=True)
class MergePrPayload:
    action_type: ClassVar[ActionType] = ActionType.MERGE_PR

    repo: str
    pr_number: int
    method: str = "merge"

    def to_dict(self) -> dict[str, Any]:
        return {"repo": self.repo, "pr_number": self.pr_number, "method": self.method}


@dataclass(slots=True, frozen=True)
class NotifyPayload:
    action_type: ClassVar[ActionType] = ActionType.NOTIFY

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message}


@dataclass(slots=True, frozen=True)
class CustomPayload:
    action_type: ClassVar[ActionType] = ActionType.CUSTOM

    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


ActionPayload = (
    CreateIssuePayload
    | CommentIssuePayload
    | CloseIssuePayload
    | CreatePrPayload
    | MergePrPayload
    | NotifyPayload
    | CustomPayload
)


@dataclass(slots=True, frozen=True)
class SuggestedAction:
    """Proposed operation: tagged union of type, description and typed payload."""

    type: ActionType
    description: str
    payload: ActionPayload

    def __post_init__(self) -> None:
        if self.payload.action_type != self.type:
            raise ActionPayloadError(
                f"Payload {type(self.payload).__name__} does not match action type "
                f"{self.type.value!r}.",
            )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> SuggestedAction:
        """Validate a `{type, description, payload}` mapping into a typed action."""

        type_raw = raw.get("type")
        try:
            action_type = ActionType(type_raw)
        except ValueError as error:
            raise ActionPayloadError(f"Unknown action type: {type_raw!r}") from error
        description = raw.get("description", "")
        if not isinstance(description, str):
            raise ActionPayloadError("Action description must be a string.")
        payload_raw = raw.get("payload", {})
        if not isinstance(payload_raw, Mapping):
            raise ActionPayloadError("Action payload must be a JSON object.")
        return cls(
            type=action_type,
            description=description,
            payload=parse_action_payload(action_type, payload_raw),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "payload": self.payload.to_dict(),
        }


@dataclass(slots=True)
class PendingActionView:
    """Readable pending action for queue, CLI and notifications."""

    id: str
    task_id: str
    action: SuggestedAction
    created_at: datetime
    expires_at: datetime
    status: PendingActionStatus
    telegram_message_id: int | None = None

    def is_past_deadline(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "action": self.action.to_dict(),
            "createdAt": to_epoch_millis(self.created_at),
            "expiresAt": to_epoch_millis(self.expires_at),
            "status": self.status.value,
            "telegramMessageId": self.telegram_message_id,
        }


@dataclass(slots=True)
class ExecutionResult:
    """Outcome reported by an action executor."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "data": self.data, "error": self.error}


@dataclass(slots=True)
class ApprovalResult:
    """Outcome of approve/reject; `error` is a display-ready sentence."""

    success: bool
    error: str | None = None
    result: dict[str, Any] | None = None


def parse_action_payload(action_type: ActionType, raw: Mapping[str, Any]) -> ActionPayload:
    """Validate a raw payload mapping against the schema for `action_type`."""

    parser = _PAYLOAD_PARSERS[action_type]
    return parser(raw)


def _parse_create_issue(raw: Mapping[str, Any]) -> CreateIssuePayload:
    labels_raw = raw.get("labels") or []
    if not isinstance(labels_raw, list | tuple) or not all(
        isinstance(label, str) for label in labels_raw
    ):
        raise ActionPayloadError("create_issue labels must be a list of strings.")
    return CreateIssuePayload(
        repo=_require_repo(raw, "create_issue"),
        title=_require_str(raw, "title", "create_issue"),
        body=_require_str(raw, "body", "create_issue", allow_empty=True),
        labels=tuple(labels_raw),
    )


def _parse_comment_issue(raw: Mapping[str, Any]) -> CommentIssuePayload:
    return CommentIssuePayload(
        repo=_require_repo(raw, "comment_issue"),
        issue_number=_require_number(raw, ("issue_number", "issueNumber"), "comment_issue"),
        body=_require_str(raw, "body", "comment_issue"),
    )


def _parse_close_issue(raw: Mapping[str, Any]) -> CloseIssuePayload:
    comment = raw.get("comment")
    if comment is not None and not isinstance(comment, str):
        raise ActionPayloadError("close_issue comment must be a string.")
    return CloseIssuePayload(
        repo=_require_repo(raw, "close_issue"),
        issue_number=_require_number(raw, ("issue_number", "issueNumber"), "close_issue"),
        comment=comment or None,
    )


def _parse_create_pr(raw: Mapping[str, Any]) -> CreatePrPayload:
    base = raw.get("base", "main")
    if not isinstance(base, str) or not base.strip():
        raise ActionPayloadError("create_pr base must be a non-empty string.")
    return CreatePrPayload(
        repo=_require_repo(raw, "create_pr"),
        title=_require_str(raw, "title", "create_pr"),
        body=_require_str(raw, "body", "create_pr", allow_empty=True),
        head=_require_str(raw, "head", "create_pr"),
        base=base,
    )


def _parse_merge_pr(raw: Mapping[str, Any]) -> MergePrPayload:
    method = raw.get("method", "merge")
    if method not in {"merge", "squash", "rebase"}:
        raise ActionPayloadError(
            f"merge_pr method must be one of merge, squash, rebase; got {method!r}.",
        )
    return MergePrPayload(
        repo=_require_repo(raw, "merge_pr"),
        pr_number=_require_number(raw, ("pr_number", "prNumber"), "merge_pr"),
        method=method,
    )


def _parse_notify(raw: Mapping[str, Any]) -> NotifyPayload:
    return NotifyPayload(message=_require_str(raw, "message", "notify"))


def _parse_custom(raw: Mapping[str, Any]) -> CustomPayload:
    return CustomPayload(data=dict(raw))


_PAYLOAD_PARSERS: dict[ActionType, Callable[[Mapping[str, Any]], ActionPayload]] = {
    ActionType.CREATE_ISSUE: _parse_create_issue,
    ActionType.COMMENT_ISSUE: _parse_comment_issue,
    ActionType.CLOSE_ISSUE: _parse_close_issue,
    ActionType.CREATE_PR: _parse_create_pr,
    ActionType.MERGE_PR: _parse_merge_pr,
    ActionType.NOTIFY: _parse_notify,
    ActionType.CUSTOM: _parse_custom,
}


def _require_str(
    raw: Mapping[str, Any],
    key: str,
    action: str,
    *,
    allow_empty: bool = False,
) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise ActionPayloadError(f"{action} payload requires string field {key!r}.")
    if not allow_empty and not value.strip():
        raise ActionPayloadError(f"{action} payload field {key!r} must not be empty.")
    return value


def _require_repo(raw: Mapping[str, Any], action: str) -> str:
    repo = _require_str(raw, "repo", action)
    if not _REPO_PATTERN.match(repo):
        raise ActionPayloadError(f"Invalid repo format {repo!r}. Use owner/repo.")
    return repo


def _require_number(raw: Mapping[str, Any], keys: tuple[str, ...], action: str) -> int:
    for key in keys:
        if key not in raw:
            continue
        value = raw[key]
        if isinstance(value, bool):
            break
        if isinstance(value, int) and value > 0:
            return value
        if isinstance(value, str) and value.isdigit() and int(value) > 0:
            return int(value)
        break
    raise ActionPayloadError(f"{action} payload requires positive integer field {keys[0]!r}.")
