from __future__ import annotations

from typing import Any

import allure
import pytest

from pm_agent.approval.models import (
    ActionPayloadError,
    ActionType,
    CloseIssuePayload,
    CommentIssuePayload,
    CreateIssuePayload,
    CustomPayload,
    MergePrPayload,
    NotifyPayload,
    SuggestedAction,
    parse_action_payload,
)

pytestmark = [
    allure.epic("Approval Queue"),
    allure.feature("Action Payloads"),
]


def test_from_dict_builds_typed_payload() -> None:
    action = SuggestedAction.from_dict(
        {
            "type": "create_issue",
            "description": "File the bug",
            "payload": {
                "repo": "acme/demo",
                "title": "Crash on start",
                "body": "Stack trace attached",
                "labels": ["bug", "p1"],
            },
        },
    )

    assert action.type == ActionType.CREATE_ISSUE
    assert action.payload == CreateIssuePayload(
        repo="acme/demo",
        title="Crash on start",
        body="Stack trace attached",
        labels=("bug", "p1"),
    )
    assert action.to_dict()["payload"]["labels"] == ["bug", "p1"]


def test_number_fields_accept_camel_case_and_digit_strings() -> None:
    comment = parse_action_payload(
        ActionType.COMMENT_ISSUE,
        {"repo": "acme/demo", "issueNumber": "12", "body": "Done"},
    )
    merge = parse_action_payload(
        ActionType.MERGE_PR,
        {"repo": "acme/demo", "prNumber": 3, "method": "squash"},
    )

    assert comment == CommentIssuePayload(repo="acme/demo", issue_number=12, body="Done")
    assert merge == MergePrPayload(repo="acme/demo", pr_number=3, method="squash")


def test_optional_fields_get_defaults() -> None:
    close = parse_action_payload(ActionType.CLOSE_ISSUE, {"repo": "acme/demo", "issue_number": 4})
    pr = parse_action_payload(
        ActionType.CREATE_PR,
        {"repo": "acme/demo", "title": "Feature", "body": "", "head": "feature"},
    )

    assert close == CloseIssuePayload(repo="acme/demo", issue_number=4, comment=None)
    assert pr.to_dict()["base"] == "main"


def test_notify_and_custom_payloads() -> None:
    assert parse_action_payload(ActionType.NOTIFY, {"message": "hi"}) == NotifyPayload("hi")
    custom = parse_action_payload(ActionType.CUSTOM, {"anything": [1, 2]})
    assert custom == CustomPayload(data={"anything": [1, 2]})
    assert custom.to_dict() == {"anything": [1, 2]}


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"type": "launch_rocket", "payload": {}}, "Unknown action type"),
        ({"type": "notify", "payload": "text"}, "JSON object"),
        ({"type": "notify", "description": 5, "payload": {"message": "x"}}, "description"),
        ({"type": "notify", "payload": {"message": "   "}}, "must not be empty"),
        (
            {"type": "comment_issue", "payload": {"repo": "demo", "issue_number": 1, "body": "x"}},
            "owner/repo",
        ),
        (
            {
                "type": "comment_issue",
                "payload": {"repo": "a/b", "issue_number": True, "body": "x"},
            },
            "issue_number",
        ),
        (
            {"type": "close_issue", "payload": {"repo": "a/b", "issue_number": 0}},
            "issue_number",
        ),
        (
            {"type": "merge_pr", "payload": {"repo": "a/b", "pr_number": 1, "method": "ff"}},
            "merge_pr method",
        ),
        (
            {
                "type": "create_issue",
                "payload": {"repo": "a/b", "title": "t", "body": "", "labels": "bug"},
            },
            "labels",
        ),
    ],
)
def test_malformed_actions_are_rejected(raw: dict[str, Any], message: str) -> None:
    with pytest.raises(ActionPayloadError, match=message):
        SuggestedAction.from_dict(raw)


def test_payload_must_match_declared_type() -> None:
    with pytest.raises(ActionPayloadError, match="does not match"):
        SuggestedAction(
            type=ActionType.MERGE_PR,
            description="mismatch",
            payload=NotifyPayload(message="hello"),
        )
