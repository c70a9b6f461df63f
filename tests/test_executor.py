from __future__ import annotations

import sys

import allure

from pm_agent.approval.executor import GhCommandError, GitHubActionExecutor
from pm_agent.approval.models import (
    ActionType,
    CloseIssuePayload,
    CommentIssuePayload,
    CreateIssuePayload,
    CreatePrPayload,
    MergePrPayload,
    NotifyPayload,
)

pytestmark = [
    allure.epic("Approval Queue"),
    allure.feature("GitHub Executor"),
]


class RecordingRunner:
    def __init__(self, output: str = "") -> None:
        self.output = output
        self.calls: list[list[str]] = []

    def __call__(self, argv: list[str]) -> str:
        self.calls.append(argv)
        return self.output


def test_create_issue_builds_gh_command_and_parses_url() -> None:
    runner = RecordingRunner("https://github.com/acme/demo/issues/17\n")
    executor = GitHubActionExecutor(run_command=runner)

    result = executor.execute(
        ActionType.CREATE_ISSUE,
        CreateIssuePayload(repo="acme/demo", title="Bug", body="Details", labels=("bug", "ui")),
    )

    assert result.success
    assert result.data == {
        "message": "Issue created",
        "url": "https://github.com/acme/demo/issues/17",
        "number": 17,
    }
    assert runner.calls == [
        [
            "gh",
            "issue",
            "create",
            "-R",
            "acme/demo",
            "--title",
            "Bug",
            "--body",
            "Details",
            "--label",
            "bug",
            "--label",
            "ui",
        ],
    ]


def test_issue_and_pr_mutations() -> None:
    runner = RecordingRunner("https://github.com/acme/demo/pull/5\n")
    executor = GitHubActionExecutor(gh_binary="/usr/local/bin/gh", run_command=runner)

    comment = executor.execute(
        ActionType.COMMENT_ISSUE,
        CommentIssuePayload(repo="acme/demo", issue_number=3, body="Thanks"),
    )
    close = executor.execute(
        ActionType.CLOSE_ISSUE,
        CloseIssuePayload(repo="acme/demo", issue_number=3, comment="Done"),
    )
    pr = executor.execute(
        ActionType.CREATE_PR,
        CreatePrPayload(repo="acme/demo", title="Feature", body="", head="feature"),
    )
    merge = executor.execute(
        ActionType.MERGE_PR,
        MergePrPayload(repo="acme/demo", pr_number=5, method="squash"),
    )

    assert comment.data == {"message": "Comment added"}
    assert close.data == {"message": "Issue closed"}
    assert pr.data == {
        "message": "Pull request created",
        "url": "https://github.com/acme/demo/pull/5",
        "number": 5,
    }
    assert merge.data == {"message": "Pull request merged"}
    assert [call[:3] for call in runner.calls] == [
        ["/usr/local/bin/gh", "issue", "comment"],
        ["/usr/local/bin/gh", "issue", "close"],
        ["/usr/local/bin/gh", "pr", "create"],
        ["/usr/local/bin/gh", "pr", "merge"],
    ]
    assert runner.calls[1][-2:] == ["--comment", "Done"]
    assert runner.calls[2][-4:] == ["--head", "feature", "--base", "main"]
    assert runner.calls[3][-1] == "--squash"


def test_gh_failure_becomes_failed_result() -> None:
    def _failing(argv: list[str]) -> str:
        raise GhCommandError("HTTP 404: Not Found")

    executor = GitHubActionExecutor(run_command=_failing)

    result = executor.execute(
        ActionType.COMMENT_ISSUE,
        CommentIssuePayload(repo="acme/demo", issue_number=1, body="x"),
    )

    assert not result.success
    assert result.error == "HTTP 404: Not Found"


def test_actions_without_github_side_effect_are_unknown() -> None:
    runner = RecordingRunner()
    result = GitHubActionExecutor(run_command=runner).execute(
        ActionType.NOTIFY,
        NotifyPayload(message="hello"),
    )

    assert not result.success
    assert result.error == "Unknown action type: notify"
    assert runner.calls == []


def test_real_subprocess_errors_are_reported() -> None:
    missing = GitHubActionExecutor(gh_binary="definitely-not-gh-binary").execute(
        ActionType.COMMENT_ISSUE,
        CommentIssuePayload(repo="acme/demo", issue_number=1, body="x"),
    )
    # Any non-zero exit with stderr is surfaced verbatim.
    failing = GitHubActionExecutor(gh_binary=sys.executable).execute(
        ActionType.MERGE_PR,
        MergePrPayload(repo="acme/demo", pr_number=1),
    )

    assert missing.error == "GitHub CLI not found: definitely-not-gh-binary"
    assert not failing.success
    assert failing.error
