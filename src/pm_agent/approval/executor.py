"""Execute approved actions through the GitHub CLI (`gh`)."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable
from typing import Protocol

from pm_agent.approval.models import (
    ActionPayload,
    ActionType,
    CloseIssuePayload,
    CommentIssuePayload,
    CreateIssuePayload,
    CreatePrPayload,
    ExecutionResult,
    MergePrPayload,
)

logger = logging.getLogger(__name__)

_NUMBER_SUFFIX = re.compile(r"/(?:issues|pull)/(\d+)$")

CommandRunner = Callable[[list[str]], str]


class ActionExecutor(Protocol):
    """Protocol implemented by approved-action executors."""

    def execute(self, action_type: ActionType, payload: ActionPayload) -> ExecutionResult:
        """Run one approved action and report the outcome."""


class GhCommandError(RuntimeError):
    """`gh` could not be started or exited non-zero."""


class GitHubActionExecutor:
    """Map approved actions to `gh` invocations.

    `notify` and `custom` actions have no GitHub side effect and are reported
    as unknown, which keeps them pending until a human rejects them.
    """

    def __init__(
        self,
        *,
        gh_binary: str = "gh",
        timeout_seconds: int = 60,
        run_command: CommandRunner | None = None,
    ) -> None:
        self.gh_binary = gh_binary
        self.timeout_seconds = timeout_seconds
        self._run_command = run_command or self._run_gh

    def execute(self, action_type: ActionType, payload: ActionPayload) -> ExecutionResult:
        try:
            if isinstance(payload, CreateIssuePayload):
                return self._create_issue(payload)
            if isinstance(payload, CommentIssuePayload):
                self._gh(
                    "issue",
                    "comment",
                    str(payload.issue_number),
                    "-R",
                    payload.repo,
                    "--body",
                    payload.body,
                )
                return ExecutionResult(success=True, data={"message": "Comment added"})
            if isinstance(payload, CloseIssuePayload):
                args = ["issue", "close", str(payload.issue_number), "-R", payload.repo]
                if payload.comment:
                    args.extend(["--comment", payload.comment])
                self._gh(*args)
                return ExecutionResult(success=True, data={"message": "Issue closed"})
            if isinstance(payload, CreatePrPayload):
                return self._create_pr(payload)
            if isinstance(payload, MergePrPayload):
                self._gh(
                    "pr",
                    "merge",
                    str(payload.pr_number),
                    "-R",
                    payload.repo,
                    f"--{payload.method}",
                )
                return ExecutionResult(success=True, data={"message": "Pull request merged"})
        except GhCommandError as error:
            logger.warning("gh failed for %s: %s", action_type.value, error)
            return ExecutionResult(success=False, error=str(error))
        return ExecutionResult(success=False, error=f"Unknown action type: {action_type.value}")

    def _create_issue(self, payload: CreateIssuePayload) -> ExecutionResult:
        args = ["issue", "create", "-R", payload.repo, "--title", payload.title]
        args.extend(["--body", payload.body])
        for label in payload.labels:
            args.extend(["--label", label])
        url = self._gh(*args).strip()
        return ExecutionResult(
            success=True,
            data={"message": "Issue created", "url": url, "number": _number_from_url(url)},
        )

    def _create_pr(self, payload: CreatePrPayload) -> ExecutionResult:
        url = self._gh(
            "pr",
            "create",
            "-R",
            payload.repo,
            "--title",
            payload.title,
            "--body",
            payload.body,
            "--head",
            payload.head,
            "--base",
            payload.base,
        ).strip()
        return ExecutionResult(
            success=True,
            data={"message": "Pull request created", "url": url, "number": _number_from_url(url)},
        )

    def _gh(self, *args: str) -> str:
        return self._run_command([self.gh_binary, *args])

    def _run_gh(self, argv: list[str]) -> str:
        logger.debug("Running %s", " ".join(argv[:3]))
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise GhCommandError(f"GitHub CLI not found: {argv[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise GhCommandError(
                f"GitHub CLI timed out after {self.timeout_seconds} seconds",
            ) from error
        except OSError as error:
            raise GhCommandError(f"GitHub CLI failed to start: {error}") from error
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise GhCommandError(detail or f"gh exited with code {completed.returncode}")
        return completed.stdout


def _number_from_url(url: str) -> int | None:
    match = _NUMBER_SUFFIX.search(url)
    return int(match.group(1)) if match else None
