from __future__ import annotations

import allure
import pytest

from pm_agent.claude.failure_classifier import (
    CLAUDE_FAILURE_CLASSIFIER_VERSION,
    FailureKind,
    classify_failure,
)
from pm_agent.claude.runner import ClaudeCodeError, is_retryable_error

pytestmark = [
    allure.epic("Claude Code Runner"),
    allure.feature("Failures & Retry"),
]


def test_classifier_version_is_stable() -> None:
    assert CLAUDE_FAILURE_CLASSIFIER_VERSION == 1


def test_timeouts_and_spawn_failures_always_retry() -> None:
    assert classify_failure(timed_out=True).kind == FailureKind.TIMEOUT
    assert classify_failure(timed_out=True).retryable
    assert classify_failure(spawn_failed=True).kind == FailureKind.SPAWN
    assert classify_failure(spawn_failed=True).retryable


@pytest.mark.parametrize(
    ("stderr", "pattern"),
    [
        ("API Error: 503 Service Unavailable", "503"),
        ("Error: connect ECONNREFUSED 127.0.0.1:443", "connection refused"),
        ("socket hang up", "socket hang up"),
        ("Rate limit reached for requests", "rate limit"),
        ("Request timeout while streaming", "timeout"),
    ],
)
def test_transient_patterns_are_retryable(stderr: str, pattern: str) -> None:
    classified = classify_failure(stderr=stderr)

    assert classified.kind == FailureKind.TRANSIENT
    assert classified.retryable
    assert classified.matched_pattern in {pattern, "econnrefused"}


def test_transient_text_wins_over_billing_diagnostics() -> None:
    classified = classify_failure(stderr="Usage limit hit, upstream returned 502")

    assert classified.kind == FailureKind.TRANSIENT
    assert classified.matched_pattern == "502"


@pytest.mark.parametrize(
    ("stderr", "kind"),
    [
        ("Credit balance is too low", FailureKind.BILLING_OR_QUOTA),
        ("Invalid API key · Please run /login", FailureKind.ACCESS_OR_AUTH),
        ("Error: authentication failed: bad credentials", FailureKind.ACCESS_OR_AUTH),
        ("SyntaxError in prompt template", FailureKind.NON_RETRYABLE),
    ],
)
def test_other_failures_are_not_retryable(stderr: str, kind: FailureKind) -> None:
    classified = classify_failure(stderr=stderr)

    assert classified.kind == kind
    assert not classified.retryable
    assert classified.to_log_details()["kind"] == kind.value


def test_retryable_error_uses_error_flag_or_message() -> None:
    assert is_retryable_error(ClaudeCodeError("boom", retryable=True))
    assert not is_retryable_error(ClaudeCodeError("network error", retryable=False))
    assert is_retryable_error(RuntimeError("Network error while fetching"))
    assert not is_retryable_error(ValueError("bad prompt"))
    assert is_retryable_error(RuntimeError("ETIMEDOUT"))
    assert not is_retryable_error(RuntimeError("permission denied"))
