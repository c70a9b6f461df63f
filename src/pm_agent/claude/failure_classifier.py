"""Deterministic classification of Claude Code CLI failures for retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

CLAUDE_FAILURE_CLASSIFIER_VERSION = 1

_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection refused",
    "timeout",
    "econnrefused",
    "enotfound",
    "etimedout",
    "socket hang up",
    "rate limit",
    "503",
    "502",
    "500",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient",
    "billing",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "bad credentials",
)


class FailureKind(str, Enum):
    """Normalized failure classes used by the retry wrapper."""

    TIMEOUT = "timeout"
    SPAWN = "spawn"
    TRANSIENT = "transient"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    NON_RETRYABLE = "non_retryable"


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    retryable: bool
    matched_pattern: str | None = None

    def to_log_details(self) -> dict[str, object]:
        return {
            "classifier_version": CLAUDE_FAILURE_CLASSIFIER_VERSION,
            "kind": self.kind.value,
            "retryable": self.retryable,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(
    *,
    message: str = "",
    stderr: str = "",
    timed_out: bool = False,
    spawn_failed: bool = False,
) -> FailureClassification:
    """Classify a failed CLI run.

    Timeouts and spawn failures always retry. Otherwise the transient
    patterns decide; the remaining classes only refine diagnostics.
    """

    if timed_out:
        return FailureClassification(kind=FailureKind.TIMEOUT, retryable=True)
    if spawn_failed:
        return FailureClassification(kind=FailureKind.SPAWN, retryable=True)

    haystack = _normalize_text(message=message, stderr=stderr)

    pattern = _first_match(haystack, _RETRYABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.TRANSIENT,
            retryable=True,
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.BILLING_OR_QUOTA,
            retryable=False,
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.ACCESS_OR_AUTH,
            retryable=False,
            matched_pattern=pattern,
        )

    return FailureClassification(kind=FailureKind.NON_RETRYABLE, retryable=False)


def _normalize_text(*, message: str, stderr: str) -> str:
    return f"{stderr}\n{message}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
