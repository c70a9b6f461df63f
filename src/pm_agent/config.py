"""Runtime configuration for the pm-agent core."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class ApprovalSettings:
    """Approval queue settings."""

    timeout_minutes: int = 60
    claim_stale_seconds: int = 600
    gh_binary: str = "gh"
    gh_timeout_seconds: int = 60


@dataclass(slots=True)
class RetrySettings:
    """Exponential backoff policy for CLI agent runs."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0


@dataclass(slots=True)
class ClaudeSettings:
    """Claude Code CLI subprocess settings."""

    binary: str = "claude"
    timeout_seconds: int = 600
    streaming_timeout_seconds: int = 600
    agent_task_timeout_seconds: int = 300
    kill_grace_seconds: float = 5.0
    anthropic_api_key: str | None = None
    oauth_token: str | None = None
    retry: RetrySettings = field(default_factory=RetrySettings)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".pm_agent.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    claude: ClaudeSettings = field(default_factory=ClaudeSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PM_AGENT_DB_PATH", ".pm_agent.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PM_AGENT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("PM_AGENT_LOG_LEVEL", "WARNING").strip().upper(),
            approval=ApprovalSettings(
                timeout_minutes=int(os.getenv("PM_AGENT_APPROVAL_TIMEOUT_MINUTES", "60")),
                claim_stale_seconds=int(
                    os.getenv("PM_AGENT_APPROVAL_CLAIM_STALE_SECONDS", "600"),
                ),
                gh_binary=os.getenv("PM_AGENT_GH_BINARY", "gh"),
                gh_timeout_seconds=int(os.getenv("PM_AGENT_GH_TIMEOUT_SECONDS", "60")),
            ),
            claude=ClaudeSettings(
                binary=os.getenv("PM_AGENT_CLAUDE_BINARY", "claude"),
                timeout_seconds=int(os.getenv("PM_AGENT_CLAUDE_TIMEOUT_SECONDS", "600")),
                streaming_timeout_seconds=int(
                    os.getenv("PM_AGENT_CLAUDE_STREAMING_TIMEOUT_SECONDS", "600"),
                ),
                agent_task_timeout_seconds=int(
                    os.getenv("PM_AGENT_CLAUDE_AGENT_TASK_TIMEOUT_SECONDS", "300"),
                ),
                kill_grace_seconds=float(os.getenv("PM_AGENT_CLAUDE_KILL_GRACE_SECONDS", "5")),
                anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                oauth_token=os.getenv("CLAUDE_CODE_OAUTH_TOKEN") or None,
                retry=RetrySettings(
                    max_attempts=int(os.getenv("PM_AGENT_CLAUDE_RETRY_MAX_ATTEMPTS", "3")),
                    initial_delay_seconds=float(
                        os.getenv("PM_AGENT_CLAUDE_RETRY_INITIAL_DELAY_SECONDS", "1.0"),
                    ),
                    max_delay_seconds=float(
                        os.getenv("PM_AGENT_CLAUDE_RETRY_MAX_DELAY_SECONDS", "10.0"),
                    ),
                    backoff_multiplier=float(
                        os.getenv("PM_AGENT_CLAUDE_RETRY_BACKOFF_MULTIPLIER", "2.0"),
                    ),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("PM_AGENT_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid PM_AGENT_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.approval.timeout_minutes < 0:
            raise ValueError("PM_AGENT_APPROVAL_TIMEOUT_MINUTES must be >= 0.")
        if self.approval.claim_stale_seconds <= 0:
            raise ValueError("PM_AGENT_APPROVAL_CLAIM_STALE_SECONDS must be > 0.")
        _validate_command("PM_AGENT_CLAUDE_BINARY", self.claude.binary)
        if self.claude.timeout_seconds <= 0 or self.claude.streaming_timeout_seconds <= 0:
            raise ValueError("Claude CLI timeouts must be > 0.")
        retry = self.claude.retry
        if retry.max_attempts < 1:
            raise ValueError("PM_AGENT_CLAUDE_RETRY_MAX_ATTEMPTS must be >= 1.")
        if retry.initial_delay_seconds < 0 or retry.max_delay_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if retry.backoff_multiplier < 1:
            raise ValueError("PM_AGENT_CLAUDE_RETRY_BACKOFF_MULTIPLIER must be >= 1.")


def _validate_command(variable: str, value: str) -> None:
    try:
        argv = shlex.split(value)
    except ValueError as error:
        raise ValueError(f"Invalid {variable}: {value!r} ({error}).") from error
    if not argv:
        raise ValueError(f"{variable} must not be empty.")
