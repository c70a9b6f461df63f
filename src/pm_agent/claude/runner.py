"""Subprocess runner for the Claude Code CLI with timeout and retry."""

from __future__ import annotations

import codecs
import logging
import os
import queue
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, NoReturn, TypeVar

from pm_agent.claude.failure_classifier import classify_failure
from pm_agent.claude.stream import StepCallback, StepStatus, StepType, StreamDemultiplexer
from pm_agent.config import ClaudeSettings, RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_READ_CHUNK_BYTES = 64 * 1024
_VERSION_TIMEOUT_SECONDS = 5


class ClaudeCodeError(RuntimeError):
    """CLI run failure with retryability hint."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        stdout: str = "",
        is_timeout: bool = False,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        self.is_timeout = is_timeout
        self.retryable = retryable
        self.attempts_made = 1


@dataclass(slots=True)
class RetryConfig:
    """Exponential backoff policy."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryConfig:
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay_seconds=settings.initial_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Sleep before the retry that follows failed `attempt` (1-based)."""

        delay = self.initial_delay_seconds * self.backoff_multiplier ** (attempt - 1)
        return min(delay, self.max_delay_seconds)


@dataclass(slots=True)
class ClaudeCodeResult:
    success: bool
    output: str
    exit_code: int | None = None
    error: str | None = None
    attempts_made: int = 1


@dataclass(slots=True)
class ClaudeStatus:
    available: bool
    version: str | None = None
    error: str | None = None


@dataclass(slots=True)
class AgentTaskResult:
    success: bool
    response: str
    error: str | None = None


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, ClaudeCodeError):
        return error.retryable
    return classify_failure(message=str(error)).retryable


def with_retry(
    operation: Callable[[int], T],
    config: RetryConfig,
    *,
    context: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `operation(attempt)` until it succeeds or fails non-retryably.

    The final error is re-raised; a `ClaudeCodeError` carries the number of
    attempts actually made.
    """

    attempt = 1
    while True:
        try:
            return operation(attempt)
        except Exception as error:
            if attempt >= config.max_attempts or not is_retryable_error(error):
                logger.error("[%s] Failed after %d attempt(s): %s", context, attempt, error)
                if isinstance(error, ClaudeCodeError):
                    error.attempts_made = attempt
                raise
            delay = config.delay_for(attempt)
            logger.warning(
                "[%s] Attempt %d/%d failed, retrying in %.1fs: %s",
                context,
                attempt,
                config.max_attempts,
                delay,
                error,
            )
            sleep(delay)
            attempt += 1


class ClaudeCodeRunner:
    """Run `claude --print` with the prompt on stdin.

    `settings.binary` may carry extra arguments (it is split with shlex), which
    lets tests point the runner at a local fake agent.
    """

    def __init__(
        self,
        settings: ClaudeSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or ClaudeSettings()
        self.retry_config = RetryConfig.from_settings(self.settings.retry)
        self._sleep = sleep

    def status(self) -> ClaudeStatus:
        """Report whether the CLI starts and which version it reports."""

        try:
            completed = subprocess.run(  # noqa: S603
                [*self._command_head(), "--version"],
                capture_output=True,
                text=True,
                timeout=_VERSION_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired, ClaudeCodeError) as error:
            logger.warning("Claude Code CLI not available: %s", error)
            return ClaudeStatus(available=False, error=str(error))
        if completed.returncode != 0:
            detail = completed.stderr.strip() or f"exit code {completed.returncode}"
            return ClaudeStatus(available=False, error=detail)
        version = completed.stdout.strip()
        logger.info("Claude Code CLI is available, version: %s", version)
        return ClaudeStatus(available=True, version=version)

    def run(
        self,
        work_dir: Path,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        allow_edits: bool = True,
        retry: RetryConfig | None = None,
    ) -> ClaudeCodeResult:
        """Non-streaming run; plain stdout is the output."""

        timeout = timeout_seconds or self.settings.timeout_seconds
        attempts = 0

        def _attempt(attempt: int) -> ClaudeCodeResult:
            nonlocal attempts
            attempts = attempt
            logger.info("[ClaudeCode] Running in %s with timeout %ss", work_dir, timeout)
            return self._run_once(argv, work_dir=work_dir, prompt=prompt, timeout=timeout)

        try:
            argv = self._build_argv(streaming=False, allow_edits=allow_edits)
            result = with_retry(
                _attempt,
                retry or self.retry_config,
                context="ClaudeCode",
                sleep=self._sleep,
            )
        except ClaudeCodeError as error:
            return _failure_result(error)
        result.attempts_made = attempts
        return result

    def run_streaming(
        self,
        work_dir: Path,
        prompt: str,
        on_step: StepCallback | None = None,
        *,
        timeout_seconds: float | None = None,
        allow_edits: bool = True,
        retry: RetryConfig | None = None,
    ) -> ClaudeCodeResult:
        """Streaming run; every parsed step is delivered to `on_step`."""

        timeout = timeout_seconds or self.settings.streaming_timeout_seconds
        attempts = 0

        def _attempt(attempt: int) -> ClaudeCodeResult:
            nonlocal attempts
            attempts = attempt
            logger.info("[ClaudeCode Streaming] Running in %s with timeout %ss", work_dir, timeout)
            return self._run_streaming_once(
                argv,
                work_dir=work_dir,
                prompt=prompt,
                on_step=on_step,
                timeout=timeout,
            )

        try:
            argv = self._build_argv(streaming=True, allow_edits=allow_edits)
            result = with_retry(
                _attempt,
                retry or self.retry_config,
                context="ClaudeCode Streaming",
                sleep=self._sleep,
            )
        except ClaudeCodeError as error:
            return _failure_result(error)
        result.attempts_made = attempts
        return result

    def run_agent_task(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        allow_commands: bool = True,
    ) -> AgentTaskResult:
        """General agent task in the current directory."""

        result = self.run(
            Path.cwd(),
            prompt,
            timeout_seconds=timeout_seconds or self.settings.agent_task_timeout_seconds,
            allow_edits=allow_commands,
        )
        if not result.success:
            return AgentTaskResult(success=False, response="", error=result.output)
        return AgentTaskResult(success=True, response=result.output)

    def run_agent_task_streaming(
        self,
        prompt: str,
        on_step: StepCallback,
        *,
        timeout_seconds: float | None = None,
        allow_commands: bool = True,
    ) -> AgentTaskResult:
        result = self.run_streaming(
            Path.cwd(),
            prompt,
            on_step,
            timeout_seconds=timeout_seconds or self.settings.agent_task_timeout_seconds,
            allow_edits=allow_commands,
        )
        if not result.success:
            return AgentTaskResult(success=False, response="", error=result.output)
        return AgentTaskResult(success=True, response=result.output)

    def _command_head(self) -> list[str]:
        try:
            argv = shlex.split(self.settings.binary)
        except ValueError as error:
            message = f"Invalid Claude CLI binary {self.settings.binary!r}: {error}"
            raise ClaudeCodeError(message) from error
        if not argv:
            raise ClaudeCodeError("Claude CLI binary is empty.")
        return argv

    def _build_argv(self, *, streaming: bool, allow_edits: bool) -> list[str]:
        argv = [*self._command_head(), "--print"]
        if streaming:
            argv.extend(["--verbose", "--output-format", "stream-json"])
        if allow_edits:
            argv.append("--dangerously-skip-permissions")
        return argv

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self.settings.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = self.settings.anthropic_api_key
        if self.settings.oauth_token:
            env["CLAUDE_CODE_OAUTH_TOKEN"] = self.settings.oauth_token
        return env

    def _run_once(
        self,
        argv: list[str],
        *,
        work_dir: Path,
        prompt: str,
        timeout: float,
    ) -> ClaudeCodeResult:
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=work_dir,
                env=self._build_env(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as error:
            raise _spawn_error(error) from error

        try:
            stdout, stderr = process.communicate(input=prompt, timeout=timeout)
        except subprocess.TimeoutExpired as error:
            _terminate_process(process, grace_seconds=self.settings.kill_grace_seconds)
            stdout, stderr = _drain(process)
            raise _timeout_error(timeout, stderr=stderr, stdout=stdout) from error

        if process.returncode != 0:
            raise _exit_error(process.returncode, stderr=stderr, stdout=stdout)
        logger.info("[ClaudeCode] Completed successfully")
        return ClaudeCodeResult(success=True, output=stdout, exit_code=0)

    def _run_streaming_once(  # noqa: PLR0913
        self,
        argv: list[str],
        *,
        work_dir: Path,
        prompt: str,
        on_step: StepCallback | None,
        timeout: float,
    ) -> ClaudeCodeResult:
        demux = StreamDemultiplexer(on_step)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=work_dir,
                env=self._build_env(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as error:
            demux.emit(StepType.ERROR, f"Process error: {error}", status=StepStatus.FAILED)
            raise _spawn_error(error) from error

        chunks: queue.Queue[tuple[str, bytes | None]] = queue.Queue()
        readers = [
            _start_reader("stdout", process.stdout, chunks),
            _start_reader("stderr", process.stderr, chunks),
        ]
        deadline = time.monotonic() + timeout
        stderr_parts: list[str] = []

        try:
            _write_prompt(process, prompt)
        except OSError as error:
            _terminate_process(process, grace_seconds=self.settings.kill_grace_seconds)
            _join_readers(process, readers)
            raise ClaudeCodeError(
                f"Failed to write prompt to stdin: {error}",
                stderr="".join(stderr_parts),
                stdout=demux.output,
            ) from error

        decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        open_streams = {"stdout", "stderr"}
        timed_out = False
        while open_streams:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            try:
                stream_name, data = chunks.get(timeout=remaining)
            except queue.Empty:
                timed_out = True
                break
            final = data is None
            text = decoders[stream_name].decode(data or b"", final=final)
            if final:
                open_streams.discard(stream_name)
            if not text:
                continue
            if stream_name == "stdout":
                demux.feed(text)
            else:
                stderr_parts.append(text)
                logger.debug("[ClaudeCode Streaming] stderr: %s", text[:200])
                demux.feed_stderr(text)

        if timed_out:
            self._abort_on_timeout(process, readers, demux, stderr_parts, timeout)
        try:
            exit_code = process.wait(timeout=max(1.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            self._abort_on_timeout(process, readers, demux, stderr_parts, timeout)

        _join_readers(process, readers)
        logger.info("[ClaudeCode Streaming] Process closed with code %s", exit_code)
        demux.finish(exit_code)
        if exit_code != 0:
            raise _exit_error(exit_code, stderr="".join(stderr_parts), stdout=demux.output)
        return ClaudeCodeResult(success=True, output=demux.output, exit_code=0)

    def _abort_on_timeout(  # noqa: PLR0913
        self,
        process: subprocess.Popen[bytes],
        readers: list[threading.Thread],
        demux: StreamDemultiplexer,
        stderr_parts: list[str],
        timeout: float,
    ) -> NoReturn:
        logger.error("[ClaudeCode Streaming] Timed out after %ss", timeout)
        _terminate_process(process, grace_seconds=self.settings.kill_grace_seconds)
        _join_readers(process, readers)
        demux.emit(StepType.ERROR, f"Timeout after {timeout:g} seconds", status=StepStatus.FAILED)
        raise _timeout_error(timeout, stderr="".join(stderr_parts), stdout=demux.output)


def _start_reader(
    name: str,
    stream: IO[bytes] | None,
    sink: queue.Queue[tuple[str, bytes | None]],
) -> threading.Thread:
    def _pump() -> None:
        try:
            if stream is None:
                return
            while True:
                data = stream.read(_READ_CHUNK_BYTES)
                if not data:
                    return
                sink.put((name, data))
        except (OSError, ValueError):
            logger.debug("Reader for %s stopped", name, exc_info=True)
        finally:
            sink.put((name, None))

    thread = threading.Thread(target=_pump, name=f"claude-{name}-reader", daemon=True)
    thread.start()
    return thread


def _join_readers(process: subprocess.Popen[bytes], readers: list[threading.Thread]) -> None:
    for reader in readers:
        reader.join(timeout=2)
    for stream in (process.stdout, process.stderr):
        if stream is not None:
            stream.close()


def _write_prompt(process: subprocess.Popen[bytes], prompt: str) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    pending = memoryview(prompt.encode("utf-8"))
    try:
        # Unbuffered pipe writes may be partial.
        while pending:
            written = stdin.write(pending)
            pending = pending[written or 0 :]
    except BrokenPipeError:
        logger.debug("CLI closed stdin before reading the whole prompt")
    finally:
        try:
            stdin.close()
        except OSError:
            logger.debug("stdin already closed", exc_info=True)


def _drain(process: subprocess.Popen[str]) -> tuple[str, str]:
    try:
        stdout, stderr = process.communicate(timeout=2)
    except (subprocess.TimeoutExpired, ValueError, OSError):
        return "", ""
    return stdout or "", stderr or ""


def _terminate_process(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    *,
    grace_seconds: float,
) -> None:
    """SIGTERM, then SIGKILL once the grace period runs out."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Process did not terminate, sending SIGKILL")
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _spawn_error(error: OSError) -> ClaudeCodeError:
    logger.error("Spawn error: %s", error)
    return ClaudeCodeError(
        f"Failed to spawn Claude Code process: {error}",
        retryable=classify_failure(spawn_failed=True).retryable,
    )


def _timeout_error(timeout: float, *, stderr: str, stdout: str) -> ClaudeCodeError:
    return ClaudeCodeError(
        f"Claude Code timed out after {timeout:g} seconds",
        stderr=stderr,
        stdout=stdout,
        is_timeout=True,
        retryable=classify_failure(timed_out=True).retryable,
    )


def _exit_error(exit_code: int, *, stderr: str, stdout: str) -> ClaudeCodeError:
    classification = classify_failure(stderr=stderr)
    logger.error(
        "Claude Code exited with code %s: %s",
        exit_code,
        classification.to_log_details(),
    )
    return ClaudeCodeError(
        f"Claude Code exited with code {exit_code}",
        exit_code=exit_code,
        stderr=stderr,
        stdout=stdout,
        retryable=classification.retryable,
    )


def _failure_result(error: ClaudeCodeError) -> ClaudeCodeResult:
    return ClaudeCodeResult(
        success=False,
        output=error.stderr or error.stdout or str(error),
        exit_code=error.exit_code,
        error=str(error),
        attempts_made=error.attempts_made,
    )
