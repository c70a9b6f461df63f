"""Claude Code `stream-json` output to uniform agent steps."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pm_agent.storage.common import to_epoch_millis, utc_now

logger = logging.getLogger(__name__)


class StepType(str, Enum):
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    TEXT = "text"
    ERROR = "error"
    COMPLETE = "complete"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class AgentStep:
    """One observable unit of agent progress; `timestamp` is epoch millis."""

    id: str
    type: StepType
    timestamp: int
    content: str
    tool_name: str | None = None
    tool_input: Any = None
    tool_output: Any = None
    status: StepStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "content": self.content,
        }
        if self.tool_name is not None:
            payload["toolName"] = self.tool_name
        if self.tool_input is not None:
            payload["toolInput"] = self.tool_input
        if self.tool_output is not None:
            payload["toolOutput"] = self.tool_output
        if self.status is not None:
            payload["status"] = self.status.value
        return payload


StepCallback = Callable[[AgentStep], None]


def parse_stream_event(event: object, *, step_id: str, timestamp: int) -> AgentStep | None:
    """Map one decoded NDJSON event to at most one step.

    Only the first recognised content block of a message is surfaced.
    """

    if not isinstance(event, dict):
        return None
    event_type = event.get("type")

    if event_type == "system" and event.get("subtype") == "init":
        return None

    if event_type == "assistant":
        for block in _content_blocks(event):
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                return AgentStep(
                    id=step_id,
                    type=StepType.TEXT,
                    timestamp=timestamp,
                    content=str(block["text"]),
                    status=StepStatus.RUNNING,
                )
            if block_type == "tool_use":
                name = block.get("name")
                return AgentStep(
                    id=step_id,
                    type=StepType.TOOL_USE,
                    timestamp=timestamp,
                    content=f"Using tool: {name}",
                    tool_name=str(name) if name is not None else None,
                    tool_input=block.get("input"),
                    status=StepStatus.RUNNING,
                )
            if block_type == "thinking" and block.get("thinking"):
                return AgentStep(
                    id=step_id,
                    type=StepType.THINKING,
                    timestamp=timestamp,
                    content=str(block["thinking"]),
                    status=StepStatus.RUNNING,
                )
        return None

    if event_type == "user":
        for block in _content_blocks(event):
            if block.get("type") != "tool_result":
                continue
            tool_content = block.get("content")
            return AgentStep(
                id=step_id,
                type=StepType.TOOL_RESULT,
                timestamp=timestamp,
                content=(
                    tool_content
                    if isinstance(tool_content, str)
                    else json.dumps(tool_content, ensure_ascii=False)
                ),
                tool_output=tool_content,
                status=StepStatus.COMPLETED,
            )
        return None

    if event_type == "result":
        result = event.get("result")
        if not result:
            return None
        succeeded = event.get("subtype") == "success"
        return AgentStep(
            id=step_id,
            type=StepType.ERROR if event.get("is_error") else StepType.TEXT,
            timestamp=timestamp,
            content=str(result),
            status=StepStatus.COMPLETED if succeeded else StepStatus.FAILED,
        )

    return None


class StreamDemultiplexer:
    """Incremental NDJSON splitter and step emitter for one CLI run.

    Chunks may split lines anywhere; the trailing fragment stays buffered
    until the next chunk or `finish`. Step ids are allocated only for emitted
    steps, so they increase by one per delivered step.
    """

    def __init__(
        self,
        on_step: StepCallback | None = None,
        *,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._on_step = on_step
        self._clock_ms = clock_ms or (lambda: to_epoch_millis(utc_now()))
        self._buffer = ""
        self._counter = 0
        self._raw_lines: list[str] = []
        self._text_parts: list[str] = []
        self.current_tool_step_id: str | None = None
        self.steps: list[AgentStep] = []

    @property
    def full_output(self) -> str:
        """Every non-blank stdout line seen so far, newline-terminated."""

        return "".join(f"{line}\n" for line in self._raw_lines)

    @property
    def text_content(self) -> str:
        return "".join(self._text_parts)

    @property
    def output(self) -> str:
        """Accumulated text, or the raw NDJSON when no text step was seen."""

        return self.text_content or self.full_output

    def feed(self, chunk: str) -> list[AgentStep]:
        """Consume one stdout chunk and emit steps for every completed line."""

        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        emitted: list[AgentStep] = []
        for line in lines:
            step = self._consume_line(line)
            if step is not None:
                emitted.append(step)
        return emitted

    def feed_stderr(self, text: str) -> AgentStep:
        return self.emit(StepType.ERROR, text, status=StepStatus.FAILED)

    def finish(self, exit_code: int) -> list[AgentStep]:
        """Flush the buffered fragment and emit the terminal `complete` step."""

        emitted: list[AgentStep] = []
        remainder, self._buffer = self._buffer, ""
        if remainder.strip():
            step = self._consume_line(remainder)
            if step is not None:
                emitted.append(step)
        succeeded = exit_code == 0
        emitted.append(
            self.emit(
                StepType.COMPLETE,
                "Task completed" if succeeded else f"Task failed with exit code {exit_code}",
                status=StepStatus.COMPLETED if succeeded else StepStatus.FAILED,
            ),
        )
        return emitted

    def emit(
        self,
        step_type: StepType,
        content: str,
        *,
        status: StepStatus | None = None,
    ) -> AgentStep:
        """Emit a synthetic step (stderr, timeout, spawn error, completion)."""

        step = AgentStep(
            id=self._next_id(),
            type=step_type,
            timestamp=self._clock_ms(),
            content=content,
            status=status,
        )
        self._deliver(step)
        return step

    def _consume_line(self, line: str) -> AgentStep | None:
        stripped = line.strip()
        if not stripped:
            return None
        self._raw_lines.append(stripped)
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line: %s", stripped[:100])
            return None

        step = parse_stream_event(
            event,
            step_id=f"step-{self._counter + 1}",
            timestamp=self._clock_ms(),
        )
        if step is None:
            return None
        self._counter += 1

        if step.type == StepType.TOOL_USE and step.tool_name:
            self.current_tool_step_id = step.id
        elif step.type == StepType.TOOL_RESULT:
            self.current_tool_step_id = None
        if step.type == StepType.TEXT:
            self._text_parts.append(step.content)

        self._deliver(step)
        return step

    def _next_id(self) -> str:
        self._counter += 1
        return f"step-{self._counter}"

    def _deliver(self, step: AgentStep) -> None:
        self.steps.append(step)
        if self._on_step is None:
            return
        try:
            self._on_step(step)
        except Exception:  # noqa: BLE001
            logger.warning("Step callback failed for %s", step.id, exc_info=True)


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]
