"""Local fake Claude Code CLI for runner integration tests.

Behaviour is selected with `PM_AGENT_ECHO_MODE`:

- `echo` (default): echo the prompt back as text.
- `result`: emit a single successful `result` event.
- `chunked`: emit events split across several flushed writes.
- `plan`: emit a plan markdown document, duplicated the way the real CLI does.
- `fail`: print an auth error to stderr and exit 2.
- `transient`: print a 503 error to stderr and exit 1.
- `flaky`: fail like `transient` until the counter file in
  `PM_AGENT_ECHO_STATE` reaches `PM_AGENT_ECHO_FAILURES`, then echo.
- `sleep`: hang until killed.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

SAMPLE_PLAN = """\
---
project_id: "demo"
generated_at: "2026-01-01T00:00:00Z"
updated_at: "2026-01-01T00:00:00Z"
version: 1
status: "active"
---

# Project Plan: demo

## Overview
Demo service with a CLI and SQLite storage.

## Current State

### Implemented
- [x] CLI skeleton - basic commands

## Roadmap

### Phase 1: MVP (Critical)
- [ ] Add authentication layer - priority: critical

### Phase 2: Enhancements (Important)
- [ ] Write integration tests - priority: medium

## Technical Debt
- Missing migrations for legacy tables

## Risks & Blockers
- Single maintainer

## Notes
Keep the CLI backwards compatible.
"""


def main(argv: list[str] | None = None) -> int:
    """Run deterministic fake CLI behaviour."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--print", action="store_true", dest="print_mode")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("--version", action="store_true")
    args = parser.parse_args(argv)

    if args.version:
        print("0.0.0 (echo agent)")
        return 0

    mode = os.getenv("PM_AGENT_ECHO_MODE", "echo")
    streaming = args.output_format == "stream-json"

    if mode == "sleep":
        time.sleep(3600)
        return 0
    if mode == "fail":
        sys.stderr.write("Error: authentication failed: bad credentials\n")
        return 2
    if mode == "transient" or (mode == "flaky" and _should_fail()):
        sys.stderr.write("API Error: 503 Service Unavailable\n")
        return 1

    prompt = sys.stdin.read()
    if mode == "result":
        _emit({"type": "result", "result": "done", "is_error": False, "subtype": "success"})
        return 0
    if mode == "chunked":
        _emit_chunked(prompt)
        return 0
    if mode == "plan":
        text = f"Let me look around.\n{SAMPLE_PLAN}\nNow I have the plan.\n{SAMPLE_PLAN}"
        if streaming:
            _emit_text_events(text)
        else:
            sys.stdout.write(text)
        return 0

    if streaming:
        _emit_text_events(f"echo: {prompt.strip()}")
    else:
        sys.stdout.write(f"echo: {prompt.strip()}\n")
    return 0


def _emit(event: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(event, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _emit_text_events(text: str) -> None:
    _emit({"type": "system", "subtype": "init", "tools": ["Read", "Bash"]})
    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})
    _emit({"type": "result", "result": "", "is_error": False, "subtype": "success"})


def _emit_chunked(prompt: str) -> None:
    tool_use = json.dumps(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "tool_use", "name": "Read", "input": {"path": "README.md"}}],
            },
        },
    )
    tool_result = json.dumps(
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "content": "file body"}]},
        },
    )
    final = json.dumps(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": prompt.strip()}]}},
    )
    payload = f"{tool_use}\n{tool_result}\n\nnot json\n{final}"
    middle = len(tool_use) // 2
    for part in (payload[:middle], payload[middle:]):
        sys.stdout.write(part)
        sys.stdout.flush()
        time.sleep(0.05)


def _should_fail() -> bool:
    state_path = Path(os.environ["PM_AGENT_ECHO_STATE"])
    failures = int(os.getenv("PM_AGENT_ECHO_FAILURES", "1"))
    seen = int(state_path.read_text("utf-8")) if state_path.exists() else 0
    state_path.write_text(str(seen + 1), "utf-8")
    return seen < failures


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
