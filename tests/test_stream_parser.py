from __future__ import annotations

import json

import allure

from pm_agent.claude.stream import (
    AgentStep,
    StepStatus,
    StepType,
    StreamDemultiplexer,
    parse_stream_event,
)

pytestmark = [
    allure.epic("Claude Code Runner"),
    allure.feature("Stream Parsing"),
]


def _line(event: dict[str, object]) -> str:
    return json.dumps(event) + "\n"


def _assistant(*blocks: dict[str, object]) -> dict[str, object]:
    return {"type": "assistant", "message": {"content": list(blocks)}}


def _demux() -> tuple[StreamDemultiplexer, list[AgentStep]]:
    seen: list[AgentStep] = []
    return StreamDemultiplexer(seen.append, clock_ms=lambda: 1_000), seen


def test_first_recognised_block_wins() -> None:
    step = parse_stream_event(
        _assistant(
            {"type": "tool_use", "name": "Bash", "input": {"command": "ls"}},
            {"type": "text", "text": "ignored"},
        ),
        step_id="step-1",
        timestamp=5,
    )

    assert step == AgentStep(
        id="step-1",
        type=StepType.TOOL_USE,
        timestamp=5,
        content="Using tool: Bash",
        tool_name="Bash",
        tool_input={"command": "ls"},
        status=StepStatus.RUNNING,
    )


def test_ignored_events_produce_no_step() -> None:
    for event in (
        {"type": "system", "subtype": "init"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": ""}]}},
        {"type": "result", "result": "", "subtype": "success"},
        {"type": "unknown"},
        ["not", "an", "object"],
    ):
        assert parse_stream_event(event, step_id="step-1", timestamp=0) is None


def test_result_event_maps_error_flag_and_subtype() -> None:
    ok = parse_stream_event(
        {"type": "result", "result": "All done", "is_error": False, "subtype": "success"},
        step_id="step-1",
        timestamp=0,
    )
    failed = parse_stream_event(
        {
            "type": "result",
            "result": "Overloaded",
            "is_error": True,
            "subtype": "error_during_run",
        },
        step_id="step-2",
        timestamp=0,
    )

    assert ok is not None
    assert (ok.type, ok.status) == (StepType.TEXT, StepStatus.COMPLETED)
    assert failed is not None
    assert (failed.type, failed.status) == (StepType.ERROR, StepStatus.FAILED)


def test_tool_result_content_is_serialised_when_structured() -> None:
    step = parse_stream_event(
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "content": [{"text": "x"}]}]},
        },
        step_id="step-3",
        timestamp=0,
    )

    assert step is not None
    assert step.type == StepType.TOOL_RESULT
    assert step.content == '[{"text": "x"}]'
    assert step.tool_output == [{"text": "x"}]
    assert step.status == StepStatus.COMPLETED


def test_lines_split_across_chunks_are_reassembled() -> None:
    demux, seen = _demux()
    payload = _line(_assistant({"type": "text", "text": "Hello "})) + _line(
        _assistant({"type": "text", "text": "world"}),
    )

    for index in range(0, len(payload), 7):
        demux.feed(payload[index : index + 7])

    assert [step.content for step in seen] == ["Hello ", "world"]
    assert [step.id for step in seen] == ["step-1", "step-2"]
    assert demux.output == "Hello world"


def test_blank_and_invalid_lines_are_skipped_but_kept_in_raw_output() -> None:
    demux, seen = _demux()

    demux.feed("\n   \nnot json\n")
    demux.feed(_line({"type": "system", "subtype": "init"}))

    assert seen == []
    assert demux.full_output == 'not json\n{"type": "system", "subtype": "init"}\n'
    assert demux.output == demux.full_output


def test_finish_flushes_partial_line_then_completes() -> None:
    demux, seen = _demux()
    demux.feed(json.dumps(_assistant({"type": "text", "text": "tail"})))
    assert seen == []

    emitted = demux.finish(0)

    assert [step.type for step in emitted] == [StepType.TEXT, StepType.COMPLETE]
    assert seen[-1].content == "Task completed"
    assert seen[-1].status == StepStatus.COMPLETED
    assert [step.id for step in seen] == ["step-1", "step-2"]


def test_failed_exit_and_stderr_steps() -> None:
    demux, seen = _demux()

    demux.feed_stderr("warning: slow network")
    demux.finish(3)

    assert [(step.type, step.status) for step in seen] == [
        (StepType.ERROR, StepStatus.FAILED),
        (StepType.COMPLETE, StepStatus.FAILED),
    ]
    assert seen[-1].content == "Task failed with exit code 3"


def test_tool_tracking_is_cleared_by_tool_result() -> None:
    demux, _ = _demux()

    demux.feed(_line(_assistant({"type": "tool_use", "name": "Read", "input": {}})))
    assert demux.current_tool_step_id == "step-1"

    tool_result = {"type": "tool_result", "content": "ok"}
    demux.feed(_line({"type": "user", "message": {"content": [tool_result]}}))
    assert demux.current_tool_step_id is None


def test_step_ids_increase_across_parsed_and_synthetic_steps() -> None:
    demux, seen = _demux()

    demux.feed(_line({"type": "system", "subtype": "init"}))
    demux.feed(_line(_assistant({"type": "thinking", "thinking": "hmm"})))
    demux.feed_stderr("oops")
    demux.feed(_line({"type": "result", "result": "done", "subtype": "success"}))
    demux.finish(0)

    assert [step.id for step in seen] == ["step-1", "step-2", "step-3", "step-4"]
    assert [step.type for step in seen] == [
        StepType.THINKING,
        StepType.ERROR,
        StepType.TEXT,
        StepType.COMPLETE,
    ]


def test_failing_callback_does_not_break_parsing() -> None:
    def _explode(step: AgentStep) -> None:
        raise RuntimeError("subscriber bug")

    demux = StreamDemultiplexer(_explode)

    emitted = demux.feed(_line(_assistant({"type": "text", "text": "still parsed"})))

    assert [step.content for step in emitted] == ["still parsed"]
    assert demux.text_content == "still parsed"


def test_step_to_dict_omits_unset_fields() -> None:
    step = AgentStep(id="step-1", type=StepType.TEXT, timestamp=7, content="hi")

    assert step.to_dict() == {"id": "step-1", "type": "text", "timestamp": 7, "content": "hi"}
