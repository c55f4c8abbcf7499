"""
Tests for the event taxonomy, emitters and SSE framing.
"""
import asyncio
import json

import pytest

from canvas_agent.errors import ErrorCode
from canvas_agent.events import (
    DONE_FRAME,
    EVENT_TYPES,
    ActionEvent,
    CallbackEmitter,
    CompleteEvent,
    ErrorEvent,
    ObservationEvent,
    QueueEmitter,
    StartEvent,
    ThinkingChunkEvent,
    format_sse,
    is_terminal,
    parse_event,
    sse_frames,
)


def decode(frames):
    """Turn SSE frames back into dicts, [DONE] kept as a string."""
    out = []
    for frame in frames:
        assert frame.endswith("\n\n")
        if frame.startswith(":"):
            out.append("keepalive")
            continue
        payload = frame[len("data: "):-2]
        out.append(payload if payload == "[DONE]" else json.loads(payload))
    return out


def collect(run, **kwargs):
    async def consume():
        return [frame async for frame in sse_frames(run, **kwargs)]
    return asyncio.run(consume())


def test_event_types_are_a_closed_set():
    assert set(EVENT_TYPES) == {
        "start", "thinking_chunk", "thought", "action", "tool_input_chunk", "observation",
        "tool_progress", "tool_chunk", "context_update", "complete", "error",
    }


def test_to_dict_drops_none_and_serializes_codes():
    assert ThinkingChunkEvent(content="hi").to_dict() == {"type": "thinking_chunk", "content": "hi"}
    assert ErrorEvent(message="stop", code=ErrorCode.ABORTED, fatal=True, iteration=2).to_dict() == {
        "type": "error", "message": "stop", "code": "ABORTED", "fatal": True, "iteration": 2,
    }


def test_parse_event_round_trip():
    event = ActionEvent(tool_id="t1", tool="web_search", input={"query": "x"}, ready=True, iteration=1)
    assert parse_event(event.to_dict()) == event
    error = parse_event({"type": "error", "message": "m", "code": "API_ERROR", "fatal": False})
    assert error.code is ErrorCode.API_ERROR
    with pytest.raises(ValueError):
        parse_event({"type": "mystery"})


def test_is_terminal():
    assert is_terminal(CompleteEvent(result={}))
    assert is_terminal(ErrorEvent(message="x", fatal=True))
    assert not is_terminal(ErrorEvent(message="x", fatal=False))
    assert not is_terminal(StartEvent())


def test_format_sse_keeps_chinese_readable():
    assert format_sse(ThinkingChunkEvent(content="你好")) == 'data: {"type": "thinking_chunk", "content": "你好"}\n\n'
    assert DONE_FRAME == "data: [DONE]\n\n"


def test_callback_emitter_accepts_sync_and_async():
    seen = []

    async def async_callback(event):
        seen.append(("async", event.type))

    async def scenario():
        await CallbackEmitter(lambda e: seen.append(("sync", e.type))).emit(StartEvent())
        await CallbackEmitter(async_callback).emit(StartEvent())

    asyncio.run(scenario())
    assert seen == [("sync", "start"), ("async", "start")]


def test_queue_emitter_drops_after_close():
    async def scenario():
        emitter = QueueEmitter()
        await emitter.emit(StartEvent())
        emitter.close()
        await emitter.emit(StartEvent())
        return emitter.queue.qsize()

    assert asyncio.run(scenario()) == 1


# =============================================================================
# SSE
# =============================================================================

def test_frames_end_with_terminal_then_done():
    async def run(emitter):
        await emitter.emit(StartEvent(message="go"))
        await emitter.emit(ObservationEvent(tool_id="t1", tool="x", result={"success": True}, duration_ms=3))
        await emitter.emit(CompleteEvent(result={"text": "ok"}, iterations=1))

    frames = decode(collect(run))
    assert [f["type"] if isinstance(f, dict) else f for f in frames] == [
        "start", "observation", "complete", "[DONE]",
    ]


def test_crashed_run_still_gets_terminal_frame():
    """Test: If the run dies without a terminal event, an INTERNAL_ERROR frame is synthesized."""
    async def run(emitter):
        await emitter.emit(StartEvent())
        raise RuntimeError("worker died")

    frames = decode(collect(run))
    assert frames[-1] == "[DONE]"
    error = frames[-2]
    assert error["type"] == "error" and error["fatal"] is True
    assert error["code"] == "INTERNAL_ERROR"
    assert "worker died" in error["message"]


def test_run_without_result_gets_terminal_frame():
    async def run(emitter):
        await emitter.emit(StartEvent())

    frames = decode(collect(run))
    assert frames[-2]["code"] == "INTERNAL_ERROR"
    assert frames[-2]["message"] == "run ended without a result"


def test_keepalive_while_run_is_quiet():
    async def run(emitter):
        await asyncio.sleep(0.25)
        await emitter.emit(CompleteEvent(result={}))

    frames = decode(collect(run, keepalive_seconds=0.1))
    assert "keepalive" in frames
    assert frames[-2]["type"] == "complete"


def test_consumer_disconnect_sets_cancel_event():
    """Test: Closing the frame generator early signals the run to stop."""
    async def scenario():
        cancel_event = asyncio.Event()
        stopped = asyncio.Event()

        async def run(emitter):
            await emitter.emit(StartEvent())
            await cancel_event.wait()
            stopped.set()

        frames = sse_frames(run, cancel_event)
        first = await frames.__anext__()
        await frames.aclose()
        return first, cancel_event.is_set(), stopped.is_set()

    first, cancelled, stopped = asyncio.run(scenario())
    assert first.startswith('data: {"type": "start"')
    assert cancelled
    assert stopped
