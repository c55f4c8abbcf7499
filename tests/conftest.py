"""
Shared fixtures: a scripted model client that replays raw stream events.

Each scripted turn is either a list of raw event dicts (what
AnthropicModelClient yields after model_dump), an exception to raise, or
HANG to block until the caller cancels.
"""
import asyncio
import copy
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

HANG = object()


def _message_start(message_id: str = "msg_test") -> dict:
    return {
        "type": "message_start",
        "message": {"id": message_id, "usage": {"input_tokens": 10, "output_tokens": 0}},
    }


def _message_end(stop_reason: str) -> list[dict]:
    return [
        {"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 5}},
        {"type": "message_stop"},
    ]


def _split(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


def text_turn(text: str, stop_reason: str = "end_turn", chunk_size: int = 8) -> list[dict]:
    """A turn with one text block and no tool calls."""
    events = [
        _message_start(),
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    ]
    for piece in _split(text, chunk_size):
        events.append({"type": "content_block_delta", "index": 0,
                       "delta": {"type": "text_delta", "text": piece}})
    events.append({"type": "content_block_stop", "index": 0})
    return events + _message_end(stop_reason)


def tool_turn(*calls, text: str | None = None, chunk_size: int = 7) -> list[dict]:
    """
    A turn with optional leading text and one tool_use block per call.

    Each call is (tool_id, name, arguments). arguments may be a dict (sent as
    JSON) or a raw string, which is streamed verbatim so malformed JSON can
    be exercised.
    """
    events = [_message_start()]
    index = 0
    if text:
        events += [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
            {"type": "content_block_stop", "index": 0},
        ]
        index = 1
    for tool_id, name, arguments in calls:
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments, ensure_ascii=False)
        events.append({"type": "content_block_start", "index": index,
                       "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}}})
        for piece in _split(raw, chunk_size):
            events.append({"type": "content_block_delta", "index": index,
                           "delta": {"type": "input_json_delta", "partial_json": piece}})
        events.append({"type": "content_block_stop", "index": index})
        index += 1
    return events + _message_end("tool_use")


class ScriptedModel:
    """Stands in for AnthropicModelClient; one scripted turn per stream() call."""

    def __init__(self, turns):
        self.turns = list(turns)
        self.calls: list[dict] = []

    async def stream(self, system, messages, tools, max_tokens, model=None):
        self.calls.append({
            "system": system,
            "messages": copy.deepcopy(messages),
            "tools": [t["name"] for t in tools],
            "model": model,
        })
        if not self.turns:
            raise AssertionError("model called more times than scripted")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        if turn is HANG:
            await asyncio.Event().wait()
        for event in turn:
            await asyncio.sleep(0)
            yield event


@pytest.fixture
def scripted_model():
    return ScriptedModel
