"""
collector.py - Streaming Response Collector

A pure reducer over the raw event stream of ONE model call. It keeps a
buffer per content-block index, turns deltas into lifecycle events as they
arrive, and at the end hands back the ordered content blocks plus the
declared stop reason.

    content_block_start  text -> (nothing yet)     tool_use -> action(ready=False)
    content_block_delta  text -> thinking_chunk    json     -> tool_input_chunk
    content_block_stop   text -> thought           tool_use -> repair + action(ready=True)
    message_delta        stop_reason / usage
    message_stop         done

No I/O happens here, so recorded event sequences can be replayed in tests:

    blocks = StreamCollector.replay(recorded_events).blocks
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from . import json_repair
from .errors import ModelCallError
from .events import (
    ActionEvent,
    AgentEvent,
    ThinkingChunkEvent,
    ThoughtEvent,
    ToolInputChunkEvent,
)
from .types import ContentBlock, ConversationMessage, Role, TextBlock, ToolInvocationBlock

logger = logging.getLogger(__name__)

STOP_TOOL_USE = "tool_use"
STOP_END_TURN = "end_turn"
STOP_MAX_TOKENS = "max_tokens"


@dataclass
class _Buffer:
    kind: str
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    raw_arguments: str = ""
    initial_input: dict = field(default_factory=dict)
    closed: bool = False
    block: ContentBlock | None = None


@dataclass
class TurnResult:
    """Everything one model call produced."""
    blocks: list[ContentBlock]
    stop_reason: str | None = None
    message_id: str | None = None
    usage: dict = field(default_factory=dict)

    @property
    def tool_invocations(self) -> list[ToolInvocationBlock]:
        return [b for b in self.blocks if isinstance(b, ToolInvocationBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def truncated(self) -> bool:
        return self.stop_reason == STOP_MAX_TOKENS

    def to_message(self) -> ConversationMessage:
        return ConversationMessage(role=Role.ASSISTANT, content=tuple(self.blocks))


def _as_dict(event: Any) -> dict:
    if isinstance(event, dict):
        return event
    if hasattr(event, "model_dump"):
        return event.model_dump()
    raise TypeError(f"Unsupported stream event: {type(event).__name__}")


class StreamCollector:
    """Reduces one model call's stream events into content blocks."""

    def __init__(self, iteration: int | None = None):
        self.iteration = iteration
        self._buffers: dict[int, _Buffer] = {}
        self._stop_reason: str | None = None
        self._message_id: str | None = None
        self._usage: dict = {}
        self._finished = False

    @classmethod
    def replay(cls, events: Iterable[Any], iteration: int | None = None) -> TurnResult:
        collector = cls(iteration=iteration)
        for event in events:
            collector.feed(event)
        return collector.result()

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, event: Any) -> list[AgentEvent]:
        data = _as_dict(event)
        handler = getattr(self, f"_on_{data.get('type', '')}", None)
        if handler is None:
            # ping and unknown event kinds carry nothing we need
            return []
        return handler(data)

    # -- message level -------------------------------------------------------

    def _on_message_start(self, data: dict) -> list[AgentEvent]:
        message = data.get("message") or {}
        self._message_id = message.get("id")
        self._usage.update(message.get("usage") or {})
        return []

    def _on_message_delta(self, data: dict) -> list[AgentEvent]:
        delta = data.get("delta") or {}
        if delta.get("stop_reason"):
            self._stop_reason = delta["stop_reason"]
        self._usage.update(data.get("usage") or {})
        return []

    def _on_message_stop(self, data: dict) -> list[AgentEvent]:
        self._finished = True
        return []

    def _on_error(self, data: dict) -> list[AgentEvent]:
        error = data.get("error") or {}
        raise ModelCallError(f"stream error: {error.get('type', 'error')}: {error.get('message', '')}")

    # -- block level ---------------------------------------------------------

    def _on_content_block_start(self, data: dict) -> list[AgentEvent]:
        index = data.get("index", len(self._buffers))
        block = data.get("content_block") or {}
        kind = block.get("type", "text")

        if kind == "tool_use":
            buf = _Buffer(
                kind="tool_use",
                tool_id=block.get("id", f"toolu_{index}"),
                tool_name=block.get("name", ""),
                initial_input=block.get("input") or {},
            )
            self._buffers[index] = buf
            return [ActionEvent(tool_id=buf.tool_id, tool=buf.tool_name, input={},
                                ready=False, iteration=self.iteration)]

        self._buffers[index] = _Buffer(kind=kind, text=block.get("text", "") or "")
        return []

    def _on_content_block_delta(self, data: dict) -> list[AgentEvent]:
        buf = self._buffers.get(data.get("index", -1))
        delta = data.get("delta") or {}
        if buf is None or buf.closed:
            logger.debug("delta for unknown or closed block %s", data.get("index"))
            return []

        delta_type = delta.get("type")
        if delta_type == "text_delta" and buf.kind == "text":
            fragment = delta.get("text", "")
            buf.text += fragment
            if not fragment:
                return []
            return [ThinkingChunkEvent(content=fragment, iteration=self.iteration)]

        if delta_type == "input_json_delta" and buf.kind == "tool_use":
            buf.raw_arguments += delta.get("partial_json", "")
            return [ToolInputChunkEvent(tool_id=buf.tool_id, tool=buf.tool_name,
                                        partial=buf.raw_arguments, iteration=self.iteration)]

        return []

    def _on_content_block_stop(self, data: dict) -> list[AgentEvent]:
        buf = self._buffers.get(data.get("index", -1))
        if buf is None or buf.closed:
            return []
        return self._close(buf)

    def _close(self, buf: _Buffer) -> list[AgentEvent]:
        buf.closed = True
        if buf.kind == "text":
            if not buf.text:
                return []
            buf.block = TextBlock(buf.text)
            return [ThoughtEvent(content=buf.text, iteration=self.iteration)]

        if buf.kind == "tool_use":
            if buf.raw_arguments.strip():
                parsed = json_repair.parse(buf.raw_arguments)
                if parsed is None:
                    logger.warning("unrecoverable arguments for %s, using {}: %r",
                                   buf.tool_name, buf.raw_arguments[:200])
                    parsed = {}
            else:
                parsed = dict(buf.initial_input)
            if not isinstance(parsed, dict):
                parsed = {"items": parsed}
            buf.block = ToolInvocationBlock(id=buf.tool_id, name=buf.tool_name, input=parsed)
            return [ActionEvent(tool_id=buf.tool_id, tool=buf.tool_name, input=parsed,
                                ready=True, iteration=self.iteration)]

        # thinking / redacted blocks are not replayed to the model
        return []

    # -- result --------------------------------------------------------------

    def flush(self) -> list[AgentEvent]:
        """Close blocks the stream left open (e.g. cut off mid-block)."""
        events: list[AgentEvent] = []
        for index in sorted(self._buffers):
            buf = self._buffers[index]
            if not buf.closed:
                events.extend(self._close(buf))
        return events

    def result(self) -> TurnResult:
        self.flush()
        blocks = [
            self._buffers[i].block
            for i in sorted(self._buffers)
            if self._buffers[i].block is not None
        ]
        stop_reason = self._stop_reason
        if stop_reason is None:
            stop_reason = STOP_TOOL_USE if any(isinstance(b, ToolInvocationBlock) for b in blocks) else STOP_END_TURN
        return TurnResult(blocks=blocks, stop_reason=stop_reason,
                          message_id=self._message_id, usage=dict(self._usage))
