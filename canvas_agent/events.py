"""
events.py - Lifecycle event taxonomy, emitters and SSE framing

The wire contract a UI or HTTP-stream consumer depends on. Every event kind
is its own dataclass with a fixed `type` tag, and AgentEvent is the closed
union of them, so consumers can match exhaustively:

    start             run begins
    thinking_chunk    incremental assistant text
    thought           complete assistant text block
    action            tool invocation known (ready=False) / resolved (ready=True)
    tool_input_chunk  raw partial tool arguments so far
    observation       result of a dispatched tool
    tool_progress     heartbeat or executor progress while a tool runs
    tool_chunk        partial text output from an executor
    context_update    token estimate of a chat session
    complete          final artifact
    error             error with machine-readable code (ABORTED = cancelled)

Framing: each event is one `data: <json>\\n\\n` frame; `data: [DONE]\\n\\n`
always ends the stream.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar, Protocol, Union

from .errors import ErrorCode

logger = logging.getLogger(__name__)


# =============================================================================
# Event Types
# =============================================================================

@dataclass
class _Event:
    type: ClassVar[str] = ""

    def to_dict(self) -> dict:
        data = {"type": self.type}
        for key, value in asdict(self).items():
            if value is not None:
                data[key] = value.value if isinstance(value, ErrorCode) else value
        return data


@dataclass
class StartEvent(_Event):
    type: ClassVar[str] = "start"
    message: str = ""
    run_id: str | None = None


@dataclass
class ThinkingChunkEvent(_Event):
    type: ClassVar[str] = "thinking_chunk"
    content: str = ""
    iteration: int | None = None


@dataclass
class ThoughtEvent(_Event):
    type: ClassVar[str] = "thought"
    content: str = ""
    iteration: int | None = None


@dataclass
class ActionEvent(_Event):
    type: ClassVar[str] = "action"
    tool_id: str = ""
    tool: str = ""
    input: dict = field(default_factory=dict)
    ready: bool = False
    iteration: int | None = None


@dataclass
class ToolInputChunkEvent(_Event):
    type: ClassVar[str] = "tool_input_chunk"
    tool_id: str = ""
    tool: str = ""
    partial: str = ""
    iteration: int | None = None


@dataclass
class ObservationEvent(_Event):
    type: ClassVar[str] = "observation"
    tool_id: str = ""
    tool: str = ""
    result: dict = field(default_factory=dict)
    duration_ms: int | None = None
    iteration: int | None = None


@dataclass
class ToolProgressEvent(_Event):
    type: ClassVar[str] = "tool_progress"
    tool_id: str = ""
    tool: str = ""
    elapsed_ms: int = 0
    status: str = ""
    iteration: int | None = None


@dataclass
class ToolChunkEvent(_Event):
    type: ClassVar[str] = "tool_chunk"
    tool_id: str = ""
    tool: str = ""
    content: str = ""
    iteration: int | None = None


@dataclass
class ContextUpdateEvent(_Event):
    type: ClassVar[str] = "context_update"
    tokens: int = 0
    max_tokens: int = 0


@dataclass
class CompleteEvent(_Event):
    type: ClassVar[str] = "complete"
    result: Any = None
    status: str = "completed"
    iterations: int = 0
    degraded: bool = False


@dataclass
class ErrorEvent(_Event):
    type: ClassVar[str] = "error"
    message: str = ""
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    fatal: bool = False
    iteration: int | None = None
    result: Any = None


AgentEvent = Union[
    StartEvent,
    ThinkingChunkEvent,
    ThoughtEvent,
    ActionEvent,
    ToolInputChunkEvent,
    ObservationEvent,
    ToolProgressEvent,
    ToolChunkEvent,
    ContextUpdateEvent,
    CompleteEvent,
    ErrorEvent,
]

EVENT_TYPES: dict[str, type] = {
    cls.type: cls for cls in (
        StartEvent, ThinkingChunkEvent, ThoughtEvent, ActionEvent, ToolInputChunkEvent,
        ObservationEvent, ToolProgressEvent, ToolChunkEvent, ContextUpdateEvent,
        CompleteEvent, ErrorEvent,
    )
}


def parse_event(data: dict) -> AgentEvent:
    """Rebuild an event from its wire dict (used by clients and tests)."""
    cls = EVENT_TYPES.get(data.get("type", ""))
    if cls is None:
        raise ValueError(f"Unknown event type: {data.get('type')!r}")
    kwargs = {k: v for k, v in data.items() if k != "type"}
    if cls is ErrorEvent and "code" in kwargs:
        kwargs["code"] = ErrorCode(kwargs["code"])
    return cls(**kwargs)


def is_terminal(event: AgentEvent) -> bool:
    if isinstance(event, CompleteEvent):
        return True
    return isinstance(event, ErrorEvent) and event.fatal


# =============================================================================
# Emitters
# =============================================================================

class EventEmitter(Protocol):
    async def emit(self, event: AgentEvent) -> None: ...


class ListEmitter:
    """Collects events in memory. Handy for the REPL and tests."""

    def __init__(self):
        self.events: list[AgentEvent] = []

    async def emit(self, event: AgentEvent) -> None:
        self.events.append(event)

    def of_type(self, cls: type) -> list:
        return [e for e in self.events if isinstance(e, cls)]

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


class CallbackEmitter:
    """Forwards each event to a sync or async callback."""

    def __init__(self, callback: Callable[[AgentEvent], Awaitable[None] | None]):
        self.callback = callback

    async def emit(self, event: AgentEvent) -> None:
        result = self.callback(event)
        if inspect.isawaitable(result):
            await result


class QueueEmitter:
    """Feeds an asyncio.Queue consumed by the SSE generator."""

    def __init__(self, queue: asyncio.Queue | None = None):
        self.queue: asyncio.Queue = queue or asyncio.Queue()
        self.closed = False

    async def emit(self, event: AgentEvent) -> None:
        if self.closed:
            return
        await self.queue.put(event)

    def close(self) -> None:
        self.closed = True


# =============================================================================
# SSE Framing
# =============================================================================

DONE_FRAME = "data: [DONE]\n\n"
KEEPALIVE_FRAME = ": keepalive\n\n"


def format_sse(event: AgentEvent | dict) -> str:
    data = event if isinstance(event, dict) else event.to_dict()
    return f"data: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


async def sse_frames(
    run: Callable[[EventEmitter], Awaitable[Any]],
    cancel_event: asyncio.Event | None = None,
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """
    Drive `run(emitter)` in a task and yield its events as SSE frames.

    A terminal frame (complete or fatal error) is guaranteed before [DONE]:
    if the run dies or ends without one, an INTERNAL_ERROR frame is made up.
    If the consumer goes away, the generator is closed and the run's cancel
    event is set.
    """
    emitter = QueueEmitter()
    task = asyncio.create_task(run(emitter))
    terminal_seen = False
    try:
        while True:
            getter = asyncio.ensure_future(emitter.queue.get())
            done, _ = await asyncio.wait({getter, task}, timeout=keepalive_seconds,
                                         return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                event = getter.result()
                terminal_seen = terminal_seen or is_terminal(event)
                yield format_sse(event)
                continue
            getter.cancel()
            if task in done:
                break
            yield KEEPALIVE_FRAME

        while not emitter.queue.empty():
            event = emitter.queue.get_nowait()
            terminal_seen = terminal_seen or is_terminal(event)
            yield format_sse(event)

        error = None if task.cancelled() else task.exception()
        if error is not None:
            logger.error("run task failed: %s", error, exc_info=error)
        if not terminal_seen:
            message = str(error) if error else "run ended without a result"
            yield format_sse(ErrorEvent(message=message, code=ErrorCode.INTERNAL_ERROR, fatal=True))
        yield DONE_FRAME
    finally:
        emitter.close()
        if not task.done():
            if cancel_event is not None:
                cancel_event.set()
            try:
                await asyncio.wait_for(task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()
            except Exception as e:
                logger.warning("run task raised during shutdown: %s", e)
