"""
dispatcher.py - Tool Dispatcher

Runs one turn's batch of tool invocations concurrently and guarantees that
every invocation gets exactly one result:

    unknown tool        -> failure result (UNKNOWN_TOOL)
    invalid arguments   -> failure result (INVALID_TOOL_INPUT) + expected schema
    executor raises     -> failure result (TOOL_FAILED)
    run cancelled       -> failure result (ABORTED), executor task cancelled

Results come back in declaration order regardless of completion order. While
an executor runs, a heartbeat task emits tool_progress every
`heartbeat_interval` seconds so long tools stay visible; an interval of 0
disables it. Sync executors run in a worker thread.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from .config import SETTINGS
from .errors import ErrorCode, ToolInputError
from .events import EventEmitter, ObservationEvent, ToolChunkEvent, ToolProgressEvent
from .registry import ToolRegistry
from .types import (
    ToolCallbacks,
    ToolContext,
    ToolExecutionResult,
    ToolInvocationBlock,
    ToolResultBlock,
)

logger = logging.getLogger(__name__)

MAX_TOOL_CONCURRENCY = 10
MAX_RESULT_CHARS = 50_000


@dataclass
class DispatchOutcome:
    invocation: ToolInvocationBlock
    result: ToolExecutionResult
    duration_ms: int

    def to_result_block(self) -> ToolResultBlock:
        content = self.result.to_content()
        if len(content) > MAX_RESULT_CHARS:
            content = content[:MAX_RESULT_CHARS] + "\n... (truncated)"
        return ToolResultBlock(
            invocation_id=self.invocation.id,
            content=content,
            is_error=not self.result.success,
        )


class ToolDispatcher:
    def __init__(self, registry: ToolRegistry, heartbeat_interval: float | None = None,
                 max_concurrency: int = MAX_TOOL_CONCURRENCY):
        self.registry = registry
        if heartbeat_interval is None:
            heartbeat_interval = SETTINGS.heartbeat_seconds
        self.heartbeat_interval = heartbeat_interval
        self.max_concurrency = max_concurrency

    async def dispatch(
        self,
        invocations: list[ToolInvocationBlock],
        context: ToolContext,
        emitter: EventEmitter,
        iteration: int | None = None,
    ) -> list[DispatchOutcome]:
        if not invocations:
            return []
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def execute_one(invocation: ToolInvocationBlock) -> DispatchOutcome:
            async with semaphore:
                return await self._execute(invocation, context, emitter, iteration)

        # gather preserves argument order
        return list(await asyncio.gather(*(execute_one(inv) for inv in invocations)))

    async def _execute(
        self,
        invocation: ToolInvocationBlock,
        context: ToolContext,
        emitter: EventEmitter,
        iteration: int | None,
    ) -> DispatchOutcome:
        started = time.monotonic()
        result = await self._run_guarded(invocation, context, emitter, iteration, started)
        duration_ms = int((time.monotonic() - started) * 1000)

        if result.success:
            logger.info("tool %s ok in %dms", invocation.name, duration_ms)
        else:
            logger.warning("tool %s failed in %dms: %s", invocation.name, duration_ms, result.error)

        await emitter.emit(ObservationEvent(
            tool_id=invocation.id,
            tool=invocation.name,
            result=result.to_dict(),
            duration_ms=duration_ms,
            iteration=iteration,
        ))
        return DispatchOutcome(invocation=invocation, result=result, duration_ms=duration_ms)

    async def _run_guarded(self, invocation, context, emitter, iteration, started) -> ToolExecutionResult:
        descriptor = self.registry.get(invocation.name)
        if descriptor is None:
            return ToolExecutionResult.failure(f"unknown tool: {invocation.name}", code=ErrorCode.UNKNOWN_TOOL.value)

        try:
            args = descriptor.validate(invocation.input)
        except ToolInputError as e:
            return ToolExecutionResult.failure(str(e), code=ErrorCode.INVALID_TOOL_INPUT.value,
                                               expected_schema=e.schema)

        if context.cancelled:
            return ToolExecutionResult.failure("cancelled", code=ErrorCode.ABORTED.value)

        async def on_progress(status: str) -> None:
            await emitter.emit(ToolProgressEvent(
                tool_id=invocation.id, tool=invocation.name,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                status=status, iteration=iteration,
            ))

        async def on_chunk(text: str) -> None:
            await emitter.emit(ToolChunkEvent(
                tool_id=invocation.id, tool=invocation.name, content=text, iteration=iteration,
            ))

        callbacks = ToolCallbacks(on_progress=on_progress, on_chunk=on_chunk)

        async def call_executor() -> ToolExecutionResult:
            if descriptor.is_async:
                value = await descriptor.executor(args, context, callbacks)
            else:
                # sync executors run off the loop so the batch and heartbeat keep going
                value = await asyncio.to_thread(descriptor.executor, args, context, callbacks)
                if asyncio.iscoroutine(value):
                    value = await value
            return ToolExecutionResult.coerce(value)

        work = asyncio.ensure_future(call_executor())
        cancel_wait = asyncio.ensure_future(context.cancel_event.wait())
        background = [cancel_wait]
        if self.heartbeat_interval > 0:
            background.append(asyncio.ensure_future(self._heartbeat(invocation, emitter, iteration, started)))
        try:
            await asyncio.wait({work, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
                return ToolExecutionResult.failure("cancelled", code=ErrorCode.ABORTED.value)
            return work.result()
        except asyncio.CancelledError:
            work.cancel()
            raise
        except Exception as e:
            logger.exception("tool %s raised", invocation.name)
            code = e.code if isinstance(getattr(e, "code", None), ErrorCode) else ErrorCode.TOOL_FAILED
            return ToolExecutionResult.failure(str(e) or type(e).__name__, code=code.value)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

    async def _heartbeat(self, invocation, emitter, iteration, started) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await emitter.emit(ToolProgressEvent(
                tool_id=invocation.id,
                tool=invocation.name,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                status="running",
                iteration=iteration,
            ))
