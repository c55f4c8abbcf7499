"""
loop.py - Loop Controller (ReAct state machine)

    Idle -> Running(iteration 1..max) -> Completed | Exhausted | Cancelled | Fatal

One model call per iteration:

    cancelled?            -> Cancelled (error ABORTED), conversation closed
    stream model call     -> collector -> thinking/thought/action events
    model call failed     -> retry with a corrective user turn while budget
                             remains, else Fatal (error carrying a fallback)
    no tool invocations   -> completion policy: accept (Completed) or nudge
    tool invocations      -> dispatch batch, then commit assistant turn and
                             results together, update LoopState
    finalize succeeded    -> Completed with the parsed artifact
    budget spent          -> Exhausted with a best-effort artifact

What differs between agents (prompt, budget, finalize tool, completion
policy, how tool outcomes update state, how the artifact is built) lives in
an AgentProfile. The controller holds no state between runs; LoopState and
the Conversation belong to exactly one run.
"""

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from langfuse import observe

from .collector import StreamCollector, TurnResult
from .config import SETTINGS
from .conversation import Conversation, tool_results_message
from .dispatcher import DispatchOutcome, ToolDispatcher
from .errors import ErrorCode
from .events import CompleteEvent, ErrorEvent, EventEmitter, StartEvent, ThoughtEvent
from .log import log_api_call, log_api_response
from .model_client import ModelClient
from .registry import ToolRegistry
from .types import (
    ConversationMessage,
    LoopState,
    RunResult,
    RunStatus,
    ThoughtStep,
    ToolContext,
)

logger = logging.getLogger(__name__)

MAX_TRUNCATION_RETRIES = 3

CONTINUE_PROMPT = "Your response was cut off. Please continue."
MODEL_ERROR_PROMPT = (
    "[System] The previous request failed ({error}). "
    "Continue from where you left off and keep using the available tools."
)


# =============================================================================
# Completion Policies
# =============================================================================

class CompletionPolicy(Protocol):
    def on_natural_completion(self, state: LoopState, text: str) -> str | None:
        """Return a nudge message to keep going, or None to accept the answer."""
        ...


class AcceptCompletion:
    """Plain text without tool calls is the answer."""

    def on_natural_completion(self, state: LoopState, text: str) -> str | None:
        return None


class RequireFinalize:
    """Only the finalize tool ends the run; natural completion is always nudged."""

    def __init__(self, build_nudge: Callable[[LoopState], str] | None = None):
        self.build_nudge = build_nudge

    def on_natural_completion(self, state: LoopState, text: str) -> str | None:
        if self.build_nudge is not None:
            return self.build_nudge(state)
        return (
            f"[System] Iteration {state.iteration}/{state.max_iterations}. "
            "You have not called the finalize tool yet. Continue working, "
            "or finalize if the result is ready."
        )


class ExplorationThreshold:
    """Nudge until at least `min_tool_rounds` tool rounds have happened."""

    def __init__(self, min_tool_rounds: int, nudge: str | None = None):
        self.min_tool_rounds = min_tool_rounds
        self.nudge = nudge or (
            "[System] You answered before using any tools. "
            "Check your answer with the available tools, then respond."
        )

    def on_natural_completion(self, state: LoopState, text: str) -> str | None:
        if state.tool_rounds >= self.min_tool_rounds:
            return None
        return self.nudge


# =============================================================================
# Agent Profile
# =============================================================================

def _default_accept(turn: TurnResult, state: LoopState) -> dict:
    return {"text": turn.text or state.last_text}


def _default_parse_final(outcome: DispatchOutcome, state: LoopState) -> dict:
    data = outcome.result.data
    return data if isinstance(data, dict) else dict(outcome.invocation.input)


def _default_fallback(state: LoopState) -> dict:
    artifact = state.best_artifact_so_far
    if isinstance(artifact, dict):
        return {**artifact, "degraded": True}
    if artifact is not None:
        return {"text": str(artifact), "degraded": True}
    return {"text": state.last_text or "No result was produced.", "degraded": True}


@dataclass
class AgentProfile:
    name: str
    system_prompt: str
    max_iterations: int
    finalize_tool: str | None = None
    policy: CompletionPolicy = field(default_factory=AcceptCompletion)
    observe: Callable[[LoopState, DispatchOutcome], None] | None = None
    parse_final: Callable[[DispatchOutcome, LoopState], dict] = _default_parse_final
    build_fallback: Callable[[LoopState], dict] = _default_fallback
    accept_output: Callable[[TurnResult, LoopState], dict] = _default_accept
    max_tokens: int = field(default_factory=lambda: SETTINGS.max_tokens)


# =============================================================================
# Loop Controller
# =============================================================================

class LoopController:
    """
    Drives one run at a time per call to run(); safe to share across runs.

    Nothing raised by the model, a tool, or the argument parser escapes
    run(). The caller always gets a RunResult and the emitter always sees a
    `complete` or a fatal `error` event last.
    """

    def __init__(self, model: ModelClient, registry: ToolRegistry, profile: AgentProfile,
                 dispatcher: ToolDispatcher | None = None):
        self.model = model
        self.registry = registry
        self.profile = profile
        self.dispatcher = dispatcher or ToolDispatcher(registry)
        if SETTINGS.langfuse_enabled:
            self.run = observe(name=f"{profile.name}-run", capture_input=False, capture_output=False)(self.run)

    async def run(
        self,
        conversation: Conversation,
        emitter: EventEmitter,
        *,
        context: ToolContext,
        features: Iterable[str] = (),
        run_id: str | None = None,
    ) -> RunResult:
        profile = self.profile
        state = LoopState(max_iterations=profile.max_iterations)
        tools = self.registry.to_invocation_schemas(features)
        run_id = run_id or uuid.uuid4().hex[:12]
        truncation_retries = 0

        await emitter.emit(StartEvent(message=f"{profile.name} started", run_id=run_id))
        logger.info("[%s] run %s started (max %d iterations, %d tools)",
                    profile.name, run_id, state.max_iterations, len(tools))

        while state.iteration < state.max_iterations:
            if context.cancelled:
                return await self._cancelled(conversation, emitter, state)

            iteration = state.advance()
            logger.info("[%s] iteration %d/%d", profile.name, iteration, state.max_iterations)

            try:
                turn = await self._call_model(conversation, tools, emitter, iteration, context)
            except Exception as e:
                if context.cancelled:
                    return await self._cancelled(conversation, emitter, state)
                if state.remaining > 0:
                    logger.warning("[%s] model call failed, retrying: %s", profile.name, e)
                    await emitter.emit(ErrorEvent(message=str(e), code=ErrorCode.API_ERROR,
                                                  fatal=False, iteration=iteration))
                    conversation.append(ConversationMessage.user_text(MODEL_ERROR_PROMPT.format(error=e)))
                    continue
                logger.error("[%s] model call failed with no budget left: %s", profile.name, e)
                fallback = self._fallback(state)
                await emitter.emit(ErrorEvent(message=str(e), code=ErrorCode.MODEL_UNAVAILABLE,
                                              fatal=True, iteration=iteration, result=fallback))
                return RunResult(RunStatus.FATAL, fallback, state.iteration, state)

            if turn is None or context.cancelled:
                return await self._cancelled(conversation, emitter, state)

            if turn.text:
                state.last_text = turn.text
            invocations = turn.tool_invocations

            # -- natural completion ------------------------------------------
            if not invocations:
                if turn.truncated and truncation_retries < MAX_TRUNCATION_RETRIES and state.remaining > 0:
                    truncation_retries += 1
                    if turn.blocks:
                        conversation.append(turn.to_message())
                    conversation.append(ConversationMessage.user_text(CONTINUE_PROMPT))
                    continue

                nudge = profile.policy.on_natural_completion(state, turn.text)
                if turn.blocks:
                    conversation.append(turn.to_message())
                if nudge is None:
                    state.is_complete = True
                    return await self._completed(emitter, state, profile.accept_output(turn, state))
                if state.remaining > 0:
                    conversation.append(ConversationMessage.user_text(nudge))
                continue

            # -- tool round --------------------------------------------------
            outcomes = await self.dispatcher.dispatch(invocations, context, emitter, iteration)
            if context.cancelled:
                return await self._cancelled(conversation, emitter, state)

            conversation.append(turn.to_message())
            conversation.append(tool_results_message([o.to_result_block() for o in outcomes]))
            state.tool_rounds += 1
            truncation_retries = 0

            finalize = None
            for outcome in outcomes:
                self._record(state, turn, outcome)
                if outcome.invocation.name == profile.finalize_tool and outcome.result.success:
                    finalize = outcome

            if finalize is not None:
                state.is_complete = True
                try:
                    output = profile.parse_final(finalize, state)
                except Exception as e:
                    logger.warning("[%s] finalize payload unusable, using fallback: %s", profile.name, e)
                    output = self._fallback(state)
                return await self._completed(emitter, state, output)

        logger.info("[%s] iteration budget exhausted after %d iterations", profile.name, state.iteration)
        await emitter.emit(ThoughtEvent(
            content=f"Reached the limit of {state.max_iterations} iterations, returning the best result so far.",
            iteration=state.iteration,
        ))
        fallback = self._fallback(state)
        await emitter.emit(CompleteEvent(result=fallback, status=RunStatus.EXHAUSTED.value,
                                         iterations=state.iteration, degraded=True))
        return RunResult(RunStatus.EXHAUSTED, fallback, state.iteration, state)

    # -------------------------------------------------------------------------

    async def _call_model(self, conversation, tools, emitter, iteration, context) -> TurnResult | None:
        """Stream one model call. Returns None if cancelled mid-stream."""
        consume = asyncio.ensure_future(self._consume_stream(conversation, tools, emitter, iteration))
        cancel_wait = asyncio.ensure_future(context.cancel_event.wait())
        try:
            await asyncio.wait({consume, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
        if not consume.done():
            consume.cancel()
            await asyncio.gather(consume, return_exceptions=True)
            return None
        return consume.result()

    async def _consume_stream(self, conversation, tools, emitter, iteration) -> TurnResult:
        collector = StreamCollector(iteration=iteration)
        messages = conversation.to_api()
        log_api_call(self.profile.name, self.profile.system_prompt, messages, tools)

        stream = self.model.stream(
            system=self.profile.system_prompt,
            messages=messages,
            tools=tools,
            max_tokens=self.profile.max_tokens,
        )
        async with aclosing(stream) as events:
            async for raw in events:
                for event in collector.feed(raw):
                    await emitter.emit(event)

        for event in collector.flush():
            await emitter.emit(event)
        turn = collector.result()
        log_api_response(self.profile.name, turn)
        return turn

    def _record(self, state: LoopState, turn: TurnResult, outcome: DispatchOutcome) -> None:
        if self.profile.observe is not None:
            try:
                self.profile.observe(state, outcome)
            except Exception as e:
                logger.warning("[%s] state observer failed for %s: %s",
                               self.profile.name, outcome.invocation.name, e)
        state.thought_history.append(ThoughtStep(
            iteration=state.iteration,
            thought=turn.text,
            action=outcome.invocation.name,
            action_input=dict(outcome.invocation.input),
            observation=outcome.result.to_content()[:500],
        ))

    def _fallback(self, state: LoopState) -> dict:
        try:
            return self.profile.build_fallback(state)
        except Exception as e:
            logger.warning("[%s] fallback builder failed: %s", self.profile.name, e)
            return _default_fallback(state)

    async def _completed(self, emitter: EventEmitter, state: LoopState, output: Any) -> RunResult:
        logger.info("[%s] completed after %d iterations", self.profile.name, state.iteration)
        await emitter.emit(CompleteEvent(result=output, status=RunStatus.COMPLETED.value,
                                         iterations=state.iteration, degraded=False))
        return RunResult(RunStatus.COMPLETED, output, state.iteration, state)

    async def _cancelled(self, conversation: Conversation, emitter: EventEmitter, state: LoopState) -> RunResult:
        conversation.close()
        logger.info("[%s] cancelled at iteration %d", self.profile.name, state.iteration)
        await emitter.emit(ErrorEvent(message="run cancelled", code=ErrorCode.ABORTED,
                                      fatal=True, iteration=state.iteration or None))
        return RunResult(RunStatus.CANCELLED, None, state.iteration, state)
