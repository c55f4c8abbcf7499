"""
agents.py - The two loop variants

ChatAgent   multi-turn assistant with sessions. Plain answers end a run;
            attachments, history and compression live in the session store.
SuperAgent  one-shot prompt engineer. Only finalize_output ends a run;
            answering without it gets a status nudge, and running out of
            iterations returns the best evaluated prompt so far.

Both are thin: they build the conversation and ToolContext, pick the
feature flags, and hand off to a LoopController configured by a profile.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from .config import SETTINGS
from .conversation import (
    ContextCompressor,
    Conversation,
    build_user_message,
    estimate_conversation_tokens,
)
from .dispatcher import DispatchOutcome, ToolDispatcher
from .errors import ErrorCode
from .events import ContextUpdateEvent, ErrorEvent, EventEmitter
from .loop import AcceptCompletion, AgentProfile, LoopController, RequireFinalize
from .model_client import ModelClient
from .registry import ToolRegistry
from .skills import SkillLoader, default_loader
from .store import ChatSession, InMemorySessionStore, SessionStore
from .tools import ToolBackends, build_chat_registry, build_super_registry
from .tools.super_agent import FINALIZE_TOOL, PASS_SCORE, DEFAULT_MODEL
from .types import (
    ConversationMessage,
    DocumentInfo,
    FinalOutput,
    LoopState,
    PromptItem,
    RunResult,
    RunStatus,
    ToolContext,
)

logger = logging.getLogger(__name__)

DEEP_RESEARCH = "deep_research"


# =============================================================================
# Chat Agent
# =============================================================================

CHAT_SYSTEM_PROMPT = """You are a creative assistant on an infinite canvas.

You can search the web, generate and edit images, analyze uploaded documents
and run Python for image processing. Use tools when they help; answer
directly when they don't.

Rules:
- Images the user uploads are available to generate_image, edit_image and
  code_interpreter automatically; you don't need to repeat their URLs.
- Documents are listed by name. Read them with analyze_document.
- When you generate or edit an image, show the resulting URL in your answer.
- Keep any Chinese text the user wants rendered in an image verbatim."""


@dataclass
class Attachments:
    images: list[str] = field(default_factory=list)
    documents: list[DocumentInfo] = field(default_factory=list)


def _chat_observe(state: LoopState, outcome: DispatchOutcome) -> None:
    url = outcome.result.extras.get("image_url") if outcome.result.success else None
    if url:
        artifact = state.best_artifact_so_far or {"images": []}
        artifact["images"].append(url)
        state.best_artifact_so_far = artifact


def _chat_images(state: LoopState) -> list[str]:
    return list((state.best_artifact_so_far or {}).get("images", []))


def _chat_accept(turn, state: LoopState) -> dict:
    return {"text": turn.text or state.last_text, "images": _chat_images(state)}


def _chat_fallback(state: LoopState) -> dict:
    text = state.last_text or "I could not finish this request within the step limit."
    return {"text": text, "images": _chat_images(state), "degraded": True}


def chat_profile(max_iterations: int | None = None) -> AgentProfile:
    return AgentProfile(
        name="chat-agent",
        system_prompt=CHAT_SYSTEM_PROMPT,
        max_iterations=max_iterations or SETTINGS.chat_max_iterations,
        policy=AcceptCompletion(),
        observe=_chat_observe,
        accept_output=_chat_accept,
        build_fallback=_chat_fallback,
    )


class ChatAgent:
    """Session-backed chat agent; the controller itself keeps no state."""

    def __init__(
        self,
        model: ModelClient,
        backends: ToolBackends | None = None,
        store: SessionStore | None = None,
        registry: ToolRegistry | None = None,
        compressor: ContextCompressor | None = None,
        max_iterations: int | None = None,
        heartbeat_interval: float | None = None,
    ):
        self.registry = registry or build_chat_registry(backends or ToolBackends())
        self.store = store if store is not None else InMemorySessionStore()
        self.compressor = compressor or ContextCompressor(model=model)
        self.controller = LoopController(
            model, self.registry, chat_profile(max_iterations),
            dispatcher=ToolDispatcher(self.registry, heartbeat_interval=heartbeat_interval),
        )

    async def handle_message(
        self,
        session_id: str,
        content: str,
        emitter: EventEmitter,
        *,
        attachments: Attachments | None = None,
        enable_deep_research: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        attachments = attachments or Attachments()
        session = self.store.get(session_id) or ChatSession()
        first_message = session.is_new

        new_images = [url for url in attachments.images if url not in session.attached_images]
        known_docs = {d.filename for d in session.attached_documents}
        new_docs = [d for d in attachments.documents if d.filename not in known_docs]
        session.attached_images.extend(new_images)
        session.attached_documents.extend(new_docs)

        if self.compressor.should_compress(session.messages):
            session.messages = await self.compressor.compress(session.messages)

        conversation = Conversation.from_api(session.messages)
        conversation.append(build_user_message(content, new_images, new_docs, first_message))

        context = ToolContext(
            conversation_id=session_id,
            attached_media=list(session.attached_images),
            attached_documents=list(session.attached_documents),
            cancel_event=cancel_event or asyncio.Event(),
        )
        features = {DEEP_RESEARCH} if enable_deep_research else set()

        result = await self.controller.run(conversation, emitter, context=context, features=features)

        session.messages = conversation.to_api()
        session.total_tokens = estimate_conversation_tokens(session.messages)
        self.store.put(session_id, session)

        if result.status is not RunStatus.CANCELLED:
            await emitter.emit(ContextUpdateEvent(tokens=session.total_tokens,
                                                  max_tokens=SETTINGS.max_context_tokens))
        return result

    def clear(self, session_id: str) -> bool:
        return self.store.delete(session_id)

    def session_state(self, session_id: str) -> dict | None:
        session = self.store.get(session_id)
        if session is None:
            return None
        return {
            "tokens": session.total_tokens,
            "messageCount": len(session.messages),
            "imageCount": len(session.attached_images),
            "documentCount": len(session.attached_documents),
        }


# =============================================================================
# Super Agent
# =============================================================================

SUPER_SYSTEM_PROMPT = """You are an expert at writing prompts for AI image generation. Work in a
ReAct loop: think, call a tool, observe the result, repeat.

## Preset skills

{skills}

## Standard workflow

1. skill_matcher to analyze the request
2. load_skill if a skill matched
3. generate_prompt for the first draft
4. evaluate_prompt to score it
5. optimize_prompt while the score is below {pass_score}
6. finalize_output once the score is at least {pass_score} or iterations run low

Use web_search for current trends, unfamiliar techniques, or when no skill
matched. Use analyze_image when reference images are provided.

## Chinese text rules (most important)

1. Keep every Chinese text the user wants shown exactly as given
2. Wrap it in English double quotes
3. Never translate it
4. Say where in the image it appears
5. Always add "All Chinese text must be exactly as specified with no other text"

## Multiple images

Plan how many images the request needs: slides, tutorial steps and story
scenes each get their own prompt in finalize_output. Simple posters or
avatars need one.

You MUST end by calling finalize_output."""


def build_super_system_prompt(skills: SkillLoader) -> str:
    return SUPER_SYSTEM_PROMPT.format(skills=skills.get_descriptions(), pass_score=PASS_SCORE)


def build_initial_message(user_request: str, reference_images: list[str] | None = None) -> str:
    message = f"## User request\n\n{user_request}\n"
    if reference_images:
        message += f"\n## Reference images\n\nThe user provided {len(reference_images)} reference image(s):\n"
        for i, url in enumerate(reference_images, 1):
            message += f"- Image {i}: {url}\n"
        message += "\nUse `analyze_image` on them when appropriate.\n"
    message += (
        "\n## Start\n\nBegin the ReAct workflow:\n"
        "1. Use `skill_matcher` first\n"
        "2. Decide the next steps from the match\n"
        "3. Generate, evaluate and optimize the prompt\n"
        "4. Finish with `finalize_output`"
    )
    return message


def super_nudge(state: LoopState) -> str:
    score = state.evaluation_score if state.evaluation_score is not None else 0
    if score >= PASS_SCORE:
        advice = "The score passes. Call finalize_output with the final prompts now."
    else:
        advice = "Keep optimizing the prompt, or call finalize_output with the best prompt so far."
    return (
        "Please continue. You must call `finalize_output` to deliver the result.\n\n"
        "Current status:\n"
        f"- Iteration: {state.iteration}/{state.max_iterations}\n"
        f"- Evaluation score: {score}\n"
        f"- Matched skill: {state.matched_template_id or 'none'}\n\n"
        f"{advice}"
    )


def super_observe(state: LoopState, outcome: DispatchOutcome) -> None:
    """Derive LoopState fields from tool outcomes so exhaustion has something to return."""
    if not outcome.result.success:
        return
    name = outcome.invocation.name
    data = outcome.result.data if isinstance(outcome.result.data, dict) else {}

    if name == "skill_matcher" and data.get("matched"):
        state.matched_template_id = data.get("skill_id")

    elif name == "evaluate_prompt" and "score" in data:
        score = data["score"]
        state.evaluation_score = score
        best = state.best_artifact_so_far
        best_score = best.get("score") if isinstance(best, dict) else None
        if best is None or best_score is None or score > best_score:
            state.best_artifact_so_far = {
                "prompt": data.get("prompt", ""),
                "chinese_texts": list(data.get("chinese_texts", [])),
                "score": score,
            }

    elif name == "optimize_prompt" and state.best_artifact_so_far is None:
        state.best_artifact_so_far = {
            "prompt": data.get("current_prompt", ""),
            "chinese_texts": list(data.get("chinese_texts_to_preserve", [])),
            "score": None,
        }


def super_parse_final(outcome: DispatchOutcome, state: LoopState) -> dict:
    output = dict(outcome.result.data)
    output["iteration_count"] = state.iteration
    output["matched_skill"] = output.get("matched_skill") or state.matched_template_id
    return output


def super_fallback(state: LoopState) -> dict:
    best = state.best_artifact_so_far if isinstance(state.best_artifact_so_far, dict) else {}
    prompt = best.get("prompt") or state.last_text or "No prompt could be produced for this request."
    chinese = list(best.get("chinese_texts", []))
    return FinalOutput(
        final_prompt=prompt,
        prompts=[PromptItem(id="prompt-fallback-0", scene="Default scene", prompt=prompt, chinese_texts=chinese)],
        chinese_texts=chinese,
        generation_tips=["The iteration limit was reached; review and refine this prompt manually"],
        recommended_model=DEFAULT_MODEL,
        iteration_count=state.iteration,
        matched_skill=state.matched_template_id,
        degraded=True,
    ).to_dict()


def super_profile(skills: SkillLoader, max_iterations: int | None = None) -> AgentProfile:
    return AgentProfile(
        name="super-agent",
        system_prompt=build_super_system_prompt(skills),
        max_iterations=max_iterations or SETTINGS.super_max_iterations,
        finalize_tool=FINALIZE_TOOL,
        policy=RequireFinalize(build_nudge=super_nudge),
        observe=super_observe,
        parse_final=super_parse_final,
        build_fallback=super_fallback,
    )


class SuperAgent:
    def __init__(
        self,
        model: ModelClient,
        backends: ToolBackends | None = None,
        skills: SkillLoader | None = None,
        registry: ToolRegistry | None = None,
        max_iterations: int | None = None,
        heartbeat_interval: float | None = None,
    ):
        self.skills = skills or default_loader()
        self.registry = registry or build_super_registry(backends or ToolBackends(), self.skills)
        self.profile = super_profile(self.skills, max_iterations)
        self.controller = LoopController(
            model, self.registry, self.profile,
            dispatcher=ToolDispatcher(self.registry, heartbeat_interval=heartbeat_interval),
        )

    async def run(
        self,
        user_request: str,
        emitter: EventEmitter,
        *,
        reference_images: list[str] | None = None,
        enable_deep_research: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        if not user_request or not user_request.strip():
            await emitter.emit(ErrorEvent(message="userRequest is required",
                                          code=ErrorCode.INVALID_REQUEST, fatal=True))
            return RunResult(RunStatus.FATAL, None, 0, LoopState(max_iterations=self.profile.max_iterations))

        conversation = Conversation([
            ConversationMessage.user_text(build_initial_message(user_request, reference_images)),
        ])
        context = ToolContext(
            conversation_id=f"super-{uuid.uuid4().hex[:12]}",
            attached_media=list(reference_images or []),
            cancel_event=cancel_event or asyncio.Event(),
        )
        features = {DEEP_RESEARCH} if enable_deep_research else set()
        return await self.controller.run(conversation, emitter, context=context, features=features)
