"""
types.py - Conversation, tool and loop data model

Content blocks mirror the Anthropic Messages wire format so a Conversation can
be sent upstream as-is (to_api), while the Python side works with small frozen
dataclasses instead of loose dicts.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Union


# =============================================================================
# Content Blocks
# =============================================================================

@dataclass(frozen=True)
class TextBlock:
    text: str
    type: ClassVar[str] = "text"

    def to_api(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImageBlock:
    """An attached image, referenced by URL."""
    url: str
    type: ClassVar[str] = "image"

    def to_api(self) -> dict:
        return {"type": "image", "source": {"type": "url", "url": self.url}}


@dataclass(frozen=True)
class ToolInvocationBlock:
    id: str
    name: str
    input: dict = field(default_factory=dict)
    type: ClassVar[str] = "tool_use"

    def to_api(self) -> dict:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultBlock:
    invocation_id: str
    content: str
    is_error: bool = False
    type: ClassVar[str] = "tool_result"

    def to_api(self) -> dict:
        block = {"type": "tool_result", "tool_use_id": self.invocation_id, "content": self.content}
        if self.is_error:
            block["is_error"] = True
        return block


ContentBlock = Union[TextBlock, ImageBlock, ToolInvocationBlock, ToolResultBlock]


def block_from_api(data: dict) -> ContentBlock:
    """Inverse of to_api, used when restoring stored sessions."""
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data.get("text", ""))
    if kind == "image":
        return ImageBlock(url=(data.get("source") or {}).get("url", ""))
    if kind == "tool_use":
        return ToolInvocationBlock(id=data["id"], name=data["name"], input=dict(data.get("input") or {}))
    if kind == "tool_result":
        content = data.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, default=str)
        return ToolResultBlock(
            invocation_id=data["tool_use_id"],
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unsupported content block type: {kind!r}")


# =============================================================================
# Messages
# =============================================================================

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    content: tuple[ContentBlock, ...]

    @classmethod
    def user_text(cls, text: str) -> "ConversationMessage":
        return cls(role=Role.USER, content=(TextBlock(text),))

    @classmethod
    def from_api(cls, data: dict) -> "ConversationMessage":
        content = data.get("content", "")
        if isinstance(content, str):
            blocks = (TextBlock(content),)
        else:
            blocks = tuple(block_from_api(b) for b in content)
        return cls(role=Role(data["role"]), content=blocks)

    def to_api(self) -> dict:
        return {"role": self.role.value, "content": [b.to_api() for b in self.content]}

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_invocations(self) -> list[ToolInvocationBlock]:
        return [b for b in self.content if isinstance(b, ToolInvocationBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


# =============================================================================
# Tool Execution
# =============================================================================

@dataclass
class ToolExecutionResult:
    """
    Outcome of one tool call.

    extras carries capability-specific fields (image_url, search_results,
    research_report...) that are flattened into the serialized result.
    """
    success: bool
    data: Any = None
    error: str | None = None
    code: str | None = None
    extras: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **extras) -> "ToolExecutionResult":
        return cls(success=True, data=data, extras=extras)

    @classmethod
    def failure(cls, error: str, code: str | None = None, **extras) -> "ToolExecutionResult":
        return cls(success=False, error=error, code=code, extras=extras)

    @classmethod
    def coerce(cls, value: Any) -> "ToolExecutionResult":
        """Accept whatever an executor returned."""
        if isinstance(value, ToolExecutionResult):
            return value
        if isinstance(value, dict) and isinstance(value.get("success"), bool):
            known = {"success", "data", "error", "code"}
            return cls(
                success=value["success"],
                data=value.get("data"),
                error=value.get("error"),
                code=value.get("code"),
                extras={k: v for k, v in value.items() if k not in known},
            )
        return cls.ok(data=value)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        if self.code is not None:
            out["code"] = self.code
        out.update(self.extras)
        return out

    def to_content(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


@dataclass
class DocumentInfo:
    filename: str
    content: str
    mime_type: str | None = None


async def _noop(_: str) -> None:
    return None


@dataclass
class ToolCallbacks:
    """Progress hooks handed to every executor."""
    on_progress: Callable[[str], Awaitable[None]] = _noop
    on_chunk: Callable[[str], Awaitable[None]] | None = None


@dataclass
class ToolContext:
    """
    Conversation-scoped data passed to executors.

    Passed per call, never stored on tool instances, so descriptors stay
    shareable across concurrent runs.
    """
    conversation_id: str
    attached_media: list[str] = field(default_factory=list)
    attached_documents: list[DocumentInfo] = field(default_factory=list)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


ToolExecutor = Callable[[Any, ToolContext, ToolCallbacks], Awaitable[ToolExecutionResult]]


# =============================================================================
# Loop State and Results
# =============================================================================

@dataclass
class ThoughtStep:
    iteration: int
    thought: str
    action: str
    action_input: dict
    observation: str


@dataclass
class LoopState:
    """Per-run state; owned by exactly one LoopController.run call."""
    max_iterations: int
    iteration: int = 0
    is_complete: bool = False
    best_artifact_so_far: Any = None
    matched_template_id: str | None = None
    evaluation_score: float | None = None
    tool_rounds: int = 0
    last_text: str = ""
    thought_history: list[ThoughtStep] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return self.max_iterations - self.iteration

    def advance(self) -> int:
        if self.iteration >= self.max_iterations:
            raise RuntimeError("iteration budget exhausted")
        self.iteration += 1
        return self.iteration


class RunStatus(str, Enum):
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FATAL = "fatal"


@dataclass
class RunResult:
    status: RunStatus
    output: dict | None
    iterations: int
    state: LoopState

    @property
    def degraded(self) -> bool:
        return self.status in (RunStatus.EXHAUSTED, RunStatus.FATAL)


@dataclass
class PromptItem:
    id: str
    scene: str
    prompt: str
    chinese_texts: list[str] = field(default_factory=list)


@dataclass
class FinalOutput:
    """The super agent's artifact: one or more ready-to-use generation prompts."""
    final_prompt: str
    prompts: list[PromptItem]
    chinese_texts: list[str]
    generation_tips: list[str]
    recommended_model: str
    iteration_count: int = 0
    matched_skill: str | None = None
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "final_prompt": self.final_prompt,
            "prompts": [
                {"id": p.id, "scene": p.scene, "prompt": p.prompt, "chinese_texts": list(p.chinese_texts)}
                for p in self.prompts
            ],
            "chinese_texts": list(self.chinese_texts),
            "generation_tips": list(self.generation_tips),
            "recommended_model": self.recommended_model,
            "iteration_count": self.iteration_count,
            "matched_skill": self.matched_skill,
            "degraded": self.degraded,
        }
