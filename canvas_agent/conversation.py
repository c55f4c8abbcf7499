"""
conversation.py - Conversation State and context management

Conversation is the ordered, append-only history one LoopController run owns.
Messages are frozen once appended; the list only grows, and after close()
(cancellation) it stops growing too.

The compressor follows the usual recipe: when a long chat session crosses
the threshold, older turns are summarized by a cheap model and replaced with
a summary turn plus an acknowledgement, while the most recent turns stay
verbatim.
"""

import json
import logging
import re
from typing import Iterable

from .collector import StreamCollector
from .config import SETTINGS
from .errors import ConversationClosedError
from .types import (
    ConversationMessage,
    DocumentInfo,
    ImageBlock,
    Role,
    TextBlock,
    ToolResultBlock,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Conversation State
# =============================================================================

class Conversation:
    """Append-only message history."""

    def __init__(self, messages: Iterable[ConversationMessage] = ()):
        self._messages: list[ConversationMessage] = list(messages)
        self._closed = False

    def append(self, message: ConversationMessage) -> None:
        if self._closed:
            raise ConversationClosedError("conversation is closed; no further turns may be appended")
        self._messages.append(message)

    def extend(self, messages: Iterable[ConversationMessage]) -> None:
        # Validate first so a closed conversation is never half-extended
        batch = list(messages)
        if self._closed and batch:
            raise ConversationClosedError("conversation is closed; no further turns may be appended")
        self._messages.extend(batch)

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def messages(self) -> tuple[ConversationMessage, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> ConversationMessage | None:
        return self._messages[-1] if self._messages else None

    def to_api(self) -> list[dict]:
        return [m.to_api() for m in self._messages]

    @classmethod
    def from_api(cls, messages: Iterable[dict]) -> "Conversation":
        return cls(ConversationMessage.from_api(m) for m in messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)


# =============================================================================
# Token Estimation
# =============================================================================

_CJK = re.compile(r"[一-鿿]")


def estimate_tokens(text: str) -> int:
    """
    Rough token estimate.

    Chinese characters run about 1.5 chars/token, everything else about 4.
    Good enough for compression decisions and the context meter.
    """
    if not text:
        return 0
    cjk = len(_CJK.findall(text))
    other = len(text) - cjk
    return int(cjk / 1.5 + other / 4 + 0.999)


def estimate_conversation_tokens(messages: Iterable[dict]) -> int:
    total = 0
    for msg in messages:
        content = msg.get("content", "")
        if isinstance(content, str):
            total += estimate_tokens(content)
        elif isinstance(content, list):
            for item in content:
                if isinstance(item, dict):
                    if item.get("type") == "text":
                        total += estimate_tokens(item.get("text", ""))
                    else:
                        total += estimate_tokens(json.dumps(item, ensure_ascii=False, default=str))
    return total


# =============================================================================
# Context Compressor
# =============================================================================

SUMMARY_PROMPT = """Summarize this conversation concisely. Preserve:
1. What the user requested
2. Images and documents that were generated or uploaded (keep URLs)
3. Key decisions and findings
4. Current state of the work

Conversation:
{conversation}

Output ONLY the summary, no preamble."""


class ContextCompressor:
    """
    Automatic context compression via summarization.

    compress_threshold: token estimate that triggers compression
    keep_recent: number of recent messages kept verbatim
    """

    def __init__(self, model=None, compress_threshold: int | None = None, keep_recent: int = 6,
                 summary_model: str | None = None):
        self.model = model
        self.compress_threshold = compress_threshold or SETTINGS.compress_threshold
        self.keep_recent = keep_recent
        self.summary_model = summary_model or SETTINGS.summary_model
        self.compression_count = 0

    def should_compress(self, messages: list[dict]) -> bool:
        return estimate_conversation_tokens(messages) > self.compress_threshold

    def _split_index(self, messages: list[dict]) -> int:
        # Recent part must open on a plain user turn so no tool_result is
        # separated from its tool_use
        idx = max(len(messages) - self.keep_recent, 0)
        while idx < len(messages):
            msg = messages[idx]
            if msg["role"] == "user" and not _has_tool_results(msg):
                return idx
            idx += 1
        return len(messages)

    async def compress(self, messages: list[dict]) -> list[dict]:
        if len(messages) <= self.keep_recent:
            return messages

        split = self._split_index(messages)
        to_compress, to_keep = messages[:split], messages[split:]
        if not to_compress:
            return messages

        summary = await self._generate_summary(to_compress)
        self.compression_count += 1
        logger.info("compressed %d messages into a summary (%d kept)", len(to_compress), len(to_keep))

        compressed = [
            {
                "role": "user",
                "content": [{
                    "type": "text",
                    "text": f'<conversation-summary turns="1-{len(to_compress)}">\n{summary}\n'
                            "</conversation-summary>\n\n"
                            "[Previous conversation compressed. Key context preserved above.]",
                }],
            },
            {
                "role": "assistant",
                "content": [{
                    "type": "text",
                    "text": "Understood. I have the context from our previous conversation. Continuing...",
                }],
            },
        ]
        compressed.extend(to_keep)
        return compressed

    async def _generate_summary(self, messages: list[dict]) -> str:
        if self.model is None:
            return self._fallback_summary(messages)

        conversation_text = "\n".join(_simplify(messages)[-30:])
        request = [{
            "role": "user",
            "content": [{"type": "text", "text": SUMMARY_PROMPT.format(conversation=conversation_text)}],
        }]
        try:
            collector = StreamCollector(iteration=0)
            async for event in self.model.stream(
                system="You summarize conversations.",
                messages=request,
                tools=[],
                max_tokens=800,
                model=self.summary_model,
            ):
                collector.feed(event)
            text = collector.result().text.strip()
            return text or self._fallback_summary(messages)
        except Exception as e:
            logger.warning("summary call failed, using fallback: %s", e)
            return self._fallback_summary(messages)

    def _fallback_summary(self, messages: list[dict]) -> str:
        user_messages = []
        for msg in messages:
            if msg["role"] != "user" or _has_tool_results(msg):
                continue
            text = _message_text(msg)
            if text:
                user_messages.append(text[:200])
        return "Previous conversation topics:\n" + "\n".join(f"- {m}" for m in user_messages[:10])


def _has_tool_results(msg: dict) -> bool:
    content = msg.get("content")
    return isinstance(content, list) and any(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    )


def _message_text(msg: dict) -> str:
    content = msg.get("content", "")
    if isinstance(content, str):
        return content
    return " ".join(b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text")


def _simplify(messages: list[dict]) -> list[str]:
    simplified = []
    for msg in messages:
        content = msg.get("content", "")
        if isinstance(content, list):
            parts = []
            for item in content:
                if not isinstance(item, dict):
                    continue
                if "text" in item:
                    parts.append(str(item["text"])[:300])
                elif "content" in item:
                    parts.append(str(item["content"])[:300])
                elif item.get("type") == "tool_use":
                    parts.append(f"[tool {item.get('name')}]")
            content = " | ".join(parts)
        simplified.append(f"{msg['role']}: {str(content)[:500]}")
    return simplified


# =============================================================================
# User Message Construction
# =============================================================================

def build_user_message(
    content: str,
    new_images: list[str] | None = None,
    new_documents: list[DocumentInfo] | None = None,
    first_message: bool = True,
) -> ConversationMessage:
    """
    Build the user turn for a chat request.

    Images are attached as image blocks. Documents are listed by name only;
    their content reaches the model through analyze_document.
    """
    blocks: list = [ImageBlock(url) for url in (new_images or [])]
    text = content
    if new_documents:
        names = "\n".join(f"- {d.filename}" for d in new_documents)
        label = "Uploaded documents" if first_message else "Newly uploaded documents"
        text = f"{content}\n\n[{label}]\n{names}\n(use analyze_document to read them)"
    if new_images and not first_message:
        text = f"{text}\n\n[{len(new_images)} new image(s) attached]"
    blocks.append(TextBlock(text))
    return ConversationMessage(role=Role.USER, content=tuple(blocks))


def tool_results_message(results: list[ToolResultBlock]) -> ConversationMessage:
    return ConversationMessage(role=Role.USER, content=tuple(results))
