"""
model_client.py - Upstream model collaborator

The loop only needs an async iterator of raw stream events (as dicts) for
one system + messages + tools request. AnthropicModelClient provides it on
top of the Messages API with stream=True; tests plug in a scripted client
with the same shape.
"""

import logging
from typing import AsyncIterator, Protocol

from anthropic import APIError, AsyncAnthropic

from .config import SETTINGS
from .errors import ModelCallError

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    def stream(
        self,
        system: str,
        messages: list[dict],
        tools: list[dict],
        max_tokens: int,
        model: str | None = None,
    ) -> AsyncIterator[dict]: ...


class AnthropicModelClient:
    """Streams raw Messages API events."""

    def __init__(self, client: AsyncAnthropic | None = None, model: str | None = None):
        self.client = client or AsyncAnthropic(base_url=SETTINGS.base_url)
        self.model = model or SETTINGS.model

    async def stream(
        self,
        system: str,
        messages: list[dict],
        tools: list[dict],
        max_tokens: int,
        model: str | None = None,
    ) -> AsyncIterator[dict]:
        kwargs = dict(
            model=model or self.model,
            system=system,
            messages=messages,
            max_tokens=max_tokens,
            stream=True,
        )
        if tools:
            kwargs["tools"] = tools

        try:
            response = await self.client.messages.create(**kwargs)
        except APIError as e:
            raise ModelCallError(f"model call failed: {e}", cause=e) from e

        try:
            async for event in response:
                yield event.model_dump()
        except APIError as e:
            raise ModelCallError(f"model stream failed: {e}", cause=e) from e
        finally:
            await response.close()
