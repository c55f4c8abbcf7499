"""
backends.py - Injected external capabilities

Executors never talk to a provider directly: every external capability
(search, image generation, vision...) is an async back-end injected through
ToolBackends. Deployments wire real providers in; tests wire fakes. An unset
back-end makes the tool return an error result instead of failing the run.

Back-end signatures (all async, `callbacks` is the executor's ToolCallbacks):

    search(query, max_results, callbacks)                     -> list[dict] | dict
    research(topic, effort, context, callbacks)               -> str
    image(prompt, reference_images, aspect_ratio, resolution, callbacks) -> str (url)
    image_edit(image_url, instruction, mask_area, callbacks)  -> str (url)
    vision(image_url, focus, callbacks)                       -> str
    documents(content, analysis_type, query, callbacks)       -> str
    code(code, image_url, operation, callbacks)               -> dict
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..errors import BackendUnavailableError

Backend = Callable[..., Awaitable[Any]]


@dataclass
class ToolBackends:
    search: Backend | None = None
    research: Backend | None = None
    image: Backend | None = None
    image_edit: Backend | None = None
    vision: Backend | None = None
    documents: Backend | None = None
    code: Backend | None = None

    def require(self, name: str) -> Backend:
        backend = getattr(self, name, None)
        if backend is None:
            raise BackendUnavailableError(f"{name} back-end is not configured")
        return backend
