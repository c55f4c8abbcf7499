"""
registry.py - Tool Descriptor Registry

Tools are descriptors (name, description, input model, executor), not
stateful objects. Conversation data reaches executors through ToolContext
at call time, so one registry is built at startup and shared read-only by
every concurrent run.

Each tool declares its input as a pydantic model. The JSON schema sent to
the model is generated from it, and the same model validates the repaired
arguments once, here at the registry boundary, before any executor runs.

Usage:
    registry = ToolRegistry()
    registry.register(search_descriptor).register(finalize_descriptor)
    registry.to_invocation_schemas(features={"deep_research"})
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ValidationError

from .errors import ToolInputError


def _strip_titles(node: Any) -> Any:
    if isinstance(node, dict):
        return {
            k: _strip_titles(v)
            for k, v in node.items()
            # "title" is pydantic noise, unless it is a property literally named title
            if not (k == "title" and isinstance(v, str))
        }
    if isinstance(node, list):
        return [_strip_titles(v) for v in node]
    return node


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


@dataclass(frozen=True)
class ToolDescriptor:
    """
    One invocable capability.

    conditional tools are hidden unless the caller enables `feature`
    (defaults to the tool name) for that run.
    """
    name: str
    description: str
    input_model: type[BaseModel]
    executor: Callable
    conditional: bool = False
    feature: str | None = None
    input_schema: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        schema = _strip_titles(self.input_model.model_json_schema())
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        object.__setattr__(self, "input_schema", schema)

    @property
    def enabling_feature(self) -> str:
        return self.feature or self.name

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.executor)

    def to_schema(self) -> dict:
        """Schema in the shape the Messages API expects for `tools`."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    def validate(self, raw: dict | None) -> BaseModel:
        try:
            return self.input_model.model_validate(raw or {})
        except ValidationError as e:
            raise ToolInputError(self.name, _format_validation_error(e), self.input_schema) from e


class ToolRegistry:
    """
    Registry of tool descriptors.

    - register() is idempotent by name (last write wins) and chainable
    - get() returns None for unknown names; callers treat that as a
      recoverable dispatch failure
    - list_enabled() filters conditional tools by the run's feature flags
    """

    def __init__(self):
        self._tools: dict[str, ToolDescriptor] = {}

    def register(self, descriptor: ToolDescriptor, conditional: bool = False) -> "ToolRegistry":
        if conditional and not descriptor.conditional:
            descriptor = ToolDescriptor(
                name=descriptor.name,
                description=descriptor.description,
                input_model=descriptor.input_model,
                executor=descriptor.executor,
                conditional=True,
                feature=descriptor.feature,
            )
        self._tools[descriptor.name] = descriptor
        return self

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    def list_enabled(self, features: Iterable[str] = ()) -> list[ToolDescriptor]:
        enabled = set(features)
        return [
            t for t in self._tools.values()
            if not t.conditional or t.enabling_feature in enabled
        ]

    def to_invocation_schemas(self, features: Iterable[str] = ()) -> list[dict]:
        return [t.to_schema() for t in self.list_enabled(features)]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


# =============================================================================
# Decorator for Simple Tool Creation
# =============================================================================

def tool(name: str, description: str, input_model: type[BaseModel],
         conditional: bool = False, feature: str | None = None):
    """
    Turn an executor function into a ToolDescriptor.

    Example:
        class SearchInput(BaseModel):
            query: str

        @tool("web_search", "Search the web", SearchInput)
        async def web_search(args: SearchInput, context, callbacks):
            ...

    Executors take (validated_input, context, callbacks) and may be sync or
    async (sync ones are dispatched to a worker thread); they return a
    ToolExecutionResult (or anything coercible to one).
    """
    def decorator(func: Callable) -> ToolDescriptor:
        return ToolDescriptor(
            name=name,
            description=description,
            input_model=input_model,
            executor=func,
            conditional=conditional,
            feature=feature,
        )

    return decorator
