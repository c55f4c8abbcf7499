"""
Tests for tool descriptors and the registry.
"""
import pytest
from pydantic import BaseModel, Field

from canvas_agent.errors import ToolInputError
from canvas_agent.registry import ToolRegistry, tool


class SearchInput(BaseModel):
    query: str = Field(description="Search keywords")
    max_results: int = 5


class ResearchInput(BaseModel):
    topic: str


@tool("web_search", "Search the web", SearchInput)
async def web_search(args, context, callbacks):
    return {"query": args.query}


@tool("deep_research", "Research a topic", ResearchInput, conditional=True)
def deep_research(args, context, callbacks):
    return {"topic": args.topic}


def build_registry() -> ToolRegistry:
    return ToolRegistry().register(web_search).register(deep_research)


def test_schema_generated_from_input_model():
    """Test: The schema sent upstream comes from the pydantic model, without titles."""
    schema = web_search.to_schema()
    assert schema["name"] == "web_search"
    assert schema["description"] == "Search the web"
    input_schema = schema["input_schema"]
    assert input_schema["type"] == "object"
    assert input_schema["required"] == ["query"]
    assert input_schema["properties"]["query"] == {"type": "string", "description": "Search keywords"}
    assert "title" not in input_schema


def test_register_and_lookup():
    registry = build_registry()
    assert len(registry) == 2
    assert "web_search" in registry
    assert registry.has("deep_research")
    assert registry.get("missing") is None
    assert registry.list_names() == ["web_search", "deep_research"]


def test_register_is_last_write_wins():
    @tool("web_search", "Second version", SearchInput)
    def replacement(args, context, callbacks):
        return None

    registry = build_registry().register(replacement)
    assert len(registry) == 2
    assert registry.get("web_search").description == "Second version"


def test_conditional_tools_need_their_feature():
    """Test: deep_research is hidden unless the run enables it."""
    registry = build_registry()
    assert [t["name"] for t in registry.to_invocation_schemas()] == ["web_search"]
    assert [t["name"] for t in registry.to_invocation_schemas({"deep_research"})] == [
        "web_search", "deep_research",
    ]


def test_register_conditional_flag_overrides():
    registry = ToolRegistry().register(web_search, conditional=True)
    assert registry.list_enabled() == []
    assert [t.name for t in registry.list_enabled({"web_search"})] == ["web_search"]


def test_validate_returns_model_instance():
    args = web_search.validate({"query": "cats"})
    assert isinstance(args, SearchInput)
    assert args.max_results == 5


def test_validate_failure_carries_schema():
    with pytest.raises(ToolInputError) as exc_info:
        web_search.validate({"max_results": "many"})
    err = exc_info.value
    assert err.tool == "web_search"
    assert "query" in str(err)
    assert err.schema == web_search.input_schema


def test_async_detection():
    assert web_search.is_async
    assert not deep_research.is_async
