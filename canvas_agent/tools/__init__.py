"""Tool catalogs for the chat agent and the super agent."""

from .backends import ToolBackends
from .chat import build_chat_registry
from .super_agent import build_super_registry

__all__ = ["ToolBackends", "build_chat_registry", "build_super_registry"]
