"""
canvas_agent - ReAct tool-orchestration loop for a creative canvas

    ChatAgent / SuperAgent   the two loop variants (agents.py)
    LoopController           the ReAct state machine (loop.py)
    ToolRegistry / tool      tool descriptors (registry.py)
    create_app               FastAPI SSE server (web.py)
"""

from .agents import Attachments, ChatAgent, SuperAgent
from .events import ListEmitter, QueueEmitter
from .loop import AgentProfile, LoopController
from .registry import ToolRegistry, tool
from .tools import ToolBackends
from .types import RunResult, RunStatus

__version__ = "0.1.0"

__all__ = [
    "AgentProfile",
    "Attachments",
    "ChatAgent",
    "ListEmitter",
    "LoopController",
    "QueueEmitter",
    "RunResult",
    "RunStatus",
    "SuperAgent",
    "ToolBackends",
    "ToolRegistry",
    "tool",
]
