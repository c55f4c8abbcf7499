"""
cli.py - Command line entry point

    python -m canvas_agent serve [--host 0.0.0.0] [--port 8000]
    python -m canvas_agent chat      # interactive chat agent
    python -m canvas_agent super     # interactive super agent

The REPLs print events as they arrive. Tool back-ends are not wired in the
REPL, so tools needing one report an error result and the model carries on.
"""

import argparse
import asyncio
import json
import uuid

from .agents import ChatAgent, SuperAgent
from .config import SETTINGS
from .events import (
    ActionEvent,
    CompleteEvent,
    ContextUpdateEvent,
    ErrorEvent,
    ObservationEvent,
    ThinkingChunkEvent,
    ThoughtEvent,
    ToolProgressEvent,
)
from .log import setup_logging
from .model_client import AnthropicModelClient


def print_event(event) -> None:
    if isinstance(event, ThinkingChunkEvent):
        print(event.content, end="", flush=True)
    elif isinstance(event, ThoughtEvent):
        print()
    elif isinstance(event, ActionEvent) and event.ready:
        print(f"\n> {event.tool}: {json.dumps(event.input, ensure_ascii=False)[:200]}")
    elif isinstance(event, ToolProgressEvent):
        print(f"  ... {event.tool} {event.status} ({event.elapsed_ms}ms)")
    elif isinstance(event, ObservationEvent):
        status = "ok" if event.result.get("success") else f"error: {event.result.get('error')}"
        print(f"  {event.tool} {status} ({event.duration_ms}ms)")
    elif isinstance(event, CompleteEvent):
        label = " (degraded)" if event.degraded else ""
        print(f"\n[{event.status}{label} after {event.iterations} iterations]")
        if isinstance(event.result, dict) and "final_prompt" in event.result:
            print(event.result["final_prompt"])
    elif isinstance(event, ErrorEvent):
        print(f"\n[error {event.code.value}] {event.message}")
    elif isinstance(event, ContextUpdateEvent):
        print(f"[context: ~{event.tokens}/{event.max_tokens} tokens]")


class _PrintEmitter:
    async def emit(self, event) -> None:
        print_event(event)


def run_chat_repl() -> None:
    agent = ChatAgent(AnthropicModelClient())
    session_id = uuid.uuid4().hex
    emitter = _PrintEmitter()
    print(f"Canvas chat agent ({SETTINGS.model}) - session {session_id[:8]}")
    print("Type 'exit' to quit, '/clear' to reset the session.\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not user_input or user_input.lower() in ("exit", "quit", "q"):
            break
        if user_input == "/clear":
            agent.clear(session_id)
            print("Session cleared.\n")
            continue
        try:
            asyncio.run(agent.handle_message(session_id, user_input, emitter))
        except KeyboardInterrupt:
            print("\nInterrupted.")
        print()


def run_super_repl() -> None:
    agent = SuperAgent(AnthropicModelClient())
    emitter = _PrintEmitter()
    print(f"Canvas super agent ({SETTINGS.model})")
    print(f"Skills: {', '.join(agent.skills.ids()) or 'none'}")
    print("Describe the image you need. Type 'exit' to quit.\n")

    while True:
        try:
            user_input = input("Request: ").strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not user_input or user_input.lower() in ("exit", "quit", "q"):
            break
        try:
            asyncio.run(agent.run(user_input, emitter))
        except KeyboardInterrupt:
            print("\nInterrupted.")
        print()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="canvas_agent")
    sub = parser.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve", help="run the HTTP/SSE server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    sub.add_parser("chat", help="interactive chat agent")
    sub.add_parser("super", help="interactive super agent")
    args = parser.parse_args(argv)

    setup_logging()
    if args.command == "serve":
        import uvicorn

        uvicorn.run("canvas_agent.web:create_app", factory=True, host=args.host, port=args.port)
    elif args.command == "chat":
        run_chat_repl()
    else:
        run_super_repl()
