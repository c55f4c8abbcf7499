"""
web.py - FastAPI server exposing both agents over SSE

Usage:
    python -m canvas_agent serve
    curl -N -X POST localhost:8000/api/super-agent -d '{"userRequest": "..."}'

Every streaming endpoint answers with `data: <event json>` frames and a
final `data: [DONE]`. Closing the connection cancels the run.
"""

import asyncio
import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .agents import Attachments, ChatAgent, SuperAgent
from .errors import ErrorCode
from .events import DONE_FRAME, ErrorEvent, format_sse, sse_frames
from .log import setup_logging
from .model_client import AnthropicModelClient
from .types import DocumentInfo

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def _sse_response(frames, headers: dict | None = None) -> StreamingResponse:
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **(headers or {})},
    )


async def _invalid_request(message: str):
    yield format_sse(ErrorEvent(message=message, code=ErrorCode.INVALID_REQUEST, fatal=True))
    yield DONE_FRAME


async def _read_json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _parse_attachments(raw) -> Attachments:
    if not isinstance(raw, dict):
        return Attachments()
    images = [u for u in raw.get("images") or [] if isinstance(u, str) and u]
    documents = [
        DocumentInfo(filename=d.get("filename", f"document-{i + 1}"), content=d.get("content", ""),
                     mime_type=d.get("mimeType"))
        for i, d in enumerate(raw.get("documents") or [])
        if isinstance(d, dict) and d.get("content")
    ]
    return Attachments(images=images, documents=documents)


def create_app(chat_agent: ChatAgent | None = None, super_agent: SuperAgent | None = None) -> FastAPI:
    setup_logging()
    if chat_agent is None or super_agent is None:
        model = AnthropicModelClient()
        chat_agent = chat_agent or ChatAgent(model)
        super_agent = super_agent or SuperAgent(model)

    app = FastAPI(title="Canvas Agent")
    app.state.chat_agent = chat_agent
    app.state.super_agent = super_agent
    # session id -> cancel event of its active run
    active_runs: dict[str, asyncio.Event] = {}
    app.state.active_runs = active_runs

    @app.post("/api/chat-agent")
    async def chat(request: Request):
        """Run one chat turn and stream its events."""
        data = await _read_json(request)
        content = str(data.get("content") or "").strip()
        if not content:
            return _sse_response(_invalid_request("content is required"))

        session_id = data.get("sessionId") or uuid.uuid4().hex
        settings = data.get("settings") or {}
        attachments = _parse_attachments(data.get("attachments"))

        previous = active_runs.get(session_id)
        if previous is not None:
            previous.set()
        cancel_event = asyncio.Event()
        active_runs[session_id] = cancel_event

        async def run(emitter):
            try:
                return await chat_agent.handle_message(
                    session_id, content, emitter,
                    attachments=attachments,
                    enable_deep_research=bool(settings.get("enableDeepResearch")),
                    cancel_event=cancel_event,
                )
            finally:
                if active_runs.get(session_id) is cancel_event:
                    del active_runs[session_id]

        return _sse_response(sse_frames(run, cancel_event), headers={"X-Session-Id": session_id})

    @app.post("/api/chat-agent/{session_id}/abort")
    async def abort(session_id: str):
        cancel_event = active_runs.get(session_id)
        if cancel_event is None:
            return {"aborted": False}
        cancel_event.set()
        logger.info("abort requested for session %s", session_id)
        return {"aborted": True}

    @app.delete("/api/chat-agent/{session_id}")
    async def clear(session_id: str):
        cancel_event = active_runs.pop(session_id, None)
        if cancel_event is not None:
            cancel_event.set()
        return {"cleared": chat_agent.clear(session_id)}

    @app.get("/api/chat-agent/{session_id}")
    async def session_state(session_id: str):
        state = chat_agent.session_state(session_id)
        if state is None:
            raise HTTPException(status_code=404, detail="session not found")
        return state

    @app.post("/api/super-agent")
    async def super_run(request: Request):
        """Run the prompt-engineering loop and stream its events."""
        data = await _read_json(request)
        user_request = str(data.get("userRequest") or "").strip()
        if not user_request:
            return _sse_response(_invalid_request("userRequest is required"))

        reference_images = [u for u in data.get("referenceImages") or [] if isinstance(u, str) and u]
        cancel_event = asyncio.Event()

        async def run(emitter):
            return await super_agent.run(
                user_request, emitter,
                reference_images=reference_images,
                enable_deep_research=bool(data.get("enableDeepResearch")),
                cancel_event=cancel_event,
            )

        return _sse_response(sse_frames(run, cancel_event))

    @app.get("/api/super-agent/skills")
    async def skills():
        return super_agent.skills.summaries()

    return app
