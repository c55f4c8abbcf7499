"""
End-to-end tests of ChatAgent and SuperAgent with a scripted model.
"""
import asyncio

from canvas_agent.agents import (
    Attachments,
    ChatAgent,
    SuperAgent,
    build_initial_message,
    super_nudge,
)
from canvas_agent.errors import ErrorCode
from canvas_agent.events import CompleteEvent, ContextUpdateEvent, ErrorEvent, ListEmitter
from canvas_agent.store import InMemorySessionStore
from canvas_agent.tools import ToolBackends
from canvas_agent.types import DocumentInfo, LoopState, RunStatus

from conftest import ScriptedModel, text_turn, tool_turn

IMAGE_URL = "https://img.example.com/generated.png"


async def fake_image(prompt, references, aspect_ratio, resolution, callbacks=None):
    return IMAGE_URL


# =============================================================================
# Chat Agent
# =============================================================================

def test_chat_turn_with_image_generation():
    """Test: A tool round then a plain answer; the session and context meter are updated."""
    model = ScriptedModel([
        tool_turn(("t1", "generate_image", {"prompt": "a red fox"}), text="Generating."),
        text_turn(f"Here is your fox: {IMAGE_URL}"),
    ])
    store = InMemorySessionStore()
    agent = ChatAgent(model, backends=ToolBackends(image=fake_image), store=store)
    emitter = ListEmitter()

    result = asyncio.run(agent.handle_message("s1", "Draw a red fox", emitter))

    assert result.status is RunStatus.COMPLETED
    assert result.output == {"text": f"Here is your fox: {IMAGE_URL}", "images": [IMAGE_URL]}
    assert isinstance(emitter.events[-2], CompleteEvent)
    update = emitter.events[-1]
    assert isinstance(update, ContextUpdateEvent)
    assert update.tokens > 0 and update.max_tokens == 100_000

    session = store.get("s1")
    assert [m["role"] for m in session.messages] == ["user", "assistant", "user", "assistant"]
    assert agent.session_state("s1") == {
        "tokens": session.total_tokens, "messageCount": 4, "imageCount": 0, "documentCount": 0,
    }


def test_chat_session_continues_and_dedupes_attachments():
    model = ScriptedModel([text_turn("Nice picture."), text_turn("Still the same picture.")])
    agent = ChatAgent(model)
    attachments = Attachments(images=["https://up.example.com/a.png"],
                              documents=[DocumentInfo(filename="brief.txt", content="make it pop")])

    asyncio.run(agent.handle_message("s1", "What do you see?", ListEmitter(), attachments=attachments))
    asyncio.run(agent.handle_message("s1", "And now?", ListEmitter(), attachments=attachments))

    # second call saw the whole history plus the new user turn
    second = model.calls[1]["messages"]
    assert len(second) == 3
    first_user = second[0]["content"]
    assert first_user[0] == {"type": "image", "source": {"type": "url", "url": "https://up.example.com/a.png"}}
    assert "[Uploaded documents]\n- brief.txt" in first_user[1]["text"]
    # nothing new was attached the second time
    assert second[2]["content"] == [{"type": "text", "text": "And now?"}]

    state = agent.session_state("s1")
    assert state["imageCount"] == 1 and state["documentCount"] == 1 and state["messageCount"] == 4


def test_chat_deep_research_flag():
    model = ScriptedModel([text_turn("a"), text_turn("b")])
    agent = ChatAgent(model)
    asyncio.run(agent.handle_message("s1", "q", ListEmitter()))
    asyncio.run(agent.handle_message("s2", "q", ListEmitter(), enable_deep_research=True))
    assert "deep_research" not in model.calls[0]["tools"]
    assert "deep_research" in model.calls[1]["tools"]


def test_chat_cancelled_run():
    cancel_event = asyncio.Event()
    cancel_event.set()
    agent = ChatAgent(ScriptedModel([]))
    emitter = ListEmitter()
    result = asyncio.run(agent.handle_message("s1", "hello", emitter, cancel_event=cancel_event))

    assert result.status is RunStatus.CANCELLED
    assert emitter.events[-1].code is ErrorCode.ABORTED
    assert not emitter.of_type(ContextUpdateEvent)


def test_chat_clear_and_unknown_session():
    agent = ChatAgent(ScriptedModel([text_turn("hi")]))
    assert agent.session_state("nope") is None
    asyncio.run(agent.handle_message("s1", "hello", ListEmitter()))
    assert agent.clear("s1") is True
    assert agent.clear("s1") is False
    assert agent.session_state("s1") is None


def test_chat_compresses_long_sessions():
    from canvas_agent.conversation import ContextCompressor
    from canvas_agent.store import ChatSession

    store = InMemorySessionStore()
    history = []
    for i in range(6):
        history.append({"role": "user", "content": [{"type": "text", "text": f"q{i} " + "x" * 200}]})
        history.append({"role": "assistant", "content": [{"type": "text", "text": f"a{i}"}]})
    store.put("s1", ChatSession(messages=history))

    model = ScriptedModel([text_turn("summary of old turns"), text_turn("fresh answer")])
    agent = ChatAgent(model, store=store,
                      compressor=ContextCompressor(model=model, compress_threshold=100, keep_recent=2))
    asyncio.run(agent.handle_message("s1", "next question", ListEmitter()))

    sent = model.calls[1]["messages"]
    assert "summary of old turns" in sent[0]["content"][0]["text"]
    assert len(sent) == 2 + 2 + 1


# =============================================================================
# Super Agent
# =============================================================================

def test_super_agent_full_workflow():
    """Test: match -> generate -> evaluate -> finalize produces a FinalOutput."""
    prompt = ('PPT title slide with large text "智领未来". All Chinese text must be exactly as specified '
              "with no other text. 8K resolution.")
    model = ScriptedModel([
        tool_turn(("t1", "skill_matcher", {"user_request": "做一个年度报告PPT封面"})),
        tool_turn(("t2", "generate_prompt", {"user_request": "做一个年度报告PPT封面", "skill_id": "ppt-generator",
                                             "variables": {"SLIDE_CONTENT": "title slide"}})),
        tool_turn(("t3", "evaluate_prompt", {"prompt": prompt, "chinese_texts": ["智领未来"]})),
        tool_turn(("t4", "finalize_output", {"prompts": [{"scene": "Cover", "prompt": prompt,
                                                           "chinese_texts": ["智领未来"]}]})),
    ])
    agent = SuperAgent(model)
    emitter = ListEmitter()
    result = asyncio.run(agent.run("做一个年度报告PPT封面", emitter))

    assert result.status is RunStatus.COMPLETED
    output = result.output
    assert output["final_prompt"] == prompt
    assert output["chinese_texts"] == ["智领未来"]
    assert output["iteration_count"] == 4
    assert output["matched_skill"] == "ppt-generator"
    assert output["degraded"] is False

    assert result.state.matched_template_id == "ppt-generator"
    assert result.state.evaluation_score == 75
    assert emitter.events[-1].result == output

    first_call = model.calls[0]
    assert "ppt-generator" in first_call["system"]
    assert "finalize_output" in first_call["tools"]
    assert "做一个年度报告PPT封面" in first_call["messages"][0]["content"][0]["text"]


def test_super_agent_exhaustion_returns_best_prompt():
    """Test: Without finalize the best evaluated prompt comes back, flagged degraded."""
    weak = 'Poster "新年快乐"'
    strong = 'Poster "新年快乐", All Chinese text must be exactly as specified, 8k'
    model = ScriptedModel([
        tool_turn(("t1", "evaluate_prompt", {"prompt": strong, "chinese_texts": ["新年快乐"]})),
        tool_turn(("t2", "evaluate_prompt", {"prompt": weak, "chinese_texts": ["新年快乐"]})),
        text_turn("I think we are done."),
    ])
    agent = SuperAgent(model, max_iterations=3)
    emitter = ListEmitter()
    result = asyncio.run(agent.run("新年海报", emitter))

    assert result.status is RunStatus.EXHAUSTED
    assert result.output["final_prompt"] == strong
    assert result.output["chinese_texts"] == ["新年快乐"]
    assert result.output["degraded"] is True
    assert result.output["iteration_count"] == 3
    assert result.state.evaluation_score == 65
    complete = emitter.events[-1]
    assert isinstance(complete, CompleteEvent) and complete.degraded


def test_super_agent_nudges_plain_answers():
    model = ScriptedModel([
        text_turn("Here is a prompt: a cat."),
        tool_turn(("t1", "finalize_output", {"prompts": ["a cat"]})),
    ])
    result = asyncio.run(SuperAgent(model).run("a cat", ListEmitter()))
    assert result.status is RunStatus.COMPLETED
    nudge = model.calls[1]["messages"][-1]["content"][0]["text"]
    assert "finalize_output" in nudge
    assert "Iteration: 1/8" in nudge


def test_super_agent_rejects_empty_request():
    model = ScriptedModel([])
    emitter = ListEmitter()
    result = asyncio.run(SuperAgent(model).run("   ", emitter))
    assert result.status is RunStatus.FATAL
    assert model.calls == []
    assert len(emitter.events) == 1
    error = emitter.events[0]
    assert isinstance(error, ErrorEvent) and error.fatal and error.code is ErrorCode.INVALID_REQUEST


def test_super_nudge_mentions_passing_score():
    state = LoopState(max_iterations=8, iteration=5, evaluation_score=90, matched_template_id="ppt-generator")
    nudge = super_nudge(state)
    assert "Iteration: 5/8" in nudge
    assert "Evaluation score: 90" in nudge
    assert "ppt-generator" in nudge
    assert "The score passes" in nudge


def test_initial_message_lists_reference_images():
    message = build_initial_message("poster", ["https://a.png", "https://b.png"])
    assert "- Image 2: https://b.png" in message
    assert "analyze_image" in message
    assert "Reference images" not in build_initial_message("poster")
