"""Test suite for the stream relay."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from gemish_chat.domain.errors import (
    InvalidRequest,
    NotFound,
    Unauthenticated,
    UnsupportedModel,
)
from gemish_chat.domain.models import (
    AssistantMessage,
    ModelVariant,
    Principal,
    ReasoningDelta,
    SourceCitation,
    StepFinish,
    StreamEnd,
    TextDelta,
    UserMessage,
)
from gemish_chat.repositories.cache import CachedMessageStore, TTLCache
from gemish_chat.services.relay import GENERIC_ERROR, SYSTEM_INSTRUCTION, StreamRelay

from conftest import RecordingStore, ScriptedAdapter, pdf_attachment, user_message

OWNER = Principal(user_id="user-1")


async def collect(turn):
    return [frame async for frame in turn]


async def new_chat(store, chat_id="chat-1", user_id="user-1"):
    return await store.create_chat(user_id, chat_id)


@pytest.mark.asyncio
async def test_successful_turn_saves_once(store, adapter):
    """A completed stream is saved exactly once with history, user and assistant messages."""
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    frames = await collect(turn)
    outcome = await turn.wait()

    assert outcome.saved
    assert len(store.saves) == 1
    saved = store.saves[0]
    assert [m.role for m in saved] == ["user", "assistant"]
    assert saved[0].content == "hi"
    assert saved[1].content == "Hello there!"
    assert saved[1].id.startswith("msgs_")
    assert [f.type for f in frames] == ["step-start", "text", "text", "step-finish", "end"]
    assert frames[0].message_id == saved[1].id
    assert adapter.calls[0]["system_instruction"] == SYSTEM_INSTRUCTION


@pytest.mark.asyncio
@pytest.mark.parametrize("chat_id,message", [
    ("chat-1", None),
    (None, user_message("hi")),
    ("", user_message("hi")),
    (["chat-1"], user_message("hi")),
    ({"id": "chat-1"}, user_message("hi")),
    (42, user_message("hi")),
])
async def test_missing_fields_touch_nothing(store, adapter, chat_id, message):
    """Requests missing the message or chat id fail before any storage or upstream call."""
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    with pytest.raises(InvalidRequest):
        await relay.handle_turn(chat_id, message, "fast", OWNER)

    assert store.calls == 0
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_non_user_message_rejected(store, adapter):
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    with pytest.raises(InvalidRequest):
        await relay.handle_turn("chat-1", AssistantMessage(id="a-1", content="hi"), "fast", OWNER)
    assert store.calls == 0


@pytest.mark.asyncio
async def test_unauthenticated(store, adapter):
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    with pytest.raises(Unauthenticated):
        await relay.handle_turn("chat-1", user_message("hi"), "fast", None)
    assert store.calls == 0
    assert adapter.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("owner", ["someone-else", None])
async def test_foreign_or_missing_chat_is_not_found(store, adapter, owner):
    """Not-owned and nonexistent chats both fail with NotFound and no upstream call."""
    if owner:
        await new_chat(store, user_id=owner)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    with pytest.raises(NotFound):
        await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)

    assert adapter.calls == []
    assert store.saves == []
    assert store.history_loads == 0


@pytest.mark.asyncio
async def test_unknown_variant(store, adapter):
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    with pytest.raises(UnsupportedModel):
        await relay.handle_turn("chat-1", user_message("hi"), "turbo", OWNER)
    assert adapter.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("model", [["fast"], {"name": "fast"}, 1])
async def test_non_string_model_is_rejected(store, adapter, model):
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    with pytest.raises(InvalidRequest):
        await relay.handle_turn("chat-1", user_message("hi"), model, OWNER)
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_placeholder_history_is_excluded(store, adapter):
    """A fresh chat's placeholder record never reaches the prompt."""
    await new_chat(store)
    assert len(await store.load_history("chat-1")) == 1
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    await collect(turn)
    await turn.wait()

    context = adapter.calls[0]["context"]
    assert len(context) == 1
    assert context[0].content == "hi"
    assert all(m.content for m in store.saves[0])


@pytest.mark.asyncio
async def test_attachment_forces_normal_variant(store, adapter):
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    message = user_message("Summarize this PDF", attachments=[pdf_attachment()])
    turn = await relay.handle_turn("chat-1", message, "fast", OWNER)
    await collect(turn)

    assert turn.variant is ModelVariant.NORMAL
    assert adapter.calls[0]["variant"] is ModelVariant.NORMAL


@pytest.mark.asyncio
async def test_requested_variant_honoured_without_attachments(store, adapter):
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    await collect(turn)

    assert adapter.calls[0]["variant"] is ModelVariant.FAST


@pytest.mark.asyncio
async def test_attachment_in_history_forces_normal_variant(store, adapter):
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    first = await relay.handle_turn(
        "chat-1", user_message("Read this", "m-1", [pdf_attachment()]), "fast", OWNER
    )
    await collect(first)
    await first.wait()
    second = await relay.handle_turn("chat-1", user_message("and now?", "m-2"), "fast", OWNER)
    await collect(second)

    assert adapter.calls[1]["variant"] is ModelVariant.NORMAL


@pytest.mark.asyncio
async def test_single_empty_real_message_stays_in_context(store, adapter):
    """Only the chat's own placeholder record is filtered, not an empty real message."""
    await new_chat(store)
    await store.save_exchange("chat-1", "user-1", [user_message("", "m-1", [pdf_attachment()])])
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("what is in it?", "m-2"), "fast", OWNER)
    await collect(turn)

    context = adapter.calls[0]["context"]
    assert [m.id for m in context] == ["m-1", "m-2"]
    assert adapter.calls[0]["variant"] is ModelVariant.NORMAL


@pytest.mark.asyncio
async def test_upstream_error_discards_partial_content(store, error_stream):
    """An error event mid-stream leaves storage untouched and sends a generic error."""
    await new_chat(store)
    relay = StreamRelay(store, ScriptedAdapter(error_stream), smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    frames = await collect(turn)
    outcome = await turn.wait()

    assert not outcome.saved
    assert outcome.error == "upstream 503"
    assert store.saves == []
    assert frames[-1].type == "error"
    assert frames[-1].message == GENERIC_ERROR
    assert (await store.load_history("chat-1"))[0].content == ""


@pytest.mark.asyncio
async def test_adapter_exception_is_a_failed_turn(store):
    await new_chat(store)
    relay = StreamRelay(store, ScriptedAdapter(raise_after=1), smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    frames = await collect(turn)
    outcome = await turn.wait()

    assert not outcome.saved
    assert store.saves == []
    assert frames[-1].message == GENERIC_ERROR
    assert "connection reset" not in frames[-1].message


@pytest.mark.asyncio
async def test_timeout_is_a_failed_turn(store):
    await new_chat(store)
    adapter = ScriptedAdapter(gate_after=1)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0, turn_timeout=0.05)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    frames = await collect(turn)
    outcome = await turn.wait()

    assert not outcome.saved
    assert outcome.error == "timed out"
    assert store.saves == []
    assert frames[-1].type == "error"


@pytest.mark.asyncio
async def test_first_frames_arrive_before_stream_completes(store):
    await new_chat(store)
    adapter = ScriptedAdapter(gate_after=1)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    stream = turn.__aiter__()
    start = await asyncio.wait_for(stream.__anext__(), timeout=1)
    first_text = await asyncio.wait_for(stream.__anext__(), timeout=1)

    assert start.type == "step-start"
    assert first_text.text == "Hello "
    assert adapter.consumed == 1
    assert store.saves == []

    adapter.gate.set()
    rest = [frame async for frame in stream]
    assert rest[-1].type == "end"
    assert (await turn.wait()).saved


@pytest.mark.asyncio
async def test_client_disconnect_still_saves(store):
    """Generation keeps running and is persisted after the client goes away."""
    await new_chat(store)
    adapter = ScriptedAdapter(gate_after=1)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    stream = turn.__aiter__()
    await stream.__anext__()
    await stream.__anext__()
    await stream.aclose()
    assert turn.detached

    adapter.gate.set()
    outcome = await turn.wait()

    assert outcome.saved
    assert len(store.saves) == 1
    assert store.saves[0][-1].content == "Hello there!"


@pytest.mark.asyncio
async def test_client_cancellation_does_not_cancel_generation(store):
    await new_chat(store)
    adapter = ScriptedAdapter(delay=0.01)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    reader = asyncio.create_task(collect(turn))
    await asyncio.sleep(0.001)
    reader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await reader

    outcome = await turn.wait()
    assert outcome.saved
    assert turn.detached


@pytest.mark.asyncio
async def test_sequential_turns_see_previous_exchange(store, adapter):
    await new_chat(store)
    cached = CachedMessageStore(store, TTLCache(ttl=3600))
    relay = StreamRelay(cached, adapter, smooth_delay_ms=0)

    first = await relay.handle_turn("chat-1", user_message("hi", "m-1"), "fast", OWNER)
    await collect(first)
    await first.wait()
    second = await relay.handle_turn("chat-1", user_message("again", "m-2"), "fast", OWNER)
    await collect(second)
    await second.wait()

    context = adapter.calls[1]["context"]
    assert [m.role for m in context] == ["user", "assistant", "user"]
    assert [m.content for m in context] == ["hi", "Hello there!", "again"]
    assert len(store.saves) == 2
    assert len(store.saves[1]) == 4


@pytest.mark.asyncio
async def test_persistence_failure_is_not_fatal():
    """A failed save is reported on the outcome; the client already has the full text."""
    store = RecordingStore(fail_saves=True)
    await new_chat(store)
    relay = StreamRelay(CachedMessageStore(store, TTLCache(ttl=60)), ScriptedAdapter(), smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("hi"), "fast", OWNER)
    frames = await collect(turn)
    outcome = await turn.wait()

    assert not outcome.saved
    assert outcome.error == "save_exchange failed"
    assert "".join(f.text for f in frames if f.type == "text") == "Hello there!"
    assert frames[-1].type == "end"


@pytest.mark.asyncio
async def test_reasoning_and_sources_are_kept(store):
    await new_chat(store)
    adapter = ScriptedAdapter([
        ReasoningDelta(text="Let me think. "),
        SourceCitation(id="src-1", url="https://example.com/a", title="A"),
        TextDelta(text="Answer"),
        StreamEnd(),
    ])
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("why?"), "fast", OWNER)
    frames = await collect(turn)
    await turn.wait()

    assistant = store.saves[0][-1]
    assert assistant.reasoning == "Let me think. "
    assert assistant.sources[0].url == "https://example.com/a"
    assert assistant.content == "Answer"
    assert [f.type for f in frames][:3] == ["step-start", "reasoning", "source"]


@pytest.mark.asyncio
async def test_each_step_becomes_its_own_message(store):
    await new_chat(store)
    adapter = ScriptedAdapter([
        TextDelta(text="first"),
        StepFinish(),
        TextDelta(text="second"),
        StreamEnd(),
    ])
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turn = await relay.handle_turn("chat-1", user_message("go"), "fast", OWNER)
    await collect(turn)
    await turn.wait()

    saved = store.saves[0]
    assert [m.content for m in saved] == ["go", "first", "second"]
    assert saved[1].id != saved[2].id


@pytest.mark.asyncio
async def test_response_is_ordered_after_client_timestamp(store, adapter):
    await new_chat(store)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)
    future = datetime.now(timezone.utc) + timedelta(minutes=5)

    message = UserMessage(id="m-1", content="hi", created_at=future)
    turn = await relay.handle_turn("chat-1", message, "fast", OWNER)
    await collect(turn)
    await turn.wait()

    history = await store.load_history("chat-1")
    assert [m.role for m in history] == ["user", "assistant"]
    assert history[1].created_at > history[0].created_at


@pytest.mark.asyncio
async def test_concurrent_turns_on_different_chats(store, adapter):
    for chat_id in ("chat-a", "chat-b", "chat-c"):
        await new_chat(store, chat_id)
    relay = StreamRelay(store, adapter, smooth_delay_ms=0)

    turns = await asyncio.gather(*[
        relay.handle_turn(chat_id, user_message(f"hi {chat_id}"), "fast", OWNER)
        for chat_id in ("chat-a", "chat-b", "chat-c")
    ])
    await relay.drain()

    assert relay.active_turns == 0
    outcomes = [await t.wait() for t in turns]
    assert all(o.saved for o in outcomes)
    for chat_id in ("chat-a", "chat-b", "chat-c"):
        history = await store.load_history(chat_id)
        assert history[0].content == f"hi {chat_id}"
