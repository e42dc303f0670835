from __future__ import annotations

import pytest

from chat_router.chat import Chat
from chat_router.errors import ResourceNotFoundError
from chat_router.messages import PostableMessage
from chat_router.thread import STATE_TTL_S, STREAM_PLACEHOLDER, Channel, Thread
from chat_router.types import FetchOptions, FetchResult
from tests.fakes import (
    DEFAULT_THREAD_ID,
    FakeAdapter,
    RecordingStateBackend,
    make_message,
)


def _make_thread(**chat_kwargs) -> tuple[Thread, FakeAdapter, RecordingStateBackend]:
    state = RecordingStateBackend()
    adapter = FakeAdapter()
    chat = Chat("bot", state=state, **chat_kwargs).add_adapter("slack", adapter)
    return chat.thread("slack", DEFAULT_THREAD_ID), adapter, state


@pytest.mark.anyio
async def test_post_text_and_postable() -> None:
    thread, adapter, _ = _make_thread()

    sent = await thread.post("hello")
    await thread.post(PostableMessage.markdown("*bold*"))

    assert sent.id == "sent-1"
    assert sent.adapter is adapter
    assert [message.mode.value for _, message in adapter.posts] == ["text", "markdown"]


@pytest.mark.anyio
async def test_stream_falls_back_to_post_and_edit() -> None:
    thread, adapter, _ = _make_thread(streaming_update_interval_s=0)

    async def chunks():
        for chunk in ("Hel", "lo", "!"):
            yield chunk

    sent = await thread.post(chunks())

    assert adapter.posts[0][1].plain_text() == STREAM_PLACEHOLDER
    assert [text for _, _, text in adapter.edits] == ["Hel", "Hello", "Hello!"]
    assert {message_id for _, message_id, _ in adapter.edits} == {sent.id}


@pytest.mark.anyio
async def test_stream_with_long_interval_sends_single_final_edit() -> None:
    thread, adapter, _ = _make_thread(streaming_update_interval_s=3600)

    await thread.post(PostableMessage.streaming(["a", "b", "c"]))

    assert [text for _, _, text in adapter.edits] == ["abc"]


@pytest.mark.anyio
async def test_stream_uses_native_adapter_support() -> None:
    thread, adapter, _ = _make_thread()
    adapter.native_stream = True

    await thread.post(["one ", "two"])

    assert adapter.streamed == ["one two"]
    assert adapter.posts == []
    assert adapter.edits == []


@pytest.mark.anyio
async def test_state_merges_and_replaces() -> None:
    thread, _, state = _make_thread()

    assert await thread.state() == {}
    await thread.set_state({"step": 1})
    await thread.set_state({"topic": "deploy"})
    assert await thread.state() == {"step": 1, "topic": "deploy"}

    await thread.set_state({"step": 2}, replace=True)
    assert await thread.state() == {"step": 2}
    assert await state.get(f"thread-state:{DEFAULT_THREAD_ID}") == {"step": 2}


@pytest.mark.anyio
async def test_state_ttl_and_refresh(monkeypatch) -> None:
    thread, _, state = _make_thread()
    ttls: list[float | None] = []
    original_set = state.set

    async def _set(key, value, ttl_s=None):
        ttls.append(ttl_s)
        await original_set(key, value, ttl_s)

    monkeypatch.setattr(state, "set", _set)
    await thread.set_state({"a": 1})
    await state.delete(f"thread-state:{DEFAULT_THREAD_ID}")

    assert ttls == [STATE_TTL_S]
    assert await thread.state() == {"a": 1}
    assert await thread.refresh().state() == {}


@pytest.mark.anyio
async def test_state_without_backend_is_local() -> None:
    adapter = FakeAdapter()
    chat = Chat("bot").add_adapter("slack", adapter)
    thread = chat.thread("slack", DEFAULT_THREAD_ID)

    await thread.set_state({"a": 1})

    assert await thread.state() == {"a": 1}
    assert not await thread.is_subscribed()


@pytest.mark.anyio
async def test_all_messages_follows_cursors() -> None:
    thread, adapter, _ = _make_thread()
    adapter.pages = {
        None: FetchResult(messages=[make_message(id="1")], next_cursor="c1"),
        "c1": FetchResult(messages=[make_message(id="2")], next_cursor="c2"),
        "c2": FetchResult(messages=[make_message(id="3")]),
    }

    messages = await thread.all_messages()

    assert [message.id for message in messages] == ["1", "2", "3"]
    assert adapter.fetch_calls == [None, FetchOptions(cursor="c1"), FetchOptions(cursor="c2")]


@pytest.mark.anyio
async def test_recent_messages_passes_limit() -> None:
    thread, adapter, _ = _make_thread()

    assert await thread.recent_messages(5) == []
    assert adapter.fetch_calls == [FetchOptions(limit=5)]


@pytest.mark.anyio
async def test_post_ephemeral_falls_back_to_dm() -> None:
    thread, adapter, _ = _make_thread()

    assert await thread.post_ephemeral("U1", "secret") is None
    sent = await thread.post_ephemeral("U1", "secret", fallback_to_dm=True)

    assert sent is not None
    assert adapter.posts[0][0] == "slack:D999:"

    adapter.ephemeral_supported = True
    await thread.post_ephemeral("U1", "native", fallback_to_dm=True)
    assert adapter.ephemeral[0][:2] == (DEFAULT_THREAD_ID, "U1")
    assert len(adapter.posts) == 1


@pytest.mark.anyio
async def test_post_ephemeral_without_dm_returns_none() -> None:
    thread, adapter, _ = _make_thread()
    adapter.dm_channel = None

    assert await thread.post_ephemeral("U1", "hi", fallback_to_dm=True) is None
    assert adapter.posts == []


@pytest.mark.anyio
async def test_typing_and_mentions() -> None:
    thread, adapter, _ = _make_thread()

    await thread.start_typing("thinking")

    assert adapter.typing == [(DEFAULT_THREAD_ID, "thinking")]
    assert thread.mention_user("U42") == "<@U42>"


def test_thread_json_round_trip() -> None:
    adapter = FakeAdapter()
    chat = Chat("bot").add_adapter("slack", adapter)
    thread = Thread(
        DEFAULT_THREAD_ID,
        adapter,
        chat,
        channel_id="C123",
        current_message=make_message("hi"),
    )

    data = thread.to_json()
    restored = Thread.from_json(data, chat)

    assert data["adapterName"] == "slack"
    assert data["isDM"] is False
    assert restored.adapter is adapter
    assert restored.channel_id == "C123"
    assert restored.current_message == make_message("hi")


def test_thread_from_json_unknown_adapter() -> None:
    chat = Chat("bot")
    with pytest.raises(ResourceNotFoundError):
        Thread.from_json({"id": "x", "adapterName": "teams"}, chat)


@pytest.mark.anyio
async def test_channel_post_and_state() -> None:
    state = RecordingStateBackend()
    adapter = FakeAdapter()
    chat = Chat("bot", state=state).add_adapter("slack", adapter)
    channel = chat.channel("slack", "C555")

    await channel.post("announce")
    await channel.set_state({"pinned": True})

    assert adapter.posts[0][0] == "slack:C555:"
    assert await state.get("channel-state:C555") == {"pinned": True}
    assert Channel.from_json(channel.to_json(), chat).id == "C555"


@pytest.mark.anyio
async def test_open_dm_builds_dm_thread() -> None:
    adapter = FakeAdapter()
    chat = Chat("bot").add_adapter("slack", adapter)

    thread = await chat.open_dm("slack", "U1")

    assert thread is not None
    assert thread.is_dm is True
    assert thread.channel_id == "D999"
