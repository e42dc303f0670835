from __future__ import annotations

import anyio
import pytest

from chat_router.chat import Chat
from chat_router.events import (
    ActionEvent,
    MessageDeletedEvent,
    ModalResponse,
    ModalSubmitEvent,
    ReactionEvent,
    SlashCommandEvent,
)
from chat_router.state import MemoryStateBackend
from chat_router.state_file import JsonFileStateBackend
from tests.fakes import (
    DEFAULT_THREAD_ID,
    FakeAdapter,
    RecordingStateBackend,
    make_author,
    make_message,
)


def _make_chat(**kwargs) -> tuple[Chat, FakeAdapter, RecordingStateBackend]:
    state = RecordingStateBackend()
    adapter = FakeAdapter()
    chat = Chat("bot", state=state, **kwargs).add_adapter("slack", adapter)
    return chat, adapter, state


@pytest.mark.anyio
async def test_mention_runs_mention_handlers() -> None:
    chat, adapter, _ = _make_chat()
    seen: list[tuple[str, str]] = []

    async def on_mention(thread, message) -> None:
        seen.append((thread.id, message.text))
        await thread.post("on it")

    chat.on_new_mention(on_mention)
    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("hey @slack-bot help")
    )

    assert seen == [(DEFAULT_THREAD_ID, "hey @slack-bot help")]
    assert [text.plain_text() for _, text in adapter.posts] == ["on it"]


@pytest.mark.anyio
async def test_mention_detected_by_bot_user_id_or_flag() -> None:
    chat, adapter, _ = _make_chat()
    seen: list[str] = []
    chat.on_new_mention(lambda thread, message: seen.append(message.id))

    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("ping @BOT_SLACK", id="m1")
    )
    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("plain", id="m2", is_mention=True)
    )
    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("plain", id="m3")
    )

    assert seen == ["m1", "m2"]


@pytest.mark.anyio
async def test_subscribed_thread_takes_precedence_over_mention() -> None:
    chat, adapter, state = _make_chat()
    calls: list[str] = []
    chat.on_new_mention(lambda thread, message: calls.append("mention"))
    chat.on_subscribed_message(lambda thread, message: calls.append("subscribed"))
    await state.subscribe(DEFAULT_THREAD_ID)

    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("@slack-bot again")
    )

    assert calls == ["subscribed"]


@pytest.mark.anyio
async def test_pattern_handlers_run_alongside_routing() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_new_mention(lambda thread, message: calls.append("mention"))
    chat.on_new_message(r"deploy \w+", lambda thread, message: calls.append("deploy"))
    chat.on_new_message(r"^never$", lambda thread, message: calls.append("never"))

    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("@slack-bot deploy prod")
    )

    assert calls == ["mention", "deploy"]


@pytest.mark.anyio
async def test_duplicate_message_is_dropped() -> None:
    chat, adapter, state = _make_chat()
    calls: list[str] = []
    chat.on_new_message(".*", lambda thread, message: calls.append(message.id))

    message = make_message("hi", id="dup")
    await chat.handle_incoming_message(adapter, DEFAULT_THREAD_ID, message)
    await chat.handle_incoming_message(adapter, DEFAULT_THREAD_ID, message)

    assert calls == ["dup"]
    assert await state.get("dedupe:slack:dup") is True


@pytest.mark.anyio
async def test_dedupe_key_is_kept_after_handler_failure() -> None:
    chat, adapter, state = _make_chat()

    def boom(thread, message) -> None:
        raise RuntimeError("handler failed")

    chat.on_new_message(".*", boom)
    with pytest.raises(RuntimeError):
        await chat.handle_incoming_message(
            adapter, DEFAULT_THREAD_ID, make_message(id="m-fail")
        )

    assert await state.get("dedupe:slack:m-fail") is True
    assert state.names()[-1] == "release_lock"
    assert not state.is_locked(DEFAULT_THREAD_ID)


@pytest.mark.anyio
async def test_own_messages_are_skipped_before_state() -> None:
    chat, adapter, state = _make_chat()
    calls: list[str] = []
    chat.on_new_message(".*", lambda thread, message: calls.append(message.id))

    own = make_message("echo", author=make_author("BOT_SLACK", is_bot=True, is_me=True))
    await chat.handle_incoming_message(adapter, DEFAULT_THREAD_ID, own)

    assert calls == []
    assert state.calls == []


@pytest.mark.anyio
async def test_state_call_order_wraps_handlers_in_lock() -> None:
    chat, adapter, state = _make_chat()
    seen_locked: list[bool] = []
    chat.on_new_message(
        ".*", lambda thread, message: seen_locked.append(state.is_locked(thread.id))
    )

    await chat.handle_incoming_message(adapter, DEFAULT_THREAD_ID, make_message())

    assert seen_locked == [True]
    assert state.names() == [
        "set_if_absent",
        "acquire_lock",
        "is_subscribed",
        "release_lock",
    ]


@pytest.mark.anyio
async def test_unavailable_lock_still_dispatches() -> None:
    chat, adapter, state = _make_chat()
    state.refuse_locks = True
    calls: list[str] = []
    chat.on_new_message(".*", lambda thread, message: calls.append(message.id))

    await chat.handle_incoming_message(adapter, DEFAULT_THREAD_ID, make_message())

    assert calls == ["msg-1"]
    assert "release_lock" not in state.names()


@pytest.mark.anyio
async def test_without_state_every_message_is_processed() -> None:
    adapter = FakeAdapter()
    chat = Chat("bot").add_adapter("slack", adapter)
    calls: list[str] = []
    chat.on_new_message(".*", lambda thread, message: calls.append(message.id))

    message = make_message()
    await chat.handle_incoming_message(adapter, DEFAULT_THREAD_ID, message)
    await chat.handle_incoming_message(adapter, DEFAULT_THREAD_ID, message)

    assert calls == ["msg-1", "msg-1"]


@pytest.mark.anyio
async def test_action_filters_and_thread_injection() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[tuple[str, str, str | None]] = []

    def record(label: str):
        def handler(event: ActionEvent) -> None:
            thread_id = event.thread.id if event.thread is not None else None
            calls.append((label, event.action_id, thread_id))

        return handler

    chat.on_action("approve", record("one"))
    chat.on_action(["approve", "reject"], record("set"))
    chat.on_action(record("all"))

    await chat.process_action(
        ActionEvent(
            adapter=adapter,
            action_id="reject",
            user=make_author(),
            thread_id=DEFAULT_THREAD_ID,
        )
    )

    assert calls == [
        ("set", "reject", DEFAULT_THREAD_ID),
        ("all", "reject", DEFAULT_THREAD_ID),
    ]


@pytest.mark.anyio
async def test_action_from_self_is_ignored() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_action(lambda event: calls.append(event.action_id))

    await chat.process_action(
        ActionEvent(adapter=adapter, action_id="x", user=make_author(is_me=True))
    )

    assert calls == []


@pytest.mark.anyio
async def test_reaction_filters_match_emoji_or_raw_emoji() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_reaction("thumbs_up", lambda event: calls.append("named"))
    chat.on_reaction(["+1"], lambda event: calls.append("raw"))
    chat.on_reaction_added(lambda event: calls.append("added"))
    chat.on_reaction_removed(lambda event: calls.append("removed"))

    event = ReactionEvent(
        adapter=adapter,
        emoji="thumbs_up",
        raw_emoji="+1",
        user=make_author(),
        thread_id=DEFAULT_THREAD_ID,
        message_id="1234.5678",
    )
    await chat.process_reaction(event)
    await chat.process_reaction(
        ReactionEvent(
            adapter=adapter,
            emoji="heart",
            added=False,
            user=make_author(),
            thread_id=DEFAULT_THREAD_ID,
        )
    )

    assert calls == ["named", "raw", "added", "removed"]
    assert event.type == "reaction_added"


@pytest.mark.anyio
async def test_slash_command_filters_are_normalized() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_slash_command("help", lambda event: calls.append("bare"))
    chat.on_slash_command(["/help", "/status"], lambda event: calls.append("slashed"))
    chat.on_slash_command("other", lambda event: calls.append("other"))

    await chat.process_slash_command(
        SlashCommandEvent(
            adapter=adapter, command="/help", user=make_author(), channel_id="C123"
        )
    )

    assert calls == ["bare", "slashed"]


@pytest.mark.anyio
async def test_slash_command_without_slash_does_not_match() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_slash_command("help", lambda event: calls.append(event.command))

    await chat.process_slash_command(
        SlashCommandEvent(
            adapter=adapter, command="help", user=make_author(), channel_id="C123"
        )
    )

    assert calls == []


@pytest.mark.anyio
async def test_slash_command_respond_posts_to_channel() -> None:
    chat, adapter, _ = _make_chat()

    async def handler(event: SlashCommandEvent) -> None:
        await event.respond("pong")

    chat.on_slash_command("/ping", handler)
    await chat.process_slash_command(
        SlashCommandEvent(
            adapter=adapter, command="/ping", user=make_author(), channel_id="C777"
        )
    )

    assert adapter.posts[0][0] == "slack:C777:"
    assert adapter.posts[0][1].plain_text() == "pong"


@pytest.mark.anyio
async def test_modal_submit_first_result_wins() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []

    def ignore(event: ModalSubmitEvent) -> None:
        calls.append("ignore")

    def reject(event: ModalSubmitEvent) -> ModalResponse:
        calls.append("reject")
        return ModalResponse.with_errors({"name": "required"})

    def never(event: ModalSubmitEvent) -> ModalResponse:
        calls.append("never")
        return ModalResponse.close()

    chat.on_modal_submit("signup", ignore)
    chat.on_modal_submit("signup", reject)
    chat.on_modal_submit(never)

    result = await chat.process_modal_submit(
        ModalSubmitEvent(adapter=adapter, callback_id="signup", user=make_author())
    )

    assert calls == ["ignore", "reject"]
    assert result == ModalResponse.with_errors({"name": "required"})


@pytest.mark.anyio
async def test_modal_submit_without_match_returns_none() -> None:
    chat, adapter, _ = _make_chat()
    chat.on_modal_submit("other", lambda event: ModalResponse.close())

    result = await chat.process_modal_submit(
        ModalSubmitEvent(adapter=adapter, callback_id="signup")
    )

    assert result is None


@pytest.mark.anyio
async def test_message_deleted_dispatch_runs_inline() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_message_deleted(lambda event: calls.append(event.message_id))

    await chat.dispatch_message_deleted(
        MessageDeletedEvent(
            adapter=adapter, thread_id=DEFAULT_THREAD_ID, message_id="1.2"
        )
    )

    assert calls == ["1.2"]


@pytest.mark.anyio
async def test_subscribe_fires_subscription_handlers() -> None:
    chat, adapter, state = _make_chat()
    events = []
    chat.on_subscribe(events.append)
    chat.on_unsubscribe(events.append)

    thread = chat.thread("slack", DEFAULT_THREAD_ID)
    await thread.subscribe()
    assert await thread.is_subscribed()
    await thread.unsubscribe()

    assert [event.subscribed for event in events] == [True, False]
    assert events[0].thread_id == DEFAULT_THREAD_ID
    assert adapter.subscribed == [DEFAULT_THREAD_ID]
    assert not await state.is_subscribed(DEFAULT_THREAD_ID)


def test_filter_and_handler_arguments_are_checked() -> None:
    chat = Chat("bot")
    with pytest.raises(TypeError):
        chat.on_action("approve")
    with pytest.raises(TypeError):
        chat.on_action(lambda event: None, lambda event: None)


@pytest.mark.anyio
async def test_concurrent_redelivery_runs_handlers_once(tmp_path) -> None:
    adapter = FakeAdapter()
    state = JsonFileStateBackend(tmp_path / "state.json")
    chat = Chat("bot", state=state).add_adapter("slack", adapter)
    calls: list[str] = []

    async def handler(thread, message) -> None:
        await anyio.sleep(0)
        calls.append(message.id)

    chat.on_new_message(".*", handler)
    async with anyio.create_task_group() as tg:
        for _ in range(2):
            tg.start_soon(
                chat.handle_incoming_message,
                adapter,
                DEFAULT_THREAD_ID,
                make_message(id="retry-1"),
            )

    assert calls == ["retry-1"]
    assert await state.get("dedupe:slack:retry-1") is True


@pytest.mark.anyio
async def test_same_thread_messages_do_not_overlap() -> None:
    adapter = FakeAdapter()
    chat = Chat("bot", state=MemoryStateBackend()).add_adapter("slack", adapter)
    order: list[str] = []
    first_started = anyio.Event()

    async def handler(thread, message) -> None:
        order.append(f"start:{message.id}")
        first_started.set()
        await anyio.sleep(0.01)
        order.append(f"end:{message.id}")

    chat.on_new_message(".*", handler)
    async with anyio.create_task_group() as tg:
        tg.start_soon(
            chat.handle_incoming_message, adapter, DEFAULT_THREAD_ID, make_message(id="1")
        )
        await first_started.wait()
        tg.start_soon(
            chat.handle_incoming_message, adapter, DEFAULT_THREAD_ID, make_message(id="2")
        )

    assert order == ["start:1", "end:1", "start:2", "end:2"]


@pytest.mark.anyio
async def test_reaction_and_slash_command_from_self_are_ignored() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_reaction(lambda event: calls.append("reaction"))
    chat.on_reaction_added(lambda event: calls.append("added"))
    chat.on_slash_command(lambda event: calls.append("slash"))
    me = make_author("BOT_SLACK", is_bot=True, is_me=True)

    await chat.process_reaction(
        ReactionEvent(
            adapter=adapter, emoji="eyes", user=me, thread_id=DEFAULT_THREAD_ID
        )
    )
    await chat.process_slash_command(
        SlashCommandEvent(adapter=adapter, command="/help", user=me, channel_id="C123")
    )

    assert calls == []


@pytest.mark.anyio
async def test_mention_dispatched_twice_runs_mention_handler_once() -> None:
    chat, adapter, _ = _make_chat()
    calls: list[str] = []
    chat.on_new_mention(lambda thread, message: calls.append("mention"))
    chat.on_subscribed_message(lambda thread, message: calls.append("subscribed"))

    message = make_message("@slack-bot status", id="m-twice")
    await chat.dispatch_incoming_message(adapter, DEFAULT_THREAD_ID, message)
    await chat.dispatch_incoming_message(adapter, DEFAULT_THREAD_ID, message)

    assert calls == ["mention"]


@pytest.mark.anyio
async def test_follow_up_in_subscribed_thread_sees_subscription() -> None:
    chat, adapter, _ = _make_chat()
    seen: list[tuple[str, bool]] = []

    async def on_mention(thread, message) -> None:
        await thread.subscribe()
        seen.append(("mention", await thread.is_subscribed()))

    async def on_subscribed(thread, message) -> None:
        seen.append((message.text, await thread.is_subscribed()))

    chat.on_new_mention(on_mention)
    chat.on_subscribed_message(on_subscribed)

    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("@slack-bot start", id="m1")
    )
    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("Follow up", id="m2")
    )

    assert seen == [("mention", True), ("Follow up", True)]


@pytest.mark.anyio
async def test_mention_in_unsubscribed_thread_skips_subscribed_handlers() -> None:
    chat, adapter, state = _make_chat()
    calls: list[str] = []
    chat.on_new_mention(lambda thread, message: calls.append("mention"))
    chat.on_subscribed_message(lambda thread, message: calls.append("subscribed"))
    await state.subscribe(DEFAULT_THREAD_ID)
    await state.unsubscribe(DEFAULT_THREAD_ID)

    await chat.handle_incoming_message(
        adapter, DEFAULT_THREAD_ID, make_message("@slack-bot hi")
    )

    assert calls == ["mention"]


@pytest.mark.anyio
async def test_action_handler_receives_value() -> None:
    chat, adapter, _ = _make_chat()
    values: list[str | None] = []
    chat.on_action("view_order", lambda event: values.append(event.value))

    await chat.dispatch_action(
        ActionEvent(
            adapter=adapter,
            action_id="view_order",
            user=make_author(),
            thread_id=DEFAULT_THREAD_ID,
            value="order-123",
        )
    )

    assert values == ["order-123"]
