from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chat_router.adapter import BaseAdapter
from chat_router.errors import ValidationError
from chat_router.messages import Author, Message, PostableMessage, SentMessage, TextStream
from chat_router.state import DEFAULT_LOCK_TTL_S, LockToken, MemoryStateBackend
from chat_router.types import FetchOptions, FetchResult

DEFAULT_THREAD_ID = "slack:C123:1234.5678"


def make_author(
    user_id: str = "U123",
    *,
    user_name: str = "testuser",
    is_bot: bool = False,
    is_me: bool = False,
) -> Author:
    return Author(
        user_id=user_id,
        user_name=user_name,
        full_name="Test User",
        is_bot=is_bot,
        is_me=is_me,
    )


def make_message(
    text: str = "hello",
    *,
    id: str = "msg-1",
    thread_id: str = DEFAULT_THREAD_ID,
    author: Author | None = None,
    is_mention: bool = False,
) -> Message:
    return Message(
        id=id,
        thread_id=thread_id,
        text=text,
        author=author or make_author(),
        is_mention=is_mention,
    )


@dataclass(slots=True, eq=False)
class FakeAdapter(BaseAdapter):
    """Adapter that records outbound calls instead of talking to a platform."""

    adapter_name: str = "slack"
    bot_name: str = "slack-bot"
    bot_id: str | None = "BOT_SLACK"
    native_stream: bool = False
    ephemeral_supported: bool = False
    dm_channel: str | None = "D999"
    posts: list[tuple[str, PostableMessage]] = field(default_factory=list)
    edits: list[tuple[str, str, str]] = field(default_factory=list)
    deleted: list[tuple[str, str]] = field(default_factory=list)
    reactions: list[tuple[str, str, str]] = field(default_factory=list)
    typing: list[tuple[str, str | None]] = field(default_factory=list)
    ephemeral: list[tuple[str, str, PostableMessage]] = field(default_factory=list)
    subscribed: list[str] = field(default_factory=list)
    streamed: list[str] = field(default_factory=list)
    pages: dict[str | None, FetchResult] = field(default_factory=dict)
    fetch_calls: list[FetchOptions | None] = field(default_factory=list)
    modals: list[tuple[str, Any, str | None]] = field(default_factory=list)
    chat: Any = None
    _next_id: int = 1

    def name(self) -> str:
        return self.adapter_name

    def user_name(self) -> str:
        return self.bot_name

    def bot_user_id(self) -> str | None:
        return self.bot_id

    def initialize(self, chat: Any) -> None:
        self.chat = chat

    def encode_thread_id(self, fields: dict[str, Any]) -> str:
        return f"{self.adapter_name}:{fields.get('channel', '')}:{fields.get('thread_ts', '')}"

    def decode_thread_id(self, thread_id: str) -> dict[str, Any]:
        parts = thread_id.split(":")
        if len(parts) != 3 or parts[0] != self.adapter_name or not parts[1]:
            raise ValidationError(f"bad thread id: {thread_id!r}")
        return {"channel": parts[1], "thread_ts": parts[2]}

    def channel_id_from_thread_id(self, thread_id: str) -> str | None:
        return self.decode_thread_id(thread_id)["channel"]

    def is_dm(self, thread_id: str) -> bool:
        return self.decode_thread_id(thread_id)["channel"].startswith("D")

    def parse_message(self, payload: Any) -> Message:
        return Message.from_json(payload)

    def render_formatted(self, markdown: str) -> str:
        return f"<{markdown}>"

    def _sent(self, thread_id: str, text: str) -> SentMessage:
        message_id = f"sent-{self._next_id}"
        self._next_id += 1
        return SentMessage(
            id=message_id,
            thread_id=thread_id,
            text=text,
            author=make_author(self.bot_id or "", is_bot=True, is_me=True),
            adapter=self,
        )

    async def post_message(
        self, thread_id: str, message: PostableMessage
    ) -> SentMessage:
        self.posts.append((thread_id, message))
        return self._sent(thread_id, message.plain_text())

    async def edit_message(
        self, thread_id: str, message_id: str, message: PostableMessage
    ) -> SentMessage:
        self.edits.append((thread_id, message_id, message.plain_text()))
        return self._sent(thread_id, message.plain_text())

    async def delete_message(self, thread_id: str, message_id: str) -> None:
        self.deleted.append((thread_id, message_id))

    async def add_reaction(self, thread_id: str, message_id: str, emoji: str) -> None:
        self.reactions.append((thread_id, message_id, emoji))

    async def remove_reaction(
        self, thread_id: str, message_id: str, emoji: str
    ) -> None:
        self.reactions.append((thread_id, message_id, f"-{emoji}"))

    async def start_typing(self, thread_id: str, status: str | None = None) -> None:
        self.typing.append((thread_id, status))

    async def open_dm(self, user_id: str) -> str | None:
        if self.dm_channel is None:
            return None
        return f"{self.adapter_name}:{self.dm_channel}:"

    async def fetch_messages(
        self, thread_id: str, options: FetchOptions | None = None
    ) -> FetchResult:
        self.fetch_calls.append(options)
        cursor = options.cursor if options is not None else None
        return self.pages.get(cursor, FetchResult())

    async def post_ephemeral(
        self, thread_id: str, user_id: str, message: PostableMessage
    ) -> SentMessage | None:
        if not self.ephemeral_supported:
            return None
        self.ephemeral.append((thread_id, user_id, message))
        return self._sent(thread_id, message.plain_text())

    async def open_modal(
        self, trigger_id: str, modal: Any, context_id: str | None = None
    ) -> dict[str, Any] | None:
        self.modals.append((trigger_id, modal, context_id))
        return {"id": "V1"}

    async def stream(
        self, thread_id: str, text_stream: TextStream
    ) -> SentMessage | None:
        if not self.native_stream:
            return None
        text = "".join(list(text_stream))  # type: ignore[arg-type]
        self.streamed.append(text)
        return self._sent(thread_id, text)

    async def post_channel_message(
        self, channel_id: str, message: PostableMessage
    ) -> SentMessage | None:
        return await self.post_message(f"{self.adapter_name}:{channel_id}:", message)

    async def on_thread_subscribe(self, thread_id: str) -> None:
        self.subscribed.append(thread_id)


class RecordingStateBackend(MemoryStateBackend):
    """In-memory backend that also records the calls the chat makes."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.calls: list[tuple[str, str]] = []
        self.refuse_locks = False

    async def get(self, key: str) -> Any:
        self.calls.append(("get", key))
        return await super().get(key)

    async def set(self, key: str, value: Any, ttl_s: float | None = None) -> None:
        self.calls.append(("set", key))
        await super().set(key, value, ttl_s)

    async def set_if_absent(
        self, key: str, value: Any, ttl_s: float | None = None
    ) -> bool:
        self.calls.append(("set_if_absent", key))
        return await super().set_if_absent(key, value, ttl_s)

    async def acquire_lock(
        self, thread_id: str, ttl_s: float = DEFAULT_LOCK_TTL_S
    ) -> LockToken | None:
        self.calls.append(("acquire_lock", thread_id))
        if self.refuse_locks:
            return None
        return await super().acquire_lock(thread_id, ttl_s)

    async def release_lock(self, lock: LockToken) -> None:
        self.calls.append(("release_lock", lock.thread_id))
        await super().release_lock(lock)

    async def is_subscribed(self, thread_id: str) -> bool:
        self.calls.append(("is_subscribed", thread_id))
        return await super().is_subscribed(thread_id)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]
