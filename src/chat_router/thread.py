from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import TYPE_CHECKING, Any

import anyio

from .messages import Message, PostableMessage, SentMessage, TextStream, as_postable
from .types import (
    ChannelInfo,
    FetchOptions,
    FetchResult,
    ListThreadsOptions,
    ListThreadsResult,
)

if TYPE_CHECKING:
    from .adapter import Adapter
    from .chat import Chat

STATE_TTL_S = 30 * 86400
STREAM_PLACEHOLDER = "..."

PostContent = str | PostableMessage | Iterable[str] | AsyncIterable[str]


async def _iterate(stream: TextStream) -> AsyncIterator[str]:
    if isinstance(stream, AsyncIterable):
        async for chunk in stream:
            yield chunk
        return
    for chunk in stream:
        yield chunk


class _StateHandle:
    _state_prefix = ""
    id: str

    def __init__(self, chat: "Chat") -> None:
        self._chat = chat
        self._state: dict[str, Any] | None = None

    @property
    def _state_key(self) -> str:
        return f"{self._state_prefix}:{self.id}"

    async def state(self) -> dict[str, Any]:
        if self._state is None:
            backend = self._chat.state
            stored = await backend.get(self._state_key) if backend else None
            self._state = dict(stored) if isinstance(stored, dict) else {}
        return dict(self._state)

    async def set_state(self, data: dict[str, Any], *, replace: bool = False) -> None:
        current = {} if replace else await self.state()
        current.update(data)
        self._state = current
        backend = self._chat.state
        if backend is not None:
            await backend.set(self._state_key, dict(current), ttl_s=STATE_TTL_S)


async def _post_ephemeral(
    adapter: "Adapter",
    target_id: str,
    user_id: str,
    content: str | PostableMessage,
    fallback_to_dm: bool,
) -> SentMessage | None:
    message = as_postable(content)
    result = await adapter.post_ephemeral(target_id, user_id, message)
    if result is not None or not fallback_to_dm:
        return result
    dm_thread_id = await adapter.open_dm(user_id)
    if not dm_thread_id:
        return None
    return await adapter.post_message(dm_thread_id, message)


class Thread(_StateHandle):
    """A conversation thread on one platform.

    Built fresh for every event; it borrows the adapter and chat and caches
    thread state until ``refresh`` is called.
    """

    _state_prefix = "thread-state"

    def __init__(
        self,
        id: str,
        adapter: "Adapter",
        chat: "Chat",
        *,
        channel_id: str | None = None,
        is_dm: bool = False,
        current_message: Message | None = None,
    ) -> None:
        super().__init__(chat)
        self.id = id
        self.adapter = adapter
        self.channel_id = channel_id
        self.is_dm = is_dm
        self.current_message = current_message

    def __repr__(self) -> str:
        return f"Thread(id={self.id!r}, adapter={self.adapter.name()!r})"

    async def post(self, content: PostContent) -> SentMessage:
        if isinstance(content, str):
            return await self.adapter.post_message(
                self.id, PostableMessage.text(content)
            )
        if isinstance(content, PostableMessage):
            if not content.is_streaming:
                return await self.adapter.post_message(self.id, content)
            stream = content.get_stream()
        else:
            stream = content
        native = await self.adapter.stream(self.id, stream)
        if native is not None:
            return native
        return await self._post_stream_by_edits(stream)

    async def _post_stream_by_edits(self, stream: TextStream) -> SentMessage:
        interval = self._chat.streaming_update_interval_s
        placeholder = await self.adapter.post_message(
            self.id, PostableMessage.text(STREAM_PLACEHOLDER)
        )
        accumulated = ""
        last_edited = ""
        last_update = anyio.current_time()
        async for chunk in _iterate(stream):
            accumulated += chunk
            now = anyio.current_time()
            if now - last_update >= interval and accumulated != last_edited:
                await self.adapter.edit_message(
                    self.id, placeholder.id, PostableMessage.text(accumulated)
                )
                last_edited = accumulated
                last_update = now
        if accumulated != last_edited:
            await self.adapter.edit_message(
                self.id, placeholder.id, PostableMessage.text(accumulated)
            )
        return placeholder

    async def subscribe(self) -> None:
        backend = self._chat.state
        if backend is not None:
            await backend.subscribe(self.id)
        await self.adapter.on_thread_subscribe(self.id)
        await self._chat.process_subscribe(self)

    async def unsubscribe(self) -> None:
        backend = self._chat.state
        if backend is not None:
            await backend.unsubscribe(self.id)
        await self._chat.process_unsubscribe(self)

    async def is_subscribed(self) -> bool:
        backend = self._chat.state
        if backend is None:
            return False
        return await backend.is_subscribed(self.id)

    def refresh(self) -> "Thread":
        self._state = None
        return self

    async def messages(self, options: FetchOptions | None = None) -> FetchResult:
        return await self.adapter.fetch_messages(self.id, options)

    async def all_messages(self) -> list[Message]:
        collected: list[Message] = []
        cursor: str | None = None
        while True:
            options = FetchOptions(cursor=cursor) if cursor is not None else None
            result = await self.adapter.fetch_messages(self.id, options)
            collected.extend(result.messages)
            cursor = result.next_cursor
            if cursor is None:
                return collected

    async def recent_messages(self, limit: int = 10) -> list[Message]:
        result = await self.adapter.fetch_messages(self.id, FetchOptions(limit=limit))
        return list(result.messages)

    async def start_typing(self, status: str | None = None) -> None:
        await self.adapter.start_typing(self.id, status)

    def mention_user(self, user_id: str) -> str:
        return self.adapter.render_formatted(f"@{user_id}")

    async def post_ephemeral(
        self,
        user_id: str,
        content: str | PostableMessage,
        *,
        fallback_to_dm: bool = False,
    ) -> SentMessage | None:
        return await _post_ephemeral(
            self.adapter, self.id, user_id, content, fallback_to_dm
        )

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "adapterName": self.adapter.name(),
            "channelId": self.channel_id,
            "isDM": self.is_dm,
        }
        if self.current_message is not None:
            data["currentMessage"] = self.current_message.to_json()
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any], chat: "Chat") -> "Thread":
        current = data.get("currentMessage")
        return cls(
            data["id"],
            chat.require_adapter(data["adapterName"]),
            chat,
            channel_id=data.get("channelId"),
            is_dm=bool(data.get("isDM", False)),
            current_message=Message.from_json(current) if current else None,
        )


class Channel(_StateHandle):
    _state_prefix = "channel-state"

    def __init__(
        self,
        id: str,
        adapter: "Adapter",
        chat: "Chat",
        *,
        is_dm: bool = False,
    ) -> None:
        super().__init__(chat)
        self.id = id
        self.adapter = adapter
        self.is_dm = is_dm

    def __repr__(self) -> str:
        return f"Channel(id={self.id!r}, adapter={self.adapter.name()!r})"

    async def post(self, content: str | PostableMessage) -> SentMessage | None:
        return await self.adapter.post_channel_message(self.id, as_postable(content))

    async def threads(
        self, options: ListThreadsOptions | None = None
    ) -> ListThreadsResult | None:
        return await self.adapter.list_threads(self.id, options)

    async def messages(self, options: FetchOptions | None = None) -> FetchResult | None:
        return await self.adapter.fetch_channel_messages(self.id, options)

    async def fetch_metadata(self) -> ChannelInfo | None:
        return await self.adapter.fetch_channel_info(self.id)

    async def post_ephemeral(
        self,
        user_id: str,
        content: str | PostableMessage,
        *,
        fallback_to_dm: bool = False,
    ) -> SentMessage | None:
        return await _post_ephemeral(
            self.adapter, self.id, user_id, content, fallback_to_dm
        )

    async def start_typing(self) -> None:
        await self.adapter.start_typing(self.id)

    def to_json(self) -> dict[str, Any]:
        return {"id": self.id, "adapterName": self.adapter.name(), "isDM": self.is_dm}

    @classmethod
    def from_json(cls, data: dict[str, Any], chat: "Chat") -> "Channel":
        return cls(
            data["id"],
            chat.require_adapter(data["adapterName"]),
            chat,
            is_dm=bool(data.get("isDM", False)),
        )
