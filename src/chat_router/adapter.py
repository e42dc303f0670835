from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .errors import ChatNotImplementedError
from .messages import Message, PostableMessage, SentMessage, TextStream
from .types import (
    ChannelInfo,
    FetchOptions,
    FetchResult,
    ListThreadsOptions,
    ListThreadsResult,
    ThreadInfo,
)

if TYPE_CHECKING:
    from .chat import Chat


@dataclass(frozen=True, slots=True)
class WebhookResponse:
    status: int = 200
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class Adapter(Protocol):
    """What the dispatcher needs from a chat platform integration.

    Identity and the thread-id codec are synchronous; everything that talks
    to the platform is async. ``decode_thread_id`` must raise
    ``ValidationError`` on malformed ids, and must invert
    ``encode_thread_id``.
    """

    def name(self) -> str: ...

    def user_name(self) -> str: ...

    def bot_user_id(self) -> str | None: ...

    def initialize(self, chat: "Chat") -> None: ...

    def encode_thread_id(self, fields: dict[str, Any]) -> str: ...

    def decode_thread_id(self, thread_id: str) -> dict[str, Any]: ...

    def channel_id_from_thread_id(self, thread_id: str) -> str | None: ...

    def is_dm(self, thread_id: str) -> bool: ...

    def parse_message(self, payload: Any) -> Message: ...

    def render_formatted(self, markdown: str) -> str: ...

    async def post_message(
        self, thread_id: str, message: PostableMessage
    ) -> SentMessage: ...

    async def edit_message(
        self, thread_id: str, message_id: str, message: PostableMessage
    ) -> SentMessage: ...

    async def delete_message(self, thread_id: str, message_id: str) -> None: ...

    async def add_reaction(
        self, thread_id: str, message_id: str, emoji: str
    ) -> None: ...

    async def remove_reaction(
        self, thread_id: str, message_id: str, emoji: str
    ) -> None: ...

    async def pin_message(self, thread_id: str, message_id: str) -> None: ...

    async def unpin_message(self, thread_id: str, message_id: str) -> None: ...

    async def start_typing(self, thread_id: str, status: str | None = None) -> None: ...

    async def open_dm(self, user_id: str) -> str | None: ...

    async def fetch_messages(
        self, thread_id: str, options: FetchOptions | None = None
    ) -> FetchResult: ...

    async def fetch_message(self, thread_id: str, message_id: str) -> Message | None: ...

    async def fetch_thread(self, thread_id: str) -> ThreadInfo: ...

    async def post_ephemeral(
        self, thread_id: str, user_id: str, message: PostableMessage
    ) -> SentMessage | None: ...

    async def open_modal(
        self, trigger_id: str, modal: Any, context_id: str | None = None
    ) -> dict[str, Any] | None: ...

    async def stream(
        self, thread_id: str, text_stream: TextStream
    ) -> SentMessage | None: ...

    async def post_channel_message(
        self, channel_id: str, message: PostableMessage
    ) -> SentMessage | None: ...

    async def fetch_channel_messages(
        self, channel_id: str, options: FetchOptions | None = None
    ) -> FetchResult | None: ...

    async def fetch_channel_info(self, channel_id: str) -> ChannelInfo | None: ...

    async def list_threads(
        self, channel_id: str, options: ListThreadsOptions | None = None
    ) -> ListThreadsResult | None: ...

    async def on_thread_subscribe(self, thread_id: str) -> None: ...

    async def handle_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse: ...


class BaseAdapter:
    """Defaults for the optional parts of the adapter contract."""

    def name(self) -> str:
        raise ChatNotImplementedError("adapter has no name", method="name")

    def user_name(self) -> str:
        return self.name()

    def bot_user_id(self) -> str | None:
        return None

    def initialize(self, chat: "Chat") -> None:
        return None

    def channel_id_from_thread_id(self, thread_id: str) -> str | None:
        return None

    def is_dm(self, thread_id: str) -> bool:
        return False

    def render_formatted(self, markdown: str) -> str:
        return markdown

    def _unsupported(self, method: str) -> ChatNotImplementedError:
        return ChatNotImplementedError(
            f"{self.name()} adapter does not support {method}", method=method
        )

    async def pin_message(self, thread_id: str, message_id: str) -> None:
        raise self._unsupported("pin_message")

    async def unpin_message(self, thread_id: str, message_id: str) -> None:
        raise self._unsupported("unpin_message")

    async def start_typing(self, thread_id: str, status: str | None = None) -> None:
        return None

    async def open_dm(self, user_id: str) -> str | None:
        raise self._unsupported("open_dm")

    async def fetch_messages(
        self, thread_id: str, options: FetchOptions | None = None
    ) -> FetchResult:
        raise self._unsupported("fetch_messages")

    async def fetch_message(self, thread_id: str, message_id: str) -> Message | None:
        raise self._unsupported("fetch_message")

    async def fetch_thread(self, thread_id: str) -> ThreadInfo:
        return ThreadInfo(
            id=thread_id,
            channel_id=self.channel_id_from_thread_id(thread_id),
            is_dm=self.is_dm(thread_id),
        )

    async def post_ephemeral(
        self, thread_id: str, user_id: str, message: PostableMessage
    ) -> SentMessage | None:
        return None

    async def open_modal(
        self, trigger_id: str, modal: Any, context_id: str | None = None
    ) -> dict[str, Any] | None:
        raise self._unsupported("open_modal")

    async def stream(
        self, thread_id: str, text_stream: TextStream
    ) -> SentMessage | None:
        return None

    async def post_channel_message(
        self, channel_id: str, message: PostableMessage
    ) -> SentMessage | None:
        raise self._unsupported("post_channel_message")

    async def fetch_channel_messages(
        self, channel_id: str, options: FetchOptions | None = None
    ) -> FetchResult | None:
        return None

    async def fetch_channel_info(self, channel_id: str) -> ChannelInfo | None:
        return None

    async def list_threads(
        self, channel_id: str, options: ListThreadsOptions | None = None
    ) -> ListThreadsResult | None:
        return None

    async def on_thread_subscribe(self, thread_id: str) -> None:
        return None

    async def handle_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse:
        raise self._unsupported("handle_webhook")
