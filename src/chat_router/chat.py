from __future__ import annotations

import dataclasses
import inspect
import re
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from .adapter import Adapter, WebhookResponse
from .errors import ResourceNotFoundError
from .events import (
    EVENT_TYPES,
    ActionEvent,
    ChatEvent,
    IncomingMessage,
    MessageDeletedEvent,
    MessageEditedEvent,
    ModalCloseEvent,
    ModalSubmitEvent,
    ReactionEvent,
    SlashCommandEvent,
    SubscriptionEvent,
)
from .executors import ChatJob, Executor, InlineExecutor, MemoryJobQueue, QueueExecutor
from .filters import FilterSpec, HandlerFilter, build_filter, normalize_slash_command
from .logging import get_logger
from .messages import Message
from .state import DEFAULT_LOCK_TTL_S, StateBackend
from .thread import Channel, Thread

logger = get_logger(__name__)

DEFAULT_DEDUPE_TTL_S = 300.0
DEFAULT_STREAMING_UPDATE_INTERVAL_S = 0.5

Handler = Callable[..., Any]
MessageHandler = Callable[[Thread, Message], Any]


async def _call(handler: Handler, *args: Any) -> Any:
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _split_filter(
    filter_or_handler: FilterSpec | Handler,
    handler: Handler | None,
    *,
    normalize: Callable[[str], str] | None = None,
) -> tuple[HandlerFilter, Handler]:
    if handler is None:
        if not callable(filter_or_handler):
            raise TypeError("a handler is required")
        return build_filter(None), filter_or_handler
    if callable(filter_or_handler):
        raise TypeError("filter must be a string or a list of strings")
    return build_filter(filter_or_handler, normalize=normalize), handler


class Chat:
    """Routes normalized chat events from adapters to registered handlers.

    Registration methods return the chat so calls can be chained. Handlers
    may be plain functions or coroutine functions and run one after another
    in registration order; the first exception stops the fan-out and
    propagates to the caller.
    """

    def __init__(
        self,
        name: str,
        *,
        state: StateBackend | None = None,
        executor: Executor | None = None,
        dedupe_ttl_s: float = DEFAULT_DEDUPE_TTL_S,
        lock_ttl_s: float = DEFAULT_LOCK_TTL_S,
        streaming_update_interval_s: float = DEFAULT_STREAMING_UPDATE_INTERVAL_S,
    ) -> None:
        self.name = name
        self.state = state
        self.executor: Executor = executor or InlineExecutor()
        self.dedupe_ttl_s = dedupe_ttl_s
        self.lock_ttl_s = lock_ttl_s
        self.streaming_update_interval_s = streaming_update_interval_s
        self._adapters: dict[str, Adapter] = {}
        self._mention_handlers: list[MessageHandler] = []
        self._subscribed_handlers: list[MessageHandler] = []
        self._pattern_handlers: list[tuple[re.Pattern[str], MessageHandler]] = []
        self._action_handlers: list[tuple[HandlerFilter, Handler]] = []
        self._reaction_handlers: list[tuple[HandlerFilter, Handler]] = []
        self._slash_command_handlers: list[tuple[HandlerFilter, Handler]] = []
        self._modal_submit_handlers: list[tuple[HandlerFilter, Handler]] = []
        self._modal_close_handlers: list[tuple[HandlerFilter, Handler]] = []
        self._reaction_added_handlers: list[Handler] = []
        self._reaction_removed_handlers: list[Handler] = []
        self._message_edited_handlers: list[Handler] = []
        self._message_deleted_handlers: list[Handler] = []
        self._subscribe_handlers: list[Handler] = []
        self._unsubscribe_handlers: list[Handler] = []

    def __repr__(self) -> str:
        return f"Chat(name={self.name!r}, adapters={sorted(self._adapters)!r})"

    # configuration

    def add_adapter(self, name: str, adapter: Adapter) -> "Chat":
        self._adapters[name] = adapter
        adapter.initialize(self)
        return self

    def get_adapter(self, name: str) -> Adapter | None:
        return self._adapters.get(name)

    def require_adapter(self, name: str) -> Adapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ResourceNotFoundError(f"Adapter {name!r} not registered.")
        return adapter

    @property
    def adapters(self) -> Mapping[str, Adapter]:
        return dict(self._adapters)

    def with_state(self, state: StateBackend | None) -> "Chat":
        self.state = state
        return self

    def dedupe_ttl(self, seconds: float) -> "Chat":
        self.dedupe_ttl_s = seconds
        return self

    def queued(
        self,
        queued: bool = True,
        *,
        queue: str | None = None,
        executor: Executor | None = None,
    ) -> "Chat":
        if not queued:
            self.executor = InlineExecutor()
        elif executor is not None:
            self.executor = executor
        else:
            self.executor = QueueExecutor(MemoryJobQueue(), queue_name=queue)
        return self

    @property
    def is_queued(self) -> bool:
        return not isinstance(self.executor, InlineExecutor)

    # registration

    def on_new_mention(self, handler: MessageHandler) -> "Chat":
        self._mention_handlers.append(handler)
        return self

    def on_subscribed_message(self, handler: MessageHandler) -> "Chat":
        self._subscribed_handlers.append(handler)
        return self

    def on_new_message(
        self, pattern: str | re.Pattern[str], handler: MessageHandler
    ) -> "Chat":
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._pattern_handlers.append((compiled, handler))
        return self

    def on_action(
        self, filter_or_handler: FilterSpec | Handler, handler: Handler | None = None
    ) -> "Chat":
        self._action_handlers.append(_split_filter(filter_or_handler, handler))
        return self

    def on_reaction(
        self, filter_or_handler: FilterSpec | Handler, handler: Handler | None = None
    ) -> "Chat":
        self._reaction_handlers.append(_split_filter(filter_or_handler, handler))
        return self

    def on_slash_command(
        self, filter_or_handler: FilterSpec | Handler, handler: Handler | None = None
    ) -> "Chat":
        self._slash_command_handlers.append(
            _split_filter(
                filter_or_handler, handler, normalize=normalize_slash_command
            )
        )
        return self

    def on_modal_submit(
        self, filter_or_handler: FilterSpec | Handler, handler: Handler | None = None
    ) -> "Chat":
        self._modal_submit_handlers.append(_split_filter(filter_or_handler, handler))
        return self

    def on_modal_close(
        self, filter_or_handler: FilterSpec | Handler, handler: Handler | None = None
    ) -> "Chat":
        self._modal_close_handlers.append(_split_filter(filter_or_handler, handler))
        return self

    def on_reaction_added(self, handler: Handler) -> "Chat":
        self._reaction_added_handlers.append(handler)
        return self

    def on_reaction_removed(self, handler: Handler) -> "Chat":
        self._reaction_removed_handlers.append(handler)
        return self

    def on_message_edited(self, handler: Handler) -> "Chat":
        self._message_edited_handlers.append(handler)
        return self

    def on_message_deleted(self, handler: Handler) -> "Chat":
        self._message_deleted_handlers.append(handler)
        return self

    def on_subscribe(self, handler: Handler) -> "Chat":
        self._subscribe_handlers.append(handler)
        return self

    def on_unsubscribe(self, handler: Handler) -> "Chat":
        self._unsubscribe_handlers.append(handler)
        return self

    # inbound

    async def handle_webhook(
        self, adapter_name: str, body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse:
        return await self.require_adapter(adapter_name).handle_webhook(body, headers)

    def _make_thread(
        self,
        adapter: Adapter,
        thread_id: str,
        *,
        current_message: Message | None = None,
    ) -> Thread:
        return Thread(
            thread_id,
            adapter,
            self,
            channel_id=adapter.channel_id_from_thread_id(thread_id),
            is_dm=adapter.is_dm(thread_id),
            current_message=current_message,
        )

    @asynccontextmanager
    async def _thread_lock(self, thread_id: str) -> AsyncIterator[None]:
        backend = self.state
        lock = (
            await backend.acquire_lock(thread_id, self.lock_ttl_s)
            if backend is not None
            else None
        )
        if backend is not None and lock is None:
            logger.warning("chat.lock.unavailable", thread_id=thread_id)
        try:
            yield
        finally:
            if backend is not None and lock is not None:
                await backend.release_lock(lock)

    def detect_mention(self, adapter: Adapter, message: Message) -> bool:
        text = message.text
        if not text:
            return False
        user_name = adapter.user_name()
        if user_name and f"@{user_name}" in text:
            return True
        bot_user_id = adapter.bot_user_id()
        return bool(bot_user_id) and f"@{bot_user_id}" in text

    async def handle_incoming_message(
        self, adapter: Adapter, thread_id: str, message: Message
    ) -> None:
        if message.author.is_me:
            logger.debug(
                "chat.message.self_skipped",
                adapter=adapter.name(),
                message_id=message.id,
            )
            return
        backend = self.state
        if backend is not None:
            dedupe_key = f"dedupe:{adapter.name()}:{message.id}"
            if not await backend.set_if_absent(
                dedupe_key, True, ttl_s=self.dedupe_ttl_s
            ):
                logger.debug(
                    "chat.message.duplicate",
                    adapter=adapter.name(),
                    message_id=message.id,
                )
                return

        async with self._thread_lock(thread_id):
            thread = self._make_thread(adapter, thread_id, current_message=message)
            is_subscribed = (
                await backend.is_subscribed(thread_id) if backend is not None else False
            )
            is_mention = message.is_mention or self.detect_mention(adapter, message)
            if is_subscribed:
                for handler in list(self._subscribed_handlers):
                    await _call(handler, thread, message)
            elif is_mention:
                for handler in list(self._mention_handlers):
                    await _call(handler, thread, message)
            for pattern, handler in list(self._pattern_handlers):
                if pattern.search(message.text):
                    await _call(handler, thread, message)

    def _with_thread(self, event: Any) -> Any:
        if not event.thread_id:
            return event
        return dataclasses.replace(
            event, thread=self._make_thread(event.adapter, event.thread_id)
        )

    async def process_action(self, event: ActionEvent) -> None:
        if event.user.is_me:
            return
        event = self._with_thread(event)
        for match, handler in list(self._action_handlers):
            if match.matches(event.action_id):
                await _call(handler, event)

    async def process_reaction(self, event: ReactionEvent) -> None:
        if event.user.is_me:
            return
        event = self._with_thread(event)
        for match, handler in list(self._reaction_handlers):
            if match.matches(event.emoji, event.raw_emoji):
                await _call(handler, event)
        followers = (
            self._reaction_added_handlers
            if event.added
            else self._reaction_removed_handlers
        )
        for handler in list(followers):
            await _call(handler, event)

    async def process_slash_command(self, event: SlashCommandEvent) -> None:
        if event.user.is_me:
            return
        event = self._with_thread(event)
        for match, handler in list(self._slash_command_handlers):
            if match.matches(event.command):
                await _call(handler, event)

    async def process_modal_submit(self, event: ModalSubmitEvent) -> Any:
        event = self._with_thread(event)
        for match, handler in list(self._modal_submit_handlers):
            if not match.matches(event.callback_id):
                continue
            result = await _call(handler, event)
            if result is not None:
                return result
        return None

    async def process_modal_close(self, event: ModalCloseEvent) -> None:
        event = self._with_thread(event)
        for match, handler in list(self._modal_close_handlers):
            if match.matches(event.callback_id):
                await _call(handler, event)

    async def process_message_edited(self, event: MessageEditedEvent) -> None:
        event = self._with_thread(event)
        for handler in list(self._message_edited_handlers):
            await _call(handler, event)

    async def process_message_deleted(self, event: MessageDeletedEvent) -> None:
        event = self._with_thread(event)
        for handler in list(self._message_deleted_handlers):
            await _call(handler, event)

    async def process_subscribe(self, thread: Thread) -> None:
        event = SubscriptionEvent(thread=thread, subscribed=True)
        for handler in list(self._subscribe_handlers):
            await _call(handler, event)

    async def process_unsubscribe(self, thread: Thread) -> None:
        event = SubscriptionEvent(thread=thread, subscribed=False)
        for handler in list(self._unsubscribe_handlers):
            await _call(handler, event)

    async def process_event(self, event: ChatEvent) -> Any:
        match event:
            case IncomingMessage():
                return await self.handle_incoming_message(
                    event.adapter, event.thread_id, event.message
                )
            case ActionEvent():
                return await self.process_action(event)
            case ReactionEvent():
                return await self.process_reaction(event)
            case SlashCommandEvent():
                return await self.process_slash_command(event)
            case ModalSubmitEvent():
                return await self.process_modal_submit(event)
            case ModalCloseEvent():
                return await self.process_modal_close(event)
            case MessageEditedEvent():
                return await self.process_message_edited(event)
            case MessageDeletedEvent():
                return await self.process_message_deleted(event)
        raise TypeError(f"unsupported event type: {type(event).__name__}")

    # dispatch

    async def submit(self, event: ChatEvent) -> None:
        await self.executor.submit(self, event)

    async def dispatch_incoming_message(
        self, adapter: Adapter, thread_id: str, message: Message
    ) -> None:
        await self.submit(IncomingMessage(adapter, thread_id, message))

    async def dispatch_action(self, event: ActionEvent) -> None:
        await self.submit(event)

    async def dispatch_reaction(self, event: ReactionEvent) -> None:
        await self.submit(event)

    async def dispatch_slash_command(self, event: SlashCommandEvent) -> None:
        await self.submit(event)

    async def dispatch_message_edited(self, event: MessageEditedEvent) -> None:
        await self.submit(event)

    async def dispatch_message_deleted(self, event: MessageDeletedEvent) -> None:
        await self.submit(event)

    async def run_job(self, job: ChatJob) -> None:
        adapter = self.get_adapter(job.adapter_name)
        if adapter is None:
            logger.warning(
                "chat.job.unknown_adapter",
                adapter=job.adapter_name,
                event_kind=job.event_kind.value,
            )
            return
        event = EVENT_TYPES[job.event_kind].from_payload(adapter, job.payload)
        await self.process_event(event)

    # helpers

    def channel(self, adapter_name: str, channel_id: str) -> Channel:
        return Channel(channel_id, self.require_adapter(adapter_name), self)

    def thread(self, adapter_name: str, thread_id: str) -> Thread:
        return self._make_thread(self.require_adapter(adapter_name), thread_id)

    async def open_dm(self, adapter_name: str, user_id: str) -> Thread | None:
        adapter = self.require_adapter(adapter_name)
        thread_id = await adapter.open_dm(user_id)
        if thread_id is None:
            return None
        return Thread(
            thread_id,
            adapter,
            self,
            channel_id=adapter.channel_id_from_thread_id(thread_id),
            is_dm=True,
        )
