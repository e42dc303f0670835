from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from .messages import Author, Message, PostableMessage, as_postable

if TYPE_CHECKING:
    from .adapter import Adapter
    from .thread import Thread


class EventKind(str, Enum):
    MESSAGE = "message"
    ACTION = "action"
    REACTION = "reaction"
    SLASH_COMMAND = "slash_command"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    MODAL_SUBMIT = "modal_submit"
    MODAL_CLOSE = "modal_close"


def _user_json(user: Author | None) -> dict[str, Any] | None:
    return user.to_json() if user is not None else None


def _user_from(payload: dict[str, Any]) -> Author | None:
    data = payload.get("user")
    if not isinstance(data, dict):
        return None
    return Author.from_json(data)


def _require_user(payload: dict[str, Any]) -> Author:
    user = _user_from(payload)
    if user is None:
        return Author(user_id="unknown")
    return user


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    kind: ClassVar[EventKind] = EventKind.MESSAGE

    adapter: "Adapter"
    thread_id: str
    message: Message

    def to_payload(self) -> dict[str, Any]:
        return {"threadId": self.thread_id, "message": self.message.to_json()}

    @classmethod
    def from_payload(
        cls, adapter: "Adapter", payload: dict[str, Any]
    ) -> "IncomingMessage":
        return cls(
            adapter=adapter,
            thread_id=payload["threadId"],
            message=Message.from_json(payload["message"]),
        )


@dataclass(frozen=True, slots=True)
class ActionEvent:
    """A button click or select change on an interactive message."""

    kind: ClassVar[EventKind] = EventKind.ACTION

    adapter: "Adapter"
    action_id: str
    user: Author
    thread_id: str | None = None
    value: str | None = None
    values: tuple[str, ...] = ()
    trigger_id: str | None = None
    interaction_token: str | None = None
    raw: Any = None
    thread: "Thread | None" = field(default=None, compare=False)

    async def open_modal(
        self, modal: Any, *, context_id: str | None = None
    ) -> dict[str, Any] | None:
        if not self.trigger_id:
            return None
        return await self.adapter.open_modal(self.trigger_id, modal, context_id)

    def to_payload(self) -> dict[str, Any]:
        return {
            "actionId": self.action_id,
            "user": _user_json(self.user),
            "threadId": self.thread_id,
            "value": self.value,
            "values": list(self.values),
            "triggerId": self.trigger_id,
            "interactionToken": self.interaction_token,
            "raw": self.raw,
        }

    @classmethod
    def from_payload(cls, adapter: "Adapter", payload: dict[str, Any]) -> "ActionEvent":
        return cls(
            adapter=adapter,
            action_id=payload.get("actionId") or "",
            user=_require_user(payload),
            thread_id=payload.get("threadId"),
            value=payload.get("value"),
            values=tuple(payload.get("values") or ()),
            trigger_id=payload.get("triggerId"),
            interaction_token=payload.get("interactionToken"),
            raw=payload.get("raw"),
        )


@dataclass(frozen=True, slots=True)
class ReactionEvent:
    kind: ClassVar[EventKind] = EventKind.REACTION

    adapter: "Adapter"
    emoji: str
    user: Author
    added: bool = True
    raw_emoji: str | None = None
    thread_id: str | None = None
    message_id: str | None = None
    raw: Any = None
    thread: "Thread | None" = field(default=None, compare=False)

    @property
    def type(self) -> Literal["reaction_added", "reaction_removed"]:
        return "reaction_added" if self.added else "reaction_removed"

    @property
    def is_added(self) -> bool:
        return self.added

    @property
    def is_removed(self) -> bool:
        return not self.added

    def to_payload(self) -> dict[str, Any]:
        return {
            "emoji": self.emoji,
            "rawEmoji": self.raw_emoji,
            "type": self.type,
            "user": _user_json(self.user),
            "threadId": self.thread_id,
            "messageId": self.message_id,
            "raw": self.raw,
        }

    @classmethod
    def from_payload(
        cls, adapter: "Adapter", payload: dict[str, Any]
    ) -> "ReactionEvent":
        return cls(
            adapter=adapter,
            emoji=payload.get("emoji") or "",
            user=_require_user(payload),
            added=payload.get("type", "reaction_added") != "reaction_removed",
            raw_emoji=payload.get("rawEmoji"),
            thread_id=payload.get("threadId"),
            message_id=payload.get("messageId"),
            raw=payload.get("raw"),
        )


@dataclass(frozen=True, slots=True)
class SlashCommandEvent:
    kind: ClassVar[EventKind] = EventKind.SLASH_COMMAND

    adapter: "Adapter"
    command: str
    user: Author
    text: str = ""
    thread_id: str | None = None
    channel_id: str | None = None
    trigger_id: str | None = None
    raw: Any = None
    thread: "Thread | None" = field(default=None, compare=False)

    async def respond(self, content: str | PostableMessage) -> None:
        message = as_postable(content)
        if self.thread is not None:
            await self.thread.post(message)
            return
        if self.channel_id:
            await self.adapter.post_channel_message(self.channel_id, message)
            return
        raise RuntimeError(f"slash command {self.command!r} has nowhere to respond")

    async def open_modal(
        self, modal: Any, *, context_id: str | None = None
    ) -> dict[str, Any] | None:
        if not self.trigger_id:
            return None
        return await self.adapter.open_modal(self.trigger_id, modal, context_id)

    def to_payload(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "text": self.text,
            "user": _user_json(self.user),
            "threadId": self.thread_id,
            "channelId": self.channel_id,
            "triggerId": self.trigger_id,
            "raw": self.raw,
        }

    @classmethod
    def from_payload(
        cls, adapter: "Adapter", payload: dict[str, Any]
    ) -> "SlashCommandEvent":
        return cls(
            adapter=adapter,
            command=payload.get("command") or "",
            user=_require_user(payload),
            text=payload.get("text") or "",
            thread_id=payload.get("threadId"),
            channel_id=payload.get("channelId"),
            trigger_id=payload.get("triggerId"),
            raw=payload.get("raw"),
        )


@dataclass(frozen=True, slots=True)
class ModalSubmitEvent:
    kind: ClassVar[EventKind] = EventKind.MODAL_SUBMIT

    adapter: "Adapter"
    callback_id: str
    user: Author | None = None
    values: dict[str, Any] = field(default_factory=dict)
    private_metadata: str | None = None
    trigger_id: str | None = None
    view_id: str | None = None
    thread_id: str | None = None
    raw: Any = None
    thread: "Thread | None" = field(default=None, compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "callbackId": self.callback_id,
            "user": _user_json(self.user),
            "values": self.values,
            "privateMetadata": self.private_metadata,
            "triggerId": self.trigger_id,
            "viewId": self.view_id,
            "threadId": self.thread_id,
            "raw": self.raw,
        }

    @classmethod
    def from_payload(
        cls, adapter: "Adapter", payload: dict[str, Any]
    ) -> "ModalSubmitEvent":
        return cls(
            adapter=adapter,
            callback_id=payload.get("callbackId") or "",
            user=_user_from(payload),
            values=dict(payload.get("values") or {}),
            private_metadata=payload.get("privateMetadata"),
            trigger_id=payload.get("triggerId"),
            view_id=payload.get("viewId"),
            thread_id=payload.get("threadId"),
            raw=payload.get("raw"),
        )


@dataclass(frozen=True, slots=True)
class ModalCloseEvent:
    kind: ClassVar[EventKind] = EventKind.MODAL_CLOSE

    adapter: "Adapter"
    callback_id: str
    user: Author | None = None
    private_metadata: str | None = None
    view_id: str | None = None
    thread_id: str | None = None
    raw: Any = None
    thread: "Thread | None" = field(default=None, compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "callbackId": self.callback_id,
            "user": _user_json(self.user),
            "privateMetadata": self.private_metadata,
            "viewId": self.view_id,
            "threadId": self.thread_id,
            "raw": self.raw,
        }

    @classmethod
    def from_payload(
        cls, adapter: "Adapter", payload: dict[str, Any]
    ) -> "ModalCloseEvent":
        return cls(
            adapter=adapter,
            callback_id=payload.get("callbackId") or "",
            user=_user_from(payload),
            private_metadata=payload.get("privateMetadata"),
            view_id=payload.get("viewId"),
            thread_id=payload.get("threadId"),
            raw=payload.get("raw"),
        )


@dataclass(frozen=True, slots=True)
class MessageEditedEvent:
    kind: ClassVar[EventKind] = EventKind.MESSAGE_EDITED

    adapter: "Adapter"
    thread_id: str
    message: Message
    previous_text: str | None = None
    raw: Any = None
    thread: "Thread | None" = field(default=None, compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "message": self.message.to_json(),
            "previousText": self.previous_text,
            "raw": self.raw,
        }

    @classmethod
    def from_payload(
        cls, adapter: "Adapter", payload: dict[str, Any]
    ) -> "MessageEditedEvent":
        return cls(
            adapter=adapter,
            thread_id=payload["threadId"],
            message=Message.from_json(payload["message"]),
            previous_text=payload.get("previousText"),
            raw=payload.get("raw"),
        )


@dataclass(frozen=True, slots=True)
class MessageDeletedEvent:
    kind: ClassVar[EventKind] = EventKind.MESSAGE_DELETED

    adapter: "Adapter"
    thread_id: str
    message_id: str
    raw: Any = None
    thread: "Thread | None" = field(default=None, compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "messageId": self.message_id,
            "raw": self.raw,
        }

    @classmethod
    def from_payload(
        cls, adapter: "Adapter", payload: dict[str, Any]
    ) -> "MessageDeletedEvent":
        return cls(
            adapter=adapter,
            thread_id=payload["threadId"],
            message_id=payload.get("messageId") or "",
            raw=payload.get("raw"),
        )


@dataclass(frozen=True, slots=True)
class SubscriptionEvent:
    thread: "Thread"
    subscribed: bool

    @property
    def thread_id(self) -> str:
        return self.thread.id

    @property
    def adapter(self) -> "Adapter":
        return self.thread.adapter


ChatEvent = (
    IncomingMessage
    | ActionEvent
    | ReactionEvent
    | SlashCommandEvent
    | ModalSubmitEvent
    | ModalCloseEvent
    | MessageEditedEvent
    | MessageDeletedEvent
)

EVENT_TYPES: dict[EventKind, type[ChatEvent]] = {
    EventKind.MESSAGE: IncomingMessage,
    EventKind.ACTION: ActionEvent,
    EventKind.REACTION: ReactionEvent,
    EventKind.SLASH_COMMAND: SlashCommandEvent,
    EventKind.MODAL_SUBMIT: ModalSubmitEvent,
    EventKind.MODAL_CLOSE: ModalCloseEvent,
    EventKind.MESSAGE_EDITED: MessageEditedEvent,
    EventKind.MESSAGE_DELETED: MessageDeletedEvent,
}


@dataclass(frozen=True, slots=True)
class ModalResponse:
    """What a modal-submit handler asks the platform to do next."""

    action: Literal["close", "errors", "update", "push"]
    errors: dict[str, str] | None = None
    modal: Any = None

    @classmethod
    def close(cls) -> "ModalResponse":
        return cls("close")

    @classmethod
    def with_errors(cls, errors: dict[str, str]) -> "ModalResponse":
        return cls("errors", errors=dict(errors))

    @classmethod
    def update(cls, modal: Any) -> "ModalResponse":
        return cls("update", modal=modal)

    @classmethod
    def push(cls, modal: Any) -> "ModalResponse":
        return cls("push", modal=modal)
