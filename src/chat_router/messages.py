from __future__ import annotations

import mimetypes
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import urlparse

import anyio
import httpx

if TYPE_CHECKING:
    from .adapter import Adapter

BotFlag = bool | Literal["unknown"]
TextStream = Iterable[str] | AsyncIterable[str]


@dataclass(frozen=True, slots=True)
class Author:
    """A message author as seen by one platform.

    ``is_bot`` is ``"unknown"`` when the platform cannot tell. Equality is by
    ``user_id`` only, so the same user compares equal across display-name
    changes.
    """

    user_id: str
    user_name: str = field(default="", compare=False)
    full_name: str = field(default="", compare=False)
    is_bot: BotFlag = field(default="unknown", compare=False)
    is_me: bool = field(default=False, compare=False)

    def to_json(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "fullName": self.full_name,
            "isBot": self.is_bot,
            "isMe": self.is_me,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "Author":
        is_bot = data.get("isBot", "unknown")
        if not isinstance(is_bot, bool):
            is_bot = "unknown"
        return cls(
            user_id=str(data["userId"]),
            user_name=data.get("userName") or "",
            full_name=data.get("fullName") or "",
            is_bot=is_bot,
            is_me=bool(data.get("isMe", False)),
        )


_ATTACHMENT_FIELDS = (
    ("type", "type"),
    ("url", "url"),
    ("file_id", "fileId"),
    ("name", "name"),
    ("mime_type", "mimeType"),
    ("size", "size"),
    ("width", "width"),
    ("height", "height"),
)


@dataclass(frozen=True, slots=True)
class Attachment:
    type: str
    name: str = ""
    url: str | None = None
    file_id: str | None = None
    mime_type: str | None = None
    size: int | None = None
    width: int | None = None
    height: int | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for attr, key in _ATTACHMENT_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "Attachment":
        values = {attr: data.get(key) for attr, key in _ATTACHMENT_FIELDS}
        values["type"] = values["type"] or "file"
        values["name"] = values["name"] or ""
        return cls(**values)


@dataclass(frozen=True, slots=True)
class Message:
    """A normalized inbound (or sent) chat message.

    ``id`` is only unique per adapter. ``formatted`` and ``raw`` are never
    part of the wire form: ``from_json`` always rebuilds them as ``None``.
    """

    id: str
    thread_id: str
    text: str
    author: Author
    formatted: Any = field(default=None, hash=False)
    raw: Any = field(default=None, hash=False)
    metadata: dict[str, Any] = field(default_factory=dict, hash=False)
    attachments: tuple[Attachment, ...] = ()
    is_mention: bool = False

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "threadId": self.thread_id,
            "text": self.text,
            "isMention": self.is_mention,
            "author": self.author.to_json(),
            "metadata": dict(self.metadata),
        }
        if self.attachments:
            data["attachments"] = [item.to_json() for item in self.attachments]
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "Message":
        attachments = data.get("attachments") or []
        return cls(
            id=str(data["id"]),
            thread_id=str(data["threadId"]),
            text=data.get("text") or "",
            author=Author.from_json(data["author"]),
            formatted=None,
            raw=None,
            metadata=dict(data.get("metadata") or {}),
            attachments=tuple(Attachment.from_json(item) for item in attachments),
            is_mention=bool(data.get("isMention", False)),
        )


@dataclass(frozen=True, slots=True)
class FileUpload:
    filename: str
    mime_type: str = "application/octet-stream"
    content: bytes | None = None
    path: Path | None = None
    url: str | None = None
    caption: str | None = None
    force_document: bool = False

    @classmethod
    def from_content(
        cls,
        content: bytes | str,
        filename: str,
        mime_type: str = "application/octet-stream",
        *,
        caption: str | None = None,
    ) -> "FileUpload":
        if isinstance(content, str):
            content = content.encode("utf-8")
        return cls(
            filename=filename, mime_type=mime_type, content=content, caption=caption
        )

    @classmethod
    def from_path(
        cls,
        path: Path | str,
        *,
        filename: str | None = None,
        mime_type: str | None = None,
        caption: str | None = None,
        force_document: bool = False,
    ) -> "FileUpload":
        path = Path(path)
        if mime_type is None:
            guessed, _ = mimetypes.guess_type(path.name)
            mime_type = guessed or "application/octet-stream"
        return cls(
            filename=filename or path.name,
            mime_type=mime_type,
            path=path,
            caption=caption,
            force_document=force_document,
        )

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        filename: str | None = None,
        mime_type: str | None = None,
        caption: str | None = None,
    ) -> "FileUpload":
        name = filename or Path(urlparse(url).path).name or "file"
        return cls(
            filename=name,
            mime_type=mime_type or "application/octet-stream",
            url=url,
            caption=caption,
        )

    async def read_bytes(self) -> bytes:
        if self.content is not None:
            return self.content
        if self.path is not None:
            return await anyio.Path(self.path).read_bytes()
        if self.url is not None:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(self.url)
                response.raise_for_status()
                return response.content
        return b""


class PostableMode(str, Enum):
    TEXT = "text"
    MARKDOWN = "markdown"
    FORMATTED = "formatted"
    CARD = "card"
    RAW = "raw"
    STREAM = "stream"


@dataclass(frozen=True, slots=True)
class PostableMessage:
    """An outbound message in exactly one payload mode.

    Build instances through the named constructors (``text``, ``markdown``,
    ``formatted``, ``card``, ``raw``, ``streaming``); ``with_files`` returns a
    copy carrying file uploads.
    """

    mode: PostableMode
    content: Any
    files: tuple[FileUpload, ...] = ()

    @classmethod
    def text(cls, text: str) -> "PostableMessage":
        return cls(PostableMode.TEXT, text)

    @classmethod
    def markdown(cls, markdown: str) -> "PostableMessage":
        return cls(PostableMode.MARKDOWN, markdown)

    @classmethod
    def formatted(cls, ast: Any) -> "PostableMessage":
        return cls(PostableMode.FORMATTED, ast)

    @classmethod
    def card(cls, card: Any) -> "PostableMessage":
        return cls(PostableMode.CARD, card)

    @classmethod
    def raw(cls, payload: Any) -> "PostableMessage":
        return cls(PostableMode.RAW, payload)

    @classmethod
    def streaming(cls, stream: TextStream) -> "PostableMessage":
        return cls(PostableMode.STREAM, stream)

    def with_files(self, files: Iterable[FileUpload]) -> "PostableMessage":
        return PostableMessage(self.mode, self.content, tuple(files))

    @property
    def is_streaming(self) -> bool:
        return self.mode is PostableMode.STREAM

    def get_text(self) -> str | None:
        return self.content if self.mode is PostableMode.TEXT else None

    def get_markdown(self) -> str | None:
        return self.content if self.mode is PostableMode.MARKDOWN else None

    def get_formatted(self) -> Any:
        return self.content if self.mode is PostableMode.FORMATTED else None

    def get_card(self) -> Any:
        return self.content if self.mode is PostableMode.CARD else None

    def get_raw(self) -> Any:
        return self.content if self.mode is PostableMode.RAW else None

    def get_stream(self) -> TextStream | None:
        return self.content if self.mode is PostableMode.STREAM else None

    def plain_text(self) -> str:
        if self.mode in (PostableMode.TEXT, PostableMode.MARKDOWN):
            return self.content
        return ""


def as_postable(content: str | PostableMessage) -> PostableMessage:
    if isinstance(content, PostableMessage):
        return content
    return PostableMessage.text(content)


@dataclass(frozen=True, slots=True)
class SentMessage(Message):
    adapter: "Adapter | None" = field(default=None, compare=False, repr=False)

    def _bound_adapter(self) -> "Adapter":
        if self.adapter is None:
            raise RuntimeError(f"sent message {self.id!r} is not bound to an adapter")
        return self.adapter

    async def edit(self, content: str | PostableMessage) -> "SentMessage":
        return await self._bound_adapter().edit_message(
            self.thread_id, self.id, as_postable(content)
        )

    async def delete(self) -> None:
        await self._bound_adapter().delete_message(self.thread_id, self.id)

    async def add_reaction(self, emoji: str) -> None:
        await self._bound_adapter().add_reaction(self.thread_id, self.id, emoji)

    async def remove_reaction(self, emoji: str) -> None:
        await self._bound_adapter().remove_reaction(self.thread_id, self.id, emoji)

    async def pin(self) -> None:
        await self._bound_adapter().pin_message(self.thread_id, self.id)

    async def unpin(self) -> None:
        await self._bound_adapter().unpin_message(self.thread_id, self.id)
