from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from .messages import Message


@dataclass(frozen=True, slots=True)
class FetchOptions:
    cursor: str | None = None
    limit: int | None = None
    direction: Literal["forward", "backward"] = "backward"

    @classmethod
    def from_dict(cls, options: dict[str, Any]) -> "FetchOptions":
        direction = options.get("direction", "backward")
        if direction not in {"forward", "backward"}:
            direction = "backward"
        return cls(
            cursor=options.get("cursor"),
            limit=options.get("limit"),
            direction=direction,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"direction": self.direction}
        if self.cursor is not None:
            data["cursor"] = self.cursor
        if self.limit is not None:
            data["limit"] = self.limit
        return data


@dataclass(frozen=True, slots=True)
class FetchResult:
    messages: list[Message] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


@dataclass(frozen=True, slots=True)
class ThreadInfo:
    id: str
    channel_id: str | None = None
    is_dm: bool = False
    title: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    id: str
    name: str
    topic: str | None = None
    member_count: int | None = None
    is_dm: bool = False


@dataclass(frozen=True, slots=True)
class ListThreadsOptions:
    cursor: str | None = None
    limit: int | None = None


@dataclass(frozen=True, slots=True)
class ThreadSummary:
    id: str
    title: str | None = None
    last_activity: str | None = None
    message_count: int = 0


@dataclass(frozen=True, slots=True)
class ListThreadsResult:
    threads: list[ThreadSummary] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False
