from __future__ import annotations

import math
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .events import ChatEvent, EventKind
from .logging import bind_context, clear_context, get_logger

if TYPE_CHECKING:
    from .chat import Chat

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ChatJob:
    """A serialized event waiting for a worker.

    The payload never holds the adapter; ``adapter_name`` is resolved again
    when the job runs.
    """

    event_kind: EventKind
    adapter_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    queue: str | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "eventKind": self.event_kind.value,
            "adapterName": self.adapter_name,
            "payload": self.payload,
        }
        if self.queue is not None:
            data["queue"] = self.queue
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ChatJob":
        return cls(
            event_kind=EventKind(data["eventKind"]),
            adapter_name=data["adapterName"],
            payload=dict(data.get("payload") or {}),
            queue=data.get("queue"),
        )


class Executor(Protocol):
    async def submit(self, chat: "Chat", event: ChatEvent) -> None: ...


class JobQueue(Protocol):
    async def put(self, job: ChatJob) -> None: ...

    def __aiter__(self) -> AsyncIterator[ChatJob]: ...


class InlineExecutor:
    async def submit(self, chat: "Chat", event: ChatEvent) -> None:
        await chat.process_event(event)


class MemoryJobQueue:
    def __init__(self, max_buffer_size: float = math.inf) -> None:
        send, receive = anyio.create_memory_object_stream[ChatJob](max_buffer_size)
        self._send: MemoryObjectSendStream[ChatJob] = send
        self._receive: MemoryObjectReceiveStream[ChatJob] = receive

    async def put(self, job: ChatJob) -> None:
        await self._send.send(job)

    async def get(self) -> ChatJob:
        return await self._receive.receive()

    def pending(self) -> int:
        return self._receive.statistics().current_buffer_used

    def close(self) -> None:
        self._send.close()

    async def __aiter__(self) -> AsyncIterator[ChatJob]:
        try:
            while True:
                yield await self._receive.receive()
        except anyio.EndOfStream:
            return


class QueueExecutor:
    def __init__(self, queue: JobQueue, *, queue_name: str | None = None) -> None:
        self.queue = queue
        self.queue_name = queue_name

    async def submit(self, chat: "Chat", event: ChatEvent) -> None:
        job = ChatJob(
            event_kind=event.kind,
            adapter_name=event.adapter.name(),
            payload=event.to_payload(),
            queue=self.queue_name,
        )
        await self.queue.put(job)
        logger.debug(
            "chat.job.enqueued",
            event_kind=job.event_kind.value,
            adapter=job.adapter_name,
            queue=job.queue,
        )


async def run_worker(chat: "Chat", queue: JobQueue | None = None) -> None:
    """Run queued jobs until the queue is closed.

    A failing job is logged and skipped; the worker keeps consuming.
    """
    if queue is None:
        executor = chat.executor
        if not isinstance(executor, QueueExecutor):
            raise RuntimeError("run_worker needs a queue or a queued chat")
        queue = executor.queue
    async for job in queue:
        bind_context(event_kind=job.event_kind.value, adapter=job.adapter_name)
        try:
            await chat.run_job(job)
        except Exception:  # noqa: BLE001
            logger.exception(
                "chat.job.failed",
                event_kind=job.event_kind.value,
                adapter=job.adapter_name,
            )
        finally:
            clear_context()
