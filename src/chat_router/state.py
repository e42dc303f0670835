from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import anyio

DEFAULT_LOCK_TTL_S = 30.0


@dataclass(frozen=True, slots=True)
class LockToken:
    thread_id: str
    token: str
    expires_at: float


@runtime_checkable
class StateBackend(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl_s: float | None = None) -> None: ...

    async def set_if_absent(
        self, key: str, value: Any, ttl_s: float | None = None
    ) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def acquire_lock(
        self, thread_id: str, ttl_s: float = DEFAULT_LOCK_TTL_S
    ) -> LockToken | None: ...

    async def extend_lock(self, lock: LockToken, ttl_s: float) -> bool: ...

    async def release_lock(self, lock: LockToken) -> None: ...

    async def subscribe(self, thread_id: str) -> None: ...

    async def unsubscribe(self, thread_id: str) -> None: ...

    async def is_subscribed(self, thread_id: str) -> bool: ...


class ThreadLockTable:
    """Process-local per-thread locks with expiry.

    ``acquire`` waits while another live holder owns the thread; a holder
    whose lock outlived its TTL is replaced.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = anyio.Condition()
        self._held: dict[str, LockToken] = {}

    def _new_token(self, thread_id: str, ttl_s: float) -> LockToken:
        return LockToken(
            thread_id=thread_id,
            token=uuid.uuid4().hex,
            expires_at=self._clock() + ttl_s,
        )

    async def acquire(self, thread_id: str, ttl_s: float) -> LockToken:
        async with self._cond:
            while True:
                held = self._held.get(thread_id)
                now = self._clock()
                if held is None or held.expires_at <= now:
                    token = self._new_token(thread_id, ttl_s)
                    self._held[thread_id] = token
                    return token
                with anyio.move_on_after(held.expires_at - now):
                    await self._cond.wait()

    async def extend(self, lock: LockToken, ttl_s: float) -> LockToken | None:
        async with self._cond:
            held = self._held.get(lock.thread_id)
            if held is None or held.token != lock.token:
                return None
            extended = LockToken(
                thread_id=held.thread_id,
                token=held.token,
                expires_at=self._clock() + ttl_s,
            )
            self._held[lock.thread_id] = extended
            return extended

    async def release(self, lock: LockToken) -> None:
        async with self._cond:
            held = self._held.get(lock.thread_id)
            if held is not None and held.token == lock.token:
                del self._held[lock.thread_id]
            self._cond.notify_all()

    def is_locked(self, thread_id: str) -> bool:
        held = self._held.get(thread_id)
        return held is not None and held.expires_at > self._clock()

    def clear(self) -> None:
        self._held.clear()


class MemoryStateBackend:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[Any, float | None]] = {}
        self._subscriptions: set[str] = set()
        self._locks = ThreadLockTable(clock=clock)

    async def get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_s: float | None = None) -> None:
        expires_at = self._clock() + ttl_s if ttl_s else None
        self._values[key] = (value, expires_at)

    async def set_if_absent(
        self, key: str, value: Any, ttl_s: float | None = None
    ) -> bool:
        entry = self._values.get(key)
        now = self._clock()
        if entry is not None and (entry[1] is None or entry[1] > now):
            return False
        self._values[key] = (value, now + ttl_s if ttl_s else None)
        return True

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    async def acquire_lock(
        self, thread_id: str, ttl_s: float = DEFAULT_LOCK_TTL_S
    ) -> LockToken | None:
        return await self._locks.acquire(thread_id, ttl_s)

    async def extend_lock(self, lock: LockToken, ttl_s: float) -> bool:
        return await self._locks.extend(lock, ttl_s) is not None

    async def release_lock(self, lock: LockToken) -> None:
        await self._locks.release(lock)

    async def subscribe(self, thread_id: str) -> None:
        self._subscriptions.add(thread_id)

    async def unsubscribe(self, thread_id: str) -> None:
        self._subscriptions.discard(thread_id)

    async def is_subscribed(self, thread_id: str) -> bool:
        return thread_id in self._subscriptions

    def is_locked(self, thread_id: str) -> bool:
        return self._locks.is_locked(thread_id)

    def clear(self) -> None:
        self._values.clear()
        self._subscriptions.clear()
        self._locks.clear()
