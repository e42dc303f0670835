from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import anyio

from .logging import get_logger
from .state import DEFAULT_LOCK_TTL_S, LockToken, ThreadLockTable

logger = get_logger(__name__)

STATE_VERSION = 1
STATE_FILENAME = "chat_router_state.json"


def resolve_state_path(config_path: Path) -> Path:
    return config_path.with_name(STATE_FILENAME)


def _atomic_write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(
        payload,
        ensure_ascii=True,
        sort_keys=True,
        indent=2,
    )
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    tmp_path.write_text(f"{data}\n", encoding="utf-8")
    os.replace(tmp_path, path)


class JsonFileStateBackend:
    """State backend persisted to a single JSON file.

    Values must be JSON-serializable. Expiry uses wall-clock time so TTLs
    survive a restart. The file is re-read whenever its mtime changes, which
    lets several short-lived processes share it; locks are not shared and
    only serialize work inside this process.
    """

    def __init__(
        self,
        path: Path,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = path
        self._clock = clock
        self._lock = anyio.Lock()
        self._loaded = False
        self._mtime_ns: int | None = None
        self._values: dict[str, dict[str, Any]] = {}
        self._subscriptions: set[str] = set()
        self._locks = ThreadLockTable(clock=clock)

    @property
    def path(self) -> Path:
        return self._path

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _reset_locked(self) -> None:
        self._values = {}
        self._subscriptions = set()

    def _load_locked(self) -> None:
        self._loaded = True
        self._mtime_ns = self._stat_mtime_ns()
        if self._mtime_ns is None:
            self._reset_locked()
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            payload = json.loads(raw)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "state.file.load_failed",
                path=str(self._path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._reset_locked()
            return
        if not isinstance(payload, dict) or payload.get("version") != STATE_VERSION:
            logger.warning(
                "state.file.version_mismatch",
                path=str(self._path),
                version=payload.get("version") if isinstance(payload, dict) else None,
                expected=STATE_VERSION,
            )
            self._reset_locked()
            return
        values = payload.get("values")
        parsed: dict[str, dict[str, Any]] = {}
        if isinstance(values, dict):
            for key, entry in values.items():
                if not isinstance(key, str) or not isinstance(entry, dict):
                    continue
                if "value" not in entry:
                    continue
                expires_at = entry.get("expires_at")
                if not isinstance(expires_at, (int, float)):
                    expires_at = None
                parsed[key] = {"value": entry["value"], "expires_at": expires_at}
        subscriptions = payload.get("subscriptions")
        self._values = parsed
        self._subscriptions = (
            {item for item in subscriptions if isinstance(item, str)}
            if isinstance(subscriptions, list)
            else set()
        )

    def _reload_locked_if_needed(self) -> None:
        current = self._stat_mtime_ns()
        if self._loaded and current == self._mtime_ns:
            return
        self._load_locked()

    def _save_locked(self) -> None:
        now = self._clock()
        payload = {
            "version": STATE_VERSION,
            "values": {
                key: entry
                for key, entry in self._values.items()
                if entry["expires_at"] is None or entry["expires_at"] > now
            },
            "subscriptions": sorted(self._subscriptions),
        }
        _atomic_write_json(self._path, payload)
        self._mtime_ns = self._stat_mtime_ns()

    async def get(self, key: str) -> Any:
        async with self._lock:
            self._reload_locked_if_needed()
            entry = self._values.get(key)
            if entry is None:
                return None
            expires_at = entry["expires_at"]
            if expires_at is not None and expires_at <= self._clock():
                return None
            return entry["value"]

    async def set(self, key: str, value: Any, ttl_s: float | None = None) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            expires_at = self._clock() + ttl_s if ttl_s else None
            self._values[key] = {"value": value, "expires_at": expires_at}
            self._save_locked()

    async def set_if_absent(
        self, key: str, value: Any, ttl_s: float | None = None
    ) -> bool:
        async with self._lock:
            self._reload_locked_if_needed()
            now = self._clock()
            entry = self._values.get(key)
            if entry is not None:
                expires_at = entry["expires_at"]
                if expires_at is None or expires_at > now:
                    return False
            self._values[key] = {
                "value": value,
                "expires_at": now + ttl_s if ttl_s else None,
            }
            self._save_locked()
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            if key not in self._values:
                return
            self._values.pop(key, None)
            self._save_locked()

    async def acquire_lock(
        self, thread_id: str, ttl_s: float = DEFAULT_LOCK_TTL_S
    ) -> LockToken | None:
        return await self._locks.acquire(thread_id, ttl_s)

    async def extend_lock(self, lock: LockToken, ttl_s: float) -> bool:
        return await self._locks.extend(lock, ttl_s) is not None

    async def release_lock(self, lock: LockToken) -> None:
        await self._locks.release(lock)

    async def subscribe(self, thread_id: str) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            if thread_id in self._subscriptions:
                return
            self._subscriptions.add(thread_id)
            self._save_locked()

    async def unsubscribe(self, thread_id: str) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            if thread_id not in self._subscriptions:
                return
            self._subscriptions.discard(thread_id)
            self._save_locked()

    async def is_subscribed(self, thread_id: str) -> bool:
        async with self._lock:
            self._reload_locked_if_needed()
            return thread_id in self._subscriptions
