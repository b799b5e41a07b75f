"""Bounded registry of live dialogue sessions, keyed by normalized title."""
from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from loguru import logger

from tangotales.config import settings

T = TypeVar("T")


def session_key(title: str) -> str:
    return re.sub(r"[^a-z0-9]", "_", title.lower())


@dataclass(slots=True)
class _Entry(Generic[T]):
    value: T
    expires_at: float


class SessionRegistry(Generic[T]):
    """LRU with per-entry TTL.

    Reads refresh both recency and expiry. Entries past their TTL are dropped
    lazily on access; the least recently used entry is evicted once
    ``max_sessions`` is exceeded.
    """

    def __init__(
        self,
        *,
        max_sessions: int | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_sessions = max(
            1, max_sessions if max_sessions is not None else settings.session_registry_max_sessions
        )
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[str, _Entry[T]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def __contains__(self, title: str) -> bool:
        return self.get(title) is not None

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, entry in self._entries.items() if entry.expires_at <= now]:
            del self._entries[key]
            logger.debug(f"Session expired: {key}")

    def get(self, title: str) -> T | None:
        key = session_key(title)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            entry.expires_at = self._clock() + self.ttl_seconds
            self._entries.move_to_end(key)
            return entry.value

    def put(self, title: str, value: T) -> None:
        key = session_key(title)
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)
            self._entries.move_to_end(key)
            self._purge_expired()
            while len(self._entries) > self.max_sessions:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Session evicted (LRU): {evicted}")

    def get_or_create(self, title: str, factory: Callable[[], T]) -> T:
        existing = self.get(title)
        if existing is not None:
            return existing
        value = factory()
        self.put(title, value)
        return value

    def evict(self, title: str) -> bool:
        with self._lock:
            return self._entries.pop(session_key(title), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
