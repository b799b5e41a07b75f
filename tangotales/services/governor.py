"""Admission control for model dialogue runs.

At most ``max_concurrent`` runs may hold the governor at once; extra callers
are rejected immediately rather than queued. Consecutive admissions are
spaced at least ``min_spacing_ms`` apart.
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

from loguru import logger

from tangotales.config import settings
from tangotales.errors import GovernorBusyError


@dataclass
class GovernorState:
    """Shared counters. Only mutate while holding ``lock``."""

    active: int = 0
    last_start: float | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConcurrencyGovernor:
    def __init__(
        self,
        state: GovernorState | None = None,
        *,
        max_concurrent: int | None = None,
        min_spacing_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state or GovernorState()
        self.max_concurrent = max(
            1, max_concurrent if max_concurrent is not None else settings.max_concurrent_enrichments
        )
        spacing = min_spacing_ms if min_spacing_ms is not None else settings.min_request_spacing_ms
        self.min_spacing_seconds = max(0, spacing) / 1000.0
        self._clock = clock
        self._sleep = sleep

    @property
    def active(self) -> int:
        return self.state.active

    async def _reserve(self) -> float:
        async with self.state.lock:
            if self.state.active >= self.max_concurrent:
                raise GovernorBusyError(self.state.active, self.max_concurrent)
            now = self._clock()
            wait = 0.0
            if self.state.last_start is not None:
                wait = max(0.0, self.min_spacing_seconds - (now - self.state.last_start))
            self.state.active += 1
            self.state.last_start = now + wait
            return wait

    async def _release(self) -> None:
        async with self.state.lock:
            self.state.active = max(0, self.state.active - 1)

    @asynccontextmanager
    async def admit(self, label: str = "") -> AsyncIterator[None]:
        wait = await self._reserve()
        try:
            if wait > 0:
                logger.debug(f"Governor spacing {label or 'run'} by {wait * 1000:.0f}ms")
                await self._sleep(wait)
            yield
        finally:
            await self._release()


_governor: ConcurrencyGovernor | None = None


def get_governor() -> ConcurrencyGovernor:
    """Process-wide governor built from settings."""
    global _governor
    if _governor is None:
        _governor = ConcurrencyGovernor()
    return _governor
