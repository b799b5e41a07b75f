from __future__ import annotations

import asyncio

import pytest

from tangotales.errors import GovernorBusyError
from tangotales.services.governor import ConcurrencyGovernor, GovernorState


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_second_admission_is_rejected_while_first_is_active():
    clock = FakeClock()
    governor = ConcurrencyGovernor(max_concurrent=1, min_spacing_ms=0, clock=clock, sleep=clock.sleep)

    async with governor.admit():
        assert governor.active == 1
        with pytest.raises(GovernorBusyError):
            async with governor.admit():
                pass  # pragma: no cover
        assert governor.active == 1

    assert governor.active == 0


@pytest.mark.asyncio
async def test_spacing_delays_the_next_admission():
    clock = FakeClock()
    governor = ConcurrencyGovernor(max_concurrent=1, min_spacing_ms=2000, clock=clock, sleep=clock.sleep)

    async with governor.admit():
        pass
    clock.now += 0.5
    async with governor.admit():
        pass

    assert clock.sleeps == [pytest.approx(1.5)]


@pytest.mark.asyncio
async def test_no_wait_once_spacing_has_elapsed():
    clock = FakeClock()
    governor = ConcurrencyGovernor(max_concurrent=1, min_spacing_ms=2000, clock=clock, sleep=clock.sleep)

    async with governor.admit():
        pass
    clock.now += 5
    async with governor.admit():
        pass

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_release_happens_when_run_raises():
    governor = ConcurrencyGovernor(max_concurrent=1, min_spacing_ms=0)

    with pytest.raises(RuntimeError):
        async with governor.admit():
            raise RuntimeError("phase blew up")

    assert governor.active == 0


@pytest.mark.asyncio
async def test_release_happens_when_cancelled_during_spacing_wait():
    governor = ConcurrencyGovernor(max_concurrent=2, min_spacing_ms=10_000)
    async with governor.admit():
        pass

    async def waiter():
        async with governor.admit():
            pass  # pragma: no cover

    task = asyncio.create_task(waiter())
    await asyncio.sleep(0.01)
    assert governor.active == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert governor.active == 0


@pytest.mark.asyncio
async def test_state_is_shared_between_governors():
    state = GovernorState()
    first = ConcurrencyGovernor(state, max_concurrent=1, min_spacing_ms=0)
    second = ConcurrencyGovernor(state, max_concurrent=1, min_spacing_ms=0)

    async with first.admit():
        with pytest.raises(GovernorBusyError):
            async with second.admit():
                pass  # pragma: no cover


@pytest.mark.asyncio
async def test_cap_above_one_allows_concurrent_runs():
    governor = ConcurrencyGovernor(max_concurrent=2, min_spacing_ms=0)
    async with governor.admit():
        async with governor.admit():
            assert governor.active == 2
        with pytest.raises(GovernorBusyError):
            async with governor.admit():
                async with governor.admit():
                    pass  # pragma: no cover
