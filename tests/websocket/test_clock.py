import asyncio
import time

import pytest

from tablelink.websocket.clock import AsyncioClock, VirtualClock


def test_virtual_clock_fires_in_due_order():
    clock = VirtualClock()
    fired = []
    clock.call_later(300, lambda: fired.append("c"))
    clock.call_later(100, lambda: fired.append("a"))
    clock.call_later(100, lambda: fired.append("b"))

    assert clock.advance(250) == 2
    assert fired == ["a", "b"]
    assert clock.now() == 250

    clock.advance(50)
    assert fired == ["a", "b", "c"]


def test_virtual_clock_runs_timers_scheduled_by_callbacks():
    clock = VirtualClock()
    fired = []

    def chain():
        fired.append(clock.now())
        if len(fired) < 3:
            clock.call_later(100, chain)

    clock.call_later(100, chain)
    clock.advance(1000)

    assert fired == [100, 200, 300]


def test_virtual_clock_cancel():
    clock = VirtualClock()
    fired = []
    handle = clock.call_later(10, lambda: fired.append(1))
    handle.cancel()

    assert clock.pending() == 0
    clock.advance(100)
    assert fired == []


def test_virtual_clock_cannot_go_backwards():
    with pytest.raises(ValueError):
        VirtualClock().advance(-1)


@pytest.mark.asyncio
async def test_asyncio_clock_schedules_on_running_loop():
    clock = AsyncioClock()
    done = asyncio.Event()
    start = clock.now()

    clock.call_later(10, done.set)
    await asyncio.wait_for(done.wait(), timeout=1.0)

    assert clock.now() - start >= 9


@pytest.mark.asyncio
async def test_asyncio_clock_cancel():
    clock = AsyncioClock()
    fired = []
    handle = clock.call_later(5, lambda: fired.append(1))
    handle.cancel()
    await asyncio.sleep(0.02)
    assert fired == []


def test_asyncio_clock_now_without_running_loop():
    clock = AsyncioClock()
    before = time.monotonic() * 1000.0

    assert clock.now() >= before
    with pytest.raises(RuntimeError):
        clock.call_later(10, lambda: None)
