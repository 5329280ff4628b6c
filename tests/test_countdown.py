"""Countdown driver: one task per room, stops when the tick says so."""
import asyncio
import threading

from core.countdown import CountdownRegistry


class FakeTick:
    def __init__(self, ticks):
        self.remaining = ticks
        self.calls = 0
        self.threads = set()

    def __call__(self):
        self.calls += 1
        self.threads.add(threading.get_ident())
        self.remaining -= 1
        return self.remaining > 0


def test_ticks_until_done():
    registry = CountdownRegistry(interval=0.01)
    tick = FakeTick(3)

    async def scenario():
        task = registry.start("ROOM01", tick)
        await asyncio.wait_for(task, timeout=2)
        return registry.is_running("ROOM01")

    assert asyncio.run(scenario()) is False
    assert tick.calls == 3
    # blocking tick runs off the event loop thread
    assert threading.get_ident() not in tick.threads


def test_cancel_stops_ticking():
    registry = CountdownRegistry(interval=0.05)
    tick = FakeTick(1000)

    async def scenario():
        registry.start("ROOM01", tick)
        await asyncio.sleep(0.12)
        assert registry.cancel("ROOM01") is True
        await asyncio.sleep(0.01)
        calls = tick.calls
        await asyncio.sleep(0.15)
        return calls

    calls_at_cancel = asyncio.run(scenario())
    assert tick.calls == calls_at_cancel
    assert not registry.is_running("ROOM01")


def test_restart_replaces_previous_countdown():
    registry = CountdownRegistry(interval=0.01)
    first = FakeTick(1000)
    second = FakeTick(2)

    async def scenario():
        old = registry.start("ROOM01", first)
        await asyncio.sleep(0.03)
        new = registry.start("ROOM01", second)
        await asyncio.wait_for(new, timeout=2)
        await asyncio.sleep(0)
        return old

    old = asyncio.run(scenario())
    assert old.cancelled()
    assert second.calls == 2


def test_crashing_tick_ends_countdown():
    registry = CountdownRegistry(interval=0.01)

    def broken():
        raise RuntimeError("database went away")

    async def scenario():
        task = registry.start("ROOM01", broken)
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(scenario())
    assert not registry.is_running("ROOM01")


def test_cancel_unknown_room():
    assert CountdownRegistry().cancel("NOPE00") is False
