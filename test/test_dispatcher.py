"""
Tests for the serializing dispatcher.
"""
import asyncio
from dataclasses import dataclass

import pytest

from photogether.messaging.dispatcher import SerialDispatcher


@dataclass
class Ping:
    value: int


@dataclass
class LoudPing(Ping):
    pass


@dataclass
class Boom:
    pass


def test_events_are_handled_one_at_a_time_in_order():
    async def scenario():
        dispatcher = SerialDispatcher("test")
        seen = []
        active = []

        async def handle(event: Ping):
            active.append(event.value)
            assert len(active) == 1
            await asyncio.sleep(0)
            seen.append(event.value)
            active.pop()
            return event.value * 10

        dispatcher.register_handler(Ping, handle)
        await dispatcher.start()

        futures = [dispatcher.submit(Ping(i)) for i in range(5)]
        results = await asyncio.gather(*futures)

        assert seen == [0, 1, 2, 3, 4]
        assert results == [0, 10, 20, 30, 40]
        await dispatcher.stop()

    asyncio.run(scenario())


def test_handler_lookup_follows_subclasses():
    async def scenario():
        dispatcher = SerialDispatcher("test")
        dispatcher.register_handler(Ping, lambda event: type(event).__name__)
        await dispatcher.start()

        assert await dispatcher.submit(LoudPing(1)) == "LoudPing"
        await dispatcher.stop()

    asyncio.run(scenario())


def test_handler_failure_reaches_submitter_and_worker_keeps_running():
    async def scenario():
        dispatcher = SerialDispatcher("test")

        def explode(event):
            raise ValueError("bad event")

        dispatcher.register_handler(Boom, explode)
        dispatcher.register_handler(Ping, lambda event: event.value)
        await dispatcher.start()

        with pytest.raises(ValueError):
            await dispatcher.submit(Boom())
        assert await dispatcher.submit(Ping(7)) == 7
        assert dispatcher.get_statistics()['errors'] == 1
        await dispatcher.stop()

    asyncio.run(scenario())


def test_submit_before_start_fails():
    async def scenario():
        dispatcher = SerialDispatcher("test")

        with pytest.raises(RuntimeError):
            await dispatcher.submit(Ping(1))

    asyncio.run(scenario())


def test_stop_cancels_queued_work():
    async def scenario():
        dispatcher = SerialDispatcher("test")
        release = asyncio.Event()

        async def slow(event):
            await release.wait()

        dispatcher.register_handler(Ping, slow)
        await dispatcher.start()

        first = dispatcher.submit(Ping(1))
        queued = dispatcher.submit(Ping(2))
        await asyncio.sleep(0)
        await dispatcher.stop()

        assert first.cancelled()
        assert queued.cancelled()

    asyncio.run(scenario())
