import asyncio

import pytest

from peerlink.errors import ReconnectExhaustedError, SignalingUnavailableError
from peerlink.webrtc.reconnect import ReconnectSupervisor, backoff_delay

from conftest import settle


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]
    assert backoff_delay(3, base=0.5, cap=3) == 3


@pytest.mark.asyncio
async def test_five_closures_back_off_then_sixth_is_exhausted():
    sleep = RecordingSleep()
    exhausted = []

    async def always_fail():
        raise SignalingUnavailableError("relay down")

    supervisor = ReconnectSupervisor(always_fail, on_exhausted=exhausted.append, sleep=sleep)

    assert supervisor.notify_lost() == 1
    await settle()

    assert sleep.delays == [1, 2, 4, 8, 16]
    assert supervisor.exhausted
    assert not supervisor.pending
    assert len(exhausted) == 1
    assert isinstance(exhausted[0], ReconnectExhaustedError)
    assert exhausted[0].attempts == 5


@pytest.mark.asyncio
async def test_successful_reopen_resets_attempt_counter():
    sleep = RecordingSleep()
    outcomes = [False, False, False, True]

    async def connect():
        if not outcomes.pop(0):
            raise SignalingUnavailableError("relay down")
        supervisor.notify_open()

    supervisor = ReconnectSupervisor(connect, sleep=sleep)

    supervisor.notify_lost()
    await settle()

    assert sleep.delays == [1, 2, 4, 8]
    assert supervisor.attempt == 0

    # Next unexpected closure starts over
    assert supervisor.notify_lost() == 1
    supervisor.cancel()


@pytest.mark.asyncio
async def test_notify_lost_while_pending_schedules_nothing_new():
    gate = asyncio.Event()

    async def slow_sleep(delay):
        await gate.wait()

    async def connect():
        return None

    supervisor = ReconnectSupervisor(connect, sleep=slow_sleep)

    assert supervisor.notify_lost() == 1
    assert supervisor.notify_lost() is None
    assert supervisor.attempt == 1

    supervisor.cancel()
    await settle()
    assert not supervisor.pending


@pytest.mark.asyncio
async def test_cancel_prevents_the_scheduled_attempt():
    calls = []

    async def connect():
        calls.append(1)

    async def never(delay):
        await asyncio.sleep(3600)

    supervisor = ReconnectSupervisor(connect, sleep=never)
    supervisor.notify_lost()
    supervisor.cancel()
    await settle()

    assert calls == []
    assert not supervisor.pending
