"""Tests for the event source multiplexer."""

import asyncio
from typing import Any

import pytest

from wlcontrol.api.agents import PairingRequest, PassphraseRequest
from wlcontrol.api.bus import SubscriptionClosedError
from wlcontrol.core.streams import (
    BT_DEVICE_PREFIX,
    COMMANDS,
    BtScanTimeout,
    CommandChannelClosed,
    CommandReceived,
    EventStreams,
    LoopEvent,
    PassphraseRequested,
    WifiPoweredChanged,
    device_key,
)
from wlcontrol.models.commands import Command, WifiScan


class QueueStream:
    """Stream fed by a test through push()."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False

    def push(self, item: Any) -> None:
        self.queue.put_nowait(item)

    async def next(self) -> Any:
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def queues() -> tuple["asyncio.Queue[Command | None]", "asyncio.Queue[PassphraseRequest]", "asyncio.Queue[PairingRequest]"]:
    return asyncio.Queue(), asyncio.Queue(), asyncio.Queue()


def make_streams(queues: tuple) -> EventStreams:
    return EventStreams(*queues)


async def next_event(streams: EventStreams) -> LoopEvent:
    return await asyncio.wait_for(streams.next_event(), timeout=1)


class TestSources:
    """Test source registration and wrapping."""

    @pytest.mark.asyncio
    async def test_commands(self, queues: tuple) -> None:
        """Test commands are wrapped and None closes the channel."""
        streams = make_streams(queues)
        queues[0].put_nowait(WifiScan())
        queues[0].put_nowait(None)

        assert await next_event(streams) == CommandReceived(WifiScan())
        assert await next_event(streams) == CommandChannelClosed()
        await streams.close_all()

    @pytest.mark.asyncio
    async def test_agent_requests(self, queues: tuple) -> None:
        """Test passphrase requests come through their queue."""
        streams = make_streams(queues)
        request = PassphraseRequest("/n", "Home", asyncio.get_running_loop().create_future())
        queues[1].put_nowait(request)

        assert await next_event(streams) == PassphraseRequested(request)
        await streams.close_all()

    @pytest.mark.asyncio
    async def test_property_stream_unwraps_tuple(self, queues: tuple) -> None:
        """Test 1-tuples from property streams reach the wrapper unwrapped."""
        streams = make_streams(queues)
        stream = QueueStream()
        await streams.set_property_stream("wifi_powered", stream, WifiPoweredChanged)
        stream.push((False,))

        assert await next_event(streams) == WifiPoweredChanged(False)
        await streams.close_all()

    @pytest.mark.asyncio
    async def test_set_stream_replaces_and_closes_old(self, queues: tuple) -> None:
        """Test re-registering a key closes the previous stream."""
        streams = make_streams(queues)
        old, new = QueueStream(), QueueStream()
        await streams.set_stream("x", old, WifiPoweredChanged)
        await streams.set_stream("x", new, WifiPoweredChanged)

        assert old.closed
        assert streams.stream("x") is new
        await streams.close_all()
        assert new.closed

    @pytest.mark.asyncio
    async def test_drop_prefix(self, queues: tuple) -> None:
        """Test per-device streams are dropped together."""
        streams = make_streams(queues)
        for address in ("AA:AA:AA:AA:AA:AA", "BB:BB:BB:BB:BB:BB"):
            await streams.set_stream(device_key(address), QueueStream(), WifiPoweredChanged)

        await streams.drop_prefix(BT_DEVICE_PREFIX)

        assert not any(key.startswith(BT_DEVICE_PREFIX) for key in streams.keys())
        assert streams.has(COMMANDS)
        await streams.close_all()


class TestPolling:
    """Test fairness and failure handling."""

    @pytest.mark.asyncio
    async def test_no_source_starves(self, queues: tuple) -> None:
        """Test a busy command queue does not starve a ready stream."""
        streams = make_streams(queues)
        stream = QueueStream()
        await streams.set_property_stream("wifi_powered", stream, WifiPoweredChanged)
        for _ in range(5):
            queues[0].put_nowait(WifiScan())
        stream.push((True,))
        stream.push((False,))

        served = [await next_event(streams) for _ in range(4)]

        assert WifiPoweredChanged(True) in served
        assert WifiPoweredChanged(False) in served
        await streams.close_all()

    @pytest.mark.asyncio
    async def test_failed_source_is_dropped(self, queues: tuple) -> None:
        """Test a stream that raises is removed and polling continues."""
        streams = make_streams(queues)
        stream = QueueStream()
        await streams.set_property_stream("wifi_powered", stream, WifiPoweredChanged)
        stream.push(RuntimeError("boom"))
        queues[0].put_nowait(WifiScan())
        queues[0].put_nowait(WifiScan())

        assert await next_event(streams) == CommandReceived(WifiScan())
        assert await next_event(streams) == CommandReceived(WifiScan())
        assert not streams.has("wifi_powered")
        await streams.close_all()

    @pytest.mark.asyncio
    async def test_closed_subscription_is_dropped(self, queues: tuple) -> None:
        """Test an ended subscription is removed quietly."""
        streams = make_streams(queues)
        stream = QueueStream()
        await streams.set_stream("gone", stream, WifiPoweredChanged)
        stream.push(SubscriptionClosedError("rule"))
        queues[0].put_nowait(WifiScan())
        queues[0].put_nowait(WifiScan())

        assert await next_event(streams) == CommandReceived(WifiScan())
        assert await next_event(streams) == CommandReceived(WifiScan())
        assert not streams.has("gone")
        await streams.close_all()

    @pytest.mark.asyncio
    async def test_malformed_item_is_skipped(self, queues: tuple) -> None:
        """Test an item the wrapper rejects does not stop the source."""
        streams = make_streams(queues)
        stream = QueueStream()
        await streams.set_property_stream("wifi_powered", stream, WifiPoweredChanged)
        stream.push(())
        stream.push((True,))

        assert await next_event(streams) == WifiPoweredChanged(True)
        assert streams.has("wifi_powered")
        await streams.close_all()


class TestScanDeadline:
    """Test the one-shot discovery timeout."""

    @pytest.mark.asyncio
    async def test_fires_once(self, queues: tuple) -> None:
        """Test the deadline produces exactly one BtScanTimeout."""
        streams = make_streams(queues)
        streams.arm_scan_deadline(0.01)
        assert streams.scan_deadline_armed

        assert await next_event(streams) == BtScanTimeout()
        assert not streams.scan_deadline_armed

        queues[0].put_nowait(WifiScan())
        assert await next_event(streams) == CommandReceived(WifiScan())
        await streams.close_all()

    @pytest.mark.asyncio
    async def test_cleared_deadline_does_not_fire(self, queues: tuple) -> None:
        """Test stopping early cancels the deadline."""
        streams = make_streams(queues)
        streams.arm_scan_deadline(0.01)
        streams.clear_scan_deadline()
        await asyncio.sleep(0.02)
        queues[0].put_nowait(WifiScan())

        assert await next_event(streams) == CommandReceived(WifiScan())
        await streams.close_all()
