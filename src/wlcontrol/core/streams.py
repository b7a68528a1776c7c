"""Fan-in of every asynchronous input into one ordered event sequence.

EventStreams owns all live sources (command queue, property streams,
agent request queues, per-device streams, the scan deadline) under stable
keys and turns them into one LoopEvent per next_event() call.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from wlcontrol.api.agents import PairingRequest, PassphraseRequest
from wlcontrol.api.bluez import AdapterEvent, DeviceChange
from wlcontrol.api.bus import SubscriptionClosedError
from wlcontrol.models.commands import Command

logger = logging.getLogger(__name__)

# Source keys
COMMANDS = "commands"
WIFI_POWERED = "wifi_powered"
WIFI_SCANNING = "wifi_scanning"
WIFI_STATE = "wifi_state"
PASSPHRASE = "passphrase"
BT_DISCOVERY = "bt_discovery"
BT_ADAPTER = "bt_adapter"
BT_PAIRING = "bt_pairing"
IWD_ADDED = "iwd_added"
IWD_REMOVED = "iwd_removed"
SCAN_DEADLINE = "scan_deadline"
BT_DEVICE_PREFIX = "bt_device:"


def device_key(address: str) -> str:
    """Return the source key of a per-device property stream."""
    return BT_DEVICE_PREFIX + address


# -- Loop events -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LoopEvent:
    """Base class of everything next_event() can return."""


@dataclass(frozen=True, slots=True)
class CommandReceived(LoopEvent):
    command: Command


@dataclass(frozen=True, slots=True)
class CommandChannelClosed(LoopEvent):
    """The UI side went away."""


@dataclass(frozen=True, slots=True)
class WifiPoweredChanged(LoopEvent):
    powered: bool


@dataclass(frozen=True, slots=True)
class WifiScanningChanged(LoopEvent):
    scanning: bool


@dataclass(frozen=True, slots=True)
class StationStateChanged(LoopEvent):
    state: str


@dataclass(frozen=True, slots=True)
class PassphraseRequested(LoopEvent):
    request: PassphraseRequest


@dataclass(frozen=True, slots=True)
class BtAdapterChanged(LoopEvent):
    """Device added/removed or adapter property change (discovery or adapter stream)."""

    event: AdapterEvent


@dataclass(frozen=True, slots=True)
class BtDevicePropertyChanged(LoopEvent):
    change: DeviceChange


@dataclass(frozen=True, slots=True)
class BtPairingRequested(LoopEvent):
    request: PairingRequest


@dataclass(frozen=True, slots=True)
class IwdDeviceAdded(LoopEvent):
    path: str


@dataclass(frozen=True, slots=True)
class IwdDeviceRemoved(LoopEvent):
    path: str


@dataclass(frozen=True, slots=True)
class BtScanTimeout(LoopEvent):
    """Discovery ran for the full scan timeout."""


# -- Sources ---------------------------------------------------------------------


class Stream(Protocol):
    """Anything with an async next() and close(), e.g. a SignalStream."""

    async def next(self) -> Any: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class _Source:
    read: Callable[[], Awaitable[Any]]
    wrap: Callable[[Any], LoopEvent]
    stream: Stream | None = None
    one_shot: bool = False
    pending: "asyncio.Task[Any] | None" = field(default=None)


def _first(value: tuple[Any]) -> Any:
    return value[0]


class EventStreams:
    """Multiplexes every live source into one LoopEvent at a time.

    Sources are polled fairly: when several are ready at once they are
    served round-robin starting after the last one served, and a ready
    result that is not served yet is kept for a later call. A missing
    source is simply not waited on.
    """

    def __init__(
        self,
        commands: "asyncio.Queue[Command | None]",
        passphrases: "asyncio.Queue[PassphraseRequest]",
        pairings: "asyncio.Queue[PairingRequest]",
    ) -> None:
        """Initialize with the three queues that live for the whole run.

        Args:
            commands: UI commands; None marks the channel as closed.
            passphrases: Requests from the WiFi credentials agent.
            pairings: Requests from the Bluetooth pairing agent.
        """
        self._sources: dict[str, _Source] = {}
        self._last_served: str | None = None
        self._sources[COMMANDS] = _Source(commands.get, self._wrap_command)
        self._sources[PASSPHRASE] = _Source(passphrases.get, PassphraseRequested)
        self._sources[BT_PAIRING] = _Source(pairings.get, BtPairingRequested)

    @staticmethod
    def _wrap_command(command: Command | None) -> LoopEvent:
        if command is None:
            return CommandChannelClosed()
        return CommandReceived(command)

    # -- Source management -------------------------------------------------------

    def has(self, key: str) -> bool:
        """Return True if a source is registered under key."""
        return key in self._sources

    def keys(self) -> list[str]:
        """Return registered source keys in polling order."""
        return list(self._sources)

    def stream(self, key: str) -> Stream | None:
        """Return the stream registered under key, if any."""
        source = self._sources.get(key)
        return source.stream if source else None

    async def set_stream(self, key: str, stream: Stream, wrap: Callable[[Any], LoopEvent]) -> None:
        """Register a stream, closing whatever was registered under key."""
        await self.drop(key)
        self._sources[key] = _Source(stream.next, wrap, stream)

    async def set_property_stream(self, key: str, stream: Stream, wrap: Callable[[Any], LoopEvent]) -> None:
        """Register a stream of 1-tuples, passing the unwrapped value to wrap."""
        await self.set_stream(key, stream, lambda value: wrap(_first(value)))

    async def drop(self, key: str) -> bool:
        """Cancel and close the source under key.

        Returns:
            True if a source was registered.
        """
        source = self._sources.pop(key, None)
        if source is None:
            return False
        if source.pending is not None:
            source.pending.cancel()
        if source.stream is not None:
            try:
                await source.stream.close()
            except Exception as e:  # noqa: BLE001
                logger.debug("Closing source %s failed: %s", key, e)
        return True

    async def drop_prefix(self, prefix: str) -> None:
        """Drop every source whose key starts with prefix."""
        for key in [k for k in self._sources if k.startswith(prefix)]:
            await self.drop(key)

    def arm_scan_deadline(self, seconds: float) -> None:
        """Arm (or re-arm) the one-shot discovery timeout."""
        self._cancel_source(SCAN_DEADLINE)
        self._sources[SCAN_DEADLINE] = _Source(
            lambda: asyncio.sleep(seconds),
            lambda _: BtScanTimeout(),
            one_shot=True,
        )

    def clear_scan_deadline(self) -> None:
        """Disarm the discovery timeout."""
        self._cancel_source(SCAN_DEADLINE)

    @property
    def scan_deadline_armed(self) -> bool:
        """Return True while the discovery timeout is pending."""
        return SCAN_DEADLINE in self._sources

    def _cancel_source(self, key: str) -> None:
        source = self._sources.pop(key, None)
        if source is not None and source.pending is not None:
            source.pending.cancel()

    async def close_all(self) -> None:
        """Cancel every pending read and close every stream."""
        for key in list(self._sources):
            await self.drop(key)

    # -- Polling -----------------------------------------------------------------

    async def next_event(self) -> LoopEvent:
        """Wait until a source is ready and return its event.

        Sources whose stream ends or fails are dropped and polling goes on.
        """
        loop = asyncio.get_running_loop()
        while True:
            for key, source in self._sources.items():
                if source.pending is None:
                    source.pending = loop.create_task(source.read(), name=f"source:{key}")

            ready = [key for key, source in self._sources.items() if source.pending is not None and source.pending.done()]
            if not ready:
                pending = {s.pending for s in self._sources.values() if s.pending is not None}
                if not pending:
                    raise RuntimeError("No event sources registered")
                await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                continue

            key = self._pick(ready)
            source = self._sources[key]
            task = source.pending
            source.pending = None
            self._last_served = key
            assert task is not None

            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                if isinstance(exc, SubscriptionClosedError):
                    logger.debug("Source %s closed", key)
                else:
                    logger.warning("Source %s failed, dropping it: %s", key, exc)
                await self.drop(key)
                continue

            if source.one_shot:
                self._sources.pop(key, None)
            try:
                return source.wrap(task.result())
            except (IndexError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed item from %s: %s", key, e)

    def _pick(self, ready: list[str]) -> str:
        keys = list(self._sources)
        start = keys.index(self._last_served) + 1 if self._last_served in keys else 0
        ready_set = set(ready)
        for key in keys[start:] + keys[:start]:
            if key in ready_set:
                return key
        return ready[0]
