"""Bluetooth adapter: the default BlueZ controller and its devices.

Translates BlueZ objects and errors into wlcontrol events and keeps the
per-device property subscriptions for devices worth showing.
"""

import asyncio
import logging

from dbus_fast.errors import DBusError

from wlcontrol.api.bluez import (
    WATCHED_DEVICE_PROPERTIES,
    AdapterEvent,
    AdapterEventKind,
    BluezProxy,
    DeviceChange,
    DiscoverySession,
)
from wlcontrol.api.bus import SignalStream, error_text
from wlcontrol.core.streams import BtDevicePropertyChanged, EventStreams, device_key
from wlcontrol.models.bluetooth import is_valid_address
from wlcontrol.models.events import (
    BtConnecting,
    BtDeviceAdded,
    BtDeviceChanged,
    BtDeviceRemoved,
    BtDiscoverable,
    BtDiscovering,
    BtError,
    BtOperationDone,
    BtPowered,
    Event,
)

logger = logging.getLogger(__name__)

# Checked in order against the normalized error text; first match wins
_BT_ERRORS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("pagetimeout", "abortbylocal"), "Device not responding. Make sure it is turned on and nearby."),
    (("profileunavailable",), "No compatible services found on the device."),
    (("alreadyconnected",), "Already connected."),
    (("connectiontimeout", "connectionattemptfailed"), "Connection timed out."),
    (("connectionrefused",), "Connection refused by the device."),
    (("abortedbyremote", "econnreset"), "Device disconnected or turned off."),
    (("notpowered",), "Bluetooth adapter is not powered on."),
    (("notsupported", "eopnotsupp"), "Operation not supported."),
    (("busy", "inprogress"), "Device is busy, try again."),
    (("notready",), "Bluetooth is not ready."),
    (("rejected", "canceled", "cancelled"), "Operation cancelled."),
    (("notpaired",), "Device is not paired. Pair first."),
    (("auth",), "Authentication failed."),
)


def _normalize(text: str) -> str:
    return "".join(ch for ch in text.lower() if ch.isalnum())


def format_bt_error(text: str) -> str:
    """Translate a BlueZ error into a user-facing message.

    Matching ignores case and punctuation, so "br-connection-page-timeout"
    and "PageTimeout" are the same.

    Args:
        text: Error name and/or message as reported over the bus.

    Returns:
        One of the fixed messages, or "Bluetooth error: <text>".
    """
    normalized = _normalize(text)
    for patterns, message in _BT_ERRORS:
        if any(p in normalized for p in patterns):
            return message
    return f"Bluetooth error: {text}"


class DeviceTracker:
    """Index of addresses with a live per-device property stream.

    Each tracked address owns one source in EventStreams; tracking and
    untracking are map operations on that index.
    """

    def __init__(self, proxy: BluezProxy, adapter_path: str, streams: EventStreams) -> None:
        self._proxy = proxy
        self._adapter_path = adapter_path
        self._streams = streams
        self._addresses: set[str] = set()

    @property
    def addresses(self) -> frozenset[str]:
        """Return the tracked addresses."""
        return frozenset(self._addresses)

    def __contains__(self, address: object) -> bool:
        return address in self._addresses

    def __len__(self) -> int:
        return len(self._addresses)

    async def track(self, address: str) -> bool:
        """Subscribe to property changes of a device (idempotent).

        Returns:
            True if the device is tracked afterwards.
        """
        if address in self._addresses:
            return True
        try:
            stream = await self._proxy.watch_device(self._adapter_path, address)
        except DBusError as e:
            logger.warning("Failed to subscribe to events for %s: %s", address, e)
            return False
        await self._streams.set_stream(device_key(address), stream, BtDevicePropertyChanged)
        self._addresses.add(address)
        return True

    async def untrack(self, address: str) -> None:
        """Drop the property stream of a device."""
        self._addresses.discard(address)
        await self._streams.drop(device_key(address))

    async def clear(self) -> None:
        """Drop every per-device stream."""
        self._addresses.clear()
        await self._streams.drop_prefix(device_key(""))

    async def rebuild(self) -> None:
        """Resubscribe every tracked device, dropping stale streams."""
        addresses = sorted(self._addresses)
        await self.clear()
        for address in addresses:
            await self.track(address)


class BluetoothBackend:
    """Operations on the BlueZ adapter and its devices.

    Example:
        bt = BluetoothBackend(BluezProxy(connection), "/org/bluez/hci0", events)
        await bt.send_initial_state(tracker)
        bt.pair("AA:BB:CC:DD:EE:FF")
    """

    def __init__(self, proxy: BluezProxy, adapter_path: str, events: "asyncio.Queue[Event]") -> None:
        """Initialize the adapter.

        Args:
            proxy: BlueZ accessors.
            adapter_path: Bus path of the controller, e.g. "/org/bluez/hci0".
            events: Queue the UI reads events from.
        """
        self._proxy = proxy
        self._adapter_path = adapter_path
        self._events = events
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def adapter_path(self) -> str:
        """Return the controller bus path."""
        return self._adapter_path

    @property
    def proxy(self) -> BluezProxy:
        """Return the BlueZ accessors."""
        return self._proxy

    async def _emit(self, event: Event) -> None:
        await self._events.put(event)

    async def _emit_error(self, exc: BaseException) -> str:
        message = format_bt_error(error_text(exc))
        await self._emit(BtError(message))
        return message

    # -- State snapshots -------------------------------------------------------

    async def send_initial_state(self, tracker: DeviceTracker) -> None:
        """Emit powered, discoverable and every paired or connected device."""
        for name, event_type in (("Powered", BtPowered), ("Discoverable", BtDiscoverable)):
            try:
                value = await self._proxy.adapter_property(self._adapter_path, name)
            except DBusError as e:
                logger.warning("Cannot read adapter %s: %s", name, e)
                continue
            await self._emit(event_type(bool(value)))

        try:
            addresses = await self._proxy.device_addresses(self._adapter_path)
        except DBusError as e:
            logger.error("Cannot list Bluetooth devices: %s", e)
            return
        for address in addresses:
            data = await self._proxy.read_device(self._adapter_path, address)
            if data is None or not (data.paired or data.connected):
                continue
            await tracker.track(address)
            await self._emit(BtDeviceAdded(data))

    async def adapter_events(self) -> SignalStream[AdapterEvent] | None:
        """Start the always-on adapter event stream (does not start discovery)."""
        try:
            stream = await self._proxy.watch_adapter(self._adapter_path)
        except DBusError as e:
            logger.error("Failed to start adapter event stream: %s", e)
            return None
        logger.info("Started adapter event stream for %s", self._adapter_path)
        return stream

    # -- Event handling --------------------------------------------------------

    async def handle_adapter_event(self, event: AdapterEvent, tracker: DeviceTracker) -> None:
        """Apply a device added/removed or adapter property change."""
        if event.kind is AdapterEventKind.DEVICE_ADDED:
            data = await self._proxy.read_device(self._adapter_path, event.address)
            if data is None:
                return
            if data.is_anonymous:
                logger.debug("Ignoring anonymous device %s", event.address)
                return
            await tracker.track(event.address)
            await self._emit(BtDeviceAdded(data))

        elif event.kind is AdapterEventKind.DEVICE_REMOVED:
            await tracker.untrack(event.address)
            # BlueZ drops paired devices from discovery results too; re-check
            # before telling the UI the device is gone. If the device really
            # vanished meanwhile, the read fails and we fall through.
            data = await self._proxy.read_device(self._adapter_path, event.address)
            if data is not None and data.paired:
                await tracker.track(event.address)
                await self._emit(BtDeviceChanged(data))
                return
            await self._emit(BtDeviceRemoved(event.address))

        else:
            props = event.properties
            if "Discoverable" in props:
                await self._emit(BtDiscoverable(bool(props["Discoverable"])))
            if "Powered" in props:
                await self._emit(BtPowered(bool(props["Powered"])))

    async def handle_device_property_change(self, change: DeviceChange) -> None:
        """Re-read a device when a property the UI shows has changed."""
        if not change.names & WATCHED_DEVICE_PROPERTIES:
            return
        data = await self._proxy.read_device(self._adapter_path, change.address)
        if data is not None:
            await self._emit(BtDeviceChanged(data))

    # -- Discovery -------------------------------------------------------------

    async def start_scan(self) -> DiscoverySession | None:
        """Start discovery; the caller owns the returned session."""
        try:
            session = await self._proxy.start_discovery(self._adapter_path)
        except DBusError as e:
            logger.error("Failed to start discovery: %s", e)
            await self._emit_error(e)
            return None
        logger.info("Bluetooth discovery started")
        await self._emit(BtDiscovering(True))
        return session

    async def notify_scan_stopped(self) -> None:
        """Tell the UI discovery has stopped (caller closed the session)."""
        logger.info("Bluetooth discovery stopped")
        await self._emit(BtDiscovering(False))

    # -- Device operations -----------------------------------------------------

    async def _operation_done(self, address: str, error: str | None) -> None:
        data = await self._proxy.read_device(self._adapter_path, address)
        if data is None:
            if error:
                await self._emit(BtError(error))
            return
        await self._emit(BtOperationDone(data, error))

    async def connect(self, address: str) -> None:
        """Connect to a device."""
        if not is_valid_address(address):
            logger.error("Invalid Bluetooth address '%s'", address)
            await self._emit(BtError("Invalid Bluetooth address"))
            return
        await self._emit(BtConnecting(address))
        error = None
        try:
            await self._proxy.connect_device(self._adapter_path, address)
            logger.info("Connected to %s", address)
        except DBusError as e:
            logger.error("Connect to %s failed: %s", address, e)
            error = format_bt_error(error_text(e))
        await self._operation_done(address, error)

    async def disconnect(self, address: str) -> None:
        """Disconnect a device."""
        if not is_valid_address(address):
            logger.error("Invalid Bluetooth address '%s'", address)
            return
        error = None
        try:
            await self._proxy.disconnect_device(self._adapter_path, address)
        except DBusError as e:
            logger.error("Disconnect from %s failed: %s", address, e)
            error = format_bt_error(error_text(e))
        await self._operation_done(address, error)

    def pair(self, address: str) -> "asyncio.Task[None] | None":
        """Pair with a device in a separate task.

        Pair() blocks until the agent callbacks are answered, and those
        answers arrive as commands on the main loop, so it must not run there.

        Returns:
            The spawned task, or None for an invalid address.
        """
        if not is_valid_address(address):
            logger.error("Invalid Bluetooth address '%s'", address)
            return None
        task = asyncio.get_running_loop().create_task(self._run_pair(address), name=f"bt-pair:{address}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_pair(self, address: str) -> None:
        await self._emit(BtConnecting(address))
        logger.info("Starting pairing with %s", address)
        error = None
        try:
            await self._proxy.pair_device(self._adapter_path, address)
        except DBusError as e:
            logger.error("Pair with %s failed: %s", address, e)
            error = format_bt_error(error_text(e))
        else:
            logger.info("Paired with %s", address)
            # Trust so the device can reconnect on its own
            try:
                await self._proxy.set_trusted(self._adapter_path, address, True)
            except DBusError as e:
                logger.warning("Failed to set trusted for %s: %s", address, e)
        await self._operation_done(address, error)

    async def remove(self, address: str) -> None:
        """Remove (unpair) a device."""
        if not is_valid_address(address):
            logger.error("Invalid Bluetooth address '%s'", address)
            return
        try:
            await self._proxy.remove_device(self._adapter_path, address)
        except DBusError as e:
            if "DoesNotExist" in e.type or "Does Not Exist" in (e.text or ""):
                logger.info("Device %s already gone, removing from UI", address)
            else:
                logger.error("Remove %s failed: %s", address, e)
                await self._emit_error(e)
                return
        else:
            logger.info("Device %s removed", address)
        await self._emit(BtDeviceRemoved(address))

    async def set_alias(self, address: str, alias: str) -> None:
        """Rename a device; the change arrives as a property event."""
        if not is_valid_address(address):
            return
        try:
            await self._proxy.set_alias(self._adapter_path, address, alias)
        except DBusError as e:
            logger.error("Set alias for %s failed: %s", address, e)
            await self._emit_error(e)

    async def set_trusted(self, address: str, trusted: bool) -> None:
        """Set the trusted flag; the change arrives as a property event."""
        if not is_valid_address(address):
            return
        try:
            await self._proxy.set_trusted(self._adapter_path, address, trusted)
        except DBusError as e:
            logger.error("Set trusted %s for %s failed: %s", trusted, address, e)
            await self._emit_error(e)

    async def _set_adapter_flag(self, name: str, value: bool, event_type: type[BtPowered] | type[BtDiscoverable]) -> None:
        try:
            await self._proxy.set_adapter_property(self._adapter_path, name, value)
        except DBusError as e:
            logger.error("Set %s %s failed: %s", name, value, e)
            await self._emit_error(e)
            # Report the real value so the UI can roll back its toggle
            try:
                actual = await self._proxy.adapter_property(self._adapter_path, name)
            except DBusError:
                return
            await self._emit(event_type(bool(actual)))
            return
        await self._emit(event_type(value))

    async def set_powered(self, powered: bool) -> None:
        """Power the adapter on or off."""
        await self._set_adapter_flag("Powered", powered, BtPowered)

    async def set_discoverable(self, discoverable: bool) -> None:
        """Make the adapter visible or hidden."""
        await self._set_adapter_flag("Discoverable", discoverable, BtDiscoverable)

    async def shutdown(self) -> None:
        """Cancel pairing tasks still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
