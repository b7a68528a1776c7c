"""Backend event loop: one task reacting to every bus signal and UI command.

initialize() brings up WiFi and Bluetooth as far as the daemons allow,
run_backend() then feeds EventStreams.next_event() into
BackendState.handle_event() until shutdown.
"""

import asyncio
import logging
from enum import Enum
from typing import Any

from dbus_fast.errors import DBusError

from wlcontrol.api.agents import (
    BLUEZ_AGENT_PATH,
    IWD_AGENT_PATH,
    BluezAgent,
    IwdAgent,
    PairingRequest,
    PassphraseRequest,
)
from wlcontrol.api.bluez import BluezProxy
from wlcontrol.api.bus import BusConnection
from wlcontrol.api.iwd import DEVICE_INTERFACE, STATION_INTERFACE, IwdProxy
from wlcontrol.core.bluetooth import BluetoothBackend, DeviceTracker
from wlcontrol.core.config import BackendSettings
from wlcontrol.core.streams import (
    BT_ADAPTER,
    BT_DISCOVERY,
    IWD_ADDED,
    IWD_REMOVED,
    WIFI_POWERED,
    WIFI_SCANNING,
    WIFI_STATE,
    BtAdapterChanged,
    BtDevicePropertyChanged,
    BtPairingRequested,
    BtScanTimeout,
    CommandChannelClosed,
    CommandReceived,
    EventStreams,
    IwdDeviceAdded,
    IwdDeviceRemoved,
    LoopEvent,
    PassphraseRequested,
    StationStateChanged,
    WifiPoweredChanged,
    WifiScanningChanged,
)
from wlcontrol.core.wifi import WifiBackend
from wlcontrol.models.bluetooth import PairingKind
from wlcontrol.models.commands import (
    BtConnect,
    BtDisconnect,
    BtPair,
    BtPairingPasskeyResponse,
    BtPairingPinResponse,
    BtPairingResponse,
    BtRemove,
    BtScan,
    BtSetAlias,
    BtSetDiscoverable,
    BtSetPowered,
    BtSetTrusted,
    BtStopScan,
    Command,
    PassphraseResponse,
    Shutdown,
    WifiConnect,
    WifiDisconnect,
    WifiForget,
    WifiForgetKnown,
    WifiScan,
    WifiSetPowered,
    WifiSwitchAdapter,
)
from wlcontrol.models.events import (
    BtAvailable,
    BtError,
    BtPairing,
    Event,
    PassphraseRequest as PassphraseRequestEvent,
    WifiAvailable,
    WifiDevices,
    WifiError,
    WifiNetworks,
    WifiPowered,
    WifiScanning,
)
from wlcontrol.models.wifi import WifiAdapterInfo

logger = logging.getLogger(__name__)

AGENT_REGISTER_FAILED = "Cannot register password agent. Connecting to secured networks may fail."
AGENT_MANAGER_UNAVAILABLE = "Cannot connect to iwd AgentManager. Connecting to secured networks may fail."
PAIRING_AGENT_FAILED = "Cannot register pairing agent. Pairing may fail."

_WIFI_COMMANDS = (
    WifiScan,
    WifiConnect,
    WifiDisconnect,
    WifiForget,
    WifiForgetKnown,
    WifiSetPowered,
    WifiSwitchAdapter,
)


class LoopAction(Enum):
    """What the loop does after handling an event."""

    CONTINUE = "continue"
    BREAK = "break"


def _resolve(future: "asyncio.Future[Any] | None", value: Any) -> bool:
    if future is None or future.done():
        return False
    future.set_result(value)
    return True


class BackendState:
    """Everything the loop owns between events.

    Attributes:
        wifi: Adapter for the active wireless device, None while WiFi is unavailable.
        devices: Wireless devices in bus path order.
        bt: Bluetooth adapter, None while Bluetooth is unavailable.
        tracker: Per-device property streams of the Bluetooth adapter.
        passphrase: Reply future of the pending passphrase prompt.
        pairing: Reply future of the pending confirm/authorize prompt.
        pin: Reply future of the pending PIN prompt.
        passkey: Reply future of the pending passkey prompt.
    """

    def __init__(
        self,
        connection: BusConnection,
        events: "asyncio.Queue[Event]",
        streams: EventStreams,
        settings: BackendSettings | None = None,
    ) -> None:
        self.connection = connection
        self.events = events
        self.streams = streams
        self.settings = settings or BackendSettings()
        self.iwd = IwdProxy(connection)
        self.bluez = BluezProxy(connection)

        self.wifi: WifiBackend | None = None
        self.devices: list[WifiAdapterInfo] = []
        self.bt: BluetoothBackend | None = None
        self.tracker: DeviceTracker | None = None

        self.passphrase: asyncio.Future[str | None] | None = None
        self.pairing: asyncio.Future[object] | None = None
        self.pin: asyncio.Future[object] | None = None
        self.passkey: asyncio.Future[object] | None = None

        self.iwd_agent_registered = False
        self.bluez_agent_registered = False

    @property
    def active_path(self) -> str | None:
        """Return the bus path of the active wireless device."""
        return self.wifi.device_path if self.wifi else None

    @property
    def discovering(self) -> bool:
        """Return True while a discovery session is open."""
        return self.streams.has(BT_DISCOVERY)

    async def emit(self, event: Event) -> None:
        await self.events.put(event)

    # -- WiFi helpers ------------------------------------------------------------

    async def refresh_devices(self) -> None:
        """Re-enumerate wireless devices (keeps the old list if that fails)."""
        try:
            self.devices = await self.iwd.find_devices()
        except DBusError as e:
            logger.warning("Cannot enumerate wireless devices: %s", e)

    async def emit_devices(self) -> None:
        await self.emit(WifiDevices(tuple(self.devices), self.active_path))

    async def subscribe_station_streams(self) -> bool:
        """Subscribe the Scanning and State streams of the active station.

        Returns:
            False if the station never appeared.
        """
        if self.wifi is None or not await self.wifi.wait_for_station():
            return False
        path = self.wifi.device_path
        try:
            scanning = await self.iwd.watch_property(path, STATION_INTERFACE, "Scanning")
            state = await self.iwd.watch_property(path, STATION_INTERFACE, "State")
        except DBusError as e:
            logger.warning("Cannot subscribe to station of %s: %s", path, e)
            return False
        await self.streams.set_property_stream(WIFI_SCANNING, scanning, WifiScanningChanged)
        await self.streams.set_property_stream(WIFI_STATE, state, StationStateChanged)
        return True

    async def drop_station_streams(self) -> None:
        await self.streams.drop(WIFI_SCANNING)
        await self.streams.drop(WIFI_STATE)

    async def subscribe_device_streams(self) -> None:
        """Subscribe the Powered stream of the active device and, if present, its station."""
        await self.drop_station_streams()
        await self.streams.drop(WIFI_POWERED)
        if self.wifi is None:
            return
        path = self.wifi.device_path
        try:
            powered = await self.iwd.watch_property(path, DEVICE_INTERFACE, "Powered")
        except DBusError as e:
            logger.warning("Cannot subscribe to device %s: %s", path, e)
        else:
            await self.streams.set_property_stream(WIFI_POWERED, powered, WifiPoweredChanged)
        if await self.wifi.is_powered():
            await self.subscribe_station_streams()

    async def activate_device(self, device_path: str) -> None:
        """Make device_path the active device and send its state."""
        if self.wifi is not None:
            await self.wifi.shutdown()
        self.wifi = WifiBackend(self.iwd, device_path, self.events, self.settings)
        logger.info("Active wireless device: %s", device_path)
        await self.subscribe_device_streams()
        await self.emit_devices()
        await self.wifi.send_initial_state()

    async def ensure_iwd_agent(self) -> None:
        """Register the passphrase agent with iwd unless it already is.

        A failure is reported as a WifiError warning.
        """
        if self.iwd_agent_registered:
            return
        try:
            await self.iwd.register_agent(IWD_AGENT_PATH)
        except DBusError as e:
            logger.error("Cannot register iwd agent: %s", e)
            missing = "UnknownObject" in e.type or "ServiceUnknown" in e.type
            await self.emit(WifiError(AGENT_MANAGER_UNAVAILABLE if missing else AGENT_REGISTER_FAILED))
        else:
            self.iwd_agent_registered = True
            logger.info("Registered iwd agent at %s", IWD_AGENT_PATH)

    async def clear_wifi(self) -> None:
        """Forget the active device after the last one vanished."""
        if self.wifi is not None:
            await self.wifi.shutdown()
        self.wifi = None
        await self.streams.drop(WIFI_POWERED)
        await self.drop_station_streams()
        await self.emit(WifiPowered(False))
        await self.emit(WifiNetworks(()))
        await self.emit(WifiAvailable(False))

    # -- Bluetooth helpers -------------------------------------------------------

    async def start_adapter_stream(self) -> None:
        if self.bt is None:
            return
        stream = await self.bt.adapter_events()
        if stream is not None:
            await self.streams.set_stream(BT_ADAPTER, stream, BtAdapterChanged)

    async def close_discovery(self, notify: bool = True) -> bool:
        """Stop discovery if it runs.

        Returns:
            True if a session was open.
        """
        self.streams.clear_scan_deadline()
        if not await self.streams.drop(BT_DISCOVERY):
            return False
        if notify and self.bt is not None:
            await self.bt.notify_scan_stopped()
        return True

    # -- Event dispatch ----------------------------------------------------------

    async def handle_event(self, event: LoopEvent) -> LoopAction:
        """Apply one loop event.

        Returns:
            BREAK once the loop should exit.
        """
        match event:
            case CommandReceived(command=command):
                return await self.handle_command(command)
            case CommandChannelClosed():
                logger.info("Command channel closed")
                return await self.handle_command(Shutdown())
            case BtScanTimeout():
                if await self.close_discovery():
                    logger.info("Bluetooth discovery timed out")
                    await self.start_adapter_stream()
            case WifiPoweredChanged(powered=powered):
                await self._on_wifi_powered(bool(powered))
            case WifiScanningChanged(scanning=scanning):
                await self.emit(WifiScanning(bool(scanning)))
                if not scanning and self.wifi is not None:
                    await self.wifi.send_networks()
                    await self.wifi.send_known_networks()
            case StationStateChanged(state=state):
                logger.debug("Station state: %s", state)
                if self.wifi is not None:
                    await self.wifi.send_connected_status()
            case PassphraseRequested(request=request):
                await self._on_passphrase_request(request)
            case BtAdapterChanged(event=adapter_event):
                if self.bt is not None and self.tracker is not None:
                    await self.bt.handle_adapter_event(adapter_event, self.tracker)
            case BtDevicePropertyChanged(change=change):
                if self.bt is not None:
                    await self.bt.handle_device_property_change(change)
            case BtPairingRequested(request=request):
                await self._on_pairing_request(request)
            case IwdDeviceAdded(path=path):
                logger.info("Wireless device added: %s", path)
                await self.refresh_devices()
                if self.wifi is None and self.devices:
                    await self.emit(WifiAvailable(True))
                    await self.ensure_iwd_agent()
                    await self.activate_device(self.devices[0].device_path)
                else:
                    await self.emit_devices()
            case IwdDeviceRemoved(path=path):
                await self._on_device_removed(path)
            case _:
                logger.warning("Unhandled loop event: %s", event)
        return LoopAction.CONTINUE

    async def _on_wifi_powered(self, powered: bool) -> None:
        await self.emit(WifiPowered(powered))
        if self.wifi is None:
            return
        if powered:
            if await self.subscribe_station_streams():
                await self.wifi.send_networks()
                await self.wifi.send_known_networks()
        else:
            await self.drop_station_streams()
            await self.emit(WifiNetworks(()))

    async def _on_passphrase_request(self, request: PassphraseRequest) -> None:
        if _resolve(self.passphrase, None):
            logger.warning("New passphrase request replaces an unanswered one")
        self.passphrase = request.reply
        await self.emit(PassphraseRequestEvent(request.network_path, request.network_name))

    async def _on_pairing_request(self, request: PairingRequest) -> None:
        kind = request.prompt.kind
        if request.reply is not None:
            if kind in (PairingKind.CONFIRM_PASSKEY, PairingKind.AUTHORIZE):
                slot = "pairing"
            elif kind is PairingKind.REQUEST_PIN:
                slot = "pin"
            else:
                slot = "passkey"
            if _resolve(getattr(self, slot), None):
                logger.warning("New %s request replaces an unanswered one", kind.value)
            setattr(self, slot, request.reply)
        await self.emit(BtPairing(request.prompt))

    async def _on_device_removed(self, path: str) -> None:
        logger.info("Wireless device removed: %s", path)
        await self.refresh_devices()
        self.devices = [d for d in self.devices if d.device_path != path]
        if path != self.active_path:
            await self.emit_devices()
            return
        if self.devices:
            await self.activate_device(self.devices[0].device_path)
        else:
            await self.clear_wifi()
            await self.emit_devices()

    # -- Commands ----------------------------------------------------------------

    async def handle_command(self, command: Command) -> LoopAction:
        """Run one UI command."""
        logger.debug("Command: %s", command)
        if isinstance(command, Shutdown):
            logger.info("Shutting down backend")
            if self.wifi is not None:
                await self.wifi.shutdown()
            if self.bt is not None:
                await self.bt.shutdown()
            await self.close_discovery(notify=False)
            return LoopAction.BREAK

        if isinstance(command, PassphraseResponse):
            self._answer("passphrase", command.passphrase)
        elif isinstance(command, BtPairingResponse):
            self._answer("pairing", True if command.accept else None)
        elif isinstance(command, BtPairingPinResponse):
            self._answer("pin", command.pin)
        elif isinstance(command, BtPairingPasskeyResponse):
            self._answer("passkey", command.passkey)
        elif isinstance(command, _WIFI_COMMANDS):
            if self.wifi is None:
                logger.debug("WiFi unavailable, ignoring %s", command)
            else:
                await self._wifi_command(self.wifi, command)
        elif self.bt is None:
            logger.debug("Bluetooth unavailable, ignoring %s", command)
        else:
            await self._bt_command(self.bt, command)
        return LoopAction.CONTINUE

    def _answer(self, slot: str, value: Any) -> None:
        future = getattr(self, slot)
        setattr(self, slot, None)
        if not _resolve(future, value):
            logger.warning("No pending %s request, ignoring response", slot)

    async def _wifi_command(self, wifi: WifiBackend, command: Command) -> None:
        match command:
            case WifiScan():
                await wifi.scan()
            case WifiConnect(path=path):
                await wifi.connect(path)
            case WifiDisconnect():
                await wifi.disconnect()
            case WifiForget(path=path):
                await wifi.forget(path)
            case WifiForgetKnown(path=path):
                await wifi.forget_known(path)
            case WifiSetPowered(powered=powered):
                await wifi.set_powered(powered)
            case WifiSwitchAdapter(device_path=device_path):
                if device_path == wifi.device_path:
                    return
                if not any(d.device_path == device_path for d in self.devices):
                    logger.warning("Unknown wireless device %s", device_path)
                    return
                await self.activate_device(device_path)

    async def _bt_command(self, bt: BluetoothBackend, command: Command) -> None:
        match command:
            case BtScan():
                if self.discovering:
                    return
                session = await bt.start_scan()
                if session is None:
                    return
                await self.streams.set_stream(BT_DISCOVERY, session, BtAdapterChanged)
                # The session carries the same signals as the adapter stream
                await self.streams.drop(BT_ADAPTER)
                self.streams.arm_scan_deadline(self.settings.scan_timeout)
            case BtStopScan():
                if not await self.close_discovery():
                    return
                await self.start_adapter_stream()
                if self.tracker is not None:
                    await self.tracker.rebuild()
            case BtConnect(address=address):
                await bt.connect(address)
            case BtDisconnect(address=address):
                await bt.disconnect(address)
            case BtPair(address=address):
                bt.pair(address)
            case BtRemove(address=address):
                await bt.remove(address)
            case BtSetAlias(address=address, alias=alias):
                await bt.set_alias(address, alias)
            case BtSetTrusted(address=address, trusted=trusted):
                await bt.set_trusted(address, trusted)
            case BtSetDiscoverable(discoverable=discoverable):
                await bt.set_discoverable(discoverable)
            case BtSetPowered(powered=powered):
                if powered:
                    await bt.set_powered(True)
                    if self.tracker is not None:
                        await bt.send_initial_state(self.tracker)
                    await self.start_adapter_stream()
                else:
                    await self.close_discovery()
                    if self.tracker is not None:
                        await self.tracker.clear()
                    await self.streams.drop(BT_ADAPTER)
                    await bt.set_powered(False)
            case _:
                logger.warning("Unhandled command: %s", command)

    # -- Teardown ----------------------------------------------------------------

    async def unregister_agents(self) -> None:
        """Unregister and unexport both agents (errors are only logged)."""
        if self.iwd_agent_registered:
            try:
                await self.iwd.unregister_agent(IWD_AGENT_PATH)
            except DBusError as e:
                logger.debug("Unregister iwd agent failed: %s", e)
            self.iwd_agent_registered = False
        if self.bluez_agent_registered:
            try:
                await self.bluez.unregister_agent(BLUEZ_AGENT_PATH)
            except DBusError as e:
                logger.debug("Unregister BlueZ agent failed: %s", e)
            self.bluez_agent_registered = False
        if self.connection.is_connected:
            self.connection.unexport(IWD_AGENT_PATH)
            self.connection.unexport(BLUEZ_AGENT_PATH)


# -- Startup ---------------------------------------------------------------------


def _choose_device(devices: list[WifiAdapterInfo], preferred: str, connected: set[str]) -> str | None:
    paths = [d.device_path for d in devices]
    if preferred in paths:
        return preferred
    for path in paths:
        if path in connected:
            return path
    return paths[0] if paths else None


async def _init_wifi(state: BackendState, passphrases: "asyncio.Queue[PassphraseRequest]") -> None:
    state.connection.export(IWD_AGENT_PATH, IwdAgent(state.iwd, passphrases))
    try:
        state.devices = await state.iwd.find_devices()
    except DBusError as e:
        logger.error("iwd not available: %s", e)
        await state.emit(WifiAvailable(False))
        return

    connected: set[str] = set()
    for device in state.devices:
        try:
            if await state.iwd.connected_network(device.device_path):
                connected.add(device.device_path)
        except DBusError:
            continue

    path = _choose_device(state.devices, state.settings.preferred_adapter, connected)
    if path is None:
        logger.warning("No wireless device found")
        await state.emit(WifiAvailable(False))
        await state.emit(WifiDevices((), None))
        return

    state.wifi = WifiBackend(state.iwd, path, state.events, state.settings)
    await state.emit(WifiAvailable(True))
    await state.emit_devices()
    await state.ensure_iwd_agent()
    await state.wifi.send_initial_state()


async def _init_bluetooth(state: BackendState, pairings: "asyncio.Queue[PairingRequest]") -> None:
    if not state.settings.bluetooth_enabled:
        logger.info("Bluetooth disabled by configuration")
        await state.emit(BtAvailable(False))
        return
    try:
        adapter = await state.bluez.default_adapter()
    except DBusError as e:
        logger.error("BlueZ not available: %s", e)
        await state.emit(BtAvailable(False))
        await state.emit(BtError(f"Bluetooth: {e.text or e.type}"))
        return
    if adapter is None:
        logger.warning("No Bluetooth adapter found")
        await state.emit(BtAvailable(False))
        await state.emit(BtError("Bluetooth: no adapter found"))
        return

    state.connection.export(BLUEZ_AGENT_PATH, BluezAgent(pairings))
    try:
        await state.bluez.register_agent(BLUEZ_AGENT_PATH, state.settings.agent_capability)
    except DBusError as e:
        logger.error("Cannot register BlueZ agent: %s", e)
        await state.emit(BtError(PAIRING_AGENT_FAILED))
    else:
        state.bluez_agent_registered = True
        logger.info("Registered BlueZ agent at %s", BLUEZ_AGENT_PATH)

    state.bt = BluetoothBackend(state.bluez, adapter, state.events)
    state.tracker = DeviceTracker(state.bluez, adapter, state.streams)
    await state.emit(BtAvailable(True))
    await state.bt.send_initial_state(state.tracker)
    await state.start_adapter_stream()


async def _subscribe_hotplug(state: BackendState) -> None:
    try:
        added = await state.iwd.watch_devices_added()
        removed = await state.iwd.watch_devices_removed()
    except DBusError as e:
        logger.warning("Cannot watch wireless hot-plug: %s", e)
        return
    await state.streams.set_stream(IWD_ADDED, added, IwdDeviceAdded)
    await state.streams.set_stream(IWD_REMOVED, removed, IwdDeviceRemoved)


async def initialize(
    connection: BusConnection,
    events: "asyncio.Queue[Event]",
    settings: BackendSettings,
    commands: "asyncio.Queue[Command | None]",
) -> tuple[BackendState, EventStreams]:
    """Bring up both subsystems on a connected bus.

    A missing daemon only marks its side unavailable; this never raises for it.

    Returns:
        The loop state and the streams feeding it.
    """
    passphrases: asyncio.Queue[PassphraseRequest] = asyncio.Queue()
    pairings: asyncio.Queue[PairingRequest] = asyncio.Queue()
    streams = EventStreams(commands, passphrases, pairings)
    state = BackendState(connection, events, streams, settings)

    await _init_wifi(state, passphrases)
    await _init_bluetooth(state, pairings)
    if state.wifi is not None:
        await state.subscribe_device_streams()
    await _subscribe_hotplug(state)
    return state, streams


async def run_backend(
    commands: "asyncio.Queue[Command | None]",
    events: "asyncio.Queue[Event]",
    settings: BackendSettings | None = None,
    connection: BusConnection | None = None,
) -> None:
    """Run the backend until Shutdown or the command channel closes.

    Args:
        commands: UI commands; None closes the channel.
        events: Queue the UI reads events from.
        settings: Settings snapshot (defaults if None).
        connection: Bus connection to use (system bus if None).
    """
    settings = settings or BackendSettings()
    connection = connection or BusConnection()
    try:
        await connection.connect()
    except (OSError, DBusError) as e:
        logger.error("Cannot connect to the system bus: %s", e)
        await events.put(WifiAvailable(False))
        await events.put(BtAvailable(False))
        return

    state, streams = await initialize(connection, events, settings, commands)
    try:
        while True:
            event = await streams.next_event()
            if await state.handle_event(event) is LoopAction.BREAK:
                break
    finally:
        await streams.close_all()
        await state.unregister_agents()
        connection.disconnect()
        logger.info("Backend stopped")
