"""Central state store with Qt signals for reactive UI updates.

The StateStore holds what the UI shows about WiFi and Bluetooth and
emits Qt signals when it changes. Backend events are applied through
apply_event(); UI code connects to the signals.
"""

import logging

from PySide6.QtCore import QObject, Signal

from wlcontrol.models.bluetooth import BtDevice, BtDeviceData
from wlcontrol.models.events import (
    BtAvailable,
    BtConnecting,
    BtDeviceAdded,
    BtDeviceChanged,
    BtDeviceRemoved,
    BtDiscoverable,
    BtDiscovering,
    BtError,
    BtOperationDone,
    BtPairing,
    BtPowered,
    CaptivePortal,
    Event,
    PassphraseRequest,
    WifiAvailable,
    WifiConnected,
    WifiConnecting,
    WifiDevices,
    WifiError,
    WifiKnownNetworks,
    WifiNetworkKnown,
    WifiNetworks,
    WifiPowered,
    WifiScanning,
)
from wlcontrol.models.wifi import KnownNetworkData, WifiAdapterInfo, WifiNetwork

logger = logging.getLogger(__name__)


class StateStore(QObject):
    """Central state store emitting Qt signals on changes.

    Entities (WifiNetwork, BtDevice) are mutated in place, so optimistic
    operation flags set by the Controller survive daemon refreshes until
    an outcome event clears them.

    Example:
        store = StateStore()
        store.networks_changed.connect(lambda nets: print(len(nets)))
        worker.event_received.connect(store.apply_event)
    """

    # Availability
    wifi_available_changed = Signal(bool)
    bt_available_changed = Signal(bool)

    # WiFi
    wifi_devices_changed = Signal(object)  # list[WifiAdapterInfo]
    wifi_powered_changed = Signal(bool)
    wifi_scanning_changed = Signal(bool)
    networks_changed = Signal(object)  # list[WifiNetwork], visible then saved-offline
    known_networks_changed = Signal(object)  # list[KnownNetworkData]
    passphrase_requested = Signal(str, str)  # network path, network name
    captive_portal_detected = Signal(str)
    wifi_error = Signal(str)

    # Bluetooth
    bt_powered_changed = Signal(bool)
    bt_discovering_changed = Signal(bool)
    bt_discoverable_changed = Signal(bool)
    devices_changed = Signal(object)  # list[BtDevice]
    pairing_requested = Signal(object)  # PairingPrompt
    bt_error = Signal(str)

    def __init__(self) -> None:
        """Initialize the state store with empty state."""
        super().__init__()
        self._wifi_available = False
        self._bt_available = False
        self._wifi_devices: list[WifiAdapterInfo] = []
        self._active_device: str | None = None
        self._wifi_powered = False
        self._wifi_scanning = False
        self._networks: dict[str, WifiNetwork] = {}
        self._visible_keys: set[tuple[str, str]] = set()
        self._known: list[KnownNetworkData] = []
        self._saved_offline: dict[str, WifiNetwork] = {}
        self._bt_powered = False
        self._bt_discovering = False
        self._bt_discoverable = False
        self._devices: dict[str, BtDevice] = {}

    # -- Read access -------------------------------------------------------------

    @property
    def wifi_available(self) -> bool:
        return self._wifi_available

    @property
    def bt_available(self) -> bool:
        return self._bt_available

    @property
    def wifi_devices(self) -> list[WifiAdapterInfo]:
        """Return wireless devices in bus path order."""
        return list(self._wifi_devices)

    @property
    def active_device(self) -> str | None:
        """Return the bus path of the active wireless device."""
        return self._active_device

    @property
    def wifi_powered(self) -> bool:
        return self._wifi_powered

    @property
    def wifi_scanning(self) -> bool:
        return self._wifi_scanning

    @property
    def networks(self) -> list[WifiNetwork]:
        """Return visible networks followed by saved networks out of range."""
        return [*self._networks.values(), *self._saved_offline.values()]

    @property
    def known_networks(self) -> list[KnownNetworkData]:
        return list(self._known)

    @property
    def connected_network(self) -> WifiNetwork | None:
        """Return the visible network the station is connected to."""
        return next((n for n in self._networks.values() if n.connected), None)

    @property
    def bt_powered(self) -> bool:
        return self._bt_powered

    @property
    def bt_discovering(self) -> bool:
        return self._bt_discovering

    @property
    def bt_discoverable(self) -> bool:
        return self._bt_discoverable

    @property
    def devices(self) -> list[BtDevice]:
        return list(self._devices.values())

    def get_network(self, path: str) -> WifiNetwork | None:
        """Get a visible or saved-offline network by path.

        Args:
            path: Network or known-network bus path.

        Returns:
            The entry if found, else None.
        """
        return self._networks.get(path) or self._saved_offline.get(path)

    def get_device(self, address: str) -> BtDevice | None:
        """Get a Bluetooth device by address."""
        return self._devices.get(address)

    # -- Optimistic flags (used by the Controller) -------------------------------

    def mark_network(self, path: str, **flags: bool) -> bool:
        """Set operation flags on a network and notify.

        Returns:
            True if the network exists.
        """
        network = self.get_network(path)
        if network is None:
            return False
        for name, value in flags.items():
            setattr(network, name, value)
        self._emit_networks()
        return True

    def mark_device(self, address: str, **flags: bool) -> bool:
        """Set operation flags on a device and notify.

        Returns:
            True if the device exists.
        """
        device = self._devices.get(address)
        if device is None:
            return False
        for name, value in flags.items():
            setattr(device, name, value)
        self._emit_devices()
        return True

    # -- Event application -------------------------------------------------------

    def apply_event(self, event: Event) -> None:  # noqa: C901, PLR0912
        """Apply one backend event and emit the matching signals.

        Args:
            event: Event received from the backend worker.
        """
        match event:
            case WifiAvailable(available=available):
                self._wifi_available = available
                self.wifi_available_changed.emit(available)
            case BtAvailable(available=available):
                self._bt_available = available
                self.bt_available_changed.emit(available)
            case WifiDevices(devices=devices, active_path=active_path):
                self._wifi_devices = list(devices)
                self._active_device = active_path
                self.wifi_devices_changed.emit(self.wifi_devices)
            case WifiPowered(powered=powered):
                self._wifi_powered = powered
                self.wifi_powered_changed.emit(powered)
            case WifiScanning(scanning=scanning):
                self._wifi_scanning = scanning
                self.wifi_scanning_changed.emit(scanning)
            case WifiNetworks(networks=networks):
                self._apply_networks(networks)
            case WifiKnownNetworks(networks=known):
                self._known = list(known)
                self._rebuild_saved_offline()
                self.known_networks_changed.emit(self.known_networks)
                self._emit_networks()
            case WifiConnected(path=path):
                for network in self.networks:
                    network.clear_operations()
                for network in self._networks.values():
                    network.connected = network.path == path
                self._emit_networks()
            case WifiConnecting(path=path):
                network = self._networks.get(path)
                if network is not None:
                    network.connecting = True
                    self._emit_networks()
            case WifiNetworkKnown(path=path):
                network = self._networks.get(path)
                if network is not None:
                    network.known = True
                    self._emit_networks()
            case PassphraseRequest(network_path=path, network_name=name):
                self.passphrase_requested.emit(path, name)
            case CaptivePortal(url=url):
                self.captive_portal_detected.emit(url)
            case WifiError(message=message):
                for network in self.networks:
                    network.clear_operations()
                self._emit_networks()
                self.wifi_error.emit(message)

            case BtPowered(powered=powered):
                self._apply_bt_powered(powered)
            case BtDiscovering(discovering=discovering):
                self._set_discovering(discovering)
            case BtDiscoverable(discoverable=discoverable):
                self._bt_discoverable = discoverable
                self.bt_discoverable_changed.emit(discoverable)
            case BtConnecting(address=address):
                device = self._devices.get(address)
                if device is not None:
                    device.connecting = True
                    device.disconnecting = False
                    self._emit_devices()
            case BtDeviceAdded(device=data):
                self._upsert_device(data)
                self._emit_devices()
            case BtDeviceChanged(device=data):
                device = self._upsert_device(data)
                device.connecting = False
                device.disconnecting = False
                self._emit_devices()
            case BtOperationDone(device=data, error=error):
                self._upsert_device(data).clear_operations()
                self._emit_devices()
                if error:
                    self.bt_error.emit(error)
            case BtDeviceRemoved(address=address):
                if self._devices.pop(address, None) is not None:
                    self._emit_devices()
            case BtPairing(prompt=prompt):
                self.pairing_requested.emit(prompt)
            case BtError(message=message):
                for device in self._devices.values():
                    device.clear_operations()
                self._emit_devices()
                self.bt_error.emit(message)
            case _:
                logger.debug("Ignoring event %s", event)

    def _apply_networks(self, networks: tuple) -> None:
        self._visible_keys = {(n.name, n.network_type) for n in networks}
        current: dict[str, WifiNetwork] = {}
        for data in networks:
            network = self._networks.get(data.path)
            if network is None:
                network = WifiNetwork.from_data(data)
            else:
                network.update_from(data)
            current[data.path] = network
        self._networks = current
        self._rebuild_saved_offline()
        self._emit_networks()

    def _rebuild_saved_offline(self) -> None:
        saved: dict[str, WifiNetwork] = {}
        for known in self._known:
            if (known.name, known.network_type) in self._visible_keys:
                continue
            # Keep the entry so a pending forget survives the rebuild
            entry = self._saved_offline.get(known.path) or WifiNetwork.saved_offline(known)
            saved[known.path] = entry
        self._saved_offline = saved

    def _apply_bt_powered(self, powered: bool) -> None:
        self._bt_powered = powered
        if not powered:
            self._set_discovering(False)
            # Discovery artifacts disappear with the radio
            self._devices = {a: d for a, d in self._devices.items() if d.paired}
            for device in self._devices.values():
                device.clear_operations()
                device.connected = False
            self._emit_devices()
        self.bt_powered_changed.emit(powered)

    def _set_discovering(self, discovering: bool) -> None:
        if self._bt_discovering == discovering:
            return
        self._bt_discovering = discovering
        self.bt_discovering_changed.emit(discovering)

    def _upsert_device(self, data: BtDeviceData) -> BtDevice:
        device = self._devices.get(data.address)
        if device is None:
            device = BtDevice.from_data(data)
            self._devices[data.address] = device
        else:
            device.update_from(data)
        return device

    def _emit_networks(self) -> None:
        self.networks_changed.emit(self.networks)

    def _emit_devices(self) -> None:
        self.devices_changed.emit(self.devices)

    def clear(self) -> None:
        """Clear all state (e.g. after the backend stopped)."""
        self._wifi_devices = []
        self._active_device = None
        self._networks.clear()
        self._visible_keys.clear()
        self._known = []
        self._saved_offline.clear()
        self._devices.clear()
        self._set_discovering(False)
        self._emit_networks()
        self._emit_devices()
