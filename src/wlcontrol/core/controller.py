"""Controller - bridges UI requests to backend commands.

Every user action goes through the Controller. It sets the optimistic
operation flags in the StateStore and then queues the command on the
backend worker; the backend's outcome events clear the flags again.
"""

import logging
from typing import Protocol

from PySide6.QtCore import QObject, Slot

from wlcontrol.core.state import StateStore
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
    WifiConnect,
    WifiDisconnect,
    WifiForget,
    WifiForgetKnown,
    WifiScan,
    WifiSetPowered,
    WifiSwitchAdapter,
)

logger = logging.getLogger(__name__)


class CommandSink(Protocol):
    """Anything accepting backend commands, e.g. a BackendWorker."""

    def send_command(self, command: Command) -> bool: ...


class Controller(QObject):
    """Controller turning UI requests into backend commands.

    Example:
        controller = Controller(worker, store)
        controller.connect_network("/net/connman/iwd/0/4/6e6574_psk")

        # user clicks connect -> Controller.connect_network
        # -> StateStore.mark_network (optimistic "connecting")
        # -> BackendWorker.send_command(WifiConnect)
        # -> WifiConnected/WifiError event clears the flag
    """

    def __init__(self, sink: CommandSink, state_store: StateStore) -> None:
        """Initialize the controller.

        Args:
            sink: Receives the commands (normally the BackendWorker).
            state_store: The state store for optimistic updates.
        """
        super().__init__()
        self._sink = sink
        self._state = state_store

    def _send(self, command: Command) -> bool:
        sent = self._sink.send_command(command)
        if not sent:
            logger.warning("Command not delivered: %s", command)
        return sent

    # -- WiFi --------------------------------------------------------------------

    @Slot()
    def scan_wifi(self) -> None:
        """Request a WiFi scan."""
        self._send(WifiScan())

    @Slot(str)
    def connect_network(self, path: str) -> None:
        """Connect to a visible network.

        Args:
            path: Network bus path.
        """
        self._state.mark_network(path, connecting=True, disconnecting=False)
        self._send(WifiConnect(path))

    @Slot()
    def disconnect_wifi(self) -> None:
        """Disconnect from the current network."""
        network = self._state.connected_network
        if network is not None:
            self._state.mark_network(network.path, disconnecting=True, connecting=False)
        self._send(WifiDisconnect())

    @Slot(str)
    def forget_network(self, path: str) -> None:
        """Forget a visible network.

        Args:
            path: Network bus path.
        """
        self._state.mark_network(path, forgetting=True)
        self._send(WifiForget(path))

    @Slot(str)
    def forget_known_network(self, path: str) -> None:
        """Forget a saved network, visible or not.

        Args:
            path: Known-network bus path.
        """
        self._state.mark_network(path, forgetting=True)
        self._send(WifiForgetKnown(path))

    @Slot(bool)
    def set_wifi_powered(self, powered: bool) -> None:
        self._send(WifiSetPowered(powered))

    @Slot(str)
    def switch_wifi_adapter(self, device_path: str) -> None:
        """Make another wireless device active."""
        if device_path == self._state.active_device:
            return
        self._send(WifiSwitchAdapter(device_path))

    @Slot(str)
    def submit_passphrase(self, passphrase: str) -> None:
        self._send(PassphraseResponse(passphrase))

    @Slot()
    def cancel_passphrase(self) -> None:
        self._send(PassphraseResponse(None))

    # -- Bluetooth ---------------------------------------------------------------

    @Slot()
    def start_bt_scan(self) -> None:
        self._send(BtScan())

    @Slot()
    def stop_bt_scan(self) -> None:
        self._send(BtStopScan())

    @Slot(str)
    def connect_device(self, address: str) -> None:
        """Connect a Bluetooth device.

        Args:
            address: Device address.
        """
        self._state.mark_device(address, connecting=True, disconnecting=False)
        self._send(BtConnect(address))

    @Slot(str)
    def disconnect_device(self, address: str) -> None:
        """Disconnect a Bluetooth device.

        Args:
            address: Device address.
        """
        self._state.mark_device(address, disconnecting=True, connecting=False)
        self._send(BtDisconnect(address))

    @Slot(str)
    def pair_device(self, address: str) -> None:
        """Pair with a Bluetooth device (shown as pairing until done)."""
        self._state.mark_device(address, connecting=True, disconnecting=False)
        self._send(BtPair(address))

    @Slot(str)
    def remove_device(self, address: str) -> None:
        """Remove (unpair) a Bluetooth device."""
        self._state.mark_device(address, removing=True)
        self._send(BtRemove(address))

    @Slot(str, str)
    def set_device_alias(self, address: str, alias: str) -> None:
        self._send(BtSetAlias(address, alias))

    @Slot(str, bool)
    def set_device_trusted(self, address: str, trusted: bool) -> None:
        self._send(BtSetTrusted(address, trusted))

    @Slot(bool)
    def set_bt_powered(self, powered: bool) -> None:
        self._send(BtSetPowered(powered))

    @Slot(bool)
    def set_bt_discoverable(self, discoverable: bool) -> None:
        self._send(BtSetDiscoverable(discoverable))

    @Slot(bool)
    def answer_pairing(self, accept: bool) -> None:
        """Answer a confirm-passkey or authorize prompt."""
        self._send(BtPairingResponse(accept))

    @Slot(str)
    def answer_pin(self, pin: str) -> None:
        """Answer a PIN prompt; an empty PIN rejects."""
        self._send(BtPairingPinResponse(pin or None))

    def answer_passkey(self, passkey: int | None) -> None:
        """Answer a passkey prompt; None rejects.

        Raises:
            ValueError: If passkey is outside 0-999999.
        """
        self._send(BtPairingPasskeyResponse(passkey))
