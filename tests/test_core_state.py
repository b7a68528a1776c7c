"""Tests for StateStore with Qt signals."""

import pytest
from pytestqt.qtbot import QtBot

from wlcontrol.core.state import StateStore
from wlcontrol.models.bluetooth import BtDeviceData, BtDeviceState, PairingKind, PairingPrompt
from wlcontrol.models.events import (
    BtDeviceAdded,
    BtDeviceChanged,
    BtDeviceRemoved,
    BtDiscovering,
    BtError,
    BtOperationDone,
    BtPairing,
    BtPowered,
    PassphraseRequest,
    WifiConnected,
    WifiConnecting,
    WifiDevices,
    WifiError,
    WifiKnownNetworks,
    WifiNetworkKnown,
    WifiNetworks,
)
from wlcontrol.models.wifi import KnownNetworkData, WifiAdapterInfo, WifiNetworkData

HOME = "/net/connman/iwd/0/4/486f6d65_psk"
CAFE = "/net/connman/iwd/0/4/43616665_open"
OFFICE_KNOWN = "/net/connman/iwd/4f6666696365_psk"
HOME_KNOWN = "/net/connman/iwd/486f6d65_psk"
ADDR = "AA:BB:CC:DD:EE:FF"
OTHER = "11:22:33:44:55:66"


@pytest.fixture
def state() -> StateStore:
    """Return a fresh StateStore for each test."""
    return StateStore()


@pytest.fixture
def networks() -> WifiNetworks:
    return WifiNetworks(
        (
            WifiNetworkData(HOME, "Home", "psk", -4000, connected=True, known=True),
            WifiNetworkData(CAFE, "Cafe", "open", -7000),
        )
    )


class TestWifiState:
    """Test network bookkeeping."""

    def test_initial_state(self, state: StateStore) -> None:
        """Test the store starts empty and unavailable."""
        assert not state.wifi_available
        assert state.networks == []
        assert state.active_device is None

    def test_devices(self, state: StateStore) -> None:
        """Test the device inventory and active path are stored."""
        device = WifiAdapterInfo("/net/connman/iwd/0/4", "wlan0")
        state.apply_event(WifiDevices((device,), device.device_path))
        assert state.wifi_devices == [device]
        assert state.active_device == device.device_path

    def test_networks_and_connected(self, state: StateStore, networks: WifiNetworks) -> None:
        """Test the snapshot keeps order and finds the connected network."""
        state.apply_event(networks)
        assert [n.path for n in state.networks] == [HOME, CAFE]
        connected = state.connected_network
        assert connected is not None and connected.path == HOME

    def test_saved_offline_networks(self, state: StateStore, networks: WifiNetworks) -> None:
        """Test saved networks out of range are appended after visible ones."""
        state.apply_event(networks)
        known = (KnownNetworkData(HOME_KNOWN, "Home", "psk"), KnownNetworkData(OFFICE_KNOWN, "Office", "psk"))
        state.apply_event(WifiKnownNetworks(known))

        paths = [n.path for n in state.networks]
        assert paths == [HOME, CAFE, OFFICE_KNOWN]
        office = state.get_network(OFFICE_KNOWN)
        assert office is not None and office.offline and office.known

    def test_flags_survive_refresh(self, state: StateStore, networks: WifiNetworks) -> None:
        """Test an optimistic flag is kept across a scan snapshot."""
        state.apply_event(networks)
        assert state.mark_network(CAFE, connecting=True)

        state.apply_event(networks)

        cafe = state.get_network(CAFE)
        assert cafe is not None and cafe.connecting

    def test_connected_clears_flags(self, state: StateStore, networks: WifiNetworks) -> None:
        """Test the connect outcome resets operation flags."""
        state.apply_event(networks)
        state.apply_event(WifiConnecting(CAFE))
        state.apply_event(WifiConnected(CAFE))
        state.apply_event(WifiNetworkKnown(CAFE))

        cafe = state.get_network(CAFE)
        home = state.get_network(HOME)
        assert cafe is not None and home is not None
        assert cafe.connected and cafe.known and not cafe.connecting
        assert not home.connected

    def test_mark_unknown_network(self, state: StateStore) -> None:
        """Test marking a missing network is refused."""
        assert not state.mark_network("/nope", connecting=True)

    def test_error_clears_flags(self, state: StateStore, networks: WifiNetworks, qtbot: QtBot) -> None:
        """Test an error resets flags and is forwarded."""
        state.apply_event(networks)
        state.mark_network(CAFE, connecting=True)

        with qtbot.wait_signal(state.wifi_error, timeout=100) as blocker:
            state.apply_event(WifiError("Wrong password"))

        assert blocker.args == ["Wrong password"]
        cafe = state.get_network(CAFE)
        assert cafe is not None and not cafe.connecting

    def test_passphrase_signal(self, state: StateStore, qtbot: QtBot) -> None:
        """Test passphrase prompts are forwarded with path and name."""
        with qtbot.wait_signal(state.passphrase_requested, timeout=100) as blocker:
            state.apply_event(PassphraseRequest(HOME, "Home"))
        assert blocker.args == [HOME, "Home"]


class TestBluetoothState:
    """Test device bookkeeping."""

    def test_add_and_remove(self, state: StateStore, qtbot: QtBot) -> None:
        """Test devices are added, updated in place and removed."""
        with qtbot.wait_signal(state.devices_changed, timeout=100):
            state.apply_event(BtDeviceAdded(BtDeviceData(ADDR, name="Buds")))
        device = state.get_device(ADDR)
        assert device is not None

        state.apply_event(BtDeviceChanged(BtDeviceData(ADDR, name="Buds", connected=True)))
        assert state.get_device(ADDR) is device
        assert device.connected

        state.apply_event(BtDeviceRemoved(ADDR))
        assert state.get_device(ADDR) is None

    def test_operation_done_with_error(self, state: StateStore, qtbot: QtBot) -> None:
        """Test the outcome clears flags and reports the error once."""
        state.apply_event(BtDeviceAdded(BtDeviceData(ADDR, name="Buds")))
        state.mark_device(ADDR, connecting=True)

        with qtbot.wait_signal(state.bt_error, timeout=100) as blocker:
            state.apply_event(BtOperationDone(BtDeviceData(ADDR, name="Buds"), "Connection refused by the device."))

        assert blocker.args == ["Connection refused by the device."]
        device = state.get_device(ADDR)
        assert device is not None and device.state is BtDeviceState.DISCOVERED

    def test_error_clears_all_flags(self, state: StateStore) -> None:
        """Test a generic error resets every device's flags."""
        state.apply_event(BtDeviceAdded(BtDeviceData(ADDR, name="Buds")))
        state.mark_device(ADDR, removing=True)
        state.apply_event(BtError("Bluetooth is not ready."))
        device = state.get_device(ADDR)
        assert device is not None and not device.removing

    def test_power_off_keeps_paired_only(self, state: StateStore) -> None:
        """Test unpaired devices vanish and paired ones read disconnected."""
        state.apply_event(BtDeviceAdded(BtDeviceData(ADDR, name="Buds", paired=True, connected=True)))
        state.apply_event(BtDeviceAdded(BtDeviceData(OTHER, name="Stranger")))
        state.apply_event(BtDiscovering(True))

        state.apply_event(BtPowered(False))

        assert [d.address for d in state.devices] == [ADDR]
        device = state.get_device(ADDR)
        assert device is not None and not device.connected
        assert not state.bt_discovering
        assert not state.bt_powered

    def test_discovering_signal_deduplicated(self, state: StateStore, qtbot: QtBot) -> None:
        """Test repeated discovering values emit once."""
        received: list[bool] = []
        state.bt_discovering_changed.connect(received.append)

        state.apply_event(BtDiscovering(True))
        state.apply_event(BtDiscovering(True))
        state.apply_event(BtDiscovering(False))

        assert received == [True, False]

    def test_pairing_prompt(self, state: StateStore, qtbot: QtBot) -> None:
        """Test pairing prompts are forwarded unchanged."""
        prompt = PairingPrompt(PairingKind.CONFIRM_PASSKEY, ADDR, "123456")
        with qtbot.wait_signal(state.pairing_requested, timeout=100) as blocker:
            state.apply_event(BtPairing(prompt))
        assert blocker.args == [prompt]

    def test_clear(self, state: StateStore, networks: WifiNetworks) -> None:
        """Test clear() drops networks and devices."""
        state.apply_event(networks)
        state.apply_event(BtDeviceAdded(BtDeviceData(ADDR, name="Buds")))
        state.clear()
        assert state.networks == []
        assert state.devices == []
