"""WiFi models: adapters, scan results, saved networks and UI entities."""

from dataclasses import dataclass
from enum import Enum

# Signal thresholds in dBm for the 0-4 level scale
_SIGNAL_EXCELLENT = -50
_SIGNAL_GOOD = -60
_SIGNAL_OK = -70
_SIGNAL_WEAK = -80

_SECURITY_LABELS = {
    "open": "Open",
    "psk": "WPA/WPA2",
    "8021x": "Enterprise",
    "wep": "WEP",
}


@dataclass(frozen=True, slots=True)
class WifiAdapterInfo:
    """A wireless device known to the station daemon.

    Attributes:
        device_path: Bus object path of the device (stable key).
        device_name: Kernel interface name, e.g. "wlan0".
        vendor: Adapter vendor string (empty if unknown).
        model: Adapter model string (empty if unknown).
    """

    device_path: str
    device_name: str
    vendor: str = ""
    model: str = ""

    @property
    def display_name(self) -> str:
        """Return "vendor model" when known, else the interface name."""
        label = " ".join(part for part in (self.vendor, self.model) if part)
        if label:
            return f"{label} ({self.device_name})" if self.device_name else label
        return self.device_name or self.device_path


@dataclass(frozen=True, slots=True)
class WifiNetworkData:
    """One network from a scan snapshot.

    Attributes:
        path: Bus object path of the network (stable key).
        name: SSID.
        network_type: Security type ("open", "psk", "8021x", ...).
        signal_strength: Signal in 100 * dBm, as reported by the daemon.
        connected: Whether the station is connected to this network.
        known: Whether the daemon has saved credentials for it.
    """

    path: str
    name: str
    network_type: str = "open"
    signal_strength: int = 0
    connected: bool = False
    known: bool = False


@dataclass(frozen=True, slots=True)
class KnownNetworkData:
    """A saved network, independent of radio visibility."""

    path: str
    name: str
    network_type: str = "open"


class WifiNetworkState(Enum):
    """Canonical state of a WiFi network entry as shown to the user."""

    FORGETTING = "forgetting"
    DISCONNECTING = "disconnecting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SAVED_OFFLINE = "saved_offline"
    SAVED = "saved"
    AVAILABLE = "available"


def wifi_network_state(
    *,
    connected: bool,
    known: bool,
    offline: bool = False,
    connecting: bool = False,
    disconnecting: bool = False,
    forgetting: bool = False,
) -> WifiNetworkState:
    """Resolve local operation flags and daemon state to one canonical state.

    Local flags win over daemon truth, so an optimistic "connecting" shows
    even while the daemon still reports the previous network as connected.

    Returns:
        Exactly one WifiNetworkState for any combination of flags.
    """
    if forgetting:
        return WifiNetworkState.FORGETTING
    if disconnecting:
        return WifiNetworkState.DISCONNECTING
    if connecting:
        return WifiNetworkState.CONNECTING
    if connected:
        return WifiNetworkState.CONNECTED
    if known and offline:
        return WifiNetworkState.SAVED_OFFLINE
    if known:
        return WifiNetworkState.SAVED
    return WifiNetworkState.AVAILABLE


@dataclass(slots=True, eq=False)
class WifiNetwork:
    """A WiFi network entry owned by the UI-side store.

    Mutated in place on every refresh so the local operation flags survive
    new scan snapshots. Identity is the bus path.
    """

    path: str
    name: str
    network_type: str = "open"
    signal_strength: int = 0
    connected: bool = False
    known: bool = False
    offline: bool = False
    connecting: bool = False
    disconnecting: bool = False
    forgetting: bool = False

    @classmethod
    def from_data(cls, data: WifiNetworkData) -> "WifiNetwork":
        """Create a visible entry from a scan record."""
        return cls(
            path=data.path,
            name=data.name,
            network_type=data.network_type,
            signal_strength=data.signal_strength,
            connected=data.connected,
            known=data.known,
        )

    @classmethod
    def saved_offline(cls, known: KnownNetworkData) -> "WifiNetwork":
        """Create a "saved but out of range" entry from a known network."""
        return cls(
            path=known.path,
            name=known.name,
            network_type=known.network_type,
            known=True,
            offline=True,
        )

    def update_from(self, data: WifiNetworkData) -> None:
        """Refresh daemon-owned fields, keeping local operation flags."""
        self.name = data.name
        self.network_type = data.network_type
        self.signal_strength = data.signal_strength
        self.connected = data.connected
        self.known = data.known
        self.offline = False

    def clear_operations(self) -> None:
        """Reset all optimistic operation flags."""
        self.connecting = False
        self.disconnecting = False
        self.forgetting = False

    @property
    def state(self) -> WifiNetworkState:
        """Return the canonical state for this entry."""
        return wifi_network_state(
            connected=self.connected,
            known=self.known,
            offline=self.offline,
            connecting=self.connecting,
            disconnecting=self.disconnecting,
            forgetting=self.forgetting,
        )

    @property
    def signal_dbm(self) -> int:
        """Return the signal strength in dBm."""
        return int(self.signal_strength / 100)

    @property
    def signal_level(self) -> int:
        """Return signal quality on a 0-4 scale (0 when offline)."""
        if self.offline:
            return 0
        dbm = self.signal_dbm
        if dbm >= _SIGNAL_EXCELLENT:
            return 4
        if dbm >= _SIGNAL_GOOD:
            return 3
        if dbm >= _SIGNAL_OK:
            return 2
        if dbm >= _SIGNAL_WEAK:
            return 1
        return 0

    @property
    def is_secured(self) -> bool:
        """Return True unless the network is open."""
        return self.network_type != "open"

    @property
    def security_label(self) -> str:
        """Return a human-readable security type."""
        return _SECURITY_LABELS.get(self.network_type, self.network_type.upper())

    @property
    def key(self) -> tuple[str, str]:
        """Return the (name, type) pair used to match saved networks."""
        return (self.name, self.network_type)
