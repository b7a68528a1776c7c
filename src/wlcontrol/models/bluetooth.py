"""Bluetooth models: device records, UI entities and pairing prompts."""

import re
from dataclasses import dataclass
from enum import Enum

RSSI_UNKNOWN = -32768
BATTERY_UNKNOWN = -1
DEFAULT_ICON = "bluetooth"
MAX_PASSKEY = 999999

_ADDRESS_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")

_DEVICE_TYPES = {
    "audio-card": "Audio",
    "audio-headphones": "Headphones",
    "audio-headset": "Headset",
    "input-keyboard": "Keyboard",
    "input-mouse": "Mouse",
    "input-gaming": "Gamepad",
    "input-tablet": "Tablet",
    "phone": "Phone",
    "computer": "Computer",
    "camera-video": "Camera",
    "printer": "Printer",
}


def is_valid_address(address: str) -> bool:
    """Return True if address looks like "AA:BB:CC:DD:EE:FF"."""
    return bool(_ADDRESS_RE.match(address))


@dataclass(frozen=True, slots=True)
class BtDeviceData:
    """Snapshot of a Bluetooth device as read from the daemon.

    Attributes:
        address: Device address (stable key, doubles as its identifier).
        name: Remote name, empty if the device never reported one.
        alias: Daemon alias; defaults to the address when unset.
        icon: Freedesktop icon class, "bluetooth" if unknown.
        paired: Whether the device is paired.
        trusted: Whether the device is trusted.
        connected: Whether the device is connected.
        battery_percentage: 0-100, or -1 when unknown.
        rssi: Signal strength in dBm, or RSSI_UNKNOWN.
    """

    address: str
    name: str = ""
    alias: str = ""
    icon: str = DEFAULT_ICON
    paired: bool = False
    trusted: bool = False
    connected: bool = False
    battery_percentage: int = BATTERY_UNKNOWN
    rssi: int = RSSI_UNKNOWN

    @property
    def is_anonymous(self) -> bool:
        """Return True for nameless advertisement noise."""
        return not self.name and self.alias == self.address


class BtDeviceState(Enum):
    """Canonical state of a Bluetooth device as shown to the user."""

    REMOVING = "removing"
    DISCONNECTING = "disconnecting"
    PAIRING = "pairing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    PAIRED = "paired"
    DISCOVERED = "discovered"


def bt_device_state(
    *,
    paired: bool,
    connected: bool,
    connecting: bool = False,
    disconnecting: bool = False,
    removing: bool = False,
) -> BtDeviceState:
    """Resolve local operation flags and daemon state to one canonical state.

    A connecting device that is not yet paired is shown as pairing.

    Returns:
        Exactly one BtDeviceState for any combination of flags.
    """
    if removing:
        return BtDeviceState.REMOVING
    if disconnecting:
        return BtDeviceState.DISCONNECTING
    if connecting:
        return BtDeviceState.CONNECTING if paired else BtDeviceState.PAIRING
    if connected:
        return BtDeviceState.CONNECTED
    if paired:
        return BtDeviceState.PAIRED
    return BtDeviceState.DISCOVERED


@dataclass(slots=True, eq=False)
class BtDevice:
    """A Bluetooth device entry owned by the UI-side store.

    Mutated in place on every update so local operation flags survive
    daemon refreshes. Identity is the address.
    """

    address: str
    name: str = ""
    alias: str = ""
    icon: str = DEFAULT_ICON
    paired: bool = False
    trusted: bool = False
    connected: bool = False
    battery_percentage: int = BATTERY_UNKNOWN
    rssi: int = RSSI_UNKNOWN
    connecting: bool = False
    disconnecting: bool = False
    removing: bool = False

    @classmethod
    def from_data(cls, data: BtDeviceData) -> "BtDevice":
        """Create an entry from a daemon snapshot."""
        device = cls(address=data.address)
        device.update_from(data)
        return device

    def update_from(self, data: BtDeviceData) -> None:
        """Refresh daemon-owned fields, keeping local operation flags."""
        # Some devices only ever report an alias
        self.name = data.name or data.alias
        self.alias = data.alias
        self.icon = data.icon or DEFAULT_ICON
        self.paired = data.paired
        self.trusted = data.trusted
        self.connected = data.connected
        self.battery_percentage = data.battery_percentage
        self.rssi = data.rssi

    def clear_operations(self) -> None:
        """Reset all optimistic operation flags."""
        self.connecting = False
        self.disconnecting = False
        self.removing = False

    @property
    def state(self) -> BtDeviceState:
        """Return the canonical state for this device."""
        return bt_device_state(
            paired=self.paired,
            connected=self.connected,
            connecting=self.connecting,
            disconnecting=self.disconnecting,
            removing=self.removing,
        )

    @property
    def display_name(self) -> str:
        """Return alias, then name, then address."""
        return self.alias or self.name or self.address

    @property
    def device_type(self) -> str:
        """Return a human-readable device class derived from the icon."""
        return _DEVICE_TYPES.get(self.icon, "Bluetooth Device")

    @property
    def has_battery(self) -> bool:
        """Return True if the device reports a battery level."""
        return self.battery_percentage >= 0

    @property
    def has_rssi(self) -> bool:
        """Return True if a signal reading is available."""
        return self.rssi != RSSI_UNKNOWN


class PairingKind(Enum):
    """Interaction the Bluetooth daemon asks for during pairing."""

    CONFIRM_PASSKEY = "confirm_passkey"
    REQUEST_PIN = "request_pin"
    REQUEST_PASSKEY = "request_passkey"
    DISPLAY_PASSKEY = "display_passkey"
    DISPLAY_PIN = "display_pin"
    AUTHORIZE = "authorize"

    @property
    def needs_reply(self) -> bool:
        """Return True if the daemon blocks until the user answers."""
        return self not in (PairingKind.DISPLAY_PASSKEY, PairingKind.DISPLAY_PIN)


@dataclass(frozen=True, slots=True)
class PairingPrompt:
    """A pairing interaction forwarded to the UI.

    Attributes:
        kind: What the daemon asks for.
        address: Address of the remote device.
        code: Code to display (6-digit zero-padded for passkeys), or "".
    """

    kind: PairingKind
    address: str
    code: str = ""


def format_passkey(passkey: int) -> str:
    """Format a numeric passkey as the 6-digit code users compare."""
    return f"{passkey:06d}"
