"""Commands sent from the UI to the backend.

Delivery is at-most-once: the backend answers only through events.
"""

from dataclasses import dataclass

from wlcontrol.models.bluetooth import MAX_PASSKEY


@dataclass(frozen=True, slots=True)
class Command:
    """Base class for all backend commands."""


@dataclass(frozen=True, slots=True)
class Shutdown(Command):
    """Stop the backend loop gracefully."""


# WiFi


@dataclass(frozen=True, slots=True)
class WifiScan(Command):
    """Trigger a station scan."""


@dataclass(frozen=True, slots=True)
class WifiConnect(Command):
    """Connect to the network at path."""

    path: str


@dataclass(frozen=True, slots=True)
class WifiDisconnect(Command):
    """Disconnect the active station."""


@dataclass(frozen=True, slots=True)
class WifiForget(Command):
    """Forget the saved credentials of a visible network."""

    path: str


@dataclass(frozen=True, slots=True)
class WifiForgetKnown(Command):
    """Forget a saved network by its known-network path."""

    path: str


@dataclass(frozen=True, slots=True)
class WifiSetPowered(Command):
    """Power the active WiFi device on or off."""

    powered: bool


@dataclass(frozen=True, slots=True)
class WifiSwitchAdapter(Command):
    """Make another wireless device the active one."""

    device_path: str


@dataclass(frozen=True, slots=True)
class PassphraseResponse(Command):
    """Answer a pending passphrase request (None cancels)."""

    passphrase: str | None


# Bluetooth


@dataclass(frozen=True, slots=True)
class BtScan(Command):
    """Start device discovery."""


@dataclass(frozen=True, slots=True)
class BtStopScan(Command):
    """Stop device discovery."""


@dataclass(frozen=True, slots=True)
class BtConnect(Command):
    """Connect to a device."""

    address: str


@dataclass(frozen=True, slots=True)
class BtDisconnect(Command):
    """Disconnect a device."""

    address: str


@dataclass(frozen=True, slots=True)
class BtPair(Command):
    """Pair with a device."""

    address: str


@dataclass(frozen=True, slots=True)
class BtRemove(Command):
    """Remove (unpair) a device."""

    address: str


@dataclass(frozen=True, slots=True)
class BtSetAlias(Command):
    """Rename a device."""

    address: str
    alias: str


@dataclass(frozen=True, slots=True)
class BtSetTrusted(Command):
    """Set the trusted flag of a device."""

    address: str
    trusted: bool


@dataclass(frozen=True, slots=True)
class BtSetPowered(Command):
    """Power the Bluetooth adapter on or off."""

    powered: bool


@dataclass(frozen=True, slots=True)
class BtSetDiscoverable(Command):
    """Make the adapter visible to other devices."""

    discoverable: bool


@dataclass(frozen=True, slots=True)
class BtPairingResponse(Command):
    """Answer a confirm-passkey or authorize prompt."""

    accept: bool


@dataclass(frozen=True, slots=True)
class BtPairingPinResponse(Command):
    """Answer a PIN prompt (None rejects)."""

    pin: str | None


@dataclass(frozen=True, slots=True)
class BtPairingPasskeyResponse(Command):
    """Answer a passkey prompt (None rejects)."""

    passkey: int | None

    def __post_init__(self) -> None:
        """Reject passkeys outside 0-999999."""
        if self.passkey is not None and not 0 <= self.passkey <= MAX_PASSKEY:
            raise ValueError(f"passkey out of range: {self.passkey}")
