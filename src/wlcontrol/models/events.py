"""Events sent from the backend to the UI."""

from dataclasses import dataclass

from wlcontrol.models.bluetooth import BtDeviceData, PairingPrompt
from wlcontrol.models.wifi import KnownNetworkData, WifiAdapterInfo, WifiNetworkData


@dataclass(frozen=True, slots=True)
class Event:
    """Base class for all backend events."""


# Availability


@dataclass(frozen=True, slots=True)
class WifiAvailable(Event):
    available: bool


@dataclass(frozen=True, slots=True)
class BtAvailable(Event):
    available: bool


# WiFi


@dataclass(frozen=True, slots=True)
class WifiDevices(Event):
    """Inventory of wireless devices and the active selection."""

    devices: tuple[WifiAdapterInfo, ...]
    active_path: str | None


@dataclass(frozen=True, slots=True)
class WifiPowered(Event):
    powered: bool


@dataclass(frozen=True, slots=True)
class WifiScanning(Event):
    scanning: bool


@dataclass(frozen=True, slots=True)
class WifiNetworks(Event):
    """Full snapshot of visible networks, strongest first."""

    networks: tuple[WifiNetworkData, ...]


@dataclass(frozen=True, slots=True)
class WifiKnownNetworks(Event):
    """Full snapshot of saved networks."""

    networks: tuple[KnownNetworkData, ...]


@dataclass(frozen=True, slots=True)
class WifiConnected(Event):
    """The network the station is connected to, or None."""

    path: str | None


@dataclass(frozen=True, slots=True)
class WifiConnecting(Event):
    path: str


@dataclass(frozen=True, slots=True)
class WifiNetworkKnown(Event):
    """The network at path now has saved credentials."""

    path: str


@dataclass(frozen=True, slots=True)
class PassphraseRequest(Event):
    """The station daemon needs a passphrase; answer with PassphraseResponse."""

    network_path: str
    network_name: str


@dataclass(frozen=True, slots=True)
class CaptivePortal(Event):
    """A captive portal was detected after connecting."""

    url: str


@dataclass(frozen=True, slots=True)
class WifiError(Event):
    message: str


# Bluetooth


@dataclass(frozen=True, slots=True)
class BtPowered(Event):
    powered: bool


@dataclass(frozen=True, slots=True)
class BtDiscovering(Event):
    discovering: bool


@dataclass(frozen=True, slots=True)
class BtDiscoverable(Event):
    discoverable: bool


@dataclass(frozen=True, slots=True)
class BtConnecting(Event):
    address: str


@dataclass(frozen=True, slots=True)
class BtDeviceAdded(Event):
    device: BtDeviceData


@dataclass(frozen=True, slots=True)
class BtDeviceChanged(Event):
    device: BtDeviceData


@dataclass(frozen=True, slots=True)
class BtDeviceRemoved(Event):
    address: str


@dataclass(frozen=True, slots=True)
class BtOperationDone(Event):
    """A connect, disconnect or pair finished.

    Carries the device state re-read from the daemon and the translated
    error, if any.
    """

    device: BtDeviceData
    error: str | None = None


@dataclass(frozen=True, slots=True)
class BtPairing(Event):
    """A pairing interaction; interactive kinds expect a response command."""

    prompt: PairingPrompt


@dataclass(frozen=True, slots=True)
class BtError(Event):
    message: str
