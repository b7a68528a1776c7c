"""Data models for WiFi networks, Bluetooth devices, commands and events."""

from wlcontrol.models.bluetooth import (
    BtDevice,
    BtDeviceData,
    BtDeviceState,
    PairingKind,
    PairingPrompt,
    bt_device_state,
)
from wlcontrol.models.wifi import (
    KnownNetworkData,
    WifiAdapterInfo,
    WifiNetwork,
    WifiNetworkData,
    WifiNetworkState,
    wifi_network_state,
)

__all__ = [
    "BtDevice",
    "BtDeviceData",
    "BtDeviceState",
    "KnownNetworkData",
    "PairingKind",
    "PairingPrompt",
    "WifiAdapterInfo",
    "WifiNetwork",
    "WifiNetworkData",
    "WifiNetworkState",
    "bt_device_state",
    "wifi_network_state",
]
