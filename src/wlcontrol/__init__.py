"""wlcontrol - WiFi (iwd) and Bluetooth (BlueZ) control backend."""

__version__ = "0.1.0"
