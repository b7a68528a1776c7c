"""Configuration manager using QSettings for persistent storage."""

import logging
from dataclasses import dataclass

from PySide6.QtCore import QSettings

from wlcontrol.core.captive import DEFAULT_CHECK_URL

logger = logging.getLogger(__name__)

# WiFi
_KEY_CONNECT_TIMEOUT = "wifi/connect_timeout"
_KEY_STATION_RETRY_ATTEMPTS = "wifi/station_retry_attempts"
_KEY_LAST_ADAPTER = "wifi/last_adapter"

# Bluetooth
_KEY_BT_ENABLED = "bluetooth/enabled"
_KEY_SCAN_TIMEOUT = "bluetooth/scan_timeout"
_KEY_AGENT_CAPABILITY = "bluetooth/agent_capability"

# Network
_KEY_CAPTIVE_CHECK_ENABLED = "network/captive_check_enabled"
_KEY_CAPTIVE_CHECK_URL = "network/captive_check_url"

AGENT_CAPABILITIES = (
    "DisplayOnly",
    "DisplayYesNo",
    "KeyboardOnly",
    "NoInputNoOutput",
    "KeyboardDisplay",
)


@dataclass(frozen=True, slots=True)
class BackendSettings:
    """Settings snapshot handed to the backend thread.

    Attributes:
        connect_timeout: Seconds before a WiFi connect is abandoned.
        station_retry_attempts: Polls for the station after power-on.
        scan_timeout: Seconds before Bluetooth discovery stops by itself.
        bluetooth_enabled: Whether to start the Bluetooth side at all.
        agent_capability: IO capability announced to BlueZ.
        captive_check_enabled: Probe for a captive portal after connecting.
        captive_check_url: Connectivity-check URL (expects HTTP 204).
        preferred_adapter: Device path to activate first if present.
    """

    connect_timeout: float = 60.0
    station_retry_attempts: int = 10
    scan_timeout: float = 30.0
    bluetooth_enabled: bool = True
    agent_capability: str = "KeyboardDisplay"
    captive_check_enabled: bool = True
    captive_check_url: str = DEFAULT_CHECK_URL
    preferred_adapter: str = ""


class ConfigManager:
    """Wrapper around QSettings for type-safe config access.

    QSettings stores config in platform-specific locations, on Linux
    ~/.config/wlcontrol/wlcontrol.conf.

    Example:
        config = ConfigManager()
        worker = BackendWorker(config.backend_settings())
    """

    def __init__(self, organization: str = "wlcontrol", application: str = "wlcontrol") -> None:
        """Initialize the config manager.

        Args:
            organization: Organization name for QSettings.
            application: Application name for QSettings.
        """
        self._settings = QSettings(organization, application)

    @property
    def settings(self) -> QSettings:
        """Return the underlying QSettings instance."""
        return self._settings

    def backend_settings(self) -> BackendSettings:
        """Return an immutable snapshot for the backend thread."""
        return BackendSettings(
            connect_timeout=float(self.get_connect_timeout()),
            station_retry_attempts=self.get_station_retry_attempts(),
            scan_timeout=float(self.get_scan_timeout()),
            bluetooth_enabled=self.get_bluetooth_enabled(),
            agent_capability=self.get_agent_capability(),
            captive_check_enabled=self.get_captive_check_enabled(),
            captive_check_url=self.get_captive_check_url(),
            preferred_adapter=self.get_last_adapter(),
        )

    # -- WiFi settings ---------------------------------------------------------

    def get_connect_timeout(self) -> int:
        """Return the WiFi connect timeout in seconds.

        Returns:
            Timeout in seconds (default 60).
        """
        value = self._settings.value(_KEY_CONNECT_TIMEOUT, 60, int)
        return max(10, min(300, int(value)))  # type: ignore[arg-type]

    def set_connect_timeout(self, seconds: int) -> None:
        """Set the WiFi connect timeout.

        Args:
            seconds: Timeout in seconds (10-300).
        """
        self._settings.setValue(_KEY_CONNECT_TIMEOUT, max(10, min(300, seconds)))

    def get_station_retry_attempts(self) -> int:
        """Return how often to poll for the station after power-on.

        Returns:
            Number of attempts (default 10).
        """
        value = self._settings.value(_KEY_STATION_RETRY_ATTEMPTS, 10, int)
        return max(1, min(30, int(value)))  # type: ignore[arg-type]

    def set_station_retry_attempts(self, attempts: int) -> None:
        """Set the station poll attempts.

        Args:
            attempts: Number of attempts (1-30).
        """
        self._settings.setValue(_KEY_STATION_RETRY_ATTEMPTS, max(1, min(30, attempts)))

    def get_last_adapter(self) -> str:
        """Return the last active WiFi device path.

        Returns:
            Bus path, or empty string if never set.
        """
        value = self._settings.value(_KEY_LAST_ADAPTER, "", str)
        return str(value) if value else ""

    def set_last_adapter(self, device_path: str) -> None:
        """Remember the active WiFi device.

        Args:
            device_path: Bus path of the device.
        """
        self._settings.setValue(_KEY_LAST_ADAPTER, device_path)

    # -- Bluetooth settings ----------------------------------------------------

    def get_bluetooth_enabled(self) -> bool:
        """Return whether the Bluetooth side should start."""
        return bool(self._settings.value(_KEY_BT_ENABLED, True, bool))

    def set_bluetooth_enabled(self, enabled: bool) -> None:
        """Enable or disable the Bluetooth side."""
        self._settings.setValue(_KEY_BT_ENABLED, enabled)

    def get_scan_timeout(self) -> int:
        """Return the Bluetooth discovery timeout in seconds.

        Returns:
            Timeout in seconds (default 30).
        """
        value = self._settings.value(_KEY_SCAN_TIMEOUT, 30, int)
        return max(5, min(300, int(value)))  # type: ignore[arg-type]

    def set_scan_timeout(self, seconds: int) -> None:
        """Set the Bluetooth discovery timeout.

        Args:
            seconds: Timeout in seconds (5-300).
        """
        self._settings.setValue(_KEY_SCAN_TIMEOUT, max(5, min(300, seconds)))

    def get_agent_capability(self) -> str:
        """Return the pairing agent IO capability.

        Returns:
            One of AGENT_CAPABILITIES. Default "KeyboardDisplay".
        """
        value = self._settings.value(_KEY_AGENT_CAPABILITY, "KeyboardDisplay", str)
        return str(value) if value in AGENT_CAPABILITIES else "KeyboardDisplay"

    def set_agent_capability(self, capability: str) -> None:
        """Set the pairing agent IO capability.

        Args:
            capability: One of AGENT_CAPABILITIES.
        """
        if capability not in AGENT_CAPABILITIES:
            logger.warning("Ignoring unknown agent capability: %s", capability)
            return
        self._settings.setValue(_KEY_AGENT_CAPABILITY, capability)

    # -- Network settings ------------------------------------------------------

    def get_captive_check_enabled(self) -> bool:
        """Return whether to probe for captive portals after connecting."""
        return bool(self._settings.value(_KEY_CAPTIVE_CHECK_ENABLED, True, bool))

    def set_captive_check_enabled(self, enabled: bool) -> None:
        """Enable or disable the captive portal probe."""
        self._settings.setValue(_KEY_CAPTIVE_CHECK_ENABLED, enabled)

    def get_captive_check_url(self) -> str:
        """Return the connectivity-check URL.

        Returns:
            URL expected to answer HTTP 204.
        """
        value = self._settings.value(_KEY_CAPTIVE_CHECK_URL, DEFAULT_CHECK_URL, str)
        return str(value) if value else DEFAULT_CHECK_URL

    def set_captive_check_url(self, url: str) -> None:
        """Set the connectivity-check URL."""
        self._settings.setValue(_KEY_CAPTIVE_CHECK_URL, url)

    def clear(self) -> None:
        """Clear all settings (for testing)."""
        self._settings.clear()

    def sync(self) -> None:
        """Force sync settings to disk."""
        self._settings.sync()
