"""Tests for ConfigManager using QSettings."""

from collections.abc import Iterator

import pytest

from wlcontrol.core.captive import DEFAULT_CHECK_URL
from wlcontrol.core.config import BackendSettings, ConfigManager


@pytest.fixture
def config() -> Iterator[ConfigManager]:
    """Return a fresh ConfigManager for each test."""
    # Use unique organization/app to avoid test interference
    config = ConfigManager("WlcontrolTest", "TestConfig")
    config.clear()
    yield config
    config.clear()


class TestDefaults:
    """Test values of an empty store."""

    def test_snapshot_matches_dataclass_defaults(self, config: ConfigManager) -> None:
        """Test the backend snapshot of an empty store equals the defaults."""
        assert config.backend_settings() == BackendSettings()

    def test_captive_url_default(self, config: ConfigManager) -> None:
        """Test the check URL falls back when unset or empty."""
        assert config.get_captive_check_url() == DEFAULT_CHECK_URL
        config.set_captive_check_url("")
        assert config.get_captive_check_url() == DEFAULT_CHECK_URL


class TestWifiSettings:
    """Test WiFi keys."""

    def test_connect_timeout_clamped(self, config: ConfigManager) -> None:
        """Test the timeout is kept within 10-300 seconds."""
        config.set_connect_timeout(5)
        assert config.get_connect_timeout() == 10
        config.set_connect_timeout(1000)
        assert config.get_connect_timeout() == 300
        config.set_connect_timeout(45)
        assert config.get_connect_timeout() == 45

    def test_station_retry_clamped(self, config: ConfigManager) -> None:
        """Test station poll attempts are kept within 1-30."""
        config.set_station_retry_attempts(0)
        assert config.get_station_retry_attempts() == 1
        config.set_station_retry_attempts(99)
        assert config.get_station_retry_attempts() == 30

    def test_last_adapter_feeds_snapshot(self, config: ConfigManager) -> None:
        """Test the remembered adapter becomes the preferred one."""
        config.set_last_adapter("/net/connman/iwd/0/4")
        assert config.get_last_adapter() == "/net/connman/iwd/0/4"
        assert config.backend_settings().preferred_adapter == "/net/connman/iwd/0/4"


class TestBluetoothSettings:
    """Test Bluetooth keys."""

    def test_disable_bluetooth(self, config: ConfigManager) -> None:
        """Test the enable flag round-trips."""
        config.set_bluetooth_enabled(False)
        assert config.get_bluetooth_enabled() is False
        assert config.backend_settings().bluetooth_enabled is False

    def test_scan_timeout_clamped(self, config: ConfigManager) -> None:
        """Test the discovery timeout is kept within 5-300 seconds."""
        config.set_scan_timeout(1)
        assert config.get_scan_timeout() == 5
        config.set_scan_timeout(60)
        assert config.backend_settings().scan_timeout == 60.0

    def test_unknown_capability_ignored(self, config: ConfigManager) -> None:
        """Test invalid IO capabilities are not stored."""
        config.set_agent_capability("NoInputNoOutput")
        config.set_agent_capability("Telepathy")
        assert config.get_agent_capability() == "NoInputNoOutput"


class TestPersistence:
    """Test settings survive a new manager instance."""

    def test_values_persist(self, config: ConfigManager) -> None:
        """Test a second manager sees synced values."""
        config.set_captive_check_enabled(False)
        config.sync()

        other = ConfigManager("WlcontrolTest", "TestConfig")
        assert other.get_captive_check_enabled() is False
