"""WiFi adapter: one active iwd station device.

Translates iwd objects and errors into wlcontrol events. Each operation
reports its outcome on the event queue; nothing here raises to the caller.
"""

import asyncio
import logging
import re

from dbus_fast.errors import DBusError

from wlcontrol.api.bus import error_text
from wlcontrol.api.iwd import IwdProxy
from wlcontrol.core.captive import detect_captive_portal
from wlcontrol.core.config import BackendSettings
from wlcontrol.core.inflight import InFlightSlot
from wlcontrol.models.events import (
    CaptivePortal,
    Event,
    WifiConnected,
    WifiConnecting,
    WifiError,
    WifiKnownNetworks,
    WifiNetworkKnown,
    WifiNetworks,
    WifiPowered,
    WifiScanning,
)

logger = logging.getLogger(__name__)

# Station poll backoff: 50ms doubling, capped at 800ms
STATION_POLL_BASE = 0.05
STATION_POLL_MAX_SHIFT = 4

_OBJECT_PATH_RE = re.compile(r"^/([A-Za-z0-9_]+(/[A-Za-z0-9_]+)*)?$")

# Checked in order; first match wins
_IWD_ERRORS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("Aborted", "Canceled"), "Connection cancelled"),
    (("InvalidFormat", "InvalidArguments"), "Invalid password"),
    (("AuthenticationFailed",), "Wrong password"),
    (("NotConnected",), "Not connected"),
    (("Busy",), "Device is busy, try again"),
    (("NotFound",), "Network not found"),
    (("NoAgent",), "No agent registered"),
    (("Failed",), "Connection failed"),
)


def format_iwd_error(text: str) -> str:
    """Translate an iwd error into a user-facing message.

    Args:
        text: Error name and/or message as reported over the bus.

    Returns:
        One of the fixed messages, or "Connection failed: <text>".
    """
    for patterns, message in _IWD_ERRORS:
        if any(p in text for p in patterns):
            return message
    return f"Connection failed: {text}"


def station_poll_delay(attempt: int) -> float:
    """Return the delay in seconds before station poll number attempt + 1."""
    return STATION_POLL_BASE * (1 << min(attempt, STATION_POLL_MAX_SHIFT))


def is_object_path(path: str) -> bool:
    """Return True if path is a syntactically valid bus object path."""
    return bool(_OBJECT_PATH_RE.match(path))


class WifiBackend:
    """Operations on one iwd device and its station.

    Example:
        wifi = WifiBackend(IwdProxy(connection), "/net/connman/iwd/0/4", events)
        await wifi.send_initial_state()
        await wifi.connect("/net/connman/iwd/0/4/6e6574_psk")
    """

    def __init__(
        self,
        proxy: IwdProxy,
        device_path: str,
        events: "asyncio.Queue[Event]",
        settings: BackendSettings | None = None,
    ) -> None:
        """Initialize the adapter for one device.

        Args:
            proxy: iwd accessors.
            device_path: Bus path of the active device.
            events: Queue the UI reads events from.
            settings: Timeouts and captive-portal options.
        """
        self._proxy = proxy
        self._device_path = device_path
        self._events = events
        self._settings = settings or BackendSettings()
        self._connect_slot = InFlightSlot("wifi-connect")

    @property
    def device_path(self) -> str:
        """Return the bus path of the device this adapter drives."""
        return self._device_path

    @property
    def connect_slot(self) -> InFlightSlot:
        """Return the single-flight slot holding the pending connect."""
        return self._connect_slot

    async def _emit(self, event: Event) -> None:
        await self._events.put(event)

    # -- Queries ---------------------------------------------------------------

    async def is_powered(self) -> bool:
        """Return whether the device is powered (False if unreadable)."""
        try:
            return await self._proxy.is_powered(self._device_path)
        except DBusError as e:
            logger.warning("Cannot read Powered of %s: %s", self._device_path, e)
            return False

    async def has_station(self) -> bool:
        """Return True if the Station interface is currently present."""
        try:
            return await self._proxy.has_station(self._device_path)
        except DBusError as e:
            logger.debug("Station lookup failed: %s", e)
            return False

    async def wait_for_station(self, attempts: int | None = None) -> bool:
        """Poll for the Station interface with exponential backoff.

        iwd adds the interface a moment after the device powers on.

        Args:
            attempts: Number of polls (defaults to the configured value).

        Returns:
            True once the station exists, False if it never appeared.
        """
        attempts = attempts if attempts is not None else self._settings.station_retry_attempts
        for attempt in range(attempts):
            if await self.has_station():
                if attempt:
                    logger.debug("Station appeared after %d polls", attempt + 1)
                return True
            if attempt < attempts - 1:
                await asyncio.sleep(station_poll_delay(attempt))
        logger.warning("Station interface did not appear on %s", self._device_path)
        return False

    # -- Snapshots -------------------------------------------------------------

    async def send_networks(self) -> None:
        """Emit the current scan snapshot (empty without a station)."""
        if not await self.has_station():
            await self._emit(WifiNetworks(()))
            return
        try:
            networks = await self._proxy.list_networks(self._device_path)
        except DBusError as e:
            logger.error("Cannot list networks: %s", e)
            return
        await self._emit(WifiNetworks(tuple(networks)))

    async def send_known_networks(self) -> None:
        """Emit all saved networks."""
        try:
            known = await self._proxy.known_networks()
        except DBusError as e:
            logger.error("Cannot list known networks: %s", e)
            return
        await self._emit(WifiKnownNetworks(tuple(known)))

    async def send_connected_status(self) -> None:
        """Emit the network the station is connected to."""
        await self._emit(WifiConnected(await self._actual_connected()))

    async def _actual_connected(self) -> str | None:
        try:
            return await self._proxy.connected_network(self._device_path)
        except DBusError as e:
            logger.debug("Cannot read ConnectedNetwork: %s", e)
            return None

    async def send_initial_state(self) -> None:
        """Emit powered, then (if powered) scanning and networks, then saved networks."""
        powered = await self.is_powered()
        await self._emit(WifiPowered(powered))
        if powered:
            scanning = False
            if await self.has_station():
                try:
                    scanning = await self._proxy.is_scanning(self._device_path)
                except DBusError as e:
                    logger.debug("Cannot read Scanning: %s", e)
            await self._emit(WifiScanning(scanning))
            await self.send_networks()
        await self.send_known_networks()

    # -- Operations ------------------------------------------------------------

    async def scan(self) -> None:
        """Start a scan; no-op while powered off or without a station."""
        if not await self.is_powered():
            return
        # Right after power-on the station may still be missing
        if not await self.wait_for_station():
            return
        try:
            await self._proxy.scan(self._device_path)
        except DBusError as e:
            logger.error("Scan failed: %s", e)
            await self._emit(WifiError(f"Scan: {error_text(e)}"))

    async def connect(self, network_path: str) -> None:
        """Connect to a network, cancelling any connect still in flight."""
        await self._connect_slot.replace(lambda: self._run_connect(network_path))

    async def _run_connect(self, network_path: str) -> None:
        await self._emit(WifiConnecting(network_path))
        if not is_object_path(network_path):
            await self._emit(WifiConnected(None))
            await self._emit(WifiError("Invalid network path"))
            return

        timeout = self._settings.connect_timeout
        try:
            await asyncio.wait_for(self._proxy.connect_network(network_path), timeout=timeout)
        except TimeoutError:
            logger.error("Connect to %s timed out after %.0fs", network_path, timeout)
            await self.send_connected_status()
            await self._emit(WifiError("Connection timed out"))
            return
        except DBusError as e:
            logger.error("Connect to %s failed: %s", network_path, e)
            # Never assume disconnected: a failed attempt may leave the old link up
            await self.send_connected_status()
            await self._emit(WifiError(format_iwd_error(error_text(e))))
            return

        logger.info("Connected to %s", network_path)
        await self._emit(WifiConnected(network_path))
        await self._emit(WifiNetworkKnown(network_path))
        if self._settings.captive_check_enabled:
            url = await detect_captive_portal(self._settings.captive_check_url)
            if url:
                await self._emit(CaptivePortal(url))

    async def disconnect(self) -> None:
        """Disconnect the station."""
        try:
            await self._proxy.disconnect(self._device_path)
        except DBusError as e:
            logger.error("Disconnect failed: %s", e)
            await self._emit(WifiError(f"Disconnect: {error_text(e)}"))
            return
        await self._emit(WifiConnected(None))

    async def forget(self, network_path: str) -> None:
        """Forget the saved credentials of a visible network."""
        if not is_object_path(network_path):
            await self._emit(WifiError("Invalid network path"))
            return
        try:
            props = await self._proxy.network_properties(network_path)
        except DBusError as e:
            logger.error("Cannot read network %s: %s", network_path, e)
            await self._emit(WifiError("Failed to forget network"))
            return
        known_path = props.get("KnownNetwork")
        if not known_path:
            await self._emit(WifiError("Network is not saved"))
            return
        try:
            await self._proxy.forget_known_network(str(known_path))
        except DBusError as e:
            logger.error("Forget %s failed: %s", network_path, e)
            await self._emit(WifiError(f"Forget: {error_text(e)}"))
            return
        logger.info("Forgot network %s", network_path)
        await self.send_networks()
        await self.send_known_networks()

    async def forget_known(self, known_path: str) -> None:
        """Forget a saved network by its known-network path."""
        if not is_object_path(known_path):
            await self._emit(WifiError("Invalid network path"))
            return
        try:
            await self._proxy.forget_known_network(known_path)
        except DBusError as e:
            logger.error("Forget %s failed: %s", known_path, e)
            await self._emit(WifiError(f"Forget: {error_text(e)}"))
            return
        logger.info("Forgot known network %s", known_path)
        await self.send_known_networks()

    async def set_powered(self, powered: bool) -> None:
        """Power the device on or off; the change arrives as a property event."""
        try:
            await self._proxy.set_powered(self._device_path, powered)
        except DBusError as e:
            logger.error("Set powered %s failed: %s", powered, e)
            await self._emit(WifiError(f"Power: {error_text(e)}"))
            await self._emit(WifiPowered(await self.is_powered()))

    async def shutdown(self) -> None:
        """Cancel any connect still in flight."""
        await self._connect_slot.cancel()
