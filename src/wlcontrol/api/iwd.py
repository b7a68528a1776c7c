"""Typed accessors for the iwd station daemon (net.connman.iwd)."""

import logging
from typing import Any

from dbus_fast import Message
from dbus_fast.errors import DBusError

from wlcontrol.api.bus import (
    OBJECT_MANAGER_INTERFACE,
    PROPERTIES_INTERFACE,
    BusConnection,
    MatchRule,
    SignalStream,
    properties_changed,
)
from wlcontrol.models.wifi import KnownNetworkData, WifiAdapterInfo, WifiNetworkData

logger = logging.getLogger(__name__)

IWD_SERVICE = "net.connman.iwd"
AGENT_MANAGER_PATH = "/net/connman/iwd"

ADAPTER_INTERFACE = "net.connman.iwd.Adapter"
DEVICE_INTERFACE = "net.connman.iwd.Device"
STATION_INTERFACE = "net.connman.iwd.Station"
NETWORK_INTERFACE = "net.connman.iwd.Network"
KNOWN_NETWORK_INTERFACE = "net.connman.iwd.KnownNetwork"
AGENT_MANAGER_INTERFACE = "net.connman.iwd.AgentManager"
AGENT_INTERFACE = "net.connman.iwd.Agent"


def _device_path(msg: Message) -> str | None:
    # InterfacesAdded carries a dict, InterfacesRemoved a list; both support "in"
    path, interfaces = msg.body
    return path if DEVICE_INTERFACE in interfaces else None


class IwdProxy:
    """Access to iwd objects over the system bus.

    All methods raise DBusError when iwd rejects a call.
    """

    def __init__(self, connection: BusConnection) -> None:
        self._connection = connection

    @property
    def connection(self) -> BusConnection:
        """Return the bus connection."""
        return self._connection

    async def _call(self, path: str, interface: str, member: str, signature: str = "", body: list[Any] | None = None) -> list[Any]:
        return await self._connection.call(IWD_SERVICE, path, interface, member, signature, body)

    async def _props(self, path: str, interface: str) -> dict[str, Any]:
        return await self._connection.get_all_properties(IWD_SERVICE, path, interface)

    async def managed_objects(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Return all iwd objects with their interfaces and properties."""
        return await self._connection.get_managed_objects(IWD_SERVICE, "/")

    # -- Devices ---------------------------------------------------------------

    async def find_devices(self) -> list[WifiAdapterInfo]:
        """Enumerate wireless devices in bus path order.

        Returns:
            One WifiAdapterInfo per object carrying the Device interface.
        """
        objects = await self.managed_objects()
        devices: list[WifiAdapterInfo] = []
        for path in sorted(objects):
            device = objects[path].get(DEVICE_INTERFACE)
            if device is None:
                continue
            adapter = objects.get(str(device.get("Adapter", "")), {}).get(ADAPTER_INTERFACE, {})
            devices.append(
                WifiAdapterInfo(
                    device_path=path,
                    device_name=str(device.get("Name", "")),
                    vendor=str(adapter.get("Vendor", "")),
                    model=str(adapter.get("Model", "")),
                )
            )
        return devices

    async def has_station(self, device_path: str) -> bool:
        """Return True if the Station interface exists on the device."""
        objects = await self.managed_objects()
        return STATION_INTERFACE in objects.get(device_path, {})

    async def is_powered(self, device_path: str) -> bool:
        """Return the device Powered property."""
        return bool(await self._connection.get_property(IWD_SERVICE, device_path, DEVICE_INTERFACE, "Powered"))

    async def set_powered(self, device_path: str, powered: bool) -> None:
        """Set the device Powered property."""
        await self._connection.set_property(IWD_SERVICE, device_path, DEVICE_INTERFACE, "Powered", "b", powered)

    # -- Station ---------------------------------------------------------------

    async def scan(self, device_path: str) -> None:
        """Start a station scan."""
        await self._call(device_path, STATION_INTERFACE, "Scan")

    async def is_scanning(self, device_path: str) -> bool:
        """Return the station Scanning property."""
        props = await self._props(device_path, STATION_INTERFACE)
        return bool(props.get("Scanning", False))

    async def disconnect(self, device_path: str) -> None:
        """Disconnect the station."""
        await self._call(device_path, STATION_INTERFACE, "Disconnect")

    async def ordered_networks(self, device_path: str) -> list[tuple[str, int]]:
        """Return [(network path, signal in 100 * dBm)], strongest first."""
        body = await self._call(device_path, STATION_INTERFACE, "GetOrderedNetworks")
        return [(str(path), int(signal)) for path, signal in body[0]]

    async def connected_network(self, device_path: str) -> str | None:
        """Return the path of the connected network, or None.

        ConnectedNetwork only exists while connected, so read it via GetAll.
        """
        props = await self._props(device_path, STATION_INTERFACE)
        path = props.get("ConnectedNetwork")
        return str(path) if path else None

    async def list_networks(self, device_path: str) -> list[WifiNetworkData]:
        """Return the current scan snapshot with connected/known flags."""
        connected = await self.connected_network(device_path)
        networks: list[WifiNetworkData] = []
        for path, signal in await self.ordered_networks(device_path):
            try:
                props = await self.network_properties(path)
            except DBusError as e:
                # Network vanished between listing and reading
                logger.debug("Skipping network %s: %s", path, e)
                continue
            networks.append(
                WifiNetworkData(
                    path=path,
                    name=str(props.get("Name", "")),
                    network_type=str(props.get("Type", "open")),
                    signal_strength=signal,
                    connected=connected == path,
                    known="KnownNetwork" in props,
                )
            )
        return networks

    # -- Networks --------------------------------------------------------------

    async def network_properties(self, network_path: str) -> dict[str, Any]:
        """Return the Network interface properties."""
        return await self._props(network_path, NETWORK_INTERFACE)

    async def network_name(self, network_path: str) -> str:
        """Return the network SSID."""
        return str(await self._connection.get_property(IWD_SERVICE, network_path, NETWORK_INTERFACE, "Name"))

    async def connect_network(self, network_path: str) -> None:
        """Connect to a network. Blocks until iwd finishes or fails."""
        await self._call(network_path, NETWORK_INTERFACE, "Connect")

    async def forget_known_network(self, known_path: str) -> None:
        """Forget a saved network."""
        await self._call(known_path, KNOWN_NETWORK_INTERFACE, "Forget")

    async def known_networks(self) -> list[KnownNetworkData]:
        """Return all saved networks."""
        objects = await self.managed_objects()
        known: list[KnownNetworkData] = []
        for path in sorted(objects):
            props = objects[path].get(KNOWN_NETWORK_INTERFACE)
            if props is None:
                continue
            known.append(
                KnownNetworkData(
                    path=path,
                    name=str(props.get("Name", "")),
                    network_type=str(props.get("Type", "open")),
                )
            )
        return known

    # -- Agent -----------------------------------------------------------------

    async def register_agent(self, agent_path: str) -> None:
        """Register a credentials agent with iwd."""
        await self._call(AGENT_MANAGER_PATH, AGENT_MANAGER_INTERFACE, "RegisterAgent", "o", [agent_path])

    async def unregister_agent(self, agent_path: str) -> None:
        """Unregister a credentials agent."""
        await self._call(AGENT_MANAGER_PATH, AGENT_MANAGER_INTERFACE, "UnregisterAgent", "o", [agent_path])

    # -- Signals ---------------------------------------------------------------

    async def watch_property(self, path: str, interface: str, name: str) -> SignalStream[tuple[Any]]:
        """Stream changes of one property.

        Each item is a 1-tuple holding the new value, so falsy values are
        not mistaken for skipped signals.
        """

        def parse(msg: Message) -> tuple[Any] | None:
            iface, changed, _ = properties_changed(msg)
            if iface != interface or name not in changed:
                return None
            return (changed[name],)

        sub = await self._connection.subscribe(
            MatchRule(
                interface=PROPERTIES_INTERFACE,
                member="PropertiesChanged",
                sender=IWD_SERVICE,
                path=path,
                arg0=interface,
            )
        )
        return SignalStream(sub, parse)

    async def watch_devices_added(self) -> SignalStream[str]:
        """Stream paths of wireless devices that appear."""
        sub = await self._connection.subscribe(
            MatchRule(interface=OBJECT_MANAGER_INTERFACE, member="InterfacesAdded", sender=IWD_SERVICE)
        )
        return SignalStream(sub, _device_path)

    async def watch_devices_removed(self) -> SignalStream[str]:
        """Stream paths of wireless devices that disappear."""
        sub = await self._connection.subscribe(
            MatchRule(interface=OBJECT_MANAGER_INTERFACE, member="InterfacesRemoved", sender=IWD_SERVICE)
        )
        return SignalStream(sub, _device_path)
