"""Typed accessors for the BlueZ Bluetooth daemon (org.bluez)."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dbus_fast import Message
from dbus_fast.errors import DBusError

from wlcontrol.api.bus import (
    OBJECT_MANAGER_INTERFACE,
    PROPERTIES_INTERFACE,
    BusConnection,
    MatchRule,
    SignalStream,
    SignalSubscription,
    properties_changed,
)
from wlcontrol.models.bluetooth import (
    BATTERY_UNKNOWN,
    DEFAULT_ICON,
    RSSI_UNKNOWN,
    BtDeviceData,
)

logger = logging.getLogger(__name__)

BLUEZ_SERVICE = "org.bluez"
BLUEZ_ROOT = "/org/bluez"

ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
BATTERY_INTERFACE = "org.bluez.Battery1"
AGENT_MANAGER_INTERFACE = "org.bluez.AgentManager1"
AGENT_INTERFACE = "org.bluez.Agent1"

# Device properties whose change is worth a UI refresh
WATCHED_DEVICE_PROPERTIES = frozenset(
    {"Name", "Alias", "Icon", "Paired", "Trusted", "Connected", "Percentage", "RSSI"}
)


def address_to_path(adapter_path: str, address: str) -> str:
    """Return the device object path for an address on an adapter."""
    return f"{adapter_path}/dev_{address.upper().replace(':', '_')}"


def path_to_address(path: str) -> str | None:
    """Return the address encoded in a device object path, or None."""
    leaf = path.rsplit("/", 1)[-1]
    if not leaf.startswith("dev_"):
        return None
    return leaf[4:].replace("_", ":")


class AdapterEventKind(Enum):
    DEVICE_ADDED = "device_added"
    DEVICE_REMOVED = "device_removed"
    PROPERTY_CHANGED = "property_changed"


@dataclass(frozen=True, slots=True)
class AdapterEvent:
    """A device appearing or disappearing, or an adapter property change.

    Attributes:
        kind: What happened.
        address: Device address for DEVICE_ADDED / DEVICE_REMOVED.
        properties: Changed adapter properties for PROPERTY_CHANGED.
    """

    kind: AdapterEventKind
    address: str = ""
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DeviceChange:
    """Property names that changed on one device."""

    address: str
    names: frozenset[str]


def _adapter_rules(adapter_path: str) -> tuple[MatchRule, ...]:
    return (
        MatchRule(interface=OBJECT_MANAGER_INTERFACE, member="InterfacesAdded", sender=BLUEZ_SERVICE),
        MatchRule(interface=OBJECT_MANAGER_INTERFACE, member="InterfacesRemoved", sender=BLUEZ_SERVICE),
        MatchRule(
            interface=PROPERTIES_INTERFACE,
            member="PropertiesChanged",
            sender=BLUEZ_SERVICE,
            path=adapter_path,
            arg0=ADAPTER_INTERFACE,
        ),
    )


def _adapter_parser(adapter_path: str):
    prefix = adapter_path.rstrip("/") + "/"

    def parse(msg: Message) -> AdapterEvent | None:
        if msg.member == "PropertiesChanged":
            _, changed, _ = properties_changed(msg)
            return AdapterEvent(AdapterEventKind.PROPERTY_CHANGED, properties=changed) if changed else None
        path, interfaces = msg.body
        if not str(path).startswith(prefix) or DEVICE_INTERFACE not in interfaces:
            return None
        address = path_to_address(path)
        if address is None:
            return None
        if msg.member == "InterfacesAdded":
            return AdapterEvent(AdapterEventKind.DEVICE_ADDED, address=address)
        return AdapterEvent(AdapterEventKind.DEVICE_REMOVED, address=address)

    return parse


class DiscoverySession(SignalStream[AdapterEvent]):
    """Running device discovery; closing it stops discovery."""

    def __init__(self, proxy: "BluezProxy", adapter_path: str, subscription: SignalSubscription) -> None:
        super().__init__(subscription, _adapter_parser(adapter_path))
        self._proxy = proxy
        self._adapter_path = adapter_path

    async def close(self) -> None:
        """Stop discovery and the signal stream."""
        if self.subscription.closed:
            return
        try:
            await self._proxy.stop_discovery(self._adapter_path)
        except DBusError as e:
            # Already stopped, e.g. after the adapter was powered off
            logger.debug("StopDiscovery failed: %s", e)
        await super().close()


class BluezProxy:
    """Access to BlueZ objects over the system bus.

    All methods raise DBusError when BlueZ rejects a call.
    """

    def __init__(self, connection: BusConnection) -> None:
        self._connection = connection

    @property
    def connection(self) -> BusConnection:
        """Return the bus connection."""
        return self._connection

    async def _call(self, path: str, interface: str, member: str, signature: str = "", body: list[Any] | None = None) -> list[Any]:
        return await self._connection.call(BLUEZ_SERVICE, path, interface, member, signature, body)

    async def managed_objects(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Return all BlueZ objects with their interfaces and properties."""
        return await self._connection.get_managed_objects(BLUEZ_SERVICE, "/")

    # -- Adapter ---------------------------------------------------------------

    async def default_adapter(self) -> str | None:
        """Return the path of the first adapter, or None if there is none."""
        objects = await self.managed_objects()
        adapters = sorted(path for path, ifaces in objects.items() if ADAPTER_INTERFACE in ifaces)
        return adapters[0] if adapters else None

    async def adapter_property(self, adapter_path: str, name: str) -> Any:
        """Read one Adapter1 property."""
        return await self._connection.get_property(BLUEZ_SERVICE, adapter_path, ADAPTER_INTERFACE, name)

    async def set_adapter_property(self, adapter_path: str, name: str, value: bool) -> None:
        """Write a boolean Adapter1 property (Powered, Discoverable)."""
        await self._connection.set_property(BLUEZ_SERVICE, adapter_path, ADAPTER_INTERFACE, name, "b", value)

    async def start_discovery(self, adapter_path: str) -> DiscoverySession:
        """Subscribe to device events, then start discovery."""
        sub = await self._connection.subscribe(*_adapter_rules(adapter_path))
        try:
            await self._call(adapter_path, ADAPTER_INTERFACE, "StartDiscovery")
        except DBusError:
            await sub.close()
            raise
        return DiscoverySession(self, adapter_path, sub)

    async def stop_discovery(self, adapter_path: str) -> None:
        """Stop device discovery."""
        await self._call(adapter_path, ADAPTER_INTERFACE, "StopDiscovery")

    async def remove_device(self, adapter_path: str, address: str) -> None:
        """Remove (unpair and forget) a device."""
        await self._call(adapter_path, ADAPTER_INTERFACE, "RemoveDevice", "o", [address_to_path(adapter_path, address)])

    async def device_addresses(self, adapter_path: str) -> list[str]:
        """Return addresses of all devices the adapter knows."""
        objects = await self.managed_objects()
        addresses: list[str] = []
        for path in sorted(objects):
            device = objects[path].get(DEVICE_INTERFACE)
            if device is None or device.get("Adapter") != adapter_path:
                continue
            address = device.get("Address") or path_to_address(path)
            if address:
                addresses.append(str(address))
        return addresses

    # -- Devices ---------------------------------------------------------------

    async def read_device(self, adapter_path: str, address: str) -> BtDeviceData | None:
        """Read a device snapshot, or None if the device does not exist."""
        path = address_to_path(adapter_path, address)
        try:
            props = await self._connection.get_all_properties(BLUEZ_SERVICE, path, DEVICE_INTERFACE)
        except DBusError as e:
            logger.debug("Cannot read device %s: %s", address, e)
            return None
        battery = BATTERY_UNKNOWN
        try:
            battery_props = await self._connection.get_all_properties(BLUEZ_SERVICE, path, BATTERY_INTERFACE)
            battery = int(battery_props.get("Percentage", BATTERY_UNKNOWN))
        except DBusError:
            pass  # no Battery1 on this device
        return BtDeviceData(
            address=str(props.get("Address", address)),
            name=str(props.get("Name", "")),
            alias=str(props.get("Alias", "")),
            icon=str(props.get("Icon") or DEFAULT_ICON),
            paired=bool(props.get("Paired", False)),
            trusted=bool(props.get("Trusted", False)),
            connected=bool(props.get("Connected", False)),
            battery_percentage=battery,
            rssi=int(props.get("RSSI", RSSI_UNKNOWN)),
        )

    async def connect_device(self, adapter_path: str, address: str) -> None:
        """Connect all auto-connectable profiles of a device."""
        await self._call(address_to_path(adapter_path, address), DEVICE_INTERFACE, "Connect")

    async def disconnect_device(self, adapter_path: str, address: str) -> None:
        """Disconnect a device."""
        await self._call(address_to_path(adapter_path, address), DEVICE_INTERFACE, "Disconnect")

    async def pair_device(self, adapter_path: str, address: str) -> None:
        """Pair with a device; may trigger agent callbacks."""
        await self._call(address_to_path(adapter_path, address), DEVICE_INTERFACE, "Pair")

    async def set_alias(self, adapter_path: str, address: str, alias: str) -> None:
        """Set the device alias."""
        path = address_to_path(adapter_path, address)
        await self._connection.set_property(BLUEZ_SERVICE, path, DEVICE_INTERFACE, "Alias", "s", alias)

    async def set_trusted(self, adapter_path: str, address: str, trusted: bool) -> None:
        """Set the device Trusted flag."""
        path = address_to_path(adapter_path, address)
        await self._connection.set_property(BLUEZ_SERVICE, path, DEVICE_INTERFACE, "Trusted", "b", trusted)

    # -- Agent -----------------------------------------------------------------

    async def register_agent(self, agent_path: str, capability: str) -> None:
        """Register the pairing agent and make it the default one."""
        await self._call(BLUEZ_ROOT, AGENT_MANAGER_INTERFACE, "RegisterAgent", "os", [agent_path, capability])
        await self._call(BLUEZ_ROOT, AGENT_MANAGER_INTERFACE, "RequestDefaultAgent", "o", [agent_path])

    async def unregister_agent(self, agent_path: str) -> None:
        """Unregister the pairing agent."""
        await self._call(BLUEZ_ROOT, AGENT_MANAGER_INTERFACE, "UnregisterAgent", "o", [agent_path])

    # -- Signals ---------------------------------------------------------------

    async def watch_adapter(self, adapter_path: str) -> SignalStream[AdapterEvent]:
        """Stream device add/remove and adapter property changes.

        Does not start discovery; it only listens.
        """
        sub = await self._connection.subscribe(*_adapter_rules(adapter_path))
        return SignalStream(sub, _adapter_parser(adapter_path))

    async def watch_device(self, adapter_path: str, address: str) -> SignalStream[DeviceChange]:
        """Stream property changes of one device (Device1 and Battery1)."""
        path = address_to_path(adapter_path, address)

        def parse(msg: Message) -> DeviceChange | None:
            _, changed, invalidated = properties_changed(msg)
            names = frozenset(changed) | frozenset(invalidated)
            return DeviceChange(address, names) if names else None

        sub = await self._connection.subscribe(
            *(
                MatchRule(
                    interface=PROPERTIES_INTERFACE,
                    member="PropertiesChanged",
                    sender=BLUEZ_SERVICE,
                    path=path,
                    arg0=interface,
                )
                for interface in (DEVICE_INTERFACE, BATTERY_INTERFACE)
            )
        )
        return SignalStream(sub, parse)
