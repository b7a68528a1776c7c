"""Test fixtures for wlcontrol tests.

FakeBus is an in-memory stand-in for the system bus: it keeps object
trees per service, answers the standard Properties/ObjectManager calls,
lets tests install handlers or errors for any method, and delivers
emitted signals to subscriptions exactly like BusConnection does.
"""

import asyncio
import copy
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest
from dbus_fast import Message, MessageType, Variant
from dbus_fast.errors import DBusError

from wlcontrol.api.bluez import (
    ADAPTER_INTERFACE as BT_ADAPTER_INTERFACE,
)
from wlcontrol.api.bluez import (
    BATTERY_INTERFACE,
    BLUEZ_SERVICE,
    address_to_path,
)
from wlcontrol.api.bluez import (
    DEVICE_INTERFACE as BT_DEVICE_INTERFACE,
)
from wlcontrol.api.bus import (
    DBUS_SERVICE,
    OBJECT_MANAGER_INTERFACE,
    PROPERTIES_INTERFACE,
    BusConnection,
)
from wlcontrol.api.iwd import (
    ADAPTER_INTERFACE,
    DEVICE_INTERFACE,
    IWD_SERVICE,
    KNOWN_NETWORK_INTERFACE,
    NETWORK_INTERFACE,
    STATION_INTERFACE,
)
from wlcontrol.models.events import Event

UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
UNKNOWN_INTERFACE = "org.freedesktop.DBus.Error.UnknownInterface"
INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"

BT_ADAPTER = "/org/bluez/hci0"
IWD_DEVICE = "/net/connman/iwd/0/4"


def variant(value: Any) -> Variant:
    """Wrap a plain value in a Variant with a guessed signature."""
    if isinstance(value, Variant):
        return value
    if isinstance(value, bool):
        return Variant("b", value)
    if isinstance(value, int):
        return Variant("i", value)
    if isinstance(value, str) and value.startswith("/"):
        return Variant("o", value)
    return Variant("s", str(value))


@dataclass
class Call:
    """One recorded method call."""

    destination: str
    path: str
    interface: str
    member: str
    body: list[Any]


Handler = Callable[[list[Any]], Any]


def _matches(
    want_member: str, want_path: str | None, want_service: str | None, member: str, path: str, destination: str
) -> bool:
    return (
        want_member == member
        and (want_path is None or want_path == path)
        and (want_service is None or want_service == destination)
    )


class FakeBus(BusConnection):
    """In-memory BusConnection.

    Attributes:
        objects: {service: {path: {interface: {property: value}}}}.
        ordered: {device path: [(network path, signal)]} for GetOrderedNetworks.
        calls: Every method call in order.
        exported: Objects exported by the code under test.
    """

    def __init__(self) -> None:
        super().__init__()
        self.objects: dict[str, dict[str, dict[str, dict[str, Any]]]] = {IWD_SERVICE: {}, BLUEZ_SERVICE: {}}
        self.ordered: dict[str, list[tuple[str, int]]] = {}
        self.calls: list[Call] = []
        self.exported: dict[str, Any] = {}
        self.connected = False
        self._handlers: list[tuple[str, str | None, str | None, Handler]] = []
        self._errors: list[tuple[str, str | None, str | None, DBusError]] = []

    # -- Connection surface ------------------------------------------------------

    async def connect(self) -> Any:  # type: ignore[override]
        self.connected = True
        return None

    @property
    def is_connected(self) -> bool:
        return self.connected

    def disconnect(self) -> None:
        for sub in list(self._subscriptions):
            sub.end()
        self._subscriptions.clear()
        self.exported.clear()
        self.connected = False

    def export(self, path: str, interface: Any) -> None:
        self.exported[path] = interface

    def unexport(self, path: str) -> None:
        self.exported.pop(path, None)

    # -- Scripting -------------------------------------------------------------

    def on(self, member: str, handler: Handler, path: str | None = None, service: str | None = None) -> None:
        """Answer member (optionally only on path or service) with handler(body)."""
        self._handlers.insert(0, (member, path, service, handler))

    def fail(
        self, member: str, error_type: str, text: str = "", path: str | None = None, service: str | None = None
    ) -> None:
        """Make member (optionally only on path or service) fail with a bus error."""
        self._errors.insert(0, (member, path, service, DBusError(error_type, text)))

    def clear_failures(self) -> None:
        self._errors.clear()

    def calls_to(self, member: str, path: str | None = None) -> list[Call]:
        """Return recorded calls of member (optionally on path)."""
        return [c for c in self.calls if c.member == member and (path is None or c.path == path)]

    def set_object(self, service: str, path: str, interface: str, **props: Any) -> None:
        """Create or extend an object interface with properties."""
        self.objects[service].setdefault(path, {}).setdefault(interface, {}).update(props)

    def remove_object(self, service: str, path: str, interface: str | None = None) -> None:
        if interface is None:
            self.objects[service].pop(path, None)
            return
        ifaces = self.objects[service].get(path, {})
        ifaces.pop(interface, None)
        if not ifaces:
            self.objects[service].pop(path, None)

    # -- Signals ---------------------------------------------------------------

    def emit(self, sender: str, path: str, interface: str, member: str, signature: str, body: list[Any]) -> None:
        """Deliver a signal to matching subscriptions."""
        msg = Message(
            message_type=MessageType.SIGNAL,
            sender=sender,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=body,
        )
        self._dispatch(msg)

    def emit_properties_changed(
        self, sender: str, path: str, interface: str, changed: dict[str, Any], invalidated: list[str] | None = None
    ) -> None:
        body = [interface, {k: variant(v) for k, v in changed.items()}, invalidated or []]
        self.emit(sender, path, PROPERTIES_INTERFACE, "PropertiesChanged", "sa{sv}as", body)

    def emit_interfaces_added(self, sender: str, path: str, interfaces: dict[str, dict[str, Any]]) -> None:
        body = [path, {i: {k: variant(v) for k, v in p.items()} for i, p in interfaces.items()}]
        self.emit(sender, "/", OBJECT_MANAGER_INTERFACE, "InterfacesAdded", "oa{sa{sv}}", body)

    def emit_interfaces_removed(self, sender: str, path: str, interfaces: list[str]) -> None:
        self.emit(sender, "/", OBJECT_MANAGER_INTERFACE, "InterfacesRemoved", "oas", [path, interfaces])

    # -- Method calls ----------------------------------------------------------

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: list[Any] | None = None,
    ) -> list[Any]:
        body = list(body or [])
        self.calls.append(Call(destination, path, interface, member, body))
        for err_member, err_path, err_service, error in self._errors:
            if _matches(err_member, err_path, err_service, member, path, destination):
                raise error
        for h_member, h_path, h_service, handler in self._handlers:
            if _matches(h_member, h_path, h_service, member, path, destination):
                result = handler(body)
                if inspect.isawaitable(result):
                    result = await result
                return list(result or [])
        return self._builtin(destination, path, interface, member, body)

    def _iface(self, destination: str, path: str, interface: str) -> dict[str, Any]:
        tree = self.objects.get(destination, {})
        if path not in tree:
            raise DBusError(UNKNOWN_OBJECT, f"Method call to unknown object {path}")
        if interface not in tree[path]:
            raise DBusError(UNKNOWN_INTERFACE, f"No interface {interface} on {path}")
        return tree[path][interface]

    def _builtin(self, destination: str, path: str, interface: str, member: str, body: list[Any]) -> list[Any]:
        if destination == DBUS_SERVICE:
            if member == "GetNameOwner":
                return [f":1.{abs(hash(body[0])) % 1000}"]
            return []
        if interface == PROPERTIES_INTERFACE:
            if member == "Get":
                props = self._iface(destination, path, body[0])
                if body[1] not in props:
                    raise DBusError(INVALID_ARGS, f"No such property {body[1]}")
                return [variant(props[body[1]])]
            if member == "GetAll":
                return [copy.deepcopy(self._iface(destination, path, body[0]))]
            if member == "Set":
                iface, name, value = body
                props = self._iface(destination, path, iface)
                props[name] = value.value if isinstance(value, Variant) else value
                self.emit_properties_changed(destination, path, iface, {name: props[name]})
                return []
        if interface == OBJECT_MANAGER_INTERFACE and member == "GetManagedObjects":
            return [copy.deepcopy(self.objects.get(destination, {}))]
        if member == "GetOrderedNetworks":
            return [list(self.ordered.get(path, []))]
        return []


# -- Object builders -------------------------------------------------------------


def add_iwd_device(
    bus: FakeBus,
    path: str = IWD_DEVICE,
    name: str = "wlan0",
    powered: bool = True,
    station: bool = True,
    connected: str | None = None,
) -> None:
    """Add an iwd adapter, device and (optionally) station."""
    adapter = path.rsplit("/", 1)[0]
    bus.set_object(IWD_SERVICE, adapter, ADAPTER_INTERFACE, Vendor="Intel", Model="AX200", Powered=True)
    bus.set_object(IWD_SERVICE, path, DEVICE_INTERFACE, Name=name, Adapter=adapter, Powered=powered)
    if station:
        props: dict[str, Any] = {"Scanning": False, "State": "connected" if connected else "disconnected"}
        if connected:
            props["ConnectedNetwork"] = connected
        bus.set_object(IWD_SERVICE, path, STATION_INTERFACE, **props)


def add_network(
    bus: FakeBus,
    device: str,
    ssid: str,
    network_type: str = "psk",
    signal: int = -5000,
    known: str | None = None,
) -> str:
    """Add a visible network under device and return its path."""
    path = f"{device}/{ssid.encode().hex()}_{network_type}"
    props: dict[str, Any] = {"Name": ssid, "Type": network_type, "Device": device}
    if known:
        props["KnownNetwork"] = known
    bus.set_object(IWD_SERVICE, path, NETWORK_INTERFACE, **props)
    bus.ordered.setdefault(device, []).append((path, signal))
    return path


def add_known_network(bus: FakeBus, ssid: str, network_type: str = "psk") -> str:
    """Add a saved network and return its path."""
    path = f"/net/connman/iwd/{ssid.encode().hex()}_{network_type}"
    bus.set_object(IWD_SERVICE, path, KNOWN_NETWORK_INTERFACE, Name=ssid, Type=network_type)
    return path


def add_bt_adapter(bus: FakeBus, path: str = BT_ADAPTER, powered: bool = True, discoverable: bool = False) -> None:
    bus.set_object(BLUEZ_SERVICE, path, BT_ADAPTER_INTERFACE, Powered=powered, Discoverable=discoverable)


def add_bt_device(
    bus: FakeBus,
    address: str,
    name: str = "",
    alias: str | None = None,
    paired: bool = False,
    connected: bool = False,
    battery: int | None = None,
    adapter: str = BT_ADAPTER,
    **extra: Any,
) -> str:
    """Add a BlueZ device and return its path."""
    path = address_to_path(adapter, address)
    bus.set_object(
        BLUEZ_SERVICE,
        path,
        BT_DEVICE_INTERFACE,
        Address=address,
        Name=name,
        Alias=alias if alias is not None else (name or address),
        Adapter=adapter,
        Paired=paired,
        Trusted=False,
        Connected=connected,
        **extra,
    )
    if not name:
        del bus.objects[BLUEZ_SERVICE][path][BT_DEVICE_INTERFACE]["Name"]
    if battery is not None:
        bus.set_object(BLUEZ_SERVICE, path, BATTERY_INTERFACE, Percentage=battery)
    return path


def drain(queue: "asyncio.Queue[Event]") -> list[Event]:
    """Return and remove everything currently queued."""
    items: list[Event] = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


async def settle(rounds: int = 5) -> None:
    """Let spawned tasks run for a few loop iterations."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def bus() -> FakeBus:
    """A connected in-memory bus with no objects."""
    fake = FakeBus()
    fake.connected = True
    return fake


@pytest.fixture
def events() -> "asyncio.Queue[Event]":
    """Unbounded event queue for backend output."""
    return asyncio.Queue()
