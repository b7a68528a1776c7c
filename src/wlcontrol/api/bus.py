"""System message bus connection and signal subscriptions.

Thin wrapper over a dbus-fast MessageBus that exposes only what the WiFi
and Bluetooth adapters need: method calls, properties, managed objects,
exported agent objects and filtered signal streams.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.errors import DBusError
from dbus_fast.service import ServiceInterface

logger = logging.getLogger(__name__)

T = TypeVar("T")

DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"


class BusNotConnectedError(ConnectionError):
    """Raised when the bus is used before connect() or after disconnect()."""


class SubscriptionClosedError(Exception):
    """Raised by next() once a signal stream is closed."""


def unwrap(value: Any) -> Any:
    """Recursively replace Variants with their plain values."""
    if isinstance(value, Variant):
        return unwrap(value.value)
    if isinstance(value, dict):
        return {k: unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unwrap(v) for v in value]
    return value


def error_text(exc: BaseException) -> str:
    """Render a bus error as "<error name>: <message>" for translation."""
    if isinstance(exc, DBusError):
        return f"{exc.type}: {exc.text}" if exc.text else str(exc.type)
    return str(exc) or type(exc).__name__


@dataclass(frozen=True, slots=True)
class MatchRule:
    """A signal match rule.

    Attributes:
        interface: Signal interface.
        member: Signal name.
        sender: Well-known bus name of the emitter.
        path: Exact object path.
        path_namespace: Object path prefix (the path itself and children).
        arg0: Required value of the first string argument.
    """

    interface: str
    member: str
    sender: str | None = None
    path: str | None = None
    path_namespace: str | None = None
    arg0: str | None = None

    def to_string(self) -> str:
        """Return the rule in bus daemon syntax."""
        parts = ["type='signal'"]
        for key, value in (
            ("sender", self.sender),
            ("interface", self.interface),
            ("member", self.member),
            ("path", self.path),
            ("path_namespace", self.path_namespace),
            ("arg0", self.arg0),
        ):
            if value is not None:
                parts.append(f"{key}='{value}'")
        return ",".join(parts)

    def matches(self, msg: Message, sender_owner: str | None = None) -> bool:
        """Return True if msg is a signal selected by this rule.

        Args:
            msg: Incoming message.
            sender_owner: Unique name that owned the sender name when the
                rule was installed, or None to skip the sender check.
        """
        if msg.message_type != MessageType.SIGNAL:
            return False
        if msg.interface != self.interface or msg.member != self.member:
            return False
        if sender_owner is not None and msg.sender not in (sender_owner, self.sender):
            return False
        if self.path is not None and msg.path != self.path:
            return False
        if self.path_namespace is not None:
            ns = self.path_namespace.rstrip("/")
            if msg.path != ns and not (msg.path or "").startswith(ns + "/"):
                return False
        if self.arg0 is not None:
            if not msg.body or msg.body[0] != self.arg0:
                return False
        return True


class SignalSubscription:
    """Signals selected by one or more match rules, in delivery order.

    Call next() to wait for the following signal and close() to stop
    receiving.
    """

    def __init__(
        self,
        connection: "BusConnection",
        rules: tuple[MatchRule, ...],
        owners: dict[str, str] | None = None,
    ) -> None:
        self._connection = connection
        self._rules = rules
        self._owners = owners or {}
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue()
        self._closed = False

    @property
    def rules(self) -> tuple[MatchRule, ...]:
        """Return the match rules."""
        return self._rules

    @property
    def closed(self) -> bool:
        """Return True once the stream was closed or ended."""
        return self._closed

    def deliver(self, msg: Message) -> bool:
        """Queue msg if any rule matches it.

        Returns:
            True if the message was queued.
        """
        if self._closed:
            return False
        for rule in self._rules:
            owner = self._owners.get(rule.sender) if rule.sender else None
            if rule.matches(msg, owner):
                self._queue.put_nowait(msg)
                return True
        return False

    async def next(self) -> Message:
        """Wait for the next matching signal.

        Raises:
            SubscriptionClosedError: If the subscription is closed.
        """
        if self._closed and self._queue.empty():
            raise SubscriptionClosedError(self._describe())
        msg = await self._queue.get()
        if msg is None:
            raise SubscriptionClosedError(self._describe())
        return msg

    async def close(self) -> None:
        """Stop receiving signals, wake any waiter and drop the match rules."""
        if self._closed:
            return
        self.end()
        await self._connection.remove_subscription(self)

    def end(self) -> None:
        """Mark the stream finished without touching the bus."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def _describe(self) -> str:
        return "; ".join(rule.to_string() for rule in self._rules)


class SignalStream(Generic[T]):
    """Typed view over a SignalSubscription.

    parse() turns a signal into a value, or None to skip it. Signals that
    fail to parse are logged and skipped.
    """

    def __init__(self, subscription: SignalSubscription, parse: Callable[[Message], T | None]) -> None:
        self._subscription = subscription
        self._parse = parse

    @property
    def subscription(self) -> SignalSubscription:
        """Return the underlying subscription."""
        return self._subscription

    async def next(self) -> T:
        """Wait for the next signal that parses to a value.

        Raises:
            SubscriptionClosedError: If the subscription is closed.
        """
        while True:
            msg = await self._subscription.next()
            try:
                value = self._parse(msg)
            except (IndexError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed %s.%s signal from %s: %s", msg.interface, msg.member, msg.path, e)
                continue
            if value is not None:
                return value

    async def close(self) -> None:
        """Close the underlying subscription."""
        await self._subscription.close()


def properties_changed(msg: Message) -> tuple[str, dict[str, Any], list[str]]:
    """Split a PropertiesChanged signal into (interface, changed, invalidated)."""
    interface, changed, invalidated = msg.body
    return interface, unwrap(changed), list(invalidated)


class BusConnection:
    """Connection to the system message bus.

    Example:
        connection = BusConnection()
        await connection.connect()
        objects = await connection.get_managed_objects("net.connman.iwd")
        connection.disconnect()
    """

    def __init__(self, bus_type: BusType = BusType.SYSTEM) -> None:
        """Initialize the connection.

        Args:
            bus_type: Which bus to connect to (system bus by default).
        """
        self._bus_type = bus_type
        self._bus: MessageBus | None = None
        self._subscriptions: list[SignalSubscription] = []
        self._exported: set[str] = set()

    @property
    def bus(self) -> MessageBus:
        """Return the underlying MessageBus.

        Raises:
            BusNotConnectedError: If not connected.
        """
        if self._bus is None:
            raise BusNotConnectedError("Not connected to the message bus")
        return self._bus

    @property
    def is_connected(self) -> bool:
        """Return True if the bus connection is open."""
        return self._bus is not None and self._bus.connected

    async def connect(self) -> MessageBus:
        """Open the bus connection and start dispatching signals."""
        if self._bus is not None:
            return self._bus
        bus = await MessageBus(bus_type=self._bus_type).connect()
        bus.add_message_handler(self._dispatch)
        self._bus = bus
        logger.info("Connected to %s bus as %s", self._bus_type.name.lower(), bus.unique_name)
        return bus

    def disconnect(self) -> None:
        """Close the bus connection and end all subscriptions."""
        if self._bus is None:
            return
        for sub in list(self._subscriptions):
            # Match rules die with the connection
            sub.end()
        self._subscriptions.clear()
        self._exported.clear()
        self._bus.remove_message_handler(self._dispatch)
        self._bus.disconnect()
        self._bus = None
        logger.info("Disconnected from message bus")

    def _dispatch(self, msg: Message) -> None:
        if msg.message_type != MessageType.SIGNAL:
            return
        for sub in list(self._subscriptions):
            sub.deliver(msg)

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: list[Any] | None = None,
    ) -> list[Any]:
        """Call a method and return the reply body.

        Raises:
            DBusError: If the daemon replies with an error.
            BusNotConnectedError: If not connected.
        """
        reply = await self.bus.call(
            Message(
                destination=destination,
                path=path,
                interface=interface,
                member=member,
                signature=signature,
                body=body or [],
            )
        )
        if reply is None:
            return []
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body and isinstance(reply.body[0], str) else ""
            raise DBusError(reply.error_name or "org.freedesktop.DBus.Error.Failed", text, reply)
        return list(reply.body)

    async def get_property(self, destination: str, path: str, interface: str, name: str) -> Any:
        """Read one property, unwrapped from its Variant."""
        body = await self.call(destination, path, PROPERTIES_INTERFACE, "Get", "ss", [interface, name])
        return unwrap(body[0])

    async def get_all_properties(self, destination: str, path: str, interface: str) -> dict[str, Any]:
        """Read all properties of an interface, unwrapped."""
        body = await self.call(destination, path, PROPERTIES_INTERFACE, "GetAll", "s", [interface])
        return unwrap(body[0])

    async def set_property(
        self,
        destination: str,
        path: str,
        interface: str,
        name: str,
        signature: str,
        value: Any,
    ) -> None:
        """Write one property."""
        await self.call(
            destination,
            path,
            PROPERTIES_INTERFACE,
            "Set",
            "ssv",
            [interface, name, Variant(signature, value)],
        )

    async def get_managed_objects(self, destination: str, path: str = "/") -> dict[str, dict[str, dict[str, Any]]]:
        """Return {object path: {interface: {property: value}}}."""
        body = await self.call(destination, path, OBJECT_MANAGER_INTERFACE, "GetManagedObjects")
        return unwrap(body[0])

    async def name_owner(self, name: str) -> str | None:
        """Return the unique name owning a well-known name, or None."""
        try:
            body = await self.call(DBUS_SERVICE, DBUS_PATH, DBUS_SERVICE, "GetNameOwner", "s", [name])
        except DBusError:
            return None
        return body[0] if body else None

    async def subscribe(self, *rules: MatchRule) -> SignalSubscription:
        """Install match rules and return one stream fed by all of them."""
        owners: dict[str, str] = {}
        for rule in rules:
            if rule.sender and rule.sender not in owners:
                owner = await self.name_owner(rule.sender)
                if owner:
                    owners[rule.sender] = owner
        for rule in rules:
            await self.call(DBUS_SERVICE, DBUS_PATH, DBUS_SERVICE, "AddMatch", "s", [rule.to_string()])
        sub = SignalSubscription(self, tuple(rules), owners)
        self._subscriptions.append(sub)
        logger.debug("Subscribed: %s", [rule.to_string() for rule in rules])
        return sub

    async def remove_subscription(self, sub: SignalSubscription) -> None:
        """Forget a subscription and remove its match rules."""
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        if not self.is_connected:
            return
        for rule in sub.rules:
            try:
                await self.call(DBUS_SERVICE, DBUS_PATH, DBUS_SERVICE, "RemoveMatch", "s", [rule.to_string()])
            except DBusError as e:
                logger.debug("RemoveMatch failed for %s: %s", rule.to_string(), e)

    def export(self, path: str, interface: ServiceInterface) -> None:
        """Export a service object at path."""
        self.bus.export(path, interface)
        self._exported.add(path)

    def unexport(self, path: str) -> None:
        """Remove all service objects exported at path."""
        if self._bus is not None and path in self._exported:
            self._bus.unexport(path)
        self._exported.discard(path)
