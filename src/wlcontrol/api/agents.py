"""Credential and pairing agents exported on the system bus.

The daemons call these objects when they need input from the user. Each
call becomes a request on an asyncio queue carrying a reply future; the
bus call stays pending until the event loop resolves the future with the
user's answer.
"""

import asyncio
import logging
from dataclasses import dataclass

from dbus_fast.constants import ErrorType
from dbus_fast.errors import DBusError
from dbus_fast.service import ServiceInterface, method

from wlcontrol.api.bluez import AGENT_INTERFACE as BLUEZ_AGENT_INTERFACE
from wlcontrol.api.bluez import path_to_address
from wlcontrol.api.iwd import AGENT_INTERFACE as IWD_AGENT_INTERFACE
from wlcontrol.api.iwd import IwdProxy
from wlcontrol.models.bluetooth import PairingKind, PairingPrompt, format_passkey

logger = logging.getLogger(__name__)

IWD_AGENT_PATH = "/org/wlcontrol/IwdAgent"
BLUEZ_AGENT_PATH = "/org/wlcontrol/BluezAgent"

BLUEZ_REJECTED = "org.bluez.Error.Rejected"
BLUEZ_CANCELED = "org.bluez.Error.Canceled"


@dataclass(slots=True)
class PassphraseRequest:
    """A passphrase prompt waiting for the UI.

    Attributes:
        network_path: Bus path of the network being joined.
        network_name: SSID, or "Unknown" if the lookup failed.
        reply: Resolved with the passphrase, or None to cancel.
    """

    network_path: str
    network_name: str
    reply: "asyncio.Future[str | None]"


@dataclass(slots=True)
class PairingRequest:
    """A pairing interaction forwarded from the Bluetooth daemon.

    reply is None for display-only kinds. Otherwise it is resolved with
    True/False (confirm, authorize), a PIN string, a passkey int, or None
    to reject.
    """

    prompt: PairingPrompt
    reply: "asyncio.Future[object] | None" = None


def _await_failed() -> DBusError:
    return DBusError(ErrorType.FAILED, "Response channel closed")


class IwdAgent(ServiceInterface):
    """net.connman.iwd.Agent implementation."""

    def __init__(self, proxy: IwdProxy, requests: "asyncio.Queue[PassphraseRequest]") -> None:
        super().__init__(IWD_AGENT_INTERFACE)
        self._proxy = proxy
        self._requests = requests

    @method()
    async def RequestPassphrase(self, network: "o") -> "s":  # noqa: N802, F821
        logger.info("iwd requesting passphrase for %s", network)
        try:
            name = await self._proxy.network_name(network)
        except DBusError as e:
            logger.debug("Cannot read name of %s: %s", network, e)
            name = "Unknown"

        reply: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self._requests.put_nowait(PassphraseRequest(network, name, reply))
        try:
            passphrase = await reply
        except asyncio.CancelledError:
            logger.error("Passphrase response channel closed for %s", network)
            raise _await_failed() from None
        if passphrase is None:
            logger.info("User cancelled passphrase entry for %s", network)
            # iwd treats any agent error as cancellation
            raise DBusError(ErrorType.AUTH_FAILED, "User cancelled")
        logger.info("Got passphrase for %s", network)
        return passphrase

    @method()
    def Cancel(self, reason: "s"):  # noqa: N802, F821
        logger.info("iwd cancelled agent request: %s", reason)

    @method()
    def Release(self):  # noqa: N802
        logger.info("iwd agent released")


class BluezAgent(ServiceInterface):
    """org.bluez.Agent1 implementation."""

    def __init__(self, requests: "asyncio.Queue[PairingRequest]") -> None:
        super().__init__(BLUEZ_AGENT_INTERFACE)
        self._requests = requests

    def _notify(self, kind: PairingKind, device: str, code: str = "") -> None:
        prompt = PairingPrompt(kind, path_to_address(device) or device, code)
        self._requests.put_nowait(PairingRequest(prompt))

    async def _ask(self, kind: PairingKind, device: str, code: str = "") -> object:
        prompt = PairingPrompt(kind, path_to_address(device) or device, code)
        reply: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        self._requests.put_nowait(PairingRequest(prompt, reply))
        logger.info("Pairing prompt %s for %s", kind.value, prompt.address)
        try:
            answer = await reply
        except asyncio.CancelledError:
            raise DBusError(BLUEZ_CANCELED, "Pairing request abandoned") from None
        if answer is None or answer is False:
            raise DBusError(BLUEZ_REJECTED, "Rejected by user")
        return answer

    @method()
    async def RequestConfirmation(self, device: "o", passkey: "u"):  # noqa: N802, F821
        await self._ask(PairingKind.CONFIRM_PASSKEY, device, format_passkey(passkey))

    @method()
    async def RequestPinCode(self, device: "o") -> "s":  # noqa: N802, F821
        return str(await self._ask(PairingKind.REQUEST_PIN, device))

    @method()
    async def RequestPasskey(self, device: "o") -> "u":  # noqa: N802, F821
        answer = await self._ask(PairingKind.REQUEST_PASSKEY, device)
        return int(answer)  # type: ignore[call-overload]

    @method()
    def DisplayPasskey(self, device: "o", passkey: "u", entered: "q"):  # noqa: N802, F821
        # Called again for every typed digit; only announce the first time
        if entered == 0:
            self._notify(PairingKind.DISPLAY_PASSKEY, device, format_passkey(passkey))

    @method()
    def DisplayPinCode(self, device: "o", pincode: "s"):  # noqa: N802, F821
        self._notify(PairingKind.DISPLAY_PIN, device, pincode)

    @method()
    async def RequestAuthorization(self, device: "o"):  # noqa: N802, F821
        await self._ask(PairingKind.AUTHORIZE, device)

    @method()
    def AuthorizeService(self, device: "o", uuid: "s"):  # noqa: N802, F821
        # Only untrusted devices reach this; pairing marks devices trusted
        logger.info("Rejecting service %s for untrusted device %s", uuid, device)
        raise DBusError(BLUEZ_REJECTED, "Service not authorized")

    @method()
    def Cancel(self):  # noqa: N802
        logger.info("BlueZ cancelled pairing request")

    @method()
    def Release(self):  # noqa: N802
        logger.info("BlueZ agent released")
