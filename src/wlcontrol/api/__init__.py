"""System bus access for iwd and BlueZ."""

from wlcontrol.api.agents import BluezAgent, IwdAgent, PairingRequest, PassphraseRequest
from wlcontrol.api.bluez import BluezProxy
from wlcontrol.api.bus import BusConnection, BusNotConnectedError, MatchRule, SignalStream, SubscriptionClosedError
from wlcontrol.api.iwd import IwdProxy

__all__ = [
    "BluezAgent",
    "BluezProxy",
    "BusConnection",
    "BusNotConnectedError",
    "IwdAgent",
    "IwdProxy",
    "MatchRule",
    "PairingRequest",
    "PassphraseRequest",
    "SignalStream",
    "SubscriptionClosedError",
]
