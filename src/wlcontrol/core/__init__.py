"""Core backend and UI-side logic.

This package holds the asyncio backend that talks to iwd and BlueZ and
the Qt objects that bridge it to a user interface.

Classes:
    StateStore: Central state store with Qt signals.
    BackendWorker: QThread running the backend event loop.
    ConfigManager: QSettings wrapper for configuration.
    Controller: Turns UI requests into backend commands.
"""

from wlcontrol.core.config import BackendSettings, ConfigManager
from wlcontrol.core.controller import Controller
from wlcontrol.core.state import StateStore
from wlcontrol.core.worker import BackendWorker

__all__ = ["BackendSettings", "BackendWorker", "ConfigManager", "Controller", "StateStore"]
