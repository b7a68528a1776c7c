"""QThread worker running the backend event loop in a Qt application.

The backend is asyncio code talking to the system bus. This worker runs
it on a private event loop in a background thread, takes commands from
the main thread, and hands backend events back through a Qt signal.
"""

import asyncio
import logging

from PySide6.QtCore import QThread, Signal

from wlcontrol.api.bus import BusConnection
from wlcontrol.core.config import BackendSettings
from wlcontrol.core.event_loop import run_backend
from wlcontrol.models.commands import Command, Shutdown
from wlcontrol.models.events import Event

logger = logging.getLogger(__name__)

# Both directions are bounded; a full command queue drops the command
COMMAND_QUEUE_SIZE = 32
EVENT_QUEUE_SIZE = 32


class BackendWorker(QThread):
    """Background thread running the WiFi/Bluetooth backend.

    Example:
        worker = BackendWorker(config.backend_settings())
        worker.event_received.connect(store.apply_event)
        worker.start()
        worker.send_command(WifiScan())
    """

    # Backend event, in the order the backend produced them
    event_received = Signal(object)

    # Unexpected exception that ended the backend
    error_occurred = Signal(object)

    # Backend returned after Shutdown or a closed command channel
    finished_cleanly = Signal()

    def __init__(self, settings: BackendSettings | None = None, connection: BusConnection | None = None) -> None:
        """Initialize the worker.

        Args:
            settings: Settings snapshot for the backend.
            connection: Bus connection to use (system bus if None).
        """
        super().__init__()
        self._settings = settings or BackendSettings()
        self._connection = connection
        self._loop: asyncio.AbstractEventLoop | None = None
        self._commands: asyncio.Queue[Command | None] | None = None
        self._events: asyncio.Queue[Event | None] | None = None

    @property
    def settings(self) -> BackendSettings:
        """Return the settings the backend runs with."""
        return self._settings

    @property
    def is_running_backend(self) -> bool:
        """Return True while the backend loop accepts commands."""
        return self._loop is not None and self._loop.is_running()

    def send_command(self, command: Command) -> bool:
        """Queue a command for the backend.

        Thread-safe and non-blocking. The command is dropped with a warning
        if the backend is not running or its queue is full.

        Returns:
            True if the command was handed to the backend loop.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Backend not running, dropping %s", command)
            return False
        try:
            loop.call_soon_threadsafe(self._enqueue, command)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.warning("Backend stopped, dropping %s", command)
            return False
        return True

    def _enqueue(self, command: Command) -> None:
        if self._commands is None:
            return
        try:
            self._commands.put_nowait(command)
        except asyncio.QueueFull:
            logger.warning("Command queue full, dropping %s", command)

    def stop(self) -> None:
        """Ask the backend to shut down (called from main thread)."""
        self.send_command(Shutdown())

    def run(self) -> None:
        """Run the worker thread (entry point)."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._commands = asyncio.Queue(maxsize=COMMAND_QUEUE_SIZE)
        self._events = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._loop = loop

        try:
            loop.run_until_complete(self._main())
        except Exception as e:  # noqa: BLE001
            logger.exception("Backend failed")
            self.error_occurred.emit(e)
        else:
            self.finished_cleanly.emit()
        finally:
            self._loop = None
            loop.close()
            self._commands = None
            self._events = None

    async def _main(self) -> None:
        assert self._commands is not None
        assert self._events is not None
        forwarder = asyncio.get_running_loop().create_task(self._forward_events())
        try:
            await run_backend(
                self._commands,
                self._events,  # type: ignore[arg-type]
                self._settings,
                self._connection,
            )
        finally:
            await self._events.put(None)
            await forwarder

    async def _forward_events(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            if event is None:
                return
            self.event_received.emit(event)
