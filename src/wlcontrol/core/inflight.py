"""Single-flight slot for cancellable background operations."""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class InFlightSlot:
    """Holds at most one running task of a given kind.

    Installing a new task cancels the previous one inside the same critical
    section, so "cancel old" and "install new" never interleave with another
    replace(). A finished task clears itself only if it is still the
    installed one.

    Example:
        slot = InFlightSlot("wifi-connect")
        await slot.replace(lambda: connect(path))
    """

    def __init__(self, name: str) -> None:
        """Initialize an empty slot.

        Args:
            name: Label used in logs and task names.
        """
        self._name = name
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[Any] | None = None

    @property
    def task(self) -> "asyncio.Task[Any] | None":
        """Return the installed task, if any."""
        return self._task

    @property
    def busy(self) -> bool:
        """Return True while an installed task is still running."""
        return self._task is not None and not self._task.done()

    async def replace(self, factory: Callable[[], Coroutine[Any, Any, Any]]) -> "asyncio.Task[Any]":
        """Cancel the running task (if any) and start a new one.

        Args:
            factory: Creates the coroutine to run; called under the lock.

        Returns:
            The newly installed task.
        """
        async with self._lock:
            previous = self._task
            self._task = None
            if previous is not None and not previous.done():
                logger.debug("%s: cancelling previous operation", self._name)
                previous.cancel()
            task = asyncio.get_running_loop().create_task(factory(), name=self._name)
            task.add_done_callback(self._on_done)
            self._task = task
            return task

    async def cancel(self) -> None:
        """Cancel the running task without starting another."""
        async with self._lock:
            task = self._task
            self._task = None
            if task is not None and not task.done():
                task.cancel()

    def _on_done(self, task: "asyncio.Task[Any]") -> None:
        if self._task is task:
            self._task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s failed: %s", self._name, exc, exc_info=exc)
