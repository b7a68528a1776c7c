"""Tests for the single-flight slot."""

import asyncio

import pytest

from wlcontrol.core.inflight import InFlightSlot


class TestInFlightSlot:
    """Test cancel-and-replace semantics."""

    @pytest.mark.asyncio
    async def test_replace_cancels_previous(self) -> None:
        """Test installing a new task cancels the running one."""
        slot = InFlightSlot("test")
        started = asyncio.Event()

        async def slow() -> None:
            started.set()
            await asyncio.sleep(10)

        first = await slot.replace(slow)
        await started.wait()
        second = await slot.replace(lambda: asyncio.sleep(0))

        await asyncio.gather(first, return_exceptions=True)
        assert first.cancelled()
        assert slot.task is second
        await second

    @pytest.mark.asyncio
    async def test_finished_task_clears_slot(self) -> None:
        """Test a completed task empties the slot."""
        slot = InFlightSlot("test")
        task = await slot.replace(lambda: asyncio.sleep(0))
        await task
        await asyncio.sleep(0)
        assert slot.task is None
        assert not slot.busy

    @pytest.mark.asyncio
    async def test_stale_completion_does_not_clear_newer_task(self) -> None:
        """Test the cancelled task's callback leaves the new task installed."""
        slot = InFlightSlot("test")
        first = await slot.replace(lambda: asyncio.sleep(10))
        second = await slot.replace(lambda: asyncio.sleep(10))

        await asyncio.gather(first, return_exceptions=True)
        await asyncio.sleep(0)

        assert slot.task is second
        assert slot.busy
        await slot.cancel()
        await asyncio.gather(second, return_exceptions=True)
        assert second.cancelled()
        assert slot.task is None

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test exceptions of the task are logged by the slot."""
        slot = InFlightSlot("boom")

        async def fail() -> None:
            raise RuntimeError("kaput")

        task = await slot.replace(fail)
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

        assert "kaput" in caplog.text
