"""Tests for the cleanup coordinator in ``SupervisorContext``.

Validates the idle -> cleaning -> done state machine, idempotency under
repeated and concurrent calls, tolerance of a missing server handle,
the warning-only treatment of teardown errors, and the real SIGTERM ->
SIGKILL escalation against a server that ignores SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import signal
import time
from unittest.mock import AsyncMock, MagicMock, patch

from fresh_runner.execution import spawn_server
from fresh_runner.models import CleanupState
from fresh_runner.supervisor import SupervisorContext
import pytest

from tests.conftest import python_command, wait_for_file

_MODULE = "fresh_runner.supervisor"


# ===========================================================================
# Handle slot
# ===========================================================================


@pytest.mark.unit
class TestServerHandle:
    """The server handle is set at most once."""

    def test_initially_unset(self) -> None:
        """A new context has no server and is idle."""
        ctx = SupervisorContext()
        assert ctx.server is None
        assert ctx.state is CleanupState.IDLE
        assert ctx.interrupted is False

    def test_attach_once(self) -> None:
        """The attached process is exposed as ``server``."""
        ctx = SupervisorContext()
        proc = MagicMock(pid=1234)
        ctx.attach_server(proc)
        assert ctx.server is proc

    def test_attach_twice_raises(self) -> None:
        """A second attach is a programming error."""
        ctx = SupervisorContext()
        ctx.attach_server(MagicMock(pid=1))
        with pytest.raises(RuntimeError, match="already attached"):
            ctx.attach_server(MagicMock(pid=2))


# ===========================================================================
# Cleanup state machine
# ===========================================================================


@pytest.mark.unit
class TestCleanupIdempotency:
    """Teardown runs once however many times cleanup is called."""

    @pytest.mark.asyncio
    async def test_without_server(self) -> None:
        """Cleanup tolerates a missing handle and returns the exit code."""
        ctx = SupervisorContext()
        terminate = AsyncMock()
        with patch(f"{_MODULE}.terminate_process_group", terminate):
            assert await ctx.cleanup(0) == 0
        terminate.assert_not_awaited()
        assert ctx.state is CleanupState.DONE

    @pytest.mark.asyncio
    async def test_twice_in_succession(self) -> None:
        """The second call is a no-op that still returns its exit code."""
        ctx = SupervisorContext(grace_seconds=1.0)
        proc = MagicMock(pid=4321)
        ctx.attach_server(proc)
        terminate = AsyncMock(return_value=0)
        with patch(f"{_MODULE}.terminate_process_group", terminate):
            first = await ctx.cleanup(1)
            second = await ctx.cleanup(1)
        assert (first, second) == (1, 1)
        terminate.assert_awaited_once_with(proc, 1.0)
        assert ctx.state is CleanupState.DONE

    @pytest.mark.asyncio
    async def test_concurrent_calls(self) -> None:
        """Racing callers trigger one teardown; the late caller waits for it."""
        ctx = SupervisorContext()
        ctx.attach_server(MagicMock(pid=99))
        finished: list[str] = []

        async def slow_terminate(*_: object) -> int:
            await asyncio.sleep(0.2)
            finished.append("teardown")
            return 0

        terminate = AsyncMock(side_effect=slow_terminate)

        async def late_caller() -> int:
            await asyncio.sleep(0.05)
            code = await ctx.cleanup(1)
            finished.append("late")
            return code

        with patch(f"{_MODULE}.terminate_process_group", terminate):
            codes = await asyncio.gather(ctx.cleanup(1), late_caller())

        assert codes == [1, 1]
        terminate.assert_awaited_once()
        assert finished == ["teardown", "late"]

    @pytest.mark.asyncio
    async def test_teardown_error_is_logged_not_raised(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failing teardown is a warning and does not change the exit code."""
        ctx = SupervisorContext()
        ctx.attach_server(MagicMock(pid=7))
        terminate = AsyncMock(side_effect=PermissionError("not allowed"))
        with (
            patch(f"{_MODULE}.terminate_process_group", terminate),
            caplog.at_level(logging.WARNING, logger=_MODULE),
        ):
            assert await ctx.cleanup(0) == 0
        assert ctx.state is CleanupState.DONE
        assert any("error during server cleanup" in r.message for r in caplog.records)


# ===========================================================================
# External interrupts
# ===========================================================================


@pytest.mark.unit
class TestRequestCleanup:
    """A signal schedules cleanup and cancels the main flow."""

    @pytest.mark.asyncio
    async def test_cancels_main_task(self) -> None:
        """The main task is cancelled and cleanup runs once."""
        ctx = SupervisorContext()
        ctx.attach_server(MagicMock(pid=5))
        main = asyncio.ensure_future(asyncio.sleep(30))
        terminate = AsyncMock(return_value=0)

        with patch(f"{_MODULE}.terminate_process_group", terminate):
            ctx.request_cleanup(main)
            with pytest.raises(asyncio.CancelledError):
                await main
            assert await ctx.cleanup(1) == 1

        assert ctx.interrupted is True
        assert ctx.state is CleanupState.DONE
        terminate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_does_not_cancel_during_cleanup(self) -> None:
        """A signal arriving mid-teardown leaves the main flow alone."""
        ctx = SupervisorContext()
        main = asyncio.ensure_future(asyncio.sleep(0.1))
        await ctx.cleanup(0)

        ctx.request_cleanup(main)
        await main
        assert not main.cancelled()

    @pytest.mark.asyncio
    async def test_interrupt_during_teardown_fails_the_run(self) -> None:
        """A signal landing while a successful run tears down still yields exit 1."""
        ctx = SupervisorContext()
        ctx.attach_server(MagicMock(pid=5))
        main = asyncio.ensure_future(asyncio.sleep(30))

        async def slow_teardown(*_: object) -> int:
            await asyncio.sleep(0.3)
            return 0

        terminate = AsyncMock(side_effect=slow_teardown)
        with patch(f"{_MODULE}.terminate_process_group", terminate):
            first = asyncio.ensure_future(ctx.cleanup(0))
            while ctx.state is not CleanupState.CLEANING:
                await asyncio.sleep(0.01)
            ctx.request_cleanup(main)
            assert await first == 1
            assert await ctx.cleanup(0) == 1

        assert not main.cancelled()
        main.cancel()
        terminate.assert_awaited_once()


# ===========================================================================
# Real processes
# ===========================================================================


@pytest.mark.integration
class TestCleanupRealServer:
    """Cleanup against real child processes."""

    @pytest.mark.asyncio
    async def test_stubborn_server_is_killed(
        self, tmp_path: Path, mock_server_script: Path, free_port: int
    ) -> None:
        """A server ignoring SIGTERM is killed; cleanup ends within grace + constant."""
        ready, marker = tmp_path / "ready", tmp_path / "term"
        ctx = SupervisorContext(grace_seconds=0.5)
        ctx.attach_server(
            await spawn_server(
                python_command(
                    str(mock_server_script), str(free_port), "60", str(marker), "stubborn", str(ready)
                )
            )
        )
        await asyncio.to_thread(wait_for_file, ready)

        start = time.monotonic()
        assert await ctx.cleanup(1) == 1
        elapsed = time.monotonic() - start

        assert ctx.server is not None
        assert ctx.server.returncode == -signal.SIGKILL
        assert marker.read_text() == "SIGTERM"
        assert elapsed < 0.5 + 2.0

    @pytest.mark.asyncio
    async def test_already_exited_server(self) -> None:
        """A server that crashed before cleanup is handled quietly."""
        ctx = SupervisorContext(grace_seconds=0.5)
        ctx.attach_server(await spawn_server(python_command("-c", "import sys; sys.exit(4)")))
        await asyncio.sleep(0.3)
        assert await ctx.cleanup(1) == 1
        assert ctx.server is not None
        assert ctx.server.returncode == 4
