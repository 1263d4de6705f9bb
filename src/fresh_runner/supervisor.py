"""Cleanup coordinator and the supervisor context that owns the server.

``SupervisorContext`` holds the single server handle slot and the
cleanup state machine (``idle -> cleaning -> done``). Both the normal
control flow and the signal handlers call ``cleanup``; the transition
out of ``idle`` is a lock-guarded check-and-set, so teardown runs at
most once however many producers race for it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING

from fresh_runner.execution import GRACE_PERIOD_SECONDS, terminate_process_group
from fresh_runner.models import CleanupState

if TYPE_CHECKING:
    from asyncio.subprocess import Process

logger = logging.getLogger(__name__)


class SupervisorContext:
    """Owns the server process for the lifetime of one run.

    Attributes:
        grace_seconds: Time the server gets to exit after SIGTERM.
        interrupted: Set when an external signal requested shutdown.
    """

    def __init__(self, grace_seconds: float = GRACE_PERIOD_SECONDS) -> None:
        self.grace_seconds = grace_seconds
        self.interrupted = False
        self._server: Process | None = None
        self._state = CleanupState.IDLE
        self._exit_code = 0
        self._lock = threading.Lock()
        self._done = asyncio.Event()
        self._signal_tasks: set[asyncio.Task[int]] = set()

    @property
    def server(self) -> Process | None:
        """The server process, ``None`` until it has been spawned."""
        return self._server

    @property
    def state(self) -> CleanupState:
        """Current cleanup state."""
        return self._state

    def attach_server(self, proc: Process) -> None:
        """Store the server handle. May only be called once.

        Raises:
            RuntimeError: If a server handle is already attached.
        """
        with self._lock:
            if self._server is not None:
                msg = f"server already attached (pid={self._server.pid})"
                raise RuntimeError(msg)
            self._server = proc

    def _begin_cleanup(self, exit_code: int) -> bool:
        with self._lock:
            self._exit_code = max(self._exit_code, exit_code)
            if self._state is not CleanupState.IDLE:
                return False
            self._state = CleanupState.CLEANING
            return True

    async def cleanup(self, exit_code: int = 1) -> int:
        """Tear down the server and return the exit code to terminate with.

        Only the first call stops the server. Later calls do no teardown
        of their own; they wait until the first call has finished so the
        process never exits with the server still running.

        Errors while stopping the server are logged and never raised, so
        a failed teardown cannot mask the real outcome of the run.

        Args:
            exit_code: Code the process should exit with.

        Returns:
            The highest exit code requested by any call so far. An
            interrupt that arrives while teardown is running therefore
            still fails the run.
        """
        if not self._begin_cleanup(exit_code):
            logger.debug("cleanup already %s; waiting for it", self._state.value)
            await self._done.wait()
            return self._exit_code

        try:
            if self._server is not None:
                await self._stop_server(self._server)
        finally:
            self._state = CleanupState.DONE
            self._done.set()
        return self._exit_code

    async def _stop_server(self, proc: Process) -> None:
        try:
            returncode = await terminate_process_group(proc, self.grace_seconds)
        except Exception as exc:
            logger.warning("error during server cleanup: %s", exc)
            return
        logger.info("server cleanup done (exit code %s)", returncode)

    def request_cleanup(self, main_task: asyncio.Task[object] | None = None) -> None:
        """Handle an external interrupt.

        Schedules ``cleanup(1)`` as its own task and cancels *main_task*
        if teardown has not started yet. The main flow then calls
        ``cleanup`` as well, which waits for this one to finish. The run
        exits 1 even when the interrupt lands during teardown.
        """
        self.interrupted = True
        with self._lock:
            self._exit_code = max(self._exit_code, 1)
            cancel_main = self._state is CleanupState.IDLE
        task = asyncio.ensure_future(self.cleanup(1))
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)
        if cancel_main and main_task is not None and not main_task.done():
            main_task.cancel()
