"""Process supervisor: spawning and awaiting child processes.

Every child is started with inherited stdout/stderr, so server and test
logs stay visible to the operator, and in its own session so that the
whole process tree (``deno task`` -> ``deno`` -> workers) can be signalled
through its process group.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time

from fresh_runner.errors import SpawnError
from fresh_runner.models import Command, CommandResult

logger = logging.getLogger(__name__)

GRACE_PERIOD_SECONDS = 5.0
KILL_SETTLE_SECONDS = 0.2
GROUP_POLL_SECONDS = 0.05

# Conventional shell exit status for "command not found".
_SPAWN_FAILURE_EXIT_CODE = 127


async def spawn_process(cmd: Command) -> asyncio.subprocess.Process:
    """Start *cmd* as a child process in its own process group.

    Args:
        cmd: Command to launch.

    Returns:
        The running process.

    Raises:
        SpawnError: If the executable cannot be found or started.
    """
    logger.info("> spawning: %s", cmd.display())
    try:
        proc = await asyncio.create_subprocess_exec(
            cmd.program,
            *cmd.args,
            stdin=asyncio.subprocess.DEVNULL,
            start_new_session=True,  # own process group for killpg
        )
    except OSError as exc:
        msg = f"failed to spawn {cmd.program!r}: {exc}"
        raise SpawnError(msg, diagnostics={"command": cmd.display()}) from exc
    logger.debug("Spawned pid=%s for %s", proc.pid, cmd.program)
    return proc


def _signal_group(pid: int, sig: signal.Signals) -> bool:
    """Send *sig* to the process group led by *pid*.

    Returns:
        ``False`` if the group no longer exists.
    """
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return False
    return True


def _group_alive(pid: int) -> bool:
    """Return whether any member of the process group led by *pid* exists."""
    try:
        os.killpg(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Members exist but cannot be signalled from here.
        return False
    return True


async def terminate_process_group(
    proc: asyncio.subprocess.Process,
    grace_seconds: float = GRACE_PERIOD_SECONDS,
) -> int | None:
    """Send SIGTERM to the process group, escalating to SIGKILL after a grace period.

    The grace period covers the whole group, not just its leader. When
    the leader exits early, the rest of the group keeps whatever is left
    of *grace_seconds* to shut down on its own. Only members still alive
    at the deadline are killed, followed by a short pause so the
    operating system can reclaim ports and handles.

    Args:
        proc: Process started by ``spawn_process``.
        grace_seconds: Time allowed for a graceful exit.

    Returns:
        The final return code, or ``None`` if it could not be collected.
    """
    pid = proc.pid
    deadline = time.monotonic() + grace_seconds
    if proc.returncode is None:
        logger.info("Stopping pid=%s with SIGTERM...", pid)
        _signal_group(pid, signal.SIGTERM)

    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)

    # The leader may be gone while the rest of its group is still shutting down.
    while _group_alive(pid) and time.monotonic() < deadline:
        await asyncio.sleep(GROUP_POLL_SECONDS)

    if _group_alive(pid):
        logger.warning(
            "process group %s still running after %.1fs; sending SIGKILL", pid, grace_seconds
        )
        with contextlib.suppress(PermissionError):
            _signal_group(pid, signal.SIGKILL)
        await asyncio.sleep(KILL_SETTLE_SECONDS)

    with contextlib.suppress(ProcessLookupError):
        await proc.wait()
    return proc.returncode


async def spawn_server(cmd: Command) -> asyncio.subprocess.Process:
    """Start the server command and return immediately.

    The server is expected to run until it is told to stop, so this
    never waits on it.

    Raises:
        SpawnError: If the server cannot be started.
    """
    proc = await spawn_process(cmd)
    logger.info("server pid: %s", proc.pid)
    return proc


async def run_to_completion(cmd: Command) -> CommandResult:
    """Run *cmd* and wait for it to exit.

    Spawn failures are converted into a failed ``CommandResult`` with
    exit code 127. If the awaiting task is cancelled the child is
    terminated before the cancellation propagates.

    Args:
        cmd: Command to run.

    Returns:
        The exit code, duration and spawn error (if any).
    """
    start = time.monotonic()
    try:
        proc = await spawn_process(cmd)
    except SpawnError as exc:
        logger.error("%s", exc)
        return CommandResult(
            exit_code=_SPAWN_FAILURE_EXIT_CODE,
            duration_seconds=time.monotonic() - start,
            error=str(exc),
        )

    try:
        exit_code = await proc.wait()
    except asyncio.CancelledError:
        logger.info("Interrupted; stopping %s (pid=%s)", cmd.program, proc.pid)
        await asyncio.shield(terminate_process_group(proc))
        raise

    duration = time.monotonic() - start
    logger.debug("%s exited with %d after %.2fs", cmd.program, exit_code, duration)
    return CommandResult(exit_code=exit_code, duration_seconds=duration)


async def run_build_step(cmd: Command | None) -> bool:
    """Run the build command, if any, to completion.

    Args:
        cmd: Build command, or ``None`` to skip the build.

    Returns:
        ``True`` when there is nothing to build or the build exited 0.
    """
    if cmd is None:
        logger.info("No build command configured; skipping build")
        return True

    logger.info("Running build: %s", cmd.display())
    result = await run_to_completion(cmd)
    if not result.success:
        logger.error("Build failed with exit code %d", result.exit_code)
        return False
    logger.info("Build succeeded in %.1fs", result.duration_seconds)
    return True
