"""End-to-end run orchestration: build, serve, wait, test, clean up.

``run_e2e`` sequences the stages strictly in order and funnels every
outcome (success, build failure, spawn failure, readiness timeout, test
failure, unexpected exception, external signal) into
``SupervisorContext.cleanup``, which decides the final exit code.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import contextlib
import logging
from pathlib import Path
import signal
import time

from fresh_runner.config import resolve_commands
from fresh_runner.errors import (
    BuildError,
    ConfigurationError,
    RunnerError,
    TestCommandError,
)
from fresh_runner.execution import run_build_step, run_to_completion, spawn_server
from fresh_runner.models import ResolvedCommands, RunMode, RunnerConfig
from fresh_runner.readiness import wait_for_server
from fresh_runner.supervisor import SupervisorContext

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def configure_logging(config: RunnerConfig) -> None:
    """Configure Python logging for the runner.

    Sets up the ``"fresh_runner"`` logger with a console handler and an
    optional file handler. Idempotent: repeated calls do not duplicate
    handlers.

    Args:
        config: Runner configuration providing ``log_level`` and
            optional ``log_file``.
    """
    runner_logger = logging.getLogger("fresh_runner")
    runner_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        type(h) is logging.StreamHandler for h in runner_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        runner_logger.addHandler(console)

    if config.log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == str(Path(config.log_file).resolve())
            for h in runner_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            runner_logger.addHandler(file_handler)


def install_signal_handlers(
    ctx: SupervisorContext,
    main_task: asyncio.Task[object] | None,
) -> Callable[[], None]:
    """Route SIGINT and SIGTERM to ``ctx.request_cleanup``.

    Args:
        ctx: Supervisor context owning the server.
        main_task: Task running the main flow, cancelled on a signal.

    Returns:
        A callable that removes the installed handlers.
    """
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _on_signal(sig: signal.Signals) -> None:
        logger.warning("Received %s, cleaning up...", sig.name)
        ctx.request_cleanup(main_task)

    for sig in _HANDLED_SIGNALS:
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers not supported for %s", sig.name)
            continue
        installed.append(sig)

    def _remove() -> None:
        for sig in installed:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)

    return _remove


async def _run_sequence(
    config: RunnerConfig,
    commands: ResolvedCommands,
    ctx: SupervisorContext,
) -> int:
    """Build, start the server, wait for readiness and run the tests.

    Raises:
        BuildError: If the build step fails.
        SpawnError: If the server cannot be started.
        ReadinessTimeoutError: If the server is not ready in time.
        TestCommandError: If the test command fails.
    """
    start = time.monotonic()

    if commands.mode is RunMode.DIRECT and not await run_build_step(commands.build):
        msg = "Build failed"
        raise BuildError(msg, diagnostics={"stage": "build"})

    ctx.attach_server(await spawn_server(commands.server))

    await wait_for_server(
        config.host,
        config.port,
        config.health_path,
        config.server_timeout_ms,
        server=ctx.server,
        fail_fast=config.fail_fast_on_server_exit,
    )

    logger.info("Running tests: %s", commands.test.display())
    result = await run_to_completion(commands.test)
    if not result.success:
        msg = f"Tests failed with exit code {result.exit_code}"
        raise TestCommandError(
            msg,
            diagnostics={
                "stage": "test",
                "exit_code": result.exit_code,
                "elapsed_seconds": time.monotonic() - start,
            },
        )

    logger.info("Tests passed in %.1fs", result.duration_seconds)
    return 0


async def run_e2e(
    config: RunnerConfig,
    ctx: SupervisorContext | None = None,
) -> int:
    """Run one full end-to-end cycle and return the process exit code.

    Args:
        config: Resolved runner configuration.
        ctx: Supervisor context; a fresh one is created when ``None``.

    Returns:
        ``0`` when the build, readiness check and tests all succeed,
        ``1`` otherwise.
    """
    ctx = ctx if ctx is not None else SupervisorContext()
    logger.info("E2E runner starting")
    logger.info(
        "Mode: %s", "direct (build -> serve)" if config.mode is RunMode.DIRECT else "task"
    )

    try:
        commands = resolve_commands(config)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return await ctx.cleanup(1)

    main_task = asyncio.current_task()
    remove_handlers = install_signal_handlers(ctx, main_task)
    try:
        try:
            exit_code = await _run_sequence(config, commands, ctx)
        except asyncio.CancelledError:
            if not ctx.interrupted:
                await asyncio.shield(ctx.cleanup(1))
                raise
            if main_task is not None:
                main_task.uncancel()
            exit_code = 1
        except RunnerError as exc:
            logger.error("%s", exc)
            logger.debug("Diagnostics: %s", exc.diagnostics)
            exit_code = 1
        except Exception:
            logger.exception("Unexpected error")
            exit_code = 1
        return await ctx.cleanup(exit_code)
    finally:
        remove_handlers()


def run_e2e_sync(config: RunnerConfig) -> int:
    """Synchronous wrapper for ``run_e2e()``.

    Delegates to :func:`run_e2e` via ``asyncio.run()``.
    """
    return asyncio.run(run_e2e(config))
