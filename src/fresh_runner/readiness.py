"""Readiness prober: poll the server over HTTP until it answers.

A probe is a plain ``HEAD`` request. Any 2xx response means the server
is ready; connection errors and error statuses only mean "not yet".
Probes are retried with capped exponential backoff until a deadline.
"""

from __future__ import annotations

import asyncio
import http.client
import logging
import time
from typing import TYPE_CHECKING
import urllib.error
import urllib.request

from fresh_runner.errors import ReadinessTimeoutError

if TYPE_CHECKING:
    from asyncio.subprocess import Process

logger = logging.getLogger(__name__)

BASE_DELAY_SECONDS = 0.2
GROWTH_FACTOR = 1.25
MAX_DELAY_SECONDS = 2.0
PROGRESS_EVERY = 5

_PROBE_TIMEOUT_SECONDS = 2.0

# Probes target a local dev server; never route them through *_proxy.
_OPENER = urllib.request.build_opener(urllib.request.ProxyHandler({}))


def backoff_delay(attempt: int) -> float:
    """Return the sleep before retry number *attempt* (0-based), in seconds."""
    return min(BASE_DELAY_SECONDS * GROWTH_FACTOR**attempt, MAX_DELAY_SECONDS)


def _head(url: str) -> bool:
    request = urllib.request.Request(url, method="HEAD")
    try:
        with _OPENER.open(request, timeout=_PROBE_TIMEOUT_SECONDS) as resp:  # nosec B310
            return 200 <= resp.status < 300
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError):
        return False


async def is_server_ready(host: str, port: int, path: str = "/") -> bool:
    """Probe ``http://<host>:<port><path>`` once.

    The blocking request runs in a worker thread so the event loop keeps
    servicing signals while a probe is in flight.

    Returns:
        ``True`` on a 2xx response, ``False`` on anything else.
    """
    return await asyncio.to_thread(_head, f"http://{host}:{port}{path}")


async def wait_for_server(
    host: str,
    port: int,
    path: str,
    timeout_ms: int,
    *,
    server: Process | None = None,
    fail_fast: bool = False,
) -> None:
    """Block until the server answers a probe or *timeout_ms* elapses.

    By default a crashed server is only noticed through continued probe
    failures. With *fail_fast* and a *server* handle, an already-exited
    server aborts the wait immediately.

    Args:
        host: Host to probe.
        port: Port to probe.
        path: Absolute request path.
        timeout_ms: Deadline for readiness in milliseconds.
        server: Server process, consulted only when *fail_fast* is set.
        fail_fast: Stop waiting as soon as *server* has exited.

    Raises:
        ReadinessTimeoutError: If the deadline passes before a probe
            succeeds, or the server exited while *fail_fast* is set.
    """
    start = time.monotonic()
    timeout_s = timeout_ms / 1000.0
    attempt = 0

    while time.monotonic() - start < timeout_s:
        if await is_server_ready(host, port, path):
            logger.info("server ready on port %d", port)
            return

        if fail_fast and server is not None and server.returncode is not None:
            msg = f"Server exited with code {server.returncode} before becoming ready"
            raise ReadinessTimeoutError(
                msg,
                diagnostics={
                    "attempts": attempt + 1,
                    "elapsed_seconds": time.monotonic() - start,
                    "server_exit_code": server.returncode,
                },
            )

        await asyncio.sleep(backoff_delay(attempt))
        attempt += 1
        if attempt % PROGRESS_EVERY == 0:
            logger.info("waiting for server (attempt %d)...", attempt)

    msg = f"Server not ready after {timeout_ms}ms"
    raise ReadinessTimeoutError(
        msg,
        diagnostics={
            "attempts": attempt,
            "elapsed_seconds": time.monotonic() - start,
            "url": f"http://{host}:{port}{path}",
        },
    )
