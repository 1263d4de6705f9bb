"""Shared fixtures for the fresh_runner test suite."""

from __future__ import annotations

from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
import socket
import sys
import textwrap
import threading
import time
from typing import Any

from fresh_runner.models import Command, RunnerConfig
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config(**overrides: Any) -> RunnerConfig:
    """Build a valid RunnerConfig with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed RunnerConfig instance.
    """
    defaults: dict[str, Any] = {}
    defaults.update(overrides)
    return RunnerConfig(**defaults)


def python_command(*args: str) -> Command:
    """Build a Command running the current interpreter with *args*."""
    return Command(tokens=(sys.executable, *args))


def wait_for_file(path: Path, timeout: float = 10.0) -> None:
    """Poll until *path* exists, failing the test after *timeout* seconds."""
    deadline = time.monotonic() + timeout
    while not path.exists():
        if time.monotonic() > deadline:
            pytest.fail(f"{path} was not created within {timeout}s")
        time.sleep(0.02)


# Mock dev server used by integration tests.
#
#   argv: port delay marker mode [ready_file]
#   mode "serve":    answer HTTP after <delay> seconds, exit on SIGTERM
#   mode "silent":   never listen, exit on SIGTERM
#   mode "stubborn": never listen, ignore SIGTERM
#
# The marker file records that SIGTERM was received.
MOCK_SERVER_SOURCE = textwrap.dedent(
    """
    import http.server
    import pathlib
    import signal
    import sys
    import time

    port = int(sys.argv[1])
    delay = float(sys.argv[2])
    marker = pathlib.Path(sys.argv[3])
    mode = sys.argv[4]


    def on_term(signum, frame):
        marker.write_text("SIGTERM")
        if mode != "stubborn":
            sys.exit(0)


    signal.signal(signal.SIGTERM, on_term)
    if len(sys.argv) > 5:
        pathlib.Path(sys.argv[5]).write_text("ready")

    time.sleep(delay)
    if mode == "serve":
        class Handler(http.server.BaseHTTPRequestHandler):
            def do_HEAD(self):
                self.send_response(200)
                self.end_headers()

            def log_message(self, *args):
                pass

        http.server.HTTPServer(("127.0.0.1", port), Handler).serve_forever()
    else:
        while True:
            time.sleep(0.05)
    """
)

# Test command stand-in: argv: exit_code [sleep_seconds] [ready_file] [marker]
MOCK_TEST_SOURCE = textwrap.dedent(
    """
    import pathlib
    import signal
    import sys
    import time

    code = int(sys.argv[1])
    pause = float(sys.argv[2]) if len(sys.argv) > 2 else 0.0
    if len(sys.argv) > 4:
        marker = pathlib.Path(sys.argv[4])

        def on_term(signum, frame):
            marker.write_text("SIGTERM")
            sys.exit(143)

        signal.signal(signal.SIGTERM, on_term)
    if len(sys.argv) > 3:
        pathlib.Path(sys.argv[3]).write_text("ready")
    time.sleep(pause)
    sys.exit(code)
    """
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def free_port() -> int:
    """Return a TCP port that nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


@pytest.fixture()
def mock_server_script(tmp_path: Path) -> Path:
    """Write the mock dev server script and return its path."""
    path = tmp_path / "mock_server.py"
    path.write_text(MOCK_SERVER_SOURCE, encoding="utf-8")
    return path


@pytest.fixture()
def mock_test_script(tmp_path: Path) -> Path:
    """Write the mock test command script and return its path."""
    path = tmp_path / "mock_test.py"
    path.write_text(MOCK_TEST_SOURCE, encoding="utf-8")
    return path


class _Handler(BaseHTTPRequestHandler):
    def do_HEAD(self) -> None:
        self.send_response(200 if self.path == "/" else 404)
        self.end_headers()

    def log_message(self, *args: Any) -> None:
        pass


@pytest.fixture()
def http_server() -> Iterator[int]:
    """Run an in-process HTTP server answering HEAD ``/`` with 200.

    Any other path answers 404. Yields the bound port.
    """
    server = HTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield int(server.server_address[1])
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)
