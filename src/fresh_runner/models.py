"""Core data models for the fresh-runner supervisor.

Defines the frozen Pydantic models and enums shared by the resolver,
process supervisor, readiness prober and cleanup coordinator. Every
model here is immutable once built: configuration is resolved once at
startup and never mutated afterwards.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator


class RunMode(StrEnum):
    """How the server is built and started.

    ``DIRECT`` runs an explicit build command followed by an explicit
    serve command. ``TASK`` runs a single composite command that both
    builds and serves.
    """

    DIRECT = "direct"
    TASK = "task"


class CleanupState(StrEnum):
    """Lifecycle of the cleanup coordinator: ``idle -> cleaning -> done``."""

    IDLE = "idle"
    CLEANING = "cleaning"
    DONE = "done"


class Command(BaseModel):
    """A program name plus its arguments.

    Attributes:
        tokens: Ordered, non-empty tuple of whitespace-free tokens.
    """

    model_config = ConfigDict(frozen=True)

    tokens: tuple[str, ...]

    @field_validator("tokens")
    @classmethod
    def _check_tokens(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Reject empty commands and empty tokens."""
        if not v:
            msg = "Command must contain at least one token"
            raise ValueError(msg)
        if any(not token for token in v):
            msg = "Command tokens must be non-empty strings"
            raise ValueError(msg)
        return v

    @property
    def program(self) -> str:
        """The executable name (first token)."""
        return self.tokens[0]

    @property
    def args(self) -> tuple[str, ...]:
        """Arguments passed to the executable."""
        return self.tokens[1:]

    def display(self) -> str:
        """Render the command for log output, quoting tokens with spaces."""
        return " ".join(f'"{t}"' if " " in t else t for t in self.tokens)


class RunnerConfig(BaseModel):
    """Runner configuration, resolved once at startup.

    Raw command strings are kept unparsed here; ``resolve_commands`` in
    ``fresh_runner.config`` turns them into ``Command`` instances.

    Attributes:
        mode: Direct (build then serve) or task (composite command).
        build_cmd: Raw build command, empty when no build step is wanted.
        serve_cmd: Raw serve command used in direct mode.
        task_cmd: Raw composite build+serve command used in task mode.
        test_cmd: Raw test command, used in both modes.
        host: Host probed for readiness.
        port: Port probed for readiness.
        server_timeout_ms: Readiness timeout in milliseconds.
        health_path: Path probed for readiness, always starting with ``/``.
        fail_fast_on_server_exit: Abort probing as soon as the server exits.
        log_level: Logging level string.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    mode: RunMode = RunMode.TASK
    build_cmd: str = "deno run -A dev.ts build"
    serve_cmd: str = "deno serve -A _fresh/server.js"
    task_cmd: str = "deno task serve"
    test_cmd: str = "deno task test:e2e"
    host: str = "127.0.0.1"
    port: int = 8000
    server_timeout_ms: int = 30000
    health_path: str = "/"
    fail_fast_on_server_exit: bool = False
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("port")
    @classmethod
    def _check_port(cls, v: int) -> int:
        """Validate that the port is a usable TCP port."""
        if not 1 <= v <= 65535:
            msg = f"port must be between 1 and 65535, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("server_timeout_ms")
    @classmethod
    def _check_timeout(cls, v: int) -> int:
        """Validate that the readiness timeout is positive."""
        if v < 1:
            msg = f"server_timeout_ms must be >= 1, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("health_path")
    @classmethod
    def _normalize_path(cls, v: str) -> str:
        """Ensure the health path is absolute."""
        v = v.strip()
        if not v.startswith("/"):
            v = "/" + v
        return v

    @property
    def base_url(self) -> str:
        """Readiness URL probed by the prober."""
        return f"http://{self.host}:{self.port}{self.health_path}"


class ResolvedCommands(BaseModel):
    """Concrete commands derived from a ``RunnerConfig``.

    Attributes:
        mode: The mode the commands were resolved for.
        build: Build command, ``None`` when the build step is skipped.
        server: Serve command (direct mode) or composite task command.
        test: Test command.
    """

    model_config = ConfigDict(frozen=True)

    mode: RunMode
    build: Command | None = None
    server: Command
    test: Command


class CommandResult(BaseModel):
    """Outcome of a child process that was run to completion.

    Attributes:
        exit_code: Process exit code; negative values are signal numbers,
            ``127`` means the process could not be spawned.
        duration_seconds: Wall-clock runtime in seconds.
        error: Spawn error text, ``None`` when the process started.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def success(self) -> bool:
        """Whether the process started and exited with code 0."""
        return self.error is None and self.exit_code == 0
