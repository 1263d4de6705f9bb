"""Exception hierarchy for the fresh-runner supervisor.

Every fatal condition is raised as a ``RunnerError`` subclass and
funnelled by the orchestrator into a single cleanup-and-exit path.
Cleanup problems have no exception type here: they are logged, never raised.
"""

from __future__ import annotations

from typing import Any


class RunnerError(Exception):
    """Run failure with diagnostic context.

    Attributes:
        diagnostics: Structured diagnostic information about the failure
            (stage, elapsed time, exit code, ...).
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        """Initialize with a message and optional structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context for debugging.
        """
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


class ConfigurationError(RunnerError):
    """Configuration is invalid or a mandatory command is missing."""


class BuildError(RunnerError):
    """The build command exited non-zero or could not be started."""


class SpawnError(RunnerError):
    """A child process could not be launched."""


class ReadinessTimeoutError(RunnerError, TimeoutError):
    """The server did not become ready within the configured timeout."""


class TestCommandError(RunnerError):
    """The test command exited non-zero."""

    # Keep pytest from collecting this class as a test case.
    __test__ = False
