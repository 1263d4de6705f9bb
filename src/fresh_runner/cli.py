"""CLI entry point for the fresh-runner supervisor.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``fresh-runner = "fresh_runner.cli:main"``. The
command takes no options: everything is driven by environment
variables (see ``fresh_runner.config``).
"""

from __future__ import annotations

import argparse
import sys

from fresh_runner.config import load_config
from fresh_runner.errors import ConfigurationError
from fresh_runner.models import RunMode, RunnerConfig
from fresh_runner.orchestrator import configure_logging, run_e2e_sync

_EPILOG = """\
environment:
  BUILD_CMD, SERVE_CMD      direct mode commands (either one selects direct mode)
  TASK_CMD                  composite build+serve command for task mode
  TEST_CMD                  test command
  FRESH_DEV_HOST, FRESH_DEV_PORT, HEALTH_PATH
                            readiness probe target
  SERVER_TIMEOUT_MS         readiness timeout
  FAIL_FAST_ON_SERVER_EXIT  stop waiting as soon as the server exits
  LOG_LEVEL, LOG_FILE       logging
  FRESH_RUNNER_CONFIG       YAML file with any of the keys above
"""


def _build_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(
        prog="fresh-runner",
        description="Start a dev server, wait until it is ready, run E2E tests, clean up.",
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )


def _print_startup_summary(config: RunnerConfig) -> None:
    """Print a startup summary banner to stdout."""
    sep = "=" * 60
    print(sep)
    print("fresh-runner")
    print(sep)
    print(f"  Mode:         {config.mode}")
    if config.mode is RunMode.DIRECT:
        print(f"  Build:        {config.build_cmd or '(none)'}")
        print(f"  Serve:        {config.serve_cmd or '(none)'}")
    else:
        print(f"  Task:         {config.task_cmd or '(none)'}")
    print(f"  Test:         {config.test_cmd or '(none)'}")
    print(f"  Probe:        {config.base_url}")
    print(f"  Timeout:      {config.server_timeout_ms}ms")
    print(sep)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the fresh-runner CLI application.

    Returns:
        Exit code: 0 on success, 1 on any failure.
    """
    _build_parser().parse_args(argv)

    try:
        config = load_config()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config)
    _print_startup_summary(config)

    exit_code = run_e2e_sync(config)
    if exit_code == 0:
        print("E2E run succeeded.")
    else:
        print("E2E run failed.", file=sys.stderr)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
