"""Command resolver: configuration loading and command derivation.

Configuration comes from environment-style key/value pairs, optionally
layered on top of a YAML file named by ``FRESH_RUNNER_CONFIG``. Values
from the environment always win over the file; unset keys fall back to
the defaults below.

Commands are tokenized by splitting on whitespace runs. Quoted
arguments are not supported: a token can never contain a space. Use
task mode and a project task when an argument needs one.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError
import yaml

from fresh_runner.errors import ConfigurationError
from fresh_runner.models import Command, ResolvedCommands, RunMode, RunnerConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_KEY = "FRESH_RUNNER_CONFIG"

DEFAULTS: dict[str, str] = {
    "BUILD_CMD": "deno run -A dev.ts build",
    "SERVE_CMD": "deno serve -A _fresh/server.js",
    "TASK_CMD": "deno task serve",
    "TEST_CMD": "deno task test:e2e",
    "FRESH_DEV_HOST": "127.0.0.1",
    "FRESH_DEV_PORT": "8000",
    "SERVER_TIMEOUT_MS": "30000",
    "HEALTH_PATH": "/",
    "FAIL_FAST_ON_SERVER_EXIT": "0",
    "LOG_LEVEL": "INFO",
    "LOG_FILE": "",
}

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def parse_command(raw: str) -> Command | None:
    """Split a raw command string on whitespace runs.

    Args:
        raw: Command line such as ``"deno task serve"``.

    Returns:
        The parsed ``Command``, or ``None`` when *raw* holds no tokens.
    """
    tokens = tuple(raw.split())
    if not tokens:
        return None
    return Command(tokens=tokens)


def _load_config_file(path: str) -> dict[str, str]:
    """Load a YAML mapping of configuration keys.

    Args:
        path: Path to the YAML file.

    Returns:
        The mapping with every value converted to a string (``null``
        becomes the empty string).

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML,
            or does not contain a mapping.
    """
    file_path = Path(path)
    if not file_path.is_file():
        msg = f"config file not found: {path}"
        raise ConfigurationError(msg, diagnostics={"config_file": path})

    try:
        with open(file_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"config file is not valid YAML: {path}: {exc}"
        raise ConfigurationError(msg, diagnostics={"config_file": path}) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"config file must contain a YAML mapping, got {type(data).__name__}"
        raise ConfigurationError(msg, diagnostics={"config_file": path})

    values: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            values[str(key)] = ""
        elif isinstance(value, bool):
            values[str(key)] = "1" if value else "0"
        else:
            values[str(key)] = str(value)
    return values


def _parse_int(values: Mapping[str, str], key: str) -> int:
    raw = values.get(key, DEFAULTS[key]).strip() or DEFAULTS[key]
    try:
        return int(raw)
    except ValueError as exc:
        msg = f"{key} must be an integer, got {raw!r}"
        raise ConfigurationError(msg, diagnostics={"key": key, "value": raw}) from exc


def load_config(environ: Mapping[str, str] | None = None) -> RunnerConfig:
    """Build the runner configuration from environment-style values.

    Direct mode is selected when ``BUILD_CMD`` or ``SERVE_CMD`` is
    present and non-empty after trimming; otherwise task mode. In direct
    mode a key that is absent takes its default, while a key explicitly
    set to an empty string is treated as "no command".

    Args:
        environ: Key/value source, defaults to ``os.environ``.

    Returns:
        A frozen ``RunnerConfig``.

    Raises:
        ConfigurationError: If the config file is unusable or a value
            fails validation.
    """
    env = os.environ if environ is None else environ

    values: dict[str, str] = {}
    config_file = env.get(CONFIG_FILE_KEY, "").strip()
    if config_file:
        values.update(_load_config_file(config_file))
        logger.debug("Loaded %d keys from %s", len(values), config_file)
    values.update({k: v for k, v in env.items() if k in DEFAULTS})

    build_override = values.get("BUILD_CMD", "").strip()
    serve_override = values.get("SERVE_CMD", "").strip()
    mode = RunMode.DIRECT if (build_override or serve_override) else RunMode.TASK

    fields: dict[str, Any] = {
        "mode": mode,
        "build_cmd": values.get("BUILD_CMD", DEFAULTS["BUILD_CMD"]).strip(),
        "serve_cmd": values.get("SERVE_CMD", DEFAULTS["SERVE_CMD"]).strip(),
        "task_cmd": values.get("TASK_CMD", DEFAULTS["TASK_CMD"]).strip(),
        "test_cmd": values.get("TEST_CMD", DEFAULTS["TEST_CMD"]).strip(),
        "host": values.get("FRESH_DEV_HOST", "").strip() or DEFAULTS["FRESH_DEV_HOST"],
        "port": _parse_int(values, "FRESH_DEV_PORT"),
        "server_timeout_ms": _parse_int(values, "SERVER_TIMEOUT_MS"),
        "health_path": values.get("HEALTH_PATH", "").strip() or DEFAULTS["HEALTH_PATH"],
        "fail_fast_on_server_exit": (
            values.get("FAIL_FAST_ON_SERVER_EXIT", "").strip().lower() in _TRUTHY
        ),
        "log_level": values.get("LOG_LEVEL", "").strip() or DEFAULTS["LOG_LEVEL"],
        "log_file": values.get("LOG_FILE", "").strip() or None,
    }

    try:
        return RunnerConfig(**fields)
    except ValidationError as exc:
        msg = f"invalid configuration: {exc}"
        raise ConfigurationError(msg) from exc


def resolve_commands(config: RunnerConfig) -> ResolvedCommands:
    """Derive the build, server and test commands for *config*.

    Args:
        config: Resolved runner configuration.

    Returns:
        The concrete commands. ``build`` is ``None`` in task mode and in
        direct mode when no build command is configured.

    Raises:
        ConfigurationError: If the serve command is missing in direct
            mode, the task command is missing in task mode, or the test
            command is empty.
    """
    test = parse_command(config.test_cmd)
    if test is None:
        msg = "TEST_CMD is empty"
        raise ConfigurationError(msg, diagnostics={"mode": config.mode.value})

    if config.mode is RunMode.DIRECT:
        build = parse_command(config.build_cmd)
        server = parse_command(config.serve_cmd)
        if server is None:
            msg = "SERVE_CMD not provided in direct mode"
            raise ConfigurationError(msg, diagnostics={"mode": config.mode.value})
        return ResolvedCommands(mode=config.mode, build=build, server=server, test=test)

    task = parse_command(config.task_cmd)
    if task is None:
        msg = "TASK_CMD is empty in task mode"
        raise ConfigurationError(msg, diagnostics={"mode": config.mode.value})
    return ResolvedCommands(mode=config.mode, build=None, server=task, test=test)
