"""Runtime settings loaded from an optional TOML file and the environment.

Precedence, lowest first: built-in defaults, ``dockpilot.toml`` (or the file
named by ``--config`` / ``$DOCKPILOT_CONFIG``), environment variables.

Dependencies: (none, leaf module)
Wired in: cli.py → serve, server/app.py → create_app()
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import cast

_DEFAULT_CONFIG_NAME = "dockpilot.toml"
_VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class Settings:
    """Immutable service configuration."""

    host: str = "127.0.0.1"
    """Bind address for the HTTP/WebSocket server."""

    port: int = 3001
    """Bind port for the HTTP/WebSocket server."""

    log_level: str = "INFO"
    """Root logger level, one of the standard ``logging`` level names."""

    stacks_dir: Path = Path("/stacks")
    """Directory holding one sub-directory per compose stack."""

    docker_cli: str = "docker"
    """Docker CLI executable used for ``logs --follow`` and ``compose``."""

    docker_host: str | None = None
    """Engine endpoint override; ``None`` uses the SDK's environment lookup."""

    default_tail: int = 100
    """Historical lines requested when a subscribe message omits ``tail``."""

    log_buffer_size: int = 1000
    """Per-subscription outbox capacity before the oldest lines are dropped."""

    log_backlog_size: int = 1000
    """Recent lines kept per container tail for replay to late joiners."""

    shell_buffer_size: int = 256
    """Terminal output chunks queued per shell session before the reader waits."""

    operation_buffer_size: int = 512
    """Events queued per operation stream before the producer waits."""

    operation_history_limit: int = 100
    """Finished operations kept for ``GET /api/operations``."""

    pull_progress_interval: float = 0.2
    """Minimum seconds between ``pull-progress`` events for one image."""

    api_key: str | None = field(default=None, repr=False)
    """Shared secret expected in ``X-API-Key``; ``None`` disables auth."""

    @property
    def log_level_value(self) -> int:
        return cast(int, logging.getLevelName(self.log_level))


_INT_FIELDS: dict[str, str] = {
    "port": "DOCKPILOT_PORT",
    "default_tail": "DOCKPILOT_DEFAULT_TAIL",
    "log_buffer_size": "DOCKPILOT_LOG_BUFFER",
    "log_backlog_size": "DOCKPILOT_LOG_BACKLOG",
    "shell_buffer_size": "DOCKPILOT_SHELL_BUFFER",
    "operation_buffer_size": "DOCKPILOT_OPERATION_BUFFER",
    "operation_history_limit": "DOCKPILOT_OPERATION_HISTORY",
}

_POSITIVE_FIELDS = (
    "log_buffer_size",
    "log_backlog_size",
    "shell_buffer_size",
    "operation_buffer_size",
    "operation_history_limit",
)


def _flatten_toml(data: dict[str, object]) -> dict[str, object]:
    """Merge the ``[server]``, ``[docker]`` and ``[streams]`` tables into one mapping."""
    merged: dict[str, object] = {}
    for section in ("server", "docker", "streams"):
        raw = data.get(section, {})
        if not isinstance(raw, dict):
            msg = f"Config section [{section}] must be a table."
            raise TypeError(msg)
        merged.update(cast(dict[str, object], raw))
    return merged


def _coerce(name: str, value: object) -> object:
    if name in _INT_FIELDS:
        try:
            return int(str(value))
        except ValueError as exc:
            raise ValueError(f"Setting '{name}' must be an integer, got {value!r}") from exc
    if name == "pull_progress_interval":
        try:
            return float(str(value))
        except ValueError as exc:
            raise ValueError(f"Setting '{name}' must be a number, got {value!r}") from exc
    if name == "stacks_dir":
        return Path(str(value))
    if name == "log_level":
        return str(value).upper()
    return str(value)


def _env_overrides(environ: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    simple = {
        "host": "DOCKPILOT_HOST",
        "log_level": "DOCKPILOT_LOG_LEVEL",
        "docker_cli": "DOCKPILOT_DOCKER_CLI",
        "docker_host": "DOCKER_HOST",
        "api_key": "DOCKPILOT_API_KEY",
        "pull_progress_interval": "DOCKPILOT_PULL_PROGRESS_INTERVAL",
        **_INT_FIELDS,
    }
    for name, var in simple.items():
        if environ.get(var):
            overrides[name] = environ[var]
    # LOG_LEVEL and STACKS_DIR are shared with the rest of the control surface.
    if "log_level" not in overrides and environ.get("LOG_LEVEL"):
        overrides["log_level"] = environ["LOG_LEVEL"]
    stacks_dir = environ.get("DOCKPILOT_STACKS_DIR") or environ.get("STACKS_DIR")
    if stacks_dir:
        overrides["stacks_dir"] = stacks_dir
    return overrides


def _validate(settings: Settings) -> Settings:
    if settings.log_level not in _VALID_LOG_LEVELS:
        msg = (
            f"Invalid log level '{settings.log_level}'. "
            f"Must be one of {sorted(_VALID_LOG_LEVELS)}."
        )
        raise ValueError(msg)
    if not 0 < settings.port < 65536:
        raise ValueError(f"Invalid port: {settings.port}")
    if settings.default_tail < 0:
        raise ValueError("default_tail must not be negative")
    for name in _POSITIVE_FIELDS:
        if getattr(settings, name) <= 0:
            raise ValueError(f"{name} must be positive")
    if settings.pull_progress_interval < 0:
        raise ValueError("pull_progress_interval must not be negative")
    return settings


def _resolve_config_path(config_path: Path | None, environ: Mapping[str, str]) -> Path | None:
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return config_path
    env_path = environ.get("DOCKPILOT_CONFIG")
    if env_path:
        path = Path(env_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return path
    default = Path.cwd() / _DEFAULT_CONFIG_NAME
    return default if default.exists() else None


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build ``Settings`` from defaults, the TOML file and the environment.

    Raises ``ValueError`` / ``TypeError`` for malformed values and
    ``FileNotFoundError`` when an explicitly named config file is missing.
    """
    env = os.environ if environ is None else environ
    values: dict[str, object] = {}

    path = _resolve_config_path(config_path, env)
    if path is not None:
        with path.open("rb") as fh:
            values.update(_flatten_toml(tomllib.load(fh)))

    values.update(_env_overrides(env))

    known = set(Settings.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(unknown)}")

    coerced = {name: _coerce(name, value) for name, value in values.items()}
    return _validate(replace(Settings(), **coerced))  # type: ignore[arg-type]
