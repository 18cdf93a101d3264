"""Compose project discovery and failure summaries.

A stack is a directory under ``stacks_dir`` holding one of the recognised
compose file names.  Stack names are validated before they touch the
filesystem.

Dependencies: errors
Wired in: engine/docker_engine.py → run_operation()
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from dockpilot.errors import StackNotFoundError

COMPOSE_FILE_NAMES: tuple[str, ...] = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

# Variables that must not leak from this service into compose interpolation.
_DROPPED_ENV = ("PORT",)

_UNSAFE_PATTERN = re.compile(r"[/\\]|\.\.")
_MAX_STACK_NAME_LENGTH = 64

_PORT_IN_USE = re.compile(r"address already in use", re.IGNORECASE)
_PORT_NUMBER = re.compile(r":(\d{2,5})\b[^\n]*address already in use", re.IGNORECASE)
_DAEMON_ERROR = re.compile(r"Error response from daemon:\s*(.+)")


def validate_stack_name(name: str) -> str:
    """Return the stripped stack *name*, raising ``ValueError`` if unsafe."""
    stripped = name.strip() if name else ""
    if not stripped:
        raise ValueError("Stack name must not be empty")
    if _UNSAFE_PATTERN.search(stripped):
        raise ValueError(f"Stack name contains unsafe path characters: {stripped!r}")
    if len(stripped) > _MAX_STACK_NAME_LENGTH:
        raise ValueError(f"Stack name exceeds {_MAX_STACK_NAME_LENGTH} characters")
    return stripped


def find_compose_file(stack_dir: Path) -> Path | None:
    for candidate in COMPOSE_FILE_NAMES:
        path = stack_dir / candidate
        if path.is_file():
            return path
    return None


@dataclass(frozen=True)
class ComposeProject:
    """A resolved stack directory and the files compose should read."""

    name: str
    directory: Path
    compose_file: Path
    env_file: Path | None

    @classmethod
    def resolve(cls, stacks_dir: Path, name: str) -> ComposeProject:
        try:
            safe_name = validate_stack_name(name)
        except ValueError as exc:
            raise StackNotFoundError(name, str(exc)) from exc
        directory = stacks_dir / safe_name
        if not directory.is_dir():
            raise StackNotFoundError(safe_name)
        compose_file = find_compose_file(directory)
        if compose_file is None:
            raise StackNotFoundError(safe_name, f"No compose file found in stack '{safe_name}'")
        env_file = directory / ".env"
        return cls(
            name=safe_name,
            directory=directory,
            compose_file=compose_file,
            env_file=env_file if env_file.is_file() else None,
        )

    def command(self, docker_cli: str, args: Sequence[str]) -> list[str]:
        argv = [docker_cli, "compose", "-f", str(self.compose_file)]
        if self.env_file is not None:
            argv += ["--env-file", str(self.env_file)]
        return argv + list(args)


def dropped_env_keys() -> tuple[str, ...]:
    return _DROPPED_ENV


def summarize_failure(exit_code: int, stderr: str) -> str:
    """Turn compose's stderr into the message shown to users."""
    if _PORT_IN_USE.search(stderr):
        match = _PORT_NUMBER.search(stderr)
        if match:
            return (
                f"Port {match.group(1)} is already in use. "
                "Stop the service using this port or change the port mapping."
            )
        return (
            "A port required by this stack is already in use. "
            "Stop the service using this port or change the port mapping."
        )
    daemon = _DAEMON_ERROR.search(stderr)
    if daemon:
        return daemon.group(1).strip()
    detail = stderr.strip()
    if not detail:
        return f"Command failed with exit code {exit_code}"
    return f"Command failed with exit code {exit_code}: {detail}"
