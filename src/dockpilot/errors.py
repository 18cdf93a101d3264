"""Exception taxonomy shared by the engine adapter and the streaming components.

Component boundaries catch ``EngineError`` and turn it into a wire ``error``
event; nothing below that boundary formats messages for clients.

Dependencies: (none, leaf module)
Wired in: engine/*, streaming/*, server/ws_routes.py
"""

from __future__ import annotations


class DockPilotError(Exception):
    """Base class for all DockPilot errors."""


class EngineError(DockPilotError):
    """An engine call failed."""


class ResolutionError(EngineError):
    """The target of a request does not exist or is not usable."""


class ContainerNotFoundError(ResolutionError):
    def __init__(self, container_id: str) -> None:
        super().__init__(f"Container not found: {container_id}")
        self.container_id = container_id


class ContainerNotRunningError(ResolutionError):
    def __init__(self, container_id: str) -> None:
        super().__init__("Container is not running")
        self.container_id = container_id


class StackNotFoundError(ResolutionError):
    def __init__(self, stack: str, reason: str | None = None) -> None:
        super().__init__(reason or f"Stack not found: {stack}")
        self.stack = stack


class ImageNotFoundError(ResolutionError):
    def __init__(self, image: str) -> None:
        super().__init__(f"Image not found: {image}")
        self.image = image


class EngineUnavailableError(EngineError):
    """The engine could not be reached. Terminal for streams, fatal for operations."""


class OperationFailedError(EngineError):
    """An engine-side process finished unsuccessfully."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProtocolError(DockPilotError):
    """A client sent a message that could not be understood."""


class ShellStateError(DockPilotError):
    """A shell session call is not valid in the session's current state."""
