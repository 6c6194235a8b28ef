"""Exception types raised by the streaming bridge."""

from __future__ import annotations

__all__ = ["QuillbridgeError", "ProcessLaunchError", "InvalidTransitionError"]


class QuillbridgeError(RuntimeError):
    """Base class for bridge failures."""


class ProcessLaunchError(QuillbridgeError):
    """Raised when the external CLI cannot be spawned."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Unable to start {command}: {reason}")
        self.command = command
        self.reason = reason


class InvalidTransitionError(QuillbridgeError):
    """Raised when a request record is moved to an unreachable state."""
