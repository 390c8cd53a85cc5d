"""Startup failures that end the process before the listener binds."""

from __future__ import annotations

from typing import Optional, Sequence


class StartupFatalError(Exception):
    """Base class for failures that leave the gateway unable to serve."""


class SpawnError(StartupFatalError):
    """The Tor child process could not be started at all."""

    def __init__(self, command: Sequence[str], cause: BaseException):
        self.command = list(command)
        self.cause = cause
        super().__init__(f"Failed to spawn {self.command[0]!r}: {cause}")


class ReadinessTimeout(StartupFatalError):
    """The SOCKS endpoint never accepted a connection within the budget."""

    def __init__(self, attempts: int, endpoint: str, last_error: Optional[str] = None):
        self.attempts = attempts
        self.endpoint = endpoint
        self.last_error = last_error
        msg = f"Tor failed to start after {attempts} attempts ({endpoint} unreachable)"
        if last_error:
            msg = f"{msg}: {last_error}"
        super().__init__(msg)
