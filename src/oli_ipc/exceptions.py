"""Domain exception hierarchy for the OLI IPC core."""

from __future__ import annotations

from typing import Any


class OliIpcError(RuntimeError):
    """Base class for all IPC-level errors."""


class StartupError(OliIpcError):
    """Raised when the RPC child process cannot be launched."""


class ProtocolError(OliIpcError):
    """Raised when a line from the child cannot be decoded as JSON."""


class RemoteError(OliIpcError):
    """Raised when the child answers a call with a JSON-RPC error object."""

    def __init__(
        self, message: str, code: int | None = None, data: Any | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class ConnectionClosedError(OliIpcError):
    """Raised when the child's output ended or the client was closed."""


class RpcTimeoutError(OliIpcError):
    """Raised when a call does not receive its response before the deadline."""


class BindError(OliIpcError):
    """Raised when the event bus cannot bind its listening port."""


class EventBusUnavailableError(OliIpcError):
    """Raised when the event bus HTTP endpoint cannot be reached."""


class ConfigValidationError(OliIpcError):
    """Raised when configuration cannot be validated safely."""
