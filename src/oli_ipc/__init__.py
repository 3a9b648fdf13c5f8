"""Inter-process communication core for the OLI coding assistant."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import ensure_config_dir, load_config
    from .events import EventBus, EventBusClient, start_event_bus
    from .exceptions import (
        BindError,
        ConfigValidationError,
        ConnectionClosedError,
        EventBusUnavailableError,
        OliIpcError,
        ProtocolError,
        RemoteError,
        RpcTimeoutError,
        StartupError,
    )
    from .rpc import ProcessTransport, RpcClient
    from .state import ListenerState

__all__ = [
    "BindError",
    "ConfigValidationError",
    "ConnectionClosedError",
    "EventBus",
    "EventBusClient",
    "EventBusUnavailableError",
    "ListenerState",
    "OliIpcError",
    "ProcessTransport",
    "ProtocolError",
    "RemoteError",
    "RpcClient",
    "RpcTimeoutError",
    "StartupError",
    "ensure_config_dir",
    "load_config",
    "start_event_bus",
]

_EXCEPTION_NAMES = {
    "BindError",
    "ConfigValidationError",
    "ConnectionClosedError",
    "EventBusUnavailableError",
    "OliIpcError",
    "ProtocolError",
    "RemoteError",
    "RpcTimeoutError",
    "StartupError",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package does not pull in the HTTP stack."""
    if name in _EXCEPTION_NAMES:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name in {"RpcClient", "ProcessTransport"}:
        from .rpc import ProcessTransport, RpcClient

        return {"RpcClient": RpcClient, "ProcessTransport": ProcessTransport}[name]
    if name in {"EventBus", "EventBusClient", "start_event_bus"}:
        from . import events

        return getattr(events, name)
    if name == "ListenerState":
        from .state import ListenerState

        return ListenerState
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
