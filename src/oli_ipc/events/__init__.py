"""Loopback HTTP event bus and its consumer client."""

from .buffer import EventBuffer, EventRecord
from .bus import EventBus, start_event_bus
from .client import EventBusClient

__all__ = ["EventBuffer", "EventBus", "EventBusClient", "EventRecord", "start_event_bus"]
