"""Listener lifecycle states."""

from __future__ import annotations

from enum import Enum


class ListenerState(str, Enum):
    """Finite state machine for the event bus listener."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
