"""Loopback HTTP event bus buffering notifications for polling consumers.

Usage:
    async with EventBus(port=0) as bus:
        bus.notify({"status": "indexing"}, event_type="progress")
        # GET {bus.url}/events -> [{"status": "indexing"}]

The bus is an explicit handle: whoever starts it owns it and passes it to
code that needs ``notify``/``is_running``/``stop``. Several independent
instances may run side by side on different ports.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator, Mapping
import contextlib
import json
import logging
import socket
from typing import Any

import uvicorn

from ..exceptions import BindError
from ..state import ListenerState
from .api import create_app
from .buffer import DEFAULT_EVENT_TYPE, EventBuffer, EventRecord

LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5050

EventCallback = Callable[[EventRecord], None]


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to its owner."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return None


class EventBus:
    """Loopback HTTP listener over a shared :class:`EventBuffer`.

    States are ``STOPPED`` and ``RUNNING``; only :meth:`start` and
    :meth:`stop` move between them and both are idempotent.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        max_events: int | None = 10_000,
        stream_poll_interval: float = 1.0,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self.host = host
        self.stream_poll_interval = stream_poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.buffer = EventBuffer(max_events)
        self._requested_port = port
        self._bound_port: int | None = None
        self._state = ListenerState.STOPPED
        self._lifecycle_lock = asyncio.Lock()
        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._shutting_down = False
        self._subscribers: list[EventCallback] = []

    @classmethod
    def from_config(cls, event_bus_config: Mapping[str, Any]) -> EventBus:
        """Build a bus from the ``[event_bus]`` config section."""
        return cls(
            host=str(event_bus_config.get("host", DEFAULT_HOST)),
            port=int(event_bus_config.get("port", DEFAULT_PORT)),
            max_events=int(event_bus_config.get("max_events", 10_000)) or None,
            stream_poll_interval=float(
                event_bus_config.get("stream_poll_interval_seconds", 1.0)
            ),
            shutdown_timeout=float(event_bus_config.get("shutdown_timeout_seconds", 5.0)),
        )

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ListenerState.RUNNING

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def port(self) -> int:
        """Bound port while running, otherwise the port :meth:`start` will use."""
        if self._bound_port is not None:
            return self._bound_port
        return self._requested_port

    @property
    def url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    async def __aenter__(self) -> EventBus:
        return await self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def subscribe(self, callback: EventCallback) -> None:
        """Register an in-process callback run synchronously for every record.

        Callbacks run in whichever thread called :meth:`notify`.
        """
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb != callback]

    def notify(self, payload: Any, event_type: str = DEFAULT_EVENT_TYPE) -> EventRecord:
        """Append ``payload`` to the buffer. Safe from any thread or task.

        Raises:
            ValueError: ``payload`` is not representable as strict JSON
                (non-finite floats, unsupported types, circular references).
        """
        try:
            json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Event payload is not valid JSON: {exc}") from exc
        record = self.buffer.append(payload, event_type=event_type)
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception as exc:
                LOGGER.error(
                    "event_bus.subscriber_failed",
                    extra={"event": "event_bus.subscriber_failed", "error": str(exc)},
                )
        return record

    def snapshot(self, event_type: str | None = None) -> list[Any]:
        """Return buffered payloads in arrival order without removing them."""
        return [record.payload for record in self.buffer.snapshot(event_type)]

    def drain(self, event_type: str | None = None) -> list[Any]:
        """Return buffered payloads in arrival order and remove them."""
        return [record.payload for record in self.buffer.drain(event_type)]

    async def start(self, port: int | None = None) -> EventBus:
        """Bind the loopback listener and serve in the background.

        Returns immediately (after the listener accepts connections) with
        ``self``. Calling it while running does nothing.

        Raises:
            BindError: the port could not be bound or the server failed to start.
        """
        async with self._lifecycle_lock:
            if self._state is ListenerState.RUNNING:
                return self
            if port is not None:
                self._requested_port = port

            sock = self._bind(self._requested_port)
            bound_port = sock.getsockname()[1]
            config = uvicorn.Config(
                create_app(self),
                log_config=None,
                log_level="warning",
                access_log=False,
                lifespan="off",
                timeout_graceful_shutdown=max(1, int(self.shutdown_timeout)),
            )
            server = _EmbeddedServer(config)
            self._shutting_down = False
            task = asyncio.create_task(
                server.serve(sockets=[sock]), name=f"event-bus-{bound_port}"
            )
            while not server.started:
                if task.done():
                    sock.close()
                    error = None if task.cancelled() else task.exception()
                    raise BindError(
                        f"Event bus failed to start on {self.host}:{bound_port}: {error}"
                    )
                await asyncio.sleep(0.01)

            self._socket = sock
            self._server = server
            self._serve_task = task
            self._bound_port = bound_port
            self._state = ListenerState.RUNNING
            LOGGER.info(
                "event_bus.started",
                extra={"event": "event_bus.started", "host": self.host, "port": bound_port},
            )
            return self

    async def stop(self) -> None:
        """Close the listener and wait for the server task. No-op when stopped."""
        async with self._lifecycle_lock:
            if self._state is ListenerState.STOPPED:
                return
            self._shutting_down = True
            server, task = self._server, self._serve_task
            try:
                if server is not None and task is not None:
                    server.should_exit = True
                    done, _pending = await asyncio.wait(
                        {task}, timeout=self.shutdown_timeout + 1
                    )
                    if not done:
                        LOGGER.warning(
                            "event_bus.stop.forced",
                            extra={"event": "event_bus.stop.forced", "port": self.port},
                        )
                        server.force_exit = True
                        task.cancel()
                        try:
                            await task
                        except asyncio.CancelledError:
                            pass
                    elif not task.cancelled() and task.exception() is not None:
                        LOGGER.error(
                            "event_bus.serve_failed",
                            extra={
                                "event": "event_bus.serve_failed",
                                "error": str(task.exception()),
                            },
                        )
            finally:
                if self._socket is not None:
                    self._socket.close()
                port = self.port
                self._socket = None
                self._server = None
                self._serve_task = None
                self._bound_port = None
                self._state = ListenerState.STOPPED
            LOGGER.info("event_bus.stopped", extra={"event": "event_bus.stopped", "port": port})

    def _bind(self, port: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, port))
        except OSError as exc:
            sock.close()
            LOGGER.error(
                "event_bus.bind_failed",
                extra={
                    "event": "event_bus.bind_failed",
                    "host": self.host,
                    "port": port,
                    "error": str(exc),
                },
            )
            raise BindError(f"Unable to bind event bus to {self.host}:{port}: {exc}") from exc
        return sock


async def start_event_bus(
    port: int = DEFAULT_PORT, host: str = DEFAULT_HOST, **options: Any
) -> EventBus:
    """Create, start and return a new :class:`EventBus` handle."""
    return await EventBus(host=host, port=port, **options).start()
