"""Asynchronous JSON-RPC 2.0 client driving a child process over stdio."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping
import inspect
import logging
import os
from typing import TYPE_CHECKING, Any

from ..exceptions import (
    ConnectionClosedError,
    OliIpcError,
    ProtocolError,
    RemoteError,
    RpcTimeoutError,
    StartupError,
)
from .protocol import (
    as_response,
    decode_line,
    encode_notification,
    encode_request,
    response_id,
)
from .transport import DEFAULT_LINE_LIMIT, ProcessTransport

if TYPE_CHECKING:
    from ..events.bus import EventBus

LOGGER = logging.getLogger(__name__)

MALFORMED_LINE_POLICIES = ("skip", "abort")

NotificationCallback = Callable[[Any], Any]

_END_OF_STREAM = object()


class RpcClient:
    """Correlate JSON-RPC calls and responses over one child process.

    A single reader task owns the child's stdout for the client's lifetime.
    Each call registers a future under its id before the request is written;
    the reader resolves and removes it when the matching response arrives, so
    any number of calls may be outstanding at once. Lines that match no
    pending id are notifications: they are handed to subscribers and queued
    for :meth:`notifications`.
    """

    def __init__(
        self,
        transport: ProcessTransport,
        *,
        default_timeout: float | None = None,
        malformed_lines: str = "skip",
        notification_queue_size: int = 1000,
    ) -> None:
        if malformed_lines not in MALFORMED_LINE_POLICIES:
            raise ValueError(
                f"malformed_lines must be one of {MALFORMED_LINE_POLICIES}, got {malformed_lines!r}."
            )
        self._transport = transport
        self._default_timeout = default_timeout or None
        self._malformed_lines = malformed_lines
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscribers: list[NotificationCallback] = []
        self._notifications: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=max(1, notification_queue_size)
        )
        self._callback_tasks: set[asyncio.Future[Any]] = set()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    async def spawn(
        cls,
        executable: str | os.PathLike[str],
        *args: str,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        line_limit: int = DEFAULT_LINE_LIMIT,
        **options: Any,
    ) -> RpcClient:
        """Spawn the RPC server and return a started client for it."""
        transport = await ProcessTransport.spawn(
            executable, *args, cwd=cwd, env=env, line_limit=line_limit
        )
        try:
            client = cls(transport, **options)
        except Exception:
            await transport.close()
            raise
        client.start()
        return client

    @classmethod
    async def from_config(cls, rpc_config: Mapping[str, Any]) -> RpcClient:
        """Spawn a client from the ``[rpc]`` config section."""
        server_path = str(rpc_config.get("server_path") or "").strip()
        if not server_path:
            raise StartupError("rpc.server_path is not configured.")
        return await cls.spawn(
            server_path,
            *rpc_config.get("server_args", []),
            line_limit=int(rpc_config.get("max_line_bytes", DEFAULT_LINE_LIMIT)),
            default_timeout=rpc_config.get("call_timeout_seconds") or None,
            malformed_lines=rpc_config.get("malformed_lines", "skip"),
            notification_queue_size=int(rpc_config.get("notification_queue_size", 1000)),
        )

    def start(self) -> None:
        """Start the reader task. Calling it again is a no-op."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(
                self._read_loop(), name=f"rpc-reader-{self._transport.pid}"
            )

    @property
    def is_closed(self) -> bool:
        if self._closed:
            return True
        return self._reader_task is not None and self._reader_task.done()

    @property
    def pid(self) -> int:
        return self._transport.pid

    @property
    def returncode(self) -> int | None:
        return self._transport.returncode

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def __aenter__(self) -> RpcClient:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def call(
        self, method: str, params: Any | None = None, *, timeout: float | None = None
    ) -> Any:
        """Send a request and wait for the response carrying the same id.

        Args:
            method: JSON-RPC method name.
            params: Request params; ``None`` is sent as ``{}``.
            timeout: Seconds to wait; falls back to the client default, and
                waits forever when neither is set.

        Raises:
            RemoteError: the server answered with an error object.
            RpcTimeoutError: no response arrived in time.
            ConnectionClosedError: the server exited or the client was closed.
            ProtocolError: a malformed line arrived under the ``abort`` policy.
        """
        self._ensure_open()
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        deadline = timeout if timeout is not None else self._default_timeout
        try:
            await self._transport.write_line(encode_request(request_id, method, params))
            LOGGER.debug(
                "rpc.call.sent",
                extra={"event": "rpc.call.sent", "method": method, "request_id": request_id},
            )
            if deadline is None:
                return await future
            return await asyncio.wait_for(future, deadline)
        except asyncio.TimeoutError as exc:
            LOGGER.warning(
                "rpc.call.timeout",
                extra={
                    "event": "rpc.call.timeout",
                    "method": method,
                    "request_id": request_id,
                    "timeout": deadline,
                },
            )
            raise RpcTimeoutError(
                f"Call {method!r} (id {request_id}) timed out after {deadline}s."
            ) from exc
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Any | None = None) -> None:
        """Send an id-less notification to the server; no response is awaited."""
        self._ensure_open()
        await self._transport.write_line(encode_notification(method, params))

    def subscribe(self, callback: NotificationCallback) -> None:
        """Register a sync or async callback invoked with every notification."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: NotificationCallback) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb != callback]

    def forward_to(self, bus: EventBus, event_type: str = "rpc") -> NotificationCallback:
        """Push every notification from the server into ``bus``.

        Returns the registered callback so it can be unsubscribed later.
        """

        def _forward(message: Any) -> None:
            bus.notify(message, event_type=event_type)

        self.subscribe(_forward)
        return _forward

    async def notifications(self) -> AsyncIterator[Any]:
        """Yield queued notifications until the server's output ends."""
        while True:
            item = await self._notifications.get()
            if item is _END_OF_STREAM:
                # Leave the marker for any other consumer.
                self._enqueue(_END_OF_STREAM)
                return
            yield item

    async def close(self) -> None:
        """Stop the reader, kill the server and fail any pending calls."""
        if self._closed:
            return
        self._closed = True
        task = self._reader_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._transport.close()
        self._fail_pending(ConnectionClosedError, "RPC client was closed.")

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionClosedError("RPC client was closed.")
        if self._reader_task is None:
            raise ConnectionClosedError("RPC client was not started.")
        if self._reader_task.done():
            raise ConnectionClosedError("RPC server closed its output stream.")

    async def _read_loop(self) -> None:
        reason = "RPC server closed its output stream."
        try:
            while True:
                try:
                    line = await self._transport.read_line()
                except ProtocolError as exc:
                    self._handle_malformed(str(exc), "")
                    continue
                if line is None:
                    break
                if not line.strip():
                    continue
                decoded = decode_line(line)
                if not decoded.ok:
                    self._handle_malformed(decoded.error or "", decoded.raw)
                    continue
                self._dispatch(decoded.message)
        except asyncio.CancelledError:
            reason = "RPC client was closed."
            raise
        except OSError as exc:
            LOGGER.error(
                "rpc.reader.failed",
                extra={"event": "rpc.reader.failed", "error": str(exc)},
            )
            reason = f"RPC transport failed: {exc}"
        finally:
            self._fail_pending(ConnectionClosedError, reason)
            self._enqueue(_END_OF_STREAM)
            LOGGER.info(
                "rpc.reader.stopped",
                extra={"event": "rpc.reader.stopped", "reason": reason},
            )

    def _dispatch(self, message: Any) -> None:
        request_id = response_id(message)
        future = self._pending.pop(request_id, None) if request_id is not None else None
        if future is None or future.done():
            # Unknown ids, id-less messages and late replies all land here.
            self._emit_notification(message)
            return
        response = as_response(message)
        if response.error is not None:
            future.set_exception(
                RemoteError(
                    response.error.message,
                    code=response.error.code,
                    data=response.error.data,
                )
            )
        else:
            future.set_result(response.result)

    def _handle_malformed(self, error: str, raw: str) -> None:
        LOGGER.warning(
            "rpc.line.malformed",
            extra={
                "event": "rpc.line.malformed",
                "policy": self._malformed_lines,
                "error": error,
                "line": raw[:200],
            },
        )
        if self._malformed_lines == "abort":
            self._fail_pending(ProtocolError, f"Malformed line from RPC server: {error}")

    def _fail_pending(self, error_type: type[OliIpcError], message: str) -> None:
        pending = list(self._pending.items())
        self._pending.clear()
        for _request_id, future in pending:
            if not future.done():
                future.set_exception(error_type(message))

    def _enqueue(self, item: Any) -> None:
        if self._notifications.full():
            try:
                self._notifications.get_nowait()
            except asyncio.QueueEmpty:
                pass
            LOGGER.debug(
                "rpc.notification.dropped",
                extra={"event": "rpc.notification.dropped"},
            )
        self._notifications.put_nowait(item)

    def _emit_notification(self, message: Any) -> None:
        self._enqueue(message)
        for callback in list(self._subscribers):
            try:
                outcome = callback(message)
            except Exception as exc:
                LOGGER.error(
                    "rpc.notification.callback_failed",
                    extra={"event": "rpc.notification.callback_failed", "error": str(exc)},
                )
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._callback_tasks.add(task)
                task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Future[Any]) -> None:
        """Log failures from async notification callbacks so they are not lost."""
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "rpc.notification.callback_failed",
                extra={
                    "event": "rpc.notification.callback_failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
