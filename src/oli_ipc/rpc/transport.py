"""Line-oriented stdio transport over a spawned child process."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
import logging
import os

from ..exceptions import ConnectionClosedError, ProtocolError, StartupError

LOGGER = logging.getLogger(__name__)

DEFAULT_LINE_LIMIT = 16 * 1024 * 1024


class ProcessTransport:
    """Own one child process and exchange newline-delimited text with it.

    Writes are serialised by a lock so that concurrent writers never
    interleave bytes within a line. Reading is expected to happen from a
    single task.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is None or process.stdout is None:
            raise StartupError("Child process must be started with piped stdin and stdout.")
        self._process = process
        self._stdin = process.stdin
        self._stdout = process.stdout
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def spawn(
        cls,
        executable: str | os.PathLike[str],
        *args: str,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        line_limit: int = DEFAULT_LINE_LIMIT,
    ) -> ProcessTransport:
        """Start ``executable`` with stdin/stdout piped and stderr inherited."""
        argv: Sequence[str] = [os.fspath(executable), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                limit=line_limit,
            )
        except OSError as exc:
            LOGGER.error(
                "rpc.process.start_failed",
                extra={
                    "event": "rpc.process.start_failed",
                    "executable": argv[0],
                    "error": str(exc),
                },
            )
            raise StartupError(f"Failed to start RPC server {argv[0]!r}: {exc}") from exc

        LOGGER.info(
            "rpc.process.started",
            extra={"event": "rpc.process.started", "executable": argv[0], "pid": process.pid},
        )
        return cls(process)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def closed(self) -> bool:
        return self._closed

    async def write_line(self, line: str) -> None:
        """Write one line and flush it immediately."""
        if self._closed:
            raise ConnectionClosedError("Transport is closed.")
        data = line.encode("utf-8") + b"\n"
        async with self._write_lock:
            try:
                self._stdin.write(data)
                await self._stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise ConnectionClosedError(f"RPC server stdin is closed: {exc}") from exc

    async def read_line(self) -> str | None:
        """Return the next line without its terminator, or ``None`` at end of stream.

        A line longer than the configured limit raises :class:`ProtocolError`;
        the oversized data is discarded and the stream stays usable.
        """
        try:
            raw = await self._stdout.readline()
        except ValueError as exc:
            raise ProtocolError(f"Line exceeds the transport limit: {exc}") from exc
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def close(self) -> None:
        """Kill the child and release its pipes. Safe if it already exited."""
        if self._closed:
            return
        self._closed = True
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        self._stdin.close()
        try:
            await self._stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass
        returncode = await self._process.wait()
        LOGGER.info(
            "rpc.process.stopped",
            extra={"event": "rpc.process.stopped", "pid": self._process.pid, "returncode": returncode},
        )
