"""Tests for JSON-RPC call correlation over a child process."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
import sys
import tempfile
import unittest

from oli_ipc.events.bus import EventBus
from oli_ipc.exceptions import (
    ConnectionClosedError,
    ProtocolError,
    RemoteError,
    RpcTimeoutError,
    StartupError,
)
from oli_ipc.rpc.client import RpcClient

# Line-delimited JSON-RPC server used as the child process in these tests.
FAKE_SERVER = r"""
import json
import sys
import time

def send(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()

held = []
while True:
    line = sys.stdin.readline()
    if not line:
        break
    line = line.strip()
    if not line:
        continue
    request = json.loads(line)
    method = request.get("method")
    rid = request.get("id")
    if rid is None:
        send({"jsonrpc": "2.0", "method": "notified", "params": {"method": method}})
        continue
    send({"jsonrpc": "2.0", "method": "progress", "params": {"for": rid}})
    sys.stdout.write("\n")
    sys.stdout.flush()
    if method == "fail":
        send({"id": rid, "error": {"message": "boom", "code": -32000, "data": {"x": 1}}})
    elif method == "fail_silent":
        send({"id": rid, "error": {}})
    elif method == "garbage":
        sys.stdout.write("not-json{\n")
        sys.stdout.flush()
        send({"id": rid, "result": "after-garbage"})
    elif method == "ignore":
        pass
    elif method == "late":
        time.sleep(0.3)
        send({"id": rid, "result": "late"})
    elif method == "hold":
        held.append((rid, request.get("params")))
    elif method == "release":
        for held_id, held_params in reversed(held):
            send({"id": held_id, "result": held_params})
        held.clear()
        send({"id": rid, "result": "released"})
    elif method == "echo_params":
        send({"id": rid, "result": request.get("params")})
    elif method == "exit":
        sys.exit(0)
    else:
        send({"id": rid, "result": {"echo": method}})
"""

TEST_TIMEOUT = 10.0


async def _spawn(**options: object) -> RpcClient:
    return await RpcClient.spawn(sys.executable, "-c", FAKE_SERVER, **options)


class RpcClientCallTests(unittest.IsolatedAsyncioTestCase):
    """Validate request/response correlation and error mapping."""

    async def asyncSetUp(self) -> None:
        self.client = await _spawn()

    async def asyncTearDown(self) -> None:
        await self.client.close()

    async def _call(self, method: str, params: object | None = None) -> object:
        return await asyncio.wait_for(self.client.call(method, params), TEST_TIMEOUT)

    async def test_ping_returns_echo_result(self) -> None:
        result = await self._call("ping", {})
        self.assertEqual(result, {"echo": "ping"})

    async def test_params_default_to_empty_object(self) -> None:
        result = await self._call("echo_params")
        self.assertEqual(result, {})

    async def test_sequential_calls_match_their_own_ids(self) -> None:
        for index in range(10):
            result = await self._call("echo_params", {"n": index})
            self.assertEqual(result, {"n": index})
        self.assertEqual(self.client.pending_count, 0)

    async def test_remote_error_carries_message_code_and_data(self) -> None:
        with self.assertRaises(RemoteError) as ctx:
            await self._call("fail")
        self.assertEqual(str(ctx.exception), "boom")
        self.assertEqual(ctx.exception.code, -32000)
        self.assertEqual(ctx.exception.data, {"x": 1})

    async def test_remote_error_without_message_uses_default(self) -> None:
        with self.assertRaises(RemoteError) as ctx:
            await self._call("fail_silent")
        self.assertEqual(ctx.exception.message, "Unknown error")

    async def test_client_remains_usable_after_remote_error(self) -> None:
        with self.assertRaises(RemoteError):
            await self._call("fail")
        self.assertEqual(await self._call("ping"), {"echo": "ping"})

    async def test_concurrent_calls_answered_out_of_order(self) -> None:
        first = asyncio.create_task(self.client.call("hold", {"n": 1}))
        second = asyncio.create_task(self.client.call("hold", {"n": 2}))
        while self.client.pending_count < 2:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        released = await self._call("release")
        results = await asyncio.wait_for(asyncio.gather(first, second), TEST_TIMEOUT)

        self.assertEqual(released, "released")
        self.assertEqual(results, [{"n": 1}, {"n": 2}])

    async def test_many_concurrent_calls_are_correlated(self) -> None:
        calls = [self.client.call("echo_params", {"n": i}) for i in range(50)]
        results = await asyncio.wait_for(asyncio.gather(*calls), TEST_TIMEOUT)
        self.assertEqual(results, [{"n": i} for i in range(50)])

    async def test_malformed_line_is_skipped_by_default(self) -> None:
        self.assertEqual(await self._call("garbage"), "after-garbage")

    async def test_timeout_raises_and_deregisters_call(self) -> None:
        with self.assertRaises(RpcTimeoutError):
            await self.client.call("ignore", timeout=0.1)
        self.assertEqual(self.client.pending_count, 0)
        self.assertEqual(await self._call("ping"), {"echo": "ping"})

    async def test_late_reply_becomes_notification(self) -> None:
        with self.assertRaises(RpcTimeoutError):
            await self.client.call("late", timeout=0.05)

        async def _wait_for_late_reply() -> dict:
            async for message in self.client.notifications():
                if isinstance(message, dict) and message.get("result") == "late":
                    return message
            raise AssertionError("stream ended without the late reply")

        message = await asyncio.wait_for(_wait_for_late_reply(), TEST_TIMEOUT)
        self.assertIn("id", message)

    async def test_cancelled_call_is_deregistered(self) -> None:
        task = asyncio.create_task(self.client.call("ignore"))
        while self.client.pending_count < 1:
            await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.client.pending_count, 0)


class RpcClientAbortPolicyTests(unittest.IsolatedAsyncioTestCase):
    """Validate the abort policy for undecodable lines."""

    async def test_malformed_line_fails_pending_call(self) -> None:
        client = await _spawn(malformed_lines="abort")
        try:
            with self.assertRaises(ProtocolError):
                await asyncio.wait_for(client.call("garbage"), TEST_TIMEOUT)
            # The reader keeps going, so later calls still work.
            result = await asyncio.wait_for(client.call("ping"), TEST_TIMEOUT)
            self.assertEqual(result, {"echo": "ping"})
        finally:
            await client.close()

    async def test_unknown_policy_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await _spawn(malformed_lines="explode")


class RpcClientNotificationTests(unittest.IsolatedAsyncioTestCase):
    """Validate routing of unmatched lines to observers."""

    async def asyncSetUp(self) -> None:
        self.client = await _spawn()

    async def asyncTearDown(self) -> None:
        await self.client.close()

    async def test_sync_and_async_subscribers_receive_notifications(self) -> None:
        seen_sync: list[object] = []
        seen_async: list[object] = []

        async def _async_callback(message: object) -> None:
            seen_async.append(message)

        self.client.subscribe(seen_sync.append)
        self.client.subscribe(_async_callback)
        await asyncio.wait_for(self.client.call("ping"), TEST_TIMEOUT)
        await asyncio.sleep(0.05)

        expected = {"jsonrpc": "2.0", "method": "progress", "params": {"for": 1}}
        self.assertIn(expected, seen_sync)
        self.assertIn(expected, seen_async)

    async def test_failing_subscriber_does_not_break_reader(self) -> None:
        def _broken(message: object) -> None:
            raise RuntimeError("subscriber bug")

        self.client.subscribe(_broken)
        with self.assertLogs("oli_ipc.rpc.client", level="ERROR") as logs:
            result = await asyncio.wait_for(self.client.call("ping"), TEST_TIMEOUT)
        self.assertEqual(result, {"echo": "ping"})
        self.assertTrue(
            any("rpc.notification.callback_failed" in line for line in logs.output)
        )

    async def test_unsubscribe_stops_delivery(self) -> None:
        seen: list[object] = []
        self.client.subscribe(seen.append)
        self.client.unsubscribe(seen.append)
        await asyncio.wait_for(self.client.call("ping"), TEST_TIMEOUT)
        self.assertEqual(seen, [])

    async def test_notify_sends_id_less_message(self) -> None:
        await self.client.notify("hello", {"a": 1})

        async def _first_notified() -> object:
            async for message in self.client.notifications():
                if isinstance(message, dict) and message.get("method") == "notified":
                    return message
            raise AssertionError("stream ended")

        message = await asyncio.wait_for(_first_notified(), TEST_TIMEOUT)
        self.assertEqual(message["params"], {"method": "hello"})

    async def test_forward_to_pushes_into_event_bus(self) -> None:
        bus = EventBus(port=0)
        self.client.forward_to(bus, event_type="rpc")
        await asyncio.wait_for(self.client.call("ping"), TEST_TIMEOUT)

        forwarded = bus.snapshot(event_type="rpc")
        self.assertIn(
            {"jsonrpc": "2.0", "method": "progress", "params": {"for": 1}}, forwarded
        )
        self.assertEqual(bus.snapshot(event_type="general"), [])

    async def test_notifications_iterator_ends_when_client_closes(self) -> None:
        collected: list[object] = []

        async def _collect() -> None:
            async for message in self.client.notifications():
                collected.append(message)

        collector = asyncio.create_task(_collect())
        await asyncio.wait_for(self.client.call("ping"), TEST_TIMEOUT)
        await self.client.close()
        await asyncio.wait_for(collector, TEST_TIMEOUT)
        self.assertTrue(collected)


class RpcClientLifecycleTests(unittest.IsolatedAsyncioTestCase):
    """Validate process startup, end-of-stream and teardown."""

    async def test_missing_executable_raises_startup_error(self) -> None:
        with self.assertRaises(StartupError):
            await RpcClient.spawn("/nonexistent/oli-rpc-server")

    async def test_non_executable_file_raises_startup_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "server"
            path.write_text("#!/bin/sh\n", encoding="utf-8")
            os.chmod(path, 0o600)
            with self.assertRaises(StartupError):
                await RpcClient.spawn(path)

    async def test_from_config_requires_server_path(self) -> None:
        with self.assertRaises(StartupError):
            await RpcClient.from_config({"server_path": ""})

    async def test_from_config_spawns_configured_server(self) -> None:
        client = await RpcClient.from_config(
            {
                "server_path": sys.executable,
                "server_args": ["-c", FAKE_SERVER],
                "call_timeout_seconds": 5.0,
                "malformed_lines": "skip",
                "max_line_bytes": 1024 * 1024,
                "notification_queue_size": 10,
            }
        )
        try:
            result = await asyncio.wait_for(client.call("ping"), TEST_TIMEOUT)
            self.assertEqual(result, {"echo": "ping"})
        finally:
            await client.close()

    async def test_server_exit_fails_call_with_connection_closed(self) -> None:
        client = await _spawn()
        try:
            with self.assertRaises(ConnectionClosedError):
                await asyncio.wait_for(client.call("exit"), TEST_TIMEOUT)
            self.assertTrue(client.is_closed)
            with self.assertRaises(ConnectionClosedError):
                await client.call("ping")
        finally:
            await client.close()

    async def test_close_is_idempotent_after_process_exit(self) -> None:
        client = await _spawn()
        with self.assertRaises(ConnectionClosedError):
            await asyncio.wait_for(client.call("exit"), TEST_TIMEOUT)
        await client.close()
        await client.close()
        self.assertIsNotNone(client.returncode)

    async def test_close_kills_server_and_fails_pending_calls(self) -> None:
        client = await _spawn()
        pending = asyncio.create_task(client.call("ignore"))
        while client.pending_count < 1:
            await asyncio.sleep(0.01)

        await client.close()

        with self.assertRaises(ConnectionClosedError):
            await asyncio.wait_for(pending, TEST_TIMEOUT)
        self.assertIsNotNone(client.returncode)
        with self.assertRaises(ConnectionClosedError):
            await client.call("ping")

    async def test_async_context_manager_closes_client(self) -> None:
        async with await _spawn() as client:
            result = await asyncio.wait_for(client.call("ping"), TEST_TIMEOUT)
            self.assertEqual(result, {"echo": "ping"})
        self.assertTrue(client.is_closed)


if __name__ == "__main__":
    unittest.main()
