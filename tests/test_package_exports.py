"""Tests for top-level package lazy exports."""

from __future__ import annotations

import unittest

import oli_ipc


class PackageExportTests(unittest.TestCase):
    """Ensure __getattr__ and exported symbols behave as expected."""

    def test_lazy_exports_resolve_known_symbols(self) -> None:
        self.assertTrue(callable(oli_ipc.load_config))
        self.assertTrue(callable(oli_ipc.ensure_config_dir))
        self.assertTrue(callable(oli_ipc.start_event_bus))
        self.assertIsNotNone(oli_ipc.RpcClient)
        self.assertIsNotNone(oli_ipc.ProcessTransport)
        self.assertIsNotNone(oli_ipc.EventBus)
        self.assertIsNotNone(oli_ipc.EventBusClient)
        self.assertIsNotNone(oli_ipc.ListenerState)
        self.assertIsNotNone(oli_ipc.OliIpcError)
        self.assertIsNotNone(oli_ipc.RemoteError)
        self.assertIsNotNone(oli_ipc.BindError)

    def test_all_names_resolve(self) -> None:
        for name in oli_ipc.__all__:
            self.assertIsNotNone(getattr(oli_ipc, name), name)

    def test_unknown_symbol_raises_attribute_error(self) -> None:
        with self.assertRaises(AttributeError):
            getattr(oli_ipc, "THIS_DOES_NOT_EXIST")


if __name__ == "__main__":
    unittest.main()
