"""
Tests for ExpenseSync.core.connectivity.

Run:
    python -m unittest tests.test_connectivity
"""
import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from ExpenseSync.core.connectivity import ConnectivityMonitor, ConnectivityState
from tests.base import BaseAsyncTestCase


class ConnectivityMonitorTest(BaseAsyncTestCase):

    async def test_transitions_only(self):
        monitor = ConnectivityMonitor(initial=ConnectivityState.Online)
        seen = []
        emitted = []
        monitor.on_change(seen.append)
        monitor.stateChanged.connect(lambda state: emitted.append(state))

        self.assertFalse(monitor.report(True))
        self.assertTrue(monitor.report(False))
        self.assertFalse(monitor.report(False))
        self.assertTrue(monitor.report(True))

        self.assertEqual(seen, [ConnectivityState.Offline, ConnectivityState.Online])
        self.assertEqual(emitted, seen)
        self.assertTrue(monitor.is_online)

    async def test_remove_callback(self):
        monitor = ConnectivityMonitor()
        seen = []
        remove = monitor.on_change(seen.append)
        remove()
        monitor.report(False)
        self.assertEqual(seen, [])
        self.assertEqual(monitor.state, ConnectivityState.Offline)

    async def test_probe_success(self):
        async def serve(reader, writer):
            writer.close()

        server = await asyncio.start_server(serve, '127.0.0.1', 0)
        port = server.sockets[0].getsockname()[1]
        try:
            monitor = ConnectivityMonitor(host='127.0.0.1', port=port, timeout=1.0,
                                          initial=ConnectivityState.Offline)
            self.assertEqual(await monitor.check(), ConnectivityState.Online)
        finally:
            server.close()
            await server.wait_closed()

    async def test_probe_failure(self):
        monitor = ConnectivityMonitor(host='127.0.0.1', port=9, timeout=0.5)
        with patch('asyncio.open_connection', new=AsyncMock(side_effect=ConnectionRefusedError())):
            self.assertFalse(await monitor.probe())
            self.assertEqual(await monitor.check(), ConnectivityState.Offline)

    async def test_start_and_stop(self):
        monitor = ConnectivityMonitor(interval=0.01, initial=ConnectivityState.Online)
        results = iter([False, False, True])

        async def fake_probe():
            return next(results, True)

        seen = []
        monitor.on_change(seen.append)
        with patch.object(monitor, 'probe', new=fake_probe):
            monitor.start()
            self.assertTrue(monitor.running)
            for _ in range(50):
                if len(seen) == 2:
                    break
                await asyncio.sleep(0.01)
            await monitor.stop()

        self.assertFalse(monitor.running)
        self.assertEqual(seen, [ConnectivityState.Offline, ConnectivityState.Online])


if __name__ == '__main__':
    unittest.main()
