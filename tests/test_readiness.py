import asyncio
import time
import unittest
from unittest.mock import AsyncMock, patch

from fakes import unused_port
from tor_bridge.errors import ReadinessTimeout
from tor_bridge.readiness import ReadinessGate, ReadinessPhase


class TestReadinessGate(unittest.IsolatedAsyncioTestCase):
    """
    The gate polls a TCP endpoint at a fixed interval and reports one
    terminal outcome: READY on the first successful connect, FAILED once
    the attempt budget is spent.
    """

    async def test_gives_up_after_max_attempts(self):
        gate = ReadinessGate("127.0.0.1", unused_port(), max_attempts=3, interval=0.05)

        started = time.monotonic()
        with self.assertRaises(ReadinessTimeout) as ctx:
            await gate.wait()
        elapsed = time.monotonic() - started

        # Two sleeps between three attempts, none after the last
        self.assertGreaterEqual(elapsed, 0.09)
        self.assertEqual(gate.state.phase, ReadinessPhase.FAILED)
        self.assertEqual(gate.state.attempts, 3)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIn("Tor failed to start after 3 attempts", str(ctx.exception))
        self.assertEqual(gate.state.reason, str(ctx.exception))

    async def test_ready_on_a_later_attempt(self):
        gate = ReadinessGate("127.0.0.1", 9, max_attempts=5, interval=0)
        probe = AsyncMock(side_effect=["refused", "refused", None])

        with patch.object(gate, "_probe", probe):
            state = await gate.wait()

        self.assertEqual(state.phase, ReadinessPhase.READY)
        self.assertEqual(state.attempts, 3)
        self.assertEqual(probe.await_count, 3)

    async def test_live_listener_is_ready_on_first_attempt(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            gate = ReadinessGate("127.0.0.1", port, max_attempts=3, interval=0.01)
            state = await gate.wait()
        finally:
            server.close()

        self.assertEqual(state.phase, ReadinessPhase.READY)
        self.assertEqual(state.attempts, 1)
        self.assertTrue(state.terminal)

    async def test_concurrent_waiters_share_one_probe_loop(self):
        gate = ReadinessGate("127.0.0.1", 9, max_attempts=5, interval=0.01)
        probe = AsyncMock(side_effect=["refused", None])

        with patch.object(gate, "_probe", probe):
            first, second = await asyncio.gather(gate.wait(), gate.wait())

        self.assertIs(first, second)
        self.assertEqual(probe.await_count, 2)

    async def test_failure_is_sticky(self):
        gate = ReadinessGate("127.0.0.1", 9, max_attempts=2, interval=0)
        probe = AsyncMock(return_value="refused")

        with patch.object(gate, "_probe", probe):
            results = await asyncio.gather(gate.wait(), gate.wait(), return_exceptions=True)
            with self.assertRaises(ReadinessTimeout):
                await gate.wait()

        self.assertTrue(all(isinstance(r, ReadinessTimeout) for r in results))
        self.assertEqual(probe.await_count, 2)

    async def test_cancel_stops_the_probe_loop(self):
        gate = ReadinessGate("127.0.0.1", unused_port(), max_attempts=1000, interval=0.05)
        waiter = asyncio.ensure_future(gate.wait())
        await asyncio.sleep(0.1)

        gate.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await waiter
        self.assertEqual(gate.state.phase, ReadinessPhase.PROBING)

    def test_rejects_invalid_budget(self):
        with self.assertRaises(ValueError):
            ReadinessGate("127.0.0.1", 9050, max_attempts=0)
        with self.assertRaises(ValueError):
            ReadinessGate("127.0.0.1", 9050, interval=-1)


if __name__ == "__main__":
    unittest.main()
