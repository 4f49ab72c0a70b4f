"""
Tests for the simulation registry.
"""

import unittest
from unittest.mock import Mock

from simulation.registry import SimulationHandle, SimulationRegistry


def make_handle(mission_id):
    return SimulationHandle(simulator=Mock(mission_id=mission_id))


class TestSimulationRegistry(unittest.IsolatedAsyncioTestCase):
    """Test handle bookkeeping."""

    async def asyncSetUp(self):
        self.registry = SimulationRegistry()

    async def test_register_and_get(self):
        handle = make_handle("MSN-1")
        self.registry.register("MSN-1", handle)

        self.assertTrue(self.registry.has_active("MSN-1"))
        self.assertIs(self.registry.get("MSN-1"), handle)
        self.assertEqual(handle.mission_id, "MSN-1")
        self.assertEqual(len(self.registry), 1)

    async def test_at_most_one_live_handle_per_mission(self):
        self.registry.register("MSN-1", make_handle("MSN-1"))
        with self.assertRaises(ValueError):
            self.registry.register("MSN-1", make_handle("MSN-1"))

    async def test_cancel_sets_stop_signal(self):
        handle = make_handle("MSN-1")
        self.registry.register("MSN-1", handle)

        self.assertTrue(self.registry.cancel("MSN-1"))

        self.assertTrue(handle.cancelled)
        self.assertTrue(handle.stop_event.is_set())
        self.assertFalse(self.registry.has_active("MSN-1"))
        self.assertIsNone(self.registry.get("MSN-1"))
        self.assertFalse(self.registry.cancel("MSN-1"))

    async def test_register_after_cancel(self):
        self.registry.register("MSN-1", make_handle("MSN-1"))
        self.registry.cancel("MSN-1")

        replacement = make_handle("MSN-1")
        self.registry.register("MSN-1", replacement)
        self.assertIs(self.registry.get("MSN-1"), replacement)

    async def test_discard_only_removes_matching_handle(self):
        old = make_handle("MSN-1")
        new = make_handle("MSN-1")
        self.registry.register("MSN-1", old)
        self.registry.cancel("MSN-1")
        self.registry.register("MSN-1", new)

        self.registry.discard("MSN-1", old)
        self.assertIs(self.registry.get("MSN-1"), new)

        self.registry.discard("MSN-1", new)
        self.assertIsNone(self.registry.get("MSN-1"))

    async def test_cancel_all(self):
        handles = [make_handle(f"MSN-{i}") for i in range(3)]
        for handle in handles:
            self.registry.register(handle.mission_id, handle)

        cancelled = self.registry.cancel_all()

        self.assertEqual(len(cancelled), 3)
        self.assertTrue(all(h.cancelled for h in handles))
        self.assertEqual(self.registry.active_missions(), [])
        self.assertEqual(len(self.registry), 0)


if __name__ == '__main__':
    unittest.main()
