"""
Tests for environment-driven configuration.
"""

import unittest

from config import SimulationConfig


class TestSimulationConfig(unittest.TestCase):
    """Test defaults, environment parsing and validation."""

    def test_defaults(self):
        config = SimulationConfig.from_env({})

        self.assertEqual(config.tick_interval_seconds, 2.0)
        self.assertEqual(config.battery_drain_per_waypoint, 1.0)
        self.assertTrue(config.recover_on_startup)
        self.assertEqual(config.kafka_bootstrap_servers, [])
        self.assertEqual(config.kafka_client_id, "mission-simulator")
        self.assertEqual(config.log_level, "INFO")

    def test_from_env(self):
        config = SimulationConfig.from_env({
            'MISSION_TICK_INTERVAL': '0.5',
            'MISSION_BATTERY_DRAIN': '2.5',
            'MISSION_RECOVER_ON_STARTUP': 'no',
            'KAFKA_BOOTSTRAP_SERVERS': 'kafka-1:9092, kafka-2:9092,',
            'KAFKA_CLIENT_ID': 'sim-test',
            'LOG_LEVEL': 'debug'
        })

        self.assertEqual(config.tick_interval_seconds, 0.5)
        self.assertEqual(config.battery_drain_per_waypoint, 2.5)
        self.assertFalse(config.recover_on_startup)
        self.assertEqual(config.kafka_bootstrap_servers, ['kafka-1:9092', 'kafka-2:9092'])
        self.assertEqual(config.kafka_client_id, 'sim-test')
        self.assertEqual(config.log_level, 'DEBUG')

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            SimulationConfig(tick_interval_seconds=0)
        with self.assertRaises(ValueError):
            SimulationConfig(battery_drain_per_waypoint=-1)
        with self.assertRaises(ValueError):
            SimulationConfig.from_env({'MISSION_TICK_INTERVAL': 'fast'})


if __name__ == '__main__':
    unittest.main()
