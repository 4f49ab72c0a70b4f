# Survey Mission Control - Configuration
# File: config.py

import os
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


@dataclass
class SimulationConfig:
    """Runtime settings for the simulation engine and API server"""
    tick_interval_seconds: float = 2.0
    battery_drain_per_waypoint: float = 1.0
    recover_on_startup: bool = True
    kafka_bootstrap_servers: List[str] = field(default_factory=list)
    kafka_client_id: str = "mission-simulator"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.tick_interval_seconds <= 0:
            raise ValueError(f"tick_interval_seconds must be positive, got {self.tick_interval_seconds}")
        if self.battery_drain_per_waypoint < 0:
            raise ValueError(f"battery_drain_per_waypoint must not be negative, got {self.battery_drain_per_waypoint}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'SimulationConfig':
        """
        Build config from environment variables

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            SimulationConfig with defaults for unset variables
        """
        env = os.environ if environ is None else environ
        servers = env.get('KAFKA_BOOTSTRAP_SERVERS', '')

        return cls(
            tick_interval_seconds=float(env.get('MISSION_TICK_INTERVAL', 2.0)),
            battery_drain_per_waypoint=float(env.get('MISSION_BATTERY_DRAIN', 1.0)),
            recover_on_startup=env.get('MISSION_RECOVER_ON_STARTUP', 'true').lower() in _TRUE_VALUES,
            kafka_bootstrap_servers=[s.strip() for s in servers.split(',') if s.strip()],
            kafka_client_id=env.get('KAFKA_CLIENT_ID', 'mission-simulator'),
            log_level=env.get('LOG_LEVEL', 'INFO').upper()
        )


def configure_logging(level: str = "INFO"):
    """Root logging setup for the CLI and API entry points"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
