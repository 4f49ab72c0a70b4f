# Survey Mission Control - Command Line Interface
# File: main.py

"""
Usage:
    python main.py generate grid 10.0 10.001 20.0 20.002 50 70
    python main.py simulate grid 10.0 10.001 20.0 20.002 --interval 0.1
    python main.py serve 8000
"""

import asyncio
import logging
import sys
from typing import List, Optional, Tuple

from config import SimulationConfig, configure_logging
from mission_core import (
    Bounds, Drone, EventBus, InMemoryMissionStore, Location, Mission,
    MissionEvent, MissionStatus, MissionType, new_id
)
from simulation import SimulationEngine
from waypoint_generator import WaypointGenerator

logger = logging.getLogger(__name__)

PATTERNS = ('grid', 'crosshatch', 'perimeter')


class CLI:
    """Command Line Interface"""

    def __init__(self, config: Optional[SimulationConfig] = None):
        self.config = config or SimulationConfig.from_env()
        self.commands = {
            'generate': self._generate_cmd,
            'simulate': self._simulate_cmd,
            'serve': self._serve_cmd,
            'help': self._help_cmd
        }

    def run(self, args: List[str]) -> int:
        """Run CLI command, returning the process exit code"""
        if not args:
            self._help_cmd([])
            return 0

        command = args[0]
        if command not in self.commands:
            print(f"❌ Unknown command: {command}")
            self._help_cmd([])
            return 1

        try:
            return self.commands[command](args[1:]) or 0
        except ValueError as e:
            print(f"❌ {e}")
            return 1

    def _generate_cmd(self, args: List[str]) -> int:
        """Print the waypoints of a pattern over a bounding box"""
        if len(args) < 5:
            print("Usage: generate <grid|crosshatch|perimeter> <min_lat> <max_lat> <min_lng> <max_lng> [altitude] [overlap]")
            return 1

        pattern, bounds, altitude, overlap = _parse_area(args)
        waypoints = _plan(pattern, bounds, altitude, overlap)
        distance = WaypointGenerator.path_distance(waypoints)

        print(f"\n{'='*60}")
        print(f"{pattern.upper()} PATTERN: {len(waypoints)} waypoints, {distance:.3f} km")
        print(f"{'='*60}")
        print(f"{'Seq':<6} {'Latitude':<14} {'Longitude':<14} {'Altitude'}")
        for wp in waypoints:
            print(f"{wp.sequence_number:<6} {wp.latitude:<14.8f} {wp.longitude:<14.8f} {wp.altitude}")
        print(f"{'='*60}\n")
        return 0

    def _simulate_cmd(self, args: List[str]) -> int:
        """Fly a pattern through the simulation engine and print progress"""
        args, interval = _pop_option(args, '--interval')
        if len(args) < 5:
            print("Usage: simulate <grid|crosshatch|perimeter> <min_lat> <max_lat> <min_lng> <max_lng> "
                  "[altitude] [overlap] [--interval seconds]")
            return 1

        pattern, bounds, altitude, overlap = _parse_area(args)
        config = SimulationConfig(
            tick_interval_seconds=float(interval) if interval else self.config.tick_interval_seconds,
            battery_drain_per_waypoint=self.config.battery_drain_per_waypoint
        )

        mission = asyncio.run(simulate(pattern, bounds, altitude, overlap, config))

        print(f"\n{'='*60}")
        print(f"Mission {mission.id}: {mission.status.value.upper()}")
        print(f"  Waypoints: {mission.completed_waypoints}/{mission.total_waypoints}")
        print(f"  Distance: {mission.distance_covered_km:.2f} km")
        print(f"  Flight duration: {mission.flight_duration_seconds}s")
        print(f"{'='*60}\n")
        return 0 if mission.status == MissionStatus.COMPLETED else 1

    def _serve_cmd(self, args: List[str]) -> int:
        """Run the API server"""
        import uvicorn

        port = int(args[0]) if args else 8000
        print(f"✅ Starting Mission Control API on port {port}")
        uvicorn.run("api_server:app", host="0.0.0.0", port=port, log_level=self.config.log_level.lower())
        return 0

    def _help_cmd(self, args: List[str]) -> int:
        print("\n" + "="*70)
        print("Survey Mission Control - CLI")
        print("="*70)
        print("\nCommands:")
        print("  generate  - Print waypoints for a pattern (grid|crosshatch|perimeter)")
        print("  simulate  - Run an in-memory mission simulation (--interval seconds)")
        print("  serve     - Start the API server [port]")
        print("  help      - Show this help")
        print("="*70 + "\n")
        return 0


async def simulate(pattern: str, bounds: Bounds, altitude: float, overlap: float,
                   config: SimulationConfig) -> Mission:
    """Create a drone and mission in memory, start it and wait for completion"""
    store = InMemoryMissionStore()
    event_bus = EventBus()
    engine = SimulationEngine(store, event_bus, config=config)
    done = asyncio.Event()

    def print_event(event: MissionEvent):
        data = event.data
        if event.type == 'mission.progress':
            print(f"  [{data['progress']:6.2f}%] waypoint {data['completedWaypoints'] + 1}/{data['totalWaypoints']} "
                  f"distance={data['distanceCovered']:.2f}km t={data['flightDuration']}s")
        else:
            print(f"  {event.type}: {data.get('message', '')}")
        if event.type in ('mission.completed', 'mission.aborted', 'mission.error'):
            done.set()

    event_bus.subscribe(print_event, 'mission.*')

    drone = await store.add_drone(Drone(id=new_id("DRN"), name="Sim Drone", serial_number="SIM-0001"))
    mission = await store.create_mission(Mission(
        id=new_id("MSN"),
        name=f"CLI {pattern} survey",
        mission_type=MissionType(pattern),
        altitude=altitude,
        overlap_percentage=overlap,
        drone_id=drone.id
    ))
    await store.add_waypoints(mission.id, _plan(pattern, bounds, altitude, overlap))

    try:
        await engine.start_mission(mission.id)
        await done.wait()
    finally:
        await engine.shutdown()

    return await store.get_mission(mission.id)


def _plan(pattern: str, bounds: Bounds, altitude: float, overlap: float):
    if pattern not in PATTERNS:
        raise ValueError(f"Unknown pattern: {pattern} (expected one of {', '.join(PATTERNS)})")

    corners = [
        Location(bounds.min_lat, bounds.min_lng),
        Location(bounds.min_lat, bounds.max_lng),
        Location(bounds.max_lat, bounds.max_lng),
        Location(bounds.max_lat, bounds.min_lng)
    ]
    return WaypointGenerator.generate_for_mission(
        MissionType(pattern), altitude, overlap, coordinates=corners, bounds=bounds
    )


def _parse_area(args: List[str]) -> Tuple[str, Bounds, float, float]:
    pattern = args[0]
    min_lat, max_lat, min_lng, max_lng = (float(v) for v in args[1:5])
    altitude = float(args[5]) if len(args) > 5 else 50.0
    overlap = float(args[6]) if len(args) > 6 else 70.0
    if min_lat > max_lat or min_lng > max_lng:
        raise ValueError("Bounds must be given as min_lat max_lat min_lng max_lng")
    return pattern, Bounds(min_lat, max_lat, min_lng, max_lng), altitude, overlap


def _pop_option(args: List[str], name: str) -> Tuple[List[str], Optional[str]]:
    """Remove '--name value' from args"""
    if name not in args:
        return args, None
    index = args.index(name)
    if index + 1 >= len(args):
        raise ValueError(f"{name} needs a value")
    return args[:index] + args[index + 2:], args[index + 1]

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    cli = CLI()
    configure_logging(cli.config.log_level)
    return cli.run(sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
