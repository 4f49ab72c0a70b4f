# Survey Mission Control - Mission Simulator
# File: simulation/mission_simulator.py

"""
Per-mission simulation state: a cursor into the mission's waypoint
sequence and the tick that advances the drone by one waypoint.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from mission_core import (
    LogType, MissionEvent, MissionStore, MissionUpdate, EventBus,
    Waypoint, WaypointStatus
)
from waypoint_generator import WaypointGenerator

logger = logging.getLogger(__name__)


class MissionSimulator:
    """
    Simulated flight of one mission.

    Usage:
        simulator = MissionSimulator(mission_id, waypoints, drone_id,
                                     started_at, start_index, store, bus)
        finished = await simulator.tick()
    """

    def __init__(self, mission_id: str, waypoints: List[Waypoint],
                 drone_id: Optional[str], started_at: datetime, start_index: int,
                 store: MissionStore, event_bus: EventBus,
                 clock: Callable[[], datetime] = datetime.now,
                 battery_drain: float = 1.0):
        """
        Args:
            mission_id: Mission being flown
            waypoints: Mission waypoints ordered by sequence number
            drone_id: Assigned drone, if any
            started_at: Mission start time; flight duration is measured from it
            start_index: Cursor to resume from
            store: Mission store
            event_bus: Bus receiving progress events
            clock: Source of the current time
            battery_drain: Battery points used per waypoint reached
        """
        self.mission_id = mission_id
        self.waypoints = waypoints
        self.drone_id = drone_id
        self.started_at = started_at
        self.current_waypoint_index = start_index
        self.store = store
        self.event_bus = event_bus
        self.clock = clock
        self.battery_drain = battery_drain
        self.tick_count = 0

    @property
    def total_waypoints(self) -> int:
        return len(self.waypoints)

    @property
    def finished(self) -> bool:
        return self.current_waypoint_index >= self.total_waypoints

    @staticmethod
    def resume_index(waypoints: List[Waypoint]) -> int:
        """Index of the first waypoint not yet completed, 0 if there is none"""
        for index, waypoint in enumerate(waypoints):
            if waypoint.status != WaypointStatus.COMPLETED:
                return index
        return 0

    async def tick(self) -> bool:
        """
        Reach the waypoint under the cursor and advance the cursor.

        All store writes of the tick go out as one MissionUpdate. Local
        waypoint state only changes once that update has been applied.

        Returns:
            bool: True once the cursor has passed the last waypoint
        """
        if self.finished:
            return True

        index = self.current_waypoint_index
        total = self.total_waypoints
        now = self.clock()
        current = self.waypoints[index]
        previous = self.waypoints[index - 1] if index > 0 else None

        update = MissionUpdate(self.mission_id)

        complete_previous = previous is not None and previous.status != WaypointStatus.COMPLETED
        if complete_previous:
            update.update_waypoint(previous.id, status=WaypointStatus.COMPLETED, reached_at=now)

        # Guard against re-entering a waypoint that was completed before a resume
        start_current = current.status != WaypointStatus.COMPLETED
        if start_current:
            update.update_waypoint(current.id, status=WaypointStatus.IN_PROGRESS)

        battery = None
        if self.drone_id:
            drone = await self.store.get_drone(self.drone_id)
            if drone:
                battery = max(0, drone.battery_level - self.battery_drain)
                update.update_drone(
                    self.drone_id,
                    current_latitude=current.latitude,
                    current_longitude=current.longitude,
                    current_altitude=current.altitude,
                    battery_level=battery
                )
            else:
                logger.warning(f"Drone {self.drone_id} missing for mission {self.mission_id}")

        progress = round(index / total * 100, 2)
        distance = round(WaypointGenerator.path_distance(self.waypoints, upto=index), 2)
        flight_duration = int((now - self.started_at).total_seconds())

        update.update_mission(
            progress_percentage=progress,
            completed_waypoints=index,
            distance_covered_km=distance,
            flight_duration_seconds=flight_duration
        )
        update.append_log(
            LogType.WAYPOINT_REACHED,
            f"Reached waypoint {index + 1}/{total}",
            {
                'waypoint_id': current.id,
                'sequence': index + 1,
                'latitude': current.latitude,
                'longitude': current.longitude
            }
        )

        await self.store.apply_mission_update(update)

        if complete_previous:
            previous.status = WaypointStatus.COMPLETED
            previous.reached_at = now
        if start_current:
            current.status = WaypointStatus.IN_PROGRESS

        logger.debug(
            f"Mission {self.mission_id}: waypoint {index + 1}/{total} "
            f"progress={progress}% distance={distance}km battery={battery}"
        )

        await self.event_bus.publish(MissionEvent(
            type='mission.progress',
            mission_id=self.mission_id,
            data={
                'missionId': self.mission_id,
                'progress': progress,
                'completedWaypoints': index,
                'totalWaypoints': total,
                'currentWaypoint': {
                    'lat': current.latitude,
                    'lng': current.longitude,
                    'alt': current.altitude
                },
                'distanceCovered': distance,
                'flightDuration': flight_duration
            }
        ))

        self.tick_count += 1
        self.current_waypoint_index += 1
        return self.finished
