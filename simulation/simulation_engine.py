# Survey Mission Control - Simulation Engine
# File: simulation/simulation_engine.py

"""
Mission lifecycle control (start, pause, resume, abort, complete) and the
cooperative per-mission tick loop.

One SimulationEngine is built per process and handed to the API server or
CLI. Each running mission is a single asyncio task that waits on its stop
signal with the tick interval as timeout and runs one tick whenever the wait
times out, so ticks of the same mission never overlap and a cancelled
mission finishes any tick already in flight.
"""

import asyncio
import time
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Any

from config import SimulationConfig
from mission_core import (
    DroneStatus, EventBus, InvalidStateError, LogType, Mission, MissionEvent,
    MissionLog, MissionStatus, MissionStore, MissionUpdate, NoWaypointsError,
    NotFoundError
)
from simulation.mission_simulator import MissionSimulator
from simulation.registry import SimulationHandle, SimulationRegistry
from waypoint_generator import WaypointGenerator

logger = logging.getLogger(__name__)

STARTABLE_STATUSES = (MissionStatus.SCHEDULED, MissionStatus.PAUSED)
ABORTABLE_STATUSES = (MissionStatus.IN_PROGRESS, MissionStatus.PAUSED)


class SimulationEngine:
    """Owns the simulation registry and every mission state transition"""

    def __init__(self, store: MissionStore, event_bus: EventBus,
                 config: Optional[SimulationConfig] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 metrics=None):
        """
        Args:
            store: Mission/drone/log store
            event_bus: Bus receiving progress and status events
            config: Simulation settings (tick interval, battery drain)
            clock: Source of the current time
            metrics: Optional MetricsCollector for tick timings and failures
        """
        self.store = store
        self.event_bus = event_bus
        self.config = config or SimulationConfig()
        self.clock = clock
        self.metrics = metrics
        self.registry = SimulationRegistry()
        self.failed_missions: Dict[str, str] = {}
        self._control_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def start_mission(self, mission_id: str) -> Mission:
        """Start a scheduled mission or resume a paused one"""
        lock = await self._control_lock(mission_id)
        async with lock:
            mission = await self._require_mission(mission_id)
            if mission.status not in STARTABLE_STATUSES:
                raise InvalidStateError(
                    f"Mission must be scheduled or paused to start (status: {mission.status.value})"
                )
            return await self._launch(mission)

    async def resume_mission(self, mission_id: str) -> Mission:
        """Resume a paused mission from its first unfinished waypoint"""
        lock = await self._control_lock(mission_id)
        async with lock:
            mission = await self._require_mission(mission_id)
            if mission.status != MissionStatus.PAUSED:
                raise InvalidStateError(
                    f"Mission must be paused to resume (status: {mission.status.value})"
                )
            return await self._launch(mission)

    async def pause_mission(self, mission_id: str) -> Mission:
        """Stop ticking and freeze metrics at their last values"""
        lock = await self._control_lock(mission_id)
        async with lock:
            mission = await self._require_mission(mission_id)
            if mission.status != MissionStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Mission must be in-progress to pause (status: {mission.status.value})"
                )

            self.registry.cancel(mission_id)
            self.failed_missions.pop(mission_id, None)

            update = MissionUpdate(mission_id).update_mission(status=MissionStatus.PAUSED)
            update.append_log(LogType.CONTROL_ACTION, "Mission paused",
                              {'action': 'pause', 'previous_status': mission.status.value})
            mission = await self.store.apply_mission_update(update)

            logger.info(f"Mission paused: {mission_id}")
            await self._publish_status(mission, "Mission paused")
            return mission

    async def abort_mission(self, mission_id: str) -> Mission:
        """Stop the mission for good; waypoint statuses are left as they are"""
        lock = await self._control_lock(mission_id)
        async with lock:
            mission = await self._require_mission(mission_id)
            if mission.status not in ABORTABLE_STATUSES:
                raise InvalidStateError(
                    f"Mission must be active to abort (status: {mission.status.value})"
                )

            self.registry.cancel(mission_id)
            self.failed_missions.pop(mission_id, None)

            update = MissionUpdate(mission_id)
            if mission.drone_id and await self.store.get_drone(mission.drone_id):
                update.update_drone(mission.drone_id, status=DroneStatus.IDLE)
            update.update_mission(status=MissionStatus.ABORTED, completed_at=self.clock())
            update.append_log(LogType.CONTROL_ACTION, "Mission aborted",
                              {'action': 'abort', 'previous_status': mission.status.value})
            mission = await self.store.apply_mission_update(update)

            self._control_locks.pop(mission_id, None)

            logger.info(f"Mission aborted: {mission_id}")
            await self._publish_status(mission, "Mission aborted")
            return mission

    async def complete_mission(self, mission_id: str, drone_id: Optional[str] = None) -> Mission:
        """Mark the mission and all its waypoints completed and release the drone"""
        now = self.clock()
        mission = await self._require_mission(mission_id)
        waypoints = await self.store.get_waypoints(mission_id)

        total_distance = WaypointGenerator.path_distance(waypoints)
        flight_duration = (
            int((now - mission.started_at).total_seconds()) if mission.started_at else 0
        )

        update = MissionUpdate(mission_id).complete_waypoints(reached_at=now)
        update.update_mission(
            status=MissionStatus.COMPLETED,
            completed_at=now,
            progress_percentage=100.0,
            completed_waypoints=len(waypoints),
            total_waypoints=len(waypoints),
            distance_covered_km=round(total_distance, 2),
            flight_duration_seconds=flight_duration,
            # Flying the whole path is taken as full coverage of the area
            area_coverage_percentage=100.0
        )
        if drone_id and await self.store.get_drone(drone_id):
            update.update_drone(drone_id, status=DroneStatus.IDLE)
        update.append_log(LogType.STATUS_CHANGE, "Mission completed successfully", {
            'flight_duration': flight_duration,
            'distance_covered': round(total_distance, 2),
            'waypoints_completed': len(waypoints)
        })
        mission = await self.store.apply_mission_update(update)

        self.registry.cancel(mission_id)
        self.failed_missions.pop(mission_id, None)
        self._control_locks.pop(mission_id, None)

        logger.info(
            f"Mission completed: {mission_id} "
            f"({len(waypoints)} waypoints, {total_distance:.2f} km, {flight_duration}s)"
        )
        await self._publish_status(mission, "Mission completed", progress=100)
        return mission

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    async def step(self, mission_id: str) -> bool:
        """
        Run one tick of a live simulation, completing the mission after the
        last waypoint.

        Returns:
            bool: True if the mission is finished
        """
        handle = self.registry.get(mission_id)
        if handle is None:
            raise NotFoundError(f"No active simulation for mission {mission_id}")
        return await self._step(handle)

    async def _step(self, handle: SimulationHandle) -> bool:
        mission_id = handle.mission_id
        simulator = handle.simulator
        started = time.perf_counter()
        finished = await simulator.tick()
        self._record_tick(mission_id, (time.perf_counter() - started) * 1000)

        # Paused or aborted while the tick was running: leave the final
        # transition to the next start
        if finished and not handle.cancelled:
            await self.complete_mission(mission_id, simulator.drone_id)
            self.registry.discard(mission_id, handle)
        return finished

    async def _run(self, handle: SimulationHandle):
        """Tick loop of one mission"""
        mission_id = handle.mission_id
        interval = self.config.tick_interval_seconds
        try:
            while not handle.cancelled:
                try:
                    await asyncio.wait_for(handle.stop_event.wait(), timeout=interval)
                    break
                except asyncio.TimeoutError:
                    pass
                if await self._step(handle):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if handle.cancelled:
                # Paused or aborted while the tick ran: not a stalled mission
                logger.exception(f"Simulation tick failed after mission {mission_id} was stopped")
            else:
                logger.exception(f"Simulation error for mission {mission_id}")
                await self._handle_tick_failure(mission_id, e)
        finally:
            self.registry.discard(mission_id, handle)

    async def _handle_tick_failure(self, mission_id: str, error: Exception):
        """
        A failed tick stops the loop; the mission stays in-progress with no
        live simulation until recover_stalled() or an operator restarts it.
        """
        self.failed_missions[mission_id] = str(error)
        if self.metrics:
            self.metrics.record_counter('simulation_tick_failures_total')

        try:
            await self.store.append_log(MissionLog(
                mission_id, LogType.ERROR, f"Simulation stopped: {error}",
                {'error_type': type(error).__name__}
            ))
        except Exception as log_error:
            logger.error(f"Could not record failure for mission {mission_id}: {log_error}")

        await self.event_bus.publish(MissionEvent(
            type='mission.error',
            mission_id=mission_id,
            data={
                'missionId': mission_id,
                'status': MissionStatus.IN_PROGRESS.value,
                'message': f"Simulation stopped: {error}"
            }
        ))

    # ------------------------------------------------------------------
    # Recovery and shutdown
    # ------------------------------------------------------------------

    async def stalled_missions(self) -> List[Mission]:
        """In-progress missions with no live simulation"""
        missions = await self.store.list_missions(status=MissionStatus.IN_PROGRESS)
        return [m for m in missions if not self.registry.has_active(m.id)]

    async def recover_stalled(self) -> List[str]:
        """
        Relaunch every stalled mission from its first unfinished waypoint,
        keeping the original start time.

        Returns:
            List of recovered mission ids
        """
        recovered = []
        for mission in await self.stalled_missions():
            async with self._control_locks.setdefault(mission.id, asyncio.Lock()):
                current = await self.store.get_mission(mission.id)
                if current is None or current.status != MissionStatus.IN_PROGRESS:
                    continue
                if self.registry.has_active(mission.id):
                    continue
                self.failed_missions.pop(mission.id, None)
                try:
                    await self._launch(current)
                except Exception as e:
                    logger.error(f"Recovery failed for mission {mission.id}: {e}")
                    self.failed_missions[mission.id] = str(e)
                    continue
                if mission.id not in self.failed_missions:
                    recovered.append(mission.id)

        if recovered:
            logger.info(f"Recovered {len(recovered)} stalled mission(s): {recovered}")
        return recovered

    async def shutdown(self):
        """Stop all tick loops, letting in-flight ticks finish"""
        handles = self.registry.cancel_all()
        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Simulation engine stopped ({len(handles)} simulation(s) cancelled)")

    def forget_mission(self, mission_id: str):
        """Drop everything the engine tracks for a deleted mission"""
        self.registry.cancel(mission_id)
        self.failed_missions.pop(mission_id, None)
        self._control_locks.pop(mission_id, None)

    def active_missions(self) -> List[str]:
        return self.registry.active_missions()

    def get_status(self) -> Dict[str, Any]:
        return {
            'active_simulations': len(self.registry),
            'active_missions': self.registry.active_missions(),
            'failed_missions': dict(self.failed_missions),
            'tick_interval_seconds': self.config.tick_interval_seconds
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _launch(self, mission: Mission) -> Mission:
        """Move mission to in-progress and start its tick loop"""
        mission_id = mission.id
        waypoints = await self.store.get_waypoints(mission_id)
        if not waypoints:
            raise NoWaypointsError(f"No waypoints found for mission {mission_id}")
        if mission.drone_id and not await self.store.get_drone(mission.drone_id):
            raise NotFoundError(f"Drone not found: {mission.drone_id}")

        previous_status = mission.status
        now = self.clock()
        # Resumed missions keep accruing flight time from the original start
        if previous_status == MissionStatus.SCHEDULED or mission.started_at is None:
            started_at = now
        else:
            started_at = mission.started_at

        action = {
            MissionStatus.SCHEDULED: 'started',
            MissionStatus.PAUSED: 'resumed',
        }.get(previous_status, 'recovered')

        update = MissionUpdate(mission_id).update_mission(
            status=MissionStatus.IN_PROGRESS,
            started_at=started_at,
            total_waypoints=len(waypoints)
        )
        if mission.drone_id:
            update.update_drone(mission.drone_id, status=DroneStatus.IN_MISSION)

        if self.registry.has_active(mission_id):
            logger.info(f"Simulation already running for mission {mission_id}")
            return await self.store.apply_mission_update(update)

        update.append_log(LogType.STATUS_CHANGE, f"Mission {action}",
                          {'previous_status': previous_status.value, 'status': MissionStatus.IN_PROGRESS.value})
        mission = await self.store.apply_mission_update(update)

        start_index = MissionSimulator.resume_index(waypoints)
        simulator = MissionSimulator(
            mission_id=mission_id,
            waypoints=waypoints,
            drone_id=mission.drone_id,
            started_at=started_at,
            start_index=start_index,
            store=self.store,
            event_bus=self.event_bus,
            clock=self.clock,
            battery_drain=self.config.battery_drain_per_waypoint
        )
        handle = SimulationHandle(simulator)
        self.registry.register(mission_id, handle)

        logger.info(f"Mission {action}: {mission_id} at waypoint {start_index + 1}/{len(waypoints)}")
        await self._publish_status(mission, f"Mission {action}")

        # First tick is the arrival at the resume waypoint
        try:
            finished = await self._step(handle)
        except Exception as e:
            logger.exception(f"Simulation error for mission {mission_id}")
            self.registry.discard(mission_id, handle)
            await self._handle_tick_failure(mission_id, e)
            return await self.store.get_mission(mission_id) or mission

        if not finished:
            handle.task = asyncio.create_task(self._run(handle), name=f"simulation-{mission_id}")
        return await self.store.get_mission(mission_id) or mission

    async def _control_lock(self, mission_id: str) -> asyncio.Lock:
        """Lock serializing control calls; only created for stored missions"""
        await self._require_mission(mission_id)
        return self._control_locks.setdefault(mission_id, asyncio.Lock())

    async def _require_mission(self, mission_id: str) -> Mission:
        mission = await self.store.get_mission(mission_id)
        if mission is None:
            raise NotFoundError(f"Mission not found: {mission_id}")
        return mission

    async def _publish_status(self, mission: Mission, message: str, **extra):
        status = mission.status.value
        data = {'missionId': mission.id, 'status': status, 'message': message}
        data.update(extra)
        event_type = {
            MissionStatus.IN_PROGRESS: 'mission.started',
            MissionStatus.PAUSED: 'mission.paused',
            MissionStatus.ABORTED: 'mission.aborted',
            MissionStatus.COMPLETED: 'mission.completed',
        }.get(mission.status, 'mission.updated')
        await self.event_bus.publish(MissionEvent(event_type, mission.id, data))

    def _record_tick(self, mission_id: str, duration_ms: float):
        if self.metrics:
            self.metrics.record_counter('simulation_ticks_total')
            self.metrics.record_histogram('simulation_tick_duration_ms', duration_ms)
