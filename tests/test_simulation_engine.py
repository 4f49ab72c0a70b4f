"""
Tests for mission lifecycle control and the tick loop.
"""

import asyncio
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from config import SimulationConfig
from mission_core import (
    Drone, DroneStatus, EventBus, InMemoryMissionStore, InvalidStateError, LogType,
    Mission, MissionStatus, MissionType, NotFoundError, NoWaypointsError, StoreError,
    WaypointStatus
)
from monitoring import MetricsCollector
from simulation import MissionSimulator, SimulationEngine
from waypoint_generator import WaypointGenerator


class FakeClock:
    """Manually advanced replacement for datetime.now"""

    def __init__(self, start=datetime(2024, 6, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    """Engine over an in-memory store with one drone and a five waypoint mission."""

    tick_interval = 3600.0
    waypoint_count = 5

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = InMemoryMissionStore()
        self.event_bus = EventBus()
        self.metrics = MetricsCollector()
        self.engine = SimulationEngine(
            self.store, self.event_bus,
            config=SimulationConfig(tick_interval_seconds=self.tick_interval),
            clock=self.clock,
            metrics=self.metrics
        )
        self.events = []
        self.event_bus.subscribe(self.events.append, 'mission.*')

        await self.store.add_drone(Drone(id="DRN-1", name="Drone 1", serial_number="SN-1"))
        self.mission_id = await self.create_mission("MSN-1", self.waypoint_count)

    async def asyncTearDown(self):
        await self.engine.shutdown()

    async def create_mission(self, mission_id, waypoint_count, drone_id="DRN-1"):
        await self.store.create_mission(Mission(
            id=mission_id, name="Survey", mission_type=MissionType.CUSTOM,
            altitude=50, drone_id=drone_id
        ))
        points = [{'lat': 10.0, 'lng': 20.0 + i * 0.001} for i in range(waypoint_count)]
        await self.store.add_waypoints(mission_id, WaypointGenerator.generate_custom(points, 50))
        return mission_id

    async def tick(self, times=1, seconds=2):
        for _ in range(times):
            self.clock.advance(seconds)
            await self.engine.step(self.mission_id)

    def event_types(self):
        return [e.type for e in self.events]


class TestStart(EngineTestCase):
    """Test starting a mission."""

    async def test_start_moves_to_in_progress(self):
        mission = await self.engine.start_mission(self.mission_id)

        self.assertEqual(mission.status, MissionStatus.IN_PROGRESS)
        self.assertEqual(mission.started_at, self.clock.now)
        self.assertEqual(mission.completed_waypoints, 0)
        self.assertEqual(mission.progress_percentage, 0.0)
        self.assertTrue(self.engine.registry.has_active(self.mission_id))

        waypoints = await self.store.get_waypoints(self.mission_id)
        self.assertEqual(waypoints[0].status, WaypointStatus.IN_PROGRESS)
        self.assertTrue(all(wp.status == WaypointStatus.PENDING for wp in waypoints[1:]))

        drone = await self.store.get_drone("DRN-1")
        self.assertEqual(drone.status, DroneStatus.IN_MISSION)
        self.assertEqual(drone.battery_level, 99.0)
        self.assertEqual((drone.current_latitude, drone.current_longitude), (10.0, 20.0))

        self.assertEqual(self.event_types(), ['mission.started', 'mission.progress'])

    async def test_start_missing_mission(self):
        with self.assertRaises(NotFoundError):
            await self.engine.start_mission("MSN-404")

    async def test_start_without_waypoints(self):
        await self.store.create_mission(Mission(
            id="MSN-EMPTY", name="Empty", mission_type=MissionType.GRID, altitude=50
        ))

        with self.assertRaises(NoWaypointsError):
            await self.engine.start_mission("MSN-EMPTY")

        mission = await self.store.get_mission("MSN-EMPTY")
        self.assertEqual(mission.status, MissionStatus.SCHEDULED)
        self.assertFalse(self.engine.registry.has_active("MSN-EMPTY"))

    async def test_start_with_missing_drone(self):
        await self.create_mission("MSN-2", 3, drone_id="DRN-404")

        with self.assertRaises(NotFoundError):
            await self.engine.start_mission("MSN-2")

        mission = await self.store.get_mission("MSN-2")
        self.assertEqual(mission.status, MissionStatus.SCHEDULED)

    async def test_start_in_progress_mission_is_rejected(self):
        await self.engine.start_mission(self.mission_id)

        with self.assertRaises(InvalidStateError):
            await self.engine.start_mission(self.mission_id)

    async def test_start_with_live_simulation_is_a_no_op(self):
        await self.engine.start_mission(self.mission_id)
        handle = self.engine.registry.get(self.mission_id)
        await self.store.update_mission(self.mission_id, status=MissionStatus.PAUSED)

        mission = await self.engine.start_mission(self.mission_id)

        self.assertEqual(mission.status, MissionStatus.IN_PROGRESS)
        self.assertIs(self.engine.registry.get(self.mission_id), handle)
        self.assertEqual(handle.simulator.tick_count, 1)

    async def test_start_completed_or_aborted_mission(self):
        for status in (MissionStatus.COMPLETED, MissionStatus.ABORTED):
            await self.store.update_mission(self.mission_id, status=status)
            with self.assertRaises(InvalidStateError):
                await self.engine.start_mission(self.mission_id)


class TestTicks(EngineTestCase):
    """Test per-tick progress."""

    async def test_after_n_ticks(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(2)

        mission = await self.store.get_mission(self.mission_id)
        self.assertEqual(mission.completed_waypoints, 2)
        self.assertAlmostEqual(mission.progress_percentage, 40.0)
        self.assertEqual(mission.flight_duration_seconds, 4)

        waypoints = await self.store.get_waypoints(self.mission_id)
        self.assertEqual(waypoints[1].status, WaypointStatus.COMPLETED)
        self.assertEqual(waypoints[1].reached_at, self.clock.now)
        self.assertEqual(waypoints[2].status, WaypointStatus.IN_PROGRESS)

        expected = round(WaypointGenerator.path_distance(waypoints, upto=2), 2)
        self.assertEqual(mission.distance_covered_km, expected)

    async def test_progress_is_monotonic(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(4)

        progress = [e.data['progress'] for e in self.events if e.type == 'mission.progress']
        self.assertEqual(progress, [0.0, 20.0, 40.0, 60.0, 80.0])

    async def test_progress_event_payload(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(1)

        event = [e for e in self.events if e.type == 'mission.progress'][-1]
        self.assertEqual(event.mission_id, self.mission_id)
        self.assertEqual(event.data['completedWaypoints'], 1)
        self.assertEqual(event.data['totalWaypoints'], 5)
        self.assertEqual(event.data['currentWaypoint'], {'lat': 10.0, 'lng': 20.001, 'alt': 50})
        self.assertEqual(event.data['flightDuration'], 2)

    async def test_waypoint_logs(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(1)

        logs = await self.store.get_logs(self.mission_id)
        reached = [log.message for log in logs if log.log_type == LogType.WAYPOINT_REACHED]
        self.assertEqual(reached, ["Reached waypoint 1/5", "Reached waypoint 2/5"])

    async def test_battery_never_negative(self):
        await self.store.update_drone("DRN-1", battery_level=1.5)
        await self.engine.start_mission(self.mission_id)
        await self.tick(2)

        drone = await self.store.get_drone("DRN-1")
        self.assertEqual(drone.battery_level, 0)

    async def test_step_without_simulation(self):
        with self.assertRaises(NotFoundError):
            await self.engine.step(self.mission_id)

    async def test_tick_metrics_recorded(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(2)

        self.assertEqual(self.metrics.get_counter('simulation_ticks_total'), 3)
        self.assertEqual(self.metrics.get_histogram_stats('simulation_tick_duration_ms')['count'], 3)


class TestCompletion(EngineTestCase):
    """Test reaching the final waypoint."""

    async def test_final_tick_completes_mission(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(4)

        mission = await self.store.get_mission(self.mission_id)
        self.assertEqual(mission.status, MissionStatus.COMPLETED)
        self.assertEqual(mission.progress_percentage, 100.0)
        self.assertEqual(mission.completed_waypoints, 5)
        self.assertEqual(mission.area_coverage_percentage, 100.0)
        self.assertEqual(mission.completed_at, self.clock.now)
        self.assertEqual(mission.flight_duration_seconds, 8)

        waypoints = await self.store.get_waypoints(self.mission_id)
        self.assertTrue(all(wp.status == WaypointStatus.COMPLETED for wp in waypoints))
        self.assertTrue(all(wp.reached_at is not None for wp in waypoints))
        self.assertEqual(mission.distance_covered_km, round(WaypointGenerator.path_distance(waypoints), 2))

        drone = await self.store.get_drone("DRN-1")
        self.assertEqual(drone.status, DroneStatus.IDLE)
        self.assertFalse(self.engine.registry.has_active(self.mission_id))

        completed = [e for e in self.events if e.type == 'mission.completed']
        self.assertEqual(len(completed), 1)
        self.assertEqual(completed[0].data['progress'], 100)

    async def test_single_waypoint_mission_completes_on_start(self):
        await self.create_mission("MSN-ONE", 1)

        mission = await self.engine.start_mission("MSN-ONE")

        self.assertEqual(mission.status, MissionStatus.COMPLETED)
        self.assertFalse(self.engine.registry.has_active("MSN-ONE"))

    async def test_completed_mission_cannot_be_paused(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(4)

        with self.assertRaises(InvalidStateError):
            await self.engine.pause_mission(self.mission_id)


class TestPauseResume(EngineTestCase):
    """Test pausing and resuming."""

    async def test_pause_stops_ticking(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(1)
        handle = self.engine.registry.get(self.mission_id)

        mission = await self.engine.pause_mission(self.mission_id)

        self.assertEqual(mission.status, MissionStatus.PAUSED)
        self.assertEqual(mission.completed_waypoints, 1)
        self.assertTrue(handle.cancelled)
        self.assertFalse(self.engine.registry.has_active(self.mission_id))
        await asyncio.wait_for(handle.task, timeout=1)
        self.assertIn('mission.paused', self.event_types())

        logs = await self.store.get_logs(self.mission_id)
        self.assertEqual(logs[-1].log_type, LogType.CONTROL_ACTION)
        self.assertEqual(logs[-1].metadata['action'], 'pause')

    async def test_pause_requires_in_progress(self):
        with self.assertRaises(InvalidStateError):
            await self.engine.pause_mission(self.mission_id)

    async def test_resume_continues_from_first_unfinished_waypoint(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(2)
        await self.engine.pause_mission(self.mission_id)

        mission = await self.engine.resume_mission(self.mission_id)

        self.assertEqual(mission.status, MissionStatus.IN_PROGRESS)
        self.assertEqual(mission.completed_waypoints, 2)
        simulator = self.engine.registry.get(self.mission_id).simulator
        self.assertEqual(simulator.current_waypoint_index, 3)

        await self.tick(1)
        mission = await self.store.get_mission(self.mission_id)
        self.assertEqual(mission.completed_waypoints, 3)

    async def test_flight_duration_accrues_across_pause(self):
        await self.engine.start_mission(self.mission_id)
        started_at = self.clock.now
        await self.tick(1, seconds=10)
        await self.engine.pause_mission(self.mission_id)

        self.clock.advance(100)
        mission = await self.engine.resume_mission(self.mission_id)

        self.assertEqual(mission.started_at, started_at)
        self.assertEqual(mission.flight_duration_seconds, 110)

    async def test_start_action_also_resumes(self):
        await self.engine.start_mission(self.mission_id)
        await self.engine.pause_mission(self.mission_id)

        mission = await self.engine.start_mission(self.mission_id)
        self.assertEqual(mission.status, MissionStatus.IN_PROGRESS)

    async def test_resume_requires_paused(self):
        with self.assertRaises(InvalidStateError):
            await self.engine.resume_mission(self.mission_id)

    async def test_resume_index(self):
        waypoints = await self.store.get_waypoints(self.mission_id)
        self.assertEqual(MissionSimulator.resume_index(waypoints), 0)

        waypoints[0].status = WaypointStatus.COMPLETED
        waypoints[1].status = WaypointStatus.COMPLETED
        self.assertEqual(MissionSimulator.resume_index(waypoints), 2)

        for wp in waypoints:
            wp.status = WaypointStatus.COMPLETED
        self.assertEqual(MissionSimulator.resume_index(waypoints), 0)


class TestAbort(EngineTestCase):
    """Test aborting."""

    async def test_abort_in_progress(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(1)

        mission = await self.engine.abort_mission(self.mission_id)

        self.assertEqual(mission.status, MissionStatus.ABORTED)
        self.assertEqual(mission.completed_at, self.clock.now)
        self.assertFalse(self.engine.registry.has_active(self.mission_id))

        drone = await self.store.get_drone("DRN-1")
        self.assertEqual(drone.status, DroneStatus.IDLE)

        waypoints = await self.store.get_waypoints(self.mission_id)
        self.assertEqual(
            [wp.status for wp in waypoints],
            [WaypointStatus.COMPLETED, WaypointStatus.IN_PROGRESS] + [WaypointStatus.PENDING] * 3
        )

    async def test_abort_paused(self):
        await self.engine.start_mission(self.mission_id)
        await self.engine.pause_mission(self.mission_id)

        mission = await self.engine.abort_mission(self.mission_id)
        self.assertEqual(mission.status, MissionStatus.ABORTED)

    async def test_abort_requires_active_mission(self):
        with self.assertRaises(InvalidStateError):
            await self.engine.abort_mission(self.mission_id)

        await self.engine.start_mission(self.mission_id)
        await self.engine.abort_mission(self.mission_id)

        with self.assertRaises(InvalidStateError):
            await self.engine.abort_mission(self.mission_id)
        with self.assertRaises(InvalidStateError):
            await self.engine.start_mission(self.mission_id)


class TestControlLocks(EngineTestCase):
    """Test that per-mission control locks do not outlive their mission."""

    async def test_unknown_mission_gets_no_lock(self):
        for control in (self.engine.start_mission, self.engine.pause_mission,
                        self.engine.resume_mission, self.engine.abort_mission):
            with self.assertRaises(NotFoundError):
                await control("MSN-404")

        self.assertEqual(self.engine._control_locks, {})

    async def test_abort_releases_lock(self):
        await self.engine.start_mission(self.mission_id)
        self.assertIn(self.mission_id, self.engine._control_locks)

        await self.engine.abort_mission(self.mission_id)

        self.assertNotIn(self.mission_id, self.engine._control_locks)

    async def test_completion_releases_lock(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(4)

        self.assertNotIn(self.mission_id, self.engine._control_locks)

    async def test_forget_mission(self):
        await self.engine.start_mission(self.mission_id)
        handle = self.engine.registry.get(self.mission_id)
        self.engine.failed_missions[self.mission_id] = "stale"

        self.engine.forget_mission(self.mission_id)

        self.assertTrue(handle.cancelled)
        self.assertFalse(self.engine.registry.has_active(self.mission_id))
        self.assertEqual(self.engine.failed_missions, {})
        self.assertEqual(self.engine._control_locks, {})


class TestTickLoop(EngineTestCase):
    """Test the real timer-driven loop with a short interval."""

    tick_interval = 0.01

    async def test_loop_runs_mission_to_completion(self):
        done = asyncio.Event()
        self.event_bus.subscribe(lambda event: done.set(), 'mission.completed')

        await self.engine.start_mission(self.mission_id)
        await asyncio.wait_for(done.wait(), timeout=5)

        mission = await self.store.get_mission(self.mission_id)
        self.assertEqual(mission.status, MissionStatus.COMPLETED)
        self.assertEqual(self.event_types().count('mission.progress'), 5)
        self.assertEqual(self.engine.active_missions(), [])

    async def test_failed_tick_leaves_mission_stalled(self):
        await self.engine.start_mission(self.mission_id)
        handle = self.engine.registry.get(self.mission_id)

        with patch.object(self.store, 'apply_mission_update', side_effect=StoreError("disk full")):
            with self.assertLogs('simulation.simulation_engine', level='ERROR'):
                await asyncio.wait_for(handle.task, timeout=5)

        mission = await self.store.get_mission(self.mission_id)
        self.assertEqual(mission.status, MissionStatus.IN_PROGRESS)
        self.assertFalse(self.engine.registry.has_active(self.mission_id))
        self.assertIn(self.mission_id, self.engine.failed_missions)
        self.assertIn('mission.error', self.event_types())
        self.assertEqual(self.metrics.get_counter('simulation_tick_failures_total'), 1)

        logs = await self.store.get_logs(self.mission_id)
        self.assertEqual(logs[-1].log_type, LogType.ERROR)

        stalled = await self.engine.stalled_missions()
        self.assertEqual([m.id for m in stalled], [self.mission_id])

        recovered = await self.engine.recover_stalled()

        self.assertEqual(recovered, [self.mission_id])
        self.assertTrue(self.engine.registry.has_active(self.mission_id))
        self.assertNotIn(self.mission_id, self.engine.failed_missions)

    async def test_tick_failing_after_pause_is_not_recorded(self):
        await self.engine.start_mission(self.mission_id)
        handle = self.engine.registry.get(self.mission_id)

        apply_update = self.store.apply_mission_update
        entered = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def slow_then_failing(update):
            calls.append(update)
            if len(calls) > 1:
                return await apply_update(update)
            entered.set()
            await release.wait()
            raise StoreError("store unreachable")

        with patch.object(self.store, 'apply_mission_update', side_effect=slow_then_failing):
            await asyncio.wait_for(entered.wait(), timeout=5)
            await self.engine.pause_mission(self.mission_id)
            release.set()
            with self.assertLogs('simulation.simulation_engine', level='ERROR'):
                await asyncio.wait_for(handle.task, timeout=5)

        mission = await self.store.get_mission(self.mission_id)
        self.assertEqual(mission.status, MissionStatus.PAUSED)
        self.assertEqual(self.engine.failed_missions, {})
        self.assertNotIn('mission.error', self.event_types())
        self.assertEqual(self.metrics.get_counter('simulation_tick_failures_total'), 0)
        self.assertEqual(await self.engine.stalled_missions(), [])

    async def test_shutdown_stops_all_loops(self):
        await self.create_mission("MSN-2", 50)
        await self.create_mission("MSN-3", 50, drone_id=None)
        await self.engine.start_mission("MSN-2")
        await self.engine.start_mission("MSN-3")
        handles = [self.engine.registry.get("MSN-2"), self.engine.registry.get("MSN-3")]

        await self.engine.shutdown()

        self.assertTrue(all(h.task.done() for h in handles))
        self.assertEqual(self.engine.active_missions(), [])


class TestRecovery(EngineTestCase):
    """Test recovering missions left in-progress without a loop."""

    async def test_recover_after_restart(self):
        await self.engine.start_mission(self.mission_id)
        await self.tick(2)
        started_at = (await self.store.get_mission(self.mission_id)).started_at

        # A fresh engine over the same store has no live simulations
        restarted = SimulationEngine(self.store, self.event_bus,
                                     config=SimulationConfig(tick_interval_seconds=3600),
                                     clock=self.clock)
        try:
            recovered = await restarted.recover_stalled()

            self.assertEqual(recovered, [self.mission_id])
            mission = await self.store.get_mission(self.mission_id)
            self.assertEqual(mission.started_at, started_at)
            self.assertEqual(mission.completed_waypoints, 2)
            simulator = restarted.registry.get(self.mission_id).simulator
            self.assertEqual(simulator.current_waypoint_index, 3)
        finally:
            await restarted.shutdown()

    async def test_nothing_to_recover(self):
        self.assertEqual(await self.engine.recover_stalled(), [])

    async def test_get_status(self):
        await self.engine.start_mission(self.mission_id)
        status = self.engine.get_status()

        self.assertEqual(status['active_simulations'], 1)
        self.assertEqual(status['active_missions'], [self.mission_id])
        self.assertEqual(status['failed_missions'], {})


if __name__ == '__main__':
    unittest.main()
