# Survey Mission Control - Simulation Registry
# File: simulation/registry.py

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from simulation.mission_simulator import MissionSimulator

logger = logging.getLogger(__name__)


@dataclass
class SimulationHandle:
    """Live simulation of one mission: simulator, its tick task and stop signal"""
    simulator: MissionSimulator
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    @property
    def mission_id(self) -> str:
        return self.simulator.mission_id

    def cancel(self):
        """Stop future ticks; a tick already running is left to finish"""
        self.stop_event.set()

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()


class SimulationRegistry:
    """
    Mission id -> live simulation handle.

    Holds at most one handle per mission, which is what keeps a mission's
    ticks from overlapping. Process-local: nothing here survives a restart.
    """

    def __init__(self):
        self._handles: Dict[str, SimulationHandle] = {}

    def has_active(self, mission_id: str) -> bool:
        handle = self._handles.get(mission_id)
        return handle is not None and not handle.cancelled

    def get(self, mission_id: str) -> Optional[SimulationHandle]:
        return self._handles.get(mission_id)

    def register(self, mission_id: str, handle: SimulationHandle):
        if self.has_active(mission_id):
            raise ValueError(f"Simulation already active for mission {mission_id}")
        self._handles[mission_id] = handle
        logger.debug(f"Simulation registered: {mission_id}")

    def cancel(self, mission_id: str) -> bool:
        """Cancel and forget the mission's handle; False if there was none"""
        handle = self._handles.pop(mission_id, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug(f"Simulation cancelled: {mission_id}")
        return True

    def discard(self, mission_id: str, handle: SimulationHandle):
        """Forget handle if it is still the registered one"""
        if self._handles.get(mission_id) is handle:
            del self._handles[mission_id]

    def active_missions(self) -> List[str]:
        return [mid for mid, h in self._handles.items() if not h.cancelled]

    def cancel_all(self) -> List[SimulationHandle]:
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        self._handles.clear()
        return handles

    def __len__(self):
        return len(self.active_missions())
