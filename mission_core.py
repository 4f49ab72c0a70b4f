# Survey Mission Control - Core Models, Events and Store
# File: mission_core.py

"""
Data models, error types, event bus and mission store shared by the
waypoint generator, the simulation engine and the API server.
"""

import copy
import fnmatch
import json
import uuid
import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import List, Dict, Optional, Any, Callable
from enum import Enum
from dataclasses import dataclass, asdict, field
import logging

logger = logging.getLogger(__name__)

# ============================================================================
# PART 1: CORE DATA MODELS
# ============================================================================

class MissionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"

class MissionType(str, Enum):
    GRID = "grid"
    PERIMETER = "perimeter"
    CROSSHATCH = "crosshatch"
    CUSTOM = "custom"

class WaypointStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"

class DroneStatus(str, Enum):
    IDLE = "idle"
    IN_MISSION = "in-mission"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"

class DroneHealth(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

class LogType(str, Enum):
    STATUS_CHANGE = "status_change"
    WAYPOINT_REACHED = "waypoint_reached"
    BATTERY_UPDATE = "battery_update"
    ERROR = "error"
    CONTROL_ACTION = "control_action"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


@dataclass
class Location:
    lat: float
    lng: float
    alt: float = 0.0

@dataclass
class Bounds:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @classmethod
    def from_coordinates(cls, coordinates: List[Location]) -> 'Bounds':
        """Bounding box of a polygon"""
        if not coordinates:
            raise ValueError("Cannot compute bounds of an empty polygon")
        lats = [c.lat for c in coordinates]
        lngs = [c.lng for c in coordinates]
        return cls(min(lats), max(lats), min(lngs), max(lngs))

    def contains(self, lat: float, lng: float, tolerance: float = 1e-9) -> bool:
        return (self.min_lat - tolerance <= lat <= self.max_lat + tolerance and
                self.min_lng - tolerance <= lng <= self.max_lng + tolerance)

@dataclass
class Waypoint:
    sequence_number: int
    latitude: float
    longitude: float
    altitude: float
    status: WaypointStatus = WaypointStatus.PENDING
    id: Optional[str] = None
    mission_id: Optional[str] = None
    reached_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

@dataclass
class Drone:
    id: str
    name: str
    serial_number: str
    model: Optional[str] = None
    status: DroneStatus = DroneStatus.IDLE
    battery_level: float = 100.0
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    current_altitude: Optional[float] = None
    location: Optional[str] = None
    health_status: DroneHealth = DroneHealth.HEALTHY
    last_update: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

@dataclass
class Mission:
    id: str
    name: str
    mission_type: MissionType
    altitude: float
    overlap_percentage: float = 70.0
    status: MissionStatus = MissionStatus.SCHEDULED
    description: Optional[str] = None
    drone_id: Optional[str] = None
    survey_area_polygon: Dict[str, Any] = field(default_factory=dict)
    sensor_type: Optional[str] = None
    scheduled_start_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress_percentage: float = 0.0
    total_waypoints: int = 0
    completed_waypoints: int = 0
    flight_duration_seconds: int = 0
    distance_covered_km: float = 0.0
    area_coverage_percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

@dataclass
class MissionLog:
    mission_id: str
    log_type: LogType
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("LOG"))
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

# ============================================================================
# PART 2: ERRORS
# ============================================================================

class MissionControlError(Exception):
    """Base class for mission control failures"""

class NotFoundError(MissionControlError):
    """Mission, drone or waypoint does not exist"""

class InvalidStateError(MissionControlError):
    """Control action is illegal for the mission's current status"""

class NoWaypointsError(MissionControlError):
    """Mission has no waypoints to fly"""

class StoreError(MissionControlError):
    """Persistence layer failure"""

# ============================================================================
# PART 3: EVENT BUS
# ============================================================================

@dataclass
class MissionEvent:
    type: str
    mission_id: str
    data: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'missionId': self.mission_id,
            'timestamp': self.timestamp.isoformat(),
            'data': _serialize(self.data)
        }


class EventBus:
    """
    In-process broadcast of mission events.

    Handlers subscribe with a glob pattern on the event type ('mission.*',
    'mission.progress', '*'). Delivery is best-effort: a failing handler is
    logged and skipped, and nothing is kept for subscribers that join later.
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self.published_count = 0

    def subscribe(self, handler: Callable, event_type: str = '*'):
        """Subscribe handler (sync or async) to events matching event_type"""
        self.subscribers[event_type].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {event_type}")

    def unsubscribe(self, handler: Callable, event_type: str = '*'):
        handlers = self.subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self) -> int:
        return sum(len(h) for h in self.subscribers.values())

    async def publish(self, event: MissionEvent):
        """Dispatch event to every matching subscriber"""
        self.published_count += 1
        logger.debug(f"Event published: {event.type} [{event.mission_id}]")

        for pattern, handlers in list(self.subscribers.items()):
            if not fnmatch.fnmatchcase(event.type, pattern):
                continue
            for handler in list(handlers):
                try:
                    result = handler(event)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

# ============================================================================
# PART 4: MISSION STORE
# ============================================================================

class MutationKind(str, Enum):
    UPDATE_MISSION = "update_mission"
    UPDATE_WAYPOINT = "update_waypoint"
    COMPLETE_WAYPOINTS = "complete_waypoints"
    UPDATE_DRONE = "update_drone"
    APPEND_LOG = "append_log"

@dataclass
class StoreMutation:
    kind: MutationKind
    target_id: str
    fields: Dict[str, Any] = field(default_factory=dict)

@dataclass
class MissionUpdate:
    """
    Ordered list of store mutations produced by one simulation step.

    Stores apply the whole list through a single apply_mission_update call,
    so a transactional backend can commit it atomically.
    """
    mission_id: str
    mutations: List[StoreMutation] = field(default_factory=list)

    def update_mission(self, **fields) -> 'MissionUpdate':
        self.mutations.append(StoreMutation(MutationKind.UPDATE_MISSION, self.mission_id, fields))
        return self

    def update_waypoint(self, waypoint_id: str, **fields) -> 'MissionUpdate':
        self.mutations.append(StoreMutation(MutationKind.UPDATE_WAYPOINT, waypoint_id, fields))
        return self

    def complete_waypoints(self, reached_at: datetime) -> 'MissionUpdate':
        self.mutations.append(StoreMutation(
            MutationKind.COMPLETE_WAYPOINTS, self.mission_id, {'reached_at': reached_at}
        ))
        return self

    def update_drone(self, drone_id: str, **fields) -> 'MissionUpdate':
        self.mutations.append(StoreMutation(MutationKind.UPDATE_DRONE, drone_id, fields))
        return self

    def append_log(self, log_type: LogType, message: str,
                   metadata: Optional[Dict[str, Any]] = None) -> 'MissionUpdate':
        log = MissionLog(self.mission_id, log_type, message, metadata or {})
        self.mutations.append(StoreMutation(MutationKind.APPEND_LOG, self.mission_id, {'log': log}))
        return self


class MissionStore(ABC):
    """Persistence operations consumed by the simulation engine and the API"""

    @abstractmethod
    async def create_mission(self, mission: Mission) -> Mission: ...

    @abstractmethod
    async def get_mission(self, mission_id: str) -> Optional[Mission]: ...

    @abstractmethod
    async def list_missions(self, status: Optional[MissionStatus] = None,
                            drone_id: Optional[str] = None) -> List[Mission]: ...

    @abstractmethod
    async def update_mission(self, mission_id: str, **fields) -> Mission: ...

    @abstractmethod
    async def delete_mission(self, mission_id: str) -> bool: ...

    @abstractmethod
    async def add_waypoints(self, mission_id: str, waypoints: List[Waypoint]) -> List[Waypoint]: ...

    @abstractmethod
    async def get_waypoints(self, mission_id: str) -> List[Waypoint]: ...

    @abstractmethod
    async def delete_waypoints(self, mission_id: str) -> int: ...

    @abstractmethod
    async def update_waypoint(self, waypoint_id: str, **fields) -> Waypoint: ...

    @abstractmethod
    async def complete_all_waypoints(self, mission_id: str,
                                     reached_at: Optional[datetime] = None) -> int: ...

    @abstractmethod
    async def add_drone(self, drone: Drone) -> Drone: ...

    @abstractmethod
    async def get_drone(self, drone_id: str) -> Optional[Drone]: ...

    @abstractmethod
    async def list_drones(self) -> List[Drone]: ...

    @abstractmethod
    async def update_drone(self, drone_id: str, **fields) -> Drone: ...

    @abstractmethod
    async def delete_drone(self, drone_id: str) -> bool: ...

    @abstractmethod
    async def append_log(self, log: MissionLog) -> MissionLog: ...

    @abstractmethod
    async def get_logs(self, mission_id: str) -> List[MissionLog]: ...

    @abstractmethod
    async def apply_mission_update(self, update: MissionUpdate) -> Mission: ...


class InMemoryMissionStore(MissionStore):
    """
    Dictionary-backed store.

    Reads hand out deep copies so callers only change stored records through
    the update methods. apply_mission_update checks every mutation target
    before touching anything, which makes a batched update all-or-nothing.
    """

    def __init__(self):
        self.missions: Dict[str, Mission] = {}
        self.waypoints: Dict[str, Waypoint] = {}
        self.drones: Dict[str, Drone] = {}
        self.logs: Dict[str, List[MissionLog]] = defaultdict(list)

    # Missions

    async def create_mission(self, mission: Mission) -> Mission:
        if mission.id in self.missions:
            raise StoreError(f"Mission {mission.id} already exists")
        self.missions[mission.id] = copy.deepcopy(mission)
        logger.info(f"Mission stored: {mission.id} ({mission.mission_type.value})")
        return copy.deepcopy(mission)

    async def get_mission(self, mission_id: str) -> Optional[Mission]:
        mission = self.missions.get(mission_id)
        return copy.deepcopy(mission) if mission else None

    async def list_missions(self, status: Optional[MissionStatus] = None,
                            drone_id: Optional[str] = None) -> List[Mission]:
        missions = [
            m for m in self.missions.values()
            if (status is None or m.status == status)
            and (drone_id is None or m.drone_id == drone_id)
        ]
        missions.sort(key=lambda m: m.created_at, reverse=True)
        return copy.deepcopy(missions)

    async def update_mission(self, mission_id: str, **fields) -> Mission:
        mission = self._require(self.missions, mission_id, "Mission")
        self._assign(mission, fields)
        return copy.deepcopy(mission)

    async def delete_mission(self, mission_id: str) -> bool:
        if self.missions.pop(mission_id, None) is None:
            return False
        for wp_id in [w.id for w in self.waypoints.values() if w.mission_id == mission_id]:
            del self.waypoints[wp_id]
        self.logs.pop(mission_id, None)
        logger.info(f"Mission deleted: {mission_id}")
        return True

    # Waypoints

    async def add_waypoints(self, mission_id: str, waypoints: List[Waypoint]) -> List[Waypoint]:
        mission = self._require(self.missions, mission_id, "Mission")
        stored = []
        for wp in waypoints:
            record = copy.deepcopy(wp)
            record.id = record.id or new_id("WP")
            record.mission_id = mission_id
            self.waypoints[record.id] = record
            stored.append(copy.deepcopy(record))
        mission.total_waypoints = len(self._mission_waypoints(mission_id))
        return stored

    async def get_waypoints(self, mission_id: str) -> List[Waypoint]:
        return copy.deepcopy(self._mission_waypoints(mission_id))

    async def delete_waypoints(self, mission_id: str) -> int:
        """Drop a mission's flight path before it is re-planned"""
        mission = self._require(self.missions, mission_id, "Mission")
        removed = [w.id for w in self._mission_waypoints(mission_id)]
        for wp_id in removed:
            del self.waypoints[wp_id]
        mission.total_waypoints = 0
        return len(removed)

    async def update_waypoint(self, waypoint_id: str, **fields) -> Waypoint:
        waypoint = self._require(self.waypoints, waypoint_id, "Waypoint")
        self._assign(waypoint, fields)
        return copy.deepcopy(waypoint)

    async def complete_all_waypoints(self, mission_id: str,
                                     reached_at: Optional[datetime] = None) -> int:
        changed = 0
        for wp in self._mission_waypoints(mission_id):
            if wp.status != WaypointStatus.COMPLETED:
                wp.status = WaypointStatus.COMPLETED
                if wp.reached_at is None:
                    wp.reached_at = reached_at
                changed += 1
        return changed

    # Drones

    async def add_drone(self, drone: Drone) -> Drone:
        if drone.id in self.drones:
            raise StoreError(f"Drone {drone.id} already exists")
        self.drones[drone.id] = copy.deepcopy(drone)
        logger.info(f"Drone registered: {drone.id} ({drone.serial_number})")
        return copy.deepcopy(drone)

    async def get_drone(self, drone_id: str) -> Optional[Drone]:
        drone = self.drones.get(drone_id)
        return copy.deepcopy(drone) if drone else None

    async def list_drones(self) -> List[Drone]:
        return copy.deepcopy(list(self.drones.values()))

    async def update_drone(self, drone_id: str, **fields) -> Drone:
        drone = self._require(self.drones, drone_id, "Drone")
        self._assign(drone, fields)
        drone.last_update = datetime.now()
        return copy.deepcopy(drone)

    async def delete_drone(self, drone_id: str) -> bool:
        if self.drones.pop(drone_id, None) is None:
            return False
        logger.info(f"Drone deleted: {drone_id}")
        return True

    # Logs

    async def append_log(self, log: MissionLog) -> MissionLog:
        self.logs[log.mission_id].append(copy.deepcopy(log))
        return log

    async def get_logs(self, mission_id: str) -> List[MissionLog]:
        return copy.deepcopy(self.logs.get(mission_id, []))

    # Batched updates

    async def apply_mission_update(self, update: MissionUpdate) -> Mission:
        targets = {
            MutationKind.UPDATE_MISSION: (self.missions, "Mission"),
            MutationKind.COMPLETE_WAYPOINTS: (self.missions, "Mission"),
            MutationKind.APPEND_LOG: (self.missions, "Mission"),
            MutationKind.UPDATE_WAYPOINT: (self.waypoints, "Waypoint"),
            MutationKind.UPDATE_DRONE: (self.drones, "Drone"),
        }
        for mutation in update.mutations:
            records, label = targets[mutation.kind]
            record = self._require(records, mutation.target_id, label)
            if mutation.kind in (MutationKind.UPDATE_MISSION, MutationKind.UPDATE_WAYPOINT,
                                 MutationKind.UPDATE_DRONE):
                unknown = [name for name in mutation.fields if not hasattr(record, name)]
                if unknown:
                    raise StoreError(f"Unknown field for {label}: {', '.join(unknown)}")

        for mutation in update.mutations:
            if mutation.kind == MutationKind.UPDATE_MISSION:
                await self.update_mission(mutation.target_id, **mutation.fields)
            elif mutation.kind == MutationKind.UPDATE_WAYPOINT:
                await self.update_waypoint(mutation.target_id, **mutation.fields)
            elif mutation.kind == MutationKind.COMPLETE_WAYPOINTS:
                await self.complete_all_waypoints(mutation.target_id, mutation.fields.get('reached_at'))
            elif mutation.kind == MutationKind.UPDATE_DRONE:
                await self.update_drone(mutation.target_id, **mutation.fields)
            elif mutation.kind == MutationKind.APPEND_LOG:
                await self.append_log(mutation.fields['log'])

        return copy.deepcopy(self.missions[update.mission_id])

    def snapshot(self) -> Dict:
        """JSON-safe view of every stored record"""
        return json.loads(json.dumps({
            'missions': {k: m.to_dict() for k, m in self.missions.items()},
            'drones': {k: d.to_dict() for k, d in self.drones.items()},
            'waypoint_count': len(self.waypoints),
            'log_count': sum(len(v) for v in self.logs.values())
        }, default=str))

    # Helpers

    def _mission_waypoints(self, mission_id: str) -> List[Waypoint]:
        return sorted(
            (w for w in self.waypoints.values() if w.mission_id == mission_id),
            key=lambda w: w.sequence_number
        )

    @staticmethod
    def _require(records: Dict[str, Any], record_id: str, label: str) -> Any:
        record = records.get(record_id)
        if record is None:
            raise NotFoundError(f"{label} not found: {record_id}")
        return record

    @staticmethod
    def _assign(record: Any, fields: Dict[str, Any]):
        for name, value in fields.items():
            if not hasattr(record, name):
                raise StoreError(f"Unknown field for {type(record).__name__}: {name}")
            setattr(record, name, value)
