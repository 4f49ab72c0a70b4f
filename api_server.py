# FastAPI Web Server for Survey Mission Control
# File: api_server.py

"""
Run with: uvicorn api_server:app --reload --port 8000
"""

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any, Set
from datetime import datetime
import logging

from config import SimulationConfig, configure_logging
from kafka_integration import KafkaEventBridge, KafkaEventProducer
from mission_core import (
    Bounds, Drone, DroneHealth, DroneStatus, EventBus, InMemoryMissionStore, InvalidStateError,
    Location, LogType, Mission, MissionControlError, MissionEvent, MissionLog,
    MissionStatus, MissionType, NoWaypointsError, NotFoundError, StoreError, new_id
)
from monitoring import MetricsCollector, SimulationMetrics
from simulation import SimulationEngine
from waypoint_generator import WaypointGenerator

logger = logging.getLogger(__name__)

config = SimulationConfig.from_env()

app = FastAPI(
    title="Survey Mission Control API",
    description="Drone survey mission planning and simulated execution",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialized in startup_event
store: Optional[InMemoryMissionStore] = None
event_bus: Optional[EventBus] = None
engine: Optional[SimulationEngine] = None
metrics: Optional[SimulationMetrics] = None
kafka_bridge: Optional[KafkaEventBridge] = None

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    InvalidStateError: 400,
    NoWaypointsError: 400,
    StoreError: 500,
}

CONTROL_ACTIONS = ('start', 'pause', 'resume', 'abort')

MISSION_UPDATE_FIELDS = ('name', 'description', 'drone_id', 'altitude', 'overlap_percentage',
                         'sensor_type', 'scheduled_start_time', 'survey_area_polygon')
# Changing any of these invalidates the generated flight path
MISSION_GEOMETRY_FIELDS = ('altitude', 'overlap_percentage', 'survey_area_polygon')

DRONE_UPDATE_FIELDS = ('name', 'model', 'status', 'battery_level', 'current_latitude',
                       'current_longitude', 'current_altitude', 'location', 'health_status')

# Missions that still claim their drone
DRONE_BOUND_STATUSES = (MissionStatus.SCHEDULED, MissionStatus.IN_PROGRESS, MissionStatus.PAUSED)

# ============================================================================
# WEBSOCKET CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """
    Pushes event bus events to WebSocket clients.

    A client with no subscriptions receives every mission event; once it
    subscribes to mission ids it only receives events for those missions.
    """

    def __init__(self):
        self.active_connections: Dict[WebSocket, Set[str]] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections[websocket] = set()
        logger.info(f"WebSocket client connected ({len(self.active_connections)} total)")

    def disconnect(self, websocket: WebSocket):
        self.active_connections.pop(websocket, None)
        logger.info(f"WebSocket client disconnected ({len(self.active_connections)} total)")

    def subscribe(self, websocket: WebSocket, mission_id: str):
        self.active_connections.setdefault(websocket, set()).add(mission_id)

    def unsubscribe(self, websocket: WebSocket, mission_id: str):
        self.active_connections.get(websocket, set()).discard(mission_id)

    async def broadcast(self, event: MissionEvent):
        message = event.to_dict()
        for connection, missions in list(self.active_connections.items()):
            if missions and event.mission_id not in missions:
                continue
            try:
                await connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Dropping WebSocket client: {e}")
                self.disconnect(connection)

manager = ConnectionManager()

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class LocationModel(BaseModel):
    lat: float
    lng: float
    alt: Optional[float] = None

class BoundsModel(BaseModel):
    minLat: float
    maxLat: float
    minLng: float
    maxLng: float

class SurveyAreaModel(BaseModel):
    coordinates: List[LocationModel] = []
    bounds: Optional[BoundsModel] = None
    waypoints: List[LocationModel] = []  # custom missions only

class MissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    mission_type: MissionType
    altitude: float = Field(..., gt=0)
    overlap_percentage: float = Field(70.0, ge=0, lt=100)
    survey_area_polygon: SurveyAreaModel
    description: Optional[str] = None
    drone_id: Optional[str] = None
    sensor_type: Optional[str] = None
    scheduled_start_time: Optional[datetime] = None

class PlannerPreviewRequest(BaseModel):
    mission_type: MissionType
    altitude: float = Field(..., gt=0)
    overlap_percentage: float = Field(70.0, ge=0, lt=100)
    survey_area_polygon: SurveyAreaModel

class MissionControlRequest(BaseModel):
    action: str

class DroneCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    serial_number: str = Field(..., min_length=1)
    model: Optional[str] = None
    battery_level: float = Field(100.0, ge=0, le=100)
    location: Optional[str] = None
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None

class DroneUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    model: Optional[str] = None
    status: Optional[DroneStatus] = None
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    current_altitude: Optional[float] = None
    location: Optional[str] = None
    health_status: Optional[DroneHealth] = None

class MissionUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    drone_id: Optional[str] = None
    altitude: Optional[float] = Field(None, gt=0)
    overlap_percentage: Optional[float] = Field(None, ge=0, lt=100)
    sensor_type: Optional[str] = None
    scheduled_start_time: Optional[datetime] = None
    survey_area_polygon: Optional[SurveyAreaModel] = None

# ============================================================================
# LIFECYCLE EVENTS
# ============================================================================

def init_components(cfg: SimulationConfig):
    """Build store, event bus, engine and metrics for this process"""
    global store, event_bus, engine, metrics

    store = InMemoryMissionStore()
    event_bus = EventBus()
    collector = MetricsCollector()
    engine = SimulationEngine(store, event_bus, config=cfg, metrics=collector)
    metrics = SimulationMetrics(engine, event_bus, collector)
    event_bus.subscribe(manager.broadcast, 'mission.*')


def start_kafka_bridge(cfg: SimulationConfig) -> Optional[KafkaEventBridge]:
    """Forward events to Kafka when brokers are configured; run without it otherwise"""
    if not cfg.kafka_bootstrap_servers:
        return None
    try:
        producer = KafkaEventProducer(cfg.kafka_bootstrap_servers, cfg.kafka_client_id)
    except Exception as e:
        logger.error(f"Kafka unavailable, continuing without event forwarding: {e}")
        return None
    bridge = KafkaEventBridge(event_bus, producer)
    bridge.start()
    return bridge


@app.on_event("startup")
async def startup_event():
    global kafka_bridge

    configure_logging(config.log_level)
    init_components(config)
    kafka_bridge = start_kafka_bridge(config)

    if config.recover_on_startup:
        await engine.recover_stalled()

    logger.info(f"Mission Control API started (tick interval {config.tick_interval_seconds}s)")


@app.on_event("shutdown")
async def shutdown_event():
    global kafka_bridge

    if engine:
        await engine.shutdown()
    if kafka_bridge:
        await kafka_bridge.drain()
        kafka_bridge.stop()
        kafka_bridge = None
    logger.info("Mission Control API stopped")

# ============================================================================
# ERROR HANDLING
# ============================================================================

@app.exception_handler(MissionControlError)
async def mission_control_error_handler(request, exc: MissionControlError):
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})

# ============================================================================
# MISSION ENDPOINTS
# ============================================================================

@app.get("/api/missions")
async def list_missions(status: Optional[MissionStatus] = None, drone_id: Optional[str] = None):
    """List missions, newest first"""
    missions = await store.list_missions(status=status, drone_id=drone_id)
    return {
        "count": len(missions),
        "missions": [m.to_dict() for m in missions]
    }

@app.get("/api/missions/{mission_id}")
async def get_mission(mission_id: str):
    """Mission details with its waypoints"""
    mission = await _require_mission(mission_id)
    waypoints = await store.get_waypoints(mission_id)

    response = mission.to_dict()
    response["waypoints"] = [wp.to_dict() for wp in waypoints]
    response["simulation_active"] = engine.registry.has_active(mission_id)
    return response

@app.post("/api/missions", status_code=201)
async def create_mission(request: MissionCreateRequest):
    """Create mission and generate its waypoints by mission type"""
    if request.drone_id and not await store.get_drone(request.drone_id):
        raise HTTPException(status_code=404, detail=f"Drone not found: {request.drone_id}")

    waypoints = _plan_waypoints(request.mission_type, request.altitude,
                                request.overlap_percentage, request.survey_area_polygon)

    mission = Mission(
        id=new_id("MSN"),
        name=request.name,
        mission_type=request.mission_type,
        altitude=request.altitude,
        overlap_percentage=request.overlap_percentage,
        description=request.description,
        drone_id=request.drone_id,
        survey_area_polygon=_survey_area_dict(request.survey_area_polygon),
        sensor_type=request.sensor_type,
        scheduled_start_time=request.scheduled_start_time
    )
    await store.create_mission(mission)
    stored = await store.add_waypoints(mission.id, waypoints)

    await event_bus.publish(MissionEvent('mission.created', mission.id, {
        'missionId': mission.id,
        'status': mission.status.value,
        'totalWaypoints': len(stored)
    }))

    response = (await store.get_mission(mission.id)).to_dict()
    response["waypoints"] = [wp.to_dict() for wp in stored]
    return response

@app.delete("/api/missions/{mission_id}")
async def delete_mission(mission_id: str):
    """Delete mission, stopping its simulation first"""
    mission = await _require_mission(mission_id)

    if mission.status in (MissionStatus.IN_PROGRESS, MissionStatus.PAUSED):
        await engine.abort_mission(mission_id)

    await store.delete_mission(mission_id)
    engine.forget_mission(mission_id)
    return {"success": True}

@app.put("/api/missions/{mission_id}")
async def update_mission(mission_id: str, request: MissionUpdateRequest):
    """
    Edit a scheduled mission. Status changes go through the control
    endpoint; altitude, overlap or area changes regenerate the waypoints.
    """
    mission = await _require_mission(mission_id)
    if mission.status != MissionStatus.SCHEDULED:
        raise InvalidStateError(
            f"Only scheduled missions can be edited (status: {mission.status.value})"
        )

    updates = _collect_fields(request, MISSION_UPDATE_FIELDS)
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if updates.get('drone_id') and not await store.get_drone(updates['drone_id']):
        raise HTTPException(status_code=404, detail=f"Drone not found: {updates['drone_id']}")

    waypoints = None
    if any(field in updates for field in MISSION_GEOMETRY_FIELDS):
        area = request.survey_area_polygon or SurveyAreaModel(**(mission.survey_area_polygon or {}))
        waypoints = _plan_waypoints(
            mission.mission_type,
            updates.get('altitude', mission.altitude),
            updates.get('overlap_percentage', mission.overlap_percentage),
            area
        )
        updates['survey_area_polygon'] = _survey_area_dict(area)

    mission = await store.update_mission(mission_id, **updates)
    if waypoints is not None:
        await store.delete_waypoints(mission_id)
        await store.add_waypoints(mission_id, waypoints)
        logger.info(f"Mission {mission_id} re-planned with {len(waypoints)} waypoints")

    await store.append_log(MissionLog(mission_id, LogType.STATUS_CHANGE, "Mission updated",
                                      {'fields': sorted(updates)}))
    await event_bus.publish(MissionEvent('mission.updated', mission_id, {
        'missionId': mission_id,
        'status': mission.status.value,
        'message': "Mission updated"
    }))

    response = (await store.get_mission(mission_id)).to_dict()
    response["waypoints"] = [wp.to_dict() for wp in await store.get_waypoints(mission_id)]
    return response

@app.get("/api/missions/{mission_id}/logs")
async def get_mission_logs(mission_id: str, limit: int = 100):
    await _require_mission(mission_id)
    logs = await store.get_logs(mission_id)
    return {
        "count": len(logs),
        "logs": [log.to_dict() for log in logs[-limit:]]
    }

@app.post("/api/missions/{mission_id}/control")
async def control_mission(mission_id: str, request: MissionControlRequest):
    """Start, pause, resume or abort a mission"""
    action = request.action
    if action not in CONTROL_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Invalid action: {action}")

    if action == 'start':
        mission = await engine.start_mission(mission_id)
    elif action == 'pause':
        mission = await engine.pause_mission(mission_id)
    elif action == 'resume':
        mission = await engine.resume_mission(mission_id)
    else:
        mission = await engine.abort_mission(mission_id)

    if action in ('start', 'resume'):
        await store.append_log(MissionLog(mission_id, LogType.CONTROL_ACTION, f"Mission {action} requested",
                                          {'action': action}))

    return {"success": True, "status": mission.status.value, "action": action}

# ============================================================================
# PLANNER ENDPOINTS
# ============================================================================

@app.post("/api/planner/preview")
async def preview_waypoints(request: PlannerPreviewRequest):
    """Generate waypoints without creating a mission"""
    waypoints = _plan_waypoints(request.mission_type, request.altitude,
                                request.overlap_percentage, request.survey_area_polygon)
    return {
        "count": len(waypoints),
        "total_distance_km": round(WaypointGenerator.path_distance(waypoints), 3),
        "waypoints": [wp.to_dict() for wp in waypoints]
    }

# ============================================================================
# FLEET ENDPOINTS
# ============================================================================

@app.get("/api/fleet/drones")
async def list_drones():
    drones = await store.list_drones()
    return {
        "count": len(drones),
        "drones": [d.to_dict() for d in drones]
    }

@app.get("/api/fleet/drones/{drone_id}")
async def get_drone(drone_id: str):
    drone = await store.get_drone(drone_id)
    if not drone:
        raise HTTPException(status_code=404, detail=f"Drone not found: {drone_id}")
    return drone.to_dict()

@app.post("/api/fleet/drones", status_code=201)
async def create_drone(request: DroneCreateRequest):
    """Register new drone"""
    drone = Drone(
        id=new_id("DRN"),
        name=request.name,
        serial_number=request.serial_number,
        model=request.model,
        status=DroneStatus.IDLE,
        battery_level=request.battery_level,
        location=request.location,
        current_latitude=request.current_latitude,
        current_longitude=request.current_longitude
    )
    await store.add_drone(drone)
    return drone.to_dict()

@app.put("/api/fleet/drones/{drone_id}")
async def update_drone(drone_id: str, request: DroneUpdateRequest):
    await _require_drone(drone_id)
    updates = _collect_fields(request, DRONE_UPDATE_FIELDS)
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")

    drone = await store.update_drone(drone_id, **updates)
    logger.info(f"Drone updated: {drone_id} ({', '.join(sorted(updates))})")
    return drone.to_dict()

@app.delete("/api/fleet/drones/{drone_id}")
async def delete_drone(drone_id: str):
    """Remove drone; refused while any mission still claims it"""
    await _require_drone(drone_id)
    claimed = [m.id for m in await store.list_missions(drone_id=drone_id)
               if m.status in DRONE_BOUND_STATUSES]
    if claimed:
        raise InvalidStateError(f"Drone {drone_id} is assigned to active missions: {', '.join(claimed)}")

    await store.delete_drone(drone_id)
    return {"success": True}

@app.post("/api/fleet/drones/{drone_id}/recharge")
async def recharge_drone(drone_id: str):
    drone = await _require_idle_drone(drone_id, "recharge")
    drone = await store.update_drone(drone.id, battery_level=100.0)
    logger.info(f"Drone recharged: {drone_id}")
    return {"success": True, "battery_level": drone.battery_level}

@app.post("/api/fleet/drones/{drone_id}/maintenance")
async def maintain_drone(drone_id: str):
    """Clear a drone's health and return it to service"""
    drone = await _require_idle_drone(drone_id, "maintenance")
    drone = await store.update_drone(drone.id, status=DroneStatus.IDLE,
                                     health_status=DroneHealth.HEALTHY)
    logger.info(f"Drone maintenance completed: {drone_id}")
    return {"success": True, "status": drone.status.value, "health_status": drone.health_status.value}

# ============================================================================
# SIMULATION ENDPOINTS
# ============================================================================

@app.get("/api/simulations")
async def get_simulations():
    """Live simulations, failed tick loops and stalled missions"""
    stalled = await engine.stalled_missions()
    status = engine.get_status()
    status["stalled_missions"] = [m.id for m in stalled]
    if kafka_bridge:
        status["kafka"] = kafka_bridge.get_status()
    return status

@app.post("/api/simulations/recover")
async def recover_simulations():
    """Relaunch in-progress missions whose tick loop has stopped"""
    recovered = await engine.recover_stalled()
    return {"recovered": recovered, "count": len(recovered)}

# ============================================================================
# METRICS ENDPOINTS
# ============================================================================

@app.get("/api/metrics")
async def get_metrics():
    return metrics.get_dashboard_data()

@app.get("/api/metrics/prometheus", response_class=PlainTextResponse)
async def get_prometheus_metrics():
    return metrics.export_prometheus()

# ============================================================================
# WEBSOCKET ENDPOINTS
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Live mission events; send {"action": "subscribe", "missionId": ...} to filter"""
    await manager.connect(websocket)

    try:
        while True:
            message = await websocket.receive_json()
            action = message.get("action")
            mission_id = message.get("missionId")

            if action == "subscribe" and mission_id:
                manager.subscribe(websocket, mission_id)
                await websocket.send_json({"type": "subscribed", "missionId": mission_id})
            elif action == "unsubscribe" and mission_id:
                manager.unsubscribe(websocket, mission_id)
                await websocket.send_json({"type": "unsubscribed", "missionId": mission_id})
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message: {message}"})

    except WebSocketDisconnect:
        manager.disconnect(websocket)

# ============================================================================
# HEALTH CHECK
# ============================================================================

@app.get("/")
async def root():
    return {
        "name": "Survey Mission Control API",
        "version": "1.0.0",
        "status": "operational" if engine else "not_initialized",
        "docs": "/docs",
        "redoc": "/redoc"
    }

@app.get("/health")
async def health_check():
    """Roll-up of engine, event bus and system resource checks"""
    if not metrics:
        return {"status": "not_initialized", "timestamp": datetime.now().isoformat()}

    health = metrics.health_monitor.get_health_status()
    return {
        "status": health["overall_status"],
        "checks": health["checks"],
        "active_simulations": len(engine.registry),
        "timestamp": datetime.now().isoformat()
    }

# ============================================================================
# HELPERS
# ============================================================================

async def _require_mission(mission_id: str) -> Mission:
    mission = await store.get_mission(mission_id)
    if not mission:
        raise NotFoundError(f"Mission not found: {mission_id}")
    return mission


async def _require_drone(drone_id: str) -> Drone:
    drone = await store.get_drone(drone_id)
    if not drone:
        raise NotFoundError(f"Drone not found: {drone_id}")
    return drone


async def _require_idle_drone(drone_id: str, operation: str) -> Drone:
    drone = await _require_drone(drone_id)
    if drone.status == DroneStatus.IN_MISSION:
        raise InvalidStateError(f"Cannot run {operation} on drone {drone_id} while it is in a mission")
    return drone


def _collect_fields(request: BaseModel, allowed) -> Dict[str, Any]:
    """Allow-listed fields the client actually sent"""
    return {
        field: getattr(request, field) for field in allowed
        if getattr(request, field) is not None
    }


def _plan_waypoints(mission_type: MissionType, altitude: float, overlap: float,
                    area: SurveyAreaModel):
    coordinates = [Location(p.lat, p.lng, p.alt or 0.0) for p in area.coordinates]
    bounds = None
    if area.bounds:
        bounds = Bounds(area.bounds.minLat, area.bounds.maxLat, area.bounds.minLng, area.bounds.maxLng)

    if mission_type == MissionType.CUSTOM and not area.waypoints:
        raise HTTPException(status_code=400, detail="Custom missions need survey_area_polygon.waypoints")
    if mission_type != MissionType.CUSTOM and not coordinates and bounds is None:
        raise HTTPException(status_code=400, detail="Survey area needs coordinates or bounds")
    if mission_type == MissionType.PERIMETER and len(coordinates) < 3:
        raise HTTPException(status_code=400, detail="Perimeter missions need at least 3 coordinates")

    try:
        return WaypointGenerator.generate_for_mission(
            mission_type, altitude, overlap,
            coordinates=coordinates,
            bounds=bounds,
            custom_waypoints=[{'lat': p.lat, 'lng': p.lng, 'alt': p.alt} for p in area.waypoints]
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _survey_area_dict(area: SurveyAreaModel) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        'coordinates': [{'lat': p.lat, 'lng': p.lng} for p in area.coordinates]
    }
    if area.bounds:
        result['bounds'] = {
            'minLat': area.bounds.minLat, 'maxLat': area.bounds.maxLat,
            'minLng': area.bounds.minLng, 'maxLng': area.bounds.maxLng
        }
    if area.waypoints:
        result['waypoints'] = [{'lat': p.lat, 'lng': p.lng, 'alt': p.alt} for p in area.waypoints]
    return result


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
