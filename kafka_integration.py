# Survey Mission Control - Kafka Event Forwarding
# File: kafka_integration.py

"""
Forwards mission events from the in-process event bus to Kafka so other
services (dashboards, fleet analytics) can follow mission progress.
"""

import json
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Set
from datetime import datetime

from kafka import KafkaProducer
from kafka.errors import KafkaError

from mission_core import EventBus, MissionEvent

logger = logging.getLogger(__name__)

# Longest a send may block waiting for broker metadata or buffer space
MAX_BLOCK_MS = 5000

# ============================================================================
# KAFKA TOPICS
# ============================================================================

class KafkaTopics:
    """Kafka topic definitions for mission events"""

    MISSION_LIFECYCLE = "mission.lifecycle.events"
    MISSION_PROGRESS = "mission.progress.updates"
    MISSION_ALERTS = "mission.alerts"

    @classmethod
    def for_event(cls, event_type: str) -> str:
        """Topic for an event type, with or without the 'mission.' prefix"""
        event_type = event_type.rsplit('.', 1)[-1]
        if event_type == 'progress':
            return cls.MISSION_PROGRESS
        if event_type == 'error':
            return cls.MISSION_ALERTS
        return cls.MISSION_LIFECYCLE

# ============================================================================
# KAFKA PRODUCER
# ============================================================================

class KafkaEventProducer:
    """JSON producer keyed by mission id, so a mission's events stay ordered"""

    def __init__(self, bootstrap_servers: List[str], client_id: str = "mission-simulator"):
        """
        Initialize Kafka producer

        Args:
            bootstrap_servers: List of Kafka broker addresses
            client_id: Client identifier for this producer
        """
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.producer = None
        self.sent_count = 0
        self.error_count = 0
        self._connect()

    def _connect(self):
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1,  # keep per-key ordering
                compression_type='gzip',
                max_block_ms=MAX_BLOCK_MS
            )
            logger.info(f"Kafka producer connected: {self.bootstrap_servers}")
        except KafkaError as e:
            logger.error(f"Failed to connect Kafka producer: {e}")
            raise

    def publish_mission_event(self, mission_id: str, event_type: str, data: Dict):
        """
        Publish mission lifecycle event

        Args:
            mission_id: Mission identifier
            event_type: started, paused, aborted, completed, error...
            data: Event payload
        """
        message = {
            'mission_id': mission_id,
            'event_type': event_type,
            'data': data,
            'timestamp': datetime.now().isoformat()
        }
        topic = KafkaTopics.for_event(event_type)
        self._send(topic, message, key=mission_id)
        logger.info(f"Published mission event: {mission_id} - {event_type}")

    def publish_mission_progress(self, mission_id: str, progress: float,
                                 completed_waypoints: int, data: Optional[Dict] = None):
        message = {
            'mission_id': mission_id,
            'progress': progress,
            'completed_waypoints': completed_waypoints,
            'data': data or {},
            'timestamp': datetime.now().isoformat()
        }
        self._send(KafkaTopics.MISSION_PROGRESS, message, key=mission_id)

    def _send(self, topic: str, message: Dict, key: Optional[str] = None):
        """Queue message; send failures are counted and logged, never raised"""
        try:
            self.producer.send(topic, value=message, key=key)
            self.sent_count += 1
        except KafkaError as e:
            self.error_count += 1
            logger.error(f"Failed to send message to {topic}: {e}")

    def flush(self, timeout: Optional[float] = None):
        if self.producer:
            self.producer.flush(timeout=timeout)
            logger.debug("Producer flushed")

    def close(self):
        if self.producer:
            self.producer.flush()
            self.producer.close()
            logger.info("Kafka producer closed")

# ============================================================================
# EVENT BUS BRIDGE
# ============================================================================

class KafkaEventBridge:
    """Subscribes to mission.* on the event bus and forwards to Kafka"""

    def __init__(self, event_bus: EventBus, producer: KafkaEventProducer):
        self.event_bus = event_bus
        self.producer = producer
        self.forwarded_count = 0
        self.running = False
        # One worker keeps events in publish order
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kafka-bridge")
        self._pending: Set[asyncio.Future] = set()

    def start(self):
        if self.running:
            return
        self.event_bus.subscribe(self.forward, 'mission.*')
        self.running = True
        logger.info("Kafka event bridge started")

    def forward(self, event: MissionEvent):
        """Queue the event on the worker thread; publishers never wait for Kafka"""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self.send_event, event)
        self._pending.add(future)
        future.add_done_callback(self._forward_done)

    def _forward_done(self, future: asyncio.Future):
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to forward event to Kafka: {error}")

    async def drain(self):
        """Wait for every forwarded event to reach the producer"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def send_event(self, event: MissionEvent):
        data = event.to_dict()['data']
        if event.type == 'mission.progress':
            self.producer.publish_mission_progress(
                event.mission_id,
                data.get('progress', 0),
                data.get('completedWaypoints', 0),
                data
            )
        else:
            self.producer.publish_mission_event(
                event.mission_id,
                event.type.split('.', 1)[-1],
                data
            )
        self.forwarded_count += 1

    def stop(self):
        if not self.running:
            return
        self.event_bus.unsubscribe(self.forward, 'mission.*')
        self.running = False
        self._executor.shutdown(wait=True)
        self.producer.close()
        logger.info(f"Kafka event bridge stopped ({self.forwarded_count} events forwarded)")

    def get_status(self) -> Dict:
        return {
            'running': self.running,
            'bootstrap_servers': self.producer.bootstrap_servers,
            'forwarded': self.forwarded_count,
            'pending': len(self._pending),
            'sent': self.producer.sent_count,
            'errors': self.producer.error_count
        }
