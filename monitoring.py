# Survey Mission Control - Monitoring & Metrics
# File: monitoring.py

"""
Metrics collection, health checks and dashboard data for the simulation
engine. Exposed by the API server under /api/metrics and /health.
"""

import time
import psutil
import statistics
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Callable, Any
from collections import deque, defaultdict
from dataclasses import dataclass, field
import threading
import logging

logger = logging.getLogger(__name__)

# ============================================================================
# METRICS MODELS
# ============================================================================

@dataclass
class MetricPoint:
    """Single metric data point"""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)

@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict = field(default_factory=dict)
    latency_ms: Optional[float] = None

    def to_dict(self):
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'latency_ms': self.latency_ms
        }

# ============================================================================
# METRICS COLLECTOR
# ============================================================================

class MetricsCollector:
    """Counters, gauges and histograms keyed by name and labels"""

    MAX_POINTS = 1000

    def __init__(self, retention_minutes: int = 60):
        """
        Args:
            retention_minutes: How long time series points are returned by get_metric
        """
        self.retention_minutes = retention_minutes
        self.metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.MAX_POINTS))
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self.lock = threading.Lock()

        logger.debug(f"Metrics collector initialized (retention: {retention_minutes}m)")

    def record_counter(self, name: str, value: int = 1, labels: Dict = None):
        """Add value to a monotonically increasing counter"""
        with self.lock:
            key = self._make_key(name, labels)
            self.counters[key] += value
            self._append_point(key, self.counters[key], labels)

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        """Set the current value of a gauge"""
        with self.lock:
            key = self._make_key(name, labels)
            self.gauges[key] = value
            self._append_point(key, value, labels)

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """
        Record one observation of a distribution (tick durations etc.)

        Args:
            name: Metric name
            value: Observed value
            labels: Optional labels for grouping
        """
        with self.lock:
            key = self._make_key(name, labels)
            values = self.histograms[key]
            values.append(value)
            if len(values) > self.MAX_POINTS:
                del values[:-self.MAX_POINTS]
            self._append_point(key, value, labels)

    def get_metric(self, name: str, labels: Dict = None) -> List[MetricPoint]:
        """Time series points within the retention window"""
        key = self._make_key(name, labels)
        cutoff = datetime.now() - timedelta(minutes=self.retention_minutes)

        with self.lock:
            return [point for point in self.metrics.get(key, []) if point.timestamp > cutoff]

    def get_counter(self, name: str, labels: Dict = None) -> int:
        return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        """
        Summary statistics of a histogram

        Returns:
            Dictionary with count, min, max, mean, median and p50/p95/p99
        """
        values = self.histograms.get(self._make_key(name, labels), [])

        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'mean': 0, 'median': 0,
                    'p50': 0, 'p95': 0, 'p99': 0}

        sorted_values = sorted(values)
        count = len(sorted_values)

        return {
            'count': count,
            'min': sorted_values[0],
            'max': sorted_values[-1],
            'mean': statistics.mean(sorted_values),
            'median': statistics.median(sorted_values),
            'p50': sorted_values[count // 2],
            'p95': sorted_values[int(count * 0.95)] if count > 20 else sorted_values[-1],
            'p99': sorted_values[int(count * 0.99)] if count > 100 else sorted_values[-1]
        }

    def get_all_metrics(self) -> Dict:
        with self.lock:
            return {
                'counters': dict(self.counters),
                'gauges': dict(self.gauges),
                'histograms': {
                    key: self.get_histogram_stats(key)
                    for key in list(self.histograms.keys())
                },
                'timestamp': datetime.now().isoformat()
            }

    def reset(self):
        with self.lock:
            self.metrics.clear()
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
        logger.info("Metrics reset")

    def _append_point(self, key: str, value: float, labels: Optional[Dict]):
        self.metrics[key].append(MetricPoint(
            timestamp=datetime.now(),
            value=value,
            labels=labels or {}
        ))

    @staticmethod
    def _make_key(name: str, labels: Dict = None) -> str:
        """'name' or 'name{k=v,...}' with labels sorted by key"""
        if not labels:
            return name
        label_str = ','.join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

# ============================================================================
# HEALTH MONITOR
# ============================================================================

class HealthMonitor:
    """Runs registered health checks and keeps a short history"""

    def __init__(self, history_size: int = 100):
        self.checks: Dict[str, Callable] = {}
        self.health_history: deque = deque(maxlen=history_size)

    def register_check(self, name: str, check_fn: Callable):
        """
        Register health check function

        Args:
            name: Check name
            check_fn: Function that returns HealthCheck or boolean
        """
        self.checks[name] = check_fn
        logger.debug(f"Registered health check: {name}")

    def run_checks(self) -> List[HealthCheck]:
        """Run every registered check; a raising check counts as unhealthy"""
        results = []

        for name, check_fn in self.checks.items():
            start_time = time.perf_counter()

            try:
                result = check_fn()
                latency = (time.perf_counter() - start_time) * 1000

                if isinstance(result, HealthCheck):
                    result.latency_ms = latency
                    results.append(result)
                else:
                    results.append(HealthCheck(
                        component=name,
                        status='healthy' if result else 'unhealthy',
                        latency_ms=latency
                    ))

            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                results.append(HealthCheck(
                    component=name,
                    status='unhealthy',
                    details={'error': str(e)}
                ))

        return results

    def get_health_status(self) -> Dict:
        """
        Run all checks and roll them up

        Returns:
            Dictionary with overall status and check results
        """
        results = self.run_checks()

        overall_status = 'healthy'
        if any(r.status == 'unhealthy' for r in results):
            overall_status = 'unhealthy'
        elif any(r.status == 'degraded' for r in results):
            overall_status = 'degraded'

        unhealthy = [r.component for r in results if r.status == 'unhealthy']
        if unhealthy:
            logger.warning(f"Unhealthy components detected: {unhealthy}")

        status = {
            'overall_status': overall_status,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
            'check_count': len(results)
        }
        self.health_history.append(status)
        return status

    def get_health_history(self, limit: int = 10) -> List[Dict]:
        return list(self.health_history)[-limit:]

# ============================================================================
# SIMULATION METRICS INTEGRATION
# ============================================================================

class SimulationMetrics:
    """Wires the collector and health monitor to the engine and event bus"""

    def __init__(self, engine, event_bus, collector: Optional[MetricsCollector] = None):
        """
        Args:
            engine: SimulationEngine instance
            event_bus: EventBus the engine publishes to
            collector: Collector shared with the engine, a new one if omitted
        """
        self.engine = engine
        self.event_bus = event_bus
        self.collector = collector or MetricsCollector()
        self.health_monitor = HealthMonitor()
        self.start_time = datetime.now()

        self._setup_metrics()
        self._setup_health_checks()

    def _setup_metrics(self):
        def record_event_metrics(event):
            self.collector.record_counter('mission_events_total', labels={'type': event.type})

        self.event_bus.subscribe(record_event_metrics, 'mission.*')

    def _setup_health_checks(self):
        self.health_monitor.register_check('simulation_engine', self._check_engine_health)
        self.health_monitor.register_check('event_bus', self._check_event_bus_health)
        self.health_monitor.register_check('system_resources', self._check_system_resources)

    def _check_engine_health(self) -> HealthCheck:
        """Failed tick loops degrade the engine until recovered"""
        status = self.engine.get_status()
        failed = status['failed_missions']

        return HealthCheck(
            component='simulation_engine',
            status='degraded' if failed else 'healthy',
            details={
                'active_simulations': status['active_simulations'],
                'failed_missions': list(failed.keys()),
                'tick_interval_seconds': status['tick_interval_seconds']
            }
        )

    def _check_event_bus_health(self) -> HealthCheck:
        return HealthCheck(
            component='event_bus',
            status='healthy',
            details={
                'subscribers': self.event_bus.subscriber_count(),
                'events_published': self.event_bus.published_count
            }
        )

    def _check_system_resources(self) -> HealthCheck:
        # Non-blocking sample: compares against the previous call
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        status = 'healthy'
        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 90:
            status = 'unhealthy'
        elif cpu_percent > 70 or memory.percent > 70 or disk.percent > 80:
            status = 'degraded'

        return HealthCheck(
            component='system_resources',
            status=status,
            details={
                'cpu_percent': cpu_percent,
                'memory_percent': memory.percent,
                'memory_available_gb': memory.available / (1024**3),
                'disk_percent': disk.percent,
                'disk_free_gb': disk.free / (1024**3)
            }
        )

    def record_gauges(self):
        """Snapshot engine and process gauges into the collector"""
        status = self.engine.get_status()
        self.collector.record_gauge('simulations_active', status['active_simulations'])
        self.collector.record_gauge('simulations_failed', len(status['failed_missions']))
        self.collector.record_gauge('system_cpu_percent', psutil.cpu_percent(interval=None))
        self.collector.record_gauge('system_memory_percent', psutil.virtual_memory().percent)

    def get_dashboard_data(self) -> Dict[str, Any]:
        """
        Health, metrics and rates in one payload

        Returns:
            Dictionary served by GET /api/metrics
        """
        self.record_gauges()
        health = self.health_monitor.get_health_status()
        metrics = self.collector.get_all_metrics()

        return {
            'health': health,
            'metrics': metrics,
            'rates': {
                'ticks_per_second': self._calculate_rate('simulation_ticks_total'),
                'timestamp': datetime.now().isoformat()
            },
            'system': {
                'cpu_percent': psutil.cpu_percent(interval=None),
                'memory_percent': psutil.virtual_memory().percent,
                'uptime': str(datetime.now() - self.start_time)
            },
            'timestamp': datetime.now().isoformat()
        }

    def _calculate_rate(self, metric_name: str, window_seconds: int = 60) -> float:
        """Per-second increase of a counter over the window"""
        points = self.collector.get_metric(metric_name)

        window_ago = datetime.now() - timedelta(seconds=window_seconds)
        recent_points = [p for p in points if p.timestamp > window_ago]

        if len(recent_points) < 2:
            return 0.0

        value_diff = recent_points[-1].value - recent_points[0].value
        time_diff = (recent_points[-1].timestamp - recent_points[0].timestamp).total_seconds()

        return value_diff / time_diff if time_diff > 0 else 0.0

    def export_prometheus(self) -> str:
        """Metrics in Prometheus text exposition format"""
        self.record_gauges()
        metrics = self.collector.get_all_metrics()
        output = []
        declared = set()

        def declare(name: str, metric_type: str):
            clean_name = name.split('{')[0]
            if clean_name not in declared:
                declared.add(clean_name)
                output.append(f"# TYPE {clean_name} {metric_type}")
            return clean_name

        for name, value in sorted(metrics['counters'].items()):
            declare(name, 'counter')
            output.append(f"{_prometheus_series(name)} {value}")

        for name, value in sorted(metrics['gauges'].items()):
            declare(name, 'gauge')
            output.append(f"{_prometheus_series(name)} {value}")

        for name, stats in sorted(metrics['histograms'].items()):
            if stats['count'] > 0:
                clean_name = declare(name, 'summary')
                output.append(f"{clean_name}_count {stats['count']}")
                output.append(f"{clean_name}_sum {stats['mean'] * stats['count']}")
                output.append(f"{clean_name}{{quantile=\"0.5\"}} {stats['p50']}")
                output.append(f"{clean_name}{{quantile=\"0.95\"}} {stats['p95']}")
                output.append(f"{clean_name}{{quantile=\"0.99\"}} {stats['p99']}")

        return "\n".join(output) + "\n"


def _prometheus_series(key: str) -> str:
    """name{k=v} -> name{k="v"}"""
    if '{' not in key:
        return key
    name, labels = key[:-1].split('{', 1)
    pairs = [pair.split('=', 1) for pair in labels.split(',')]
    return name + '{' + ','.join(f'{k}="{v}"' for k, v in pairs) + '}'
