"""
Performance Monitoring and Metrics Collection.

In-memory metrics for the Audio Feed API: request timings recorded by
`PerformanceMiddleware`, operation timings recorded by `async_timer` / `@timed`
around repository calls, counters such as counter-engine retries, and system
resource usage from `psutil`. The aggregated view is served by the
`/monitoring/metrics` endpoint.

A single process-wide `MetricsCollector` is returned by
`get_metrics_collector()`. The periodic system-metrics task is started
explicitly from the application lifespan, never at import time.
"""

import time
import asyncio
import functools
import threading
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

import psutil

from core.logging_config import get_logger

logger = get_logger("core.performance")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PerformanceMetric:
    """Individual performance metric"""

    name: str
    value: float
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    unit: str = "ms"


@dataclass
class RequestMetrics:
    """Request-level performance metrics"""

    endpoint: str
    method: str
    status_code: int
    duration_ms: float
    timestamp: datetime


def _tagged_key(name: str, tags: Optional[Dict[str, str]]) -> str:
    if not tags:
        return name
    tag_str = ":".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}:{tag_str}"


def _percentile(sorted_values: List[float], fraction: float) -> float:
    idx = int(len(sorted_values) * fraction)
    return sorted_values[idx] if idx < len(sorted_values) else sorted_values[-1]


class MetricsCollector:
    """Collects and aggregates performance metrics"""

    def __init__(self, max_metrics: int = 10000):
        self.max_metrics = max_metrics
        self.metrics: deque = deque(maxlen=max_metrics)
        self.request_metrics: deque = deque(maxlen=max_metrics)
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._system_metrics_task: Optional[asyncio.Task] = None

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        unit: str = "ms",
    ):
        """Record a performance metric"""
        metric = PerformanceMetric(
            name=name, value=value, timestamp=_now(), tags=tags or {}, unit=unit
        )
        with self._lock:
            self.metrics.append(metric)

    def record_request(self, metrics: RequestMetrics):
        """Record request-level metrics"""
        with self._lock:
            self.request_metrics.append(metrics)
            self.counters["requests_total"] += 1
            self.counters[f"requests_{metrics.method.lower()}"] += 1
            self.counters[f"responses_{metrics.status_code}"] += 1

    def increment_counter(
        self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None
    ):
        """Increment a counter metric"""
        with self._lock:
            self.counters[_tagged_key(name, tags)] += value

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Set a gauge metric"""
        with self._lock:
            self.gauges[_tagged_key(name, tags)] = value

    def get_stats(self, time_window_minutes: int = 5) -> Dict[str, Any]:
        """Get aggregated statistics"""
        cutoff_time = _now() - timedelta(minutes=time_window_minutes)

        with self._lock:
            recent_requests = [
                req for req in self.request_metrics if req.timestamp >= cutoff_time
            ]
            recent_metrics = [
                metric for metric in self.metrics if metric.timestamp >= cutoff_time
            ]
            counters = dict(self.counters)
            gauges = dict(self.gauges)

        return {
            "time_window_minutes": time_window_minutes,
            "timestamp": _now().isoformat(),
            "requests": self._calculate_request_stats(recent_requests),
            "metrics": self._calculate_metric_stats(recent_metrics),
            "system": self._get_system_stats(),
            "counters": counters,
            "gauges": gauges,
        }

    def _calculate_request_stats(
        self, requests: List[RequestMetrics]
    ) -> Dict[str, Any]:
        if not requests:
            return {
                "total": 0,
                "avg_duration_ms": 0,
                "max_duration_ms": 0,
                "p95_duration_ms": 0,
                "status_codes": {},
                "endpoints": {},
            }

        durations = sorted(req.duration_ms for req in requests)
        status_codes = defaultdict(int)
        endpoints = defaultdict(int)
        for req in requests:
            status_codes[str(req.status_code)] += 1
            endpoints[f"{req.method} {req.endpoint}"] += 1

        return {
            "total": len(requests),
            "avg_duration_ms": sum(durations) / len(durations),
            "max_duration_ms": durations[-1],
            "p95_duration_ms": _percentile(durations, 0.95),
            "status_codes": dict(status_codes),
            "endpoints": dict(endpoints),
        }

    def _calculate_metric_stats(
        self, metrics: List[PerformanceMetric]
    ) -> Dict[str, Any]:
        by_name = defaultdict(list)
        for metric in metrics:
            by_name[metric.name].append(metric.value)

        stats = {}
        for name, values in by_name.items():
            values.sort()
            stats[name] = {
                "count": len(values),
                "avg": sum(values) / len(values),
                "min": values[0],
                "max": values[-1],
                "p95": _percentile(values, 0.95),
            }
        return stats

    def _get_system_stats(self) -> Dict[str, Any]:
        """Get current system statistics"""
        try:
            memory = psutil.virtual_memory()
            disk = psutil.disk_usage("/")
            return {
                "cpu": {
                    "percent": psutil.cpu_percent(interval=None),
                    "count": psutil.cpu_count(),
                },
                "memory": {
                    "total_bytes": memory.total,
                    "used_bytes": memory.used,
                    "percent": memory.percent,
                },
                "disk": {
                    "total_bytes": disk.total,
                    "free_bytes": disk.free,
                    "percent": (disk.used / disk.total) * 100,
                },
            }
        except Exception as e:
            logger.error(f"Error getting system stats: {e}")
            return {}

    def start(self, interval_seconds: float = 30.0):
        """Start periodic system gauge collection on the running loop"""

        async def collect_system_metrics():
            while True:
                stats = self._get_system_stats()
                if "cpu" in stats:
                    self.set_gauge("system_cpu_percent", stats["cpu"]["percent"])
                if "memory" in stats:
                    self.set_gauge("system_memory_percent", stats["memory"]["percent"])
                await asyncio.sleep(interval_seconds)

        if self._system_metrics_task is None:
            self._system_metrics_task = asyncio.get_running_loop().create_task(
                collect_system_metrics()
            )

    def cleanup(self):
        """Cleanup resources"""
        if self._system_metrics_task:
            self._system_metrics_task.cancel()
            self._system_metrics_task = None


@asynccontextmanager
async def async_timer(
    name: str, collector: MetricsCollector, tags: Optional[Dict[str, str]] = None
):
    """Async context manager for timing operations"""
    start_time = time.perf_counter()
    tags = dict(tags or {})

    try:
        yield
    except Exception as e:
        tags["error"] = type(e).__name__
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        collector.record_metric(name, duration_ms, tags)


# Global metrics collector
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector instance"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def init_metrics_collector(max_metrics: int = 10000) -> MetricsCollector:
    """Initialize metrics collector with custom settings"""
    global _metrics_collector
    if _metrics_collector:
        _metrics_collector.cleanup()

    _metrics_collector = MetricsCollector(max_metrics=max_metrics)
    logger.info(f"Metrics collector initialized with max_metrics={max_metrics}")
    return _metrics_collector


def timed(name: Optional[str] = None, tags: Optional[Dict[str, str]] = None):
    """Decorator to time coroutine execution"""

    def decorator(func):
        metric_name = name or f"{func.__module__}.{func.__name__}"

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            async with async_timer(metric_name, get_metrics_collector(), tags):
                return await func(*args, **kwargs)

        return wrapper

    return decorator
