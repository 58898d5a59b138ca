"""
Prometheus metrics collection for the pipeline.

Provides metrics for monitoring:
- Jobs processed/failed per queue and job duration
- Records ingested by the sync engine
- Progress events published
- Cache hits and misses

Usage:
    from segmentflow.core.metrics import track_job, track_records_synced
"""

from dataclasses import dataclass, field
from collections import defaultdict
import threading


@dataclass
class MetricBucket:
    """A single histogram bucket."""
    le: float  # Less than or equal
    count: int = 0


@dataclass
class Histogram:
    """Prometheus-style histogram."""
    name: str
    help_text: str
    buckets: list = field(default_factory=list)
    sum_value: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            # Job durations range from milliseconds (single-customer RFM) to minutes (full syncs)
            bucket_bounds = [0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0]
            self.buckets = [MetricBucket(le=b) for b in bucket_bounds]
            self.buckets.append(MetricBucket(le=float('inf')))

    def observe(self, value: float):
        """Record an observation."""
        self.sum_value += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


@dataclass
class Counter:
    """Prometheus-style counter."""
    name: str
    help_text: str
    value: float = 0.0

    def inc(self, amount: float = 1.0):
        """Increment the counter."""
        self.value += amount


@dataclass
class Gauge:
    """Prometheus-style gauge."""
    name: str
    help_text: str
    value: float = 0.0

    def set(self, value: float):
        """Set the gauge value."""
        self.value = value


class MetricsRegistry:
    """
    Central registry for all metrics.

    Thread-safe singleton pattern for collecting metrics across the application.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize all metrics."""
        self._metrics_lock = threading.Lock()

        # Job metrics, keyed by (queue, status)
        self.jobs_total = defaultdict(
            lambda: Counter(
                name="segmentflow_jobs_total",
                help_text="Jobs finished by queue and outcome"
            )
        )
        self.job_duration = defaultdict(
            lambda: Histogram(
                name="segmentflow_job_duration_seconds",
                help_text="Job processing time in seconds"
            )
        )
        self.queue_depth = defaultdict(
            lambda: Gauge(
                name="segmentflow_queue_depth",
                help_text="Jobs waiting per queue"
            )
        )

        # Ingestion, keyed by (resource, outcome)
        self.records_synced = defaultdict(
            lambda: Counter(
                name="segmentflow_records_synced_total",
                help_text="Records ingested by the sync engine"
            )
        )

        # Progress events, keyed by event type
        self.progress_events = defaultdict(
            lambda: Counter(
                name="segmentflow_progress_events_total",
                help_text="Progress events published"
            )
        )

        self.cache_hits = Counter(
            name="segmentflow_cache_hits_total",
            help_text="Total cache hits"
        )
        self.cache_misses = Counter(
            name="segmentflow_cache_misses_total",
            help_text="Total cache misses"
        )

    def format_prometheus(self) -> str:
        """Format all metrics in Prometheus text format."""
        lines = []

        with self._metrics_lock:
            lines.append("# HELP segmentflow_jobs_total Jobs finished by queue and outcome")
            lines.append("# TYPE segmentflow_jobs_total counter")
            for labels, counter in self.jobs_total.items():
                queue, status = labels
                lines.append(f'segmentflow_jobs_total{{queue="{queue}",status="{status}"}} {counter.value}')

            lines.append("")
            lines.append("# HELP segmentflow_job_duration_seconds Job processing time in seconds")
            lines.append("# TYPE segmentflow_job_duration_seconds histogram")
            for queue, histogram in self.job_duration.items():
                for bucket in histogram.buckets:
                    le_str = "+Inf" if bucket.le == float('inf') else str(bucket.le)
                    lines.append(
                        f'segmentflow_job_duration_seconds_bucket{{queue="{queue}",le="{le_str}"}} {bucket.count}'
                    )
                lines.append(f'segmentflow_job_duration_seconds_sum{{queue="{queue}"}} {histogram.sum_value}')
                lines.append(f'segmentflow_job_duration_seconds_count{{queue="{queue}"}} {histogram.count}')

            lines.append("")
            lines.append("# HELP segmentflow_queue_depth Jobs waiting per queue")
            lines.append("# TYPE segmentflow_queue_depth gauge")
            for queue, gauge in self.queue_depth.items():
                lines.append(f'segmentflow_queue_depth{{queue="{queue}"}} {gauge.value}')

            lines.append("")
            lines.append("# HELP segmentflow_records_synced_total Records ingested by the sync engine")
            lines.append("# TYPE segmentflow_records_synced_total counter")
            for labels, counter in self.records_synced.items():
                resource, outcome = labels
                lines.append(
                    f'segmentflow_records_synced_total{{resource="{resource}",outcome="{outcome}"}} {counter.value}'
                )

            lines.append("")
            lines.append("# HELP segmentflow_progress_events_total Progress events published")
            lines.append("# TYPE segmentflow_progress_events_total counter")
            for event_type, counter in self.progress_events.items():
                lines.append(f'segmentflow_progress_events_total{{type="{event_type}"}} {counter.value}')

            lines.append("")
            lines.append("# HELP segmentflow_cache_hits_total Total cache hits")
            lines.append("# TYPE segmentflow_cache_hits_total counter")
            lines.append(f"segmentflow_cache_hits_total {self.cache_hits.value}")
            lines.append("")
            lines.append("# HELP segmentflow_cache_misses_total Total cache misses")
            lines.append("# TYPE segmentflow_cache_misses_total counter")
            lines.append(f"segmentflow_cache_misses_total {self.cache_misses.value}")

        return "\n".join(lines)


# Global registry instance
_registry = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    return _registry


def track_job(queue: str, success: bool, duration: float):
    """Track a finished job attempt."""
    status = "completed" if success else "failed"
    with _registry._metrics_lock:
        _registry.jobs_total[(queue, status)].inc()
        _registry.job_duration[queue].observe(duration)


def track_queue_depth(queue: str, waiting: int):
    with _registry._metrics_lock:
        _registry.queue_depth[queue].set(waiting)


def track_records_synced(resource: str, created: int, updated: int, failed: int):
    """Track records written by one sync run."""
    with _registry._metrics_lock:
        _registry.records_synced[(resource, "created")].inc(created)
        _registry.records_synced[(resource, "updated")].inc(updated)
        _registry.records_synced[(resource, "failed")].inc(failed)


def track_progress_event(event_type: str):
    with _registry._metrics_lock:
        _registry.progress_events[event_type].inc()


def track_cache_hit():
    """Track cache hit."""
    with _registry._metrics_lock:
        _registry.cache_hits.inc()


def track_cache_miss():
    """Track cache miss."""
    with _registry._metrics_lock:
        _registry.cache_misses.inc()
