"""
Observability module for CouchbaseStore.

Provides:
- OpenTelemetry distributed tracing
- Operation metrics with percentile latencies
- Prometheus text export
"""

import time
import logging
import statistics
import threading
from typing import Any, Iterator, Optional
from collections import defaultdict, deque
from contextlib import contextmanager
from enum import Enum

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================

class TracingProvider(str, Enum):
    """Supported tracing providers."""
    NONE = "none"
    OPENTELEMETRY = "opentelemetry"


class Tracer:
    """
    Tracing interface over OpenTelemetry.

    Uses the globally configured tracer provider when the application has
    set one; otherwise installs an SDK provider tagged with the service name
    so span processors can be attached later. Disabled tracers yield no-op
    spans.
    """

    def __init__(self, service_name: str = "couchbase-store", enabled: bool = True):
        self.service_name = service_name
        self.enabled = enabled
        self._tracer = None
        self._provider_type = TracingProvider.NONE

        if enabled:
            self._initialize_opentelemetry()

    def _initialize_opentelemetry(self):
        """Initialize OpenTelemetry tracing."""
        provider = trace.get_tracer_provider()
        if not isinstance(provider, TracerProvider):
            resource = Resource(attributes={SERVICE_NAME: self.service_name})
            trace.set_tracer_provider(TracerProvider(resource=resource))
            logger.info(f"OpenTelemetry tracing initialized for {self.service_name}")
        else:
            logger.info("Using existing OpenTelemetry tracer provider")

        self._tracer = trace.get_tracer(__name__)
        self._provider_type = TracingProvider.OPENTELEMETRY

    @contextmanager
    def span(self, name: str, attributes: Optional[dict[str, Any]] = None) -> Iterator[Any]:
        """
        Create a traced span for an operation.

        Args:
            name: Span name (e.g., "couchbase.get", "couchbase.query")
            attributes: Span attributes (metadata)

        Yields:
            The active span, or None when tracing is disabled
        """
        if not self.enabled or self._tracer is None:
            yield None
            return

        with self._tracer.start_as_current_span(
            name, record_exception=False, set_status_on_exception=False
        ) as span:
            if attributes:
                for key, value in attributes.items():
                    # OpenTelemetry only accepts primitive attribute values
                    span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))

            try:
                yield span
                span.set_status(trace.Status(trace.StatusCode.OK))
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise


# ============================================================================
# Operation Metrics
# ============================================================================

class PercentileTracker:
    """
    Track percentile latencies (p50, p95, p99).

    Uses a sliding window to avoid unbounded memory growth.
    """

    def __init__(self, window_size: int = 1000, percentiles: list[float] = None):
        self.window_size = window_size
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self.samples = deque(maxlen=window_size)

    def record(self, value: float):
        self.samples.append(value)

    def get_percentiles(self) -> dict[str, float]:
        """
        Calculate percentile values.

        Returns:
            Dictionary with keys like "p50", "p95", "p99"
        """
        if not self.samples:
            return {f"p{int(p*100)}": 0.0 for p in self.percentiles}

        if len(self.samples) == 1:
            return {f"p{int(p*100)}": self.samples[0] for p in self.percentiles}

        cut_points = statistics.quantiles(self.samples, n=100, method='inclusive')
        return {
            f"p{int(p*100)}": cut_points[int(p * 100) - 1]
            for p in self.percentiles
        }

    def get_stats(self) -> dict[str, Any]:
        if not self.samples:
            return {
                "count": 0,
                "avg": 0.0,
                "min": 0.0,
                "max": 0.0,
                **{f"p{int(p*100)}": 0.0 for p in self.percentiles}
            }

        return {
            "count": len(self.samples),
            "avg": statistics.mean(self.samples),
            "min": min(self.samples),
            "max": max(self.samples),
            **self.get_percentiles()
        }


class OperationMetrics:
    """
    Per-operation latency and error tracking.

    Tracks:
    - Latency percentiles (p50, p95, p99) per operation
    - Operation and error counts
    - Error types

    Safe to share between threads.
    """

    def __init__(self, service_name: str = "couchbase_store", percentiles: list[float] = None):
        self.service_name = service_name
        self.percentiles = percentiles or [0.5, 0.95, 0.99]

        self.latencies: dict[str, PercentileTracker] = defaultdict(
            lambda: PercentileTracker(percentiles=self.percentiles)
        )
        self.operation_counts: dict[str, int] = defaultdict(int)
        self.error_counts: dict[str, int] = defaultdict(int)
        self.error_types: dict[str, int] = defaultdict(int)

        self.start_time = time.time()
        self._lock = threading.Lock()

    def record_latency(self, operation: str, latency_ms: float):
        """Record operation latency in milliseconds."""
        with self._lock:
            self.latencies[operation].record(latency_ms)
            self.operation_counts[operation] += 1

    def record_error(self, operation: str, error_type: str | None = None):
        with self._lock:
            self.error_counts[operation] += 1
            if error_type:
                self.error_types[error_type] += 1

    @contextmanager
    def measure(self, operation: str) -> Iterator[None]:
        """Record the latency of the enclosed block, and its error if it raises."""
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.record_error(operation, type(e).__name__)
            raise
        finally:
            self.record_latency(operation, (time.perf_counter() - start) * 1000)

    def get_stats(self) -> dict[str, Any]:
        """
        Get summary statistics.

        Returns:
            Dictionary with total_operations, error_rate, latencies per
            operation, etc.
        """
        with self._lock:
            total_operations = sum(self.operation_counts.values())
            total_errors = sum(self.error_counts.values())

            return {
                "uptime_seconds": time.time() - self.start_time,
                "total_operations": total_operations,
                "total_errors": total_errors,
                "error_rate": total_errors / total_operations if total_operations > 0 else 0.0,
                "operations": dict(self.operation_counts),
                "errors": dict(self.error_counts),
                "error_types": dict(self.error_types),
                "latencies": {
                    operation: tracker.get_stats()
                    for operation, tracker in self.latencies.items()
                },
            }

    def reset(self):
        """Reset all metrics counters."""
        with self._lock:
            self.latencies.clear()
            self.operation_counts.clear()
            self.error_counts.clear()
            self.error_types.clear()
            self.start_time = time.time()

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        with self._lock:
            operation_counts = dict(self.operation_counts)
            error_counts = dict(self.error_counts)
            latencies = {
                operation: tracker.get_percentiles()
                for operation, tracker in self.latencies.items()
            }

        lines = []

        for operation, count in operation_counts.items():
            lines.append(
                f'couchbase_store_operations_total{{operation="{operation}"}} {count}'
            )

        for operation, count in error_counts.items():
            lines.append(
                f'couchbase_store_errors_total{{operation="{operation}"}} {count}'
            )

        for operation, percentiles in latencies.items():
            for percentile_name, value in percentiles.items():
                lines.append(
                    f'couchbase_store_latency_ms{{'
                    f'operation="{operation}",percentile="{percentile_name}"'
                    f'}} {value}'
                )

        return '\n'.join(lines)
