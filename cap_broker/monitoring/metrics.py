"""Metrics collection and Prometheus exposition."""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

LabelKey = Tuple[Tuple[str, str], ...]


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class HistogramData:
    """Histogram metric data."""
    buckets: Tuple[float, ...] = DEFAULT_BUCKETS
    count: int = 0
    sum: float = 0.0
    bucket_counts: List[int] = field(default_factory=list)

    def __post_init__(self):
        if not self.bucket_counts:
            self.bucket_counts = [0] * len(self.buckets)

    def add_value(self, value: float):
        """Add a value to the histogram."""
        self.count += 1
        self.sum += value
        for i, bucket_limit in enumerate(self.buckets):
            if value <= bucket_limit:
                self.bucket_counts[i] += 1

    def get_mean(self) -> float:
        return self.sum / self.count if self.count > 0 else 0.0


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _format_labels(key: LabelKey, extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(key)
    if extra:
        pairs.append(extra)
    if not pairs:
        return ""
    escaped = (
        '{}="{}"'.format(k, v.replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n'))
        for k, v in pairs
    )
    return "{" + ",".join(escaped) + "}"


class MetricsCollector:
    """Collects counters, gauges and histograms keyed by name and labels.

    Thread-safe: the Flask request threads and the engine's event loop
    thread both record into one collector.
    """

    def __init__(self):
        self.counters: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
        self.gauges: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
        self.histograms: Dict[str, Dict[LabelKey, HistogramData]] = defaultdict(dict)
        self.metric_help: Dict[str, str] = {}
        self.metric_types: Dict[str, MetricType] = {}
        self.lock = threading.RLock()

        self._register_builtin_metrics()

    def _register_builtin_metrics(self):
        """Register built-in broker metrics."""
        self.register_metric(
            "osb_http_requests_total", MetricType.COUNTER,
            "Total number of HTTP requests handled"
        )
        self.register_metric(
            "osb_http_request_duration_seconds", MetricType.HISTOGRAM,
            "HTTP request duration in seconds"
        )
        self.register_metric(
            "osb_operations_total", MetricType.COUNTER,
            "Total number of OSB operations by operation and outcome"
        )
        self.register_metric(
            "osb_operation_duration_seconds", MetricType.HISTOGRAM,
            "OSB operation duration in seconds"
        )
        self.register_metric(
            "osb_active_service_instances", MetricType.GAUGE,
            "Number of provisioned service instances"
        )
        self.register_metric(
            "osb_active_service_bindings", MetricType.GAUGE,
            "Number of service bindings"
        )
        self.register_metric(
            "upstream_api_requests_total", MetricType.COUNTER,
            "Total number of upstream provisioning API requests"
        )
        self.register_metric(
            "upstream_api_request_duration_seconds", MetricType.HISTOGRAM,
            "Upstream provisioning API request duration in seconds"
        )

    def register_metric(self, name: str, metric_type: MetricType, help_text: str):
        """Register a metric.

        Args:
            name: Metric name
            metric_type: Type of metric
            help_text: Help text describing the metric
        """
        with self.lock:
            self.metric_help[name] = help_text
            self.metric_types[name] = metric_type

        logger.debug(f"Registered metric: {name} ({metric_type.value})")

    def increment_counter(self, name: str, value: float = 1.0,
                          labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        key = _label_key(labels)
        with self.lock:
            series = self.counters[name]
            series[key] = series.get(key, 0.0) + value

    def set_gauge(self, name: str, value: float,
                  labels: Optional[Dict[str, str]] = None):
        """Set a gauge metric value."""
        with self.lock:
            self.gauges[name][_label_key(labels)] = float(value)

    def observe_histogram(self, name: str, value: float,
                          labels: Optional[Dict[str, str]] = None):
        """Observe a value in a histogram metric."""
        key = _label_key(labels)
        with self.lock:
            series = self.histograms[name]
            if key not in series:
                series[key] = HistogramData()
            series[key].add_value(value)

    def time_operation(self, name: str, labels: Optional[Dict[str, str]] = None):
        """Context manager observing the elapsed time into a histogram."""
        return TimerContext(self, name, labels)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self.lock:
            return self.counters.get(name, {}).get(_label_key(labels), 0.0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        with self.lock:
            return self.gauges.get(name, {}).get(_label_key(labels))

    def get_histogram(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[HistogramData]:
        with self.lock:
            return self.histograms.get(name, {}).get(_label_key(labels))

    def reset_metrics(self):
        """Reset all metric values."""
        with self.lock:
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()

    def get_prometheus_format(self) -> str:
        """Get metrics in Prometheus text exposition format."""
        lines = []
        with self.lock:
            for name in sorted(self.metric_help):
                metric_type = self.metric_types[name]
                lines.append(f"# HELP {name} {self.metric_help[name]}")
                lines.append(f"# TYPE {name} {metric_type.value}")

                if metric_type == MetricType.COUNTER:
                    for key, value in self.counters.get(name, {}).items():
                        lines.append(f"{name}{_format_labels(key)} {value}")
                elif metric_type == MetricType.GAUGE:
                    for key, value in self.gauges.get(name, {}).items():
                        lines.append(f"{name}{_format_labels(key)} {value}")
                else:
                    for key, histogram in self.histograms.get(name, {}).items():
                        for limit, count in zip(histogram.buckets, histogram.bucket_counts):
                            lines.append(
                                f"{name}_bucket{_format_labels(key, ('le', str(limit)))} {count}"
                            )
                        lines.append(
                            f"{name}_bucket{_format_labels(key, ('le', '+Inf'))} {histogram.count}"
                        )
                        lines.append(f"{name}_sum{_format_labels(key)} {histogram.sum}")
                        lines.append(f"{name}_count{_format_labels(key)} {histogram.count}")

        return "\n".join(lines) + "\n"


class TimerContext:
    """Context manager for timing operations."""

    def __init__(self, collector: MetricsCollector, name: str,
                 labels: Optional[Dict[str, str]] = None):
        self.collector = collector
        self.name = name
        self.labels = labels
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.collector.observe_histogram(
                self.name, time.monotonic() - self.start_time, self.labels
            )


# Global metrics collector
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()

    return _metrics_collector
