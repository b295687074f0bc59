"""Monitoring and health check module."""

from .health_checks import (
    HealthCheck, HealthCheckManager, HealthCheckResult, HealthStatus,
    StoreHealthCheck, SystemHealthSummary, UpstreamHealthCheck
)
from .metrics import MetricsCollector, MetricType, get_metrics_collector

__all__ = [
    'HealthCheck',
    'HealthCheckManager',
    'HealthCheckResult',
    'HealthStatus',
    'StoreHealthCheck',
    'SystemHealthSummary',
    'UpstreamHealthCheck',
    'MetricsCollector',
    'MetricType',
    'get_metrics_collector'
]
