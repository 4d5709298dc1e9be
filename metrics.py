"""
metrics.py - Exporter self-instrumentation

The exporter serves its own registry rather than the prometheus_client
default one, so a reload can unregister and re-register the OPC UA
collector without touching anything else in the process.
"""
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    GCCollector,
    Info,
    PlatformCollector,
    ProcessCollector,
    Summary,
    generate_latest,
)
from functools import wraps
import time

registry = CollectorRegistry()
ProcessCollector(registry=registry)
PlatformCollector(registry=registry)
GCCollector(registry=registry)

collection_duration = Summary(
    'opcua_collection_duration_seconds',
    'Duration of collections by the OPCUA exporter',
    ['opcua'],
    registry=registry
)

request_errors = Counter(
    'opcua_request_errors_total',
    'Errors in requests to the OPCUA exporter',
    registry=registry
)

unexpected_response_type = Counter(
    'opcua_unexpected_resp_type_total',
    'Read results whose value could not be converted to a float',
    registry=registry
)

config_reloads = Counter(
    'opcua_config_reloads_total',
    'Metric configuration reloads by outcome',
    ['status'],
    registry=registry
)

cache_generation = Gauge(
    'opcua_metric_cache_generation',
    'Generation number of the installed metric cache',
    registry=registry
)

circuit_breaker_state = Gauge(
    'opcua_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=open, 2=half-open)',
    ['service'],
    registry=registry
)

build_info = Info(
    'telemetry_opcua_exporter_build',
    'Build information of the exporter',
    registry=registry
)

def track_scrape(label: str = "opcua", on_slow=None, slow_seconds: float = 8.0):
    """Decorator observing the wrapped scrape's duration"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration = time.perf_counter() - start
                collection_duration.labels(label).observe(duration)
                if on_slow is not None and duration >= slow_seconds:
                    on_slow(duration)
        return wrapper
    return decorator

def get_metrics(target_registry: CollectorRegistry = registry) -> bytes:
    """Get Prometheus metrics"""
    return generate_latest(target_registry)
