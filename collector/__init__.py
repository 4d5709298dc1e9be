"""
Metric configuration, cache generations, polling and exposition.
"""

from .metrics_config import (
    MetricDefinition,
    MetricsConfig,
    ValueKind,
    load_metrics_config,
    load_startup_metrics_config,
    parse_metrics_config,
    write_metrics_config,
)

from .cache import (
    CacheHolder,
    MetricCache,
    MetricCacheEntry,
    MetricDescriptor,
    build_cache,
)

from .poller import (
    ErrorSample,
    Poller,
    PollRound,
    Sample,
)

from .exporter import (
    CacheNameReservation,
    ExporterRegistration,
    OpcuaCollector,
)

__all__ = [
    # Configuration
    "MetricDefinition",
    "MetricsConfig",
    "ValueKind",
    "load_metrics_config",
    "load_startup_metrics_config",
    "parse_metrics_config",
    "write_metrics_config",

    # Cache
    "CacheHolder",
    "MetricCache",
    "MetricCacheEntry",
    "MetricDescriptor",
    "build_cache",

    # Polling
    "ErrorSample",
    "Poller",
    "PollRound",
    "Sample",

    # Exposition
    "CacheNameReservation",
    "ExporterRegistration",
    "OpcuaCollector",
]
