"""
Prometheus exposition of poll rounds

OpcuaCollector is a custom prometheus_client collector: every collect()
runs one poll round and turns its samples into metric families. Its
describe() covers only the families it always emits. The names of the
configured metrics are reserved in the registry by a separate
CacheNameReservation, re-registered on every reload, so swapping the name
index never takes the collector itself out of the registry.
"""
from typing import Dict, Iterator, List, Optional

from prometheus_client import CollectorRegistry
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    Metric,
    UnknownMetricFamily,
)

from logger import get_logger
from opcua_client.exceptions import InvalidConfigError

from .cache import CacheHolder, MetricCache, MetricDescriptor
from .metrics_config import ValueKind
from .poller import (
    ERROR_LABEL_NAMES,
    ERROR_METRIC_HELP,
    ERROR_METRIC_NAME,
    INSTRUMENTATION,
    Poller,
    PollRound,
)

logger = get_logger(__name__)

_FAMILY_TYPES = {
    ValueKind.COUNTER: CounterMetricFamily,
    ValueKind.GAUGE: GaugeMetricFamily,
    ValueKind.UNTYPED: UnknownMetricFamily,
}


def new_family(descriptor: MetricDescriptor) -> Metric:
    family_type = _FAMILY_TYPES[descriptor.kind]
    return family_type(descriptor.name, descriptor.help, labels=list(descriptor.label_names))


def error_family() -> GaugeMetricFamily:
    return GaugeMetricFamily(ERROR_METRIC_NAME, ERROR_METRIC_HELP, labels=list(ERROR_LABEL_NAMES))


def cache_families(cache: MetricCache) -> Dict[str, Metric]:
    """One empty family per distinct metric name, in cache order"""
    families: Dict[str, Metric] = {}
    for entry in cache:
        if entry.name not in families:
            families[entry.name] = new_family(entry.descriptor)
    return families


def round_families(poll_round: PollRound) -> List[Metric]:
    families: Dict[str, Metric] = {}
    for sample in poll_round.samples:
        family = families.get(sample.name)
        if family is None:
            family = families[sample.name] = new_family(sample.descriptor)
        family.add_metric(list(sample.label_values), sample.value)

    for sample in poll_round.instrumentation:
        family = new_family(sample.descriptor)
        family.add_metric([], sample.value)
        families[sample.name] = family

    result = list(families.values())
    if poll_round.errors:
        errors = error_family()
        for error in poll_round.errors:
            errors.add_metric(list(error.label_values), 1)
        result.append(errors)
    return result


class OpcuaCollector:
    """Runs one poll round per scrape"""

    def __init__(self, poller: Poller):
        self.poller = poller

    def describe(self) -> List[Metric]:
        return [new_family(d) for d in INSTRUMENTATION] + [error_family()]

    def collect(self) -> Iterator[Metric]:
        poll_round = self.poller.poll()
        yield from round_families(poll_round)


class CacheNameReservation:
    """Holds the names of one cache generation in a registry's name index"""

    def __init__(self, cache: MetricCache):
        self.cache = cache

    def describe(self) -> List[Metric]:
        return list(cache_families(self.cache).values())

    def collect(self) -> Iterator[Metric]:
        return iter(())


class ExporterRegistration:
    """
    Keeps the collector registered and the registry's name index in step
    with the installed cache generation.
    """

    def __init__(self, registry: CollectorRegistry, collector: OpcuaCollector, cache_holder: CacheHolder):
        self.registry = registry
        self.collector = collector
        self.cache_holder = cache_holder
        self._reservation: Optional[CacheNameReservation] = None
        self._registered = False

    def register(self):
        """
        Register the collector and reserve the current generation's names.

        Raises:
            InvalidConfigError: a configured metric name is already taken
        """
        self.registry.register(self.collector)
        self._registered = True
        try:
            self._reserve(self.cache_holder.snapshot())
        except InvalidConfigError:
            self.unregister()
            raise

    def install(self, cache: MetricCache) -> MetricCache:
        """
        Reserve the names of a new cache generation, then swap it in.

        On a name collision nothing changes: the previous generation stays
        installed and its names stay reserved.

        Returns:
            The generation it replaced

        Raises:
            InvalidConfigError: a metric name of the new cache is taken
        """
        self._reserve(cache)
        return self.cache_holder.install(cache)

    def _reserve(self, cache: MetricCache):
        previous = self._reservation
        reservation = CacheNameReservation(cache)
        if previous is not None:
            self.registry.unregister(previous)
        try:
            self.registry.register(reservation)
        except ValueError as e:
            if previous is not None:
                self.registry.register(previous)
            raise InvalidConfigError("metric names collide with registered metrics", original_error=e) from e
        self._reservation = reservation

    def unregister(self):
        if self._reservation is not None:
            self.registry.unregister(self._reservation)
            self._reservation = None
        if self._registered:
            self.registry.unregister(self.collector)
            self._registered = False
