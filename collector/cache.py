"""
Metric cache

A cache generation is the parsed, ready-to-poll form of a metric
configuration: one entry per configured metric, in configuration order,
holding the parsed node id and the exposition descriptor. The order is what
lets the poller match read results to metrics by position.

Generations are immutable. A reload builds a complete new generation off to
the side and installs it through CacheHolder in a single reference swap, so
a reader sees either the old generation or the new one, never a mix.
"""
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, Optional, Tuple
import re
import threading

from opcua import ua

from logger import get_logger
from metrics import cache_generation
from opcua_client.exceptions import InvalidConfigError, InvalidNodeIDError

from .metrics_config import MetricDefinition, MetricsConfig, ValueKind

logger = get_logger(__name__)

METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


@dataclass(frozen=True)
class MetricDescriptor:
    """What the exposition layer needs to describe one metric"""
    name: str
    help: str
    kind: ValueKind
    label_names: Tuple[str, ...]


@dataclass(frozen=True)
class MetricCacheEntry:
    """One metric of a cache generation"""
    definition: MetricDefinition
    node_id: ua.NodeId
    descriptor: MetricDescriptor
    label_keys: Tuple[str, ...]
    label_values: Tuple[str, ...]

    @property
    def name(self) -> str:
        return self.definition.name


@dataclass(frozen=True)
class MetricCache:
    """An ordered, immutable cache generation"""
    entries: Tuple[MetricCacheEntry, ...] = ()
    generation: int = 0

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[MetricCacheEntry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> MetricCacheEntry:
        return self.entries[index]

    def node_ids(self) -> Tuple[ua.NodeId, ...]:
        return tuple(entry.node_id for entry in self.entries)

    def to_config(self) -> MetricsConfig:
        """The configuration this generation was built from"""
        return MetricsConfig(metrics=[entry.definition for entry in self.entries])


def parse_node_id(text: str) -> ua.NodeId:
    """Parse an OPC UA node id string such as ``ns=2;s=Boiler.Temperature``"""
    try:
        return ua.NodeId.from_string(text)
    except (ua.UaError, ValueError) as e:
        raise InvalidNodeIDError(f"invalid node id {text!r}", original_error=e) from e


def _check_names(index: int, definition: MetricDefinition):
    if not METRIC_NAME_RE.match(definition.name):
        raise InvalidConfigError(f"invalid metric name {definition.name!r} of metric {index}")
    for key in definition.labels:
        if not LABEL_NAME_RE.match(key) or key.startswith("__"):
            raise InvalidConfigError(f"invalid label name {key!r} of metric {index}")


def build_entry(index: int, definition: MetricDefinition) -> MetricCacheEntry:
    _check_names(index, definition)
    try:
        node_id = parse_node_id(definition.nodeid)
    except InvalidNodeIDError as e:
        e.message = f"metric {index} ({definition.name}): {e.message}"
        raise

    label_keys = tuple(sorted(definition.labels))
    label_values = tuple(definition.labels[key] for key in label_keys)
    return MetricCacheEntry(
        definition=definition,
        node_id=node_id,
        descriptor=MetricDescriptor(
            name=definition.name,
            help=definition.help,
            kind=definition.kind,
            label_names=label_keys,
        ),
        label_keys=label_keys,
        label_values=label_values,
    )


def build_cache(definitions: Iterable[MetricDefinition]) -> MetricCache:
    """
    Build a cache generation from metric definitions, preserving order.

    All or nothing: the first bad entry aborts the build.

    Raises:
        InvalidNodeIDError: a node id could not be parsed
        InvalidConfigError: a metric or label name is not a valid identifier,
            or metrics sharing a name disagree on type or label names, or
            repeat the same label values, or two metric names are exposed
            under the same name
    """
    entries = tuple(build_entry(index, d) for index, d in enumerate(definitions))
    _check_series(entries)
    return MetricCache(entries=entries)


def exposed_names(descriptor: MetricDescriptor) -> Tuple[str, ...]:
    """The family name prometheus_client exposes for a metric, then its other sample names"""
    if descriptor.kind != ValueKind.COUNTER:
        return (descriptor.name,)
    base = descriptor.name[:-len("_total")] if descriptor.name.endswith("_total") else descriptor.name
    return (base, f"{base}_total", f"{base}_created")


def _check_series(entries: Tuple[MetricCacheEntry, ...]):
    # Entries sharing a name are series of one family
    families: Dict[str, MetricDescriptor] = {}
    owners: Dict[str, str] = {}
    series = set()
    for index, entry in enumerate(entries):
        first = families.setdefault(entry.name, entry.descriptor)
        if (first.kind, first.label_names) != (entry.descriptor.kind, entry.descriptor.label_names):
            raise InvalidConfigError(
                f"metric {index} ({entry.name}) conflicts with an earlier metric of the same name"
            )
        key = (entry.name, entry.label_values)
        if key in series:
            raise InvalidConfigError(f"metric {index} ({entry.name}) duplicates an earlier series")
        series.add(key)

        # Counters foo and foo_total both expose foo_total
        for name in exposed_names(entry.descriptor):
            owner = owners.setdefault(name, entry.name)
            if owner != entry.name:
                raise InvalidConfigError(
                    f"metric {index} ({entry.name}) is exposed as {name}, already used by metric {owner}"
                )


class CacheHolder:
    """
    Holds the current cache generation

    The lock is held only to copy the reference out or to install a new one.
    """

    def __init__(self, initial: Optional[MetricCache] = None):
        self._lock = threading.Lock()
        self._cache = MetricCache()
        if initial is not None:
            self.install(initial)

    def snapshot(self) -> MetricCache:
        with self._lock:
            return self._cache

    @property
    def generation(self) -> int:
        return self.snapshot().generation

    def install(self, cache: MetricCache) -> MetricCache:
        """
        Install a newly built cache as the next generation.

        Returns:
            The generation it replaced
        """
        with self._lock:
            previous = self._cache
            self._cache = replace(cache, generation=previous.generation + 1)
            installed = self._cache
        cache_generation.set(installed.generation)
        logger.info(f"Installed metric cache generation {installed.generation} ({len(installed)} metrics)")
        return previous

