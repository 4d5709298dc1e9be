"""
Poll cycle: one batched read per scrape

Each round snapshots the current cache generation, reads every node in a
single request and matches result i to cache entry i of that same
snapshot. Failures never escape a round: a bad node becomes an error
sample, a failed request becomes the round's only sample.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple
import numbers
import time

from logger import get_logger
from metrics import request_errors, unexpected_response_type
from opcua_client.exceptions import RequestError
from opcua_client.session import ReadResult, Session, TimestampPolicy

from .cache import CacheHolder, MetricCacheEntry, MetricDescriptor
from .metrics_config import ValueKind

logger = get_logger(__name__)

DEFAULT_MAX_AGE_MS = 2000

READ_DURATION = MetricDescriptor(
    "opcua_client_read_duration_seconds", "Time the OPCUA read request took.", ValueKind.GAUGE, ()
)
WALK_DURATION = MetricDescriptor(
    "opcua_scrape_walk_duration_seconds", "Time OPCUA walk/bulkwalk took.", ValueKind.GAUGE, ()
)
RESP_RETURNED = MetricDescriptor(
    "opcua_scrape_resp_returned", "RESPs returned from walk.", ValueKind.GAUGE, ()
)
SCRAPE_DURATION = MetricDescriptor(
    "opcua_scrape_duration_seconds", "Total OPCUA time scrape took (walk and processing).", ValueKind.GAUGE, ()
)
INSTRUMENTATION = (READ_DURATION, WALK_DURATION, RESP_RETURNED, SCRAPE_DURATION)

ERROR_METRIC_NAME = "opcua_error"
ERROR_METRIC_HELP = "error scraping target"
ERROR_LABEL_NAMES = ("metric", "labels", "error")


@dataclass(frozen=True)
class Sample:
    descriptor: MetricDescriptor
    value: float
    label_values: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.descriptor.name


@dataclass(frozen=True)
class ErrorSample:
    """A failed read, for one metric or for the whole round"""
    error: str
    metric: str = ""
    labels: str = ""

    @property
    def label_values(self) -> Tuple[str, str, str]:
        return (self.metric, self.labels, self.error)


@dataclass
class PollRound:
    """Everything one scrape produced"""
    generation: int
    samples: List[Sample] = field(default_factory=list)
    errors: List[ErrorSample] = field(default_factory=list)
    instrumentation: List[Sample] = field(default_factory=list)
    failed: bool = False

    @property
    def metric_count(self) -> int:
        """Samples produced for configured metrics, errors included"""
        return len(self.samples) + len(self.errors)


def format_labels(entry: MetricCacheEntry) -> str:
    return ",".join(f"{k}={v}" for k, v in zip(entry.label_keys, entry.label_values))


def coerce_value(value) -> Optional[float]:
    """bool, int and float values as float; None for anything else"""
    if isinstance(value, numbers.Real):
        return float(value)
    return None


class Poller:
    def __init__(
        self,
        session: Session,
        cache_holder: CacheHolder,
        max_age_ms: float = DEFAULT_MAX_AGE_MS,
        timestamps: TimestampPolicy = TimestampPolicy.BOTH,
        clock: Callable[[], float] = time.perf_counter
    ):
        self.session = session
        self.cache_holder = cache_holder
        self.max_age_ms = max_age_ms
        self.timestamps = timestamps
        self._clock = clock

    def poll(self) -> PollRound:
        """Run one poll round against the current cache generation"""
        start = self._clock()
        cache = self.cache_holder.snapshot()
        round_ = PollRound(generation=cache.generation)

        results: List[ReadResult] = []
        read_duration = 0.0
        if len(cache):
            read_start = self._clock()
            try:
                results = self.session.read(cache.node_ids(), self.max_age_ms, self.timestamps)
                if len(results) != len(cache):
                    raise RequestError(
                        f"read returned {len(results)} results for {len(cache)} nodes"
                    )
            except RequestError as e:
                return self._failed_round(round_, e)
            read_duration = self._clock() - read_start
        walk_duration = self._clock() - start

        for entry, result in zip(cache, results):
            self._add_result(round_, entry, result)

        round_.instrumentation = [
            Sample(READ_DURATION, read_duration),
            Sample(WALK_DURATION, walk_duration),
            Sample(RESP_RETURNED, float(len(results))),
            Sample(SCRAPE_DURATION, self._clock() - start),
        ]
        return round_

    def _failed_round(self, round_: PollRound, error: RequestError) -> PollRound:
        logger.info(f"error scraping target : {error}")
        request_errors.inc()
        round_.failed = True
        round_.errors.append(ErrorSample(error=str(error)))
        return round_

    def _add_result(self, round_: PollRound, entry: MetricCacheEntry, result: ReadResult):
        if not result.good:
            round_.errors.append(ErrorSample(
                error=f"invalid status {result.status}",
                metric=entry.name,
                labels=format_labels(entry),
            ))
            return

        value = coerce_value(result.value)
        if value is None:
            unexpected_response_type.inc()
            round_.errors.append(ErrorSample(
                error=f"unexpected value type {type(result.value).__name__}",
                metric=entry.name,
                labels=format_labels(entry),
            ))
            return

        round_.samples.append(Sample(entry.descriptor, value, entry.label_values))
