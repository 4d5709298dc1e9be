"""
Test poll rounds
"""
import pytest

from collector.cache import CacheHolder, build_cache
from collector.poller import (
    INSTRUMENTATION,
    Poller,
    coerce_value,
)
from metrics import registry as exporter_registry

from conftest import make_definition


def holder_with(count, **kwargs):
    definitions = [
        make_definition(f"metric_{i}", nodeid=f"ns=2;i={i}", **kwargs)
        for i in range(count)
    ]
    return CacheHolder(build_cache(definitions))


def counter_value(name):
    return exporter_registry.get_sample_value(name) or 0.0


def test_n_results_n_samples(fake_session):
    holder = holder_with(4)
    fake_session.values = {"ns=2;i=2": 42}

    poll_round = Poller(fake_session, holder).poll()

    assert len(poll_round.samples) == 4
    assert not poll_round.errors
    assert [s.name for s in poll_round.samples] == [f"metric_{i}" for i in range(4)]
    assert poll_round.samples[2].value == 42.0
    assert poll_round.generation == holder.generation


def test_read_request_shape(fake_session):
    holder = holder_with(2)
    Poller(fake_session, holder).poll()
    node_ids, max_age, _ = fake_session.calls[0]
    assert max_age == 2000
    assert node_ids == holder.snapshot().node_ids()


def test_bad_status_is_one_error_sample(fake_session):
    holder = holder_with(3, labels={"site": "plant-a"})
    fake_session.statuses = {"ns=2;i=1": "BadNodeIdUnknown"}

    poll_round = Poller(fake_session, holder).poll()

    assert len(poll_round.samples) == 2
    assert len(poll_round.errors) == 1
    error = poll_round.errors[0]
    assert error.metric == "metric_1"
    assert error.labels == "site=plant-a"
    assert "BadNodeIdUnknown" in error.error
    assert [s.name for s in poll_round.samples] == ["metric_0", "metric_2"]


def test_request_failure_is_single_error_sample(fake_session, request_error):
    holder = holder_with(3)
    fake_session.error = request_error
    before = counter_value("opcua_request_errors_total")

    poll_round = Poller(fake_session, holder).poll()

    assert poll_round.failed
    assert poll_round.samples == []
    assert poll_round.instrumentation == []
    assert len(poll_round.errors) == 1
    assert counter_value("opcua_request_errors_total") == before + 1


def test_wrong_result_count_is_request_failure(fake_session):
    holder = holder_with(3)
    fake_session.result_count = 2

    poll_round = Poller(fake_session, holder).poll()

    assert poll_round.failed
    assert poll_round.metric_count == 1
    assert "2 results for 3 nodes" in poll_round.errors[0].error


def test_non_numeric_value(fake_session):
    holder = holder_with(2)
    fake_session.values = {"ns=2;i=0": "running"}
    before = counter_value("opcua_unexpected_resp_type_total")

    poll_round = Poller(fake_session, holder).poll()

    assert len(poll_round.samples) == 1
    assert len(poll_round.errors) == 1
    assert poll_round.errors[0].metric == "metric_0"
    assert counter_value("opcua_unexpected_resp_type_total") == before + 1


def test_empty_cache_skips_read(fake_session):
    poll_round = Poller(fake_session, CacheHolder()).poll()
    assert fake_session.calls == []
    assert poll_round.metric_count == 0
    assert [s.name for s in poll_round.instrumentation] == [d.name for d in INSTRUMENTATION]


def test_instrumentation_samples(fake_session):
    poll_round = Poller(fake_session, holder_with(3)).poll()
    by_name = {s.name: s.value for s in poll_round.instrumentation}
    assert by_name["opcua_scrape_resp_returned"] == 3
    assert by_name["opcua_scrape_duration_seconds"] >= by_name["opcua_scrape_walk_duration_seconds"]
    assert by_name["opcua_client_read_duration_seconds"] >= 0


@pytest.mark.parametrize("value,expected", [
    (True, 1.0),
    (False, 0.0),
    (7, 7.0),
    (2.5, 2.5),
    ("7", None),
    (None, None),
    (b"\x01", None),
])
def test_coerce_value(value, expected):
    assert coerce_value(value) == expected
