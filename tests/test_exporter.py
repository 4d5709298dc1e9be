"""
Test Prometheus exposition and registry name reservation
"""
import pytest
from prometheus_client import Counter, generate_latest

from collector.cache import CacheHolder, build_cache
from collector.exporter import ExporterRegistration, OpcuaCollector
from collector.poller import Poller
from opcua_client.exceptions import InvalidConfigError

from conftest import make_definition


def registered(registry, session, definitions):
    holder = CacheHolder()
    registration = ExporterRegistration(registry, OpcuaCollector(Poller(session, holder)), holder)
    registration.register()
    registration.install(build_cache(definitions))
    return registration


def test_exposition(registry, fake_session):
    registered(registry, fake_session, [
        make_definition("boiler_temperature", labels={"site": "plant-a"}),
        make_definition("pump_starts", nodeid="ns=2;i=7", type="counter"),
        make_definition("valve_position", nodeid="ns=2;i=8", type="enum"),
    ])
    fake_session.value = 21.5

    text = generate_latest(registry).decode()

    assert "# TYPE boiler_temperature gauge" in text
    assert 'boiler_temperature{site="plant-a"} 21.5' in text
    assert "# TYPE pump_starts_total counter" in text
    assert "pump_starts_total 21.5" in text
    assert "# TYPE valve_position untyped" in text
    assert "opcua_scrape_resp_returned 3.0" in text
    assert "opcua_scrape_duration_seconds" in text
    assert "opcua_error" not in text


def test_series_grouped_under_one_family(registry, fake_session):
    registered(registry, fake_session, [
        make_definition("temperature", nodeid="ns=2;i=1", labels={"zone": "a"}),
        make_definition("temperature", nodeid="ns=2;i=2", labels={"zone": "b"}),
    ])
    text = generate_latest(registry).decode()
    assert text.count("# TYPE temperature gauge") == 1
    assert 'temperature{zone="a"}' in text
    assert 'temperature{zone="b"}' in text


def test_error_samples(registry, fake_session):
    registered(registry, fake_session, [
        make_definition("a", nodeid="ns=2;i=1"),
        make_definition("b", nodeid="ns=2;i=2", labels={"site": "x"}),
    ])
    fake_session.statuses = {"ns=2;i=2": "BadNotReadable"}

    text = generate_latest(registry).decode()

    assert "a 1.0" in text
    assert 'opcua_error{error="invalid status BadNotReadable",labels="site=x",metric="b"} 1.0' in text


def test_request_failure_exposes_only_error(registry, fake_session, request_error):
    registered(registry, fake_session, [make_definition("a")])
    fake_session.error = request_error

    families = list(registry.collect())

    names = [f.name for f in families]
    assert names == ["opcua_error"]
    assert len(families[0].samples) == 1


def test_name_collision_rejected_at_install(registry, fake_session):
    Counter("plant_events_total", "Taken", registry=registry)
    registration = registered(registry, fake_session, [make_definition("a")])

    with pytest.raises(InvalidConfigError, match="collide"):
        registration.install(build_cache([make_definition("plant_events_total")]))

    # Previous generation and its names stay in place
    assert registration.cache_holder.snapshot()[0].name == "a"
    with pytest.raises(ValueError):
        Counter("a", "Still reserved", registry=registry)


def test_collision_with_instrumentation(registry, fake_session):
    registration = registered(registry, fake_session, [make_definition("a")])
    with pytest.raises(InvalidConfigError):
        registration.install(build_cache([make_definition("opcua_scrape_duration_seconds")]))


def test_reinstall_moves_reservation(registry, fake_session):
    registration = registered(registry, fake_session, [make_definition("old_name")])
    registration.install(build_cache([make_definition("new_name")]))

    Counter("old_name", "Free again", registry=registry)
    with pytest.raises(ValueError):
        Counter("new_name", "Reserved", registry=registry)


def test_unregister(registry, fake_session):
    registration = registered(registry, fake_session, [make_definition("a")])
    registration.unregister()
    assert list(registry.collect()) == []
