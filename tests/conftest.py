"""
Shared fixtures for the exporter tests
"""
from typing import List, Optional
from unittest.mock import MagicMock
import threading

import pytest
from opcua import ua
from prometheus_client import CollectorRegistry

from collector.metrics_config import MetricDefinition
from opcua_client.exceptions import RequestError
from opcua_client.negotiation import EndpointDescriptor
from opcua_client.security import SECURITY_POLICY_URI_PREFIX
from opcua_client.session import ReadResult, Session, TimestampPolicy


METRICS_YAML = b"""metrics:
  - name: boiler_temperature
    help: Boiler temperature in celsius
    nodeid: ns=2;s=Boiler.Temperature
    type: gauge
    labels:
      site: plant-a
  - name: pump_starts
    help: Pump start count
    nodeid: ns=2;i=1001
    type: counter
"""


class FakeSession(Session):
    """In-memory session returning one good result per node unless told otherwise"""

    def __init__(self, value=1.0):
        self.value = value
        self.statuses = {}
        self.values = {}
        self.error: Optional[Exception] = None
        self.result_count: Optional[int] = None
        self.calls: List[tuple] = []
        self._connected = True
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._connected

    def read(self, node_ids, max_age_ms, timestamps=TimestampPolicy.BOTH):
        with self._lock:
            self.calls.append((tuple(node_ids), max_age_ms, timestamps))
        if self.error is not None:
            raise self.error

        results = []
        for node_id in node_ids:
            key = node_id.to_string()
            status = self.statuses.get(key)
            if status is not None:
                results.append(ReadResult(good=False, status=status))
            else:
                results.append(ReadResult(good=True, status="Good", value=self.values.get(key, self.value)))
        if self.result_count is not None:
            results = results[:self.result_count]
        return results

    def close(self):
        self._connected = False


def make_definition(name="temperature", nodeid="ns=2;s=Temperature", type="gauge", labels=None, help=None):
    return MetricDefinition(
        name=name,
        help=help or f"{name} help",
        nodeid=nodeid,
        type=type,
        labels=labels or {},
    )


def make_endpoint(policy="None", mode=1, level=0, tokens=(0,), url="opc.tcp://plc:4840"):
    return EndpointDescriptor(
        endpoint_url=url,
        security_policy_uri=SECURITY_POLICY_URI_PREFIX + policy,
        security_mode=mode,
        security_level=level,
        user_token_types=frozenset(tokens),
    )


def make_ua_endpoint(policy="None", mode=1, level=0, tokens=(0,), url="opc.tcp://plc:4840"):
    """A real ``ua.EndpointDescription`` as discovery returns it"""
    description = ua.EndpointDescription()
    description.EndpointUrl = url
    description.SecurityPolicyUri = SECURITY_POLICY_URI_PREFIX + policy
    description.SecurityMode = ua.MessageSecurityMode(mode)
    description.SecurityLevel = level
    token_policies = []
    for token_type in tokens:
        token_policy = ua.UserTokenPolicy()
        token_policy.TokenType = ua.UserTokenType(token_type)
        token_policies.append(token_policy)
    description.UserIdentityTokens = token_policies
    return description


def make_data_value(value=None, status=ua.StatusCodes.Good):
    data_value = ua.DataValue(ua.Variant(value))
    data_value.StatusCode = ua.StatusCode(status)
    return data_value


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def registry():
    """A registry of its own for each test"""
    return CollectorRegistry()


@pytest.fixture
def metrics_file(tmp_path):
    path = tmp_path / "opcua.yaml"
    path.write_bytes(METRICS_YAML)
    return path


@pytest.fixture
def ua_client_factory():
    """
    Client factory handing out one MagicMock client that advertises a single
    anonymous, unsecured endpoint and answers reads with good doubles.
    """
    client = MagicMock()
    client.connect_and_get_server_endpoints.return_value = [make_ua_endpoint()]

    def read(params):
        return [make_data_value(21.5) for _ in params.NodesToRead]

    client.uaclient.read.side_effect = read
    factory = MagicMock(return_value=client)
    factory.client = client
    return factory


@pytest.fixture
def request_error():
    return RequestError("read failed", original_error=TimeoutError("timed out"))
