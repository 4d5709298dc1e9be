"""
Test session option building, discovery and the session handle
"""
from unittest.mock import MagicMock

import pytest
from opcua import ua

from circuit_breaker import CircuitBreaker, CircuitState
from opcua_client.exceptions import (
    CertificateError,
    InvalidConfigError,
    RequestError,
    ServerConnectionError,
)
from opcua_client.negotiation import NegotiatedEndpoint
from opcua_client.security import AuthMode, SecurityMode, SecurityPolicy, ServerConfig
from opcua_client.session import (
    SESSION_LIFETIME_MS,
    OpcuaSession,
    ReadResult,
    SessionOptions,
    TimestampPolicy,
    build_session,
    build_session_options,
    discover_endpoints,
)

from conftest import make_data_value, make_endpoint, make_ua_endpoint


def negotiated(policy="None", mode=1, auth=AuthMode.ANONYMOUS):
    return NegotiatedEndpoint(make_endpoint(policy, mode=mode, tokens=(0, 1, 2)), auth)


def server_config(**kwargs):
    return ServerConfig(endpoint="opc.tcp://plc:4840", **kwargs)


def client_factory(client=None):
    client = client or MagicMock()
    return MagicMock(return_value=client), client


class TestSessionOptions:

    def test_anonymous_unsecured(self):
        options = build_session_options(server_config(), negotiated())
        assert options.security_mode is SecurityMode.NONE
        assert options.security_policy is SecurityPolicy.NONE
        assert options.security_string is None
        assert options.session_lifetime_ms == SESSION_LIFETIME_MS

    def test_username_requires_username(self):
        with pytest.raises(InvalidConfigError):
            build_session_options(server_config(), negotiated(auth=AuthMode.USERNAME))

    def test_username_credentials(self):
        options = build_session_options(
            server_config(username="operator", password="secret"),
            negotiated(auth=AuthMode.USERNAME)
        )
        assert options.username == "operator"
        assert options.password == "secret"

    def test_sign_mode_without_certificate(self):
        with pytest.raises(CertificateError):
            build_session_options(server_config(), negotiated("Basic256Sha256", mode=2))

    def test_certificate_auth_without_certificate(self):
        with pytest.raises(CertificateError):
            build_session_options(server_config(), negotiated(auth=AuthMode.CERTIFICATE))

    def test_unsupported_policy(self):
        credentials = MagicMock(cert_path="c.pem", key_path="k.pem")
        with pytest.raises(InvalidConfigError):
            build_session_options(server_config(), negotiated("Aes256_Sha256_RsaPss", mode=3), credentials)

    def test_security_string(self):
        credentials = MagicMock(cert_path="c.pem", key_path="k.pem")
        options = build_session_options(server_config(), negotiated("Basic256Sha256", mode=3), credentials)
        assert options.security_string == "Basic256Sha256,SignAndEncrypt,c.pem,k.pem"


def test_discover_endpoints():
    factory, client = client_factory()
    client.connect_and_get_server_endpoints.return_value = [
        make_ua_endpoint("None", mode=1),
        make_ua_endpoint("Basic256Sha256", mode=3, level=10),
    ]
    endpoints = discover_endpoints("opc.tcp://plc:4840", client_factory=factory)
    assert [e.security_mode for e in endpoints] == [1, 3]


def test_discover_endpoints_unreachable():
    factory, client = client_factory()
    client.connect_and_get_server_endpoints.side_effect = ConnectionRefusedError("refused")
    with pytest.raises(ServerConnectionError):
        discover_endpoints("opc.tcp://plc:4840", client_factory=factory)


def test_build_session_connects_and_configures():
    factory, client = client_factory()
    session = build_session(
        server_config(username="operator", password="secret"),
        negotiated(auth=AuthMode.USERNAME),
        client_factory=factory
    )
    assert session.connected
    client.set_user.assert_called_once_with("operator")
    client.set_password.assert_called_once_with("secret")
    client.set_security_string.assert_not_called()
    assert client.session_timeout == SESSION_LIFETIME_MS


def test_build_session_connect_failure():
    factory, client = client_factory()
    client.connect.side_effect = OSError("no route to host")
    with pytest.raises(ServerConnectionError):
        build_session(server_config(), negotiated(), client_factory=factory)


def test_build_session_client_setup_failure():
    factory, client = client_factory()
    client.set_user.side_effect = ValueError("bad user token")
    with pytest.raises(ServerConnectionError):
        build_session(
            server_config(username="operator"),
            negotiated(auth=AuthMode.USERNAME),
            client_factory=factory
        )
    client.connect.assert_not_called()


class TestRead:

    def open_session(self, client, breaker=None):
        factory, _ = client_factory(client)
        options = SessionOptions(
            endpoint_url="opc.tcp://plc:4840",
            auth_mode=AuthMode.ANONYMOUS,
            security_mode=SecurityMode.NONE,
            security_policy=SecurityPolicy.NONE,
        )
        session = OpcuaSession(options, client_factory=factory, breaker=breaker)
        session.open()
        return session, factory

    def test_batched_read(self):
        client = MagicMock()
        client.uaclient.read.return_value = [
            make_data_value(1.5),
            make_data_value(None, ua.StatusCodes.BadNodeIdUnknown),
        ]
        session, _ = self.open_session(client)

        nodes = [ua.NodeId.from_string("ns=2;s=A"), ua.NodeId.from_string("ns=2;i=7")]
        results = session.read(nodes, 2000)

        params = client.uaclient.read.call_args[0][0]
        assert params.MaxAge == 2000
        assert params.TimestampsToReturn == ua.TimestampsToReturn.Both
        assert [r.NodeId for r in params.NodesToRead] == nodes
        assert all(r.AttributeId == ua.AttributeIds.Value for r in params.NodesToRead)

        assert results[0] == ReadResult(good=True, status="Good", value=1.5)
        assert not results[1].good
        assert results[1].status == "BadNodeIdUnknown"

    def test_timestamp_policy(self):
        client = MagicMock()
        client.uaclient.read.return_value = []
        session, _ = self.open_session(client)
        session.read([], 0, TimestampPolicy.SOURCE)
        params = client.uaclient.read.call_args[0][0]
        assert params.TimestampsToReturn == ua.TimestampsToReturn.Source

    def test_service_fault_keeps_session(self):
        client = MagicMock()
        client.uaclient.read.side_effect = ua.UaStatusCodeError(ua.StatusCodes.BadTooManyOperations)
        session, _ = self.open_session(client)
        with pytest.raises(RequestError):
            session.read([ua.NodeId(1, 2)], 2000)
        assert session.connected

    def test_transport_failure_reconnects_on_next_read(self):
        client = MagicMock()
        client.uaclient.read.side_effect = [TimeoutError("timed out"), [make_data_value(3)]]
        session, factory = self.open_session(client)

        with pytest.raises(RequestError):
            session.read([ua.NodeId(1, 2)], 2000)
        assert not session.connected

        results = session.read([ua.NodeId(1, 2)], 2000)
        assert results[0].value == 3
        assert session.connected
        assert factory.call_count == 2

    def test_reconnect_gated_by_breaker(self):
        client = MagicMock()
        client.uaclient.read.side_effect = TimeoutError("timed out")
        breaker = CircuitBreaker(
            "test_reconnect",
            failure_threshold=1,
            recovery_timeout=60,
            expected_exception=ServerConnectionError
        )
        session, _ = self.open_session(client, breaker=breaker)

        with pytest.raises(RequestError):
            session.read([ua.NodeId(1, 2)], 2000)

        client.connect.side_effect = OSError("down")
        with pytest.raises(RequestError, match="reconnect failed"):
            session.read([ua.NodeId(1, 2)], 2000)
        assert breaker.state is CircuitState.OPEN

        with pytest.raises(RequestError, match="reconnect suspended"):
            session.read([ua.NodeId(1, 2)], 2000)

    def test_close(self):
        client = MagicMock()
        session, _ = self.open_session(client)
        session.close()
        client.disconnect.assert_called_once()
        assert not session.connected

    def test_read_after_close_does_not_reconnect(self):
        client = MagicMock()
        session, factory = self.open_session(client)
        session.close()

        with pytest.raises(RequestError, match="session closed"):
            session.read([ua.NodeId(1, 2)], 2000)
        assert factory.call_count == 1
        client.uaclient.read.assert_not_called()

    def test_reconnect_setup_failure_is_a_request_error(self):
        client = MagicMock()
        client.uaclient.read.side_effect = TimeoutError("timed out")
        session, factory = self.open_session(client)
        with pytest.raises(RequestError, match="read failed"):
            session.read([ua.NodeId(1, 2)], 2000)

        # Client construction failing during a lazy reconnect
        factory.side_effect = FileNotFoundError("client.der")
        with pytest.raises(RequestError, match="reconnect failed"):
            session.read([ua.NodeId(1, 2)], 2000)
        assert not session.connected
