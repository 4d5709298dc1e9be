"""
OPC UA session building and the long-lived session handle

Turns a negotiated endpoint and the server configuration into client
options, opens the session, and wraps the ``opcua`` client behind the one
operation the poller needs: a batched read.

Session policy is fixed regardless of configuration: 10 minute session
lifetime, 5 second request timeout, automatic reconnection. Reconnection is
lazy: a failed read marks the session disconnected and the next read
reconnects first, gated by a circuit breaker so a dead server fails fast.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence
import threading

from opcua import Client, ua

from circuit_breaker import CircuitBreaker, CircuitBreakerError
from logger import get_logger

from .credentials import CertificateKeyPair, load_certificate_key_pair
from .exceptions import (
    CertificateError,
    InvalidConfigError,
    RequestError,
    ServerConnectionError,
)
from .negotiation import EndpointDescriptor, NegotiatedEndpoint
from .security import AuthMode, SecurityMode, SecurityPolicy, ServerConfig

logger = get_logger(__name__)

SESSION_LIFETIME_MS = 10 * 60 * 1000
REQUEST_TIMEOUT_SECONDS = 5
AUTO_RECONNECT = True

# Policies python-opcua can drive
SUPPORTED_POLICIES = frozenset({
    SecurityPolicy.BASIC128RSA15,
    SecurityPolicy.BASIC256,
    SecurityPolicy.BASIC256SHA256,
})

_MODE_STRINGS = {
    SecurityMode.SIGN: "Sign",
    SecurityMode.SIGN_AND_ENCRYPT: "SignAndEncrypt",
}


class TimestampPolicy(Enum):
    """Which timestamps the server returns with each value"""
    SOURCE = "source"
    SERVER = "server"
    BOTH = "both"
    NEITHER = "neither"

    def to_ua(self):
        return {
            TimestampPolicy.SOURCE: ua.TimestampsToReturn.Source,
            TimestampPolicy.SERVER: ua.TimestampsToReturn.Server,
            TimestampPolicy.BOTH: ua.TimestampsToReturn.Both,
            TimestampPolicy.NEITHER: ua.TimestampsToReturn.Neither,
        }[self]


@dataclass(frozen=True)
class ReadResult:
    """Outcome of reading one node"""
    good: bool
    status: str
    value: Any = None
    source_timestamp: Optional[datetime] = None
    server_timestamp: Optional[datetime] = None

    @classmethod
    def from_data_value(cls, data_value) -> "ReadResult":
        status = data_value.StatusCode
        variant = data_value.Value
        return cls(
            good=status is None or status.is_good(),
            status="Good" if status is None else status.name,
            value=variant.Value if variant is not None else None,
            source_timestamp=data_value.SourceTimestamp,
            server_timestamp=data_value.ServerTimestamp,
        )


class Session(ABC):
    """A connected session able to serve batched reads"""

    @abstractmethod
    def read(
        self,
        node_ids: Sequence[Any],
        max_age_ms: float,
        timestamps: TimestampPolicy = TimestampPolicy.BOTH
    ) -> List[ReadResult]:
        """
        Read the value attribute of every node in one request.

        Returns one ReadResult per requested node, in request order.

        Raises:
            RequestError: the request failed as a whole
        """

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    def close(self):
        """Release the session"""


@dataclass(frozen=True)
class SessionOptions:
    """Everything needed to open a client against the negotiated endpoint"""
    endpoint_url: str
    auth_mode: AuthMode
    security_mode: SecurityMode
    security_policy: SecurityPolicy
    credentials: Optional[CertificateKeyPair] = None
    username: Optional[str] = None
    password: Optional[str] = None
    session_lifetime_ms: int = SESSION_LIFETIME_MS
    request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    auto_reconnect: bool = AUTO_RECONNECT

    @property
    def security_string(self) -> Optional[str]:
        """python-opcua security string, None when the channel is unsecured"""
        if not self.security_mode.signs:
            return None
        return ",".join([
            self.security_policy.short_name,
            _MODE_STRINGS[self.security_mode],
            self.credentials.cert_path,
            self.credentials.key_path,
        ])


def discover_endpoints(
    url: str,
    client_factory: Callable[..., Any] = Client,
    timeout: float = REQUEST_TIMEOUT_SECONDS
) -> List[EndpointDescriptor]:
    """
    Ask the server for its endpoints.

    Raises:
        ServerConnectionError: the server could not be reached
    """
    client = client_factory(url, timeout=timeout)
    try:
        descriptions = client.connect_and_get_server_endpoints()
    except Exception as e:
        raise ServerConnectionError(f"cannot discover endpoints at {url}", original_error=e) from e

    endpoints = [EndpointDescriptor.from_ua(d) for d in descriptions]
    logger.debug(f"Discovered {len(endpoints)} endpoints at {url}")
    return endpoints


def _require_credentials(
    config: ServerConfig,
    credentials: Optional[CertificateKeyPair],
    purpose: str
) -> CertificateKeyPair:
    if credentials is not None:
        return credentials
    if not config.has_certificate:
        raise CertificateError(f"{purpose} requires a certificate and private key")
    return load_certificate_key_pair(config.cert_path, config.key_path)


def build_session_options(
    config: ServerConfig,
    negotiated: NegotiatedEndpoint,
    credentials: Optional[CertificateKeyPair] = None
) -> SessionOptions:
    """
    Resolve the auth and security branches into client options.

    Raises:
        InvalidConfigError: UserName auth without a username, or a policy
            the client library cannot use
        CertificateError: Certificate auth or a signing mode without a
            loadable certificate/key pair
    """
    auth_mode = negotiated.auth_mode
    security_mode = negotiated.security_mode
    security_policy = negotiated.security_policy

    if auth_mode is AuthMode.USERNAME and not config.username:
        raise InvalidConfigError("auth mode UserName requires a username")

    if auth_mode is AuthMode.CERTIFICATE:
        credentials = _require_credentials(config, credentials, "auth mode Certificate")

    if security_mode.signs:
        credentials = _require_credentials(
            config, credentials, f"security mode {security_mode.name}"
        )
        if security_policy not in SUPPORTED_POLICIES:
            raise InvalidConfigError(
                f"security policy {negotiated.endpoint.security_policy_uri} is not supported by the client"
            )
    else:
        logger.warning("Security mode is None: traffic to the OPC UA server is neither signed nor encrypted")
        security_policy = SecurityPolicy.NONE

    return SessionOptions(
        endpoint_url=config.endpoint,
        auth_mode=auth_mode,
        security_mode=security_mode,
        security_policy=security_policy,
        credentials=credentials,
        username=config.username if auth_mode is AuthMode.USERNAME else None,
        password=config.password if auth_mode is AuthMode.USERNAME else None,
    )


def configure_client(client, options: SessionOptions):
    """Apply session options to an unconnected ``opcua.Client``"""
    client.session_timeout = options.session_lifetime_ms

    security = options.security_string
    if security:
        client.set_security_string(security)

    if options.auth_mode is AuthMode.USERNAME:
        client.set_user(options.username)
        if options.password:
            client.set_password(options.password)
    elif options.auth_mode is AuthMode.CERTIFICATE:
        client.load_client_certificate(options.credentials.cert_path)
        client.load_private_key(options.credentials.key_path)


class OpcuaSession(Session):
    """
    Session backed by ``opcua.Client``

    Reads are serialized; the client is not meant to carry concurrent
    requests from several scrapes at once.
    """

    def __init__(
        self,
        options: SessionOptions,
        client_factory: Callable[..., Any] = Client,
        breaker: Optional[CircuitBreaker] = None
    ):
        self.options = options
        self._client_factory = client_factory
        self._client = None
        self._connected = False
        self._closed = False
        self._lock = threading.Lock()
        self._breaker = breaker or CircuitBreaker(
            "opcua_reconnect",
            expected_exception=ServerConnectionError
        )

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def endpoint_url(self) -> str:
        return self.options.endpoint_url

    def open(self):
        """Open the session. Raises ServerConnectionError."""
        with self._lock:
            self._connect()
            self._closed = False

    def _connect(self):
        try:
            client = self._client_factory(
                self.options.endpoint_url,
                timeout=self.options.request_timeout_seconds
            )
            configure_client(client, self.options)
            client.connect()
        except Exception as e:
            raise ServerConnectionError(
                f"cannot connect to {self.options.endpoint_url}", original_error=e
            ) from e

        self._client = client
        self._connected = True
        logger.info(
            f"Connected to {self.options.endpoint_url} "
            f"({self.options.security_policy.short_name}, {self.options.security_mode.name}, "
            f"{self.options.auth_mode.name})"
        )

    def _disconnect(self):
        client, self._client = self._client, None
        self._connected = False
        if client is None:
            return
        try:
            client.disconnect()
        except Exception as e:
            logger.warning(f"Error closing OPC UA session: {e}")

    def _reconnect(self):
        logger.info(f"Reconnecting to {self.options.endpoint_url}")
        self._disconnect()
        self._connect()

    def read(
        self,
        node_ids: Sequence[Any],
        max_age_ms: float,
        timestamps: TimestampPolicy = TimestampPolicy.BOTH
    ) -> List[ReadResult]:
        params = ua.ReadParameters()
        params.MaxAge = max_age_ms
        params.TimestampsToReturn = timestamps.to_ua()
        for node_id in node_ids:
            read_value = ua.ReadValueId()
            read_value.NodeId = node_id
            read_value.AttributeId = ua.AttributeIds.Value
            params.NodesToRead.append(read_value)

        with self._lock:
            if self._closed:
                raise RequestError("session closed")
            if not self._connected:
                if not self.options.auto_reconnect:
                    raise RequestError("session is not connected")
                try:
                    self._breaker.call(self._reconnect)
                except CircuitBreakerError as e:
                    raise RequestError("reconnect suspended", original_error=e) from e
                except ServerConnectionError as e:
                    raise RequestError("reconnect failed", original_error=e) from e

            try:
                data_values = self._client.uaclient.read(params)
            except ua.UaStatusCodeError as e:
                # Service fault, the channel itself is still usable
                raise RequestError("read rejected by server", original_error=e) from e
            except Exception as e:
                self._connected = False
                raise RequestError("read failed", original_error=e) from e

        return [ReadResult.from_data_value(dv) for dv in data_values]

    def close(self):
        with self._lock:
            self._closed = True
            self._disconnect()
        logger.info(f"Closed session to {self.options.endpoint_url}")


def build_session(
    config: ServerConfig,
    negotiated: NegotiatedEndpoint,
    credentials: Optional[CertificateKeyPair] = None,
    client_factory: Callable[..., Any] = Client,
    breaker: Optional[CircuitBreaker] = None
) -> OpcuaSession:
    """
    Build options for the negotiated endpoint and open the session.

    Raises:
        InvalidConfigError, CertificateError: from option building
        ServerConnectionError: the session could not be opened
    """
    options = build_session_options(config, negotiated, credentials)
    session = OpcuaSession(options, client_factory=client_factory, breaker=breaker)
    session.open()
    return session
