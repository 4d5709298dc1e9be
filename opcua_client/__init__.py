"""
OPC UA client side: endpoint negotiation, credentials and sessions.

Quick Start:
    from opcua_client import ServerConfig, discover_endpoints, negotiate_endpoint, build_session

    config = ServerConfig(endpoint="opc.tcp://plc:4840", security_policy="auto")
    negotiated = negotiate_endpoint(config, discover_endpoints(config.endpoint))
    session = build_session(config, negotiated)
"""

from .exceptions import (
    ExporterError,
    InvalidConfigError,
    NoSuitableEndpointError,
    CertificateError,
    ServerConnectionError,
    InvalidNodeIDError,
    RequestError,
)

from .security import (
    AuthMode,
    SecurityMode,
    SecurityPolicy,
    ServerConfig,
)

from .negotiation import (
    EndpointDescriptor,
    NegotiatedEndpoint,
    negotiate_endpoint,
)

from .credentials import (
    CertificateKeyPair,
    load_certificate_key_pair,
)

from .session import (
    OpcuaSession,
    ReadResult,
    Session,
    SessionOptions,
    TimestampPolicy,
    build_session,
    build_session_options,
    discover_endpoints,
)

__all__ = [
    # Errors
    "ExporterError",
    "InvalidConfigError",
    "NoSuitableEndpointError",
    "CertificateError",
    "ServerConnectionError",
    "InvalidNodeIDError",
    "RequestError",

    # Security
    "AuthMode",
    "SecurityMode",
    "SecurityPolicy",
    "ServerConfig",

    # Negotiation
    "EndpointDescriptor",
    "NegotiatedEndpoint",
    "negotiate_endpoint",

    # Credentials
    "CertificateKeyPair",
    "load_certificate_key_pair",

    # Sessions
    "OpcuaSession",
    "ReadResult",
    "Session",
    "SessionOptions",
    "TimestampPolicy",
    "build_session",
    "build_session_options",
    "discover_endpoints",
]
