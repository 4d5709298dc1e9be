"""
Endpoint negotiation

Picks the one server endpoint the exporter will connect with, given the
configured security policy, security mode and authentication method and the
endpoints the server advertised during discovery.

Selection rules:
- "auto" leaves a dimension unconstrained
- security "None" is all-or-nothing: a None mode forces the None policy
  and a None policy forces the None mode
- among admissible endpoints the highest (security mode, security level)
  pair wins; on exact ties the first endpoint in discovery order is kept
- the winner must accept the requested user token type, there is no
  fallback to a weaker endpoint that would
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple

from logger import get_logger

from .exceptions import NoSuitableEndpointError
from .security import (
    AuthMode,
    SecurityMode,
    SecurityPolicy,
    ServerConfig,
    resolve_auth_mode,
    resolve_security_mode,
    resolve_security_policy,
)

logger = get_logger(__name__)


_VALID_MODES = frozenset(int(m) for m in SecurityMode)


def mode_name(value: int) -> str:
    try:
        return SecurityMode(value).name
    except ValueError:
        return f"INVALID({value})"


@dataclass(frozen=True)
class EndpointDescriptor:
    """One endpoint as advertised by the server"""
    endpoint_url: str
    security_policy_uri: str
    security_mode: int
    security_level: int
    user_token_types: FrozenSet[int] = field(default_factory=frozenset)

    @property
    def rank(self) -> Tuple[int, int]:
        """Ordering key, stronger protection first, then server preference"""
        return (int(self.security_mode), int(self.security_level))

    def supports(self, auth_mode: AuthMode) -> bool:
        return int(auth_mode) in self.user_token_types

    @classmethod
    def from_ua(cls, description) -> "EndpointDescriptor":
        """Convert an ``opcua.ua.EndpointDescription``"""
        tokens = description.UserIdentityTokens or []
        return cls(
            endpoint_url=description.EndpointUrl,
            security_policy_uri=description.SecurityPolicyUri,
            security_mode=int(description.SecurityMode),
            security_level=int(description.SecurityLevel),
            user_token_types=frozenset(int(t.TokenType) for t in tokens),
        )


@dataclass(frozen=True)
class NegotiatedEndpoint:
    """The endpoint to connect with and the auth token type to present"""
    endpoint: EndpointDescriptor
    auth_mode: AuthMode

    def __post_init__(self):
        if not self.endpoint.supports(self.auth_mode):
            raise ValueError(
                f"endpoint {self.endpoint.security_policy_uri} does not accept "
                f"{self.auth_mode.name} tokens"
            )

    @property
    def security_mode(self) -> SecurityMode:
        return SecurityMode(self.endpoint.security_mode)

    @property
    def security_policy(self) -> Optional[SecurityPolicy]:
        try:
            return SecurityPolicy(self.endpoint.security_policy_uri)
        except ValueError:
            return None


def resolve_constraints(
    config: ServerConfig
) -> Tuple[Optional[SecurityPolicy], Optional[SecurityMode]]:
    """
    Resolve the configured policy and mode into constraints.

    None means unconstrained. Security "None" on either side forces both.
    """
    policy = resolve_security_policy(config.security_policy)
    mode = resolve_security_mode(config.security_mode)

    if mode is SecurityMode.NONE or policy is SecurityPolicy.NONE:
        return SecurityPolicy.NONE, SecurityMode.NONE

    return policy, mode


def negotiate_endpoint(
    config: ServerConfig,
    endpoints: Iterable[EndpointDescriptor]
) -> NegotiatedEndpoint:
    """
    Select the endpoint to connect with.

    Args:
        config: Server configuration holding the desired policy/mode/auth
        endpoints: Endpoints in discovery order

    Returns:
        NegotiatedEndpoint for the best admissible endpoint

    Raises:
        InvalidConfigError: unrecognized policy, mode or auth string
        NoSuitableEndpointError: no admissible endpoint, or the best one
            does not accept the requested auth token type
    """
    policy, mode = resolve_constraints(config)
    auth_mode = resolve_auth_mode(config.auth_mode)

    def admissible(candidate: EndpointDescriptor) -> bool:
        # MessageSecurityMode.Invalid is never connectable
        if candidate.security_mode not in _VALID_MODES:
            return False
        if policy is not None and candidate.security_policy_uri != policy.uri:
            return False
        if mode is not None and candidate.security_mode != mode:
            return False
        return True

    best: Optional[EndpointDescriptor] = None
    for candidate in endpoints:
        if not admissible(candidate):
            continue
        if best is None or candidate.rank > best.rank:
            best = candidate

    if best is None:
        raise NoSuitableEndpointError(
            "unable to find suitable server endpoint with selected "
            f"security policy ({config.security_policy}) and mode ({config.security_mode})"
        )

    if not best.supports(auth_mode):
        raise NoSuitableEndpointError(
            f"server does not support {auth_mode.name} authentication on endpoint "
            f"{best.security_policy_uri} ({mode_name(best.security_mode)})"
        )

    logger.info(
        f"Using endpoint {best.endpoint_url}: policy={best.security_policy_uri}, "
        f"mode={mode_name(best.security_mode)}, auth={auth_mode.name}"
    )
    return NegotiatedEndpoint(endpoint=best, auth_mode=auth_mode)
