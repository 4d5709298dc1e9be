"""
Security vocabulary for OPC UA connections

Closed enumerations for security policy, security mode and user
authentication, plus the server configuration they are resolved from.
Free-form strings from settings are validated here once; everything past
this module works with the enums.
"""
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

from .exceptions import InvalidConfigError

SECURITY_POLICY_URI_PREFIX = "http://opcfoundation.org/UA/SecurityPolicy#"

AUTO = "auto"


class SecurityPolicy(Enum):
    """Security policies a server may advertise"""
    NONE = SECURITY_POLICY_URI_PREFIX + "None"
    BASIC128RSA15 = SECURITY_POLICY_URI_PREFIX + "Basic128Rsa15"
    BASIC256 = SECURITY_POLICY_URI_PREFIX + "Basic256"
    BASIC256SHA256 = SECURITY_POLICY_URI_PREFIX + "Basic256Sha256"
    AES128_SHA256_RSAOAEP = SECURITY_POLICY_URI_PREFIX + "Aes128_Sha256_RsaOaep"
    AES256_SHA256_RSAPSS = SECURITY_POLICY_URI_PREFIX + "Aes256_Sha256_RsaPss"

    @property
    def uri(self) -> str:
        return self.value

    @property
    def short_name(self) -> str:
        return self.value[len(SECURITY_POLICY_URI_PREFIX):]


class SecurityMode(IntEnum):
    """
    Message security modes

    Values match the OPC UA MessageSecurityMode wire values, so the
    ordering is the ordering of protection strength.
    """
    NONE = 1
    SIGN = 2
    SIGN_AND_ENCRYPT = 3

    @property
    def signs(self) -> bool:
        return self is not SecurityMode.NONE


class AuthMode(IntEnum):
    """User identity token types, values match OPC UA UserTokenType"""
    ANONYMOUS = 0
    USERNAME = 1
    CERTIFICATE = 2


_MODE_NAMES = {
    "none": SecurityMode.NONE,
    "sign": SecurityMode.SIGN,
    "signandencrypt": SecurityMode.SIGN_AND_ENCRYPT,
}

_AUTH_NAMES = {
    "anonymous": AuthMode.ANONYMOUS,
    "username": AuthMode.USERNAME,
    "certificate": AuthMode.CERTIFICATE,
}


def resolve_security_policy(value: str) -> Optional[SecurityPolicy]:
    """
    Resolve a configured security policy.

    Returns None for "auto" (unconstrained). Accepts the bare policy name
    (e.g. "Basic256Sha256") or the full policy URI.

    Raises:
        InvalidConfigError: for anything else
    """
    if value == AUTO:
        return None
    uri = value if value.startswith(SECURITY_POLICY_URI_PREFIX) else SECURITY_POLICY_URI_PREFIX + value
    try:
        return SecurityPolicy(uri)
    except ValueError:
        raise InvalidConfigError(f"invalid security policy: {value}") from None


def resolve_security_mode(value: str) -> Optional[SecurityMode]:
    """
    Resolve a configured security mode (case-insensitive).

    Returns None for "auto" (unconstrained).
    """
    key = value.lower()
    if key == AUTO:
        return None
    try:
        return _MODE_NAMES[key]
    except KeyError:
        raise InvalidConfigError(f"invalid security mode: {value}") from None


def resolve_auth_mode(value: str) -> AuthMode:
    """Resolve a configured authentication mode (case-insensitive)"""
    try:
        return _AUTH_NAMES[value.lower()]
    except KeyError:
        raise InvalidConfigError(
            f"invalid auth mode: {value} (expected Anonymous, UserName or Certificate)"
        ) from None


@dataclass(frozen=True)
class ServerConfig:
    """Connection parameters for one OPC UA server"""
    endpoint: str
    security_policy: str = "None"
    security_mode: str = AUTO
    auth_mode: str = "Anonymous"
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "ServerConfig":
        return cls(
            endpoint=settings.endpoint,
            security_policy=settings.security_policy,
            security_mode=settings.security_mode,
            auth_mode=settings.auth_mode,
            cert_path=settings.cert_path or None,
            key_path=settings.key_path or None,
            username=settings.username,
            password=settings.password,
        )

    @property
    def has_certificate(self) -> bool:
        return bool(self.cert_path) and bool(self.key_path)
