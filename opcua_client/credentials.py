"""
Client certificate and private key loading

OPC UA signs and encrypts with RSA, so the pair must be an RSA key and a
certificate for the same public key. Both PEM and DER encodings are
accepted; OPC UA tooling commonly produces DER certificates.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from logger import get_logger

from .exceptions import CertificateError

logger = get_logger(__name__)

_PEM_MARKER = b"-----BEGIN"


@dataclass(frozen=True)
class CertificateKeyPair:
    """A parsed client certificate and its RSA private key"""
    cert_path: str
    key_path: str
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


def _read(path: str, what: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise CertificateError(f"cannot read {what} file {path}", original_error=e) from e


def _parse_certificate(data: bytes, path: str) -> x509.Certificate:
    try:
        if _PEM_MARKER in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise CertificateError(f"cannot parse certificate {path}", original_error=e) from e


def _parse_private_key(data: bytes, path: str, password: Optional[bytes]):
    try:
        if _PEM_MARKER in data:
            return serialization.load_pem_private_key(data, password=password)
        return serialization.load_der_private_key(data, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CertificateError(f"cannot parse private key {path}", original_error=e) from e


def load_certificate_key_pair(
    cert_path: str,
    key_path: str,
    password: Optional[str] = None
) -> CertificateKeyPair:
    """
    Load and check a certificate/private key pair.

    Args:
        cert_path: Path to the client certificate (PEM or DER)
        key_path: Path to the private key (PEM or DER)
        password: Optional private key password

    Returns:
        CertificateKeyPair

    Raises:
        CertificateError: file unreadable, content unparsable, key not RSA,
            or certificate not matching the key
    """
    certificate = _parse_certificate(_read(cert_path, "certificate"), cert_path)
    private_key = _parse_private_key(
        _read(key_path, "private key"),
        key_path,
        password.encode() if password else None
    )

    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise CertificateError(
            f"private key {key_path} is {type(private_key).__name__}, an RSA key is required"
        )

    public_key = certificate.public_key()
    if (
        not isinstance(public_key, rsa.RSAPublicKey)
        or public_key.public_numbers() != private_key.public_key().public_numbers()
    ):
        raise CertificateError(f"certificate {cert_path} does not match private key {key_path}")

    pair = CertificateKeyPair(
        cert_path=cert_path,
        key_path=key_path,
        certificate=certificate,
        private_key=private_key,
    )
    logger.debug(f"Loaded client certificate {pair.subject}")
    return pair
