"""
Exporter Exception Hierarchy

Classifies failures by where they may occur and what they are allowed to
break: startup failures terminate the process, reload failures leave the
previous metric cache in place, poll failures degrade a scrape.
"""
from typing import Optional


class ExporterError(Exception):
    """
    Base class for exporter errors

    Attributes:
        message: Human-readable error message
        original_error: Original exception if wrapped
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self):
        if self.original_error is not None:
            return f"{self.message}: {self.original_error}"
        return self.message


class InvalidConfigError(ExporterError):
    """
    Bad policy/mode/auth string or missing required field

    Fatal at startup; at runtime it rejects the reload that raised it.
    """


class NoSuitableEndpointError(ExporterError):
    """No server endpoint satisfies the requested security and auth"""


class CertificateError(ExporterError):
    """Certificate or private key unreadable, unparsable or of the wrong type"""


class ServerConnectionError(ExporterError):
    """Discovery or initial session open failed"""


class InvalidNodeIDError(ExporterError):
    """A metric node identifier could not be parsed. Aborts only that reload."""


class RequestError(ExporterError):
    """A batched read failed as a whole. Degrades that poll round."""
