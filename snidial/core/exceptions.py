"""Custom exceptions for snidial.

All exceptions inherit from SnidialError to allow catching any dialer error.
Key material is never included in exception messages.
"""

from __future__ import annotations

from typing import Any, Optional


class SnidialError(Exception):
    """Base exception for all snidial errors."""


class BundleError(SnidialError):
    """Raised when the credential bundle is malformed or unreadable."""


class DeadlineExceededError(SnidialError):
    """Raised when an operation runs past its deadline."""


class OperationCancelledError(SnidialError):
    """Raised when the caller cancels the deadline of an in‑flight operation."""


class MetadataError(SnidialError):
    """Raised when the proxy metadata cannot be fetched or decoded."""


class MetadataTimeoutError(MetadataError, DeadlineExceededError):
    """Raised when the metadata fetch does not finish before the deadline."""


class ConnectionAttemptError(SnidialError):
    """Base for failures of a single connection attempt through the proxy.

    ``address`` is the proxy address being dialled, ``identity`` the SNI
    identity (``None`` if not yet chosen) and ``state`` the dial state the
    attempt failed in.
    """

    def __init__(
        self,
        message: str,
        *,
        address: Any = None,
        identity: Optional[str] = None,
        state: Any = None,
    ) -> None:
        super().__init__(message)
        self.address = address
        self.identity = identity
        self.state = state


class DialError(ConnectionAttemptError):
    """Raised when the TCP connection to the proxy cannot be opened."""


class DialTimeoutError(DialError, DeadlineExceededError):
    """Raised when the TCP connect runs past its deadline."""


class HandshakeError(ConnectionAttemptError):
    """Raised when TLS negotiation with the proxy fails."""


class HandshakeTimeoutError(HandshakeError, DeadlineExceededError):
    """Raised when the TLS handshake runs past its deadline."""


class VerificationError(ConnectionAttemptError):
    """Raised when the presented chain does not validate against the bundle."""
