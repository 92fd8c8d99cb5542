"""snidial — TLS dialer for databases behind a shared SNI‑routing proxy.

Quick start::

    from snidial import DialRequest, new_dialer

    dialer = new_dialer("ca.crt", "db.example.com", 29080,
                        cert_file="cert", key_file="key")

    # Round‑robin over the contact points advertised by the metadata service
    conn = dialer.dial().conn

    # Or target a specific backend
    conn = dialer.dial(DialRequest(target_identity="uuid-2")).conn
"""

from __future__ import annotations

import logging
from typing import Optional

from snidial.core import (
    Bundle,
    BundleError,
    BundleVerifier,
    CertificateVerifier,
    ConnectionAttemptError,
    Deadline,
    DeadlineExceededError,
    DialError,
    DialRequest,
    DialState,
    DialTimeoutError,
    EstablishedConnection,
    HandshakeError,
    HandshakeTimeoutError,
    IdentityAllocator,
    MetadataError,
    MetadataResolver,
    MetadataTimeoutError,
    OperationCancelledError,
    ProxyMetadata,
    SecureDialer,
    SnidialError,
    VerificationError,
)

logger = logging.getLogger("snidial")

_DEFAULT_TIMEOUT: float = 10.0


def new_dialer(
    ca_file: str,
    host: str,
    port: int,
    *,
    cert_file: Optional[str] = None,
    key_file: Optional[str] = None,
    logical_hostname: Optional[str] = None,
    timeout: Optional[float] = _DEFAULT_TIMEOUT,
    coordinator_index: Optional[int] = None,
) -> SecureDialer:
    """Create a dialer from credential files on disk.

    Parameters
    ----------
    ca_file : str
        PEM file with the root certificate(s) of the bundle.
    host : str
        Host of the metadata endpoint.
    port : int
        Port of the metadata endpoint.
    cert_file, key_file : str, optional
        Client certificate and key for mutual TLS.
    logical_hostname : str, optional
        Name backend certificates are verified against (default: *host*).
    timeout : float, optional
        Metadata fetch timeout in seconds (default: 10).
    coordinator_index : int, optional
        Contact point to move to the second position after sorting.

    Returns
    -------
    SecureDialer
        Dialer that resolves metadata lazily on the first ``dial()``.

    Raises
    ------
    BundleError
        If the credential material cannot be read or is malformed.
    """
    bundle = Bundle.from_files(
        ca_file,
        host,
        port,
        cert_file=cert_file,
        key_file=key_file,
        logical_hostname=logical_hostname,
    )
    logger.debug("Dialer created for metadata endpoint %s:%d", host, port)
    return SecureDialer(bundle, timeout=timeout, coordinator_index=coordinator_index)


__all__ = [
    # Convenience functions
    "new_dialer",
    # Core
    "Bundle",
    "MetadataResolver",
    "ProxyMetadata",
    "IdentityAllocator",
    "CertificateVerifier",
    "BundleVerifier",
    "SecureDialer",
    "DialRequest",
    "DialState",
    "EstablishedConnection",
    "Deadline",
    # Exceptions
    "SnidialError",
    "BundleError",
    "MetadataError",
    "MetadataTimeoutError",
    "DeadlineExceededError",
    "OperationCancelledError",
    "ConnectionAttemptError",
    "DialError",
    "DialTimeoutError",
    "HandshakeError",
    "HandshakeTimeoutError",
    "VerificationError",
]

__version__ = "0.1.0"
