"""snidial core — building blocks of the secure multi‑tenant dialer.

* Bundle — immutable credential material (roots, client cert, endpoint)
* MetadataResolver — fetches and caches the SNI proxy address and contact points
* IdentityAllocator — round‑robin assignment of backend identities
* BundleVerifier — manual chain verification against the bundle roots
* SecureDialer — TCP to the proxy, TLS with the identity as SNI, verification
* Deadline — timeout plus cancel signal accepted by every network call
* Exception hierarchy — all snidial errors
"""

from __future__ import annotations

from snidial.core.allocator import IdentityAllocator
from snidial.core.bundle import Bundle
from snidial.core.deadline import Deadline
from snidial.core.dialer import DialRequest, DialState, EstablishedConnection, SecureDialer
from snidial.core.exceptions import (
    BundleError,
    ConnectionAttemptError,
    DeadlineExceededError,
    DialError,
    DialTimeoutError,
    HandshakeError,
    HandshakeTimeoutError,
    MetadataError,
    MetadataTimeoutError,
    OperationCancelledError,
    SnidialError,
    VerificationError,
)
from snidial.core.metadata import MetadataResolver, ProxyMetadata
from snidial.core.verifier import BundleVerifier, CertificateVerifier

__all__ = [
    # Credentials
    "Bundle",
    # Resolution
    "MetadataResolver",
    "ProxyMetadata",
    # Allocation
    "IdentityAllocator",
    # Verification
    "CertificateVerifier",
    "BundleVerifier",
    # Dialer
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
