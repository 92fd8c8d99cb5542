"""Credential bundle: root trust, optional client certificate, proxy coordinates.

The bundle is immutable for the lifetime of the dialer built from it.  It is
validated up front so malformed material fails at construction time with a
:class:`BundleError` rather than on the first connection attempt.
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass
from typing import Optional

from cryptography import x509

from snidial.core.exceptions import BundleError

logger = logging.getLogger("snidial.core.bundle")


@dataclass(frozen=True, slots=True)
class Bundle:
    """Opaque credential material issued by the database provider.

    Parameters
    ----------
    host:
        Host of the metadata endpoint (also the default verification name).
    port:
        Port of the metadata endpoint.
    ca_pem:
        One or more PEM encoded root certificates.
    cert_file, key_file:
        Optional client certificate and private key (PEM files) for mTLS.
    logical_hostname:
        Name the backend certificates are issued for.  Defaults to *host*.
    """

    host: str
    port: int
    ca_pem: bytes
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    logical_hostname: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.host:
            raise BundleError("Bundle host is empty")
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise BundleError(f"Invalid bundle port: {self.port!r}")
        if self.key_file is not None and self.cert_file is None:
            raise BundleError("Bundle has a client key but no client certificate")
        # Both raise BundleError on bad material.
        self.root_certificates()
        self.ssl_context()

    # -- constructors ------------------------------------------------------

    @classmethod
    def from_files(
        cls,
        ca_file: str,
        host: str,
        port: int,
        *,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
        logical_hostname: Optional[str] = None,
    ) -> Bundle:
        """Build a bundle from a CA file and optional client cert/key files."""
        try:
            with open(ca_file, "rb") as fh:
                ca_pem = fh.read()
        except OSError as exc:
            raise BundleError(f"Could not read CA file {ca_file}: {exc}") from exc

        logger.debug("Loaded bundle CA from %s", ca_file)
        return cls(
            host=host,
            port=port,
            ca_pem=ca_pem,
            cert_file=cert_file,
            key_file=key_file,
            logical_hostname=logical_hostname,
        )

    # -- public ------------------------------------------------------------

    @property
    def verify_hostname(self) -> str:
        """Hostname backend certificates are verified against."""
        return self.logical_hostname or self.host

    def root_certificates(self) -> tuple[x509.Certificate, ...]:
        try:
            roots = tuple(x509.load_pem_x509_certificates(self.ca_pem))
        except ValueError as exc:
            raise BundleError(f"Malformed bundle CA certificates: {exc}") from exc
        if not roots:
            raise BundleError("Bundle contains no CA certificates")
        return roots

    def ssl_context(self) -> ssl.SSLContext:
        """Return a new client‑side TLS context trusting the bundle roots."""
        try:
            ctx = ssl.create_default_context(cadata=self.ca_pem.decode("ascii"))
            if self.cert_file is not None:
                ctx.load_cert_chain(certfile=self.cert_file, keyfile=self.key_file)
        except (ssl.SSLError, OSError, ValueError) as exc:
            raise BundleError(f"Could not build TLS context from bundle: {exc}") from exc
        return ctx
