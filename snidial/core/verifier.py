"""Manual peer certificate verification.

The SNI value sent to the proxy is a routing token (a backend identity), not
a name on the backend certificate, so the TLS layer runs with hostname and
chain checks disabled and the presented chain is verified here instead:
against the bundle roots, for the bundle's logical hostname.
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from cryptography import x509
from cryptography.x509 import verification
from cryptography.x509.verification import Criticality, ExtensionPolicy

from snidial.core.bundle import Bundle
from snidial.core.exceptions import VerificationError

logger = logging.getLogger("snidial.core.verifier")

# Web PKI profile minus the key identifier and CA key usage requirements,
# which many private database CAs do not set.
_CA_POLICY = (
    ExtensionPolicy.webpki_defaults_ca()
    .may_be_present(x509.AuthorityKeyIdentifier, Criticality.AGNOSTIC, None)
    .may_be_present(x509.SubjectKeyIdentifier, Criticality.AGNOSTIC, None)
    .may_be_present(x509.KeyUsage, Criticality.AGNOSTIC, None)
)
_EE_POLICY = ExtensionPolicy.webpki_defaults_ee().may_be_present(
    x509.AuthorityKeyIdentifier, Criticality.AGNOSTIC, None
)


class CertificateVerifier(Protocol):
    """Accepts or rejects a DER encoded chain presented by the peer."""

    def verify(self, chain: Sequence[bytes]) -> None:
        """Return if *chain* is acceptable, raise :class:`VerificationError` otherwise."""


def _subject_for(hostname: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(hostname))
    except ValueError:
        return x509.DNSName(hostname)


class BundleVerifier:
    """Verifies peer chains against a bundle's roots and logical hostname.

    Parameters
    ----------
    bundle:
        Source of the trust store and the expected hostname.
    clock:
        Returns the verification time; defaults to the current UTC time.
    """

    def __init__(
        self,
        bundle: Bundle,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._hostname = bundle.verify_hostname
        self._store = verification.Store(list(bundle.root_certificates()))
        self._subject = _subject_for(self._hostname)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def hostname(self) -> str:
        return self._hostname

    def verify(self, chain: Sequence[bytes]) -> None:
        if not chain:
            raise VerificationError("Peer presented no certificates")

        certs = []
        for der in chain:
            try:
                certs.append(x509.load_der_x509_certificate(der))
            except ValueError as exc:
                raise VerificationError(
                    f"Failed to parse certificate from server: {exc}"
                ) from exc

        leaf, intermediates = certs[0], certs[1:]
        verifier = (
            verification.PolicyBuilder()
            .store(self._store)
            .time(self._clock())
            .extension_policies(ca_policy=_CA_POLICY, ee_policy=_EE_POLICY)
            .build_server_verifier(self._subject)
        )
        try:
            verifier.verify(leaf, intermediates)
        except verification.VerificationError as exc:
            raise VerificationError(
                f"Certificate chain does not verify for {self._hostname}: {exc}"
            ) from exc

        logger.debug("Verified peer chain (%d certs) for %s", len(certs), self._hostname)
