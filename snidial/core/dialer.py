"""Secure dialer: TCP to the shared SNI proxy, TLS with the backend identity as SNI.

Per call the dialer walks through::

    IDLE → RESOLVING_METADATA → CONNECTING_TCP → HANDSHAKING → VERIFYING
         → ESTABLISHED | FAILED

Metadata is resolved once per dialer (see :class:`MetadataResolver`);
everything after that runs independently per call with no cross‑call locks.
"""

from __future__ import annotations

import _ssl
import enum
import logging
import random
import socket
import ssl
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from snidial.core.allocator import IdentityAllocator
from snidial.core.bundle import Bundle
from snidial.core.deadline import Deadline
from snidial.core.exceptions import (
    DialError,
    DialTimeoutError,
    HandshakeError,
    HandshakeTimeoutError,
    OperationCancelledError,
    SnidialError,
    VerificationError,
)
from snidial.core.metadata import MetadataResolver, ProxyMetadata
from snidial.core.verifier import BundleVerifier, CertificateVerifier

logger = logging.getLogger("snidial.core.dialer")

_DEFAULT_TIMEOUT: float = 10.0


class DialState(enum.Enum):
    IDLE = "idle"
    RESOLVING_METADATA = "resolving metadata"
    CONNECTING_TCP = "connecting"
    HANDSHAKING = "handshaking"
    VERIFYING = "verifying"
    ESTABLISHED = "established"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DialRequest:
    """A connection request; without a target identity one is allocated."""

    target_identity: Optional[str] = None


@dataclass(frozen=True, slots=True)
class EstablishedConnection:
    """Verified TLS connection to one backend, owned by the caller.

    ``disable_coalesce`` is always ``True``: the stream is multiplexed
    through a shared proxy, so drivers must not coalesce requests on the
    assumption of direct addressing.
    """

    conn: ssl.SSLSocket
    address: tuple[str, int]
    identity: str
    disable_coalesce: bool = True


class SecureDialer:
    """Opens verified TLS connections to backends behind an SNI proxy.

    Parameters
    ----------
    bundle:
        Credential bundle (trust store, optional client cert, metadata endpoint).
    timeout:
        Upper bound in seconds for the metadata fetch.
    connect_timeout:
        Upper bound in seconds for TCP connect plus TLS handshake per call.
    coordinator_index:
        Contact point to move to the second position after sorting; see
        :class:`MetadataResolver`.
    cache_metadata:
        ``False`` re‑resolves the metadata on every dial.
    resolver, allocator, verifier:
        Replacement collaborators (mainly for tests).
    transport:
        ``httpx`` transport for the metadata request.

    Thread‑safe: :meth:`dial` may be called from many threads at once.
    """

    def __init__(
        self,
        bundle: Bundle,
        *,
        timeout: Optional[float] = _DEFAULT_TIMEOUT,
        connect_timeout: Optional[float] = _DEFAULT_TIMEOUT,
        coordinator_index: Optional[int] = None,
        cache_metadata: bool = True,
        resolver: Optional[MetadataResolver] = None,
        allocator: Optional[IdentityAllocator] = None,
        verifier: Optional[CertificateVerifier] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._bundle = bundle
        self._connect_timeout = connect_timeout
        self._resolver = resolver or MetadataResolver(
            bundle,
            timeout=timeout,
            coordinator_index=coordinator_index,
            cache=cache_metadata,
            transport=transport,
        )
        self._allocator = allocator or IdentityAllocator()
        self._verifier: CertificateVerifier = verifier or BundleVerifier(bundle)

        # Chain and hostname checks happen in the verifier; the SNI value is
        # a routing token, not the certificate name.
        self._tls_context = bundle.ssl_context()
        self._tls_context.check_hostname = False
        self._tls_context.verify_mode = ssl.CERT_NONE

    # -- properties --------------------------------------------------------

    @property
    def bundle(self) -> Bundle:
        return self._bundle

    @property
    def metadata(self) -> Optional[ProxyMetadata]:
        """Cached proxy metadata, ``None`` until the first successful dial."""
        return self._resolver.cached

    # -- public ------------------------------------------------------------

    def dial(
        self,
        request: Optional[DialRequest] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> EstablishedConnection:
        """Open a verified connection to one backend through the SNI proxy."""
        request = request or DialRequest()
        deadline = deadline or Deadline()

        logger.debug("Dial %s", DialState.IDLE.value)
        try:
            return self._dial(request, deadline)
        except SnidialError as exc:
            logger.debug("Dial %s: %s", DialState.FAILED.value, exc)
            raise

    def dial_host(self, host: Any, *, deadline: Optional[Deadline] = None) -> EstablishedConnection:
        """Dial for a driver node descriptor.

        The descriptor's ``host_id`` attribute, when present and non‑empty,
        is used as the target identity.
        """
        identity = getattr(host, "host_id", None)
        return self.dial(DialRequest(target_identity=identity), deadline=deadline)

    # -- private -----------------------------------------------------------

    def _dial(self, request: DialRequest, deadline: Deadline) -> EstablishedConnection:
        logger.debug("Dial %s", DialState.RESOLVING_METADATA.value)
        metadata = self._resolver.resolve(deadline)

        step = deadline.within(self._connect_timeout)
        family, sockaddr = self._select_address(metadata)
        address = (sockaddr[0], sockaddr[1])

        logger.debug("Dial %s to %s:%d", DialState.CONNECTING_TCP.value, *address)
        sock = self._connect(family, sockaddr, address, step)

        identity = request.target_identity or self._allocator.allocate(metadata.contact_points)

        logger.debug("Dial %s with SNI %s", DialState.HANDSHAKING.value, identity)
        tls = self._handshake(sock, address, identity, step)

        logger.debug("Dial %s peer of %s", DialState.VERIFYING.value, identity)
        self._verify(tls, address, identity)

        tls.settimeout(None)
        logger.debug(
            "Dial %s: node %s through %s:%d",
            DialState.ESTABLISHED.value,
            identity,
            *address,
        )
        return EstablishedConnection(conn=tls, address=address, identity=identity)

    def _select_address(self, metadata: ProxyMetadata) -> tuple[int, tuple[Any, ...]]:
        """Resolve the proxy name and pick one address uniformly at random."""
        try:
            infos = socket.getaddrinfo(
                metadata.proxy_host, metadata.proxy_port, type=socket.SOCK_STREAM
            )
        except OSError as exc:
            raise DialError(
                f"Could not resolve SNI proxy {metadata.sni_proxy_address}: {exc}",
                address=metadata.sni_proxy_address,
                state=DialState.CONNECTING_TCP,
            ) from exc

        candidates = list(dict.fromkeys((family, sockaddr) for family, _, _, _, sockaddr in infos))
        if not candidates:
            raise DialError(
                f"SNI proxy {metadata.sni_proxy_address} resolved to no addresses",
                address=metadata.sni_proxy_address,
                state=DialState.CONNECTING_TCP,
            )
        return random.choice(candidates)

    def _connect(
        self,
        family: int,
        sockaddr: tuple[Any, ...],
        address: tuple[str, int],
        deadline: Deadline,
    ) -> socket.socket:
        timeout = _remaining(deadline, DialState.CONNECTING_TCP, address, None)
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            with deadline.on_cancel(lambda: _abort(sock)):
                sock.connect(sockaddr)
        except TimeoutError as exc:
            sock.close()
            raise DialTimeoutError(
                f"Timed out connecting to SNI proxy {address[0]}:{address[1]}",
                address=address,
                state=DialState.CONNECTING_TCP,
            ) from exc
        except OSError as exc:
            sock.close()
            if deadline.cancelled:
                raise OperationCancelledError(
                    f"Connect to SNI proxy {address[0]}:{address[1]} cancelled"
                ) from exc
            raise DialError(
                f"Error connecting to SNI proxy {address[0]}:{address[1]}: {exc}",
                address=address,
                state=DialState.CONNECTING_TCP,
            ) from exc
        return sock

    def _handshake(
        self,
        sock: socket.socket,
        address: tuple[str, int],
        identity: str,
        deadline: Deadline,
    ) -> ssl.SSLSocket:
        try:
            timeout = _remaining(deadline, DialState.HANDSHAKING, address, identity)
            tls = self._tls_context.wrap_socket(
                sock,
                server_hostname=identity,
                do_handshake_on_connect=False,
            )
        except (OSError, ValueError) as exc:
            sock.close()
            raise HandshakeError(
                f"Could not start TLS to node {identity} through {address[0]}:{address[1]}: {exc}",
                address=address,
                identity=identity,
                state=DialState.HANDSHAKING,
            ) from exc
        except BaseException:
            sock.close()
            raise

        tls.settimeout(timeout)
        try:
            with deadline.on_cancel(lambda: _abort(tls)):
                tls.do_handshake()
        except TimeoutError as exc:
            tls.close()
            raise HandshakeTimeoutError(
                f"Timed out handshaking with node {identity} through {address[0]}:{address[1]}",
                address=address,
                identity=identity,
                state=DialState.HANDSHAKING,
            ) from exc
        except OSError as exc:
            tls.close()
            if deadline.cancelled:
                raise OperationCancelledError(
                    f"Handshake with node {identity} cancelled"
                ) from exc
            raise HandshakeError(
                f"Error connecting to node {identity} through SNI proxy "
                f"{address[0]}:{address[1]}: {exc}",
                address=address,
                identity=identity,
                state=DialState.HANDSHAKING,
            ) from exc
        if deadline.cancelled:
            tls.close()
            raise OperationCancelledError(f"Handshake with node {identity} cancelled")
        return tls

    def _verify(self, tls: ssl.SSLSocket, address: tuple[str, int], identity: str) -> None:
        try:
            self._verifier.verify(_peer_chain(tls))
        except VerificationError as exc:
            tls.close()
            raise VerificationError(
                f"Peer of node {identity} at {address[0]}:{address[1]} rejected: {exc}",
                address=address,
                identity=identity,
                state=DialState.VERIFYING,
            ) from exc
        except BaseException:
            tls.close()
            raise


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _remaining(
    deadline: Deadline,
    state: DialState,
    address: tuple[str, int],
    identity: Optional[str],
) -> Optional[float]:
    """Seconds left for a socket step; raises if the deadline is already spent."""
    if deadline.cancelled:
        raise OperationCancelledError(f"Dial cancelled before {state.value}")
    remaining = deadline.remaining()
    if remaining is not None and remaining <= 0:
        error = DialTimeoutError if state is DialState.CONNECTING_TCP else HandshakeTimeoutError
        raise error(
            f"Deadline exceeded before {state.value} to {address[0]}:{address[1]}",
            address=address,
            identity=identity,
            state=state,
        )
    return remaining


def _peer_chain(tls: ssl.SSLSocket) -> list[bytes]:
    """Return the DER chain presented by the peer, leaf first.

    ``SSLSocket.get_unverified_chain`` is public from Python 3.13; on 3.10
    to 3.12 the same call lives on the underlying ``_sslobj`` and yields
    certificate objects rather than DER bytes.
    """
    get_chain = getattr(tls, "get_unverified_chain", None)
    if get_chain is None:
        get_chain = getattr(tls._sslobj, "get_unverified_chain", None)
    if get_chain is not None:
        chain = get_chain()
        if chain:
            return [_der(cert) for cert in chain]
    leaf = tls.getpeercert(binary_form=True)
    return [leaf] if leaf else []


def _der(cert: Any) -> bytes:
    if isinstance(cert, bytes):
        return cert
    return cert.public_bytes(_ssl.ENCODING_DER)


def _abort(sock: socket.socket) -> None:
    # Shutdown only: it wakes the blocked call, which then closes the socket.
    # The base class method leaves an SSLSocket's TLS object in place.
    try:
        socket.socket.shutdown(sock, socket.SHUT_RDWR)
    except OSError:
        pass
