"""Shared fixtures: throwaway PKI, metadata transports and a local SNI server."""

from __future__ import annotations

import ipaddress
import json
import queue
import socket
import ssl
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from snidial import Bundle

LOGICAL_HOSTNAME = "db.example.com"
METADATA_PORT = 29080


# ---------------------------------------------------------------------------
# PKI
# ---------------------------------------------------------------------------


@dataclass
class Issued:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    @property
    def pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    @property
    def der(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.DER)

    @property
    def key_pem(self) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _key_usage(*, ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=ca,
        crl_sign=ca,
        encipher_only=False,
        decipher_only=False,
    )


def _aki(issuer: Issued) -> x509.AuthorityKeyIdentifier:
    ski = issuer.cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
    return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski)


def make_ca(common_name: str, issuer: Optional[Issued] = None, key_ids: bool = True) -> Issued:
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    if issuer is None:
        issuer_name = _name(common_name)
        signing_key = key
        aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key())
    else:
        issuer_name = issuer.cert.subject
        signing_key = issuer.key
        aki = _aki(issuer)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_key_usage(ca=True), critical=True)
    )
    if key_ids:
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        ).add_extension(aki, critical=False)
    cert = builder.sign(signing_key, hashes.SHA256())
    return Issued(cert=cert, key=key)


def make_leaf(
    issuer: Issued,
    *names: str,
    days: int = 30,
    client: bool = False,
    key_ids: bool = True,
) -> Issued:
    """Issue an end-entity certificate for *names*.

    ``client`` issues for client auth instead of server auth; ``key_ids=False``
    leaves out the key identifier extensions.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    sans: list[x509.GeneralName] = []
    for name in names:
        try:
            sans.append(x509.IPAddress(ipaddress.ip_address(name)))
        except ValueError:
            sans.append(x509.DNSName(name))
    usage = ExtendedKeyUsageOID.CLIENT_AUTH if client else ExtendedKeyUsageOID.SERVER_AUTH
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(names[0]))
        .issuer_name(issuer.cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_key_usage(ca=False), critical=True)
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(x509.SubjectAlternativeName(sans), critical=False)
    )
    if key_ids:
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        ).add_extension(_aki(issuer), critical=False)
    cert = builder.sign(issuer.key, hashes.SHA256())
    return Issued(cert=cert, key=key)


@pytest.fixture(scope="session")
def root_ca() -> Issued:
    return make_ca("snidial test root")


@pytest.fixture(scope="session")
def other_ca() -> Issued:
    return make_ca("unrelated root")


@pytest.fixture(scope="session")
def server_leaf(root_ca: Issued) -> Issued:
    return make_leaf(root_ca, LOGICAL_HOSTNAME)


@pytest.fixture
def bundle(root_ca: Issued) -> Bundle:
    return Bundle(host=LOGICAL_HOSTNAME, port=METADATA_PORT, ca_pem=root_ca.pem)


@pytest.fixture
def write_file(tmp_path) -> Callable[[str, bytes], str]:
    def _write(name: str, data: bytes) -> str:
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)

    return _write


# ---------------------------------------------------------------------------
# Metadata endpoint
# ---------------------------------------------------------------------------


class MetadataEndpoint:
    """``httpx.MockTransport`` handler serving a fixed metadata document."""

    def __init__(self, document, status: int = 200, delay: float = 0.0) -> None:
        self.document = document
        self.status = status
        self.delay = delay
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.requests)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        if self.delay:
            threading.Event().wait(self.delay)
        if isinstance(self.document, bytes):
            return httpx.Response(self.status, content=self.document)
        return httpx.Response(self.status, content=json.dumps(self.document).encode())


def metadata_document(address: str, *contact_points: str) -> dict:
    return {
        "version": 1,
        "region": "us-east1",
        "contact_info": {
            "type": "sni_proxy",
            "local_dc": "dc1",
            "sni_proxy_address": address,
            "contact_points": list(contact_points),
        },
    }


# ---------------------------------------------------------------------------
# SNI server
# ---------------------------------------------------------------------------


class SniServer:
    """TLS server on 127.0.0.1 recording the SNI name of every handshake.

    With *client_ca* set the server requires a client certificate issued by
    it and records each one (DER) in :attr:`client_certs`.
    """

    def __init__(self, cert_file: str, key_file: str, client_ca: Optional[bytes] = None) -> None:
        self.server_names: list[Optional[str]] = []
        self.client_certs: queue.Queue[bytes] = queue.Queue()
        self._ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self._ctx.load_cert_chain(cert_file, key_file)
        if client_ca is not None:
            self._ctx.verify_mode = ssl.CERT_REQUIRED
            self._ctx.load_verify_locations(cadata=client_ca.decode())
        self._ctx.sni_callback = self._on_sni

        self._listener = socket.create_server(("127.0.0.1", 0))
        self._listener.settimeout(0.2)
        self.port = self._listener.getsockname()[1]
        self.address = f"127.0.0.1:{self.port}"

        self._running = True
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def _on_sni(self, sslobj, server_name, ctx) -> None:
        self.server_names.append(server_name)

    def _accept_loop(self) -> None:
        while self._running:
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        conn.settimeout(5)
        try:
            with self._ctx.wrap_socket(conn, server_side=True) as tls:
                peer = tls.getpeercert(binary_form=True)
                if peer:
                    self.client_certs.put(peer)
                while tls.recv(1024):
                    pass
        except OSError:
            pass
        finally:
            conn.close()

    def close(self) -> None:
        self._running = False
        self._thread.join(timeout=2)
        self._listener.close()


@pytest.fixture
def sni_server(write_file):
    """Factory starting an :class:`SniServer` presenting *leaf*.

    *chain* certificates are sent after the leaf, in order.
    """
    servers: list[SniServer] = []

    def _start(
        leaf: Issued,
        chain: Sequence[Issued] = (),
        client_ca: Optional[Issued] = None,
    ) -> SniServer:
        pem = leaf.pem + b"".join(cert.pem for cert in chain)
        cert_file = write_file(f"server{len(servers)}.crt", pem)
        key_file = write_file(f"server{len(servers)}.key", leaf.key_pem)
        server = SniServer(cert_file, key_file, client_ca.pem if client_ca else None)
        servers.append(server)
        return server

    yield _start

    for server in servers:
        server.close()


@pytest.fixture
def silent_listener():
    """Listening socket that never accepts nor speaks TLS."""
    listener = socket.create_server(("127.0.0.1", 0), backlog=8)
    yield f"127.0.0.1:{listener.getsockname()[1]}"
    listener.close()


@pytest.fixture
def closed_port() -> str:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"127.0.0.1:{port}"
