"""Proxy metadata resolution.

MetadataResolver — fetches the SNI proxy address and the backend contact
points from the bundle's HTTPS metadata endpoint and caches them.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Optional

import httpx

from snidial.core.bundle import Bundle
from snidial.core.deadline import Deadline
from snidial.core.exceptions import (
    MetadataError,
    MetadataTimeoutError,
    OperationCancelledError,
)

logger = logging.getLogger("snidial.core.metadata")

# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------

_METADATA_PATH = "/metadata"

_DEFAULT_TIMEOUT: float = 10.0


@dataclass(frozen=True, slots=True)
class ProxyMetadata:
    """Resolved SNI proxy address and the contact points behind it."""

    sni_proxy_address: str
    contact_points: tuple[str, ...]
    version: Optional[int] = None
    region: Optional[str] = None
    local_dc: Optional[str] = None

    @property
    def proxy_host(self) -> str:
        return split_host_port(self.sni_proxy_address)[0]

    @property
    def proxy_port(self) -> int:
        return split_host_port(self.sni_proxy_address)[1]


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises ``ValueError`` if the port is missing or not a valid number.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {address!r}")
    number = int(port)
    if not 0 < number < 65536:
        raise ValueError(f"port out of range in address {address!r}")
    return host, number


def parse_metadata(data: Any) -> ProxyMetadata:
    """Build :class:`ProxyMetadata` from the decoded metadata document.

    Raises ``ValueError`` for any document that does not have the expected
    shape.
    """
    if not isinstance(data, dict):
        raise ValueError("metadata document is not an object")
    info = data.get("contact_info")
    if not isinstance(info, dict):
        raise ValueError("missing contact_info object")

    address = info.get("sni_proxy_address")
    if not isinstance(address, str) or not address:
        raise ValueError("missing sni_proxy_address")
    split_host_port(address)

    points = info.get("contact_points")
    if not isinstance(points, list) or not points:
        raise ValueError("contact_points must be a non-empty list")
    if not all(isinstance(p, str) and p for p in points):
        raise ValueError("contact_points must only contain non-empty strings")

    version = data.get("version")
    if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
        raise ValueError("version must be an integer")

    return ProxyMetadata(
        sni_proxy_address=address,
        contact_points=tuple(points),
        version=version,
        region=data.get("region"),
        local_dc=info.get("local_dc"),
    )


def rotate_contact_points(points: tuple[str, ...], index: int) -> tuple[str, ...]:
    """Sort *points* and swap the entry at *index* (mod len) into slot 1."""
    if len(points) < 2:
        return points
    ordered = sorted(points)
    idx = index % len(ordered)
    ordered[idx], ordered[1] = ordered[1], ordered[idx]
    return tuple(ordered)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class MetadataResolver:
    """Resolves the SNI proxy address and contact points for a bundle.

    The result is cached for the lifetime of the resolver instance.  There is
    no TTL: if the proxy topology changes a new resolver is required, or the
    resolver must be built with ``cache=False`` to fetch on every call.

    Thread‑safe.  The lock is held for the whole first fetch, so concurrent
    first callers wait for it and then share the cached value instead of
    issuing their own requests.  A waiting caller still honours its own
    deadline and cancel signal.

    Parameters
    ----------
    bundle:
        Credential bundle describing the metadata endpoint and its trust.
    timeout:
        Upper bound in seconds for one metadata fetch.
    coordinator_index:
        When set, contact points are sorted and the one at this index is
        moved to the second position.
    cache:
        Set to ``False`` to re‑fetch on every :meth:`resolve` call.
    transport:
        Optional ``httpx`` transport, mainly for tests.
    """

    def __init__(
        self,
        bundle: Bundle,
        *,
        timeout: Optional[float] = _DEFAULT_TIMEOUT,
        coordinator_index: Optional[int] = None,
        cache: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._bundle = bundle
        self._timeout = timeout
        self._coordinator_index = coordinator_index
        self._cache_enabled = cache
        self._transport = transport
        self._url = f"https://{bundle.host}:{bundle.port}{_METADATA_PATH}"

        self._cached: Optional[ProxyMetadata] = None
        self._lock = threading.Lock()

    # -- properties --------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def cached(self) -> Optional[ProxyMetadata]:
        return self._cached

    # -- public ------------------------------------------------------------

    def resolve(self, deadline: Optional[Deadline] = None) -> ProxyMetadata:
        """Return the proxy metadata, fetching it if not cached yet."""
        cached = self._cached
        if cached is not None:
            return cached

        deadline = (deadline or Deadline()).within(self._timeout)
        if not deadline.acquire(self._lock):
            if deadline.cancelled:
                raise OperationCancelledError(f"Metadata resolution from {self._url} cancelled")
            raise MetadataTimeoutError(
                f"Timed out waiting for in-flight metadata resolution from {self._url}"
            )
        try:
            if self._cached is not None:
                return self._cached

            metadata = self._fetch(deadline)

            if self._cache_enabled:
                self._cached = metadata
            return metadata
        finally:
            self._lock.release()

    # -- private -----------------------------------------------------------

    def _fetch(self, deadline: Deadline) -> ProxyMetadata:
        logger.debug("Fetching proxy metadata from %s", self._url)

        # The request runs on a worker so a stuck peer cannot hold the caller
        # past the deadline; a timed out worker is abandoned.
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def _run() -> None:
            try:
                outcome["response"] = self._request(deadline)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        worker = threading.Thread(target=_run, name="snidial-metadata", daemon=True)
        worker.start()

        if not deadline.wait(done):
            if deadline.cancelled:
                raise OperationCancelledError(f"Metadata fetch from {self._url} cancelled")
            raise MetadataTimeoutError(f"Timed out fetching metadata from {self._url}")

        if "error" in outcome:
            raise outcome["error"]
        status, body = outcome["response"]

        if status != 200:
            raise MetadataError(
                f"Metadata endpoint {self._url} returned HTTP {status}: {body[:512]!r}"
            )

        try:
            metadata = parse_metadata(json.loads(body))
        except ValueError as exc:
            raise MetadataError(
                f"Unable to decode metadata from {self._url}: {exc}, "
                f"received body: {body[:512]!r}, http code: {status}"
            ) from exc

        logger.info(
            "Contact points from metadata endpoint -> %s", ",".join(metadata.contact_points)
        )
        if self._coordinator_index is not None and len(metadata.contact_points) > 1:
            points = rotate_contact_points(metadata.contact_points, self._coordinator_index)
            metadata = replace(metadata, contact_points=points)
            logger.info(
                "Contact points after moving index %d to second position -> %s",
                self._coordinator_index,
                ",".join(points),
            )

        logger.debug("Resolved SNI proxy → %s", metadata.sni_proxy_address)
        return metadata

    def _request(self, deadline: Deadline) -> tuple[int, bytes]:
        timeout = deadline.remaining()
        try:
            with httpx.Client(
                verify=self._bundle.ssl_context(),
                timeout=timeout,
                transport=self._transport,
            ) as client:
                resp = client.get(self._url)
        except httpx.HTTPError as exc:
            raise MetadataError(f"Unable to get metadata from {self._url}: {exc}") from exc
        return resp.status_code, resp.content
