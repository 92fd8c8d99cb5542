"""Round‑robin assignment of backend identities to connection requests."""

from __future__ import annotations

import itertools
import threading
from typing import Sequence


class IdentityAllocator:
    """Hands out contact points in a fixed cyclic order.

    The counter starts at zero, so the first allocation returns the first
    contact point.  ``next()`` on :func:`itertools.count` is atomic under the
    interpreter lock, so concurrent callers never receive the same counter
    value.
    """

    def __init__(self) -> None:
        self._counter = itertools.count()
        self._issued = 0
        self._tally_lock = threading.Lock()

    @property
    def allocations(self) -> int:
        """Number of identities handed out so far."""
        return self._issued

    def allocate(self, contact_points: Sequence[str]) -> str:
        if not contact_points:
            raise ValueError("cannot allocate from an empty contact point list")
        index = next(self._counter)
        with self._tally_lock:
            self._issued += 1
        return contact_points[index % len(contact_points)]
