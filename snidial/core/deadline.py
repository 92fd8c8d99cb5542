"""Deadlines and cancellation for blocking network calls.

A :class:`Deadline` bundles an absolute expiry (monotonic clock) with a
cancel signal that can be shared between a parent deadline and the tighter
child deadlines derived from it via :meth:`Deadline.within`.  Blocking
socket work registers an abort callback with :meth:`Deadline.on_cancel` so a
cancel from another thread unblocks it instead of waiting for the timeout.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

logger = logging.getLogger("snidial.core.deadline")

# Upper bound on how long wait() sleeps before re‑checking for cancellation.
_POLL_INTERVAL: float = 0.05


class _CancelSignal:
    """One‑shot cancel flag with callbacks, shared by related deadlines."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def register(self, callback: Callable[[], None]) -> bool:
        """Register *callback*; returns ``False`` if already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._callbacks.append(callback)
            return True

    def unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass


class Deadline:
    """Expiry time plus cancel signal for one logical operation.

    Parameters
    ----------
    timeout:
        Seconds from now until the deadline expires.  ``None`` never expires
        (the deadline can still be cancelled).
    """

    __slots__ = ("_expires_at", "_signal")

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._expires_at: Optional[float] = (
            None if timeout is None else time.monotonic() + timeout
        )
        self._signal = _CancelSignal()

    # -- properties --------------------------------------------------------

    @property
    def expires_at(self) -> Optional[float]:
        return self._expires_at

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self._signal.is_set

    # -- public ------------------------------------------------------------

    def remaining(self) -> Optional[float]:
        """Seconds left before expiry, never negative; ``None`` if unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def within(self, timeout: Optional[float]) -> Deadline:
        """Return a child deadline that is at most *timeout* seconds long.

        The child shares this deadline's cancel signal, so cancelling either
        one cancels both.
        """
        child = Deadline.__new__(Deadline)
        child._signal = self._signal
        child._expires_at = self._expires_at
        if timeout is not None:
            candidate = time.monotonic() + timeout
            if child._expires_at is None or candidate < child._expires_at:
                child._expires_at = candidate
        return child

    def cancel(self) -> None:
        """Cancel the deadline and abort operations registered on it."""
        logger.debug("Deadline cancelled")
        self._signal.set()

    def wait(self, event: threading.Event) -> bool:
        """Block until *event* is set, the deadline expires or it is cancelled.

        Returns ``True`` only if *event* was set.
        """
        while not self.cancelled:
            remaining = self.remaining()
            if remaining is None:
                step = _POLL_INTERVAL
            elif remaining <= 0:
                return event.is_set()
            else:
                step = min(remaining, _POLL_INTERVAL)
            if event.wait(step):
                return True
        return event.is_set()

    def acquire(self, lock: threading.Lock) -> bool:
        """Acquire *lock* unless the deadline expires or is cancelled first.

        Returns ``True`` if the lock was acquired; the caller must release it.
        """
        while not self.cancelled:
            remaining = self.remaining()
            if remaining is None:
                step = _POLL_INTERVAL
            elif remaining <= 0:
                return lock.acquire(blocking=False)
            else:
                step = min(remaining, _POLL_INTERVAL)
            if lock.acquire(timeout=step):
                return True
        return False

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        """Run *callback* if the deadline is cancelled while the block runs.

        If the deadline is already cancelled the callback runs immediately.
        """
        if not self._signal.register(callback):
            callback()
        try:
            yield
        finally:
            self._signal.unregister(callback)
