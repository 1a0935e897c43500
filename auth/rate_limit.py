"""
auth/rate_limit.py -- In-process, per-identifier login attempt limiter.

Each identifier (normally the client IP) owns one record:
    attempts  -- failed attempts counted in the current window
    reset_at  -- monotonic timestamp at which the window ends

Only failures are recorded (by the caller). allowed() is a pure read: an
elapsed window makes the identifier allowed again, but the stale record is
left for record_attempt() to restart or for purge_expired() to sweep.

Thread safety:
  FastAPI runs sync route handlers on a threadpool, so several requests for
  the same identifier can hit the limiter at once. Every operation takes the
  same lock; a read-modify-write in record_attempt() can never interleave with
  another one and lose an update.

Memory:
  Records for identifiers that stop retrying would otherwise live forever.
  purge_expired() drops every record whose window has elapsed; the API
  lifespan calls it on a timer (see api/main.py::_sweep_loop).

State is per process. Running several workers gives each its own limiter.

Layer rule: stdlib only.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class _AttemptRecord:
    attempts: int
    reset_at: float


class RateLimiter:
    """Sliding attempt counter keyed by an arbitrary identifier string.

    Usage:
        limiter = RateLimiter(window_seconds=60)
        if not limiter.allowed(ip, max_attempts=5, window_seconds=60):
            ...reject...
        limiter.record_attempt(ip)   # on failure
        limiter.reset(ip)            # on success
    """

    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._records: dict[str, _AttemptRecord] = {}
        self._lock = threading.Lock()

    def allowed(self, identifier: str, max_attempts: int, window_seconds: int | None = None) -> bool:
        """Return True if another attempt may proceed for this identifier.

        window_seconds is accepted for call-site symmetry with the login
        policy; the window length itself is fixed when the record is created
        by record_attempt().
        """
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                return True
            if self._clock() >= record.reset_at:
                return True
            return record.attempts < max_attempts

    def record_attempt(self, identifier: str, window_seconds: int | None = None) -> None:
        """Count one failed attempt, starting a new window if needed."""
        window = window_seconds if window_seconds is not None else self.window_seconds
        with self._lock:
            now = self._clock()
            record = self._records.get(identifier)
            if record is None or now >= record.reset_at:
                self._records[identifier] = _AttemptRecord(attempts=1, reset_at=now + window)
            else:
                record.attempts += 1

    def reset(self, identifier: str) -> None:
        """Forget the identifier entirely (called after a successful login)."""
        with self._lock:
            self._records.pop(identifier, None)

    def attempts(self, identifier: str) -> int:
        """Return the attempt count currently on record (0 if none)."""
        with self._lock:
            record = self._records.get(identifier)
            return record.attempts if record is not None else 0

    def retry_after(self, identifier: str) -> int:
        """Seconds until the identifier's window ends, rounded up (0 if none)."""
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                return 0
            remaining = record.reset_at - self._clock()
        return max(0, math.ceil(remaining))

    def purge_expired(self) -> int:
        """Delete every record whose window has elapsed. Returns rows removed."""
        with self._lock:
            now = self._clock()
            stale = [key for key, record in self._records.items() if now >= record.reset_at]
            for key in stale:
                del self._records[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
