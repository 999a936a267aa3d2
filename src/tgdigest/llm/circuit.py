from __future__ import annotations

import threading
import time
from typing import Callable


class CircuitBreaker:
    """Consecutive-failure breaker: open for ``timeout`` seconds, then half-open.

    A half-open breaker admits a single trial call. Its outcome closes or reopens
    the circuit; a trial call that never reports back frees the slot after ``timeout``.
    """

    def __init__(
        self,
        name: str,
        *,
        threshold: int,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._threshold = max(1, int(threshold))
        self._timeout = float(timeout)
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._open_until: float | None = None
        self._trial_started: float | None = None

    def can_attempt(self) -> bool:
        with self._lock:
            if self._open_until is None:
                return True
            now = self._clock()
            if now < self._open_until:
                return False
            if self._trial_started is not None and now < self._trial_started + self._timeout:
                return False
            self._trial_started = now
            return True

    def is_open(self) -> bool:
        with self._lock:
            return self._open_until is not None and self._clock() < self._open_until

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._open_until = None
            self._trial_started = None

    def record_failure(self) -> bool:
        """Count a failure; returns True when this call opened the circuit."""
        with self._lock:
            now = self._clock()
            if self._open_until is not None and now >= self._open_until:
                # Failed half-open trial.
                self._open_until = now + self._timeout
                self._trial_started = None
                return True
            self._failures += 1
            if self._failures >= self._threshold and self._open_until is None:
                self._open_until = now + self._timeout
                return True
            return False

    @property
    def failures(self) -> int:
        return self._failures
