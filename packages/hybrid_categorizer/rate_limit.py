"""Injectable quota and admission services.

- :class:`RateBudget` is a rolling per-window call counter for the model
  provider. When the window is exhausted, :meth:`RateBudget.acquire` suspends
  the caller until the window resets; it never rejects.
- :class:`AdmissionController` bounds how many runs may process a single
  organization at once and how many organizations may be processed at once.

Both keep their state in process memory behind a ``threading.Lock``. They do
not coordinate across processes.
"""

from __future__ import annotations

import threading
from enum import Enum

from .config import QueueConfig, RateLimitConfig
from .logging_setup import get_logger
from .waits import Clock, SystemClock, pause_until

_logger = get_logger("hybrid_categorizer.rate_limit")


class RateBudget:
    """Rolling fixed-window call budget (default 15 calls per 60 seconds)."""

    def __init__(
        self, config: RateLimitConfig | None = None, *, clock: Clock | None = None
    ) -> None:
        cfg = config or RateLimitConfig()
        if cfg.calls_per_window < 1:
            raise ValueError("calls_per_window must be >= 1")
        if cfg.window_sec <= 0:
            raise ValueError("window_sec must be > 0")
        self._limit = cfg.calls_per_window
        self._window = float(cfg.window_sec)
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._count = 0
        self._reset_at: float | None = None
        self.total_calls = 0
        self.total_waited_sec = 0.0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def calls_in_window(self) -> int:
        with self._lock:
            self._roll(self._clock.monotonic())
            return self._count

    @property
    def reset_at(self) -> float | None:
        return self._reset_at

    def _roll(self, now: float) -> None:
        if self._reset_at is not None and now >= self._reset_at:
            self._count = 0
            self._reset_at = None

    def acquire(self) -> float:
        """Take one call from the budget, waiting for a reset if needed.

        Returns the number of seconds spent waiting.
        """

        waited = 0.0
        while True:
            with self._lock:
                now = self._clock.monotonic()
                self._roll(now)
                if self._count < self._limit:
                    if self._reset_at is None:
                        self._reset_at = now + self._window
                    self._count += 1
                    self.total_calls += 1
                    return waited
                reset_at = self._reset_at if self._reset_at is not None else now
            _logger.info(
                "rate_limit:budget_exhausted limit=%d wait_sec=%.3f",
                self._limit,
                max(0.0, reset_at - now),
            )
            slept = pause_until(self._clock, reset_at, reason="rate_budget")
            waited += slept
            with self._lock:
                self.total_waited_sec += slept


class Admission(Enum):
    ADMITTED = "admitted"
    ORG_CAP = "org_cap"
    GLOBAL_CAP = "global_cap"


class AdmissionController:
    """Per-organization and global in-flight caps for batch runs."""

    def __init__(self, *, org_limit: int = 2, global_limit: int = 5) -> None:
        if org_limit < 1 or global_limit < 1:
            raise ValueError("admission limits must be >= 1")
        self.org_limit = org_limit
        self.global_limit = global_limit
        self._lock = threading.Lock()
        self._in_flight: dict[str, int] = {}
        self.peak_org_in_flight = 0
        self.peak_active_orgs = 0

    @classmethod
    def from_config(cls, config: QueueConfig) -> AdmissionController:
        return cls(org_limit=config.org_concurrency, global_limit=config.global_concurrency)

    def in_flight(self, org_id: str) -> int:
        with self._lock:
            return self._in_flight.get(org_id, 0)

    @property
    def active_orgs(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def try_acquire(self, org_id: str) -> Admission:
        with self._lock:
            current = self._in_flight.get(org_id, 0)
            if current >= self.org_limit:
                return Admission.ORG_CAP
            if current == 0 and len(self._in_flight) >= self.global_limit:
                return Admission.GLOBAL_CAP
            self._in_flight[org_id] = current + 1
            self.peak_org_in_flight = max(self.peak_org_in_flight, current + 1)
            self.peak_active_orgs = max(self.peak_active_orgs, len(self._in_flight))
            return Admission.ADMITTED

    def release(self, org_id: str) -> None:
        with self._lock:
            current = self._in_flight.get(org_id, 0)
            if current <= 0:
                _logger.warning("rate_limit:release_unheld org_id=%s", org_id)
                return
            if current == 1:
                del self._in_flight[org_id]
            else:
                self._in_flight[org_id] = current - 1


__all__ = ["Admission", "AdmissionController", "RateBudget"]
