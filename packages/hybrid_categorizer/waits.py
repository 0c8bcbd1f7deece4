"""The single wait primitive used for every suspension in the engine.

Quota sleeps, retry backoff and the inter-batch delay all go through
:func:`pause` / :func:`pause_until` on a :class:`Clock`. Production code uses
:class:`SystemClock`; tests inject a fake clock whose ``sleep`` advances
virtual time, so no test ever waits for real.
"""

from __future__ import annotations

import random
import time
from typing import Protocol

from .config import RetryConfig
from .logging_setup import get_logger

_logger = get_logger("hybrid_categorizer.waits")


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by :mod:`time`."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def pause(clock: Clock, seconds: float, *, reason: str) -> float:
    """Suspend the caller for ``seconds`` (clamped at zero) and return it."""

    delay = max(0.0, float(seconds))
    if delay <= 0.0:
        return 0.0
    _logger.debug("waits:pause reason=%s seconds=%.3f", reason, delay)
    clock.sleep(delay)
    return delay


def pause_until(clock: Clock, deadline: float, *, reason: str) -> float:
    """Suspend the caller until ``clock.monotonic()`` reaches ``deadline``."""

    return pause(clock, deadline - clock.monotonic(), reason=reason)


def backoff_delay(attempt_no: int, policy: RetryConfig) -> float:
    """Delay before retrying after failed attempt ``attempt_no`` (1-based).

    Exponential: ``base * multiplier ** (attempt_no - 1)`` capped at
    ``max_delay_sec``, with optional symmetric jitter.
    """

    base = policy.base_delay_sec * (policy.multiplier ** max(0, attempt_no - 1))
    base = min(base, policy.max_delay_sec)
    if policy.jitter_pct > 0:
        jitter = base * policy.jitter_pct
        base = base + random.uniform(-jitter, jitter)
    return max(0.0, base)


__all__ = ["Clock", "SystemClock", "backoff_delay", "pause", "pause_until"]
