"""Bounded, order-preserving parallel map over a thread pool.

``p_map(items, mapper, concurrency=n)`` runs at most ``n`` mapper calls at a
time and returns their results in input order.

- ``stop_on_error=True`` (default): the first failure (in input order) is
  re-raised and work that has not started yet is cancelled.
- ``stop_on_error=False``: every item runs; failures are raised together as
  an ``ExceptionGroup`` once all calls have finished.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor


def _run_inline[InT, OutT](
    items: list[InT], mapper: Callable[[InT], OutT], *, stop_on_error: bool
) -> list[OutT]:
    out: list[OutT] = []
    errors: list[Exception] = []
    for item in items:
        try:
            out.append(mapper(item))
        except Exception as e:
            if stop_on_error:
                raise
            errors.append(e)
    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)
    return out


def p_map[InT, OutT](
    items: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
    stop_on_error: bool = True,
) -> list[OutT]:
    """Map ``items`` through ``mapper`` with at most ``concurrency`` in flight."""

    if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    work = list(items)
    if not work:
        return []
    if concurrency == 1:
        return _run_inline(work, mapper, stop_on_error=stop_on_error)

    out: list[OutT] = []
    errors: list[Exception] = []
    with ThreadPoolExecutor(
        max_workers=min(concurrency, len(work)), thread_name_prefix="p_map"
    ) as pool:
        futures: list[Future[OutT]] = [pool.submit(mapper, item) for item in work]
        for index, fut in enumerate(futures):
            try:
                out.append(fut.result())
            except Exception as e:
                if stop_on_error:
                    for pending in futures[index + 1 :]:
                        pending.cancel()
                    raise
                errors.append(e)

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)
    return out


__all__ = ["p_map"]
