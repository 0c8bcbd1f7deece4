"""Tagged outcome values returned by the engine components.

Components that can degrade return one of:

- ``Ok(value)``: the component produced its normal result.
- ``Fallback(value, reason)``: a usable but degraded result, with the error
  that caused the degradation.
- ``Fatal(error)``: no usable result; the error describes why.

Callers pattern-match on these instead of catching exceptions::

    match outcome:
        case Ok(value=result):
            ...
        case Fallback(value=result, reason=err):
            ...
        case Fatal(error=err):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import CategorizerError


@dataclass(frozen=True)
class Ok[T]:
    value: T


@dataclass(frozen=True)
class Fallback[T]:
    value: T
    reason: CategorizerError


@dataclass(frozen=True, slots=True)
class Fatal:
    error: CategorizerError


type Outcome[T] = Ok[T] | Fallback[T] | Fatal


__all__ = ["Fallback", "Fatal", "Ok", "Outcome"]
