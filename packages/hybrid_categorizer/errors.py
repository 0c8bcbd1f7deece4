"""Error taxonomy for the categorization engine.

Every error raised or carried by this package derives from
:class:`CategorizerError`. Only a few are ever raised across a public
boundary:

- :class:`ValidationError` for malformed input (transactions, datasets,
  options, taxonomy seeds), raised before any processing starts.
- :class:`ProgrammingError` for caller contract violations (fatal).

The others travel as values: inside ``Fallback``/``Fatal`` outcomes
(``RateLimitError``, ``ProviderError``, ``FallbackExhausted``), in guardrail
outcomes (``GuardrailViolation``) or on apply receipts (``AuditWriteError``).
"""

from __future__ import annotations


class CategorizerError(Exception):
    """Base class for all categorization engine errors."""


class ValidationError(CategorizerError):
    """Malformed input rejected before processing.

    ``problems`` holds one human-readable line per offending field so callers
    can surface them as a structured list.
    """

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems: list[str] = list(problems or [])


class RateLimitError(CategorizerError):
    """Retryable provider failure (HTTP 429, quota exhaustion, transient 5xx)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderError(CategorizerError):
    """Non-retryable model provider failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GuardrailViolation(CategorizerError):
    """An advisory guardrail finding. Recorded on outcomes, never raised."""

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GuardrailViolation):
            return NotImplemented
        return (self.kind, self.detail) == (other.kind, other.detail)

    def __hash__(self) -> int:
        return hash((self.kind, self.detail))


class AuditWriteError(CategorizerError):
    """The append-only decision record could not be written."""

    def __init__(self, tx_id: str, cause: BaseException) -> None:
        super().__init__(f"audit write failed for tx {tx_id}: {cause}")
        self.tx_id = tx_id
        self.cause = cause


class FallbackExhausted(CategorizerError):
    """Neither pass produced a category; the fallback category was forced."""

    def __init__(self, tx_id: str) -> None:
        super().__init__(f"both passes failed for tx {tx_id}; fallback category applied")
        self.tx_id = tx_id


class ProgrammingError(CategorizerError):
    """A caller contract violation. Fatal and never retried."""


__all__ = [
    "AuditWriteError",
    "CategorizerError",
    "FallbackExhausted",
    "GuardrailViolation",
    "ProgrammingError",
    "ProviderError",
    "RateLimitError",
    "ValidationError",
]
