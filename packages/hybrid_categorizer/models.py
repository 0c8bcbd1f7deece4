"""Data models shared across the categorization engine.

``Transaction`` is a pydantic model because it crosses the input boundary
(storage rows, evaluation datasets) and must reject malformed data with a
:class:`~hybrid_categorizer.errors.ValidationError`. Everything produced
inside the engine is a plain dataclass.
"""

from __future__ import annotations

import datetime as dt
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, field_validator

from .errors import ValidationError

type Engine = Literal["pass1", "llm"]
type SignalType = Literal["mcc", "vendor", "keyword", "pattern", "amount"]
type SignalStrength = Literal["exact", "family", "unknown"]

_MCC_RE = re.compile(r"^\d{4}$")


# ---------------------------------------------------------------------------
# Input record
# ---------------------------------------------------------------------------


class Transaction(BaseModel):
    """A bank/card feed record awaiting (or carrying) a category.

    ``amount_cents`` is signed minor units: negative values are outflows.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    id: str
    org_id: str
    merchant_name: str | None = None
    description: str = ""
    mcc: str | None = None
    amount_cents: int
    currency: str = "USD"
    date: dt.date | None = None
    category_id: str | None = None
    confidence: float | None = None
    needs_review: bool = False
    reviewed: bool = False
    attributes: dict[str, Any] = pydantic.Field(default_factory=dict)
    raw: dict[str, Any] = pydantic.Field(default_factory=dict)
    created_at: dt.datetime | None = None

    @field_validator("id", "org_id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must be non-empty")
        return v

    @field_validator("mcc", mode="before")
    @classmethod
    def _mcc_four_digits(cls, v: Any) -> str | None:
        if v is None:
            return None
        s = str(v).strip()
        if not s:
            return None
        if not _MCC_RE.match(s):
            raise ValueError("mcc must be a 4-digit string")
        return s

    @field_validator("merchant_name", mode="before")
    @classmethod
    def _blank_merchant_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("amount_cents", mode="before")
    @classmethod
    def _integral_amount(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("amount_cents must be an integer")
        if isinstance(v, float) and not v.is_integer():
            raise ValueError("amount_cents must be integral minor units")
        return v

    @field_validator("currency")
    @classmethod
    def _currency_code(cls, v: str) -> str:
        code = v.upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return code

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if 0.0 <= v <= 1.0:
            return v
        raise ValueError("confidence must be within [0,1]")


def parse_transaction(data: Mapping[str, Any] | Transaction) -> Transaction:
    """Validate ``data`` into a :class:`Transaction`.

    Raises :class:`ValidationError` with one problem line per offending field.
    """

    if isinstance(data, Transaction):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError("transaction must be a mapping", problems=["<root>: not a mapping"])
    try:
        return Transaction.model_validate(dict(data))
    except pydantic.ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        tx_id = data.get("id")
        raise ValidationError(f"invalid transaction {tx_id!r}", problems=problems) from e


@dataclass(frozen=True, slots=True)
class RejectedRow:
    """A queued row that failed :class:`Transaction` validation.

    Stores return it in place of the transaction so the row still occupies
    its slot in the batch and can be taken off the queue.
    """

    id: str
    org_id: str
    problems: tuple[str, ...]


type QueueItem = Transaction | RejectedRow


# ---------------------------------------------------------------------------
# Engine outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Signal:
    type: SignalType
    category_slug: str
    evidence: str
    confidence: float
    strength: SignalStrength


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    """Output of either pass.

    ``category_id``/``category_slug`` are both ``None`` when the pass produced
    no category; ``confidence`` is then ``None`` as well.
    """

    category_id: str | None
    category_slug: str | None
    confidence: float | None
    rationale: tuple[str, ...]
    engine: Engine
    attributes: Mapping[str, Any] = field(default_factory=dict)
    signals: tuple[Signal, ...] = ()

    @property
    def has_category(self) -> bool:
        return self.category_id is not None


@dataclass(frozen=True, slots=True)
class Decision:
    """Append-only audit record for one applied categorization."""

    tx_id: str
    org_id: str
    category_id: str
    confidence: float | None
    source: Engine
    rationale: tuple[str, ...]
    created_at: dt.datetime


# ---------------------------------------------------------------------------
# Batch run request/report
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatchRunRequest:
    org_id: str | None = None
    max_batches: int | None = None


@dataclass(slots=True)
class OrgResult:
    org_id: str
    processed: int = 0
    auto_applied: int = 0
    marked_for_review: int = 0
    fallback_count: int = 0
    rejected: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchRunReport:
    processed: int = 0
    batches: int = 0
    remaining: int = 0
    timeout_reached: bool = False
    results: list[OrgResult] = field(default_factory=list)
    max_batches: int = 1
    organizations: int = 0
    deferred: list[str] = field(default_factory=list)
    error: str | None = None

    def result_for(self, org_id: str) -> OrgResult:
        """Return the ``OrgResult`` for ``org_id``, creating it on first use."""

        for r in self.results:
            if r.org_id == org_id:
                return r
        r = OrgResult(org_id=org_id)
        self.results.append(r)
        self.organizations = len(self.results)
        return r

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "batches": self.batches,
            "remaining": self.remaining,
            "timeout_reached": self.timeout_reached,
            "max_batches": self.max_batches,
            "organizations": self.organizations,
            "deferred": list(self.deferred),
            "error": self.error,
            "results": [
                {
                    "org_id": r.org_id,
                    "processed": r.processed,
                    "auto_applied": r.auto_applied,
                    "marked_for_review": r.marked_for_review,
                    "fallback_count": r.fallback_count,
                    "rejected": r.rejected,
                    "errors": list(r.errors),
                }
                for r in self.results
            ],
        }


__all__ = [
    "BatchRunReport",
    "BatchRunRequest",
    "CategorizationResult",
    "Decision",
    "Engine",
    "OrgResult",
    "QueueItem",
    "RejectedRow",
    "Signal",
    "SignalStrength",
    "SignalType",
    "Transaction",
    "parse_transaction",
]
