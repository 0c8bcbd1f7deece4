"""Pass-2: model categorization through the OpenAI Responses API.

Public API:
    - :class:`ModelClient` with :meth:`ModelClient.classify`
    - :func:`parse_model_response`

Every provider call first takes a slot from the shared
:class:`~hybrid_categorizer.rate_limit.RateBudget`. Retryable failures
(HTTP 429, 5xx, quota wording) are retried with exponential backoff through
the wait primitive; anything that still fails degrades to a ``Fallback``
carrying ``miscellaneous``. The client never raises to its caller.
"""

from __future__ import annotations

import json
import re
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, field_validator

from . import prompting
from .config import FALLBACK_CATEGORY_SLUG, EngineConfig
from .errors import CategorizerError, ProgrammingError, ProviderError, RateLimitError
from .logging_setup import get_logger
from .models import CategorizationResult, Transaction
from .outcomes import Fallback, Fatal, Ok, Outcome
from .rate_limit import RateBudget
from .taxonomy import Category, TaxonomyRegistry, default_registry
from .waits import Clock, SystemClock, backoff_delay, pause

_logger = get_logger("hybrid_categorizer.model_client")

DEFAULT_RATIONALE: str = "LLM categorization"
PARSE_FAILURE_RATIONALE: str = "Failed to parse model response"

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_RETRYABLE_WORDING: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "quota",
    "too many requests",
    "resource_exhausted",
    "overloaded",
)


# ---- Response parsing ------------------------------------------------------------


class ModelReply(BaseModel):
    """Validated shape of the JSON object the model is asked to return."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    category_slug: str
    confidence: float = 0.5
    rationale: list[str] = [DEFAULT_RATIONALE]
    attributes: dict[str, Any] = {}

    @field_validator("category_slug", mode="before")
    @classmethod
    def _slug_text(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("category_slug must be a non-empty string")
        return v.strip().lower()

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        if isinstance(v, bool):
            return 0.5
        try:
            f = float(v)
        except (TypeError, ValueError):
            return 0.5
        if f != f:  # NaN
            return 0.5
        return min(1.0, max(0.0, f))

    @field_validator("rationale", mode="before")
    @classmethod
    def _rationale_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            items = [v.strip()]
        elif isinstance(v, (list, tuple)):
            items = [str(x).strip() for x in v if x is not None]
        else:
            items = []
        items = [s for s in items if s]
        return items or [DEFAULT_RATIONALE]

    @field_validator("attributes", mode="before")
    @classmethod
    def _attributes_mapping(cls, v: Any) -> dict[str, Any]:
        return dict(v) if isinstance(v, Mapping) else {}


def _decode_object(candidate: str) -> Mapping[str, Any] | None:
    try:
        decoded = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, Mapping) else None


def parse_model_response(text: str | None) -> ModelReply | None:
    """Extract the reply object from free model text.

    Tries a fenced ```json block first, then the span from the first ``{`` to
    the last ``}``. Returns ``None`` when neither yields a valid reply.
    """

    if not text:
        return None
    candidates: list[str] = [m.group(1) for m in _FENCED_JSON_RE.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        decoded = _decode_object(candidate)
        if decoded is None:
            continue
        try:
            return ModelReply.model_validate(decoded)
        except ValueError:
            continue
    return None


def _extract_response_text(resp: Any) -> str | None:
    """Prefer ``resp.output_text``; fall back to ``resp.output[0].content[0].text``."""

    text = getattr(resp, "output_text", None)
    if isinstance(text, str) and text:
        return text
    output = getattr(resp, "output", None)
    if not output:
        return None
    content = getattr(output[0], "content", None)
    if not content:
        return None
    txt = getattr(content[0], "text", None)
    if isinstance(txt, str):
        return txt
    value = getattr(txt, "value", None)
    return value if isinstance(value, str) else None


# ---- Provider plumbing ---------------------------------------------------------


def _create_client() -> OpenAI:
    return OpenAI()


def _is_retryable(exc: BaseException) -> bool:
    """Return True for HTTP 429, 5xx and quota/rate-limit wording."""

    sc = getattr(exc, "status_code", None)
    if isinstance(sc, int) and (sc == 429 or 500 <= sc < 600):
        return True
    message = str(exc).lower()
    return any(w in message for w in _RETRYABLE_WORDING)


# ---- Client ----------------------------------------------------------------------


class ModelClient:
    """Rate-limited, retrying Pass-2 classifier.

    Parameters
    ----------
    config:
        Engine configuration (model, retry policy, confidences).
    registry:
        Taxonomy used to build prompts and validate returned slugs.
    rate_budget:
        Shared per-window call budget. A private one is created when omitted.
    clock:
        Clock for backoff waits; defaults to the system clock.
    client_factory:
        Callable returning an object with ``responses.create``. Defaults to
        constructing ``openai.OpenAI()`` on first use.
    """

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        registry: TaxonomyRegistry | None = None,
        rate_budget: RateBudget | None = None,
        clock: Clock | None = None,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._registry = registry or default_registry()
        self._clock = clock or SystemClock()
        self._budget = rate_budget or RateBudget(self._config.rate_limit, clock=self._clock)
        self._client_factory = client_factory or _create_client
        self._client: Any | None = None
        # Guards lazy client creation and the call counter; evaluation runs
        # share one client across worker threads.
        self._lock = threading.Lock()
        self._calls = 0

    @property
    def calls(self) -> int:
        with self._lock:
            return self._calls

    @property
    def rate_budget(self) -> RateBudget:
        return self._budget

    def _get_client(self) -> Any:
        with self._lock:
            if self._client is None:
                self._client = self._client_factory()
            return self._client

    def _result(
        self,
        category: Category,
        confidence: float,
        rationale: list[str],
        attributes: Mapping[str, Any] | None = None,
    ) -> CategorizationResult:
        return CategorizationResult(
            category_id=category.id,
            category_slug=category.slug,
            confidence=round(confidence, 4),
            rationale=tuple(rationale),
            engine="llm",
            attributes=dict(attributes or {}),
        )

    def _degraded(
        self, reason: CategorizerError, rationale: list[str], *, confidence: float | None = None
    ) -> Fallback[CategorizationResult]:
        value = self._result(
            self._registry.fallback,
            self._config.model.degraded_confidence if confidence is None else confidence,
            rationale,
        )
        return Fallback(value, reason)

    def _call_with_retry(self, *, instructions: str, user_content: str, tx_id: str) -> str | None:
        """Return the response text; raise the last provider error when giving up."""

        policy = self._config.retry
        kwargs: dict[str, Any] = {
            "model": self._config.model.model,
            "instructions": instructions,
            "input": user_content,
        }
        if self._config.model.request_timeout_sec is not None:
            kwargs["timeout"] = self._config.model.request_timeout_sec

        attempt = 1
        while True:
            self._budget.acquire()
            t0 = time.perf_counter()
            try:
                client = self._get_client()
                with self._lock:
                    self._calls += 1
                resp = client.responses.create(**kwargs)
                dt_ms = (time.perf_counter() - t0) * 1000.0
                _logger.info(
                    "model_client:done tx_id=%s attempt=%d latency_ms=%.2f",
                    tx_id,
                    attempt,
                    dt_ms,
                )
                return _extract_response_text(resp)
            except Exception as e:  # noqa: BLE001
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if attempt >= policy.max_attempts or not _is_retryable(e):
                    _logger.error(
                        (
                            "model_client:failed_terminal tx_id=%s attempt=%d "
                            "latency_ms=%.2f error=%s"
                        ),
                        tx_id,
                        attempt,
                        dt_ms,
                        e.__class__.__name__,
                    )
                    raise
                delay = backoff_delay(attempt, policy)
                _logger.warning(
                    (
                        "model_client:retry tx_id=%s attempt=%d latency_ms=%.2f "
                        "error=%s delay_sec=%.2f"
                    ),
                    tx_id,
                    attempt,
                    dt_ms,
                    e.__class__.__name__,
                    delay,
                )
                pause(self._clock, delay, reason="model_retry")
                attempt += 1

    def classify(
        self,
        tx: Transaction,
        *,
        pass1: CategorizationResult | None = None,
        industry: str | None = None,
    ) -> Outcome[CategorizationResult]:
        """Ask the model for a category for ``tx``.

        Returns
        -------
        Outcome[CategorizationResult]
            ``Ok`` with a validated leaf category; ``Fallback`` carrying
            ``miscellaneous`` when the provider failed (``RateLimitError`` or
            ``ProviderError``), the text was unparsable, or the slug is not in
            the industry's taxonomy; ``Fatal`` only when the registry cannot
            supply the fallback category.
        """

        if self._registry.get(FALLBACK_CATEGORY_SLUG) is None:
            return Fatal(ProgrammingError("taxonomy has no 'miscellaneous' fallback category"))

        vertical = (industry or self._config.model.industry).strip().lower()
        categories = self._registry.list_by_industry(vertical)
        instructions = prompting.build_system_instructions()
        user_content = prompting.build_user_content(
            tx, industry=vertical, categories=categories, pass1=pass1
        )

        try:
            text = self._call_with_retry(
                instructions=instructions, user_content=user_content, tx_id=tx.id
            )
        except Exception as e:  # noqa: BLE001 - degrade to fallback, never raise
            status = getattr(e, "status_code", None)
            err: CategorizerError
            if _is_retryable(e):
                err = RateLimitError(f"model retries exhausted: {e}", status_code=status)
            else:
                err = ProviderError(f"model provider error: {e}", status_code=status)
            return self._degraded(err, [f"Model call failed: {e.__class__.__name__}"])

        reply = parse_model_response(text)
        if reply is None:
            _logger.warning("model_client:unparsable tx_id=%s", tx.id)
            return self._degraded(ProviderError(PARSE_FAILURE_RATIONALE), [PARSE_FAILURE_RATIONALE])

        category = self._registry.get(reply.category_slug)
        if (
            category is None
            or category.tier != 2
            or not category.is_active
            or not category.applies_to(vertical)
        ):
            _logger.warning(
                "model_client:unknown_slug tx_id=%s slug=%s industry=%s",
                tx.id,
                reply.category_slug,
                vertical,
            )
            return self._degraded(
                ProviderError(f"unknown category slug {reply.category_slug!r}"),
                [
                    f"Model returned invalid category '{reply.category_slug}' for {vertical}, "
                    "falling back to miscellaneous",
                    *reply.rationale,
                ],
                confidence=self._config.model.unknown_slug_confidence,
            )

        rationale = list(reply.rationale)
        attributes: dict[str, Any] = {}
        for key, value in reply.attributes.items():
            problems = self._registry.validate_attributes(category, {key: value})
            # Required-key problems refer to the whole bag, not this key.
            problems = [p for p in problems if not p.startswith("missing required")]
            if problems:
                rationale.append(f"Dropped attribute {key!r}: {problems[0]}")
            else:
                attributes[key] = value

        return Ok(self._result(category, reply.confidence, rationale, attributes))


__all__ = [
    "DEFAULT_RATIONALE",
    "ModelClient",
    "ModelReply",
    "PARSE_FAILURE_RATIONALE",
    "parse_model_response",
]
