from __future__ import annotations

from typing import Any

import pytest

from hybrid_categorizer import model_client as mc
from hybrid_categorizer.config import EngineConfig, ModelConfig, RateLimitConfig
from hybrid_categorizer.errors import ProviderError, RateLimitError
from hybrid_categorizer.model_client import ModelClient, parse_model_response
from hybrid_categorizer.models import Transaction
from hybrid_categorizer.outcomes import Fallback, Ok
from hybrid_categorizer.prompting import TX_FIELD_ORDER
from hybrid_categorizer.rate_limit import RateBudget
from tests.helpers.fake_clock import FakeClock
from tests.helpers.openai_stub import OpenAIStub, StatusError, reply_json

TX = Transaction(
    id="tx-1",
    org_id="org-1",
    merchant_name="Figma",
    description="FIGMA MONTHLY",
    amount_cents=-4_500,
    mcc="5734",
)


def _client(stub: OpenAIStub, clock: FakeClock | None = None, **kw: Any) -> ModelClient:
    return ModelClient(clock=clock or FakeClock(), client_factory=stub.factory, **kw)


def test_valid_reply_is_ok_with_llm_engine() -> None:
    stub = OpenAIStub(lambda tx: reply_json("software_subscriptions", 0.91, "design tool"))

    outcome = _client(stub).classify(TX)

    assert isinstance(outcome, Ok)
    result = outcome.value
    assert result.engine == "llm"
    assert result.category_slug == "software_subscriptions"
    assert result.confidence == 0.91
    assert result.rationale == ("design tool",)


def test_prompt_embeds_transaction_and_taxonomy() -> None:
    seen: list[dict[str, Any]] = []

    def reply(tx: dict[str, Any]) -> str:
        seen.append(tx)
        return reply_json("software_subscriptions", 0.9)

    stub = OpenAIStub(reply)
    _client(stub).classify(TX, industry="saas")

    assert list(seen[0]) == list(TX_FIELD_ORDER)
    assert seen[0]["amount_cents"] == -4_500
    sent = stub.calls[0]
    assert sent["model"] == "gpt-5-mini"
    assert "Industry vertical: saas" in sent["input"]
    assert "hosting_infrastructure" in sent["input"]
    assert "miscellaneous" in sent["instructions"]


def test_monkeypatched_openai_constructor_is_used(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = OpenAIStub(lambda tx: reply_json("marketing_ads", 0.8))
    monkeypatch.setattr(mc, "OpenAI", stub.factory)

    outcome = ModelClient(clock=FakeClock()).classify(TX)

    assert isinstance(outcome, Ok)
    assert len(stub.calls) == 1


def test_retryable_errors_back_off_then_succeed() -> None:
    attempts = iter([StatusError("slow down", 429), StatusError("upstream", 503)])

    def reply(tx: dict[str, Any]) -> str | BaseException:
        return next(attempts, None) or reply_json("software_subscriptions", 0.9)

    clock = FakeClock()
    client = _client(OpenAIStub(reply), clock)

    outcome = client.classify(TX)

    assert isinstance(outcome, Ok)
    assert clock.sleeps == [1.0, 2.0]
    assert client.calls == 3
    assert client.rate_budget.total_calls == 3


def test_exhausted_retries_fall_back_with_rate_limit_error() -> None:
    stub = OpenAIStub(lambda tx: StatusError("Too Many Requests", 429))
    clock = FakeClock()

    outcome = _client(stub, clock).classify(TX)

    assert isinstance(outcome, Fallback)
    assert isinstance(outcome.reason, RateLimitError)
    assert outcome.reason.status_code == 429
    assert outcome.value.category_slug == "miscellaneous"
    assert outcome.value.confidence == 0.5
    assert len(stub.calls) == 3
    assert clock.sleeps == [1.0, 2.0]


def test_non_retryable_error_is_not_retried() -> None:
    stub = OpenAIStub(lambda tx: StatusError("bad request", 400))
    clock = FakeClock()

    outcome = _client(stub, clock).classify(TX)

    assert isinstance(outcome, Fallback)
    assert isinstance(outcome.reason, ProviderError)
    assert len(stub.calls) == 1
    assert clock.sleeps == []


def test_quota_wording_is_retryable_without_status() -> None:
    calls = {"n": 0}

    def reply(tx: dict[str, Any]) -> str | BaseException:
        calls["n"] += 1
        if calls["n"] == 1:
            return RuntimeError("You exceeded your current quota")
        return reply_json("labor", 0.88)

    outcome = _client(OpenAIStub(reply)).classify(TX)
    assert isinstance(outcome, Ok)
    assert calls["n"] == 2


def test_unparsable_text_degrades() -> None:
    outcome = _client(OpenAIStub(lambda tx: "I think it is software.")).classify(TX)

    assert isinstance(outcome, Fallback)
    assert outcome.value.category_slug == "miscellaneous"
    assert outcome.value.confidence == 0.5
    assert outcome.value.rationale == (mc.PARSE_FAILURE_RATIONALE,)


def test_unknown_slug_falls_back_with_low_confidence() -> None:
    stub = OpenAIStub(lambda tx: reply_json("crypto_mining", 0.99, "hashrate"))

    outcome = _client(stub).classify(TX)

    assert isinstance(outcome, Fallback)
    assert outcome.value.category_slug == "miscellaneous"
    assert outcome.value.confidence == 0.3
    assert outcome.value.rationale[0].startswith("Model returned invalid category 'crypto_mining'")
    assert outcome.value.rationale[-1] == "hashrate"


def test_slug_outside_industry_is_rejected() -> None:
    stub = OpenAIStub(lambda tx: reply_json("hosting_infrastructure", 0.9))

    ecommerce = _client(stub).classify(TX, industry="ecommerce")
    saas = _client(stub).classify(TX, industry="saas")

    assert isinstance(ecommerce, Fallback)
    assert isinstance(saas, Ok)


def test_tier_one_slug_is_rejected() -> None:
    outcome = _client(OpenAIStub(lambda tx: reply_json("operating_expenses", 0.9))).classify(TX)
    assert isinstance(outcome, Fallback)


def test_invalid_attributes_are_dropped_with_a_note() -> None:
    stub = OpenAIStub(
        lambda tx: reply_json(
            "software_subscriptions",
            0.9,
            "design",
            vendor="Figma",
            subscription_type="weekly",
            seats=3,
        )
    )

    outcome = _client(stub).classify(TX)

    assert isinstance(outcome, Ok)
    assert outcome.value.attributes == {"vendor": "Figma"}
    notes = [r for r in outcome.value.rationale if r.startswith("Dropped attribute")]
    assert len(notes) == 2


def test_rate_budget_is_shared_across_clients() -> None:
    clock = FakeClock()
    budget = RateBudget(RateLimitConfig(calls_per_window=2, window_sec=60.0), clock=clock)
    stub = OpenAIStub(lambda tx: reply_json("labor", 0.9))
    a = _client(stub, clock, rate_budget=budget)
    b = _client(stub, clock, rate_budget=budget)

    a.classify(TX)
    b.classify(TX)
    a.classify(TX)

    assert clock.sleeps == [60.0]


def test_request_timeout_is_forwarded() -> None:
    cfg = EngineConfig(model=ModelConfig(request_timeout_sec=12.5))
    stub = OpenAIStub(lambda tx: reply_json("labor", 0.9))

    _client(stub, config=cfg).classify(TX)

    assert stub.calls[0]["timeout"] == 12.5


# ---- parse_model_response ------------------------------------------------------------


def test_parse_prefers_fenced_json() -> None:
    text = 'Sure! {"note": 1}\n```json\n{"category_slug": "Labor", "confidence": 0.7}\n```'
    reply = parse_model_response(text)
    assert reply is not None
    assert reply.category_slug == "labor"
    assert reply.confidence == 0.7
    assert reply.rationale == [mc.DEFAULT_RATIONALE]


def test_parse_clamps_and_normalizes_fields() -> None:
    reply = parse_model_response(
        '{"category_slug": "labor", "confidence": 7, "rationale": ["a", "", null], '
        '"attributes": "nope"}'
    )
    assert reply is not None
    assert reply.confidence == 1.0
    assert reply.rationale == ["a"]
    assert reply.attributes == {}


@pytest.mark.parametrize("text", [None, "", "no json here", '{"confidence": 0.9}', "[1, 2]"])
def test_parse_rejects_unusable_text(text: str | None) -> None:
    assert parse_model_response(text) is None
