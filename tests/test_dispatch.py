from __future__ import annotations

from typing import Any

import pytest

from hybrid_categorizer.config import EngineConfig, ThresholdConfig
from hybrid_categorizer.dispatch import FALLBACK_RATIONALE, DispatchState, HybridDispatcher
from hybrid_categorizer.errors import FallbackExhausted
from hybrid_categorizer.model_client import ModelClient
from hybrid_categorizer.models import Transaction
from hybrid_categorizer.outcomes import Fallback, Ok
from tests.helpers.fake_clock import FakeClock
from tests.helpers.openai_stub import OpenAIStub, StatusError, reply_json


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def capture(self, event: str, properties: Any) -> None:
        self.events.append((event, dict(properties)))


def _dispatcher(stub: OpenAIStub | None, **kw: Any) -> HybridDispatcher:
    client = (
        ModelClient(clock=FakeClock(), client_factory=stub.factory) if stub is not None else None
    )
    return HybridDispatcher(client, **kw)


MCDONALDS = Transaction(
    id="tx-a",
    org_id="org-1",
    mcc="5814",
    merchant_name="MCDONALD'S",
    description="MCDONALD'S #123",
    amount_cents=-1_250,
)
THANK_YOU = Transaction(
    id="tx-b", org_id="org-1", description="PAYMENT THANK YOU", amount_cents=2_500
)


def test_low_pass1_confidence_escalates_and_model_wins() -> None:
    stub = OpenAIStub(lambda tx: reply_json("travel_meals", 0.82, "fast food"))
    telemetry = RecordingTelemetry()

    outcome = _dispatcher(stub, telemetry=telemetry).categorize(MCDONALDS)

    assert isinstance(outcome, Ok)
    d = outcome.value
    assert d.state is DispatchState.PASS2_ESCALATED
    assert d.pass1.confidence == pytest.approx(0.7125)
    assert d.result.engine == "llm"
    assert d.result.category_slug == "travel_meals"
    assert d.result.confidence == 0.82
    assert not d.fallback_used
    assert [e for e, _ in telemetry.events] == ["categorization_escalated"]


def test_pass1_answer_kept_when_model_is_not_more_confident() -> None:
    stub = OpenAIStub(lambda tx: reply_json("marketing_ads", 0.7125))

    outcome = _dispatcher(stub).categorize(MCDONALDS)

    assert isinstance(outcome, Ok)
    assert outcome.value.result.engine == "pass1"
    assert outcome.value.result.category_slug == "travel_meals"
    assert outcome.value.pass2 is not None


def test_confident_pass1_never_calls_the_model() -> None:
    stub = OpenAIStub(lambda tx: pytest.fail("model must not be called"))
    tx = Transaction(id="tx-s", org_id="org-1", merchant_name="Slack", amount_cents=-800_00)

    outcome = _dispatcher(stub).categorize(tx)

    assert isinstance(outcome, Ok)
    assert outcome.value.state is DispatchState.PASS1_DECIDED
    assert outcome.value.pass2 is None
    assert stub.calls == []
    assert not outcome.value.force_review


def test_both_passes_failing_forces_fallback() -> None:
    stub = OpenAIStub(lambda tx: "no idea")
    telemetry = RecordingTelemetry()
    dispatcher = _dispatcher(stub, telemetry=telemetry)

    outcome = dispatcher.categorize(THANK_YOU)

    assert isinstance(outcome, Fallback)
    assert isinstance(outcome.reason, FallbackExhausted)
    d = outcome.value
    assert d.result.category_slug == "miscellaneous"
    assert d.result.confidence == pytest.approx(0.3)
    assert d.result.rationale == FALLBACK_RATIONALE
    assert d.fallback_used and d.force_review
    assert dispatcher.fallback_count == 1
    assert "categorization_fallback" in [e for e, _ in telemetry.events]


def test_provider_failure_keeps_pass1_category() -> None:
    stub = OpenAIStub(lambda tx: StatusError("bad request", 400))

    outcome = _dispatcher(stub).categorize(MCDONALDS)

    assert isinstance(outcome, Ok)
    assert outcome.value.result.engine == "pass1"
    assert outcome.value.result.category_slug == "travel_meals"
    # The degraded model answer is recorded but did not compete.
    assert outcome.value.pass2 is not None
    assert outcome.value.pass2.category_slug == "miscellaneous"
    assert outcome.value.pass2.confidence == pytest.approx(0.5)


def test_degraded_model_answer_never_beats_the_forced_fallback() -> None:
    stub = OpenAIStub(lambda tx: "no idea")
    dispatcher = _dispatcher(stub)

    outcome = dispatcher.categorize(THANK_YOU)

    assert isinstance(outcome, Fallback)
    d = outcome.value
    assert d.pass2 is not None and d.pass2.confidence == pytest.approx(0.5)
    assert d.result.confidence == pytest.approx(0.3)
    assert d.result.rationale == FALLBACK_RATIONALE
    assert dispatcher.fallback_count == 1


def test_rules_only_dispatcher_falls_back_without_a_client() -> None:
    dispatcher = _dispatcher(None)

    assert isinstance(dispatcher.categorize(THANK_YOU), Fallback)
    assert isinstance(dispatcher.categorize(MCDONALDS), Ok)
    assert dispatcher.fallback_count == 1


def test_guardrails_run_on_the_chosen_category() -> None:
    # Exact fuel MCC but the model insists on advertising.
    stub = OpenAIStub(lambda tx: reply_json("marketing_ads", 0.97))
    tx = Transaction(
        id="tx-g", org_id="org-1", mcc="5541", description="gift cards", amount_cents=-3_000
    )
    dispatcher = _dispatcher(
        stub, config=EngineConfig(thresholds=ThresholdConfig(escalation=0.99))
    )

    outcome = dispatcher.categorize(tx)

    assert isinstance(outcome, Ok)
    d = outcome.value
    assert d.result.category_slug == "marketing_ads"
    assert d.guardrail.violation_kinds == ("mcc_incompatible",)
    assert d.force_review


def test_escalation_threshold_is_configurable() -> None:
    stub = OpenAIStub(lambda tx: pytest.fail("model must not be called"))
    cfg = EngineConfig(thresholds=ThresholdConfig(escalation=0.70))

    outcome = _dispatcher(stub, config=cfg).categorize(MCDONALDS)

    assert isinstance(outcome, Ok)
    assert outcome.value.state is DispatchState.PASS1_DECIDED


def test_industry_is_forwarded_to_the_model() -> None:
    stub = OpenAIStub(lambda tx: reply_json("hosting_infrastructure", 0.9))

    outcome = _dispatcher(stub, industry="saas").categorize(THANK_YOU)

    assert isinstance(outcome, Ok)
    assert outcome.value.result.category_slug == "hosting_infrastructure"
