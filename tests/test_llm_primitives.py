from __future__ import annotations

from datetime import date

import pytest

from tgdigest.llm.base import parse_json_payload
from tgdigest.llm.budget import BudgetTracker
from tgdigest.llm.circuit import CircuitBreaker
from tgdigest.llm.cost import cost_rates, estimate_cost
from tgdigest.llm.errors import InvalidJSONResponseError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_circuit_opens_after_threshold_and_half_opens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("google", threshold=3, timeout=60, clock=clock)

    assert breaker.record_failure() is False
    assert breaker.record_failure() is False
    assert breaker.record_failure() is True
    assert breaker.is_open()
    assert not breaker.can_attempt()

    clock.now = 61
    assert breaker.can_attempt()
    assert not breaker.is_open()

    # failed trial call re-opens immediately
    assert breaker.record_failure() is True
    assert not breaker.can_attempt()

    clock.now = 200
    breaker.record_success()
    assert breaker.failures == 0
    assert breaker.can_attempt()


def test_circuit_success_resets_failure_count() -> None:
    breaker = CircuitBreaker("openai", threshold=2, timeout=10, clock=FakeClock())
    breaker.record_failure()
    breaker.record_success()
    assert breaker.record_failure() is False


def test_half_open_circuit_admits_one_trial_call() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("anthropic", threshold=1, timeout=30, clock=clock)
    assert breaker.record_failure() is True

    clock.now = 31
    assert [breaker.can_attempt() for _ in range(3)] == [True, False, False]

    # the slot frees up when the trial call never reports back
    clock.now = 62
    assert breaker.can_attempt() is True
    assert breaker.can_attempt() is False

    breaker.record_success()
    assert [breaker.can_attempt() for _ in range(2)] == [True, True]


def test_budget_alerts_fire_once_per_level() -> None:
    alerts = []
    tracker = BudgetTracker(1000, on_alert=alerts.append, today=lambda: date(2024, 1, 1))

    assert tracker.record(500) is None
    warning = tracker.record(350)
    assert warning is not None and warning.level == "warning"
    assert tracker.record(10) is None
    critical = tracker.record(200)
    assert critical is not None and critical.level == "critical"
    assert tracker.exceeded()
    assert [alert.level for alert in alerts] == ["warning", "critical"]


def test_budget_resets_on_new_utc_day() -> None:
    day = {"value": date(2024, 1, 1)}
    tracker = BudgetTracker(100, today=lambda: day["value"])
    tracker.record(150)
    assert tracker.exceeded()

    day["value"] = date(2024, 1, 2)
    assert tracker.used() == 0
    assert not tracker.exceeded()


def test_budget_zero_limit_is_unlimited() -> None:
    tracker = BudgetTracker(0)
    assert tracker.record(10_000_000) is None
    assert not tracker.exceeded()


def test_budget_seed_suppresses_passed_alerts() -> None:
    tracker = BudgetTracker(100, today=lambda: date(2024, 1, 1))
    tracker.seed(90)
    assert tracker.used() == 90
    assert tracker.record(5) is None
    alert = tracker.record(10)
    assert alert is not None and alert.level == "critical"


def test_cost_rates_match_model_families() -> None:
    assert cost_rates("openai", "gpt-5-nano") == (0.05, 0.40)
    assert cost_rates("openai", "gpt-5") == (2.50, 10.00)
    assert cost_rates("anthropic", "claude-haiku-4-5") == (1.00, 5.00)
    assert cost_rates("google", "gemini-2.0-flash-lite") == (0.10, 0.40)
    assert cost_rates("google", "unknown") == (0.10, 0.40)


def test_estimate_cost() -> None:
    cost = estimate_cost("openai", "gpt-4o-mini", 1_000_000, 500_000)
    assert cost == pytest.approx(0.15 + 0.30)


def test_parse_json_payload_variants() -> None:
    assert parse_json_payload('{"a": 1}') == {"a": 1}
    assert parse_json_payload('```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_payload('Sure! {"a": 3} hope it helps') == {"a": 3}
    with pytest.raises(InvalidJSONResponseError):
        parse_json_payload("")
    with pytest.raises(InvalidJSONResponseError):
        parse_json_payload("[1, 2]")
