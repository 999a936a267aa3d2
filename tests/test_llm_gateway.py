from __future__ import annotations

from datetime import date

import pytest

from tgdigest.llm.base import Completion, CompletionRequest
from tgdigest.llm.errors import (
    BudgetExceededError,
    EmptyResponseError,
    NoProviderError,
    ProviderError,
    RateLimitedError,
)
from tgdigest.llm.gateway import (
    BUDGET_SETTING_KEY,
    LLMGateway,
    ModelRef,
    override_key,
    parse_override,
)


class DummyProvider:
    def __init__(self, name: str, responses: list[object]) -> None:
        self.name = name
        self.responses = list(responses)
        self.calls: list[str] = []

    def complete(self, model: str, request: CompletionRequest) -> Completion:
        self.calls.append(model)
        response = self.responses.pop(0) if self.responses else "ok"
        if isinstance(response, Exception):
            raise response
        return Completion(str(response), 10, 5, provider=self.name, model=model)


def _gateway(providers: dict[str, DummyProvider], **kwargs) -> LLMGateway:
    return LLMGateway(providers, today=lambda: date(2024, 1, 1), **kwargs)


def test_gateway_falls_back_on_rate_limit() -> None:
    google = DummyProvider("google", [RateLimitedError("slow down", provider="google")])
    openai = DummyProvider("openai", ["summary"])
    usage = []

    gateway = _gateway(
        {"google": google, "openai": openai},
        record_usage=lambda **row: usage.append(row),
    )
    completion = gateway.complete("summarize", CompletionRequest(prompt="text"))

    assert completion.text == "summary"
    assert google.calls == ["gemini-2.0-flash-lite"]
    assert openai.calls == ["gpt-5-nano"]
    assert usage[0]["provider"] == "openai"
    assert usage[0]["prompt_tokens"] == 10
    assert gateway.budget.used() == 15


def test_gateway_empty_response_does_not_fall_through() -> None:
    google = DummyProvider("google", [EmptyResponseError("empty", provider="google")])
    openai = DummyProvider("openai", ["never"])

    gateway = _gateway({"google": google, "openai": openai})

    with pytest.raises(EmptyResponseError):
        gateway.complete("summarize", CompletionRequest(prompt="text"))
    assert openai.calls == []


def test_gateway_blank_text_is_empty_response() -> None:
    gateway = _gateway({"google": DummyProvider("google", ["   "])})
    with pytest.raises(EmptyResponseError):
        gateway.complete("summarize", CompletionRequest(prompt="text"))


def test_gateway_skips_open_circuit() -> None:
    google = DummyProvider("google", [ProviderError("boom", provider="google", status_code=500)] * 3)
    openai = DummyProvider("openai", ["a", "b", "c"])
    gateway = _gateway({"google": google, "openai": openai}, circuit_threshold=2)

    for _ in range(3):
        gateway.complete("summarize", CompletionRequest(prompt="text"))

    assert len(google.calls) == 2
    assert len(openai.calls) == 3
    assert gateway.status()[0].circuit_open is True


def test_gateway_open_circuit_routes_to_secondary_and_bills_it() -> None:
    google = DummyProvider("google", [ProviderError("boom", provider="google", status_code=500)] * 5)
    anthropic = DummyProvider("anthropic", ["one", "two", "three"])
    usage = []
    gateway = _gateway(
        {"google": google, "anthropic": anthropic},
        circuit_threshold=2,
        record_usage=lambda **row: usage.append(row),
    )

    texts = [gateway.complete("summarize", CompletionRequest(prompt="text")).text for _ in range(3)]

    assert texts == ["one", "two", "three"]
    assert len(google.calls) == 2
    assert [row["provider"] for row in usage] == ["anthropic"] * 3
    assert all(row["task"] == "summarize" for row in usage)


def test_gateway_raises_last_error_when_chain_exhausted() -> None:
    google = DummyProvider("google", [ProviderError("down", provider="google", status_code=503)])
    gateway = _gateway({"google": google})

    with pytest.raises(ProviderError):
        gateway.complete("summarize", CompletionRequest(prompt="text"))


def test_gateway_budget_exceeded_blocks_calls() -> None:
    google = DummyProvider("google", ["x"])
    gateway = _gateway({"google": google}, daily_budget=100)
    gateway.seed_budget(100)

    with pytest.raises(BudgetExceededError):
        gateway.complete("summarize", CompletionRequest(prompt="text"))
    assert google.calls == []


def test_gateway_without_providers() -> None:
    with pytest.raises(NoProviderError):
        _gateway({}).complete("summarize", CompletionRequest(prompt="text"))


def test_chain_puts_override_first_and_filters_unconfigured() -> None:
    gateway = _gateway({"google": DummyProvider("google", []), "anthropic": DummyProvider("anthropic", [])})
    gateway.set_override("narrative", ModelRef("anthropic", "claude-sonnet-4-5"))

    chain = gateway.chain("narrative")

    assert chain[0] == ModelRef("anthropic", "claude-sonnet-4-5")
    assert all(ref.provider in ("google", "anthropic") for ref in chain)
    assert ModelRef("google", "gemini-2.0-flash-lite") in chain


def test_refresh_overrides_reads_settings() -> None:
    settings = {
        override_key("summarize"): "claude-haiku-4-5",
        override_key("topic"): "bogus",
        BUDGET_SETTING_KEY: 5000,
    }
    gateway = _gateway(
        {"google": DummyProvider("google", []), "anthropic": DummyProvider("anthropic", [])},
        get_setting=lambda key, default: settings.get(key, default),
    )

    gateway.refresh_overrides()

    assert gateway.overrides() == {"summarize": ModelRef("anthropic", "claude-haiku-4-5")}
    assert gateway.budget.limit == 5000

    del settings[override_key("summarize")]
    gateway.refresh_override(override_key("summarize"))
    assert gateway.overrides() == {}


def test_parse_override() -> None:
    assert parse_override("openai:gpt-5") == ModelRef("openai", "gpt-5")
    assert parse_override("gemini-2.5-pro") == ModelRef("google", "gemini-2.5-pro")
    assert parse_override("") is None
    with pytest.raises(ValueError):
        parse_override("mistral:large")
    with pytest.raises(ValueError):
        parse_override("llama-3")
    with pytest.raises(ValueError):
        parse_override("openai:")


def test_complete_json_parses_payload() -> None:
    gateway = _gateway({"google": DummyProvider("google", ['{"summary": "s"}'])})
    request = CompletionRequest(prompt="text")

    assert gateway.complete_json("summarize", request) == {"summary": "s"}
    assert request.json_mode is True
