from __future__ import annotations

TOKENS_PER_MILLION = 1_000_000.0

# (prompt, completion) USD per 1M tokens
_OPENAI_RATES = (
    (("gpt-5", "nano"), (0.05, 0.40)),
    (("gpt-5",), (2.50, 10.00)),
    (("gpt-4o-mini",), (0.15, 0.60)),
    (("gpt-4o",), (2.50, 10.00)),
    (("gpt-4",), (2.50, 10.00)),
)
_ANTHROPIC_RATES = (
    (("haiku",), (1.00, 5.00)),
    (("sonnet",), (3.00, 15.00)),
    (("opus",), (3.00, 15.00)),
)
_GOOGLE_RATES = (
    (("pro",), (3.50, 10.50)),
    (("flash",), (0.10, 0.40)),
)
_DEFAULT_RATES = {
    "openai": (0.15, 0.60),
    "anthropic": (1.00, 5.00),
    "google": (0.10, 0.40),
}
_TABLES = {
    "openai": _OPENAI_RATES,
    "anthropic": _ANTHROPIC_RATES,
    "google": _GOOGLE_RATES,
}


def cost_rates(provider: str, model: str) -> tuple[float, float]:
    lowered = model.lower()
    for needles, rates in _TABLES.get(provider, ()):
        if all(needle in lowered for needle in needles):
            return rates
    return _DEFAULT_RATES.get(provider, (0.15, 0.60))


def estimate_cost(provider: str, model: str, prompt_tokens: int, completion_tokens: int) -> float:
    prompt_rate, completion_rate = cost_rates(provider, model)
    return (
        prompt_tokens * prompt_rate / TOKENS_PER_MILLION
        + completion_tokens * completion_rate / TOKENS_PER_MILLION
    )
