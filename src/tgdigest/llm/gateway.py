from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from tgdigest import metrics
from tgdigest.llm.base import (
    PROVIDER_ANTHROPIC,
    PROVIDER_GOOGLE,
    PROVIDER_OPENAI,
    PROVIDER_PRIORITY,
    Completion,
    CompletionRequest,
    Provider,
    parse_json_payload,
)
from tgdigest.llm.budget import BudgetAlert, BudgetTracker
from tgdigest.llm.circuit import CircuitBreaker
from tgdigest.llm.cost import estimate_cost
from tgdigest.llm.errors import (
    BudgetExceededError,
    CircuitOpenError,
    EmptyResponseError,
    LLMError,
    NoProviderError,
    is_fallthrough,
)

TASK_SUMMARIZE = "summarize"
TASK_CLUSTER = "cluster"
TASK_NARRATIVE = "narrative"
TASK_TOPIC = "topic"
TASK_COVER = "cover"
TASKS = (TASK_SUMMARIZE, TASK_CLUSTER, TASK_NARRATIVE, TASK_TOPIC, TASK_COVER)
OVERRIDABLE_TASKS = (TASK_SUMMARIZE, TASK_CLUSTER, TASK_NARRATIVE, TASK_TOPIC)

OVERRIDE_PREFIX = "llm_override_"
BUDGET_SETTING_KEY = "llm_daily_budget"


@dataclass(slots=True, frozen=True)
class ModelRef:
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


@dataclass(slots=True)
class ProviderStatus:
    name: str
    circuit_open: bool
    failures: int


DEFAULT_CHAINS: dict[str, tuple[ModelRef, ...]] = {
    TASK_SUMMARIZE: (
        ModelRef(PROVIDER_GOOGLE, "gemini-2.0-flash-lite"),
        ModelRef(PROVIDER_OPENAI, "gpt-5-nano"),
    ),
    TASK_CLUSTER: (
        ModelRef(PROVIDER_OPENAI, "gpt-5"),
        ModelRef(PROVIDER_GOOGLE, "gemini-2.0-flash-lite"),
    ),
    TASK_NARRATIVE: (
        ModelRef(PROVIDER_GOOGLE, "gemini-2.0-flash-lite"),
        ModelRef(PROVIDER_ANTHROPIC, "claude-haiku-4-5"),
        ModelRef(PROVIDER_OPENAI, "gpt-5"),
    ),
    TASK_TOPIC: (
        ModelRef(PROVIDER_OPENAI, "gpt-5-nano"),
        ModelRef(PROVIDER_GOOGLE, "gemini-2.0-flash-lite"),
    ),
    TASK_COVER: (ModelRef(PROVIDER_OPENAI, "gpt-4o-mini"),),
}

DEFAULT_MODELS = {
    PROVIDER_GOOGLE: "gemini-2.0-flash-lite",
    PROVIDER_ANTHROPIC: "claude-haiku-4-5",
    PROVIDER_OPENAI: "gpt-5-nano",
}


def override_key(task: str) -> str:
    return f"{OVERRIDE_PREFIX}{task}"


def infer_provider(model: str) -> str | None:
    lowered = model.strip().lower()
    if lowered.startswith("gemini"):
        return PROVIDER_GOOGLE
    if lowered.startswith("claude"):
        return PROVIDER_ANTHROPIC
    if lowered.startswith(("gpt", "o1", "o3", "o4", "chatgpt")):
        return PROVIDER_OPENAI
    return None


def parse_override(value: str) -> ModelRef | None:
    """Parse ``provider:model`` or a bare model name; empty means no override."""
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    if ":" in cleaned:
        provider, model = (part.strip() for part in cleaned.split(":", 1))
        provider = provider.lower()
        if provider not in PROVIDER_PRIORITY:
            raise ValueError(f"unknown provider: {provider}")
        if not model:
            raise ValueError("model must not be empty")
        return ModelRef(provider, model)
    provider = infer_provider(cleaned)
    if provider is None:
        raise ValueError(f"cannot infer provider for model: {cleaned}")
    return ModelRef(provider, cleaned)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class LLMGateway:
    """Routes task calls across providers with breakers, overrides and a token budget."""

    def __init__(
        self,
        providers: dict[str, Provider],
        *,
        circuit_threshold: int = 5,
        circuit_timeout: float = 60.0,
        daily_budget: int = 0,
        get_setting: Callable[[str, Any], Any] | None = None,
        record_usage: Callable[..., None] | None = None,
        on_budget_alert: Callable[[BudgetAlert], None] | None = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._providers = dict(providers)
        self._breakers = {
            name: CircuitBreaker(name, threshold=circuit_threshold, timeout=circuit_timeout)
            for name in self._providers
        }
        self._budget = BudgetTracker(daily_budget, on_alert=on_budget_alert, today=today)
        self._default_budget = int(daily_budget)
        self._get_setting = get_setting
        self._record_usage = record_usage
        self._today = today
        self._overrides: dict[str, ModelRef] = {}
        self._lock = threading.Lock()

    @property
    def budget(self) -> BudgetTracker:
        return self._budget

    @property
    def provider_names(self) -> list[str]:
        return [name for name in PROVIDER_PRIORITY if name in self._providers]

    def provider(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def breaker(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    def overrides(self) -> dict[str, ModelRef]:
        with self._lock:
            return dict(self._overrides)

    def set_override(self, task: str, ref: ModelRef | None) -> None:
        with self._lock:
            if ref is None:
                self._overrides.pop(task, None)
            else:
                self._overrides[task] = ref

    def refresh_override(self, key: str) -> None:
        """Reload one ``llm_override_<task>`` setting; an empty value clears it."""
        if not key.startswith(OVERRIDE_PREFIX) or self._get_setting is None:
            return
        task = key[len(OVERRIDE_PREFIX) :]
        value = self._get_setting(key, None)
        try:
            ref = parse_override(value) if isinstance(value, str) else None
        except ValueError as exc:
            logger.warning("llm override ignored key={} value={} reason={}", key, value, exc)
            ref = None
        self.set_override(task, ref)

    def refresh_overrides(self) -> None:
        for task in OVERRIDABLE_TASKS:
            self.refresh_override(override_key(task))
        if self._get_setting is None:
            return
        budget = self._get_setting(BUDGET_SETTING_KEY, None)
        try:
            limit = int(budget) if budget is not None else self._default_budget
        except (TypeError, ValueError):
            logger.warning("llm budget setting ignored value={}", budget)
            limit = self._default_budget
        self._budget.set_limit(limit)

    def seed_budget(self, tokens: int) -> None:
        self._budget.seed(tokens)
        metrics.llm_budget_tokens.set(tokens)

    def chain(self, task: str) -> list[ModelRef]:
        refs: list[ModelRef] = []
        override = self.overrides().get(task)
        if override is not None:
            refs.append(override)
        refs.extend(DEFAULT_CHAINS.get(task, ()))
        if task != TASK_COVER:
            for provider in PROVIDER_PRIORITY:
                if not any(ref.provider == provider for ref in refs):
                    refs.append(ModelRef(provider, DEFAULT_MODELS[provider]))

        seen: set[ModelRef] = set()
        result: list[ModelRef] = []
        for ref in refs:
            if ref in seen or ref.provider not in self._providers:
                continue
            seen.add(ref)
            result.append(ref)
        return result

    def complete(self, task: str, request: CompletionRequest) -> Completion:
        if self._budget.exceeded():
            raise BudgetExceededError(
                f"daily token budget exhausted used={self._budget.used()} limit={self._budget.limit}"
            )

        chain = self.chain(task)
        if not chain:
            raise NoProviderError(f"no provider configured for task={task}")

        last_error: LLMError | None = None
        for position, ref in enumerate(chain):
            breaker = self._breakers[ref.provider]
            if not breaker.can_attempt():
                metrics.llm_requests_total.labels(ref.provider, task, "circuit_open").inc()
                last_error = CircuitOpenError(
                    f"circuit open for provider={ref.provider}", provider=ref.provider
                )
                continue

            try:
                completion = self._providers[ref.provider].complete(ref.model, request)
            except EmptyResponseError:
                breaker.record_success()
                metrics.llm_requests_total.labels(ref.provider, task, "empty_response").inc()
                raise
            except LLMError as exc:
                if not is_fallthrough(exc):
                    raise
                metrics.llm_requests_total.labels(ref.provider, task, exc.kind).inc()
                if breaker.record_failure():
                    metrics.llm_circuit_open.labels(ref.provider).set(1)
                    logger.warning(
                        "llm circuit opened provider={} failures={}", ref.provider, breaker.failures
                    )
                logger.warning(
                    "llm call failed task={} provider={} model={} kind={} error={}",
                    task,
                    ref.provider,
                    ref.model,
                    exc.kind,
                    exc,
                )
                last_error = exc
                continue

            breaker.record_success()
            metrics.llm_circuit_open.labels(ref.provider).set(0)
            metrics.llm_requests_total.labels(ref.provider, task, "ok").inc()
            self._account(task, ref, completion)
            if position > 0:
                metrics.llm_fallbacks_total.labels(task).inc()
                logger.info(
                    "llm fallback task={} served_by={} primary={}", task, ref, chain[0]
                )
            if not completion.text.strip():
                raise EmptyResponseError(
                    f"empty response task={task} provider={ref.provider}", provider=ref.provider
                )
            return completion

        if last_error is None:
            raise NoProviderError(f"no provider attempted task={task}")
        raise last_error

    def complete_json(self, task: str, request: CompletionRequest) -> dict[str, Any]:
        request.json_mode = True
        completion = self.complete(task, request)
        return parse_json_payload(completion.text)

    def generate_image(self, prompt: str) -> bytes:
        if self._budget.exceeded():
            raise BudgetExceededError("daily token budget exhausted")
        provider = self._providers.get(PROVIDER_OPENAI)
        if provider is None or not hasattr(provider, "generate_image"):
            raise NoProviderError("image generation requires the openai provider")
        breaker = self._breakers[PROVIDER_OPENAI]
        if not breaker.can_attempt():
            raise CircuitOpenError("circuit open for provider=openai", provider=PROVIDER_OPENAI)
        try:
            image = provider.generate_image(prompt)
        except LLMError as exc:
            if is_fallthrough(exc) and breaker.record_failure():
                metrics.llm_circuit_open.labels(PROVIDER_OPENAI).set(1)
            metrics.llm_requests_total.labels(PROVIDER_OPENAI, TASK_COVER, exc.kind).inc()
            raise
        breaker.record_success()
        metrics.llm_requests_total.labels(PROVIDER_OPENAI, TASK_COVER, "ok").inc()
        self._account(TASK_COVER, ModelRef(PROVIDER_OPENAI, "gpt-image-1"), Completion("", 0, 0))
        return image

    def status(self) -> list[ProviderStatus]:
        return [
            ProviderStatus(
                name=name,
                circuit_open=self._breakers[name].is_open(),
                failures=self._breakers[name].failures,
            )
            for name in self.provider_names
        ]

    def _account(self, task: str, ref: ModelRef, completion: Completion) -> None:
        cost = estimate_cost(
            ref.provider, ref.model, completion.prompt_tokens, completion.completion_tokens
        )
        metrics.llm_tokens_total.labels(ref.provider).inc(completion.total_tokens)
        metrics.llm_cost_usd_total.labels(ref.provider).inc(cost)
        self._budget.record(completion.total_tokens)
        metrics.llm_budget_tokens.set(self._budget.used())

        if self._record_usage is None:
            return
        try:
            self._record_usage(
                day=self._today(),
                provider=ref.provider,
                model=ref.model,
                task=task,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
                cost_usd=cost,
            )
        except SQLAlchemyError:
            logger.exception("llm usage write failed task={} provider={}", task, ref.provider)


def build_gateway(settings: Any) -> LLMGateway:
    """Register every provider that has an API key, in priority order."""
    from tgdigest.db.repo_llm_usage import record_usage, tokens_used_on
    from tgdigest.db.repo_settings import get_setting
    from tgdigest.llm.anthropic_provider import AnthropicProvider
    from tgdigest.llm.google_provider import GoogleProvider
    from tgdigest.llm.openai_provider import OpenAIProvider

    timeout = float(settings.llm_request_timeout)
    providers: dict[str, Provider] = {}
    if settings.google_api_key:
        providers[PROVIDER_GOOGLE] = GoogleProvider(settings.google_api_key, timeout=timeout)
    if settings.anthropic_api_key:
        providers[PROVIDER_ANTHROPIC] = AnthropicProvider(
            settings.anthropic_api_key, timeout=timeout
        )
    if settings.openai_api_key:
        providers[PROVIDER_OPENAI] = OpenAIProvider(settings.openai_api_key, timeout=timeout)
    if not providers:
        logger.warning("llm gateway has no providers configured")

    gateway = LLMGateway(
        providers,
        circuit_threshold=settings.llm_circuit_threshold,
        circuit_timeout=settings.llm_circuit_timeout,
        daily_budget=settings.llm_daily_budget,
        get_setting=get_setting,
        record_usage=record_usage,
    )
    gateway.refresh_overrides()
    try:
        gateway.seed_budget(tokens_used_on(_utc_today()))
    except SQLAlchemyError as exc:
        logger.warning("llm budget seed failed error={}", exc)
    logger.info("llm gateway ready providers={}", ",".join(gateway.provider_names) or "-")
    return gateway
