from __future__ import annotations


class LLMError(RuntimeError):
    kind = "llm_error"

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider

    def as_dict(self) -> dict[str, str]:
        payload = {"kind": self.kind, "message": str(self)}
        if self.provider:
            payload["provider"] = self.provider
        return payload


class RateLimitedError(LLMError):
    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class CircuitOpenError(LLMError):
    kind = "circuit_open"


class EmptyResponseError(LLMError):
    kind = "empty_response"


class ProviderError(LLMError):
    kind = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.status_code = status_code


class InvalidJSONResponseError(ProviderError):
    kind = "invalid_json"


class BudgetExceededError(LLMError):
    kind = "budget_exceeded"


class NoProviderError(LLMError):
    kind = "no_provider"


def is_fallthrough(exc: BaseException) -> bool:
    """Errors that let the gateway move on to the next provider."""
    return isinstance(exc, (RateLimitedError, CircuitOpenError, ProviderError))
