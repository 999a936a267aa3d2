from __future__ import annotations

import json
import random
import re
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger
from tenacity import RetryCallState, wait_random_exponential

from tgdigest.llm.errors import InvalidJSONResponseError, ProviderError, RateLimitedError

PROVIDER_GOOGLE = "google"
PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_OPENAI = "openai"
PROVIDER_PRIORITY = (PROVIDER_GOOGLE, PROVIDER_ANTHROPIC, PROVIDER_OPENAI)

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL | re.IGNORECASE)
_DEFAULT_WAIT = wait_random_exponential(multiplier=0.5, min=0.5, max=10)


@dataclass(slots=True)
class CompletionRequest:
    prompt: str
    system: str | None = None
    json_mode: bool = False
    max_tokens: int = 1024
    temperature: float | None = 0.2


@dataclass(slots=True)
class Completion:
    text: str
    prompt_tokens: int
    completion_tokens: int
    provider: str = ""
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class Provider(Protocol):
    name: str

    def complete(self, model: str, request: CompletionRequest) -> Completion: ...


def parse_json_payload(raw: str) -> dict[str, Any]:
    text = raw.strip()
    if not text:
        raise InvalidJSONResponseError("empty response content")

    block_match = _JSON_BLOCK_RE.search(text)
    if block_match:
        text = block_match.group(1).strip()

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        try:
            parsed = json.loads(text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError as exc:
            raise InvalidJSONResponseError("response is not valid JSON object") from exc

    raise InvalidJSONResponseError("response is not valid JSON object")


def is_retryable_status(status_code: int | None) -> bool:
    return status_code == 429 or (isinstance(status_code, int) and status_code >= 500)


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    provider = getattr(exc, "provider", None)
    logger.warning(
        "llm retry provider={} attempt={} reason={}",
        provider,
        retry_state.attempt_number,
        exc.__class__.__name__ if exc is not None else "unknown",
    )


def wait_strategy(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitedError) and exc.retry_after and exc.retry_after > 0:
        return min(float(exc.retry_after), 30.0) + random.uniform(0.05, 0.35)
    return float(_DEFAULT_WAIT(retry_state))


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, ProviderError):
        return exc.status_code is None or is_retryable_status(exc.status_code)
    return False
