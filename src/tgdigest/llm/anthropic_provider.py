from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt

from tgdigest.llm.base import (
    PROVIDER_ANTHROPIC,
    Completion,
    CompletionRequest,
    before_sleep,
    is_retryable,
    parse_retry_after,
    wait_strategy,
)
from tgdigest.llm.errors import ProviderError, RateLimitedError

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider:
    """Claude Messages API over plain REST."""

    name = PROVIDER_ANTHROPIC

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("ANTHROPIC_API_KEY is not set")
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    @retry(
        retry=retry_if_exception(is_retryable),
        wait=wait_strategy,
        stop=stop_after_attempt(3),
        reraise=True,
        before_sleep=before_sleep,
    )
    def complete(self, model: str, request: CompletionRequest) -> Completion:
        system = request.system or ""
        if request.json_mode:
            system = (system + "\nRespond with a single JSON object and nothing else.").strip()
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if system:
            body["system"] = system
        if request.temperature is not None:
            body["temperature"] = request.temperature

        try:
            response = self._client.post(
                ANTHROPIC_MESSAGES_URL,
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "Content-Type": "application/json",
                },
                json=body,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"anthropic request failed: {exc}", provider=self.name) from exc

        if response.status_code == 429:
            raise RateLimitedError(
                "anthropic rate limited request",
                provider=self.name,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if not response.is_success:
            raise ProviderError(
                f"anthropic request failed: {response.text[:500]}",
                provider=self.name,
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("anthropic returned non-json response", provider=self.name) from exc

        blocks = payload.get("content") or []
        text = "".join(
            str(block.get("text", ""))
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = payload.get("usage") or {}
        return Completion(
            text=text,
            prompt_tokens=int(usage.get("input_tokens") or 0),
            completion_tokens=int(usage.get("output_tokens") or 0),
            provider=self.name,
            model=model,
        )
