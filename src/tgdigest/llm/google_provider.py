from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt

from tgdigest.llm.base import (
    PROVIDER_GOOGLE,
    Completion,
    CompletionRequest,
    before_sleep,
    is_retryable,
    parse_retry_after,
    wait_strategy,
)
from tgdigest.llm.errors import ProviderError, RateLimitedError

GOOGLE_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


def _extract_text(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))


class GoogleProvider:
    """Gemini generateContent over plain REST."""

    name = PROVIDER_GOOGLE

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("GOOGLE_API_KEY is not set")
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
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {"maxOutputTokens": request.max_tokens},
        }
        if request.system:
            body["systemInstruction"] = {"parts": [{"text": request.system}]}
        if request.json_mode:
            body["generationConfig"]["responseMimeType"] = "application/json"
        if request.temperature is not None:
            body["generationConfig"]["temperature"] = request.temperature

        try:
            response = self._client.post(
                f"{GOOGLE_API_BASE}/{model}:generateContent",
                headers={"Content-Type": "application/json", "X-goog-api-key": self._api_key},
                json=body,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"google request failed: {exc}", provider=self.name) from exc

        if response.status_code == 429:
            raise RateLimitedError(
                "google rate limited request",
                provider=self.name,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if not response.is_success:
            raise ProviderError(
                f"google request failed: {response.text[:500]}",
                provider=self.name,
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("google returned non-json response", provider=self.name) from exc

        usage = payload.get("usageMetadata") or {}
        return Completion(
            text=_extract_text(payload),
            prompt_tokens=int(usage.get("promptTokenCount") or 0),
            completion_tokens=int(usage.get("candidatesTokenCount") or 0),
            provider=self.name,
            model=model,
        )
