from __future__ import annotations

import base64
from typing import Any

from openai import APIConnectionError, APIStatusError, OpenAI, RateLimitError
from tenacity import retry, retry_if_exception, stop_after_attempt

from tgdigest.llm.base import (
    PROVIDER_OPENAI,
    Completion,
    CompletionRequest,
    before_sleep,
    is_retryable,
    parse_retry_after,
    wait_strategy,
)
from tgdigest.llm.errors import EmptyResponseError, ProviderError, RateLimitedError

DEFAULT_IMAGE_MODEL = "gpt-image-1"
_REASONING_PREFIXES = ("gpt-5", "o1", "o3", "o4")


def _normalize_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(getattr(item, "text", "")))
        return "".join(parts)
    return str(content or "")


class OpenAIProvider:
    name = PROVIDER_OPENAI

    def __init__(self, api_key: str, *, timeout: float = 60.0, client: OpenAI | None = None) -> None:
        if client is None and not api_key:
            raise RuntimeError("OPENAI_API_KEY is not set")
        self._client = client or OpenAI(api_key=api_key, max_retries=0, timeout=timeout)

    def _translate(self, exc: Exception) -> Exception:
        if isinstance(exc, RateLimitError):
            headers = getattr(getattr(exc, "response", None), "headers", None) or {}
            return RateLimitedError(
                f"openai rate limited: {exc}",
                provider=self.name,
                retry_after=parse_retry_after(headers.get("retry-after")),
            )
        if isinstance(exc, APIStatusError):
            return ProviderError(
                f"openai status error: {exc}", provider=self.name, status_code=exc.status_code
            )
        return ProviderError(f"openai connection error: {exc}", provider=self.name)

    @retry(
        retry=retry_if_exception(is_retryable),
        wait=wait_strategy,
        stop=stop_after_attempt(3),
        reraise=True,
        before_sleep=before_sleep,
    )
    def complete(self, model: str, request: CompletionRequest) -> Completion:
        messages: list[dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        kwargs: dict[str, Any] = {"model": model, "messages": messages}
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if model.startswith(_REASONING_PREFIXES):
            kwargs["max_completion_tokens"] = request.max_tokens
        else:
            kwargs["max_tokens"] = request.max_tokens
            if request.temperature is not None:
                kwargs["temperature"] = request.temperature

        try:
            response = self._client.chat.completions.create(**kwargs)
        except (APIStatusError, APIConnectionError) as exc:
            raise self._translate(exc) from exc

        if not response.choices:
            raise EmptyResponseError("openai returned no choices", provider=self.name)
        usage = response.usage
        return Completion(
            text=_normalize_content(response.choices[0].message.content),
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            provider=self.name,
            model=model,
        )

    def generate_image(self, prompt: str, *, model: str = DEFAULT_IMAGE_MODEL) -> bytes:
        try:
            response = self._client.images.generate(
                model=model, prompt=prompt, size="1024x1024", n=1
            )
        except (APIStatusError, APIConnectionError) as exc:
            raise self._translate(exc) from exc
        if not response.data or not response.data[0].b64_json:
            raise EmptyResponseError("openai returned no image", provider=self.name)
        return base64.b64decode(response.data[0].b64_json)
