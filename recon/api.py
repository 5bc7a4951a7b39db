"""OpenRouter chat client used by the AI column classifier.

Features:
- Connection pooling (single httpx.AsyncClient per OpenRouterClient)
- Retry with exponential backoff, respects Retry-After for 429
- JSON response format passthrough

Example usage:

    async with OpenRouterClient() as client:
        response = await client.chat(model, messages, response_format={"type": "json_object"})
"""

import asyncio
import json
import logging
import os
import random
from typing import Any

import httpx

DEFAULT_MODEL = "openai/gpt-5.2"
MAX_ERROR_DETAIL_CHARS = 500
MAX_BACKOFF = 10.0
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
OPENROUTER_API_KEY_ENV = "OPENROUTER_API_KEY"

log = logging.getLogger(__name__)


class _Retryable(Exception):
    """A failed attempt worth repeating; ``retry_after`` overrides the backoff."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


def has_openrouter_api_key() -> bool:
    return bool(os.environ.get(OPENROUTER_API_KEY_ENV))


def get_headers() -> dict[str, str]:
    """Get API request headers."""
    api_key = os.environ.get(OPENROUTER_API_KEY_ENV)
    if not api_key:
        raise ValueError(f"{OPENROUTER_API_KEY_ENV} environment variable is required")

    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "HTTP-Referer": "https://github.com/recon",
    }


class OpenRouterClient:
    """Async client for the OpenRouter chat completions API.

    Use as an async context manager so the connection pool is closed:

        async with OpenRouterClient() as client:
            response = await client.chat(model, messages)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 2,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self._client: httpx.AsyncClient | None = None

        # Client errors are final.
        self.no_retry_codes = {400, 401, 403, 404}

    async def __aenter__(self) -> "OpenRouterClient":
        self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "OpenRouterClient must be used as async context manager: "
                "async with OpenRouterClient() as client: ..."
            )
        return self._client

    def _parse(self, response: httpx.Response) -> dict[str, Any]:
        """Return the reply for a 200, raise _Retryable or RuntimeError otherwise."""
        text = response.text
        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError:
            raise _Retryable(
                f"Invalid JSON response (status {response.status_code}): "
                f"{text[:MAX_ERROR_DETAIL_CHARS]}"
            )

        if response.status_code == 200:
            choice = (data.get("choices") or [{}])[0]
            return {"message": choice.get("message", {}), "usage": data.get("usage", {})}

        detail = (data.get("error") or {}).get("message", text[:MAX_ERROR_DETAIL_CHARS])
        if response.status_code in self.no_retry_codes:
            raise RuntimeError(
                f"OpenRouter API error: {response.status_code} - {response.reason_phrase}: {detail}"
            )
        retry_after = None
        if response.status_code == 429:
            try:
                retry_after = float(response.headers.get("retry-after", ""))
            except ValueError:
                retry_after = None
        raise _Retryable(f"HTTP {response.status_code}: {detail}", retry_after)

    async def chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response_format: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Make a chat completion request.

        Returns:
            {
                "message": assistant message dict with 'content',
                "usage": usage dict with token counts
            }
        """
        client = self._get_client()
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if response_format:
            payload["response_format"] = response_format

        backoff = 1.0
        for attempt in range(self.max_retries + 1):
            try:
                response = await client.post(OPENROUTER_API_URL, headers=get_headers(), json=payload)
                return self._parse(response)
            except (httpx.TimeoutException, httpx.RequestError) as e:
                failure = _Retryable(f"Network error: {type(e).__name__}: {e}")
            except _Retryable as e:
                failure = e

            if attempt == self.max_retries:
                raise RuntimeError(f"API error after {self.max_retries} retries: {failure}")
            log.warning("[Retry %d/%d] %s", attempt + 1, self.max_retries, failure)
            wait = failure.retry_after if failure.retry_after is not None else backoff
            await asyncio.sleep(wait + random.uniform(0, 1))
            backoff = min(backoff * 2, MAX_BACKOFF)

        raise AssertionError("unreachable")
