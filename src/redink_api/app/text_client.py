"""Text generation clients used for outline generation.

Two implementations share one small interface (`TextClient.generate_text`):
- TextChatClient: OpenAI-compatible `/v1/chat/completions` over httpx.
- GenAITextClient: Google Gemini through the google-genai SDK.

Only HTTP 429 is retried automatically here (see `retry_on_rate_limit`);
everything else surfaces to the caller as ProviderCallError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .compression import REFERENCE_BUDGET_KB, compress_image
from .errors import ProviderCallError, ProviderConfigError, describe_provider_error
from .streaming import to_data_uri

logger = logging.getLogger(__name__)

DEFAULT_CHAT_BASE_URL = "https://api.openai.com"
DEFAULT_CHAT_ENDPOINT = "/v1/chat/completions"
TEXT_TIMEOUT_S = 300.0


class TextClient(Protocol):
    """Interface for plain-text completions."""

    async def generate_text(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float = 1.0,
        max_output_tokens: int = 8000,
        images: list[bytes] | None = None,
        system_prompt: str | None = None,
    ) -> str: ...


def is_rate_limited(exception: BaseException) -> bool:
    return isinstance(exception, ProviderCallError) and exception.status_code == 429


retry_on_rate_limit = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8) + wait_random(0, 1),
    retry=retry_if_exception(is_rate_limited),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class TextChatClient:
    """OpenAI-compatible chat completions client (non-streaming)."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        endpoint_type: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigError(
                "Text provider API key is not configured.\n"
                "Fix: edit the text provider in the settings page and fill in the API key."
            )
        self.api_key = api_key
        base = (base_url or DEFAULT_CHAT_BASE_URL).rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        endpoint = endpoint_type or DEFAULT_CHAT_ENDPOINT
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"
        self.url = f"{base}{endpoint}"
        self._http_client = http_client

    async def generate_text(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float = 1.0,
        max_output_tokens: int = 8000,
        images: list[bytes] | None = None,
        system_prompt: str | None = None,
    ) -> str:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        if images:
            content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
            for image in images:
                compressed = await asyncio.to_thread(compress_image, image, REFERENCE_BUDGET_KB)
                content.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": to_data_uri(compressed, "image/jpeg")},
                    }
                )
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_output_tokens,
            "stream": False,
        }
        logger.info(
            "text_chat event=start model=%s url=%s images=%d",
            model,
            self.url,
            len(images or []),
        )
        response_json = await self._post_completion(payload)
        return _extract_content(response_json)

    @retry_on_rate_limit
    async def _post_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._http_client or httpx.AsyncClient(timeout=TEXT_TIMEOUT_S)
        try:
            response = await client.post(
                self.url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        finally:
            if client is not self._http_client:
                await client.aclose()

        if response.status_code != 200:
            raise ProviderCallError(
                _status_message(response.status_code, response.text),
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderCallError(
                f"Text API returned non-JSON body: {response.text[:200]}",
                kind="bad_response",
            ) from exc


class GenAITextClient:
    """Gemini text generation through the google-genai SDK."""

    def __init__(
        self, *, api_key: str, base_url: str | None = None, client: Any | None = None
    ) -> None:
        if not api_key:
            raise ProviderConfigError(
                "Gemini API key is not configured.\n"
                "Fix: edit the text provider in the settings page and fill in the API key.\n"
                "Get a key at https://aistudio.google.com/app/apikey"
            )
        self.api_key = api_key
        self.base_url = base_url
        self._client = client or self._build_client()

    def _build_client(self) -> Any:
        from google import genai
        from google.genai import types

        http_options = types.HttpOptions(base_url=self.base_url) if self.base_url else None
        return genai.Client(api_key=self.api_key, http_options=http_options)

    async def generate_text(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float = 1.0,
        max_output_tokens: int = 8000,
        images: list[bytes] | None = None,
        system_prompt: str | None = None,
    ) -> str:
        from google.genai import errors as genai_errors
        from google.genai import types

        parts: list[Any] = []
        for image in images or []:
            compressed = await asyncio.to_thread(compress_image, image, REFERENCE_BUDGET_KB)
            parts.append(types.Part.from_bytes(data=compressed, mime_type="image/jpeg"))
        parts.append(types.Part.from_text(text=prompt))

        logger.info("genai_text event=start model=%s images=%d", model, len(images or []))
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=parts,
                config=types.GenerateContentConfig(
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                    system_instruction=system_prompt,
                ),
            )
        except genai_errors.APIError as exc:
            raise ProviderCallError(
                describe_provider_error(exc, provider="google_gemini"),
                status_code=exc.code,
            ) from exc

        text = response.text
        if not text:
            raise ProviderCallError(
                "Gemini returned an empty response; the prompt may have been blocked.",
                kind="safety",
            )
        return text


def build_text_client(provider: dict[str, Any]) -> TextClient:
    """Pick the text client for a validated text provider config."""
    provider_type = provider.get("type") or provider.get("name")
    if provider_type == "google_gemini":
        return GenAITextClient(
            api_key=provider.get("api_key", ""), base_url=provider.get("base_url")
        )
    return TextChatClient(
        api_key=provider.get("api_key", ""),
        base_url=provider.get("base_url"),
        endpoint_type=provider.get("endpoint_type"),
    )


def _extract_content(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices") or []
    if not choices:
        raise ProviderCallError("Text API response did not contain choices", kind="bad_response")

    content = (choices[0].get("message") or {}).get("content", "")
    if isinstance(content, str) and content:
        return content
    if isinstance(content, list):
        merged = "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ).strip()
        if merged:
            return merged
    raise ProviderCallError(
        "Text API response content could not be parsed as text", kind="bad_response"
    )


def _status_message(status_code: int, body: str) -> str:
    detail = body[:500]
    if status_code == 401:
        return f"Text API authentication failed (401): check the API key.\n{detail}"
    if status_code == 403:
        return f"Text API access denied (403): the key has no access to this model.\n{detail}"
    if status_code == 404:
        return f"Text API endpoint or model not found (404): check base_url and model.\n{detail}"
    if status_code == 429:
        return f"Text API rate limit reached (429): retry later.\n{detail}"
    if status_code >= 500:
        return f"Text API server error ({status_code}): the service may be unavailable.\n{detail}"
    return f"Text API request failed ({status_code}).\n{detail}"
