"""Image generator adapters and the registry that builds them.

Beginner terms:
- Generator: adapter that turns (prompt, options) into image bytes for one provider type.
- Provider type: the `type` field in image_providers.yaml (google_genai, image_api, ...).
- Registry: lookup table from provider type to generator class. It is created
  and owned by the app, so tests can inject their own fake generators.

Every generator validates its settings in `__init__` and raises
ProviderConfigError with remediation text when something required is missing.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any, ClassVar

import httpx

from .compression import REFERENCE_BUDGET_KB, compress_image
from .errors import ProviderCallError, ProviderConfigError, describe_provider_error
from .streaming import (
    DEFAULT_MAX_CHUNKS,
    decode_b64_image,
    download_image,
    extract_image,
    read_chat_stream,
    to_data_uri,
)

logger = logging.getLogger(__name__)

IMAGES_ENDPOINT = "/v1/images/generations"
CHAT_ENDPOINT = "/v1/chat/completions"

STYLE_REFERENCE_PROMPT = (
    "Use the reference image(s) above as the visual style guide (palette, layout, "
    "typography, decorative elements) and create a new image in the same style.\n\n"
    "Content of the new image:\n{prompt}\n\n"
    "Requirements:\n"
    "1. Keep the same visual style and design language as the reference.\n"
    "2. Keep the colour scheme consistent with the reference.\n"
    "3. Keep layout and decorative elements unified.\n"
    "4. Follow the new content requirements above."
)


class ImageGenerator(ABC):
    """Base class for all image generators."""

    provider_type: ClassVar[str] = ""

    def __init__(self, config: dict[str, Any]) -> None:
        self.config = dict(config)
        self.api_key: str = str(self.config.get("api_key") or "")
        self.base_url: str = str(self.config.get("base_url") or "")

    @abstractmethod
    async def generate_image(self, *, prompt: str, **options: Any) -> bytes:
        """Return raw image bytes for `prompt`."""

    @abstractmethod
    def validate_config(self) -> bool: ...

    def supported_sizes(self) -> list[str]:
        return ["1024x1024"]

    def supported_aspect_ratios(self) -> list[str]:
        return ["1:1", "3:4", "16:9"]


class GoogleGenAIGenerator(ImageGenerator):
    """Generator backed by the google-genai SDK."""

    provider_type = "google_genai"
    default_model = "gemini-2.5-flash-image"

    def __init__(self, config: dict[str, Any], *, client: Any | None = None) -> None:
        super().__init__(config)
        if not self.api_key:
            raise ProviderConfigError(
                "Google GenAI API key is not configured.\n"
                "Fix: edit this provider in the settings page and fill in the API key.\n"
                "Get a key at https://aistudio.google.com/app/apikey"
            )
        self._client = client or self._build_client()

    def _build_client(self) -> Any:
        from google import genai
        from google.genai import types

        http_options = types.HttpOptions(base_url=self.base_url) if self.base_url else None
        return genai.Client(api_key=self.api_key, http_options=http_options)

    def validate_config(self) -> bool:
        return bool(self.api_key)

    def supported_aspect_ratios(self) -> list[str]:
        return ["1:1", "3:4", "4:3", "16:9", "9:16"]

    async def generate_image(self, *, prompt: str, **options: Any) -> bytes:
        from google.genai import errors as genai_errors
        from google.genai import types

        aspect_ratio = options.get("aspect_ratio") or "3:4"
        temperature = options.get("temperature") or 1.0
        model = options.get("model") or self.config.get("model") or self.default_model
        reference_image: bytes | None = options.get("reference_image")
        logger.info(
            "genai_image event=start model=%s aspect_ratio=%s prompt_chars=%d reference=%s",
            model,
            aspect_ratio,
            len(prompt),
            reference_image is not None,
        )

        parts: list[Any] = []
        if reference_image:
            compressed = await asyncio.to_thread(
                compress_image, reference_image, REFERENCE_BUDGET_KB
            )
            parts.append(types.Part.from_bytes(data=compressed, mime_type="image/jpeg"))
            parts.append(types.Part.from_text(text=STYLE_REFERENCE_PROMPT.format(prompt=prompt)))
        else:
            parts.append(types.Part.from_text(text=prompt))

        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=parts,
                config=types.GenerateContentConfig(
                    temperature=temperature,
                    response_modalities=["IMAGE"],
                    image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
                ),
            )
        except genai_errors.APIError as exc:
            logger.error("genai_image event=failed model=%s reason=%s", model, exc)
            raise ProviderCallError(
                describe_provider_error(exc, provider=self.provider_type),
                status_code=exc.code,
            ) from exc

        for candidate in response.candidates or []:
            content = candidate.content
            for part in (content.parts if content else None) or []:
                inline = part.inline_data
                if inline is not None and inline.data:
                    logger.info("genai_image event=done bytes=%d", len(inline.data))
                    return inline.data

        raise ProviderCallError(
            "Image generation returned no image.\n"
            "Possible causes: the prompt triggered the safety filter (most common), "
            "or the model does not support image output.\n"
            "Fix: rephrase the prompt or simplify it, then retry.",
            kind="safety",
        )


class _HttpImageGenerator(ImageGenerator):
    """Shared plumbing for generators that talk JSON over HTTP."""

    timeout_s: ClassVar[float] = 180.0
    default_model: ClassVar[str] = ""

    def __init__(
        self,
        config: dict[str, Any],
        *,
        http_client: httpx.AsyncClient | None = None,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
    ) -> None:
        super().__init__(config)
        self._require_settings()
        self.base_url = _normalize_base_url(self.base_url)
        self.model: str = str(self.config.get("model") or self.default_model)
        self.endpoint = _normalize_endpoint(self.config.get("endpoint_type"))
        self.max_chunks = int(self.config.get("stream_max_chunks") or max_chunks)
        self._http_client = http_client
        logger.info(
            "image_generator event=init type=%s base_url=%s model=%s endpoint=%s",
            self.provider_type,
            self.base_url,
            self.model,
            self.endpoint,
        )

    def _require_settings(self) -> None:
        if not self.api_key:
            raise ProviderConfigError(
                f"{self.provider_type} API key is not configured.\n"
                "Fix: edit this provider in the settings page and fill in the API key."
            )
        if not self.base_url:
            raise ProviderConfigError(
                f"{self.provider_type} base_url is not configured.\n"
                "Fix: edit this provider in the settings page and fill in the base URL."
            )

    def validate_config(self) -> bool:
        return bool(self.api_key and self.base_url)

    @property
    def uses_chat(self) -> bool:
        return "chat" in self.endpoint or "completions" in self.endpoint

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return httpx.AsyncClient(timeout=self.timeout_s)

    async def _post_json(
        self, client: httpx.AsyncClient, payload: dict[str, Any]
    ) -> dict[str, Any]:
        url = f"{self.base_url}{self.endpoint}"
        response = await client.post(url, json=payload, headers=self.headers)
        if response.status_code != 200:
            raise ProviderCallError(
                f"{self.provider_type} request failed status={response.status_code} "
                f"url={url} detail={response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderCallError(
                f"{self.provider_type} returned non-JSON body: {response.text[:200]}",
                kind="bad_response",
            ) from exc

    async def _generate_via_chat(
        self,
        client: httpx.AsyncClient,
        *,
        prompt: str,
        model: str,
        reference_images: list[bytes],
    ) -> bytes:
        content: str | list[dict[str, Any]] = prompt
        if reference_images:
            content = [{"type": "text", "text": prompt}]
            for image in reference_images:
                content.append({"type": "image_url", "image_url": {"url": to_data_uri(image)}})
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": 4096,
            "temperature": 1.0,
            "stream": True,
        }
        text = await read_chat_stream(
            client,
            f"{self.base_url}{self.endpoint}",
            payload=payload,
            headers=self.headers,
            max_chunks=self.max_chunks,
        )
        return await extract_image(client, text)


class ImageApiGenerator(_HttpImageGenerator):
    """Generic image API: `/v1/images/generations` or a streaming chat endpoint."""

    provider_type = "image_api"
    timeout_s = 300.0
    default_model = "default-model"

    def __init__(
        self,
        config: dict[str, Any],
        *,
        http_client: httpx.AsyncClient | None = None,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
    ) -> None:
        super().__init__(config, http_client=http_client, max_chunks=max_chunks)
        self.default_aspect_ratio = str(self.config.get("default_aspect_ratio") or "3:4")
        self.image_size = str(self.config.get("image_size") or "4K")

    def supported_sizes(self) -> list[str]:
        return ["1K", "2K", "4K"]

    def supported_aspect_ratios(self) -> list[str]:
        return ["1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9"]

    async def generate_image(self, *, prompt: str, **options: Any) -> bytes:
        aspect_ratio = options.get("aspect_ratio") or self.default_aspect_ratio
        model = options.get("model") or self.model
        references = await _collect_references(options)
        logger.info(
            "image_api event=start model=%s aspect_ratio=%s endpoint=%s references=%d",
            model,
            aspect_ratio,
            self.endpoint,
            len(references),
        )

        client = self._client()
        try:
            if self.uses_chat:
                return await self._generate_via_chat(
                    client, prompt=prompt, model=model, reference_images=references
                )
            return await self._generate_via_images(
                client,
                prompt=prompt,
                model=model,
                aspect_ratio=aspect_ratio,
                references=references,
            )
        finally:
            if client is not self._http_client:
                await client.aclose()

    async def _generate_via_images(
        self,
        client: httpx.AsyncClient,
        *,
        prompt: str,
        model: str,
        aspect_ratio: str,
        references: list[bytes],
    ) -> bytes:
        payload: dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "response_format": "b64_json",
            "aspect_ratio": aspect_ratio,
            "image_size": self.image_size,
        }
        if references:
            payload["image"] = [to_data_uri(image, "image/jpeg") for image in references]
            payload["prompt"] = STYLE_REFERENCE_PROMPT.format(prompt=prompt)

        result = await self._post_json(client, payload)
        items = result.get("data") or []
        if not items or not items[0].get("b64_json"):
            raise ProviderCallError(
                f"image_api response has no data[0].b64_json: {str(result)[:200]}",
                kind="bad_response",
            )
        image = decode_b64_image(items[0]["b64_json"])
        logger.info("image_api event=done bytes=%d", len(image))
        return image


class OpenAICompatibleGenerator(_HttpImageGenerator):
    """OpenAI images API (DALL-E style) or a compatible chat endpoint."""

    provider_type = "openai_compatible"
    timeout_s = 180.0
    default_model = "dall-e-3"

    def supported_sizes(self) -> list[str]:
        return ["1024x1024", "1024x1792", "1792x1024"]

    async def generate_image(self, *, prompt: str, **options: Any) -> bytes:
        size = options.get("size") or "1024x1024"
        model = options.get("model") or self.model
        quality = options.get("quality") or "standard"
        logger.info(
            "openai_image event=start model=%s size=%s endpoint=%s",
            model,
            size,
            self.endpoint,
        )

        client = self._client()
        try:
            if self.uses_chat:
                return await self._generate_via_chat(
                    client, prompt=prompt, model=model, reference_images=[]
                )
            payload: dict[str, Any] = {
                "model": model,
                "prompt": prompt,
                "n": 1,
                "size": size,
                "response_format": "b64_json",
            }
            if quality and model.startswith("dall-e"):
                payload["quality"] = quality
            result = await self._post_json(client, payload)
            items = result.get("data") or []
            if not items:
                raise ProviderCallError(
                    f"OpenAI images response has no data: {str(result)[:200]}",
                    kind="bad_response",
                )
            item = items[0]
            if item.get("b64_json"):
                return decode_b64_image(item["b64_json"])
            if item.get("url"):
                return await download_image(client, item["url"])
            raise ProviderCallError(
                "OpenAI images response has neither b64_json nor url.",
                kind="bad_response",
            )
        finally:
            if client is not self._http_client:
                await client.aclose()


class GeneratorRegistry:
    """Provider type -> generator class lookup, owned by the application."""

    def __init__(self, generators: dict[str, type[ImageGenerator]] | None = None) -> None:
        self._generators: dict[str, type[ImageGenerator]] = {}
        for name, generator_cls in (generators or {}).items():
            self.register(name, generator_cls)

    def register(self, name: str, generator_cls: type[ImageGenerator]) -> None:
        if not (isinstance(generator_cls, type) and issubclass(generator_cls, ImageGenerator)):
            raise TypeError(f"{generator_cls!r} must be a subclass of ImageGenerator")
        self._generators[name] = generator_cls

    def available(self) -> list[str]:
        return sorted(self._generators)

    def create(self, provider_type: str, config: dict[str, Any], **kwargs: Any) -> ImageGenerator:
        generator_cls = self._generators.get(provider_type)
        if generator_cls is None:
            raise ProviderConfigError(
                f"Unsupported image provider type: {provider_type}\n"
                f"Available types: {', '.join(self.available())}\n"
                "Fix: set `type` in image_providers.yaml to one of the available types."
            )
        logger.debug("generator_registry event=create type=%s", provider_type)
        return generator_cls(config, **kwargs)


def build_default_registry() -> GeneratorRegistry:
    return GeneratorRegistry(
        {
            "google_genai": GoogleGenAIGenerator,
            "image_api": ImageApiGenerator,
            "openai": OpenAICompatibleGenerator,
            "openai_compatible": OpenAICompatibleGenerator,
        }
    )


def _normalize_base_url(base_url: str) -> str:
    base_url = base_url.rstrip("/")
    if base_url.endswith("/v1"):
        base_url = base_url[: -len("/v1")]
    return base_url


def _normalize_endpoint(endpoint: Any) -> str:
    value = str(endpoint or IMAGES_ENDPOINT)
    if value == "images":
        value = IMAGES_ENDPOINT
    elif value == "chat":
        value = CHAT_ENDPOINT
    if not value.startswith("/"):
        value = f"/{value}"
    return value


async def _collect_references(options: dict[str, Any]) -> list[bytes]:
    references: list[bytes] = []
    many: Iterable[bytes] | None = options.get("reference_images")
    if many:
        references.extend(many)
    single: bytes | None = options.get("reference_image")
    if single:
        references.append(single)
    return [
        await asyncio.to_thread(compress_image, image, REFERENCE_BUDGET_KB)
        for image in references
    ]
