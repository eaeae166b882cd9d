"""Outline generation and parsing.

Beginner terms:
- Outline: the raw text the model returns, one block per page.
- Page marker: `<page>` line separating pages (`---` is accepted for older prompts).
- Label: optional `[封面]` / `[内容]` / `[总结]` prefix deciding the page type.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from .errors import ProviderCallError, ProviderConfigError, describe_provider_error
from .models import OutlinePage, OutlineResult, PageType
from .provider_config import ProviderConfigStore
from .text_client import TextClient, build_text_client

logger = logging.getLogger(__name__)

PAGE_MARKER = re.compile(r"<page>", re.IGNORECASE)
LEGACY_PAGE_MARKER = "---"
LABEL_PATTERN = re.compile(r"^\[(\S+?)\]")

LABEL_TYPES: dict[str, PageType] = {
    "封面": "cover",
    "内容": "content",
    "总结": "summary",
}

DEFAULT_TEXT_MODEL = "gemini-2.0-flash-exp"

IMAGES_NOTE = (
    "\n\n注意：用户提供了参考图片，请结合图片中的内容、风格和信息来策划大纲，"
    "让生成的图文与参考图片保持一致。"
)


class OutlineGenerationError(RuntimeError):
    """Outline could not be produced; message is safe to show to users."""


def parse_outline(text: str) -> list[OutlinePage]:
    """Split raw outline text into typed pages with sequential indices."""
    if PAGE_MARKER.search(text):
        segments = PAGE_MARKER.split(text)
    else:
        segments = text.split(LEGACY_PAGE_MARKER)

    pages: list[OutlinePage] = []
    for segment in segments:
        content = segment.strip()
        if not content:
            continue
        pages.append(OutlinePage(index=len(pages), type=_page_type(content), content=content))
    return pages


def _page_type(content: str) -> PageType:
    match = LABEL_PATTERN.match(content)
    if match is None:
        return "content"
    return LABEL_TYPES.get(match.group(1), "content")


def load_prompt(prompts_dir: Path, filename: str) -> str:
    """Read a prompt template; a missing file yields an empty template."""
    path = prompts_dir / filename
    if not path.exists():
        logger.warning("prompt_template event=missing path=%s", path)
        return ""
    return path.read_text(encoding="utf-8")


class OutlineService:
    """Generates an outline for a topic with the active text provider."""

    def __init__(
        self,
        *,
        config_store: ProviderConfigStore,
        prompts_dir: Path,
        text_client_factory: Callable[[dict[str, Any]], TextClient] = build_text_client,
    ) -> None:
        self.config_store = config_store
        self.prompts_dir = prompts_dir
        self.text_client_factory = text_client_factory

    async def generate_outline(
        self, topic: str, images: list[bytes] | None = None
    ) -> OutlineResult:
        provider = self._provider()
        client = self.text_client_factory(provider)

        prompt = load_prompt(self.prompts_dir, "outline_prompt.txt").replace("{topic}", topic)
        if not prompt:
            prompt = topic
        if images:
            prompt += IMAGES_NOTE

        model = provider.get("model") or DEFAULT_TEXT_MODEL
        logger.info(
            "outline event=start provider=%s model=%s topic_chars=%d images=%d",
            provider.get("name"),
            model,
            len(topic),
            len(images or []),
        )
        try:
            outline_text = await client.generate_text(
                prompt,
                model=model,
                temperature=float(provider.get("temperature") or 1.0),
                max_output_tokens=int(provider.get("max_output_tokens") or 8000),
                images=images or None,
            )
        except (ProviderCallError, httpx.HTTPError) as exc:
            logger.error("outline event=failed provider=%s reason=%s", provider.get("name"), exc)
            message = describe_provider_error(exc, provider=str(provider.get("name")))
            raise OutlineGenerationError(message) from exc

        pages = parse_outline(outline_text)
        if not pages:
            raise OutlineGenerationError(
                "The model returned an outline without any pages.\n"
                "Fix: retry, or adjust the outline prompt so pages are separated by <page>."
            )
        logger.info("outline event=done pages=%d", len(pages))
        return OutlineResult(outline=outline_text, pages=pages, has_images=bool(images))

    def _provider(self) -> dict[str, Any]:
        try:
            return self.config_store.text_provider()
        except ProviderConfigError as exc:
            raise OutlineGenerationError(str(exc)) from exc
