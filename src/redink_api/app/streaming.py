"""Streaming chat-completion reader and image extraction heuristics.

Some image providers only expose image models through the chat completions
endpoint. The image then arrives as text inside the final message: a markdown
image link, a base64 data URI, or a bare URL. This module reads such a stream
with a hard chunk budget and turns the final text into image bytes.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any

import httpx

from .errors import ProviderCallError, StreamTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNKS = 200
DOWNLOAD_TIMEOUT_S = 60.0

_MARKDOWN_IMAGE = re.compile(r"!\[.*?\]\((https?://[^\s)]+)\)")
_DATA_URI = re.compile(r"data:image/[^;]+;base64,([A-Za-z0-9+/=]+)")
_BARE_IMAGE_URL = re.compile(r"(https?://[^\s]+\.(?:png|jpg|jpeg|gif|webp))", re.IGNORECASE)


async def read_chat_stream(
    client: httpx.AsyncClient,
    url: str,
    *,
    payload: dict[str, Any],
    headers: dict[str, str],
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> str:
    """POST a `stream: true` chat request and return the final message text.

    Raises StreamTimeoutError once more than `max_chunks` lines arrive (keep-alives included)
    without `finish_reason == "stop"`.
    """
    content_parts: list[str] = []
    chunk_count = 0
    async with client.stream("POST", url, json=payload, headers=headers) as response:
        if response.status_code != 200:
            body = (await response.aread()).decode("utf-8", errors="replace")
            raise ProviderCallError(
                f"Chat stream request failed status={response.status_code} "
                f"url={url} detail={body[:500]}",
                status_code=response.status_code,
            )

        async for raw_line in response.aiter_lines():
            line = raw_line.strip()
            chunk_count += 1
            if chunk_count > max_chunks:
                logger.error(
                    "chat_stream event=chunk_limit url=%s chunks=%d limit=%d",
                    url,
                    chunk_count,
                    max_chunks,
                )
                raise StreamTimeoutError(
                    f"Streaming response exceeded {max_chunks} chunks without finishing."
                )
            if not line or line == "data: [DONE]":
                continue

            if line.startswith("data:"):
                line = line[len("data:") :].strip()
            try:
                chunk = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("chat_stream event=skip_line reason=not_json line=%s", line[:100])
                continue

            choices = chunk.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}
            reasoning = delta.get("reasoning_content")
            if reasoning:
                logger.debug("chat_stream event=reasoning text=%s", str(reasoning)[:200])
            content = delta.get("content")
            if isinstance(content, str):
                content_parts.append(content)

            if choice.get("finish_reason") == "stop":
                final_text = "".join(content_parts).strip()
                if not final_text:
                    raise ProviderCallError(
                        "Stream finished with finish_reason=stop but no content.",
                        kind="bad_response",
                    )
                logger.info(
                    "chat_stream event=stop chunks=%d chars=%d", chunk_count, len(final_text)
                )
                return final_text

    raise ProviderCallError(
        "Stream ended without finish_reason=stop.",
        kind="bad_response",
    )


async def extract_image(client: httpx.AsyncClient, content: str) -> bytes:
    """Turn model output text into image bytes.

    Tried in order: markdown image link, base64 data URI, bare image URL.
    """
    markdown_match = _MARKDOWN_IMAGE.search(content)
    if markdown_match:
        return await download_image(client, markdown_match.group(1))

    data_match = _DATA_URI.search(content)
    if data_match:
        try:
            return base64.b64decode(data_match.group(1))
        except (binascii.Error, ValueError) as exc:
            raise ProviderCallError(
                f"Data URI in response is not valid base64: {exc}",
                kind="bad_response",
            ) from exc

    url_match = _BARE_IMAGE_URL.search(content)
    if url_match:
        return await download_image(client, url_match.group(1))

    raise ProviderCallError(
        f"Could not find an image URL or data URI in the response content:\n{content[:500]}",
        kind="bad_response",
    )


async def download_image(client: httpx.AsyncClient, url: str) -> bytes:
    logger.info("image_download event=start url=%s", url[:200])
    response = await client.get(url, timeout=DOWNLOAD_TIMEOUT_S)
    if response.status_code != 200:
        raise ProviderCallError(
            f"Image download failed status={response.status_code} url={url}",
            status_code=response.status_code,
        )
    return response.content


def decode_b64_image(value: str) -> bytes:
    """Decode a base64 image, stripping a `data:...;base64,` prefix if present."""
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value)
    except (binascii.Error, ValueError) as exc:
        raise ProviderCallError(
            f"Invalid base64 image payload: {exc}", kind="bad_response"
        ) from exc


def to_data_uri(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
