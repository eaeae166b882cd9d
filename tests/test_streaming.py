from __future__ import annotations

import base64
import json

import httpx
import pytest

from redink_api.app.errors import ProviderCallError, StreamTimeoutError
from redink_api.app.streaming import decode_b64_image, extract_image, read_chat_stream, to_data_uri

CHAT_URL = "http://provider.local/v1/chat/completions"


def _sse(*chunks: dict[str, object], done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(chunk)}" for chunk in chunks]
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode("utf-8")


def _delta(content: str | None = None, finish_reason: str | None = None) -> dict[str, object]:
    delta = {"content": content} if content is not None else {}
    return {"choices": [{"delta": delta, "finish_reason": finish_reason}]}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_stream_returns_accumulated_text_on_stop() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        body = _sse(
            _delta("![img]("), _delta("http://cdn.local/a.png)"), _delta(finish_reason="stop")
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        text = await read_chat_stream(
            client, CHAT_URL, payload={"stream": True}, headers={"Authorization": "Bearer k"}
        )

    assert text == "![img](http://cdn.local/a.png)"
    assert captured["body"] == {"stream": True}


@pytest.mark.asyncio
async def test_stream_raises_after_chunk_budget() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        chunks = [_delta("x") for _ in range(10)]
        return httpx.Response(200, content=_sse(*chunks, done=False))

    async with _client(handler) as client:
        with pytest.raises(StreamTimeoutError):
            await read_chat_stream(client, CHAT_URL, payload={}, headers={}, max_chunks=5)


@pytest.mark.asyncio
async def test_stream_without_stop_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse(_delta("partial")))

    async with _client(handler) as client:
        with pytest.raises(ProviderCallError, match="without finish_reason=stop"):
            await read_chat_stream(client, CHAT_URL, payload={}, headers={})


@pytest.mark.asyncio
async def test_stream_stop_with_empty_content_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse(_delta(finish_reason="stop")))

    async with _client(handler) as client:
        with pytest.raises(ProviderCallError, match="no content"):
            await read_chat_stream(client, CHAT_URL, payload={}, headers={})


@pytest.mark.asyncio
async def test_stream_http_error_keeps_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="slow down")

    async with _client(handler) as client:
        with pytest.raises(ProviderCallError) as exc_info:
            await read_chat_stream(client, CHAT_URL, payload={}, headers={})

    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_extract_image_prefers_markdown_link(png_bytes: bytes) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=png_bytes)

    content = f"![x](http://cdn.local/a.png) and {to_data_uri(b'other')}"
    async with _client(handler) as client:
        image = await extract_image(client, content)

    assert image == png_bytes
    assert requested == ["http://cdn.local/a.png"]


@pytest.mark.asyncio
async def test_extract_image_from_data_uri_and_bare_url(png_bytes: bytes) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"downloaded")

    async with _client(handler) as client:
        from_uri = await extract_image(client, f"here: {to_data_uri(png_bytes)}")
        from_url = await extract_image(client, "see https://cdn.local/pic.JPG now")

    assert from_uri == png_bytes
    assert from_url == b"downloaded"


@pytest.mark.asyncio
async def test_extract_image_without_image_fails() -> None:
    async with _client(lambda request: httpx.Response(200)) as client:
        with pytest.raises(ProviderCallError):
            await extract_image(client, "I cannot draw that.")


def test_decode_b64_image_strips_data_uri_prefix(png_bytes: bytes) -> None:
    encoded = base64.b64encode(png_bytes).decode("ascii")

    assert decode_b64_image(encoded) == png_bytes
    assert decode_b64_image(f"data:image/png;base64,{encoded}") == png_bytes


@pytest.mark.asyncio
async def test_keep_alive_lines_count_toward_chunk_budget() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"\n" * 50 + b"data: [DONE]\n" * 50)

    async with _client(handler) as client:
        with pytest.raises(StreamTimeoutError):
            await read_chat_stream(client, CHAT_URL, payload={}, headers={}, max_chunks=5)
