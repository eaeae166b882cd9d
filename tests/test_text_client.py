from __future__ import annotations

import json

import httpx
import pytest
from tenacity import wait_none

from redink_api.app.errors import ProviderCallError, ProviderConfigError
from redink_api.app.text_client import GenAITextClient, TextChatClient, build_text_client


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(TextChatClient._post_completion.retry, "wait", wait_none())


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _completion(text: str) -> dict[str, object]:
    return {"choices": [{"message": {"content": text}}]}


@pytest.mark.asyncio
async def test_generate_text_posts_chat_completion() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("outline text"))

    async with _client(handler) as http_client:
        client = TextChatClient(
            api_key="k", base_url="http://text.local/v1", http_client=http_client
        )
        text = await client.generate_text("prompt", model="m", system_prompt="be brief")

    assert text == "outline text"
    assert captured["url"] == "http://text.local/v1/chat/completions"
    body = captured["body"]
    assert body["stream"] is False
    assert body["messages"][0] == {"role": "system", "content": "be brief"}
    assert body["messages"][1] == {"role": "user", "content": "prompt"}


@pytest.mark.asyncio
async def test_images_are_sent_as_data_uris(png_bytes: bytes) -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("ok"))

    async with _client(handler) as http_client:
        client = TextChatClient(api_key="k", http_client=http_client)
        await client.generate_text("prompt", model="m", images=[png_bytes])

    content = captured["body"]["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "prompt"}
    assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_rate_limit_is_retried_then_succeeds() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(429, text="slow down")
        return httpx.Response(200, json=_completion("finally"))

    async with _client(handler) as http_client:
        client = TextChatClient(api_key="k", http_client=http_client)
        text = await client.generate_text("prompt", model="m")

    assert text == "finally"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_other_errors_are_not_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(401, text="bad key")

    async with _client(handler) as http_client:
        client = TextChatClient(api_key="k", http_client=http_client)
        with pytest.raises(ProviderCallError) as exc_info:
            await client.generate_text("prompt", model="m")

    assert len(calls) == 1
    assert exc_info.value.status_code == 401
    assert "authentication failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_list_content_is_merged() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        content = [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    async with _client(handler) as http_client:
        client = TextChatClient(api_key="k", http_client=http_client)
        assert await client.generate_text("prompt", model="m") == "ab"


def test_missing_api_key_is_a_config_error() -> None:
    with pytest.raises(ProviderConfigError):
        TextChatClient(api_key="")
    with pytest.raises(ProviderConfigError):
        GenAITextClient(api_key="", client=object())


def test_build_text_client_selects_by_type() -> None:
    chat = build_text_client(
        {"type": "openai_compatible", "api_key": "k", "base_url": "http://t.local"}
    )

    assert isinstance(chat, TextChatClient)
    assert chat.url == "http://t.local/v1/chat/completions"
