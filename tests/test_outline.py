from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from conftest import SAMPLE_OUTLINE, FakeTextClient
from redink_api.app.errors import ProviderCallError
from redink_api.app.outline import (
    OutlineGenerationError,
    OutlineService,
    load_prompt,
    parse_outline,
)
from redink_api.app.provider_config import ProviderConfigStore


def _store(tmp_path: Path, providers: dict[str, object] | None = None) -> ProviderConfigStore:
    text_path = tmp_path / "text_providers.yaml"
    if providers is not None:
        text_path.write_text(
            yaml.safe_dump({"active_provider": "main", "providers": providers}),
            encoding="utf-8",
        )
    return ProviderConfigStore(image_path=tmp_path / "image_providers.yaml", text_path=text_path)


def test_parse_outline_labels_and_indices() -> None:
    pages = parse_outline(SAMPLE_OUTLINE)

    assert [(page.index, page.type) for page in pages] == [
        (0, "cover"),
        (1, "content"),
        (2, "summary"),
    ]
    assert pages[0].content == "[封面]\nA"
    assert pages[2].content == "[总结]\nC"


def test_parse_outline_marker_is_case_insensitive_and_skips_empty_blocks() -> None:
    pages = parse_outline("first\n<PAGE>\n\n<page>second")

    assert [page.content for page in pages] == ["first", "second"]
    assert [page.index for page in pages] == [0, 1]
    assert all(page.type == "content" for page in pages)


def test_parse_outline_falls_back_to_legacy_separator() -> None:
    pages = parse_outline("[封面]\nhello\n---\n[未知]\nbody")

    assert [page.type for page in pages] == ["cover", "content"]


def test_parse_outline_empty_text() -> None:
    assert parse_outline("   ") == []


def test_load_prompt_missing_file_is_empty(tmp_path: Path) -> None:
    assert load_prompt(tmp_path, "nope.txt") == ""


def test_packaged_outline_prompt_has_topic_placeholder() -> None:
    from redink_api.app.settings import PACKAGE_PROMPTS_DIR

    assert "{topic}" in load_prompt(PACKAGE_PROMPTS_DIR, "outline_prompt.txt")


@pytest.mark.asyncio
async def test_generate_outline_uses_active_text_provider(tmp_path: Path, png_bytes: bytes) -> None:
    store = _store(tmp_path, {"main": {"type": "openai_compatible", "api_key": "k", "model": "m1"}})
    prompts = tmp_path / "prompts"
    prompts.mkdir()
    (prompts / "outline_prompt.txt").write_text("Topic: {topic}", encoding="utf-8")
    text_client = FakeTextClient()
    seen_providers: list[dict[str, object]] = []

    def factory(provider: dict[str, object]) -> FakeTextClient:
        seen_providers.append(provider)
        return text_client

    service = OutlineService(config_store=store, prompts_dir=prompts, text_client_factory=factory)
    result = await service.generate_outline("咖啡", [png_bytes])

    assert result.has_images is True
    assert len(result.pages) == 3
    assert result.outline == SAMPLE_OUTLINE
    assert seen_providers[0]["name"] == "main"
    call = text_client.calls[0]
    assert call["model"] == "m1"
    assert call["prompt"].startswith("Topic: 咖啡")
    assert "参考图片" in call["prompt"]
    assert call["images"] == [png_bytes]


@pytest.mark.asyncio
async def test_generate_outline_explains_provider_failures(tmp_path: Path) -> None:
    store = _store(tmp_path, {"main": {"type": "openai_compatible", "api_key": "k"}})
    failing = FakeTextClient(error=ProviderCallError("denied", status_code=401))
    service = OutlineService(
        config_store=store, prompts_dir=tmp_path, text_client_factory=lambda provider: failing
    )

    with pytest.raises(OutlineGenerationError) as exc_info:
        await service.generate_outline("topic")

    assert "API key authentication failed" in str(exc_info.value)
    assert str(exc_info.value).startswith("[main]")


@pytest.mark.asyncio
async def test_generate_outline_rejects_empty_outline(tmp_path: Path) -> None:
    store = _store(tmp_path, {"main": {"type": "openai_compatible", "api_key": "k"}})
    service = OutlineService(
        config_store=store,
        prompts_dir=tmp_path,
        text_client_factory=lambda provider: FakeTextClient(reply="  "),
    )

    with pytest.raises(OutlineGenerationError, match="without any pages"):
        await service.generate_outline("topic")


@pytest.mark.asyncio
async def test_generate_outline_reports_missing_configuration(tmp_path: Path) -> None:
    service = OutlineService(config_store=_store(tmp_path), prompts_dir=tmp_path)

    with pytest.raises(OutlineGenerationError, match="No text generation providers"):
        await service.generate_outline("topic")
