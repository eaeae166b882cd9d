from __future__ import annotations

import asyncio
import io
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml
from fastapi.testclient import TestClient
from PIL import Image

from redink_api.app.errors import ProviderCallError
from redink_api.app.generators import GeneratorRegistry, ImageGenerator
from redink_api.app.history import HistoryStore
from redink_api.app.settings import Settings, get_settings

SAMPLE_OUTLINE = "[封面]\nA\n<page>[内容]\nB\n<page>[总结]\nC"


def make_png(color: tuple[int, int, int] = (200, 40, 40), size: tuple[int, int] = (8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeImageGenerator(ImageGenerator):
    """Test-only generator: returns a tiny PNG, fails when a marker is in the prompt."""

    provider_type = "fake"

    def __init__(self, config: dict[str, Any]) -> None:
        super().__init__(config)
        self.fail_markers: set[str] = set(self.config.get("fail_markers") or [])
        self.delay_s = float(self.config.get("delay_s") or 0.0)
        self.calls: list[dict[str, Any]] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.image = make_png()

    def validate_config(self) -> bool:
        return True

    async def generate_image(self, *, prompt: str, **options: Any) -> bytes:
        self.calls.append({"prompt": prompt, **options})
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay_s)
            if any(marker in prompt for marker in self.fail_markers):
                raise ProviderCallError("upstream exploded", status_code=500)
            return self.image
        finally:
            self.in_flight -= 1


class FakeTextClient:
    def __init__(self, reply: str = SAMPLE_OUTLINE, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []

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
        self.calls.append({"prompt": prompt, "model": model, "images": images or []})
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def history(tmp_path: Path) -> HistoryStore:
    return HistoryStore(tmp_path / "history")


@pytest.fixture
def fake_generator() -> FakeImageGenerator:
    return FakeImageGenerator({"name": "fake", "type": "fake", "api_key": "sk-test"})


@pytest.fixture
def fake_text_client() -> FakeTextClient:
    return FakeTextClient()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "image_providers.yaml").write_text(
        yaml.safe_dump(
            {
                "active_provider": "fake",
                "providers": {
                    "fake": {
                        "type": "fake",
                        "api_key": "sk-image-0123456789",
                        "fail_markers": ["FAIL"],
                    }
                },
            }
        ),
        encoding="utf-8",
    )
    (config_dir / "text_providers.yaml").write_text(
        yaml.safe_dump(
            {
                "active_provider": "text_main",
                "providers": {
                    "text_main": {
                        "type": "openai_compatible",
                        "api_key": "sk-text-abcdefgh1234",
                        "base_url": "http://text.local/v1",
                        "model": "text-model",
                    }
                },
            }
        ),
        encoding="utf-8",
    )
    # Missing prompts dir: templates are empty, so prompts equal page content.
    return Settings(
        _env_file=None,
        history_dir=tmp_path / "history",
        config_dir=config_dir,
        prompts_dir=tmp_path / "prompts",
        retry_backoff_s=0.0,
    )


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    settings: Settings,
    fake_text_client: FakeTextClient,
) -> Iterator[TestClient]:
    # Keep the module-level app created on first import away from the cwd.
    monkeypatch.setenv("REDINK_HISTORY_DIR", str(tmp_path / "module_history"))
    monkeypatch.setenv("REDINK_CONFIG_DIR", str(tmp_path / "module_config"))
    get_settings.cache_clear()
    from redink_api import main as main_module

    registry = GeneratorRegistry({"fake": FakeImageGenerator})
    app = main_module.create_app(
        settings=settings,
        registry=registry,
        text_client_factory=lambda provider: fake_text_client,
    )
    with TestClient(app) as test_client:
        yield test_client
    get_settings.cache_clear()
