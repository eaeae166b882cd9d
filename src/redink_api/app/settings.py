"""Application settings."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_PROMPTS_DIR = Path(__file__).resolve().parents[1] / "prompts"


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "redink-api"
    host: str = "0.0.0.0"
    port: int = 12398
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    # Paths are relative to the working directory, like the server process.
    # Durable state: history index/detail JSON files and one directory per task.
    history_dir: Path = Path("history")
    # Directory holding image_providers.yaml and text_providers.yaml.
    config_dir: Path = Path(".")
    prompts_dir: Path = PACKAGE_PROMPTS_DIR
    max_concurrent: int = Field(default=15, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff_s: float = Field(default=1.0, ge=0.0)
    stream_max_chunks: int = Field(default=200, ge=1)
    task_state_max: int = Field(default=64, ge=1)
    task_state_ttl_s: float = Field(default=6 * 3600.0, gt=0.0)

    model_config = SettingsConfigDict(
        env_prefix="REDINK_",
        extra="ignore",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
    )

    @property
    def image_config_path(self) -> Path:
        return self.config_dir / "image_providers.yaml"

    @property
    def text_config_path(self) -> Path:
        return self.config_dir / "text_providers.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str) -> None:
    """Attach a basic stream handler once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    root.setLevel(level.upper())
