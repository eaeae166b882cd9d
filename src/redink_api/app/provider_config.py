"""YAML-backed provider configuration.

Two documents live side by side:
- image_providers.yaml: {active_provider, providers: {name: {type, api_key, base_url, ...}}}
- text_providers.yaml: same shape, for outline (text) generation.

API keys never leave this module in clear text through the public API views:
`public_view()` blanks them and adds a masked preview instead.
"""

from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path
from typing import Any, Literal

import yaml

from .errors import ProviderConfigError

logger = logging.getLogger(__name__)

ConfigKind = Literal["image", "text"]

DEFAULT_IMAGE_CONFIG: dict[str, Any] = {"active_provider": "google_genai", "providers": {}}
DEFAULT_TEXT_CONFIG: dict[str, Any] = {"active_provider": "google_gemini", "providers": {}}

# Image provider types that cannot work without an explicit endpoint.
# Text clients fall back to the public OpenAI endpoint instead.
BASE_URL_REQUIRED_TYPES = frozenset({"openai", "openai_compatible", "image_api"})

# Fields that only exist in API views and must never be written back.
_VIEW_ONLY_FIELDS = ("api_key_env", "api_key_masked")


def mask_api_key(api_key: str | None) -> str:
    if not api_key:
        return ""
    if len(api_key) <= 8:
        return "********"
    return f"{api_key[:4]}****{api_key[-4:]}"


class ProviderConfigStore:
    """Reads, caches, validates, and writes the two provider YAML files."""

    def __init__(self, *, image_path: Path, text_path: Path) -> None:
        self.paths: dict[ConfigKind, Path] = {"image": image_path, "text": text_path}
        self._cache: dict[ConfigKind, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def reload(self) -> None:
        """Drop cached documents; the next read goes back to disk."""
        with self._lock:
            self._cache.clear()
        logger.info("provider_config event=reload")

    def load(self, kind: ConfigKind) -> dict[str, Any]:
        with self._lock:
            if kind not in self._cache:
                self._cache[kind] = self._read(kind)
            return copy.deepcopy(self._cache[kind])

    def _read(self, kind: ConfigKind) -> dict[str, Any]:
        default = DEFAULT_IMAGE_CONFIG if kind == "image" else DEFAULT_TEXT_CONFIG
        path = self.paths[kind]
        if not path.exists():
            logger.info("provider_config event=defaults kind=%s path=%s", kind, path)
            return copy.deepcopy(default)
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ProviderConfigError(
                f"{path.name} is not valid YAML: {exc}\n"
                "Fix: correct the YAML syntax or delete the file to fall back to defaults."
            ) from exc
        if not isinstance(loaded, dict):
            raise ProviderConfigError(f"{path.name} must contain a mapping at the top level.")
        loaded.setdefault("active_provider", default["active_provider"])
        loaded["providers"] = loaded.get("providers") or {}
        return loaded

    def active_provider(self, kind: ConfigKind) -> str:
        return str(self.load(kind).get("active_provider") or "")

    def image_provider(self, name: str | None = None) -> dict[str, Any]:
        """Return one validated image provider config (active one by default)."""
        return self._provider("image", name)

    def text_provider(self, name: str | None = None) -> dict[str, Any]:
        return self._provider("text", name)

    def _provider(self, kind: ConfigKind, name: str | None) -> dict[str, Any]:
        document = self.load(kind)
        file_name = self.paths[kind].name
        provider_name = name or str(document.get("active_provider") or "")
        providers: dict[str, Any] = document.get("providers") or {}

        if not providers:
            raise ProviderConfigError(
                f"No {kind} generation providers are configured.\n"
                f"Fix: add a provider in the settings page or edit {file_name}."
            )
        if provider_name not in providers:
            raise ProviderConfigError(
                f"{kind.capitalize()} provider '{provider_name}' does not exist.\n"
                f"Available providers: {', '.join(sorted(providers))}\n"
                f"Fix: set active_provider in {file_name} to one of the available providers."
            )

        provider = dict(providers[provider_name] or {})
        provider_type = str(provider.get("type") or provider_name)
        provider["type"] = provider_type
        provider["name"] = provider_name
        if not provider.get("api_key"):
            raise ProviderConfigError(
                f"Provider '{provider_name}' has no api_key.\n"
                "Fix: edit this provider in the settings page and fill in the API key."
            )
        if (
            kind == "image"
            and provider_type in BASE_URL_REQUIRED_TYPES
            and not provider.get("base_url")
        ):
            raise ProviderConfigError(
                f"Provider '{provider_name}' (type {provider_type}) requires base_url.\n"
                "Fix: edit this provider in the settings page and fill in the base URL."
            )
        return provider

    def stored_provider(self, kind: ConfigKind, name: str) -> dict[str, Any] | None:
        """Raw provider entry without validation (used for connection tests)."""
        providers = self.load(kind).get("providers") or {}
        entry = providers.get(name)
        return dict(entry) if isinstance(entry, dict) else None

    def public_view(self) -> dict[str, Any]:
        """Both documents with API keys blanked and a masked preview added."""
        view: dict[str, Any] = {}
        for kind, key in (("text", "text_generation"), ("image", "image_generation")):
            document = self.load(kind)
            view[key] = {
                "active_provider": document.get("active_provider") or "",
                "providers": {
                    name: _mask_provider(provider or {})
                    for name, provider in (document.get("providers") or {}).items()
                },
            }
        return view

    def update(self, payload: dict[str, Any]) -> None:
        """Merge API payload into the YAML files and reload.

        A blank/boolean/null api_key in the payload keeps the stored key.
        """
        for kind, key in (("image", "image_generation"), ("text", "text_generation")):
            section = payload.get(key)
            if not isinstance(section, dict):
                continue
            document = self.load(kind)
            if section.get("active_provider") is not None:
                document["active_provider"] = section["active_provider"]

            new_providers = section.get("providers")
            if isinstance(new_providers, dict):
                existing = document.get("providers") or {}
                merged: dict[str, Any] = {}
                for name, raw in new_providers.items():
                    if raw is not None and not isinstance(raw, dict):
                        raise ProviderConfigError(
                            f"Provider '{name}' must be a mapping of settings."
                        )
                    provider = dict(raw or {})
                    api_key = provider.get("api_key")
                    if api_key is None or isinstance(api_key, bool) or api_key == "":
                        stored_key = (existing.get(name) or {}).get("api_key")
                        if stored_key:
                            provider["api_key"] = stored_key
                        else:
                            provider.pop("api_key", None)
                    for field in _VIEW_ONLY_FIELDS:
                        provider.pop(field, None)
                    merged[name] = provider
                document["providers"] = merged

            self._write(kind, document)
        self.reload()

    def _write(self, kind: ConfigKind, document: dict[str, Any]) -> None:
        path = self.paths[kind]
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            yaml.safe_dump(document, allow_unicode=True, sort_keys=False),
            encoding="utf-8",
        )
        logger.info(
            "provider_config event=saved kind=%s path=%s providers=%d",
            kind,
            path,
            len(document.get("providers") or {}),
        )


def _mask_provider(provider: dict[str, Any]) -> dict[str, Any]:
    masked = dict(provider)
    masked["api_key_masked"] = mask_api_key(str(masked.get("api_key") or ""))
    masked["api_key"] = ""
    return masked
