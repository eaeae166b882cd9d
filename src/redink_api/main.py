"""FastAPI application wiring for the RedInk generation backend.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /api/health).
- SSE (server-sent events): one long HTTP response that streams progress events.
- app.state: a place to store shared runtime objects (history store, config, task state).
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
import zipfile
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response, StreamingResponse
from pydantic import ValidationError

from .app.errors import ProviderConfigError
from .app.generators import GeneratorRegistry, build_default_registry
from .app.history import THUMBNAIL_PREFIX, HistoryStore, is_safe_name
from .app.models import (
    CreateHistoryRequest,
    GenerateRequest,
    OutlineRequest,
    ProviderTestRequest,
    RegenerateRequest,
    RetryFailedRequest,
    UpdateHistoryRequest,
)
from .app.orchestrator import ImageOrchestrator
from .app.outline import OutlineGenerationError, OutlineService
from .app.provider_config import ProviderConfigStore
from .app.settings import Settings, configure_logging, get_settings
from .app.sse import sse_response
from .app.task_state import TaskStateStore
from .app.text_client import TextClient, build_text_client

logger = logging.getLogger(__name__)

CONNECTION_TEST_PROMPT = "请回复'你好，红墨'"
CONNECTION_TEST_TIMEOUT_S = 30.0
_UNSAFE_TITLE_CHARS = re.compile(r"[^a-zA-Z0-9一-龥 \-_]")


def create_app(
    *,
    settings: Settings | None = None,
    history: HistoryStore | None = None,
    registry: GeneratorRegistry | None = None,
    text_client_factory: Callable[[dict[str, Any]], TextClient] | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Application factory.

    Keyword arguments let tests swap in fake generators, fake text clients, and
    a mock HTTP transport without touching the network.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    history = history or HistoryStore(settings.history_dir)
    config_store = ProviderConfigStore(
        image_path=settings.image_config_path,
        text_path=settings.text_config_path,
    )

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.history = history
    app.state.config_store = config_store
    app.state.registry = registry or build_default_registry()
    app.state.task_states = TaskStateStore(
        max_tasks=settings.task_state_max,
        ttl_s=settings.task_state_ttl_s,
    )
    app.state.outline_service = OutlineService(
        config_store=config_store,
        prompts_dir=settings.prompts_dir,
        text_client_factory=text_client_factory or build_text_client,
    )
    app.state.http_transport = http_transport
    # Built lazily from the active image provider; reset when config changes.
    app.state.orchestrator = None

    def get_orchestrator() -> ImageOrchestrator:
        if app.state.orchestrator is None:
            try:
                provider = config_store.image_provider()
                provider.setdefault("stream_max_chunks", settings.stream_max_chunks)
                generator = app.state.registry.create(provider["type"], provider)
            except ProviderConfigError as exc:
                logger.error("image_service event=config_error reason=%s", exc)
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            app.state.orchestrator = ImageOrchestrator(
                generator=generator,
                provider=provider,
                history=history,
                task_states=app.state.task_states,
                prompts_dir=settings.prompts_dir,
                max_concurrent=settings.max_concurrent,
                retry_attempts=settings.retry_attempts,
                retry_backoff_s=settings.retry_backoff_s,
            )
            logger.info(
                "image_service event=ready provider=%s type=%s",
                provider.get("name"),
                provider.get("type"),
            )
        return app.state.orchestrator

    @app.get("/")
    def index() -> dict[str, Any]:
        return {
            "success": True,
            "message": "RedInk generation backend",
            "endpoints": {
                "health": "/api/health",
                "outline": "/api/outline",
                "generate": "/api/generate",
                "history": "/api/history",
                "config": "/api/config",
            },
        }

    @app.get("/health")
    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {"success": True, "status": "ok", "service": settings.app_name}

    @app.post("/api/outline")
    async def generate_outline(request: Request) -> dict[str, Any]:
        topic, images = await _read_outline_request(request)
        if not topic.strip():
            raise HTTPException(status_code=400, detail="topic must not be empty")
        try:
            result = await app.state.outline_service.generate_outline(topic, images or None)
        except OutlineGenerationError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"success": True, **result.model_dump(mode="json")}

    @app.post("/api/generate")
    async def generate_images(payload: GenerateRequest) -> StreamingResponse:
        if (not payload.task_id and not payload.record_id) or payload.pages is None:
            raise HTTPException(
                status_code=400,
                detail="task_id or record_id is required, and pages must not be empty.",
            )
        task_id = payload.task_id
        if not task_id and payload.record_id:
            record = history.get_record(payload.record_id)
            if record is not None and record.images.task_id:
                task_id = record.images.task_id
                logger.info(
                    "generate event=task_from_record record_id=%s task_id=%s",
                    payload.record_id,
                    task_id,
                )
        _require_safe_name(task_id, "task_id")

        orchestrator = get_orchestrator()
        events = orchestrator.generate(
            payload.pages,
            task_id=task_id,
            full_outline=payload.full_outline,
            user_images=_decode_images(payload.user_images),
            user_topic=payload.user_topic,
            record_id=payload.record_id,
        )
        return sse_response(events, label="generate")

    @app.post("/api/retry")
    async def retry_image(payload: RegenerateRequest) -> StreamingResponse:
        return _single_page_stream(payload, force=False, label="retry")

    @app.post("/api/regenerate")
    async def regenerate_image(payload: RegenerateRequest) -> StreamingResponse:
        return _single_page_stream(payload, force=True, label="regenerate")

    def _single_page_stream(
        payload: RegenerateRequest, *, force: bool, label: str
    ) -> StreamingResponse:
        if not payload.task_id or payload.page is None:
            raise HTTPException(status_code=400, detail="task_id and page are required.")
        _require_safe_name(payload.task_id, "task_id")
        record = history.find_record_by_task(payload.task_id)
        orchestrator = get_orchestrator()
        events = orchestrator.retry_single(
            payload.task_id,
            payload.page,
            use_reference=payload.use_reference,
            full_outline=payload.full_outline or None,
            user_topic=payload.user_topic or None,
            record_id=record.id if record else None,
            force=force,
        )
        return sse_response(events, label=label)

    @app.post("/api/retry-failed")
    async def retry_failed(payload: RetryFailedRequest) -> StreamingResponse:
        if not payload.task_id or payload.pages is None:
            raise HTTPException(status_code=400, detail="task_id and pages are required.")
        _require_safe_name(payload.task_id, "task_id")
        record = history.find_record_by_task(payload.task_id)
        orchestrator = get_orchestrator()
        events = orchestrator.retry_failed(
            payload.task_id,
            payload.pages,
            record_id=record.id if record else None,
        )
        return sse_response(events, label="retry-failed")

    @app.get("/api/task/{task_id}")
    def get_task_state(task_id: str) -> dict[str, Any]:
        state = app.state.task_states.get(task_id)
        if state is None:
            raise HTTPException(
                status_code=404,
                detail=f"Task not found: {task_id} (wrong id, expired, or lost on restart)",
            )
        return {"success": True, "state": state.summary()}

    @app.get("/api/images/{task_id}/{filename}")
    def get_image(task_id: str, filename: str, thumbnail: bool = False) -> FileResponse:
        if not (is_safe_name(task_id) and is_safe_name(filename)):
            raise HTTPException(status_code=404, detail="Image not found")
        task_dir = history.task_dir(task_id)
        candidates = [task_dir / filename]
        if thumbnail:
            candidates.insert(0, task_dir / f"{THUMBNAIL_PREFIX}{filename}")
        for path in candidates:
            if path.is_file():
                return FileResponse(path, headers={"Cache-Control": "public, max-age=3600"})
        raise HTTPException(status_code=404, detail="Image not found")

    @app.post("/api/history")
    def create_history(payload: CreateHistoryRequest) -> dict[str, Any]:
        if not payload.topic or not payload.outline:
            raise HTTPException(status_code=400, detail="topic and outline are required.")
        try:
            record_id = history.create_record(payload.topic, payload.outline, payload.task_id)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid outline: {exc}") from exc
        return {"success": True, "record_id": record_id}

    @app.get("/api/history")
    def list_history(
        page: int = 1, page_size: int = 20, status: str | None = None
    ) -> dict[str, Any]:
        return {"success": True, **history.list_records(page, page_size, status)}

    @app.get("/api/history/search")
    def search_history(keyword: str = "") -> dict[str, Any]:
        if not keyword.strip():
            raise HTTPException(status_code=400, detail="keyword must not be empty")
        return {"success": True, "records": history.search_records(keyword)}

    @app.get("/api/history/stats")
    def history_stats() -> dict[str, Any]:
        return {"success": True, **history.get_statistics()}

    @app.get("/api/history/scan/{task_id}")
    def scan_task(task_id: str) -> dict[str, Any]:
        result = history.scan_and_sync_task_images(task_id)
        if not result.get("success"):
            raise HTTPException(status_code=404, detail=result.get("error", "Task not found"))
        return result

    @app.post("/api/history/scan-all")
    def scan_all_tasks() -> dict[str, Any]:
        return history.scan_all_tasks()

    @app.get("/api/history/{record_id}")
    def get_history(record_id: str) -> dict[str, Any]:
        record = history.get_record(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"History record not found: {record_id}")
        return {"success": True, "record": record.model_dump(mode="json")}

    @app.put("/api/history/{record_id}")
    def update_history(record_id: str, payload: UpdateHistoryRequest) -> dict[str, Any]:
        try:
            updated = history.update_record(
                record_id,
                outline=payload.outline,
                images=payload.images,
                status=payload.status,
                thumbnail=payload.thumbnail,
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid outline: {exc}") from exc
        if not updated:
            raise HTTPException(status_code=404, detail=f"History record not found: {record_id}")
        return {"success": True}

    @app.delete("/api/history/{record_id}")
    def delete_history(record_id: str) -> dict[str, Any]:
        if not history.delete_record(record_id):
            raise HTTPException(status_code=404, detail=f"History record not found: {record_id}")
        return {"success": True}

    @app.get("/api/history/{record_id}/download")
    def download_history(record_id: str) -> Response:
        record = history.get_record(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"History record not found: {record_id}")
        task_id = record.images.task_id
        if not task_id or not is_safe_name(task_id):
            raise HTTPException(status_code=404, detail="Record has no generated images")
        task_dir = history.task_dir(task_id)
        if not task_dir.is_dir():
            raise HTTPException(status_code=404, detail=f"Task directory not found: {task_id}")

        buffer = io.BytesIO()
        with zipfile.ZipFile(
            buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
        ) as archive:
            for filename in history.list_task_images(task_id):
                stem = filename.split(".", 1)[0]
                archive_name = f"page_{int(stem) + 1}.png" if stem.isdigit() else filename
                archive.write(task_dir / filename, arcname=archive_name)

        safe_title = _UNSAFE_TITLE_CHARS.sub("", record.title).strip() or "images"
        logger.info("history event=download record_id=%s task_id=%s", record_id, task_id)
        return Response(
            content=buffer.getvalue(),
            media_type="application/zip",
            headers={
                "Content-Disposition": f"attachment; filename*=UTF-8''{quote(safe_title + '.zip')}"
            },
        )

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        try:
            view = config_store.public_view()
        except ProviderConfigError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"success": True, "config": view}

    @app.post("/api/config")
    async def update_config(request: Request) -> dict[str, Any]:
        payload = await _read_json_object(request)
        try:
            config_store.update(payload)
        except ProviderConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        # Next generation request rebuilds the generator from the new config.
        app.state.orchestrator = None
        return {"success": True, "message": "Configuration saved"}

    @app.post("/api/config/test")
    async def test_provider(payload: ProviderTestRequest) -> dict[str, Any]:
        api_key = payload.api_key
        base_url = payload.base_url
        model = payload.model
        if not api_key and payload.provider_name:
            kind = "image" if payload.type in ("google_genai", "image_api") else "text"
            stored = config_store.stored_provider(kind, payload.provider_name) or {}
            api_key = stored.get("api_key")
            base_url = base_url or stored.get("base_url")
            model = model or stored.get("model")
        if not api_key:
            raise HTTPException(status_code=400, detail="API key is not configured")

        if payload.type in ("google_genai", "google_gemini"):
            return {
                "success": True,
                "message": "Google providers cannot be tested directly; "
                "verify the configuration with a real generation.",
            }
        if payload.type not in ("image_api", "openai_compatible"):
            raise HTTPException(
                status_code=400, detail=f"Unsupported provider type: {payload.type}"
            )

        root = (base_url or "https://api.openai.com").rstrip("/")
        if root.endswith("/v1"):
            root = root[: -len("/v1")]
        headers = {"Authorization": f"Bearer {api_key}"}
        async with httpx.AsyncClient(
            timeout=CONNECTION_TEST_TIMEOUT_S, transport=app.state.http_transport
        ) as client:
            try:
                if payload.type == "image_api":
                    response = await client.get(f"{root}/v1/models", headers=headers)
                else:
                    response = await client.post(
                        f"{root}/v1/chat/completions",
                        headers=headers,
                        json={
                            "model": model or "gpt-3.5-turbo",
                            "messages": [{"role": "user", "content": CONNECTION_TEST_PROMPT}],
                            "max_tokens": 50,
                        },
                    )
            except httpx.HTTPError as exc:
                raise HTTPException(status_code=400, detail=f"Connection failed: {exc}") from exc

        if response.status_code != 200:
            raise HTTPException(
                status_code=400,
                detail=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        if payload.type == "image_api":
            return {
                "success": True,
                "message": "Connected. This only confirms connectivity, "
                "not image generation support.",
            }
        reply = _first_choice_text(response)
        if "你好" in reply and "红墨" in reply:
            return {"success": True, "message": f"Connected. Response: {reply[:100]}"}
        return {
            "success": True,
            "message": f"Connected, but the reply was unexpected: {reply[:100]}",
        }

    return app


async def _read_outline_request(request: Request) -> tuple[str, list[bytes]]:
    """Accept multipart form uploads or a JSON body with base64 images."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        topic = str(form.get("topic") or "")
        images: list[bytes] = []
        for upload in form.getlist("images"):
            if hasattr(upload, "read"):
                images.append(await upload.read())
        return topic, images

    payload = await _read_json_object(request)
    try:
        body = OutlineRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid request body: {exc}") from exc
    return body.topic, _decode_images(body.images)


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return payload


def _decode_images(encoded: list[str]) -> list[bytes]:
    """Decode base64 strings, dropping any `data:...;base64,` prefix."""
    images: list[bytes] = []
    for value in encoded:
        data = value.split(",", 1)[1] if "," in value else value
        try:
            images.append(base64.b64decode(data))
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid base64 image: {exc}") from exc
    return images


def _require_safe_name(value: str | None, field: str) -> None:
    if value and not is_safe_name(value):
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {value}")


def _first_choice_text(response: httpx.Response) -> str:
    try:
        return str(response.json()["choices"][0]["message"]["content"])
    except (ValueError, KeyError, IndexError, TypeError):
        return response.text[:100]


# Module-level app for `uvicorn redink_api.main:app`.
app = create_app()
