"""Pydantic models shared across API, outline, orchestrator, and history store.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Field(default_factory=...): creates a fresh default object per instance.
- Event: one message pushed to the browser over server-sent events (SSE).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PageType = Literal["cover", "content", "summary"]

# Record lifecycle states used by the history store + API responses.
RecordStatus = Literal["draft", "generating", "completed", "partial"]

EventName = Literal["progress", "complete", "error", "finish", "retry_start", "retry_finish"]


class OutlinePage(BaseModel):
    """One page of a parsed outline."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    type: PageType = "content"
    content: str = ""


class OutlineResult(BaseModel):
    """Outline text plus its parsed pages."""

    outline: str
    pages: list[OutlinePage] = Field(default_factory=list)
    # True when user reference images were attached to the outline prompt.
    has_images: bool = False


class RecordImages(BaseModel):
    task_id: str | None = None
    # Filenames in generation order (for example "0.png", "1.png").
    generated: list[str] = Field(default_factory=list)


class RecordOutline(BaseModel):
    """Outline as stored inside a history record.

    Extra keys are kept so that the frontend can stash its own editor state.
    """

    model_config = ConfigDict(extra="allow")

    outline: str = ""
    pages: list[OutlinePage] = Field(default_factory=list)
    has_images: bool = False


class HistoryRecord(BaseModel):
    """Canonical detail record stored as `{id}.json`."""

    id: str
    title: str
    created_at: str
    updated_at: str
    outline: RecordOutline = Field(default_factory=RecordOutline)
    images: RecordImages = Field(default_factory=RecordImages)
    status: RecordStatus = "draft"
    thumbnail: str | None = None


class HistoryIndexEntry(BaseModel):
    """Denormalized summary of a HistoryRecord kept in `index.json`."""

    id: str
    title: str
    created_at: str
    updated_at: str
    status: RecordStatus = "draft"
    thumbnail: str | None = None
    page_count: int = 0
    task_id: str | None = None


class ProgressEvent(BaseModel):
    """Typed event produced by the image orchestrator.

    `data` is the JSON payload written after `data:` on the SSE wire.
    """

    event: EventName
    data: dict[str, Any] = Field(default_factory=dict)


class OutlineRequest(BaseModel):
    """JSON body for POST /api/outline."""

    topic: str = ""
    # Base64 strings, optionally prefixed with a data URI header.
    images: list[str] = Field(default_factory=list)


class GenerateRequest(BaseModel):
    """Body for POST /api/generate."""

    pages: list[OutlinePage] | None = None
    task_id: str | None = None
    record_id: str | None = None
    full_outline: str = ""
    user_topic: str = ""
    user_images: list[str] = Field(default_factory=list)


class RetryFailedRequest(BaseModel):
    task_id: str | None = None
    pages: list[OutlinePage] | None = None


class RegenerateRequest(BaseModel):
    """Body for POST /api/regenerate and POST /api/retry."""

    task_id: str | None = None
    page: OutlinePage | None = None
    use_reference: bool = True
    full_outline: str = ""
    user_topic: str = ""


class CreateHistoryRequest(BaseModel):
    topic: str = ""
    outline: dict[str, Any] | None = None
    task_id: str | None = None


class UpdateHistoryRequest(BaseModel):
    """Partial update; None means "leave as is"."""

    outline: dict[str, Any] | None = None
    images: RecordImages | None = None
    status: RecordStatus | None = None
    thumbnail: str | None = None


class ProviderTestRequest(BaseModel):
    """Body for POST /api/config/test."""

    type: str = ""
    provider_name: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None
