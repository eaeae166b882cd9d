"""Server-sent event encoding for ProgressEvent streams."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi.responses import StreamingResponse

from .models import ProgressEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


def encode_event(event: ProgressEvent) -> str:
    """Format one event as `event: <name>` + `data: <json>` + blank line."""
    payload = json.dumps(event.data, ensure_ascii=False)
    return f"event: {event.event}\ndata: {payload}\n\n"


async def encode_stream(events: AsyncIterator[ProgressEvent], *, label: str) -> AsyncIterator[str]:
    """Encode events in order; an unexpected failure becomes a final error event."""
    try:
        async for event in events:
            yield encode_event(event)
    except Exception as exc:  # noqa: BLE001
        logger.exception("sse_stream event=failed stream=%s", label)
        yield encode_event(
            ProgressEvent(
                event="error",
                data={"status": "error", "message": str(exc), "retryable": True},
            )
        )
        yield encode_event(
            ProgressEvent(event="finish", data={"success": False, "error": str(exc)})
        )


def sse_response(events: AsyncIterator[ProgressEvent], *, label: str) -> StreamingResponse:
    return StreamingResponse(
        encode_stream(events, label=label),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
