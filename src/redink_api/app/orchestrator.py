"""Image generation orchestration.

Beginner terms:
- Task: one run that turns outline pages into images under `history/{task_id}/`.
- Cover phase: the cover page is generated first; its image becomes the style
  reference for every other page.
- Content phase: the remaining pages, sequentially or as one concurrent batch.
- Event: typed ProgressEvent yielded to the caller (the API turns them into SSE).

Ordering: the cover's events always come before any content page's events, and
each page's `progress` event comes before its `complete`/`error` event.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .compression import REFERENCE_BUDGET_KB, THUMBNAIL_BUDGET_KB, compress_image
from .errors import ProviderConfigError, describe_provider_error
from .generators import ImageGenerator
from .history import HistoryStore, derive_status, image_sort_key
from .models import OutlinePage, ProgressEvent, RecordImages
from .outline import load_prompt
from .task_state import TaskState, TaskStateStore

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "未提供"
COVER_FILENAME = "0.png"


@dataclass(frozen=True)
class PageResult:
    index: int
    success: bool
    filename: str | None = None
    error: str | None = None


@dataclass
class GenerationContext:
    """Inputs shared by every page of one run."""

    task_id: str
    task_dir: Path
    full_outline: str = ""
    user_topic: str = ""
    user_images: tuple[bytes, ...] = ()
    reference_image: bytes | None = None


def split_cover(pages: list[OutlinePage]) -> tuple[OutlinePage | None, list[OutlinePage]]:
    """Return (cover, others); the first page is promoted when none is typed cover."""
    cover: OutlinePage | None = None
    others: list[OutlinePage] = []
    for page in pages:
        if cover is None and page.type == "cover":
            cover = page
        else:
            others.append(page)
    if cover is None and others:
        cover = others.pop(0)
    return cover, others


def image_url(task_id: str, filename: str) -> str:
    return f"/api/images/{task_id}/{filename}"


class ImageOrchestrator:
    """Drives one image provider over outline pages and reports progress."""

    def __init__(
        self,
        *,
        generator: ImageGenerator,
        provider: dict[str, Any],
        history: HistoryStore,
        task_states: TaskStateStore,
        prompts_dir: Path,
        max_concurrent: int = 15,
        retry_attempts: int = 3,
        retry_backoff_s: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.generator = generator
        self.provider = dict(provider)
        self.provider_type = str(self.provider.get("type") or "")
        self.history = history
        self.task_states = task_states
        self.max_concurrent = max(1, max_concurrent)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_s = max(0.0, retry_backoff_s)
        self._sleep = sleep
        self.high_concurrency = bool(self.provider.get("high_concurrency"))
        self.use_short_prompt = bool(self.provider.get("short_prompt"))
        self.prompt_template = load_prompt(prompts_dir, "image_prompt.txt")
        self.short_prompt_template = load_prompt(prompts_dir, "image_prompt_short.txt")

    async def generate(
        self,
        pages: list[OutlinePage],
        *,
        task_id: str | None = None,
        full_outline: str = "",
        user_images: list[bytes] | None = None,
        user_topic: str = "",
        record_id: str | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Generate every page; yields progress/complete/error events then one finish."""
        task_id = task_id or f"task_{uuid.uuid4().hex[:8]}"
        task_dir = self.history.task_dir(task_id)
        task_dir.mkdir(parents=True, exist_ok=True)
        total = len(pages)
        logger.info(
            "image_task event=start task_id=%s pages=%d provider=%s high_concurrency=%s",
            task_id,
            total,
            self.provider.get("name"),
            self.high_concurrency,
        )

        compressed_user_images = [
            await asyncio.to_thread(compress_image, image, REFERENCE_BUDGET_KB)
            for image in user_images or []
        ]
        state = TaskState(
            pages=list(pages),
            full_outline=full_outline,
            user_images=compressed_user_images,
            user_topic=user_topic,
        )
        self.task_states.put(task_id, state)
        context = GenerationContext(
            task_id=task_id,
            task_dir=task_dir,
            full_outline=full_outline,
            user_topic=user_topic,
            user_images=tuple(compressed_user_images),
        )

        if record_id:
            await self._link_record(record_id, task_id)

        generated: list[str] = []
        failed_indices: list[int] = []
        cover, others = split_cover(pages)

        if cover is not None:
            yield ProgressEvent(
                event="progress",
                data={
                    "index": cover.index,
                    "status": "generating",
                    "message": "Generating cover...",
                    "current": 1,
                    "total": total,
                    "phase": "cover",
                },
            )
            result = await self._generate_page(cover, context)
            if result.success and result.filename:
                cover_bytes = await asyncio.to_thread((task_dir / result.filename).read_bytes)
                state.cover_image = await asyncio.to_thread(
                    compress_image, cover_bytes, REFERENCE_BUDGET_KB
                )
                context.reference_image = state.cover_image
            yield await self._settle(
                result, state, context, generated, failed_indices, record_id, phase="cover"
            )

        if others:
            mode = "concurrently" if self.high_concurrency else "sequentially"
            yield ProgressEvent(
                event="progress",
                data={
                    "status": "batch_start",
                    "message": f"Generating {len(others)} content pages {mode}...",
                    "current": len(generated),
                    "total": total,
                    "phase": "content",
                },
            )
            if self.high_concurrency:
                for page in others:
                    yield self._page_progress(page, len(generated) + 1, total)
                semaphore = asyncio.Semaphore(self.max_concurrent)

                async def bounded(page: OutlinePage) -> PageResult:
                    async with semaphore:
                        return await self._generate_page(page, context)

                outcomes = await asyncio.gather(
                    *(bounded(page) for page in others), return_exceptions=True
                )
                for page, outcome in zip(others, outcomes):
                    if isinstance(outcome, BaseException):
                        outcome = PageResult(index=page.index, success=False, error=str(outcome))
                    yield await self._settle(
                        outcome,
                        state,
                        context,
                        generated,
                        failed_indices,
                        record_id,
                        phase="content",
                    )
            else:
                for page in others:
                    yield self._page_progress(page, len(generated) + 1, total)
                    result = await self._generate_page(page, context)
                    yield await self._settle(
                        result,
                        state,
                        context,
                        generated,
                        failed_indices,
                        record_id,
                        phase="content",
                    )

        status = derive_status(len(generated), total)
        if record_id:
            await self._update_record(
                record_id,
                status=status,
                images=RecordImages(
                    task_id=task_id, generated=sorted(generated, key=image_sort_key)
                ),
            )
        logger.info(
            "image_task event=finish task_id=%s status=%s completed=%d failed=%d",
            task_id,
            status,
            len(generated),
            len(failed_indices),
        )
        yield ProgressEvent(
            event="finish",
            data={
                "success": not failed_indices,
                "task_id": task_id,
                "images": generated,
                "total": total,
                "completed": len(generated),
                "failed": len(failed_indices),
                "failed_indices": failed_indices,
            },
        )

    async def retry_single(
        self,
        task_id: str,
        page: OutlinePage,
        *,
        use_reference: bool = True,
        full_outline: str | None = None,
        user_topic: str | None = None,
        record_id: str | None = None,
        force: bool = True,
    ) -> AsyncIterator[ProgressEvent]:
        """Regenerate one page.

        With `force=False` (plain retry) a page that already has an image is
        left untouched and reported as done; regenerate uses `force=True`.
        """
        context, state = await self._resume_context(
            task_id, use_reference, full_outline, user_topic
        )
        existing = self._existing_image(page.index, context, state)
        if not force and existing is not None:
            logger.info("image_retry event=skip task_id=%s index=%d", task_id, page.index)
            url = image_url(task_id, existing)
            yield ProgressEvent(
                event="complete",
                data={"index": page.index, "status": "done", "image_url": url},
            )
            yield ProgressEvent(
                event="finish",
                data={"success": True, "index": page.index, "image_url": url},
            )
            return

        yield ProgressEvent(
            event="progress",
            data={
                "index": page.index,
                "status": "generating",
                "message": f"Regenerating image [{page.index}]...",
            },
        )
        result = await self._generate_page(page, context)
        if result.success and result.filename:
            if state is not None:
                state.mark_generated(result.index, result.filename)
            if record_id:
                await self._add_record_image(
                    record_id, task_id, result.filename, refresh_status=True
                )
            url = image_url(task_id, result.filename)
            yield ProgressEvent(
                event="complete",
                data={"index": result.index, "status": "done", "image_url": url},
            )
            yield ProgressEvent(
                event="finish",
                data={"success": True, "index": result.index, "image_url": url},
            )
            return

        error = result.error or "Unknown error"
        if state is not None:
            state.mark_failed(result.index, error)
        yield ProgressEvent(
            event="error",
            data={"index": result.index, "status": "error", "message": error, "retryable": True},
        )
        yield ProgressEvent(
            event="finish",
            data={"success": False, "index": result.index, "error": error},
        )

    async def retry_failed(
        self,
        task_id: str,
        pages: list[OutlinePage],
        *,
        record_id: str | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Retry a batch of failed pages one by one."""
        context, state = await self._resume_context(task_id, True, None, None)
        if state is None:
            logger.warning("image_retry event=no_state task_id=%s", task_id)
        logger.info("image_retry event=batch_start task_id=%s pages=%d", task_id, len(pages))

        success_count = 0
        failed_count = 0
        for page in pages:
            yield ProgressEvent(
                event="retry_start",
                data={
                    "index": page.index,
                    "status": "retrying",
                    "message": f"Retrying failed image [{page.index}]...",
                    "current": success_count,
                    "total": len(pages),
                },
            )
            result = await self._generate_page(page, context)
            if result.success and result.filename:
                success_count += 1
                if state is not None:
                    state.mark_generated(result.index, result.filename)
                if record_id:
                    await self._add_record_image(
                        record_id, task_id, result.filename, refresh_status=True
                    )
                yield ProgressEvent(
                    event="retry_finish",
                    data={
                        "index": result.index,
                        "status": "done",
                        "image_url": image_url(task_id, result.filename),
                        "success": True,
                    },
                )
            else:
                failed_count += 1
                error = result.error or "Unknown error"
                if state is not None:
                    state.mark_failed(result.index, error)
                yield ProgressEvent(
                    event="error",
                    data={
                        "index": result.index,
                        "status": "error",
                        "message": error,
                        "retryable": True,
                    },
                )

        yield ProgressEvent(
            event="finish",
            data={
                "success": failed_count == 0,
                "task_id": task_id,
                "completed": success_count,
                "failed": failed_count,
            },
        )

    def task_state(self, task_id: str) -> TaskState | None:
        return self.task_states.get(task_id)

    def cleanup_task(self, task_id: str) -> bool:
        """Release in-memory state for a task (files stay on disk)."""
        return self.task_states.discard(task_id)

    async def _generate_page(self, page: OutlinePage, context: GenerationContext) -> PageResult:
        """Generate and save one page with a bounded retry loop."""
        last_error = "Exceeded maximum retry attempts"
        for attempt in range(self.retry_attempts):
            try:
                prompt = self._build_prompt(page, context)
                image = await self.generator.generate_image(
                    prompt=prompt, **self._generation_options(context)
                )
                filename = f"{page.index}.png"
                await asyncio.to_thread(self._save_image, context.task_dir, filename, image)
                logger.info(
                    "image_page event=done task_id=%s index=%d attempt=%d/%d",
                    context.task_id,
                    page.index,
                    attempt + 1,
                    self.retry_attempts,
                )
                return PageResult(index=page.index, success=True, filename=filename)
            except ProviderConfigError as exc:
                # Retrying cannot fix a broken configuration.
                logger.error(
                    "image_page event=config_error task_id=%s reason=%s", context.task_id, exc
                )
                return PageResult(index=page.index, success=False, error=str(exc))
            except Exception as exc:  # noqa: BLE001
                last_error = describe_provider_error(exc, provider=self.provider_type)
                logger.warning(
                    "image_page event=attempt_failed task_id=%s index=%d attempt=%d/%d reason=%s",
                    context.task_id,
                    page.index,
                    attempt + 1,
                    self.retry_attempts,
                    str(exc)[:200],
                )
                if attempt < self.retry_attempts - 1:
                    await self._sleep(self.retry_backoff_s * (2**attempt))
        logger.error("image_page event=failed task_id=%s index=%d", context.task_id, page.index)
        return PageResult(index=page.index, success=False, error=last_error)

    def _build_prompt(self, page: OutlinePage, context: GenerationContext) -> str:
        if self.use_short_prompt and self.short_prompt_template:
            return self.short_prompt_template.replace("{page_content}", page.content).replace(
                "{page_type}", page.type
            )
        if not self.prompt_template:
            return page.content
        return (
            self.prompt_template.replace("{page_content}", page.content)
            .replace("{page_type}", page.type)
            .replace("{full_outline}", context.full_outline)
            .replace("{user_topic}", context.user_topic or DEFAULT_TOPIC)
        )

    def _generation_options(self, context: GenerationContext) -> dict[str, Any]:
        provider = self.provider
        options: dict[str, Any] = {}
        if provider.get("model"):
            options["model"] = provider["model"]

        if self.provider_type == "google_genai":
            options["aspect_ratio"] = provider.get("default_aspect_ratio") or "3:4"
            options["temperature"] = provider.get("temperature") or 1.0
            if context.reference_image is not None:
                options["reference_image"] = context.reference_image
        elif self.provider_type == "image_api":
            options["aspect_ratio"] = provider.get("default_aspect_ratio") or "3:4"
            options["temperature"] = provider.get("temperature") or 1.0
            references = list(context.user_images)
            if context.reference_image is not None:
                references.append(context.reference_image)
            if references:
                options["reference_images"] = references
        else:
            options["size"] = provider.get("default_size") or "1024x1024"
            options["quality"] = provider.get("quality") or "standard"
        return options

    @staticmethod
    def _save_image(task_dir: Path, filename: str, image: bytes) -> None:
        task_dir.mkdir(parents=True, exist_ok=True)
        (task_dir / filename).write_bytes(image)
        thumbnail = compress_image(image, THUMBNAIL_BUDGET_KB)
        (task_dir / f"thumb_{filename}").write_bytes(thumbnail)

    def _page_progress(self, page: OutlinePage, current: int, total: int) -> ProgressEvent:
        return ProgressEvent(
            event="progress",
            data={
                "index": page.index,
                "status": "generating",
                "current": current,
                "total": total,
                "phase": "content",
            },
        )

    async def _settle(
        self,
        result: PageResult,
        state: TaskState,
        context: GenerationContext,
        generated: list[str],
        failed_indices: list[int],
        record_id: str | None,
        *,
        phase: str,
    ) -> ProgressEvent:
        """Record one page outcome and return its complete/error event."""
        if result.success and result.filename:
            generated.append(result.filename)
            state.mark_generated(result.index, result.filename)
            if record_id:
                await self._add_record_image(
                    record_id, context.task_id, result.filename, set_thumbnail=phase == "cover"
                )
            return ProgressEvent(
                event="complete",
                data={
                    "index": result.index,
                    "status": "done",
                    "image_url": image_url(context.task_id, result.filename),
                    "phase": phase,
                },
            )

        error = result.error or "Unknown error"
        failed_indices.append(result.index)
        state.mark_failed(result.index, error)
        return ProgressEvent(
            event="error",
            data={
                "index": result.index,
                "status": "error",
                "message": error,
                "retryable": True,
                "phase": phase,
            },
        )

    async def _resume_context(
        self,
        task_id: str,
        use_reference: bool,
        full_outline: str | None,
        user_topic: str | None,
    ) -> tuple[GenerationContext, TaskState | None]:
        """Rebuild generation context from TaskState, falling back to disk."""
        task_dir = self.history.task_dir(task_id)
        task_dir.mkdir(parents=True, exist_ok=True)
        state = self.task_states.get(task_id)

        reference: bytes | None = None
        user_images: tuple[bytes, ...] = ()
        if state is not None:
            if use_reference:
                reference = state.cover_image
            full_outline = full_outline or state.full_outline
            user_topic = user_topic or state.user_topic
            user_images = tuple(state.user_images)

        if use_reference and reference is None:
            cover_path = task_dir / COVER_FILENAME
            if cover_path.exists():
                cover_bytes = await asyncio.to_thread(cover_path.read_bytes)
                reference = await asyncio.to_thread(
                    compress_image, cover_bytes, REFERENCE_BUDGET_KB
                )
                logger.info("image_retry event=reference_from_disk task_id=%s", task_id)

        context = GenerationContext(
            task_id=task_id,
            task_dir=task_dir,
            full_outline=full_outline or "",
            user_topic=user_topic or "",
            user_images=user_images,
            reference_image=reference,
        )
        return context, state

    @staticmethod
    def _existing_image(
        index: int, context: GenerationContext, state: TaskState | None
    ) -> str | None:
        if state is not None and index in state.generated:
            return state.generated[index]
        filename = f"{index}.png"
        if state is None and (context.task_dir / filename).exists():
            return filename
        return None

    async def _link_record(self, record_id: str, task_id: str) -> None:
        record = await asyncio.to_thread(self.history.get_record, record_id)
        if record is None:
            logger.warning("image_task event=record_missing record_id=%s", record_id)
            return
        images = record.images.model_copy(update={"task_id": task_id})
        await self._update_record(record_id, status="generating", images=images)
        logger.info("image_task event=record_linked record_id=%s task_id=%s", record_id, task_id)

    async def _add_record_image(
        self,
        record_id: str,
        task_id: str,
        filename: str,
        *,
        set_thumbnail: bool = False,
        refresh_status: bool = False,
    ) -> None:
        try:
            await asyncio.to_thread(
                self.history.add_generated_image,
                record_id,
                task_id=task_id,
                filename=filename,
                set_thumbnail=set_thumbnail,
            )
            if refresh_status:
                record = await asyncio.to_thread(self.history.get_record, record_id)
                if record is not None:
                    status = derive_status(len(record.images.generated), len(record.outline.pages))
                    await asyncio.to_thread(self.history.update_record, record_id, status=status)
        except (OSError, ValueError) as exc:
            logger.error(
                "image_task event=record_update_failed record_id=%s reason=%s", record_id, exc
            )

    async def _update_record(self, record_id: str, **changes: Any) -> None:
        try:
            await asyncio.to_thread(self.history.update_record, record_id, **changes)
        except (OSError, ValueError) as exc:
            logger.error(
                "image_task event=record_update_failed record_id=%s reason=%s", record_id, exc
            )
