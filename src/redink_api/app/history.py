"""Filesystem history store.

Layout under `root`:
- index.json: {"records": [HistoryIndexEntry, ...]}, newest first.
- {record_id}.json: one HistoryRecord per file.
- {task_id}/: generated images for one task ({index}.png + thumb_{index}.png).

Beginner terms:
- Index entry: small summary used for listing/search without opening every record.
- Scan/sync: look at what is really on disk and repair a record that drifted.

Every mutation holds one store-level lock for its whole read-modify-write, so
the detail file and its index entry always change together and parallel tasks
updating the same record cannot overwrite each other's changes.
"""

from __future__ import annotations

import json
import logging
import math
import re
import shutil
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .models import (
    HistoryIndexEntry,
    HistoryRecord,
    RecordImages,
    RecordOutline,
    RecordStatus,
)

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")
THUMBNAIL_PREFIX = "thumb_"


def is_safe_name(name: str) -> bool:
    """True for a single path component without traversal tricks."""
    return bool(_SAFE_NAME.match(name)) and ".." not in name


def image_sort_key(filename: str) -> tuple[int, int, str]:
    """Numeric filenames first, in page order; anything else after, by name."""
    stem = filename.split(".", 1)[0]
    if stem.isdigit():
        return (0, int(stem), filename)
    return (1, 0, filename)


def derive_status(generated_count: int, expected_count: int) -> RecordStatus:
    """completed iff all pages have images, partial iff some, draft iff none."""
    if generated_count <= 0:
        return "draft"
    if generated_count >= expected_count:
        return "completed"
    return "partial"


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


class HistoryStore:
    """JSON-file backed CRUD for history records."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.index_path = self.root / "index.json"
        self._lock = threading.RLock()
        if not self.index_path.exists():
            self._save_index([])

    def task_dir(self, task_id: str) -> Path:
        if not is_safe_name(task_id):
            raise ValueError(f"Invalid task id: {task_id!r}")
        return self.root / task_id

    def _record_path(self, record_id: str) -> Path | None:
        if not is_safe_name(record_id) or record_id == "index":
            return None
        return self.root / f"{record_id}.json"

    def _load_index(self) -> list[HistoryIndexEntry]:
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as exc:
            logger.error("history event=index_corrupt path=%s reason=%s", self.index_path, exc)
            return []
        entries: list[HistoryIndexEntry] = []
        for item in raw.get("records", []):
            try:
                entries.append(HistoryIndexEntry.model_validate(item))
            except ValidationError as exc:
                logger.warning("history event=index_entry_skipped reason=%s", exc)
        return entries

    def _save_index(self, entries: list[HistoryIndexEntry]) -> None:
        payload = {"records": [entry.model_dump(mode="json") for entry in entries]}
        _write_json(self.index_path, payload)

    def create_record(
        self,
        topic: str,
        outline: dict[str, Any] | RecordOutline,
        task_id: str | None = None,
    ) -> str:
        """Create a draft record and return its id."""
        record_id = str(uuid.uuid4())
        now = _now()
        record_outline = (
            outline if isinstance(outline, RecordOutline) else RecordOutline.model_validate(outline)
        )
        record = HistoryRecord(
            id=record_id,
            title=topic,
            created_at=now,
            updated_at=now,
            outline=record_outline,
            images=RecordImages(task_id=task_id, generated=[]),
            status="draft",
            thumbnail=None,
        )
        with self._lock:
            self._write_record(record)
            entries = self._load_index()
            entries.insert(0, _index_entry(record))
            self._save_index(entries)
        logger.info("history event=created record_id=%s task_id=%s", record_id, task_id)
        return record_id

    def get_record(self, record_id: str) -> HistoryRecord | None:
        path = self._record_path(record_id)
        if path is None or not path.exists():
            return None
        try:
            return HistoryRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.error("history event=record_corrupt record_id=%s reason=%s", record_id, exc)
            return None

    def update_record(
        self,
        record_id: str,
        *,
        outline: dict[str, Any] | RecordOutline | None = None,
        images: RecordImages | dict[str, Any] | None = None,
        status: RecordStatus | None = None,
        thumbnail: str | None = None,
    ) -> bool:
        """Apply a partial update; returns False when the record does not exist."""
        with self._lock:
            record = self.get_record(record_id)
            if record is None:
                return False
            if outline is not None:
                record.outline = (
                    outline
                    if isinstance(outline, RecordOutline)
                    else RecordOutline.model_validate(outline)
                )
            if images is not None:
                record.images = (
                    images
                    if isinstance(images, RecordImages)
                    else RecordImages.model_validate(images)
                )
            if status is not None:
                record.status = status
            if thumbnail is not None:
                record.thumbnail = thumbnail
            self._commit(record)
        return True

    def add_generated_image(
        self,
        record_id: str,
        *,
        task_id: str,
        filename: str,
        set_thumbnail: bool = False,
    ) -> bool:
        """Atomically add one generated filename to a record (idempotent)."""
        with self._lock:
            record = self.get_record(record_id)
            if record is None:
                return False
            generated = [name for name in record.images.generated if name != filename]
            generated.append(filename)
            generated.sort(key=image_sort_key)
            record.images = RecordImages(task_id=task_id, generated=generated)
            if set_thumbnail or not record.thumbnail:
                record.thumbnail = filename
            self._commit(record)
        return True

    def delete_record(self, record_id: str) -> bool:
        """Remove detail file, task image directory, and index entry."""
        with self._lock:
            record = self.get_record(record_id)
            if record is None:
                return False
            task_id = record.images.task_id
            if task_id and is_safe_name(task_id):
                task_dir = self.root / task_id
                if task_dir.is_dir():
                    shutil.rmtree(task_dir)
            path = self._record_path(record_id)
            if path is not None:
                path.unlink(missing_ok=True)
            entries = [entry for entry in self._load_index() if entry.id != record_id]
            self._save_index(entries)
        logger.info("history event=deleted record_id=%s task_id=%s", record_id, task_id)
        return True

    def _commit(self, record: HistoryRecord) -> None:
        record.updated_at = _now()
        self._write_record(record)
        entries = self._load_index()
        for position, entry in enumerate(entries):
            if entry.id == record.id:
                entries[position] = entry.model_copy(
                    update={
                        "updated_at": record.updated_at,
                        "status": record.status,
                        "thumbnail": record.thumbnail,
                        "page_count": len(record.outline.pages),
                        "task_id": record.images.task_id,
                    }
                )
                break
        self._save_index(entries)

    def _write_record(self, record: HistoryRecord) -> None:
        path = self._record_path(record.id)
        if path is None:
            raise ValueError(f"Invalid record id: {record.id!r}")
        _write_json(path, record.model_dump(mode="json"))

    def list_records(
        self,
        page: int = 1,
        page_size: int = 20,
        status: str | None = None,
    ) -> dict[str, Any]:
        page = max(1, page)
        page_size = max(1, page_size)
        entries = self._load_index()
        if status:
            entries = [entry for entry in entries if entry.status == status]
        total = len(entries)
        start = (page - 1) * page_size
        return {
            "records": [
                entry.model_dump(mode="json") for entry in entries[start : start + page_size]
            ],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if total else 0,
        }

    def search_records(self, keyword: str) -> list[dict[str, Any]]:
        needle = keyword.lower()
        return [
            entry.model_dump(mode="json")
            for entry in self._load_index()
            if needle in entry.title.lower()
        ]

    def get_statistics(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        entries = self._load_index()
        for entry in entries:
            by_status[entry.status] = by_status.get(entry.status, 0) + 1
        return {"total": len(entries), "by_status": by_status}

    def find_record_by_task(self, task_id: str) -> HistoryRecord | None:
        """First record (newest first) whose images.task_id equals `task_id`."""
        for entry in self._load_index():
            record = self.get_record(entry.id)
            if record is not None and record.images.task_id == task_id:
                return record
        return None

    def list_task_images(self, task_id: str) -> list[str]:
        task_dir = self.task_dir(task_id)
        if not task_dir.is_dir():
            return []
        names = [
            path.name
            for path in task_dir.iterdir()
            if path.is_file()
            and path.suffix.lower() in IMAGE_SUFFIXES
            and not path.name.startswith(THUMBNAIL_PREFIX)
        ]
        return sorted(names, key=image_sort_key)

    def scan_and_sync_task_images(self, task_id: str) -> dict[str, Any]:
        """Repair the record that owns `task_id` from what is on disk."""
        try:
            task_dir = self.task_dir(task_id)
        except ValueError as exc:
            return {"success": False, "task_id": task_id, "error": str(exc)}
        if not task_dir.is_dir():
            return {
                "success": False,
                "task_id": task_id,
                "error": f"Task directory not found: {task_id}",
            }

        images = self.list_task_images(task_id)
        with self._lock:
            record = self.find_record_by_task(task_id)
            if record is None:
                logger.info("history event=scan_orphan task_id=%s images=%d", task_id, len(images))
                return {
                    "success": True,
                    "task_id": task_id,
                    "images_count": len(images),
                    "images": images,
                    "no_record": True,
                }

            status = derive_status(len(images), len(record.outline.pages))
            self.update_record(
                record.id,
                images=RecordImages(task_id=task_id, generated=images),
                status=status,
                thumbnail=images[0] if images else None,
            )
        logger.info(
            "history event=scan_synced task_id=%s record_id=%s images=%d status=%s",
            task_id,
            record.id,
            len(images),
            status,
        )
        return {
            "success": True,
            "record_id": record.id,
            "task_id": task_id,
            "images_count": len(images),
            "images": images,
            "status": status,
        }

    def scan_all_tasks(self) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        orphan_tasks: list[str] = []
        synced = 0
        failed = 0
        for task_dir in sorted(path for path in self.root.iterdir() if path.is_dir()):
            result = self.scan_and_sync_task_images(task_dir.name)
            results.append(result)
            if not result.get("success"):
                failed += 1
            elif result.get("no_record"):
                orphan_tasks.append(task_dir.name)
            else:
                synced += 1
        return {
            "success": True,
            "total_tasks": len(results),
            "synced": synced,
            "failed": failed,
            "orphan_tasks": orphan_tasks,
            "results": results,
        }


def _index_entry(record: HistoryRecord) -> HistoryIndexEntry:
    return HistoryIndexEntry(
        id=record.id,
        title=record.title,
        created_at=record.created_at,
        updated_at=record.updated_at,
        status=record.status,
        thumbnail=record.thumbnail,
        page_count=len(record.outline.pages),
        task_id=record.images.task_id,
    )


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    """Write through a temp file so readers never see a half-written document."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp_path.replace(path)
