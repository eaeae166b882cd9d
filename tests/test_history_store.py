from __future__ import annotations

import json
from pathlib import Path

import pytest

from redink_api.app.history import HistoryStore, derive_status, image_sort_key, is_safe_name
from redink_api.app.models import RecordImages

OUTLINE = {
    "outline": "[封面]\nA\n<page>[内容]\nB",
    "pages": [
        {"index": 0, "type": "cover", "content": "[封面]\nA"},
        {"index": 1, "type": "content", "content": "[内容]\nB"},
    ],
    "editor_state": {"cursor": 3},
}


def test_create_and_get_round_trip(history: HistoryStore) -> None:
    record_id = history.create_record("咖啡入门", OUTLINE, task_id="task_1")

    record = history.get_record(record_id)
    assert record is not None
    assert record.title == "咖啡入门"
    assert record.status == "draft"
    assert record.images.task_id == "task_1"
    assert record.images.generated == []
    assert len(record.outline.pages) == 2
    # Unknown outline keys survive storage.
    assert record.outline.model_dump()["editor_state"] == {"cursor": 3}

    index = json.loads((history.root / "index.json").read_text(encoding="utf-8"))
    assert index["records"][0]["id"] == record_id
    assert index["records"][0]["page_count"] == 2


def test_get_unknown_or_unsafe_id_returns_none(history: HistoryStore) -> None:
    assert history.get_record("missing") is None
    assert history.get_record("../index") is None
    assert history.get_record("index") is None


def test_update_patches_detail_and_index(history: HistoryStore) -> None:
    record_id = history.create_record("t", OUTLINE)

    updated = history.update_record(
        record_id,
        images=RecordImages(task_id="task_9", generated=["0.png"]),
        status="partial",
        thumbnail="0.png",
    )

    assert updated is True
    record = history.get_record(record_id)
    assert record.status == "partial"
    assert record.thumbnail == "0.png"
    entry = history.list_records()["records"][0]
    assert entry["status"] == "partial"
    assert entry["task_id"] == "task_9"
    assert entry["updated_at"] == record.updated_at
    assert history.update_record("missing", status="completed") is False


def test_add_generated_image_keeps_page_order_and_is_idempotent(history: HistoryStore) -> None:
    record_id = history.create_record("t", OUTLINE)

    history.add_generated_image(record_id, task_id="task_a", filename="10.png")
    history.add_generated_image(record_id, task_id="task_a", filename="2.png")
    history.add_generated_image(record_id, task_id="task_a", filename="2.png")

    record = history.get_record(record_id)
    assert record.images.generated == ["2.png", "10.png"]
    assert record.thumbnail == "10.png"


def test_delete_removes_record_and_task_dir(history: HistoryStore, png_bytes: bytes) -> None:
    record_id = history.create_record("t", OUTLINE, task_id="task_del")
    task_dir = history.task_dir("task_del")
    task_dir.mkdir()
    (task_dir / "0.png").write_bytes(png_bytes)

    assert history.delete_record(record_id) is True
    assert history.get_record(record_id) is None
    assert not task_dir.exists()
    assert history.list_records()["total"] == 0
    assert history.search_records("t") == []
    assert history.delete_record(record_id) is False


def test_list_paginates_newest_first_and_filters(history: HistoryStore) -> None:
    ids = [history.create_record(f"topic {n}", OUTLINE) for n in range(5)]
    history.update_record(ids[0], status="completed")

    page = history.list_records(page=1, page_size=2)
    assert page["total"] == 5
    assert page["total_pages"] == 3
    assert [entry["id"] for entry in page["records"]] == [ids[4], ids[3]]

    completed = history.list_records(status="completed")
    assert [entry["id"] for entry in completed["records"]] == [ids[0]]


def test_search_and_statistics(history: HistoryStore) -> None:
    first = history.create_record("Coffee Basics", OUTLINE)
    history.create_record("Tea guide", OUTLINE)
    history.update_record(first, status="completed")

    assert [entry["id"] for entry in history.search_records("coffee")] == [first]
    assert history.search_records("nothing") == []
    assert history.get_statistics() == {
        "total": 2,
        "by_status": {"draft": 1, "completed": 1},
    }


def test_scan_syncs_record_from_disk(history: HistoryStore, png_bytes: bytes) -> None:
    record_id = history.create_record("t", OUTLINE, task_id="task_scan")
    task_dir = history.task_dir("task_scan")
    task_dir.mkdir()
    for name in ("1.png", "0.png", "thumb_0.png"):
        (task_dir / name).write_bytes(png_bytes)

    result = history.scan_and_sync_task_images("task_scan")

    assert result["success"] is True
    assert result["record_id"] == record_id
    assert result["images"] == ["0.png", "1.png"]
    assert result["status"] == "completed"
    record = history.get_record(record_id)
    assert record.images.generated == ["0.png", "1.png"]
    assert record.thumbnail == "0.png"


def test_scan_reports_orphans_and_missing_dirs(history: HistoryStore, png_bytes: bytes) -> None:
    orphan = history.task_dir("task_orphan")
    orphan.mkdir()
    (orphan / "0.png").write_bytes(png_bytes)

    assert history.scan_and_sync_task_images("task_orphan")["no_record"] is True
    assert history.scan_and_sync_task_images("task_missing")["success"] is False

    summary = history.scan_all_tasks()
    assert summary["total_tasks"] == 1
    assert summary["orphan_tasks"] == ["task_orphan"]
    assert summary["synced"] == 0


def test_task_dir_rejects_traversal(history: HistoryStore) -> None:
    with pytest.raises(ValueError):
        history.task_dir("../escape")


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("task_1", True),
        ("0.png", True),
        ("..", False),
        ("a/b", False),
        ("", False),
        (".hidden", False),
    ],
)
def test_is_safe_name(name: str, expected: bool) -> None:
    assert is_safe_name(name) is expected


def test_image_sort_key_orders_numeric_first() -> None:
    names = ["cover.png", "10.png", "2.png", "0.png"]
    assert sorted(names, key=image_sort_key) == ["0.png", "2.png", "10.png", "cover.png"]


def test_derive_status() -> None:
    assert derive_status(0, 3) == "draft"
    assert derive_status(2, 3) == "partial"
    assert derive_status(3, 3) == "completed"


def test_store_recovers_from_corrupt_index(tmp_path: Path) -> None:
    root = tmp_path / "history"
    root.mkdir()
    (root / "index.json").write_text("{not json", encoding="utf-8")
    store = HistoryStore(root)

    assert store.list_records()["total"] == 0
    store.create_record("t", OUTLINE)
    assert store.list_records()["total"] == 1
