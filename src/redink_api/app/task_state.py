"""In-memory task state for running and recently finished generation tasks.

State lives only as long as the process. The store is bounded: least recently
used tasks are evicted past `max_tasks`, and entries older than `ttl_s` expire
on access.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from .models import OutlinePage

logger = logging.getLogger(__name__)


@dataclass
class TaskState:
    pages: list[OutlinePage] = field(default_factory=list)
    generated: dict[int, str] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)
    # Compressed cover bytes reused as the style reference.
    cover_image: bytes | None = None
    full_outline: str = ""
    user_images: list[bytes] = field(default_factory=list)
    user_topic: str = ""

    def mark_generated(self, index: int, filename: str) -> None:
        self.generated[index] = filename
        self.failed.pop(index, None)

    def mark_failed(self, index: int, error: str) -> None:
        self.failed[index] = error

    def summary(self) -> dict[str, object]:
        """JSON-safe view without image bytes."""
        return {
            "generated": {str(index): name for index, name in sorted(self.generated.items())},
            "failed": {str(index): error for index, error in sorted(self.failed.items())},
            "has_cover": self.cover_image is not None,
        }


class TaskStateStore:
    """Bounded LRU + TTL map from task id to TaskState."""

    def __init__(
        self,
        *,
        max_tasks: int = 64,
        ttl_s: float = 6 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_tasks < 1:
            raise ValueError("max_tasks must be >= 1")
        self.max_tasks = max_tasks
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, TaskState]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, task_id: object) -> bool:
        return isinstance(task_id, str) and self.get(task_id) is not None

    def get(self, task_id: str) -> TaskState | None:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                return None
            touched_at, state = entry
            if self._clock() - touched_at > self.ttl_s:
                del self._entries[task_id]
                logger.info("task_state event=expired task_id=%s", task_id)
                return None
            self._entries[task_id] = (self._clock(), state)
            self._entries.move_to_end(task_id)
            return state

    def put(self, task_id: str, state: TaskState) -> None:
        with self._lock:
            self._entries[task_id] = (self._clock(), state)
            self._entries.move_to_end(task_id)
            while len(self._entries) > self.max_tasks:
                evicted_id, _ = self._entries.popitem(last=False)
                logger.info("task_state event=evicted task_id=%s", evicted_id)

    def discard(self, task_id: str) -> bool:
        with self._lock:
            return self._entries.pop(task_id, None) is not None
