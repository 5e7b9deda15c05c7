from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any, Protocol


class AnalyticsSink(Protocol):
    def log(self, event: dict[str, Any]) -> None: ...


def routing_event(
    *,
    provider: str,
    task_type: str,
    model: str,
    priority: str,
    success: bool,
    latency_ms: float,
    cost: float,
    fallback_used: bool,
    experiment_id: str | None,
    caller_id: str | None,
    attempted_providers: list[str],
) -> dict[str, Any]:
    return {
        "event": "routing_outcome",
        "provider": provider,
        "task_type": task_type,
        "model": model,
        "priority": priority,
        "success": success,
        "latency_ms": round(latency_ms, 3),
        "cost": cost,
        "fallback_used": fallback_used,
        "experiment_id": experiment_id,
        "caller_id": caller_id,
        "attempted_providers": attempted_providers,
    }


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAnalyticsLogger:
    """Appends routing events to a JSONL file from a background writer thread.

    ``log`` never blocks the caller: when the queue is full the event is
    dropped and counted, and the writer emits an
    ``analytics_logger_dropped_records`` line once it catches up.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        self._closed = False
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max(1, int(max_queue_size)))
            self._worker = Thread(
                target=self._drain_queue, name="router-analytics-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None or self._closed:
            return
        line = _encode({"ts": int(time.time()), **event})
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def flush(self, timeout: float = 2.0) -> None:
        queue = self._queue
        if queue is None:
            return
        deadline = time.monotonic() + timeout
        while queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None or self._closed:
            return
        self._closed = True
        queue.put(None)
        worker.join(timeout=2.0)

    def _take_dropped(self) -> int:
        with self._lock:
            dropped = self._dropped_records
            self._dropped_records = 0
        return dropped

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                try:
                    if item is not None:
                        handle.write(item + "\n")
                    dropped = self._take_dropped()
                    if dropped > 0:
                        handle.write(
                            _encode(
                                {
                                    "ts": int(time.time()),
                                    "event": "analytics_logger_dropped_records",
                                    "dropped_count": dropped,
                                }
                            )
                            + "\n"
                        )
                    handle.flush()
                finally:
                    queue.task_done()
                if item is None:
                    break
