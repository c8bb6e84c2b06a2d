"""In-process background task queue with bounded exponential backoff.

Tasks live in memory only; anything still queued when the process dies is
lost. A single ticker thread dispatches at most one due task per tick.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from gsfleet.control.shutdown import ShutdownCoordinator
from gsfleet.errors import ShutdownInProgress

logger = logging.getLogger(__name__)

Processor = Callable[[dict], Any]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    initial_delay_ms: int = 1000
    max_delay_ms: int = 60_000
    backoff_multiplier: float = 2

    def delay_ms(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (1-based)."""
        return min(self.initial_delay_ms * self.backoff_multiplier ** (retry - 1), self.max_delay_ms)


NO_RETRY = RetryPolicy()


@dataclass
class Task:
    id: str
    type: str
    payload: dict
    retry: RetryPolicy = NO_RETRY
    on_success: Callable[[Any], None] | None = None
    on_error: Callable[[BaseException], None] | None = None
    retries: int = 0
    scheduled_at: float = 0.0
    created_at: float = field(default_factory=time.time)

    @property
    def attempt(self) -> int:
        return self.retries + 1


class TaskQueue:
    def __init__(
        self,
        shutdown: ShutdownCoordinator,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.shutdown = shutdown
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._processors: dict[str, Processor] = {}
        self._heap: list[tuple[float, int, Task]] = []
        self._seq = itertools.count()
        self._heap_lock = threading.Lock()
        # Held for a whole dispatch so two ticks never run tasks concurrently.
        self._dispatch_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def register_processor(self, task_type: str, processor: Processor) -> None:
        self._processors[task_type] = processor

    def enqueue(
        self,
        task_type: str,
        payload: dict,
        *,
        on_success: Callable[[Any], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        retry: RetryPolicy | None = None,
    ) -> str:
        task = Task(
            id=f"task-{uuid.uuid4().hex[:12]}",
            type=task_type,
            payload=dict(payload),
            retry=retry or NO_RETRY,
            on_success=on_success,
            on_error=on_error,
            scheduled_at=self.clock(),
        )
        self._push(task)
        logger.info("Enqueued task %s (%s)", task.id, task.type)
        return task.id

    def pending(self) -> list[Task]:
        with self._heap_lock:
            return [task for _, _, task in sorted(self._heap)]

    def __len__(self) -> int:
        with self._heap_lock:
            return len(self._heap)

    def _push(self, task: Task) -> None:
        with self._heap_lock:
            heapq.heappush(self._heap, (task.scheduled_at, next(self._seq), task))

    def _pop_due(self, now: float) -> Task | None:
        with self._heap_lock:
            if self._heap and self._heap[0][0] <= now:
                return heapq.heappop(self._heap)[2]
            return None

    def process_next(self) -> bool:
        """Dispatch the earliest due task, if any. Returns True if a task was consumed."""
        with self._dispatch_lock:
            task = self._pop_due(self.clock())
            if task is None:
                return False

            processor = self._processors.get(task.type)
            if processor is None:
                logger.warning("No processor registered for task %s (%s), dropping it", task.id, task.type)
                return True

            logger.debug("Processing task %s (%s), attempt %d", task.id, task.type, task.attempt)
            try:
                result = self.shutdown.run(processor, task.payload)
            except ShutdownInProgress:
                if not self.shutdown.is_draining:
                    raise
                # Not counted as an attempt; the task stays queued untouched.
                self._push(task)
                return False
            except Exception as e:
                self._handle_failure(task, e)
                return True

            logger.info("Task %s (%s) completed", task.id, task.type)
            self._invoke_callback(task, task.on_success, result)
            return True

    def _handle_failure(self, task: Task, error: Exception) -> None:
        if task.retries < task.retry.max_retries:
            task.retries += 1
            delay_ms = task.retry.delay_ms(task.retries)
            task.scheduled_at = self.clock() + delay_ms / 1000
            self._push(task)
            logger.warning(
                "Task %s (%s) failed on attempt %d, retrying in %.0f ms: %s",
                task.id, task.type, task.retries, delay_ms, error,
            )
            return
        logger.error(
            "Task %s (%s) failed after %d attempt(s): %s",
            task.id, task.type, task.attempt, error,
        )
        self._invoke_callback(task, task.on_error, error)

    def _invoke_callback(self, task: Task, callback, value) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Callback for task %s (%s) raised", task.id, task.type)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="task-queue", daemon=True)
        self._thread.start()
        logger.info("Task queue started")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None
        logger.info("Task queue stopped")

    def is_running(self) -> bool:
        return self._running

    def _loop(self) -> None:
        while not self._stop_event.wait(self.tick_seconds):
            try:
                self.process_next()
            except Exception:
                logger.exception("Task queue tick failed")
