from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Set

from .logs import CrawlLogger
from .models import CrawlTask
from .policy import RetryPolicy

TaskHandler = Callable[[CrawlTask, int], None]
FailureHandler = Callable[[CrawlTask, BaseException, int], None]
ExitHook = Callable[[], None]


@dataclass(frozen=True)
class QueueItem:
    task: CrawlTask
    retry_count: int = 0


class CrawlController:
    """Bounded pool of worker threads draining an in-process task queue.

    - ``enqueue(task, forefront=True)`` puts a task at the head of the queue.
    - A task whose handler raises is redelivered (after backoff) while the
      retry policy allows it; otherwise ``on_failed`` is called once.
    - ``run`` returns when the queue is empty and no task is in flight.
    """

    def __init__(
        self,
        max_concurrency: int,
        policy: Optional[RetryPolicy] = None,
        logger: Optional[CrawlLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._limit = max(1, int(max_concurrency))
        self._policy = policy or RetryPolicy()
        self._logger = logger or CrawlLogger()
        self._sleep = sleep

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._queue: Deque[QueueItem] = deque()
        self._seen: Set[str] = set()
        self._active = 0
        self._running = False

    def enqueue(self, task: CrawlTask, forefront: bool = False) -> bool:
        """Add a task; returns False when a task with the same unique key was already enqueued."""
        with self._cv:
            if task.unique_key in self._seen:
                return False
            self._seen.add(task.unique_key)
            item = QueueItem(task)
            if forefront:
                self._queue.appendleft(item)
            else:
                self._queue.append(item)
            self._cv.notify_all()
            return True

    def run(
        self,
        handler: TaskHandler,
        on_failed: Optional[FailureHandler] = None,
        on_exit: Optional[ExitHook] = None,
    ) -> None:
        """Process tasks with up to max_concurrency workers until drained (blocking).

        ``on_exit`` runs on each worker thread right before it finishes, so
        thread-bound resources can be released by their owner.
        """
        with self._cv:
            self._running = True

        workers = [
            threading.Thread(target=self._worker, args=(handler, on_failed, on_exit), name=f"crawl-worker-{i}", daemon=True)
            for i in range(self._limit)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

    def stop(self) -> None:
        """Stop handing out tasks; in-flight tasks finish normally."""
        with self._cv:
            self._running = False
            self._cv.notify_all()

    def _next(self) -> Optional[QueueItem]:
        with self._cv:
            while self._running and not self._queue and self._active > 0:
                self._cv.wait(timeout=0.5)

            if not self._running or not self._queue:
                # drained: nothing queued and nothing in flight that could enqueue more
                self._running = False
                self._cv.notify_all()
                return None

            self._active += 1
            return self._queue.popleft()

    def _worker(self, handler: TaskHandler, on_failed: Optional[FailureHandler], on_exit: Optional[ExitHook]) -> None:
        try:
            self._work(handler, on_failed)
        finally:
            if on_exit is not None:
                on_exit()

    def _work(self, handler: TaskHandler, on_failed: Optional[FailureHandler]) -> None:
        while True:
            item = self._next()
            if item is None:
                return
            try:
                handler(item.task, item.retry_count)
            except Exception as exc:  # noqa: BLE001
                self._handle_failure(item, exc, on_failed)
            finally:
                with self._cv:
                    self._active = max(0, self._active - 1)
                    self._cv.notify_all()

    def _handle_failure(self, item: QueueItem, exc: BaseException, on_failed: Optional[FailureHandler]) -> None:
        if self._policy.should_retry(exc, item.retry_count):
            self._sleep(self._policy.backoff(item.retry_count + 1))
            with self._cv:
                self._queue.append(QueueItem(item.task, item.retry_count + 1))
                self._cv.notify_all()
            return

        if on_failed is not None:
            on_failed(item.task, exc, item.retry_count)
        else:
            self._logger.error(
                f"Task failed on {item.task.url} after {item.retry_count} retries",
                error=repr(exc),
            )

    @property
    def pending(self) -> int:
        with self._cv:
            return len(self._queue)

    @property
    def limit(self) -> int:
        return self._limit
