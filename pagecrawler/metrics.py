from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Deque, Dict, List

from .models import TaskOutcome, TaskState


@dataclass(frozen=True)
class RunSnapshot:
    total_tasks: int
    harvested: int
    fanned_out: int
    retried: int
    failed: int
    by_namespace: Dict[str, int] = field(default_factory=dict)
    avg_latency_ms: float = 0.0
    elapsed_secs: float = 0.0


class MetricsCollector:
    """Thread-safe collector of task outcomes for the end-of-run summary."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: Deque[TaskOutcome] = deque(maxlen=100000)
        self._started = time.monotonic()

    def record(self, outcome: TaskOutcome) -> None:
        with self._lock:
            self._events.append(outcome)

    def snapshot(self) -> RunSnapshot:
        with self._lock:
            events: List[TaskOutcome] = list(self._events)
        states = Counter(e.state for e in events)
        namespaces = Counter(e.namespace for e in events if e.namespace)
        total = len(events)
        return RunSnapshot(
            total_tasks=total,
            harvested=states[TaskState.HARVESTED],
            fanned_out=states[TaskState.FANNED_OUT],
            retried=states[TaskState.FAILED_RETRYABLE],
            failed=states[TaskState.FAILED_TERMINAL],
            by_namespace=dict(namespaces),
            avg_latency_ms=(sum(e.latency_ms for e in events) / total) if total else 0.0,
            elapsed_secs=time.monotonic() - self._started,
        )

    def export_json(self) -> List[Dict]:
        with self._lock:
            return [asdict(e) for e in self._events]
