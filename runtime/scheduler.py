"""
A2W Runtime: Weighted Scheduler

Orders pending admissions by a priority score instead of FIFO:

    score = alpha * weight + beta * task_priority

Ties go to the earliest submission. Ordering only; a running task is
never preempted for a higher-scored one. The interrupt guard refuses to
stop or terminate work submitted by a caller whose weight exceeds this
agent's by the configured threshold, unless an explicit override is
given.
"""

from __future__ import annotations

import heapq
import logging
import threading
from dataclasses import dataclass
from typing import Iterable

from a2w.errors import LowWeightInterrupt

logger = logging.getLogger("a2w_runtime.scheduler")

DEFAULT_INTERRUPT_THRESHOLD = 20


def score(weight: float, task_priority: float, alpha: float = 1.0, beta: float = 1.0) -> float:
    """Priority score used for admission ordering."""
    return alpha * weight + beta * task_priority


@dataclass(frozen=True)
class Candidate:
    id: str
    score: float
    submitted_at: float


def admit(candidates: Iterable[Candidate | tuple]) -> list[Candidate]:
    """
    Order candidates by score descending, earliest submission first on ties.
    Accepts Candidate objects or (id, score, submitted_at) tuples.
    """
    normalized = [c if isinstance(c, Candidate) else Candidate(*c) for c in candidates]
    return sorted(normalized, key=lambda c: (-c.score, c.submitted_at))


class WeightedScheduler:
    """Pending-admission queue ordered by score, plus the interrupt guard."""

    def __init__(
        self,
        alpha: float = 1.0,
        beta: float = 1.0,
        interrupt_threshold: int = DEFAULT_INTERRUPT_THRESHOLD,
    ):
        self.alpha = alpha
        self.beta = beta
        self.interrupt_threshold = interrupt_threshold
        self._heap: list[tuple[float, float, int, str]] = []
        self._queued: set[str] = set()
        self._lock = threading.Lock()
        self._counter = 0

    def score_for(self, weight: float, priority: float) -> float:
        return score(weight, priority, self.alpha, self.beta)

    # ── Pending queue ────────────────────────────────────────

    def enqueue(self, task_id: str, task_score: float, submitted_at: float) -> None:
        with self._lock:
            if task_id in self._queued:
                return
            self._counter += 1
            heapq.heappush(self._heap, (-task_score, submitted_at, self._counter, task_id))
            self._queued.add(task_id)

    def discard(self, task_id: str) -> bool:
        """Drop a task from the pending queue. Heap entries are removed lazily."""
        with self._lock:
            if task_id in self._queued:
                self._queued.discard(task_id)
                return True
            return False

    def pop_next(self) -> str | None:
        """Highest-scored pending task id, or None."""
        with self._lock:
            while self._heap:
                _, _, _, task_id = heapq.heappop(self._heap)
                if task_id in self._queued:
                    self._queued.discard(task_id)
                    return task_id
            return None

    def pending(self) -> list[Candidate]:
        """Pending tasks in admission order."""
        with self._lock:
            live = [
                Candidate(id=tid, score=-neg, submitted_at=ts)
                for neg, ts, _, tid in self._heap
                if tid in self._queued
            ]
        return admit(live)

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._queued)

    # ── Interrupt guard ──────────────────────────────────────

    def check_interrupt(self, own_weight: int, caller_weight: int, override: bool = False) -> None:
        """
        Raise LowWeightInterrupt when the task's caller outweighs this
        agent by at least interrupt_threshold and no override was given.
        """
        gap = caller_weight - own_weight
        if gap >= self.interrupt_threshold and not override:
            raise LowWeightInterrupt(
                f"Caller weight {caller_weight} exceeds own weight {own_weight} "
                f"by {gap} (threshold {self.interrupt_threshold}); override required",
                caller_weight=caller_weight,
                own_weight=own_weight,
                threshold=self.interrupt_threshold,
            )
        if gap >= self.interrupt_threshold:
            logger.warning(
                "Interrupt override used against caller weight %d (own %d)",
                caller_weight, own_weight,
            )
