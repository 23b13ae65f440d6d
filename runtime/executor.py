"""
A2W Runtime: Execution Collaborator and Dispatch Backends

The planning/LLM logic that actually works a task lives outside the
core. It plugs in as a TaskHandler and reports back with an Outcome:

    Completed(artifact)                     task is done
    NeedData(required, urgency, ...)        suspend until insight arrives
    Delegate(delegate_to, reason)           hand the task to another agent

While it runs, the handler talks to the runtime through ExecutionControl:
report_progress() for telemetry and checkpoint() at safe points, where a
pending graceful stop (StopRequested) or an immediate terminate
(Discarded) surfaces.

On resume the handler receives the Continuation from the last
suspension, holding the insights and any delegation result.

Dispatch backends:
  - InlineDispatcher: runs the handler in the caller's thread (dev/test)
  - ThreadPoolDispatcher: ThreadPoolExecutor with bounded workers
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from a2w.types import TaskContext, Urgency

logger = logging.getLogger("a2w_runtime.executor")


# ─── Outcomes ────────────────────────────────────────────────────────

@dataclass
class Completed:
    artifact: Any = None
    telemetry: dict[str, Any] = field(default_factory=dict)


@dataclass
class NeedData:
    required: list[str]
    urgency: str = Urgency.NORMAL.value
    description: str = ""


@dataclass
class Delegate:
    delegate_to: str
    reason: str = ""


Outcome = Completed | NeedData | Delegate


# ─── Control signals ─────────────────────────────────────────────────

class StopRequested(Exception):
    """Raised at a checkpoint when a graceful stop is pending."""


class Discarded(Exception):
    """Raised at a checkpoint when the task was terminated under the handler."""


class _ControlTarget(Protocol):
    def _checkpoint(self, task_id: str, token: int) -> None: ...
    def _progress(self, task_id: str, progress: float,
                  telemetry: dict[str, Any] | None, token: int) -> None: ...


class ExecutionControl:
    """Handle given to a running handler. Bound to one dispatch of one task."""

    def __init__(self, target: _ControlTarget, task_id: str, token: int):
        self._target = target
        self.task_id = task_id
        self.token = token

    def checkpoint(self) -> None:
        """Safe point. Raises StopRequested or Discarded when the task must not go on."""
        self._target._checkpoint(self.task_id, self.token)

    def report_progress(self, progress: float, telemetry: dict[str, Any] | None = None) -> None:
        self._target._progress(self.task_id, progress, telemetry, self.token)


class TaskHandler(Protocol):
    def execute(
        self,
        context: TaskContext,
        control: ExecutionControl,
        continuation: Any,
    ) -> Outcome: ...


# ═══════════════════════════════════════════════════════════════════
# Dispatch Backends
# ═══════════════════════════════════════════════════════════════════

class Dispatcher:
    """Abstract interface for running handler executions."""

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        raise NotImplementedError

    def shutdown(self, wait: bool = True) -> None:
        pass


class InlineDispatcher(Dispatcher):
    """Synchronous in-process execution. Blocks until the handler returns."""

    def submit(self, fn, *args):
        fn(*args)


class ThreadPoolDispatcher(Dispatcher):
    """Bounded concurrency via ThreadPoolExecutor."""

    def __init__(self, max_workers: int = 4):
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="a2w_worker",
        )
        self._futures: set[Future] = set()
        self._lock = threading.Lock()
        logger.info("ThreadPoolDispatcher started: max_workers=%d", max_workers)

    def submit(self, fn, *args):
        future = self._pool.submit(fn, *args)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._done)

    def _done(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Execution crashed outside the runtime guard: %s", exc)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._futures)

    def shutdown(self, wait: bool = True) -> None:
        logger.info("Shutting down ThreadPoolDispatcher...")
        self._pool.shutdown(wait=wait, cancel_futures=not wait)


def create_dispatcher(mode: str = "thread", max_workers: int = 4) -> Dispatcher:
    """
    Mode selection:
      - "inline": InlineDispatcher (synchronous)
      - "thread": ThreadPoolDispatcher (bounded worker threads)
    """
    if mode == "inline":
        logger.info("Dispatcher: InlineDispatcher (synchronous)")
        return InlineDispatcher()
    if mode == "thread":
        return ThreadPoolDispatcher(max_workers=max_workers)
    raise ValueError(f"Unknown dispatch mode: {mode!r}")
