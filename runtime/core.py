"""
A2W Runtime: Agent Runtime

The kernel facade. Wires registry, FSM, scheduler, exchange, delegation,
broadcaster, store and error reporter into the task control flow:

    start(context)  → idle, queued by priority score
    admission       → initializing → running, handler dispatched
    handler outcome → finishing → finished (report saved)
                    → waiting (need_data)        → insight → running
                    → delegating                 → delegate outcome
    failures        → error envelope pushed, task → blocked | terminated

Every transition is broadcast as a status_update and appended to the
action ledger. Slots: initializing/running/finishing tasks hold one of
max_concurrent execution slots; waiting, blocked and delegating tasks
hold none. Only idle tasks queue for admission.

Lock order: admission → entry → slots/timers. Transitions are observed
under the entry lock; admission runs only after entry locks are released.

Usage:
    runtime = AgentRuntime(AgentRecord("agent-a", weight=60), handler=MyHandler())
    result = runtime.start({"task_id": "T1", "priority": 70, "weight_caller": 90})
    runtime.status("T1")["state"]
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from typing import Any, Callable

from a2w.envelope import A2W_VERSION, wrap
from a2w.errors import (
    A2WError,
    ConfigError,
    DeadlineExceeded,
    ErrorReporter,
    ExternalDependencyError,
    InternalError,
    InvalidInput,
    MissingData,
    PermissionDenied,
    ReportUnavailable,
    TaskActive,
    TaskNotFound,
)
from a2w.types import (
    DELEGATION_CHAIN_KEY,
    Envelope,
    EventKind,
    EventPayload,
    NeedData as NeedDataPayload,
    StatusUpdate,
    TaskContext,
    TaskState,
)
from runtime.abilities import AbilityRegistry
from runtime.agent import AgentRecord
from runtime.broadcaster import StatusBroadcaster, Subscription
from runtime.delegation import DelegationManager, DelegationOutcome, DelegationRequest
from runtime.exchange import Continuation, InsightPolicy, InsightResult, NeedInsightExchange
from runtime.executor import (
    Completed,
    Delegate,
    Discarded,
    Dispatcher,
    ExecutionControl,
    InlineDispatcher,
    NeedData,
    StopRequested,
    TaskHandler,
    create_dispatcher,
)
from runtime.fsm import FSMEngine, is_legal
from runtime.logging import RuntimeEventLogger
from runtime.registry import ENDED_STATES, SubmitResult, TaskEntry, TaskRegistry
from runtime.scheduler import WeightedScheduler
from runtime.store import InMemoryStore, RuntimeStore, clamp_limit, create_store

logger = logging.getLogger("a2w_runtime.core")

S = TaskState

# States that occupy an execution slot.
SLOT_STATES = frozenset({S.INITIALIZING, S.RUNNING, S.FINISHING})

DelegationTransport = Callable[[DelegationRequest], Any]


class AgentRuntime:
    """
    One agent process's task runtime.

    Public operations raise A2WError subclasses for every condition the
    core detects; the HTTP layer turns them into error envelopes.
    """

    def __init__(
        self,
        agent: AgentRecord,
        *,
        handler: TaskHandler | None = None,
        store: RuntimeStore | None = None,
        dispatcher: Dispatcher | None = None,
        abilities: AbilityRegistry | None = None,
        delegation_transport: DelegationTransport | None = None,
        alpha: float = 1.0,
        beta: float = 1.0,
        interrupt_threshold: int = 20,
        max_concurrent: int = 4,
        queue_warning_depth: int = 100,
        insight_policy: InsightPolicy | str = InsightPolicy.STRICT,
        buffer_size: int = 256,
        stop_grace_seconds: float = 30.0,
        deadline_sweep_seconds: float = 1.0,
        version: str = A2W_VERSION,
    ):
        self.agent = agent
        self.version = version
        self.handler = handler
        self.delegation_transport = delegation_transport
        self.max_concurrent = max_concurrent
        self.queue_warning_depth = queue_warning_depth
        self.stop_grace_seconds = stop_grace_seconds
        self.deadline_sweep_seconds = deadline_sweep_seconds

        self.registry = TaskRegistry()
        self.fsm = FSMEngine(self.registry)
        self.scheduler = WeightedScheduler(alpha, beta, interrupt_threshold)
        self.broadcaster = StatusBroadcaster(buffer_size, on_overflow=self._on_overflow)
        self.errors = ErrorReporter(agent.agent_id, version, publish=self.broadcaster.publish)
        self.exchange = NeedInsightExchange(
            self.registry, self.fsm, InsightPolicy(insight_policy), publish_need=self._publish_need,
        )
        self.delegation = DelegationManager(
            agent, self.registry, self.fsm, self.exchange, publish_event=self._publish_event,
        )
        self.store = store or InMemoryStore()
        self.abilities = abilities or AbilityRegistry()
        self.dispatcher = dispatcher or InlineDispatcher()
        self.events = RuntimeEventLogger(agent.agent_id)

        self._admission_lock = threading.Lock()
        self._slots_lock = threading.Lock()
        self._active: set[str] = set()
        self._timers: dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()
        self._queue_warned = False
        self._closed = threading.Event()
        self._ticker: threading.Thread | None = None
        self.started_at = time.time()

        self.fsm.add_listener(self._on_transition)

    @classmethod
    def from_config(
        cls,
        config: Any,
        handler: TaskHandler | None = None,
        delegation_transport: DelegationTransport | None = None,
    ) -> AgentRuntime:
        """Build a runtime from a RuntimeConfig."""
        try:
            abilities = AbilityRegistry.from_config(config.abilities)
        except ValueError as e:
            raise ConfigError(str(e))
        agent = AgentRecord(
            config.agent_id,
            weight=config.weight,
            allowed_callers=config.allowed_callers,
            allowed_callees=config.allowed_callees,
            weight_authorities=config.weight_authorities,
        )
        return cls(
            agent,
            handler=handler,
            store=create_store(config.store_backend, config.store_path),
            dispatcher=create_dispatcher(config.dispatch_mode, config.max_concurrent),
            abilities=abilities,
            delegation_transport=delegation_transport,
            alpha=config.alpha,
            beta=config.beta,
            interrupt_threshold=config.interrupt_threshold,
            max_concurrent=config.max_concurrent,
            queue_warning_depth=config.queue_warning_depth,
            insight_policy=config.insight_policy,
            buffer_size=config.buffer_size,
            stop_grace_seconds=config.stop_grace_seconds,
            deadline_sweep_seconds=config.deadline_sweep_seconds,
        )

    # ═══════════════════════════════════════════════════════════════
    # Task lifecycle
    # ═══════════════════════════════════════════════════════════════

    def start(self, context: TaskContext | dict[str, Any]) -> SubmitResult:
        """
        Submit a task. Idempotent on task_id: a resubmission returns the
        first handle with created=False and never starts a second run.
        """
        if isinstance(context, dict):
            errors = TaskContext.validate_dict(context)
            if errors:
                raise InvalidInput("; ".join(errors), errors=errors)
            context = TaskContext.from_dict(context)
        else:
            errors = TaskContext.validate_dict(context.to_dict())
            if errors:
                raise InvalidInput("; ".join(errors), errors=errors)

        self.delegation.check_inbound(context)
        if not self.agent.accepts_caller(context.caller_agent):
            raise PermissionDenied(
                f"Caller {context.caller_agent!r} is not allowed to submit to {self.agent.agent_id}",
                task_id=context.task_id,
                caller_agent=context.caller_agent,
            )

        result = self.registry.submit(context)
        task_score = self.scheduler.score_for(context.weight_caller, context.priority)
        self.events.on_submit(context.task_id, result.handle, result.created, task_score)
        if not result.created:
            return result

        self._publish(StatusUpdate(
            task_id=context.task_id,
            state=S.IDLE.value,
            progress=0.0,
            reason="submitted",
        ))
        self.store.append_log(context.task_id, "submitted", {
            "handle": result.handle,
            "score": task_score,
            "priority": context.priority,
            "weight_caller": context.weight_caller,
            "caller_agent": context.caller_agent,
            "retry_of": context.retry_of,
        })
        self.scheduler.enqueue(context.task_id, task_score, result.entry.submitted_at)
        self._check_queue_depth()
        self._pump()
        return result

    def status(self, task_id: str) -> dict[str, Any]:
        entry = self.registry.entry(task_id)
        with entry.lock:
            snapshot = entry.execution.to_dict()
            snapshot.update({
                "task_id": task_id,
                "handle": entry.handle,
                "submitted_at": entry.submitted_at,
                "priority": entry.context.priority,
                "weight_caller": entry.context.weight_caller,
                "deadline": entry.context.to_dict()["deadline"],
                "delegation_chain": entry.context.delegation_chain,
                "retry_of": entry.context.retry_of,
            })
        return snapshot

    def stop(self, task_id: str, override: bool = False, reason: str = "") -> dict[str, Any]:
        """
        Graceful stop. A task with a handler mid-execution is stopped at
        its next checkpoint (or when stop_grace_seconds runs out); any
        other task stops at once.
        """
        entry = self.registry.entry(task_id)
        with entry.lock:
            execution = entry.execution
            self.fsm.check(entry, S.STOPPED)
            self.scheduler.check_interrupt(self.agent.weight, entry.context.weight_caller, override)
            pending = execution.in_flight and execution.state == S.RUNNING
            if pending:
                execution.stop_requested = True
                self._arm_grace_timer(task_id, execution.run_token)
            else:
                self.fsm.apply(entry, S.STOPPED, reason=reason or "stop requested")
            state = execution.state
        if pending:
            logger.info("Stop requested for %s; waiting for checkpoint", task_id, extra={"task_id": task_id})
            self.store.append_log(task_id, "stop_requested", {"override": override, "reason": reason})
        self._pump()
        return {"task_id": task_id, "state": state.value, "stop_pending": pending}

    def terminate(self, task_id: str, override: bool = False, reason: str = "") -> dict[str, Any]:
        """Immediate terminate. In-flight results are discarded."""
        entry = self.registry.entry(task_id)
        with entry.lock:
            self.fsm.check(entry, S.TERMINATED)
            self.scheduler.check_interrupt(self.agent.weight, entry.context.weight_caller, override)
            entry.execution.run_token += 1
            self.fsm.apply(entry, S.TERMINATED, reason=reason or "terminate requested")
        self._pump()
        return {"task_id": task_id, "state": S.TERMINATED.value}

    def report_progress(
        self,
        task_id: str,
        progress: float,
        telemetry: dict[str, Any] | None = None,
    ) -> float:
        entry = self.registry.entry(task_id)
        with entry.lock:
            return self._set_progress(entry, progress, telemetry)

    def finish(
        self,
        task_id: str,
        artifact: Any = None,
        telemetry: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Complete a running task: finishing → finished, report saved."""
        entry = self.registry.entry(task_id)
        with entry.lock:
            report = self._finish_locked(entry, artifact, telemetry)
        self._pump()
        return report

    def report(self, task_id: str) -> dict[str, Any]:
        report = self.store.get_report(task_id)
        if report is not None:
            return report
        state = self.registry.state_of(task_id)
        raise ReportUnavailable(
            f"Task {task_id} is {state.value}; a report exists once it has finished",
            task_id=task_id,
            state=state.value,
        )

    def retry(self, task_id: str, new_task_id: str | None = None) -> SubmitResult:
        """Resubmit an ended task as a new task whose retry_of names it."""
        entry = self.registry.entry(task_id)
        with entry.lock:
            state = entry.execution.state
            if state not in ENDED_STATES:
                raise TaskActive(
                    f"Task {task_id} is {state.value}; only ended tasks can be retried",
                    task_id=task_id,
                )
            metadata = dict(entry.context.metadata)
            chain = entry.context.delegation_chain
            if chain and chain[-1] == self.agent.agent_id:
                # Our own handoff entry; the retry starts here again.
                metadata[DELEGATION_CHAIN_KEY] = chain[:-1]
            context = entry.context.copy(
                task_id=new_task_id or f"{task_id}-r{uuid.uuid4().hex[:6]}",
                retry_of=task_id,
                metadata=metadata,
            )
        result = self.start(context)
        if result.created:
            self._publish_event(EventKind.TASK_RETRIED, context.task_id, {
                "retry_of": task_id,
                "handle": result.handle,
            })
        return result

    def remove(self, task_id: str) -> None:
        self.registry.remove(task_id)
        self.scheduler.discard(task_id)
        self._cancel_grace_timer(task_id)

    # ═══════════════════════════════════════════════════════════════
    # Need / insight
    # ═══════════════════════════════════════════════════════════════

    def raise_need(
        self,
        task_id: str,
        required: Any,
        urgency: str = "normal",
        description: str = "",
    ) -> Continuation:
        continuation = self.exchange.raise_need(task_id, required, urgency, description)
        self._pump()
        return continuation

    def provide_insight(
        self,
        task_id: str,
        payload: dict[str, Any],
        rating: float | None = None,
    ) -> InsightResult:
        result = self.exchange.provide_insight(task_id, payload, rating)
        self.store.append_log(task_id, "insight", {
            "keys": sorted(payload),
            "rating": rating,
            "resumed": result.resumed,
            "missing": result.missing,
        })
        self.events.on_insight(task_id, sorted(payload), result.resumed, result.missing)
        if result.resumed:
            self._resume(task_id)
        return result

    def unblock(
        self,
        task_id: str,
        required: Any,
        urgency: str = "normal",
        description: str = "",
    ) -> Continuation:
        """Turn a blocked task back into a waiting one with a fresh need."""
        entry = self.registry.entry(task_id)
        with entry.lock:
            continuation = self.exchange.reopen(task_id, required, urgency, description)
            entry.execution.timed_out = False
            entry.execution.error = None
        return continuation

    # ═══════════════════════════════════════════════════════════════
    # Delegation
    # ═══════════════════════════════════════════════════════════════

    def delegate(self, task_id: str, delegate_to: str, reason: str = "") -> DelegationRequest:
        """
        Hand a running task to another agent. When a transport is set the
        request is sent through it; a transport failure hands the task
        back (rejected), pushes an E050 error and raises it.
        """
        request = self.delegation.delegate(task_id, delegate_to, reason)
        self._pump()
        if self.delegation_transport is None:
            return request
        try:
            self.delegation_transport(request)
        except Exception as e:
            exc = ExternalDependencyError(
                f"Delegation of {task_id} to {delegate_to} failed: {e}",
                task_id=task_id,
                delegate_to=delegate_to,
            )
            self.delegation.complete(task_id, DelegationOutcome.REJECTED, {"error": str(e)})
            self._push_error(exc, task_id)
            self._resume(task_id)
            raise exc from e
        return request

    def complete_delegation(
        self,
        task_id: str,
        outcome: DelegationOutcome | str,
        result: dict[str, Any] | None = None,
    ) -> TaskState:
        state = self.delegation.complete(task_id, outcome, result)
        if DelegationOutcome(outcome) == DelegationOutcome.FAILED:
            exc = ExternalDependencyError(
                f"Delegate reported failure for task {task_id}",
                task_id=task_id,
                result=dict(result or {}),
            )
            envelope = self._push_error(exc, task_id)
            entry = self.registry.entry(task_id)
            with entry.lock:
                entry.execution.error = envelope.payload.to_dict()
        if state == S.RUNNING:
            self._resume(task_id)
        self._pump()
        return state

    # ═══════════════════════════════════════════════════════════════
    # Agent surface
    # ═══════════════════════════════════════════════════════════════

    def update_weight(self, weight: Any, requested_by: str) -> dict[str, Any]:
        old, new = self.agent.update_weight(weight, requested_by)
        self.events.on_weight_update(old, new, requested_by)
        self._publish_event(EventKind.WEIGHT_UPDATE, None, {
            "old_weight": old,
            "new_weight": new,
            "requested_by": requested_by,
        })
        self.store.append_log("", "weight_update", {
            "old_weight": old, "new_weight": new, "requested_by": requested_by,
        })
        return {"agent_id": self.agent.agent_id, "old_weight": old, "weight": new}

    def manifest(self) -> dict[str, Any]:
        snapshot = self.agent.snapshot()
        return {
            "agent_id": snapshot["agent_id"],
            "weight": snapshot["weight"],
            "a2w_version": self.version,
            "identity": {"agent_id": snapshot["agent_id"]},
            "permissions": {
                "allowed_callers": snapshot["allowed_callers"],
                "allowed_callees": snapshot["allowed_callees"],
            },
            "insight_policy": self.exchange.policy.value,
            "interrupt_threshold": self.scheduler.interrupt_threshold,
            "max_concurrent": self.max_concurrent,
            "abilities": len(self.abilities),
        }

    def capabilities(self) -> dict[str, Any]:
        return {"agent_id": self.agent.agent_id, "abilities": self.abilities.list()}

    def logs(
        self,
        cursor: Any = 0,
        limit: Any = None,
        task_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            cursor = int(cursor or 0)
            limit = clamp_limit(None if limit is None else int(limit))
        except (TypeError, ValueError):
            raise InvalidInput("cursor and limit must be integers", cursor=cursor, limit=limit)
        if cursor < 0:
            raise InvalidInput("cursor must not be negative", cursor=cursor)
        entries, next_cursor = self.store.read_logs(cursor, limit, task_id)
        return {"entries": entries, "next_cursor": next_cursor}

    def stats(self) -> dict[str, Any]:
        with self._slots_lock:
            active = len(self._active)
        return {
            "agent_id": self.agent.agent_id,
            "tasks": len(self.registry),
            "states": self.registry.stats(),
            "pending": self.scheduler.depth,
            "active_slots": active,
            "max_concurrent": self.max_concurrent,
            "subscribers": self.broadcaster.subscriber_count(),
            "published": self.broadcaster.published,
            "uptime_s": round(time.time() - self.started_at, 1),
        }

    def subscribe(self, channel: str, capacity: int | None = None) -> Subscription:
        return self.broadcaster.subscribe(channel, capacity)

    # ═══════════════════════════════════════════════════════════════
    # Deadlines and background work
    # ═══════════════════════════════════════════════════════════════

    def sweep_deadlines(self, now: float | None = None) -> list[str]:
        """Escalate every active task past its deadline with E040. Returns their ids."""
        now = time.time() if now is None else now
        overdue = []
        for entry in self.registry.entries():
            with entry.lock:
                execution = entry.execution
                deadline = entry.context.deadline
                if deadline is None or deadline > now or execution.timed_out:
                    continue
                if execution.state in ENDED_STATES or execution.state == S.BLOCKED:
                    continue
                execution.timed_out = True
                overdue.append(entry.task_id)
        for task_id in overdue:
            self.escalate(task_id, DeadlineExceeded(
                f"Task {task_id} passed its deadline", task_id=task_id,
            ))
        if overdue:
            self._pump()
        return overdue

    def start_background(self) -> None:
        """Start the deadline ticker. No-op if already running."""
        if self._ticker is not None:
            return
        self._ticker = threading.Thread(
            target=self._tick, name="a2w_deadline_sweeper", daemon=True,
        )
        self._ticker.start()

    def _tick(self) -> None:
        while not self._closed.wait(self.deadline_sweep_seconds):
            try:
                self.sweep_deadlines()
            except Exception:
                logger.exception("Deadline sweep failed")

    def shutdown(self, wait: bool = True) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        with self._timers_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self._ticker is not None:
            self._ticker.join(timeout=5)
        self.dispatcher.shutdown(wait=wait)
        self.broadcaster.close()
        self.store.close()
        logger.info("Runtime %s shut down", self.agent.agent_id)

    # ═══════════════════════════════════════════════════════════════
    # Errors
    # ═══════════════════════════════════════════════════════════════

    def escalate(self, task_id: str, exc: BaseException, token: int | None = None) -> Envelope:
        """
        Push an error affecting a task's viability and move the task to
        blocked (recoverable, when legal) or terminated.
        """
        envelope = self._push_error(exc, task_id)
        payload = envelope.payload
        try:
            entry = self.registry.entry(task_id)
        except TaskNotFound:
            return envelope
        with entry.lock:
            execution = entry.execution
            if token is not None and execution.run_token != token:
                return envelope
            if execution.state in ENDED_STATES:
                return envelope
            execution.error = payload.to_dict()
            execution.run_token += 1
            if payload.recoverable and is_legal(execution.state, S.BLOCKED):
                target = S.BLOCKED
            else:
                target = S.TERMINATED
            self.fsm.apply(entry, target, reason=f"{payload.code}: {payload.message}")
        self._pump()
        return envelope

    def _push_error(self, exc: BaseException, task_id: str | None) -> Envelope:
        envelope = self.errors.report_exception(exc, task_id=task_id)
        self.errors.push(envelope)
        payload = envelope.payload
        self.events.on_error(task_id, payload.code, payload.message, payload.recoverable)
        self.store.append_log(task_id or "", "error", payload.to_dict())
        return envelope

    # ═══════════════════════════════════════════════════════════════
    # Admission and execution
    # ═══════════════════════════════════════════════════════════════

    def _pump(self) -> None:
        """Fill free execution slots from the pending queue, highest score first."""
        while not self._closed.is_set():
            with self._admission_lock:
                with self._slots_lock:
                    if len(self._active) >= self.max_concurrent:
                        return
                task_id = self.scheduler.pop_next()
                if task_id is None:
                    self._queue_warned = False
                    return
                token = self._begin(task_id)
            if token is not None:
                self._dispatch(task_id, token)

    def _begin(self, task_id: str) -> int | None:
        try:
            entry = self.registry.entry(task_id)
        except TaskNotFound:
            return None
        with entry.lock:
            if entry.execution.state != S.IDLE:
                return None
            self.fsm.apply(entry, S.INITIALIZING, reason="admitted")
            self.fsm.apply(entry, S.RUNNING, reason="initialized")
            return self._arm(entry)

    def _arm(self, entry: TaskEntry) -> int | None:
        """Reserve a new run for the handler. Caller holds entry.lock."""
        execution = entry.execution
        if self.handler is None or execution.in_flight or execution.state != S.RUNNING:
            return None
        execution.run_token += 1
        execution.in_flight = True
        return execution.run_token

    def _resume(self, task_id: str) -> None:
        entry = self.registry.entry(task_id)
        with entry.lock:
            token = self._arm(entry)
        if token is not None:
            self._dispatch(task_id, token)

    def _dispatch(self, task_id: str, token: int) -> None:
        try:
            self.dispatcher.submit(self._run, task_id, token)
        except RuntimeError as e:
            self.escalate(task_id, InternalError(f"Dispatcher refused task {task_id}: {e}"), token)

    def _run(self, task_id: str, token: int) -> None:
        handler = self.handler
        try:
            entry = self.registry.entry(task_id)
        except TaskNotFound:
            return
        with entry.lock:
            if entry.execution.run_token != token or handler is None:
                return
            context = entry.context.copy()
            continuation = copy.deepcopy(entry.execution.suspension)

        control = ExecutionControl(self, task_id, token)
        try:
            outcome = handler.execute(context, control, continuation)
            self._apply_outcome(task_id, token, outcome)
        except StopRequested:
            self._settle_stop(task_id, token, "stopped at checkpoint")
        except Discarded:
            logger.info("Execution of %s discarded (run %d)", task_id, token, extra={"task_id": task_id})
        except MissingData as e:
            if e.required:
                self._apply_outcome(task_id, token, NeedData(e.required, e.urgency, e.message))
            else:
                self.escalate(task_id, e, token)
        except Exception as e:
            self.escalate(task_id, e, token)
        finally:
            self._pump()

    def _apply_outcome(self, task_id: str, token: int, outcome: Any) -> None:
        try:
            entry = self.registry.entry(task_id)
        except TaskNotFound:
            return
        failure: A2WError | None = None
        with entry.lock:
            execution = entry.execution
            if execution.run_token != token or execution.state != S.RUNNING:
                logger.info("Discarding stale outcome for %s", task_id, extra={"task_id": task_id})
                return
            execution.in_flight = False
            if execution.stop_requested and not isinstance(outcome, Completed):
                self.fsm.apply(entry, S.STOPPED, reason="stopped at checkpoint")
                return
            if isinstance(outcome, Completed):
                self._finish_locked(entry, outcome.artifact, outcome.telemetry)
                return
            if isinstance(outcome, NeedData):
                try:
                    self.exchange.raise_need(
                        task_id, outcome.required, outcome.urgency, outcome.description,
                    )
                except A2WError as e:
                    failure = e
            elif not isinstance(outcome, Delegate):
                failure = InternalError(
                    f"Handler returned an unsupported outcome: {type(outcome).__name__}"
                )

        if failure is not None:
            self.escalate(task_id, failure, token)
        elif isinstance(outcome, Delegate):
            try:
                self.delegate(task_id, outcome.delegate_to, outcome.reason)
            except ExternalDependencyError:
                logger.warning("Delegation of %s failed; continuing locally", task_id, extra={"task_id": task_id})
            except A2WError as e:
                self.escalate(task_id, e, token)

    def _finish_locked(
        self,
        entry: TaskEntry,
        artifact: Any,
        telemetry: dict[str, Any] | None,
    ) -> dict[str, Any]:
        execution = entry.execution
        self.fsm.check(entry, S.FINISHING)
        if telemetry:
            execution.telemetry.update(copy.deepcopy(telemetry))
        execution.in_flight = False
        execution.progress = 1.0
        self.fsm.apply(entry, S.FINISHING, reason="completed")
        report = {
            "task_id": entry.task_id,
            "handle": entry.handle,
            "agent_id": self.agent.agent_id,
            "artifact": copy.deepcopy(artifact),
            "progress": execution.progress,
            "telemetry": copy.deepcopy(execution.telemetry),
            "history": list(execution.history),
            "delegation_chain": entry.context.delegation_chain,
            "retry_of": entry.context.retry_of,
            "finished_at": time.time(),
        }
        self.store.save_report(entry.task_id, report)
        self.fsm.apply(entry, S.FINISHED, reason="report saved")
        return report

    def _set_progress(
        self,
        entry: TaskEntry,
        progress: Any,
        telemetry: dict[str, Any] | None,
    ) -> float:
        """Monotonic progress update. Caller holds entry.lock."""
        if isinstance(progress, bool) or not isinstance(progress, (int, float)) or not 0.0 <= progress <= 1.0:
            raise InvalidInput("progress must be a number between 0 and 1", task_id=entry.task_id)
        if telemetry is not None and not isinstance(telemetry, dict):
            raise InvalidInput("telemetry must be an object", task_id=entry.task_id)
        execution = entry.execution
        if execution.state != S.RUNNING:
            raise InvalidInput(
                f"Task {entry.task_id} is {execution.state.value}; progress is reported while running",
                http_status=409,
                task_id=entry.task_id,
            )
        if progress < execution.progress:
            raise InvalidInput(
                f"Progress may not decrease ({execution.progress} -> {progress})",
                http_status=409,
                task_id=entry.task_id,
            )
        execution.progress = float(progress)
        if telemetry:
            execution.telemetry.update(copy.deepcopy(telemetry))
        execution.updated_at = time.time()
        self._publish(StatusUpdate(
            task_id=entry.task_id,
            state=execution.state.value,
            progress=execution.progress,
            previous_state=execution.state.value,
            telemetry=copy.deepcopy(execution.telemetry),
            reason="progress",
        ))
        self.events.on_progress(entry.task_id, execution.progress)
        return execution.progress

    # ── ExecutionControl target ──────────────────────────────────

    def _checkpoint(self, task_id: str, token: int) -> None:
        try:
            entry = self.registry.entry(task_id)
        except TaskNotFound:
            raise Discarded(task_id)
        with entry.lock:
            if entry.execution.run_token != token:
                raise Discarded(task_id)
            if entry.execution.stop_requested:
                raise StopRequested(task_id)

    def _progress(self, task_id: str, progress: float, telemetry: dict[str, Any] | None, token: int) -> None:
        try:
            entry = self.registry.entry(task_id)
        except TaskNotFound:
            raise Discarded(task_id)
        with entry.lock:
            if entry.execution.run_token != token:
                raise Discarded(task_id)
            self._set_progress(entry, progress, telemetry)

    # ── Graceful stop ────────────────────────────────────────────

    def _settle_stop(self, task_id: str, token: int, reason: str) -> None:
        try:
            entry = self.registry.entry(task_id)
        except TaskNotFound:
            return
        with entry.lock:
            execution = entry.execution
            if execution.run_token != token or execution.state in ENDED_STATES:
                return
            self.fsm.apply(entry, S.STOPPED, reason=reason)

    def _arm_grace_timer(self, task_id: str, token: int) -> None:
        if self.stop_grace_seconds <= 0:
            return
        timer = threading.Timer(
            self.stop_grace_seconds, self._grace_expired, args=(task_id, token),
        )
        timer.daemon = True
        with self._timers_lock:
            previous = self._timers.pop(task_id, None)
            self._timers[task_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _grace_expired(self, task_id: str, token: int) -> None:
        with self._timers_lock:
            self._timers.pop(task_id, None)
        logger.warning("Task %s did not reach a checkpoint in %.1fs; stopping", task_id,
                       self.stop_grace_seconds, extra={"task_id": task_id})
        self._settle_stop(task_id, token, "stop grace period expired")
        self._pump()

    def _cancel_grace_timer(self, task_id: str) -> None:
        with self._timers_lock:
            timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()

    # ═══════════════════════════════════════════════════════════════
    # Observation
    # ═══════════════════════════════════════════════════════════════

    def _on_transition(self, entry: TaskEntry, source: TaskState, target: TaskState, reason: str) -> None:
        """FSM listener. Runs under the entry lock."""
        task_id = entry.task_id
        execution = entry.execution
        with self._slots_lock:
            if target in SLOT_STATES:
                self._active.add(task_id)
            else:
                self._active.discard(task_id)

        if source == S.RUNNING and target != S.FINISHING:
            # Leaving running hands execution elsewhere; the current run is stale.
            execution.run_token += 1
            execution.in_flight = False
        if target in ENDED_STATES:
            execution.in_flight = False
            execution.stop_requested = False
            self.scheduler.discard(task_id)
            self._cancel_grace_timer(task_id)

        self._publish(StatusUpdate(
            task_id=task_id,
            state=target.value,
            progress=execution.progress,
            previous_state=source.value,
            telemetry=copy.deepcopy(execution.telemetry),
            reason=reason,
        ))
        self.store.append_log(task_id, "transition", {
            "from": source.value,
            "to": target.value,
            "reason": reason,
            "progress": execution.progress,
        })
        self.events.on_transition(task_id, source.value, target.value, reason)

    def _publish(self, payload: Any) -> None:
        self.broadcaster.publish(wrap(self.agent.agent_id, payload, self.version))

    def _publish_need(self, need: NeedDataPayload) -> None:
        self._publish(need)
        self.store.append_log(need.task_id, "need_raised", {
            "required": need.required,
            "urgency": need.urgency,
            "description": need.description,
        })
        self.events.on_need(need.task_id, need.required, need.urgency)

    def _publish_event(self, kind: EventKind, task_id: str | None, data: dict[str, Any]) -> None:
        self._publish(EventPayload(event=kind.value, task_id=task_id, data=data))
        if kind == EventKind.DELEGATION_STARTED:
            self.events.on_delegation_start(task_id, data["delegate_to"], data.get("delegation_chain", []))
            self.store.append_log(task_id, kind.value, data)
        elif kind == EventKind.DELEGATION_FINISHED:
            self.events.on_delegation_finish(task_id, data["delegate_to"], data["outcome"])
            self.store.append_log(task_id, kind.value, data)
        elif kind == EventKind.TASK_RETRIED:
            self.store.append_log(task_id, kind.value, data)

    def _on_overflow(self, sub: Subscription) -> None:
        logger.warning("Subscriber on %s overflowed its buffer of %d", sub.channel.value, sub.capacity)
        self._publish_event(EventKind.HEALTH_WARNING, None, {
            "reason": "subscriber_overflow",
            "channel": sub.channel.value,
            "capacity": sub.capacity,
        })

    def _check_queue_depth(self) -> None:
        depth = self.scheduler.depth
        if depth < self.queue_warning_depth or self._queue_warned:
            return
        self._queue_warned = True
        logger.warning("Pending queue depth %d reached threshold %d", depth, self.queue_warning_depth)
        self._publish_event(EventKind.HEALTH_WARNING, None, {
            "reason": "queue_depth",
            "depth": depth,
            "threshold": self.queue_warning_depth,
        })
