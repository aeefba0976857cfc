"""
Task scheduler: a fixed registry of named periodic tasks.

Each task has its own timer thread, so a slow or failing task never delays the
others. Executions are single-flight per task: a ``run_now`` that arrives while
the same task is running waits for that execution and returns its record; a
timer tick that finds the task running is skipped.

Enabled flags persist in the document store (``system/scheduler.json``); run
history is in memory only.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from autopilot.errors import NotFoundError
from autopilot.log import get_logger
from autopilot.models import Clock, iso, utc_now
from autopilot.storage import SCHEDULER_STATE_KEY, DocumentStore

log = get_logger(__name__)

TaskHandler = Callable[[threading.Event], "dict[str, Any] | None"]


class TaskResult(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


@dataclass
class TaskSpec:
    name: str
    handler: TaskHandler
    interval_seconds: float
    enabled: bool = True
    description: str = ""


@dataclass
class _TaskState:
    spec: TaskSpec
    enabled: bool
    last_run_at: datetime | None = None
    last_result: TaskResult | None = None
    last_error: str | None = None
    last_duration: float | None = None
    last_detail: dict[str, Any] = field(default_factory=dict)
    next_run_at: datetime | None = None
    in_flight: Future | None = None
    runs: int = 0


class Scheduler:
    def __init__(self, store: DocumentStore, specs: list[TaskSpec], clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._tasks: dict[str, _TaskState] = {}
        persisted = (store.get(SCHEDULER_STATE_KEY) or {}).get("tasks", {})
        for spec in specs:
            if spec.name in self._tasks:
                raise ValueError(f"Duplicate task name {spec.name!r}")
            saved = persisted.get(spec.name, {})
            self._tasks[spec.name] = _TaskState(spec=spec, enabled=saved.get("enabled", spec.enabled))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        now = self.clock()
        for state in self._tasks.values():
            state.next_run_at = now + timedelta(seconds=state.spec.interval_seconds)
            thread = threading.Thread(
                target=self._loop, args=(state,), name=f"task-{state.spec.name}", daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        log.info("Scheduler started with %d tasks", len(self._tasks))

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the timers and wait for running executions to finish."""
        self._stop.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                log.warning("Task thread %s did not stop within %gs", thread.name, timeout)
        self._threads = []
        log.info("Scheduler stopped")

    def __enter__(self) -> Scheduler:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until ``stop`` is called; True if it was."""
        return self._stop.wait(timeout)

    def _loop(self, state: _TaskState) -> None:
        interval = state.spec.interval_seconds
        while not self._stop.wait(interval):
            with self._lock:
                state.next_run_at = self.clock() + timedelta(seconds=interval)
                enabled = state.enabled
            if not enabled:
                continue
            future, owner = self._claim(state)
            if not owner:
                log.info("Task %s still running, skipping timer tick", state.spec.name)
                continue
            self._execute(state, future, trigger="timer")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _state(self, name: str) -> _TaskState:
        state = self._tasks.get(name)
        if state is None:
            raise NotFoundError(f"Unknown task {name!r} (known: {', '.join(self._tasks)})")
        return state

    def _claim(self, state: _TaskState) -> tuple[Future, bool]:
        """Return the in-flight future, or a new one owned by the caller."""
        with self._lock:
            if state.in_flight is not None and not state.in_flight.done():
                return state.in_flight, False
            state.in_flight = Future()
            return state.in_flight, True

    def run_now(self, name: str, timeout: float | None = None) -> dict[str, Any]:
        """Run *name* immediately, even when disabled, and return the run record.

        If the task is already running, waits for that execution instead of
        starting a second one.
        """
        state = self._state(name)
        future, owner = self._claim(state)
        if not owner:
            log.info("Task %s already running, joining in-flight execution", name)
            return future.result(timeout=timeout)
        return self._execute(state, future, trigger="manual")

    def _execute(self, state: _TaskState, future: Future, *, trigger: str) -> dict[str, Any]:
        name = state.spec.name
        started_at = self.clock()
        t0 = time.monotonic()
        log.info("Task %s started (%s)", name, trigger)
        detail: dict[str, Any] = {}
        error: str | None = None
        try:
            detail = state.spec.handler(self._stop) or {}
            result = TaskResult.PARTIAL if detail.get("errors") else TaskResult.SUCCESS
        except Exception as exc:
            result = TaskResult.ERROR
            error = str(exc) or exc.__class__.__name__
            log.exception("Task %s failed", name)
        duration = round(time.monotonic() - t0, 3)

        record = {
            "name": name,
            "trigger": trigger,
            "result": result.value,
            "started_at": iso(started_at),
            "duration_seconds": duration,
            "error": error,
            "detail": detail,
        }
        with self._lock:
            state.last_run_at = started_at
            state.last_result = result
            state.last_error = error
            state.last_duration = duration
            state.last_detail = detail
            state.runs += 1
            state.in_flight = None
        future.set_result(record)
        log.info("Task %s finished: %s in %.1fs", name, result.value, duration)
        return record

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def enable(self, name: str) -> dict[str, Any]:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> dict[str, Any]:
        """Stop the timer from firing; a running execution is not interrupted."""
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> dict[str, Any]:
        state = self._state(name)
        with self._lock:
            state.enabled = enabled

        def persist(current):
            doc = current or {"tasks": {}}
            doc.setdefault("tasks", {})[name] = {"enabled": enabled}
            return doc

        self.store.update(SCHEDULER_STATE_KEY, persist)
        log.info("Task %s %s", name, "enabled" if enabled else "disabled")
        return self._describe(state)

    def _describe(self, state: _TaskState) -> dict[str, Any]:
        with self._lock:
            return {
                "name": state.spec.name,
                "description": state.spec.description,
                "enabled": state.enabled,
                "interval_seconds": state.spec.interval_seconds,
                "last_run_at": iso(state.last_run_at),
                "last_result": state.last_result.value if state.last_result else None,
                "last_error": state.last_error,
                "last_duration_seconds": state.last_duration,
                "next_run_at": iso(state.next_run_at) if state.enabled and self.running else None,
                "running": state.in_flight is not None and not state.in_flight.done(),
                "runs": state.runs,
            }

    def get_status(self) -> list[dict[str, Any]]:
        return [self._describe(state) for state in self._tasks.values()]

    def task_names(self) -> list[str]:
        return list(self._tasks)
