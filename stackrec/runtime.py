from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any

from .db import utc_now


class RunInProgress(Exception):
    pass


@dataclass
class RunStatus:
    stack: str
    operation: str  # plan|apply|destroy
    state: str  # running|done|failed
    message: str = ""
    report: dict[str, Any] | None = None
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory bookkeeping of runs: at most one run per stack at a time."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.active: dict[str, RunStatus] = {}
        self.cancel_events: dict[str, Event] = {}
        self.history: dict[str, RunStatus] = {}  # stack -> last finished run

    def begin_run(self, stack: str, operation: str) -> Event:
        """Register a run and return its cancellation event."""
        with self.lock:
            if stack in self.active:
                cur = self.active[stack]
                raise RunInProgress(f"A {cur.operation} is already running for stack '{stack}'.")
            self.active[stack] = RunStatus(stack=stack, operation=operation, state="running")
            ev = Event()
            self.cancel_events[stack] = ev
            return ev

    def end_run(self, stack: str, state: str, message: str = "", report: dict[str, Any] | None = None) -> RunStatus | None:
        with self.lock:
            st = self.active.pop(stack, None)
            self.cancel_events.pop(stack, None)
            if st is None:
                return None
            st.state = state
            st.message = message
            st.report = report
            st.updated_at = utc_now()
            self.history[stack] = st
            return st

    def cancel(self, stack: str) -> bool:
        with self.lock:
            ev = self.cancel_events.get(stack)
            if ev is None:
                return False
            ev.set()
            return True

    def get_run(self, stack: str) -> RunStatus | None:
        with self.lock:
            return self.active.get(stack) or self.history.get(stack)

    def list_runs(self) -> list[RunStatus]:
        with self.lock:
            return list(self.active.values()) + [h for s, h in self.history.items() if s not in self.active]
