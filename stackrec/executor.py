from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import Any, Callable, Iterable, Mapping, TypeVar

from .db import ResourceRow, StateStore
from .docker_ops import RuntimeAdapter
from .errors import Cancelled, NotFound, Unsupported
from .graph import Kind, Output, Resource, bind, canonical
from .reconciler import Action, ActionType
from .retry import call_with_retries
from .settings import Settings, settings as default_settings

T = TypeVar("T")


class Status(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    REPLACED = "replaced"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    BLOCKED = "blocked"


SUCCESS = {Status.CREATED, Status.UPDATED, Status.REPLACED, Status.DELETED, Status.UNCHANGED}


@dataclass
class Outcome:
    name: str
    status: Status
    action: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "action": self.action, "error": self.error}


@dataclass
class ApplyReport:
    stack: str
    outcomes: dict[str, Outcome] = field(default_factory=dict)
    cancelled: bool = False

    def _names(self, statuses: set[Status]) -> list[str]:
        return [o.name for o in self.outcomes.values() if o.status in statuses]

    @property
    def succeeded(self) -> list[str]:
        return self._names(SUCCESS - {Status.UNCHANGED})

    @property
    def failed(self) -> list[str]:
        return self._names({Status.FAILED})

    @property
    def blocked(self) -> list[str]:
        return self._names({Status.BLOCKED})

    @property
    def ok(self) -> bool:
        return not self.failed and not self.blocked

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def status_of(self, name: str) -> Status | None:
        o = self.outcomes.get(name)
        return o.status if o else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack": self.stack,
            "ok": self.ok,
            "cancelled": self.cancelled,
            "resources": [o.to_dict() for o in self.outcomes.values()],
        }


def _forward(a: Action) -> bool:
    return a.type in (ActionType.CREATE, ActionType.UPDATE)


def prerequisites(actions: list[Action]) -> tuple[list[set[int]], list[set[int]]]:
    """For each action, the earlier actions it must wait for.

    Returns (blocking, ordering). A failed or blocked entry in ``blocking``
    blocks the action; ``ordering`` entries only delay it.
    """
    blocking: list[set[int]] = [set() for _ in actions]
    ordering: list[set[int]] = [set() for _ in actions]
    for i, a in enumerate(actions):
        for j in range(i):
            b = actions[j]
            if _forward(a):
                deps = a.resource.deps if a.resource else []
                if b.name == a.name or (_forward(b) and b.name in deps):
                    blocking[i].add(j)
            else:
                if b.type == ActionType.DELETE and b.observed and a.name in b.observed.deps:
                    blocking[i].add(j)
                elif not a.replace and _forward(b):
                    ordering[i].add(j)
    return blocking, ordering


class Executor:
    """Applies an ordered action list against the runtime.

    Independent branches run concurrently (bounded by ``max_workers``). A
    failure fails its resource and blocks everything waiting on it; nothing is
    rolled back.
    """

    def __init__(
        self,
        adapters: Mapping[Kind, RuntimeAdapter],
        store: StateStore,
        stack: str,
        cfg: Settings | None = None,
        cancel: Event | None = None,
    ) -> None:
        self.adapters = adapters
        self.store = store
        self.stack = stack
        self.cfg = cfg or default_settings
        self.cancel = cancel or Event()
        self.outputs: dict[str, Output] = {}
        self._deadline: float | None = None

    def apply(
        self,
        actions: list[Action],
        desired: Iterable[Resource] = (),
        observed: Iterable[ResourceRow] = (),
    ) -> ApplyReport:
        desired = list(desired)
        if self.cfg.deadline_s > 0:
            self._deadline = time.monotonic() + self.cfg.deadline_s
        self._seed_outputs(actions, desired, observed)

        blocking, ordering = prerequisites(actions)
        results: dict[int, tuple[Status, str | None]] = {}
        pending = set(range(len(actions)))
        running: dict[Future, int] = {}

        with ThreadPoolExecutor(max_workers=max(1, self.cfg.max_workers), thread_name_prefix="stackrec") as pool:
            while pending or running:
                if self._should_stop():
                    for i in sorted(pending):
                        results[i] = (Status.BLOCKED, "cancelled")
                    pending.clear()

                changed = True
                while changed:
                    changed = False
                    for i in sorted(pending):
                        bad = [j for j in blocking[i] if j in results and results[j][0] not in SUCCESS]
                        if bad:
                            results[i] = (Status.BLOCKED, f"waiting on {actions[bad[0]].name}, which did not complete")
                            pending.discard(i)
                            changed = True

                for i in sorted(pending):
                    if all(j in results for j in blocking[i] | ordering[i]):
                        pending.discard(i)
                        running[pool.submit(self._run, actions[i])] = i

                if not running:
                    # Nothing in flight and nothing ready: prerequisites can never finish.
                    for i in sorted(pending):
                        results[i] = (Status.BLOCKED, "prerequisites never completed")
                    pending.clear()
                    break

                done, _ = wait(list(running), timeout=0.1, return_when=FIRST_COMPLETED)
                for fut in done:
                    results[running.pop(fut)] = fut.result()

        report = ApplyReport(stack=self.stack, cancelled=self.cancel.is_set())
        for i, a in enumerate(actions):
            status, error = results[i]
            prev = report.outcomes.get(a.name)
            if prev is not None and prev.status not in SUCCESS:
                continue
            if prev is not None and status is Status.CREATED and a.replace:
                status = Status.REPLACED
            report.outcomes[a.name] = Outcome(a.name, status, a.describe(), error)
        for r in desired:
            report.outcomes.setdefault(r.name, Outcome(r.name, Status.UNCHANGED))
        return report

    def _seed_outputs(self, actions: list[Action], desired: list[Resource], observed: Iterable[ResourceRow]) -> None:
        acted = {a.name for a in actions if _forward(a)}
        rows = {row.name: row for row in observed}
        self.outputs = {r.name: Output(r.name) for r in desired}
        for r in desired:
            row = rows.get(r.name)
            if r.name not in acted and row is not None:
                self.outputs[r.name].set(row.outputs)

    def _should_stop(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel.set()
        return self.cancel.is_set()

    def _checkpoint(self, what: str) -> None:
        if self._should_stop():
            raise Cancelled(f"Cancelled before {what}.")

    def _call(self, fn: Callable[[], T], name: str) -> T:
        def _log_retry(attempt: int, e: Exception) -> None:
            self.store.log_event("WARN", f"Runtime unavailable (attempt {attempt}): {e}", self.stack, name)

        return call_with_retries(
            fn,
            attempts=self.cfg.retry_attempts,
            backoff_s=self.cfg.retry_backoff_s,
            cancel=self.cancel,
            on_retry=_log_retry,
        )

    def _run(self, action: Action) -> tuple[Status, str | None]:
        try:
            if action.type == ActionType.DELETE:
                return self._delete(action), None
            if action.type == ActionType.CREATE:
                return self._create(action), None
            return self._update(action), None
        except Cancelled as e:
            self.store.log_event("WARN", str(e), self.stack, action.name)
            return Status.BLOCKED, str(e)
        except Exception as e:
            msg = f"{type(e).__name__}: {e}"
            self.store.log_event("ERROR", f"{action.describe()} failed: {msg}", self.stack, action.name)
            return Status.FAILED, msg

    def _bound_props(self, r: Resource) -> dict[str, Any]:
        return bind(r.props, self.outputs, timeout=self.cfg.output_timeout_s)

    def _create(self, action: Action) -> Status:
        r = action.resource
        assert r is not None
        props = self._bound_props(r)
        self._checkpoint(f"creating {r.name}")
        adapter = self.adapters[r.kind]
        outputs = self._call(lambda: adapter.create(r.name, props, r.files), r.name)
        self._commit(r, outputs)
        self.store.log_event("INFO", f"Created {r.kind.value} {r.name} ({str(outputs.get('id', ''))[:12]})", self.stack, r.name)
        return Status.CREATED

    def _update(self, action: Action) -> Status:
        r, row = action.resource, action.observed
        assert r is not None and row is not None
        props = self._bound_props(r)
        self._checkpoint(f"updating {r.name}")
        adapter = self.adapters[r.kind]
        status = Status.UPDATED
        try:
            outputs = self._call(lambda: adapter.update(row.resource_id, props, action.diff, r.files), r.name)
        except NotFound:
            self.store.log_event("WARN", f"{r.name} vanished before update; recreating", self.stack, r.name)
            self.store.delete_resource(self.stack, r.name)
            self._checkpoint(f"recreating {r.name}")
            outputs = self._call(lambda: adapter.create(r.name, props, r.files), r.name)
            status = Status.CREATED
        except Unsupported as e:
            self.store.log_event("INFO", f"Replacing {r.name}: {e}", self.stack, r.name)
            self._call(lambda: adapter.delete(row.resource_id, row.props), r.name)
            self.store.delete_resource(self.stack, r.name)
            self._checkpoint(f"recreating {r.name}")
            outputs = self._call(lambda: adapter.create(r.name, props, r.files), r.name)
            status = Status.REPLACED
        self._commit(r, outputs)
        self.store.log_event("INFO", f"{status.value.capitalize()} {r.kind.value} {r.name}", self.stack, r.name)
        return status

    def _delete(self, action: Action) -> Status:
        row = action.observed
        assert row is not None
        self._checkpoint(f"deleting {row.name}")
        adapter = self.adapters[action.kind]
        existed = self._call(lambda: adapter.delete(row.resource_id, row.props), row.name)
        self.store.delete_resource(self.stack, row.name)
        note = "" if existed else " (already gone)"
        self.store.log_event("INFO", f"Deleted {row.kind} {row.name}{note}", self.stack, row.name)
        return Status.DELETED

    def _commit(self, r: Resource, outputs: dict[str, Any]) -> None:
        self.store.save_resource(
            ResourceRow(
                stack=self.stack,
                name=r.name,
                kind=r.kind.value,
                resource_id=str(outputs.get("id", "")),
                props=canonical(r.props),
                files=r.file_digests(),
                outputs=outputs,
                deps=list(r.deps),
                rank=r.rank,
                seq=r.seq,
            )
        )
        out = self.outputs.get(r.name)
        if out is not None:
            out.set(outputs)
