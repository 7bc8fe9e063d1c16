from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from threading import Event
from typing import Any, Mapping

from . import webapp
from .db import ResourceRow, StateStore
from .declaration import Declaration, StackConfig, load_declaration, resolve_outputs
from .docker_ops import RuntimeAdapter, default_adapters
from .executor import ApplyReport, Executor
from .graph import Kind, Resource
from .reconciler import Action, plan, plan_destroy, refresh
from .settings import Settings, settings as default_settings


@dataclass
class PlanResult:
    stack: str
    actions: list[Action]
    ordered: list[Resource] = field(default_factory=list)
    observed: list[ResourceRow] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.actions

    def to_dict(self) -> dict[str, Any]:
        return {"stack": self.stack, "changes": len(self.actions), "actions": [a.to_dict() for a in self.actions]}


def load_stack(stack: str, file: str | Path | None = None, base_port: int | None = None) -> Declaration:
    """Declaration from a stack file, or the built-in web app stack."""
    if file:
        return load_declaration(file, stack=stack, base_port=base_port)
    return webapp.build(StackConfig.for_stack(stack, base_port))


def open_store(cfg: Settings | None = None, path: str | None = None) -> StateStore:
    cfg = cfg or default_settings
    return StateStore(path or cfg.state_path)


def plan_stack(
    decl: Declaration,
    store: StateStore,
    adapters: Mapping[Kind, RuntimeAdapter] | None = None,
    cfg: Settings | None = None,
    forget: bool = False,
) -> PlanResult:
    # Structural errors surface here, before the runtime is touched.
    ordered = decl.ordered()
    adapters = adapters or default_adapters(decl.stack)
    observed = refresh(decl.stack, store, adapters, cfg, forget=forget)
    return PlanResult(decl.stack, plan(ordered, observed, adapters), ordered, observed)


def apply_stack(
    decl: Declaration,
    store: StateStore,
    adapters: Mapping[Kind, RuntimeAdapter] | None = None,
    cfg: Settings | None = None,
    cancel: Event | None = None,
) -> ApplyReport:
    adapters = adapters or default_adapters(decl.stack)
    p = plan_stack(decl, store, adapters, cfg, forget=True)
    store.log_event("INFO", f"Applying {len(p.actions)} action(s)", decl.stack)
    report = Executor(adapters, store, decl.stack, cfg, cancel).apply(p.actions, p.ordered, p.observed)
    _log_summary(store, report)
    return report


def destroy_stack(
    stack: str,
    store: StateStore,
    adapters: Mapping[Kind, RuntimeAdapter] | None = None,
    cfg: Settings | None = None,
    cancel: Event | None = None,
) -> ApplyReport:
    adapters = adapters or default_adapters(stack)
    observed = refresh(stack, store, adapters, cfg, forget=True)
    actions = plan_destroy(observed)
    store.log_event("INFO", f"Destroying {len(actions)} resource(s)", stack)
    report = Executor(adapters, store, stack, cfg, cancel).apply(actions, (), observed)
    _log_summary(store, report)
    return report


def stack_outputs(decl: Declaration, store: StateStore) -> dict[str, Any]:
    return resolve_outputs(decl, store)


def _log_summary(store: StateStore, report: ApplyReport) -> None:
    level = "INFO" if report.ok else "ERROR"
    store.log_event(
        level,
        f"Run finished: {len(report.succeeded)} changed, {len(report.failed)} failed, {len(report.blocked)} blocked"
        + (" (cancelled)" if report.cancelled else ""),
        report.stack,
    )
