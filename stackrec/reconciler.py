from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from .db import ResourceRow, StateStore
from .docker_ops import RuntimeAdapter
from .errors import NotFound
from .graph import Kind, Resource, canonical
from .retry import call_with_retries
from .settings import Settings, settings as default_settings


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Action:
    type: ActionType
    name: str
    kind: Kind
    rank: int
    diff: dict[str, Any] = field(default_factory=dict)
    resource: Resource | None = None  # desired form; None for deletes
    observed: ResourceRow | None = None
    # Delete half of a replacement, or Create following one.
    replace: bool = False

    def describe(self) -> str:
        label = self.type.value
        if self.replace:
            label = f"replace ({label})"
        if self.diff:
            return f"{label} {self.name} [{', '.join(sorted(self.diff))}]"
        return f"{label} {self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "name": self.name,
            "kind": self.kind.value,
            "rank": self.rank,
            "replace": self.replace,
            "diff": {k: {"old": old, "new": new} for k, (old, new) in self.diff.items()},
        }


def diff_resource(resource: Resource, observed: ResourceRow) -> dict[str, tuple[Any, Any]]:
    """Changed keys between the declared and the recorded form of a resource."""
    desired = canonical(resource.props)
    recorded = observed.props
    changes: dict[str, tuple[Any, Any]] = {}
    for key in sorted(set(desired) | set(recorded)):
        if desired.get(key) != recorded.get(key):
            changes[key] = (recorded.get(key), desired.get(key))
    if resource.kind.value != observed.kind:
        changes["kind"] = (observed.kind, resource.kind.value)
    files = resource.file_digests()
    if files != observed.files:
        changes["files"] = (observed.files, files)
    return changes


def plan(
    ordered: list[Resource],
    observed: Iterable[ResourceRow],
    adapters: Mapping[Kind, RuntimeAdapter],
) -> list[Action]:
    """Compute the ordered actions that move observed state to ``ordered``.

    Order: deletes for replacements (dependents first), then creates and
    updates in dependency order, then deletes of resources no longer
    declared (dependents first).
    """
    by_name = {row.name: row for row in observed}
    desired_names = {r.name for r in ordered}

    replace: set[str] = set()
    updates: dict[str, dict[str, tuple[Any, Any]]] = {}
    for r in ordered:
        row = by_name.get(r.name)
        if row is None:
            continue
        changes = diff_resource(r, row)
        inherited = [d for d in r.deps if d in replace]
        if inherited:
            # A replaced dependency hands out new ids, so the consumer is rebuilt too.
            replace.add(r.name)
            updates[r.name] = changes or {"replaced_dependency": (None, inherited)}
        elif changes:
            updates[r.name] = changes
            if "kind" in changes or not adapters[r.kind].supports_update(changes):
                replace.add(r.name)

    replace_deletes: list[Action] = []
    forward: list[Action] = []
    for r in ordered:
        row = by_name.get(r.name)
        if row is None:
            forward.append(Action(ActionType.CREATE, r.name, r.kind, r.rank, resource=r))
        elif r.name in replace:
            replace_deletes.append(
                Action(ActionType.DELETE, r.name, Kind(row.kind), r.rank, updates[r.name], observed=row, replace=True)
            )
            forward.append(Action(ActionType.CREATE, r.name, r.kind, r.rank, updates[r.name], resource=r, replace=True))
        elif r.name in updates:
            forward.append(Action(ActionType.UPDATE, r.name, r.kind, r.rank, updates[r.name], resource=r, observed=row))

    orphans = [row for row in by_name.values() if row.name not in desired_names]

    forward.sort(key=lambda a: (a.rank, a.resource.seq if a.resource else 0))
    replace_deletes.sort(key=lambda a: (-a.rank, -(a.resource.seq if a.resource else a.observed.seq)))
    return replace_deletes + forward + _deletes(orphans)


def plan_destroy(observed: Iterable[ResourceRow]) -> list[Action]:
    return _deletes(list(observed))


def _deletes(rows: list[ResourceRow]) -> list[Action]:
    rows = sorted(rows, key=lambda row: (-row.rank, -row.seq))
    return [Action(ActionType.DELETE, row.name, Kind(row.kind), row.rank, observed=row) for row in rows]


def refresh(
    stack: str,
    store: StateStore,
    adapters: Mapping[Kind, RuntimeAdapter],
    cfg: Settings | None = None,
    forget: bool = True,
) -> list[ResourceRow]:
    """Re-read every recorded resource and return the ones still present.

    With ``forget`` the records of resources deleted out-of-band are dropped
    from the store as well.
    """
    cfg = cfg or default_settings
    alive: list[ResourceRow] = []
    for row in store.list_resources(stack):
        adapter = adapters[Kind(row.kind)]
        try:
            call_with_retries(
                lambda: adapter.read(row.resource_id),
                attempts=cfg.retry_attempts,
                backoff_s=cfg.retry_backoff_s,
            )
        except NotFound:
            if forget:
                store.delete_resource(stack, row.name)
            store.log_event("WARN", f"{row.kind} {row.resource_id[:12]} vanished; it will be recreated", stack, row.name)
            continue
        adapter.remember_files(row.resource_id, row.files)
        alive.append(row)
    return alive
