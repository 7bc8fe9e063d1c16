from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from threading import Event, Lock
from typing import Any

from .errors import CycleError, DuplicateNameError, OutputUnavailable, UnknownReferenceError


class Kind(str, Enum):
    NETWORK = "network"
    IMAGE = "image"
    CONTAINER = "container"


@dataclass(frozen=True)
class Ref:
    """Reference to an output of another resource, e.g. ``Ref("net", "name")``."""

    resource: str
    output: str = "id"

    @classmethod
    def parse(cls, text: str) -> Ref:
        resource, sep, output = text.partition(".")
        if not resource or (sep and not output):
            raise ValueError(f"Invalid reference '{text}'. Use <resource>.<output>.")
        return cls(resource, output or "id")

    def __str__(self) -> str:
        return f"{self.resource}.{self.output}"


@dataclass(frozen=True)
class FileUpload:
    path: str
    content: str

    @property
    def digest(self) -> str:
        return content_digest(self.content)


def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class Resource:
    name: str
    kind: Kind
    props: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    files: list[FileUpload] = field(default_factory=list)
    # Filled in by StackGraph.resolve_references().
    deps: list[str] = field(default_factory=list)
    rank: int = 0
    seq: int = 0

    def file_digests(self) -> dict[str, str]:
        return {f.path: f.digest for f in self.files}


@dataclass(frozen=True)
class Component:
    """A named group of resources, e.g. one web app stack."""

    name: str
    children: tuple[str, ...]


class Output:
    """Outputs of one resource. Written once, read by consumers after that."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        self._values: dict[str, Any] = {}
        self._ready = Event()
        self._lock = Lock()

    def set(self, values: dict[str, Any]) -> None:
        with self._lock:
            if self._ready.is_set():
                raise RuntimeError(f"Outputs of '{self.resource}' are already set.")
            self._values = dict(values)
            self._ready.set()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def get(self, key: str, timeout: float | None = None) -> Any:
        if not self._ready.wait(timeout):
            raise OutputUnavailable(f"Output '{self.resource}.{key}' was not produced in time.")
        if key not in self._values:
            raise OutputUnavailable(f"Resource '{self.resource}' has no output '{key}'.")
        return self._values[key]

    def values(self) -> dict[str, Any]:
        return dict(self._values)


def iter_refs(value: Any):
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_refs(v)


def bind(value: Any, outputs: dict[str, Output], timeout: float | None = None) -> Any:
    """Replace every Ref in ``value`` with the realized output, waiting for it if needed."""
    if isinstance(value, Ref):
        out = outputs.get(value.resource)
        if out is None:
            raise OutputUnavailable(f"No outputs registered for '{value.resource}'.")
        return out.get(value.output, timeout)
    if isinstance(value, dict):
        return {k: bind(v, outputs, timeout) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [bind(v, outputs, timeout) for v in value]
    return value


def canonical(value: Any) -> Any:
    """JSON-safe form of a property bag; refs become ``{"$ref": "a.b"}``."""
    if isinstance(value, Ref):
        return {"$ref": str(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonical(v) for v in value]
    return value


class StackGraph:
    """Desired state of one stack: resources keyed by unique name."""

    def __init__(self, stack: str) -> None:
        self.stack = stack
        self._resources: dict[str, Resource] = {}

    def add_resource(self, resource: Resource) -> Resource:
        if resource.name in self._resources:
            raise DuplicateNameError(resource.name)
        resource.seq = len(self._resources)
        self._resources[resource.name] = resource
        return resource

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, name: str) -> Resource:
        return self._resources[name]

    def resources(self) -> list[Resource]:
        return list(self._resources.values())

    def dependents(self, name: str) -> set[str]:
        """All resources that transitively depend on ``name``."""
        out: set[str] = set()
        todo = [name]
        while todo:
            cur = todo.pop()
            for r in self._resources.values():
                if cur in r.deps and r.name not in out:
                    out.add(r.name)
                    todo.append(r.name)
        return out

    def resolve_references(self) -> list[Resource]:
        """Compute dependencies from refs and return resources in dependency order.

        Ties are broken by declaration order, so the result is deterministic.
        """
        for r in self._resources.values():
            deps: list[str] = []
            targets = list(r.depends_on) + [ref.resource for ref in iter_refs(r.props)]
            for target in targets:
                if target not in self._resources:
                    raise UnknownReferenceError(r.name, target)
                if target not in deps:
                    deps.append(target)
            r.deps = deps

        ordered: list[Resource] = []
        done: set[str] = set()
        pending = list(self._resources.values())
        while pending:
            ready = next((r for r in pending if all(d in done for d in r.deps)), None)
            if ready is None:
                raise CycleError(self._find_cycle({r.name for r in pending}))
            ready.rank = max((self._resources[d].rank + 1 for d in ready.deps), default=0)
            ordered.append(ready)
            done.add(ready.name)
            pending.remove(ready)
        return ordered

    def _find_cycle(self, names: set[str]) -> list[str]:
        state: dict[str, int] = {}  # 1 = on stack, 2 = finished
        path: list[str] = []

        def visit(name: str) -> list[str] | None:
            state[name] = 1
            path.append(name)
            for d in self._resources[name].deps:
                if d not in names:
                    continue
                if state.get(d) == 1:
                    return path[path.index(d):] + [d]
                if d not in state:
                    found = visit(d)
                    if found:
                        return found
            path.pop()
            state[name] = 2
            return None

        for name in self._resources:
            if name in names and name not in state:
                found = visit(name)
                if found:
                    return found
        return sorted(names)
