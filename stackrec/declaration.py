from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .db import StateStore
from .errors import DeclarationError, UnknownReferenceError
from .graph import Component, FileUpload, Kind, Ref, Resource, StackGraph, iter_refs

STACK_NAME_RE = r"^[a-z][a-z0-9\-]{0,62}$"
RESOURCE_NAME_RE = r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,127}$"

_WHOLE_PLACEHOLDER = re.compile(r"^\$\{(\w+)\}$")


@dataclass(frozen=True)
class StackConfig:
    """Per-stack inputs, passed once when the graph is built."""

    name: str
    base_port: int

    @classmethod
    def for_stack(cls, name: str, base_port: int | None = None) -> StackConfig:
        if base_port is None:
            base_port = 8080 if name == "prod" else 8081
        return cls(name=name, base_port=int(base_port))

    @property
    def secondary_port(self) -> int:
        return self.base_port + 1000

    @property
    def redis_port(self) -> int:
        """Exported redis port, chosen by stack name alone.

        It does not follow ``base_port`` and differs from the port the redis
        container publishes on (``secondary_port``).
        """
        return 7080 if self.name == "prod" else 7081

    def substitutions(self) -> dict[str, Any]:
        return {
            "stack": self.name,
            "port": self.base_port,
            "secondary_port": self.secondary_port,
            "redis_port": self.redis_port,
        }


@dataclass
class Declaration:
    config: StackConfig
    graph: StackGraph
    outputs: dict[str, Any] = field(default_factory=dict)
    components: list[Component] = field(default_factory=list)

    @property
    def stack(self) -> str:
        return self.config.name

    def ordered(self) -> list[Resource]:
        """Resolve references (raising structural errors) and return dependency order."""
        ordered = self.graph.resolve_references()
        for ref in iter_refs(self.outputs):
            if ref.resource not in self.graph:
                raise UnknownReferenceError("outputs", ref.resource)
        for comp in self.components:
            for child in comp.children:
                if child not in self.graph:
                    raise UnknownReferenceError(comp.name, child)
        return ordered


# Document schema


class FileModel(BaseModel):
    path: str = Field(..., description="Absolute path inside the container")
    content: str


class ResourceModel(BaseModel):
    name: str = Field(..., pattern=RESOURCE_NAME_RE)
    kind: Kind
    properties: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    files: list[FileModel] = Field(default_factory=list)


class ParametersModel(BaseModel):
    base_port: int | None = Field(None, ge=1, le=64535, description="Primary published port")


class ComponentModel(BaseModel):
    name: str
    children: list[str]


class DeclarationModel(BaseModel):
    stack: str | None = Field(None, pattern=STACK_NAME_RE)
    parameters: ParametersModel = Field(default_factory=ParametersModel)
    resources: list[ResourceModel]
    outputs: dict[str, Any] = Field(default_factory=dict)
    components: list[ComponentModel] = Field(default_factory=list)


def expand(value: Any, subs: dict[str, Any]) -> Any:
    """Substitute ``${stack}``-style placeholders and turn ``{"$ref": ...}`` into Refs."""
    if isinstance(value, str):
        m = _WHOLE_PLACEHOLDER.match(value)
        if m and m.group(1) in subs:
            return subs[m.group(1)]
        return Template(value).safe_substitute({k: str(v) for k, v in subs.items()})
    if isinstance(value, dict):
        if set(value) == {"$ref"}:
            try:
                return Ref.parse(str(value["$ref"]))
            except ValueError as e:
                raise DeclarationError(str(e)) from e
        return {k: expand(v, subs) for k, v in value.items()}
    if isinstance(value, list):
        return [expand(v, subs) for v in value]
    return value


def build_declaration(model: DeclarationModel, stack: str | None = None, base_port: int | None = None) -> Declaration:
    name = stack or model.stack or "dev"
    if base_port is None:
        base_port = model.parameters.base_port
    config = StackConfig.for_stack(name, base_port)
    subs = config.substitutions()

    graph = StackGraph(config.name)
    for rm in model.resources:
        graph.add_resource(
            Resource(
                name=rm.name,
                kind=rm.kind,
                props=expand(rm.properties, subs),
                depends_on=list(rm.depends_on),
                files=[FileUpload(f.path, expand(f.content, subs)) for f in rm.files],
            )
        )
    components = [Component(c.name, tuple(c.children)) for c in model.components]
    return Declaration(config, graph, expand(model.outputs, subs), components)


def load_declaration(path: str | Path, stack: str | None = None, base_port: int | None = None) -> Declaration:
    """Load a YAML or JSON stack document."""
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as e:
        raise DeclarationError(f"Cannot read {p}: {e}") from e
    try:
        data = json.loads(raw) if p.suffix.lower() == ".json" else yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise DeclarationError(f"Cannot parse {p}: {e}") from e
    if not isinstance(data, dict):
        raise DeclarationError(f"{p} must contain a mapping at the top level.")
    try:
        model = DeclarationModel.model_validate(data)
    except ValidationError as e:
        raise DeclarationError(f"Invalid declaration {p}:\n{e}") from e
    return build_declaration(model, stack=stack, base_port=base_port)


def resolve_outputs(decl: Declaration, store: StateStore) -> dict[str, Any]:
    """Evaluate declared outputs against recorded state. Unrealized refs become None."""
    rows = {row.name: row for row in store.list_resources(decl.stack)}

    def _eval(value: Any) -> Any:
        if isinstance(value, Ref):
            row = rows.get(value.resource)
            return row.outputs.get(value.output) if row else None
        if isinstance(value, dict):
            return {k: _eval(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_eval(v) for v in value]
        return value

    out = _eval(decl.outputs)
    for comp in decl.components:
        out.setdefault(comp.name, {"name": comp.name, "children": {c: _eval(Ref(c, "id")) for c in comp.children}})
    return out
