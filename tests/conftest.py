import itertools
import os as _os
import sys
import threading
import time

import pytest

# Ensure project root is importable (so `import main` / `import cli` work reliably across environments)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from stackrec.db import StateStore  # noqa: E402
from stackrec.docker_ops import RuntimeAdapter  # noqa: E402
from stackrec.errors import NotFound, Unsupported  # noqa: E402
from stackrec.graph import Kind  # noqa: E402
from stackrec.settings import Settings  # noqa: E402


class FakeRuntime:
    """In-memory container engine shared by the fake adapters."""

    def __init__(self):
        self.lock = threading.Lock()
        self.objects = {}  # id -> {"kind", "name", "props", "files"}
        self.calls = []  # (op, name)
        self.errors = {}  # (op, name) -> list of exceptions raised one per call
        self.delays = {}  # name -> seconds
        self.in_flight = 0
        self.max_in_flight = 0
        self._ids = itertools.count(1)

    def fail(self, op, name, *excs):
        self.errors.setdefault((op, name), []).extend(excs)

    def before(self, op, name):
        with self.lock:
            self.calls.append((op, name))
            queued = self.errors.get((op, name))
            exc = queued.pop(0) if queued else None
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if name in self.delays:
                time.sleep(self.delays[name])
        finally:
            with self.lock:
                self.in_flight -= 1
        if exc is not None:
            raise exc

    def ops(self, op=None):
        return [c for c in self.calls if op is None or c[0] == op]

    def new_id(self, kind, name):
        return f"{kind.value}-{name}-{next(self._ids)}"

    def remove_out_of_band(self, name):
        for rid, obj in list(self.objects.items()):
            if obj["name"] == name:
                del self.objects[rid]


class FakeAdapter(RuntimeAdapter):
    def __init__(self, kind, rt, updatable=()):
        super().__init__(conn=None, stack="test")
        self.kind = kind
        self.updatable = frozenset(updatable)
        self.rt = rt

    def create(self, name, props, files=()):
        self.rt.before("create", name)
        rid = self.rt.new_id(self.kind, name)
        with self.rt.lock:
            self.rt.objects[rid] = {
                "kind": self.kind,
                "name": name,
                "props": props,
                "files": {f.path: f.content for f in files},
            }
        return {"id": rid, "name": props.get("name", name)}

    def read(self, resource_id):
        obj = self.rt.objects.get(resource_id)
        if obj is None:
            raise NotFound(resource_id)
        return {"id": resource_id, "name": obj["name"]}

    def update(self, resource_id, props, diff, files=()):
        obj = self.rt.objects.get(resource_id)
        if obj is None:
            raise NotFound(resource_id)
        self.rt.before("update", obj["name"])
        if not self.supports_update(diff):
            raise Unsupported(f"{self.kind.value} cannot change {sorted(diff)}")
        obj["props"] = props
        obj["files"] = {f.path: f.content for f in files}
        return {"id": resource_id, "name": props.get("name", obj["name"])}

    def delete(self, resource_id, props=None):
        obj = self.rt.objects.get(resource_id)
        self.rt.before("delete", obj["name"] if obj else resource_id)
        with self.rt.lock:
            return self.rt.objects.pop(resource_id, None) is not None


def make_adapters(rt):
    return {
        Kind.NETWORK: FakeAdapter(Kind.NETWORK, rt),
        Kind.IMAGE: FakeAdapter(Kind.IMAGE, rt, {"keep_locally"}),
        Kind.CONTAINER: FakeAdapter(Kind.CONTAINER, rt, {"files"}),
    }


@pytest.fixture
def rt():
    return FakeRuntime()


@pytest.fixture
def adapters(rt):
    return make_adapters(rt)


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state.db"))


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        state_path=str(tmp_path / "state.db"),
        max_workers=4,
        retry_attempts=3,
        retry_backoff_s=0.0,
        output_timeout_s=5.0,
        deadline_s=0.0,
    )
