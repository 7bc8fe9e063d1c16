from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict
from threading import Event
from typing import Iterator

from fastapi import FastAPI, HTTPException, Query

from stackrec.api_models import ApplyRequest, ApplyResponse, StackRequest
from stackrec.db import StateStore
from stackrec.declaration import Declaration
from stackrec.docker_ops import default_adapters
from stackrec.engine import apply_stack, destroy_stack, load_stack, plan_stack, stack_outputs
from stackrec.errors import AdapterError, DeclarationError, GraphError, RuntimeUnavailable
from stackrec.health import wait_healthy
from stackrec.runtime import RunInProgress, RuntimeState
from stackrec.settings import settings

app = FastAPI(title="Stack Reconciler")

STATE_PATH = settings.state_path
# Swappable so the API can run against a fake runtime.
adapter_factory = default_adapters

runtime = RuntimeState()
_stores: dict[str, StateStore] = {}


def get_store() -> StateStore:
    store = _stores.get(STATE_PATH)
    if store is None:
        store = _stores[STATE_PATH] = StateStore(STATE_PATH)
    return store


def _declaration(stack: str, req: StackRequest) -> Declaration:
    try:
        return load_stack(stack, req.file, req.base_port)
    except (DeclarationError, GraphError) as e:
        raise HTTPException(status_code=422, detail=str(e))


@contextmanager
def _tracked_run(stack: str, operation: str) -> Iterator[Event]:
    """Register the run; any error escaping the block marks it failed."""
    try:
        cancel_ev = runtime.begin_run(stack, operation)
    except RunInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    try:
        yield cancel_ev
    except GraphError as e:
        runtime.end_run(stack, "failed", str(e))
        raise HTTPException(status_code=422, detail=str(e))
    except RuntimeUnavailable as e:
        runtime.end_run(stack, "failed", str(e))
        raise HTTPException(status_code=503, detail=str(e))
    except AdapterError as e:
        runtime.end_run(stack, "failed", str(e))
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        runtime.end_run(stack, "failed", f"{type(e).__name__}: {e}")
        raise


@app.get("/health")
def health() -> dict:
    return {"status": "healthy"}


@app.get("/stacks")
def stacks() -> list[dict]:
    """Stacks with recorded resources or runs, with their latest run."""
    runs = {r.stack: asdict(r) for r in runtime.list_runs()}
    names = sorted(set(get_store().list_stacks()) | set(runs))
    return [{"stack": name, "run": runs.get(name)} for name in names]


@app.post("/stacks/{stack}/plan")
def plan(stack: str, req: StackRequest | None = None) -> dict:
    req = req or StackRequest()
    decl = _declaration(stack, req)
    try:
        result = plan_stack(decl, get_store(), adapter_factory(stack))
    except GraphError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except RuntimeUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except AdapterError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.to_dict()


@app.post("/stacks/{stack}/apply", response_model=ApplyResponse)
def apply(stack: str, req: ApplyRequest | None = None) -> ApplyResponse:
    req = req or ApplyRequest()
    decl = _declaration(stack, req)
    store = get_store()
    with _tracked_run(stack, "apply") as cancel_ev:
        report = apply_stack(decl, store, adapter_factory(stack), cancel=cancel_ev)
        body = report.to_dict()
        runtime.end_run(stack, "done" if report.ok else "failed", report=body)

    outputs = stack_outputs(decl, store)
    health = None
    if req.check_health and report.ok and outputs.get("nginx_url"):
        ok, msg = wait_healthy(f"{outputs['nginx_url']}/health", max_wait_s=req.max_wait_s, timeout_s=settings.health_timeout_s)
        health = {"ok": ok, "message": msg}
    return ApplyResponse(**body, outputs=outputs, health=health)


@app.post("/stacks/{stack}/destroy")
def destroy(stack: str) -> dict:
    with _tracked_run(stack, "destroy") as cancel_ev:
        report = destroy_stack(stack, get_store(), adapter_factory(stack), cancel=cancel_ev)
        body = report.to_dict()
        runtime.end_run(stack, "done" if report.ok else "failed", report=body)
    return body


@app.post("/stacks/{stack}/cancel")
def cancel(stack: str) -> dict:
    return {"stack": stack, "cancelled": runtime.cancel(stack)}


@app.get("/stacks/{stack}/outputs")
def outputs(stack: str, file: str | None = None, base_port: int | None = Query(None, ge=1, le=64535)) -> dict:
    decl = _declaration(stack, StackRequest(file=file, base_port=base_port))
    return stack_outputs(decl, get_store())


@app.get("/stacks/{stack}/run")
def last_run(stack: str) -> dict:
    st = runtime.get_run(stack)
    if st is None:
        raise HTTPException(status_code=404, detail=f"No runs recorded for stack '{stack}'.")
    return asdict(st)


@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000), stack: str | None = None) -> list[dict]:
    return get_store().latest_events(limit=limit, stack=stack)
