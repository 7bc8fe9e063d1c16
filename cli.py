from __future__ import annotations

import argparse
import json
import sys

import requests

from stackrec.engine import apply_stack, destroy_stack, load_stack, open_store, plan_stack, stack_outputs
from stackrec.errors import AdapterError, DeclarationError, GraphError
from stackrec.health import wait_healthy
from stackrec.settings import Settings, settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _remote(args: argparse.Namespace) -> int:
    base = args.api.rstrip("/")
    stack = args.stack
    body = {"file": getattr(args, "file", None), "base_port": getattr(args, "base_port", None)}

    if args.cmd == "plan":
        r = requests.post(f"{base}/stacks/{stack}/plan", json=body, timeout=120)
    elif args.cmd == "apply":
        body.update({"check_health": args.check_health})
        r = requests.post(f"{base}/stacks/{stack}/apply", json=body, timeout=1800)
    elif args.cmd == "destroy":
        r = requests.post(f"{base}/stacks/{stack}/destroy", timeout=1800)
    elif args.cmd == "outputs":
        params = {k: v for k, v in body.items() if v is not None}
        r = requests.get(f"{base}/stacks/{stack}/outputs", params=params, timeout=30)
    else:
        r = requests.get(f"{base}/events", params={"limit": args.limit, "stack": stack}, timeout=30)

    _print(r.json())
    if not r.ok:
        return 2 if r.status_code in (409, 422) else 1
    if args.cmd in ("apply", "destroy"):
        return 0 if r.json().get("ok") else 1
    return 0


def _local(args: argparse.Namespace) -> int:
    cfg = Settings(state_path=args.state or settings.state_path, max_workers=args.workers or settings.max_workers)
    store = open_store(cfg)

    if args.cmd == "events":
        _print(store.latest_events(limit=args.limit, stack=args.stack))
        return 0
    if args.cmd == "destroy":
        report = destroy_stack(args.stack, store, cfg=cfg)
        _print(report.to_dict())
        return report.exit_code

    decl = load_stack(args.stack, args.file, args.base_port)
    if args.cmd == "outputs":
        _print(stack_outputs(decl, store))
        return 0
    if args.cmd == "plan":
        result = plan_stack(decl, store, cfg=cfg)
        for action in result.actions:
            print(f"  {action.describe()}")
        if result.empty:
            print("No changes.")
        if args.json:
            _print(result.to_dict())
        return 0

    report = apply_stack(decl, store, cfg=cfg)
    out = report.to_dict()
    out["outputs"] = stack_outputs(decl, store)
    if args.check_health and report.ok and out["outputs"].get("nginx_url"):
        ok, msg = wait_healthy(f"{out['outputs']['nginx_url']}/health", timeout_s=cfg.health_timeout_s)
        out["health"] = {"ok": ok, "message": msg}
    _print(out)
    return report.exit_code


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Declarative Docker stack reconciler")
    p.add_argument("--api", default=None, help="Run against a stackrec API (e.g. http://localhost:8000) instead of locally")
    p.add_argument("--state", default=None, help="State database path (local mode)")
    p.add_argument("--workers", type=int, default=None, help="Max concurrent runtime actions (local mode)")
    sub = p.add_subparsers(dest="cmd", required=True)

    def stack_args(sp: argparse.ArgumentParser, with_file: bool = True) -> None:
        sp.add_argument("--stack", default="dev", help="Stack name (prod publishes on 8080, others on 8081)")
        if with_file:
            sp.add_argument("--file", default=None, help="YAML/JSON stack file; built-in web app stack if omitted")
            sp.add_argument("--base-port", type=int, default=None)

    s_plan = sub.add_parser("plan", help="Show the actions apply would take")
    stack_args(s_plan)
    s_plan.add_argument("--json", action="store_true")

    s_apply = sub.add_parser("apply", help="Converge the runtime to the declaration")
    stack_args(s_apply)
    s_apply.add_argument("--check-health", action="store_true", help="Probe <nginx_url>/health afterwards")

    s_destroy = sub.add_parser("destroy", help="Delete every resource of the stack")
    stack_args(s_destroy, with_file=False)

    s_out = sub.add_parser("outputs", help="Show stack outputs")
    stack_args(s_out)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--stack", default=None)
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    try:
        if args.api:
            return _remote(args)
        return _local(args)
    except (DeclarationError, GraphError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except AdapterError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except requests.RequestException as e:
        print(f"error: cannot reach {args.api}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
