from __future__ import annotations

import argparse
import json
import os
import sys

import requests

from sdp.compose import render
from sdp.errors import ConfigurationError
from sdp.manifest import load_manifest
from sdp.router import render_nginx_conf
from sdp.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _plan(manifest_path: str) -> dict:
    m = load_manifest(manifest_path)
    topo = m.topology
    return {
        "project": m.project,
        "order": list(topo.order),
        "ranks": [list(r) for r in topo.ranks],
        "networks": sorted(topo.shared_networks),
        "build": [d.name for d in topo.built_services()],
        "routes": [
            {"prefix": r.path_prefix, "service": r.target_service, "port": r.target_port, "strip_prefix": r.strip_prefix}
            for r in m.rules.rules
        ],
    }


def _render(manifest_path: str, out_dir: str, tag: str | None) -> list[str]:
    m = load_manifest(manifest_path)
    images = {}
    if tag:
        images = {d.name: d.image.with_tag(tag) for d in m.topology.built_services()}
    router = render_nginx_conf(m.rules) if len(m.rules) else None
    bundle = render(m.project, m.topology, images, router)
    os.makedirs(out_dir, exist_ok=True)
    written = []
    compose_path = os.path.join(out_dir, settings.compose_file_name)
    with open(compose_path, "w", encoding="utf-8") as f:
        f.write(bundle.compose)
    written.append(compose_path)
    if bundle.router_config is not None:
        router_path = os.path.join(out_dir, settings.router_file_name)
        with open(router_path, "w", encoding="utf-8") as f:
            f.write(bundle.router_config)
        written.append(router_path)
    return written


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Stack Deploy Pipeline CLI")
    p.add_argument("--api", default="http://localhost:8000", help="Control API base URL")
    p.add_argument("--manifest", default=settings.manifest_path, help="Deployment manifest (offline commands)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("plan", help="Resolve the manifest and print bring-up order and routes")

    s_render = sub.add_parser("render", help="Write the compose file and router config locally")
    s_render.add_argument("--out", default="build")
    s_render.add_argument("--tag", help="Pin built services to this tag")

    s_trig = sub.add_parser("trigger", help="Start a pipeline run")
    s_trig.add_argument("--revision", required=True)
    s_trig.add_argument("--manual", action="store_true", help="Record the run as manually triggered")

    s_status = sub.add_parser("status", help="Show a run (default: latest)")
    s_status.add_argument("--run-id")

    s_runs = sub.add_parser("runs", help="List recent runs")
    s_runs.add_argument("--limit", type=int, default=20)

    s_cancel = sub.add_parser("cancel", help="Cancel a run between stages")
    s_cancel.add_argument("run_id")

    s_rb = sub.add_parser("rollback", help="Deploy a previously published tag")
    s_rb.add_argument("--tag", required=True)
    s_rb.add_argument("--service", action="append", dest="services", help="Limit to a service (repeatable)")

    sub.add_parser("routes", help="Show the active routing table")
    sub.add_parser("reload-routes", help="Rebuild routes from the manifest and swap them in")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    if args.cmd in {"plan", "render"}:
        try:
            if args.cmd == "plan":
                _print(_plan(args.manifest))
            else:
                _print({"written": _render(args.manifest, args.out, args.tag)})
        except ConfigurationError as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        return 0

    base = args.api.rstrip("/")

    if args.cmd == "trigger":
        payload = {"trigger": "manual" if args.manual else "push", "revision": args.revision}
        r = requests.post(f"{base}/pipeline/runs", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        path = f"/pipeline/runs/{args.run_id}" if args.run_id else "/pipeline/runs/latest"
        r = requests.get(f"{base}{path}", timeout=10)
        _print(r.json())
        if not r.ok:
            return 1
        return 0 if r.json().get("status") != "failed" else 2

    if args.cmd == "runs":
        _print(requests.get(f"{base}/pipeline/runs", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "cancel":
        r = requests.post(f"{base}/pipeline/runs/{args.run_id}/cancel", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "rollback":
        payload = {"tag": args.tag, "services": args.services}
        r = requests.post(f"{base}/pipeline/rollback", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "routes":
        _print(requests.get(f"{base}/routes", timeout=10).json())
        return 0

    if args.cmd == "reload-routes":
        r = requests.post(f"{base}/routes/reload", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
