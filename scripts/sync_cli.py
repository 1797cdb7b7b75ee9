#!/usr/bin/env python3
"""Start or follow a sync run and print its progress stream."""

from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Iterator
from typing import Any, TextIO

import httpx

DEFAULT_BASE_URL = os.getenv("JS_API_BASE_URL", "http://localhost:8000")
LEVEL_MARKERS = {"info": "-", "success": "+", "warning": "!", "error": "x"}


def render_event(event: dict[str, Any]) -> str:
    event_type = event.get("type")
    if event_type == "log":
        marker = LEVEL_MARKERS.get(str(event.get("level")), "-")
        return f"[{marker}] {event.get('message', '')}"
    if event_type == "progress":
        processed = int(event.get("processed", 0))
        total = int(event.get("total", 0))
        percent = (processed * 100 // total) if total else 0
        return f"[{processed}/{total}] {percent}%"
    if event_type == "complete":
        stats = event.get("stats") or {}
        counts = " ".join(f"{key}={value}" for key, value in sorted(stats.items()))
        return f"done: {counts}".rstrip()
    if event_type == "error":
        return f"failed: {event.get('message', 'unknown error')}"
    return json.dumps(event, sort_keys=True)


def iter_events(response: httpx.Response) -> Iterator[dict[str, Any]]:
    for line in response.iter_lines():
        if not line.strip():
            continue
        yield json.loads(line)


def follow(response: httpx.Response, out: TextIO) -> int:
    response.raise_for_status()
    run_id = response.headers.get("x-sync-run-id")
    if run_id:
        print(f"run {run_id}", file=out)
    exit_code = 1
    for event in iter_events(response):
        print(render_event(event), file=out, flush=True)
        if event.get("type") == "complete":
            exit_code = 0
        elif event.get("type") == "error":
            exit_code = 1
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trigger and watch job sync runs.")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="API base URL")
    subcommands = parser.add_subparsers(dest="command", required=True)

    start = subcommands.add_parser("start", help="Start a run and stream its progress")
    start.add_argument("--type", dest="sync_type", choices=["job_sync", "discovery"], default="job_sync")
    start.add_argument("--source", help="Provider name, e.g. greenhouse")
    start.add_argument("--prune", action="store_true", help="Remove stored listings the provider no longer publishes")

    watch = subcommands.add_parser("watch", help="Reconnect to a run's progress stream")
    watch.add_argument("run_id")

    runs = subcommands.add_parser("runs", help="List recent runs")
    runs.add_argument("--limit", type=int, default=20)
    runs.add_argument("--source")
    runs.add_argument("--status", choices=["running", "completed", "failed"])
    return parser


def main(
    argv: list[str] | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
    out: TextIO = sys.stdout,
) -> int:
    args = build_parser().parse_args(argv)
    base_url = args.base_url.rstrip("/")
    # Streams stay open for the whole run, so only the connect phase is bounded.
    timeout = httpx.Timeout(10.0, read=None)

    with httpx.Client(base_url=base_url, timeout=timeout, transport=transport) as client:
        if args.command == "start":
            payload: dict[str, Any] = {"sync_type": args.sync_type}
            if args.source:
                payload["source"] = args.source
            if args.prune:
                payload["prune"] = True
            with client.stream("POST", "/sync/stream", json=payload) as response:
                return follow(response, out)
        if args.command == "watch":
            with client.stream("GET", f"/sync/stream/{args.run_id}") as response:
                if response.status_code == 404:
                    print(f"unknown run {args.run_id}", file=out)
                    return 2
                return follow(response, out)

        params: dict[str, Any] = {"limit": args.limit}
        if args.source:
            params["source"] = args.source
        if args.status:
            params["status"] = args.status
        response = client.get("/sync/runs", params=params)
        response.raise_for_status()
        for run in response.json():
            stale = " (stale)" if run.get("stale") else ""
            print(
                f"{run['id']} {run['sync_type']:<9} {run.get('source') or '-':<10} "
                f"{run['status']}{stale} {run['processed_units']}/{run['total_units']} {run['started_at']}",
                file=out,
            )
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
