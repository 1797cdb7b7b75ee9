from __future__ import annotations

import io
import json

import httpx

import sync_cli


def _ndjson(*events: dict) -> bytes:
    return "".join(json.dumps(event) + "\n" for event in events).encode()


def test_render_event_formats_each_type() -> None:
    assert sync_cli.render_event({"type": "log", "level": "warning", "message": "slow"}) == "[!] slow"
    assert sync_cli.render_event({"type": "progress", "processed": 1, "total": 4}) == "[1/4] 25%"
    assert sync_cli.render_event({"type": "progress", "processed": 0, "total": 0}) == "[0/0] 0%"
    assert (
        sync_cli.render_event({"type": "complete", "stats": {"jobs_updated": 2, "jobs_added": 1}, "report": {}})
        == "done: jobs_added=1 jobs_updated=2"
    )
    assert sync_cli.render_event({"type": "error", "message": "boom"}) == "failed: boom"


def test_start_streams_until_complete() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url.path == "/sync/stream"
        return httpx.Response(
            200,
            headers={"content-type": "application/x-ndjson", "x-sync-run-id": "abc"},
            content=_ndjson(
                {"type": "log", "level": "info", "message": "Starting job_sync for lever"},
                {"type": "progress", "processed": 1, "total": 1},
                {"type": "complete", "stats": {"jobs_added": 3}, "report": {"run_id": "abc"}},
            ),
        )

    out = io.StringIO()
    code = sync_cli.main(["start", "--source", "lever"], transport=httpx.MockTransport(handler), out=out)

    assert code == 0
    assert seen == [{"sync_type": "job_sync", "source": "lever"}]
    assert out.getvalue().splitlines() == [
        "run abc",
        "[-] Starting job_sync for lever",
        "[1/1] 100%",
        "done: jobs_added=3",
    ]


def test_start_forwards_prune_flag() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, content=_ndjson({"type": "complete", "stats": {"jobs_deleted": 2}}))

    out = io.StringIO()
    code = sync_cli.main(["start", "--source", "remoteok", "--prune"], transport=httpx.MockTransport(handler), out=out)

    assert code == 0
    assert seen == [{"sync_type": "job_sync", "source": "remoteok", "prune": True}]
    assert out.getvalue().splitlines() == ["done: jobs_deleted=2"]


def test_watch_reports_failed_and_unknown_runs() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/sync/stream/missing":
            return httpx.Response(404, json={"detail": "sync run not found"})
        return httpx.Response(200, content=_ndjson({"type": "error", "message": "boom"}))

    transport = httpx.MockTransport(handler)
    out = io.StringIO()

    assert sync_cli.main(["watch", "run-1"], transport=transport, out=out) == 1
    assert "failed: boom" in out.getvalue()
    assert sync_cli.main(["watch", "missing"], transport=transport, out=out) == 2


def test_runs_lists_recent_runs() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["limit"] == "5"
        assert request.url.params["status"] == "running"
        return httpx.Response(
            200,
            json=[
                {
                    "id": "abc",
                    "sync_type": "job_sync",
                    "source": None,
                    "status": "running",
                    "stale": True,
                    "processed_units": 2,
                    "total_units": 7,
                    "started_at": "2024-01-01T00:00:00Z",
                }
            ],
        )

    out = io.StringIO()
    code = sync_cli.main(["runs", "--limit", "5", "--status", "running"], transport=httpx.MockTransport(handler), out=out)

    assert code == 0
    line = out.getvalue().strip()
    assert line.startswith("abc job_sync")
    assert "running (stale) 2/7" in line
