"""Command line launcher: run the engine service or replay a recorded observation log."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import httpx

from attendtracker.engine.config import configure_logging, load_settings
from attendtracker.engine.engine import AttendanceEngine
from attendtracker.engine.models import HostSignals, Observation
from attendtracker.engine.scheduler import ManualScheduler
from attendtracker.engine.store import InMemoryStateStore
from attendtracker.engine.submitter import ReportSubmitter


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Attend Tracker launcher")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="run the engine HTTP service")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    replay = subparsers.add_parser("replay", help="feed a JSON-lines observation log through the engine")
    replay.add_argument("file", type=Path)
    replay.add_argument("--backend-url", default="", help="submit the final report to this backend")
    replay.add_argument("--permanent-host-lock", action="store_true")
    return parser.parse_args(argv)


def serve(host: str | None, port: int | None) -> int:
    import uvicorn

    from attendtracker.engine.api import create_app

    settings = load_settings()
    uvicorn.run(
        create_app(),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def read_log(path: Path) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({exc.msg})") from exc
            if not isinstance(entry, dict) or "at" not in entry:
                raise ValueError(f"{path}:{line_no}: each entry needs an 'at' timestamp")
            entries.append(entry)
    return sorted(entries, key=lambda item: float(item["at"]))


async def apply_entry(engine: AttendanceEngine, entry: dict[str, Any]) -> None:
    event = entry.get("event", "tick")
    if event == "tick":
        engine.process_tick(
            str(entry["sessionKey"]),
            [Observation.from_dict(item) for item in entry.get("observations", [])],
            HostSignals.from_dict(entry.get("signals")),
        )
    elif event == "visibility":
        engine.visibility_changed(bool(entry.get("hidden", False)))
    elif event == "pageText":
        engine.observe_page_text(str(entry.get("text", "")))
    elif event == "close":
        engine.request_end()
    else:
        raise ValueError(f"unknown replay event {event!r}")


async def replay(path: Path, backend_url: str, permanent_host_lock: bool) -> dict[str, Any] | None:
    entries = read_log(path)
    start = float(entries[0]["at"]) if entries else 0.0
    scheduler = ManualScheduler(start=start)
    client = httpx.AsyncClient(base_url=backend_url) if backend_url else None
    engine = AttendanceEngine(
        InMemoryStateStore(),
        scheduler,
        submitter=ReportSubmitter(client) if client is not None else None,
        permanent_host_lock=permanent_host_lock,
    )
    engine.start()
    try:
        for entry in entries:
            await scheduler.advance_to(float(entry["at"]))
            await apply_entry(engine, entry)
        # Let pending debounce timers settle before forcing a close.
        await scheduler.advance(5.0)
        if engine.final_report is None and engine.session_key is not None:
            await engine.end_now()
        return engine.final_report
    finally:
        engine.stop()
        if client is not None:
            await client.aclose()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(load_settings().log_level)

    if args.command == "serve":
        return serve(args.host, args.port)

    if not args.file.exists():
        print(f"Replay log not found: {args.file}", file=sys.stderr)
        return 1
    try:
        report = asyncio.run(replay(args.file, args.backend_url, args.permanent_host_lock))
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    if report is None:
        print("No meeting was tracked in the replay log.", file=sys.stderr)
        return 1
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
