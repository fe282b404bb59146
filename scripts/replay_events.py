#!/usr/bin/env python3
"""Replay a captured call-event stream through the reconciliation engine.

Each line of the input is one native event as JSON.  Time is virtual: the
clock jumps to each event's own timestamp, and after the last event it runs
past the auto-finalize and idle windows so every session resolves.

Usage:
    python scripts/replay_events.py events.jsonl              # writes to LEAD_SERVICE_URL
    python scripts/replay_events.py events.jsonl --dry-run    # in-memory lead store
    python scripts/replay_events.py events.jsonl --raw        # commit results as JSON
    cat events.jsonl | python scripts/replay_events.py - --dry-run
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict

from dotenv import load_dotenv

from callleads.background import BackgroundTasks
from callleads.config import EngineConfig, validate_config
from callleads.engine import CommitResult, ReconciliationEngine
from callleads.lead_client import LeadServiceClient
from callleads.lead_store import InMemoryLeadStore
from callleads.scheduler import ManualScheduler


def _event_ts(raw) -> int | None:
    if not isinstance(raw, dict):
        return None
    ts = raw.get("timestamp")
    if isinstance(ts, int) and not isinstance(ts, bool):
        return ts
    return None


def parse_event_lines(lines: list[str]) -> tuple[list, list[int]]:
    """Parse JSONL lines. Returns (events, line numbers that were not JSON).

    Blank lines and lines starting with '#' are skipped.  Valid JSON that is
    not an object is kept so the engine's own validation reports it.
    """
    events = []
    bad_lines = []
    for lineno, line in enumerate(lines, start=1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        try:
            events.append(json.loads(text))
        except json.JSONDecodeError:
            bad_lines.append(lineno)
    return events, bad_lines


async def replay(events: list, store, config: EngineConfig) -> tuple[list[str], list[CommitResult]]:
    """Feed events through a fresh engine in virtual time."""
    stamps = [ts for ts in (_event_ts(e) for e in events) if ts is not None]
    scheduler = ManualScheduler(start_ms=min(stamps)) if stamps else ManualScheduler()
    tasks = BackgroundTasks()
    engine = ReconciliationEngine(store, scheduler=scheduler, tasks=tasks, config=config)

    statuses = []
    results = []
    for raw in events:
        ts = _event_ts(raw)
        if ts is not None:
            scheduler.advance_to(ts)
        statuses.append(engine.submit(raw).value)
        results.extend(await tasks.drain())

    scheduler.advance(config.auto_finalize_ms + config.idle_expiry_ms)
    results.extend(await tasks.drain())
    return statuses, [r for r in results if isinstance(r, CommitResult)]


def format_summary(statuses: list[str], results: list[CommitResult]) -> str:
    lines = []
    counts = {}
    for status in statuses:
        counts[status] = counts.get(status, 0) + 1
    breakdown = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
    lines.append(f"Events: {len(statuses)} ({breakdown})" if statuses else "Events: 0")
    lines.append("═" * 55)

    for r in results:
        duration = "-" if r.duration_seconds is None else f"{r.duration_seconds}s"
        phone = r.phone or "unknown"
        line = f"{r.kind:<11} {phone:<16} {r.outcome:<14} {duration:>6}  {r.status.value}"
        if r.error:
            line += f" ({r.error})"
        lines.append(line)

    finals = [r for r in results if r.kind == "final"]
    failed = [r for r in results if r.status.value == "failed"]
    lines.append("")
    lines.append(f"{len(finals)} calls finalized, {len(failed)} writes failed")
    return "\n".join(lines)


async def _run(args) -> int:
    config = EngineConfig.from_env()

    if args.path == "-":
        lines = sys.stdin.read().splitlines()
    else:
        with open(args.path) as f:
            lines = f.read().splitlines()

    events, bad_lines = parse_event_lines(lines)
    for lineno in bad_lines:
        print(f"Skipping line {lineno}: not valid JSON", file=sys.stderr)

    client = None
    if args.dry_run:
        store = InMemoryLeadStore(tenant_id=os.getenv("LEAD_TENANT_ID") or "default_tenant")
    else:
        validate_config()
        client = LeadServiceClient(
            base_url=os.getenv("LEAD_SERVICE_URL", ""),
            api_key=os.getenv("LEAD_SERVICE_API_KEY", ""),
            tenant_id=os.getenv("LEAD_TENANT_ID") or "default_tenant",
        )
        store = client

    try:
        statuses, results = await replay(events, store, config)
    finally:
        if client is not None:
            await client.close()

    if args.raw:
        payload = [{**asdict(r), "status": r.status.value} for r in results]
        print(json.dumps(payload, indent=2))
    else:
        print(format_summary(statuses, results))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Replay captured call events through the engine")
    parser.add_argument("path", help="JSONL file of events, or - for stdin")
    parser.add_argument("--dry-run", action="store_true", help="Use an in-memory lead store")
    parser.add_argument("--raw", action="store_true", help="Output commit results as JSON")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
