#!/usr/bin/env python3
"""radiomonitor Command Line Interface.

Talks to a running radiomonitor server.

Usage:
    radiomonitor-cli watch --history 30m --sort recent --active-only
    radiomonitor-cli submit --system hamco --radio-id 1234 --talkgroup 100 --event-type call
    radiomonitor-cli talkgroups
    radiomonitor-cli set-talkgroup 100 --alpha-tag DISPATCH --tag "Law Dispatch"
    radiomonitor-cli history 2h
    radiomonitor-cli alias hamco "Hamilton County"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any

import aiohttp

from radiomonitor.client import LiveMonitor, MonitorClient, MonitorError, TalkgroupAggregator, ViewOptions
from radiomonitor.client.aggregator import TalkgroupEntry
from radiomonitor.client.monitor import DEFAULT_BASE_URL
from radiomonitor.events import id_sort_key
from radiomonitor.history import DURATION_MINUTES

logger = logging.getLogger(__name__)

_CLEAR_SCREEN = "\033[2J\033[H"


def _format_age(moment: datetime | None) -> str:
    if moment is None:
        return "-"
    seconds = int((datetime.now(timezone.utc) - moment).total_seconds())
    if seconds < 60:
        return f"{max(seconds, 0)}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"


def render_table(rows: list[TalkgroupEntry], systems: dict[str, str]) -> str:
    """Render aggregator entries as a fixed-width table."""
    lines = [
        f"{'TG':>7}  {'Alpha Tag':<20} {'Category':<14} {'System':<16} "
        f"{'Calls':>5} {'5m':>3} {'Radios':>6} {'Last':>5}  Glow"
    ]
    for row in rows:
        info = row.info or {}
        state = row.state
        system = systems.get(state.system or "", state.system or "-")
        lines.append(
            f"{row.talkgroup:>7}  {str(info.get('alphaTag', '?'))[:20]:<20} "
            f"{str(info.get('category', ''))[:14]:<14} {system[:16]:<16} "
            f"{state.call_count:>5} {state.recent_calls:>3} {len(state.radios):>6} "
            f"{_format_age(state.last_timestamp):>5}  {row.glow or ''}"
        )
    return "\n".join(lines)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


async def _watch(args: argparse.Namespace) -> int:
    view = ViewOptions(
        active_only=args.active_only,
        category=args.category,
        tag=args.tag,
        system=args.system,
        show_unassociated=not args.hide_unassociated,
        excluded=frozenset(t.strip() for t in (args.exclude or "").split(",") if t.strip()),
        sort=args.sort,
    )
    aggregator = TalkgroupAggregator()

    async with MonitorClient(args.url) as client:
        monitor = LiveMonitor(client, aggregator, history_duration=args.history)

        def redraw() -> None:
            aggregator.sweep()
            names = {s["shortName"]: s["displayName"] for s in monitor.systems}
            print(_CLEAR_SCREEN + render_table(aggregator.entries(view), names), flush=True)

        async def render_loop() -> None:
            while True:
                await asyncio.sleep(args.interval)
                redraw()

        renderer = asyncio.create_task(render_loop())
        try:
            await monitor.run()
        finally:
            renderer.cancel()
            await asyncio.gather(renderer, return_exceptions=True)
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Live talkgroup activity table."""
    loop = asyncio.new_event_loop()
    task = loop.create_task(_watch(args))
    try:
        loop.add_signal_handler(signal.SIGINT, task.cancel)
    except NotImplementedError:
        pass
    try:
        return loop.run_until_complete(task)
    except asyncio.CancelledError:
        print("\nStopped")
        return 0
    finally:
        loop.close()


async def _submit(args: argparse.Namespace) -> dict[str, Any]:
    event = {
        "system": args.system,
        "radioId": args.radio_id,
        "talkgroupOrSource": args.talkgroup,
        "eventType": args.event_type,
    }
    async with MonitorClient(args.url) as client:
        return await client.submit_event({k: v for k, v in event.items() if v is not None})


def cmd_submit(args: argparse.Namespace) -> int:
    """Post one event, as a recorder plugin would."""
    result = asyncio.run(_submit(args))
    print(f"{result['status']}: {result.get('message', '')}")
    return 0


async def _talkgroups(args: argparse.Namespace) -> dict[str, Any]:
    async with MonitorClient(args.url) as client:
        if args.reload:
            await client.reload_talkgroups()
        return await client.fetch_talkgroups()


def cmd_talkgroups(args: argparse.Namespace) -> int:
    """List talkgroup metadata known to the server."""
    snapshot = asyncio.run(_talkgroups(args))
    if args.json:
        _print_json(snapshot)
        return 0
    talkgroups = snapshot.get("talkgroups", {})
    for decimal in sorted(talkgroups, key=id_sort_key):
        info = talkgroups[decimal]
        system = info.get("shortName") or "global"
        print(f"{decimal:>7}  {info.get('alphaTag', ''):<20} {info.get('tag', ''):<18} "
              f"{info.get('category', ''):<14} {system}")
    unknown = snapshot.get("unknownTalkgroups", [])
    print(f"\n{len(talkgroups)} known, {len(unknown)} unknown")
    if unknown:
        print(f"Unknown: {', '.join(unknown)}")
    return 0


async def _set_talkgroup(args: argparse.Namespace) -> dict[str, Any]:
    fields = {
        "alphaTag": args.alpha_tag,
        "hex": args.hex,
        "mode": args.mode,
        "description": args.description,
        "tag": args.tag,
        "category": args.category,
        "shortName": args.system,
    }
    async with MonitorClient(args.url) as client:
        return await client.update_talkgroup(args.decimal, {k: v for k, v in fields.items() if v is not None})


def cmd_set_talkgroup(args: argparse.Namespace) -> int:
    """Edit one talkgroup's metadata."""
    result = asyncio.run(_set_talkgroup(args))
    talkgroup = result.get("talkgroup", {})
    print(f"Updated {talkgroup.get('decimal')}: {talkgroup.get('alphaTag')}")
    return 0


async def _history(args: argparse.Namespace) -> tuple[list[dict[str, Any]], int]:
    aggregator = TalkgroupAggregator()
    async with MonitorClient(args.url) as client:
        aggregator.set_metadata(await client.fetch_talkgroups())
        events = await client.fetch_history(args.duration)
    await aggregator.load_history(events)
    rows = aggregator.entries(ViewOptions(sort="calls"))
    return [{"talkgroup": r.talkgroup, "calls": r.state.call_count} for r in rows], len(events)


def cmd_history(args: argparse.Namespace) -> int:
    """Summarize call activity over a history window."""
    rows, count = asyncio.run(_history(args))
    print(f"{count} events in the last {args.duration}")
    for row in rows[: args.limit]:
        print(f"{row['talkgroup']:>7}  {row['calls']:>5} calls")
    return 0


async def _alias(args: argparse.Namespace) -> str:
    async with MonitorClient(args.url) as client:
        if args.alias is not None:
            return await client.set_alias(args.system, args.alias)
        return await client.get_alias(args.system)


def cmd_alias(args: argparse.Namespace) -> int:
    """Show or set a system's display name."""
    print(f"{args.system}: {asyncio.run(_alias(args))}")
    return 0


async def _status(args: argparse.Namespace) -> dict[str, Any]:
    async with MonitorClient(args.url) as client:
        return await client.fetch_status()


def cmd_status(args: argparse.Namespace) -> int:
    """Print server statistics."""
    _print_json(asyncio.run(_status(args)))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="radiomonitor-cli",
        description="radiomonitor Command Line Interface"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--url", default=DEFAULT_BASE_URL, help=f"Server URL (default: {DEFAULT_BASE_URL})")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # watch
    p_watch = subparsers.add_parser("watch", help="Live talkgroup activity table")
    p_watch.add_argument("--history", choices=list(DURATION_MINUTES), help="Backfill this much history first")
    p_watch.add_argument("--sort", choices=["id", "calls", "recent"], default="id", help="Sort order (default: id)")
    p_watch.add_argument("--active-only", action="store_true", help="Only talkgroups with calls")
    p_watch.add_argument("--category", help="Only this category")
    p_watch.add_argument("--tag", help="Only this tag")
    p_watch.add_argument("--system", help="Only this system short name")
    p_watch.add_argument("--hide-unassociated", action="store_true",
                         help="Hide talkgroups without metadata")
    p_watch.add_argument("--exclude", help="Talkgroups to hide (comma-separated)")
    p_watch.add_argument("--interval", type=float, default=1.0, help="Redraw interval in seconds (default: 1)")
    p_watch.set_defaults(func=cmd_watch)

    # submit
    p_submit = subparsers.add_parser("submit", help="Post one event")
    p_submit.add_argument("--system", required=True, help="System short name")
    p_submit.add_argument("--radio-id", required=True, help="Radio (unit) id")
    p_submit.add_argument("--talkgroup", help="Talkgroup or source id")
    p_submit.add_argument("--event-type", required=True, help="call, on, off, join, ...")
    p_submit.set_defaults(func=cmd_submit)

    # talkgroups
    p_tgs = subparsers.add_parser("talkgroups", help="List talkgroup metadata")
    p_tgs.add_argument("--reload", action="store_true", help="Reload files on the server first")
    p_tgs.add_argument("--json", action="store_true", help="Print the raw snapshot")
    p_tgs.set_defaults(func=cmd_talkgroups)

    # set-talkgroup
    p_set = subparsers.add_parser("set-talkgroup", help="Edit talkgroup metadata")
    p_set.add_argument("decimal", help="Talkgroup id")
    p_set.add_argument("--alpha-tag", required=True, help="Short display label")
    p_set.add_argument("--hex", help="Hex id")
    p_set.add_argument("--mode", help="Mode (D, A, E, ...)")
    p_set.add_argument("--description", help="Description")
    p_set.add_argument("--tag", help="Service tag")
    p_set.add_argument("--category", help="Category")
    p_set.add_argument("--system", help="Owning system short name")
    p_set.set_defaults(func=cmd_set_talkgroup)

    # history
    p_history = subparsers.add_parser("history", help="Summarize recent activity")
    p_history.add_argument("duration", choices=list(DURATION_MINUTES), help="History window")
    p_history.add_argument("--limit", type=int, default=20, help="Rows to show (default: 20)")
    p_history.set_defaults(func=cmd_history)

    # alias
    p_alias = subparsers.add_parser("alias", help="Show or set a system display name")
    p_alias.add_argument("system", help="System short name")
    p_alias.add_argument("alias", nargs="?", help="New display name")
    p_alias.set_defaults(func=cmd_alias)

    # status
    p_status = subparsers.add_parser("status", help="Server statistics")
    p_status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s"
    )

    try:
        result = args.func(args)
    except MonitorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except aiohttp.ClientError as e:
        print(f"Error: cannot reach {args.url}: {e}", file=sys.stderr)
        return 1
    return 0 if result is None else int(result)


if __name__ == "__main__":
    sys.exit(main())
