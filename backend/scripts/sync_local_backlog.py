"""CLI helper for pushing locally queued scoreboard actions to Supabase."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import List

from mbb_core import OfflineSyncClient
from mbb_core.sync_engine import DrainReport


def _format_report(report: DrainReport) -> str:
    lines = [
        f"Queued actions: {report.synced} synced, {report.retried} retrying, "
        f"{report.terminal} need attention, {report.remaining} remaining"
    ]
    for item in report.errors:
        lines.append(f"  - {item}")
    return "\n".join(lines)


def _parse_args(argv: List[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--interval",
        type=float,
        default=0.0,
        help="Keep running and drain every INTERVAL seconds (default: drain once)",
    )
    parser.add_argument("--verbose", action="store_true", help="Log sync activity")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    client = OfflineSyncClient.from_env()
    if not client.engine.remote.configured:
        print("ERROR: Supabase configuration is required to sync queued actions", file=sys.stderr)
        return 1

    report = client.request_sync(force=True)
    print(_format_report(report))

    while args.interval > 0:
        try:
            time.sleep(args.interval)
        except KeyboardInterrupt:
            break
        report = client.tick()
        if report is not None:
            print(_format_report(report))

    return 1 if client.get_sync_status().has_terminal_failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
