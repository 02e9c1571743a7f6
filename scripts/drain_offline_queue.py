#!/usr/bin/env python3
"""Replay visit updates queued while the HealthTracker server was unreachable."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from healthtracker.client import create_offline_client
from healthtracker.config import load_environment
from healthtracker.observability import configure_logging
from healthtracker.resolution import ask_user, prefer_local, prefer_server

POLICIES = {
    "ask": ask_user,
    "server": prefer_server,
    "local": prefer_local,
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Drain the offline visit update queue against a HealthTracker server.",
    )
    parser.add_argument("--base-url", required=True, help="Server root, e.g. http://localhost:8000")
    parser.add_argument(
        "--queue",
        help="Queue file (default: HEALTHTRACKER_QUEUE_PATH or the user data dir)",
    )
    parser.add_argument(
        "--policy",
        choices=sorted(POLICIES),
        default="ask",
        help="How to settle conflicts found while draining (default: %(default)s)",
    )
    return parser.parse_args()


async def _drain(args: argparse.Namespace) -> int:
    queue = create_offline_client(args.base_url, queue_path=args.queue, policy=POLICIES[args.policy])
    if args.policy != "ask" and queue.unresolved:
        print(f"Retrying {queue.requeue_unresolved()} earlier conflict(s) with --policy {args.policy}.")
    pending = len(queue)
    if not pending:
        print("Offline queue is empty.")
        if queue.unresolved:
            print(f"{len(queue.unresolved)} conflict(s) still wait for a --policy choice.")
        return 0

    report = await queue.set_online()
    print(f"Replayed {report.processed} of {pending} queued update(s).")
    print(f"  applied:    {len(report.applied)}")
    print(f"  resolved:   {len(report.resolved)}")
    print(f"  unresolved: {len(report.unresolved)}")
    print(f"  failed:     {len(report.failed)}")
    for conflict in report.unresolved:
        print(
            f"  - visit {conflict.visit_id}: local edit against version "
            f"{conflict.expected_version}, server has version {conflict.server_version}"
        )
        print(f"    local changes: {json.dumps(conflict.local_patch, sort_keys=True, default=str)}")
    for failure in report.failed:
        print(f"  - visit {failure.mutation.visit_id}: {failure.error}")
        print(f"    dropped changes: {json.dumps(failure.mutation.patch, sort_keys=True, default=str)}")
    if queue.unresolved:
        print(
            f"{len(queue.unresolved)} conflict(s) are kept in the queue file until resolved; "
            "rerun with --policy server or --policy local to settle them."
        )
    if report.interrupted:
        print(f"Server became unreachable; {len(queue)} update(s) remain queued.")
        return 1
    return 0


def main() -> int:
    load_environment()
    configure_logging()
    return asyncio.run(_drain(parse_args()))


if __name__ == "__main__":
    sys.exit(main())
