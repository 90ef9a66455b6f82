#!/usr/bin/env python3
"""
Quota Ledger CLI

Operator commands for inspecting usage and managing limits and admins.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta

from quota_ledger.config import load_config
from quota_ledger.ledger import QuotaLedger
from quota_ledger.models import BucketKey, Scope, UsageWindow
from quota_ledger.storage import LedgerError
from quota_ledger.window import resolve_window


def _open_ledger(args) -> QuotaLedger:
    config = load_config(args.config)
    return QuotaLedger(db_path=args.db, config=config)


def _window(args, ledger: QuotaLedger) -> UsageWindow:
    if args.window_id:
        return UsageWindow.daily(args.window_id, resolve_window(ledger.config).time_zone)
    return resolve_window(ledger.config)


def _format_tokens(value) -> str:
    return "unlimited" if value is None else f"{value:,}"


async def cmd_status(args) -> int:
    async with _open_ledger(args) as ledger:
        window = _window(args, ledger)
        snapshot = await ledger.get_snapshot(BucketKey(args.scope, args.key), window)

    if args.json:
        print(json.dumps({
            "bucket": snapshot.bucket.label,
            "window": window.id,
            "time_zone": window.time_zone,
            "limit": snapshot.limit_tokens,
            "used": snapshot.used_tokens,
            "reserved": snapshot.reserved_tokens,
            "remaining": snapshot.remaining_tokens,
        }, indent=2))
        return 0

    print(f"Bucket:    {snapshot.bucket.label}")
    print(f"Window:    {window.id} ({window.time_zone})")
    print(f"Limit:     {_format_tokens(snapshot.limit_tokens)}")
    print(f"Used:      {snapshot.used_tokens:,}")
    print(f"Reserved:  {snapshot.reserved_tokens:,}")
    print(f"Remaining: {_format_tokens(snapshot.remaining_tokens)}")
    return 0


async def cmd_limit(args) -> int:
    async with _open_ledger(args) as ledger:
        if args.limit_action == "set":
            value = await ledger.set_limit(args.scope, args.key, args.tokens)
            print(f"✓ {args.scope}:{args.key} daily limit set to {value:,}")
        elif args.limit_action == "clear":
            if await ledger.clear_limit(args.scope, args.key):
                print(f"✓ Override cleared for {args.scope}:{args.key}")
            else:
                print(f"No override stored for {args.scope}:{args.key}")
        else:
            value = await ledger.get_limit(args.scope, args.key)
            print(_format_tokens(value))
    return 0


async def cmd_admin(args) -> int:
    async with _open_ledger(args) as ledger:
        if args.admin_action == "add":
            await ledger.add_admin(args.user_id)
            print(f"✓ {args.user_id} is now a quota admin")
        elif args.admin_action == "remove":
            if not await ledger.remove_admin(args.user_id):
                print(f"{args.user_id} is not a quota admin", file=sys.stderr)
                return 1
            print(f"✓ {args.user_id} removed")
        elif args.admin_action == "check":
            is_admin = await ledger.is_admin(args.user_id)
            print("yes" if is_admin else "no")
            return 0 if is_admin else 1
        else:
            admins = await ledger.list_admins()
            if not admins:
                print("No quota admins")
            for user_id in admins:
                print(user_id)
    return 0


async def cmd_sweep(args) -> int:
    async with _open_ledger(args) as ledger:
        older_than = timedelta(seconds=args.older_than_seconds) if args.older_than_seconds else None
        swept = await ledger.sweep_stale_reservations(older_than)
    print(f"Removed {swept} stale reservation(s)")
    return 0


def _add_bucket_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--scope", required=True, choices=[s.value for s in Scope])
    parser.add_argument("--key", default="global", help="User id, topic id, or 'global'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quota-ledger",
        description="Inspect and manage daily token quotas",
    )
    parser.add_argument("--db", help="Ledger database path (default from config)")
    parser.add_argument("--config", help="YAML config with the usage-limits section")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show a bucket's usage")
    _add_bucket_args(status)
    status.add_argument("--window-id", help="Window date YYYY-MM-DD (default: today)")
    status.add_argument("--json", action="store_true", help="Machine-readable output")
    status.set_defaults(func=cmd_status)

    limit = subparsers.add_parser("limit", help="Get, set or clear a limit override")
    limit_sub = limit.add_subparsers(dest="limit_action", required=True)
    limit_get = limit_sub.add_parser("get")
    _add_bucket_args(limit_get)
    limit_set = limit_sub.add_parser("set")
    _add_bucket_args(limit_set)
    limit_set.add_argument("tokens", type=int)
    limit_clear = limit_sub.add_parser("clear")
    _add_bucket_args(limit_clear)
    limit.set_defaults(func=cmd_limit)

    admin = subparsers.add_parser("admin", help="Manage quota admins")
    admin_sub = admin.add_subparsers(dest="admin_action", required=True)
    admin_sub.add_parser("list")
    for action in ("add", "remove", "check"):
        admin_sub.add_parser(action).add_argument("user_id")
    admin.set_defaults(func=cmd_admin)

    sweep = subparsers.add_parser("sweep", help="Remove reservations left by crashed runs")
    sweep.add_argument(
        "--older-than-seconds",
        type=int,
        help="Age threshold (default: reservationTtlSeconds from config)",
    )
    sweep.set_defaults(func=cmd_sweep)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(args.func(args))
    except (LedgerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
