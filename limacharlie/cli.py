# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
LimaCharlie CLI - credentials check, config sync and live streams.

Usage:
    python -m limacharlie whoami
    python -m limacharlie fetch --sections dr_rules,outputs > org.yaml
    python -m limacharlie push org.yaml --sections dr_rules --force --dry-run
    python -m limacharlie stream event --tag servers -n 10
"""

import argparse
import asyncio
import json
import logging
import sys

from .client import Client
from .errors import LimaCharlieError, SyncError
from .options import ClientOptions
from .spout import STREAM_KINDS, Spout
from .sync import SyncOptions, fetch, push_from_files

SECTION_FLAGS = (
    "resources",
    "dr_rules",
    "fp_rules",
    "outputs",
    "integrity",
    "artifacts",
    "exfil",
    "net_policies",
    "hives",
)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="limacharlie",
        description="LimaCharlie SDK - API client utilities",
    )
    parser.add_argument("--oid", help="Organization ID (default: LC_OID or config file)")
    parser.add_argument("--environment", help="Config file environment (default: LC_CURRENT_ENV)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("whoami", help="Show identity and permissions")

    fetch_parser = subparsers.add_parser("fetch", help="Print the org config as YAML")
    fetch_parser.add_argument(
        "--sections",
        default=",".join(SECTION_FLAGS),
        help=f"Comma separated sections (default: all of {','.join(SECTION_FLAGS)})",
    )
    fetch_parser.add_argument("--hive", action="append", default=[], help="Hive to fetch (repeatable)")

    push_parser = subparsers.add_parser("push", help="Apply an org config file")
    push_parser.add_argument("config", help="Path to the YAML config")
    push_parser.add_argument("--sections", default=",".join(SECTION_FLAGS), help="Comma separated sections")
    push_parser.add_argument("--force", action="store_true", help="Remove what the config does not list")
    push_parser.add_argument("--dry-run", action="store_true", help="Only show what would change")
    push_parser.add_argument(
        "--ignore-inaccessible",
        action="store_true",
        help="Skip sections the credentials cannot access",
    )

    stream_parser = subparsers.add_parser("stream", help="Print live stream messages")
    stream_parser.add_argument("kind", choices=STREAM_KINDS, help="Data type")
    stream_parser.add_argument("--tag", help="Only sensors with this tag")
    stream_parser.add_argument("--category", help="Only detections of this category")
    stream_parser.add_argument("--sid", help="Only this sensor")
    stream_parser.add_argument("-n", "--count", type=int, default=0, help="Stop after N messages (default: no limit)")

    return parser


def sync_options(sections: str, **kwargs) -> SyncOptions:
    """SyncOptions with the named sections enabled."""
    names = [s.strip() for s in sections.split(",") if s.strip()]
    unknown = [n for n in names if n not in SECTION_FLAGS]
    if unknown:
        raise ValueError(f"unknown sections: {', '.join(unknown)}")
    return SyncOptions(**{n: True for n in names}, **kwargs)


def make_client(args: argparse.Namespace) -> Client:
    return Client(ClientOptions(oid=args.oid, environment=args.environment))


async def cmd_whoami(args: argparse.Namespace) -> int:
    async with make_client(args) as client:
        who = await client.who_am_i()
    print(f"Identity:     {who.ident}")
    print(f"Orgs:         {', '.join(who.orgs) or '-'}")
    print(f"Permissions:  {', '.join(sorted(who.perms)) or '-'}")
    if who.user_perms:
        print(f"User orgs:    {len(who.user_perms)}")
    return 0


async def cmd_fetch(args: argparse.Namespace) -> int:
    options = sync_options(args.sections, hive_names=args.hive)
    async with make_client(args) as client:
        config = await fetch(client, options)
    print(config.to_yaml(), end="")
    return 0


async def cmd_push(args: argparse.Namespace) -> int:
    options = sync_options(
        args.sections,
        force=args.force,
        dry_run=args.dry_run,
        ignore_inaccessible=args.ignore_inaccessible,
    )
    async with make_client(args) as client:
        try:
            ops = await push_from_files(client, args.config, options)
        except SyncError as e:
            for op in e.operations:
                print(op)
            raise
    for op in ops:
        print(op)
    changed = sum(1 for op in ops if not op.is_present)
    print(f"{len(ops)} elements, {changed} {'would change' if args.dry_run else 'changed'}")
    return 0


async def cmd_stream(args: argparse.Namespace) -> int:
    received = 0
    async with make_client(args) as client:
        async with Spout(client, args.kind, tag=args.tag, category=args.category, sensor_id=args.sid) as spout:
            async for item in spout:
                print(json.dumps(item))
                received += 1
                if args.count and received >= args.count:
                    break
            dropped = spout.get_dropped()
    if dropped:
        print(f"{dropped} messages dropped", file=sys.stderr)
    return 0


async def main_async(args: argparse.Namespace) -> int:
    """Async main entry point."""
    if args.command == "whoami":
        return await cmd_whoami(args)
    elif args.command == "fetch":
        return await cmd_fetch(args)
    elif args.command == "push":
        return await cmd_push(args)
    elif args.command == "stream":
        return await cmd_stream(args)
    else:
        parser = create_parser()
        parser.print_help()
        return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(main_async(args))
    except (LimaCharlieError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
