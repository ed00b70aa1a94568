from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Sequence

from planner_sync.config import YamlConfigLoader
from planner_sync.config.models import AppConfig, ConfigLoadRequest
from planner_sync.core.errors import SyncError
from planner_sync.core.models import RESOURCE_KINDS, Record
from planner_sync.logging import init_logging
from planner_sync.store.resources import get_resource
from planner_sync.sync import SyncClient

logger = logging.getLogger(__name__)


def _parse_assignments(values: Sequence[str], *, option: str) -> dict[str, Any]:
    """Parse repeated `key=value` options. Values are read as JSON when possible."""
    parsed: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"{option} expects key=value, got: {item}")
        try:
            parsed[key.strip()] = json.loads(raw)
        except ValueError:
            parsed[key.strip()] = raw
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="planner-sync", description="Planner data sync client")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Command: pull
    pull_parser = subparsers.add_parser("pull", help="Show records of a resource")
    pull_parser.add_argument("resource", choices=RESOURCE_KINDS)
    pull_parser.add_argument("--filter", action="append", default=[], help="Filter as key=value (repeatable)")
    pull_parser.add_argument("--all", action="store_true", help="Follow pagination until the last page")
    pull_parser.add_argument("--refresh", action="store_true", help="Bypass the local cache")

    # Command: push
    push_parser = subparsers.add_parser("push", help="Create or edit a record")
    push_parser.add_argument("resource", choices=RESOURCE_KINDS)
    push_parser.add_argument("--id", default=None, help="Record id to edit; omit to create")
    push_parser.add_argument("--set", action="append", default=[], required=True, help="Field as key=value (repeatable)")

    # Command: delete
    delete_parser = subparsers.add_parser("delete", help="Delete a record")
    delete_parser.add_argument("resource", choices=RESOURCE_KINDS)
    delete_parser.add_argument("id")

    # Command: cache-clear
    clear_parser = subparsers.add_parser("cache-clear", help="Drop cached records")
    clear_parser.add_argument("resource", nargs="?", choices=RESOURCE_KINDS, default=None)

    return parser


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


def _print_records(records: Sequence[Record]) -> None:
    for record in records:
        line = {"id": record.id, **record.fields}
        if not record.confirmed:
            line["_unconfirmed"] = True
        print(json.dumps(line, ensure_ascii=False, sort_keys=True))


async def _pull(client: SyncClient, args: argparse.Namespace) -> int:
    sync = client.resource(args.resource)
    await sync.load(_parse_assignments(args.filter, option="--filter"), force=args.refresh)
    while args.all and sync.has_more and sync.last_error is None:
        before = len(sync.records)
        await sync.load_more()
        if len(sync.records) == before and not sync.has_more:
            break
    _print_records(sync.records)
    if sync.last_error is not None:
        logger.error("Fetching %s failed: %s", args.resource, sync.last_error)
        return 1
    return 0


async def _push(client: SyncClient, args: argparse.Namespace) -> int:
    sync = client.resource(args.resource)
    fields = _parse_assignments(args.set, option="--set")
    await sync.load()
    if args.id is None and not get_resource(args.resource).singleton:
        record_id = sync.create(fields)
    else:
        record_id = sync.edit(args.id, fields)
    await sync.flush()
    for notice in sync.notices:
        logger.warning("%s (record_id=%s)", notice.message, notice.record_id)
    shown = next((r for r in sync.records if r.id == sync.mutator.resolve(record_id)), None)
    if shown is None or not shown.confirmed:
        logger.error("Saving %s was not confirmed by the Data Store.", args.resource)
        return 1
    _print_records([shown])
    return 1 if any(n.level == "error" for n in sync.notices) else 0


async def _delete(client: SyncClient, args: argparse.Namespace) -> int:
    sync = client.resource(args.resource)
    removed = await sync.remove(args.id)
    if not removed:
        logger.error("Deleting %s %s failed.", args.resource, args.id)
        return 1
    logger.info("Deleted. resource=%s record_id=%s", args.resource, args.id)
    return 0


def _cache_clear(client: SyncClient, args: argparse.Namespace) -> int:
    kinds = [args.resource] if args.resource else list(RESOURCE_KINDS)
    total = sum(client.cache.invalidate_resource(kind) for kind in kinds)
    logger.info("Local cache cleared. resources=%s entries=%d", kinds, total)
    return 0


async def _main_async() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    config = await _load_config(args)
    init_logging(config.logging)

    async with SyncClient(config) as client:
        try:
            if args.command == "pull":
                return await _pull(client, args)
            if args.command == "push":
                return await _push(client, args)
            if args.command == "delete":
                return await _delete(client, args)
            if args.command == "cache-clear":
                return _cache_clear(client, args)
        except argparse.ArgumentTypeError as e:
            parser.error(str(e))
        except SyncError as e:
            logger.error("%s", e)
            return 1
    return 2


def main() -> None:
    try:
        sys.exit(asyncio.run(_main_async()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
