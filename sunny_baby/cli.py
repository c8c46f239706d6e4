"""Command line entry point for one-off sync operations on a local database.

Usage::

    python -m sunny_baby [--settings PATH] [--database PATH] <command>

Commands: ``sync`` (pull, merge and upload the result), ``push`` (upload the
local state), ``status`` (print diagnostics) and ``export`` (dump the local
snapshot as JSON).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from aiohttp import ClientSession

from .cloudsync import CloudSyncError, CloudSyncManager
from .models import ALL_KINDS
from .settings import AppSettings
from .storage import RecordStore
from .tracker import BabyTracker

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sunny_baby", description="Sunny Baby local database and cloud sync")
    parser.add_argument("--settings", type=Path, default=Path("sunny_baby.json"), help="JSON or YAML settings file")
    parser.add_argument("--database", type=Path, default=Path("sunny_baby.db"), help="SQLite record store path")
    parser.add_argument("--legacy", type=Path, default=None, help="Legacy key/value JSON dump used as fallback")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sync", help="Pull the remote snapshot, merge it and upload the result")
    sub.add_parser("push", help="Upload the local snapshot")
    sub.add_parser("status", help="Print sync diagnostics and local record counts")
    export = sub.add_parser("export", help="Write the local snapshot as JSON")
    export.add_argument("--output", "-o", type=Path, default=None, help="Destination file (default stdout)")
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    settings = AppSettings.load(args.settings)
    store = RecordStore(args.database)
    tracker = BabyTracker(store, settings)
    source = await tracker.async_load(args.legacy)
    _LOGGER.debug("Local state loaded from %s", source)

    if args.command == "export":
        payload = tracker.snapshot().to_json()
        if args.output is None:
            print(payload)
        else:
            args.output.write_text(payload, encoding="utf-8")
            _LOGGER.info("Wrote snapshot to %s", args.output)
        return 0

    async with ClientSession() as session:
        manager = CloudSyncManager(tracker, settings, session=session)
        if args.command == "status":
            report = manager.diagnostics()
            report["records"] = {kind.value: store.count(kind) for kind in ALL_KINDS}
            print(json.dumps(report, indent=2))
            return 0
        try:
            result = await manager.async_sync_now(pull=args.command == "sync", push=True)
        except CloudSyncError as err:
            _LOGGER.error("%s failed (%s): %s", args.command, err.reason, err)
            return 1
        finally:
            await manager.async_stop()
    print(json.dumps(result, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    try:
        return asyncio.run(main_async(args))
    except ValueError as err:
        _LOGGER.error("Invalid configuration: %s", err)
        return 2
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
