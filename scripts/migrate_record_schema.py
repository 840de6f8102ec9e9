#!/usr/bin/env python3
"""
Convert exported secret metadata items from the legacy camelCase schema to
the canonical record schema.

The export is a JSON array of items (as dumped from the metadata table). The
converted items are written back out as a JSON array, ready for a bulk load.
Items that cannot be converted are reported and left out of the output.
"""

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from shared.config import get_config
from shared.logging import InvocationContext, configure_logging
from shared.persistence import InMemoryRecordStore
from shared.records import MigrationReport, is_legacy_item, migrate_record_store
from shared.retry import RetryConfig, RetryingOperationExecutor


async def migrate(items: List[Dict[str, Any]], page_size: int) -> Tuple[MigrationReport, List[Dict[str, Any]]]:
    """Run the migration over an exported item list."""
    config = get_config()
    store = InMemoryRecordStore()
    # legacy items are keyed by secretId, canonical ones by id
    store.load([i for i in items if "secretId" in i], key_attribute="secretId")
    store.load([i for i in items if "secretId" not in i])

    executor = RetryingOperationExecutor(
        RetryConfig.from_milliseconds(config.retry_max_attempts, config.retry_delays_ms)
    )
    ctx = InvocationContext.new("migration")
    report = await migrate_record_store(store, executor, ctx, page_size=page_size)

    converted: List[Dict[str, Any]] = []
    token: Optional[Dict[str, Any]] = None
    while True:
        page = await store.list(page_size, token)
        converted.extend(item for item in page.items if not is_legacy_item(item))
        token = page.next_token
        if not token:
            return report, converted


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate secret metadata items to the canonical schema.")
    parser.add_argument("input", type=Path, help="JSON array of exported metadata items")
    parser.add_argument("--output", type=Path, default=None, help="Where to write the converted items")
    parser.add_argument("--page-size", type=int, default=100, help="Items per page while scanning")
    parser.add_argument("--dry-run", action="store_true", help="Report counts without writing output")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging("record-migration", get_config().log_level)
    try:
        items = json.loads(args.input.read_text())
        if not isinstance(items, list):
            print("[migrate] input must be a JSON array", file=sys.stderr)
            return 2
        report, converted = asyncio.run(migrate(items, args.page_size))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[migrate] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(dataclasses.asdict(report), indent=2))

    if args.dry_run:
        print("[migrate] DRY RUN - no output written")
        return 0

    if args.output:
        args.output.write_text(json.dumps(converted, indent=2))

    return 0 if report.failed == 0 else 3


if __name__ == "__main__":
    raise SystemExit(main())
