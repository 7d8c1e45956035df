from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from upgradeguard.core.errors import UpgradeGuardError
from upgradeguard.core.logging import configure_logging
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services.platform_configs import SNAPSHOT_STATUSES, publish_snapshot


logger = logging.getLogger("upgradeguard.scripts.publish_platform_snapshot")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Publish platform config snapshots for one release. The JSON file holds either a single "
            "snapshot object or a list of them, each with config_type, resource_key and body."
        )
    )
    parser.add_argument("--version", required=True, help="Platform version the snapshots belong to")
    parser.add_argument("--file", required=True, help="Path to the JSON snapshot file")
    parser.add_argument("--published-by", default="publish_platform_snapshot", help="Publisher label")
    return parser


def _load_entries(path: Path) -> list[dict[str, Any]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    entries = payload if isinstance(payload, list) else [payload]
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError("Each snapshot entry must be a JSON object")
        if entry.get("status", "active") not in SNAPSHOT_STATUSES:
            raise ValueError(f"Unsupported status '{entry.get('status')}'")
    return entries


async def _publish(args: argparse.Namespace) -> int:
    entries = _load_entries(Path(args.file))
    created_count = 0
    async with SessionLocal() as session:
        # Publish everything in one transaction so a release is never half loaded.
        for entry in entries:
            _, created = await publish_snapshot(
                session,
                config_type=entry["config_type"],
                resource_key=entry["resource_key"],
                platform_version=args.version,
                body=entry.get("body"),
                schema_version=str(entry.get("schema_version", "1")),
                status=entry.get("status", "active"),
                is_extensible=bool(entry.get("is_extensible", False)),
                description=entry.get("description"),
                published_by=args.published_by,
                commit=False,
            )
            created_count += int(created)
        await session.commit()

    logger.info(
        "platform_release_published version=%s entries=%s created=%s",
        args.version,
        len(entries),
        created_count,
    )
    print(f"published {created_count} new snapshot(s), {len(entries) - created_count} unchanged")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_publish(args))
    except (UpgradeGuardError, ValueError, KeyError, OSError) as exc:
        print(f"publish_platform_snapshot failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
