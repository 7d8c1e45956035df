from __future__ import annotations

import argparse
import asyncio
import json
import sys

from upgradeguard.core.errors import UpgradeGuardError
from upgradeguard.core.logging import configure_logging
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services.manifests import UPGRADE_TYPES, build_manifest, serialize_manifest


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build an upgrade manifest from published snapshots")
    parser.add_argument("--from-version", required=True)
    parser.add_argument("--to-version", required=True)
    parser.add_argument("--upgrade-type", default="minor", choices=UPGRADE_TYPES)
    parser.add_argument("--description", default=None)
    parser.add_argument("--release-notes", default=None)
    parser.add_argument("--mandatory", action="store_true", help="Mark the upgrade as mandatory")
    return parser


async def _build(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        manifest, created = await build_manifest(
            session,
            from_version=args.from_version,
            to_version=args.to_version,
            description=args.description,
            upgrade_type=args.upgrade_type,
            is_mandatory=args.mandatory,
            release_notes=args.release_notes,
            created_by="build_manifest",
        )
    payload = serialize_manifest(manifest)
    print(json.dumps({"created": created, "manifest": payload}, indent=2, sort_keys=True))
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_build(args))
    except UpgradeGuardError as exc:
        print(f"build_manifest failed: {exc.code} {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
