from __future__ import annotations

import argparse
import asyncio
import json
import sys

from upgradeguard.core.errors import UpgradeGuardError
from upgradeguard.core.logging import configure_logging
from upgradeguard.domain.actor import system_actor
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services.impact_analysis import analyze, impact_state
from upgradeguard.services.upgrade_summary import summarize_impacts


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Analyze one tenant against an upgrade manifest")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--manifest-id", required=True, help="Upgrade manifest id")
    parser.add_argument("--force", action="store_true", help="Re-analyze records already closed")
    parser.add_argument("--json", action="store_true", help="Print every impact record as JSON")
    return parser


async def _analyze(args: argparse.Namespace) -> int:
    actor = system_actor(args.tenant, actor_id="analyze_upgrade")
    async with SessionLocal() as session:
        impacts = await analyze(session, actor=actor, manifest_id=args.manifest_id, force=args.force)
        summary = summarize_impacts(impacts)
        if args.json:
            print(json.dumps([impact_state(row) for row in impacts], indent=2, sort_keys=True))

    print(
        f"tenant={args.tenant} manifest={args.manifest_id} total={summary['total']} "
        f"blocking={len(summary['blocking'])} auto_resolvable={summary['auto_resolvable']}"
    )
    for level, count in summary["by_severity"].items():
        if count:
            print(f"  {level}: {count}")
    # Non-zero exit lets CI gates stop on blocking impacts.
    return 0 if summary["can_apply"] else 2


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_analyze(args))
    except UpgradeGuardError as exc:
        print(f"analyze_upgrade failed: {exc.code} {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
