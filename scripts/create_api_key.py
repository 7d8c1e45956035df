from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from upgradeguard.core.logging import configure_logging
from upgradeguard.domain.models import ApiKey, User
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services.auth.api_keys import generate_api_key, normalize_role


logger = logging.getLogger("upgradeguard.scripts.create_api_key")


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--role", required=True, help="Role: reader|editor|admin")
    parser.add_argument("--name", required=True, help="Key label shown to operators")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--expires-in-days", type=int, default=None, help="Optional key lifetime")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    # Normalize role before writing it to the database.
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex
    issued = generate_api_key()
    expires_at = None
    if args.expires_in_days is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_in_days)

    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        if user is None:
            user = User(
                id=user_id,
                tenant_id=args.tenant,
                email=args.email,
                role=role,
                is_active=True,
            )
            session.add(user)
        else:
            # Ensure existing users stay tenant-bound when issuing new keys.
            if user.tenant_id != args.tenant:
                raise ValueError("User tenant_id does not match requested tenant")
            if user.role != role:
                user.role = role
            if args.email and user.email != args.email:
                user.email = args.email
        # Flush the user row before inserting API keys to satisfy FK constraints.
        await session.flush()

        session.add(
            ApiKey(
                id=issued.key_id,
                user_id=user.id,
                tenant_id=user.tenant_id,
                key_prefix=issued.key_prefix,
                key_hash=issued.key_hash,
                name=args.name,
                expires_at=expires_at,
            )
        )
        await session.commit()

    logger.info("api_key_created tenant_id=%s key_id=%s role=%s", args.tenant, issued.key_id, role)
    print("API key created:")
    print(f"  key_id: {issued.key_id}")
    print(f"  key_prefix: {issued.key_prefix}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
