from __future__ import annotations

import hashlib
import re
import secrets
from typing import NamedTuple
from uuid import uuid4


KEY_SCHEME = "ugk"
KEY_SECRET_BYTES = 32
# token_urlsafe(32) yields 43 characters; anything shorter was truncated in transit.
_MIN_SECRET_LENGTH = 43
_KEY_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

# reader: inspect configs, impacts, history and previews.
# editor: customize, resolve, acknowledge and roll back tenant changes.
# admin: publish platform snapshots, build manifests and apply upgrades.
ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "editor": 2,
    "admin": 3,
}


class IssuedApiKey(NamedTuple):
    key_id: str
    raw_key: str
    key_prefix: str
    key_hash: str


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Only the digest is stored; the raw key is shown once at issue time.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def parse_api_key(raw_key: str) -> str | None:
    """Return the key id embedded in ``ugk_<key_id>_<secret>``, or None when malformed."""
    parts = raw_key.split("_", 2)
    if len(parts) != 3:
        return None
    scheme, key_id, secret = parts
    if scheme != KEY_SCHEME or not _KEY_ID_PATTERN.match(key_id):
        return None
    if len(secret) < _MIN_SECRET_LENGTH:
        return None
    return key_id


def generate_api_key(*, key_id: str | None = None) -> IssuedApiKey:
    resolved_id = key_id or uuid4().hex
    if not _KEY_ID_PATTERN.match(resolved_id):
        raise ValueError("API key ids must be 32 lowercase hex characters")
    raw_key = f"{KEY_SCHEME}_{resolved_id}_{secrets.token_urlsafe(KEY_SECRET_BYTES)}"
    return IssuedApiKey(
        key_id=resolved_id,
        raw_key=raw_key,
        key_prefix=f"{KEY_SCHEME}_{resolved_id[:8]}",
        key_hash=hash_api_key(raw_key),
    )
