from __future__ import annotations

from uuid import uuid4

import pytest

from upgradeguard.services.auth.api_keys import (
    generate_api_key,
    hash_api_key,
    normalize_role,
    parse_api_key,
    role_allows,
)


def test_issued_key_embeds_its_id() -> None:
    key_id = uuid4().hex
    issued = generate_api_key(key_id=key_id)
    assert issued.key_id == key_id
    assert issued.raw_key.startswith(f"ugk_{key_id}_")
    assert issued.key_prefix == f"ugk_{key_id[:8]}"
    assert issued.key_hash == hash_api_key(issued.raw_key)
    assert parse_api_key(issued.raw_key) == key_id
    # Two issues never share a secret.
    assert generate_api_key(key_id=key_id).raw_key != issued.raw_key


def test_malformed_keys_are_not_parsed() -> None:
    key_id = uuid4().hex
    secret = "s" * 43
    assert parse_api_key("not-a-real-key") is None
    assert parse_api_key(f"nrgk_{key_id}_{secret}") is None
    assert parse_api_key(f"ugk_{key_id.upper()}_{secret}") is None
    assert parse_api_key(f"ugk_{key_id}_short") is None
    # Secrets may themselves contain underscores.
    assert parse_api_key(f"ugk_{key_id}_{secret}_tail") == key_id


def test_generate_rejects_non_hex_key_id() -> None:
    with pytest.raises(ValueError):
        generate_api_key(key_id="ops_key")


def test_role_vocabulary() -> None:
    assert normalize_role(" Editor ") == "editor"
    with pytest.raises(ValueError):
        normalize_role("owner")
    assert role_allows(role="admin", minimum_role="editor")
    assert role_allows(role="editor", minimum_role="editor")
    assert not role_allows(role="reader", minimum_role="editor")
    assert not role_allows(role="unknown", minimum_role="reader")
