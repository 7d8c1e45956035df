from __future__ import annotations

import hashlib
import json
import math
from typing import Any

from upgradeguard.core.errors import ValidationError


class _Missing:
    # Marks an absent value; dropped from objects during canonicalization.
    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def canonicalize(body: Any) -> Any:
    """Return a normalized copy of ``body`` suitable for hashing and comparison.

    Object keys are sorted, array order and nulls are preserved, entries whose
    value is ``MISSING`` are dropped and tuples become lists. Cyclic structures,
    non-string keys, non-finite floats and non-JSON values raise ValidationError.
    """
    return _canonicalize(body, path="", ancestors=set())


def _canonicalize(value: Any, *, path: str, ancestors: set[int]) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValidationError(f"Non-finite number at '{path or '/'}'")
        return value
    if isinstance(value, dict):
        marker = id(value)
        if marker in ancestors:
            raise ValidationError(f"Cyclic structure at '{path or '/'}'")
        ancestors.add(marker)
        try:
            normalized: dict[str, Any] = {}
            for key in sorted(value.keys(), key=_key_sort):
                if not isinstance(key, str):
                    raise ValidationError(f"Non-string object key {key!r} at '{path or '/'}'")
                item = value[key]
                if item is MISSING:
                    continue
                normalized[key] = _canonicalize(item, path=f"{path}/{key}", ancestors=ancestors)
            return normalized
        finally:
            ancestors.discard(marker)
    if isinstance(value, (list, tuple)):
        marker = id(value)
        if marker in ancestors:
            raise ValidationError(f"Cyclic structure at '{path or '/'}'")
        ancestors.add(marker)
        try:
            # MISSING inside arrays has no positional meaning; serialize it as null.
            return [
                None if item is MISSING else _canonicalize(item, path=f"{path}/{index}", ancestors=ancestors)
                for index, item in enumerate(value)
            ]
        finally:
            ancestors.discard(marker)
    raise ValidationError(f"Unsupported value of type {type(value).__name__} at '{path or '/'}'")


def _key_sort(key: Any) -> str:
    # Sort by text so a stray non-string key surfaces as a validation error, not a TypeError.
    return key if isinstance(key, str) else repr(key)


def canonical_json(body: Any) -> str:
    """Compact, key-sorted JSON text of the canonical form."""
    return json.dumps(
        canonicalize(body),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def checksum(body: Any) -> str:
    """SHA-256 hex digest of the canonical text."""
    return hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest()


def equal(left: Any, right: Any) -> bool:
    return checksum(left) == checksum(right)


def json_type(value: Any) -> str:
    # Coarse JSON type names used when classifying type changes.
    if value is MISSING:
        return "missing"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__
