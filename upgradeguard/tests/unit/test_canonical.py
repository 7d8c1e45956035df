from __future__ import annotations

import pytest

from upgradeguard.core.errors import ValidationError
from upgradeguard.merge.canonical import MISSING, canonical_json, canonicalize, checksum, equal, json_type


def test_key_order_does_not_change_checksum() -> None:
    left = {"b": 1, "a": {"y": [1, 2], "x": None}}
    right = {"a": {"x": None, "y": [1, 2]}, "b": 1}
    assert checksum(left) == checksum(right)
    assert canonical_json(left) == '{"a":{"x":null,"y":[1,2]},"b":1}'


def test_array_order_is_significant() -> None:
    assert checksum([1, 2]) != checksum([2, 1])
    assert not equal({"choices": ["open", "closed"]}, {"choices": ["closed", "open"]})


def test_null_is_distinct_from_absent() -> None:
    # An explicit null survives; a MISSING entry is dropped from the object.
    assert canonicalize({"a": None}) == {"a": None}
    assert canonicalize({"a": MISSING, "b": 1}) == {"b": 1}
    assert checksum({"a": None}) != checksum({})


def test_booleans_and_numbers_stay_distinct() -> None:
    assert checksum(True) != checksum(1)
    assert checksum(1) != checksum("1")


def test_checksum_is_sha256_hex() -> None:
    digest = checksum({"a": 1})
    assert len(digest) == 64
    assert all(char in "0123456789abcdef" for char in digest)


def test_tuples_normalize_to_lists() -> None:
    assert canonicalize({"a": (1, 2)}) == {"a": [1, 2]}


def test_cyclic_structure_is_rejected() -> None:
    body: dict = {"a": {}}
    body["a"]["self"] = body
    with pytest.raises(ValidationError):
        canonicalize(body)


def test_shared_reference_is_not_a_cycle() -> None:
    shared = {"x": 1}
    assert canonicalize({"a": shared, "b": shared}) == {"a": {"x": 1}, "b": {"x": 1}}


@pytest.mark.parametrize("value", [float("nan"), float("inf"), {1: "numeric key"}, {"a": object()}])
def test_unsupported_values_are_rejected(value) -> None:
    with pytest.raises(ValidationError):
        canonicalize(value)


def test_json_type_names() -> None:
    assert json_type(MISSING) == "missing"
    assert json_type(None) == "null"
    assert json_type(False) == "boolean"
    assert json_type(1.5) == "number"
    assert json_type("x") == "string"
    assert json_type([]) == "array"
    assert json_type({}) == "object"
