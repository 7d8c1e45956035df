from __future__ import annotations

import pytest

from upgradeguard.core.errors import ValidationError
from upgradeguard.merge.canonical import MISSING
from upgradeguard.merge.differ import (
    PatchOp,
    apply_patch,
    diff,
    format_pointer,
    get_at,
    ops_from_json,
    ops_to_json,
    parse_pointer,
    paths_overlap,
)


def test_identical_bodies_have_empty_diff() -> None:
    body = {"a": 1, "b": {"c": [1, 2]}}
    assert diff(body, {"b": {"c": [1, 2]}, "a": 1}) == []


def test_objects_recurse_and_arrays_replace_wholesale() -> None:
    old = {"label": "Status", "choices": ["open", "closed"], "meta": {"x": 1}}
    new = {"label": "Status", "choices": ["open", "in_progress", "closed"], "meta": {"x": 2, "y": 3}}
    assert ops_to_json(diff(old, new)) == [
        {"op": "replace", "path": "/choices", "value": ["open", "in_progress", "closed"]},
        {"op": "replace", "path": "/meta/x", "value": 2},
        {"op": "add", "path": "/meta/y", "value": 3},
    ]


def test_removed_key_and_type_change() -> None:
    ops = diff({"a": 1, "b": "x"}, {"b": {"nested": True}})
    assert ops_to_json(ops) == [
        {"op": "remove", "path": "/a"},
        {"op": "replace", "path": "/b", "value": {"nested": True}},
    ]


def test_bool_and_int_are_not_equal() -> None:
    assert ops_to_json(diff({"a": 1}, {"a": True})) == [{"op": "replace", "path": "/a", "value": True}]


def test_root_add_and_remove() -> None:
    assert ops_to_json(diff(MISSING, {"a": 1})) == [{"op": "add", "path": "", "value": {"a": 1}}]
    assert ops_to_json(diff({"a": 1}, MISSING)) == [{"op": "remove", "path": ""}]


@pytest.mark.parametrize(
    "old,new",
    [
        ({"a": 1}, {"a": 2, "b": [1]}),
        ({"a": {"b": {"c": 1}}}, {"a": {"b": {}}}),
        ({"list": [1, 2, 3]}, {"list": []}),
        ("text", {"now": "object"}),
    ],
)
def test_apply_patch_reproduces_target(old, new) -> None:
    assert apply_patch(old, diff(old, new)) == new


def test_apply_patch_does_not_mutate_input() -> None:
    body = {"a": {"b": 1}}
    apply_patch(body, [PatchOp("replace", "/a/b", 2)])
    assert body == {"a": {"b": 1}}


def test_apply_patch_on_arrays() -> None:
    body = {"items": ["a", "c"]}
    result = apply_patch(body, [PatchOp("add", "/items/1", "b"), PatchOp("add", "/items/-", "d")])
    assert result == {"items": ["a", "b", "c", "d"]}
    assert apply_patch(result, [PatchOp("remove", "/items/0")]) == {"items": ["b", "c", "d"]}


@pytest.mark.parametrize(
    "op",
    [
        PatchOp("replace", "/missing", 1),
        PatchOp("remove", "/missing"),
        PatchOp("add", "/items/9", 1),
        PatchOp("add", "/items/01", 1),
        PatchOp("add", "/a/b/c", 1),
    ],
)
def test_apply_patch_rejects_bad_paths(op) -> None:
    with pytest.raises(ValidationError):
        apply_patch({"a": 1, "items": []}, [op])


def test_pointer_escaping() -> None:
    tokens = ["a/b", "c~d"]
    pointer = format_pointer(tokens)
    assert pointer == "/a~1b/c~0d"
    assert parse_pointer(pointer) == tokens
    assert ops_to_json(diff({}, {"x/y": 1})) == [{"op": "add", "path": "/x~1y", "value": 1}]


def test_parse_pointer_requires_leading_slash() -> None:
    with pytest.raises(ValidationError):
        parse_pointer("a/b")


def test_get_at() -> None:
    body = {"a": {"b": [10, 20]}}
    assert get_at(body, "/a/b/1") == 20
    assert get_at(body, "/a/c") is MISSING
    assert get_at(body, "/a/b/5") is MISSING
    assert get_at(body, "") == body


def test_paths_overlap_by_whole_segments() -> None:
    assert paths_overlap("/a", "/a/b")
    assert paths_overlap("/a/b", "/a")
    assert paths_overlap("/a", "/a")
    assert paths_overlap("", "/anything")
    assert not paths_overlap("/a", "/ab")
    assert not paths_overlap("/a/b", "/a/c")


def test_ops_from_json_validates_shape() -> None:
    ops = ops_from_json([{"op": "remove", "path": "/a"}, {"op": "add", "path": "/b", "value": None}])
    assert ops == [PatchOp("remove", "/a"), PatchOp("add", "/b", None)]
    with pytest.raises(ValidationError):
        ops_from_json({"op": "add"})
    with pytest.raises(ValidationError):
        ops_from_json([{"op": "move", "path": "/a"}])
    with pytest.raises(ValidationError):
        ops_from_json([{"op": "add", "path": "/a"}])
