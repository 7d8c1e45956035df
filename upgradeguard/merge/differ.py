"""Structural diff and patch for JSON-like configuration bodies.

Objects are compared key by key and recurse; arrays are treated as opaque
leaves and replaced wholesale. Paths are RFC 6901 JSON Pointers, so a key
containing ``/`` or ``~`` is escaped as ``~1`` / ``~0``.

Laws: ``apply_patch(a, diff(a, b)) == b`` and ``diff(a, a) == []``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Iterable

from upgradeguard.core.errors import ValidationError
from upgradeguard.merge.canonical import MISSING, canonical_json, canonicalize


OP_ADD = "add"
OP_REMOVE = "remove"
OP_REPLACE = "replace"
PATCH_OPS = (OP_ADD, OP_REMOVE, OP_REPLACE)


@dataclass(frozen=True)
class PatchOp:
    op: str
    path: str
    value: Any = MISSING

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"op": self.op, "path": self.path}
        if self.op != OP_REMOVE:
            payload["value"] = self.value
        return payload


def escape_token(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def unescape_token(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def parse_pointer(path: str) -> list[str]:
    if path == "":
        return []
    if not path.startswith("/"):
        raise ValidationError(f"Invalid JSON pointer '{path}'")
    return [unescape_token(token) for token in path[1:].split("/")]


def format_pointer(tokens: Iterable[str]) -> str:
    return "".join(f"/{escape_token(token)}" for token in tokens)


def _same(left: Any, right: Any) -> bool:
    # Compare by canonical text so 1 and True (or 1 and 1.0) stay distinct.
    if left is MISSING or right is MISSING:
        return left is right
    return canonical_json(left) == canonical_json(right)


def diff(old: Any, new: Any) -> list[PatchOp]:
    """Return ordered patch operations transforming ``old`` into ``new``."""
    ops: list[PatchOp] = []
    _diff_into(ops, old, new, [])
    return ops


def _diff_into(ops: list[PatchOp], old: Any, new: Any, tokens: list[str]) -> None:
    path = format_pointer(tokens)
    if old is MISSING and new is MISSING:
        return
    if old is MISSING:
        ops.append(PatchOp(OP_ADD, path, canonicalize(new)))
        return
    if new is MISSING:
        ops.append(PatchOp(OP_REMOVE, path))
        return
    if isinstance(old, dict) and isinstance(new, dict):
        for key in sorted(set(old) | set(new)):
            _diff_into(ops, old.get(key, MISSING), new.get(key, MISSING), [*tokens, key])
        return
    if not _same(old, new):
        ops.append(PatchOp(OP_REPLACE, path, canonicalize(new)))


def apply_patch(body: Any, ops: Iterable[PatchOp]) -> Any:
    """Apply ``ops`` to a deep copy of ``body`` and return the result."""
    result = copy.deepcopy(body)
    for op in ops:
        result = _apply_one(result, op)
    return result


def _apply_one(document: Any, op: PatchOp) -> Any:
    if op.op not in PATCH_OPS:
        raise ValidationError(f"Unsupported patch op '{op.op}'")
    tokens = parse_pointer(op.path)
    if not tokens:
        if op.op == OP_REMOVE:
            return MISSING
        return copy.deepcopy(op.value)

    parent = document
    for token in tokens[:-1]:
        parent = _child(parent, token, op.path)
    last = tokens[-1]

    if isinstance(parent, dict):
        if op.op == OP_ADD:
            parent[last] = copy.deepcopy(op.value)
        elif last not in parent:
            raise ValidationError(f"Path '{op.path}' does not exist")
        elif op.op == OP_REPLACE:
            parent[last] = copy.deepcopy(op.value)
        else:
            del parent[last]
        return document

    if isinstance(parent, list):
        if op.op == OP_ADD and last == "-":
            parent.append(copy.deepcopy(op.value))
            return document
        index = _list_index(last, op.path)
        upper = len(parent) if op.op == OP_ADD else len(parent) - 1
        if index > upper:
            raise ValidationError(f"Index out of range at '{op.path}'")
        if op.op == OP_ADD:
            parent.insert(index, copy.deepcopy(op.value))
        elif op.op == OP_REPLACE:
            parent[index] = copy.deepcopy(op.value)
        else:
            parent.pop(index)
        return document

    raise ValidationError(f"Cannot apply '{op.op}' below a scalar at '{op.path}'")


def _child(container: Any, token: str, path: str) -> Any:
    if isinstance(container, dict):
        if token not in container:
            raise ValidationError(f"Path '{path}' does not exist")
        return container[token]
    if isinstance(container, list):
        index = _list_index(token, path)
        if index >= len(container):
            raise ValidationError(f"Index out of range at '{path}'")
        return container[index]
    raise ValidationError(f"Path '{path}' does not exist")


def _list_index(token: str, path: str) -> int:
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        raise ValidationError(f"Invalid array index '{token}' in '{path}'")
    return int(token)


def get_at(document: Any, path: str) -> Any:
    """Value at ``path`` or MISSING when any segment is absent."""
    current = document
    for token in parse_pointer(path):
        if isinstance(current, dict):
            if token not in current:
                return MISSING
            current = current[token]
        elif isinstance(current, list):
            if not token.isdigit() or int(token) >= len(current):
                return MISSING
            current = current[int(token)]
        else:
            return MISSING
    return current


def paths_overlap(left: str, right: str) -> bool:
    # Equal paths, or one is an ancestor of the other by whole segments.
    left_tokens = parse_pointer(left)
    right_tokens = parse_pointer(right)
    size = min(len(left_tokens), len(right_tokens))
    return left_tokens[:size] == right_tokens[:size]


def ops_to_json(ops: Iterable[PatchOp]) -> list[dict[str, Any]]:
    return [op.to_dict() for op in ops]


def ops_from_json(raw_ops: Any) -> list[PatchOp]:
    if not isinstance(raw_ops, list):
        raise ValidationError("Patch operations must be a list")
    ops: list[PatchOp] = []
    for item in raw_ops:
        if not isinstance(item, dict):
            raise ValidationError("Patch operation must be an object")
        op_name = item.get("op")
        path = item.get("path")
        if op_name not in PATCH_OPS:
            raise ValidationError(f"Unsupported patch op '{op_name}'")
        if not isinstance(path, str):
            raise ValidationError("Patch operation path must be a string")
        if op_name != OP_REMOVE and "value" not in item:
            raise ValidationError(f"Patch op '{op_name}' at '{path}' requires a value")
        ops.append(PatchOp(op_name, path, item.get("value", MISSING)))
    return ops
