"""Raw attribute trees observed from the external provisioning tool.

The external tool returns untyped, JSON-like state. Before any traversal the
engine wraps it in a small tagged variant so every walk has to say which
shape it expects:

- Scalar:  string, number, bool or null
- ListNode: ordered list of nodes
- MapNode: mapping from string key to node

Null scalars mean "not yet observed" and are treated as absent by path
resolution and late initialization.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

# Bounds recursion on untrusted trees
DEFAULT_MAX_DEPTH = 32


class RawTreeError(ValueError):
    """Raised when a value cannot be represented as a raw attribute tree."""

    pass


@dataclass(frozen=True)
class Scalar:
    """Leaf value."""

    value: str | int | float | bool | None

    @property
    def is_null(self) -> bool:
        return self.value is None


@dataclass(frozen=True)
class ListNode:
    """Ordered list of nodes."""

    items: tuple[Node, ...]

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class MapNode:
    """String-keyed mapping of nodes."""

    entries: Mapping[str, Node]

    def get(self, key: str) -> Node | None:
        return self.entries.get(key)

    def __len__(self) -> int:
        return len(self.entries)


Node = Union[Scalar, ListNode, MapNode]


def parse(value: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> Node:
    """Wrap a JSON-like Python value into a raw attribute tree.

    Args:
        value: Value decoded from the external tool's state.
        max_depth: Maximum nesting depth accepted.

    Returns:
        The root node.

    Raises:
        RawTreeError: If the value nests deeper than max_depth or contains
            a type that has no raw representation.
    """
    return _parse(value, max_depth, 0)


def _parse(value: Any, max_depth: int, depth: int) -> Node:
    if depth > max_depth:
        raise RawTreeError(f"Attribute tree exceeds maximum depth of {max_depth}")

    match value:
        case Scalar() | ListNode() | MapNode():
            return value
        case None | bool() | int() | float() | str():
            return Scalar(value)
        case Mapping():
            entries: dict[str, Node] = {}
            for key, item in value.items():
                if not isinstance(key, str):
                    raise RawTreeError(f"Attribute keys must be strings, got {type(key).__name__}")
                entries[key] = _parse(item, max_depth, depth + 1)
            return MapNode(entries)
        case list() | tuple():
            return ListNode(tuple(_parse(item, max_depth, depth + 1) for item in value))
        case _:
            raise RawTreeError(f"Unsupported attribute value type: {type(value).__name__}")


def to_python(node: Node) -> Any:
    """Convert a raw attribute tree back into plain Python values."""
    match node:
        case Scalar(value=value):
            return value
        case ListNode(items=items):
            return [to_python(item) for item in items]
        case MapNode(entries=entries):
            return {key: to_python(item) for key, item in entries.items()}
        case _:
            raise RawTreeError(f"Not a raw attribute node: {type(node).__name__}")


def kind_of(node: Node) -> str:
    """Human-readable shape name used in log messages."""
    match node:
        case Scalar(value=None):
            return "null"
        case Scalar():
            return "scalar"
        case ListNode():
            return "list"
        case MapNode():
            return "map"
        case _:
            return type(node).__name__
