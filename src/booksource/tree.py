"""Classification and traversal of decoded JSON documents.

Documents are kept as the plain values ``json.loads`` produces. ``NodeKind``
gives every value an explicit tag so callers can dispatch with ``match``
instead of probing types ad hoc.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterator, Union

Node = Union[None, bool, int, float, str, list, dict]


class NodeKind(Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def node_kind(value: Any) -> NodeKind:
    """Return the tag for a decoded JSON value.

    Tuples count as arrays and any other mapping-like value must be a dict;
    unknown types are treated as strings so foreign values never crash the
    evaluator.
    """

    if value is None:
        return NodeKind.NULL
    # bool is a subclass of int, so it has to be checked first.
    if isinstance(value, bool):
        return NodeKind.BOOLEAN
    if isinstance(value, (int, float)):
        return NodeKind.NUMBER
    if isinstance(value, str):
        return NodeKind.STRING
    if isinstance(value, (list, tuple)):
        return NodeKind.ARRAY
    if isinstance(value, dict):
        return NodeKind.OBJECT
    return NodeKind.STRING


def children(node: Node) -> list[Node]:
    """Return the direct children of a container in container order."""

    match node_kind(node):
        case NodeKind.ARRAY:
            return list(node)  # type: ignore[arg-type]
        case NodeKind.OBJECT:
            return list(node.values())  # type: ignore[union-attr]
        case NodeKind.NULL | NodeKind.BOOLEAN | NodeKind.NUMBER | NodeKind.STRING:
            return []


def walk(root: Node) -> Iterator[Node]:
    """Yield every node of ``root`` in pre-order, each exactly once.

    An explicit stack keeps deep documents from hitting the recursion limit.
    """

    stack: list[Node] = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(children(node)))


def scalar_text(value: Node) -> str | None:
    """Canonical text of a scalar for loose equality.

    ``None`` for containers and for null, which never equals a literal.
    """

    match node_kind(value):
        case NodeKind.STRING:
            return value  # type: ignore[return-value]
        case NodeKind.BOOLEAN:
            return "true" if value else "false"
        case NodeKind.NUMBER:
            if isinstance(value, float) and value.is_integer():
                return str(int(value))
            return str(value)
        case NodeKind.NULL | NodeKind.ARRAY | NodeKind.OBJECT:
            return None
