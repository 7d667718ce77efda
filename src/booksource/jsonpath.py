"""Evaluator for the JSONPath subset used by book source rules.

Supported forms::

    $                      whole document ($. is accepted too)
    $.a.b                  nested property
    $.arr[0]               array index
    $['a b']               bracketed property name
    $.arr[*]               whole array (terminal)
    $..prop                recursive property search
    $..[?(@.prop)]         recursive search for objects holding ``prop``
    $..[?(@.prop=='v')]    ... whose ``prop`` loosely equals ``v``

Parsing rejects anything else with ``MalformedRule``. Evaluation never raises:
a miss is ``None`` and a search without hits is an empty list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from .errors import MalformedRule
from .tree import Node, NodeKind, node_kind, scalar_text, walk


@dataclass(frozen=True, slots=True)
class PropertyAccess:
    name: str


@dataclass(frozen=True, slots=True)
class Index:
    position: int


@dataclass(frozen=True, slots=True)
class Wildcard:
    pass


@dataclass(frozen=True, slots=True)
class PropertyFilter:
    """``[?(@.name)]`` when ``value`` is None, else ``[?(@.name=='value')]``."""

    name: str
    value: str | None = None


@dataclass(frozen=True, slots=True)
class RecursiveDescent:
    """Search the whole subtree.

    With a filter the matching objects are collected. Without one, ``name``
    is the property searched for: scalar values are collected, and for object,
    array or null values the object holding them.
    """

    name: str | None = None
    filter: PropertyFilter | None = None


Segment = Union[PropertyAccess, Index, Wildcard, RecursiveDescent]


@dataclass(frozen=True, slots=True)
class PathExpression:
    source: str
    segments: tuple[Segment, ...]


_NAME = re.compile(r"[^.\[\]\s]+")
_INDEX = re.compile(r"\[(\d+)\]")
_QUOTED = re.compile(r"""\[\s*(?:'([^']*)'|"([^"]*)")\s*\]""")
_FILTER = re.compile(
    r"""\[\?\(\s*@\.([^\s=)]+)\s*"""
    r"""(?:==?\s*(?:'([^']*)'|"([^"]*)"|(-?\d+(?:\.\d+)?)))?"""
    r"""\s*\)\]"""
)
# `$..name` collects the holding object when the value is one of these.
_CONTAINER_RESULT = frozenset({NodeKind.OBJECT, NodeKind.ARRAY, NodeKind.NULL})


@lru_cache(maxsize=512)
def parse_path(text: str) -> PathExpression:
    """Parse a path expression, raising ``MalformedRule`` on bad syntax."""

    source = text.strip()
    if not source.startswith("$"):
        raise MalformedRule(f"path must start with '$': {text!r}")

    rest = source[1:]
    if rest == ".":
        rest = ""

    segments: list[Segment] = []
    pos = 0
    while pos < len(rest):
        if rest.startswith("..", pos):
            segment, pos = _parse_recursive(rest, pos + 2, source)
        elif rest[pos] == ".":
            segment, pos = _parse_dotted(rest, pos + 1, source)
        elif rest[pos] == "[":
            segment, pos = _parse_bracket(rest, pos, source)
        else:
            raise MalformedRule(f"unexpected {rest[pos]!r} in path {source!r}")
        segments.append(segment)

    return PathExpression(source=source, segments=tuple(segments))


def _parse_recursive(rest: str, pos: int, source: str) -> tuple[Segment, int]:
    match = _FILTER.match(rest, pos)
    if match:
        name, single, double, bare = match.groups()
        literal = next((v for v in (single, double, bare) if v is not None), None)
        return RecursiveDescent(filter=PropertyFilter(name, literal)), match.end()

    match = _NAME.match(rest, pos)
    if match:
        return RecursiveDescent(name=match.group(0)), match.end()

    raise MalformedRule(f"bad recursive search in path {source!r}")


def _parse_dotted(rest: str, pos: int, source: str) -> tuple[Segment, int]:
    if rest.startswith("*", pos):
        return Wildcard(), pos + 1

    match = _NAME.match(rest, pos)
    if match is None:
        raise MalformedRule(f"missing property name in path {source!r}")
    return PropertyAccess(match.group(0)), match.end()


def _parse_bracket(rest: str, pos: int, source: str) -> tuple[Segment, int]:
    if rest.startswith("[*]", pos):
        return Wildcard(), pos + 3

    match = _INDEX.match(rest, pos)
    if match:
        return Index(int(match.group(1))), match.end()

    match = _QUOTED.match(rest, pos)
    if match:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        return PropertyAccess(name), match.end()

    raise MalformedRule(f"unsupported bracket expression in path {source!r}")


def evaluate(root: Node, expr: PathExpression) -> Node | None:
    """Apply ``expr`` to ``root``.

    Returns the selected node, a list of nodes for wildcard and recursive
    segments, or ``None`` when a property or index is missing.
    """

    current: Node = root
    for segment in expr.segments:
        match segment:
            case PropertyAccess(name=name):
                if node_kind(current) is not NodeKind.OBJECT or name not in current:  # type: ignore[operator]
                    return None
                current = current[name]  # type: ignore[index]
            case Index(position=position):
                if node_kind(current) is not NodeKind.ARRAY or position >= len(current):  # type: ignore[arg-type]
                    return None
                current = current[position]  # type: ignore[index]
            case Wildcard():
                if node_kind(current) is not NodeKind.ARRAY:
                    return None
                return current
            case RecursiveDescent(filter=PropertyFilter() as flt):
                return _collect_filtered(current, flt)
            case RecursiveDescent(name=name):
                return _collect_property(current, name or "")
    return current


def _collect_filtered(root: Node, flt: PropertyFilter) -> list[Node]:
    results: list[Node] = []
    for node in walk(root):
        if node_kind(node) is not NodeKind.OBJECT or flt.name not in node:  # type: ignore[operator]
            continue
        if flt.value is None or loosely_equals(node[flt.name], flt.value):  # type: ignore[index]
            results.append(node)
    return results


def _collect_property(root: Node, name: str) -> list[Node]:
    results: list[Node] = []
    for node in walk(root):
        if node_kind(node) is not NodeKind.OBJECT or name not in node:  # type: ignore[operator]
            continue
        value = node[name]  # type: ignore[index]
        results.append(node if node_kind(value) in _CONTAINER_RESULT else value)
    return results


def loosely_equals(value: Node, literal: str) -> bool:
    """Compare a node with a filter literal the way rule authors expect.

    Strings compare by text. Numbers and booleans compare numerically with
    the literal read as a number, so ``42`` equals ``'42'`` and ``'42.0'``
    and ``true`` equals ``'1'`` but not ``'true'``.
    """

    kind = node_kind(value)
    if kind in (NodeKind.NUMBER, NodeKind.BOOLEAN):
        try:
            return float(literal) == float(value)  # type: ignore[arg-type]
        except ValueError:
            return False
    text = scalar_text(value)
    return kind is NodeKind.STRING and text == literal
