"""Rule strings: alternative paths, trailing scripts and templates.

A rule looks like ``@JSon:$.data.list&&$..[?(@.bookId)]<js>result</js>``.
The optional ``@JSon:`` prefix is dropped, a trailing ``<js>...</js>`` block
or ``@js:`` tail is split off as an opaque script, and the rest is split
into alternative paths that are tried in order until one yields data. A
rule that is only a script hands the whole document to the evaluator.
"""

from __future__ import annotations

import json
import re
import warnings
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import MalformedRule
from .jsonpath import PathExpression, evaluate, parse_path
from .tree import Node, NodeKind, node_kind

SCRIPT_OPEN = "<js>"
SCRIPT_CLOSE = "</js>"

_JSON_PREFIX = re.compile(r"^@json:", re.IGNORECASE)
_TRAILING_SCRIPT = re.compile(
    rf"^(.*?)\s*{re.escape(SCRIPT_OPEN)}(.*?){re.escape(SCRIPT_CLOSE)}\s*$", re.DOTALL
)
_SUFFIX_SCRIPT = re.compile(r"^(.*?)\s*@js:(.*)$", re.DOTALL | re.IGNORECASE)
_PLACEHOLDER = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_BARE_KEY = re.compile(r"^[\w.]+$")


@dataclass(frozen=True, slots=True)
class RuleAlternatives:
    """Ordered alternatives plus the optional post-processing script."""

    paths: tuple[PathExpression, ...]
    script: str | None = None
    # No path text at all: the script receives the whole document.
    script_only: bool = False


@dataclass(frozen=True, slots=True)
class Resolution:
    """Outcome of resolving a rule against a document."""

    value: Node
    script: str | None = None

    @property
    def found(self) -> bool:
        return is_usable(self.value)


class ScriptEvaluator(Protocol):
    """Sandboxed runner for the scripts embedded in rules."""

    def execute(self, script: str, value: Any) -> Any: ...


class PassthroughEvaluator:
    """Evaluator used when no sandbox is configured; returns its input."""

    def execute(self, script: str, value: Any) -> Any:
        return value


def split_script(raw: str) -> tuple[str, str | None]:
    """Split ``raw`` into its path portion and trailing script, if any.

    The script is either a closing ``<js>...</js>`` block or everything after
    an ``@js:`` marker. The path portion may be empty, in which case the
    script runs over the whole document.
    """

    match = _TRAILING_SCRIPT.match(raw) or _SUFFIX_SCRIPT.match(raw)
    if match is None:
        return raw.strip(), None
    return match.group(1).strip(), match.group(2).strip()


def split_alternatives(path_text: str) -> list[str]:
    """Split on ``&&`` if present, else on ``||``; both mean "try the next"."""

    if "&&" in path_text:
        parts = path_text.split("&&")
    elif "||" in path_text:
        parts = path_text.split("||")
    else:
        parts = [path_text]
    return [part.strip() for part in parts if part.strip()]


def parse_rule(raw: str, *, bare_keys: bool = False) -> RuleAlternatives:
    """Parse a rule string; malformed alternatives are dropped with a warning.

    With ``bare_keys`` an alternative such as ``book.name`` is read as
    ``$.book.name``, the shorthand older sources use for object fields.
    """

    if not isinstance(raw, str):
        return RuleAlternatives(paths=())

    text = _JSON_PREFIX.sub("", raw.strip()).strip()
    path_text, script = split_script(text)
    if not path_text and script is not None:
        return RuleAlternatives(paths=(), script=script, script_only=True)

    paths: list[PathExpression] = []
    for candidate in split_alternatives(path_text):
        if bare_keys and _BARE_KEY.match(candidate):
            candidate = f"$.{candidate}"
        try:
            paths.append(parse_path(candidate))
        except MalformedRule as exc:
            warnings.warn(f"Rule: skipping alternative: {exc}", stacklevel=2)

    return RuleAlternatives(paths=tuple(paths), script=script)


def is_usable(value: Node) -> bool:
    """A result counts when it is neither ``None`` nor an empty list."""

    if value is None:
        return False
    if node_kind(value) is NodeKind.ARRAY and len(value) == 0:  # type: ignore[arg-type]
        return False
    return True


def resolve(root: Node, alternatives: RuleAlternatives | str) -> Resolution:
    """Return the first usable alternative, or ``[]`` when none matches.

    Later alternatives are never evaluated once one succeeds. The script is
    only handed back together with a found value.
    """

    if isinstance(alternatives, str):
        alternatives = parse_rule(alternatives)
    if alternatives.script_only:
        return Resolution(value=root, script=alternatives.script)

    for path in alternatives.paths:
        value = evaluate(root, path)
        if is_usable(value):
            return Resolution(value=value, script=alternatives.script)
    return Resolution(value=[])


def apply_script(resolution: Resolution, evaluator: ScriptEvaluator | None) -> Any:
    """Run the rule's script over the resolved value, if both exist."""

    if resolution.script is None or not resolution.found:
        return resolution.value
    runner = evaluator or PassthroughEvaluator()
    return runner.execute(resolution.script, resolution.value)


def stringify(value: Any) -> str:
    """Text a field receives for a resolved value."""

    match node_kind(value):
        case NodeKind.NULL:
            return ""
        case NodeKind.STRING:
            return value
        case NodeKind.BOOLEAN:
            return "true" if value else "false"
        case NodeKind.NUMBER:
            return json.dumps(value)
        case NodeKind.ARRAY:
            if not value:
                return ""
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        case NodeKind.OBJECT:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def field_text(value: Any) -> str:
    """Like ``stringify`` but joins list results with commas."""

    if node_kind(value) is NodeKind.ARRAY:
        return ",".join(stringify(item) for item in value)
    return stringify(value)


def render_template(root: Node, template: str) -> str:
    """Replace each ``{{ rule }}`` placeholder with the value it resolves to.

    List results are joined with commas; misses become empty strings.
    """

    def _substitute(match: re.Match[str]) -> str:
        rule = parse_rule(match.group(1), bare_keys=True)
        return field_text(resolve(root, rule).value)

    return _PLACEHOLDER.sub(_substitute, template)
