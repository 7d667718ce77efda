"""HTML rules in the community selector dialect.

A rule is one or more ``||`` alternatives of the form
``part@part@...[@attribute][##regex]`` where each part is a CSS selector or
one of the shorthands ``class.a b``, ``id.x`` and ``tag.p``. A trailing
``.N`` picks the N-th match (negative counts from the end) and ``!N`` drops
it. The last part is read as an attribute (``text``, ``html``, ``ownText``,
``href``, ...) when it does not look like a selector.
"""

from __future__ import annotations

import re
import warnings
from urllib.parse import urljoin

from bs4 import BeautifulSoup, NavigableString, Tag
from soupsieve import SelectorSyntaxError

_URL_ATTRIBUTES = frozenset({"href", "src", "url"})
_SELECTOR_CHARS = re.compile(r"[#.\[@:>]")
_CJK = re.compile(r"[一-龥]")
_ATTRIBUTE = re.compile(r"^[A-Za-z][\w-]*$")
_SHORTHAND = re.compile(r"^(class|id|tag)\.(.+?)(?:\.(-?\d+))?(?:!(-?\d+))?$")
_POSITION = re.compile(r"^(.*?)(?:\.(-?\d+))?(?:!(-?\d+))?$")


def _translate(part: str) -> tuple[str, int | None, int | None]:
    """Turn one rule part into a CSS selector plus pick/drop positions."""

    part = part.strip()
    match = _SHORTHAND.match(part)
    if match:
        kind, name, pick, drop = match.groups()
        if kind == "class":
            selector = "".join(f".{cls}" for cls in name.split())
        elif kind == "id":
            selector = f"#{name.strip()}"
        else:
            selector = name.strip()
    else:
        match = _POSITION.match(part)
        selector, pick, drop = match.groups() if match else (part, None, None)
    return (
        selector.strip(),
        int(pick) if pick is not None else None,
        int(drop) if drop is not None else None,
    )


def _split_chain(option: str) -> tuple[list[str], str | None]:
    parts = [part for part in option.split("@") if part.strip()]
    if len(parts) > 1 and _ATTRIBUTE.match(parts[-1].strip()):
        return parts[:-1], parts[-1].strip()
    return parts, None


def _select_chain(soup: Tag, parts: list[str]) -> list[Tag]:
    current: list[Tag] = [soup]
    for part in parts:
        selector, pick, drop = _translate(part)
        if not selector:
            return []
        found: list[Tag] = []
        seen: set[int] = set()
        for element in current:
            matches = element.select(selector)
            if pick is not None:
                matches = [matches[pick]] if -len(matches) <= pick < len(matches) else []
            elif drop is not None and -len(matches) <= drop < len(matches):
                del matches[drop]
            for match in matches:
                if id(match) not in seen:
                    seen.add(id(match))
                    found.append(match)
        current = found
    return current


def _attribute_text(element: Tag, attribute: str | None) -> str:
    if attribute is None or attribute == "text":
        return element.get_text()
    if attribute == "html":
        return element.decode_contents()
    if attribute == "ownText":
        return "".join(
            str(child) for child in element.children if isinstance(child, NavigableString)
        )
    if attribute == "textNodes":
        return "\n".join(
            str(child).strip()
            for child in element.children
            if isinstance(child, NavigableString) and str(child).strip()
        )
    value = element.get(attribute)
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def _apply_regex(text: str, pattern: str) -> str:
    try:
        match = re.search(pattern, text)
    except re.error as exc:
        warnings.warn(f"HTML rule: invalid regex {pattern!r}: {exc}", stacklevel=3)
        return text
    if match is None:
        return ""
    return match.group(1) if match.groups() and match.group(1) is not None else match.group(0)


def _is_literal(head: str) -> bool:
    return not _SELECTOR_CHARS.search(head) and bool(_CJK.search(head))


def select_text(html: str, rule: str, base_url: str = "") -> str:
    """First non-empty text produced by the rule's alternatives."""

    if not rule:
        return ""
    head, _, pattern = rule.partition("##")
    if _is_literal(head):
        return head

    soup = BeautifulSoup(html, "html.parser")
    for option in head.split("||"):
        parts, attribute = _split_chain(option)
        if not parts:
            continue
        try:
            elements = _select_chain(soup, parts)
        except SelectorSyntaxError as exc:
            warnings.warn(f"HTML rule: invalid selector in {option!r}: {exc}", stacklevel=2)
            continue
        if not elements:
            continue

        text = _attribute_text(elements[0], attribute).strip()
        if pattern:
            text = _apply_regex(text, pattern).strip()
        if text and attribute in _URL_ATTRIBUTES and base_url and not text.startswith("data:"):
            text = urljoin(base_url, text)
        if text:
            return text
    return ""


def select_list(html: str, rule: str) -> list[str]:
    """Outer HTML of every element matched by the first productive alternative."""

    if not rule:
        return []
    soup = BeautifulSoup(html, "html.parser")
    for option in rule.split("||"):
        parts, _ = _split_chain(option)
        if not parts:
            continue
        try:
            elements = _select_chain(soup, parts)
        except SelectorSyntaxError as exc:
            warnings.warn(f"HTML rule: invalid selector in {option!r}: {exc}", stacklevel=2)
            continue
        if elements:
            return [str(element) for element in elements]
    return []
