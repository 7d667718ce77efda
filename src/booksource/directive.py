"""Parsing of compound ``URL,{options}`` request directives."""

from __future__ import annotations

import json
import warnings
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

DEFAULT_METHOD = "GET"


@dataclass(frozen=True, slots=True)
class RequestDirective:
    """A concrete request described by a book source rule."""

    url: str
    method: str = DEFAULT_METHOD
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None

    def dispatch_body(self) -> str | None:
        """Body to send; GET requests never carry one."""

        if self.method.upper() == "GET":
            return None
        return self.body

    def with_headers(self, extra: Mapping[str, str]) -> RequestDirective:
        """Return a copy whose headers are ``extra`` overridden by our own."""

        merged = dict(extra)
        merged.update(self.headers)
        return replace(self, headers=merged)

    def with_url(self, url: str) -> RequestDirective:
        return replace(self, url=url)


def split_directive(raw: str) -> tuple[str, str | None]:
    """Split at the first comma followed by a ``{...}`` tail.

    Commas inside query strings are left alone because the tail after them
    does not form a brace pair.
    """

    start = raw.find(",")
    while start != -1:
        tail = raw[start + 1 :].strip()
        if tail.startswith("{") and tail.endswith("}"):
            return raw[:start].strip(), tail
        start = raw.find(",", start + 1)
    return raw, None


def parse_directive(raw: str) -> RequestDirective:
    """Parse ``raw`` into a request directive.

    Options are read as strict JSON first and then, failing that, as the
    single-quoted/bare-key dialect common in book sources. Anything that
    cannot be parsed degrades to a plain GET of ``raw``.
    """

    if not isinstance(raw, str) or not raw:
        return RequestDirective(url=raw if isinstance(raw, str) else "")

    url, options_text = split_directive(raw)
    if options_text is None:
        return RequestDirective(url=raw)

    options = _load_strict(options_text)
    if options is None:
        options = _load_strict(normalize_options_literal(options_text))
    if options is None:
        warnings.warn(
            f"Directive: could not parse request options {options_text!r}; "
            "using the raw string as URL.",
            stacklevel=2,
        )
        return RequestDirective(url=raw)

    return _build_directive(url, options)


def _load_strict(text: str) -> dict[str, Any] | None:
    try:
        loaded = json.loads(text)
    except ValueError:
        return None
    return loaded if isinstance(loaded, dict) else None


def _build_directive(url: str, options: Mapping[str, Any]) -> RequestDirective:
    method = options.get("method") or DEFAULT_METHOD
    raw_headers = options.get("headers")
    headers: dict[str, str] = {}
    if isinstance(raw_headers, Mapping):
        headers = {str(key): _as_text(value) for key, value in raw_headers.items()}

    body = options.get("body")
    if body is not None and not isinstance(body, str):
        body = json.dumps(body, ensure_ascii=False, separators=(",", ":"))

    return RequestDirective(
        url=url,
        method=str(method).upper(),
        headers=headers,
        body=body,
    )


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def normalize_options_literal(text: str) -> str:
    """Rewrite a relaxed object literal into JSON.

    Single-quoted strings become double-quoted and bare keys after ``{`` or
    ``,`` get quoted. The contents of quoted strings are copied unchanged,
    so values such as ``https://host/a,b:c`` survive intact.
    """

    out: list[str] = []
    pos = 0
    expect_key = False
    length = len(text)

    while pos < length:
        char = text[pos]

        if char in "'\"":
            literal, pos = _read_string(text, pos)
            out.append(literal)
            expect_key = False
            continue

        if char in "{,":
            out.append(char)
            pos += 1
            expect_key = True
            continue

        if char.isspace():
            out.append(char)
            pos += 1
            continue

        if expect_key and (char.isalnum() or char in "_$"):
            end = pos
            while end < length and (text[end].isalnum() or text[end] in "_$-"):
                end += 1
            lookahead = end
            while lookahead < length and text[lookahead].isspace():
                lookahead += 1
            if lookahead < length and text[lookahead] == ":":
                out.append(f'"{text[pos:end]}"')
                pos = end
                expect_key = False
                continue

        out.append(char)
        pos += 1
        expect_key = False

    return "".join(out)


def _read_string(text: str, start: int) -> tuple[str, int]:
    """Read the quoted string at ``start`` and return it double-quoted."""

    quote = text[start]
    chars: list[str] = []
    pos = start + 1
    while pos < len(text):
        char = text[pos]
        if char == "\\" and pos + 1 < len(text):
            escaped = text[pos + 1]
            if quote == "'" and escaped == "'":
                chars.append("'")
            else:
                chars.append(char + escaped)
            pos += 2
            continue
        if char == quote:
            pos += 1
            break
        if quote == "'" and char == '"':
            chars.append('\\"')
        else:
            chars.append(char)
        pos += 1
    return '"' + "".join(chars) + '"', pos
