"""Fetch-and-extract cycle tying directives, the gateway and rules together."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping
from urllib.parse import urljoin

from . import html_rules
from .directive import RequestDirective, parse_directive
from .gateway import ProxyGateway, rewrite_via_proxy_base
from .rules import (
    PassthroughEvaluator,
    ScriptEvaluator,
    apply_script,
    field_text,
    parse_rule,
    render_template,
    resolve,
    split_script,
)
from .source import BookSource
from .tree import Node, NodeKind, node_kind

Document = Any

_CSS_PREFIX = re.compile(r"^@css:", re.IGNORECASE)


def decode_document(text: Document) -> Document:
    """Decode JSON text into a tree; anything else is returned unchanged."""

    if not isinstance(text, str):
        return text
    stripped = text.lstrip()
    if not stripped.startswith(("{", "[")):
        return text
    try:
        return json.loads(stripped)
    except ValueError:
        return text


def _is_tree(document: Document) -> bool:
    return node_kind(document) in (NodeKind.OBJECT, NodeKind.ARRAY)


def _tree_field(node: Node, rule: str, evaluator: ScriptEvaluator | None) -> str:
    if "{{" in rule:
        return render_template(node, rule)
    resolution = resolve(node, parse_rule(rule, bare_keys=True))
    return field_text(apply_script(resolution, evaluator))


def _html_field(
    html: str, rule: str, base_url: str, evaluator: ScriptEvaluator | None
) -> str:
    selector, script = split_script(rule)
    selector = _CSS_PREFIX.sub("", selector).strip()
    if not selector and script is not None:
        return field_text((evaluator or PassthroughEvaluator()).execute(script, html))
    text = html_rules.select_text(html, selector, base_url)
    if script is not None and text and evaluator is not None:
        return field_text(evaluator.execute(script, text))
    return text


def extract_field(
    document: Document,
    rule: str | None,
    base_url: str = "",
    evaluator: ScriptEvaluator | None = None,
) -> str:
    """Text of a single field.

    JSON trees go through the path rules (or ``{{...}}`` templates), HTML
    text through the selector dialect.
    """

    if not rule:
        return ""
    document = decode_document(document)

    if _is_tree(document):
        return _tree_field(document, rule, evaluator)
    return _html_field(str(document), rule, base_url, evaluator)


def extract_items(
    document: Document,
    list_rule: str | None,
    evaluator: ScriptEvaluator | None = None,
) -> list[Any]:
    """Elements selected by a list rule: tree nodes or HTML fragments."""

    if not list_rule:
        return []
    document = decode_document(document)

    if _is_tree(document):
        resolution = resolve(document, parse_rule(list_rule, bare_keys=True))
        items = apply_script(resolution, evaluator)
        if node_kind(items) is NodeKind.ARRAY:
            return list(items)
        return [items] if resolution.found else []

    return html_rules.select_list(str(document), list_rule)


def extract_list(
    document: Document,
    list_rule: str | None,
    item_rules: Mapping[str, str | None],
    base_url: str = "",
    evaluator: ScriptEvaluator | None = None,
) -> list[dict[str, str]]:
    """Apply ``item_rules`` to every element the list rule selects."""

    document = decode_document(document)
    from_tree = _is_tree(document)
    results: list[dict[str, str]] = []
    for item in extract_items(document, list_rule, evaluator):
        results.append(
            {
                key: (
                    _tree_field(item, rule, evaluator)
                    if from_tree
                    else _html_field(item, rule, base_url, evaluator)
                )
                for key, rule in item_rules.items()
                if rule
            }
        )
    return results


class BookSourceClient:
    """Runs directive parse, credential lookup, fetch and extraction."""

    def __init__(
        self,
        gateway: ProxyGateway,
        *,
        evaluator: ScriptEvaluator | None = None,
    ) -> None:
        self.gateway = gateway
        self.evaluator = evaluator

    def prepare(self, source: BookSource | None, raw_directive: str) -> RequestDirective:
        """Resolve ``raw_directive`` into the request actually sent."""

        return self._resolve(source, parse_directive(raw_directive))

    def _resolve(
        self, source: BookSource | None, directive: RequestDirective
    ) -> RequestDirective:
        if source is None:
            return directive

        url = directive.url
        if source.url and not url.startswith(("http://", "https://")):
            url = urljoin(source.url, url)
        directive = directive.with_url(url).with_headers(source.default_headers())

        if source.proxy_base:
            credentials = self.gateway.credentials
            if credentials is not None and not any(
                key.lower() == "cookie" for key in directive.headers
            ):
                cookie = credentials.cookie_for(source.id, url)
                if cookie:
                    directive = directive.with_headers({"Cookie": cookie})
            directive = directive.with_url(rewrite_via_proxy_base(url, source.proxy_base))
        return directive

    def fetch_document(
        self,
        source: BookSource | None,
        raw_directive: str,
        timeout_ms: int | None = None,
    ) -> tuple[Node | str, str]:
        """Fetch and decode a document; returns it with its page URL."""

        requested = parse_directive(raw_directive)
        directive = self._resolve(source, requested)
        response = self.gateway.fetch(
            directive,
            timeout_ms,
            source_id=source.id if source is not None else None,
        )
        page_url = requested.url
        if source is not None and source.url:
            page_url = urljoin(source.url, page_url)
        return decode_document(response.text()), page_url

    def extract(
        self,
        source: BookSource | None,
        raw_directive: str,
        rule: str,
        timeout_ms: int | None = None,
    ) -> str:
        document, page_url = self.fetch_document(source, raw_directive, timeout_ms)
        return extract_field(document, rule, page_url, self.evaluator)

    def extract_list(
        self,
        source: BookSource | None,
        raw_directive: str,
        list_rule: str,
        item_rules: Mapping[str, str | None],
        timeout_ms: int | None = None,
    ) -> list[dict[str, str]]:
        document, page_url = self.fetch_document(source, raw_directive, timeout_ms)
        return extract_list(document, list_rule, item_rules, page_url, self.evaluator)
