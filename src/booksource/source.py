"""Book source definitions as published by the reader community."""

from __future__ import annotations

import json
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .directive import normalize_options_literal

# Community JSON keeps each rule group under its own top-level key.
_RULE_SECTIONS = {
    "ruleSearch": "search",
    "ruleExplore": "explore",
    "ruleFind": "explore",
    "ruleBookInfo": "bookInfo",
    "ruleToc": "toc",
    "ruleContent": "content",
}


@dataclass(slots=True)
class BookSource:
    """One site's rule set."""

    id: str
    name: str
    url: str = ""
    enabled: bool = True
    header: str | None = None
    proxy_base: str | None = None
    search_url: str | None = None
    rules: dict[str, dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BookSource:
        url = str(data.get("bookSourceUrl") or data.get("url") or "")
        name = str(data.get("bookSourceName") or data.get("name") or url)
        source_id = str(data.get("id") or url or name)

        rules: dict[str, dict[str, str]] = {}
        nested = data.get("rules")
        if isinstance(nested, dict):
            for section, entries in nested.items():
                if isinstance(entries, dict):
                    rules[str(section)] = _rule_map(entries)
        for key, section in _RULE_SECTIONS.items():
            entries = data.get(key)
            if isinstance(entries, dict):
                rules.setdefault(section, {}).update(_rule_map(entries))

        return cls(
            id=source_id,
            name=name,
            url=url,
            enabled=bool(data.get("enabled", data.get("enable", True))),
            header=_optional_text(data.get("header")),
            proxy_base=_optional_text(data.get("proxyBase")),
            search_url=_optional_text(data.get("searchUrl")),
            rules=rules,
        )

    def rule(self, section: str, name: str) -> str | None:
        value = self.rules.get(section, {}).get(name)
        return value or None

    def default_headers(self) -> dict[str, str]:
        """Request headers declared by the source's ``header`` field."""

        if not self.header or not self.header.strip():
            return {}
        for text in (self.header, normalize_options_literal(self.header)):
            try:
                loaded = json.loads(text)
            except ValueError:
                continue
            if isinstance(loaded, dict):
                return {str(key): str(value) for key, value in loaded.items()}
        warnings.warn(
            f"Source {self.name}: ignoring unparsable header {self.header!r}",
            stacklevel=2,
        )
        return {}


def _rule_map(entries: dict[str, Any]) -> dict[str, str]:
    return {str(key): value for key, value in entries.items() if isinstance(value, str)}


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def load_sources(path: Path) -> list[BookSource]:
    """Read a JSON list (or single object) of book sources."""

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValueError(f"{path} must hold a JSON list of book sources")
    return [BookSource.from_dict(item) for item in data if isinstance(item, dict)]


def find_source(sources: list[BookSource], source_id: str) -> BookSource | None:
    """Match on id first, then on the source URL or name."""

    for source in sources:
        if source.id == source_id:
            return source
    for source in sources:
        if source_id in (source.url, source.name):
            return source
    return None
