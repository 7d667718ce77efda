import json
from pathlib import Path

import pytest

from booksource.credentials import CredentialRecord, CredentialStore
from booksource.directive import RequestDirective
from booksource.extract import (
    BookSourceClient,
    decode_document,
    extract_field,
    extract_items,
    extract_list,
)
from booksource.gateway import ProxyResponse
from booksource.source import BookSource

SEARCH = {
    "code": 0,
    "data": {
        "list": [
            {"bookId": 1, "title": "Night Watch", "tags": ["fantasy", "city"], "author": {"name": "Ann"}},
            {"bookId": 2, "title": "Day Watch", "tags": [], "author": {"name": "Bo"}},
        ]
    },
}

LISTING = """
<ul class="books">
  <li><a href="/book/1">Night Watch</a><span class="author">Ann</span></li>
  <li><a href="/book/2">Day Watch</a><span class="author">Bo</span></li>
</ul>
"""


class _FakeGateway:
    def __init__(self, body: str, credentials: CredentialStore | None = None) -> None:
        self.body = body
        self.credentials = credentials
        self.calls: list[tuple[RequestDirective, int | None, str | None]] = []

    def fetch(self, directive, timeout_ms=None, *, source_id=None):
        self.calls.append((directive, timeout_ms, source_id))
        return ProxyResponse(
            status=200,
            headers={"Content-Type": "text/html; charset=utf-8"},
            body=self.body.encode("utf-8"),
        )


class _UpperEvaluator:
    def execute(self, script, value):
        return str(value).upper()


def test_decode_document() -> None:
    assert decode_document('  {"a": 1}') == {"a": 1}
    assert decode_document("[1, 2]") == [1, 2]
    assert decode_document("<html></html>") == "<html></html>"
    assert decode_document("{broken") == "{broken"
    assert decode_document({"a": 1}) == {"a": 1}


def test_extract_field_from_tree() -> None:
    assert extract_field(SEARCH, "$.data.list[0].title") == "Night Watch"
    assert extract_field(SEARCH, "@JSon:$.data.list[0].tags") == "fantasy,city"
    assert extract_field(SEARCH, "$.data.missing||$.code") == "0"
    assert extract_field(SEARCH, "$.data.missing") == ""
    assert extract_field(SEARCH, None) == ""


def test_extract_field_from_json_text() -> None:
    assert extract_field(json.dumps(SEARCH), "$.data.list[1].title") == "Day Watch"


def test_extract_field_template() -> None:
    rule = "{{$.data.list[0].title}} ({{code}})"

    assert extract_field(SEARCH, rule) == "Night Watch (0)"


def test_extract_field_runs_script_with_evaluator() -> None:
    rule = "$.data.list[0].title<js>result.toUpperCase()</js>"

    assert extract_field(SEARCH, rule) == "Night Watch"
    assert extract_field(SEARCH, rule, evaluator=_UpperEvaluator()) == "NIGHT WATCH"


def test_extract_field_from_html() -> None:
    assert extract_field(LISTING, "class.books@tag.a.1@text") == "Day Watch"
    assert (
        extract_field(LISTING, "class.books@tag.a@href", "https://books.test/search")
        == "https://books.test/book/1"
    )
    assert (
        extract_field(LISTING, "class.author@text<js>result</js>", evaluator=_UpperEvaluator())
        == "ANN"
    )


def test_extract_items_from_tree() -> None:
    items = extract_items(SEARCH, "$.data.list")

    assert [item["bookId"] for item in items] == [1, 2]
    assert extract_items(SEARCH, "$.data.list[0]") == [SEARCH["data"]["list"][0]]
    assert extract_items(SEARCH, "$.data.none") == []
    assert extract_items(SEARCH, "") == []


def test_extract_list_from_tree() -> None:
    rows = extract_list(
        SEARCH,
        "$.data.list",
        {"name": "$.title", "author": "author.name", "tags": "$.tags", "skip": None},
    )

    assert rows == [
        {"name": "Night Watch", "author": "Ann", "tags": "fantasy,city"},
        {"name": "Day Watch", "author": "Bo", "tags": ""},
    ]


def test_extract_list_from_html() -> None:
    rows = extract_list(
        LISTING,
        "class.books@tag.li",
        {"name": "a@text", "url": "a@href", "author": "class.author@text"},
        "https://books.test/",
    )

    assert rows == [
        {"name": "Night Watch", "url": "https://books.test/book/1", "author": "Ann"},
        {"name": "Day Watch", "url": "https://books.test/book/2", "author": "Bo"},
    ]


def test_client_resolves_relative_directive_and_source_headers() -> None:
    gateway = _FakeGateway(json.dumps(SEARCH))
    client = BookSourceClient(gateway)
    source = BookSource(
        id="src",
        name="Example",
        url="https://books.test/",
        header="{'Referer': 'https://books.test/'}",
    )

    title = client.extract(
        source,
        "/search?q=watch,{'method': 'POST', 'body': 'q=watch'}",
        "$.data.list[0].title",
        5000,
    )

    directive, timeout_ms, source_id = gateway.calls[0]
    assert title == "Night Watch"
    assert directive.url == "https://books.test/search?q=watch"
    assert directive.method == "POST"
    assert directive.body == "q=watch"
    assert directive.headers == {"Referer": "https://books.test/"}
    assert (timeout_ms, source_id) == (5000, "src")


def test_client_directive_headers_override_source_headers() -> None:
    gateway = _FakeGateway("{}")
    client = BookSourceClient(gateway)
    source = BookSource(id="s", name="s", header='{"Referer": "a", "Origin": "o"}')

    client.fetch_document(source, 'https://x.test/,{"headers": {"Referer": "b"}}')

    assert gateway.calls[0][0].headers == {"Referer": "b", "Origin": "o"}


def test_client_without_source_passes_directive_through() -> None:
    gateway = _FakeGateway(LISTING)
    client = BookSourceClient(gateway)

    rows = client.extract_list(None, "https://books.test/list", "class.books@tag.li", {"name": "a@text"})

    assert rows == [{"name": "Night Watch"}, {"name": "Day Watch"}]
    assert gateway.calls[0][2] is None


def test_client_routes_through_proxy_base_with_target_cookie(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "auth.json")
    store.upsert(CredentialRecord("src", cookies={"books.test": "sid=1"}))
    gateway = _FakeGateway("{}", credentials=store)
    client = BookSourceClient(gateway)
    source = BookSource(
        id="src",
        name="Relayed",
        url="https://books.test",
        proxy_base="https://relay.test/fetch?u={url}",
    )

    document, page_url = client.fetch_document(source, "/book/1")

    directive = gateway.calls[0][0]
    assert document == {}
    assert page_url == "https://books.test/book/1"
    assert directive.url == "https://relay.test/fetch?u=https%3A%2F%2Fbooks.test%2Fbook%2F1"
    assert directive.headers["Cookie"] == "sid=1"


class _RecordingEvaluator:
    def __init__(self, result="done") -> None:
        self.result = result
        self.calls: list[tuple[str, object]] = []

    def execute(self, script, value):
        self.calls.append((script, value))
        return self.result


def test_script_only_rule_runs_over_whole_tree() -> None:
    evaluator = _RecordingEvaluator(result=1)

    assert extract_field({"a": 1}, "<js>result.a</js>", evaluator=evaluator) == "1"
    assert evaluator.calls == [("result.a", {"a": 1})]


def test_script_only_rule_without_evaluator_returns_document() -> None:
    assert extract_field({"a": 1}, "<js>result.a</js>") == '{"a":1}'


def test_js_suffix_rule_on_tree() -> None:
    evaluator = _RecordingEvaluator()

    assert extract_field(SEARCH, "$.data.list[0].title@js:result.trim()", evaluator=evaluator) == "done"
    assert evaluator.calls == [("result.trim()", "Night Watch")]


def test_js_suffix_only_rule_on_tree() -> None:
    evaluator = _RecordingEvaluator()

    extract_field({"a": 1}, "@js:\nreturn result.a", evaluator=evaluator)

    assert evaluator.calls == [("return result.a", {"a": 1})]


def test_js_suffix_rule_on_html() -> None:
    evaluator = _RecordingEvaluator()

    assert extract_field(LISTING, "@css:.author@text@js:result.trim()", evaluator=evaluator) == "done"
    assert evaluator.calls == [("result.trim()", "Ann")]


def test_script_only_rule_runs_over_whole_html() -> None:
    evaluator = _RecordingEvaluator()

    assert extract_field(LISTING, "@js:result.length", evaluator=evaluator) == "done"
    assert extract_field(LISTING, "<js>result.length</js>", evaluator=evaluator) == "done"
    assert evaluator.calls == [("result.length", LISTING), ("result.length", LISTING)]


def test_fetch_document_warns_once_for_unparsable_options() -> None:
    gateway = _FakeGateway("<p>x</p>")
    client = BookSourceClient(gateway)

    with pytest.warns(UserWarning, match="Directive: could not parse") as record:
        _, page_url = client.fetch_document(None, "https://x.test/a,{1}")

    assert len(record) == 1
    assert page_url == "https://x.test/a,{1}"
    assert gateway.calls[0][0].url == "https://x.test/a,{1}"
