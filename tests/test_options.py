import pytest

from booksource.gateway import DEFAULT_TIMEOUT_MS
from booksource.options import TIMEOUT_ENV, BookSourceOptions, parse_cli_args


def test_parse_fetch_with_all_overrides() -> None:
    options = parse_cli_args(
        [
            "--auth-file",
            "auth.json",
            "--verbose",
            "fetch",
            "https://books.test/api,{'method': 'POST'}",
            "--list-rule",
            "$.data.list",
            "--field",
            "name=$.title",
            "--field",
            "url=$.link",
            "--sources",
            "sources.json",
            "--source-id",
            "src",
            "--timeout",
            "1500",
        ]
    )

    assert isinstance(options, BookSourceOptions)
    assert options.command == "fetch"
    assert options.directive == "https://books.test/api,{'method': 'POST'}"
    assert options.list_rule == "$.data.list"
    assert options.rule is None
    assert options.fields == {"name": "$.title", "url": "$.link"}
    assert options.sources_file == "sources.json"
    assert options.source_id == "src"
    assert options.auth_file == "auth.json"
    assert options.timeout_ms == 1500
    assert options.verbose is True
    assert options.quiet is False


def test_parse_fetch_defaults(monkeypatch) -> None:
    monkeypatch.delenv(TIMEOUT_ENV, raising=False)

    options = parse_cli_args(["fetch", "https://books.test/"])

    assert options.rule is None
    assert options.fields == {}
    assert options.source_id is None
    assert options.timeout_ms == DEFAULT_TIMEOUT_MS
    assert options.require is False


def test_field_value_may_contain_equals() -> None:
    options = parse_cli_args(
        ["fetch", "https://x.test/", "--list-rule", "li", "--field", "q=a@href##id=(\\d+)"]
    )

    assert options.fields == {"q": "a@href##id=(\\d+)"}


def test_timeout_from_environment(monkeypatch) -> None:
    monkeypatch.setenv(TIMEOUT_ENV, "2500")

    assert parse_cli_args(["fetch", "https://x.test/"]).timeout_ms == 2500
    assert parse_cli_args(["fetch", "https://x.test/", "--timeout", "10"]).timeout_ms == 10


@pytest.mark.parametrize(
    "argv",
    [
        ["--quiet", "--verbose", "fetch", "https://x.test/"],
        ["fetch", "https://x.test/", "--field", "a=b"],
        ["fetch", "https://x.test/", "--rule", "$.a", "--list-rule", "$.b"],
        ["fetch", "https://x.test/", "--list-rule", "li", "--field", "novalue"],
        ["fetch", "https://x.test/", "--sources", "s.json"],
        ["fetch", "https://x.test/", "--timeout", "0"],
        ["fetch", "https://x.test/", "--require"],
        ["cookie", "set", "src"],
        ["cookie", "get", "src", "x.test=a"],
        ["cookie", "set", "src", "=nokey"],
        ["cookie", "delete", "src"],
        [],
    ],
)
def test_invalid_arguments_exit(argv: list[str]) -> None:
    with pytest.raises(SystemExit):
        parse_cli_args(argv)


def test_invalid_timeout_environment(monkeypatch) -> None:
    monkeypatch.setenv(TIMEOUT_ENV, "soon")

    with pytest.raises(SystemExit):
        parse_cli_args(["fetch", "https://x.test/"])


def test_parse_cookie_set() -> None:
    options = parse_cli_args(
        ["cookie", "set", "src", "https://x.test=sid=1; lang=en", "--token", "api=abc"]
    )

    assert options.command == "cookie"
    assert options.cookie_action == "set"
    assert options.source_id == "src"
    assert options.cookies == {"https://x.test": "sid=1; lang=en"}
    assert options.tokens == {"api": "abc"}


def test_parse_cookie_get_with_url() -> None:
    options = parse_cli_args(["cookie", "get", "src", "--url", "https://x.test/a"])

    assert options.cookie_action == "get"
    assert options.url == "https://x.test/a"
    assert options.cookies == {}


def test_parse_check() -> None:
    options = parse_cli_args(["--quiet", "check", "http://10.0.0.1/"])

    assert options.command == "check"
    assert options.url == "http://10.0.0.1/"
    assert options.quiet is True


def test_parse_fetch_require() -> None:
    options = parse_cli_args(["fetch", "https://x.test/", "--rule", "$.a", "--require"])

    assert options.require is True
