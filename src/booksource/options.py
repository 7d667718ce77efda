"""Command-line option parsing for booksource."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from typing import Sequence

from .gateway import DEFAULT_TIMEOUT_MS

TIMEOUT_ENV = "BOOKSOURCE_TIMEOUT_MS"


@dataclass(slots=True)
class BookSourceOptions:
    """Structured representation of CLI arguments."""

    command: str
    directive: str | None = None
    rule: str | None = None
    list_rule: str | None = None
    fields: dict[str, str] = field(default_factory=dict)
    sources_file: str | None = None
    source_id: str | None = None
    auth_file: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    cookie_action: str | None = None
    cookies: dict[str, str] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    require: bool = False
    verbose: bool = False
    quiet: bool = False


def parse_cli_args(argv: Sequence[str] | None = None) -> BookSourceOptions:
    """Parse CLI arguments into a dataclass."""

    parser = argparse.ArgumentParser(
        prog="booksource",
        description="Fetch pages through the book source gateway and extract fields.",
    )
    parser.add_argument(
        "--auth-file",
        help="Credential store file (default: $BOOKSOURCE_AUTH_FILE or ./book_source_auth.json).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress progress output (errors only).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every request at debug level.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    fetch = commands.add_parser("fetch", help="Fetch a directive and extract fields.")
    fetch.add_argument("directive", help="URL or 'URL,{options}' request directive.")
    fetch.add_argument("--rule", help="Rule for a single field.")
    fetch.add_argument("--list-rule", help="Rule selecting a list of items.")
    fetch.add_argument(
        "--field",
        action="append",
        default=[],
        metavar="NAME=RULE",
        help="Per-item rule applied to each --list-rule item (repeatable).",
    )
    fetch.add_argument("--sources", dest="sources_file", help="JSON file of book sources.")
    fetch.add_argument("--source-id", help="Book source whose headers and cookies apply.")
    fetch.add_argument(
        "--require",
        action="store_true",
        help="Fail with NoMatch when the rule extracts nothing.",
    )
    fetch.add_argument(
        "--timeout",
        type=int,
        help=f"Timeout in milliseconds (default: ${TIMEOUT_ENV} or {DEFAULT_TIMEOUT_MS}).",
    )

    cookie = commands.add_parser("cookie", help="Read or store source credentials.")
    cookie.add_argument("cookie_action", choices=("get", "set"))
    cookie.add_argument("source_id", help="Book source id.")
    cookie.add_argument(
        "entries",
        nargs="*",
        metavar="ORIGIN=COOKIE",
        help="Cookie strings keyed by origin, host:port or hostname (set only).",
    )
    cookie.add_argument(
        "--token",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Token to store alongside the cookies (set only, repeatable).",
    )
    cookie.add_argument("--url", help="Show only the cookie chosen for this URL (get only).")

    check = commands.add_parser("check", help="Test a URL against the destination policy.")
    check.add_argument("url")

    args = parser.parse_args(argv)

    if args.quiet and args.verbose:
        parser.error("--quiet and --verbose cannot be combined.")

    options = BookSourceOptions(
        command=args.command,
        auth_file=args.auth_file,
        verbose=args.verbose,
        quiet=args.quiet,
    )

    if args.command == "fetch":
        if args.field and not args.list_rule:
            parser.error("--field requires --list-rule.")
        if args.rule and args.list_rule:
            parser.error("--rule and --list-rule cannot be combined.")
        if args.require and not (args.rule or args.list_rule):
            parser.error("--require needs --rule or --list-rule.")
        options.directive = args.directive
        options.rule = args.rule
        options.list_rule = args.list_rule
        options.fields = _parse_pairs(parser, args.field, "--field")
        options.sources_file = args.sources_file
        options.source_id = args.source_id
        options.require = args.require
        options.timeout_ms = _resolve_timeout(parser, args.timeout)
        if options.sources_file and not options.source_id:
            parser.error("--sources requires --source-id.")
    elif args.command == "cookie":
        options.cookie_action = args.cookie_action
        options.source_id = args.source_id
        options.url = args.url
        if args.cookie_action == "set":
            if not args.entries and not args.token:
                parser.error("cookie set needs at least one ORIGIN=COOKIE or --token.")
            options.cookies = _parse_pairs(parser, args.entries, "ORIGIN=COOKIE")
            options.tokens = _parse_pairs(parser, args.token, "--token")
        elif args.entries or args.token:
            parser.error("cookie get takes no entries.")
    else:
        options.url = args.url

    return options


def _parse_pairs(
    parser: argparse.ArgumentParser, values: Sequence[str], label: str
) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for value in values:
        key, sep, rest = value.partition("=")
        if not sep or not key.strip():
            parser.error(f"{label} expects NAME=VALUE, got {value!r}.")
        pairs[key.strip()] = rest
    return pairs


def _resolve_timeout(parser: argparse.ArgumentParser, cli_value: int | None) -> int:
    """Prefer the CLI flag, then the environment, then the gateway default."""

    if cli_value is not None:
        timeout = cli_value
    else:
        configured = os.environ.get(TIMEOUT_ENV)
        if not configured:
            return DEFAULT_TIMEOUT_MS
        try:
            timeout = int(configured)
        except ValueError:
            parser.error(f"${TIMEOUT_ENV} must be an integer, got {configured!r}.")
    if timeout <= 0:
        parser.error("timeout must be a positive number of milliseconds.")
    return timeout
