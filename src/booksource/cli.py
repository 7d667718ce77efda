"""Command-line interface for booksource."""

from __future__ import annotations

import json
import logging
import sys
import warnings
from pathlib import Path
from typing import Any, Callable

from .credentials import CredentialRecord, CredentialStore
from .errors import BookSourceError, InvalidRequest, NoMatch, to_payload
from .extract import BookSourceClient
from .gateway import ProxyGateway
from .options import BookSourceOptions, parse_cli_args
from .source import BookSource, find_source, load_sources


def main(argv: list[str] | None = None) -> int:
    """Entry-point invoked by the `booksource` console script."""

    options = parse_cli_args(argv)
    logger = _build_logger(options.quiet)
    _configure_logging(options)

    store = CredentialStore(options.auth_file)
    exit_code = 0
    with warnings.catch_warnings(record=True) as caught_warnings:
        warnings.simplefilter("always")
        try:
            result = _run(options, store, logger)
        except BookSourceError as exc:
            result = to_payload(exc)
            exit_code = 1
    _log_warning_records(caught_warnings, logger)

    _emit(result)
    return exit_code


def _run(
    options: BookSourceOptions,
    store: CredentialStore,
    log: Callable[[str], None],
) -> Any:
    if options.command == "cookie":
        return _run_cookie(options, store, log)

    gateway = ProxyGateway(credentials=store)
    if options.command == "check":
        return {"url": options.url, "allowed": gateway.is_url_safe(options.url or "")}

    source = _load_source(options)
    client = BookSourceClient(gateway)
    directive = options.directive or ""
    log(f"Fetch: {directive}")

    if options.list_rule:
        items = client.extract_list(
            source, directive, options.list_rule, options.fields, options.timeout_ms
        )
        log(f"Fetch: extracted {len(items)} item(s)")
        if options.require and not items:
            raise NoMatch(f"list rule {options.list_rule!r} selected nothing")
        return items
    if options.rule:
        value = client.extract(source, directive, options.rule, options.timeout_ms)
        if options.require and not value:
            raise NoMatch(f"rule {options.rule!r} extracted nothing")
        return value

    document, _ = client.fetch_document(source, directive, options.timeout_ms)
    return document


def _run_cookie(
    options: BookSourceOptions,
    store: CredentialStore,
    log: Callable[[str], None],
) -> Any:
    source_id = options.source_id or ""
    if options.cookie_action == "get":
        if options.url:
            return {"sourceId": source_id, "cookie": store.cookie_for(source_id, options.url)}
        record = store.get(source_id)
        return record.to_dict() if record is not None else None

    # Upserts replace whole records, so merge into what is stored first.
    record = store.get(source_id) or CredentialRecord(source_id=source_id)
    record.cookies.update(options.cookies)
    record.tokens.update(options.tokens)
    store.upsert(record)
    log(f"Cookies: stored {len(record.cookies)} entries for {source_id}")
    return record.to_dict()


def _load_source(options: BookSourceOptions) -> BookSource | None:
    if not options.source_id:
        return None
    if not options.sources_file:
        return BookSource(id=options.source_id, name=options.source_id)

    try:
        sources = load_sources(Path(options.sources_file))
    except (OSError, ValueError) as exc:
        raise InvalidRequest(f"cannot load sources from {options.sources_file}: {exc}") from exc
    source = find_source(sources, options.source_id)
    if source is None:
        raise InvalidRequest(f"no book source {options.source_id!r} in {options.sources_file}")
    if not source.enabled:
        raise InvalidRequest(f"book source {source.name!r} is disabled")
    return source


def _configure_logging(options: BookSourceOptions) -> None:
    if options.verbose:
        level = logging.DEBUG
    elif options.quiet:
        level = logging.ERROR
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _emit(result: Any) -> None:
    if isinstance(result, str):
        print(result)
        return
    print(json.dumps(result, ensure_ascii=False, indent=2))


def _build_logger(quiet: bool) -> Callable[[str], None]:
    def _log(message: str) -> None:
        if not quiet:
            print(message, file=sys.stderr)

    return _log


def _log_warning_records(
    records: list[warnings.WarningMessage], log: Callable[[str], None]
) -> None:
    for record in records:
        message = str(record.message)
        if message:
            log(f"Warning: {message}")
