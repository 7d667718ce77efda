"""Error taxonomy shared by the rule interpreter, gateway and credential store."""

from __future__ import annotations

from typing import Any


class BookSourceError(Exception):
    """Base class for every failure raised by booksource."""

    kind = "BookSourceError"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class MalformedRule(BookSourceError):
    """A rule string is not a supported path expression."""

    kind = "MalformedRule"
    http_status = 400


class NoMatch(BookSourceError):
    """A well-formed rule produced no results."""

    kind = "NoMatch"
    http_status = 404


class BlockedDestination(BookSourceError):
    """The destination URL failed the gateway safety policy."""

    kind = "BlockedDestination"
    http_status = 403


class RequestTimeout(BookSourceError):
    """The upstream request exceeded its timeout."""

    kind = "RequestTimeout"
    http_status = 408


class UpstreamError(BookSourceError):
    """Transport failure or a non-2xx upstream response."""

    kind = "UpstreamError"
    http_status = 502

    def __init__(self, message: str = "", *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PersistenceError(BookSourceError):
    """Reading or writing the credential store failed."""

    kind = "PersistenceError"
    http_status = 500


class InvalidRequest(BookSourceError):
    """A request or payload is missing data or has the wrong shape."""

    kind = "InvalidRequest"
    http_status = 400


def http_status_for(exc: BaseException) -> int:
    """Map an exception to the HTTP status an API caller should answer with."""

    if isinstance(exc, BookSourceError):
        return exc.http_status
    return 500


def to_payload(exc: BaseException) -> dict[str, Any]:
    """Render an exception as the JSON error body returned to callers."""

    kind = exc.kind if isinstance(exc, BookSourceError) else "InternalError"
    payload: dict[str, Any] = {
        "success": False,
        "error": kind,
        "message": str(exc) or kind,
    }
    status = getattr(exc, "status", None)
    if status is not None:
        payload["status"] = status
    return payload
