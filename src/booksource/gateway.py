"""Validating, header-filtering fetch boundary for third-party hosts.

Book sources are imported from untrusted places, so every destination is
checked against a block-list and private address ranges before any network
call, only allow-listed headers cross the boundary in either direction, and
stored credentials are attached per source.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Pattern
from urllib.parse import quote, urljoin, urlsplit

import requests
from urllib3.exceptions import ReadTimeoutError

from . import http
from .credentials import CredentialStore
from .directive import RequestDirective
from .errors import (
    BlockedDestination,
    BookSourceError,
    InvalidRequest,
    RequestTimeout,
    UpstreamError,
    to_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "169.254.169.254",
        "metadata.google.internal",
    }
)
PRIVATE_PATTERNS = (
    re.compile(r"^10\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[01])\."),
)
ALLOWED_REQUEST_HEADERS = frozenset(
    {
        "accept",
        "accept-language",
        "authorization",
        "cache-control",
        "content-type",
        "cookie",
        "origin",
        "referer",
        "user-agent",
        "x-requested-with",
    }
)
ALLOWED_RESPONSE_HEADERS = frozenset(
    {
        "content-type",
        "content-length",
        "content-encoding",
        "cache-control",
        "expires",
        "last-modified",
        "etag",
    }
)
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}
_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
_CREDENTIAL_HEADERS = ("cookie", "authorization")
_CHUNK_SIZE = 64 * 1024
_CHARSET = re.compile(r"charset=[\"']?([\w.:-]+)", re.IGNORECASE)
_NUMERIC_LABEL = re.compile(r"^(?:0x[0-9a-f]*|[0-9]+)$")


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    """Destination policy, header allow-lists and timeouts of a gateway."""

    blocked_hosts: frozenset[str] = BLOCKED_HOSTS
    private_patterns: tuple[Pattern[str], ...] = PRIVATE_PATTERNS
    allowed_request_headers: frozenset[str] = ALLOWED_REQUEST_HEADERS
    allowed_response_headers: frozenset[str] = ALLOWED_RESPONSE_HEADERS
    default_headers: Mapping[str, str] = field(
        default_factory=lambda: dict(http.DEFAULT_HEADERS)
    )
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_redirects: int = 5
    resolve_hosts: bool = False


@dataclass(slots=True)
class ProxyResponse:
    status: int
    headers: dict[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def text(self) -> str:
        encoding = "utf-8"
        content_type = self.header("content-type") or ""
        match = _CHARSET.search(content_type)
        if match:
            encoding = match.group(1)
        try:
            return self.body.decode(encoding, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())


def canonical_host(hostname: str) -> str:
    """Lower-cased host as the connection layer will see it.

    A trailing dot is dropped, all-numeric IPv4 spellings (``2130706433``,
    ``127.1``, ``0x7f.0.0.1``, octal labels) become dotted quads and
    IPv4-mapped IPv6 addresses become their IPv4 form. Raises ``ValueError``
    for a numeric host that is not a valid address.
    """

    host = hostname.lower().rstrip(".")
    if ":" in host:
        address = ipaddress.IPv6Address(host.split("%", 1)[0])
        if address.ipv4_mapped is not None:
            return str(address.ipv4_mapped)
        return address.compressed
    if host and all(_NUMERIC_LABEL.match(label) for label in host.split(".")):
        try:
            return str(ipaddress.IPv4Address(socket.inet_aton(host)))
        except OSError as exc:
            raise ValueError(f"invalid IPv4 host {hostname!r}") from exc
    return host


def rewrite_via_proxy_base(url: str, proxy_base: str | None) -> str:
    """Route ``url`` through a per-source relay base, if one is configured.

    ``{url}`` in the base is replaced by the encoded target; otherwise the
    encoded target is appended as the last path segment.
    """

    base = (proxy_base or "").strip()
    if not base:
        return url
    encoded = quote(url, safe="")
    if "{url}" in base:
        return base.replace("{url}", encoded)
    if base.endswith("/"):
        return base + encoded
    return f"{base}/{encoded}"


class ProxyGateway:
    """Fetch boundary constructed once and shared by callers."""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        session: requests.Session | None = None,
        credentials: CredentialStore | None = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self.session = session if session is not None else http.build_session()
        self.credentials = credentials

    def check_destination(self, url: str) -> None:
        """Raise ``BlockedDestination`` unless ``url`` may be fetched."""

        try:
            parts = urlsplit(url)
            hostname = canonical_host(parts.hostname or "")
            port = parts.port
        except ValueError as exc:
            raise BlockedDestination(f"unparsable URL {url!r}") from exc

        if parts.scheme.lower() not in ALLOWED_SCHEMES:
            raise BlockedDestination(f"scheme {parts.scheme!r} is not allowed")
        if not hostname:
            raise BlockedDestination(f"URL {url!r} has no host")
        if hostname in self.config.blocked_hosts:
            raise BlockedDestination(f"host {hostname} is blocked")
        if any(pattern.search(hostname) for pattern in self.config.private_patterns):
            raise BlockedDestination(f"host {hostname} is in a private range")
        if self.config.resolve_hosts:
            self._check_resolved(hostname, port or (443 if parts.scheme.lower() == "https" else 80))

    def is_url_safe(self, url: str) -> bool:
        try:
            self.check_destination(url)
        except BlockedDestination:
            return False
        return True

    def _check_resolved(self, hostname: str, port: int) -> None:
        try:
            infos = socket.getaddrinfo(hostname, port, proto=socket.IPPROTO_TCP)
        except socket.gaierror as exc:
            raise UpstreamError(f"cannot resolve {hostname}: {exc}") from exc

        for info in infos:
            address = ipaddress.ip_address(str(info[4][0]).split("%", 1)[0])
            if (
                address.is_private
                or address.is_loopback
                or address.is_link_local
                or address.is_reserved
                or address.is_multicast
                or address.is_unspecified
            ):
                raise BlockedDestination(f"host {hostname} resolves to {address}")

    def request_headers(
        self,
        headers: Mapping[str, str] | None,
        url: str,
        *,
        source_id: str | None = None,
    ) -> dict[str, str]:
        """Defaults overridden by allow-listed caller headers, plus cookies."""

        allowed = {
            key: value
            for key, value in (headers or {}).items()
            if key.lower() in self.config.allowed_request_headers
            and isinstance(value, str)
        }
        merged = http.merge_headers(self.config.default_headers, allowed)

        if source_id and self.credentials is not None and "cookie" not in merged:
            cookie = self.credentials.cookie_for(source_id, url)
            if cookie:
                merged["Cookie"] = cookie
        return dict(merged.items())

    def response_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        filtered = {
            key: value
            for key, value in headers.items()
            if key.lower() in self.config.allowed_response_headers
        }
        filtered.update(CORS_HEADERS)
        return filtered

    def fetch(
        self,
        directive: RequestDirective,
        timeout_ms: int | None = None,
        *,
        source_id: str | None = None,
    ) -> ProxyResponse:
        """Validate and execute ``directive``.

        Raises ``BlockedDestination``, ``RequestTimeout`` or ``UpstreamError``.
        """

        method = (directive.method or "GET").upper()
        url = directive.url
        timeout_ms = timeout_ms or self.config.default_timeout_ms

        try:
            self.check_destination(url)
            status, headers, body = self._exchange(
                method, url, directive, timeout_ms, source_id
            )
        except BookSourceError as exc:
            logger.warning(
                "%s %s failed: %s",
                method,
                url,
                exc.kind,
                extra={"method": method, "url": url, "failure": exc.kind},
            )
            raise

        logger.info(
            "%s %s -> %s",
            method,
            url,
            status,
            extra={"method": method, "url": url, "status": status},
        )
        return ProxyResponse(
            status=status, headers=self.response_headers(headers), body=body
        )

    def _exchange(
        self,
        method: str,
        url: str,
        directive: RequestDirective,
        timeout_ms: int,
        source_id: str | None,
    ) -> tuple[int, dict[str, str], bytes]:
        deadline = time.monotonic() + timeout_ms / 1000
        origin = urlsplit(url).netloc
        caller_headers = dict(directive.headers)
        body = directive.dispatch_body()
        redirects = 0

        while True:
            if urlsplit(url).netloc != origin:
                caller_headers = {
                    key: value
                    for key, value in caller_headers.items()
                    if key.lower() not in _CREDENTIAL_HEADERS
                }
            headers = self.request_headers(caller_headers, url, source_id=source_id)
            response = self._send(method, url, headers, body, deadline, timeout_ms)
            try:
                location = response.headers.get("Location")
                if response.status_code not in _REDIRECT_STATUSES or not location:
                    payload = self._read_body(response, deadline, timeout_ms)
                    break
            finally:
                response.close()

            redirects += 1
            if redirects > self.config.max_redirects:
                raise UpstreamError(f"more than {self.config.max_redirects} redirects")
            url = urljoin(url, location)
            self.check_destination(url)
            if response.status_code == 303 or (
                response.status_code in (301, 302) and method == "POST"
            ):
                method, body = "GET", None

        status = response.status_code
        if not 200 <= status < 300:
            raise UpstreamError(f"upstream answered {status} for {url}", status=status)

        headers_out = dict(response.headers.items())
        # The body has been decoded by requests, so encoding/length are ours.
        headers_out = {
            key: value
            for key, value in headers_out.items()
            if key.lower() not in ("content-encoding", "content-length")
        }
        headers_out["Content-Length"] = str(len(payload))
        return status, headers_out, payload

    def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: str | None,
        deadline: float,
        timeout_ms: int,
    ) -> requests.Response:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RequestTimeout(f"request timed out after {timeout_ms}ms")
        try:
            return http.send(
                self.session,
                method,
                url,
                headers=headers,
                data=body.encode("utf-8") if body is not None else None,
                timeout=remaining,
                stream=True,
            )
        except requests.Timeout as exc:
            raise RequestTimeout(f"request timed out after {timeout_ms}ms") from exc
        except requests.RequestException as exc:
            raise UpstreamError(str(exc) or exc.__class__.__name__) from exc

    def _read_body(
        self, response: requests.Response, deadline: float, timeout_ms: int
    ) -> bytes:
        chunks: list[bytes] = []
        try:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    raise RequestTimeout(f"request timed out after {timeout_ms}ms")
        except requests.ConnectionError as exc:
            if exc.args and isinstance(exc.args[0], ReadTimeoutError):
                raise RequestTimeout(f"request timed out after {timeout_ms}ms") from exc
            raise UpstreamError(str(exc) or exc.__class__.__name__) from exc
        except requests.RequestException as exc:
            raise UpstreamError(str(exc) or exc.__class__.__name__) from exc
        return b"".join(chunks)

    def handle(self, payload: Any) -> ProxyResponse:
        """Serve a JSON proxy request ``{url, method?, headers?, body?, timeout?}``.

        Failures become a JSON error body with the status matching their kind.
        """

        try:
            directive, timeout_ms = _directive_from_payload(payload)
            return self.fetch(directive, timeout_ms)
        except BookSourceError as exc:
            return error_response(exc)

    def preflight(self) -> ProxyResponse:
        headers = dict(CORS_HEADERS)
        headers["Access-Control-Max-Age"] = "86400"
        return ProxyResponse(status=200, headers=headers, body=b"")


def error_response(exc: BookSourceError) -> ProxyResponse:
    headers = dict(CORS_HEADERS)
    headers["Content-Type"] = "application/json; charset=utf-8"
    body = json.dumps(to_payload(exc), ensure_ascii=False).encode("utf-8")
    return ProxyResponse(status=exc.http_status, headers=headers, body=body)


def _directive_from_payload(payload: Any) -> tuple[RequestDirective, int | None]:
    if not isinstance(payload, Mapping):
        raise InvalidRequest("request body must be a JSON object")
    url = payload.get("url")
    if not isinstance(url, str) or not url:
        raise InvalidRequest("'url' must be a non-empty string")

    headers = payload.get("headers") or {}
    if not isinstance(headers, Mapping):
        raise InvalidRequest("'headers' must be an object")
    body = payload.get("body")
    if body is not None and not isinstance(body, str):
        raise InvalidRequest("'body' must be a string")
    timeout = payload.get("timeout")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise InvalidRequest("'timeout' must be a positive number of milliseconds")

    directive = RequestDirective(
        url=url,
        method=str(payload.get("method") or "GET").upper(),
        headers={str(k): v for k, v in headers.items() if isinstance(v, str)},
        body=body,
    )
    return directive, int(timeout) if timeout is not None else None
