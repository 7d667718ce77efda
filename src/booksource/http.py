"""HTTP transport helpers for the proxy gateway."""

from __future__ import annotations

from http.cookiejar import DefaultCookiePolicy
from typing import Any, Mapping

import requests
from requests.structures import CaseInsensitiveDict

USER_AGENT = "Mozilla/5.0 (compatible; BookSourceProxy/1.0)"
DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


def build_session() -> requests.Session:
    """Create a session for upstream fetches.

    The session keeps no cookie state between calls; stored credentials are
    injected per request. Proxy settings from ``HTTPS_PROXY``/``HTTP_PROXY``
    are still picked up by requests.
    """

    session = requests.Session()
    session.cookies.set_policy(_RejectAllCookies())
    return session


def merge_headers(
    defaults: Mapping[str, str], overrides: Mapping[str, str] | None = None
) -> CaseInsensitiveDict:
    """Merge header mappings case-insensitively, later values winning."""

    merged: CaseInsensitiveDict = CaseInsensitiveDict(defaults)
    if overrides:
        merged.update(overrides)
    return merged


def send(
    session: requests.Session,
    method: str,
    url: str,
    *,
    headers: Mapping[str, str],
    data: str | bytes | None = None,
    timeout: float | tuple[float, float] | None = None,
    **kwargs: Any,
) -> requests.Response:
    """Issue one request without following redirects."""

    return session.request(
        method,
        url,
        headers=dict(headers),
        data=data,
        timeout=timeout,
        allow_redirects=False,
        **kwargs,
    )


class _RejectAllCookies(DefaultCookiePolicy):
    """Cookie policy that never stores or returns cookies."""

    def set_ok(self, cookie, request) -> bool:
        return False

    def return_ok(self, cookie, request) -> bool:
        return False
