"""Upstream client for forwarding requests to the real registry."""

from __future__ import annotations

import asyncio
import logging
import re
import urllib.parse
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Mapping, Optional, Sequence, Tuple

import aiohttp
from yarl import URL

from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from constants import Constants

from .errors import TooManyRedirects, UpstreamTimeoutError, UpstreamTransportError

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})

REDIRECT_STATUSES = (301, 302)

# Bodies are decoded by the client session; only ask for codings it can decode.
ACCEPT_ENCODING = "gzip, deflate"


@dataclass(frozen=True)
class RedirectQuirk:
    """Rewrites a redirect target for a registry with a known redirect habit.

    Attributes:
        host: Exact host name the rule applies to.
        path_pattern: Regex the redirect path must fully match.
        append_slash: Append a trailing slash to matching targets.
    """

    host: str
    path_pattern: str
    append_slash: bool = True

    def apply(self, url: str) -> str:
        """Return the rewritten target, or ``url`` unchanged."""
        parts = urllib.parse.urlsplit(url)
        if (parts.hostname or "").lower() != self.host:
            return url
        if not re.fullmatch(self.path_pattern, parts.path):
            return url
        if self.append_slash and not parts.path.endswith("/"):
            return urllib.parse.urlunsplit(parts._replace(path=parts.path + "/"))
        return url


# static-registry.nodesource.io first redirects to a package URL without a
# trailing slash, then redirects again to the same URL with one.
DEFAULT_REDIRECT_QUIRKS: Tuple[RedirectQuirk, ...] = (
    RedirectQuirk(
        host="static-registry.nodesource.io",
        path_pattern=r"/packages/[^/]+",
    ),
)


def apply_redirect_quirks(url: str, quirks: Sequence[RedirectQuirk]) -> str:
    """Run a redirect target through every quirk in order."""
    for quirk in quirks:
        url = quirk.apply(url)
    return url


def split_userinfo(url: str) -> Tuple[str, Optional[aiohttp.BasicAuth]]:
    """Move credentials embedded in a URL into a BasicAuth object."""
    parts = urllib.parse.urlsplit(url)
    if "@" not in parts.netloc:
        return url, None
    userinfo, _, hostport = parts.netloc.rpartition("@")
    user, _, password = userinfo.partition(":")
    auth = None
    if user or password:
        auth = aiohttp.BasicAuth(
            urllib.parse.unquote(user),
            urllib.parse.unquote(password),
        )
    return urllib.parse.urlunsplit(parts._replace(netloc=hostport)), auth


def origin_of(url: str) -> str:
    """Scheme and authority of a URL, without userinfo."""
    parts = urllib.parse.urlsplit(url)
    hostport = parts.netloc.rpartition("@")[2]
    return f"{parts.scheme}://{hostport}"


class UpstreamClient:
    """Client for forwarding requests to the upstream registry."""

    def __init__(
        self,
        registry: str = Constants.REGISTRY_URL_NPM,
        timeout: float = Constants.REQUEST_TIMEOUT,
        max_redirects: int = Constants.MAX_REDIRECTS,
        quirks: Sequence[RedirectQuirk] = DEFAULT_REDIRECT_QUIRKS,
    ):
        """Initialize the upstream client.

        Args:
            registry: Registry base URL.
            timeout: Request timeout in seconds.
            max_redirects: Redirect hops followed before giving up.
            quirks: Redirect rewrite rules for known registries.
        """
        self._registry = registry.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_redirects = max_redirects
        self._quirks = tuple(quirks)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def registry(self) -> str:
        """Registry base URL without trailing slash."""
        return self._registry

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=100)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def resolve_target(self, target: str) -> str:
        """Return the absolute upstream URL for a request target.

        Targets starting with ``/`` are relative to the registry; anything
        else is already absolute (a followed redirect).
        """
        if target.startswith("/"):
            return f"{self._registry}{target}"
        return target

    def resolve_redirect(self, current_url: str, location: str) -> str:
        """Resolve a Location header against the URL that produced it."""
        if location.startswith("/") and not location.startswith("//"):
            next_url = origin_of(current_url) + location
        elif urllib.parse.urlsplit(location).scheme:
            next_url = location
        else:
            next_url = urllib.parse.urljoin(split_userinfo(current_url)[0], location)
        return apply_redirect_quirks(next_url, self._quirks)

    def build_request_headers(
        self, headers: Optional[Mapping[str, str]], url: str
    ) -> Dict[str, str]:
        """Build request headers to send upstream.

        Drops hop-by-hop headers, anything the client listed in
        ``Connection``, and CDN headers starting with ``cf`` that a front
        proxy may have injected. ``Host`` is set to the upstream authority and
        ``Accept-Encoding`` to what the session can decode.
        """
        request_headers: Dict[str, str] = {}

        connection_tokens = set()
        if headers:
            for k, v in headers.items():
                if k.lower() == "connection":
                    connection_tokens = {token.strip().lower() for token in v.split(",")}
                    break

        if headers:
            for key, value in headers.items():
                key_lower = key.lower()
                if key_lower in HOP_BY_HOP_HEADERS or key_lower in connection_tokens:
                    continue
                if key_lower.startswith("cf") or key_lower == "accept-encoding":
                    continue
                request_headers[key] = value

        request_headers["Host"] = urllib.parse.urlsplit(url).netloc.rpartition("@")[2]
        request_headers.setdefault("User-Agent", Constants.USER_AGENT)
        request_headers.setdefault("Accept", "*/*")
        request_headers["Accept-Encoding"] = ACCEPT_ENCODING

        return request_headers

    @asynccontextmanager
    async def open_response(
        self,
        method: str,
        target: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Open the final upstream response as an async context manager.

        301/302 responses are followed; every intermediate response is
        released before the next hop is requested.
        """
        if self._session is None:
            await self.start()
        response = await self._request_with_redirects(method, target, headers, body)
        try:
            yield response
        finally:
            response.release()

    async def _request_with_redirects(
        self,
        method: str,
        target: str,
        headers: Optional[Mapping[str, str]],
        body: Optional[bytes],
    ) -> aiohttp.ClientResponse:
        """Request a target, following registry redirects up to the limit."""
        current_url = self.resolve_target(target)

        for _ in range(self._max_redirects + 1):
            response = await self._send(method, current_url, headers, body)

            if response.status not in REDIRECT_STATUSES:
                return response

            location = response.headers.get("Location")
            if not location:
                return response

            response.release()
            next_url = self.resolve_redirect(current_url, location)
            logger.debug(
                "Following %s redirect %s -> %s",
                response.status, safe_url(current_url), safe_url(next_url),
            )
            current_url = next_url

        raise TooManyRedirects(
            f"More than {self._max_redirects} redirects for {safe_url(self.resolve_target(target))}"
        )

    async def _send(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        body: Optional[bytes],
    ) -> aiohttp.ClientResponse:
        """Issue one upstream request without following redirects."""
        assert self._session is not None
        plain_url, auth = split_userinfo(url)
        request_headers = self.build_request_headers(headers, plain_url)
        with Timer() as t:
            try:
                response = await self._session.request(
                    method,
                    URL(plain_url, encoded=True),
                    headers=request_headers,
                    data=body,
                    auth=auth,
                    allow_redirects=False,
                )
            except asyncio.TimeoutError as exc:
                raise UpstreamTimeoutError(
                    f"Timed out requesting {safe_url(url)}"
                ) from exc
            except aiohttp.ClientError as exc:
                raise UpstreamTransportError(
                    f"Request to {safe_url(url)} failed: {exc}"
                ) from exc
        if is_debug_enabled(logger):
            logger.debug(
                "Upstream response",
                extra=extra_context(
                    event="http_response",
                    component="upstream",
                    action=method,
                    status_code=response.status,
                    duration_ms=t.duration_ms(),
                    target=safe_url(url),
                ),
            )
        return response

    async def __aenter__(self) -> "UpstreamClient":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()
