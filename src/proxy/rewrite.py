"""Fetch-and-rewrite pipeline for proxied registry responses."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Callable, Dict, Optional

import aiohttp
from aiohttp import web

from common.logging_utils import safe_url

from .errors import MalformedUpstreamJSON, UpstreamTimeoutError, UpstreamTransportError
from .playback import Playback
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

BodyTransform = Callable[[bytes], bytes]


def _rewrite_tarball_url(url: str, host: str, port: int) -> str:
    parts = urllib.parse.urlsplit(url)
    return urllib.parse.urlunsplit(parts._replace(scheme="http", netloc=f"{host}:{port}"))


def _rewrite_dist(document: Dict[str, Any], host: str, port: int) -> None:
    dist = document.get("dist")
    if isinstance(dist, dict) and isinstance(dist.get("tarball"), str):
        dist["tarball"] = _rewrite_tarball_url(dist["tarball"], host, port)


def rewrite_tarball_urls(body: bytes, host: str, port: int) -> bytes:
    """Point every ``dist.tarball`` in a metadata document at the proxy.

    Scheme becomes ``http`` and the authority ``host:port``; path and query
    are kept. Both full packuments (``versions`` mapping) and single-version
    documents (top-level ``dist``) are handled.

    Raises:
        MalformedUpstreamJSON: The body is not valid JSON.
    """
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedUpstreamJSON(f"Registry returned invalid JSON: {exc}") from exc

    if isinstance(payload, dict):
        versions = payload.get("versions")
        if isinstance(versions, dict):
            for version in versions.values():
                if isinstance(version, dict):
                    _rewrite_dist(version, host, port)
        _rewrite_dist(payload, host, port)

    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def request_target(request: web.BaseRequest) -> str:
    """Registry-relative target of a request: raw path plus raw query."""
    rel_url = request.rel_url
    target = rel_url.raw_path or "/"
    if not target.startswith("/"):
        target = "/" + target
    if rel_url.raw_query_string:
        target = f"{target}?{rel_url.raw_query_string}"
    return target


class RewritePipeline:
    """Forwards a client request upstream and replays or rewrites the answer."""

    def __init__(self, upstream: UpstreamClient):
        self._upstream = upstream

    async def rewrite(
        self,
        request: web.Request,
        transform: Optional[BodyTransform] = None,
    ) -> web.StreamResponse:
        """Proxy ``request`` and answer the client.

        Args:
            request: Incoming request; only its raw path and query are
                forwarded, so an absolute-form request line cannot pick the
                upstream host.
            transform: Applied to buffered 2xx bodies. ``None`` streams the
                body through untouched.

        Returns:
            The prepared response already sent to the client.
        """
        body = await request.read() if request.body_exists else None
        target = request_target(request)

        async with self._upstream.open_response(
            request.method, target, dict(request.headers), body
        ) as upstream:
            logger.debug("proxy %s %s -> %s", request.method, safe_url(target), upstream.status)

            destination = web.StreamResponse()
            if transform is None or not 200 <= upstream.status < 300:
                # Errors (>= 400), 304 and other non-success answers go back verbatim
                return await self._read_guarded(
                    Playback(upstream, destination).all(request), target, destination
                )

            raw = await self._read_guarded(upstream.read(), target, destination)
            rewritten = transform(raw)
            return await Playback(upstream, destination).status().headers().write(
                request, rewritten
            )

    @staticmethod
    async def _read_guarded(awaitable, target: str, destination: web.StreamResponse):
        """Await a body read, mapping transport failures to proxy errors.

        When the client response was already prepared the error carries it,
        so the server closes the connection instead of answering again.
        """
        try:
            return await awaitable
        except asyncio.TimeoutError as exc:
            error: UpstreamTransportError = UpstreamTimeoutError(
                f"Timed out reading {safe_url(target)}"
            )
            cause: BaseException = exc
        except aiohttp.ClientError as exc:
            error = UpstreamTransportError(f"Reading {safe_url(target)} failed: {exc}")
            cause = exc
        if destination.prepared:
            error.response = destination
        raise error from cause
