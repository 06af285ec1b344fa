"""Replay one HTTP response onto another."""

from __future__ import annotations

from typing import Any, FrozenSet, Iterable, Optional

from aiohttp import web

# Buffering or decompressing the body invalidates these; the transport
# recomputes them for the outgoing response.
EXCLUDED_HEADERS = frozenset({
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
    "keep-alive",
})

CHUNK_SIZE = 64 * 1024


class Playback:
    """Plays an upstream response back onto an aiohttp response.

    The steps compose::

        await Playback(upstream, web.StreamResponse()).all(request)
        await Playback(upstream, web.StreamResponse()).status().headers().write(request, body)
    """

    def __init__(
        self,
        source: Any,
        destination: web.StreamResponse,
        exclude: Optional[Iterable[str]] = None,
    ):
        """Initialize the playback.

        Args:
            source: Upstream response (``status``, ``headers``, ``content``).
            destination: Response sent to the client.
            exclude: Header names never copied, case-insensitive.
        """
        self.source = source
        self.destination = destination
        self._exclude: FrozenSet[str] = (
            frozenset(h.lower() for h in exclude) if exclude is not None else EXCLUDED_HEADERS
        )

    def status(self) -> "Playback":
        """Copy the status code."""
        self.destination.set_status(self.source.status, getattr(self.source, "reason", None))
        return self

    def headers(self) -> "Playback":
        """Copy headers, keeping repeated ones such as Set-Cookie."""
        for key, value in self.source.headers.items():
            if key.lower() in self._exclude:
                continue
            self.destination.headers.add(key, value)
        return self

    async def body(self, request: web.BaseRequest) -> web.StreamResponse:
        """Stream the source body to the client unchanged."""
        await self.destination.prepare(request)
        async for chunk in self.source.content.iter_chunked(CHUNK_SIZE):
            await self.destination.write(chunk)
        await self.destination.write_eof()
        return self.destination

    async def write(self, request: web.BaseRequest, data: bytes) -> web.StreamResponse:
        """Send an explicit body in place of the source body."""
        self.destination.content_length = len(data)
        await self.destination.prepare(request)
        await self.destination.write(data)
        await self.destination.write_eof()
        return self.destination

    async def all(self, request: web.BaseRequest) -> web.StreamResponse:
        """Replay status, headers and streamed body."""
        return await self.status().headers().body(request)
