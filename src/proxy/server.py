"""Registry proxy server using aiohttp."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from aiohttp import web

from constants import CertificationErrorModes, Constants

from .certification import CertificationClient
from .errors import ProxyError
from .evaluator import Certifier, GateDecision, ProxyEvaluator
from .policy import PolicyPredicate, ScorePolicy
from .request_parser import RequestParser, RouteKind
from .rewrite import RewritePipeline, rewrite_tarball_urls
from .upstream import DEFAULT_REDIRECT_QUIRKS, UpstreamClient

logger = logging.getLogger(__name__)

ErrorListener = Callable[[BaseException, web.BaseRequest], Any]


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the proxy server. Immutable once created."""

    registry: str = Constants.REGISTRY_URL_NPM
    api_url: Optional[str] = None
    token: Optional[str] = None
    port: int = Constants.DEFAULT_PORT
    host: str = Constants.DEFAULT_HOST
    public_host: str = Constants.PUBLIC_HOST
    timeout: float = Constants.REQUEST_TIMEOUT
    certification_timeout: float = Constants.CERTIFICATION_TIMEOUT
    max_redirects: int = Constants.MAX_REDIRECTS
    max_body_size: int = Constants.MAX_BODY_SIZE
    on_certification_error: str = CertificationErrorModes.ERROR.value
    allow_external: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "registry", self.registry.rstrip("/"))
        object.__setattr__(self, "port", int(self.port))

    @classmethod
    def from_args(cls, args: Any) -> "ProxyConfig":
        """Create config from CLI arguments.

        Args:
            args: Parsed CLI arguments namespace.

        Returns:
            ProxyConfig instance.
        """
        return cls(
            registry=getattr(args, "REGISTRY", None) or Constants.REGISTRY_URL_NPM,
            api_url=getattr(args, "API_URL", None),
            token=getattr(args, "TOKEN", None),
            port=getattr(args, "PROXY_PORT", None) or Constants.DEFAULT_PORT,
            host=getattr(args, "PROXY_HOST", None) or Constants.DEFAULT_HOST,
            public_host=getattr(args, "PUBLIC_HOST", None) or Constants.PUBLIC_HOST,
            timeout=getattr(args, "PROXY_TIMEOUT", None) or Constants.REQUEST_TIMEOUT,
            certification_timeout=(
                getattr(args, "CERTIFICATION_TIMEOUT", None) or Constants.CERTIFICATION_TIMEOUT
            ),
            on_certification_error=(
                getattr(args, "ON_CERT_ERROR", None) or CertificationErrorModes.ERROR.value
            ),
            allow_external=bool(getattr(args, "ALLOW_EXTERNAL", False)),
        )


class RegistryProxyServer:
    """HTTP proxy server for an npm-style registry.

    Metadata responses are rewritten so tarball downloads come back through
    the proxy, where each download is gated on its certification.
    """

    def __init__(
        self,
        config: ProxyConfig,
        check: Optional[PolicyPredicate] = None,
        certifier: Optional[Certifier] = None,
    ):
        """Initialize the proxy server.

        Args:
            config: Server configuration.
            check: Policy predicate; defaults to ScorePolicy().
            certifier: Certification source; defaults to a
                CertificationClient built from the config.
        """
        self._config = config
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._error_listeners: List[ErrorListener] = []

        self._parser = RequestParser()
        self._upstream = UpstreamClient(
            registry=config.registry,
            timeout=config.timeout,
            max_redirects=config.max_redirects,
            quirks=DEFAULT_REDIRECT_QUIRKS,
        )
        self._pipeline = RewritePipeline(self._upstream)

        self._owns_certifier = certifier is None
        if certifier is None:
            certifier = CertificationClient(
                token=config.token,
                api_url=config.api_url,
                timeout=config.certification_timeout,
            )
        self._certifier = certifier
        self._evaluator = ProxyEvaluator(
            certifier=certifier,
            check=check if check is not None else ScorePolicy(),
            registry=config.registry,
            on_certification_error=config.on_certification_error,
        )
        self._rewrite_metadata = functools.partial(
            rewrite_tarball_urls, host=config.public_host, port=config.port
        )

    @property
    def config(self) -> ProxyConfig:
        """The server configuration."""
        return self._config

    def add_error_listener(self, listener: ErrorListener) -> None:
        """Register a callback receiving ``(exception, request)`` for failed requests."""
        self._error_listeners.append(listener)

    def _create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application(client_max_size=self._config.max_body_size)
        app.router.add_get("/_certgate/health", self._health_check)
        app.router.add_route("*", "/{path:.*}", self._handle_request)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({
            "status": "ok",
            "registry": self._config.registry,
        })

    async def _on_startup(self, app: web.Application) -> None:
        """Called when the server starts."""
        await self._upstream.start()
        if self._owns_certifier:
            await self._certifier.start()  # type: ignore[attr-defined]
        logger.info("Proxy server starting on %s:%s", self._config.host, self._config.port)

    async def _on_cleanup(self, app: web.Application) -> None:
        """Called when the server stops."""
        await self._upstream.stop()
        if self._owns_certifier:
            await self._certifier.stop()  # type: ignore[attr-defined]
        logger.info("Proxy server stopped")

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Handle incoming registry requests.

        Args:
            request: Incoming HTTP request.

        Returns:
            HTTP response.
        """
        path = request.rel_url.raw_path
        method = request.method

        if method == "GET" and path == "/favicon.ico":
            return web.Response(status=200)

        route = self._parser.parse(method, path)
        logger.debug(
            "%s %s -> %s scope=%s name=%s version=%s",
            method, path, route.kind.value, route.scope, route.name, route.version,
        )

        try:
            if route.kind is RouteKind.TARBALL:
                decision = await self._evaluator.evaluate(route)
                if decision.allowed:
                    return self._allow_response(decision)
                return self._deny_response(decision)
            if route.kind is RouteKind.METADATA:
                return await self._pipeline.rewrite(request, self._rewrite_metadata)
            return await self._pipeline.rewrite(request)
        except ProxyError as exc:
            logger.error("%s %s failed: %s", method, path, exc)
            return self._error_response(request, exc, exc.status)
        except asyncio.CancelledError:
            raise
        except web.HTTPException:
            # aiohttp answers these itself (e.g. 413 for an oversized publish)
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.exception("Unexpected error handling %s %s", method, path)
            return self._error_response(request, exc, 500)

    def _allow_response(self, decision: GateDecision) -> web.Response:
        """307 to the real tarball; the URL is in the body as well."""
        location = decision.location or ""
        return web.Response(
            status=307,
            headers={"Location": location},
            text=location,
        )

    def _deny_response(self, decision: GateDecision) -> web.Response:
        """404 with the rejection reason in the ``npm-notice`` header."""
        return web.Response(
            status=404,
            headers={"npm-notice": decision.notice or f"{decision.package} was blocked"},
        )

    def _error_response(
        self, request: web.Request, exc: BaseException, status: int
    ) -> web.StreamResponse:
        self._report_error(exc, request)
        response = getattr(exc, "response", None)
        if response is not None and response.prepared:
            # Headers already went out; all that is left is to drop the connection
            if request.transport is not None:
                request.transport.close()
            return response
        return web.Response(status=status, text=str(exc))

    def _report_error(self, exc: BaseException, request: web.BaseRequest) -> None:
        for listener in self._error_listeners:
            try:
                listener(exc, request)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("Error listener failed")

    async def start(self) -> None:
        """Start the proxy server."""
        self._app = self._create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await site.start()

        logger.info(
            "certgate proxy server listening on http://%s:%s",
            self._config.host, self._config.port,
        )
        logger.info("Registry: %s", self._config.registry)
        logger.info("On certification error: %s", self._config.on_certification_error)

    async def run_forever(self) -> None:
        """Start the server and run until interrupted."""
        await self.start()
        self._stop_event = asyncio.Event()
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None


def run_proxy_server_sync(
    config: ProxyConfig,
    check: Optional[PolicyPredicate] = None,
) -> None:
    """Run the proxy server synchronously.

    Installs signal handlers for SIGTERM and SIGINT for clean shutdown.

    Args:
        config: Server configuration.
        check: Policy predicate for tarball downloads.
    """
    server = RegistryProxyServer(config, check=check)
    server.add_error_listener(
        lambda exc, request: logger.debug("Request %s failed: %r", request.path, exc)
    )
    loop = asyncio.new_event_loop()

    async def run():
        await server.start()
        stop_event = asyncio.Event()
        running_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            running_loop.add_signal_handler(sig, stop_event.set)
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")
        await server.stop()

    try:
        loop.run_until_complete(run())
    except KeyboardInterrupt:
        # Fallback for platforms where signal handlers don't work (Windows)
        loop.run_until_complete(server.stop())
    finally:
        loop.close()
        logger.info("Proxy server shutdown complete")
