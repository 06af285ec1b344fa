"""Error kinds raised while proxying a request.

None of these are retried. The server maps each kind to a 5xx response and
reports it to the registered error listeners.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for failures that terminate a proxied request."""

    status = 500
    # Client response that was already streaming when the error hit, if any
    response = None


class UpstreamTransportError(ProxyError):
    """Network, DNS or connection failure talking to an upstream."""

    status = 502


class UpstreamTimeoutError(UpstreamTransportError):
    """An upstream registry request exceeded its timeout."""

    status = 504


class TooManyRedirects(UpstreamTransportError):
    """The registry kept redirecting past the configured limit."""


class MalformedUpstreamJSON(ProxyError):
    """A metadata body that had to be rewritten was not valid JSON."""


class CertificationQueryError(ProxyError):
    """The certification API answered with an error or an unexpected shape."""


class CertificationTimeoutError(CertificationQueryError):
    """The certification query exceeded its timeout."""

    status = 504


class PolicyPredicateError(ProxyError):
    """The injected policy predicate raised."""
