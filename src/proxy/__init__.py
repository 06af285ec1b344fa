"""certgate proxy server package.

This package provides an HTTP proxy for an npm-style registry that rewrites
package metadata so tarball downloads come back through the proxy, then
allows or blocks each download based on its certification score.
"""

from .request_parser import RequestParser, RouteMatch, RouteKind
from .upstream import UpstreamClient, RedirectQuirk
from .certification import CertificationClient, CertificationResult, CheckResult, Vulnerability
from .policy import ScorePolicy
from .evaluator import ProxyEvaluator, GateDecision
from .server import RegistryProxyServer, ProxyConfig

__all__ = [
    "RequestParser",
    "RouteMatch",
    "RouteKind",
    "UpstreamClient",
    "RedirectQuirk",
    "CertificationClient",
    "CertificationResult",
    "CheckResult",
    "Vulnerability",
    "ScorePolicy",
    "ProxyEvaluator",
    "GateDecision",
    "RegistryProxyServer",
    "ProxyConfig",
]
