"""Gate decision for tarball downloads."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from constants import CertificationErrorModes

from .certification import CertificationResult
from .errors import CertificationQueryError, PolicyPredicateError, UpstreamTransportError
from .policy import PolicyPredicate, format_score
from .request_parser import RouteKind, RouteMatch

logger = logging.getLogger(__name__)


class Certifier(Protocol):
    """Anything that can fetch certification data for a package version."""

    async def certify(self, name: str, version: str) -> CertificationResult:
        ...


@dataclass
class GateDecision:
    """Outcome of gating one tarball request."""

    allowed: bool
    package: str
    version: str
    location: Optional[str] = None
    notice: Optional[str] = None
    certification: Optional[CertificationResult] = None


def tarball_url(registry: str, route: RouteMatch) -> str:
    """Real tarball URL on the registry for a tarball route."""
    return f"{registry.rstrip('/')}/{route.full_name}/-/{route.name}-{route.version}.tgz"


class ProxyEvaluator:
    """Decides whether a tarball may be downloaded.

    Fetches certification data, hands it to the policy predicate, and turns
    the answer into a redirect target or a rejection notice.
    """

    def __init__(
        self,
        certifier: Certifier,
        check: PolicyPredicate,
        registry: str,
        on_certification_error: str = CertificationErrorModes.ERROR.value,
    ):
        """Initialize the evaluator.

        Args:
            certifier: Certification data source.
            check: Policy predicate; returns True to allow.
            registry: Registry base URL the allowed downloads redirect to.
            on_certification_error: What to do when certification fails:
                - "error": fail the request (5xx)
                - "block": deny the download with a notice
                - "allow": redirect anyway
        """
        if on_certification_error not in {mode.value for mode in CertificationErrorModes}:
            raise ValueError(f"Invalid certification error mode: {on_certification_error}")
        self._certifier = certifier
        self._check = check
        self._registry = registry.rstrip("/")
        self._on_certification_error = on_certification_error

    async def evaluate(self, route: RouteMatch) -> GateDecision:
        """Gate a tarball route.

        Raises:
            CertificationQueryError: Certification failed in "error" mode.
            UpstreamTransportError: The certification API was unreachable in
                "error" mode.
            PolicyPredicateError: The predicate raised.
        """
        if route.kind is not RouteKind.TARBALL or not route.version:
            raise ValueError(f"Not a tarball route: {route.raw_path}")

        name = route.full_name or ""
        version = route.version

        try:
            certification = await self._certifier.certify(name, version)
        except (CertificationQueryError, UpstreamTransportError) as exc:
            return self._certification_failed(route, exc)

        allowed = await self._run_check(certification)

        if allowed:
            location = tarball_url(self._registry, route)
            logger.info(
                "allow %s@%s (score=%s, license=%s)",
                name, version, format_score(certification.score), certification.license,
            )
            return GateDecision(True, name, version, location=location, certification=certification)

        logger.info(
            "deny %s@%s (score=%s, license=%s)",
            name, version, format_score(certification.score), certification.license,
        )
        return GateDecision(
            False,
            name,
            version,
            notice=f"{name}@{version} has score of {format_score(certification.score)}",
            certification=certification,
        )

    async def _run_check(self, certification: CertificationResult) -> bool:
        try:
            result: Any = self._check(certification)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise PolicyPredicateError(
                f"Policy check for {certification.name}@{certification.version} failed: {exc}"
            ) from exc
        return bool(result)

    def _certification_failed(self, route: RouteMatch, exc: Exception) -> GateDecision:
        name = route.full_name or ""
        version = route.version or ""
        mode = self._on_certification_error
        if mode == CertificationErrorModes.BLOCK.value:
            logger.warning("deny %s@%s: certification unavailable (%s)", name, version, exc)
            return GateDecision(
                False,
                name,
                version,
                notice=f"{name}@{version} could not be certified",
            )
        if mode == CertificationErrorModes.ALLOW.value:
            logger.warning("allow %s@%s without certification (%s)", name, version, exc)
            return GateDecision(True, name, version, location=tarball_url(self._registry, route))
        raise exc
