"""Policy predicates deciding whether a certified tarball may be downloaded."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from constants import Constants

from .certification import CertificationResult

logger = logging.getLogger(__name__)

# Any callable taking the certification and returning a bool, sync or async.
PolicyPredicate = Callable[[CertificationResult], Union[bool, Awaitable[bool]]]


def _normalized(values: Optional[Iterable[str]]) -> frozenset:
    return frozenset(str(v).strip().lower() for v in (values or []) if str(v).strip())


def format_score(score: Optional[float]) -> str:
    """Render a score for humans; a missing score shows as 0."""
    return f"{float(score or 0):g}"


class ScorePolicy:
    """Default predicate: allow packages whose certification score is high enough.

    Optionally also denies specific licenses and vulnerability severities.
    """

    def __init__(
        self,
        min_score: float = Constants.MIN_SCORE,
        deny_licenses: Optional[Iterable[str]] = None,
        deny_vulnerability_severities: Optional[Iterable[str]] = None,
        allow_missing_score: bool = False,
    ):
        """Initialize the policy.

        Args:
            min_score: Lowest score that is allowed.
            deny_licenses: License identifiers that are always denied.
            deny_vulnerability_severities: Severities that deny a package
                when any reported vulnerability has one of them.
            allow_missing_score: Allow packages the API has no score for.
        """
        self.min_score = float(min_score)
        self.deny_licenses = _normalized(deny_licenses)
        self.deny_vulnerability_severities = _normalized(deny_vulnerability_severities)
        self.allow_missing_score = allow_missing_score

    @classmethod
    def from_config(cls, config: Dict[str, Any], min_score: Optional[float] = None) -> "ScorePolicy":
        """Create a policy from the ``policy`` section of a config file.

        Args:
            config: Policy mapping (may be empty).
            min_score: Overrides ``config["min_score"]`` when given.

        Returns:
            ScorePolicy instance.
        """
        if min_score is None:
            min_score = config.get("min_score", Constants.MIN_SCORE)
        return cls(
            min_score=float(min_score),
            deny_licenses=config.get("deny_licenses"),
            deny_vulnerability_severities=config.get("deny_vulnerability_severities"),
            allow_missing_score=bool(config.get("allow_missing_score", False)),
        )

    def violations(self, pkg: CertificationResult) -> list:
        """Return human-readable reasons ``pkg`` is denied (empty = allowed)."""
        reasons = []
        if pkg.score is None and not self.allow_missing_score:
            reasons.append("no certification score")
        elif pkg.score is not None and float(pkg.score) < self.min_score:
            reasons.append(f"score {format_score(pkg.score)} below {format_score(self.min_score)}")

        license_name = pkg.license
        if isinstance(license_name, str) and license_name.strip().lower() in self.deny_licenses:
            reasons.append(f"license {license_name} denied")

        for vuln in pkg.vulnerabilities:
            if (vuln.severity or "").lower() in self.deny_vulnerability_severities:
                reasons.append(f"{vuln.severity} vulnerability {vuln.id}")
        return reasons

    async def __call__(self, pkg: CertificationResult) -> bool:
        logger.info(
            "%3s %s@%s (license=%s)",
            format_score(pkg.score), pkg.name, pkg.version, pkg.license,
        )
        for result in pkg.failed_checks:
            logger.info('    - %s ("%s"="%s")', result.name, result.test, result.value)

        reasons = self.violations(pkg)
        if reasons:
            logger.info("    denied: %s", ", ".join(reasons))
        return not reasons
