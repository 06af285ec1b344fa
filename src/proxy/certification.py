"""Client for the package certification (scoring) API.

The API is GraphQL: one query per tarball request, carrying ``name`` and
``version`` as typed variables. There is no retry; whoever embeds the proxy
decides whether failures are worth retrying.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from common.logging_utils import Timer, extra_context, is_debug_enabled, redact, safe_url
from constants import Constants

from .errors import CertificationQueryError, CertificationTimeoutError, UpstreamTransportError

logger = logging.getLogger(__name__)

CERTIFICATION_QUERY = """query getScore($name: String!, $version: String!) {
  package(name: $name) {
    versions(version: $version) {
      score
      results {
        severity
        pass
        name
        test
        value
      }
      vulnerabilities {
        id
        title
        semver {
          vulnerable
        }
        severity
      }
    }
  }
}"""


@dataclass
class CheckResult:
    """Outcome of one automated certification check."""

    name: str
    test: str = ""
    passed: bool = False
    severity: Optional[str] = None
    value: Any = None


@dataclass
class Vulnerability:
    """A known vulnerability reported for a package version."""

    id: str
    title: str = ""
    severity: Optional[str] = None
    vulnerable: bool = False


@dataclass
class CertificationResult:
    """Certification data for one package version.

    This is also the object handed to the policy predicate.
    """

    name: str
    version: str
    score: Optional[float] = None
    results: List[CheckResult] = field(default_factory=list)
    vulnerabilities: List[Vulnerability] = field(default_factory=list)

    @property
    def license(self) -> Optional[str]:
        """Value of the first ``license`` check that is not ``"unknown"``."""
        for result in self.results:
            if result.name == "license" and result.value != "unknown":
                return result.value
        return None

    @property
    def failed_checks(self) -> List[CheckResult]:
        """Checks that did not pass, in API order."""
        return [result for result in self.results if not result.passed]

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict form including the derived license."""
        data = asdict(self)
        data["license"] = self.license
        return data


def _decode_value(raw: Any, check_name: str) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CertificationQueryError(
            f"Check {check_name!r} has a value that is not JSON: {raw!r}"
        ) from exc


def parse_certification(name: str, version: str, data: Dict[str, Any]) -> CertificationResult:
    """Build a CertificationResult from the GraphQL ``data`` object.

    Raises:
        CertificationQueryError: The payload does not have the expected shape.
    """
    package = data.get("package") if isinstance(data, dict) else None
    if not isinstance(package, dict):
        raise CertificationQueryError(f"No certification data for {name}")
    versions = package.get("versions")
    if not isinstance(versions, list) or not versions or not isinstance(versions[0], dict):
        raise CertificationQueryError(f"No certification data for {name}@{version}")
    certification = versions[0]

    results = []
    for item in certification.get("results") or []:
        check_name = str(item.get("name", ""))
        results.append(CheckResult(
            name=check_name,
            test=item.get("test") or "",
            passed=bool(item.get("pass")),
            severity=item.get("severity"),
            value=_decode_value(item.get("value"), check_name),
        ))

    vulnerabilities = []
    for item in certification.get("vulnerabilities") or []:
        semver = item.get("semver") or {}
        vulnerabilities.append(Vulnerability(
            id=str(item.get("id", "")),
            title=item.get("title") or "",
            severity=item.get("severity"),
            vulnerable=bool(semver.get("vulnerable")),
        ))

    return CertificationResult(
        name=name,
        version=version,
        score=certification.get("score"),
        results=results,
        vulnerabilities=vulnerabilities,
    )


class CertificationClient:
    """Queries the certification API with a bearer token."""

    def __init__(
        self,
        token: Optional[str],
        api_url: Optional[str] = None,
        timeout: float = Constants.CERTIFICATION_TIMEOUT,
    ):
        """Initialize the certification client.

        Args:
            token: Bearer token for the API.
            api_url: API endpoint; defaults to ``CERTGATE_API_URL`` or the
                public endpoint.
            timeout: Query timeout in seconds.
        """
        self._token = token
        self._api_url = (
            api_url
            or os.environ.get(Constants.ENV_API_URL)
            or Constants.CERTIFICATION_API_URL
        )
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def api_url(self) -> str:
        """Endpoint the query is sent to."""
        return self._api_url

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def certify(self, name: str, version: str) -> CertificationResult:
        """Fetch certification data for ``name@version``.

        Raises:
            UpstreamTransportError: The API could not be reached.
            CertificationTimeoutError: The query timed out.
            CertificationQueryError: The API answered with an error or an
                unexpected payload.
        """
        if self._session is None:
            await self.start()
        assert self._session is not None

        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "User-Agent": Constants.USER_AGENT,
        }
        payload = {
            "query": CERTIFICATION_QUERY,
            "variables": {"name": name, "version": version},
        }

        with Timer() as t:
            try:
                async with self._session.post(self._api_url, json=payload, headers=headers) as resp:
                    text = await resp.text()
                    status = resp.status
            except asyncio.TimeoutError as exc:
                raise CertificationTimeoutError(
                    f"Certification query for {name}@{version} timed out"
                ) from exc
            except aiohttp.ClientError as exc:
                raise UpstreamTransportError(
                    f"Certification API {safe_url(self._api_url)} unreachable: {exc}"
                ) from exc

        if is_debug_enabled(logger):
            logger.debug(
                "Certification response",
                extra=extra_context(
                    event="http_response",
                    component="certification",
                    action="POST",
                    status_code=status,
                    duration_ms=t.duration_ms(),
                    target=safe_url(self._api_url),
                    package=f"{name}@{version}",
                ),
            )

        if status < 200 or status >= 300:
            raise CertificationQueryError(
                f"Certification API returned HTTP {status}: {redact(text[:200])}"
            )
        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CertificationQueryError("Certification API returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise CertificationQueryError("Certification API returned an unexpected payload")

        errors = body.get("errors")
        if errors:
            messages = "; ".join(
                str(error.get("message", error)) if isinstance(error, dict) else str(error)
                for error in errors
            )
            raise CertificationQueryError(f"Certification query failed: {messages}")

        return parse_certification(name, version, body.get("data") or {})

    async def __aenter__(self) -> "CertificationClient":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()
