"""Request parser for classifying npm registry request paths."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple


class RouteKind(Enum):
    """How the proxy handles a request."""

    PASSTHROUGH = "passthrough"
    METADATA = "metadata"
    TARBALL = "tarball"


@dataclass(frozen=True)
class RouteMatch:
    """Result of classifying a registry request."""

    kind: RouteKind
    name: Optional[str] = None
    scope: Optional[str] = None
    version: Optional[str] = None
    raw_path: str = ""

    @property
    def full_name(self) -> Optional[str]:
        """Package name including the scope, e.g. ``@babel/core``."""
        if not self.name:
            return None
        if self.scope:
            return f"{self.scope}/{self.name}"
        return self.name


class RequestParser:
    """Parser for extracting scope/name/version from registry request paths.

    Paths are split into segments and compared literally; nothing taken from
    the request is ever compiled into a pattern.

    Recognized shapes:
        /{name}                               - package metadata
        /@{scope}%2f{name}                    - scoped package metadata
        /{name}/-/{name}-{version}.tgz        - tarball
        /@{scope}%2f{name}/-/{name}-{version}.tgz
        /@{scope}/{name}/-/{name}-{version}.tgz
    """

    # Version part of a tarball file name: semver with optional prerelease/build
    _VERSION_PATTERN = re.compile(
        r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
    )
    _ENCODED_SLASH = "%2f"
    _TARBALL_SUFFIX = ".tgz"

    def parse(self, method: str, path: str) -> RouteMatch:
        """Classify a request.

        Args:
            method: HTTP method.
            path: Raw (still percent-encoded) request path. A query string,
                if present, is ignored.

        Returns:
            RouteMatch describing how to handle the request.
        """
        path = path.split("?", 1)[0]
        if not path.startswith("/"):
            path = "/" + path

        if method.upper() != "GET":
            return RouteMatch(RouteKind.PASSTHROUGH, raw_path=path)

        segments = path[1:].split("/")
        # Registry-internal endpoints: /-/login, /-/whoami, /-/v1/search ...
        if segments[0] == "-":
            return RouteMatch(RouteKind.PASSTHROUGH, raw_path=path)

        scope, name, rest = self._split_name(segments)
        if not name:
            return RouteMatch(RouteKind.PASSTHROUGH, raw_path=path)

        version = self._tarball_version(name, rest)
        if version:
            return RouteMatch(
                RouteKind.TARBALL,
                name=name,
                scope=scope,
                version=version,
                raw_path=path,
            )
        return RouteMatch(RouteKind.METADATA, name=name, scope=scope, raw_path=path)

    def _split_name(
        self, segments: List[str]
    ) -> Tuple[Optional[str], Optional[str], List[str]]:
        """Return (scope, name, remaining segments)."""
        first = segments[0]
        if not first:
            return None, None, []

        if first.startswith("@"):
            index = first.lower().find(self._ENCODED_SLASH)
            if index > 1:
                scope = first[:index]
                name = first[index + len(self._ENCODED_SLASH):]
                return scope, name or None, segments[1:]
            # npm writes scoped tarball URLs with a literal slash
            if len(first) > 1 and len(segments) > 1 and segments[1]:
                return first, segments[1], segments[2:]
            return None, None, []

        # Unscoped: everything up to an "@" (e.g. /express@latest)
        name = first.split("@", 1)[0]
        return None, name or None, segments[1:]

    def _tarball_version(self, name: str, rest: List[str]) -> Optional[str]:
        """Extract the version from ``-/{name}-{version}.tgz`` if present."""
        if len(rest) != 2 or rest[0] != "-":
            return None
        filename = rest[1]
        prefix = f"{name}-"
        if not filename.startswith(prefix) or not filename.endswith(self._TARBALL_SUFFIX):
            return None
        version = filename[len(prefix):-len(self._TARBALL_SUFFIX)]
        if not self._VERSION_PATTERN.match(version):
            return None
        return version
