"""Tests for the proxy request parser."""

import pytest
from src.proxy.request_parser import RequestParser, RouteKind


class TestRequestParserMetadata:
    """Tests for package metadata paths."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = RequestParser()

    def test_parse_unscoped_package(self):
        """Test parsing unscoped package metadata."""
        result = self.parser.parse("GET", "/pkg-name")
        assert result.kind == RouteKind.METADATA
        assert result.name == "pkg-name"
        assert result.scope is None
        assert result.version is None

    @pytest.mark.parametrize("name", ["express", "lodash.merge", "left-pad", "a", "react-dom"])
    def test_parse_any_unscoped_name(self, name):
        """Every plain /name path is a metadata route for that name."""
        result = self.parser.parse("GET", f"/{name}")
        assert result.kind == RouteKind.METADATA
        assert result.name == name

    def test_parse_scoped_package(self):
        """Test parsing scoped package metadata with an encoded slash."""
        result = self.parser.parse("GET", "/@scope%2fname")
        assert result.kind == RouteKind.METADATA
        assert result.scope == "@scope"
        assert result.name == "name"
        assert result.full_name == "@scope/name"

    def test_parse_scoped_package_uppercase_encoding(self):
        """Test %2F is recognized as well as %2f."""
        result = self.parser.parse("GET", "/@babel%2Fcore")
        assert result.scope == "@babel"
        assert result.name == "core"

    def test_parse_name_stops_at_at_sign(self):
        """Test the unscoped name ends at an @."""
        result = self.parser.parse("GET", "/express@latest")
        assert result.kind == RouteKind.METADATA
        assert result.name == "express"

    def test_parse_version_document(self):
        """Test /name/version is metadata, not a tarball."""
        result = self.parser.parse("GET", "/express/4.18.2")
        assert result.kind == RouteKind.METADATA
        assert result.name == "express"
        assert result.version is None

    def test_query_string_ignored(self):
        """Test query strings do not affect the classification."""
        result = self.parser.parse("GET", "/express?write=true")
        assert result.kind == RouteKind.METADATA
        assert result.name == "express"
        assert result.raw_path == "/express"


class TestRequestParserTarball:
    """Tests for tarball paths."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = RequestParser()

    def test_parse_tarball_request(self):
        """Test parsing an unscoped tarball."""
        result = self.parser.parse("GET", "/express/-/express-1.0.0.tgz")
        assert result.kind == RouteKind.TARBALL
        assert result.name == "express"
        assert result.scope is None
        assert result.version == "1.0.0"

    def test_parse_scoped_tarball_encoded(self):
        """Test parsing a scoped tarball with an encoded slash."""
        result = self.parser.parse("GET", "/@scope%2fpkg/-/pkg-1.2.3.tgz")
        assert result.kind == RouteKind.TARBALL
        assert result.scope == "@scope"
        assert result.name == "pkg"
        assert result.version == "1.2.3"

    def test_parse_scoped_tarball_literal_slash(self):
        """Test the literal-slash form npm uses in tarball URLs."""
        result = self.parser.parse("GET", "/@scope/express/-/express-1.0.0.tgz")
        assert result.kind == RouteKind.TARBALL
        assert result.scope == "@scope"
        assert result.name == "express"
        assert result.full_name == "@scope/express"
        assert result.version == "1.0.0"

    def test_parse_prerelease_and_build_version(self):
        """Test prerelease and build metadata are part of the version."""
        result = self.parser.parse("GET", "/package/-/package-1.0.0-beta.1+build.5.tgz")
        assert result.kind == RouteKind.TARBALL
        assert result.version == "1.0.0-beta.1+build.5"

    def test_hyphenated_name(self):
        """Test names containing hyphens split at the right place."""
        result = self.parser.parse("GET", "/left-pad/-/left-pad-1.3.0.tgz")
        assert result.name == "left-pad"
        assert result.version == "1.3.0"

    def test_wrong_extension_is_metadata(self):
        """Test a .tg suffix is not a tarball."""
        result = self.parser.parse("GET", "/express/-/express-1.0.0.tg")
        assert result.kind == RouteKind.METADATA
        assert result.version is None

    def test_tarball_for_other_name_is_metadata(self):
        """Test the file name must start with the resolved package name."""
        result = self.parser.parse("GET", "/express/-/koa-1.0.0.tgz")
        assert result.kind == RouteKind.METADATA

    def test_non_semver_version_is_metadata(self):
        """Test a version that is not semver-shaped is not captured."""
        result = self.parser.parse("GET", "/express/-/express-latest.tgz")
        assert result.kind == RouteKind.METADATA
        assert result.version is None

    def test_regex_metacharacters_in_name_are_literal(self):
        """Test names with regex metacharacters are compared literally."""
        result = self.parser.parse("GET", "/a.b/-/a.b-1.0.0.tgz")
        assert result.kind == RouteKind.TARBALL
        assert result.name == "a.b"

        other = self.parser.parse("GET", "/a.b/-/axb-1.0.0.tgz")
        assert other.kind == RouteKind.METADATA

    def test_pathological_name_does_not_match(self):
        """Test a name made of pattern syntax classifies quickly and safely."""
        name = "(a+)+" * 20
        result = self.parser.parse("GET", f"/{name}/-/{'a' * 50}!.tgz")
        assert result.kind == RouteKind.METADATA


class TestRequestParserPassthrough:
    """Tests for paths that are forwarded untouched."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = RequestParser()

    @pytest.mark.parametrize("method", ["PUT", "POST", "DELETE", "HEAD", "PATCH"])
    def test_non_get_is_passthrough(self, method):
        """Test non-GET methods always pass through."""
        result = self.parser.parse(method, "/express/-/express-1.0.0.tgz")
        assert result.kind == RouteKind.PASSTHROUGH
        assert result.name is None

    @pytest.mark.parametrize("path", ["/-/whoami", "/-/v1/search?text=react", "/-/user/org.couchdb.user:bob"])
    def test_registry_internal_is_passthrough(self, path):
        """Test /-/ endpoints pass through."""
        assert self.parser.parse("GET", path).kind == RouteKind.PASSTHROUGH

    def test_root_is_passthrough(self):
        """Test / has no package name."""
        assert self.parser.parse("GET", "/").kind == RouteKind.PASSTHROUGH

    def test_bare_scope_is_passthrough(self):
        """Test a scope without a name is not a package."""
        assert self.parser.parse("GET", "/@scope").kind == RouteKind.PASSTHROUGH
        assert self.parser.parse("GET", "/@scope%2f").kind == RouteKind.PASSTHROUGH
