"""
Tests for version tag parsing.
"""

import pytest

from depfarm.error_handling import ResolutionError
from depfarm.package_spec import (
    KIND_GIT,
    KIND_REGISTRY,
    KIND_REMOTE,
    HostedRepository,
    parse_tag,
    split_tag,
)


class TestSplitTag:
    """Test splitting tags into name and range."""

    def test_plain_name_and_range(self):
        assert split_tag("lodash@^4.17.0") == ("lodash", "^4.17.0")

    def test_scoped_name_keeps_leading_at(self):
        assert split_tag("@babel/core@7.1.0") == ("@babel/core", "7.1.0")

    def test_missing_range_defaults_to_any(self):
        assert split_tag("lodash") == ("lodash", "*")
        assert split_tag("@types/node") == ("@types/node", "*")


class TestParseTag:
    """Test classification of tags by source."""

    def test_registry_range(self):
        spec = parse_tag("B@^1.0.0")

        assert spec.kind == KIND_REGISTRY
        assert spec.is_registry
        assert spec.name == "B"
        assert spec.fetch_spec == "^1.0.0"

    def test_empty_range_is_any_version(self):
        assert parse_tag("B@").fetch_spec == "*"

    def test_github_shortcut(self):
        spec = parse_tag("left-pad@stevemao/left-pad#v1.3.0")

        assert spec.kind == KIND_GIT
        assert spec.hosted == HostedRepository("github", "stevemao", "left-pad", "v1.3.0")
        assert spec.hosted.tarball() == (
            "https://codeload.github.com/stevemao/left-pad/tar.gz/v1.3.0"
        )

    def test_git_url_without_committish_uses_head(self):
        spec = parse_tag("tool@git+https://gitlab.com/acme/tool.git")

        assert spec.kind == KIND_GIT
        assert spec.hosted.host == "gitlab"
        assert spec.hosted.tarball().endswith("archive.tar.gz?ref=HEAD")
        assert spec.hosted.manifest_url() == (
            "https://gitlab.com/acme/tool/raw/HEAD/package.json"
        )

    def test_scp_style_bitbucket_url(self):
        spec = parse_tag("thing@git@bitbucket.org:team/thing.git#main")

        assert spec.hosted.host == "bitbucket"
        assert spec.hosted.tarball() == "https://bitbucket.org/team/thing/get/main.tar.gz"

    def test_remote_tarball(self):
        spec = parse_tag("pkg@https://example.com/pkg-1.0.0.tgz")

        assert spec.kind == KIND_REMOTE
        assert spec.fetch_spec == "https://example.com/pkg-1.0.0.tgz"

    @pytest.mark.parametrize(
        "tag", ["local@file:../local", "local@link:../local", "local@./local"]
    )
    def test_local_sources_are_rejected(self, tag):
        with pytest.raises(ResolutionError):
            parse_tag(tag)

    def test_unknown_git_host_is_rejected(self):
        with pytest.raises(ResolutionError):
            parse_tag("pkg@git+https://git.example.com/team/pkg.git")
