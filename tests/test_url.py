"""Tests for repository URL normalization."""

from __future__ import annotations

import pytest

from buildsentinel.git_api.url import RepositoryRef

_SAME_REPO = [
    "https://github.com/rock-core/base-types",
    "https://github.com/rock-core/base-types.git",
    "http://github.com/rock-core/base-types/",
    "https://www.github.com/rock-core/base-types",
    "https://GitHub.COM/Rock-Core/Base-Types",
    "https://github.com//rock-core///base-types.git",
    "git://github.com/rock-core/base-types.git",
    "ssh://git@github.com/rock-core/base-types",
    "git@github.com:rock-core/base-types.git",
    "git@github.com:rock-core/base-types",
]


class TestParse:
    @pytest.mark.parametrize("url", _SAME_REPO)
    def test_surface_forms_normalize_to_the_same_ref(self, url):
        ref = RepositoryRef.parse(url)
        assert ref == RepositoryRef("github.com", "rock-core/base-types")
        assert hash(ref) == hash(RepositoryRef.parse(_SAME_REPO[0]))

    def test_different_path_is_different(self):
        assert RepositoryRef.parse("https://github.com/rock-core/base-types") != RepositoryRef.parse(
            "https://github.com/rock-core/base-types-ruby"
        )

    def test_different_host_is_different(self):
        assert RepositoryRef.parse("https://github.com/rock-core/base-types") != RepositoryRef.parse(
            "https://gitlab.com/rock-core/base-types"
        )

    def test_nested_groups(self):
        ref = RepositoryRef.parse("https://gitlab.com/group/sub/project.git")
        assert ref.path == "group/sub/project"
        assert ref.owner == "group/sub"
        assert ref.name == "project"

    @pytest.mark.parametrize("url", ["github.com/foo/bar", "www.github.com/foo/bar", "foo", ""])
    def test_invalid(self, url):
        with pytest.raises(ValueError, match="Invalid URL"):
            RepositoryRef.parse(url)

    def test_parse_is_idempotent_on_refs(self):
        ref = RepositoryRef("github.com", "a/b")
        assert RepositoryRef.parse(ref) is ref


class TestAccessors:
    def test_full_path_and_url(self):
        ref = RepositoryRef.parse("git@github.com:rock-core/base-types.git")
        assert ref.full_path == "github.com/rock-core/base-types"
        assert ref.url == "https://github.com/rock-core/base-types"
        assert str(ref) == "github.com/rock-core/base-types"

    def test_same(self):
        ref = RepositoryRef.parse("https://github.com/rock-core/base-types")
        assert ref.same("git@github.com:rock-core/base-types")
        assert not ref.same("https://github.com/rock-core/other")
        assert not ref.same("not a url")
