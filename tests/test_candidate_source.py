"""Tests for candidate ordering and filtering."""

import pytest

from errors import ExactVersionUnavailable, ManifestError
from resolution.candidates import CandidateSource, LocalOnlySource, VersionPreferences
from versioning.models import SourceId, SourceKind

from fakes import REG, InMemorySource, candidate_source, local_graph, req, root_node


def ids(nodes):
    return [str(n.package_id.version) for n in nodes]


class TestOrdering:
    """Test preference order."""

    def test_newest_first(self, fake):
        """Test that candidates come newest first by default."""
        source = candidate_source(fake)
        assert ids(source.candidates(req("c", "^1"))) == ["1.2.0", "1.1.0", "1.0.0"]

    def test_minimal_versions(self, fake):
        """Test oldest-first ordering."""
        source = candidate_source(fake, preferences=VersionPreferences(minimal_versions=True))
        assert ids(source.candidates(req("c", "^1"))) == ["1.0.0", "1.1.0", "1.2.0"]

    def test_locked_first_without_query(self, fake):
        """Test that an admissible locked version is yielded before the source is asked."""
        locked = {("c", REG): [fake.node("c", "1.1.0")]}
        source = candidate_source(fake, preferences=VersionPreferences(locked=locked))
        candidates = source.candidates(req("c", "^1"))

        assert str(next(candidates).package_id.version) == "1.1.0"
        assert fake.calls == []
        assert ids(candidates) == ["1.2.0", "1.0.0"]
        assert fake.calls == ["c"]

    def test_locked_outside_range_ignored(self, fake):
        """Test that a locked version the requirement rejects is not preferred."""
        locked = {("c", REG): [fake.node("c", "1.0.0")]}
        source = candidate_source(fake, preferences=VersionPreferences(locked=locked))
        assert ids(source.candidates(req("c", "^1.1"))) == ["1.2.0", "1.1.0"]

    def test_fresh_key_ignores_lock(self, fake):
        """Test that keys marked fresh are ordered as if unlocked."""
        locked = {("c", REG): [fake.node("c", "1.0.0")]}
        prefs = VersionPreferences(locked=locked, fresh=frozenset({("c", REG)}))
        source = candidate_source(fake, preferences=prefs)
        assert ids(source.candidates(req("c", "^1"))) == ["1.2.0", "1.1.0", "1.0.0"]


class TestFiltering:
    """Test yanked, toolchain and offline handling."""

    def test_yanked_skipped(self, universe):
        """Test that yanked versions are not offered."""
        fake = InMemorySource(universe, yanked=[("c", "1.2.0")])
        assert ids(candidate_source(fake).candidates(req("c", "^1"))) == ["1.1.0", "1.0.0"]

    def test_yanked_but_locked_kept(self, universe):
        """Test that a yanked version already in the lock stays usable."""
        fake = InMemorySource(universe, yanked=[("c", "1.2.0")])
        locked = {("c", REG): [fake.node("c", "1.2.0")]}
        source = candidate_source(fake, preferences=VersionPreferences(locked=locked))
        assert ids(source.candidates(req("c", "^1"))) == ["1.2.0", "1.1.0", "1.0.0"]

    def test_toolchain_limit(self, universe):
        """Test that versions needing a newer toolchain are skipped."""
        fake = InMemorySource(universe, toolchains={("c", "1.2.0"): "1.80", ("c", "1.1.0"): "1.60"})
        source = candidate_source(fake, max_toolchain="1.70")
        assert ids(source.candidates(req("c", "^1"))) == ["1.1.0", "1.0.0"]

    def test_offline_nothing_cached(self, universe):
        """Test that offline, an uncached package has no candidates."""
        fake = InMemorySource(universe, cached=["a"])
        source = candidate_source(fake, offline=True)
        assert list(source.candidates(req("c", "^1"))) == []
        assert source.offline_miss(req("c", "^1"))

    def test_offline_miss_needs_offline(self, universe):
        """Test that an empty online result is not an offline miss."""
        fake = InMemorySource(universe, cached=["a"])
        assert not candidate_source(fake).offline_miss(req("c", "^3"))

    def test_offline_locked_is_not_a_miss(self, universe):
        """Test that a locked version counts as available offline."""
        fake = InMemorySource(universe, cached=["a"])
        locked = {("c", REG): [fake.node("c", "1.1.0")]}
        source = candidate_source(fake, preferences=VersionPreferences(locked=locked), offline=True)
        assert ids(source.candidates(req("c", "^1"))) == ["1.1.0"]
        assert not source.offline_miss(req("c", "^1"))

    def test_offline_cached(self, universe):
        """Test offline queries served from the cache."""
        fake = InMemorySource(universe, cached=["c"])
        source = candidate_source(fake, offline=True)
        assert ids(source.candidates(req("c", "^1"))) == ["1.2.0", "1.1.0", "1.0.0"]

    def test_online_no_match_is_empty(self, fake):
        """Test that an unsatisfiable range simply yields nothing online."""
        assert list(candidate_source(fake).candidates(req("c", "^3"))) == []


class TestQueries:
    """Test caching, counting and exact lookups."""

    def test_listing_cached_per_run(self, fake):
        """Test that one key is queried once."""
        source = candidate_source(fake)
        list(source.candidates(req("c", "^1")))
        list(source.candidates(req("c", "^2")))
        assert fake.calls == ["c"]
        assert source.queries == 1

    def test_with_preferences_shares_cache(self, fake):
        """Test that a re-ordered view reuses listings."""
        source = candidate_source(fake)
        list(source.candidates(req("c", "^1")))
        minimal = source.with_preferences(VersionPreferences(minimal_versions=True))
        assert ids(minimal.candidates(req("c", "^1"))) == ["1.0.0", "1.1.0", "1.2.0"]
        assert fake.calls == ["c"]

    def test_count(self, fake):
        """Test the candidate count."""
        source = candidate_source(fake)
        assert source.count(req("c", "^1")) == 3
        assert source.count(req("c", "^2")) == 1

    def test_count_locked_without_query(self, fake):
        """Test that a key led by its locked version is counted without asking the source."""
        locked = {("c", REG): [fake.node("c", "1.1.0")]}
        source = candidate_source(fake, preferences=VersionPreferences(locked=locked))
        assert source.count(req("c", "^1")) == 1
        assert fake.calls == []
        assert source.count(req("c", "^2")) == 1
        assert fake.calls == ["c"]

    def test_precise(self, fake):
        """Test exact version lookup."""
        nodes = candidate_source(fake).precise(("c", REG), "1.1.0")
        assert ids(nodes) == ["1.1.0"]

    @pytest.mark.parametrize("value", ["9.9.9", "latest"])
    def test_precise_missing(self, fake, value):
        """Test exact lookup of a version that does not exist."""
        with pytest.raises(ExactVersionUnavailable):
            candidate_source(fake).precise(("c", REG), value)

    def test_unsupported_source(self, fake):
        """Test a requirement on a source kind nobody serves."""
        source = CandidateSource({SourceKind.REGISTRY: fake})
        with pytest.raises(ManifestError):
            list(source.candidates(req("x", "*", source=SourceId.git("https://example.com/x"))))


class TestLocalOnlySource:
    """Test the pre-check source."""

    def test_registry_requirements_have_no_candidates(self, fake):
        """Test that nothing outside the workspace is offered."""
        graph = local_graph(root_node())
        source = LocalOnlySource(candidate_source(fake, graph))
        assert list(source.candidates(req("c", "^1"))) == []
        assert source.count(req("c", "^1")) == 0
        assert fake.calls == []

    def test_path_requirements_served(self, fake):
        """Test that workspace packages are still offered."""
        util = root_node(name="util", version="0.2.0")
        graph = local_graph(root_node(), extra=[util])
        source = LocalOnlySource(candidate_source(fake, graph))
        found = list(source.candidates(req("util", "*", source=util.package_id.source)))
        assert found == [util]
