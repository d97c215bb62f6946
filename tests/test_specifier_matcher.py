"""Tests for matching CLI specifiers against known packages."""

import pytest

from errors import AmbiguousSpecifier, SpecifierNotFound
from resolution.specifier import match_specifier, match_specifiers
from versioning.models import SourceId, Specifier

from fakes import pid

OTHER = SourceId.registry("https://mirror.test/")

UNIVERSE = [
    pid("serde", "1.0.2"),
    pid("c", "1.0.0"),
    pid("c", "2.0.0"),
    pid("dup", "1.0.0"),
    pid("dup", "1.0.0", OTHER),
    pid("util", "0.1.0", SourceId.path("crates/util")),
]


class TestMatchSpecifier:
    """Test unique matching and the errors around it."""

    def test_name_only(self):
        """Test that a unique name matches."""
        assert match_specifier(Specifier("serde"), UNIVERSE) == pid("serde", "1.0.2")

    def test_ambiguous_versions(self):
        """Test that two versions of one name need a version."""
        with pytest.raises(AmbiguousSpecifier) as excinfo:
            match_specifier(Specifier("c"), UNIVERSE)
        assert excinfo.value.matches == ["c@1.0.0", "c@2.0.0"]

    def test_partial_version(self):
        """Test that a version prefix disambiguates."""
        assert match_specifier(Specifier("c", "2"), UNIVERSE) == pid("c", "2.0.0")
        assert match_specifier(Specifier("c", "1.0.0"), UNIVERSE) == pid("c", "1.0.0")

    def test_ambiguous_sources(self):
        """Test that equal versions from two sources are listed with their source."""
        with pytest.raises(AmbiguousSpecifier) as excinfo:
            match_specifier(Specifier("dup", "1.0.0"), UNIVERSE)
        assert excinfo.value.matches == [
            "registry+https://index.test/#dup@1.0.0",
            "registry+https://mirror.test/#dup@1.0.0",
        ]

    @pytest.mark.parametrize("source", ["https://mirror.test", "registry+https://mirror.test/"])
    def test_source_disambiguates(self, source):
        """Test matching on the source URL or the canonical source string."""
        assert match_specifier(Specifier("dup", source=source), UNIVERSE) == pid("dup", "1.0.0", OTHER)

    def test_local_package(self):
        """Test that workspace packages are matchable."""
        assert match_specifier(Specifier("util"), UNIVERSE).source == SourceId.path("crates/util")

    def test_not_found_suggests_name(self):
        """Test the close-name suggestion."""
        with pytest.raises(SpecifierNotFound) as excinfo:
            match_specifier(Specifier("serd"), UNIVERSE)
        assert "did you mean `serde`" in str(excinfo.value)

    def test_not_found_lists_versions(self):
        """Test that a version miss lists the locked versions."""
        with pytest.raises(SpecifierNotFound) as excinfo:
            match_specifier(Specifier("serde", "9"), UNIVERSE)
        assert "serde@1.0.2" in str(excinfo.value)


class TestMatchSpecifiers:
    """Test matching several specifiers at once."""

    def test_duplicates_collapse(self):
        """Test that two specifiers for one package yield it once."""
        found = match_specifiers([Specifier("serde"), Specifier("serde", "1")], UNIVERSE)
        assert found == [pid("serde", "1.0.2")]

    def test_order_follows_input(self):
        """Test the output order."""
        found = match_specifiers([Specifier("util"), Specifier("serde")], UNIVERSE)
        assert [p.name for p in found] == ["util", "serde"]

